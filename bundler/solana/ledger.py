"""
Thin async adapter over the Solana JSON-RPC API.

Each method is a single remote step so callers can route every step through
the shared RateLimitedClient. Transactions are built and signed once; only
the identical signed bytes are ever re-sent, which the network deduplicates
by signature.
"""

from typing import List, Optional

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from bundler.config import COMPUTE_UNIT_LIMIT, PRIORITY_FEE_MICROLAMPORTS, SOLANA_RPC_URL
from bundler.errors import (
    InvalidArgumentError,
    PermanentTradeError,
    TransientRpcError,
    UnconfirmedSubmissionError,
)
from bundler.solana.models import TokenBalance

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")

# Errors that prove the node never accepted the request.
REJECTED_REQUEST_MARKERS = ("429", "too many requests", "rate limit", "connecterror", "connection refused")


def parse_pubkey(address: str) -> Pubkey:
    """
    Parse a base58 address.

    Raises:
        InvalidArgumentError: If the address is malformed
    """
    try:
        return Pubkey.from_string(address)
    except (ValueError, TypeError) as e:
        raise InvalidArgumentError(f"Invalid Solana address: {address!r}") from e


class SolanaLedger:
    """Balance queries and transaction submission against one RPC endpoint."""

    def __init__(self, rpc_url: str = SOLANA_RPC_URL, commitment: Commitment = Confirmed,
                 client: Optional[AsyncClient] = None,
                 priority_fee_microlamports: int = PRIORITY_FEE_MICROLAMPORTS,
                 compute_unit_limit: int = COMPUTE_UNIT_LIMIT):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.client = client or AsyncClient(rpc_url, commitment=commitment)
        self.priority_fee_microlamports = priority_fee_microlamports
        self.compute_unit_limit = compute_unit_limit

    async def get_balance(self, address: str) -> int:
        """Native balance in lamports."""
        resp = await self.client.get_balance(parse_pubkey(address), commitment=self.commitment)
        return int(resp.value)

    async def get_token_accounts_by_owner(self, owner: str, mint: Optional[str] = None) -> List[TokenBalance]:
        """
        Token accounts held by ``owner``, one entry per account.

        Args:
            owner: Wallet address
            mint: Restrict to one mint; otherwise every SPL token account

        Returns:
            TokenBalance per account, zero balances included
        """
        opts = TokenAccountOpts(mint=parse_pubkey(mint)) if mint else TokenAccountOpts(program_id=TOKEN_PROGRAM_ID)
        resp = await self.client.get_token_accounts_by_owner_json_parsed(
            parse_pubkey(owner), opts, commitment=self.commitment
        )

        balances = []
        for account in resp.value:
            info = account.account.data.parsed["info"]
            token_amount = info["tokenAmount"]
            balances.append(TokenBalance(
                mint=info["mint"],
                amount=int(token_amount["amount"]),
                decimals=int(token_amount["decimals"]),
            ))
        return balances

    async def build_transfer(self, source: Keypair, destination: str, lamports: int) -> VersionedTransaction:
        """Build and sign a SOL transfer with a priority fee."""
        if lamports <= 0:
            raise InvalidArgumentError(f"Transfer amount must be positive, got {lamports} lamports")

        instructions = [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(self.priority_fee_microlamports),
            transfer(TransferParams(
                from_pubkey=source.pubkey(),
                to_pubkey=parse_pubkey(destination),
                lamports=lamports,
            )),
        ]
        blockhash_resp = await self.client.get_latest_blockhash(commitment=self.commitment)
        message = MessageV0.try_compile(source.pubkey(), instructions, [], blockhash_resp.value.blockhash)
        return VersionedTransaction(message, [source])

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        """
        Send an already signed transaction.

        Raises:
            TransientRpcError: The node refused the request (throttled, unreachable)
            RPCException: The node rejected the transaction (preflight failure)
            UnconfirmedSubmissionError: The request may have reached the node
        """
        signature = str(tx.signatures[0])
        try:
            resp = await self.client.send_raw_transaction(
                bytes(tx), opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment)
            )
        except RPCException:
            raise
        except Exception as e:
            text = f"{type(e).__name__} {e} {e.__cause__ or ''}".lower()
            if any(marker in text for marker in REJECTED_REQUEST_MARKERS):
                raise TransientRpcError(f"sendTransaction refused: {e}") from e
            raise UnconfirmedSubmissionError(f"sendTransaction outcome unknown: {e}", signature=signature) from e

        logger.debug(f"Sent transaction {resp.value}")
        return str(resp.value)

    async def confirm_transaction(self, signature: str) -> str:
        """
        Wait for a sent transaction to land.

        Raises:
            PermanentTradeError: The transaction landed with an error
            UnconfirmedSubmissionError: It did not confirm in time
        """
        try:
            resp = await self.client.confirm_transaction(Signature.from_string(signature), self.commitment)
        except Exception as e:
            raise UnconfirmedSubmissionError(f"transaction {signature} not confirmed: {e}", signature=signature) from e

        status = resp.value[0] if resp.value else None
        if status is not None and status.err is not None:
            raise PermanentTradeError(f"transaction {signature} failed on chain: {status.err}")
        return signature

    async def close(self) -> None:
        await self.client.close()
