"""
Read-only balance queries used for pre-flight checks and reporting.
"""

import asyncio
import time
from typing import Dict, List, Optional

from loguru import logger

from bundler.errors import InvalidArgumentError
from bundler.solana.ledger import parse_pubkey
from bundler.solana.models import TokenBalance, Wallet, WalletSummary, lamports_to_sol
from bundler.solana.rpc_client import RateLimitedClient


class BalanceInspector:
    """Balance lookups routed through the shared RateLimitedClient."""

    def __init__(self, ledger, client: RateLimitedClient):
        """
        Initialize the inspector.

        Args:
            ledger: Object exposing ``get_balance`` and ``get_token_accounts_by_owner``
            client: Shared rate-limited client
        """
        self.ledger = ledger
        self.client = client

    async def native_balance(self, public_key: str) -> Optional[int]:
        """
        Native balance in lamports.

        Returns:
            The balance, or None when the RPC could not be reached. None means
            "unknown", which callers must not confuse with an empty wallet.

        Raises:
            InvalidArgumentError: If the address is malformed
        """
        try:
            return await self.client.call(
                lambda: self.ledger.get_balance(public_key),
                label=f"getBalance {public_key[:8]}",
            )
        except InvalidArgumentError:
            raise
        except Exception as e:
            logger.warning(f"Balance for {public_key} unavailable: {e}")
            return None

    async def token_balance(self, public_key: str, mint: str) -> TokenBalance:
        """
        Balance of one mint. A wallet with no token account for the mint has
        a zero balance.
        """
        accounts = await self.client.call(
            lambda: self.ledger.get_token_accounts_by_owner(public_key, mint),
            label=f"getTokenAccounts {public_key[:8]}",
        )
        if not accounts:
            return TokenBalance(mint=mint, amount=0, decimals=0)
        return TokenBalance(
            mint=mint,
            amount=sum(a.amount for a in accounts),
            decimals=accounts[0].decimals,
        )

    async def all_token_balances(self, public_key: str) -> List[TokenBalance]:
        """Every SPL token the wallet actually holds; zeroed accounts are dropped."""
        accounts = await self.client.call(
            lambda: self.ledger.get_token_accounts_by_owner(public_key),
            label=f"getTokenAccounts {public_key[:8]}",
        )
        return [a for a in accounts if a.amount > 0]

    async def summary(self, public_key: str) -> WalletSummary:
        """
        Native and token balances fetched concurrently.

        A failure on either side is reported as a warning; the other side is
        still returned.

        Raises:
            InvalidArgumentError: If the address is malformed
        """
        parse_pubkey(public_key)
        start = time.perf_counter()
        native, tokens = await asyncio.gather(
            self.native_balance(public_key),
            self.all_token_balances(public_key),
            return_exceptions=True,
        )
        duration_ms = (time.perf_counter() - start) * 1000

        summary = WalletSummary(public_key=public_key, query_duration_ms=round(duration_ms, 2))
        if isinstance(native, BaseException):
            summary.warnings.append(f"native balance unavailable: {native}")
        elif native is None:
            summary.warnings.append("native balance unavailable")
        else:
            summary.native_lamports = native

        if isinstance(tokens, BaseException):
            summary.warnings.append(f"token balances unavailable: {tokens}")
        else:
            summary.tokens = tokens

        native_text = f"{lamports_to_sol(summary.native_lamports):.6f} SOL" if summary.native_lamports is not None else "unknown"
        logger.info(
            f"Summary for {public_key}: {native_text}, {len(summary.tokens)} tokens "
            f"in {summary.query_duration_ms:.0f}ms"
        )
        return summary

    async def native_balances(self, wallets: List[Wallet], limit: int = 2) -> Dict[str, Optional[int]]:
        """Native balances keyed by public key, at most ``limit`` lookups at a time."""
        semaphore = asyncio.Semaphore(max(1, limit))

        async def lookup(wallet: Wallet) -> Optional[int]:
            async with semaphore:
                return await self.native_balance(wallet.public_key)

        balances = await asyncio.gather(*(lookup(w) for w in wallets))
        return {w.public_key: b for w, b in zip(wallets, balances)}
