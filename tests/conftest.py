"""
Shared fakes for the bundler test suite.

Run with: pytest tests/ -v
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pytest
from solders.keypair import Keypair

from bundler.solana.ledger import parse_pubkey
from bundler.solana.models import TokenBalance, Wallet, WalletSet, NamingScheme, sol_to_lamports
from bundler.solana.rpc_client import RateLimitedClient, RpcProviderConfig
from bundler.solana.balance_inspector import BalanceInspector

FAST_RPC = RpcProviderConfig(
    name="test",
    calls_per_second=0,
    max_retries=3,
    base_backoff_ms=10,
    max_backoff_ms=1000,
    max_concurrent=5,
)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@dataclass
class FakeTx:
    source: str
    destination: str
    lamports: int


class FakeLedger:
    """In-memory ledger with scripted failures."""

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.tokens: Dict[str, List[TokenBalance]] = {}
        self.unreachable = set()
        self.token_failures = set()
        self.build_failures: Dict[str, List[Exception]] = {}
        self.send_failures: Dict[str, List[Exception]] = {}
        self.sent: List[FakeTx] = []
        self._sig = itertools.count(1)

    def fund(self, wallet: Wallet, sol: float) -> None:
        self.balances[wallet.public_key] = sol_to_lamports(sol)

    async def get_balance(self, address: str) -> int:
        parse_pubkey(address)
        if address in self.unreachable:
            raise ConnectionError("connection refused")
        return self.balances.get(address, 0)

    async def get_token_accounts_by_owner(self, owner: str, mint: Optional[str] = None) -> List[TokenBalance]:
        parse_pubkey(owner)
        if owner in self.token_failures:
            raise RuntimeError("getTokenAccountsByOwner: internal error")
        accounts = self.tokens.get(owner, [])
        if mint:
            return [a for a in accounts if a.mint == mint]
        return list(accounts)

    async def build_transfer(self, source: Keypair, destination: str, lamports: int) -> FakeTx:
        pending = self.build_failures.get(destination)
        if pending:
            raise pending.pop(0)
        return FakeTx(source=str(source.pubkey()), destination=destination, lamports=lamports)

    async def send_transaction(self, tx: FakeTx) -> str:
        pending = self.send_failures.get(tx.destination)
        if pending:
            raise pending.pop(0)
        self.sent.append(tx)
        self.balances[tx.source] = self.balances.get(tx.source, 0) - tx.lamports
        self.balances[tx.destination] = self.balances.get(tx.destination, 0) + tx.lamports
        return f"sig{next(self._sig)}"

    async def confirm_transaction(self, signature: str) -> str:
        return signature


class FakeVenue:
    """Trade venue that routes every call through the shared client like the real one."""

    def __init__(self, client: RateLimitedClient, mint: Optional[str] = None):
        self.client = client
        self.mint = mint or str(Keypair().pubkey())
        self.calls: List[Tuple[str, Optional[str], object]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.create_error: Optional[Exception] = None
        self.delay = 0.0
        self._sig = itertools.count(1)

    async def _execute(self, action: str, wallet: Wallet, amount) -> str:
        self.calls.append((action, wallet.name, amount))
        pending = self.failures.get(wallet.name)
        if pending:
            raise pending.pop(0)
        if self.delay:
            await asyncio.sleep(self.delay)
        return f"{action}-sig{next(self._sig)}"

    async def create_asset(self, creator, metadata, media, dev_buy_sol, slippage_bps, tally=None):
        async def create():
            self.calls.append(("create", creator.name, dev_buy_sol))
            if self.create_error is not None:
                raise self.create_error
            return self.mint, f"create-sig{next(self._sig)}"
        return await self.client.call(create, label="create", tally=tally)

    async def buy(self, mint, wallet, sol_amount, slippage_bps, tally=None):
        return await self.client.call(lambda: self._execute("buy", wallet, sol_amount), label="buy", tally=tally)

    async def sell(self, mint, wallet, amount_spec, slippage_bps, tally=None):
        return await self.client.call(lambda: self._execute("sell", wallet, amount_spec), label="sell", tally=tally)

    def actions(self, action: str) -> List[Tuple[Optional[str], object]]:
        return [(name, amount) for a, name, amount in self.calls if a == action]


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def client(recording_sleep):
    return RateLimitedClient(FAST_RPC, sleep=recording_sleep)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def inspector(ledger, client):
    return BalanceInspector(ledger, client)


@pytest.fixture
def wallet_set():
    """Mother plus DevWallet, First Bundled Wallet 1-4 and ChildWallet1-3."""
    naming = NamingScheme()
    children = [Wallet.generate(naming.name_for(i)) for i in range(8)]
    return WalletSet(identifier="test", mother=Wallet.generate("MotherAirdropWallet"), children=children)
