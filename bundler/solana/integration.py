"""
Integration module that wires the bundler components together.

BundlerOrchestrator owns the single RateLimitedClient and hands it to every
component that talks to the network. Each public operation returns one
structured result (BatchResult, WalletSetReport or WalletSummary); errors
never escape past it.
"""

import asyncio
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from bundler.api.pumpportal_client import MediaUpload, PumpPortalClient, TokenMetadata
from bundler.config import (
    BATCH_CONCURRENCY,
    DEFAULT_WALLET_SET,
    OPERATION_TIMEOUT_SEC,
    RPC_PROVIDER,
    SOLANA_RPC_URL,
)
from bundler.errors import BundlerError, InvalidArgumentError, WalletBusyError, WalletNotFoundError
from bundler.solana.balance_inspector import BalanceInspector
from bundler.solana.batching import BatchAbort
from bundler.solana.fund_distributor import FundDistributor
from bundler.solana.key_store import KeyStore
from bundler.solana.ledger import SolanaLedger
from bundler.solana.models import (
    BatchResult,
    ErrorDetail,
    NamingScheme,
    Wallet,
    WalletSet,
    WalletSetReport,
    WalletSummary,
)
from bundler.solana.rpc_client import RateLimitedClient, detect_provider
from bundler.solana.trade_executor import BatchTradeExecutor
from bundler.utils.token_storage import LastMintStore


class BundlerOrchestrator:
    """
    Composition root for wallet management, funding and batched trades.

    Components can be injected for testing; anything not supplied is built
    from configuration.
    """

    def __init__(self,
                 rpc_url: str = SOLANA_RPC_URL,
                 key_store: Optional[KeyStore] = None,
                 client: Optional[RateLimitedClient] = None,
                 ledger: Optional[Any] = None,
                 inspector: Optional[BalanceInspector] = None,
                 distributor: Optional[FundDistributor] = None,
                 venue: Optional[Any] = None,
                 executor: Optional[BatchTradeExecutor] = None,
                 mint_store: Optional[Any] = None,
                 concurrency: int = BATCH_CONCURRENCY,
                 operation_timeout: float = OPERATION_TIMEOUT_SEC,
                 default_set: str = DEFAULT_WALLET_SET):
        """
        Initialize the orchestrator.

        Args:
            rpc_url: Solana RPC endpoint
            key_store: Optional KeyStore instance. If None, creates a new one.
            client: Optional RateLimitedClient. If None, one is built for the detected provider.
            ledger: Optional ledger adapter. If None, a SolanaLedger is created.
            inspector: Optional BalanceInspector instance
            distributor: Optional FundDistributor instance
            venue: Optional trade venue. If None, a PumpPortalClient is created.
            executor: Optional BatchTradeExecutor instance
            mint_store: Optional last-known-mint record
            concurrency: Wallets processed at once per batch
            operation_timeout: Seconds before a batch stops starting new wallets (0 disables)
            default_set: Wallet set used when an operation names none
        """
        self.default_set = default_set
        self.operation_timeout = operation_timeout

        self.key_store = key_store if key_store else KeyStore()
        self.client = client if client else RateLimitedClient(detect_provider(rpc_url, RPC_PROVIDER))
        self.ledger = ledger if ledger else SolanaLedger(rpc_url)
        self.mint_store = mint_store if mint_store else LastMintStore()
        self.inspector = inspector if inspector else BalanceInspector(self.ledger, self.client)
        self.distributor = distributor if distributor else FundDistributor(
            self.ledger, self.client, self.inspector, concurrency=concurrency
        )
        self.venue = venue if venue else PumpPortalClient(self.ledger, self.client)
        self.executor = executor if executor else BatchTradeExecutor(
            self.venue, self.inspector, self.mint_store, concurrency=concurrency
        )

        self._busy_wallets: Set[str] = set()
        logger.info(f"BundlerOrchestrator initialized for {rpc_url}")

    # Helpers

    @contextmanager
    def _reserve(self, wallets: Iterable[Wallet]):
        """Mark wallets as in use for the duration of one operation."""
        keys = {w.public_key for w in wallets}
        clash = keys & self._busy_wallets
        if clash:
            raise WalletBusyError(f"{len(clash)} wallet(s) are already in use by another operation")
        self._busy_wallets |= keys
        try:
            yield
        finally:
            self._busy_wallets -= keys

    async def _run_batch(self, operation: str, load: Callable[[WalletSet], List[Wallet]],
                         run: Callable[[WalletSet, BatchAbort], Awaitable[BatchResult]],
                         identifier: Optional[str]) -> BatchResult:
        """Load the set, reserve its wallets, arm the timeout and convert errors."""
        timer = None
        try:
            wallet_set = self.key_store.load_set(identifier or self.default_set)
            wallets = load(wallet_set)
            with self._reserve(wallets):
                abort = BatchAbort()
                if self.operation_timeout and self.operation_timeout > 0:
                    timer = asyncio.get_running_loop().call_later(
                        self.operation_timeout, abort.abort, "operation timed out"
                    )
                return await run(wallet_set, abort)
        except BundlerError as e:
            logger.warning(f"{operation} failed: {e}")
            return BatchResult.fail_fast(operation, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {operation}: {e}")
            return BatchResult.fail_fast(operation, e)
        finally:
            if timer is not None:
                timer.cancel()

    @staticmethod
    def _require_mother(wallet_set: WalletSet) -> Wallet:
        if wallet_set.mother is None:
            raise WalletNotFoundError(f"Wallet set {wallet_set.identifier} has no mother wallet")
        return wallet_set.mother

    # Key management

    def create_wallets(self, count: int, identifier: Optional[str] = None,
                       naming: Optional[NamingScheme] = None, with_mother: bool = False,
                       overwrite: bool = False) -> WalletSetReport:
        """
        Generate and persist child wallets (and optionally a mother wallet).

        Existing children are never replaced unless ``overwrite`` is set.
        """
        identifier = identifier or self.default_set
        try:
            existing = self.key_store.load_set(identifier)
            if existing.children and not overwrite:
                raise InvalidArgumentError(f"Wallet set {identifier} already has {len(existing)} child wallets")
            created = self.key_store.create(count, naming, identifier, with_mother=with_mother and existing.mother is None)
            wallet_set = WalletSet(identifier=identifier, mother=existing.mother or created.mother,
                                   children=created.children)
            self.key_store.persist(wallet_set)
        except BundlerError as e:
            logger.warning(f"create_wallets failed: {e}")
            return WalletSetReport(success=False, identifier=identifier, errors=[ErrorDetail.from_exception(e)])
        except OSError as e:
            logger.error(f"create_wallets could not persist set {identifier}: {e}")
            return WalletSetReport(success=False, identifier=identifier, errors=[ErrorDetail.from_exception(e)])
        return WalletSetReport.from_wallets(identifier, wallet_set.children)

    def import_wallets(self, records: List[Dict[str, Any]], identifier: Optional[str] = None,
                       overwrite: bool = False) -> WalletSetReport:
        """
        Import child wallets; valid records are stored, every bad record is reported.
        """
        identifier = identifier or self.default_set
        try:
            existing = self.key_store.load_set(identifier)
            if existing.children and not overwrite:
                raise InvalidArgumentError(f"Wallet set {identifier} already has {len(existing)} child wallets")
            result = self.key_store.import_wallets(records, identifier)
            if result.wallet_set.children:
                self.key_store.persist(WalletSet(identifier=identifier, mother=existing.mother,
                                                 children=result.wallet_set.children))
        except (BundlerError, OSError) as e:
            logger.warning(f"import_wallets failed: {e}")
            return WalletSetReport(success=False, identifier=identifier, errors=[ErrorDetail.from_exception(e)])

        return WalletSetReport.from_wallets(
            identifier, result.wallet_set.children, [ErrorDetail.from_exception(e) for e in result.errors]
        )

    def create_or_import_mother(self, secret: Optional[str] = None, identifier: Optional[str] = None,
                                overwrite: bool = False) -> WalletSetReport:
        """Create a new mother wallet, or import one when ``secret`` is given."""
        identifier = identifier or self.default_set
        try:
            existing = self.key_store.load_set(identifier)
            if existing.mother is not None and not overwrite:
                raise InvalidArgumentError(f"Wallet set {identifier} already has a mother wallet")
            mother = self.key_store.import_mother(secret) if secret else self.key_store.create_mother()
            self.key_store.persist(WalletSet(identifier=identifier, mother=mother, children=existing.children))
        except (BundlerError, OSError) as e:
            logger.warning(f"create_or_import_mother failed: {e}")
            return WalletSetReport(success=False, identifier=identifier, errors=[ErrorDetail.from_exception(e)])
        return WalletSetReport.from_wallets(identifier, [mother])

    def list_wallets(self, identifier: Optional[str] = None) -> WalletSetReport:
        identifier = identifier or self.default_set
        try:
            wallet_set = self.key_store.load_set(identifier)
        except BundlerError as e:
            return WalletSetReport(success=False, identifier=identifier, errors=[ErrorDetail.from_exception(e)])
        wallets = ([wallet_set.mother] if wallet_set.mother else []) + wallet_set.children
        return WalletSetReport.from_wallets(identifier, wallets)

    # Funding

    async def fund_children(self, amount_per_wallet: float, wallet_names: Optional[List[str]] = None,
                            identifier: Optional[str] = None) -> BatchResult:
        """Send ``amount_per_wallet`` SOL from the mother wallet to each child."""
        def wallets(ws: WalletSet) -> List[Wallet]:
            return [self._require_mother(ws)] + ws.select(wallet_names)

        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.distributor.distribute(ws.mother, ws.select(wallet_names), amount_per_wallet, abort)

        return await self._run_batch("distribute", wallets, run, identifier)

    async def return_funds(self, wallet_names: Optional[List[str]] = None,
                           identifier: Optional[str] = None) -> BatchResult:
        """Sweep child balances, minus the fee reserve, back to the mother wallet."""
        def wallets(ws: WalletSet) -> List[Wallet]:
            return [self._require_mother(ws)] + ws.select(wallet_names)

        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.distributor.collect(ws.select(wallet_names), ws.mother.public_key, abort)

        return await self._run_batch("collect", wallets, run, identifier)

    # Trading

    async def create_and_buy(self, metadata: TokenMetadata, buy_amounts, media: Optional[MediaUpload] = None,
                             slippage_bps: Optional[int] = None, identifier: Optional[str] = None) -> BatchResult:
        """Create a token with DevWallet and buy with the first bundled wallets."""
        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.executor.create_and_buy(ws, metadata, buy_amounts, media=media,
                                                      slippage_bps=slippage_bps, abort=abort)

        return await self._run_batch("create_and_buy", lambda ws: list(ws.children), run, identifier)

    async def batch_buy(self, amount, mint: Optional[str] = None, slippage_bps: Optional[int] = None,
                        wallet_names: Optional[List[str]] = None, identifier: Optional[str] = None) -> BatchResult:
        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.executor.batch_buy(ws, amount, mint=mint, slippage_bps=slippage_bps,
                                                 wallet_names=wallet_names, abort=abort)

        return await self._run_batch("batch_buy", lambda ws: ws.select(wallet_names), run, identifier)

    async def dev_sell(self, percentage, mint: Optional[str] = None, slippage_bps: Optional[int] = None,
                       identifier: Optional[str] = None) -> BatchResult:
        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.executor.dev_sell(ws, percentage, mint=mint, slippage_bps=slippage_bps, abort=abort)

        def wallets(ws: WalletSet) -> List[Wallet]:
            return [ws.dev_wallet] if ws.dev_wallet else []

        return await self._run_batch("dev_sell", wallets, run, identifier)

    async def batch_sell(self, percentage, mint: Optional[str] = None, slippage_bps: Optional[int] = None,
                         wallet_names: Optional[List[str]] = None, identifier: Optional[str] = None) -> BatchResult:
        async def run(ws: WalletSet, abort: BatchAbort) -> BatchResult:
            return await self.executor.batch_sell(ws, percentage, mint=mint, slippage_bps=slippage_bps,
                                                  wallet_names=wallet_names, abort=abort)

        return await self._run_batch("batch_sell", lambda ws: ws.select(wallet_names), run, identifier)

    # Reporting

    async def wallet_summary(self, public_key: str) -> WalletSummary:
        """Native and token balances of any address."""
        try:
            return await self.inspector.summary(public_key)
        except BundlerError as e:
            return WalletSummary(public_key=public_key, warnings=[str(e)])

    async def wallet_balances(self, identifier: Optional[str] = None) -> Dict[str, Optional[int]]:
        """Native balance in lamports per wallet name; None where unknown."""
        try:
            wallet_set = self.key_store.load_set(identifier or self.default_set)
        except BundlerError as e:
            logger.warning(f"wallet_balances failed: {e}")
            return {}
        wallets = ([wallet_set.mother] if wallet_set.mother else []) + wallet_set.children
        by_key = await self.inspector.native_balances(wallets, limit=self.distributor.concurrency)
        return {w.name or w.public_key: by_key[w.public_key] for w in wallets}

    async def close(self) -> None:
        if hasattr(self.venue, "close"):
            self.venue.close()
        if hasattr(self.ledger, "close"):
            await self.ledger.close()
        logger.info("BundlerOrchestrator closed")
