"""
Batched pump.fun trades across a wallet set.

Each request walks through PENDING -> VALIDATING -> EXECUTING ->
AGGREGATING -> DONE. Anything wrong with the request itself (unknown
wallets, bad amounts, no mint) stops it in VALIDATING before a single wallet
is touched. During EXECUTING every wallet succeeds, fails or is skipped on
its own; one wallet's failure never stops the others.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from loguru import logger

from bundler.config import BATCH_CONCURRENCY, DEFAULT_SLIPPAGE_BPS, DEV_WALLET_NAME, TRADE_FEE_HEADROOM_SOL
from bundler.errors import BundlerError, InvalidArgumentError, MissingTargetError, WalletNotFoundError
from bundler.solana.balance_inspector import BalanceInspector
from bundler.solana.batching import BatchAbort, run_bounded
from bundler.solana.models import (
    AmountSpec,
    BatchResult,
    FixedAmount,
    OperationOutcome,
    OperationRequest,
    OutcomeStatus,
    PercentageAmount,
    PerWalletAmounts,
    TradeAction,
    Wallet,
    WalletSet,
    is_first_bundled,
    lamports_to_sol,
    outcome_for,
    sol_to_lamports,
)
from bundler.solana.rpc_client import RetryTally
from bundler.utils.validation_utils import (
    parse_buy_amount,
    parse_sell_amount,
    validate_mint_address,
    validate_slippage_bps,
    validate_token_name,
    validate_token_ticker,
)


class ExecutionState(Enum):
    """Lifecycle of one trade request."""
    PENDING = "pending"
    VALIDATING = "validating"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    DONE = "done"


@dataclass
class ResolvedOperation:
    """A request after validation: concrete wallets, mint and amount."""
    action: TradeAction
    wallets: List[Wallet]
    amount: AmountSpec
    slippage_bps: int
    mint: Optional[str] = None
    creator: Optional[Wallet] = None
    creator_buy_sol: float = 0.0


@dataclass
class OperationRun:
    """State tracking for one request."""
    request: OperationRequest
    state: ExecutionState = ExecutionState.PENDING
    history: List[ExecutionState] = field(default_factory=lambda: [ExecutionState.PENDING])
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    def advance(self, state: ExecutionState) -> None:
        logger.debug(f"{self.request.action.value}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        if state == ExecutionState.DONE:
            self.end_time = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class BatchTradeExecutor:
    """Runs create-and-buy, batch-buy, dev-sell and batch-sell operations."""

    def __init__(self, venue, inspector: BalanceInspector, mint_store,
                 concurrency: int = BATCH_CONCURRENCY,
                 default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
                 fee_headroom_sol: float = TRADE_FEE_HEADROOM_SOL,
                 preflight: bool = True):
        """
        Initialize the executor.

        Args:
            venue: Trade venue exposing create_asset, buy and sell
            inspector: Balance inspector for pre-flight checks
            mint_store: Last-known-mint record with read() and write()
            concurrency: Maximum wallets trading at once
            default_slippage_bps: Slippage used when a request gives none
            fee_headroom_sol: SOL a buyer must hold on top of the buy amount
            preflight: Skip wallets that cannot possibly trade
        """
        self.venue = venue
        self.inspector = inspector
        self.mint_store = mint_store
        self.concurrency = concurrency
        self.default_slippage_bps = default_slippage_bps
        self.fee_headroom_sol = fee_headroom_sol
        self.preflight = preflight
        self.last_run: Optional[OperationRun] = None

    # Public operations

    async def create_and_buy(self, wallet_set: WalletSet, metadata, buy_amounts, media=None,
                             slippage_bps: Optional[int] = None, abort: Optional[BatchAbort] = None) -> BatchResult:
        """Create a token with the dev wallet, then buy with the first bundled wallets."""
        request = OperationRequest(action=TradeAction.CREATE_AND_BUY, amount=buy_amounts,
                                   slippage_bps=slippage_bps, metadata=metadata, media=media)
        return await self.execute(request, wallet_set, abort)

    async def batch_buy(self, wallet_set: WalletSet, amount, mint: Optional[str] = None,
                        slippage_bps: Optional[int] = None, wallet_names: Optional[List[str]] = None,
                        abort: Optional[BatchAbort] = None) -> BatchResult:
        request = OperationRequest(action=TradeAction.BATCH_BUY, amount=amount, mint=mint,
                                   slippage_bps=slippage_bps, wallet_names=wallet_names)
        return await self.execute(request, wallet_set, abort)

    async def dev_sell(self, wallet_set: WalletSet, percentage, mint: Optional[str] = None,
                       slippage_bps: Optional[int] = None, abort: Optional[BatchAbort] = None) -> BatchResult:
        request = OperationRequest(action=TradeAction.DEV_SELL, amount=percentage, mint=mint,
                                   slippage_bps=slippage_bps)
        return await self.execute(request, wallet_set, abort)

    async def batch_sell(self, wallet_set: WalletSet, percentage, mint: Optional[str] = None,
                         slippage_bps: Optional[int] = None, wallet_names: Optional[List[str]] = None,
                         abort: Optional[BatchAbort] = None) -> BatchResult:
        request = OperationRequest(action=TradeAction.BATCH_SELL, amount=percentage, mint=mint,
                                   slippage_bps=slippage_bps, wallet_names=wallet_names)
        return await self.execute(request, wallet_set, abort)

    async def execute(self, request: OperationRequest, wallet_set: WalletSet,
                      abort: Optional[BatchAbort] = None) -> BatchResult:
        """
        Run one trade request to completion.

        Args:
            request: The raw request
            wallet_set: Wallets the request may act on
            abort: Optional stop flag; wallets not yet started are skipped once set

        Returns:
            A BatchResult, either with a fail-fast error or one outcome per wallet
        """
        run = OperationRun(request=request)
        self.last_run = run
        operation = request.action.value

        run.advance(ExecutionState.VALIDATING)
        try:
            resolved = self._validate(request, wallet_set)
        except BundlerError as e:
            logger.warning(f"{operation} rejected: {e}")
            run.advance(ExecutionState.DONE)
            return BatchResult.fail_fast(operation, e)

        run.advance(ExecutionState.EXECUTING)
        logger.info(f"{operation}: {len(resolved.wallets)} wallets, mint {resolved.mint or 'new'}, "
                    f"slippage {resolved.slippage_bps} bps")
        asset_id = resolved.mint
        if request.action == TradeAction.CREATE_AND_BUY:
            outcomes, asset_id = await self._create_and_buy(resolved, request, abort)
        else:
            outcomes = await run_bounded(
                resolved.wallets,
                lambda wallet: self._trade_wallet(resolved, wallet),
                self._failed_outcome(resolved.action),
                self._skipped_outcome(resolved.action),
                limit=self.concurrency,
                abort=abort,
            )

        run.advance(ExecutionState.AGGREGATING)
        result = BatchResult.from_outcomes(operation, outcomes, asset_id=asset_id)
        run.advance(ExecutionState.DONE)

        logger.info(
            f"{operation} finished in {run.duration:.1f}s: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped"
        )
        return result

    # Validation

    def _resolve_mint(self, explicit: Optional[str]) -> str:
        if explicit:
            is_valid, result = validate_mint_address(explicit)
            if not is_valid:
                raise InvalidArgumentError(result)
            return result

        recorded = self.mint_store.read()
        if not recorded:
            raise MissingTargetError("No mint given and no previously created token is recorded")
        logger.info(f"Using last created mint {recorded}")
        return recorded

    def _eligible_wallets(self, action: TradeAction, wallet_set: WalletSet) -> List[Wallet]:
        if action == TradeAction.BATCH_BUY:
            return [w for w in wallet_set.children if w.name != DEV_WALLET_NAME and not is_first_bundled(w.name)]
        if action == TradeAction.BATCH_SELL:
            return [w for w in wallet_set.children if w.name != DEV_WALLET_NAME]
        dev = wallet_set.dev_wallet
        if dev is None:
            raise WalletNotFoundError(f"Wallet set {wallet_set.identifier} has no {DEV_WALLET_NAME}")
        if action == TradeAction.DEV_SELL:
            return [dev]
        return wallet_set.first_bundled

    def _validate(self, request: OperationRequest, wallet_set: WalletSet) -> ResolvedOperation:
        action = request.action
        slippage = validate_slippage_bps(request.slippage_bps, self.default_slippage_bps)
        eligible = self._eligible_wallets(action, wallet_set)

        if action == TradeAction.CREATE_AND_BUY:
            return self._validate_create(request, wallet_set, eligible, slippage)

        mint = self._resolve_mint(request.mint)

        if action in (TradeAction.DEV_SELL, TradeAction.BATCH_SELL):
            amount: AmountSpec = parse_sell_amount(request.amount)
            wallets = wallet_set.select(request.wallet_names, eligible)
        else:
            amount = parse_buy_amount(request.amount)
            wallets = wallet_set.select(request.wallet_names, eligible)
            if isinstance(amount, PerWalletAmounts):
                unknown = [n for n in amount.amounts if n not in {w.name for w in eligible}]
                if unknown:
                    raise InvalidArgumentError(f"Buy amounts given for ineligible wallets: {', '.join(unknown)}")
                if request.wallet_names is None:
                    wallets = [w for w in wallets if w.name in amount.amounts]
                missing = [w.name for w in wallets if w.name not in amount.amounts]
                if missing:
                    raise InvalidArgumentError(f"No buy amount for wallets: {', '.join(missing)}")

        if not wallets:
            raise InvalidArgumentError(f"No eligible wallets for {action.value} in set {wallet_set.identifier}")

        return ResolvedOperation(action=action, wallets=wallets, amount=amount, slippage_bps=slippage, mint=mint)

    def _validate_create(self, request: OperationRequest, wallet_set: WalletSet,
                         eligible: List[Wallet], slippage: int) -> ResolvedOperation:
        metadata = request.metadata
        if metadata is None:
            raise InvalidArgumentError("Token metadata is required to create a token")
        for validator, value in ((validate_token_name, metadata.name), (validate_token_ticker, metadata.symbol)):
            is_valid, result = validator(value)
            if not is_valid:
                raise InvalidArgumentError(result)

        amount = parse_buy_amount(request.amount)
        dev = wallet_set.dev_wallet
        if isinstance(amount, FixedAmount):
            return ResolvedOperation(action=request.action, wallets=eligible, amount=amount,
                                     slippage_bps=slippage, creator=dev, creator_buy_sol=amount.sol)

        allowed = {DEV_WALLET_NAME} | {w.name for w in eligible}
        unknown = [n for n in amount.amounts if n not in allowed]
        if unknown:
            raise InvalidArgumentError(f"Create buyers must be {DEV_WALLET_NAME} or first bundled wallets, "
                                       f"got: {', '.join(unknown)}")
        buyers = [w for w in eligible if w.name in amount.amounts]
        return ResolvedOperation(action=request.action, wallets=buyers, amount=amount, slippage_bps=slippage,
                                 creator=dev, creator_buy_sol=amount.amounts.get(DEV_WALLET_NAME, 0.0))

    # Execution

    @staticmethod
    def _verb(action: TradeAction) -> str:
        return "sell" if action in (TradeAction.DEV_SELL, TradeAction.BATCH_SELL) else "buy"

    def _failed_outcome(self, action: TradeAction):
        def build(wallet: Wallet, error: Exception) -> OperationOutcome:
            return outcome_for(wallet, self._verb(action), OutcomeStatus.FAILED, error=error)
        return build

    def _skipped_outcome(self, action: TradeAction):
        def build(wallet: Wallet, reason: str) -> OperationOutcome:
            return outcome_for(wallet, self._verb(action), OutcomeStatus.SKIPPED, error=reason)
        return build

    def _buy_amount(self, resolved: ResolvedOperation, wallet: Wallet) -> float:
        if isinstance(resolved.amount, PerWalletAmounts):
            return resolved.amount.amount_for(wallet.name)
        return resolved.amount.sol

    async def _preflight_skip_reason(self, resolved: ResolvedOperation, wallet: Wallet, mint: str) -> Optional[str]:
        """Reason to skip ``wallet``, or None to trade. Unknown balances never skip."""
        if not self.preflight:
            return None

        if self._verb(resolved.action) == "buy":
            required = sol_to_lamports(self._buy_amount(resolved, wallet) + self.fee_headroom_sol)
            balance = await self.inspector.native_balance(wallet.public_key)
            if balance is not None and balance < required:
                return (f"balance {lamports_to_sol(balance):.6f} SOL below required "
                        f"{lamports_to_sol(required):.6f} SOL")
            return None

        try:
            holding = await self.inspector.token_balance(wallet.public_key, mint)
        except Exception as e:
            logger.warning(f"Token balance check for {wallet.name} failed, trading anyway: {e}")
            return None
        if holding.amount == 0:
            return "no tokens to sell"
        return None

    async def _trade_wallet(self, resolved: ResolvedOperation, wallet: Wallet,
                            mint: Optional[str] = None) -> OperationOutcome:
        mint = mint or resolved.mint
        verb = self._verb(resolved.action)

        reason = await self._preflight_skip_reason(resolved, wallet, mint)
        if reason:
            logger.info(f"Skipping {verb} for {wallet.name}: {reason}")
            return outcome_for(wallet, verb, OutcomeStatus.SKIPPED, error=reason)

        tally = RetryTally()
        try:
            if verb == "buy":
                signature = await self.venue.buy(mint, wallet, self._buy_amount(resolved, wallet),
                                                 resolved.slippage_bps, tally=tally)
            else:
                amount: PercentageAmount = resolved.amount
                signature = await self.venue.sell(mint, wallet, amount.canonical,
                                                  resolved.slippage_bps, tally=tally)
        except Exception as e:
            logger.error(f"{verb} for {wallet.name} failed after {tally.retries_used} retries: {e}")
            return outcome_for(wallet, verb, OutcomeStatus.FAILED, error=e, retries_used=tally.retries_used)

        logger.info(f"{verb} for {wallet.name} confirmed: {signature}")
        return outcome_for(wallet, verb, OutcomeStatus.SUCCESS, signature=signature,
                           retries_used=tally.retries_used)

    async def _create_and_buy(self, resolved: ResolvedOperation, request: OperationRequest,
                              abort: Optional[BatchAbort]) -> Tuple[List[OperationOutcome], Optional[str]]:
        creator = resolved.creator
        if abort is not None and abort.is_aborted:
            reason = abort.reason or "batch aborted"
            logger.warning(f"Token creation not started: {reason}")
            outcomes = [outcome_for(creator, "create", OutcomeStatus.SKIPPED, error=reason)]
            outcomes += [outcome_for(w, "buy", OutcomeStatus.SKIPPED, error=reason) for w in resolved.wallets]
            return outcomes, None

        tally = RetryTally()
        try:
            mint, signature = await self.venue.create_asset(
                creator, request.metadata, request.media, resolved.creator_buy_sol,
                resolved.slippage_bps, tally=tally,
            )
        except Exception as e:
            logger.error(f"Token creation failed: {e}")
            outcomes = [outcome_for(creator, "create", OutcomeStatus.FAILED, error=e,
                                    retries_used=tally.retries_used)]
            outcomes += [outcome_for(w, "buy", OutcomeStatus.SKIPPED, error="token creation failed")
                         for w in resolved.wallets]
            return outcomes, None

        try:
            self.mint_store.write(mint)
        except OSError as e:
            logger.error(f"Could not record created mint {mint}: {e}")

        outcomes = [outcome_for(creator, "create", OutcomeStatus.SUCCESS, signature=signature,
                                retries_used=tally.retries_used)]
        outcomes += await run_bounded(
            resolved.wallets,
            lambda wallet: self._trade_wallet(resolved, wallet, mint=mint),
            self._failed_outcome(resolved.action),
            self._skipped_outcome(resolved.action),
            limit=self.concurrency,
            abort=abort,
        )
        return outcomes, mint
