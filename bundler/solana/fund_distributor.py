"""
SOL distribution from the mother wallet to child wallets and collection back.
"""

import math
from typing import List, Optional

from loguru import logger

from bundler.config import (
    BASE_SIGNATURE_FEE_LAMPORTS,
    BATCH_CONCURRENCY,
    COLLECT_FEE_RESERVE_LAMPORTS,
    COMPUTE_UNIT_LIMIT,
    FUNDING_FEE_BUFFER,
    PRIORITY_FEE_MICROLAMPORTS,
)
from bundler.errors import InsufficientFundsError, InvalidArgumentError, TransientRpcError
from bundler.solana.balance_inspector import BalanceInspector
from bundler.solana.batching import BatchAbort, run_bounded
from bundler.solana.models import (
    BatchResult,
    OperationOutcome,
    OutcomeStatus,
    Wallet,
    lamports_to_sol,
    outcome_for,
    sol_to_lamports,
)
from bundler.solana.rpc_client import RateLimitedClient, RetryTally


def estimate_transaction_fee(priority_fee_microlamports: int = PRIORITY_FEE_MICROLAMPORTS,
                             compute_unit_limit: int = COMPUTE_UNIT_LIMIT) -> int:
    """Signature fee plus priority fee, in lamports."""
    priority = math.ceil(priority_fee_microlamports * compute_unit_limit / 1_000_000)
    return BASE_SIGNATURE_FEE_LAMPORTS + priority


class FundDistributor:
    """Moves SOL between one wallet and many."""

    def __init__(self, ledger, client: RateLimitedClient, inspector: BalanceInspector,
                 concurrency: int = BATCH_CONCURRENCY,
                 collect_reserve_lamports: int = COLLECT_FEE_RESERVE_LAMPORTS,
                 priority_fee_microlamports: int = PRIORITY_FEE_MICROLAMPORTS,
                 compute_unit_limit: int = COMPUTE_UNIT_LIMIT):
        """
        Initialize the distributor.

        Args:
            ledger: Object exposing build_transfer, send_transaction and confirm_transaction
            client: Shared rate-limited client
            inspector: Balance inspector used for pre-flight checks
            concurrency: Maximum transfers in flight
            collect_reserve_lamports: Minimum balance left behind by collect()
            priority_fee_microlamports: Priority fee used for fee estimates
            compute_unit_limit: Compute unit limit used for fee estimates
        """
        self.ledger = ledger
        self.client = client
        self.inspector = inspector
        self.concurrency = concurrency
        self.fee_per_transfer = estimate_transaction_fee(priority_fee_microlamports, compute_unit_limit)
        self.collect_reserve = max(collect_reserve_lamports, math.ceil(self.fee_per_transfer * 1.5))

    def funding_fee_reserve(self, transfer_count: int) -> int:
        return math.ceil(self.fee_per_transfer * transfer_count * FUNDING_FEE_BUFFER)

    async def _transfer(self, source: Wallet, destination: str, lamports: int, tally: RetryTally) -> str:
        label = f"transfer {source.public_key[:8]}->{destination[:8]}"
        tx = await self.client.call(
            lambda: self.ledger.build_transfer(source.keypair, destination, lamports),
            label=label, tally=tally,
        )
        signature = await self.client.call(lambda: self.ledger.send_transaction(tx), label=label, tally=tally)
        await self.client.call(lambda: self.ledger.confirm_transaction(signature), label=label, tally=tally)
        return signature

    def _skip(self, action: str):
        def build(wallet: Wallet, reason: str) -> OperationOutcome:
            return outcome_for(wallet, action, OutcomeStatus.SKIPPED, error=reason)
        return build

    def _fail(self, action: str):
        def build(wallet: Wallet, error: Exception) -> OperationOutcome:
            return outcome_for(wallet, action, OutcomeStatus.FAILED, error=error)
        return build

    async def distribute(self, source: Wallet, targets: List[Wallet], amount_per_target_sol: float,
                         abort: Optional[BatchAbort] = None) -> BatchResult:
        """
        Send the same amount of SOL from ``source`` to every target.

        The source balance is checked first. If it cannot cover every
        transfer plus fees, nothing is sent.

        Args:
            source: Funding wallet
            targets: Wallets to fund, in order
            amount_per_target_sol: SOL per target
            abort: Optional stop flag

        Returns:
            BatchResult with one outcome per target, or a fail-fast error
        """
        operation = "distribute"
        try:
            if amount_per_target_sol is None or amount_per_target_sol <= 0:
                raise InvalidArgumentError(f"Amount per wallet must be positive, got {amount_per_target_sol}")
            if not targets:
                raise InvalidArgumentError("No target wallets to fund")
        except InvalidArgumentError as e:
            return BatchResult.fail_fast(operation, e)

        lamports = sol_to_lamports(amount_per_target_sol)
        required = lamports * len(targets) + self.funding_fee_reserve(len(targets))
        available = await self.inspector.native_balance(source.public_key)

        if available is None:
            return BatchResult.fail_fast(operation, TransientRpcError(
                f"Balance of funding wallet {source.public_key} is unavailable"
            ))
        if available < required:
            error = InsufficientFundsError(
                f"Funding wallet has {lamports_to_sol(available):.6f} SOL, "
                f"needs {lamports_to_sol(required):.6f} SOL for {len(targets)} transfers",
                required_lamports=required,
                available_lamports=available,
            )
            logger.warning(str(error))
            return BatchResult.fail_fast(operation, error)

        logger.info(
            f"Funding {len(targets)} wallets with {amount_per_target_sol} SOL each from {source.public_key}"
        )

        async def fund(target: Wallet) -> OperationOutcome:
            tally = RetryTally()
            try:
                signature = await self._transfer(source, target.public_key, lamports, tally)
            except Exception as e:
                logger.error(f"Funding {target.name or target.public_key} failed: {e}")
                return outcome_for(target, operation, OutcomeStatus.FAILED, error=e,
                                   retries_used=tally.retries_used)
            logger.info(f"Funded {target.name or target.public_key}: {signature}")
            return outcome_for(target, operation, OutcomeStatus.SUCCESS, signature=signature,
                               retries_used=tally.retries_used)

        outcomes = await run_bounded(targets, fund, self._fail(operation), self._skip(operation),
                                     limit=self.concurrency, abort=abort)
        result = BatchResult.from_outcomes(operation, outcomes)
        logger.info(f"Funding done: {len(result.succeeded)} ok, {len(result.failed)} failed, "
                    f"{len(result.skipped)} skipped")
        return result

    async def collect(self, sources: List[Wallet], destination: str,
                      abort: Optional[BatchAbort] = None) -> BatchResult:
        """
        Return each source's spendable balance to ``destination``.

        A source holding no more than the fee reserve is skipped. A source
        whose balance cannot be read is recorded as failed.
        """
        operation = "collect"
        if not sources:
            return BatchResult.fail_fast(operation, InvalidArgumentError("No source wallets to collect from"))

        async def reclaim(source: Wallet) -> OperationOutcome:
            if source.public_key == destination:
                return outcome_for(source, operation, OutcomeStatus.SKIPPED, error="source is the destination")

            balance = await self.inspector.native_balance(source.public_key)
            if balance is None:
                return outcome_for(source, operation, OutcomeStatus.FAILED,
                                   error=TransientRpcError("balance unavailable"))
            if balance <= self.collect_reserve:
                logger.info(f"Skipping {source.name or source.public_key}: balance "
                            f"{lamports_to_sol(balance):.6f} SOL is within the fee reserve")
                return outcome_for(source, operation, OutcomeStatus.SKIPPED,
                                   error=f"balance {balance} lamports below fee reserve {self.collect_reserve}")

            tally = RetryTally()
            try:
                signature = await self._transfer(source, destination, balance - self.collect_reserve, tally)
            except Exception as e:
                logger.error(f"Collecting from {source.name or source.public_key} failed: {e}")
                return outcome_for(source, operation, OutcomeStatus.FAILED, error=e,
                                   retries_used=tally.retries_used)
            logger.info(f"Collected {lamports_to_sol(balance - self.collect_reserve):.6f} SOL "
                        f"from {source.name or source.public_key}: {signature}")
            return outcome_for(source, operation, OutcomeStatus.SUCCESS, signature=signature,
                               retries_used=tally.retries_used)

        outcomes = await run_bounded(sources, reclaim, self._fail(operation), self._skip(operation),
                                     limit=self.concurrency, abort=abort)
        return BatchResult.from_outcomes(operation, outcomes)
