"""Tests for SOL distribution and collection."""

import asyncio

import pytest

from bundler.errors import PermanentTradeError, TransientRpcError
from bundler.solana.batching import BatchAbort
from bundler.solana.fund_distributor import FundDistributor, estimate_transaction_fee
from bundler.solana.models import OutcomeStatus, Wallet, sol_to_lamports


@pytest.fixture
def distributor(ledger, client, inspector):
    return FundDistributor(ledger, client, inspector, concurrency=2)


@pytest.fixture
def source(ledger):
    wallet = Wallet.generate("MotherAirdropWallet")
    ledger.fund(wallet, 10.0)
    return wallet


@pytest.fixture
def targets():
    return [Wallet.generate(f"ChildWallet{i}") for i in range(1, 6)]


class TestFeeEstimate:
    def test_default_fee(self):
        assert estimate_transaction_fee(100_000, 200_000) == 25_000

    def test_collect_reserve_floor(self, distributor):
        assert distributor.collect_reserve == 100_000


class TestDistribute:
    """Funding child wallets from the mother wallet."""

    def test_insufficient_funds_short_circuits(self, distributor, ledger, targets):
        poor = Wallet.generate("Poor")
        ledger.fund(poor, 1.0)

        result = asyncio.run(distributor.distribute(poor, targets, 0.5))

        assert result.overall_success is False
        assert result.total == 0
        assert result.error.kind == "InsufficientFunds"
        assert ledger.sent == []

    def test_fee_reserve_counted(self, distributor, ledger, targets):
        exact = Wallet.generate("Exact")
        ledger.fund(exact, 0.5 * len(targets))  # nothing left for fees

        result = asyncio.run(distributor.distribute(exact, targets, 0.5))

        assert result.error.kind == "InsufficientFunds"

    def test_funds_every_target_in_order(self, distributor, ledger, source, targets):
        result = asyncio.run(distributor.distribute(source, targets, 0.1))

        assert result.overall_success
        assert [o.wallet_name for o in result.succeeded] == [t.name for t in targets]
        assert [tx.destination for tx in ledger.sent] == [t.public_key for t in targets]
        for target in targets:
            assert ledger.balances[target.public_key] == sol_to_lamports(0.1)

    def test_one_failure_does_not_stop_the_rest(self, distributor, ledger, source, targets):
        ledger.send_failures[targets[1].public_key] = [PermanentTradeError("account in use")]

        result = asyncio.run(distributor.distribute(source, targets, 0.1))

        assert result.overall_success is False
        assert [o.wallet_name for o in result.failed] == ["ChildWallet2"]
        assert len(result.succeeded) == 4
        assert result.failed[0].error_detail.kind == "PermanentTradeFailure"

    def test_transient_send_failure_is_retried(self, distributor, ledger, source, targets):
        ledger.send_failures[targets[0].public_key] = [TransientRpcError("429 Too Many Requests")]

        result = asyncio.run(distributor.distribute(source, targets[:1], 0.1))

        assert result.overall_success
        assert result.succeeded[0].retries_used == 1

    def test_build_and_send_retry_independently(self, distributor, ledger, source, targets):
        ledger.build_failures[targets[0].public_key] = [TransientRpcError("429"), TransientRpcError("429")]
        ledger.send_failures[targets[0].public_key] = [TransientRpcError("429"), TransientRpcError("429")]

        result = asyncio.run(distributor.distribute(source, targets[:1], 0.1))

        assert result.overall_success
        assert result.succeeded[0].retries_used == 4
        assert len(ledger.sent) == 1

    def test_unknown_source_balance(self, distributor, ledger, source, targets):
        ledger.unreachable.add(source.public_key)

        result = asyncio.run(distributor.distribute(source, targets, 0.1))

        assert result.error.kind == "TransientRpcFailure"
        assert ledger.sent == []

    @pytest.mark.parametrize("amount", [0, -1, None])
    def test_invalid_amount(self, distributor, source, targets, amount):
        result = asyncio.run(distributor.distribute(source, targets, amount))
        assert result.error.kind == "InvalidArgument"

    def test_no_targets(self, distributor, source):
        result = asyncio.run(distributor.distribute(source, [], 0.1))
        assert result.overall_success is False
        assert result.error.kind == "InvalidArgument"

    def test_aborted_batch_starts_nothing(self, distributor, ledger, source, targets):
        abort = BatchAbort()
        abort.abort("caller timeout")

        result = asyncio.run(distributor.distribute(source, targets, 0.1, abort=abort))

        assert len(result.skipped) == len(targets)
        assert ledger.sent == []
        assert result.skipped[0].error_detail.message == "caller timeout"


class TestCollect:
    """Sweeping child balances back to the mother wallet."""

    def test_source_below_reserve_is_skipped(self, ledger, client, inspector, source, targets):
        distributor = FundDistributor(ledger, client, inspector, collect_reserve_lamports=sol_to_lamports(0.001))
        ledger.fund(targets[0], 0.0001)
        ledger.fund(targets[1], 0.5)
        ledger.fund(targets[2], 0.2)

        result = asyncio.run(distributor.collect(targets[:3], source.public_key))

        assert [o.wallet_name for o in result.skipped] == ["ChildWallet1"]
        assert [o.wallet_name for o in result.succeeded] == ["ChildWallet2", "ChildWallet3"]
        assert result.overall_success
        assert ledger.balances[targets[1].public_key] == sol_to_lamports(0.001)
        assert [tx.lamports for tx in ledger.sent] == [
            sol_to_lamports(0.5) - sol_to_lamports(0.001),
            sol_to_lamports(0.2) - sol_to_lamports(0.001),
        ]

    def test_unknown_balance_is_failed(self, distributor, ledger, source, targets):
        ledger.fund(targets[0], 0.5)
        ledger.unreachable.add(targets[1].public_key)

        result = asyncio.run(distributor.collect(targets[:2], source.public_key))

        assert [o.wallet_name for o in result.failed] == ["ChildWallet2"]
        assert result.failed[0].error_detail.kind == "TransientRpcFailure"
        assert len(result.succeeded) == 1

    def test_all_empty_wallets(self, distributor, source, targets):
        result = asyncio.run(distributor.collect(targets, source.public_key))

        assert len(result.skipped) == len(targets)
        assert result.overall_success  # nothing failed
