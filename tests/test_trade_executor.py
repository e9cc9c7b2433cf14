"""Tests for batched pump.fun trades."""

import asyncio

import pytest
from solders.keypair import Keypair

from bundler.api.pumpportal_client import TokenMetadata
from bundler.errors import PermanentTradeError, TransientRpcError
from bundler.solana.batching import BatchAbort
from bundler.solana.models import TokenBalance, WalletSet
from bundler.solana.trade_executor import BatchTradeExecutor, ExecutionState
from bundler.utils.token_storage import InMemoryMintStore

from tests.conftest import FakeVenue


@pytest.fixture
def mint():
    return str(Keypair().pubkey())


@pytest.fixture
def venue(client, mint):
    return FakeVenue(client, mint=mint)


@pytest.fixture
def mint_store():
    return InMemoryMintStore()


@pytest.fixture
def executor(venue, inspector, mint_store):
    return BatchTradeExecutor(venue, inspector, mint_store, concurrency=2, preflight=False)


@pytest.fixture
def metadata():
    return TokenMetadata(name="Test Token", symbol="TEST", description="A token for tests")


class TestValidation:
    """Requests rejected before any wallet is touched."""

    def test_missing_mint_without_record(self, executor, venue, wallet_set):
        result = asyncio.run(executor.batch_sell(wallet_set, 50))

        assert result.overall_success is False
        assert result.error.kind == "MissingTarget"
        assert result.total == 0
        assert venue.calls == []
        assert ExecutionState.EXECUTING not in executor.last_run.history
        assert executor.last_run.history[-1] == ExecutionState.DONE

    def test_recorded_mint_is_used(self, executor, venue, wallet_set, mint_store, mint):
        mint_store.write(mint)

        result = asyncio.run(executor.dev_sell(wallet_set, 100))

        assert result.overall_success
        assert result.asset_id == mint

    @pytest.mark.parametrize("percentage", [150, 0, "abc"])
    def test_bad_percentage(self, executor, venue, wallet_set, mint, percentage):
        result = asyncio.run(executor.batch_sell(wallet_set, percentage, mint=mint))

        assert result.error.kind == "InvalidArgument"
        assert venue.calls == []

    def test_unknown_wallet_name(self, executor, wallet_set, mint):
        result = asyncio.run(executor.batch_sell(wallet_set, 50, mint=mint, wallet_names=["Ghost"]))
        assert result.error.kind == "InvalidArgument"

    def test_dev_wallet_not_in_batch_buy(self, executor, wallet_set, mint):
        result = asyncio.run(executor.batch_buy(wallet_set, 0.1, mint=mint, wallet_names=["DevWallet"]))
        assert result.error.kind == "InvalidArgument"

    def test_bad_mint(self, executor, wallet_set):
        result = asyncio.run(executor.batch_buy(wallet_set, 0.1, mint="nope"))
        assert result.error.kind == "InvalidArgument"

    def test_no_dev_wallet(self, executor, mint):
        result = asyncio.run(executor.dev_sell(WalletSet(identifier="empty"), 50, mint=mint))
        assert result.error.kind == "NotFound"

    def test_no_eligible_wallets(self, executor, wallet_set, mint):
        only_creators = WalletSet(identifier="small", children=wallet_set.children[:5])
        result = asyncio.run(executor.batch_buy(only_creators, 0.1, mint=mint))
        assert result.error.kind == "InvalidArgument"


class TestBatchTrades:
    """Per-wallet execution and aggregation."""

    def test_batch_sell_normalizes_percentage(self, executor, venue, wallet_set, mint):
        result = asyncio.run(executor.batch_sell(wallet_set, "70", mint=mint))

        assert result.overall_success
        sold = venue.actions("sell")
        assert [name for name, _ in sold] == [w.name for w in wallet_set.children[1:]]
        assert {amount for _, amount in sold} == {"70%"}
        assert executor.last_run.history == [
            ExecutionState.PENDING,
            ExecutionState.VALIDATING,
            ExecutionState.EXECUTING,
            ExecutionState.AGGREGATING,
            ExecutionState.DONE,
        ]

    def test_batch_buy_skips_creator_wallets(self, executor, venue, wallet_set, mint):
        result = asyncio.run(executor.batch_buy(wallet_set, 0.05, mint=mint))

        assert [o.wallet_name for o in result.succeeded] == ["ChildWallet1", "ChildWallet2", "ChildWallet3"]
        assert {amount for _, amount in venue.actions("buy")} == {0.05}

    def test_per_wallet_buy_amounts(self, executor, venue, wallet_set, mint):
        result = asyncio.run(executor.batch_buy(wallet_set, {"ChildWallet3": 0.3, "ChildWallet1": 0.1}, mint=mint))

        assert result.overall_success
        assert venue.actions("buy") == [("ChildWallet1", 0.1), ("ChildWallet3", 0.3)]

    def test_dev_sell_only_touches_dev_wallet(self, executor, venue, wallet_set, mint):
        result = asyncio.run(executor.dev_sell(wallet_set, 50, mint=mint))

        assert venue.actions("sell") == [("DevWallet", "50%")]
        assert result.succeeded[0].action == "sell"

    def test_permanent_failure_not_retried(self, executor, venue, wallet_set, mint):
        venue.failures["ChildWallet2"] = [PermanentTradeError("slippage exceeded")]

        result = asyncio.run(executor.batch_sell(wallet_set, 50, mint=mint))

        assert result.overall_success is False
        assert [o.wallet_name for o in result.failed] == ["ChildWallet2"]
        assert result.failed[0].retries_used == 0
        assert result.failed[0].error_detail.kind == "PermanentTradeFailure"
        assert len(result.succeeded) == 6
        assert [name for name, _ in venue.actions("sell")].count("ChildWallet2") == 1

    def test_transient_failures_retried(self, executor, venue, wallet_set, mint):
        venue.failures["ChildWallet1"] = [TransientRpcError("429"), TransientRpcError("timeout")]

        result = asyncio.run(executor.batch_buy(wallet_set, 0.1, mint=mint, wallet_names=["ChildWallet1"]))

        assert result.overall_success
        assert result.succeeded[0].retries_used == 2

    def test_every_wallet_accounted_for(self, executor, venue, wallet_set, mint):
        venue.failures["First Bundled Wallet 2"] = [PermanentTradeError("no liquidity")]

        result = asyncio.run(executor.batch_sell(wallet_set, 25, mint=mint))

        assert result.total == len(wallet_set.children) - 1
        assert result.overall_success == (not result.failed and result.total > 0)


class TestPreflight:
    def test_sell_skips_wallets_without_tokens(self, venue, inspector, ledger, mint_store, wallet_set, mint):
        executor = BatchTradeExecutor(venue, inspector, mint_store, preflight=True)
        holder = wallet_set.get("ChildWallet1")
        ledger.tokens[holder.public_key] = [TokenBalance(mint=mint, amount=1000, decimals=6)]

        result = asyncio.run(executor.batch_sell(wallet_set, 100, mint=mint))

        assert [o.wallet_name for o in result.succeeded] == ["ChildWallet1"]
        assert len(result.skipped) == 6
        assert result.skipped[0].error_detail.message == "no tokens to sell"
        assert result.overall_success

    def test_buy_skips_underfunded_wallets(self, venue, inspector, ledger, mint_store, wallet_set, mint):
        executor = BatchTradeExecutor(venue, inspector, mint_store, preflight=True, fee_headroom_sol=0.01)
        ledger.fund(wallet_set.get("ChildWallet1"), 1.0)
        ledger.fund(wallet_set.get("ChildWallet2"), 0.105)

        result = asyncio.run(executor.batch_buy(wallet_set, 0.1, mint=mint))

        assert [o.wallet_name for o in result.succeeded] == ["ChildWallet1"]
        assert [o.wallet_name for o in result.skipped] == ["ChildWallet2", "ChildWallet3"]


class TestCreateAndBuy:
    """Token creation followed by bundled buys."""

    def test_create_then_buy(self, executor, venue, wallet_set, mint_store, metadata, mint):
        amounts = {"DevWallet": 0.5, "First Bundled Wallet 1": 0.2, "First Bundled Wallet 3": 0.1}

        result = asyncio.run(executor.create_and_buy(wallet_set, metadata, amounts))

        assert result.overall_success
        assert result.asset_id == mint
        assert mint_store.read() == mint
        assert venue.calls[0] == ("create", "DevWallet", 0.5)
        assert venue.actions("buy") == [("First Bundled Wallet 1", 0.2), ("First Bundled Wallet 3", 0.1)]
        assert result.succeeded[0].action == "create"

    def test_failed_buy_still_reports_asset(self, executor, venue, wallet_set, mint_store, metadata, mint):
        venue.failures["First Bundled Wallet 1"] = [PermanentTradeError("slippage exceeded")]

        result = asyncio.run(executor.create_and_buy(wallet_set, metadata, 0.1))

        assert result.overall_success is False
        assert result.asset_id == mint
        assert mint_store.read() == mint
        assert [o.wallet_name for o in result.failed] == ["First Bundled Wallet 1"]
        assert len(result.succeeded) == 4  # create + three buys

    def test_failed_create_skips_buys(self, executor, venue, wallet_set, mint_store, metadata):
        venue.create_error = PermanentTradeError("create rejected")

        result = asyncio.run(executor.create_and_buy(wallet_set, metadata, 0.1))

        assert result.asset_id is None
        assert mint_store.read() is None
        assert [o.action for o in result.failed] == ["create"]
        assert len(result.skipped) == 4
        assert venue.actions("buy") == []

    def test_buyers_must_be_creator_wallets(self, executor, wallet_set, metadata):
        result = asyncio.run(executor.create_and_buy(wallet_set, metadata, {"ChildWallet1": 0.1}))
        assert result.error.kind == "InvalidArgument"

    def test_metadata_required(self, executor, wallet_set):
        result = asyncio.run(executor.create_and_buy(wallet_set, None, 0.1))
        assert result.error.kind == "InvalidArgument"

    def test_aborted_before_create_submits_nothing(self, executor, venue, wallet_set, mint_store, metadata):
        abort = BatchAbort()
        abort.abort("operation timed out")

        result = asyncio.run(executor.create_and_buy(wallet_set, metadata, 0.1, abort=abort))

        assert venue.calls == []
        assert result.asset_id is None
        assert mint_store.read() is None
        assert [o.action for o in result.skipped] == ["create", "buy", "buy", "buy", "buy"]
        assert {o.error_detail.message for o in result.skipped} == {"operation timed out"}
