"""Tests for balance queries."""

import asyncio

import pytest
from solders.keypair import Keypair

from bundler.errors import InvalidArgumentError
from bundler.solana.models import TokenBalance, Wallet


@pytest.fixture
def wallet():
    return Wallet.generate("W")


@pytest.fixture
def mint():
    return str(Keypair().pubkey())


class TestNativeBalance:
    def test_known_balance(self, inspector, ledger, wallet):
        ledger.fund(wallet, 1.5)
        assert asyncio.run(inspector.native_balance(wallet.public_key)) == 1_500_000_000

    def test_empty_wallet_is_zero(self, inspector, wallet):
        assert asyncio.run(inspector.native_balance(wallet.public_key)) == 0

    def test_unreachable_rpc_is_unknown_not_zero(self, inspector, ledger, wallet, recording_sleep):
        ledger.unreachable.add(wallet.public_key)

        assert asyncio.run(inspector.native_balance(wallet.public_key)) is None
        assert len(recording_sleep.delays) == 2  # retried before giving up

    def test_malformed_address(self, inspector):
        with pytest.raises(InvalidArgumentError):
            asyncio.run(inspector.native_balance("not-an-address"))

    def test_native_balances(self, inspector, ledger, wallet):
        other = Wallet.generate("Other")
        ledger.fund(wallet, 0.2)
        ledger.unreachable.add(other.public_key)

        balances = asyncio.run(inspector.native_balances([wallet, other]))

        assert balances == {wallet.public_key: 200_000_000, other.public_key: None}


class TestTokenBalances:
    def test_no_token_account_is_zero(self, inspector, wallet, mint):
        balance = asyncio.run(inspector.token_balance(wallet.public_key, mint))

        assert balance == TokenBalance(mint=mint, amount=0, decimals=0)

    def test_token_balance(self, inspector, ledger, wallet, mint):
        ledger.tokens[wallet.public_key] = [TokenBalance(mint=mint, amount=5_000_000, decimals=6)]

        balance = asyncio.run(inspector.token_balance(wallet.public_key, mint))

        assert balance.amount == 5_000_000
        assert balance.ui_amount == 5.0

    def test_all_token_balances_drop_zero_holdings(self, inspector, ledger, wallet, mint):
        other_mint = str(Keypair().pubkey())
        ledger.tokens[wallet.public_key] = [
            TokenBalance(mint=mint, amount=10, decimals=6),
            TokenBalance(mint=other_mint, amount=0, decimals=9),
        ]

        balances = asyncio.run(inspector.all_token_balances(wallet.public_key))

        assert [b.mint for b in balances] == [mint]


class TestSummary:
    def test_full_summary(self, inspector, ledger, wallet, mint):
        ledger.fund(wallet, 0.5)
        ledger.tokens[wallet.public_key] = [TokenBalance(mint=mint, amount=42, decimals=0)]

        summary = asyncio.run(inspector.summary(wallet.public_key))

        assert summary.native_lamports == 500_000_000
        assert summary.native_sol == 0.5
        assert [t.mint for t in summary.tokens] == [mint]
        assert summary.warnings == []
        assert summary.query_duration_ms >= 0

    def test_token_failure_keeps_native(self, inspector, ledger, wallet):
        ledger.fund(wallet, 0.5)
        ledger.token_failures.add(wallet.public_key)

        summary = asyncio.run(inspector.summary(wallet.public_key))

        assert summary.native_lamports == 500_000_000
        assert summary.tokens == []
        assert len(summary.warnings) == 1
        assert "token" in summary.warnings[0]

    def test_native_failure_keeps_tokens(self, inspector, ledger, wallet, mint):
        ledger.unreachable.add(wallet.public_key)
        ledger.tokens[wallet.public_key] = [TokenBalance(mint=mint, amount=1, decimals=0)]

        summary = asyncio.run(inspector.summary(wallet.public_key))

        assert summary.native_lamports is None
        assert summary.native_sol is None
        assert len(summary.tokens) == 1
        assert summary.warnings == ["native balance unavailable"]
