"""
Solana side of the bundler.

This package holds the wallet key store, the shared rate-limited RPC gate,
balance queries, SOL distribution and the batched pump.fun trade executor.
BundlerOrchestrator in ``bundler.solana.integration`` wires them together.
"""

from bundler.solana.models import (
    BatchResult,
    OperationOutcome,
    OutcomeStatus,
    Wallet,
    WalletSet,
    WalletSummary,
)
from bundler.solana.key_store import KeyStore
from bundler.solana.rpc_client import RateLimitedClient, RetryTally, RpcProviderConfig, RpcCallAttempt
from bundler.solana.balance_inspector import BalanceInspector
from bundler.solana.fund_distributor import FundDistributor
