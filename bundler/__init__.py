"""
pump-bundler: mother/child wallet bundling for pump.fun on Solana.

The package is split the same way the operator workflow is:
wallet keys (KeyStore), a shared rate-limited RPC gate, balance queries,
SOL distribution/collection and batched pump.fun trades, all wired
together by BundlerOrchestrator.
"""

__version__ = "0.3.0"
