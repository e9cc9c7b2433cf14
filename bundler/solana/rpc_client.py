"""
Rate-limited gateway for every remote call.

All components share one RateLimitedClient. It spaces calls out with a
ticketed pacing gate (one slot every ``1 / calls_per_second`` seconds across
all callers), caps the number of calls in flight, and retries errors the
classifier marks as transient with exponential backoff.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import requests
from loguru import logger

from bundler.errors import BundlerError, TransientRpcError


@dataclass(frozen=True)
class RpcProviderConfig:
    """
    Pacing and retry policy for one RPC provider.

    ``max_retries`` is the total number of attempts a call gets, the first
    one included.
    """
    name: str
    calls_per_second: float
    max_retries: int = 3
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    max_concurrent: int = 10

    @property
    def min_interval(self) -> float:
        if self.calls_per_second <= 0:
            return 0.0
        return 1.0 / self.calls_per_second

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        delay_ms = min(self.base_backoff_ms * (2 ** attempt), self.max_backoff_ms)
        return delay_ms / 1000.0


# Public endpoints throttle hard; keep traffic to roughly one call a second.
PUBLIC_RPC = RpcProviderConfig(
    name="public",
    calls_per_second=1.0,
    max_retries=3,
    base_backoff_ms=15000,
    max_backoff_ms=30000,
    max_concurrent=2,
)

PREMIUM_RPC = RpcProviderConfig(
    name="premium",
    calls_per_second=10.0,
    max_retries=3,
    base_backoff_ms=1000,
    max_backoff_ms=30000,
    max_concurrent=10,
)

PUBLIC_RPC_HOSTS = ("api.mainnet-beta.solana.com", "api.devnet.solana.com", "api.testnet.solana.com")


def detect_provider(rpc_url: str, override: Optional[str] = None) -> RpcProviderConfig:
    """Pick a provider policy from an explicit override or the RPC URL."""
    if override:
        key = override.strip().lower()
        if key == PUBLIC_RPC.name:
            return PUBLIC_RPC
        if key == PREMIUM_RPC.name:
            return PREMIUM_RPC
        logger.warning(f"Unknown RPC_PROVIDER '{override}', detecting from URL")
    if any(host in (rpc_url or "") for host in PUBLIC_RPC_HOSTS):
        return PUBLIC_RPC
    return PREMIUM_RPC


TRANSIENT_KEYWORDS = [
    "timeout",
    "timed out",
    "connection",
    "network",
    "unreachable",
    "rate limit",
    "too many requests",
    "429",
    "throttle",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "node is behind",
]

PERMANENT_KEYWORDS = [
    "insufficient",
    "invalid",
    "slippage",
    "custom program error",
    "unauthorized",
    "private key",
]


def is_transient_error(error: BaseException) -> bool:
    """
    Default error classifier.

    Domain errors decide for themselves; timeouts and connection failures are
    transient; anything else is classified by keywords in its message.
    Unrecognised errors are treated as permanent.
    """
    if isinstance(error, BundlerError):
        return isinstance(error, TransientRpcError)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError,
                          requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True

    message = f"{type(error).__name__}: {error}".lower()
    if error.__cause__ is not None:
        message += f" {error.__cause__}".lower()
    if any(keyword in message for keyword in PERMANENT_KEYWORDS):
        return False
    return any(keyword in message for keyword in TRANSIENT_KEYWORDS)


@dataclass
class RpcCallAttempt:
    """Bookkeeping for one logical remote call across its retries."""
    label: str = "rpc"
    attempts: int = 0
    retries_used: int = 0
    backoff_seconds: float = 0.0
    last_error: Optional[str] = None


@dataclass
class RetryTally:
    """Retries spent across all remote calls of one wallet operation."""
    calls: List[RpcCallAttempt] = field(default_factory=list)

    def record(self, attempt: RpcCallAttempt) -> None:
        self.calls.append(attempt)

    @property
    def retries_used(self) -> int:
        return sum(call.retries_used for call in self.calls)


class RateLimitedClient:
    """Shared pacing gate with exponential-backoff retry."""

    def __init__(self,
                 config: RpcProviderConfig = PREMIUM_RPC,
                 is_transient: Callable[[BaseException], bool] = is_transient_error,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the client.

        Args:
            config: Pacing and retry policy
            is_transient: Predicate deciding whether an error may be retried
            sleep: Awaitable sleep, injectable for tests
            clock: Monotonic clock, injectable for tests
        """
        self.config = config
        self.is_transient = is_transient
        self._sleep = sleep
        self._clock = clock
        self._pacing_lock = asyncio.Lock()
        self._in_flight = asyncio.Semaphore(max(1, config.max_concurrent))
        self._next_slot = 0.0
        self.total_calls = 0

        logger.info(
            f"RateLimitedClient using {config.name} policy: {config.calls_per_second} calls/s, "
            f"max {config.max_concurrent} in flight, {config.max_retries} attempts per call"
        )

    async def _wait_for_slot(self) -> None:
        async with self._pacing_lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.config.min_interval
        delay = slot - now
        if delay > 0:
            await self._sleep(delay)

    async def call(self, fn: Callable[[], Awaitable[Any]], *, label: str = "rpc",
                   attempt: Optional[RpcCallAttempt] = None, tally: Optional[RetryTally] = None) -> Any:
        """
        Run a remote operation under the pacing and retry policy.

        Args:
            fn: Zero-argument callable returning an awaitable
            label: Name used in logs
            attempt: Optional record updated with attempts and retries
            tally: Optional operation-wide record; this call gets its own
                retry budget and is added to it

        Returns:
            Whatever ``fn`` returns on success

        Raises:
            The last error raised by ``fn``, unchanged, once it is permanent
            or retries are exhausted
        """
        attempt = attempt if attempt is not None else RpcCallAttempt(label=label)
        attempt.label = label
        if tally is not None:
            tally.record(attempt)

        while True:
            attempt.attempts += 1
            try:
                async with self._in_flight:
                    await self._wait_for_slot()
                    self.total_calls += 1
                    return await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt.last_error = str(e)
                if not self.is_transient(e):
                    logger.debug(f"{label}: permanent error, not retrying: {e}")
                    raise
                if attempt.attempts >= self.config.max_retries:
                    logger.error(f"{label}: giving up after {attempt.attempts} attempts: {e}")
                    raise

                delay = self.config.backoff_seconds(attempt.retries_used)
                attempt.retries_used += 1
                attempt.backoff_seconds += delay
                logger.warning(
                    f"{label}: transient error on attempt {attempt.attempts}, "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)
