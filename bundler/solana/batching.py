"""
Bounded-concurrency execution of per-wallet work.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from loguru import logger

from bundler.solana.models import OperationOutcome

T = TypeVar("T")


class BatchAbort:
    """Stop flag for a running batch. Wallets not yet started are skipped once set."""

    def __init__(self):
        self.is_aborted = False
        self.reason: Optional[str] = None

    def abort(self, reason: str = "batch aborted") -> None:
        if not self.is_aborted:
            logger.warning(f"Aborting batch: {reason}")
        self.is_aborted = True
        self.reason = self.reason or reason


async def run_bounded(items: List[T],
                      worker: Callable[[T], Awaitable[OperationOutcome]],
                      on_error: Callable[[T, Exception], OperationOutcome],
                      on_skip: Callable[[T, str], OperationOutcome],
                      limit: int = 2,
                      abort: Optional[BatchAbort] = None) -> List[OperationOutcome]:
    """
    Run ``worker`` for every item with at most ``limit`` running at once.

    Items start in the order given and results come back in that order.
    An error in one item becomes that item's outcome and never stops the
    others. If the batch is aborted or cancelled, items already running
    finish normally and items not yet started are reported as skipped.

    Args:
        items: Work items, usually wallets
        worker: Coroutine producing the outcome for one item
        on_error: Builds a failed outcome from an unexpected exception
        on_skip: Builds a skipped outcome for an item that never started
        limit: Maximum concurrent workers
        abort: Optional shared stop flag

    Returns:
        One outcome per item, in input order
    """
    abort = abort or BatchAbort()
    semaphore = asyncio.Semaphore(max(1, limit))

    async def guarded(item: T) -> OperationOutcome:
        async with semaphore:
            if abort.is_aborted:
                return on_skip(item, abort.reason or "batch aborted")
            try:
                return await worker(item)
            except Exception as e:
                logger.exception(f"Unhandled error in batch item: {e}")
                return on_error(item, e)

    tasks = [asyncio.ensure_future(guarded(item)) for item in items]
    if not tasks:
        return []

    try:
        await asyncio.wait(tasks)
    except asyncio.CancelledError:
        abort.abort("batch cancelled")
        # In-flight calls cannot be rolled back; let them finish.
        await asyncio.wait(tasks)
        raise

    return [task.result() for task in tasks]
