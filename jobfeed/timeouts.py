"""Deadline and retry combinators used by every tier and adapter."""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from tenacity import (AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt,
                      wait_exponential)

from .errors import TierTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _consume_outcome(task: asyncio.Future) -> None:
    # Abandoned work may still fail later; retrieve it so asyncio stays quiet.
    if not task.cancelled():
        task.exception()


def _abandon(task: asyncio.Future) -> None:
    task.cancel()
    task.add_done_callback(_consume_outcome)


async def with_timeout(awaitable: Awaitable[T], timeout_ms: float, tier: str) -> T:
    """Race an awaitable against a timer.

    On expiry the underlying task is cancelled and abandoned: it is never
    awaited again, so work that ignores cancellation (threads, browser
    sessions) cannot hold the caller past its deadline.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        _abandon(task)
        raise

    if task in done:
        return task.result()

    _abandon(task)
    raise TierTimeout(tier, timeout_ms)


async def gather_within(awaitables: Sequence[Awaitable[T]], timeout_ms: float,
                        tier: str) -> List[Optional[T]]:
    """Run awaitables concurrently under one shared deadline.

    Returns one slot per awaitable, in input order: the result if it landed
    before the deadline, otherwise None. Failed awaitables are logged and
    also yield None. Anything still pending at the deadline is abandoned.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    if not tasks:
        return []

    try:
        done, pending = await asyncio.wait(tasks, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        for task in tasks:
            _abandon(task)
        raise

    if pending:
        logger.warning(f"[{tier}] {len(pending)} of {len(tasks)} calls still running after "
                       f"{timeout_ms:.0f}ms, abandoning them")
        for task in pending:
            _abandon(task)

    results: List[Optional[T]] = []
    for task in tasks:
        if task not in done:
            results.append(None)
        elif task.exception() is not None:
            logger.error(f"[{tier}] call failed: {task.exception()}")
            results.append(None)
        else:
            results.append(task.result())
    return results


async def retry_with_backoff(operation: Callable[[], Awaitable[T]], attempts: int = 3,
                             base_delay: float = 1.0, max_delay: float = 10.0,
                             retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                             label: str = 'operation') -> T:
    """Run `operation` up to `attempts` times with exponential backoff; the last error is re-raised."""
    def log_retry(state: RetryCallState):
        logger.warning(f"[Retry] {label} failed (attempt {state.attempt_number}/{attempts}): "
                       f"{state.outcome.exception()}")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
