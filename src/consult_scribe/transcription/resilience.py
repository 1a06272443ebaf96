"""Timeout and retry helpers shared by network-bound components."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .config import TIMEOUT_RETRIES_PER_SESSION
from .exceptions import NetworkError, TranscriptionTimeoutError
from .logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TimeoutBudget:
    """Counts timeouts within one session.

    The first ``allowed`` timeouts are recoverable and earn a retry; any
    later timeout in the same session is fatal for the call that hit it.
    """

    def __init__(self, allowed: int = TIMEOUT_RETRIES_PER_SESSION) -> None:
        self.allowed = allowed
        self.timeouts = 0

    def record(self, operation: str, timeout: float) -> TranscriptionTimeoutError:
        self.timeouts += 1
        recoverable = self.timeouts <= self.allowed
        return TranscriptionTimeoutError(
            f"{operation} timed out after {timeout:.1f}s", recoverable=recoverable
        )

    def reset(self) -> None:
        self.timeouts = 0


async def call_with_timeout(
    factory: Callable[[], Awaitable[T]],
    timeout: float,
    budget: TimeoutBudget,
    operation: str,
) -> T:
    """
    Await a fresh coroutine from ``factory`` under a timeout.

    A recoverable timeout retries once with a new coroutine; a fatal one
    raises ``TranscriptionTimeoutError``.

    Args:
        factory: Callable returning the awaitable to run
        timeout: Seconds to wait per attempt
        budget: Session timeout budget
        operation: Human readable name used in messages

    Returns:
        The awaited result
    """
    while True:
        try:
            return await asyncio.wait_for(factory(), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = budget.record(operation, timeout)
            if not error.recoverable:
                logger.error(f"❌ {error}")
                raise error from e
            logger.warning(f"⚠️ {error}, retrying once")


async def retry_with_backoff(
    factory: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float,
    operation: str,
) -> T:
    """
    Run ``factory`` retrying recoverable ``NetworkError``s with linear backoff.

    The delay before retry ``n`` (0-based) is ``base_delay * (n + 1)``. Fatal
    errors, including fatal timeouts, propagate immediately.

    Args:
        factory: Callable returning the awaitable to run
        max_retries: Retries after the first attempt
        base_delay: Backoff unit in seconds
        operation: Human readable name used in messages

    Returns:
        The awaited result
    """
    last_error: NetworkError | None = None
    attempts = max_retries + 1

    for attempt in range(attempts):
        try:
            return await factory()
        except NetworkError as e:
            if not e.recoverable:
                raise
            last_error = e
            logger.warning(f"⚠️ {operation} failed on attempt {attempt + 1}/{attempts}: {e}")
            if attempt < attempts - 1:
                await asyncio.sleep(base_delay * (attempt + 1))

    raise NetworkError(f"{operation}: max retries exceeded after {attempts} attempts") from last_error
