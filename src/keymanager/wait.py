"""Bounded, cancellable polling.

The key service performs generation, import and destruction out-of-band
and only exposes progress through the key's state. Every multi-step
workflow therefore waits on a predicate through until().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .config import ConfigurationError

logger = logging.getLogger(__name__)

Predicate = Callable[[], Awaitable[bool]]
Sleeper = Callable[[float], Awaitable[None]]


class PollConfigurationError(ConfigurationError):
    """Raised when polling parameters are invalid."""

    pass


class PollTimeoutError(Exception):
    """Raised when the attempt budget is exhausted without success."""

    def __init__(
        self,
        operation: str,
        attempts: int,
        budget_seconds: float,
        key_id: str | None = None,
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.budget_seconds = budget_seconds
        self.key_id = key_id
        target = f" for key {key_id}" if key_id else ""
        super().__init__(
            f"Timed out waiting for {operation}{target} after {attempts} attempts "
            f"({budget_seconds:.1f}s)"
        )


class PollCancelledError(Exception):
    """Raised when a caller cancels a wait through its cancel event."""

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Cancelled waiting for {operation} after {attempts} attempts")


async def _wait_or_cancel(interval_seconds: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep for the interval. Returns True if the cancel event fired first."""
    if cancel_event is None:
        await asyncio.sleep(interval_seconds)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=interval_seconds)
    except TimeoutError:
        return False
    return True


async def until(
    interval_seconds: float,
    max_attempts: int,
    predicate: Predicate,
    *,
    operation: str = "condition",
    key_id: str | None = None,
    cancel_event: asyncio.Event | None = None,
    sleep: Sleeper | None = None,
) -> None:
    """Poll predicate until it returns True.

    The predicate is invoked at most max_attempts times with
    interval_seconds between invocations. There is no sleep after the
    final attempt. Exceptions raised by the predicate are not retried.

    Args:
        interval_seconds: Delay between attempts.
        max_attempts: Maximum number of predicate invocations.
        predicate: Async callable returning True when done.
        operation: Human-readable name used in errors and logs.
        key_id: Key the wait is about, if any.
        cancel_event: Aborts the wait when set.
        sleep: Replacement sleep coroutine (ignores cancel_event).

    Raises:
        PollConfigurationError: If interval or attempts are negative.
        PollTimeoutError: If the budget is exhausted.
        PollCancelledError: If cancel_event is set while waiting.
    """
    if interval_seconds < 0 or max_attempts < 0:
        raise PollConfigurationError(
            f"Invalid polling parameters for {operation}: "
            f"interval={interval_seconds}, attempts={max_attempts}"
        )

    start = time.monotonic()
    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise PollCancelledError(operation, attempt - 1)

        if await predicate():
            logger.debug(
                "Wait complete",
                extra={
                    "operation": operation,
                    "key_id": key_id,
                    "attempt": attempt,
                    "elapsed_seconds": time.monotonic() - start,
                },
            )
            return

        if attempt == max_attempts:
            break

        if sleep is not None:
            await sleep(interval_seconds)
        elif await _wait_or_cancel(interval_seconds, cancel_event):
            raise PollCancelledError(operation, attempt)

    raise PollTimeoutError(
        operation=operation,
        attempts=max_attempts,
        budget_seconds=interval_seconds * max_attempts,
        key_id=key_id,
    )
