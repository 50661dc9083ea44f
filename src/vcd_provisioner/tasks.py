"""Timeout budget, retry combinator and remote task polling.

Two composable concerns:

- retry(budget, fn) re-runs fn while it raises RetryableRemoteError, with
  exponential backoff and jitter, until the budget is spent.
- await_task(api, handle, budget) polls a remote task until it reaches a
  terminal status or the budget is spent.

Both are bounded by the same TimeoutBudget, so a busy object retried while
its tasks are slow still surfaces OperationTimeoutError after the configured
operation timeout, never an unbounded wait.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import (
    BUSY_MARKERS,
    FatalRemoteError,
    OperationTimeoutError,
    RetryableRemoteError,
    classify_remote_error,
)
from .remote import RemoteResourceAPI, TaskHandle, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fraction of the backoff added as random jitter
BACKOFF_JITTER_RATIO = 0.2


class TimeoutBudget:
    """Deadline shared by every blocking step of one remote operation."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._seconds = seconds
        self._clock = clock
        self._deadline = clock() + seconds

    @property
    def seconds(self) -> float:
        return self._seconds

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, operation: str) -> None:
        """Raise OperationTimeoutError when the budget is spent."""
        if self.expired:
            raise OperationTimeoutError(
                f"{operation} exceeded the {self._seconds}s timeout budget", operation
            )


async def bounded(call: Callable[[], Awaitable[T]], budget: TimeoutBudget, operation: str) -> T:
    """Await a single remote call within the remaining budget.

    Errors raised by the call are classified; a timeout surfaces as
    OperationTimeoutError.
    """
    budget.check(operation)
    try:
        return await asyncio.wait_for(call(), timeout=budget.remaining())
    except OperationTimeoutError:
        raise
    except TimeoutError as e:
        raise OperationTimeoutError(
            f"{operation} exceeded the {budget.seconds}s timeout budget", operation
        ) from e
    except Exception as e:
        classified = classify_remote_error(e)
        if classified is e:
            raise
        raise classified from e


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with jitter for a 1-based attempt number."""
    backoff = min(maximum, base * (2 ** (attempt - 1)))
    return backoff + random.uniform(0, backoff * BACKOFF_JITTER_RATIO)


async def retry(
    budget: TimeoutBudget,
    fn: Callable[[], Awaitable[T]],
    operation: str,
    backoff_base: float = 3.0,
    backoff_max: float = 30.0,
) -> T:
    """Run fn, retrying while it raises RetryableRemoteError.

    Args:
        budget: Deadline bounding every attempt and every sleep.
        fn: Coroutine factory performing one attempt.
        operation: Human-readable name for logging and errors.
        backoff_base: First delay in seconds.
        backoff_max: Upper bound of a single delay.

    Raises:
        OperationTimeoutError: When the budget is spent while the object is
            still busy.
        ProvisionerError: Any non-retryable error raised by fn.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except RetryableRemoteError as e:
            wait_time = backoff_delay(attempt, backoff_base, backoff_max)
            remaining = budget.remaining()
            if remaining <= wait_time:
                logger.error(
                    "Retry budget exhausted",
                    extra={
                        "operation": operation,
                        "attempts": attempt,
                        "timeout_seconds": budget.seconds,
                        "error": str(e),
                    },
                )
                raise OperationTimeoutError(
                    f"{operation} still busy after {attempt} attempts "
                    f"within {budget.seconds}s: {e}",
                    operation,
                ) from e

            logger.warning(
                "Remote object busy, retrying",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "wait_seconds": wait_time,
                    "error": str(e),
                },
            )
            await asyncio.sleep(wait_time)


async def await_task(
    api: RemoteResourceAPI,
    handle: TaskHandle,
    budget: TimeoutBudget,
    poll_interval: float = 2.0,
) -> TaskResult:
    """Poll a remote task until it reaches a terminal status.

    Returns:
        The successful TaskResult.

    Raises:
        RetryableRemoteError: If the task failed because the object was busy.
        FatalRemoteError: If the task failed or was aborted.
        OperationTimeoutError: If the task did not finish within the budget.
    """
    operation = f"task {handle.task_id} ({handle.operation or 'unknown'})"
    while True:
        result = await bounded(lambda: api.task_status(handle), budget, operation)
        if result.status == TaskStatus.SUCCESS:
            logger.debug("Remote task completed", extra={"task_id": handle.task_id})
            return result
        if result.status.is_terminal:
            message = result.error_message or f"task ended with status {result.status.value}"
            busy = result.busy or any(m in message.lower() for m in BUSY_MARKERS)
            if busy and result.status == TaskStatus.ERROR:
                raise RetryableRemoteError(f"{operation}: {message}")
            raise FatalRemoteError(f"{operation}: {message}")

        remaining = budget.remaining()
        if remaining <= 0:
            budget.check(operation)
        await asyncio.sleep(min(poll_interval, remaining))
