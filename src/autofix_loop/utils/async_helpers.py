"""Async utility functions for the remediation loop.

This module provides:
- The error taxonomy shared by every component
- Retry decorators with exponential backoff
- A rolling hourly request counter
- Timeout wrappers for async operations
- A fixed-size worker pool with queue backpressure
- A lock-guarded per-key attempt counter
"""

from __future__ import annotations

import asyncio
import builtins
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, ParamSpec, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")
R = TypeVar("R")


# =============================================================================
# Custom Exceptions
# =============================================================================


class AutofixError(Exception):
    """Base exception for all remediation loop errors."""


class DetectionError(AutofixError):
    """Malformed report from the instrumented target."""


class GenerationError(AutofixError):
    """The fix-generation oracle failed or returned garbage."""


class RateLimitedError(GenerationError):
    """Hourly generation budget exhausted.

    Attributes:
        retry_after: Number of seconds until the budget frees up, if known.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ValidationError(AutofixError):
    """A validation check raised instead of returning a result."""


class ApplicationError(AutofixError):
    """Writing or patching a target artifact failed."""


class ConflictError(ApplicationError):
    """Two patches cannot both be applied to the same file."""


class StateError(AutofixError):
    """Problem with the persisted loop state."""


class StaleStateError(StateError):
    """A previous run left unresolved state behind."""


class StateCorruptedError(StateError):
    """The state file cannot be trusted."""


class SecurityError(AutofixError):
    """Security violation detected."""


class TimeoutError(AutofixError):
    """Operation timed out."""


# =============================================================================
# Retry Decorator
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    if retry_state.outcome is None:
        return

    exception = retry_state.outcome.exception()
    if exception:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )


def create_retry(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    retry_on: tuple[type[Exception], ...] = (httpx.TimeoutException, httpx.NetworkError),
    exponential_base: float = 2.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Create a customized retry decorator.

    Args:
        max_attempts: Maximum number of attempts.
        min_wait: Minimum wait time between retries (seconds).
        max_wait: Maximum wait time between retries (seconds).
        retry_on: Tuple of exception types to retry on.
        exponential_base: Growth factor between successive waits.

    Returns:
        A retry decorator configured with the given parameters.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait, exp_base=exponential_base),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


# =============================================================================
# Rolling Rate Counter
# =============================================================================


class HourlyRateCounter:
    """Rolling-window request counter that refuses instead of waiting.

    Unlike a token bucket, nothing is queued: once ``limit`` requests were
    granted inside the trailing window, ``try_acquire`` returns False until
    the oldest grant ages out.

    Example:
        counter = HourlyRateCounter(limit=100)
        if not counter.try_acquire():
            raise RateLimitedError("budget spent", counter.retry_after())
    """

    def __init__(
        self,
        limit: int,
        window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the counter.

        Args:
            limit: Requests allowed per window.
            window: Window length in seconds.
            clock: Monotonic time source.
        """
        self._limit = limit
        self._window = window
        self._clock = clock
        self._grants: deque[float] = deque()

    @property
    def limit(self) -> int:
        """Return the configured limit."""
        return self._limit

    def _expire(self, now: float) -> None:
        while self._grants and now - self._grants[0] >= self._window:
            self._grants.popleft()

    @property
    def used(self) -> int:
        """Requests granted inside the current window."""
        self._expire(self._clock())
        return len(self._grants)

    def try_acquire(self) -> bool:
        """Record one request if the window has room.

        Returns:
            True if the request was granted, False if the limit is reached.
        """
        now = self._clock()
        self._expire(now)
        if len(self._grants) >= self._limit:
            return False
        self._grants.append(now)
        return True

    def retry_after(self) -> float:
        """Seconds until the next request would be granted."""
        now = self._clock()
        self._expire(now)
        if len(self._grants) < self._limit:
            return 0.0
        return max(0.0, self._window - (now - self._grants[0]))


# =============================================================================
# Timeout Utilities
# =============================================================================


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
) -> T:
    """Execute an awaitable with a timeout.

    Args:
        coro: The coroutine to execute.
        timeout: Timeout in seconds.
        error_message: Custom error message for timeout.

    Returns:
        The result of the coroutine.

    Raises:
        TimeoutError: If the operation times out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError as e:
        msg = error_message or f"Operation timed out after {timeout}s"
        log.warning("operation_timeout", timeout=timeout)
        raise TimeoutError(msg) from e


# =============================================================================
# Cancellation Utilities
# =============================================================================


class CancellationToken:
    """Token for cooperative cancellation of async operations.

    Example:
        token = CancellationToken()

        async def worker(token: CancellationToken):
            while not token.is_cancelled:
                await do_work()

        # Cancel from elsewhere
        token.cancel("operator requested stop")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled

    @property
    def reason(self) -> str:
        """Why cancellation was requested."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        if not self._cancelled:
            self._reason = reason
        self._cancelled = True
        self._event.set()

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()


# =============================================================================
# Worker Pool
# =============================================================================


_STOP = object()


class WorkerPool(Generic[T, R]):
    """Fixed-size pool of workers consuming from a bounded task queue.

    ``map`` feeds items into an ``asyncio.Queue`` whose ``put`` blocks while
    the queue is full, so producers never run ahead of the workers. Each
    result (or the exception its task raised) is delivered through a future
    and returned in input order.

    Example:
        pool = WorkerPool(process_error, size=3)
        results = await pool.map(errors)
    """

    def __init__(
        self,
        worker: Callable[[T], Awaitable[R]],
        size: int = 3,
        queue_size: int | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            worker: Coroutine function run for each item.
            size: Number of concurrent workers.
            queue_size: Pending-task capacity (defaults to ``size``).
        """
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self._worker = worker
        self._size = size
        self._queue_size = queue_size or size
        self._active = 0
        self._peak = 0

    @property
    def size(self) -> int:
        """Return the number of workers."""
        return self._size

    @property
    def peak_concurrency(self) -> int:
        """Highest number of tasks observed running at once."""
        return self._peak

    async def _run_worker(
        self,
        queue: asyncio.Queue[Any],
    ) -> None:
        while True:
            entry = await queue.get()
            try:
                if entry is _STOP:
                    return
                item, future = entry
                self._active += 1
                self._peak = max(self._peak, self._active)
                try:
                    future.set_result(await self._worker(item))
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    future.set_result(e)
                finally:
                    self._active -= 1
            finally:
                queue.task_done()

    async def map(self, items: Iterable[T]) -> list[R | Exception]:
        """Run the worker over every item.

        Args:
            items: Work items.

        Returns:
            One entry per item in input order: the worker's result, or the
            exception it raised.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._queue_size)
        workers = [asyncio.create_task(self._run_worker(queue)) for _ in range(self._size)]
        futures: list[asyncio.Future[R | Exception]] = []

        try:
            for item in items:
                future: asyncio.Future[R | Exception] = loop.create_future()
                futures.append(future)
                await queue.put((item, future))
            for _ in workers:
                await queue.put(_STOP)
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return [future.result() for future in futures]


# =============================================================================
# Attempt Tracking
# =============================================================================


class AttemptTracker:
    """Per-error-key attempt counter shared by concurrent workers.

    Example:
        tracker = AttemptTracker(max_attempts=3)
        attempt = await tracker.record("abc123")
        if await tracker.is_exhausted("abc123"):
            ...
    """

    def __init__(self, max_attempts: int = 3) -> None:
        self._max_attempts = max_attempts
        self._counts: dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def max_attempts(self) -> int:
        """Return the configured attempt budget."""
        return self._max_attempts

    async def record(self, key: str) -> int:
        """Count one attempt for ``key`` and return the new total."""
        async with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    async def is_exhausted(self, key: str) -> bool:
        """True once ``key`` has used its full budget."""
        async with self._lock:
            return self._counts.get(key, 0) >= self._max_attempts

    def count(self, key: str) -> int:
        """Attempts recorded for ``key``."""
        return self._counts.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        """Copy of all counters, for persistence."""
        return dict(self._counts)

    def restore(self, counts: dict[str, int]) -> None:
        """Replace all counters, used on resume."""
        self._counts = {str(k): int(v) for k, v in counts.items()}
