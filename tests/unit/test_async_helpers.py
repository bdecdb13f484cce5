"""Tests for async utility functions."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from autofix_loop.utils.async_helpers import (
    ApplicationError,
    AttemptTracker,
    AutofixError,
    CancellationToken,
    ConflictError,
    DetectionError,
    GenerationError,
    HourlyRateCounter,
    RateLimitedError,
    SecurityError,
    StaleStateError,
    StateCorruptedError,
    StateError,
    TimeoutError,
    ValidationError,
    WorkerPool,
    create_retry,
    with_timeout,
)


class TestCustomExceptions:
    """Test custom exception classes."""

    @pytest.mark.parametrize(
        "error_type",
        [
            DetectionError,
            GenerationError,
            ValidationError,
            ApplicationError,
            StateError,
            SecurityError,
            TimeoutError,
        ],
    )
    def test_inherits_from_base(self, error_type: type[Exception]) -> None:
        """Test every error derives from AutofixError."""
        assert issubclass(error_type, AutofixError)

    def test_rate_limited_is_generation_error(self) -> None:
        """Test RateLimitedError carries retry_after."""
        error = RateLimitedError("budget spent", retry_after=12.5)
        assert isinstance(error, GenerationError)
        assert error.retry_after == 12.5

    def test_rate_limited_without_retry_after(self) -> None:
        """Test retry_after defaults to None."""
        assert RateLimitedError("budget spent").retry_after is None

    def test_state_errors(self) -> None:
        """Test state error hierarchy."""
        assert issubclass(StaleStateError, StateError)
        assert issubclass(StateCorruptedError, StateError)
        assert issubclass(ConflictError, ApplicationError)


class TestRetryDecorator:
    """Test retry decorator functionality."""

    async def test_retries_on_timeout(self) -> None:
        """Test retry on httpx.TimeoutException."""
        call_count = 0

        @create_retry(max_attempts=3, min_wait=0.01, max_wait=0.02)
        async def flaky_call() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.TimeoutException("timeout")
            return "success"

        assert await flaky_call() == "success"
        assert call_count == 3

    async def test_gives_up_after_max_attempts(self) -> None:
        """Test that retry stops after max attempts and re-raises."""
        call_count = 0

        @create_retry(max_attempts=2, min_wait=0.01, max_wait=0.02)
        async def always_fails() -> str:
            nonlocal call_count
            call_count += 1
            raise httpx.NetworkError("down")

        with pytest.raises(httpx.NetworkError):
            await always_fails()
        assert call_count == 2

    async def test_does_not_retry_other_exceptions(self) -> None:
        """Test that non-retryable exceptions are not retried."""
        call_count = 0

        @create_retry(max_attempts=3, min_wait=0.01, max_wait=0.02)
        async def raises_value_error() -> str:
            nonlocal call_count
            call_count += 1
            raise ValueError("not retryable")

        with pytest.raises(ValueError):
            await raises_value_error()
        assert call_count == 1


class TestHourlyRateCounter:
    """Test the rolling request counter."""

    def test_grants_up_to_limit(self, clock) -> None:
        """Test requests beyond the limit are refused."""
        counter = HourlyRateCounter(limit=2, clock=clock)

        assert counter.try_acquire()
        assert counter.try_acquire()
        assert not counter.try_acquire()
        assert counter.used == 2

    def test_window_rolls(self, clock) -> None:
        """Test grants age out of the window."""
        counter = HourlyRateCounter(limit=1, window=60.0, clock=clock)
        counter.try_acquire()
        clock.advance(30.0)

        assert not counter.try_acquire()
        assert counter.retry_after() == pytest.approx(30.0)

        clock.advance(30.0)
        assert counter.try_acquire()

    def test_retry_after_zero_with_room(self, clock) -> None:
        """Test retry_after is zero while the window has room."""
        counter = HourlyRateCounter(limit=3, clock=clock)
        counter.try_acquire()

        assert counter.retry_after() == 0.0


class TestTimeoutUtilities:
    """Test timeout utilities."""

    async def test_with_timeout_succeeds(self) -> None:
        """Test with_timeout returns the result."""

        async def fast() -> str:
            return "done"

        assert await with_timeout(fast(), timeout=1.0) == "done"

    async def test_with_timeout_times_out(self) -> None:
        """Test with_timeout raises our TimeoutError."""

        async def slow() -> str:
            await asyncio.sleep(10)
            return "never"

        with pytest.raises(TimeoutError, match="custom message"):
            await with_timeout(slow(), timeout=0.01, error_message="custom message")


class TestCancellationToken:
    """Test CancellationToken."""

    def test_initial_state(self) -> None:
        """Test token starts uncancelled."""
        token = CancellationToken()
        assert not token.is_cancelled
        assert token.reason == ""

    def test_first_reason_wins(self) -> None:
        """Test cancelling twice keeps the first reason."""
        token = CancellationToken()
        token.cancel("received SIGTERM")
        token.cancel("received SIGINT")

        assert token.is_cancelled
        assert token.reason == "received SIGTERM"

    async def test_wait_completes_on_cancel(self) -> None:
        """Test wait returns once cancelled."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        await asyncio.wait_for(token.wait(), timeout=1.0)
        assert token.is_cancelled


class TestWorkerPool:
    """Test the bounded worker pool."""

    async def test_results_in_input_order(self) -> None:
        """Test results come back in input order regardless of finish order."""

        async def work(n: int) -> int:
            await asyncio.sleep(0.001 * (5 - n))
            return n * 10

        pool: WorkerPool[int, int] = WorkerPool(work, size=3)

        assert await pool.map(range(5)) == [0, 10, 20, 30, 40]

    async def test_concurrency_is_bounded(self) -> None:
        """Test no more than size workers run at once."""

        async def work(n: int) -> int:
            await asyncio.sleep(0.005)
            return n

        pool: WorkerPool[int, int] = WorkerPool(work, size=2)
        await pool.map(range(8))

        assert pool.peak_concurrency == 2

    async def test_exceptions_returned_in_place(self) -> None:
        """Test a failing item does not affect the others."""

        async def work(n: int) -> int:
            if n == 1:
                raise ValueError("bad item")
            return n

        pool: WorkerPool[int, int] = WorkerPool(work, size=2)
        results = await pool.map([0, 1, 2])

        assert results[0] == 0
        assert isinstance(results[1], ValueError)
        assert results[2] == 2

    async def test_empty_input(self) -> None:
        """Test an empty batch returns an empty list."""

        async def work(n: int) -> int:
            return n

        assert await WorkerPool(work, size=2).map([]) == []

    def test_size_must_be_positive(self) -> None:
        """Test a zero-sized pool is rejected."""

        async def work(n: int) -> int:
            return n

        with pytest.raises(ValueError):
            WorkerPool(work, size=0)


class TestAttemptTracker:
    """Test per-key attempt counting."""

    async def test_record_and_exhaust(self) -> None:
        """Test a key is exhausted after max_attempts records."""
        tracker = AttemptTracker(max_attempts=2)

        assert await tracker.record("k") == 1
        assert not await tracker.is_exhausted("k")
        assert await tracker.record("k") == 2
        assert await tracker.is_exhausted("k")
        assert tracker.count("other") == 0

    async def test_concurrent_records_are_not_lost(self) -> None:
        """Test concurrent workers each get counted."""
        tracker = AttemptTracker(max_attempts=100)

        await asyncio.gather(*(tracker.record("k") for _ in range(20)))

        assert tracker.count("k") == 20

    async def test_snapshot_and_restore(self) -> None:
        """Test counters survive a snapshot round trip."""
        tracker = AttemptTracker(max_attempts=3)
        await tracker.record("a")
        restored = AttemptTracker(max_attempts=3)
        restored.restore(tracker.snapshot())

        assert restored.count("a") == 1
