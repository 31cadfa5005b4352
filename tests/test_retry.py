"""Tests for conveyor/core/resilience/retry.py."""
import asyncio
import time

import pytest

from conveyor.core.context import Context
from conveyor.core.errors import ErrorCode, Ok, queue_closed
from conveyor.core.resilience.circuit_breaker import CircuitBreaker, CircuitState
from conveyor.core.resilience.limiter import ConcurrencyLimiter
from conveyor.core.resilience.retry import (
    BackoffStrategy,
    RetryExecutor,
    RetryPolicy,
    retryable,
)


class Flaky:
    """Fails ``failures`` times, then succeeds. Records call times."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls: list[float] = []
        self.name = "flaky"

    async def call(self, ctx, payload):
        self.calls.append(time.monotonic())
        if len(self.calls) <= self.failures:
            raise ConnectionError(f"fail {len(self.calls)}")
        return "ok"


class TestRetryPolicy:

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_shrinking_multiplier(self):
        with pytest.raises(ValueError):
            RetryPolicy(multiplier=0.5)

    def test_exponential_delays_with_cap(self):
        executor = RetryExecutor(RetryPolicy(base_delay_seconds=0.1, multiplier=2, max_delay_seconds=0.25))
        delays = [executor.delay_for(attempt) for attempt in range(1, 5)]
        assert delays == pytest.approx([0.1, 0.2, 0.25, 0.25])

    def test_constant_and_linear(self):
        constant = RetryExecutor(RetryPolicy(base_delay_seconds=0.1, strategy=BackoffStrategy.CONSTANT))
        linear = RetryExecutor(RetryPolicy(base_delay_seconds=0.1, strategy=BackoffStrategy.LINEAR))
        assert [constant.delay_for(a) for a in (1, 2, 3)] == pytest.approx([0.1, 0.1, 0.1])
        assert [linear.delay_for(a) for a in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.3])

    def test_jitter_stays_in_range(self):
        executor = RetryExecutor(RetryPolicy(
            base_delay_seconds=1.0,
            strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            jitter_factor=0.5,
        ))
        for _ in range(50):
            assert 0.75 <= executor.delay_for(1) <= 1.25

    def test_decorrelated_jitter_respects_cap(self):
        executor = RetryExecutor(RetryPolicy(
            base_delay_seconds=0.1,
            max_delay_seconds=0.5,
            strategy=BackoffStrategy.DECORRELATED_JITTER,
        ))
        previous = None
        for attempt in range(1, 10):
            previous = executor.delay_for(attempt, previous)
            assert 0.1 <= previous <= 0.5


class TestRetryExecutor:

    @pytest.mark.asyncio
    async def test_backoff_schedule_and_exhaustion(self):
        flaky = Flaky(failures=10)
        executor = RetryExecutor(RetryPolicy(max_attempts=4, base_delay_seconds=0.1, multiplier=2))

        outcome = await executor.run(Context.background(), flaky)

        assert outcome.attempt_count == 4
        assert len(flaky.calls) == 4
        assert [a.delay_seconds for a in outcome.attempts] == pytest.approx([0.1, 0.2, 0.4, 0.0])
        gaps = [later - earlier for earlier, later in zip(flaky.calls, flaky.calls[1:])]
        for gap, expected in zip(gaps, [0.1, 0.2, 0.4]):
            assert expected - 0.01 <= gap <= expected + 0.3

        error = outcome.result.unwrap_err()
        assert error.code == ErrorCode.E7020_RETRIES_EXHAUSTED
        assert error.metadata["attempts"] == 4
        assert error.inner.code == ErrorCode.E1011_EXTERNAL_SERVICE_ERROR
        assert error.inner.message == "fail 4"
        assert error.has_code(ErrorCode.E1011_EXTERNAL_SERVICE_ERROR)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        flaky = Flaky(failures=2)
        executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay_seconds=0.01))

        outcome = await executor.run(Context.background(), flaky)

        assert outcome.result == Ok("ok")
        assert outcome.attempt_count == 3
        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_single_attempt_passes_error_through(self):
        executor = RetryExecutor(RetryPolicy(max_attempts=1))

        result = await executor.execute(Context.background(), Flaky(failures=1))

        assert result.unwrap_err().code == ErrorCode.E1011_EXTERNAL_SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_non_retryable_error_returns_immediately(self):
        calls = 0

        async def closed(ctx, payload):
            nonlocal calls
            calls += 1
            return queue_closed("downstream")

        executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay_seconds=0.01))
        result = await executor.execute(Context.background(), closed)

        assert result.unwrap_err().code == ErrorCode.E7010_QUEUE_CLOSED
        assert calls == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []

        async def on_retry(attempt, error, delay):
            seen.append((attempt, error.code, delay))

        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=0.01))
        await executor.run(Context.background(), Flaky(failures=5), on_retry=on_retry)

        assert [s[0] for s in seen] == [1, 2]
        assert all(s[1] == ErrorCode.E1011_EXTERNAL_SERVICE_ERROR for s in seen)

    @pytest.mark.asyncio
    async def test_attempt_timeout(self):
        async def hangs(ctx, payload):
            await asyncio.sleep(5)

        executor = RetryExecutor(RetryPolicy(
            max_attempts=2,
            base_delay_seconds=0.01,
            attempt_timeout_seconds=0.05,
        ))
        result = await executor.execute(Context.background(), hangs)

        error = result.unwrap_err()
        assert error.code == ErrorCode.E7020_RETRIES_EXHAUSTED
        assert error.inner.code == ErrorCode.E1002_TIMEOUT


class TestRetryWithBreaker:

    @pytest.mark.asyncio
    async def test_rejection_does_not_consume_attempts(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=30)
        await breaker.call(Context.background(), Flaky(failures=1))
        flaky = Flaky(failures=0)

        outcome = await RetryExecutor(RetryPolicy(max_attempts=3)).run(Context.background(), flaky, breaker)

        assert outcome.result.unwrap_err().code == ErrorCode.E1012_CIRCUIT_OPEN
        assert outcome.attempt_count == 0
        assert flaky.calls == []

    @pytest.mark.asyncio
    async def test_breaker_opening_mid_retry_stops_retries(self):
        breaker = CircuitBreaker.create(failure_threshold=2, open_duration_seconds=30)
        flaky = Flaky(failures=10)
        executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay_seconds=0.01))

        outcome = await executor.run(Context.background(), flaky, breaker)

        assert outcome.result.unwrap_err().code == ErrorCode.E1012_CIRCUIT_OPEN
        assert outcome.attempt_count == 2
        assert len(flaky.calls) == 2

    @pytest.mark.asyncio
    async def test_every_outcome_is_reported(self):
        breaker = CircuitBreaker.create(failure_threshold=10, open_duration_seconds=30)
        executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay_seconds=0.01))

        await executor.run(Context.background(), Flaky(failures=2), breaker)

        stats = breaker.stats
        assert stats.total_failures == 2
        assert stats.total_successes == 1
        assert stats.failure_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_while_recording_outcome_frees_the_slot(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=0.05)
        await breaker.call(Context.background(), Flaky(failures=1))
        await asyncio.sleep(0.08)
        finished = asyncio.Event()

        async def recovering(ctx, payload):
            await finished.wait()
            return "ok"

        running = asyncio.create_task(RetryExecutor(RetryPolicy(max_attempts=1)).run(
            Context.background(), recovering, breaker,
        ))
        await asyncio.sleep(0.01)
        async with breaker._lock:
            finished.set()
            await asyncio.sleep(0.01)
            running.cancel()
            with pytest.raises(asyncio.CancelledError):
                await running

        outcome = await RetryExecutor(RetryPolicy(max_attempts=1)).run(Context.background(), Flaky(failures=0), breaker)
        assert outcome.result.is_ok()
        assert breaker.state == CircuitState.CLOSED


class TestRetryCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        ctx = Context.background()
        asyncio.get_running_loop().call_later(0.05, ctx.cancel)
        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=10))

        start = time.monotonic()
        outcome = await executor.run(ctx, Flaky(failures=5))

        assert outcome.result.unwrap_err().code == ErrorCode.E7001_CANCELLED
        assert outcome.attempt_count == 1
        assert time.monotonic() - start < 1.0

    @pytest.mark.asyncio
    async def test_deadline_during_backoff(self):
        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=10))

        outcome = await executor.run(Context.with_timeout(0.05), Flaky(failures=5))

        assert outcome.result.unwrap_err().code == ErrorCode.E7002_DEADLINE_EXCEEDED

    @pytest.mark.asyncio
    async def test_done_context_makes_no_attempt(self):
        ctx = Context.background()
        ctx.cancel()
        flaky = Flaky(failures=0)

        outcome = await RetryExecutor().run(ctx, flaky)

        assert outcome.result.unwrap_err().code == ErrorCode.E7001_CANCELLED
        assert flaky.calls == []


class TestRetryWithLimiter:

    @pytest.mark.asyncio
    async def test_limiter_bounds_concurrent_attempts(self):
        limiter = ConcurrencyLimiter(1)
        executor = RetryExecutor(RetryPolicy(max_attempts=2, base_delay_seconds=0.01), limiter=limiter)
        in_flight = 0
        peak = 0

        async def tracked(ctx, payload):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return payload

        results = await asyncio.gather(*(
            executor.execute(Context.background(), tracked, payload=i) for i in range(4)
        ))

        assert [r.unwrap() for r in results] == [0, 1, 2, 3]
        assert peak == 1
        assert limiter.in_use == 0


class TestRetryableDecorator:

    @pytest.mark.asyncio
    async def test_wraps_function(self):
        calls = 0

        @retryable(RetryPolicy(max_attempts=3, base_delay_seconds=0.01))
        async def fetch(ctx, symbol, *, currency="EUR"):
            nonlocal calls
            calls += 1
            if calls < 2:
                raise TimeoutError("slow")
            return f"{symbol}/{currency}"

        assert await fetch(Context.background(), "ACME", currency="USD") == Ok("ACME/USD")
        assert calls == 2
