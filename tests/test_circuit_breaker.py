"""Tests for conveyor/core/resilience/circuit_breaker.py."""
import asyncio

import pytest

from conveyor.core.context import Context
from conveyor.core.errors import ErrorCode, Ok, cancelled
from conveyor.core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)


class Downstream:
    """Operation whose outcome the test controls."""

    def __init__(self, fail: bool = True):
        self.fail = fail
        self.calls = 0
        self.name = "downstream"

    async def call(self, ctx, payload):
        self.calls += 1
        if self.fail:
            raise ConnectionError("connection refused")
        return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    failing = Downstream(fail=True)
    for _ in range(times):
        await breaker.call(Context.background(), failing)


class TestCircuitBreakerConfig:

    def test_rejects_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_rejects_negative_open_duration(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(open_duration_seconds=-1)


class TestClosedState:

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker.create(failure_threshold=3, open_duration_seconds=30)

        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        await trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.failure_count == 3

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self):
        breaker = CircuitBreaker.create(failure_threshold=3, open_duration_seconds=30)
        ctx = Context.background()

        await trip(breaker, 2)
        assert await breaker.call(ctx, Downstream(fail=False)) == Ok("ok")
        await trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failure_count == 2

    @pytest.mark.asyncio
    async def test_failure_is_returned_as_downstream_error(self):
        breaker = CircuitBreaker.create(failure_threshold=3, open_duration_seconds=30)

        result = await breaker.call(Context.background(), Downstream(fail=True))

        assert result.unwrap_err().code == ErrorCode.E1011_EXTERNAL_SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_cancellations_do_not_count(self):
        breaker = CircuitBreaker.create(failure_threshold=2, open_duration_seconds=30)

        async def gave_up(ctx, payload):
            return cancelled("caller left")

        for _ in range(5):
            await breaker.call(Context.background(), gave_up)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.total_failures == 0

    @pytest.mark.asyncio
    async def test_done_context_skips_the_call(self):
        breaker = CircuitBreaker()
        downstream = Downstream(fail=False)
        ctx = Context.background()
        ctx.cancel()

        result = await breaker.call(ctx, downstream)

        assert result.unwrap_err().code == ErrorCode.E7001_CANCELLED
        assert downstream.calls == 0


class TestOpenState:

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking(self):
        breaker = CircuitBreaker.create(failure_threshold=3, open_duration_seconds=30)
        await trip(breaker, 3)
        downstream = Downstream(fail=False)

        result = await breaker.call(Context.background(), downstream)

        error = result.unwrap_err()
        assert error.code == ErrorCode.E1012_CIRCUIT_OPEN
        assert error.metadata["retry_after"] > 0
        assert downstream.calls == 0
        assert breaker.stats.total_rejected == 1

    @pytest.mark.asyncio
    async def test_fallback_served_while_open(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=30)
        await trip(breaker, 1)

        async def cached():
            return "stale"

        result = await breaker.call_with_fallback(Context.background(), Downstream(fail=False), cached)

        assert result == Ok("stale")


class TestHalfOpenState:

    @pytest.mark.asyncio
    async def test_single_probe_under_concurrency(self, gate):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=0.05)
        await trip(breaker, 1)
        await asyncio.sleep(0.08)

        tasks = [
            asyncio.create_task(breaker.call(Context.background(), gate.op, payload=i))
            for i in range(5)
        ]
        await asyncio.sleep(0.02)
        assert breaker.state == CircuitState.HALF_OPEN
        gate.open()
        results = await asyncio.gather(*tasks)

        admitted = [r for r in results if r.is_ok()]
        rejected = [r for r in results if r.is_err()]
        assert len(admitted) == 1
        assert len(rejected) == 4
        assert all(r.unwrap_err().code == ErrorCode.E1012_CIRCUIT_OPEN for r in rejected)
        assert gate.entered == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_probe_success_closes_and_resets(self):
        breaker = CircuitBreaker.create(failure_threshold=2, open_duration_seconds=0.05)
        await trip(breaker, 2)
        await asyncio.sleep(0.08)

        assert await breaker.call(Context.background(), Downstream(fail=False)) == Ok("ok")

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failure_count == 0

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_and_restarts_timer(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=0.1)
        await trip(breaker, 1)
        await asyncio.sleep(0.15)

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        downstream = Downstream(fail=False)
        result = await breaker.call(Context.background(), downstream)
        assert result.unwrap_err().code == ErrorCode.E1012_CIRCUIT_OPEN
        assert downstream.calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_the_slot(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=0.05)
        await trip(breaker, 1)
        await asyncio.sleep(0.08)

        async def gave_up(ctx, payload):
            return cancelled()

        await breaker.call(Context.background(), gave_up)
        assert breaker.state == CircuitState.HALF_OPEN

        assert await breaker.call(Context.background(), Downstream(fail=False)) == Ok("ok")
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_while_recording_outcome_frees_the_slot(self):
        breaker = CircuitBreaker.create(failure_threshold=1, open_duration_seconds=0.05)
        await trip(breaker, 1)
        await asyncio.sleep(0.08)
        finished = asyncio.Event()

        async def recovering(ctx, payload):
            await finished.wait()
            return "ok"

        recovery = asyncio.create_task(breaker.call(Context.background(), recovering))
        await asyncio.sleep(0.01)
        async with breaker._lock:
            finished.set()
            await asyncio.sleep(0.01)
            recovery.cancel()
            with pytest.raises(asyncio.CancelledError):
                await recovery

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(Context.background(), Downstream(fail=False)) == Ok("ok")
        assert breaker.state == CircuitState.CLOSED
