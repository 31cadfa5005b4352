"""Tests for conveyor/core/resilience/limiter.py."""
import asyncio
import time

import pytest
from hypothesis import given, settings as hyp_settings, strategies as st

from conveyor.core.context import Context
from conveyor.core.errors import AppErrorException, ErrorCode, Ok
from conveyor.core.resilience.limiter import ConcurrencyLimiter


class TestLimiterCapacity:

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    @hyp_settings(max_examples=25, deadline=None)
    @given(capacity=st.integers(min_value=1, max_value=8), tasks=st.integers(min_value=1, max_value=40))
    def test_in_flight_never_exceeds_capacity(self, capacity, tasks):
        async def scenario():
            limiter = ConcurrencyLimiter(capacity)
            ctx = Context.background()
            in_flight = 0
            peak = 0

            async def work():
                nonlocal in_flight, peak
                acquired = await limiter.acquire(ctx)
                assert acquired.is_ok()
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0)
                in_flight -= 1
                limiter.release()

            await asyncio.gather(*(work() for _ in range(tasks)))
            return peak, limiter.stats

        peak, stats = asyncio.run(scenario())

        assert peak <= capacity
        assert stats.peak_in_use <= capacity
        assert stats.in_use == 0
        assert stats.total_acquired == tasks

    def test_release_without_acquire_raises(self):
        limiter = ConcurrencyLimiter(2)
        with pytest.raises(RuntimeError):
            limiter.release()


class TestLimiterCancellation:

    @pytest.mark.asyncio
    async def test_blocked_acquire_returns_at_deadline(self):
        limiter = ConcurrencyLimiter(1)
        assert (await limiter.acquire(Context.background())).is_ok()

        start = time.monotonic()
        result = await limiter.acquire(Context.with_timeout(0.05))

        assert result.unwrap_err().code == ErrorCode.E7002_DEADLINE_EXCEEDED
        assert time.monotonic() - start < 0.5
        assert limiter.stats.total_rejected == 1
        assert limiter.in_use == 1

    @pytest.mark.asyncio
    async def test_blocked_acquire_returns_on_cancel(self):
        limiter = ConcurrencyLimiter(1)
        await limiter.acquire(Context.background())
        ctx = Context.background()
        asyncio.get_running_loop().call_later(0.02, ctx.cancel)

        result = await limiter.acquire(ctx)

        assert result.unwrap_err().code == ErrorCode.E7001_CANCELLED

    @pytest.mark.asyncio
    async def test_aborted_waiter_does_not_leak_a_token(self):
        limiter = ConcurrencyLimiter(1)
        await limiter.acquire(Context.background())
        await limiter.acquire(Context.with_timeout(0.02))

        limiter.release()

        assert (await limiter.acquire(Context.with_timeout(0.5))).is_ok()
        assert limiter.in_use == 1

    @pytest.mark.asyncio
    async def test_caller_cancelled_after_grant_returns_the_token(self):
        limiter = ConcurrencyLimiter(1)
        await limiter.acquire(Context.background())
        waiter = asyncio.create_task(limiter.acquire(Context.background()))
        await asyncio.sleep(0.01)

        # The permit reaches the waiter's inner acquisition before the waiter resumes.
        limiter.release()
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0)

        assert limiter.in_use == 0
        assert (await limiter.acquire(Context.with_timeout(0.2))).is_ok()
        assert limiter.in_use == 1


class TestLimiterHelpers:

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        limiter = ConcurrencyLimiter(1)
        with pytest.raises(ValueError):
            async with limiter.hold(Context.background()):
                assert limiter.in_use == 1
                raise ValueError("boom")
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_hold_raises_when_context_done(self):
        limiter = ConcurrencyLimiter(1)
        ctx = Context.background()
        ctx.cancel()

        with pytest.raises(AppErrorException) as exc_info:
            async with limiter.hold(ctx):
                pytest.fail("body must not run")

        assert exc_info.value.code == ErrorCode.E7001_CANCELLED
        assert limiter.in_use == 0

    @pytest.mark.asyncio
    async def test_guard_returns_inner_result(self):
        limiter = ConcurrencyLimiter(1)

        async def compute():
            assert limiter.in_use == 1
            return Ok(42)

        assert await limiter.guard(Context.background(), compute) == Ok(42)
        assert limiter.in_use == 0
        assert limiter.stats.available == 1
