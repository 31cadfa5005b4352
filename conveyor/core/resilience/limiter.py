"""Concurrency Limiter

Token-based bound on simultaneously active operations. Tokens are the
permits of an ``asyncio.BoundedSemaphore``; waiting for one is a
cancellable suspension point.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from conveyor.core.context import Context
from conveyor.core.errors import AppError, Err, Ok, Result, raise_error
from conveyor.core.logging import get_logger

T = TypeVar("T")

log = get_logger("conveyor.limiter")


@dataclass
class LimiterStats:
    """Point-in-time limiter counters."""
    capacity: int
    in_use: int
    peak_in_use: int
    total_acquired: int
    total_rejected: int

    @property
    def available(self) -> int:
        return self.capacity - self.in_use


class ConcurrencyLimiter:
    """Fixed-capacity limiter with cancellable acquisition.

    Every successful ``acquire`` must be paired with exactly one
    ``release``. Prefer ``hold`` or ``guard``, which release on every exit
    path including cancellation.

    Usage:
        limiter = ConcurrencyLimiter(8)

        async with limiter.hold(ctx):
            await call_downstream()
    """

    def __init__(self, capacity: int, name: str = "limiter"):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.name = name
        self._capacity = capacity
        self._semaphore = asyncio.BoundedSemaphore(capacity)
        self._in_use = 0
        self._peak_in_use = 0
        self._total_acquired = 0
        self._total_rejected = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def stats(self) -> LimiterStats:
        return LimiterStats(
            capacity=self._capacity,
            in_use=self._in_use,
            peak_in_use=self._peak_in_use,
            total_acquired=self._total_acquired,
            total_rejected=self._total_rejected,
        )

    async def acquire(self, ctx: Context) -> Result[None, AppError]:
        """Wait for a token or until ``ctx`` is done."""
        # A permit granted after the caller was cancelled goes straight back.
        result = await ctx.run(
            self._semaphore.acquire(),
            on_abandoned=lambda _: self._semaphore.release(),
        )
        if result.is_err():
            self._total_rejected += 1
            log.debug(
                "limiter_acquire_aborted",
                limiter=self.name,
                error_code=result.unwrap_err().code.name,
            )
            return result  # type: ignore
        self._in_use += 1
        self._total_acquired += 1
        self._peak_in_use = max(self._peak_in_use, self._in_use)
        return Ok(None)

    def release(self) -> None:
        """Return a token. Raises RuntimeError if none is outstanding."""
        if self._in_use == 0:
            raise RuntimeError(f"Limiter '{self.name}' released more times than acquired")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def hold(self, ctx: Context) -> AsyncIterator[ConcurrencyLimiter]:
        """Hold one token for the body of an ``async with`` block.

        Raises AppErrorException if the token cannot be acquired.
        """
        acquired = await self.acquire(ctx)
        if acquired.is_err():
            raise_error(acquired.unwrap_err())
        try:
            yield self
        finally:
            self.release()

    async def guard(
        self,
        ctx: Context,
        fn: Callable[[], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        """Run ``fn`` while holding a token and return its Result."""
        acquired = await self.acquire(ctx)
        if acquired.is_err():
            return Err(acquired.unwrap_err())
        try:
            return await fn()
        finally:
            self.release()
