"""Batch Accumulation

Groups individual work items into batches and hands each completed batch
to a consumer, either when it reaches capacity or when its oldest item
has waited ``max_wait_seconds``.

The current batch is swapped for a fresh one under the batcher's lock;
the consumer runs outside the lock, so an ``add`` arriving mid-flush
lands in the new batch and is never lost.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar
from uuid import uuid4

from conveyor.core.errors import AppError, Ok, Result, batcher_closed
from conveyor.core.logging import get_logger

T = TypeVar("T")

log = get_logger("conveyor.batch")


class FlushReason(Enum):
    """Why a batch was flushed."""
    SIZE = "size"
    TIMEOUT = "timeout"
    MANUAL = "manual"
    CLOSE = "close"


@dataclass(eq=False)
class Batch(Generic[T]):
    """Ordered, bounded collection of items awaiting dispatch.

    Mutated only by its Batcher. Sealed (items frozen to a tuple) when
    flushed; a sealed batch rejects further appends.
    """
    capacity: int
    batch_id: str = field(default_factory=lambda: str(uuid4())[:8])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _items: list[T] | tuple[T, ...] = field(default_factory=list, repr=False)
    _first_item_at: float | None = field(default=None, repr=False)
    flush_reason: FlushReason | None = None

    @property
    def items(self) -> tuple[T, ...]:
        return tuple(self._items)

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.capacity

    @property
    def sealed(self) -> bool:
        return self.flush_reason is not None

    @property
    def age_seconds(self) -> float:
        """Seconds since the first item was added (0 for an empty batch)."""
        if self._first_item_at is None:
            return 0.0
        return time.monotonic() - self._first_item_at

    def append(self, item: T) -> None:
        if self.sealed:
            raise RuntimeError(f"Batch {self.batch_id} was already flushed")
        if not self._items:
            self._first_item_at = time.monotonic()
        self._items.append(item)  # type: ignore[union-attr]

    def seal(self, reason: FlushReason) -> None:
        if self.sealed:
            raise RuntimeError(f"Batch {self.batch_id} was already flushed")
        self._items = tuple(self._items)
        self.flush_reason = reason

    def __iter__(self):
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


FlushFn = Callable[[Batch[T]], "Awaitable[None] | None"]


@dataclass
class BatcherStats:
    """Counters for a batcher."""
    pending: int
    batches_flushed: int
    items_flushed: int
    failed_flushes: int
    flushes_by_reason: dict[str, int]


class Batcher(Generic[T]):
    """Size- and time-bounded batch accumulator.

    ``flush_fn`` may be a plain function or a coroutine function; it
    receives each sealed Batch exactly once.

    Usage:
        async def write_rows(batch: Batch[Row]) -> None:
            await db.insert_many(batch.items)

        batcher = Batcher(capacity=100, max_wait_seconds=0.5, flush_fn=write_rows)
        await batcher.add(row)
        ...
        await batcher.close()
    """

    def __init__(
        self,
        capacity: int,
        max_wait_seconds: float,
        flush_fn: FlushFn,
        name: str = "batcher",
    ):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if max_wait_seconds <= 0:
            raise ValueError(f"max_wait_seconds must be positive, got {max_wait_seconds}")
        self.name = name
        self.capacity = capacity
        self.max_wait_seconds = max_wait_seconds
        self._flush_fn = flush_fn
        self._current: Batch[T] = Batch(capacity)
        self._timer: asyncio.Task | None = None
        self._closed = False
        self._lock = asyncio.Lock()
        self._batches_flushed = 0
        self._items_flushed = 0
        self._failed_flushes = 0
        self._by_reason: dict[str, int] = {reason.value: 0 for reason in FlushReason}

    @property
    def pending(self) -> int:
        return self._current.size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> BatcherStats:
        return BatcherStats(
            pending=self._current.size,
            batches_flushed=self._batches_flushed,
            items_flushed=self._items_flushed,
            failed_flushes=self._failed_flushes,
            flushes_by_reason=dict(self._by_reason),
        )

    def _start_timer(self, batch: Batch[T]) -> None:
        self._timer = asyncio.create_task(
            self._expire(batch),
            name=f"{self.name}-timer-{batch.batch_id}",
        )

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _take(self, reason: FlushReason, expected: Batch[T] | None = None) -> Batch[T] | None:
        """Swap in a fresh batch and return the sealed old one. Caller holds the lock."""
        batch = self._current
        if expected is not None and batch is not expected:
            return None
        if batch.size == 0:
            return None
        self._current = Batch(self.capacity)
        self._stop_timer()
        batch.seal(reason)
        return batch

    async def _deliver(self, batch: Batch[T]) -> None:
        reason = batch.flush_reason.value if batch.flush_reason else "unknown"
        try:
            outcome = self._flush_fn(batch)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._failed_flushes += 1
            raise
        self._batches_flushed += 1
        self._items_flushed += batch.size
        self._by_reason[reason] += 1
        log.debug(
            "batch_flushed",
            batcher=self.name,
            batch_id=batch.batch_id,
            size=batch.size,
            reason=reason,
        )

    async def _expire(self, batch: Batch[T]) -> None:
        await asyncio.sleep(self.max_wait_seconds)
        async with self._lock:
            taken = self._take(FlushReason.TIMEOUT, expected=batch)
        if taken is None:
            return
        try:
            await self._deliver(taken)
        except Exception:
            # Nobody awaits the timer task; the failure is recorded in stats.
            log.exception(
                "batch_flush_failed",
                batcher=self.name,
                batch_id=taken.batch_id,
                size=taken.size,
                reason=FlushReason.TIMEOUT.value,
            )

    async def add(self, item: T) -> Result[None, AppError]:
        """Append ``item``; flush within this call if the batch becomes full.

        Returns ``Err(E7030_BATCHER_CLOSED)`` after ``close``. Exceptions
        raised by the consumer during a size flush propagate to the caller.
        """
        async with self._lock:
            if self._closed:
                return batcher_closed(self.name, origin="batcher")
            batch = self._current
            batch.append(item)
            if batch.size == 1:
                self._start_timer(batch)
            taken = self._take(FlushReason.SIZE) if batch.is_full else None

        if taken is not None:
            await self._deliver(taken)
        return Ok(None)

    async def flush(self) -> Batch[T] | None:
        """Flush the current batch now. No-op (returns None) when empty."""
        async with self._lock:
            taken = self._take(FlushReason.MANUAL)
        if taken is not None:
            await self._deliver(taken)
        return taken

    async def close(self) -> Batch[T] | None:
        """Reject further adds and flush whatever is pending."""
        async with self._lock:
            if self._closed:
                return None
            self._closed = True
            taken = self._take(FlushReason.CLOSE)
            self._stop_timer()
        log.debug("batcher_closed", batcher=self.name, final_size=taken.size if taken else 0)
        if taken is not None:
            await self._deliver(taken)
        return taken
