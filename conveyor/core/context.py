"""Cancellation Handles

A ``Context`` is passed explicitly into every call that can suspend:
limiter acquisition, queue admission, retry backoff, pool shutdown. Each
suspension point selects between "work ready" and "cancellation fired"
via ``Context.run`` and returns ``Err(Cancelled | DeadlineExceeded)``
promptly when the handle fires, instead of waiting on the underlying
condition.

Usage:
    ctx = Context.with_timeout(5.0)
    match await limiter.acquire(ctx):
        case Ok(_):
            ...
        case Err(error):
            # error.code is E7001_CANCELLED or E7002_DEADLINE_EXCEEDED
            ...
"""
from __future__ import annotations

import asyncio
import inspect
import time
import weakref
from typing import Any, Awaitable, Callable, TypeVar

from conveyor.core.errors import (
    AppError,
    Err,
    Ok,
    Result,
    cancelled,
    deadline_exceeded,
)

T = TypeVar("T")


def _discard(aw: Awaitable) -> None:
    """Close an awaitable that will never be awaited."""
    if inspect.iscoroutine(aw):
        aw.close()
    elif isinstance(aw, asyncio.Future):
        aw.cancel()


def _abandon(task: asyncio.Future, on_abandoned: Callable[[Any], None] | None) -> None:
    """Cancel work whose outcome the caller will never collect.

    If the work has already finished, or finishes despite the cancel, its
    value goes to ``on_abandoned`` so whatever it acquired can be returned.
    """
    if on_abandoned is not None:
        def reclaim(done: asyncio.Future) -> None:
            if not done.cancelled() and done.exception() is None:
                on_abandoned(done.result())

        task.add_done_callback(reclaim)
    task.cancel()


class Context:
    """Explicit cancellation handle with optional deadline.

    Deadlines use ``time.monotonic()``. A child context is done whenever its
    parent is, and never outlives the parent's deadline. The first error
    recorded wins; later ``cancel`` calls are no-ops.
    """

    def __init__(
        self,
        deadline: float | None = None,
        parent: Context | None = None,
    ):
        self._deadline = deadline
        self._parent = parent
        self._error: AppError | None = None
        self._event: asyncio.Event | None = None
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()

        if parent is not None:
            if parent._deadline is not None and (
                self._deadline is None or parent._deadline < self._deadline
            ):
                self._deadline = parent._deadline
            parent_error = parent.error()
            if parent_error is not None:
                self._error = parent_error
            else:
                parent._children.add(self)

    @classmethod
    def background(cls) -> Context:
        """A context that is never cancelled and has no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float) -> Context:
        return cls(deadline=time.monotonic() + seconds)

    @classmethod
    def with_deadline(cls, deadline: float) -> Context:
        return cls(deadline=deadline)

    def child(self, timeout: float | None = None) -> Context:
        """Derive a context cancelled together with this one."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        return Context(deadline=deadline, parent=self)

    def detach(self) -> None:
        """Stop tracking this context in its parent.

        Used by short-lived children so long-lived parents don't accumulate them.
        """
        if self._parent is not None:
            self._parent._children.discard(self)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def done(self) -> bool:
        return self.error() is not None

    def error(self) -> AppError | None:
        """The reason this context is done, or None while it is live."""
        if (
            self._error is None
            and self._deadline is not None
            and time.monotonic() >= self._deadline
        ):
            self._finish(deadline_exceeded(self._deadline, origin="context").unwrap_err())
        return self._error

    def cancel(self, error: AppError | None = None) -> None:
        """Cancel this context and every child derived from it."""
        if self._error is not None:
            return
        self._finish(error or cancelled(origin="context").unwrap_err())

    def _finish(self, error: AppError) -> None:
        if self._error is not None:
            return
        self._error = error
        if self._event is not None:
            self._event.set()
        children = list(self._children)
        self._children = weakref.WeakSet()
        for child in children:
            child._finish(error)
        self.detach()

    def _ensure_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._error is not None:
                self._event.set()
        return self._event

    async def wait(self) -> AppError:
        """Suspend until the context is done and return the reason."""
        event = self._ensure_event()
        while True:
            error = self.error()
            if error is not None:
                return error
            try:
                await asyncio.wait_for(event.wait(), timeout=self.remaining())
            except asyncio.TimeoutError:
                # Loop timers may fire a clock tick early; error() re-checks.
                continue

    async def run(
        self,
        aw: Awaitable[T],
        on_abandoned: Callable[[T], None] | None = None,
    ) -> Result[T, AppError]:
        """Await ``aw`` unless this context fires first.

        If the work completes it wins, even when cancellation fires in the
        same loop iteration. Otherwise the work is cancelled and the
        context's error is returned. Exceptions raised by the work propagate.

        When the calling task itself is cancelled, the work is abandoned
        and ``on_abandoned`` receives any value it still produced.
        """
        error = self.error()
        if error is not None:
            _discard(aw)
            return Err(error)

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            interrupted = not task.done()
            if interrupted:
                task.cancel()
                await asyncio.wait({task})
        except asyncio.CancelledError:
            waiter.cancel()
            _abandon(task, on_abandoned)
            raise

        waiter.cancel()
        if task.cancelled():
            if interrupted:
                return Err(self.error() or waiter.result())
            raise asyncio.CancelledError()
        return Ok(task.result())

    async def sleep(self, seconds: float) -> Result[None, AppError]:
        """Sleep for ``seconds`` or until cancelled, whichever comes first."""
        if seconds <= 0:
            error = self.error()
            return Err(error) if error is not None else Ok(None)
        return await self.run(asyncio.sleep(seconds))

    def __repr__(self) -> str:
        state = self._error.code.name if self._error is not None else "live"
        return f"Context(state={state}, remaining={self.remaining()})"
