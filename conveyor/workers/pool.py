"""Worker Pool

A fixed set of asyncio worker tasks pulling jobs from a bounded admission
queue. Every accepted job produces exactly one JobResult on the results
stream: success, failure, or a cancellation when shutdown runs out of
time before the job finishes.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable

from conveyor.core.context import Context
from conveyor.core.errors import (
    AppError,
    Err,
    Ok,
    Result,
    cancelled,
    internal_error,
    log_error,
    queue_closed,
)
from conveyor.core.logging import bind_context, get_logger
from conveyor.core.resilience.batch import Batch
from conveyor.core.resilience.circuit_breaker import CircuitBreaker
from conveyor.core.resilience.limiter import ConcurrencyLimiter
from conveyor.core.resilience.retry import RetryExecutor, RetryPolicy

from .job import Job, JobResult

log = get_logger("conveyor.pool")

_STOP = object()
_CLOSED = object()


class PoolState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class PoolStats:
    """Point-in-time pool counters."""
    name: str
    state: PoolState
    worker_count: int
    queue_capacity: int
    queued: int
    in_flight: int
    accepted: int
    rejected: int
    succeeded: int
    failed: int
    cancelled: int

    @property
    def published(self) -> int:
        return self.succeeded + self.failed + self.cancelled


class JobRunner:
    """Execution chain applied to every job a worker picks up.

    Jobs always go through a RetryExecutor so attempts are counted the same
    way everywhere; without one, a single-attempt executor is used. The
    limiter wraps each attempt, so give it to the RetryExecutor when
    supplying your own.
    """

    def __init__(
        self,
        executor: RetryExecutor | None = None,
        breaker: CircuitBreaker | None = None,
        limiter: ConcurrencyLimiter | None = None,
    ):
        if executor is not None and limiter is not None:
            raise ValueError("Pass the limiter to the RetryExecutor instead of the JobRunner")
        self.executor = executor or RetryExecutor(RetryPolicy(max_attempts=1), limiter=limiter)
        self.breaker = breaker

    async def run(self, ctx: Context, job: Job) -> tuple[Result, int]:
        outcome = await self.executor.run(ctx, job.operation, self.breaker, job.payload)
        return outcome.result, outcome.attempt_count


class WorkerPool:
    """Fixed-size pool of workers behind a bounded admission queue.

    ``submit`` blocks while the queue is full (backpressure) and fails with
    ``E7010_QUEUE_CLOSED`` once shutdown has begun. Results are unordered.
    Workers start on the first submit, on ``start()``, or on entering
    ``async with``.

    Usage:
        async with WorkerPool(worker_count=4, queue_capacity=16) as pool:
            await pool.submit(ctx, Job(fetch_page, payload=url))
            ...
        async for result in pool.results():
            ...
    """

    def __init__(
        self,
        worker_count: int,
        queue_capacity: int,
        runner: JobRunner | None = None,
        name: str = "pool",
    ):
        if worker_count <= 0:
            raise ValueError(f"worker_count must be positive, got {worker_count}")
        if queue_capacity <= 0:
            raise ValueError(f"queue_capacity must be positive, got {queue_capacity}")
        self.name = name
        self.worker_count = worker_count
        self.queue_capacity = queue_capacity
        self.runner = runner or JobRunner()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_capacity)
        self._results: asyncio.Queue = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._state = PoolState.CREATED
        self._closed_event = asyncio.Event()
        self._pending_submits: set[Context] = set()
        self._running: dict[str, Context] = {}
        self._accepted = 0
        self._rejected = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0

    async def __aenter__(self) -> WorkerPool:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.shutdown(Context.background())
        return False

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            state=self._state,
            worker_count=self.worker_count,
            queue_capacity=self.queue_capacity,
            queued=self._queue.qsize(),
            in_flight=len(self._running),
            accepted=self._accepted,
            rejected=self._rejected,
            succeeded=self._succeeded,
            failed=self._failed,
            cancelled=self._cancelled,
        )

    def start(self) -> None:
        """Spawn the worker tasks. Idempotent; requires a running loop."""
        if self._state != PoolState.CREATED:
            return
        for index in range(self.worker_count):
            self._workers.append(asyncio.create_task(
                self._worker(index),
                name=f"{self.name}-worker-{index}",
            ))
        self._state = PoolState.RUNNING
        log.info(
            "pool_started",
            pool=self.name,
            worker_count=self.worker_count,
            queue_capacity=self.queue_capacity,
        )

    async def submit(self, ctx: Context, job: Job) -> Result[None, AppError]:
        """Enqueue a job, waiting for queue space or until ``ctx`` fires.

        Jobs without their own context run under ``ctx``.
        """
        if self._state == PoolState.CREATED:
            self.start()
        if self._state != PoolState.RUNNING:
            self._rejected += 1
            return queue_closed(self.name, origin="worker_pool")

        if job.context is None:
            job.context = ctx
        job.submitted_at = datetime.now(timezone.utc)
        job.submitted_clock = time.monotonic()

        waiter = ctx.child()
        self._pending_submits.add(waiter)
        try:
            queued = await waiter.run(self._queue.put(job))
        finally:
            self._pending_submits.discard(waiter)
            waiter.detach()

        if queued.is_err():
            self._rejected += 1
            log.debug(
                "job_rejected",
                pool=self.name,
                job_id=job.job_id,
                error_code=queued.unwrap_err().code.name,
            )
            return queued  # type: ignore

        self._accepted += 1
        log.debug("job_accepted", pool=self.name, job_id=job.job_id, queued=self._queue.qsize())
        return Ok(None)

    async def results(self) -> AsyncIterator[JobResult]:
        """Yield JobResults until the pool has shut down and published everything."""
        while True:
            item = await self._results.get()
            if item is _CLOSED:
                # Leave the marker for any later iteration.
                self._results.put_nowait(_CLOSED)
                return
            yield item

    def _publish(self, result: JobResult) -> None:
        if result.succeeded:
            self._succeeded += 1
        elif result.cancelled:
            self._cancelled += 1
        else:
            self._failed += 1
            log_error("job_failed", result.error, pool=self.name, job_id=result.job_id,
                      attempts=result.attempts)
        self._results.put_nowait(result)

    async def _worker(self, index: int) -> None:
        bind_context(pool=self.name, worker=index)
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            await self._process(item)

    async def _process(self, job: Job) -> None:
        parent = job.context or Context.background()
        error = parent.error()
        if error is not None:
            self._publish(JobResult.not_started(job, Err(error)))
            return

        exec_ctx = parent.child()
        self._running[job.job_id] = exec_ctx
        try:
            result, attempts = await self.runner.run(exec_ctx, job)
        except asyncio.CancelledError:
            reason = exec_ctx.error() or cancelled("worker stopped", origin="worker_pool").unwrap_err()
            self._publish(JobResult.finished(job, Err(reason), attempts=0))
            raise
        except Exception as e:
            log.exception("job_crashed", pool=self.name, job_id=job.job_id)
            result = internal_error(
                f"Job {job.job_id} crashed: {e}",
                origin="worker_pool",
                cause=e,
            )
            attempts = 0
        finally:
            self._running.pop(job.job_id, None)
            exec_ctx.detach()

        self._publish(JobResult.finished(job, result, attempts))

    async def _drain(self) -> None:
        for _ in self._workers:
            await self._queue.put(_STOP)
        await asyncio.wait(self._workers)

    async def _abort(self, error: AppError) -> None:
        """Cancel everything still running or queued, publishing a result for each."""
        log.warning(
            "pool_shutdown_forced",
            pool=self.name,
            in_flight=len(self._running),
            queued=self._queue.qsize(),
            error_code=error.code.name,
        )
        for exec_ctx in list(self._running.values()):
            exec_ctx.cancel(error)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _STOP:
                self._publish(JobResult.not_started(item, Err(error)))

    async def shutdown(self, ctx: Context) -> Result[None, AppError]:
        """Stop admission, drain queued jobs, then close the results stream.

        Returns Ok once every accepted job has published its result. If
        ``ctx`` fires first, unfinished jobs are cancelled and published as
        cancellations, and the context's error is returned.
        """
        if self._state == PoolState.CLOSED:
            return Ok(None)
        if self._state == PoolState.DRAINING:
            waited = await ctx.run(self._closed_event.wait())
            return waited.map(lambda _: None)

        started = self._state == PoolState.RUNNING
        self._state = PoolState.DRAINING
        log.info(
            "pool_draining",
            pool=self.name,
            queued=self._queue.qsize(),
            in_flight=len(self._running),
        )

        closing = queue_closed(self.name, origin="worker_pool").unwrap_err()
        for waiter in list(self._pending_submits):
            waiter.cancel(closing)

        drained: Result[None, AppError] = Ok(None)
        if started:
            drained = await ctx.run(self._drain())
            if drained.is_err():
                await self._abort(drained.unwrap_err())

        self._state = PoolState.CLOSED
        self._results.put_nowait(_CLOSED)
        self._closed_event.set()
        stats = self.stats
        log.info(
            "pool_closed",
            pool=self.name,
            accepted=stats.accepted,
            succeeded=stats.succeeded,
            failed=stats.failed,
            cancelled=stats.cancelled,
            forced=drained.is_err(),
        )
        return drained.map(lambda _: None)


def batch_submitter(
    pool: WorkerPool,
    ctx: Context,
    on_rejected: Callable[[Job, AppError], None] | None = None,
):
    """Build a Batcher consumer that submits each job of a batch to ``pool``.

    Items are submitted in batch order. Rejected jobs (pool closed, ``ctx``
    done) are logged and passed to ``on_rejected``.
    """
    async def submit_batch(batch: Batch[Job]) -> None:
        for job in batch:
            submitted = await pool.submit(ctx, job)
            if submitted.is_err():
                error = submitted.unwrap_err()
                log_error(
                    "batch_item_rejected",
                    error,
                    pool=pool.name,
                    batch_id=batch.batch_id,
                    job_id=job.job_id,
                )
                if on_rejected is not None:
                    on_rejected(job, error)

    return submit_batch
