"""Producers -> Batcher -> WorkerPool, wired and shut down as a unit."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from conveyor.core.context import Context
from conveyor.core.errors import AppError, Result
from conveyor.core.logging import get_logger
from conveyor.core.resilience.batch import Batcher

from .job import Job, JobResult
from .pool import WorkerPool, batch_submitter

log = get_logger("conveyor.pipeline")


class Pipeline:
    """Batches incoming jobs and hands each batch to a worker pool.

    Every job submitted through the pipeline runs under the pipeline's
    context, so ``cancel()`` stops the whole flow: queued jobs publish
    cancellation results without starting, running jobs see the
    cancellation at their next suspension point.

    Jobs the pool refuses while a batch is being handed over (the pool is
    already shutting down) never reach the results stream; they are kept
    in ``rejected``.
    """

    def __init__(
        self,
        pool: WorkerPool,
        batch_capacity: int,
        batch_max_wait_seconds: float,
        ctx: Context | None = None,
        name: str = "pipeline",
    ):
        self.name = name
        self.pool = pool
        self.ctx = ctx or Context.background()
        self.rejected: list[tuple[Job, AppError]] = []
        self.batcher: Batcher[Job] = Batcher(
            capacity=batch_capacity,
            max_wait_seconds=batch_max_wait_seconds,
            flush_fn=batch_submitter(pool, self.ctx, on_rejected=self._on_rejected),
            name=f"{name}-batcher",
        )

    def _on_rejected(self, job: Job, error: AppError) -> None:
        self.rejected.append((job, error))

    async def submit(self, job: Job) -> Result[None, AppError]:
        """Add a job to the current batch."""
        return await self.batcher.add(job)

    def results(self) -> AsyncIterator[JobResult]:
        return self.pool.results()

    def cancel(self, error: AppError | None = None) -> None:
        log.info("pipeline_cancelled", pipeline=self.name)
        self.ctx.cancel(error)

    async def close(self, ctx: Context) -> Result[None, AppError]:
        """Flush the pending batch, then shut the pool down within ``ctx``.

        If ``ctx`` fires while the final batch is still waiting for queue
        space, the handover keeps going: the pool shutdown refuses the
        remaining jobs and they land in ``rejected``.
        """
        flushing = asyncio.ensure_future(self.batcher.close())
        await ctx.run(asyncio.shield(flushing))
        closed = await self.pool.shutdown(ctx)
        await flushing
        log.info(
            "pipeline_closed",
            pipeline=self.name,
            rejected=len(self.rejected),
            forced=closed.is_err(),
        )
        return closed
