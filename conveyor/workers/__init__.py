"""Worker pool and the jobs it runs."""
from .job import Job, JobResult
from .pool import JobRunner, PoolState, PoolStats, WorkerPool, batch_submitter
from .pipeline import Pipeline

__all__ = [
    "Job",
    "JobResult",
    "JobRunner",
    "PoolState",
    "PoolStats",
    "WorkerPool",
    "batch_submitter",
    "Pipeline",
]
