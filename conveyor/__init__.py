"""Conveyor: resilient concurrent task execution.

Limiter, circuit breaker, retry executor, batcher and worker pool,
composable around any guarded async operation.
"""
from conveyor.core.context import Context
from conveyor.core.errors import AppError, Err, ErrorCode, Ok, Result
from conveyor.core.resilience import (
    Batch,
    Batcher,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    ConcurrencyLimiter,
    RetryExecutor,
    RetryPolicy,
)
from conveyor.workers import Job, JobResult, JobRunner, Pipeline, WorkerPool

__version__ = "0.1.0"

__all__ = [
    "Context",
    "AppError",
    "Err",
    "ErrorCode",
    "Ok",
    "Result",
    "Batch",
    "Batcher",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ConcurrencyLimiter",
    "RetryExecutor",
    "RetryPolicy",
    "Job",
    "JobResult",
    "JobRunner",
    "Pipeline",
    "WorkerPool",
]
