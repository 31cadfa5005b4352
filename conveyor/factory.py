"""Component Factory

Builds limiter, breaker, retry executor, pool and pipeline from Settings.
Every function takes an optional Settings and falls back to the cached
environment-derived one.
"""
from __future__ import annotations

from conveyor.core.config import Settings, get_settings
from conveyor.core.context import Context
from conveyor.core.logging import get_logger
from conveyor.core.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from conveyor.core.resilience.limiter import ConcurrencyLimiter
from conveyor.core.resilience.retry import RetryExecutor, RetryPolicy
from conveyor.workers.pipeline import Pipeline
from conveyor.workers.pool import JobRunner, WorkerPool

log = get_logger("conveyor.factory")


def breaker_config(settings: Settings | None = None) -> CircuitBreakerConfig:
    settings = settings or get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.FAILURE_THRESHOLD,
        open_duration_seconds=settings.OPEN_DURATION_SECONDS,
    )


def retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        multiplier=settings.RETRY_MULTIPLIER,
        max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
    )


def create_limiter(settings: Settings | None = None, name: str = "limiter") -> ConcurrencyLimiter | None:
    """A limiter sized by LIMITER_CAPACITY, or None when it is 0."""
    settings = settings or get_settings()
    if settings.LIMITER_CAPACITY == 0:
        return None
    return ConcurrencyLimiter(settings.LIMITER_CAPACITY, name=name)


def create_breaker(settings: Settings | None = None, name: str = "breaker") -> CircuitBreaker:
    return CircuitBreaker(name, breaker_config(settings))


def create_runner(
    settings: Settings | None = None,
    breaker: CircuitBreaker | None = None,
) -> JobRunner:
    """Retry executor (with limiter when configured) in front of ``breaker``."""
    settings = settings or get_settings()
    executor = RetryExecutor(retry_policy(settings), limiter=create_limiter(settings))
    return JobRunner(executor=executor, breaker=breaker)


def create_pool(
    settings: Settings | None = None,
    breaker: CircuitBreaker | None = None,
    name: str = "pool",
) -> WorkerPool:
    settings = settings or get_settings()
    pool = WorkerPool(
        worker_count=settings.WORKER_COUNT,
        queue_capacity=settings.QUEUE_CAPACITY,
        runner=create_runner(settings, breaker),
        name=name,
    )
    log.debug(
        "pool_created",
        pool=name,
        worker_count=settings.WORKER_COUNT,
        queue_capacity=settings.QUEUE_CAPACITY,
        limiter_capacity=settings.LIMITER_CAPACITY,
        retry_max_attempts=settings.RETRY_MAX_ATTEMPTS,
        breaker=breaker.name if breaker else None,
    )
    return pool


def create_pipeline(
    settings: Settings | None = None,
    ctx: Context | None = None,
    breaker: CircuitBreaker | None = None,
    name: str = "pipeline",
) -> Pipeline:
    settings = settings or get_settings()
    return Pipeline(
        pool=create_pool(settings, breaker, name=f"{name}-pool"),
        batch_capacity=settings.BATCH_CAPACITY,
        batch_max_wait_seconds=settings.BATCH_MAX_WAIT_SECONDS,
        ctx=ctx,
        name=name,
    )
