"""Resilience Patterns

Fault tolerance for guarded downstream operations:
- Concurrency limiter bounding simultaneous executions
- Circuit breaker failing fast while a dependency is unhealthy
- Retry executor with configurable backoff
- Batcher grouping items by size and age
"""
from .operation import (
    FunctionOperation,
    Operation,
    as_operation,
    invoke,
    operation_name,
)

from .limiter import (
    ConcurrencyLimiter,
    LimiterStats,
)

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
)

from .retry import (
    BackoffStrategy,
    RetryAttempt,
    RetryExecutor,
    RetryPolicy,
    RetryResult,
    get_backoff_calculator,
    retryable,
)

from .batch import (
    Batch,
    Batcher,
    BatcherStats,
    FlushReason,
)

__all__ = [
    # Operations
    "FunctionOperation",
    "Operation",
    "as_operation",
    "invoke",
    "operation_name",
    # Limiter
    "ConcurrencyLimiter",
    "LimiterStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    # Retry
    "BackoffStrategy",
    "RetryAttempt",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
    "get_backoff_calculator",
    "retryable",
    # Batch
    "Batch",
    "Batcher",
    "BatcherStats",
    "FlushReason",
]
