"""Monadic Error Handling

Key components:
- Result[T, E]: container for success/failure (``Ok`` / ``Err``)
- AppError: error value with code, context, metadata and wrapped errors
- ErrorCode: hierarchical error code taxonomy
- Builder functions: ergonomic error construction

Usage:
    from conveyor.core.errors import Ok, Err, ErrorCode

    match await breaker.call(ctx, fetch_quote):
        case Ok(quote):
            publish(quote)
        case Err(error) if error.has_code(ErrorCode.E1012_CIRCUIT_OPEN):
            serve_cached()
        case Err(error):
            log.error(error.message, code=error.code.name)
"""
from .types import (
    # Core types
    Result,
    Ok,
    Err,
    AppError,
    ErrorCode,
    ErrorContext,
    is_result,
)

from .builders import (
    # Downstream (E1xxx)
    downstream_error,
    operation_failed,
    timeout_error,
    circuit_open,
    # Execution (E7xxx)
    execution_error,
    cancelled,
    deadline_exceeded,
    queue_closed,
    retries_exhausted,
    batcher_closed,
    # Internal (E9xxx)
    internal_error,
)

from .handlers import (
    AppErrorException,
    log_error,
    raise_error,
    raise_result,
)

__all__ = [
    # Core types
    "Result",
    "Ok",
    "Err",
    "AppError",
    "ErrorCode",
    "ErrorContext",
    "is_result",
    # Downstream (E1xxx)
    "downstream_error",
    "operation_failed",
    "timeout_error",
    "circuit_open",
    # Execution (E7xxx)
    "execution_error",
    "cancelled",
    "deadline_exceeded",
    "queue_closed",
    "retries_exhausted",
    "batcher_closed",
    # Internal (E9xxx)
    "internal_error",
    # Handlers
    "AppErrorException",
    "log_error",
    "raise_error",
    "raise_result",
]
