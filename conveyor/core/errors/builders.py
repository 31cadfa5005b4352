"""Error Builders

Ergonomic constructors for the typed errors the runtime produces.
Each builder returns an ``Err`` ready to hand back to a caller.
"""
from .types import AppError, ErrorCode, ErrorContext, Err


# =============================================================================
# Downstream Errors (E1xxx)
# =============================================================================

def downstream_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E1011_EXTERNAL_SERVICE_ERROR,
    origin: str = "",
    cause: BaseException | None = None,
    **metadata,
) -> Err[AppError]:
    """Create downstream dependency error."""
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata={k: v for k, v in metadata.items() if v is not None},
        cause=cause,
    ))


def operation_failed(
    operation: str, cause: BaseException, origin: str = ""
) -> Err[AppError]:
    return downstream_error(
        str(cause) or f"Operation '{operation}' failed",
        origin=origin,
        cause=cause,
        operation=operation,
        exception_type=type(cause).__name__,
    )


def timeout_error(
    operation: str, timeout_seconds: float, origin: str = ""
) -> Err[AppError]:
    return downstream_error(
        f"Operation '{operation}' timed out after {timeout_seconds}s",
        code=ErrorCode.E1002_TIMEOUT,
        origin=origin,
        operation=operation,
        timeout_seconds=timeout_seconds,
    )


def circuit_open(service: str, origin: str = "", **metadata) -> Err[AppError]:
    return downstream_error(
        f"Circuit breaker open for service '{service}'",
        code=ErrorCode.E1012_CIRCUIT_OPEN,
        origin=origin,
        service=service,
        **metadata,
    )


# =============================================================================
# Execution Errors (E7xxx)
# =============================================================================

def execution_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E7000_EXECUTION_GENERIC,
    origin: str = "",
    inner: AppError | None = None,
    **metadata,
) -> Err[AppError]:
    """Create execution runtime error."""
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata={k: v for k, v in metadata.items() if v is not None},
        inner=inner,
    ))


def cancelled(reason: str = "", origin: str = "") -> Err[AppError]:
    msg = "Operation cancelled"
    if reason:
        msg += f": {reason}"
    return execution_error(msg, code=ErrorCode.E7001_CANCELLED, origin=origin)


def deadline_exceeded(deadline: float | None = None, origin: str = "") -> Err[AppError]:
    return execution_error(
        "Deadline exceeded",
        code=ErrorCode.E7002_DEADLINE_EXCEEDED,
        origin=origin,
        deadline=deadline,
    )


def queue_closed(queue: str, origin: str = "") -> Err[AppError]:
    return execution_error(
        f"Queue '{queue}' is closed to new submissions",
        code=ErrorCode.E7010_QUEUE_CLOSED,
        origin=origin,
        queue=queue,
    )


def retries_exhausted(
    operation: str, attempts: int, last_error: AppError, origin: str = ""
) -> Err[AppError]:
    return execution_error(
        f"Operation '{operation}' failed after {attempts} attempts: {last_error.message}",
        code=ErrorCode.E7020_RETRIES_EXHAUSTED,
        origin=origin,
        inner=last_error,
        operation=operation,
        attempts=attempts,
        last_error_code=last_error.code.name,
    )


def batcher_closed(batcher: str, origin: str = "") -> Err[AppError]:
    return execution_error(
        f"Batcher '{batcher}' is closed",
        code=ErrorCode.E7030_BATCHER_CLOSED,
        origin=origin,
        batcher=batcher,
    )


# =============================================================================
# Internal Errors (E9xxx)
# =============================================================================

def internal_error(
    message: str,
    *,
    code: ErrorCode = ErrorCode.E9001_UNEXPECTED_ERROR,
    origin: str = "",
    cause: BaseException | None = None,
    **metadata,
) -> Err[AppError]:
    """Create internal/unexpected error."""
    return Err(AppError(
        code=code,
        message=message,
        context=ErrorContext(origin=origin),
        metadata=metadata,
        cause=cause,
    ))
