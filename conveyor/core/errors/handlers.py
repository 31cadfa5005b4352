"""Exception Bridges

Conveyor's own surface returns Results. These helpers convert between the
Result world and exception-based call sites (context managers, decorators,
third-party callbacks) and log errors consistently.
"""
from __future__ import annotations

from typing import TypeVar

from conveyor.core.logging import get_logger

from .types import AppError, Result

T = TypeVar("T")

log = get_logger("conveyor.errors")


class AppErrorException(Exception):
    """Exception wrapper for AppError.

    Raised where a Result cannot be returned, e.g. from ``async with``
    entry or from code that must interoperate with exception handlers.
    """

    def __init__(self, error: AppError):
        self.error = error
        super().__init__(str(error))

    @property
    def code(self):
        return self.error.code


def log_error(event: str, error: AppError, **fields) -> None:
    """Log an AppError at a level matching its category.

    Cancellations are expected during shutdown and log at info.
    """
    log_method = log.info if error.is_cancellation else log.warning
    log_method(event, error=error, **fields)


def raise_error(error: AppError) -> None:
    """Raise AppError as exception.

    Usage:
        if result.is_err():
            raise_error(result.unwrap_err())
    """
    raise AppErrorException(error) from error.cause


def raise_result(result: Result[T, AppError]) -> T:
    """Return the Ok value, or raise AppErrorException for Err.

    Usage:
        value = raise_result(await breaker.call(ctx, op))
    """
    if result.is_err():
        raise_error(result.unwrap_err())
    return result.unwrap()
