"""Result Types and Error Taxonomy

Errors travel as values. Every fallible operation in conveyor returns
``Result[T, AppError]`` (``Ok`` or ``Err``) so callers branch on a typed
``ErrorCode`` instead of catching a zoo of exception classes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Generic, NoReturn, TypeVar, Union, final
from uuid import uuid4

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound="AppError")


class ErrorCode(Enum):
    """Hierarchical error code taxonomy.

    E1xxx: Downstream dependency failures
    E7xxx: Execution runtime (cancellation, admission, retries)
    E9xxx: Internal/Unknown errors
    """
    # Downstream (E1xxx)
    E1000_NETWORK_GENERIC = 1000
    E1002_TIMEOUT = 1002
    E1010_EXTERNAL_SERVICE_UNAVAILABLE = 1010
    E1011_EXTERNAL_SERVICE_ERROR = 1011
    E1012_CIRCUIT_OPEN = 1012

    # Execution runtime (E7xxx)
    E7000_EXECUTION_GENERIC = 7000
    E7001_CANCELLED = 7001
    E7002_DEADLINE_EXCEEDED = 7002
    E7010_QUEUE_CLOSED = 7010
    E7020_RETRIES_EXHAUSTED = 7020
    E7030_BATCHER_CLOSED = 7030

    # Internal (E9xxx)
    E9000_INTERNAL_GENERIC = 9000
    E9001_UNEXPECTED_ERROR = 9001

    @property
    def category(self) -> str:
        """Human-readable error category."""
        code = self.value
        if 1000 <= code < 2000:
            return "downstream"
        if 7000 <= code < 8000:
            return "execution"
        return "internal"

    @property
    def is_cancellation(self) -> bool:
        return self in (ErrorCode.E7001_CANCELLED, ErrorCode.E7002_DEADLINE_EXCEEDED)


@dataclass(frozen=True, slots=True)
class ErrorContext:
    """Immutable context for error tracing and debugging."""
    correlation_id: str = field(default_factory=lambda: str(uuid4())[:8])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    origin: str = ""


@dataclass(frozen=True, slots=True)
class AppError:
    """Base application error with full context.

    All errors carry:
    - Typed error code from taxonomy
    - Human-readable message
    - Structured metadata for debugging
    - Optional exception cause
    - Optional wrapped AppError (``inner``) for error chains
    """
    code: ErrorCode
    message: str
    context: ErrorContext = field(default_factory=ErrorContext)
    metadata: dict = field(default_factory=dict)
    cause: BaseException | None = None
    inner: AppError | None = None

    @property
    def is_cancellation(self) -> bool:
        return self.code.is_cancellation

    def has_code(self, code: ErrorCode) -> bool:
        """True if this error or any error it wraps carries ``code``."""
        current: AppError | None = self
        while current is not None:
            if current.code == code:
                return True
            current = current.inner
        return False

    def root(self) -> AppError:
        """Innermost wrapped error."""
        current = self
        while current.inner is not None:
            current = current.inner
        return current

    def to_dict(self) -> dict:
        """Serialize error for log sinks and result consumers."""
        data = {
            "code": self.code.name,
            "code_num": self.code.value,
            "message": self.message,
            "category": self.code.category,
            "correlation_id": self.context.correlation_id,
            "timestamp": self.context.timestamp.isoformat(),
            "metadata": self.metadata,
        }
        if self.inner is not None:
            data["inner"] = self.inner.to_dict()
        return {"error": data}

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (correlation_id={self.context.correlation_id})"


@final
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Success variant of Result."""
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ValueError(f"Called unwrap_err on Ok: {self.value!r}")

    def map(self, f: Callable[[T], U]) -> Result[U, AppError]:
        """Transform the success value."""
        return Ok(f(self.value))

    def and_then(self, f: Callable[[T], Result[U, AppError]]) -> Result[U, AppError]:
        """Chain operations that may fail."""
        return f(self.value)


@final
@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failure variant of Result. Wraps an AppError."""
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def unwrap_err(self) -> E:
        return self.error

    def map(self, f: Callable[[T], U]) -> Result[U, E]:
        return self  # type: ignore

    def and_then(self, f: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return self  # type: ignore


Result = Union[Ok[T], Err[E]]


def is_result(value: object) -> bool:
    return isinstance(value, (Ok, Err))
