"""Jobs and their results."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from conveyor.core.context import Context
from conveyor.core.errors import AppError, Result
from conveyor.core.resilience.operation import Operation, as_operation


@dataclass(eq=False)
class Job:
    """A unit of work: an operation plus its opaque payload.

    ``context`` optionally carries the job's own cancellation handle.
    When it is absent the pool uses the context the job was submitted with.
    Cancelling it before a worker picks the job up prevents it from
    starting; once running, cancellation is observed at the next
    suspension point.
    """
    operation: Operation | Callable[[Context, Any], Awaitable[Any]]
    payload: Any = None
    job_id: str = field(default_factory=lambda: str(uuid4()))
    context: Context | None = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    submitted_clock: float = field(default_factory=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        self.operation = as_operation(self.operation)


@dataclass(frozen=True)
class JobResult:
    """Outcome of exactly one accepted Job."""
    job_id: str
    outcome: Result[Any, AppError]
    attempts: int
    latency_seconds: float
    started: bool = True

    @property
    def succeeded(self) -> bool:
        return self.outcome.is_ok()

    @property
    def cancelled(self) -> bool:
        return self.outcome.is_err() and self.outcome.unwrap_err().is_cancellation

    @property
    def value(self) -> Any:
        """The success value, or None for failures."""
        return self.outcome.unwrap_or(None)

    @property
    def error(self) -> AppError | None:
        return self.outcome.unwrap_err() if self.outcome.is_err() else None

    @classmethod
    def finished(cls, job: Job, outcome: Result[Any, AppError], attempts: int) -> JobResult:
        return cls(
            job_id=job.job_id,
            outcome=outcome,
            attempts=attempts,
            latency_seconds=time.monotonic() - job.submitted_clock,
            started=True,
        )

    @classmethod
    def not_started(cls, job: Job, outcome: Result[Any, AppError]) -> JobResult:
        return cls(
            job_id=job.job_id,
            outcome=outcome,
            attempts=0,
            latency_seconds=time.monotonic() - job.submitted_clock,
            started=False,
        )
