"""Circuit Breaker

Protects callers from a failing dependency. Tracks consecutive failures,
opens after a threshold, and after a cool-down lets a single probe call
through to test recovery.

Transitions are restricted to:
    CLOSED -> OPEN         failure count reaches the threshold
    OPEN -> HALF_OPEN      open duration elapsed; next call becomes the probe
    HALF_OPEN -> CLOSED    probe succeeded
    HALF_OPEN -> OPEN      probe failed; open timer restarts
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Generic, TypeVar

from conveyor.core.context import Context
from conveyor.core.errors import (
    AppError,
    Err,
    ErrorCode,
    Ok,
    Result,
    circuit_open,
    downstream_error,
)
from conveyor.core.logging import get_logger

from .operation import Operation, as_operation, invoke

T = TypeVar("T")

log = get_logger("conveyor.circuit_breaker")


class CircuitState(Enum):
    """Breaker states; only the transitions listed above are legal."""
    CLOSED = auto()     # Normal operation, requests pass through
    OPEN = auto()       # Failing, requests rejected immediately
    HALF_OPEN = auto()  # One probe in flight testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker. Fixed at construction."""
    failure_threshold: int = 5             # Consecutive failures before opening
    open_duration_seconds: float = 30.0    # Time before a probe is allowed
    excluded_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            # The caller gave up; says nothing about the dependency
            ErrorCode.E7001_CANCELLED,
            ErrorCode.E7002_DEADLINE_EXCEEDED,
        })
    )

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise ValueError(f"failure_threshold must be positive, got {self.failure_threshold}")
        if self.open_duration_seconds < 0:
            raise ValueError(
                f"open_duration_seconds must be non-negative, got {self.open_duration_seconds}"
            )


@dataclass
class CircuitStats:
    """Snapshot of breaker state and lifetime counters."""
    state: CircuitState
    failure_count: int
    failure_threshold: int
    open_duration_seconds: float
    last_failure: datetime | None
    last_success: datetime | None
    last_state_change: datetime
    total_requests: int
    total_failures: int
    total_successes: int
    total_rejected: int


class CircuitBreaker(Generic[T]):
    """Circuit breaker for downstream protection.

    State reads and transitions happen under one ``asyncio.Lock`` per
    breaker. The lock is never held while the guarded operation runs.

    Usage:
        breaker = CircuitBreaker("payments", CircuitBreakerConfig(failure_threshold=3))

        match await breaker.call(ctx, charge_card, payload=order):
            case Ok(receipt):
                ...
            case Err(error) if error.code == ErrorCode.E1012_CIRCUIT_OPEN:
                ...
    """

    def __init__(self, name: str = "breaker", config: CircuitBreakerConfig | None = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._probe_in_flight = False
        self._opened_at = 0.0
        self._last_failure: datetime | None = None
        self._last_success: datetime | None = None
        self._last_state_change = self._now()
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._total_rejected = 0
        self._lock = asyncio.Lock()

    @classmethod
    def create(
        cls,
        failure_threshold: int,
        open_duration_seconds: float,
        name: str = "breaker",
    ) -> CircuitBreaker:
        return cls(name, CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            open_duration_seconds=open_duration_seconds,
        ))

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self._state,
            failure_count=self._failure_count,
            failure_threshold=self.config.failure_threshold,
            open_duration_seconds=self.config.open_duration_seconds,
            last_failure=self._last_failure,
            last_success=self._last_success,
            last_state_change=self._last_state_change,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            total_rejected=self._total_rejected,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _open_remaining(self) -> float:
        elapsed = time.monotonic() - self._opened_at
        return max(0.0, self.config.open_duration_seconds - elapsed)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller holds the lock."""
        old_state = self._state
        self._state = new_state
        self._last_state_change = self._now()

        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
            log.warning(
                "circuit_opened",
                breaker=self.name,
                previous=old_state.name,
                failure_count=self._failure_count,
                open_duration_seconds=self.config.open_duration_seconds,
            )
        elif new_state == CircuitState.HALF_OPEN:
            log.info("circuit_half_open", breaker=self.name)
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            log.info("circuit_closed", breaker=self.name, previous=old_state.name)

    def _should_count_as_failure(self, error: AppError) -> bool:
        """Excluded codes (cancellations) say nothing about the dependency."""
        return error.code not in self.config.excluded_codes

    def _reject(self) -> Err[AppError]:
        self._total_rejected += 1
        return circuit_open(
            self.name,
            origin="circuit_breaker",
            state=self._state.name,
            retry_after=round(self._open_remaining(), 3),
        )

    async def allow(self) -> Result[bool, AppError]:
        """Admit or reject one call.

        Returns ``Ok(True)`` when the admitted call is the half-open probe,
        ``Ok(False)`` for a normal call, and ``Err(circuit_open)`` when
        rejected. Every admitted call must report back through
        ``record_success`` or ``record_failure`` with the same probe flag.
        """
        async with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.CLOSED:
                return Ok(False)

            if self._state == CircuitState.OPEN:
                if self._open_remaining() > 0:
                    return self._reject()
                self._transition_to(CircuitState.HALF_OPEN)

            if self._probe_in_flight:
                return self._reject()
            self._probe_in_flight = True
            return Ok(True)

    async def record_success(self, probe: bool = False) -> None:
        """Record a successful call."""
        async with self._lock:
            self._total_successes += 1
            self._last_success = self._now()

            if probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self, error: AppError, probe: bool = False) -> None:
        """Record a failed call."""
        if not self._should_count_as_failure(error):
            if probe:
                self.release_probe()
            return

        async with self._lock:
            self._total_failures += 1
            self._last_failure = self._now()

            if probe:
                self._probe_in_flight = False
                if self._state == CircuitState.HALF_OPEN:
                    self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Give up the probe slot without an outcome.

        The breaker stays HALF_OPEN and the next call becomes the probe.
        A single assignment, so it is safe on cancellation paths that
        cannot await the lock.
        """
        self._probe_in_flight = False

    async def call(
        self,
        ctx: Context,
        operation: Operation | Callable[[Context, Any], Awaitable[Any]],
        payload: Any = None,
    ) -> Result[T, AppError]:
        """Execute operation through the circuit breaker.

        Returns the operation's Result when admitted, ``Err(circuit_open)``
        when rejected, or the context's error if it is already done.
        """
        error = ctx.error()
        if error is not None:
            return Err(error)

        admitted = await self.allow()
        if admitted.is_err():
            return admitted  # type: ignore
        probe = admitted.unwrap()

        try:
            result = await invoke(as_operation(operation), ctx, payload)
            match result:
                case Ok(_):
                    await self.record_success(probe)
                case Err(err):
                    await self.record_failure(err, probe)
        except BaseException:
            # Includes cancellation while waiting for the lock to record.
            if probe:
                self.release_probe()
            raise

        return result

    async def call_with_fallback(
        self,
        ctx: Context,
        operation: Operation | Callable[[Context, Any], Awaitable[Any]],
        fallback: Callable[[], Awaitable[T]],
        payload: Any = None,
    ) -> Result[T, AppError]:
        """Execute operation, serving ``fallback()`` when the circuit is open."""
        result = await self.call(ctx, operation, payload)

        if result.is_err() and result.unwrap_err().code == ErrorCode.E1012_CIRCUIT_OPEN:
            try:
                return Ok(await fallback())
            except Exception as e:
                return downstream_error(
                    f"Fallback for '{self.name}' failed: {e}",
                    code=ErrorCode.E1010_EXTERNAL_SERVICE_UNAVAILABLE,
                    origin="circuit_breaker",
                    cause=e,
                    service=self.name,
                )

        return result
