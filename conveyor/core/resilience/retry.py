"""Retry Executor with Exponential Backoff

Retries transient failures of a guarded operation, consulting a circuit
breaker before every attempt and reporting every outcome back to it.
Backoff sleeps are cancellable through the caller's Context.
"""
from __future__ import annotations

import asyncio
import functools
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

from conveyor.core.context import Context
from conveyor.core.errors import (
    AppError,
    ErrorCode,
    Err,
    Result,
    retries_exhausted,
    timeout_error,
)
from conveyor.core.logging import get_logger

from .operation import FunctionOperation, Operation, as_operation, invoke, operation_name

if TYPE_CHECKING:
    from .circuit_breaker import CircuitBreaker
    from .limiter import ConcurrencyLimiter

T = TypeVar("T")

log = get_logger("conveyor.retry")


class BackoffStrategy(Enum):
    """Available backoff strategies."""
    CONSTANT = auto()             # Fixed delay between retries
    LINEAR = auto()               # Linearly increasing delay
    EXPONENTIAL = auto()          # base * multiplier^(attempt-1)
    EXPONENTIAL_JITTER = auto()   # Exponential with random jitter
    DECORRELATED_JITTER = auto()  # AWS-style decorrelated jitter


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    multiplier: float = 2.0
    max_delay_seconds: float | None = None  # None leaves the delay uncapped
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter_factor: float = 0.5  # 0-1, portion of delay that can be jitter
    attempt_timeout_seconds: float | None = None
    non_retryable_codes: frozenset[ErrorCode] = field(
        default_factory=lambda: frozenset({
            ErrorCode.E1012_CIRCUIT_OPEN,
            ErrorCode.E7001_CANCELLED,
            ErrorCode.E7002_DEADLINE_EXCEEDED,
            ErrorCode.E7010_QUEUE_CLOSED,
            ErrorCode.E7030_BATCHER_CLOSED,
        })
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay_seconds < 0:
            raise ValueError(f"base_delay_seconds must be non-negative, got {self.base_delay_seconds}")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if self.max_delay_seconds is not None and self.max_delay_seconds < 0:
            raise ValueError(f"max_delay_seconds must be non-negative, got {self.max_delay_seconds}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be within [0, 1], got {self.jitter_factor}")

    def cap(self, delay: float) -> float:
        if self.max_delay_seconds is None:
            return delay
        return min(delay, self.max_delay_seconds)


@dataclass
class RetryAttempt:
    """Information about a single attempt."""
    attempt_number: int
    started_at: datetime
    duration_seconds: float
    delay_seconds: float = 0.0  # Backoff slept after this attempt
    error: AppError | None = None


@dataclass
class RetryResult(Generic[T]):
    """Result of a retried operation with full attempt history."""
    result: Result[T, AppError]
    attempts: list[RetryAttempt]
    total_duration_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.result.is_ok()

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class BackoffCalculator(ABC):
    """Abstract base for backoff delay calculation."""

    @abstractmethod
    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        """Delay in seconds after the given failed attempt (1-indexed)."""


class ConstantBackoff(BackoffCalculator):
    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        return policy.cap(policy.base_delay_seconds)


class LinearBackoff(BackoffCalculator):
    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        return policy.cap(policy.base_delay_seconds * attempt)


class ExponentialBackoff(BackoffCalculator):
    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        return policy.cap(policy.base_delay_seconds * (policy.multiplier ** (attempt - 1)))


class ExponentialJitterBackoff(BackoffCalculator):
    """Exponential backoff with equal jitter (±jitter_factor/2)."""

    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        base = policy.cap(policy.base_delay_seconds * (policy.multiplier ** (attempt - 1)))
        jitter_range = base * policy.jitter_factor
        jitter = random.uniform(-jitter_range / 2, jitter_range / 2)
        return max(0.0, policy.cap(base + jitter))


class DecorrelatedJitterBackoff(BackoffCalculator):
    """AWS-style decorrelated jitter.

    Formula: sleep = min(cap, random(base, previous * 3))
    """

    def calculate(self, attempt: int, policy: RetryPolicy, previous: float | None) -> float:
        if attempt == 1 or previous is None:
            return policy.cap(policy.base_delay_seconds)
        upper = max(policy.base_delay_seconds, previous * 3)
        return policy.cap(random.uniform(policy.base_delay_seconds, upper))


_CALCULATORS: dict[BackoffStrategy, BackoffCalculator] = {
    BackoffStrategy.CONSTANT: ConstantBackoff(),
    BackoffStrategy.LINEAR: LinearBackoff(),
    BackoffStrategy.EXPONENTIAL: ExponentialBackoff(),
    BackoffStrategy.EXPONENTIAL_JITTER: ExponentialJitterBackoff(),
    BackoffStrategy.DECORRELATED_JITTER: DecorrelatedJitterBackoff(),
}


def get_backoff_calculator(strategy: BackoffStrategy) -> BackoffCalculator:
    """Calculators are stateless and shared."""
    return _CALCULATORS[strategy]


OnRetry = Callable[[int, AppError, float], Awaitable[None]]


class RetryExecutor:
    """Runs an operation with bounded retries.

    For each attempt: take a limiter token (if configured), consult the
    breaker (a rejection fails fast and does not consume an attempt),
    invoke, report the outcome. Failed attempts sleep
    ``base * multiplier^(attempt-1)`` (capped) before the next one; the
    sleep ends early with Cancelled/DeadlineExceeded when ``ctx`` fires.
    Exhausting all attempts returns ``Err(E7020_RETRIES_EXHAUSTED)``
    wrapping the last failure. With a single attempt the operation's own
    error is returned unchanged.

    Usage:
        executor = RetryExecutor(RetryPolicy(max_attempts=4, base_delay_seconds=0.1))

        outcome = await executor.run(ctx, fetch_prices, breaker, payload=symbols)
        if not outcome.succeeded:
            log.warning("fetch_failed", attempts=outcome.attempt_count)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        limiter: ConcurrencyLimiter | None = None,
    ):
        self.policy = policy or RetryPolicy()
        self.limiter = limiter
        self._calculator = get_backoff_calculator(self.policy.strategy)

    def delay_for(self, attempt: int, previous: float | None = None) -> float:
        """Backoff after the given failed attempt."""
        return self._calculator.calculate(attempt, self.policy, previous)

    def is_retryable(self, error: AppError) -> bool:
        if error.is_cancellation:
            return False
        return error.code not in self.policy.non_retryable_codes

    async def _invoke(self, ctx: Context, operation: Operation, payload: Any) -> Result[Any, AppError]:
        timeout = self.policy.attempt_timeout_seconds
        if timeout is None:
            return await invoke(operation, ctx, payload)
        try:
            return await asyncio.wait_for(invoke(operation, ctx, payload), timeout=timeout)
        except asyncio.TimeoutError:
            return timeout_error(operation_name(operation), timeout, origin="retry")

    async def _attempt(
        self,
        ctx: Context,
        operation: Operation,
        breaker: CircuitBreaker | None,
        payload: Any,
    ) -> tuple[bool, Result[Any, AppError]]:
        """One guarded invocation.

        Returns ``(consumed, result)``; ``consumed`` is False when the
        attempt never reached the operation (breaker rejection).
        """
        probe = False
        if breaker is not None:
            admitted = await breaker.allow()
            if admitted.is_err():
                return False, admitted
            probe = admitted.unwrap()

        try:
            result = await self._invoke(ctx, operation, payload)
            if breaker is not None:
                if result.is_ok():
                    await breaker.record_success(probe)
                else:
                    await breaker.record_failure(result.unwrap_err(), probe)
        except BaseException:
            if breaker is not None and probe:
                breaker.release_probe()
            raise
        return True, result

    async def run(
        self,
        ctx: Context,
        operation: Operation | Callable[[Context, Any], Awaitable[Any]],
        breaker: CircuitBreaker | None = None,
        payload: Any = None,
        on_retry: OnRetry | None = None,
    ) -> RetryResult:
        """Execute with the retry policy and return the full attempt history."""
        op = as_operation(operation)
        name = operation_name(op)
        attempts: list[RetryAttempt] = []
        start = time.monotonic()

        def finish(result: Result[Any, AppError]) -> RetryResult:
            return RetryResult(
                result=result,
                attempts=attempts,
                total_duration_seconds=time.monotonic() - start,
            )

        previous_delay: float | None = None
        last_error: AppError | None = None

        while len(attempts) < self.policy.max_attempts:
            error = ctx.error()
            if error is not None:
                return finish(Err(error))

            if self.limiter is not None:
                acquired = await self.limiter.acquire(ctx)
                if acquired.is_err():
                    return finish(acquired)

            attempt_start = datetime.now(timezone.utc)
            attempt_clock = time.monotonic()
            try:
                consumed, result = await self._attempt(ctx, op, breaker, payload)
            finally:
                if self.limiter is not None:
                    self.limiter.release()

            if not consumed:
                log.debug("retry_rejected_by_breaker", operation=name, attempts=len(attempts))
                return finish(result)

            attempt = len(attempts) + 1
            record = RetryAttempt(
                attempt_number=attempt,
                started_at=attempt_start,
                duration_seconds=time.monotonic() - attempt_clock,
                error=result.unwrap_err() if result.is_err() else None,
            )
            attempts.append(record)

            if result.is_ok():
                return finish(result)

            last_error = result.unwrap_err()
            if not self.is_retryable(last_error):
                log.info(
                    "retry_abandoned",
                    operation=name,
                    attempt=attempt,
                    error_code=last_error.code.name,
                )
                return finish(result)
            if attempt >= self.policy.max_attempts:
                break

            delay = self.delay_for(attempt, previous_delay)
            previous_delay = delay
            record.delay_seconds = delay
            log.info(
                "retry_scheduled",
                operation=name,
                attempt=attempt,
                max_attempts=self.policy.max_attempts,
                delay_seconds=round(delay, 4),
                error_code=last_error.code.name,
            )

            if on_retry:
                await on_retry(attempt, last_error, delay)

            slept = await ctx.sleep(delay)
            if slept.is_err():
                log.info("retry_cancelled", operation=name, attempt=attempt)
                return finish(slept)

        assert last_error is not None
        if self.policy.max_attempts == 1:
            return finish(Err(last_error))

        log.warning(
            "retries_exhausted",
            operation=name,
            attempts=len(attempts),
            error_code=last_error.code.name,
        )
        return finish(retries_exhausted(name, len(attempts), last_error, origin="retry"))

    async def execute(
        self,
        ctx: Context,
        operation: Operation | Callable[[Context, Any], Awaitable[Any]],
        breaker: CircuitBreaker | None = None,
        payload: Any = None,
    ) -> Result[Any, AppError]:
        """Execute and return only the final Result."""
        outcome = await self.run(ctx, operation, breaker, payload)
        return outcome.result


def retryable(
    policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
):
    """Decorator making ``async def fn(ctx, *args, **kwargs)`` retryable.

    The wrapped function returns a Result.

    Usage:
        @retryable(RetryPolicy(max_attempts=3))
        async def fetch_rates(ctx: Context, currency: str) -> Rates:
            ...

        match await fetch_rates(ctx, "EUR"):
            ...
    """
    executor = RetryExecutor(policy)

    def decorator(fn: Callable[..., Awaitable[Any]]):
        @functools.wraps(fn)
        async def wrapper(ctx: Context, *args, **kwargs) -> Result[Any, AppError]:
            operation = FunctionOperation(
                lambda c, _: fn(c, *args, **kwargs),
                name=fn.__qualname__,
            )
            return await executor.execute(ctx, operation, breaker)

        return wrapper
    return decorator
