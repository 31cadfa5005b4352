"""Guarded Operations

The runtime knows nothing about the work it protects beyond success or
failure. Any object with ``async def call(ctx, payload)`` qualifies; plain
async callables are adapted with ``as_operation``.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from conveyor.core.context import Context
from conveyor.core.errors import AppError, Ok, Result, is_result, operation_failed

T = TypeVar("T")


@runtime_checkable
class Operation(Protocol[T]):
    """Single-method capability wrapping a downstream call."""

    async def call(self, ctx: Context, payload: Any) -> T | Result[T, AppError]:
        ...


class FunctionOperation:
    """Adapter turning ``async def fn(ctx, payload)`` into an Operation."""

    def __init__(
        self,
        fn: Callable[[Context, Any], Awaitable[Any]],
        name: str | None = None,
    ):
        self._fn = fn
        self.name = name or getattr(fn, "__qualname__", None) or repr(fn)

    async def call(self, ctx: Context, payload: Any) -> Any:
        return await self._fn(ctx, payload)

    def __repr__(self) -> str:
        return f"FunctionOperation({self.name})"


def as_operation(target: Operation | Callable[[Context, Any], Awaitable[Any]]) -> Operation:
    """Return ``target`` as an Operation, wrapping bare callables."""
    if isinstance(target, Operation):
        return target
    if callable(target):
        return FunctionOperation(target)
    raise TypeError(f"Expected an Operation or async callable, got {type(target).__name__}")


def operation_name(operation: Operation) -> str:
    return getattr(operation, "name", None) or type(operation).__name__


async def invoke(
    operation: Operation,
    ctx: Context,
    payload: Any = None,
) -> Result[Any, AppError]:
    """Call the operation once and normalize its outcome to a Result.

    Returned Results pass through untouched, plain values become ``Ok``,
    and raised exceptions become ``Err(E1011_EXTERNAL_SERVICE_ERROR)``
    chained to the exception. ``asyncio.CancelledError`` is not an
    ``Exception`` and propagates.
    """
    try:
        value = await operation.call(ctx, payload)
    except Exception as e:
        return operation_failed(operation_name(operation), e, origin="operation")
    if is_result(value):
        return value
    return Ok(value)
