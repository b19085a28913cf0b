"""
Result values returned by every engine operation.

Both types unpack like tuples so callers can write
``data, error = await db.fetch_by_id(...)`` or
``rows, error, count = await db.fetch_all(...)``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from .errors import OperationError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Single-record outcome: data or error, never both."""

    data: Optional[T] = None
    error: Optional[OperationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __iter__(self) -> Iterator[Any]:
        yield self.data
        yield self.error


@dataclass
class ListResult(Generic[T]):
    """Multi-record outcome.

    Attributes:
        data: Rows, or None on error
        error: Error, or None on success
        count: Total matches when requested (fetch_all) or affected rows
    """

    data: Optional[list[T]] = None
    error: Optional[OperationError] = None
    count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __iter__(self) -> Iterator[Any]:
        yield self.data
        yield self.error
        yield self.count


async def capture(
    awaitable: Awaitable[T],
    *,
    operation: str,
    target: str,
    timeout: Optional[float] = None,
) -> tuple[Optional[T], Optional[OperationError]]:
    """Await a backend call, turning expected failures into values.

    UsageError and genuine bugs propagate; OperationError and timeouts are
    returned as the second element.
    """
    try:
        if timeout is None:
            value = await awaitable
        else:
            value = await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        error: OperationError = OperationTimeoutError(
            f"{operation} on '{target}' timed out after {timeout}s", timeout=timeout
        )
    except OperationError as e:
        error = e
    else:
        return value, None

    logger.warning(
        "%s on %s failed: %s",
        operation,
        target,
        error.message,
        extra={"operation": operation, "target": target, "code": error.code},
    )
    return None, error
