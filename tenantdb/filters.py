"""
Query filter compiler.

Translates caller filter/order/pagination options into calls on a
PostgREST-style query builder (see backend.base.QueryBuilder).

Invariants:
    - Filters are applied in the order given and compose with AND
    - Sequence is always: filters -> order -> limit -> offset
    - Unknown operators raise UnknownOperatorError; nothing is dropped silently
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import UnknownOperatorError, UsageError

DEFAULT_PAGE_SIZE = 10


class Operator(str, Enum):
    """Supported filter operators (PostgREST names)."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    CONTAINS = "contains"

    @classmethod
    def parse(cls, value: Operator | str, column: str | None = None) -> Operator:
        if isinstance(value, Operator):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownOperatorError(value, column) from None


# Builder method per operator; ``in`` is a keyword in Python
_BUILDER_METHODS: dict[Operator, str] = {
    Operator.EQ: "eq",
    Operator.NEQ: "neq",
    Operator.GT: "gt",
    Operator.GTE: "gte",
    Operator.LT: "lt",
    Operator.LTE: "lte",
    Operator.LIKE: "like",
    Operator.ILIKE: "ilike",
    Operator.IN: "in_",
    Operator.CONTAINS: "contains",
}


@dataclass(frozen=True)
class Filter:
    """A single (column, operator, value) predicate.

    Example:
        >>> Filter("status", Operator.EQ, "reading")
        >>> Filter.coerce(("rating", "gte", 4))
    """

    column: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        if not self.column:
            raise UsageError("Filter column is required", filter=repr(self))
        object.__setattr__(self, "operator", Operator.parse(self.operator, self.column))

    @classmethod
    def coerce(cls, spec: Filter | Mapping[str, Any] | tuple) -> Filter:
        """Build a Filter from a Filter, a 3-tuple or a mapping."""
        if isinstance(spec, Filter):
            return spec
        if isinstance(spec, Mapping):
            try:
                return cls(spec["column"], spec["operator"], spec["value"])
            except KeyError as e:
                raise UsageError(f"Filter is missing {e.args[0]!r}", filter=dict(spec)) from None
        if isinstance(spec, tuple) and len(spec) == 3:
            return cls(*spec)
        raise UsageError(f"Cannot interpret filter {spec!r}")


@dataclass(frozen=True)
class OrderBy:
    """Single-column sort."""

    column: str
    ascending: bool = True


@dataclass
class QueryOptions:
    """Options for fetch_all.

    Attributes:
        select: Column projection (PostgREST select syntax)
        order_by: Optional sort
        limit: Maximum rows
        offset: Rows to skip
        filters: Conjunctive predicates
        skip_tenant_filter: Bypass tenant injection
        page_size: Page size used for the range when offset is set without
            limit; falls back to the engine default
    """

    select: str = "*"
    order_by: OrderBy | None = None
    limit: int | None = None
    offset: int | None = None
    filters: Iterable[Filter | Mapping[str, Any] | tuple] = field(default_factory=tuple)
    skip_tenant_filter: bool = False
    page_size: int | None = None


def compile_filters(filters: Iterable[Filter | Mapping[str, Any] | tuple] | None) -> list[Filter]:
    """Validate and normalize filters without touching a query."""
    return [Filter.coerce(f) for f in (filters or ())]


def apply_filter(query: Any, spec: Filter | Mapping[str, Any] | tuple) -> Any:
    """Apply one filter to a query builder and return the builder."""
    flt = Filter.coerce(spec)
    method = getattr(query, _BUILDER_METHODS[flt.operator])
    return method(flt.column, flt.value)


def apply_filters(query: Any, filters: Iterable[Filter | Mapping[str, Any] | tuple] | None) -> Any:
    for flt in compile_filters(filters):
        query = apply_filter(query, flt)
    return query


def page_range(offset: int, limit: int | None, page_size: int = DEFAULT_PAGE_SIZE) -> tuple[int, int]:
    """Inclusive row range for an offset.

    >>> page_range(20, 10)
    (20, 29)
    >>> page_range(20, None, page_size=5)
    (20, 24)
    """
    size = limit or page_size
    if size <= 0:
        raise UsageError("Page size must be positive", page_size=size)
    return offset, offset + size - 1


def apply_pagination(
    query: Any,
    order_by: OrderBy | None = None,
    limit: int | None = None,
    offset: int | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Any:
    """Apply order, limit and offset, in that order.

    Raises:
        UsageError: If limit or offset is negative
    """
    if limit is not None and limit < 0:
        raise UsageError("limit must not be negative", limit=limit)
    if offset is not None and offset < 0:
        raise UsageError("offset must not be negative", offset=offset)
    if order_by is not None:
        query = query.order(order_by.column, ascending=order_by.ascending)
    if limit:
        query = query.limit(limit)
    if offset:
        start, end = page_range(offset, limit, page_size)
        query = query.range(start, end)
    return query
