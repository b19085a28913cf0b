"""
In-memory backend implementation for testing.

This module provides a backing store that keeps every table, bucket and
channel in process memory. Useful for:
- Unit and integration tests
- Local development without a hosted database

Invariants:
    - All data is lost on process exit
    - Filter, ordering, range and single() semantics follow PostgREST
    - Each execute() is atomic: a failing batch leaves no partial writes
    - Change events are delivered after the write is visible

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the Backend protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from ..errors import (
    ConflictError,
    ConnectionError,
    MultipleRowsError,
    NotFoundError,
    OperationError,
)
from .base import ChangeCallback, QueryResponse, Row, User, parse_change_filter

logger = logging.getLogger(__name__)


@dataclass
class TableDef:
    """Keys of an in-memory table.

    Attributes:
        primary_key: Column generated when absent and used as the default
            upsert conflict target
        unique: Additional unique column groups
    """

    primary_key: str = "id"
    unique: List[Tuple[str, ...]] = field(default_factory=list)


# Keys of the reading tracker schema
DEFAULT_TABLES: Dict[str, TableDef] = {
    "app_registry": TableDef(primary_key="app_id"),
    "profiles": TableDef(),
    "user_app_context": TableDef(unique=[("user_id", "app_id")]),
    "user_settings": TableDef(unique=[("user_id", "app_id")]),
    "reading_goals": TableDef(unique=[("user_id", "app_id", "year")]),
    "reading_streaks": TableDef(unique=[("user_id", "app_id")]),
    "bookshelf_items": TableDef(unique=[("bookshelf_id", "book_id")]),
}


def _like_to_regex(pattern: str, ignore_case: bool) -> re.Pattern:
    parts = []
    for ch in str(pattern):
        if ch in "%*":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL if ignore_case else re.DOTALL)


def _matches(row: Row, op: str, column: str, value: Any) -> bool:
    actual = row.get(column)
    if op == "eq":
        return actual is not None and actual == value
    if op == "neq":
        return actual is not None and actual != value
    if op in ("gt", "gte", "lt", "lte"):
        if actual is None:
            return False
        try:
            if op == "gt":
                return actual > value
            if op == "gte":
                return actual >= value
            if op == "lt":
                return actual < value
            return actual <= value
        except TypeError:
            return False
    if op in ("like", "ilike"):
        if actual is None:
            return False
        return _like_to_regex(value, op == "ilike").fullmatch(str(actual)) is not None
    if op == "in":
        return actual is not None and actual in list(value)
    if op == "contains":
        if actual is None:
            return False
        if isinstance(value, dict):
            return isinstance(actual, dict) and all(actual.get(k) == v for k, v in value.items())
        if isinstance(value, (list, tuple, set)):
            return all(v in actual for v in value)
        return value in actual
    raise ValueError(f"Unsupported operator: {op}")


def _project(row: Row, columns: str) -> Row:
    if columns.strip() in ("", "*"):
        return copy.deepcopy(row)
    wanted = [c.strip() for c in columns.split(",") if c.strip()]
    return {c: copy.deepcopy(row.get(c)) for c in wanted}


def _sort_key(column: str):
    # NULLS LAST ascending, NULLS FIRST descending, as in PostgreSQL
    def key(row: Row) -> Tuple[bool, Any]:
        value = row.get(column)
        return (value is None, value if value is not None else 0)

    return key


class InMemoryQuery:
    """Query builder over InMemoryBackend tables.

    Mirrors the PostgREST builder: one action, then filters, order,
    pagination and an optional single() row-count assertion.
    """

    def __init__(self, backend: InMemoryBackend, table: str) -> None:
        self._backend = backend
        self._table = table
        self._action = "select"
        self._columns = "*"
        self._count: Optional[str] = None
        self._payload: Any = None
        self._on_conflict: Optional[str] = None
        self._returning: Optional[str] = None
        self._filters: List[Tuple[str, str, Any]] = []
        self._order: List[Tuple[str, bool]] = []
        self._limit: Optional[int] = None
        self._offset = 0
        self._single = False

    # Actions

    def select(self, columns: str = "*", count: Optional[str] = None) -> InMemoryQuery:
        self._action = "select"
        self._columns = columns
        self._count = count
        return self

    def insert(self, rows: Row | List[Row]) -> InMemoryQuery:
        self._action = "insert"
        self._payload = rows
        return self

    def update(self, values: Row) -> InMemoryQuery:
        self._action = "update"
        self._payload = values
        return self

    def delete(self) -> InMemoryQuery:
        self._action = "delete"
        return self

    def upsert(self, rows: Row | List[Row], on_conflict: Optional[str] = None) -> InMemoryQuery:
        self._action = "upsert"
        self._payload = rows
        self._on_conflict = on_conflict
        return self

    def returning(self, columns: str = "*") -> InMemoryQuery:
        self._returning = columns
        return self

    # Filters

    def _filter(self, op: str, column: str, value: Any) -> InMemoryQuery:
        self._filters.append((op, column, value))
        return self

    def eq(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("eq", column, value)

    def neq(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("neq", column, value)

    def gt(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("gt", column, value)

    def gte(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("gte", column, value)

    def lt(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("lt", column, value)

    def lte(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("lte", column, value)

    def like(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("like", column, value)

    def ilike(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("ilike", column, value)

    def in_(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("in", column, value)

    def contains(self, column: str, value: Any) -> InMemoryQuery:
        return self._filter("contains", column, value)

    # Shaping

    def order(self, column: str, ascending: bool = True) -> InMemoryQuery:
        self._order.append((column, ascending))
        return self

    def limit(self, count: int) -> InMemoryQuery:
        self._limit = count
        return self

    def range(self, start: int, end: int) -> InMemoryQuery:
        self._offset = start
        self._limit = end - start + 1
        return self

    def single(self) -> InMemoryQuery:
        self._single = True
        return self

    async def execute(self) -> QueryResponse:
        return await self._backend._execute(self)

    # Evaluation helpers, called under the backend lock

    def _select_matching(self, rows: List[Row]) -> List[Row]:
        return [r for r in rows if all(_matches(r, op, c, v) for op, c, v in self._filters)]

    def _shape(self, rows: List[Row]) -> List[Row]:
        for column, ascending in reversed(self._order):
            rows = sorted(rows, key=_sort_key(column), reverse=not ascending)
        end = None if self._limit is None else self._offset + self._limit
        return rows[self._offset:end]

    def _check_single(self, n: int) -> None:
        if not self._single:
            return
        if n == 0:
            raise NotFoundError("The result contains 0 rows", table=self._table)
        if n > 1:
            raise MultipleRowsError(f"The result contains {n} rows", table=self._table, rows=n)


@dataclass
class _Event:
    table: str
    kind: str
    new: Optional[Row]
    old: Optional[Row]


class InMemoryChannel:
    """Change-event channel of InMemoryBackend."""

    def __init__(
        self,
        backend: InMemoryBackend,
        name: str,
        table: str,
        callback: ChangeCallback,
        event: str,
        filter: Optional[str],
    ) -> None:
        self.name = name
        self.table = table
        self.event = event.upper()
        self.filter = parse_change_filter(filter)
        self._callback = callback
        self._backend = backend
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._backend._channels = [c for c in self._backend._channels if c is not self]

    def wants(self, event: _Event) -> bool:
        if self._closed or event.table != self.table:
            return False
        if self.event != "*" and self.event != event.kind:
            return False
        if self.filter is None:
            return True
        column, value = self.filter
        record = event.old if event.kind == "DELETE" else event.new
        return record is not None and str(record.get(column)) == value

    def deliver(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        self._callback(payload)


class InMemoryBackend:
    """In-memory implementation of Backend for testing.

    Attributes:
        tables: Key definitions per table (unknown tables get an ``id`` key)
        public_base: Prefix of public object URLs

    Thread safety:
        Uses an asyncio lock around every execute(). Safe to use from
        multiple coroutines.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> await backend.table("books").insert({"title": "X"}).execute()
        >>> backend.rows("books")
    """

    def __init__(
        self,
        tables: Optional[Dict[str, TableDef]] = None,
        public_base: str = "memory://storage",
    ) -> None:
        self.tables: Dict[str, TableDef] = dict(DEFAULT_TABLES if tables is None else tables)
        self.public_base = public_base
        self._data: Dict[str, List[Row]] = {}
        self._buckets: Dict[str, Dict[str, Tuple[bytes, Optional[str]]]] = {}
        self._channels: List[InMemoryChannel] = []
        self._user: Optional[User] = None
        self._failure: Optional[BaseException] = None
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBackend connected")

    async def close(self) -> None:
        """Close channels. Data is kept so tests can inspect it."""
        for channel in list(self._channels):
            channel.close()
        self._connected = False
        logger.debug("InMemoryBackend closed")

    def table(self, name: str) -> InMemoryQuery:
        return InMemoryQuery(self, name)

    def _def(self, table: str) -> TableDef:
        return self.tables.get(table) or TableDef()

    # Execution

    async def _execute(self, query: InMemoryQuery) -> QueryResponse:
        if not self._connected:
            raise ConnectionError("Not connected", address="memory")

        if self._failure is not None:
            failure, self._failure = self._failure, None
            raise failure

        async with self._lock:
            rows = self._data.setdefault(query._table, [])
            events: List[_Event] = []
            count: Optional[int] = None

            if query._action == "select":
                matched = query._select_matching(rows)
                if query._count:
                    count = len(matched)
                result = query._shape(matched)
                query._check_single(len(result))
                data: Any = [_project(r, query._columns) for r in result]
            elif query._action == "insert":
                result = self._insert(query, rows, events)
                data = result
            elif query._action == "update":
                result = self._update(query, rows, events)
                data = result
            elif query._action == "delete":
                result = self._delete(query, rows, events)
                data = result
            elif query._action == "upsert":
                result = self._upsert(query, rows, events)
                data = result
            else:
                raise ValueError(f"Unknown action {query._action}")

            if query._action != "select":
                if query._returning is None:
                    data = None
                else:
                    data = [_project(r, query._returning) for r in result]

        logger.debug(
            "In-memory query executed",
            extra={"table": query._table, "action": query._action, "rows": len(result)},
        )

        self._dispatch(events)

        if query._single and data is not None:
            data = data[0]
        return QueryResponse(data=data, count=count)

    def _new_rows(self, query: InMemoryQuery) -> List[Row]:
        payload = query._payload
        items = payload if isinstance(payload, list) else [payload]
        table_def = self._def(query._table)
        prepared = []
        for item in items:
            row = copy.deepcopy(dict(item))
            row.setdefault(table_def.primary_key, str(uuid.uuid4()))
            prepared.append(row)
        return prepared

    def _check_unique(
        self,
        table: str,
        candidates: Iterable[Row],
        existing: List[Row],
        columns: Optional[Iterable[str]] = None,
    ) -> None:
        table_def = self._def(table)
        keys = [(table_def.primary_key,)] + list(table_def.unique)
        if columns is not None:
            touched = set(columns)
            keys = [k for k in keys if touched.intersection(k)]
        candidates = list(candidates)
        for key in keys:
            seen = {tuple(r.get(c) for c in key) for r in existing}
            for row in candidates:
                value = tuple(row.get(c) for c in key)
                if None in value:
                    continue
                if value in seen:
                    raise ConflictError(
                        f"duplicate key value violates unique constraint on {table}({', '.join(key)})",
                        code="23505",
                        status=409,
                    )
                seen.add(value)

    def _insert(self, query: InMemoryQuery, rows: List[Row], events: List[_Event]) -> List[Row]:
        new_rows = self._new_rows(query)
        query._check_single(len(new_rows))
        self._check_unique(query._table, new_rows, rows)
        rows.extend(new_rows)
        events.extend(_Event(query._table, "INSERT", copy.deepcopy(r), None) for r in new_rows)
        return new_rows

    def _update(self, query: InMemoryQuery, rows: List[Row], events: List[_Event]) -> List[Row]:
        matched = query._select_matching(rows)
        query._check_single(len(matched))
        ids = {id(r) for r in matched}
        self._check_unique(
            query._table,
            [{**r, **query._payload} for r in matched],
            [r for r in rows if id(r) not in ids],
            columns=query._payload.keys(),
        )
        for row in matched:
            old = copy.deepcopy(row)
            row.update(copy.deepcopy(query._payload))
            events.append(_Event(query._table, "UPDATE", copy.deepcopy(row), old))
        return matched

    def _delete(self, query: InMemoryQuery, rows: List[Row], events: List[_Event]) -> List[Row]:
        matched = query._select_matching(rows)
        query._check_single(len(matched))
        ids = {id(r) for r in matched}
        rows[:] = [r for r in rows if id(r) not in ids]
        events.extend(_Event(query._table, "DELETE", None, copy.deepcopy(r)) for r in matched)
        return matched

    def _upsert(self, query: InMemoryQuery, rows: List[Row], events: List[_Event]) -> List[Row]:
        payload = query._payload
        items = payload if isinstance(payload, list) else [payload]
        query._check_single(len(items))
        table_def = self._def(query._table)
        if query._on_conflict:
            target = tuple(c.strip() for c in query._on_conflict.split(",") if c.strip())
        else:
            target = (table_def.primary_key,)

        # Validate the whole batch before touching rows
        plan: List[Tuple[Optional[Row], Row]] = []
        inserts: List[Row] = []
        for item in items:
            key = tuple(item.get(c) for c in target)
            existing = None
            if None not in key:
                existing = next(
                    (r for r in rows if tuple(r.get(c) for c in target) == key), None
                )
            if existing is None:
                row = copy.deepcopy(dict(item))
                row.setdefault(table_def.primary_key, str(uuid.uuid4()))
                inserts.append(row)
                plan.append((None, row))
            else:
                plan.append((existing, dict(item)))
        self._check_unique(query._table, inserts, rows)

        result = []
        for existing, row in plan:
            if existing is None:
                rows.append(row)
                events.append(_Event(query._table, "INSERT", copy.deepcopy(row), None))
                result.append(row)
            else:
                old = copy.deepcopy(existing)
                existing.update(copy.deepcopy(row))
                events.append(_Event(query._table, "UPDATE", copy.deepcopy(existing), old))
                result.append(existing)
        return result

    # Realtime

    def subscribe(
        self,
        channel: str,
        table: str,
        callback: ChangeCallback,
        event: str = "*",
        filter: Optional[str] = None,
    ) -> InMemoryChannel:
        handle = InMemoryChannel(self, channel, table, callback, event, filter)
        self._channels.append(handle)
        logger.debug(
            "Channel subscribed",
            extra={"channel": channel, "table": table, "event": event, "filter": filter},
        )
        return handle

    def _dispatch(self, events: List[_Event]) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        for event in events:
            for channel in list(self._channels):
                if not channel.wants(event):
                    continue
                payload = {
                    "schema": "public",
                    "table": event.table,
                    "commit_timestamp": timestamp,
                    "eventType": event.kind,
                    "new": copy.deepcopy(event.new) if event.new else {},
                    "old": copy.deepcopy(event.old) if event.old else {},
                    "errors": None,
                }
                try:
                    channel.deliver(payload)
                except Exception:
                    logger.exception(
                        "Change callback failed",
                        extra={"channel": channel.name, "table": event.table},
                    )

    # Storage

    async def upload(
        self,
        bucket: str,
        path: str,
        payload: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        if not self._connected:
            raise ConnectionError("Not connected", address="memory")
        objects = self._buckets.setdefault(bucket, {})
        if path in objects and not upsert:
            raise ConflictError("The resource already exists", code="Duplicate", status=409)
        objects[path] = (bytes(payload), content_type)
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base}/{bucket}/{quote(str(path), safe='/')}"

    async def remove_objects(self, bucket: str, paths: List[str]) -> List[str]:
        if not self._connected:
            raise ConnectionError("Not connected", address="memory")
        objects = self._buckets.get(bucket, {})
        removed = [p for p in paths if p in objects]
        for p in removed:
            del objects[p]
        return removed

    # Identity

    async def get_user(self) -> Optional[User]:
        return self._user

    # Testing helpers

    def set_user(self, user: Optional[User]) -> None:
        """Set the authenticated user (testing helper)."""
        self._user = user

    def rows(self, table: str) -> List[Row]:
        """Copy of every stored row of a table (testing helper)."""
        return copy.deepcopy(self._data.get(table, []))

    def seed(self, table: str, rows: Iterable[Row]) -> None:
        """Store rows verbatim, bypassing the engine (testing helper)."""
        self._data.setdefault(table, []).extend(copy.deepcopy(dict(r)) for r in rows)

    def object(self, bucket: str, path: str) -> Optional[bytes]:
        """Stored object bytes, or None (testing helper)."""
        entry = self._buckets.get(bucket, {}).get(path)
        return entry[0] if entry else None

    def inject_failure(self, error: OperationError) -> None:
        """Make the next execute() raise error (testing helper)."""
        self._failure = error

    @property
    def channel_count(self) -> int:
        return len(self._channels)
