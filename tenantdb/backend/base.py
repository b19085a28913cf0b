"""
Base protocols and types for the backing store abstraction.

The engine talks to a hosted database through three capabilities:
- a PostgREST-style fluent query builder per table
- a change-event channel per table with a server-side filter
- blob storage buckets and an identity accessor

Invariants:
    - Builders are single use: build, execute once, discard
    - execute() raises OperationError subclasses for store failures
    - Channel callbacks receive the raw store payload; normalization is
      the engine's job

How to change safely:
    - Protocol changes require updating every backend
    - Keep filter semantics identical to PostgREST so that the in-memory
      backend stays a faithful stand-in
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import Settings

Row = dict[str, Any]
ChangeCallback = Callable[[dict[str, Any]], None]


@dataclass
class QueryResponse:
    """Result of executing a query builder.

    Attributes:
        data: Rows, a single row (after single()), or None
        count: Exact match count when requested, else None
    """

    data: Any
    count: Optional[int] = None


@dataclass(frozen=True)
class User:
    """Authenticated identity as reported by the store."""

    id: str
    email: Optional[str] = None


@runtime_checkable
class ChannelHandle(Protocol):
    """A live change-event subscription."""

    @property
    def closed(self) -> bool: ...

    def close(self) -> None:
        """Stop delivery. Safe to call repeatedly and from a callback."""
        ...


@runtime_checkable
class QueryBuilder(Protocol):
    """PostgREST-style fluent query builder.

    Exactly one of select/insert/update/delete/upsert starts a query;
    filters, ordering and pagination narrow it; execute() runs it.

    Example:
        >>> resp = await backend.table("books").select("*", count="exact") \\
        ...     .eq("app_id", "bookbuddy").order("title").limit(10).execute()
    """

    def select(self, columns: str = "*", count: Optional[str] = None) -> QueryBuilder: ...
    def insert(self, rows: Row | list[Row]) -> QueryBuilder: ...
    def update(self, values: Row) -> QueryBuilder: ...
    def delete(self) -> QueryBuilder: ...
    def upsert(self, rows: Row | list[Row], on_conflict: Optional[str] = None) -> QueryBuilder: ...
    def returning(self, columns: str = "*") -> QueryBuilder: ...

    def eq(self, column: str, value: Any) -> QueryBuilder: ...
    def neq(self, column: str, value: Any) -> QueryBuilder: ...
    def gt(self, column: str, value: Any) -> QueryBuilder: ...
    def gte(self, column: str, value: Any) -> QueryBuilder: ...
    def lt(self, column: str, value: Any) -> QueryBuilder: ...
    def lte(self, column: str, value: Any) -> QueryBuilder: ...
    def like(self, column: str, value: Any) -> QueryBuilder: ...
    def ilike(self, column: str, value: Any) -> QueryBuilder: ...
    def in_(self, column: str, value: Any) -> QueryBuilder: ...
    def contains(self, column: str, value: Any) -> QueryBuilder: ...

    def order(self, column: str, ascending: bool = True) -> QueryBuilder: ...
    def limit(self, count: int) -> QueryBuilder: ...
    def range(self, start: int, end: int) -> QueryBuilder: ...
    def single(self) -> QueryBuilder: ...

    async def execute(self) -> QueryResponse: ...


@runtime_checkable
class Backend(Protocol):
    """Protocol for backing store implementations.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> resp = await backend.table("books").select().execute()
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections and stop all channels."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    def table(self, name: str) -> QueryBuilder:
        """Start a query against a table."""
        ...

    @abstractmethod
    def subscribe(
        self,
        channel: str,
        table: str,
        callback: ChangeCallback,
        event: str = "*",
        filter: Optional[str] = None,
    ) -> ChannelHandle:
        """Open a change-event channel.

        Args:
            channel: Channel name, unique per (table, tenant)
            table: Table to watch
            callback: Receives the raw change payload
            event: INSERT, UPDATE, DELETE or *
            filter: Server-side filter, ``<column>=eq.<value>``
        """
        ...

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        payload: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        """Store an object and return its path within the bucket."""
        ...

    @abstractmethod
    def public_url(self, bucket: str, path: str) -> str:
        """Public URL of an object. No I/O."""
        ...

    @abstractmethod
    async def remove_objects(self, bucket: str, paths: list[str]) -> list[str]:
        """Delete objects, returning the paths that were removed."""
        ...

    @abstractmethod
    async def get_user(self) -> Optional[User]:
        """Currently authenticated user, or None."""
        ...


def parse_change_filter(expr: Optional[str]) -> Optional[tuple[str, str]]:
    """Split ``column=eq.value`` into (column, value).

    Only equality is supported by the realtime filter syntax used here.

    >>> parse_change_filter("app_id=eq.bookbuddy")
    ('app_id', 'bookbuddy')
    """
    if not expr:
        return None
    column, sep, rest = expr.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"Unsupported change filter: {expr!r}")
    return column, rest[len("eq."):]


def create_backend(settings: "Settings") -> Backend:
    """Factory function to create a backend from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BackendKind
    from .memory import InMemoryBackend
    from .postgrest import PostgrestBackend

    if settings.backend == BackendKind.MEMORY:
        return InMemoryBackend()
    elif settings.backend == BackendKind.POSTGREST:
        return PostgrestBackend.from_settings(settings)
    else:
        raise ValueError(f"Unsupported backend: {settings.backend}")
