"""
Tenant-scoped CRUD engine.

This module provides TenantDb, the generic data access layer used by
application stores. Any table name is accepted; the TenantPolicy decides
per call whether the tenant discriminator is injected into filters and
stamped onto written rows.

Example:
    >>> db = TenantDb(InMemoryBackend(), TenantPolicy("bookbuddy"))
    >>> async with db:
    ...     book, error = await db.create("books", {"title": "X", "author": "Y"})
    ...     rows, error, count = await db.fetch_all("books", limit=10)

Invariants:
    - Reads of isolated tables only ever see the engine's tenant
    - Writes to isolated tables always carry exactly the engine's tenant id
    - update/remove of a row outside the tenant return NotFoundError and
      change nothing
    - Expected failures are returned, never raised; misuse raises UsageError

How to change safely:
    - Route every new operation through _scoped() and capture()
    - Add isolation tests for any new write path
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Union

from .backend.base import Backend, QueryBuilder, QueryResponse, create_backend
from .config import Settings
from .errors import NotFoundError, OperationError, UsageError
from .filters import (
    DEFAULT_PAGE_SIZE,
    Filter,
    QueryOptions,
    apply_filters,
    apply_pagination,
    compile_filters,
)
from .policy import TenantPolicy
from .realtime import ChangeHandler, ChangeType, Unsubscribe, open_subscription
from .results import ListResult, Result, capture
from .storage import ObjectStorage
from .tables import Table, table_name

logger = logging.getLogger(__name__)

TableRef = Union[str, Table]
FilterSpec = Union[Filter, Mapping[str, Any], tuple]
Row = dict[str, Any]


class TenantDb:
    """Multi-tenant CRUD engine over a Backend.

    Attributes:
        backend: Backing store
        policy: Tenant isolation rules (fixed for the engine's lifetime)
        default_page_size: Range size for offset without limit
        storage: Tenant-scoped object storage helpers
    """

    def __init__(
        self,
        backend: Backend,
        policy: TenantPolicy,
        *,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            backend: Backing store implementation
            policy: Tenant policy carrying the tenant id
            default_page_size: Page size when offset is given without limit
            timeout: Per-call timeout in seconds (None waits forever)
        """
        if default_page_size <= 0:
            raise UsageError("default_page_size must be positive", default_page_size=default_page_size)
        self.backend = backend
        self.policy = policy
        self.default_page_size = default_page_size
        self._timeout = timeout
        self.storage = ObjectStorage(backend, policy, timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        backend: Optional[Backend] = None,
    ) -> TenantDb:
        """Build an engine from configuration.

        Raises:
            ValueError: If configuration is invalid
        """
        settings = settings or Settings()
        settings.validate_backend()
        return cls(
            backend or create_backend(settings),
            settings.policy(),
            default_page_size=settings.default_page_size,
            timeout=settings.request_timeout,
        )

    @property
    def tenant_id(self) -> str:
        return self.policy.tenant_id

    async def connect(self) -> None:
        await self.backend.connect()

    async def close(self) -> None:
        await self.backend.close()

    async def __aenter__(self) -> TenantDb:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # Internals

    def _scoped(self, query: QueryBuilder, table: str, skip_tenant_filter: bool) -> QueryBuilder:
        if self.policy.should_inject(table, skip_tenant_filter):
            query = query.eq(self.policy.tenant_column, self.policy.tenant_id)
        return query

    def _prepare(self, table: str, record: Mapping[str, Any], skip_tenant_filter: bool) -> Row:
        if not isinstance(record, Mapping):
            raise UsageError(f"Record for '{table}' must be a mapping", type=type(record).__name__)
        if self.policy.should_inject(table, skip_tenant_filter):
            return self.policy.stamp(record)
        return dict(record)

    async def _execute(
        self, query: QueryBuilder, operation: str, table: str
    ) -> tuple[Optional[QueryResponse], Optional[OperationError]]:
        logger.debug("Executing %s", operation, extra={"operation": operation, "table": table})
        return await capture(
            query.execute(), operation=operation, target=table, timeout=self._timeout
        )

    @staticmethod
    def _require_id(record_id: Any, table: str) -> None:
        if record_id is None:
            raise UsageError(f"An id is required for '{table}'")

    @staticmethod
    def _not_found(
        error: OperationError, table: str, id_column: str, record_id: Any
    ) -> OperationError:
        if isinstance(error, NotFoundError):
            return NotFoundError(
                f"No row in '{table}' with {id_column}={record_id!r}",
                table=table,
                record_id=record_id,
            )
        return error

    # Reads

    async def fetch_all(
        self,
        table: TableRef,
        options: Optional[QueryOptions] = None,
        *,
        count: bool = True,
        **overrides: Any,
    ) -> ListResult[Row]:
        """Fetch rows with filters, ordering and pagination.

        Args:
            table: Table name
            options: Query options (fields may also be passed as keywords)
            count: Request the exact total match count

        Returns:
            ListResult; no match is ([], None, 0), not an error
        """
        name = table_name(table)
        opts = options or QueryOptions()
        if overrides:
            opts = dataclasses.replace(opts, **overrides)
        filters = compile_filters(opts.filters)

        query = self.backend.table(name).select(opts.select, count="exact" if count else None)
        query = self._scoped(query, name, opts.skip_tenant_filter)
        query = apply_filters(query, filters)
        query = apply_pagination(
            query,
            order_by=opts.order_by,
            limit=opts.limit,
            offset=opts.offset,
            page_size=opts.page_size or self.default_page_size,
        )

        response, error = await self._execute(query, "fetch_all", name)
        if error is not None:
            return ListResult(error=error)
        rows = response.data or []
        total = (response.count if response.count is not None else len(rows)) if count else None
        return ListResult(data=rows, count=total)

    async def fetch_by_id(
        self,
        table: TableRef,
        record_id: Any,
        *,
        select: str = "*",
        id_column: str = "id",
        skip_tenant_filter: bool = False,
    ) -> Result[Row]:
        """Fetch exactly one row by id.

        Returns:
            Result; NotFoundError when no row matches within the tenant,
            MultipleRowsError when the id is not unique
        """
        name = table_name(table)
        self._require_id(record_id, name)
        query = self.backend.table(name).select(select).eq(id_column, record_id)
        query = self._scoped(query, name, skip_tenant_filter).single()

        response, error = await self._execute(query, "fetch_by_id", name)
        if error is not None:
            return Result(error=self._not_found(error, name, id_column, record_id))
        return Result(data=response.data)

    # Writes

    async def create(
        self,
        table: TableRef,
        record: Mapping[str, Any],
        *,
        select: str = "*",
        skip_tenant_filter: bool = False,
    ) -> Result[Row]:
        """Insert one row, stamping the tenant id on isolated tables."""
        name = table_name(table)
        row = self._prepare(name, record, skip_tenant_filter)
        query = self.backend.table(name).insert(row).returning(select).single()

        response, error = await self._execute(query, "create", name)
        if error is not None:
            return Result(error=error)
        return Result(data=response.data)

    async def create_many(
        self,
        table: TableRef,
        records: Iterable[Mapping[str, Any]],
        *,
        select: str = "*",
        skip_tenant_filter: bool = False,
    ) -> ListResult[Row]:
        """Insert several rows in one request.

        Atomicity is whatever the backing store gives a single insert.
        """
        name = table_name(table)
        rows = [self._prepare(name, r, skip_tenant_filter) for r in records]
        if not rows:
            return ListResult(data=[], count=0)
        query = self.backend.table(name).insert(rows).returning(select)

        response, error = await self._execute(query, "create_many", name)
        if error is not None:
            return ListResult(error=error)
        data = response.data or []
        return ListResult(data=data, count=len(data))

    async def update(
        self,
        table: TableRef,
        record_id: Any,
        updates: Mapping[str, Any],
        *,
        select: str = "*",
        id_column: str = "id",
        skip_tenant_filter: bool = False,
    ) -> Result[Row]:
        """Update one row by id within the tenant.

        Returns:
            Result; NotFoundError when the id does not exist for this tenant
        """
        name = table_name(table)
        self._require_id(record_id, name)
        values = dict(updates)
        if self.policy.tenant_column in values and self.policy.should_inject(name, skip_tenant_filter):
            values = self.policy.stamp(values)

        query = self.backend.table(name).update(values).eq(id_column, record_id)
        query = self._scoped(query, name, skip_tenant_filter).returning(select).single()

        response, error = await self._execute(query, "update", name)
        if error is not None:
            return Result(error=self._not_found(error, name, id_column, record_id))
        return Result(data=response.data)

    async def update_where(
        self,
        table: TableRef,
        updates: Mapping[str, Any],
        filters: Optional[Iterable[FilterSpec]],
        *,
        select: str = "*",
        skip_tenant_filter: bool = False,
    ) -> ListResult[Row]:
        """Update every row matching filters within the tenant."""
        name = table_name(table)
        compiled = compile_filters(filters)
        values = dict(updates)
        if self.policy.tenant_column in values and self.policy.should_inject(name, skip_tenant_filter):
            values = self.policy.stamp(values)

        query = self._scoped(self.backend.table(name).update(values), name, skip_tenant_filter)
        query = apply_filters(query, compiled).returning(select)

        response, error = await self._execute(query, "update_where", name)
        if error is not None:
            return ListResult(error=error)
        data = response.data or []
        return ListResult(data=data, count=len(data))

    async def remove(
        self,
        table: TableRef,
        record_id: Any,
        *,
        select: str = "*",
        id_column: str = "id",
        skip_tenant_filter: bool = False,
    ) -> Result[Row]:
        """Delete one row by id within the tenant.

        Returns:
            Result whose data is the deleted row; NotFoundError when the id
            does not exist for this tenant (nothing is deleted)
        """
        name = table_name(table)
        self._require_id(record_id, name)
        query = self.backend.table(name).delete().eq(id_column, record_id)
        query = self._scoped(query, name, skip_tenant_filter).returning(select).single()

        response, error = await self._execute(query, "remove", name)
        if error is not None:
            return Result(error=self._not_found(error, name, id_column, record_id))
        return Result(data=response.data)

    async def remove_where(
        self,
        table: TableRef,
        filters: Optional[Iterable[FilterSpec]],
        *,
        select: str = "*",
        skip_tenant_filter: bool = False,
    ) -> ListResult[Row]:
        """Delete every row matching filters within the tenant.

        Zero affected rows is a success with count 0.
        """
        name = table_name(table)
        compiled = compile_filters(filters)
        query = self._scoped(self.backend.table(name).delete(), name, skip_tenant_filter)
        query = apply_filters(query, compiled).returning(select)

        response, error = await self._execute(query, "remove_where", name)
        if error is not None:
            return ListResult(error=error)
        data = response.data or []
        return ListResult(data=data, count=len(data))

    async def upsert(
        self,
        table: TableRef,
        record: Mapping[str, Any],
        *,
        on_conflict: Optional[str] = None,
        select: str = "*",
        skip_tenant_filter: bool = False,
    ) -> Result[Row]:
        """Insert or merge one row on a conflict target.

        The conflict target (e.g. ``"user_id,app_id"``) is passed through
        unchecked; choosing a real unique key is the caller's job.
        """
        name = table_name(table)
        row = self._prepare(name, record, skip_tenant_filter)
        query = self.backend.table(name).upsert(row, on_conflict=on_conflict).returning(select).single()

        response, error = await self._execute(query, "upsert", name)
        if error is not None:
            return Result(error=error)
        return Result(data=response.data)

    # Realtime

    def subscribe(
        self,
        table: TableRef,
        callback: ChangeHandler,
        *,
        event: Union[ChangeType, str] = "*",
        skip_tenant_filter: bool = False,
    ) -> Unsubscribe:
        """Watch a table's changes, scoped to the tenant.

        Returns:
            Idempotent unsubscribe function
        """
        return open_subscription(
            self.backend,
            self.policy,
            table,
            callback,
            event=event,
            skip_tenant_filter=skip_tenant_filter,
        )
