"""
tenantdb - Tenant-isolated data access over a hosted Postgres service.

Several applications share one database project. Every row of an isolated
table carries an ``app_id`` discriminator; this package injects it into
every read, stamps it on every write and filters change streams by it, while
leaving shared tables (profiles, app registry) unscoped.

- TenantDb: CRUD engine (fetch_all, fetch_by_id, create, create_many,
  update, update_where, remove, remove_where, upsert, subscribe)
- TenantPolicy: which tables are isolated and for which tenant
- Filter / QueryOptions: filter, order and pagination specification
- ObjectStorage: tenant-namespaced blob buckets
- Backends: PostgrestBackend (HTTP + websockets) and InMemoryBackend

Example:
    >>> from tenantdb import TenantDb, TenantPolicy, InMemoryBackend, Filter
    >>>
    >>> db = TenantDb(InMemoryBackend(), TenantPolicy("bookbuddy"))
    >>> async with db:
    ...     book, error = await db.create("books", {"title": "Dune", "author": "Herbert"})
    ...     rows, error, count = await db.fetch_all(
    ...         "books", filters=[Filter("author", "eq", "Herbert")], limit=10
    ...     )

Invariants:
    - The tenant id is fixed per engine instance
    - Isolated rows are never read, updated or deleted across tenants
      unless skip_tenant_filter is set explicitly
    - Expected failures are returned as values; misuse raises UsageError

Version: 1.0.0
"""

__version__ = "1.0.0"

from .backend import Backend, InMemoryBackend, PostgrestBackend, TableDef, User
from .config import BackendKind, Settings
from .context import (
    get_current_user,
    get_user_profile,
    initialize_app_context,
    update_user_profile,
)
from .crud import TenantDb
from .errors import (
    BackendError,
    ConflictError,
    ConnectionError,
    MultipleRowsError,
    NotAuthenticatedError,
    NotFoundError,
    OperationError,
    OperationTimeoutError,
    TenantDbError,
    UnknownOperatorError,
    UsageError,
)
from .filters import Filter, Operator, OrderBy, QueryOptions
from .policy import TenantPolicy
from .realtime import ChangeEvent, ChangeType, normalize_change
from .results import ListResult, Result
from .storage import BucketType, ObjectStorage
from .tables import SHARED_TABLES, Table

__all__ = [
    # Version
    "__version__",
    # Engine
    "TenantDb",
    "Result",
    "ListResult",
    # Policy
    "TenantPolicy",
    "Table",
    "SHARED_TABLES",
    # Queries
    "Filter",
    "Operator",
    "OrderBy",
    "QueryOptions",
    # Realtime
    "ChangeEvent",
    "ChangeType",
    "normalize_change",
    # Storage
    "BucketType",
    "ObjectStorage",
    # Backends
    "Backend",
    "InMemoryBackend",
    "PostgrestBackend",
    "TableDef",
    "User",
    # Configuration
    "Settings",
    "BackendKind",
    # Application context
    "get_current_user",
    "initialize_app_context",
    "get_user_profile",
    "update_user_profile",
    # Errors
    "TenantDbError",
    "UsageError",
    "UnknownOperatorError",
    "OperationError",
    "NotFoundError",
    "MultipleRowsError",
    "NotAuthenticatedError",
    "BackendError",
    "ConflictError",
    "ConnectionError",
    "OperationTimeoutError",
]
