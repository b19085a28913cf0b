"""
Backing store abstraction for tenantdb.

This module provides a pluggable backend interface supporting:
- PostgREST + Storage + Auth over HTTP, realtime over websockets
- In-memory (for testing and local development)

Invariants:
    - Backends never apply tenant rules; the engine does
    - Store failures surface as OperationError subclasses
    - Filter semantics are identical across backends

How to change safely:
    - New backends must implement the Backend protocol
    - Run the engine integration tests against every backend
"""

from .base import (
    Backend,
    ChannelHandle,
    QueryBuilder,
    QueryResponse,
    User,
    create_backend,
    parse_change_filter,
)
from .memory import InMemoryBackend, TableDef
from .postgrest import PostgrestBackend

__all__ = [
    # Protocols and types
    "Backend",
    "ChannelHandle",
    "QueryBuilder",
    "QueryResponse",
    "User",
    "TableDef",
    # Helpers
    "create_backend",
    "parse_change_filter",
    # Implementations
    "InMemoryBackend",
    "PostgrestBackend",
]
