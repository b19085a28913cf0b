"""
Tenant policy: which tables are scoped, and how.

A TenantPolicy is built once per engine from static configuration and never
changes afterwards. Every decision the engine makes about the tenant
discriminator goes through it.

Invariants:
    - Classification of a table is a pure function of the shared-table set
    - A stamped record always carries exactly the policy's tenant id
    - Channel and bucket names are distinct per tenant
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .tables import SHARED_TABLES, Table, table_name


@dataclass(frozen=True)
class TenantPolicy:
    """Static tenant isolation rules for one process.

    Attributes:
        tenant_id: Identifier stamped on and required of isolated rows
        tenant_column: Name of the discriminator column
        shared_tables: Tables that are visible to every tenant

    Example:
        >>> policy = TenantPolicy("bookbuddy")
        >>> policy.should_inject("books")
        True
        >>> policy.should_inject("profiles")
        False
    """

    tenant_id: str
    tenant_column: str = "app_id"
    shared_tables: frozenset[str] = field(default=SHARED_TABLES)

    def __post_init__(self) -> None:
        # Accept any iterable of names or Table members
        object.__setattr__(
            self,
            "shared_tables",
            frozenset(table_name(t) for t in self.shared_tables),
        )

    def is_isolated(self, table: str | Table) -> bool:
        """Whether rows of this table are scoped to a tenant."""
        return table_name(table) not in self.shared_tables

    def should_inject(self, table: str | Table, skip_tenant_filter: bool = False) -> bool:
        """Whether the tenant filter/stamp applies to this call."""
        return self.is_isolated(table) and not skip_tenant_filter and bool(self.tenant_id)

    def stamp(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of record carrying this tenant's id.

        Any caller-supplied value for the tenant column is overwritten.
        """
        stamped = dict(record)
        stamped[self.tenant_column] = self.tenant_id
        return stamped

    def change_filter(self, table: str | Table, skip_tenant_filter: bool = False) -> str | None:
        """Server-side realtime filter for this table, if any."""
        if not self.should_inject(table, skip_tenant_filter):
            return None
        return f"{self.tenant_column}=eq.{self.tenant_id}"

    def channel_name(self, table: str | Table) -> str:
        return f"{table_name(table)}_changes_{self.tenant_id or 'global'}"

    def bucket_name(self, bucket_type: str) -> str:
        """Tenant-namespaced bucket name, e.g. ``bookbuddy-covers``."""
        bucket_type = str(bucket_type)
        if not self.tenant_id:
            return bucket_type
        return f"{self.tenant_id}-{bucket_type}"
