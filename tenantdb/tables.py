"""
Logical tables of the reading tracker schema.

The engine accepts any table name as a string. Call sites that care about
safety (the shared-table set, application helpers) use the Table enum so
that a typo is an AttributeError rather than an unscoped query.
"""

from __future__ import annotations

from enum import Enum

from .errors import UsageError


class Table(str, Enum):
    """Known logical tables."""

    # Shared across tenants
    PROFILES = "profiles"
    APP_REGISTRY = "app_registry"
    USER_APP_CONTEXT = "user_app_context"

    # Tenant isolated (carry app_id)
    USER_SETTINGS = "user_settings"
    BOOKS = "books"
    READING_SESSIONS = "reading_sessions"
    NOTES = "notes"
    HIGHLIGHTS = "highlights"
    READING_GOALS = "reading_goals"
    READING_STREAKS = "reading_streaks"
    BOOKSHELVES = "bookshelves"

    # No app_id column; scoped through bookshelves
    BOOKSHELF_ITEMS = "bookshelf_items"

    def __str__(self) -> str:
        return self.value


SHARED_TABLES: frozenset[str] = frozenset(
    {
        Table.PROFILES.value,
        Table.APP_REGISTRY.value,
        Table.USER_APP_CONTEXT.value,
        Table.BOOKSHELF_ITEMS.value,
    }
)


def table_name(table: str | Table | None) -> str:
    """Normalize a table argument to its plain name.

    Raises:
        UsageError: If the table is missing or blank
    """
    if isinstance(table, Table):
        return table.value
    if not isinstance(table, str) or not table.strip():
        raise UsageError("A table name is required", table=table)
    return table
