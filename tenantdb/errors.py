"""
Error types for tenantdb.

Two families, handled differently by the engine:
- UsageError: caller bugs (missing table name, unknown filter operator).
  These are raised.
- OperationError: expected runtime outcomes (not found, constraint
  violation, connectivity, timeout). These are returned inside a
  Result/ListResult and never raised out of a CRUD call.

Invariants:
    - All errors inherit from TenantDbError
    - Errors include context for debugging
    - Backend detail (code, hint, status) is preserved, not rewritten
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TenantDbError(Exception):
    """Base exception for all tenantdb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TENANTDB_ERROR"
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class UsageError(TenantDbError):
    """The API was called incorrectly.

    Raised when:
    - Table name is missing or empty
    - A filter is malformed
    """

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="USAGE_ERROR", details=details)


class UnknownOperatorError(UsageError):
    """Filter operator is not part of the supported vocabulary."""

    def __init__(self, operator: Any, column: Optional[str] = None) -> None:
        super().__init__(
            f"Unknown filter operator {operator!r}"
            + (f" on column '{column}'" if column else ""),
            operator=str(operator),
            column=column,
        )
        self.code = "UNKNOWN_OPERATOR"
        self.operator = operator
        self.column = column


class OperationError(TenantDbError):
    """An expected failure, returned as a value alongside a null result."""

    retryable: bool = False


class NotFoundError(OperationError):
    """No row matched after tenant scoping.

    Returned by fetch_by_id, update and remove. A row that exists but
    belongs to another tenant is reported the same way.
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        record_id: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"table": table, "id": record_id},
        )
        self.table = table
        self.record_id = record_id


class MultipleRowsError(OperationError):
    """A single-row operation matched more than one row."""

    def __init__(self, message: str, table: Optional[str] = None, rows: int = 0) -> None:
        super().__init__(
            message,
            code="MULTIPLE_ROWS",
            details={"table": table, "rows": rows},
        )
        self.table = table
        self.rows = rows


class NotAuthenticatedError(OperationError):
    """The operation needs a signed-in user and there is none."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class BackendError(OperationError):
    """The backing store rejected or failed the request.

    Attributes:
        status: HTTP status (or None for non-HTTP backends)
        hint: Backend supplied hint
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        hint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        merged.setdefault("status", status)
        merged.setdefault("hint", hint)
        super().__init__(message, code=code or "BACKEND_ERROR", details=merged)
        self.status = status
        self.hint = hint


class ConflictError(BackendError):
    """Unique or foreign key constraint violation."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("code", "CONFLICT")
        super().__init__(message, **kwargs)


class ConnectionError(BackendError):
    """Failed to reach the backing store.

    Raised when:
    - Server is unreachable
    - Connection was reset mid-request
    """

    retryable = True

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"address": address},
        )
        self.address = address


class OperationTimeoutError(BackendError):
    """The backing store did not answer within the configured timeout."""

    retryable = True

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        super().__init__(
            message,
            code="TIMEOUT",
            details={"timeout": timeout},
        )
        self.timeout = timeout
