"""
Configuration for tenantdb.

All configuration is done via environment variables with the TENANTDB_
prefix. The tenant identifier is read once here and handed to the engine
explicitly; nothing else reads it from the environment.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

from .policy import TenantPolicy
from .tables import SHARED_TABLES

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    """Supported backing stores."""

    MEMORY = "memory"
    POSTGREST = "postgrest"


class Settings(BaseSettings):
    """tenantdb configuration loaded from environment."""

    # Tenant
    app_id: str = Field(default="bookbuddy", description="Tenant identifier of this process")
    tenant_column: str = Field(default="app_id", description="Tenant discriminator column")
    shared_tables: list[str] = Field(
        default_factory=lambda: sorted(SHARED_TABLES),
        description="Tables visible to every tenant",
    )

    # Backing store
    backend: BackendKind = Field(default=BackendKind.MEMORY)
    url: str = Field(default="", description="Project base URL")
    api_key: SecretStr = Field(default=SecretStr(""), description="Anon or service key")
    db_schema: str = Field(default="public", description="Exposed Postgres schema")

    # Queries
    default_page_size: int = Field(
        default=10, gt=0, description="Range size when offset is given without limit"
    )
    request_timeout: Optional[float] = Field(
        default=None, gt=0, description="Per-call timeout in seconds (None = wait forever)"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or text")

    model_config = {"env_prefix": "TENANTDB_"}

    @property
    def is_configured(self) -> bool:
        """Whether hosted backend credentials are present."""
        return bool(self.url) and bool(self.api_key.get_secret_value())

    def validate_backend(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.backend == BackendKind.POSTGREST and not self.is_configured:
            raise ValueError(
                "TENANTDB_URL and TENANTDB_API_KEY are required when TENANTDB_BACKEND=postgrest"
            )
        if not self.app_id:
            logger.warning("TENANTDB_APP_ID is empty: tenant isolation is disabled")

    def policy(self) -> TenantPolicy:
        return TenantPolicy(
            tenant_id=self.app_id,
            tenant_column=self.tenant_column,
            shared_tables=frozenset(self.shared_tables),
        )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "tenantdb configuration loaded",
            extra={
                "app_id": self.app_id,
                "backend": self.backend.value,
                "url": self.url or None,
                "tenant_column": self.tenant_column,
                "shared_tables": list(self.shared_tables),
                "default_page_size": self.default_page_size,
                "request_timeout": self.request_timeout,
            },
        )
