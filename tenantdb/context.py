"""
Application context helpers for the signed-in user.

These sit on top of TenantDb and the backend identity accessor:
- register the user with this tenant (user_app_context)
- make sure a shared profile row exists
- read and update that profile
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .backend.base import User
from .crud import TenantDb
from .errors import NotAuthenticatedError
from .results import Result
from .tables import Table

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_current_user(db: TenantDb) -> Optional[User]:
    """Authenticated user of the backend session, or None."""
    return await db.backend.get_user()


async def initialize_app_context(db: TenantDb) -> bool:
    """Register the current user with this tenant.

    Upserts the user's ``user_app_context`` row for this tenant and makes
    sure a profile row exists. Failures are logged and reported through
    the return value; they never raise.

    Returns:
        True when both rows were written
    """
    user = await get_current_user(db)
    if user is None:
        return False

    # user_app_context is shared, so the tenant id is written explicitly
    _, error = await db.upsert(
        Table.USER_APP_CONTEXT,
        {"user_id": user.id, db.policy.tenant_column: db.tenant_id, "last_accessed_at": _now()},
        on_conflict=f"user_id,{db.policy.tenant_column}",
    )
    if error is not None:
        logger.warning(
            "Failed to record app context", extra={"user_id": user.id, "code": error.code}
        )
        return False

    _, error = await db.upsert(
        Table.PROFILES,
        {"id": user.id, "email": user.email},
        on_conflict="id",
    )
    if error is not None:
        logger.warning("Failed to ensure profile", extra={"user_id": user.id, "code": error.code})
        return False

    logger.info("App context initialized", extra={"user_id": user.id, "app_id": db.tenant_id})
    return True


async def get_user_profile(db: TenantDb) -> Optional[dict[str, Any]]:
    """Profile row of the current user, or None."""
    user = await get_current_user(db)
    if user is None:
        return None
    profile, error = await db.fetch_by_id(Table.PROFILES, user.id)
    if error is not None:
        logger.warning("Failed to get user profile", extra={"user_id": user.id, "code": error.code})
        return None
    return profile


async def update_user_profile(
    db: TenantDb,
    *,
    display_name: Optional[str] = None,
    avatar_url: Optional[str] = None,
) -> Result[dict[str, Any]]:
    """Update the current user's profile; unset arguments are left alone."""
    user = await get_current_user(db)
    if user is None:
        return Result(error=NotAuthenticatedError())

    updates: dict[str, Any] = {"updated_at": _now()}
    if display_name is not None:
        updates["display_name"] = display_name
    if avatar_url is not None:
        updates["avatar_url"] = avatar_url
    return await db.update(Table.PROFILES, user.id, updates)
