"""
Storage object helpers.

Buckets are namespaced per tenant inside this module: callers name a
bucket type ("covers") and the helper resolves it to "<tenant>-covers".
Callers cannot reach another tenant's bucket by forgetting the prefix.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Union

from .backend.base import Backend
from .policy import TenantPolicy
from .results import Result, capture

logger = logging.getLogger(__name__)


class BucketType(str, Enum):
    """Per-tenant bucket kinds."""

    AVATARS = "avatars"
    COVERS = "covers"
    UPLOADS = "uploads"

    def __str__(self) -> str:
        return self.value


class ObjectStorage:
    """Blob storage scoped to one tenant's buckets.

    Example:
        >>> path, error = await db.storage.upload_object(BucketType.COVERS, "b1.jpg", data)
        >>> db.storage.get_public_url(BucketType.COVERS, "b1.jpg")
    """

    def __init__(
        self,
        backend: Backend,
        policy: TenantPolicy,
        timeout: Optional[float] = None,
    ) -> None:
        self._backend = backend
        self._policy = policy
        self._timeout = timeout

    def bucket(self, bucket_type: Union[BucketType, str]) -> str:
        """Resolved bucket name for this tenant."""
        return self._policy.bucket_name(str(bucket_type))

    async def upload_object(
        self,
        bucket_type: Union[BucketType, str],
        path: str,
        payload: bytes,
        *,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> Result[str]:
        """Upload an object.

        Returns:
            Result whose data is the stored path
        """
        bucket = self.bucket(bucket_type)
        stored, error = await capture(
            self._backend.upload(bucket, path, payload, content_type=content_type, upsert=upsert),
            operation="upload_object",
            target=bucket,
            timeout=self._timeout,
        )
        if error is None:
            logger.debug("Object uploaded", extra={"bucket": bucket, "path": stored})
        return Result(data=stored, error=error)

    def get_public_url(self, bucket_type: Union[BucketType, str], path: str) -> str:
        """Public URL of an object. Pure: odd input yields an odd URL."""
        return self._backend.public_url(self.bucket(bucket_type), str(path))

    async def delete_objects(
        self,
        bucket_type: Union[BucketType, str],
        paths: list[str],
    ) -> Result[list[str]]:
        """Delete objects. Data is the list of paths actually removed."""
        bucket = self.bucket(bucket_type)
        removed, error = await capture(
            self._backend.remove_objects(bucket, list(paths)),
            operation="delete_objects",
            target=bucket,
            timeout=self._timeout,
        )
        return Result(data=removed, error=error)
