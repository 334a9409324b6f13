"""Time-limited signed URLs for stored objects."""

import math
from typing import Any

from pydantic import BaseModel

from upload_relay.core.retry import RetryExecutor
from upload_relay.core.storage import ObjectStore
from upload_relay.exceptions import (
    ObjectNotFound,
    ObjectQueryFailed,
    OperationExhausted,
    PresignFailed,
    StorageError,
)
from upload_relay.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EXPIRY_SECONDS = 3600
MIN_EXPIRY_SECONDS = 1
MAX_EXPIRY_SECONDS = 7 * 24 * 60 * 60  # 7 days, the S3 SigV4 limit


def clamp_expiry(requested: Any) -> int:
    """Resolve a requested expiry to seconds.

    Lenient by policy: anything that isn't a positive number (missing,
    non-numeric, zero, negative) gets the 3600 second default rather than an
    error, and values above seven days are capped at seven days. Fractional
    values are truncated.
    """
    if requested is None or isinstance(requested, bool):
        return DEFAULT_EXPIRY_SECONDS

    try:
        if isinstance(requested, str):
            text = requested.strip()
            try:
                value = int(text)
            except ValueError:
                value = math.trunc(float(text))
        else:
            value = math.trunc(requested)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_EXPIRY_SECONDS

    if value < MIN_EXPIRY_SECONDS:
        return DEFAULT_EXPIRY_SECONDS
    return min(value, MAX_EXPIRY_SECONDS)


class SignedUrlGrant(BaseModel):
    key: str
    expires_in: int
    url: str


class UrlIssuer:
    """Issues signed GET URLs after checking that the object exists.

    The existence check is advisory: an object deleted between the check and
    the first use of the URL still yields a URL that 404s.
    """

    def __init__(self, store: ObjectStore, retry: RetryExecutor | None = None):
        self._store = store
        self._retry = retry or RetryExecutor()

    async def issue(self, key: str, requested_expiry: Any = None) -> SignedUrlGrant:
        """Issue a signed URL for ``key``.

        Raises:
            ObjectQueryFailed: If the check failed (``ObjectNotFound`` if it
                found nothing)
            PresignFailed: If URL generation failed
        """
        expires_in = clamp_expiry(requested_expiry)

        try:
            objects = await self._retry.execute(
                lambda: self._store.list_objects(key, max_keys=1),
                name="find_object",
            )
        except (OperationExhausted, StorageError) as e:
            logger.error(
                f"Failed to query object {key}",
                key=key,
                error=str(e),
                exc_info=True,
            )
            raise ObjectQueryFailed(f"Failed to query object {key}", details=str(e)) from e

        if not any(obj.key == key for obj in objects):
            logger.warning("Signed URL requested for missing object", key=key)
            raise ObjectNotFound(key)

        try:
            url = await self._store.presign(key, expires_in)
        except StorageError as e:
            logger.error(
                f"Failed to generate signed URL for {key}",
                key=key,
                error=str(e),
                exc_info=True,
            )
            raise PresignFailed("Failed to generate signed URL", details=str(e)) from e

        return SignedUrlGrant(key=key, expires_in=expires_in, url=url)
