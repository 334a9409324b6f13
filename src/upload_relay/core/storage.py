"""Object storage backends for relayed uploads.

``ObjectStore`` is the capability surface the relay needs from a backend:
multipart put with progress events, streamed get, listings, multipart abort
and presigning. ``S3ObjectStore`` implements it for any S3-compatible
service (Cloudflare R2, AWS S3, MinIO, ...).
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import AsyncExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from pydantic import BaseModel

from upload_relay.config import MIB, StorageConfig, TransferConfig
from upload_relay.core.retry import RetryExecutor
from upload_relay.exceptions import (
    ObjectNotFoundError,
    PermanentBackendError,
    StorageError,
    TransientNetworkError,
    UploadNotFoundError,
)
from upload_relay.observability.logging import get_logger
from upload_relay.observability.metrics import metrics_registry

logger = get_logger(__name__)

DEFAULT_PART_SIZE = 5 * MIB
DEFAULT_QUEUE_SIZE = 4
DOWNLOAD_CHUNK_SIZE = 64 * 1024

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "SlowDown",
    "ServiceUnavailable",
    "500",
    "502",
    "503",
    "504",
}
NOT_FOUND_ERROR_CODES = {"NoSuchKey", "NotFound", "404"}


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------


class ObjectMetadata(BaseModel):
    """Metadata for a stored object."""

    key: str
    size: int
    last_modified: datetime | None = None
    etag: str | None = None
    storage_class: str | None = None


class UploadHandle(BaseModel):
    """An in-progress multipart upload; enough to abort it from anywhere."""

    key: str
    upload_id: str
    initiated: datetime | None = None


class TransferStarted(BaseModel):
    type: Literal["started"] = "started"
    key: str
    upload_id: str


class TransferProgress(BaseModel):
    type: Literal["progress"] = "progress"
    key: str
    upload_id: str
    loaded: int
    total: int | None = None
    part_number: int


class TransferCompleted(BaseModel):
    type: Literal["completed"] = "completed"
    key: str
    upload_id: str
    etag: str | None = None
    parts: int
    size: int


TransferEvent = TransferStarted | TransferProgress | TransferCompleted


@dataclass
class StoredObject:
    """A downloaded object whose body is streamed lazily.

    ``aclose()`` releases the underlying connection whether or not ``body``
    was ever iterated; it is safe to call more than once.
    """

    key: str
    content_type: str | None
    content_length: int | None
    body: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        close, self.close = self.close, None
        if close is not None:
            await close()


@dataclass
class CompletedPart:
    number: int
    etag: str
    size: int


class AsyncReadable(Protocol):
    """Anything with an awaitable ``read(size)``, e.g. an aiofiles handle."""

    async def read(self, size: int = -1) -> bytes: ...


# -----------------------------------------------------------------------------
# Error translation
# -----------------------------------------------------------------------------


@contextmanager
def translate_errors(operation: str, key: str | None = None) -> Iterator[None]:
    """Map botocore failures onto transient / permanent storage errors."""
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        code = str(error.get("Code", ""))
        message = error.get("Message") or str(e)
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            raise TransientNetworkError(message, operation=operation, code=code) from e
        if code == "NoSuchUpload":
            raise UploadNotFoundError(message, operation=operation, code=code) from e
        if code in NOT_FOUND_ERROR_CODES:
            raise ObjectNotFoundError(
                f"Object not found: {key}" if key else message,
                operation=operation,
                code=code,
            ) from e
        raise PermanentBackendError(message, operation=operation, code=code) from e
    except (BotoConnectionError, HTTPClientError, ConnectionError, asyncio.TimeoutError) as e:
        raise TransientNetworkError(str(e), operation=operation) from e
    except BotoCoreError as e:
        # credentials, parameter validation, ...
        raise PermanentBackendError(str(e), operation=operation) from e


# -----------------------------------------------------------------------------
# Interface
# -----------------------------------------------------------------------------


class ObjectStore(ABC):
    """Abstract base class for object storage backends.

    Every operation may raise ``TransientNetworkError`` (worth retrying) or
    ``PermanentBackendError`` (not worth retrying).
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        ...

    @abstractmethod
    def put_multipart(
        self,
        key: str,
        stream: AsyncReadable,
        *,
        content_type: str | None = None,
        size: int | None = None,
        part_size: int = DEFAULT_PART_SIZE,
        concurrency: int = DEFAULT_QUEUE_SIZE,
        leave_parts_on_error: bool = False,
    ) -> AsyncIterator[TransferEvent]:
        """Upload ``stream`` in parts, yielding transfer events.

        The sequence starts with ``TransferStarted``, yields one
        ``TransferProgress`` per finished part and ends with
        ``TransferCompleted``. A failure is raised from the iterator; unless
        ``leave_parts_on_error`` is set, the server-side upload is aborted
        first. Closing or cancelling the iterator aborts the upload too.

        Args:
            key: Object key
            stream: Source to read parts from
            content_type: MIME type stored with the object
            size: Total size in bytes if known, reported as ``total``
            part_size: Size of every part except the last
            concurrency: Maximum parts in flight (and buffered) at once
            leave_parts_on_error: Keep uploaded parts on failure
        """
        ...

    @abstractmethod
    async def get_object(self, key: str) -> StoredObject:
        """Open an object for streaming.

        The caller owns the result and must ``aclose()`` it when done,
        whether or not the body was consumed.

        Raises:
            ObjectNotFoundError: If the object doesn't exist
        """
        ...

    @abstractmethod
    async def list_objects(
        self, prefix: str | None = None, *, max_keys: int | None = None
    ) -> list[ObjectMetadata]:
        """List stored objects, optionally under ``prefix``."""
        ...

    @abstractmethod
    async def list_incomplete_uploads(self) -> list[UploadHandle]:
        """List multipart uploads that were neither completed nor aborted."""
        ...

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts.

        Raises:
            UploadNotFoundError: If no such upload exists
        """
        ...

    @abstractmethod
    async def presign(self, key: str, expires_in: int) -> str:
        """Generate a signed GET URL for ``key`` valid for ``expires_in`` seconds."""
        ...

    async def close(self) -> None:
        """Close any open connections."""
        pass


# -----------------------------------------------------------------------------
# S3-compatible implementation
# -----------------------------------------------------------------------------


class S3ObjectStore(ObjectStore):
    """S3-compatible object storage.

    Works with Cloudflare R2, AWS S3, MinIO, Ceph, etc. Multipart steps
    (create, each part, complete) run through ``retry`` when one is given.
    """

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_attempts: int = 3,
        retry: RetryExecutor | None = None,
    ):
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._max_attempts = max_attempts
        self._retry = retry
        self._session: aioboto3.Session | None = None
        self._config: dict[str, Any] = {}

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def endpoint_url(self) -> str | None:
        return self._endpoint_url

    async def initialize(self) -> None:
        """Initialize the aioboto3 session."""
        config: dict[str, Any] = {
            "config": Config(
                signature_version="s3v4",
                retries={"max_attempts": self._max_attempts, "mode": "standard"},
            ),
        }
        if self._region:
            config["region_name"] = self._region
        if self._endpoint_url:
            config["endpoint_url"] = self._endpoint_url
        if self._access_key_id:
            config["aws_access_key_id"] = self._access_key_id
        if self._secret_access_key:
            config["aws_secret_access_key"] = self._secret_access_key

        self._session = aioboto3.Session()
        self._config = config

    def _client(self):
        """Get an S3 client context manager."""
        if self._session is None:
            raise RuntimeError("S3ObjectStore.initialize() has not been called")
        return self._session.client("s3", **self._config)

    async def _call(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *,
        key: str | None = None,
        retried: bool = False,
        **kwargs: Any,
    ) -> Any:
        async def attempt() -> Any:
            with translate_errors(operation, key):
                return await func(**kwargs)

        if retried and self._retry is not None:
            return await self._retry.execute(attempt, name=operation)
        return await attempt()

    # -- multipart -------------------------------------------------------------

    async def put_multipart(
        self,
        key: str,
        stream: AsyncReadable,
        *,
        content_type: str | None = None,
        size: int | None = None,
        part_size: int = DEFAULT_PART_SIZE,
        concurrency: int = DEFAULT_QUEUE_SIZE,
        leave_parts_on_error: bool = False,
    ) -> AsyncIterator[TransferEvent]:
        create_kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if content_type:
            create_kwargs["ContentType"] = content_type

        async with self._client() as client:
            created = await self._call(
                "create_multipart_upload",
                client.create_multipart_upload,
                key=key,
                retried=True,
                **create_kwargs,
            )
            upload_id = created["UploadId"]
            logger.info("Multipart upload created", key=key, upload_id=upload_id)

            parts: list[CompletedPart] = []
            pending: set[asyncio.Task] = set()
            done: set[asyncio.Task] = set()
            loaded = 0
            part_number = 0
            exhausted = False
            try:
                yield TransferStarted(key=key, upload_id=upload_id)

                while True:
                    # Holding at most `concurrency` parts bounds buffered memory
                    while not exhausted and len(pending) < concurrency:
                        chunk = await stream.read(part_size)
                        if not chunk and part_number > 0:
                            exhausted = True
                            break
                        part_number += 1
                        pending.add(
                            asyncio.create_task(
                                self._upload_part(client, key, upload_id, part_number, chunk)
                            )
                        )
                        if not chunk:
                            # empty source: a single empty part
                            exhausted = True

                    if not pending:
                        break

                    done, pending = await asyncio.wait(
                        pending, return_when=asyncio.FIRST_COMPLETED
                    )
                    for task in done:
                        part = task.result()
                        parts.append(part)
                        loaded += part.size
                        yield TransferProgress(
                            key=key,
                            upload_id=upload_id,
                            loaded=loaded,
                            total=size,
                            part_number=part.number,
                        )

                parts.sort(key=lambda p: p.number)
                completed = await self._call(
                    "complete_multipart_upload",
                    client.complete_multipart_upload,
                    key=key,
                    retried=True,
                    Bucket=self._bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={
                        "Parts": [{"PartNumber": p.number, "ETag": p.etag} for p in parts]
                    },
                )
            except BaseException:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                # read every finished part so no task exception goes unretrieved
                for task in done:
                    if not task.cancelled():
                        task.exception()
                if not leave_parts_on_error:
                    await self._abort_quietly(client, key, upload_id)
                raise

            etag = completed.get("ETag")
            yield TransferCompleted(
                key=key,
                upload_id=upload_id,
                etag=etag.strip('"') if etag else None,
                parts=len(parts),
                size=loaded,
            )

    async def _upload_part(
        self, client: Any, key: str, upload_id: str, part_number: int, body: bytes
    ) -> CompletedPart:
        response = await self._call(
            "upload_part",
            client.upload_part,
            key=key,
            retried=True,
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=body,
        )
        metrics_registry.record_part(len(body))
        return CompletedPart(number=part_number, etag=response["ETag"], size=len(body))

    async def _abort_quietly(self, client: Any, key: str, upload_id: str) -> None:
        try:
            await self._call(
                "abort_multipart_upload",
                client.abort_multipart_upload,
                key=key,
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
            )
            logger.info("Aborted failed multipart upload", key=key, upload_id=upload_id)
        except StorageError as e:
            # already aborted from outside, or the backend is unreachable
            logger.warning(
                "Failed to abort multipart upload",
                key=key,
                upload_id=upload_id,
                error=str(e),
            )

    # -- reads -----------------------------------------------------------------

    async def get_object(self, key: str) -> StoredObject:
        stack = AsyncExitStack()
        client = await stack.enter_async_context(self._client())
        try:
            response = await self._call(
                "get_object",
                client.get_object,
                key=key,
                Bucket=self._bucket,
                Key=key,
            )
        except BaseException:
            await stack.aclose()
            raise

        body = response["Body"]
        stack.callback(body.close)

        async def iter_body() -> AsyncIterator[bytes]:
            try:
                with translate_errors("get_object", key):
                    async for chunk in body.iter_chunks(DOWNLOAD_CHUNK_SIZE):
                        yield chunk
            finally:
                await stored.aclose()

        stored = StoredObject(
            key=key,
            content_type=response.get("ContentType"),
            content_length=response.get("ContentLength"),
            body=iter_body(),
            close=stack.aclose,
        )
        return stored

    async def list_objects(
        self, prefix: str | None = None, *, max_keys: int | None = None
    ) -> list[ObjectMetadata]:
        kwargs: dict[str, Any] = {"Bucket": self._bucket}
        if prefix:
            kwargs["Prefix"] = prefix

        async with self._client() as client:
            if max_keys is not None:
                response = await self._call(
                    "list_objects", client.list_objects_v2, MaxKeys=max_keys, **kwargs
                )
                return [_object_metadata(item) for item in response.get("Contents", [])]

            objects: list[ObjectMetadata] = []
            paginator = client.get_paginator("list_objects_v2")
            with translate_errors("list_objects"):
                async for page in paginator.paginate(**kwargs):
                    objects.extend(_object_metadata(item) for item in page.get("Contents", []))
            return objects

    async def list_incomplete_uploads(self) -> list[UploadHandle]:
        uploads: list[UploadHandle] = []
        async with self._client() as client:
            paginator = client.get_paginator("list_multipart_uploads")
            with translate_errors("list_multipart_uploads"):
                async for page in paginator.paginate(Bucket=self._bucket):
                    uploads.extend(
                        UploadHandle(
                            key=item["Key"],
                            upload_id=item["UploadId"],
                            initiated=item.get("Initiated"),
                        )
                        for item in page.get("Uploads", [])
                    )
        return uploads

    # -- control -----------------------------------------------------------------

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        async with self._client() as client:
            await self._call(
                "abort_multipart_upload",
                client.abort_multipart_upload,
                key=key,
                Bucket=self._bucket,
                Key=key,
                UploadId=upload_id,
            )

    async def presign(self, key: str, expires_in: int) -> str:
        async with self._client() as client:
            url = await self._call(
                "generate_presigned_url",
                client.generate_presigned_url,
                key=key,
                ClientMethod="get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        return str(url)


def _object_metadata(item: dict[str, Any]) -> ObjectMetadata:
    etag = item.get("ETag")
    return ObjectMetadata(
        key=item["Key"],
        size=item.get("Size", 0),
        last_modified=item.get("LastModified"),
        etag=etag.strip('"') if etag else None,
        storage_class=item.get("StorageClass"),
    )


def create_object_store(
    config: StorageConfig,
    transfer: TransferConfig | None = None,
) -> ObjectStore:
    """Factory function to create the object store from config."""
    transfer = transfer or TransferConfig()
    return S3ObjectStore(
        bucket=config.bucket_name or "",
        endpoint_url=config.endpoint_url,
        region=config.region,
        access_key_id=config.access_key,
        secret_access_key=config.secret_key,
        max_attempts=transfer.http_max_attempts,
        retry=RetryExecutor(
            max_retries=transfer.max_retries,
            delay=transfer.retry_delay_seconds,
        ),
    )
