"""Shared fixtures: an in-memory object store and helpers around it."""

import asyncio
import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timezone

import pytest

from upload_relay.config import MIB, LoggingConfig, RelayConfig, ServerConfig, TransferConfig
from upload_relay.core.storage import (
    DEFAULT_PART_SIZE,
    DEFAULT_QUEUE_SIZE,
    ObjectMetadata,
    ObjectStore,
    StoredObject,
    TransferCompleted,
    TransferEvent,
    TransferProgress,
    TransferStarted,
    UploadHandle,
)
from upload_relay.exceptions import ObjectNotFoundError, UploadNotFoundError


class BytesSource:
    """Async reader over an in-memory payload."""

    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0
        self.closed = False

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk

    async def close(self) -> None:
        self.closed = True


class InMemoryObjectStore(ObjectStore):
    """ObjectStore keeping objects and multipart uploads in dicts.

    ``fail_part`` makes that part number raise ``fail_with``;
    ``part_gate`` (an asyncio.Event) holds every part until it is set;
    ``get_errors`` are raised, in order, by the next ``get_object`` calls.
    """

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}
        self.uploads: dict[str, tuple[str, dict[int, bytes]]] = {}
        self.aborted: list[tuple[str, str]] = []
        self.part_sizes: dict[str, list[int]] = {}
        self.fail_part: int | None = None
        self.fail_with: Exception = RuntimeError("part upload failed")
        self.part_gate: asyncio.Event | None = None
        self.list_error: Exception | None = None
        self.presign_error: Exception | None = None
        self.get_errors: list[Exception] = []
        self.get_calls = 0
        self.open_downloads = 0
        self.closed = False

    async def initialize(self) -> None:
        pass

    async def put_multipart(
        self,
        key,
        stream,
        *,
        content_type=None,
        size=None,
        part_size=DEFAULT_PART_SIZE,
        concurrency=DEFAULT_QUEUE_SIZE,
        leave_parts_on_error=False,
    ) -> AsyncIterator[TransferEvent]:
        upload_id = uuid.uuid4().hex
        parts: dict[int, bytes] = {}
        self.uploads[upload_id] = (key, parts)
        loaded = 0
        number = 0
        try:
            yield TransferStarted(key=key, upload_id=upload_id)
            while True:
                chunk = await stream.read(part_size)
                if not chunk and number > 0:
                    break
                number += 1
                if self.part_gate is not None:
                    await self.part_gate.wait()
                if self.fail_part == number:
                    raise self.fail_with
                parts[number] = chunk
                loaded += len(chunk)
                yield TransferProgress(
                    key=key,
                    upload_id=upload_id,
                    loaded=loaded,
                    total=size,
                    part_number=number,
                )
                if not chunk:
                    break
        except BaseException:
            if not leave_parts_on_error:
                self.uploads.pop(upload_id, None)
                self.aborted.append((key, upload_id))
            raise

        del self.uploads[upload_id]
        self.objects[key] = b"".join(parts[n] for n in sorted(parts))
        self.content_types[key] = content_type
        self.part_sizes[key] = [len(parts[n]) for n in sorted(parts)]
        yield TransferCompleted(
            key=key,
            upload_id=upload_id,
            parts=len(parts),
            size=loaded,
        )

    async def get_object(self, key: str) -> StoredObject:
        self.get_calls += 1
        if self.get_errors:
            raise self.get_errors.pop(0)
        if key not in self.objects:
            raise ObjectNotFoundError(f"Object not found: {key}", operation="get_object")
        data = self.objects[key]

        async def body():
            for start in range(0, max(len(data), 1), 4):
                yield data[start : start + 4]

        async def close():
            self.open_downloads -= 1

        self.open_downloads += 1
        return StoredObject(
            key=key,
            content_type=self.content_types.get(key),
            content_length=len(data),
            body=body(),
            close=close,
        )

    async def list_objects(self, prefix=None, *, max_keys=None):
        if self.list_error is not None:
            raise self.list_error
        keys = sorted(k for k in self.objects if not prefix or k.startswith(prefix))
        if max_keys is not None:
            keys = keys[:max_keys]
        return [
            ObjectMetadata(
                key=k,
                size=len(self.objects[k]),
                last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc),
            )
            for k in keys
        ]

    async def list_incomplete_uploads(self):
        return [UploadHandle(key=key, upload_id=uid) for uid, (key, _) in self.uploads.items()]

    async def abort_multipart_upload(self, key, upload_id):
        entry = self.uploads.get(upload_id)
        if entry is None or entry[0] != key:
            raise UploadNotFoundError(
                "The specified multipart upload does not exist.",
                operation="abort_multipart_upload",
                code="NoSuchUpload",
            )
        del self.uploads[upload_id]
        self.aborted.append((key, upload_id))

    async def presign(self, key, expires_in):
        if self.presign_error is not None:
            raise self.presign_error
        return f"https://signed.example/{key}?X-Amz-Expires={expires_in}"

    async def close(self):
        self.closed = True


@pytest.fixture
def memory_store():
    return InMemoryObjectStore()


@pytest.fixture
def transfer_config():
    """Fast transfer settings: no backoff, short grace."""
    return TransferConfig(
        part_size_bytes=5 * MIB,
        max_retries=2,
        retry_delay_seconds=0,
        completion_grace_seconds=0.2,
    )


@pytest.fixture
def relay_config(tmp_path, transfer_config):
    return RelayConfig(
        server=ServerConfig(staging_dir=tmp_path / "uploads"),
        transfer=transfer_config,
        logging=LoggingConfig(log_file=None),
    )
