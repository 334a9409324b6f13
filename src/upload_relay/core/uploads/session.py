"""Upload session manager: drives background multipart transfers."""

import asyncio
import inspect
import time
from pathlib import Path
from typing import Any

from upload_relay.config import TransferConfig
from upload_relay.core.retry import RetryExecutor
from upload_relay.core.storage import (
    AsyncReadable,
    ObjectStore,
    TransferCompleted,
    TransferProgress,
    TransferStarted,
    UploadHandle,
)
from upload_relay.core.uploads.staging import discard_staged
from upload_relay.core.uploads.status import StatusRegistry, TransferRecord, TransferStage
from upload_relay.exceptions import LocalIOError, UploadInProgressError
from upload_relay.observability.logging import get_logger
from upload_relay.observability.metrics import metrics_registry

logger = get_logger(__name__)


def percent_of(loaded: int, total: int) -> int:
    """floor(loaded / total * 100), clamped to [0, 100]."""
    if total <= 0:
        return 0
    return max(0, min(100, (loaded * 100) // total))


class UploadSessionManager:
    """Owns the lifecycle of every transfer this process started.

    Handles:
    - Reserving a key while its request body is staged
    - Running each transfer as a background task that reports progress
      into the ``StatusRegistry``
    - Cleanup of staged files and status records on completion or failure
    - Aborting multipart uploads by (key, upload id), from any origin
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: StatusRegistry,
        *,
        transfer: TransferConfig | None = None,
        retry: RetryExecutor | None = None,
    ):
        self._store = store
        self._registry = registry
        self._transfer = transfer or TransferConfig()
        self._retry = retry or RetryExecutor(
            max_retries=self._transfer.max_retries,
            delay=self._transfer.retry_delay_seconds,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def registry(self) -> StatusRegistry:
        return self._registry

    def active_transfers(self) -> list[str]:
        return list(self._tasks)

    def reserve(self, key: str) -> TransferRecord:
        """Claim ``key`` before its body is staged.

        Raises:
            UploadInProgressError: If another transfer for ``key`` is active
        """
        if self._registry.is_active(key):
            metrics_registry.transfers_total.labels(outcome="rejected").inc()
            raise UploadInProgressError(key)
        record = TransferRecord(key=key, stage=TransferStage.RECEIVED)
        self._registry.set(key, record)
        return record

    def release(self, key: str, transfer_id: str) -> None:
        """Drop a reservation that never turned into a transfer."""
        record = self._registry.get(key)
        if record.transfer_id == transfer_id and record.stage == TransferStage.RECEIVED:
            self._registry.delete(key)

    def begin(
        self,
        key: str,
        source: AsyncReadable,
        *,
        content_type: str | None = None,
        size: int | None = None,
        staged_path: Path | None = None,
        transfer_id: str | None = None,
    ) -> asyncio.Task:
        """Start relaying ``source`` to ``key`` in the background.

        Returns immediately; the transfer's outcome is only visible through
        the registry. ``transfer_id`` continues a reservation made with
        ``reserve()``.

        Returns:
            The task running the transfer

        Raises:
            UploadInProgressError: If another transfer for ``key`` is active
        """
        current = self._registry.get(key)
        if current.active and current.transfer_id != transfer_id:
            metrics_registry.transfers_total.labels(outcome="rejected").inc()
            raise UploadInProgressError(key)

        record = TransferRecord(key=key, stage=TransferStage.UPLOADING)
        if transfer_id:
            record.transfer_id = transfer_id
        self._registry.set(key, record)

        task = asyncio.create_task(
            self._run(
                record,
                source,
                content_type=content_type,
                size=size,
                staged_path=staged_path,
            ),
            name=f"upload:{key}",
        )
        self._tasks[key] = task

        def _forget(finished: asyncio.Task) -> None:
            if self._tasks.get(key) is finished:
                del self._tasks[key]

        task.add_done_callback(_forget)
        logger.info("Upload accepted", key=key, transfer_id=record.transfer_id, size=size)
        return task

    async def _run(
        self,
        record: TransferRecord,
        source: AsyncReadable,
        *,
        content_type: str | None,
        size: int | None,
        staged_path: Path | None,
    ) -> None:
        key = record.key
        transfer_id = record.transfer_id
        started = time.monotonic()
        try:
            events = self._store.put_multipart(
                key,
                source,
                content_type=content_type,
                size=size,
                part_size=self._transfer.part_size_bytes,
                concurrency=self._transfer.queue_size,
                leave_parts_on_error=self._transfer.leave_parts_on_error,
            )
            async for event in events:
                if isinstance(event, TransferStarted):
                    self._registry.update(key, transfer_id=transfer_id, upload_id=event.upload_id)
                elif isinstance(event, TransferProgress):
                    if event.total:
                        self._registry.update(
                            key,
                            transfer_id=transfer_id,
                            stage=TransferStage.UPLOADING,
                            percent=percent_of(event.loaded, event.total),
                        )
                elif isinstance(event, TransferCompleted):
                    logger.info(
                        "Upload completed",
                        key=key,
                        upload_id=event.upload_id,
                        parts=event.parts,
                        size=event.size,
                    )
        except asyncio.CancelledError:
            logger.warning("Upload cancelled", key=key, transfer_id=transfer_id)
            await self._discard(staged_path)
            self._drop(key, transfer_id)
            metrics_registry.record_transfer("cancelled", time.monotonic() - started)
            raise
        except Exception as e:
            logger.error(
                f"Upload failed for {key}",
                key=key,
                transfer_id=transfer_id,
                error=str(e),
                exc_info=True,
            )
            await self._discard(staged_path)
            self._fail(key, transfer_id, e)
            metrics_registry.record_transfer("failed", time.monotonic() - started)
        else:
            await self._discard(staged_path)
            self._registry.update(
                key,
                transfer_id=transfer_id,
                percent=100,
                completed=True,
                stage=TransferStage.DONE,
                upload_id=None,
            )
            if self._registry.get(key).transfer_id == transfer_id:
                self._registry.expire(key, self._transfer.completion_grace_seconds)
            metrics_registry.record_transfer("completed", time.monotonic() - started)
        finally:
            await _close(source)

    def _fail(self, key: str, transfer_id: str, error: Exception) -> None:
        grace = self._transfer.failure_grace_seconds
        if grace <= 0:
            self._drop(key, transfer_id)
            return
        updated = self._registry.update(
            key,
            transfer_id=transfer_id,
            stage=TransferStage.FAILED,
            completed=False,
            upload_id=None,
            error=str(error),
        )
        if updated is not None:
            self._registry.expire(key, grace)

    def _drop(self, key: str, transfer_id: str) -> None:
        if self._registry.get(key).transfer_id == transfer_id:
            self._registry.delete(key)

    async def _discard(self, staged_path: Path | None) -> None:
        if staged_path is None:
            return
        try:
            await discard_staged(staged_path)
        except LocalIOError as e:
            logger.warning("Could not remove staged file", path=str(staged_path), error=e.details)

    async def abort(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload, whoever started it.

        Raises:
            PermanentBackendError: If the backend rejects the abort
            OperationExhausted: If the backend stayed unreachable
        """
        await self._retry.execute(
            lambda: self._store.abort_multipart_upload(key, upload_id),
            name="abort_multipart_upload",
        )
        logger.info(f"Aborted multipart upload: {key}", key=key, upload_id=upload_id)

    async def list_incomplete_uploads(self) -> list[UploadHandle]:
        return await self._retry.execute(
            self._store.list_incomplete_uploads,
            name="list_multipart_uploads",
        )

    async def wait(self, key: str) -> None:
        """Wait for the transfer of ``key`` started by this process, if any."""
        task = self._tasks.get(key)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel in-flight transfers and drop all status records."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._registry.clear()


async def _close(source: Any) -> None:
    close = getattr(source, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result
