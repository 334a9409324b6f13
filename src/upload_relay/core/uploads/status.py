"""In-memory transfer status shared between upload tasks and progress polling."""

import asyncio
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TransferStage(str, Enum):
    LOCAL = "local"  # nothing known about the key
    RECEIVED = "received"  # accepted, request body still being staged
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


ACTIVE_STAGES = {TransferStage.RECEIVED, TransferStage.UPLOADING}


def generate_transfer_id() -> str:
    return f"xfer_{uuid.uuid4().hex[:24]}"


class TransferRecord(BaseModel):
    """Current state of one transfer, keyed by object key."""

    key: str
    transfer_id: str = Field(default_factory=generate_transfer_id)
    percent: int = Field(default=0, ge=0, le=100)
    completed: bool = False
    stage: TransferStage = TransferStage.LOCAL
    upload_id: str | None = None
    error: str | None = None

    @classmethod
    def idle(cls, key: str) -> "TransferRecord":
        """The record reported for keys with no transfer in flight."""
        return cls(key=key, transfer_id="", stage=TransferStage.LOCAL)

    @property
    def active(self) -> bool:
        return self.stage in ACTIVE_STAGES

    def to_progress(self) -> dict[str, Any]:
        """Polling payload: ``{percent, completed, uploadStage}``."""
        progress: dict[str, Any] = {
            "percent": self.percent,
            "completed": self.completed,
            "uploadStage": self.stage.value,
        }
        if self.error:
            progress["error"] = self.error
        return progress


class StatusRegistry:
    """Mapping from object key to its current ``TransferRecord``.

    Owned by the application (one per process) and handed to whoever needs
    it. All access happens on the event loop thread, so no locking is needed.
    Percent only ever moves forward while a record lives: parts finishing
    out of order can't make a poller see progress go backwards.
    """

    def __init__(self):
        self._records: dict[str, TransferRecord] = {}
        self._expiry: dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: str) -> TransferRecord:
        """Return the record for ``key`` or a synthesized idle record."""
        record = self._records.get(key)
        if record is None:
            return TransferRecord.idle(key)
        return record

    def set(self, key: str, record: TransferRecord) -> None:
        self._cancel_expiry(key)
        self._records[key] = record

    def delete(self, key: str) -> None:
        self._cancel_expiry(key)
        self._records.pop(key, None)

    def update(
        self,
        key: str,
        *,
        transfer_id: str | None = None,
        **changes: Any,
    ) -> TransferRecord | None:
        """Apply ``changes`` to an existing record.

        Nothing happens if the record is gone, or if ``transfer_id`` is given
        and the key now belongs to a different transfer.

        Returns:
            The updated record, or None if nothing was updated
        """
        record = self._records.get(key)
        if record is None:
            return None
        if transfer_id is not None and record.transfer_id != transfer_id:
            return None

        if "percent" in changes:
            percent = min(100, max(0, int(changes["percent"])))
            changes["percent"] = max(record.percent, percent)

        updated = record.model_copy(update=changes)
        self._records[key] = updated
        return updated

    def is_active(self, key: str) -> bool:
        record = self._records.get(key)
        return record is not None and record.active

    def expire(self, key: str, after: float) -> None:
        """Delete the record for ``key`` once ``after`` seconds have passed.

        Setting or deleting the key before then cancels the pending removal.
        """
        self._cancel_expiry(key)
        if after <= 0:
            self._records.pop(key, None)
            return
        loop = asyncio.get_running_loop()
        self._expiry[key] = loop.call_later(after, self._expire_now, key)

    def _expire_now(self, key: str) -> None:
        self._expiry.pop(key, None)
        self._records.pop(key, None)

    def _cancel_expiry(self, key: str) -> None:
        handle = self._expiry.pop(key, None)
        if handle is not None:
            handle.cancel()

    def clear(self) -> None:
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        self._records.clear()
