"""Upload sessions, transfer status and local staging."""

from upload_relay.core.uploads.session import UploadSessionManager
from upload_relay.core.uploads.staging import StagedFile, StagingArea, discard_staged
from upload_relay.core.uploads.status import (
    StatusRegistry,
    TransferRecord,
    TransferStage,
)

__all__ = [
    "StagedFile",
    "StagingArea",
    "StatusRegistry",
    "TransferRecord",
    "TransferStage",
    "UploadSessionManager",
    "discard_staged",
]
