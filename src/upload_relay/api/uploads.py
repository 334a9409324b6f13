"""Upload router: accept files, report progress, manage multipart uploads."""

from datetime import datetime
from pathlib import PurePosixPath

import aiofiles
from fastapi import APIRouter, Body, File, UploadFile
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from upload_relay.api.dependencies import (
    SessionManagerDep,
    StagingAreaDep,
    StatusRegistryDep,
)
from upload_relay.core.uploads import discard_staged
from upload_relay.exceptions import ClientInputError, LocalIOError, RelayError
from upload_relay.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["uploads"])


# -----------------------------------------------------------------------------
# Request/Response Models
# -----------------------------------------------------------------------------


class UploadAccepted(BaseModel):
    """Response for POST /upload; the transfer itself continues in the background."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    completed: bool = True
    file_name: str = Field(alias="fileName")


class ProgressResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    percent: int
    completed: bool
    upload_stage: str = Field(alias="uploadStage")
    error: str | None = None


class AbortRequest(BaseModel):
    key: str | None = Field(default=None, validation_alias=AliasChoices("Key", "key"))
    upload_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("UploadId", "uploadId", "upload_id"),
    )


class AbortResponse(BaseModel):
    success: bool = True


class UploadHandleResponse(BaseModel):
    key: str
    upload_id: str
    initiated: datetime | None = None


def object_key_for(filename: str) -> str:
    """Object key for an uploaded file: its base name, whatever the client OS."""
    return PurePosixPath(filename.replace("\\", "/")).name


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.post("/upload")
async def upload_file(
    manager: SessionManagerDep,
    staging: StagingAreaDep,
    file: UploadFile | None = File(None),
) -> UploadAccepted:
    """Accept a file and start relaying it to object storage."""
    if file is None:
        logger.warning("No file received from client")
        raise ClientInputError("No file uploaded")

    key = object_key_for(file.filename or "")
    if not key:
        raise ClientInputError("No filename provided")

    reservation = manager.reserve(key)
    try:
        staged = await staging.stage(file)
    except BaseException:
        manager.release(key, reservation.transfer_id)
        raise

    try:
        source = await aiofiles.open(staged.path, "rb")
    except OSError as e:
        manager.release(key, reservation.transfer_id)
        await discard_staged(staged.path)
        raise LocalIOError(f"Failed to reopen staged file for {key}", details=str(e)) from e

    manager.begin(
        key,
        source,
        content_type=file.content_type,
        size=staged.size,
        staged_path=staged.path,
        transfer_id=reservation.transfer_id,
    )
    return UploadAccepted(message="Upload initiated", file_name=key)


@router.get("/progress", response_model_exclude_none=True)
async def get_progress(
    registry: StatusRegistryDep,
    file: str | None = None,
) -> ProgressResponse:
    """Poll transfer state; unknown keys report an idle record."""
    return ProgressResponse.model_validate(registry.get(file or "").to_progress())


@router.post("/abort", response_model=AbortResponse)
async def abort_upload(
    manager: SessionManagerDep,
    payload: AbortRequest | None = Body(None),
):
    """Abort a multipart upload by key and upload id."""
    if payload is None or not payload.key or not payload.upload_id:
        raise ClientInputError("Missing Key or UploadId")

    try:
        await manager.abort(payload.key, payload.upload_id)
    except RelayError as e:
        logger.error(
            f"Failed to abort {payload.key}",
            key=payload.key,
            upload_id=payload.upload_id,
            error=e.details or e.message,
        )
        return JSONResponse(status_code=500, content={"error": "Abort failed"})

    return AbortResponse()


@router.get("/uploads", response_model=list[UploadHandleResponse])
async def list_uploads(manager: SessionManagerDep):
    """List incomplete multipart uploads."""
    try:
        uploads = await manager.list_incomplete_uploads()
    except RelayError as e:
        logger.error("Failed to list multipart uploads", error=e.details or e.message)
        return JSONResponse(status_code=500, content={"error": "Failed to list uploads"})

    return [
        UploadHandleResponse(key=u.key, upload_id=u.upload_id, initiated=u.initiated)
        for u in uploads
    ]
