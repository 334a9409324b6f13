"""Files router: download, list and share stored objects."""

from datetime import datetime
from urllib.parse import quote

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from pydantic import BaseModel

from upload_relay.api.dependencies import (
    ObjectStoreDep,
    RetryExecutorDep,
    UrlIssuerDep,
)
from upload_relay.exceptions import (
    ClientInputError,
    ObjectQueryFailed,
    PresignFailed,
    RelayError,
)
from upload_relay.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["files"])


class ObjectResponse(BaseModel):
    key: str
    size: int
    last_modified: datetime | None = None
    etag: str | None = None
    storage_class: str | None = None


class SignedUrlResponse(BaseModel):
    url: str


def content_disposition(filename: str) -> str:
    """``attachment`` disposition that survives non-ASCII names."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


@router.get("/download-file")
async def download_file(
    store: ObjectStoreDep,
    retry: RetryExecutorDep,
    filename: str | None = None,
):
    """Stream an object back to the caller."""
    if not filename:
        raise ClientInputError("Filename is required")

    try:
        stored = await retry.execute(
            lambda: store.get_object(filename),
            name="get_object",
        )
    except RelayError as e:
        logger.error(f"Download failed for {filename}", key=filename, error=e.details or e.message)
        return JSONResponse(status_code=500, content={"error": "Download failed"})

    headers = {"Content-Disposition": content_disposition(filename)}
    if stored.content_length is not None:
        headers["Content-Length"] = str(stored.content_length)

    return StreamingResponse(
        stored.body,
        media_type=stored.content_type or "application/octet-stream",
        headers=headers,
        background=BackgroundTask(stored.aclose),
    )


@router.get("/files", response_model=list[ObjectResponse])
async def list_files(
    store: ObjectStoreDep,
    retry: RetryExecutorDep,
    prefix: str | None = None,
):
    """List stored objects, optionally under a prefix."""
    endpoint = getattr(store, "endpoint_url", None)
    logger.info(f"GET /files requested, endpoint={endpoint}", prefix=prefix)

    try:
        objects = await retry.execute(
            lambda: store.list_objects(prefix),
            name="list_objects",
        )
    except RelayError as e:
        logger.error("Failed to list files", error=e.details or e.message, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to get files", "details": e.details or e.message},
        )

    return [ObjectResponse(**obj.model_dump()) for obj in objects]


@router.get("/generate-url", response_model=SignedUrlResponse)
async def generate_url(
    issuer: UrlIssuerDep,
    file: str | None = None,
    expiry: str | None = None,
):
    """Issue a time-limited signed download URL."""
    if not file:
        raise ClientInputError("Missing file parameter")

    try:
        grant = await issuer.issue(file, expiry)
    except (ObjectQueryFailed, PresignFailed) as e:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to generate signed URL",
                "type": type(e).__name__,
                "details": e.details or e.message,
            },
        )

    return SignedUrlResponse(url=grant.url)
