"""Local staging of incoming request bodies."""

import uuid
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os
from fastapi import UploadFile

from upload_relay.exceptions import LocalIOError

CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class StagedFile:
    path: Path
    size: int
    filename: str
    content_type: str | None


class StagingArea:
    """Directory holding request bodies until they have been relayed."""

    def __init__(self, directory: Path | str):
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    async def initialize(self) -> None:
        """Create the staging directory if it doesn't exist."""
        await aiofiles.os.makedirs(self._directory, exist_ok=True)

    async def stage(self, upload: UploadFile) -> StagedFile:
        """Copy an uploaded file to a uniquely named staging file.

        Raises:
            LocalIOError: If the file can't be written
        """
        path = self._directory / uuid.uuid4().hex
        size = 0
        try:
            async with aiofiles.open(path, "wb") as f:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    await f.write(chunk)
                    size += len(chunk)
        except OSError as e:
            await discard_staged(path, missing_ok=True)
            raise LocalIOError(f"Failed to stage {upload.filename}", details=str(e)) from e

        return StagedFile(
            path=path,
            size=size,
            filename=upload.filename or "",
            content_type=upload.content_type,
        )


async def discard_staged(path: Path | str, *, missing_ok: bool = True) -> None:
    """Remove a staged file.

    Raises:
        LocalIOError: If the file exists but can't be removed
    """
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        if not missing_ok:
            raise LocalIOError(f"Staged file not found: {path}")
    except OSError as e:
        raise LocalIOError(f"Failed to remove staged file {path}", details=str(e)) from e
