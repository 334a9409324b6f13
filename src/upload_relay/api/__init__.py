"""API routers for the upload relay."""

from upload_relay.api.files import router as files_router
from upload_relay.api.uploads import router as uploads_router

__all__ = [
    "files_router",
    "uploads_router",
]
