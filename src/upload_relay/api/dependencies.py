"""Request-scoped access to the services owned by the application."""

from typing import Annotated

from fastapi import Depends, Request

from upload_relay.core.retry import RetryExecutor
from upload_relay.core.storage import ObjectStore
from upload_relay.core.uploads import StagingArea, StatusRegistry, UploadSessionManager
from upload_relay.core.urls import UrlIssuer


def get_session_manager(request: Request) -> UploadSessionManager:
    return request.app.state.session_manager


def get_status_registry(request: Request) -> StatusRegistry:
    return request.app.state.status_registry


def get_staging_area(request: Request) -> StagingArea:
    return request.app.state.staging_area


def get_object_store(request: Request) -> ObjectStore:
    return request.app.state.object_store


def get_retry_executor(request: Request) -> RetryExecutor:
    return request.app.state.retry_executor


def get_url_issuer(request: Request) -> UrlIssuer:
    return request.app.state.url_issuer


SessionManagerDep = Annotated[UploadSessionManager, Depends(get_session_manager)]
StatusRegistryDep = Annotated[StatusRegistry, Depends(get_status_registry)]
StagingAreaDep = Annotated[StagingArea, Depends(get_staging_area)]
ObjectStoreDep = Annotated[ObjectStore, Depends(get_object_store)]
RetryExecutorDep = Annotated[RetryExecutor, Depends(get_retry_executor)]
UrlIssuerDep = Annotated[UrlIssuer, Depends(get_url_issuer)]
