"""FastAPI application entrypoint for the upload relay."""

import sys
from contextlib import asynccontextmanager

import yaml
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upload_relay import __version__
from upload_relay.api import files_router, uploads_router
from upload_relay.config import RelayConfig, Settings
from upload_relay.core.retry import RetryExecutor
from upload_relay.core.storage import ObjectStore, create_object_store
from upload_relay.core.uploads import StagingArea, StatusRegistry, UploadSessionManager
from upload_relay.core.urls import UrlIssuer
from upload_relay.exceptions import (
    ClientInputError,
    ConfigurationError,
    LocalIOError,
    RelayError,
    UploadInProgressError,
)
from upload_relay.observability.logging import (
    RequestIDMiddleware,
    configure_logging,
    get_logger,
)
from upload_relay.observability.metrics import (
    MetricsMiddleware,
    metrics_endpoint,
    setup_metrics,
)

logger = get_logger(__name__)


def load_config(settings: Settings) -> RelayConfig:
    """Load configuration from file or environment."""
    if settings.config_file and settings.config_file.exists():
        logger.info(f"Loading config from {settings.config_file}")
        with open(settings.config_file) as f:
            config_dict = yaml.safe_load(f) or {}
        return RelayConfig.from_dict(config_dict)
    else:
        logger.info("Using environment-based configuration")
        return settings.to_relay_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Owns, for the life of the process:
    - the object store client
    - the status registry and upload session manager
    - the staging directory
    """
    config: RelayConfig = app.state.config or load_config(Settings())
    app.state.config = config

    if app.state.setup_logging:
        configure_logging(
            level=config.logging.level,
            json_logs=config.logging.json_logs,
            log_file=config.logging.log_file,
        )

    logger.info("Starting upload relay...")

    store: ObjectStore | None = app.state.object_store
    if store is None:
        config.require_complete()
        store = create_object_store(config.storage, config.transfer)
        logger.info(
            f"Using bucket {config.storage.bucket_name} at {config.storage.endpoint_url}"
        )
    await store.initialize()
    app.state.object_store = store

    retry = RetryExecutor(
        max_retries=config.transfer.max_retries,
        delay=config.transfer.retry_delay_seconds,
    )
    app.state.retry_executor = retry

    staging = StagingArea(config.server.staging_dir)
    await staging.initialize()
    app.state.staging_area = staging

    registry = StatusRegistry()
    app.state.status_registry = registry
    app.state.session_manager = UploadSessionManager(
        store,
        registry,
        transfer=config.transfer,
        retry=retry,
    )
    app.state.url_issuer = UrlIssuer(store, retry)

    setup_metrics("upload-relay", __version__)
    logger.info("Upload relay started successfully")

    yield

    logger.info("Shutting down upload relay...")
    await app.state.session_manager.shutdown()
    await store.close()
    logger.info("Shutdown complete")


def add_exception_handlers(app: FastAPI) -> None:
    """Map relay errors onto HTTP responses."""

    @app.exception_handler(ClientInputError)
    async def client_input_handler(request: Request, exc: ClientInputError) -> JSONResponse:
        logger.warning(exc.message, path=request.url.path)
        return JSONResponse(status_code=400, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(UploadInProgressError)
    async def in_progress_handler(request: Request, exc: UploadInProgressError) -> JSONResponse:
        logger.warning(exc.message, key=exc.key)
        return JSONResponse(status_code=409, content={"error": exc.message})

    @app.exception_handler(LocalIOError)
    async def local_io_handler(request: Request, exc: LocalIOError) -> JSONResponse:
        logger.error(exc.message, details=exc.details, path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Failed to stage upload"})

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.error(exc.message, details=exc.details, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": exc.message, "details": exc.details},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error(
            "Unhandled exception",
            exception_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )


def create_app(
    config: RelayConfig | None = None,
    *,
    object_store: ObjectStore | None = None,
    setup_logging: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Relay configuration; loaded from file/environment at startup if None
        object_store: Backend to use instead of one built from ``config.storage``
        setup_logging: Whether startup configures logging
    """
    app = FastAPI(
        title="Upload Relay",
        description="Relays uploaded files to S3-compatible object storage",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.object_store = object_store
    app.state.setup_logging = setup_logging

    # last added runs first
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins if config else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(uploads_router)
    app.include_router(files_router)
    app.get("/metrics")(metrics_endpoint)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Upload Relay",
            "version": __version__,
            "endpoints": {
                "upload": "/upload",
                "progress": "/progress",
                "abort": "/abort",
                "uploads": "/uploads",
                "download": "/download-file",
                "files": "/files",
                "generate_url": "/generate-url",
                "health": "/health",
                "metrics": "/metrics",
            },
        }

    add_exception_handlers(app)
    return app


# Create the app instance
app = create_app()


def main():
    """Run the server, refusing to start without storage credentials."""
    import uvicorn

    settings = Settings()
    try:
        config = load_config(settings)
        config.require_complete()
    except ConfigurationError as e:
        print(e.message, file=sys.stderr)
        configure_logging(level=settings.log_level, log_file=settings.log_file)
        logger.error(e.message, missing=e.missing)
        sys.exit(1)

    uvicorn.run(
        "upload_relay.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
