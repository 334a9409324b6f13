"""Prometheus metrics for monitoring transfers."""

import re
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    Info,
    generate_latest,
)
from starlette.requests import Request
from starlette.responses import Response


class MetricsRegistry:
    """Central registry for application metrics."""

    def __init__(self):
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Initialize Prometheus metrics."""

        self.app_info = Info("upload_relay_app", "Upload relay application information")

        # HTTP request metrics
        self.http_requests_total = Counter(
            "upload_relay_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
        )

        self.http_request_duration_seconds = Histogram(
            "upload_relay_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        )

        # Transfer metrics
        self.transfers_total = Counter(
            "upload_relay_transfers_total",
            "Total transfers by outcome",
            ["outcome"],  # completed, failed, cancelled, rejected
        )

        self.transfer_duration_seconds = Histogram(
            "upload_relay_transfer_duration_seconds",
            "Transfer duration in seconds",
            ["outcome"],
            buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0, 3600.0],
        )

        self.parts_uploaded_total = Counter(
            "upload_relay_parts_uploaded_total",
            "Total multipart parts uploaded",
        )

        self.bytes_uploaded_total = Counter(
            "upload_relay_bytes_uploaded_total",
            "Total bytes relayed to object storage",
        )

        # Retry metrics
        self.retry_attempts_total = Counter(
            "upload_relay_retry_attempts_total",
            "Failed attempts seen by the retry executor",
            ["operation", "outcome"],  # outcome: retrying, exhausted
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration: float,
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code),
        ).inc()

        self.http_request_duration_seconds.labels(
            method=method, endpoint=endpoint
        ).observe(duration)

    def record_transfer(self, outcome: str, duration: float) -> None:
        self.transfers_total.labels(outcome=outcome).inc()
        self.transfer_duration_seconds.labels(outcome=outcome).observe(duration)

    def record_part(self, size: int) -> None:
        self.parts_uploaded_total.inc()
        self.bytes_uploaded_total.inc(size)

    def record_retry(self, operation: str, outcome: str) -> None:
        self.retry_attempts_total.labels(operation=operation, outcome=outcome).inc()


# Global metrics registry
metrics_registry = MetricsRegistry()


def setup_metrics(app_name: str, version: str) -> None:
    """Set up application info metrics."""
    metrics_registry.app_info.info({"app_name": app_name, "version": version})


class MetricsMiddleware:
    """Middleware to automatically collect HTTP request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            start_time = time.time()
            status_code = 200

            async def send_wrapper(message):
                nonlocal status_code
                if message["type"] == "http.response.start":
                    status_code = message["status"]
                await send(message)

            try:
                await self.app(scope, receive, send_wrapper)
            except Exception:
                status_code = 500
                raise
            finally:
                metrics_registry.record_http_request(
                    method=scope.get("method", "UNKNOWN"),
                    endpoint=self._normalize_path(scope.get("path", "/unknown")),
                    status_code=status_code,
                    duration=time.time() - start_time,
                )
        else:
            await self.app(scope, receive, send)

    def _normalize_path(self, path: str) -> str:
        """Collapse numeric segments so label cardinality stays bounded."""
        return re.sub(r"/\d+", "/{id}", path)


def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint."""
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
