"""Observability infrastructure for the upload relay."""

from upload_relay.observability.logging import configure_logging, get_logger
from upload_relay.observability.metrics import metrics_registry, setup_metrics

__all__ = ["configure_logging", "get_logger", "metrics_registry", "setup_metrics"]
