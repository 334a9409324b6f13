"""Structured logging configuration.

Console output goes through structlog's renderers; the operational log file
receives one ``[<ISO-8601 timestamp>] <event>`` line per record so that it can
be tailed and grepped without any tooling.
"""

import logging
import logging.config
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

# Keys the file renderer drops because they are already part of the line prefix
_FILE_LINE_OMITTED_KEYS = ("timestamp", "event", "level", "logger", "func_name")


def render_log_line(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> str:
    """Render an event as ``[timestamp] event key=value ...``.

    A formatted traceback, if present, follows on the next lines.
    """
    timestamp = event_dict.get("timestamp") or datetime.now(timezone.utc).isoformat()
    event = event_dict.get("event", "")
    exception = event_dict.get("exception")

    extras = " ".join(
        f"{key}={value}"
        for key, value in event_dict.items()
        if key not in _FILE_LINE_OMITTED_KEYS and key != "exception"
    )
    line = f"[{timestamp}] {event}"
    if extras:
        line = f"{line} {extras}"
    if exception:
        line = f"{line}\n{exception}"
    return line


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Path | str | None = None,
    enable_access_logs: bool = True,
) -> None:
    """Configure structured logging with structlog.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Whether to output console logs in JSON format
        log_file: Append-only operational log file, disabled when None
        enable_access_logs: Whether to enable HTTP access logs
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            ),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    handlers: dict[str, dict[str, Any]] = {
        "default": {
            "level": level,
            "class": "logging.StreamHandler",
            "formatter": "console",
            "stream": sys.stdout,
        },
    }
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["operations"] = {
            "level": level,
            "class": "logging.FileHandler",
            "formatter": "operations",
            "filename": str(log_file),
            "mode": "a",
            "encoding": "utf-8",
        }
    app_handlers = list(handlers)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": shared_processors,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    console_renderer,
                ],
            },
            "operations": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": shared_processors,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    render_log_line,
                ],
            },
        },
        "handlers": handlers,
        "loggers": {
            "": {  # Root logger
                "handlers": ["default"],
                "level": level,
                "propagate": False,
            },
            "upload_relay": {
                "handlers": app_handlers,
                "level": level,
                "propagate": False,
            },
            "uvicorn": {
                "handlers": ["default"],
                "level": "INFO" if enable_access_logs else "WARNING",
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["default"] if enable_access_logs else [],
                "level": "INFO" if enable_access_logs else "WARNING",
                "propagate": False,
            },
            "botocore": {
                "handlers": ["default"],
                "level": "WARNING",  # Reduce botocore noise
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(logging_config)

    logger = structlog.get_logger("upload_relay.logging")
    logger.info("Logging configured", level=level, json_logs=json_logs, log_file=str(log_file))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a specific module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


# Request ID middleware for tracing
class RequestIDMiddleware:
    """Middleware to add request IDs to logs and responses."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            request_id = str(uuid.uuid4())

            structlog.contextvars.clear_contextvars()
            structlog.contextvars.bind_contextvars(request_id=request_id)

            async def send_wrapper(message):
                if message["type"] == "http.response.start":
                    headers = message.get("headers", [])
                    headers.append([b"x-request-id", request_id.encode()])
                    message["headers"] = headers
                await send(message)

            await self.app(scope, receive, send_wrapper)
        else:
            await self.app(scope, receive, send)
