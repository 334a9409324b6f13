"""Tests for the operational log line format."""

from upload_relay.observability.logging import render_log_line


def test_render_log_line_prefixes_timestamp():
    line = render_log_line(
        None,
        "info",
        {
            "timestamp": "2024-05-01T12:00:00.000000Z",
            "event": "Upload completed",
            "level": "info",
            "logger": "upload_relay.core.uploads.session",
            "key": "report.pdf",
            "parts": 3,
        },
    )

    assert line == "[2024-05-01T12:00:00.000000Z] Upload completed key=report.pdf parts=3"


def test_render_log_line_without_extras():
    line = render_log_line(None, "info", {"timestamp": "2024-05-01T12:00:00Z", "event": "Started"})

    assert line == "[2024-05-01T12:00:00Z] Started"


def test_render_log_line_appends_traceback():
    line = render_log_line(
        None,
        "error",
        {
            "timestamp": "2024-05-01T12:00:00Z",
            "event": "Upload failed for a.bin",
            "exception": "Traceback (most recent call last):\n  ...\nRuntimeError: boom",
        },
    )

    first, rest = line.split("\n", 1)
    assert first == "[2024-05-01T12:00:00Z] Upload failed for a.bin"
    assert rest.endswith("RuntimeError: boom")


def test_render_log_line_fills_missing_timestamp():
    line = render_log_line(None, "info", {"event": "no clock"})

    assert line.startswith("[")
    assert line.endswith("] no clock")
