"""HTTP surface tests against an in-memory object store."""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from upload_relay.config import LoggingConfig, RelayConfig, ServerConfig, TransferConfig
from upload_relay.exceptions import PermanentBackendError, TransientNetworkError
from upload_relay.main import create_app


@pytest.fixture
def api_config(tmp_path):
    return RelayConfig(
        server=ServerConfig(staging_dir=tmp_path / "uploads"),
        transfer=TransferConfig(retry_delay_seconds=0, completion_grace_seconds=30),
        logging=LoggingConfig(log_file=None),
    )


@pytest.fixture
def client(api_config, memory_store):
    app = create_app(api_config, object_store=memory_store, setup_logging=False)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_stage(client, key: str, stage: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        progress = client.get("/progress", params={"file": key}).json()
        if progress["uploadStage"] == stage:
            return progress
        if time.monotonic() > deadline:
            raise AssertionError(f"{key} never reached {stage}: {progress}")
        time.sleep(0.02)


# -----------------------------------------------------------------------------
# Uploads
# -----------------------------------------------------------------------------


def test_upload_then_poll_until_done(client, memory_store, api_config):
    response = client.post(
        "/upload",
        files={"file": ("hello.txt", b"hello world", "text/plain")},
    )

    assert response.status_code == 200
    assert response.json() == {
        "message": "Upload initiated",
        "completed": True,
        "fileName": "hello.txt",
    }

    progress = wait_for_stage(client, "hello.txt", "done")
    assert progress == {"percent": 100, "completed": True, "uploadStage": "done"}
    assert memory_store.objects["hello.txt"] == b"hello world"
    assert memory_store.content_types["hello.txt"] == "text/plain"
    assert list(api_config.server.staging_dir.iterdir()) == []


def test_upload_uses_base_name(client, memory_store):
    response = client.post(
        "/upload",
        files={"file": ("C:\\Users\\me\\notes.txt", b"notes", "text/plain")},
    )

    assert response.json()["fileName"] == "notes.txt"
    wait_for_stage(client, "notes.txt", "done")
    assert memory_store.objects["notes.txt"] == b"notes"


def test_upload_without_file(client):
    response = client.post("/upload", data={"comment": "no file here"})

    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded"}


def test_upload_rejected_while_same_key_uploading(client, memory_store):
    gate = asyncio.Event()
    memory_store.part_gate = gate

    first = client.post("/upload", files={"file": ("same.bin", b"first", "application/octet-stream")})
    assert first.status_code == 200
    wait_for_stage(client, "same.bin", "uploading")

    second = client.post("/upload", files={"file": ("same.bin", b"second", "application/octet-stream")})
    assert second.status_code == 409
    assert "already in progress" in second.json()["error"]

    client.portal.call(gate.set)
    wait_for_stage(client, "same.bin", "done")
    assert memory_store.objects["same.bin"] == b"first"


def test_failed_upload_disappears(client, memory_store):
    memory_store.fail_part = 1

    client.post("/upload", files={"file": ("broken.bin", b"data", "application/octet-stream")})

    deadline = time.monotonic() + 5
    while memory_store.aborted == [] and time.monotonic() < deadline:
        time.sleep(0.02)
    progress = wait_for_stage(client, "broken.bin", "local")
    assert progress == {"percent": 0, "completed": False, "uploadStage": "local"}
    assert "broken.bin" not in memory_store.objects


def test_progress_for_unknown_file(client):
    response = client.get("/progress", params={"file": "never-uploaded.txt"})

    assert response.status_code == 200
    assert response.json() == {"percent": 0, "completed": False, "uploadStage": "local"}


# -----------------------------------------------------------------------------
# Multipart control
# -----------------------------------------------------------------------------


def test_abort_requires_key_and_upload_id(client):
    response = client.post("/abort", json={"Key": "a.bin"})

    assert response.status_code == 400
    assert response.json() == {"error": "Missing Key or UploadId"}


def test_abort_unknown_upload(client):
    response = client.post("/abort", json={"Key": "nonexistent.bin", "UploadId": "nope"})

    assert response.status_code == 500
    assert response.json() == {"error": "Abort failed"}


def test_list_and_abort_incomplete_upload(client, memory_store):
    memory_store.uploads["upload-7"] = ("pending.bin", {})

    listed = client.get("/uploads")
    assert listed.status_code == 200
    assert listed.json() == [{"key": "pending.bin", "upload_id": "upload-7", "initiated": None}]

    aborted = client.post("/abort", json={"Key": "pending.bin", "UploadId": "upload-7"})
    assert aborted.status_code == 200
    assert aborted.json() == {"success": True}
    assert client.get("/uploads").json() == []


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------


def test_list_files(client, memory_store):
    memory_store.objects.update({"docs/a.txt": b"a", "docs/b.txt": b"bb", "img.png": b"png"})

    response = client.get("/files")
    assert response.status_code == 200
    assert [obj["key"] for obj in response.json()] == ["docs/a.txt", "docs/b.txt", "img.png"]
    assert response.json()[1]["size"] == 2

    filtered = client.get("/files", params={"prefix": "docs/"})
    assert [obj["key"] for obj in filtered.json()] == ["docs/a.txt", "docs/b.txt"]


def test_list_files_backend_down(client, memory_store):
    memory_store.list_error = TransientNetworkError("connection reset", operation="list_objects")

    response = client.get("/files")

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to get files"
    assert response.json()["details"] == "connection reset"


def test_download_file(client, memory_store):
    memory_store.objects["report.txt"] = b"quarterly numbers"
    memory_store.content_types["report.txt"] = "text/plain"

    response = client.get("/download-file", params={"filename": "report.txt"})

    assert response.status_code == 200
    assert response.content == b"quarterly numbers"
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["content-disposition"] == (
        "attachment; filename=\"report.txt\"; filename*=UTF-8''report.txt"
    )


def test_download_retries_transient_failure(client, memory_store):
    memory_store.objects["report.txt"] = b"quarterly numbers"
    memory_store.get_errors = [TransientNetworkError("connection reset", operation="get_object")]

    response = client.get("/download-file", params={"filename": "report.txt"})

    assert response.status_code == 200
    assert response.content == b"quarterly numbers"
    assert memory_store.get_calls == 2


def test_download_gives_up_after_retries(client, memory_store):
    memory_store.objects["report.txt"] = b"quarterly numbers"
    memory_store.get_errors = [
        TransientNetworkError("connection reset", operation="get_object") for _ in range(3)
    ]

    response = client.get("/download-file", params={"filename": "report.txt"})

    assert response.status_code == 500
    assert response.json() == {"error": "Download failed"}
    assert memory_store.get_calls == 3


def test_download_releases_object(client, memory_store):
    memory_store.objects["report.txt"] = b"quarterly numbers"

    response = client.get("/download-file", params={"filename": "report.txt"})

    assert response.status_code == 200
    assert memory_store.open_downloads == 0


def test_download_requires_filename(client):
    response = client.get("/download-file")

    assert response.status_code == 400
    assert response.json() == {"error": "Filename is required"}


def test_download_missing_object(client):
    response = client.get("/download-file", params={"filename": "missing.txt"})

    assert response.status_code == 500
    assert response.json() == {"error": "Download failed"}


# -----------------------------------------------------------------------------
# Signed URLs
# -----------------------------------------------------------------------------


def test_generate_url(client, memory_store):
    memory_store.objects["report.pdf"] = b"%PDF"

    response = client.get("/generate-url", params={"file": "report.pdf", "expiry": "600"})

    assert response.status_code == 200
    assert response.json() == {"url": "https://signed.example/report.pdf?X-Amz-Expires=600"}


def test_generate_url_lenient_expiry(client, memory_store):
    memory_store.objects["report.pdf"] = b"%PDF"

    response = client.get("/generate-url", params={"file": "report.pdf", "expiry": "later"})

    assert response.json()["url"].endswith("X-Amz-Expires=3600")


def test_generate_url_missing_object(client):
    response = client.get("/generate-url", params={"file": "missing.txt"})

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to generate signed URL",
        "type": "ObjectNotFound",
        "details": "No object stored under missing.txt",
    }


def test_generate_url_requires_file(client):
    response = client.get("/generate-url")

    assert response.status_code == 400
    assert response.json() == {"error": "Missing file parameter"}


def test_generate_url_presign_failure(client, memory_store):
    memory_store.objects["report.pdf"] = b"%PDF"
    memory_store.presign_error = PermanentBackendError("bad signature", operation="presign")

    response = client.get("/generate-url", params={"file": "report.pdf"})

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to generate signed URL",
        "type": "PresignFailed",
        "details": "bad signature",
    }


# -----------------------------------------------------------------------------
# Service endpoints
# -----------------------------------------------------------------------------


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert "x-request-id" in response.headers


def test_root_lists_endpoints(client):
    endpoints = client.get("/").json()["endpoints"]

    assert endpoints["upload"] == "/upload"
    assert endpoints["generate_url"] == "/generate-url"


def test_shutdown_closes_store(api_config, memory_store):
    app = create_app(api_config, object_store=memory_store, setup_logging=False)
    with TestClient(app):
        pass

    assert memory_store.closed


def test_metrics_count_completed_transfers(client):
    client.post("/upload", files={"file": ("metered.txt", b"123", "text/plain")})
    wait_for_stage(client, "metered.txt", "done")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert 'upload_relay_transfers_total{outcome="completed"}' in response.text
    assert "upload_relay_parts_uploaded_total" in response.text
