"""Tests for the upload and presign endpoints."""

import io
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import BOUNDARY, MemoryObjectStore, multipart_body
from filerelay.main import app
from filerelay.pipeline.coordinator import UploadPipeline
from filerelay.pipeline.exceptions import SigningFailed, StorageConfigurationError
from filerelay.pipeline.guard import UploadPolicy
from filerelay.pipeline.keys import OBJECT_KEY_PATTERN
from filerelay.storage.factory import get_upload_pipeline, get_url_signer

MAX_BYTES = 64 * 1024


@pytest.fixture
def store():
    return MemoryObjectStore()


@pytest.fixture
def client(store):
    """Create test client backed by an in-memory store."""
    pipeline = UploadPipeline(
        store=store,
        policy=UploadPolicy(
            max_bytes=MAX_BYTES,
            allowed_mime_rules=("image/*", "text/plain", "application/pdf"),
        ),
        part_size=16 * 1024,
    )
    app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def signer():
    mock = MagicMock()
    mock.bucket = "test-bucket"
    mock.region = "eu-central-1"

    async def generate_url(key, operation, expires_in, content_type=None):
        return f"https://test-bucket.s3.eu-central-1.amazonaws.com/{key}?op={operation}&expires={expires_in}"

    mock.generate_url = AsyncMock(side_effect=generate_url)
    app.dependency_overrides[get_url_signer] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


def test_upload_valid_image(client, store):
    """Test uploading an allowed image."""
    content = b"\x89PNG\r\n\x1a\n" + b"\x00" * 2048
    files = {"file": ("photo.png", io.BytesIO(content), "image/png")}

    response = client.post("/api/v1/upload", files=files)

    assert response.status_code == 200
    data = response.json()
    assert set(data) == {"url", "key"}
    assert OBJECT_KEY_PATTERN.match(data["key"])
    assert data["key"].endswith("-photo.png")
    assert data["url"] == store.public_url(data["key"])
    assert store.objects[data["key"]] == content


def test_upload_records_client_hint(client, store):
    files = {"file": ("notes.txt", io.BytesIO(b"some notes"), "text/plain")}

    response = client.post("/api/v1/upload", files=files, headers={"x-upload-client": "mobile-app"})

    assert response.status_code == 200
    key = response.json()["key"]
    assert store.object_info[key]["metadata"] == {
        "uploaded-by": "mobile-app",
        "original-name": "notes.txt",
    }


def test_upload_unsupported_type(client, store):
    """Test upload of a disallowed MIME type."""
    files = {"file": ("setup.exe", io.BytesIO(b"MZ" * 100), "application/x-msdownload")}

    response = client.post("/api/v1/upload", files=files)

    assert response.status_code == 415
    assert response.json() == {"error": "Unsupported file type: application/x-msdownload"}
    assert store.calls == []


def test_upload_oversized_file(client, store):
    """Test upload with file exceeding size limit."""
    content = b"x" * (MAX_BYTES + 1)
    files = {"file": ("large.txt", io.BytesIO(content), "text/plain")}

    response = client.post("/api/v1/upload", files=files)

    assert response.status_code == 413
    assert response.json() == {"error": "File too large"}
    assert store.objects == {}
    if "create_multipart_upload" in store.operations():
        assert "abort_multipart_upload" in store.operations()


def test_upload_without_file(client):
    """Test multipart body with only text fields."""
    body, content_type = multipart_body(fields=[("region", "north")])

    response = client.post("/api/v1/upload", content=body, headers={"Content-Type": content_type})

    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded. Field name: file"}


def test_upload_plain_text_body(client, store):
    """Test request that is not multipart/form-data."""
    response = client.post(
        "/api/v1/upload",
        content=b"just some text",
        headers={"Content-Type": "text/plain"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid content-type; expected multipart/form-data"}
    assert store.calls == []


def test_upload_malformed_multipart(client):
    response = client.post(
        "/api/v1/upload",
        content=b"garbage that is not a multipart body",
        headers={"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"},
    )

    assert response.status_code == 400
    assert "error" in response.json()


def test_upload_store_failure(store):
    failing_store = MemoryObjectStore(fail_on="put_object")
    pipeline = UploadPipeline(
        store=failing_store,
        policy=UploadPolicy(max_bytes=MAX_BYTES, allowed_mime_rules=("text/plain",)),
    )
    app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
    try:
        client = TestClient(app)
        files = {"file": ("a.txt", io.BytesIO(b"abc"), "text/plain")}
        response = client.post("/api/v1/upload", files=files)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to store file"}


def test_upload_storage_not_configured():
    def misconfigured():
        raise StorageConfigurationError()

    app.dependency_overrides[get_upload_pipeline] = misconfigured
    try:
        client = TestClient(app)
        files = {"file": ("a.txt", io.BytesIO(b"abc"), "text/plain")}
        response = client.post("/api/v1/upload", files=files)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {"error": "Server not configured: missing S3_BUCKET or AWS_REGION"}


def test_unexpected_error_returns_generic_message():
    pipeline = MagicMock()
    pipeline.run = AsyncMock(side_effect=RuntimeError("kaboom"))
    app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
    try:
        client = TestClient(app, raise_server_exceptions=False)
        files = {"file": ("a.txt", io.BytesIO(b"abc"), "text/plain")}
        response = client.post("/api/v1/upload", files=files)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {"error": "Upload failed"}
    assert "kaboom" not in response.text


def test_request_id_header_returned(client):
    files = {"file": ("a.txt", io.BytesIO(b"abc"), "text/plain")}

    response = client.post("/api/v1/upload", files=files, headers={"x-request-id": "req-123"})

    assert response.headers["x-request-id"] == "req-123"


def test_cors_preflight(client):
    response = client.options(
        "/api/v1/upload",
        headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "x-upload-client",
        },
    )

    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers
    assert "POST" in response.headers["access-control-allow-methods"]


class TestPresign:
    """Tests for presigned direct-upload URLs."""

    def test_presign_returns_urls(self, client, signer):
        response = client.post(
            "/api/v1/presign",
            json={"filename": "report 2024.pdf", "contentType": "application/pdf"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["bucket"] == "test-bucket"
        assert data["region"] == "eu-central-1"
        assert OBJECT_KEY_PATTERN.match(data["key"])
        assert data["key"].endswith("-report_2024.pdf")
        assert "op=PUT" in data["putUrl"]
        assert "op=GET" in data["getUrl"]
        signer.generate_url.assert_any_await(data["key"], "PUT", 900, content_type="application/pdf")

    def test_presign_defaults_content_type(self, client, signer):
        response = client.post("/api/v1/presign", json={"filename": "blob"})

        assert response.status_code == 200
        put_call = signer.generate_url.await_args_list[0]
        assert put_call.kwargs["content_type"] == "application/octet-stream"

    def test_presign_requires_filename(self, client, signer):
        response = client.post("/api/v1/presign", json={"contentType": "image/png"})

        assert response.status_code == 400
        assert response.json() == {"error": "filename is required"}

    def test_presign_blank_filename(self, client, signer):
        response = client.post("/api/v1/presign", json={"filename": "   "})

        assert response.status_code == 400
        assert response.json() == {"error": "filename is required"}

    def test_presign_invalid_body(self, client, signer):
        response = client.post(
            "/api/v1/presign",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_presign_without_signing_backend(self, client):
        app.dependency_overrides[get_url_signer] = lambda: None

        response = client.post("/api/v1/presign", json={"filename": "a.txt"})

        assert response.status_code == 400
        assert "s3" in response.json()["error"]

    def test_presign_signing_failure(self, client, signer):
        signer.generate_url = AsyncMock(side_effect=SigningFailed("expired credentials"))

        response = client.post("/api/v1/presign", json={"filename": "a.txt"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to presign URL"}


class TestEndToEndScenarios:
    """Upload scenarios against the default 5 MB cap."""

    @pytest.fixture
    def scenario_client(self, store):
        def build(rules):
            pipeline = UploadPipeline(
                store=store,
                policy=UploadPolicy(max_bytes=5 * 1024 * 1024, allowed_mime_rules=rules),
                part_size=5 * 1024 * 1024,
            )
            app.dependency_overrides[get_upload_pipeline] = lambda: pipeline
            return TestClient(app)

        yield build
        app.dependency_overrides.clear()

    def test_small_text_file_accepted(self, scenario_client, store):
        client = scenario_client(("text/plain",))
        files = {"file": ("hello.txt", io.BytesIO(b"hello world"), "text/plain")}

        response = client.post("/api/v1/upload", files=files)

        assert response.status_code == 200
        data = response.json()
        assert OBJECT_KEY_PATTERN.match(data["key"])
        assert data["url"]
        assert store.objects[data["key"]] == b"hello world"

    def test_text_file_refused_by_image_rule(self, scenario_client, store):
        client = scenario_client(("image/*",))
        files = {"file": ("hello.txt", io.BytesIO(b"hello world"), "text/plain")}

        response = client.post("/api/v1/upload", files=files)

        assert response.status_code == 415
        assert response.json() == {"error": "Unsupported file type: text/plain"}
        assert store.calls == []

    def test_file_field_without_file(self, scenario_client, store):
        client = scenario_client(("text/plain",))
        body, content_type = multipart_body(fields=[("file", "")])

        response = client.post("/api/v1/upload", content=body, headers={"Content-Type": content_type})

        assert response.status_code == 400
        assert response.json()["error"].startswith("No file uploaded")

    def test_six_megabyte_file_aborted(self, scenario_client, store):
        client = scenario_client(("application/pdf",))
        files = {"file": ("big.pdf", io.BytesIO(b"%" * (6 * 1024 * 1024)), "application/pdf")}

        response = client.post("/api/v1/upload", files=files)

        assert response.status_code == 413
        assert response.json() == {"error": "File too large"}
        assert store.objects == {}
        assert "complete_multipart_upload" not in store.operations()
        if "create_multipart_upload" in store.operations():
            assert "abort_multipart_upload" in store.operations()
