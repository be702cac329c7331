"""FastAPI integration tests covering login, chunked upload and download flow."""

from __future__ import annotations

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Keep the import-time runtime away from the working directory.
os.environ.setdefault("PATS_CLOUD_UPLOAD_DIR", tempfile.mkdtemp(prefix="pats-cloud-tests-"))

from pats_cloud.api import server as api_server  # noqa: E402  (env vars must be set first)
from pats_cloud.config import CloudConfig  # noqa: E402
from pats_cloud.runtime import CloudRuntime  # noqa: E402
from pats_cloud.services.mirror_service import MirrorBackend, MirrorProvider  # noqa: E402

PASSWORD = "hunter2"


class _RecordingBackend(MirrorBackend):
    provider = MirrorProvider.OBJECT_STORE

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.keys = []

    def is_configured(self) -> bool:
        return True

    def upload(self, path, key, content_type):
        self.keys.append(key)
        if self.fail:
            raise ConnectionError("mirror offline")


def _bootstrap(tmp_path, backend=None, password=PASSWORD) -> CloudRuntime:
    cfg = CloudConfig.for_directory(tmp_path / "uploads")
    cfg.auth.app_password = password
    cfg.mirror.synchronous = True
    api_server.runtime = CloudRuntime.bootstrap(cfg, mirror_backend=backend)
    return api_server.runtime


@pytest.fixture
def backend() -> _RecordingBackend:
    return _RecordingBackend()


@pytest.fixture
def client(tmp_path, backend):
    _bootstrap(tmp_path, backend)
    with TestClient(api_server.app) as test_client:
        login = test_client.post("/login", json={"password": PASSWORD})
        assert login.status_code == 200
        yield test_client


def _chunked_upload(client: TestClient, name: str, payload: bytes, chunk_size: int, folder=None, order=None):
    total = max(1, -(-len(payload) // chunk_size))
    body = {"filename": name, "size": len(payload), "chunkSize": chunk_size, "totalChunks": total}
    if folder:
        body["folder"] = folder
    init = client.post("/api/upload/init", json=body)
    assert init.status_code == 200, init.text
    upload_id = init.json()["uploadId"]
    for index in order if order is not None else range(total):
        chunk = payload[index * chunk_size:(index + 1) * chunk_size]
        resp = client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": index}, content=chunk)
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"ok": True, "index": index, "size": len(chunk)}
    return upload_id


# Session gate ---------------------------------------------------------------


def test_routes_require_login(tmp_path):
    _bootstrap(tmp_path)
    with TestClient(api_server.app) as anonymous:
        resp = anonymous.get("/api/files")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

        bad = anonymous.post("/login", json={"password": "wrong"})
        assert bad.status_code == 401
        assert bad.json() == {"error": "Invalid password"}

        good = anonymous.post("/login", json={"password": PASSWORD})
        assert good.status_code == 200
        assert api_server.runtime.config.auth.cookie_name in good.cookies
        assert anonymous.get("/api/files").status_code == 200

        anonymous.post("/logout")
        anonymous.cookies.clear()
        assert anonymous.get("/api/files").status_code == 401


def test_login_without_password_configured_warns(tmp_path):
    _bootstrap(tmp_path, password=None)
    with TestClient(api_server.app) as test_client:
        resp = test_client.post("/login", json={})
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert "APP_PASSWORD" in resp.json()["warning"]


def test_session_tokens_expire_and_reject_tampering():
    token = api_server.issue_session_token("secret", issued_at=1000)
    assert api_server.verify_session_token(token, "secret", 60, now=1030)
    assert not api_server.verify_session_token(token, "secret", 60, now=2000)
    assert not api_server.verify_session_token(token, "other", 60, now=1030)
    assert not api_server.verify_session_token(token + "x", "secret", 60, now=1030)
    assert not api_server.verify_session_token("garbage", "secret", 60)


def test_security_headers_present(client: TestClient):
    resp = client.get("/api/files")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Frame-Options" in resp.headers
    assert "Referrer-Policy" in resp.headers


# Chunked uploads ------------------------------------------------------------


def test_chunked_upload_round_trip(client: TestClient, backend: _RecordingBackend):
    payload = os.urandom(10_000)
    upload_id = _chunked_upload(client, "Holiday Video.MP4", payload, 4096, folder="videos", order=[2, 0, 1])

    status = client.get(f"/api/upload/status/{upload_id}").json()
    assert status["receivedChunks"] == [0, 1, 2]
    assert status["missingChunks"] == []

    done = client.post("/api/upload/complete", json={"uploadId": upload_id})
    assert done.status_code == 200
    assert done.json() == {"ok": True, "file": {"name": "Holiday_Video.mp4", "size": 10_000}, "mirrored": True}
    assert backend.keys == ["videos/Holiday_Video.mp4"]

    listing = client.get("/api/files", params={"folder": "videos"}).json()
    assert listing["folder"] == "videos"
    assert [(entry["name"], entry["size"]) for entry in listing["files"]] == [("Holiday_Video.mp4", 10_000)]
    assert isinstance(listing["files"][0]["modifiedAt"], int)

    download = client.get("/download/Holiday_Video.mp4", params={"folder": "videos"})
    assert download.status_code == 200
    assert download.content == payload
    assert "attachment" in download.headers["content-disposition"]


def test_init_rejects_missing_fields(client: TestClient):
    resp = client.post("/api/upload/init", json={"filename": "a.bin", "size": 10})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing fields"}

    resp = client.post("/api/upload/init", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing fields"}


def test_chunk_validation_errors(client: TestClient):
    upload_id = client.post(
        "/api/upload/init",
        json={"filename": "a.bin", "size": 8, "chunkSize": 4, "totalChunks": 2},
    ).json()["uploadId"]

    assert client.put("/api/upload/chunk", params={"index": 0}, content=b"data").status_code == 400
    assert client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": "x"}, content=b"d").status_code == 400
    empty = client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": 0}, content=b"")
    assert empty.status_code == 400
    assert empty.json() == {"error": "Empty chunk body"}
    unknown = client.put("/api/upload/chunk", params={"uploadId": "missing-id", "index": 0}, content=b"d")
    assert unknown.status_code == 404


def test_complete_with_gap_names_missing_chunk(client: TestClient):
    payload = b"a" * 12
    upload_id = _chunked_upload(client, "gap.bin", payload, 4, order=[0, 2])

    resp = client.post("/api/upload/complete", json={"uploadId": upload_id})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing chunk 1"}
    assert client.get("/api/files").json()["files"] == []

    client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": 1}, content=payload[4:8])
    assert client.post("/api/upload/complete", json={"uploadId": upload_id}).status_code == 200


def test_abort_then_use_is_not_found(client: TestClient):
    upload_id = _chunked_upload(client, "drop.bin", b"z" * 8, 4, order=[0])

    assert client.delete(f"/api/upload/abort/{upload_id}").json() == {"ok": True}
    assert client.delete(f"/api/upload/abort/{upload_id}").json() == {"ok": True}

    assert client.post("/api/upload/complete", json={"uploadId": upload_id}).status_code == 404
    chunk = client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": 1}, content=b"zzzz")
    assert chunk.status_code == 404
    assert client.get(f"/api/upload/status/{upload_id}").status_code == 404


def test_same_name_uploads_are_suffixed(client: TestClient):
    names = []
    for marker in (b"1", b"2", b"3"):
        upload_id = _chunked_upload(client, "report.pdf", marker, 1)
        names.append(client.post("/api/upload/complete", json={"uploadId": upload_id}).json()["file"]["name"])
    assert names == ["report.pdf", "report(1).pdf", "report(2).pdf"]


def test_mirror_failure_does_not_change_response(tmp_path):
    failing = _RecordingBackend(fail=True)
    _bootstrap(tmp_path, failing)
    with TestClient(api_server.app) as test_client:
        test_client.post("/login", json={"password": PASSWORD})
        upload_id = _chunked_upload(test_client, "m.txt", b"mirror me", 64)
        resp = test_client.post("/api/upload/complete", json={"uploadId": upload_id})
        assert resp.status_code == 200
        assert resp.json()["file"] == {"name": "m.txt", "size": 9}
        assert failing.keys == ["m.txt"]


# Direct uploads -------------------------------------------------------------


def test_direct_upload_multiple_files(client: TestClient):
    files = [
        ("files", ("a.txt", b"alpha", "text/plain")),
        ("files", ("a.txt", b"again", "text/plain")),
        ("files", ("Notes.MD", b"# hi", "text/markdown")),
    ]
    resp = client.post("/api/upload", params={"folder": "inbox"}, files=files)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["ok"] is True
    assert body["uploaded"] == [
        {"name": "a.txt", "size": 5},
        {"name": "a(1).txt", "size": 5},
        {"name": "Notes.md", "size": 4},
    ]
    assert body["mirrored"] is True


def test_direct_upload_enforces_limits(client: TestClient):
    api_server.runtime.config.storage.max_file_size = 4
    too_big = client.post("/api/upload", files=[("files", ("big.bin", b"12345", "application/octet-stream"))])
    assert too_big.status_code == 413
    assert client.get("/api/files").json()["files"] == []

    too_many = [("files", (f"f{i}.txt", b"x", "text/plain")) for i in range(21)]
    resp = client.post("/api/upload", files=too_many)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Too many files (limit 20)"}


def test_direct_upload_rejects_whole_batch_on_size_limit(client: TestClient, backend: _RecordingBackend):
    api_server.runtime.config.storage.max_file_size = 4
    batch = [
        ("files", ("ok.txt", b"ok", "text/plain")),
        ("files", ("big.bin", b"12345", "application/octet-stream")),
    ]
    resp = client.post("/api/upload", params={"folder": "inbox"}, files=batch)
    assert resp.status_code == 413
    assert client.get("/api/files", params={"folder": "inbox"}).json()["files"] == []
    inbox = api_server.runtime.namespace.root / "inbox"
    assert [entry.name for entry in inbox.iterdir()] == []
    assert backend.keys == []


# Downloads ------------------------------------------------------------------


def test_range_requests(client: TestClient):
    payload = bytes(range(256)) * 4
    size = len(payload)
    upload_id = _chunked_upload(client, "clip.webm", payload, 256)
    client.post("/api/upload/complete", json={"uploadId": upload_id})

    full = client.get("/file/clip.webm", headers={"Range": "bytes=0-"})
    assert full.status_code == 200
    assert full.content == payload
    assert full.headers["accept-ranges"] == "bytes"
    assert full.headers["content-type"].startswith("video/webm")

    partial = client.get("/file/clip.webm", headers={"Range": "bytes=100-199"})
    assert partial.status_code == 206
    assert partial.content == payload[100:200]
    assert partial.headers["content-range"] == f"bytes 100-199/{size}"
    assert partial.headers["content-length"] == "100"

    beyond = client.get("/file/clip.webm", headers={"Range": f"bytes={size}-"})
    assert beyond.status_code == 416
    assert beyond.headers["content-range"] == f"bytes */{size}"

    plain = client.get("/file/clip.webm")
    assert plain.status_code == 200
    assert len(plain.content) == size


def test_traversal_attempts_are_rejected(client: TestClient, tmp_path):
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret")

    assert client.get("/api/files", params={"folder": "../"}).status_code == 400
    assert client.get("/download/secret.txt", params={"folder": "../.."}).status_code == 400
    assert client.get("/file/..%5Csecret.txt").status_code == 400
    assert client.get("/download/.chunks").status_code == 400
    assert client.delete("/api/files/secret.txt", params={"folder": ".."}).status_code == 400
    assert secret.read_text() == "top secret"

    resp = client.post(
        "/api/upload/init",
        json={"filename": "../../escape.txt", "size": 1, "chunkSize": 1, "totalChunks": 1, "folder": "../../"},
    )
    assert resp.status_code == 400


def test_missing_file_is_404(client: TestClient):
    assert client.get("/download/nope.txt").status_code == 404
    assert client.get("/file/nope.txt").status_code == 404
    assert client.delete("/api/files/nope.txt").status_code == 404


# Folders and housekeeping ---------------------------------------------------


def test_folder_lifecycle_and_delete(client: TestClient):
    created = client.post("/api/folders", json={"name": "Photos 2024"})
    assert created.json() == {"ok": True, "name": "Photos_2024"}
    assert client.post("/api/folders", json={"name": ""}).status_code == 400
    assert client.post("/api/folders", json={"name": "../up"}).status_code == 400
    assert client.get("/api/folders").json() == {"folders": ["Photos_2024"]}

    client.post("/api/upload", params={"folder": "Photos_2024"}, files=[("files", ("p.jpg", b"jpg", "image/jpeg"))])
    assert client.delete("/api/files/p.jpg", params={"folder": "Photos_2024"}).json() == {"ok": True}
    assert client.delete("/api/files/p.jpg", params={"folder": "Photos_2024"}).status_code == 404


def test_storage_and_cloud_status(client: TestClient):
    client.post("/api/upload", files=[("files", ("s.bin", b"12345678", "application/octet-stream"))])
    totals = client.get("/api/storage").json()
    assert set(totals) == {"totalBytes", "freeBytes", "usedBytesUploads"}
    assert totals["usedBytesUploads"] == 8
    assert client.get("/api/cloud/status").json() == {"enabled": True}


# Error rendering ------------------------------------------------------------


def test_malformed_numbers_are_client_errors(client: TestClient):
    init = client.post(
        "/api/upload/init",
        json={"filename": "a.bin", "size": "--5", "chunkSize": 4, "totalChunks": 2},
    )
    assert init.status_code == 400
    assert init.json() == {"error": "Missing fields"}

    upload_id = client.post(
        "/api/upload/init",
        json={"filename": "a.bin", "size": 8, "chunkSize": 4, "totalChunks": 2},
    ).json()["uploadId"]
    for index in ("--1", "\u00b2"):
        resp = client.put("/api/upload/chunk", params={"uploadId": upload_id, "index": index}, content=b"data")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid chunk index"}


def test_unexpected_errors_render_as_json(tmp_path, monkeypatch):
    runtime = _bootstrap(tmp_path)

    async def explode(upload_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(runtime.upload_service, "describe_upload", explode)
    with TestClient(api_server.app, raise_server_exceptions=False) as test_client:
        test_client.post("/login", json={"password": PASSWORD})
        resp = test_client.get("/api/upload/status/some-id")
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal error"}
