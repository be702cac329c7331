"""Client helpers for chunked, resumable uploads leveraging the status endpoint."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


@dataclass
class UploadStatusClient:
    base_url: str
    timeout: float = 30.0
    http_client: object = field(default_factory=requests.Session)

    def _url(self, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}{suffix}"

    def login(self, password: Optional[str]) -> Dict[str, object]:
        response = self.http_client.post(self._url("/login"), json={"password": password}, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if body.get("warning"):
            logger.warning("Server warning: %s", body["warning"])
        return body

    def init(self, filename: str, size: int, chunk_size: int, total_chunks: int, folder: Optional[str] = None) -> str:
        payload: Dict[str, object] = {
            "filename": filename,
            "size": size,
            "chunkSize": chunk_size,
            "totalChunks": total_chunks,
        }
        if folder:
            payload["folder"] = folder
        response = self.http_client.post(self._url("/api/upload/init"), json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()["uploadId"]

    def put_chunk(self, upload_id: str, index: int, data: bytes) -> Dict[str, object]:
        response = self.http_client.put(
            self._url("/api/upload/chunk"),
            params={"uploadId": upload_id, "index": index},
            data=data,
            headers={"Content-Type": "application/octet-stream"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def fetch(self, upload_id: str) -> Dict[str, object]:
        response = self.http_client.get(self._url(f"/api/upload/status/{upload_id}"), timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def complete(self, upload_id: str) -> Dict[str, object]:
        response = self.http_client.post(
            self._url("/api/upload/complete"),
            json={"uploadId": upload_id},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def abort(self, upload_id: str) -> None:
        response = self.http_client.delete(self._url(f"/api/upload/abort/{upload_id}"), timeout=self.timeout)
        response.raise_for_status()


@dataclass
class ChunkedUploader:
    """Uploads a local file in fixed-size chunks and resumes interrupted sessions.

    Chunk bodies must be non-empty, so zero-byte files raise ``ValueError`` before
    any request is made; send those through the single-shot ``/api/upload``.
    """

    base_url: str
    file_path: Path
    chunk_size: int = DEFAULT_CHUNK_SIZE
    folder: Optional[str] = None
    password: Optional[str] = None
    http_client: object = field(default_factory=requests.Session)
    on_progress: Optional[Callable[[int, int], None]] = None

    def __post_init__(self) -> None:
        self.file_path = Path(self.file_path)
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._status = UploadStatusClient(self.base_url, http_client=self.http_client)
        self._logged_in = False

    @property
    def total_size(self) -> int:
        return self.file_path.stat().st_size

    @property
    def total_chunks(self) -> int:
        return max(1, math.ceil(self.total_size / self.chunk_size))

    def upload(self) -> Dict[str, object]:
        if self.total_size == 0:
            raise ValueError(f"{self.file_path.name} is empty; use the direct upload endpoint instead")
        self.ensure_login()
        upload_id = self._status.init(
            self.file_path.name,
            self.total_size,
            self.chunk_size,
            self.total_chunks,
            self.folder,
        )
        logger.info("Uploading %s as %s (%d chunks)", self.file_path.name, upload_id, self.total_chunks)
        self._send(upload_id, range(self.total_chunks))
        return self._status.complete(upload_id)

    def resume(self, upload_id: str) -> Dict[str, object]:
        """Send only the chunks the server reports missing, then complete."""
        self.ensure_login()
        status = self._status.fetch(upload_id)
        missing: List[int] = [int(index) for index in status.get("missingChunks", [])]
        logger.info("Resuming %s: %d chunk(s) missing", upload_id, len(missing))
        self._send(upload_id, missing)
        return self._status.complete(upload_id)

    def ensure_login(self) -> None:
        if not self._logged_in:
            self._status.login(self.password)
            self._logged_in = True

    def _send(self, upload_id: str, indexes: Iterable[int]) -> None:
        sent = 0
        pending = list(indexes)
        for index in pending:
            self._status.put_chunk(upload_id, index, self._read_chunk(index))
            sent += 1
            if self.on_progress:
                self.on_progress(sent, len(pending))

    def _read_chunk(self, index: int) -> bytes:
        offset = index * self.chunk_size
        with self.file_path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(self.chunk_size)
        if not data:
            raise RuntimeError(f"Local file has no bytes for chunk {index}")
        return data
