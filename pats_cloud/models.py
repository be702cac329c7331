"""Data models shared across the upload services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class UploadManifest:
    upload_id: str
    filename: str
    size: int
    chunk_size: int
    total_chunks: int
    folder: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> Dict[str, object]:
        return {
            "uploadId": self.upload_id,
            "filename": self.filename,
            "size": self.size,
            "chunkSize": self.chunk_size,
            "totalChunks": self.total_chunks,
            "folder": self.folder,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, object]) -> "UploadManifest":
        created_at = datetime.fromisoformat(str(data["createdAt"]))
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            upload_id=str(data["uploadId"]),
            filename=str(data["filename"]),
            size=int(data["size"]),
            chunk_size=int(data["chunkSize"]),
            total_chunks=int(data["totalChunks"]),
            folder=str(data.get("folder") or ""),
            created_at=created_at,
        )


@dataclass
class ChunkReceipt:
    index: int
    size: int


@dataclass
class StoredFile:
    name: str
    size: int
    modified_at: float
    folder: str = ""

    def to_json(self) -> Dict[str, object]:
        # Milliseconds since the epoch, as browsers expect from Date.now().
        return {"name": self.name, "size": self.size, "modifiedAt": int(self.modified_at * 1000)}


@dataclass
class CompletedUpload:
    name: str
    size: int
    folder: str
    path: Path
    content_type: str


@dataclass
class MirrorTask:
    source_path: Path
    destination_key: str
    content_type: str


@dataclass
class SessionSummary:
    manifest: UploadManifest
    received_chunks: List[int]

    @property
    def missing_chunks(self) -> List[int]:
        received = set(self.received_chunks)
        return [index for index in range(self.manifest.total_chunks) if index not in received]

    def to_json(self) -> Dict[str, object]:
        payload = self.manifest.to_json()
        payload["receivedChunks"] = list(self.received_chunks)
        payload["missingChunks"] = self.missing_chunks
        return payload


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
