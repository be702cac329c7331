"""Scratch storage for chunked upload sessions.

Each session owns ``<root>/.chunks/<uploadId>/`` holding ``meta.json`` and one
blob per received chunk, named by its decimal index. Chunks arrive in any
order and are persisted independently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Union

import aiofiles
import aiofiles.os

from ..errors import UploadNotFoundError, ValidationError
from ..models import ChunkReceipt, SessionSummary, UploadManifest
from ..storage.folder_namespace import FolderNamespace
from ..storage.naming import sanitize_name
from .base import BaseService

logger = logging.getLogger(__name__)

MANIFEST_NAME = "meta.json"
_UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,128}$")
_INTEGER_PATTERN = re.compile(r"-?[0-9]+")

ChunkBody = Union[bytes, bytearray, AsyncIterable[bytes]]


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def new_upload_id() -> str:
    return f"{int(time.time() * 1000):x}-{secrets.token_hex(8)}"


@dataclass
class ChunkStore(BaseService):
    namespace: FolderNamespace
    _locks: Dict[str, _SessionLock] = field(default_factory=dict)

    # Paths -----------------------------------------------------------------

    def session_dir(self, upload_id: str) -> Path:
        if not upload_id or not _UPLOAD_ID_PATTERN.match(upload_id):
            raise UploadNotFoundError(upload_id)
        return self.namespace.scratch_root / upload_id

    def chunk_path(self, upload_id: str, index: int) -> Path:
        return self.session_dir(upload_id) / str(index)

    @asynccontextmanager
    async def session_lock(self, upload_id: str) -> AsyncIterator[None]:
        """Serialize chunk placement, completion, abort and expiry for one upload id."""
        entry = self._locks.get(upload_id)
        if entry is None:
            entry = self._locks[upload_id] = _SessionLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(upload_id, None)

    # Session lifecycle -----------------------------------------------------

    async def init_session(
        self,
        filename: Optional[str],
        declared_size: object,
        chunk_size: object,
        total_chunks: object,
        folder: Optional[str] = None,
    ) -> UploadManifest:
        size = _as_int(declared_size)
        chunk = _as_int(chunk_size)
        count = _as_int(total_chunks)
        if not filename or size is None or chunk is None or count is None:
            raise ValidationError("Missing fields")
        if size < 0 or chunk <= 0 or count <= 0:
            raise ValidationError("Invalid size, chunkSize or totalChunks")
        safe_name = sanitize_name(filename)
        if not safe_name:
            raise ValidationError("Invalid file name")
        folder_token = self.namespace.folder_token(folder)

        upload_id = new_upload_id()
        manifest = UploadManifest(
            upload_id=upload_id,
            filename=safe_name,
            size=size,
            chunk_size=chunk,
            total_chunks=count,
            folder=folder_token,
            created_at=self._now(),
        )
        directory = self.session_dir(upload_id)
        await aiofiles.os.makedirs(directory, exist_ok=True)
        await self._write_manifest(directory, manifest)
        self.emit_event("upload_session_initiated", upload_id=upload_id)
        logger.info(
            "Upload %s initiated: %s (%d bytes, %d chunks, folder=%r)",
            upload_id,
            safe_name,
            size,
            count,
            folder_token,
        )
        return manifest

    async def load_manifest(self, upload_id: str) -> UploadManifest:
        path = self.session_dir(upload_id) / MANIFEST_NAME
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as handle:
                raw = await handle.read()
        except FileNotFoundError as exc:
            raise UploadNotFoundError(upload_id) from exc
        try:
            return UploadManifest.from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Corrupt manifest for upload %s: %s", upload_id, exc)
            raise UploadNotFoundError(upload_id) from exc

    async def put_chunk(self, upload_id: str, index: object, data: ChunkBody) -> ChunkReceipt:
        manifest = await self.load_manifest(upload_id)
        chunk_index = _as_int(index)
        if chunk_index is None or chunk_index < 0:
            raise ValidationError("Invalid chunk index")
        if chunk_index >= manifest.total_chunks:
            raise ValidationError("Chunk index out of range")

        directory = self.session_dir(upload_id)
        # Spooled outside the session directory; only the rename runs under the lock.
        temp_path = self.namespace.scratch_root / f".{upload_id}.{chunk_index}.{uuid.uuid4().hex}.tmp"
        written = 0
        try:
            async with aiofiles.open(temp_path, "wb") as handle:
                async for block in _iter_body(data):
                    if block:
                        await handle.write(block)
                        written += len(block)
            if written == 0:
                raise ValidationError("Empty chunk body")
            async with self.session_lock(upload_id):
                if not await aiofiles.os.path.isdir(directory):
                    raise UploadNotFoundError(upload_id)
                await aiofiles.os.replace(temp_path, directory / str(chunk_index))
        except FileNotFoundError as exc:
            # Session directory vanished underneath us (abort or expiry).
            raise UploadNotFoundError(upload_id) from exc
        finally:
            await _remove_quietly(temp_path)

        self.emit_metric("upload.chunk_bytes", written, upload_id=upload_id)
        logger.debug("Upload %s: chunk %d stored (%d bytes)", upload_id, chunk_index, written)
        return ChunkReceipt(index=chunk_index, size=written)

    async def received_chunks(self, upload_id: str) -> List[int]:
        directory = self.session_dir(upload_id)
        try:
            names = await aiofiles.os.listdir(directory)
        except FileNotFoundError as exc:
            raise UploadNotFoundError(upload_id) from exc
        return sorted(int(name) for name in names if name.isdigit())

    async def describe_session(self, upload_id: str) -> SessionSummary:
        manifest = await self.load_manifest(upload_id)
        received = await self.received_chunks(upload_id)
        return SessionSummary(manifest=manifest, received_chunks=received)

    async def abort_session(self, upload_id: str) -> None:
        """Discard a session; idempotent and never raises."""
        try:
            directory = self.session_dir(upload_id)
        except UploadNotFoundError:
            return
        async with self.session_lock(upload_id):
            try:
                await self.purge(upload_id)
            except OSError as exc:
                logger.warning("Abort of upload %s left scratch data behind: %s", upload_id, exc)
                return
        self.emit_event("upload_session_aborted", upload_id=upload_id)
        logger.info("Upload %s aborted (%s)", upload_id, directory.name)

    async def purge(self, upload_id: str) -> None:
        directory = self.session_dir(upload_id)
        if not await aiofiles.os.path.isdir(directory):
            return
        await asyncio.to_thread(shutil.rmtree, directory)

    def list_session_ids(self) -> List[str]:
        root = self.namespace.scratch_root
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir() and _UPLOAD_ID_PATTERN.match(entry.name))

    async def _write_manifest(self, directory: Path, manifest: UploadManifest) -> None:
        target = directory / MANIFEST_NAME
        temp_path = directory / f".{MANIFEST_NAME}.tmp"
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as handle:
            await handle.write(json.dumps(manifest.to_json(), indent=2))
        await aiofiles.os.replace(temp_path, target)


def _as_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and _INTEGER_PATTERN.fullmatch(value.strip()):
        return int(value.strip())
    return None


async def _iter_body(data: ChunkBody) -> AsyncIterator[bytes]:
    if isinstance(data, (bytes, bytearray)):
        yield bytes(data)
        return
    async for block in data:
        yield block


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
