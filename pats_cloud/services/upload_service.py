"""Upload orchestrator: the API-facing facade over the upload services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, List, Optional, Tuple

import aiofiles
import aiofiles.os

from ..errors import PayloadTooLargeError, ValidationError
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import ChunkReceipt, CompletedUpload, SessionSummary, UploadManifest
from ..storage.folder_namespace import FolderNamespace
from ..storage.naming import sanitize_name
from .base import BaseService
from .chunk_store import ChunkBody, ChunkStore
from .mirror_service import MirrorDispatcher
from .range_reader import content_type_for
from .reassembler import Reassembler

logger = logging.getLogger(__name__)


@dataclass
class UploadOrchestrator(BaseService):
    namespace: FolderNamespace
    chunk_store: ChunkStore
    reassembler: Reassembler
    mirror: MirrorDispatcher
    bus: InMemoryBus

    @property
    def mirror_enabled(self) -> bool:
        return self.mirror.is_configured()

    async def init_upload(
        self,
        filename: Optional[str],
        size: object,
        chunk_size: object,
        total_chunks: object,
        folder: Optional[str] = None,
    ) -> UploadManifest:
        return await self.chunk_store.init_session(filename, size, chunk_size, total_chunks, folder)

    async def put_chunk(self, upload_id: str, index: object, data: ChunkBody) -> ChunkReceipt:
        return await self.chunk_store.put_chunk(upload_id, index, data)

    async def describe_upload(self, upload_id: str) -> SessionSummary:
        return await self.chunk_store.describe_session(upload_id)

    async def complete_upload(self, upload_id: str) -> CompletedUpload:
        completed = await self.reassembler.complete(upload_id)
        self._announce(completed, upload_id=upload_id)
        return completed

    async def abort_upload(self, upload_id: str) -> None:
        await self.chunk_store.abort_session(upload_id)
        self.bus.publish(MessageEnvelope(topic="uploads.aborted", payload={"upload_id": upload_id}))

    async def store_direct(
        self,
        filename: Optional[str],
        stream: AsyncIterable[bytes],
        folder: Optional[str] = None,
    ) -> CompletedUpload:
        """Persist a single-shot upload under a collision-safe name."""
        (completed,) = await self.store_many([(filename, stream)], folder)
        return completed

    async def store_many(
        self,
        items: List[Tuple[Optional[str], AsyncIterable[bytes]]],
        folder: Optional[str] = None,
    ) -> List[CompletedUpload]:
        """Store a multi-file request as one unit.

        Every file is written to a hidden staging path first; nothing is
        published until all of them passed validation and the size limit.
        A failure while publishing removes the files already published, so
        a rejected request leaves the folder as it was and announces nothing.
        """
        max_files = self.config.storage.max_files_per_request
        if not items:
            raise ValidationError("No files uploaded")
        if len(items) > max_files:
            raise ValidationError(f"Too many files (limit {max_files})")
        directory = self.namespace.folder_path(folder, create=True)
        folder_token = self.namespace.folder_token(folder)

        staged: List[Tuple[Path, str, int]] = []
        try:
            for filename, stream in items:
                staged.append(await self._stage(directory, filename, stream))
        except BaseException:
            for staging, _, _ in staged:
                await _remove_quietly(staging)
            raise

        published: List[Path] = []
        try:
            for staging, safe_name, _ in staged:
                published.append(await self.namespace.publish(staging, directory, safe_name))
        except BaseException:
            for target in published:
                await _remove_quietly(target)
            for staging, _, _ in staged[len(published):]:
                await _remove_quietly(staging)
            raise

        stored: List[CompletedUpload] = []
        for target, (_, _, size) in zip(published, staged):
            completed = CompletedUpload(
                name=target.name,
                size=size,
                folder=folder_token,
                path=target,
                content_type=content_type_for(target.name),
            )
            self.emit_metric("upload.direct_bytes", size)
            logger.info("Stored %s (%d bytes, folder=%r)", target.name, size, folder_token)
            self._announce(completed)
            stored.append(completed)
        return stored

    async def _stage(
        self,
        directory: Path,
        filename: Optional[str],
        stream: AsyncIterable[bytes],
    ) -> Tuple[Path, str, int]:
        safe_name = sanitize_name(filename)
        if not safe_name:
            raise ValidationError("Invalid file name")
        limit = self.config.storage.max_file_size
        staging = self.namespace.staging_path(directory, "direct")
        written = 0
        try:
            async with aiofiles.open(staging, "wb") as handle:
                async for block in stream:
                    written += len(block)
                    if written > limit:
                        raise PayloadTooLargeError(f"File too large (limit {limit} bytes)")
                    await handle.write(block)
        except BaseException:
            await _remove_quietly(staging)
            raise
        return staging, safe_name, written

    def _announce(self, completed: CompletedUpload, **extra: str) -> None:
        payload = {
            "name": completed.name,
            "folder": completed.folder,
            "path": str(completed.path),
            "size": completed.size,
            "content_type": completed.content_type,
            **extra,
        }
        self.bus.publish(MessageEnvelope(topic="uploads.completed", payload=payload))


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
