"""Ordered, all-or-nothing reassembly of chunked uploads."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import aiofiles
import aiofiles.os

from ..errors import MissingChunkError
from ..models import CompletedUpload
from ..storage.folder_namespace import FolderNamespace
from .base import BaseService
from .chunk_store import ChunkStore
from .range_reader import content_type_for

logger = logging.getLogger(__name__)


@dataclass
class Reassembler(BaseService):
    namespace: FolderNamespace
    chunk_store: ChunkStore

    async def complete(self, upload_id: str) -> CompletedUpload:
        """Concatenate chunks ``0..totalChunks-1`` into the destination folder.

        The output is written to a hidden staging file and only renamed to its
        final name after every chunk was copied, so readers never observe a
        partial file. Any failure removes the staging file; a missing chunk
        raises ``MissingChunkError`` naming its index and keeps the session so
        the client can upload it and retry.
        """
        started = time.perf_counter()
        async with self.chunk_store.session_lock(upload_id):
            manifest = await self.chunk_store.load_manifest(upload_id)
            directory = self.namespace.folder_path(manifest.folder, create=True)
            staging = self.namespace.staging_path(directory, upload_id)
            try:
                async with aiofiles.open(staging, "wb") as output:
                    for index in range(manifest.total_chunks):
                        chunk_path = self.chunk_store.chunk_path(upload_id, index)
                        try:
                            source = await aiofiles.open(chunk_path, "rb")
                        except FileNotFoundError:
                            raise MissingChunkError(index) from None
                        try:
                            while True:
                                block = await source.read(self.buffer_size)
                                if not block:
                                    break
                                await output.write(block)
                        finally:
                            await source.close()
                    await output.flush()
                target = await self.namespace.publish(staging, directory, manifest.filename)
            except BaseException:
                await _discard(staging)
                raise
            try:
                await self.chunk_store.purge(upload_id)
            except OSError as exc:
                logger.warning("Upload %s published but scratch purge failed: %s", upload_id, exc)

        size = (await aiofiles.os.stat(target)).st_size
        if size != manifest.size:
            logger.warning(
                "Upload %s assembled %d bytes but %d were declared",
                upload_id,
                size,
                manifest.size,
            )
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.emit_metric("upload.reassembly_ms", elapsed_ms, upload_id=upload_id)
        self.emit_event("upload_completed", upload_id=upload_id, name=target.name)
        logger.info("Upload %s completed as %s (%d bytes)", upload_id, target.name, size)
        return CompletedUpload(
            name=target.name,
            size=size,
            folder=manifest.folder,
            path=target,
            content_type=content_type_for(target.name),
        )


async def _discard(path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Could not remove staging file %s: %s", path.name, exc)
