"""Expiry of abandoned chunk sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..errors import UploadNotFoundError
from ..messaging import InMemoryBus, MessageEnvelope
from .base import BaseService
from .chunk_store import ChunkStore

logger = logging.getLogger(__name__)


@dataclass
class SessionSweeper(BaseService):
    chunk_store: ChunkStore
    bus: InMemoryBus | None = None

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.config.storage.session_ttl_seconds)

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Purge sessions created more than ``ttl`` ago; returns purged ids."""
        now = now or self._now()
        cutoff = now - self.ttl
        expired: List[str] = []
        for upload_id in self.chunk_store.list_session_ids():
            created_at = await self._created_at(upload_id)
            if created_at is None or created_at >= cutoff:
                continue
            async with self.chunk_store.session_lock(upload_id):
                try:
                    await self.chunk_store.purge(upload_id)
                except OSError as exc:
                    logger.warning("Could not purge expired upload %s: %s", upload_id, exc)
                    continue
            expired.append(upload_id)
        if expired:
            self.emit_metric("uploads.expired", len(expired))
            logger.info("Purged %d expired upload session(s)", len(expired))
            if self.bus:
                self.bus.publish(MessageEnvelope(topic="uploads.expired", payload={"upload_ids": expired}))
        return expired

    async def run_forever(self) -> None:
        interval = max(1, self.config.storage.sweep_interval_seconds)
        while True:
            try:
                await self.sweep()
            except OSError as exc:
                logger.error("Session sweep failed: %s", exc)
            await asyncio.sleep(interval)

    async def _created_at(self, upload_id: str) -> Optional[datetime]:
        try:
            return (await self.chunk_store.load_manifest(upload_id)).created_at
        except UploadNotFoundError:
            # Unreadable or missing manifest: fall back to the directory age.
            try:
                mtime = self.chunk_store.session_dir(upload_id).stat().st_mtime
            except (OSError, UploadNotFoundError):
                return None
            return datetime.fromtimestamp(mtime, timezone.utc)
