"""Runtime wiring for the upload server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import CloudConfig
from .messaging import build_bus, InMemoryBus
from .services.chunk_store import ChunkStore
from .services.lifecycle_service import SessionSweeper
from .services.mirror_service import MirrorBackend, MirrorDispatcher, build_mirror_backend
from .services.range_reader import RangeReader
from .services.reassembler import Reassembler
from .services.upload_service import UploadOrchestrator
from .storage.folder_namespace import FolderNamespace
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)


@dataclass
class CloudRuntime:
    config: CloudConfig
    bus: InMemoryBus
    telemetry: TelemetryCollector
    namespace: FolderNamespace
    chunk_store: ChunkStore
    reassembler: Reassembler
    range_reader: RangeReader
    mirror: MirrorDispatcher
    sweeper: SessionSweeper
    upload_service: UploadOrchestrator
    _sweeper_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def bootstrap(
        cls,
        config: Optional[CloudConfig] = None,
        *,
        mirror_backend: Optional[MirrorBackend] = None,
    ) -> "CloudRuntime":
        cfg = config or CloudConfig.default()
        bus = build_bus(cfg.message_bus.backend)
        telemetry = TelemetryCollector(cfg.observability)
        namespace = FolderNamespace(cfg.storage.upload_dir, cfg.storage.scratch_dir_name)

        chunk_store = ChunkStore(config=cfg, telemetry=telemetry, namespace=namespace)
        reassembler = Reassembler(config=cfg, telemetry=telemetry, namespace=namespace, chunk_store=chunk_store)
        range_reader = RangeReader(config=cfg, telemetry=telemetry, namespace=namespace)
        mirror = MirrorDispatcher(
            config=cfg,
            telemetry=telemetry,
            backend=mirror_backend or build_mirror_backend(cfg.mirror),
            bus=bus,
        )
        sweeper = SessionSweeper(config=cfg, telemetry=telemetry, chunk_store=chunk_store, bus=bus)
        upload_service = UploadOrchestrator(
            config=cfg,
            telemetry=telemetry,
            namespace=namespace,
            chunk_store=chunk_store,
            reassembler=reassembler,
            mirror=mirror,
            bus=bus,
        )
        logger.info(
            "Upload root %s (mirror=%s)",
            namespace.root,
            mirror.backend.provider.value if mirror.is_configured() else "disabled",
        )
        return cls(
            config=cfg,
            bus=bus,
            telemetry=telemetry,
            namespace=namespace,
            chunk_store=chunk_store,
            reassembler=reassembler,
            range_reader=range_reader,
            mirror=mirror,
            sweeper=sweeper,
            upload_service=upload_service,
        )

    async def start_background_jobs(self) -> None:
        await self.mirror.start()
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.get_running_loop().create_task(self.sweeper.run_forever(), name="session-sweeper")

    async def stop_background_jobs(self, drain_timeout: float = 5.0) -> None:
        sweeper_task, self._sweeper_task = self._sweeper_task, None
        if sweeper_task is not None:
            sweeper_task.cancel()
            try:
                await sweeper_task
            except asyncio.CancelledError:
                pass
        try:
            await asyncio.wait_for(self.mirror.drain(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Mirror queue not drained within %.1fs; pending copies dropped", drain_timeout)
        await self.mirror.stop()
