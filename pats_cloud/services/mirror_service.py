"""Best-effort mirroring of finished uploads to a secondary storage backend.

The backend is chosen once from ``MirrorConfig``. Completed uploads arrive as
``uploads.completed`` bus messages; the dispatcher turns them into
``MirrorTask`` items consumed by a single background worker. Failures are
logged and counted, never retried and never reported to the uploader.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Deque, Optional

import boto3
import requests

from ..config import MirrorConfig
from ..messaging import InMemoryBus, MessageEnvelope
from ..models import MirrorTask
from .base import BaseService

logger = logging.getLogger(__name__)


class MirrorProvider(str, Enum):
    NONE = "none"
    OBJECT_STORE = "s3"
    LEGACY_DRIVE = "drive"


def build_destination_key(prefix: Optional[str], folder: Optional[str], name: str) -> str:
    parts = [part.strip("/") for part in (prefix or "", folder or "", name)]
    return "/".join(part for part in parts if part)


class MirrorBackend:
    provider = MirrorProvider.NONE

    def is_configured(self) -> bool:
        return False

    def upload(self, path: Path, key: str, content_type: str) -> None:
        raise RuntimeError("Cloud not configured")


class NullMirrorBackend(MirrorBackend):
    """Selected when mirroring is disabled or misconfigured."""


class ObjectStoreMirrorBackend(MirrorBackend):
    provider = MirrorProvider.OBJECT_STORE

    def __init__(self, config: MirrorConfig, client: object = None):
        self.config = config
        self._client = client

    def is_configured(self) -> bool:
        cfg = self.config
        return bool(cfg.s3_bucket and cfg.s3_access_key_id and cfg.s3_secret_access_key)

    def _get_client(self):
        if self._client is None:
            cfg = self.config
            self._client = boto3.client(
                "s3",
                region_name=cfg.s3_region,
                aws_access_key_id=cfg.s3_access_key_id,
                aws_secret_access_key=cfg.s3_secret_access_key,
                endpoint_url=cfg.s3_endpoint_url,
            )
        return self._client

    def upload(self, path: Path, key: str, content_type: str) -> None:
        self._get_client().upload_file(
            str(path),
            self.config.s3_bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )


class DriveMirrorBackend(MirrorBackend):
    provider = MirrorProvider.LEGACY_DRIVE

    def __init__(self, config: MirrorConfig, http_client: object = requests):
        self.config = config
        self.http_client = http_client

    def is_configured(self) -> bool:
        return bool(self.config.drive_upload_url and self.config.drive_access_token)

    def upload(self, path: Path, key: str, content_type: str) -> None:
        metadata = {"name": key.rsplit("/", 1)[-1], "appProperties": {"mirrorKey": key}}
        if self.config.drive_folder_id:
            metadata["parents"] = [self.config.drive_folder_id]
        with path.open("rb") as handle:
            response = self.http_client.post(
                self.config.drive_upload_url,
                headers={"Authorization": f"Bearer {self.config.drive_access_token}"},
                files={
                    "metadata": (None, json.dumps(metadata), "application/json; charset=UTF-8"),
                    "file": (metadata["name"], handle, content_type),
                },
                timeout=self.config.timeout_seconds,
            )
        response.raise_for_status()


def build_mirror_backend(config: MirrorConfig) -> MirrorBackend:
    try:
        provider = MirrorProvider(config.provider or "none")
    except ValueError:
        logger.warning("Unknown CLOUD_PROVIDER %r; mirroring disabled", config.provider)
        return NullMirrorBackend()
    if provider is MirrorProvider.OBJECT_STORE:
        backend: MirrorBackend = ObjectStoreMirrorBackend(config)
    elif provider is MirrorProvider.LEGACY_DRIVE:
        backend = DriveMirrorBackend(config)
    else:
        return NullMirrorBackend()
    if not backend.is_configured():
        logger.warning("Mirror provider %s selected without credentials; mirroring disabled", provider.value)
        return NullMirrorBackend()
    return backend


@dataclass
class MirrorDispatcher(BaseService):
    backend: MirrorBackend
    bus: InMemoryBus | None = None
    _queue: Optional[asyncio.Queue] = None
    _worker: Optional[asyncio.Task] = None
    dispatched: Deque[MirrorTask] = field(default_factory=lambda: deque(maxlen=200))

    def __post_init__(self) -> None:
        if self.bus is not None:
            self.bus.subscribe("uploads.completed", self._handle_completed)

    def is_configured(self) -> bool:
        return self.backend.is_configured()

    @property
    def synchronous(self) -> bool:
        return self.config.mirror.synchronous

    def _handle_completed(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        task = MirrorTask(
            source_path=Path(payload["path"]),
            destination_key=build_destination_key(self.config.mirror.key_prefix, payload.get("folder"), payload["name"]),
            content_type=payload.get("content_type") or "application/octet-stream",
        )
        self.dispatch(task)

    def dispatch(self, task: MirrorTask) -> bool:
        """Hand a task to the worker; returns whether it was accepted."""
        if not self.is_configured():
            return False
        self.dispatched.append(task)
        if self.synchronous:
            self._run(task)
            return True
        self._ensure_worker()
        self._queue.put_nowait(task)
        return True

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._queue = self._queue or asyncio.Queue()
        self._worker = asyncio.get_running_loop().create_task(self._consume(), name="mirror-dispatcher")

    async def start(self) -> None:
        if self.is_configured() and not self.synchronous:
            self._ensure_worker()
            logger.info("Mirror dispatcher started (provider=%s)", self.backend.provider.value)

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        self._queue = None

    async def _consume(self) -> None:
        queue = self._queue
        while True:
            task = await queue.get()
            try:
                await asyncio.to_thread(self._run, task)
            finally:
                queue.task_done()

    def _run(self, task: MirrorTask) -> None:
        try:
            self.backend.upload(task.source_path, task.destination_key, task.content_type)
        except Exception as exc:
            self.emit_metric("mirror.failures", 1, provider=self.backend.provider.value)
            logger.warning("Mirror upload of %s failed: %s", task.destination_key, exc)
            return
        self.emit_metric("mirror.uploads", 1, provider=self.backend.provider.value)
        logger.info("Mirrored %s via %s", task.destination_key, self.backend.provider.value)
