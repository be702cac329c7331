"""Base class for upload services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from ..config import CloudConfig
from ..telemetry import TelemetryCollector


@dataclass
class BaseService:
    config: CloudConfig
    telemetry: TelemetryCollector

    def emit_metric(self, name: str, value: float, **labels: str) -> None:
        self.telemetry.emit_metric(name, value, labels)

    def emit_event(self, message: str, **attrs: str) -> None:
        self.telemetry.emit_event(message, attrs)

    @property
    def buffer_size(self) -> int:
        return max(4096, self.config.storage.read_buffer_size)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
