"""In-process metrics and event collection for upload activity."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from .config import ObservabilityConfig
from .models import ObservabilityEvent


@dataclass
class TelemetryCollector:
    """Bounded ring of recent metrics and events; oldest entries fall off first."""

    config: ObservabilityConfig
    metrics: Deque[Dict[str, object]] = field(init=False)
    events: Deque[ObservabilityEvent] = field(init=False)

    def __post_init__(self) -> None:
        limit = max(1, self.config.max_metrics)
        self.metrics = deque(maxlen=limit)
        self.events = deque(maxlen=limit)

    def emit_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        sample: Dict[str, object] = {"name": name, "value": value, "at": _utcnow()}
        if labels:
            sample["labels"] = dict(labels)
        self.metrics.append(sample)

    def emit_event(self, message: str, attributes: Optional[Dict[str, str]] = None) -> None:
        self.events.append(ObservabilityEvent(event_type="upload", message=message, attributes=attributes or None))

    def metric_values(self, name: str) -> List[float]:
        return [float(sample["value"]) for sample in self.metrics if sample["name"] == name]

    def totals(self) -> Dict[str, float]:
        summed: Dict[str, float] = {}
        for sample in self.metrics:
            key = str(sample["name"])
            summed[key] = summed.get(key, 0.0) + float(sample["value"])
        return summed


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()
