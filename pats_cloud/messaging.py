"""Message bus connecting upload lifecycle events to their consumers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List
from collections import defaultdict

logger = logging.getLogger(__name__)

Handler = Callable[["MessageEnvelope"], None]


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]


class InMemoryBus:
    """In-process pub/sub bus.

    Handlers run synchronously in the publisher's context. A handler that
    raises is logged and skipped: subscribers (mirroring, bookkeeping) must
    never be able to fail the operation that published the event.
    """

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self.failed_deliveries = 0

    def publish(self, envelope: MessageEnvelope) -> None:
        for callback in list(self._subscribers[envelope.topic]):
            try:
                callback(envelope)
            except Exception:
                self.failed_deliveries += 1
                logger.exception("Subscriber for %s failed", envelope.topic)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subscribers[topic].append(handler)


def build_bus(backend: str = "in-memory") -> InMemoryBus:
    if backend != "in-memory":
        raise NotImplementedError("Only the in-memory bus backend is supported")
    return InMemoryBus()
