"""
In-process registry of live realtime connections (SSE streams, websockets, ...).

A connection is any object with a ``send(message)`` method. Messages are addressed
either to one audience ``(audience_type, audience_id)`` or to a broadcast class that
fans out to every connection of a role.

The hub only reaches connections held by the same process. A server that accepts
realtime clients embeds the workers: it creates one hub, registers each client on it and
passes it to ``build_default_registry(settings, hub=hub)`` before ``start_workers``.
A standalone ``outboxctl worker start`` has no clients, so its pushes reach nobody.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

# broadcast class -> audience_type it reaches (None = everyone)
BROADCAST_CLASSES: Dict[str, Optional[str]] = {
    "broadcast_drivers": "driver",
    "broadcast_companies": "company",
    "broadcast_all": None,
}


class Connection(Protocol):
    def send(self, message: Dict[str, Any]) -> None: ...


@dataclass(frozen=True, eq=False)
class Subscription:
    audience_type: str
    audience_id: Optional[int]
    connection: Any


class ConnectionHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []

    def register(self, connection: Connection, audience_type: str,
                 audience_id: Optional[int] = None) -> Subscription:
        sub = Subscription(audience_type, audience_id, connection)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unregister(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def __len__(self):
        with self._lock:
            return len(self._subs)

    def _targets(self, audience_type: Optional[str], audience_id: Optional[int]) -> List[Subscription]:
        with self._lock:
            subs = list(self._subs)
        if audience_type in BROADCAST_CLASSES:
            role = BROADCAST_CLASSES[audience_type]
            return [s for s in subs if role is None or s.audience_type == role]
        if audience_type is None:
            return []
        return [
            s for s in subs
            if s.audience_type == audience_type and str(s.audience_id) == str(audience_id)
        ]

    def publish(self, message: Dict[str, Any], audience_type: Optional[str],
                audience_id: Optional[int] = None) -> int:
        """Send to every matching connection; returns how many accepted it."""
        delivered = 0
        for sub in self._targets(audience_type, audience_id):
            try:
                sub.connection.send(message)
                delivered += 1
            except Exception as e:
                # a connection that cannot take a write is gone
                logger.info("dropping dead realtime connection",
                            audience_type=sub.audience_type, audience_id=sub.audience_id,
                            error=str(e))
                self.unregister(sub)
        return delivered
