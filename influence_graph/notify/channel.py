"""
Realtime Notification Channel

Fire-and-forget messages telling clients that a tenant's graph or scores
changed. Delivery is best effort: failures are logged and dropped, and
consumers treat a message only as a hint to re-query.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from influence_graph.core.types import UpdateType, now_ms


logger = logging.getLogger(__name__)


@dataclass
class InfluenceUpdate:
    type: UpdateType
    tenant: str
    payload: Any
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "tenant": self.tenant,
                "payload": self.payload, "timestamp": self.timestamp}


class NotificationChannel(Protocol):
    def publish(self, update: InfluenceUpdate) -> None: ...


class NullChannel:
    """Drops everything."""

    def publish(self, update: InfluenceUpdate) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryChannel:
    """Keeps published updates in a bounded list; also used by tests."""

    def __init__(self, max_messages: int = 1000):
        self.max_messages = max_messages
        self._messages: list[InfluenceUpdate] = []
        self._lock = threading.Lock()

    def publish(self, update: InfluenceUpdate) -> None:
        with self._lock:
            self._messages.append(update)
            if len(self._messages) > self.max_messages:
                del self._messages[:len(self._messages) - self.max_messages]

    def messages(self, tenant: Optional[str] = None) -> list[InfluenceUpdate]:
        with self._lock:
            return [m for m in self._messages if tenant is None or m.tenant == tenant]

    def close(self) -> None:
        return None


class HttpBroadcastChannel:
    """POSTs each update as JSON to a realtime broadcast service."""

    def __init__(self, url: str, timeout: float = 2.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def publish(self, update: InfluenceUpdate) -> None:
        try:
            resp = self._client.post(self.url, json=update.to_dict())
            if resp.status_code >= 400:
                logger.warning("Broadcast %s for %s rejected: %s",
                               update.type.value, update.tenant, resp.status_code)
        except httpx.HTTPError as e:
            logger.warning("Broadcast %s for %s failed: %s",
                           update.type.value, update.tenant, e)

    def close(self) -> None:
        self._client.close()


def notify(channel: Optional[NotificationChannel], update_type: UpdateType,
           tenant: str, payload: Any) -> None:
    if channel is None:
        return
    channel.publish(InfluenceUpdate(type=update_type, tenant=tenant, payload=payload))
