"""
Message bus publishers.

The batch engine only ever publishes: notification events, anomaly events,
alerts and job failure events. Delivery is at-least-once, so every message
carries a deterministic key that consumers use to drop redeliveries.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..core.exceptions import MessageBusError, MessageBusUnavailableError
from ..models.execution import utc_now
from ..utils.logger import get_logger


def event_payload(event_type: str, record_ids: Iterable[Any], severity: str,
                  corrective_action: Optional[Dict[str, Any]] = None, **fields) -> Dict[str, Any]:
    """
    Build the common envelope of every published event.

    Args:
        event_type: Event type name, e.g. DATA_CONSISTENCY_ANOMALY
        record_ids: Affected record ids
        severity: Priority understood by the notification consumer
        corrective_action: Action applied by the batch, if any
        **fields: Event specific fields
    """
    payload = {
        "event_type": event_type,
        "record_ids": list(record_ids),
        "severity": severity,
        "corrective_action": corrective_action,
        "emitted_at": utc_now().isoformat(),
    }
    payload.update(fields)
    return payload


class MessageBus(ABC):
    """Publish side of the message bus."""

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: str, key: str, payload: Dict[str, Any]) -> None:
        """Publish one message; raise MessageBusError when the bus rejects it."""


@dataclass
class PublishedMessage:
    topic: str
    key: str
    payload: Dict[str, Any]
    published_at: Any = field(default_factory=utc_now)


class InMemoryMessageBus(MessageBus):
    """
    Bus that keeps published messages in memory.

    Used for dry runs and tests. Messages can be inspected per topic, and
    dedupe() returns what an idempotent consumer would act on.
    """

    def __init__(self):
        self.messages: List[PublishedMessage] = []
        self.logger = get_logger(__name__)

    async def publish(self, topic: str, key: str, payload: Dict[str, Any]) -> None:
        self.messages.append(PublishedMessage(topic, key, payload))
        self.logger.debug("Message published", extra={"topic": topic, "key": key})

    def on_topic(self, topic: str) -> List[PublishedMessage]:
        return [message for message in self.messages if message.topic == topic]

    def keys(self, topic: Optional[str] = None) -> List[str]:
        return [message.key for message in self.messages if topic is None or message.topic == topic]

    def dedupe(self, topic: Optional[str] = None) -> List[PublishedMessage]:
        """First message per (topic, key), in publish order."""
        seen = set()
        unique = []
        for message in self.messages:
            if topic is not None and message.topic != topic:
                continue
            if (message.topic, message.key) in seen:
                continue
            seen.add((message.topic, message.key))
            unique.append(message)
        return unique

    def clear(self) -> None:
        self.messages.clear()


class RestProxyMessageBus(MessageBus):
    """
    Publishes through an HTTP proxy in front of the broker.

    Messages are POSTed to {base_url}/topics/{topic} as a single JSON record.
    Transport failures and 5xx responses raise MessageBusUnavailableError so
    that callers retry them; 4xx responses raise MessageBusError.
    """

    CONTENT_TYPE = "application/vnd.kafka.json.v2+json"

    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.logger = get_logger(__name__)

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def publish(self, topic: str, key: str, payload: Dict[str, Any]) -> None:
        if self._client is None:
            await self.start()

        body = json.loads(json.dumps({"records": [{"key": key, "value": payload}]}, default=str))
        try:
            response = await self._client.post(
                f"/topics/{topic}",
                json=body,
                headers={"Content-Type": self.CONTENT_TYPE}
            )
        except httpx.TransportError as e:
            raise MessageBusUnavailableError(topic, str(e), key=key) from e

        if response.status_code >= 500:
            raise MessageBusUnavailableError(topic, f"HTTP {response.status_code}", key=key)
        if response.status_code >= 400:
            raise MessageBusError(topic, f"HTTP {response.status_code}: {response.text}", key=key)

        self.logger.debug("Message published", extra={"topic": topic, "key": key})
