"""
In-process publish/subscribe channel for fleet state changes.

Observers (the /ws websocket, tests) subscribe and receive every event published
after they subscribed. publish() never raises and never blocks: a subscriber whose
queue is full misses that event, core state is never affected.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()

BOT_CREATED           = "BOT_CREATED"
BOT_DELETED           = "BOT_DELETED"
BOT_STATUS_CHANGED    = "BOT_STATUS_CHANGED"
BOT_UPDATED           = "BOT_UPDATED"
BOT_APPROVED          = "BOT_APPROVED"
BOT_RESUMED           = "BOT_RESUMED"
BOT_ERROR             = "BOT_ERROR"
BOT_EXPIRED           = "BOT_EXPIRED"
BOT_REDISTRIBUTED     = "BOT_REDISTRIBUTED"
BOT_APPROVAL_REVOKED  = "BOT_APPROVAL_REVOKED"
GUEST_BOT_REGISTERED  = "GUEST_BOT_REGISTERED"


@dataclass
class FleetEvent:
    type:      str
    data:      dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp.isoformat()}


class BroadcastChannel:
    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self.published = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, data: dict[str, Any]) -> FleetEvent:
        event = FleetEvent(type=event_type, data=data)
        self.published += 1
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("broadcast_subscriber_full", event_type=event_type)
        logger.debug("broadcast_published", event_type=event_type, subscribers=len(self._subscribers))
        return event
