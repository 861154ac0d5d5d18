from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi.encoders import jsonable_encoder
from redis import asyncio as redis_asyncio

logger = logging.getLogger(__name__)

ROUTING_DECISION = "routing_decision"
DELIVERY_OUTCOME = "delivery_outcome"
ESCALATION_SCHEDULED = "escalation_scheduled"
ESCALATION_CANCELLED = "escalation_cancelled"
ESCALATION_COMPLETED = "escalation_completed"

Handler = Callable[["EngineEvent"], Awaitable[None]]


@dataclass(frozen=True)
class EngineEvent:
  event_type: str
  notification_id: str
  payload: dict[str, Any] = field(default_factory=dict)
  id: str = field(default_factory=lambda: str(uuid4()))
  occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

  def as_dict(self) -> dict[str, Any]:
    return jsonable_encoder(
      {
        "id": self.id,
        "type": self.event_type,
        "notificationId": self.notification_id,
        "occurredAt": self.occurred_at,
        "payload": self.payload,
      }
    )


class EventBus:
  """
  In-process publisher for engine events.

  Subscribers register per event type ("*" receives everything). A failing
  subscriber is logged and never affects the publisher or other subscribers.
  """

  def __init__(self) -> None:
    self._subscribers: dict[str, list[Handler]] = {}

  def subscribe(self, event_type: str, handler: Handler) -> None:
    self._subscribers.setdefault(event_type, []).append(handler)

  def unsubscribe(self, event_type: str, handler: Handler) -> None:
    handlers = self._subscribers.get(event_type) or []
    if handler in handlers:
      handlers.remove(handler)

  def clear(self) -> None:
    self._subscribers.clear()

  async def publish(self, event: EngineEvent) -> None:
    handlers = list(self._subscribers.get(event.event_type, [])) + list(self._subscribers.get("*", []))
    for handler in handlers:
      try:
        await handler(event)
      except Exception:
        logger.exception("Event subscriber failed for %s (notification %s)", event.event_type, event.notification_id)


class RedisEventForwarder:
  """Mirrors engine events onto a Redis pub/sub channel for external consumers."""

  def __init__(self, client: redis_asyncio.Redis, *, channel: str = "routing-engine-events") -> None:
    self.client = client
    self.channel = channel

  @classmethod
  def from_url(cls, url: str, **kwargs: Any) -> RedisEventForwarder:
    return cls(redis_asyncio.Redis.from_url(url, decode_responses=True), **kwargs)

  async def __call__(self, event: EngineEvent) -> None:
    await self.client.publish(self.channel, json.dumps(event.as_dict()))


event_bus = EventBus()
