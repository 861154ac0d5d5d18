from __future__ import annotations

import json

import pytest
from fakeredis import FakeAsyncRedis

from app.db import SessionLocal
from app.events import DELIVERY_OUTCOME, ESCALATION_SCHEDULED, ROUTING_DECISION, EngineEvent, EventBus, RedisEventForwarder
from app.routing.engine import routing_engine
from conftest import add_device, add_rule, utc


@pytest.mark.anyio
async def test_failing_subscriber_does_not_affect_others() -> None:
  bus = EventBus()
  seen: list[str] = []

  async def broken(event: EngineEvent) -> None:
    raise RuntimeError("analytics sink down")

  async def typed(event: EngineEvent) -> None:
    seen.append(f"typed:{event.event_type}")

  async def everything(event: EngineEvent) -> None:
    seen.append(f"all:{event.event_type}")

  bus.subscribe("*", broken)
  bus.subscribe(ROUTING_DECISION, typed)
  bus.subscribe("*", everything)

  await bus.publish(EngineEvent(event_type=ROUTING_DECISION, notification_id="n-1"))
  await bus.publish(EngineEvent(event_type=DELIVERY_OUTCOME, notification_id="n-1"))
  assert seen == [f"typed:{ROUTING_DECISION}", f"all:{ROUTING_DECISION}", f"all:{DELIVERY_OUTCOME}"]

  bus.unsubscribe(ROUTING_DECISION, typed)
  await bus.publish(EngineEvent(event_type=ROUTING_DECISION, notification_id="n-2"))
  assert seen[-1] == f"all:{ROUTING_DECISION}"
  assert len(seen) == 4


@pytest.mark.anyio
async def test_submit_publishes_decision_outcome_and_escalation(events) -> None:
  await add_rule(escalation_enabled=True, escalation_recipients=["manager-1"])
  await add_device("alice", last_active=utc(2026, 3, 11, 14, 0))

  async with SessionLocal() as db:
    result = await routing_engine.submit(db, category="voting", priority="high", recipient_id="alice", context="voting", now=utc(2026, 3, 11, 14, 0))

  assert events.types()[0] == ROUTING_DECISION
  assert ESCALATION_SCHEDULED in events.types()
  assert DELIVERY_OUTCOME in events.types()
  assert {e.notification_id for e in events.events} == {result.notification_id}

  decision = events.events[0]
  assert decision.payload["shouldDeliver"] is True
  assert decision.payload["userId"] == "alice"
  outcome = next(e for e in events.events if e.event_type == DELIVERY_OUTCOME)
  assert outcome.payload["channel"] == "push"
  assert outcome.payload["status"] == "sent"


@pytest.mark.anyio
async def test_redis_forwarder_publishes_json() -> None:
  redis = FakeAsyncRedis(decode_responses=True)
  pubsub = redis.pubsub()
  await pubsub.subscribe("routing-engine-events")
  await pubsub.get_message(timeout=1.0)

  forwarder = RedisEventForwarder(redis)
  await forwarder(EngineEvent(event_type=ROUTING_DECISION, notification_id="n-1", payload={"deliveryTime": utc(2026, 3, 11, 14, 0)}))

  message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
  assert message is not None
  body = json.loads(message["data"])
  assert body["type"] == ROUTING_DECISION
  assert body["notificationId"] == "n-1"
  assert body["payload"]["deliveryTime"].startswith("2026-03-11T14:00:00")
  await pubsub.aclose()
