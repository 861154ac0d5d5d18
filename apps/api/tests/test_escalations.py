from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.db import SessionLocal
from app.events import DELIVERY_OUTCOME, ESCALATION_CANCELLED, ESCALATION_COMPLETED, ESCALATION_SCHEDULED, ROUTING_DECISION
from app.models import DeliveryRecord, EscalationRecord, Notification, RoutingDecision
from app.routing.engine import RoutingEngine, routing_engine
from app.routing.errors import EscalationScheduleError
from app.routing.escalation import EscalationScheduler, escalation_scheduler, retry_delay, trigger_holds
from app.routing.types import EscalationPolicy, EscalationTrigger
from conftest import add_device, add_member, add_profile, add_rule, utc

T = utc(2026, 3, 11, 14, 0)


async def _setup(**rule_fields) -> None:
  fields = dict(
    escalation_enabled=True,
    escalation_delay_minutes=15,
    escalation_trigger="unread",
    escalation_channels=["email"],
    escalation_recipients=["manager-1"],
  )
  fields.update(rule_fields)
  await add_rule(**fields)
  await add_profile("alice", email="alice@example.org")
  await add_profile("manager-1", email="manager@example.org")
  await add_device("alice", last_active=T)


async def _submit(**fields) -> str:
  values = dict(category="voting", priority="high", recipient_id="alice", context="voting", now=T)
  values.update(fields)
  async with SessionLocal() as db:
    result = await routing_engine.submit(db, **values)
  return result.notification_id


async def _escalations(notification_id: str) -> list[EscalationRecord]:
  async with SessionLocal() as db:
    res = await db.execute(select(EscalationRecord).where(EscalationRecord.notification_id == notification_id))
    return list(res.scalars().all())


async def _children(notification_id: str) -> list[Notification]:
  async with SessionLocal() as db:
    res = await db.execute(select(Notification).where(Notification.escalated_from_id == notification_id))
    return list(res.scalars().all())


def test_trigger_conditions() -> None:
  assert trigger_holds(EscalationTrigger.UNREAD, acknowledged=False, action_taken=False, delivered=True)
  assert not trigger_holds(EscalationTrigger.UNREAD, acknowledged=True, action_taken=False, delivered=True)
  assert trigger_holds(EscalationTrigger.UNDELIVERED, acknowledged=False, action_taken=False, delivered=False)
  assert not trigger_holds(EscalationTrigger.UNDELIVERED, acknowledged=False, action_taken=False, delivered=True)
  assert trigger_holds(EscalationTrigger.NO_ACTION, acknowledged=True, action_taken=False, delivered=True)
  assert not trigger_holds(EscalationTrigger.NO_ACTION, acknowledged=True, action_taken=True, delivered=True)
  assert trigger_holds(EscalationTrigger.TIME_CRITICAL, acknowledged=True, action_taken=True, delivered=True)


def test_retry_delay_backs_off_exponentially() -> None:
  assert [retry_delay(n, base_seconds=30) for n in range(4)] == [timedelta(seconds=s) for s in (30, 60, 120, 240)]


@pytest.mark.anyio
async def test_unread_notification_escalates_after_delay(events) -> None:
  await _setup()
  nid = await _submit()

  [rec] = await _escalations(nid)
  assert rec.status == "scheduled"
  assert rec.scheduled_for == T + timedelta(minutes=15)
  assert ESCALATION_SCHEDULED in events.types()

  # not due yet
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=14)) is None

  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15)) == "completed"
  [rec] = await _escalations(nid)
  assert rec.status == "completed"
  assert rec.triggered_at == T + timedelta(minutes=15)
  assert [r["recipientId"] for r in rec.results] == ["manager-1"]
  assert rec.results[0]["sent"] == 1

  [child] = await _children(nid)
  assert child.recipient_id == "manager-1"
  assert child.escalation_depth == 1
  assert child.payload["escalation"]["originalNotificationId"] == nid
  async with SessionLocal() as db:
    original = await db.get(Notification, nid)
    assert original.state == "escalated"
    res = await db.execute(select(DeliveryRecord).where(DeliveryRecord.notification_id == child.id))
    [delivery] = res.scalars().all()
    assert (delivery.channel, delivery.target, delivery.status) == ("email", "manager@example.org", "sent")
    decision = (await db.execute(select(RoutingDecision).where(RoutingDecision.notification_id == child.id))).scalar_one()
    assert decision.plan["escalation"] is None

  assert ESCALATION_COMPLETED in events.types()
  assert events.types().count(ROUTING_DECISION) == 2
  assert DELIVERY_OUTCOME in events.types()

  # firing again is a no-op
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=16)) is None
  assert len(await _children(nid)) == 1


@pytest.mark.anyio
async def test_escalated_notifications_do_not_escalate_again() -> None:
  await _setup()
  nid = await _submit()
  [rec] = await _escalations(nid)
  await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15))

  [child] = await _children(nid)
  assert await _escalations(child.id) == []
  async with SessionLocal() as db:
    row = await db.get(Notification, child.id)
    with pytest.raises(EscalationScheduleError):
      await escalation_scheduler.schedule(
        db, notification=row, policy=EscalationPolicy(enabled=True, delay_minutes=5), base_time=T, rule_id=None
      )


@pytest.mark.anyio
async def test_acknowledgment_cancels_the_escalation(events) -> None:
  await _setup()
  nid = await _submit()
  async with SessionLocal() as db:
    ack = await routing_engine.acknowledge(db, nid, user_id="alice", now=T + timedelta(minutes=5))
  assert ack.state == "acknowledged"
  assert len(ack.cancelled_escalations) == 1

  [rec] = await _escalations(nid)
  assert rec.status == "cancelled"
  assert ESCALATION_CANCELLED in events.types()
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15)) is None
  assert await _children(nid) == []


@pytest.mark.anyio
async def test_fire_rechecks_trigger_when_ack_raced_the_timer() -> None:
  await _setup()
  nid = await _submit()
  # acknowledgment recorded without going through cancellation
  async with SessionLocal() as db:
    await db.execute(update(Notification).where(Notification.id == nid).values(acknowledged_at=T + timedelta(minutes=14)))
    await db.commit()

  [rec] = await _escalations(nid)
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15)) == "cancelled"
  assert await _children(nid) == []


@pytest.mark.anyio
async def test_time_critical_escalation_survives_acknowledgment() -> None:
  await _setup(escalation_trigger="time_critical")
  nid = await _submit()
  async with SessionLocal() as db:
    ack = await routing_engine.acknowledge(db, nid, user_id="alice", now=T + timedelta(minutes=1))
  assert ack.cancelled_escalations == []

  [rec] = await _escalations(nid)
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15)) == "completed"


@pytest.mark.anyio
async def test_no_action_escalation_is_cancelled_only_by_action() -> None:
  await _setup(escalation_trigger="no_action")
  nid = await _submit()
  async with SessionLocal() as db:
    first = await routing_engine.acknowledge(db, nid, user_id="alice", now=T + timedelta(minutes=1))
  assert first.cancelled_escalations == []
  async with SessionLocal() as db:
    second = await routing_engine.acknowledge(db, nid, user_id="alice", action_taken=True, now=T + timedelta(minutes=2))
  assert len(second.cancelled_escalations) == 1


@pytest.mark.anyio
async def test_escalation_without_recipients_goes_to_organization_managers() -> None:
  await _setup(escalation_recipients=[])
  await add_member("org-1", "boss", role="admin")
  await add_member("org-1", "alice", role="owner")
  await add_member("org-1", "peer", role="member")
  await add_profile("boss", email="boss@example.org")
  nid = await _submit(organization_id="org-1")

  [rec] = await _escalations(nid)
  assert await escalation_scheduler.fire(rec.id, now=T + timedelta(minutes=15)) == "completed"
  assert [c.recipient_id for c in await _children(nid)] == ["boss"]


class _FailingDelivery:
  async def create_escalation_notifications(self, db, *, record, original, now):
    raise RuntimeError("membership service unavailable")

  async def dispatch_notification(self, db, notification_id, *, now=None):
    return []


@pytest.mark.anyio
async def test_failed_fire_is_rescheduled_with_backoff() -> None:
  await _setup()
  nid = await _submit()
  [rec] = await _escalations(nid)

  scheduler = EscalationScheduler(max_retries=2)
  scheduler.bind(_FailingDelivery())
  fired_at = T + timedelta(minutes=15)
  assert await scheduler.fire(rec.id, now=fired_at) == "scheduled"

  [rec] = await _escalations(nid)
  assert rec.status == "scheduled"
  assert rec.retry_count == 1
  assert rec.last_error == "membership service unavailable"
  assert rec.scheduled_for == fired_at + retry_delay(1)

  await scheduler.fire(rec.id, now=rec.scheduled_for)
  [rec] = await _escalations(nid)
  assert rec.retry_count == 2

  # retries exhausted: recovery leaves the record alone
  stats = await scheduler.recover_once(now=rec.scheduled_for + timedelta(minutes=1))
  assert stats["fired"] == 0
  [rec] = await _escalations(nid)
  assert rec.status == "scheduled"


class _UndispatchableDelivery:
  def __init__(self, engine: RoutingEngine) -> None:
    self.engine = engine

  async def create_escalation_notifications(self, db, *, record, original, now):
    return await self.engine.create_escalation_notifications(db, record=record, original=original, now=now)

  async def dispatch_notification(self, db, notification_id, *, now=None):
    raise RuntimeError("mail relay unreachable")


@pytest.mark.anyio
async def test_dispatch_failure_still_completes_the_escalation() -> None:
  await _setup()
  nid = await _submit()
  [rec] = await _escalations(nid)

  scheduler = EscalationScheduler()
  scheduler.bind(_UndispatchableDelivery(routing_engine))
  fired_at = T + timedelta(minutes=15)
  assert await scheduler.fire(rec.id, now=fired_at) == "completed"

  [rec] = await _escalations(nid)
  assert rec.status == "completed"
  assert rec.completed_at == fired_at
  [result] = rec.results
  assert result["recipientId"] == "manager-1"
  assert result["error"] == "mail relay unreachable"

  # the child exists and its attempt is left for the dispatch loop
  [child] = await _children(nid)
  async with SessionLocal() as db:
    res = await db.execute(select(DeliveryRecord).where(DeliveryRecord.notification_id == child.id))
    [delivery] = res.scalars().all()
    assert delivery.status == "pending"
    assert delivery.attempted_at is None

  async with SessionLocal() as db:
    assert await routing_engine.dispatch_due_once(db, now=fired_at + timedelta(minutes=1)) >= 1
  async with SessionLocal() as db:
    delivery = await db.get(DeliveryRecord, delivery.id)
    assert (delivery.channel, delivery.target, delivery.status) == ("email", "manager@example.org", "sent")


@pytest.mark.anyio
async def test_recovery_fires_overdue_escalations() -> None:
  await _setup()
  nid = await _submit()
  stats = await escalation_scheduler.recover_once(now=T + timedelta(minutes=20))
  assert stats["fired"] == 1
  [rec] = await _escalations(nid)
  assert rec.status == "completed"


@pytest.mark.anyio
async def test_recovery_arms_timers_inside_the_lookahead() -> None:
  await _setup()
  nid = await _submit()
  [rec] = await _escalations(nid)
  stats = await escalation_scheduler.recover_once(now=rec.scheduled_for - timedelta(seconds=60))
  assert stats["armed"] == 1
  assert escalation_scheduler.armed() == [rec.id]
  await escalation_scheduler.shutdown()
  assert escalation_scheduler.armed() == []


class _BrokenScheduler(EscalationScheduler):
  async def schedule(self, db, *, notification, policy, base_time, rule_id):
    raise EscalationScheduleError(notification.id, "database unavailable")


@pytest.mark.anyio
async def test_unpersisted_escalation_is_recovered_later() -> None:
  await _setup()
  engine = RoutingEngine(scheduler=_BrokenScheduler())
  async with SessionLocal() as db:
    result = await engine.submit(db, category="voting", priority="high", recipient_id="alice", context="voting", now=T)
  assert result.should_deliver
  assert result.escalation_scheduled is False

  async with SessionLocal() as db:
    row = await db.get(Notification, result.notification_id)
    assert row.escalation_pending is True
    assert row.escalation_retry_at == T + retry_delay(0)
    delivered = (await db.execute(select(DeliveryRecord).where(DeliveryRecord.notification_id == row.id))).scalars().all()
    assert [d.status for d in delivered if d.channel == "push"] == ["sent"]
  assert await _escalations(result.notification_id) == []

  stats = await escalation_scheduler.recover_once(now=T + timedelta(minutes=1))
  assert stats["rescheduled"] == 1
  [rec] = await _escalations(result.notification_id)
  assert rec.status == "scheduled"
  assert rec.scheduled_for == T + timedelta(minutes=15)
  async with SessionLocal() as db:
    row = await db.get(Notification, result.notification_id)
    assert row.escalation_pending is False
