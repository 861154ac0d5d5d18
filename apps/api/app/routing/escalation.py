from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db import SessionLocal
from app.events import ESCALATION_CANCELLED, ESCALATION_COMPLETED, ESCALATION_SCHEDULED, EngineEvent, EventBus, event_bus
from app.models import DeliveryRecord, EscalationRecord, Notification as NotificationRow, RoutingDecision
from app.routing.errors import EscalationScheduleError
from app.routing.types import Channel, DeliveryStatus, EscalationPolicy, EscalationStatus, EscalationTrigger, NotificationState

logger = logging.getLogger(__name__)


def trigger_holds(trigger: EscalationTrigger, *, acknowledged: bool, action_taken: bool, delivered: bool) -> bool:
  """Whether an escalation should still fire given the notification's current state."""
  if trigger is EscalationTrigger.TIME_CRITICAL:
    return True
  if trigger is EscalationTrigger.UNREAD:
    return not acknowledged
  if trigger is EscalationTrigger.UNDELIVERED:
    return not delivered and not acknowledged
  if trigger is EscalationTrigger.NO_ACTION:
    return not action_taken
  return False


def cancelled_by_ack(*, action_taken: bool) -> list[str]:
  out = [EscalationTrigger.UNREAD.value, EscalationTrigger.UNDELIVERED.value]
  if action_taken:
    out.append(EscalationTrigger.NO_ACTION.value)
  return out


def retry_delay(retry_count: int, *, base_seconds: int | None = None) -> timedelta:
  base = settings.escalation_retry_base_seconds if base_seconds is None else base_seconds
  return timedelta(seconds=int(base) * (2 ** max(0, int(retry_count))))


def escalation_event(event_type: str, rec: EscalationRecord, **extra: Any) -> EngineEvent:
  payload = {
    "escalationId": rec.id,
    "userId": rec.user_id,
    "organizationId": rec.organization_id,
    "trigger": rec.trigger,
    "status": rec.status,
    "scheduledFor": rec.scheduled_for,
    "channels": list(rec.channels or []),
  }
  payload.update(extra)
  return EngineEvent(event_type=event_type, notification_id=rec.notification_id, payload=payload)


class EscalationDelivery(Protocol):
  async def create_escalation_notifications(
    self, db: AsyncSession, *, record: EscalationRecord, original: NotificationRow, now: datetime
  ) -> list[tuple[NotificationRow, EngineEvent]]: ...

  async def dispatch_notification(self, db: AsyncSession, notification_id: str, *, now: datetime | None = None) -> list[dict[str, Any]]: ...


class EscalationScheduler:
  """
  Persists escalation records and fires them.

  Records are the source of truth; in-process timers are only an early
  wake-up. Every fire re-checks the trigger under the notification's row
  lock, so a concurrent acknowledgment either cancels the record first or
  finds it already triggered, never both.
  """

  def __init__(
    self,
    *,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    bus: EventBus = event_bus,
    max_retries: int | None = None,
    lookahead_seconds: int | None = None,
  ) -> None:
    self.session_factory = session_factory
    self.bus = bus
    self.max_retries = settings.escalation_max_retries if max_retries is None else max_retries
    self.lookahead_seconds = settings.escalation_lookahead_seconds if lookahead_seconds is None else lookahead_seconds
    self.delivery: EscalationDelivery | None = None
    self._timers: dict[str, asyncio.Task] = {}

  def bind(self, delivery: EscalationDelivery) -> None:
    self.delivery = delivery

  async def schedule(
    self,
    db: AsyncSession,
    *,
    notification: NotificationRow,
    policy: EscalationPolicy,
    base_time: datetime,
    rule_id: str | None,
  ) -> EscalationRecord:
    """
    Insert the EscalationRecord for (notification, trigger), or return the
    existing one. Raises EscalationScheduleError when it cannot be persisted;
    the caller is expected to roll back and mark the notification pending.
    """
    if notification.escalation_depth > 0:
      raise EscalationScheduleError(notification.id, "escalated notifications do not escalate again")
    existing = await db.execute(
      select(EscalationRecord).where(
        EscalationRecord.notification_id == notification.id,
        EscalationRecord.trigger == policy.trigger.value,
      )
    )
    rec = existing.scalar_one_or_none()
    if rec is not None:
      return rec

    rec = EscalationRecord(
      notification_id=notification.id,
      user_id=notification.recipient_id,
      organization_id=notification.organization_id,
      rule_id=rule_id,
      trigger=policy.trigger.value,
      delay_minutes=int(policy.delay_minutes),
      channels=[c.value for c in policy.channels],
      recipients=list(policy.recipients),
      status=EscalationStatus.SCHEDULED.value,
      scheduled_for=base_time + timedelta(minutes=int(policy.delay_minutes)),
    )
    db.add(rec)
    try:
      await db.flush()
    except SQLAlchemyError as e:
      raise EscalationScheduleError(notification.id, str(e)) from e
    return rec

  async def cancel_on_ack(self, db: AsyncSession, *, notification_id: str, action_taken: bool, now: datetime) -> list[EscalationRecord]:
    """Cancel open escalations the acknowledgment resolves. Caller holds the notification lock and commits."""
    res = await db.execute(
      select(EscalationRecord).where(
        EscalationRecord.notification_id == notification_id,
        EscalationRecord.status == EscalationStatus.SCHEDULED.value,
        EscalationRecord.trigger.in_(cancelled_by_ack(action_taken=action_taken)),
      )
    )
    cancelled = list(res.scalars().all())
    for rec in cancelled:
      rec.status = EscalationStatus.CANCELLED.value
      rec.completed_at = now
    return cancelled

  async def cancel_all(self, db: AsyncSession, *, notification_id: str, now: datetime) -> list[EscalationRecord]:
    res = await db.execute(
      select(EscalationRecord).where(
        EscalationRecord.notification_id == notification_id,
        EscalationRecord.status == EscalationStatus.SCHEDULED.value,
      )
    )
    cancelled = list(res.scalars().all())
    for rec in cancelled:
      rec.status = EscalationStatus.CANCELLED.value
      rec.completed_at = now
    return cancelled

  # timers

  def arm(self, record_id: str, fire_at: datetime, *, now: datetime | None = None) -> bool:
    if record_id in self._timers:
      return False
    now = now or datetime.now(timezone.utc)
    delay = max(0.0, (fire_at - now).total_seconds())
    task = asyncio.create_task(self._fire_later(record_id, delay))
    self._timers[record_id] = task
    task.add_done_callback(lambda t, rid=record_id: self._forget(rid, t))
    return True

  def _forget(self, record_id: str, task: asyncio.Task) -> None:
    if self._timers.get(record_id) is task:
      del self._timers[record_id]

  def disarm(self, record_id: str) -> None:
    task = self._timers.pop(record_id, None)
    if task is not None and not task.done():
      task.cancel()

  def armed(self) -> list[str]:
    return sorted(self._timers)

  async def shutdown(self) -> None:
    tasks = list(self._timers.values())
    self._timers.clear()
    for t in tasks:
      t.cancel()
    for t in tasks:
      try:
        await t
      except asyncio.CancelledError:
        pass

  async def _fire_later(self, record_id: str, delay: float) -> None:
    await asyncio.sleep(delay)
    try:
      await self.fire(record_id)
    except Exception:
      logger.exception("Escalation timer failed for record %s", record_id)

  # firing

  async def fire(self, record_id: str, *, now: datetime | None = None) -> str | None:
    """
    Fire one escalation record if it is due. Returns the resulting status,
    or None when the record was not due or already handled elsewhere.
    """
    now = now or datetime.now(timezone.utc)
    if self.delivery is None:
      raise RuntimeError("EscalationScheduler has no delivery handler bound")

    async with self.session_factory() as db:
      res = await db.execute(select(EscalationRecord).where(EscalationRecord.id == record_id))
      rec = res.scalar_one_or_none()
      if rec is None or rec.status != EscalationStatus.SCHEDULED.value or rec.scheduled_for > now:
        return None

      nres = await db.execute(select(NotificationRow).where(NotificationRow.id == rec.notification_id).with_for_update())
      original = nres.scalar_one_or_none()
      if original is None:
        return None
      # status may have moved while we waited for the lock
      await db.refresh(rec)
      if rec.status != EscalationStatus.SCHEDULED.value:
        return None

      delivered = await _has_delivery(db, original.id)
      holds = trigger_holds(
        EscalationTrigger(rec.trigger),
        acknowledged=original.acknowledged_at is not None,
        action_taken=bool(original.action_taken),
        delivered=delivered,
      )
      if not holds:
        rec.status = EscalationStatus.CANCELLED.value
        rec.completed_at = now
        await db.commit()
        logger.info("Escalation %s for notification %s no longer applies", rec.id, rec.notification_id)
        await self.bus.publish(escalation_event(ESCALATION_CANCELLED, rec, reason="condition_cleared"))
        return rec.status

      claim = await db.execute(
        update(EscalationRecord)
        .where(EscalationRecord.id == rec.id, EscalationRecord.status == EscalationStatus.SCHEDULED.value)
        .values(status=EscalationStatus.TRIGGERED.value, triggered_at=now, last_error=None)
        .execution_options(synchronize_session=False)
      )
      if claim.rowcount == 0:
        return None
      rec.status = EscalationStatus.TRIGGERED.value
      rec.triggered_at = now
      # rollback expires rec; keep what the error paths log
      notification_id = rec.notification_id

      try:
        created = await self.delivery.create_escalation_notifications(db, record=rec, original=original, now=now)
        if original.state not in (NotificationState.ACKNOWLEDGED.value, NotificationState.EXPIRED.value):
          original.state = NotificationState.ESCALATED.value
        await db.commit()
      except Exception as e:
        await db.rollback()
        logger.error("Escalation %s for notification %s failed: %s", record_id, notification_id, e)
        await self._record_failure(db, record_id, error=str(e) or type(e).__name__, now=now)
        return EscalationStatus.SCHEDULED.value

      for _, decision_event in created:
        await self.bus.publish(decision_event)

      children = [(child.id, child.recipient_id) for child, _ in created]
      results: list[dict[str, Any]] = []
      for child_id, recipient_id in children:
        try:
          outcomes = await self.delivery.dispatch_notification(db, child_id, now=now)
        except Exception as e:
          await db.rollback()
          logger.error("Dispatch of escalation notification %s (escalation %s) failed: %s", child_id, record_id, e)
          results.append({"recipientId": recipient_id, "notificationId": child_id, "sent": 0, "failed": 0, "error": str(e) or type(e).__name__})
          continue
        results.append(
          {
            "recipientId": recipient_id,
            "notificationId": child_id,
            "sent": sum(1 for o in outcomes if o.get("status") in (DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value)),
            "failed": sum(1 for o in outcomes if o.get("status") == DeliveryStatus.FAILED.value),
          }
        )

      # children are committed; a failed dispatch leaves their attempts pending for the dispatch loop
      await db.refresh(rec)
      rec.status = EscalationStatus.COMPLETED.value
      rec.completed_at = now
      rec.results = results
      await db.commit()
      logger.info("Escalation %s for notification %s completed (%d recipients)", record_id, rec.notification_id, len(results))
      await self.bus.publish(escalation_event(ESCALATION_COMPLETED, rec, results=results))
      return rec.status

  async def _record_failure(self, db: AsyncSession, record_id: str, *, error: str, now: datetime) -> None:
    res = await db.execute(select(EscalationRecord).where(EscalationRecord.id == record_id))
    rec = res.scalar_one_or_none()
    if rec is None:
      return
    rec.status = EscalationStatus.SCHEDULED.value
    rec.retry_count = int(rec.retry_count or 0) + 1
    rec.last_error = error[:2000]
    rec.triggered_at = None
    rec.scheduled_for = now + retry_delay(rec.retry_count)
    await db.commit()
    if rec.retry_count >= self.max_retries:
      logger.error("Escalation %s for notification %s gave up after %d attempts", rec.id, rec.notification_id, rec.retry_count)

  # recovery

  async def recover_once(self, *, now: datetime | None = None, limit: int = 200) -> dict[str, int]:
    """
    Startup and periodic scan: fire overdue records, arm timers for records
    due within the lookahead, and retry escalations that failed to persist.
    """
    now = now or datetime.now(timezone.utc)
    horizon = now + timedelta(seconds=self.lookahead_seconds)
    fired = armed = rescheduled = 0

    async with self.session_factory() as db:
      res = await db.execute(
        select(EscalationRecord.id, EscalationRecord.scheduled_for)
        .where(
          EscalationRecord.status == EscalationStatus.SCHEDULED.value,
          EscalationRecord.scheduled_for <= horizon,
          EscalationRecord.retry_count < self.max_retries,
        )
        .order_by(EscalationRecord.scheduled_for.asc())
        .limit(int(limit))
      )
      due = list(res.all())

    for record_id, scheduled_for in due:
      if scheduled_for <= now:
        self.disarm(record_id)
        try:
          if await self.fire(record_id, now=now) is not None:
            fired += 1
        except Exception:
          logger.exception("Recovery fire failed for escalation %s", record_id)
      elif self.arm(record_id, scheduled_for, now=now):
        armed += 1

    async with self.session_factory() as db:
      res = await db.execute(
        select(NotificationRow.id)
        .where(
          NotificationRow.escalation_pending.is_(True),
          NotificationRow.escalation_retry_count < self.max_retries,
          (NotificationRow.escalation_retry_at.is_(None)) | (NotificationRow.escalation_retry_at <= now),
        )
        .limit(int(limit))
      )
      pending_ids = list(res.scalars().all())
    for notification_id in pending_ids:
      if await self.retry_pending(notification_id, now=now):
        rescheduled += 1

    return {"fired": fired, "armed": armed, "rescheduled": rescheduled}

  async def retry_pending(self, notification_id: str, *, now: datetime) -> bool:
    async with self.session_factory() as db:
      nres = await db.execute(select(NotificationRow).where(NotificationRow.id == notification_id).with_for_update())
      row = nres.scalar_one_or_none()
      if row is None or not row.escalation_pending:
        return False
      dres = await db.execute(select(RoutingDecision).where(RoutingDecision.notification_id == notification_id))
      decision = dres.scalar_one_or_none()
      spec = ((decision.plan or {}).get("escalation") if decision else None) or None
      if not spec:
        row.escalation_pending = False
        await db.commit()
        return False

      policy = policy_from_dict(spec)
      try:
        rec = await self.schedule(
          db,
          notification=row,
          policy=policy,
          base_time=decision.delivery_time,
          rule_id=(decision.plan or {}).get("escalationRule"),
        )
        row.escalation_pending = False
        row.escalation_retry_at = None
        if row.acknowledged_at is not None and rec.trigger in cancelled_by_ack(action_taken=bool(row.action_taken)):
          rec.status = EscalationStatus.CANCELLED.value
          rec.completed_at = now
        await db.commit()
      except (EscalationScheduleError, SQLAlchemyError) as e:
        await db.rollback()
        logger.error("Escalation retry for notification %s failed: %s", notification_id, e)
        await db.execute(
          update(NotificationRow)
          .where(NotificationRow.id == notification_id)
          .values(
            escalation_retry_count=NotificationRow.escalation_retry_count + 1,
            escalation_retry_at=now + retry_delay(int(row.escalation_retry_count or 0) + 1),
          )
          .execution_options(synchronize_session=False)
        )
        await db.commit()
        return False

    await self.bus.publish(escalation_event(ESCALATION_SCHEDULED, rec, recovered=True))
    if rec.status == EscalationStatus.SCHEDULED.value and rec.scheduled_for <= now + timedelta(seconds=self.lookahead_seconds):
      self.arm(rec.id, rec.scheduled_for, now=now)
    return True


def policy_from_dict(spec: dict[str, Any]) -> EscalationPolicy:
  return EscalationPolicy(
    enabled=True,
    delay_minutes=int(spec.get("delayMinutes") or 15),
    trigger=EscalationTrigger(str(spec.get("trigger") or EscalationTrigger.UNREAD.value)),
    channels=tuple(Channel(str(c)) for c in spec.get("channels") or []),
    recipients=tuple(str(r) for r in spec.get("recipients") or []),
  )


async def _has_delivery(db: AsyncSession, notification_id: str) -> bool:
  res = await db.execute(
    select(DeliveryRecord.id)
    .where(DeliveryRecord.notification_id == notification_id, DeliveryRecord.status == DeliveryStatus.DELIVERED.value)
    .limit(1)
  )
  return res.scalar_one_or_none() is not None


escalation_scheduler = EscalationScheduler()
