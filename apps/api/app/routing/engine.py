from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from time import monotonic
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.events import ESCALATION_CANCELLED, ESCALATION_SCHEDULED, EngineEvent, EventBus, event_bus
from app.metrics import runtime_metrics
from app.models import DeliveryRecord, EscalationRecord, Notification as NotificationRow, RoutingDecision
from app.rate_limit import RateCapCounter, rate_caps
from app.routing import directory
from app.routing.directory import DeviceDirectory, MembershipDirectory, ProfileDirectory
from app.routing.dispatcher import ChannelDispatcher, DueAttempt
from app.routing.errors import DeliveryNotFound, EscalationScheduleError, NotificationNotFound, RoutingConfigError
from app.routing.escalation import EscalationScheduler, escalation_event, escalation_scheduler, retry_delay
from app.routing.matcher import condition_facts, match_rules
from app.routing.planner import DeliveryPlanner, apply_rate_cap, rate_capped
from app.routing.profiles import RoutingProfile, default_profile
from app.routing.recorder import outcome_event, record_attempts, record_decision
from app.routing.rules import RoutingRuleStore, rule_store
from app.routing.types import (
  Category,
  Channel,
  DeliveryPlan,
  DeliveryStatus,
  Device,
  Notification,
  NotificationState,
  Priority,
  RoutingContext,
)

logger = logging.getLogger(__name__)

_OK = (DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value)
_OPEN_STATES = (NotificationState.PLANNED.value, NotificationState.DISPATCHED.value, NotificationState.ESCALATED.value)


@dataclass(frozen=True)
class SubmitResult:
  notification_id: str
  should_deliver: bool
  reason: str | None = None
  escalation_scheduled: bool = False
  duplicate: bool = False


@dataclass(frozen=True)
class AckResult:
  notification_id: str
  state: str
  cancelled_escalations: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
  return datetime.now(timezone.utc)


def _parse(enum_cls: Any, value: Any, *, field_name: str) -> Any:
  try:
    return enum_cls(str(getattr(value, "value", value)))
  except ValueError as e:
    raise RoutingConfigError(f"{field_name}: invalid value {value!r}") from e


def to_domain(row: NotificationRow) -> Notification:
  return Notification(
    id=row.id,
    organization_id=row.organization_id,
    recipient_id=row.recipient_id,
    category=Category(row.category),
    priority=Priority(row.priority),
    context=RoutingContext(row.routing_context),
    created_at=row.created_at,
    payload=dict(row.payload or {}),
    escalation_depth=int(row.escalation_depth or 0),
  )


def send_payload(row: NotificationRow) -> dict[str, Any]:
  return jsonable_encoder(
    {
      "notificationId": row.id,
      "organizationId": row.organization_id,
      "recipientId": row.recipient_id,
      "category": row.category,
      "priority": row.priority,
      "context": row.routing_context,
      "escalatedFromId": row.escalated_from_id,
      "escalationDepth": row.escalation_depth,
      "createdAt": row.created_at,
      "data": row.payload or {},
    }
  )


class RoutingEngine:
  """
  Submit, dispatch, acknowledge and expire notifications.

  Planning is pure and runs against a snapshot of rules, profile and
  devices; everything stateful (records, rate caps, escalations) happens
  around it here.
  """

  def __init__(
    self,
    *,
    rules: RoutingRuleStore = rule_store,
    devices: DeviceDirectory = directory.devices,
    profiles: ProfileDirectory = directory.profiles,
    memberships: MembershipDirectory = directory.memberships,
    planner: DeliveryPlanner | None = None,
    dispatcher: ChannelDispatcher | None = None,
    caps: RateCapCounter = rate_caps,
    scheduler: EscalationScheduler = escalation_scheduler,
    bus: EventBus = event_bus,
    manager_roles: list[str] | None = None,
  ) -> None:
    self.rules = rules
    self.devices = devices
    self.profiles = profiles
    self.memberships = memberships
    self.planner = planner or DeliveryPlanner(device_active_days=settings.device_active_days)
    self.dispatcher = dispatcher or ChannelDispatcher()
    self.caps = caps
    self.scheduler = scheduler
    self.bus = bus
    self.manager_roles = manager_roles if manager_roles is not None else settings.escalation_role_list()
    self.scheduler.bind(self)

  # submit

  async def submit(
    self,
    db: AsyncSession,
    *,
    category: Any,
    priority: Any,
    recipient_id: str,
    context: Any,
    organization_id: str | None = None,
    payload: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
  ) -> SubmitResult:
    now = now or _utcnow()
    cat = _parse(Category, category, field_name="category")
    pri = _parse(Priority, priority, field_name="priority")
    ctx = _parse(RoutingContext, context, field_name="context")
    recipient_id = (recipient_id or "").strip()
    if not recipient_id:
      raise RoutingConfigError("recipientId is required")
    key = (idempotency_key or "").strip() or None

    if key:
      existing = await self._by_idempotency_key(db, key)
      if existing is not None:
        return await self._existing_result(db, existing)

    row = NotificationRow(
      organization_id=organization_id,
      recipient_id=recipient_id,
      category=cat.value,
      priority=pri.value,
      routing_context=ctx.value,
      payload=jsonable_encoder(payload or {}),
      idempotency_key=key,
      state=NotificationState.PLANNED.value,
      expires_at=expires_at,
      created_at=now,
    )
    db.add(row)
    try:
      await db.flush()
    except IntegrityError:
      await db.rollback()
      existing = await self._by_idempotency_key(db, key) if key else None
      if existing is None:
        raise
      return await self._existing_result(db, existing)

    started = monotonic()
    notification = to_domain(row)
    plan, profile, devices = await self._plan(db, notification, now=now)

    if plan.should_deliver and rate_capped(ctx):
      limit = profile.context(ctx).max_notifications_per_hour
      cap = await self.caps.hit(user_id=recipient_id, context=ctx.value, limit=limit, now=now)
      if not cap.allowed:
        logger.info("Rate cap reached for user %s in %s, queueing notification %s", recipient_id, ctx.value, row.id)
        plan = apply_rate_cap(plan, window_end=cap.window_end, notification=notification, profile=profile, devices=devices)

    record_attempts(db, notification=row, plan=plan)
    if not plan.should_deliver:
      row.state = NotificationState.UNDELIVERABLE.value
      logger.info("Notification %s not deliverable: %s", row.id, plan.reason)
    await db.commit()

    escalation: EscalationRecord | None = None
    if plan.escalation is not None and plan.escalation.enabled:
      try:
        escalation = await self.scheduler.schedule(
          db,
          notification=row,
          policy=plan.escalation,
          base_time=plan.first_delivery_at() or now,
          rule_id=plan.escalation_rule_id,
        )
        plan = replace(plan, escalation_scheduled=True)
      except EscalationScheduleError as e:
        logger.error("Escalation for notification %s deferred to recovery: %s", row.id, e)
        await db.rollback()
        row = await db.get(NotificationRow, notification.id)
        row.escalation_pending = True
        row.escalation_retry_at = now + retry_delay(0)

    decision_ms = int((monotonic() - started) * 1000)
    _, decision_event = await record_decision(db, notification=row, plan=plan, decision_time_ms=decision_ms, now=now)
    await self.rules.record_usage(db, rule_ids=list(plan.effective_rule_ids), now=now)
    await db.commit()
    runtime_metrics.observe_decision(decision_ms)

    await self.bus.publish(decision_event)
    if escalation is not None:
      await self.bus.publish(escalation_event(ESCALATION_SCHEDULED, escalation))

    if plan.should_deliver:
      await self.dispatch_notification(db, row.id, now=now)

    return SubmitResult(
      notification_id=row.id,
      should_deliver=plan.should_deliver,
      reason=plan.reason,
      escalation_scheduled=plan.escalation_scheduled,
    )

  async def _plan(
    self, db: AsyncSession, notification: Notification, *, now: datetime
  ) -> tuple[DeliveryPlan, RoutingProfile, list[Device]]:
    profile = default_profile(notification.recipient_id, notification.organization_id, timezone=settings.default_timezone)
    devices: list[Device] = []
    try:
      # endpoints first so a safe plan can still reach them
      devices = await self.devices.active_devices(db, user_id=notification.recipient_id, now=now)
      profile = await self.profiles.routing_profile(db, user_id=notification.recipient_id, organization_id=notification.organization_id)
      rules = await self.rules.active_rules(db, organization_id=notification.organization_id)
      matched = match_rules(
        rules,
        category=notification.category,
        priority=notification.priority,
        organization_id=notification.organization_id,
        context=notification.context,
        facts=condition_facts(notification, profile),
      )
      return self.planner.plan(notification, matched=matched, profile=profile, devices=devices, now=now), profile, devices
    except (RoutingConfigError, KeyError, TypeError, ValueError) as e:
      logger.error("Planning failed for notification %s, using safe defaults: %s", notification.id, e)
      return self.planner.safe_plan(notification, profile=profile, devices=devices, now=now), profile, devices

  async def _by_idempotency_key(self, db: AsyncSession, key: str) -> NotificationRow | None:
    res = await db.execute(select(NotificationRow).where(NotificationRow.idempotency_key == key))
    return res.scalar_one_or_none()

  async def _existing_result(self, db: AsyncSession, row: NotificationRow) -> SubmitResult:
    res = await db.execute(select(RoutingDecision).where(RoutingDecision.notification_id == row.id))
    decision = res.scalar_one_or_none()
    if decision is None:
      return SubmitResult(
        notification_id=row.id,
        should_deliver=row.state != NotificationState.UNDELIVERABLE.value,
        duplicate=True,
      )
    return SubmitResult(
      notification_id=row.id,
      should_deliver=decision.should_deliver,
      reason=decision.reason,
      escalation_scheduled=decision.escalation_scheduled,
      duplicate=True,
    )

  # dispatch

  async def dispatch_notification(self, db: AsyncSession, notification_id: str, *, now: datetime | None = None) -> list[dict[str, Any]]:
    """Send every due pending attempt of one notification. Returns the outcomes."""
    now = now or _utcnow()
    row = await self.get_notification(db, notification_id)
    if row.state == NotificationState.EXPIRED.value or (row.expires_at is not None and row.expires_at <= now):
      return []

    res = await db.execute(
      select(DeliveryRecord)
      .where(
        DeliveryRecord.notification_id == notification_id,
        DeliveryRecord.status == DeliveryStatus.PENDING.value,
        DeliveryRecord.attempted_at.is_(None),
        DeliveryRecord.scheduled_for <= now,
      )
      .order_by(DeliveryRecord.sequence.asc(), DeliveryRecord.id.asc())
    )
    due: list[DeliveryRecord] = []
    for rec in res.scalars().all():
      # Claim the attempt (idempotent across pollers).
      claim = await db.execute(
        update(DeliveryRecord)
        .where(DeliveryRecord.id == rec.id, DeliveryRecord.status == DeliveryStatus.PENDING.value, DeliveryRecord.attempted_at.is_(None))
        .values(attempted_at=now)
        .execution_options(synchronize_session=False)
      )
      if claim.rowcount:
        due.append(rec)
    if not due:
      return []

    ok = await db.execute(
      select(DeliveryRecord.id)
      .where(DeliveryRecord.notification_id == notification_id, DeliveryRecord.fallback.is_(False), DeliveryRecord.status.in_(_OK))
      .limit(1)
    )
    already_delivered = ok.scalar_one_or_none() is not None

    attempts = [DueAttempt(record_id=r.id, channel=Channel(r.channel), target=r.target, fallback=bool(r.fallback)) for r in due]
    outcomes = await self.dispatcher.dispatch(attempts, payload=send_payload(row), already_delivered=already_delivered)

    by_id = {r.id: r for r in due}
    attempted = False
    for o in outcomes:
      rec = by_id[o.record_id]
      rec.status = o.status.value
      rec.error = o.error
      rec.latency_ms = o.latency_ms
      rec.attempted_at = now if o.attempted else None
      if o.status is DeliveryStatus.DELIVERED:
        rec.delivered_at = now
      attempted = attempted or o.attempted
      if o.attempted:
        runtime_metrics.observe_send(o.channel.value, ok=o.status.value in _OK, latency_ms=o.latency_ms)
      if o.status is DeliveryStatus.FAILED:
        logger.warning("Delivery %s on %s failed for notification %s: %s", rec.id, rec.channel, notification_id, o.error)
    if attempted:
      row.dispatched_at = row.dispatched_at or now
      if row.state == NotificationState.PLANNED.value:
        row.state = NotificationState.DISPATCHED.value
    await db.commit()

    events = [outcome_event(by_id[o.record_id], notification=row) for o in outcomes]
    for ev in events:
      await self.bus.publish(ev)
    return [{"deliveryId": o.record_id, "channel": o.channel.value, "status": o.status.value, "error": o.error} for o in outcomes]

  async def dispatch_due_once(self, db: AsyncSession, *, now: datetime | None = None, limit: int | None = None) -> int:
    """Dispatch deferred attempts that became due. Returns the number of notifications handled."""
    now = now or _utcnow()
    res = await db.execute(
      select(DeliveryRecord.notification_id)
      .where(
        DeliveryRecord.status == DeliveryStatus.PENDING.value,
        DeliveryRecord.attempted_at.is_(None),
        DeliveryRecord.scheduled_for <= now,
      )
      .order_by(DeliveryRecord.scheduled_for.asc())
      .limit(int(limit or settings.dispatch_batch_size))
    )
    ids = list(dict.fromkeys(res.scalars().all()))
    handled = 0
    for nid in ids:
      try:
        if await self.dispatch_notification(db, nid, now=now):
          handled += 1
      except Exception:
        logger.exception("Dispatch failed for notification %s", nid)
        await db.rollback()
    return handled

  # acknowledgment and receipts

  async def acknowledge(
    self,
    db: AsyncSession,
    notification_id: str,
    *,
    user_id: str,
    action_taken: bool = False,
    now: datetime | None = None,
  ) -> AckResult:
    now = now or _utcnow()
    res = await db.execute(select(NotificationRow).where(NotificationRow.id == notification_id).with_for_update())
    row = res.scalar_one_or_none()
    if row is None:
      raise NotificationNotFound(notification_id)

    if row.acknowledged_at is None:
      row.acknowledged_at = now
      row.acknowledged_by = user_id
    if action_taken:
      row.action_taken = True
    if row.state != NotificationState.EXPIRED.value:
      row.state = NotificationState.ACKNOWLEDGED.value

    cancelled = await self.scheduler.cancel_on_ack(db, notification_id=notification_id, action_taken=bool(row.action_taken), now=now)
    await db.execute(
      update(DeliveryRecord)
      .where(DeliveryRecord.notification_id == notification_id, DeliveryRecord.status == DeliveryStatus.PENDING.value)
      .values(status=DeliveryStatus.EXPIRED.value, error="acknowledged")
      .execution_options(synchronize_session=False)
    )
    await db.commit()

    for rec in cancelled:
      self.scheduler.disarm(rec.id)
      await self.bus.publish(escalation_event(ESCALATION_CANCELLED, rec, reason="acknowledged"))
    if cancelled:
      logger.info("Acknowledgment of %s cancelled %d escalation(s)", notification_id, len(cancelled))
    return AckResult(notification_id=notification_id, state=row.state, cancelled_escalations=[r.id for r in cancelled])

  async def report_delivery(
    self,
    db: AsyncSession,
    notification_id: str,
    *,
    channel: Any,
    target: str,
    status: Any,
    latency_ms: int | None = None,
    error: str | None = None,
    now: datetime | None = None,
  ) -> DeliveryRecord:
    """Apply a transport receipt (delivered or failed) to the matching delivery record."""
    now = now or _utcnow()
    ch = _parse(Channel, channel, field_name="channel")
    st = _parse(DeliveryStatus, status, field_name="status")
    if st not in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED):
      raise RoutingConfigError("receipt status must be delivered or failed")
    row = await self.get_notification(db, notification_id)

    res = await db.execute(
      select(DeliveryRecord)
      .where(
        DeliveryRecord.notification_id == notification_id,
        DeliveryRecord.channel == ch.value,
        DeliveryRecord.target == target,
        DeliveryRecord.attempted_at.is_not(None),
      )
      .order_by(DeliveryRecord.attempted_at.desc())
      .limit(1)
    )
    rec = res.scalar_one_or_none()
    if rec is None:
      raise DeliveryNotFound(notification_id, ch.value, target)
    rec.status = st.value
    if st is DeliveryStatus.DELIVERED:
      rec.delivered_at = now
      rec.error = None
    else:
      rec.error = error or rec.error
    if latency_ms is not None:
      rec.latency_ms = int(latency_ms)
    await db.commit()
    await self.bus.publish(outcome_event(rec, notification=row))
    return rec

  # expiry

  async def expire_stale_once(self, db: AsyncSession, *, now: datetime | None = None, limit: int = 200) -> int:
    now = now or _utcnow()
    res = await db.execute(
      select(NotificationRow)
      .where(NotificationRow.expires_at.is_not(None), NotificationRow.expires_at <= now, NotificationRow.state.in_(_OPEN_STATES))
      .limit(int(limit))
    )
    rows = list(res.scalars().all())
    expired = 0
    for row in rows:
      await db.execute(
        update(DeliveryRecord)
        .where(DeliveryRecord.notification_id == row.id, DeliveryRecord.status == DeliveryStatus.PENDING.value)
        .values(status=DeliveryStatus.EXPIRED.value, error="notification_expired")
        .execution_options(synchronize_session=False)
      )
      cancelled = await self.scheduler.cancel_all(db, notification_id=row.id, now=now)
      row.state = NotificationState.EXPIRED.value
      await db.commit()
      expired += 1
      for rec in cancelled:
        self.scheduler.disarm(rec.id)
        await self.bus.publish(escalation_event(ESCALATION_CANCELLED, rec, reason="expired"))
    if expired:
      logger.info("Expired %d notification(s)", expired)
    return expired

  # escalation delivery

  async def create_escalation_notifications(
    self, db: AsyncSession, *, record: EscalationRecord, original: NotificationRow, now: datetime
  ) -> list[tuple[NotificationRow, EngineEvent]]:
    recipients = list(record.recipients or [])
    if not recipients:
      recipients = await self.memberships.escalation_targets(db, organization_id=original.organization_id, roles=self.manager_roles)
    recipients = [r for r in dict.fromkeys(recipients) if r and r != original.recipient_id]
    if not recipients:
      logger.warning("Escalation %s for notification %s has no recipients", record.id, original.id)
      return []

    channels = tuple(Channel(c) for c in record.channels or []) or (Channel.EMAIL,)
    created: list[tuple[NotificationRow, EngineEvent]] = []
    for uid in recipients:
      started = monotonic()
      child = NotificationRow(
        organization_id=original.organization_id,
        recipient_id=uid,
        category=original.category,
        priority=original.priority,
        routing_context=original.routing_context,
        payload={
          **(original.payload or {}),
          "escalation": {"originalNotificationId": original.id, "originalRecipientId": original.recipient_id, "trigger": record.trigger},
        },
        state=NotificationState.PLANNED.value,
        escalated_from_id=original.id,
        escalation_depth=1,
        created_at=now,
      )
      db.add(child)
      await db.flush()

      profile = await self.profiles.routing_profile(db, user_id=uid, organization_id=original.organization_id)
      devices = await self.devices.active_devices(db, user_id=uid, now=now)
      plan = self.planner.plan_escalation(to_domain(child), channels=channels, profile=profile, devices=devices, now=now)
      record_attempts(db, notification=child, plan=plan)
      if not plan.should_deliver:
        child.state = NotificationState.UNDELIVERABLE.value
      _, event = await record_decision(
        db, notification=child, plan=plan, decision_time_ms=int((monotonic() - started) * 1000), now=now
      )
      created.append((child, event))
    return created

  # reads

  async def get_notification(self, db: AsyncSession, notification_id: str) -> NotificationRow:
    res = await db.execute(select(NotificationRow).where(NotificationRow.id == notification_id))
    row = res.scalar_one_or_none()
    if row is None:
      raise NotificationNotFound(notification_id)
    return row

  async def get_deliveries(self, db: AsyncSession, notification_id: str) -> list[DeliveryRecord]:
    await self.get_notification(db, notification_id)
    res = await db.execute(
      select(DeliveryRecord)
      .where(DeliveryRecord.notification_id == notification_id)
      .order_by(DeliveryRecord.sequence.asc(), DeliveryRecord.id.asc())
    )
    return list(res.scalars().all())

  async def get_decision(self, db: AsyncSession, notification_id: str) -> RoutingDecision | None:
    await self.get_notification(db, notification_id)
    res = await db.execute(select(RoutingDecision).where(RoutingDecision.notification_id == notification_id))
    return res.scalar_one_or_none()

  async def get_escalations(self, db: AsyncSession, notification_id: str) -> list[EscalationRecord]:
    await self.get_notification(db, notification_id)
    res = await db.execute(
      select(EscalationRecord)
      .where(EscalationRecord.notification_id == notification_id)
      .order_by(EscalationRecord.scheduled_for.asc(), EscalationRecord.id.asc())
    )
    return list(res.scalars().all())


routing_engine = RoutingEngine()
