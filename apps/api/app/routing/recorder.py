from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.events import DELIVERY_OUTCOME, ROUTING_DECISION, EngineEvent
from app.models import DeliveryRecord, Notification as NotificationRow, RoutingDecision
from app.routing.types import DeliveryPlan, DeliveryStatus, EscalationPolicy, PlannedAttempt


def attempt_to_dict(a: PlannedAttempt) -> dict[str, Any]:
  return {
    "channel": a.channel.value,
    "target": a.target,
    "deviceId": a.device_id,
    "scheduledAt": a.scheduled_at,
    "fallback": a.fallback,
    "deferredReason": a.deferred_reason,
  }


def escalation_to_dict(policy: EscalationPolicy) -> dict[str, Any]:
  return {
    "enabled": policy.enabled,
    "delayMinutes": policy.delay_minutes,
    "trigger": policy.trigger.value,
    "channels": [c.value for c in policy.channels],
    "recipients": list(policy.recipients),
  }


def plan_to_dict(plan: DeliveryPlan) -> dict[str, Any]:
  return jsonable_encoder(
    {
      "shouldDeliver": plan.should_deliver,
      "reason": plan.reason,
      "attempts": [attempt_to_dict(a) for a in plan.attempts],
      "matchedRules": list(plan.matched_rule_ids),
      "effectiveRules": list(plan.effective_rule_ids),
      "escalationRule": plan.escalation_rule_id,
      "escalation": escalation_to_dict(plan.escalation) if plan.escalation else None,
      "escalationScheduled": plan.escalation_scheduled,
      "rateLimited": plan.rate_limited,
    }
  )


async def record_decision(
  db: AsyncSession,
  *,
  notification: NotificationRow,
  plan: DeliveryPlan,
  decision_time_ms: int,
  now: datetime,
) -> tuple[RoutingDecision, EngineEvent]:
  """Write the RoutingDecision for a planning pass. Write-once per notification."""
  res = await db.execute(select(RoutingDecision).where(RoutingDecision.notification_id == notification.id))
  existing = res.scalar_one_or_none()
  if existing is not None:
    return existing, _decision_event(existing)

  decision = RoutingDecision(
    notification_id=notification.id,
    user_id=notification.recipient_id,
    organization_id=notification.organization_id,
    should_deliver=plan.should_deliver,
    reason=plan.reason,
    delivery_channels=[c.value for c in plan.channels],
    delivery_time=plan.first_delivery_at() or now,
    escalation_scheduled=plan.escalation_scheduled,
    matched_rules=list(plan.matched_rule_ids),
    applied_rules=list(plan.effective_rule_ids),
    routing_context=notification.routing_context,
    plan=plan_to_dict(plan),
    decision_factors=jsonable_encoder(plan.factors),
    decision_time_ms=max(0, int(decision_time_ms)),
    created_at=now,
  )
  db.add(decision)
  return decision, _decision_event(decision)


def _decision_event(decision: RoutingDecision) -> EngineEvent:
  return EngineEvent(
    event_type=ROUTING_DECISION,
    notification_id=decision.notification_id,
    payload={
      "userId": decision.user_id,
      "organizationId": decision.organization_id,
      "shouldDeliver": decision.should_deliver,
      "reason": decision.reason,
      "channels": list(decision.delivery_channels or []),
      "deliveryTime": decision.delivery_time,
      "escalationScheduled": decision.escalation_scheduled,
      "appliedRules": list(decision.applied_rules or []),
      "decisionTimeMs": decision.decision_time_ms,
    },
  )


def record_attempts(db: AsyncSession, *, notification: NotificationRow, plan: DeliveryPlan) -> list[DeliveryRecord]:
  records: list[DeliveryRecord] = []
  for idx, a in enumerate(plan.attempts):
    rec = DeliveryRecord(
      sequence=idx,
      notification_id=notification.id,
      user_id=notification.recipient_id,
      channel=a.channel.value,
      target=a.target,
      device_id=a.device_id,
      fallback=a.fallback,
      status=DeliveryStatus.PENDING.value,
      deferred_reason=a.deferred_reason,
      scheduled_for=a.scheduled_at,
    )
    db.add(rec)
    records.append(rec)
  return records


def outcome_event(record: DeliveryRecord, *, notification: NotificationRow) -> EngineEvent:
  return EngineEvent(
    event_type=DELIVERY_OUTCOME,
    notification_id=record.notification_id,
    payload={
      "deliveryId": record.id,
      "userId": record.user_id,
      "organizationId": notification.organization_id,
      "category": notification.category,
      "priority": notification.priority,
      "channel": record.channel,
      "status": record.status,
      "fallback": record.fallback,
      "latencyMs": record.latency_ms,
      "error": record.error,
      "escalationDepth": notification.escalation_depth,
    },
  )


def delivery_summary(records: list[DeliveryRecord]) -> dict[str, Any]:
  """Per-notification rollup: target counts, first/last delivery, total dispatch time."""
  ok = {DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value}
  attempted = [r for r in records if r.attempted_at is not None]
  first = min((r.attempted_at for r in attempted), default=None)
  last = max((r.attempted_at for r in attempted), default=None)
  latency = [int(r.latency_ms) for r in attempted if r.latency_ms is not None]
  delivery_time_ms = None
  if first is not None and last is not None:
    delivery_time_ms = int((last - first).total_seconds() * 1000) + (max(latency) if latency else 0)
  return {
    "totalTargets": len(records),
    "successful": sum(1 for r in records if r.status in ok),
    "delivered": sum(1 for r in records if r.status == DeliveryStatus.DELIVERED.value),
    "failed": sum(1 for r in records if r.status == DeliveryStatus.FAILED.value),
    "pending": sum(1 for r in records if r.status == DeliveryStatus.PENDING.value),
    "expired": sum(1 for r in records if r.status == DeliveryStatus.EXPIRED.value),
    "firstDeliveryAt": first,
    "lastDeliveryAt": last,
    "deliveryTimeMs": delivery_time_ms,
  }
