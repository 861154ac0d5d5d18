from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.deps import get_db, require_service_token
from app.models import DeliveryRecord, EscalationRecord, Notification as NotificationRow, RoutingDecision
from app.routing.engine import routing_engine
from app.routing.recorder import delivery_summary
from app.schemas import (
  AcknowledgeIn,
  AcknowledgeOut,
  DeliveryReceiptIn,
  DeliveryRecordOut,
  DeliverySummaryOut,
  EscalationOut,
  NotificationOut,
  NotificationSubmitIn,
  NotificationSubmitOut,
  RoutingDecisionOut,
)

router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(require_service_token)])


def _delivery_out(r: DeliveryRecord) -> DeliveryRecordOut:
  return DeliveryRecordOut(
    id=r.id,
    channel=r.channel,
    target=r.target,
    deviceId=r.device_id,
    fallback=r.fallback,
    status=r.status,
    deferredReason=r.deferred_reason,
    scheduledFor=r.scheduled_for,
    attemptedAt=r.attempted_at,
    deliveredAt=r.delivered_at,
    latencyMs=r.latency_ms,
    error=r.error,
  )


def _notification_out(n: NotificationRow, records: list[DeliveryRecord]) -> NotificationOut:
  return NotificationOut(
    id=n.id,
    organizationId=n.organization_id,
    recipientId=n.recipient_id,
    category=n.category,
    priority=n.priority,
    context=n.routing_context,
    state=n.state,
    payload=n.payload or {},
    escalatedFromId=n.escalated_from_id,
    escalationDepth=n.escalation_depth,
    escalationPending=n.escalation_pending,
    acknowledgedAt=n.acknowledged_at,
    acknowledgedBy=n.acknowledged_by,
    actionTaken=n.action_taken,
    dispatchedAt=n.dispatched_at,
    expiresAt=n.expires_at,
    createdAt=n.created_at,
    deliveries=[_delivery_out(r) for r in records],
    summary=DeliverySummaryOut(**delivery_summary(records)),
  )


def _decision_out(d: RoutingDecision) -> RoutingDecisionOut:
  return RoutingDecisionOut(
    id=d.id,
    notificationId=d.notification_id,
    userId=d.user_id,
    organizationId=d.organization_id,
    shouldDeliver=d.should_deliver,
    reason=d.reason,
    deliveryChannels=list(d.delivery_channels or []),
    deliveryTime=d.delivery_time,
    escalationScheduled=d.escalation_scheduled,
    matchedRules=list(d.matched_rules or []),
    appliedRules=list(d.applied_rules or []),
    routingContext=d.routing_context,
    plan=d.plan or {},
    decisionFactors=d.decision_factors or {},
    decisionTimeMs=d.decision_time_ms,
    createdAt=d.created_at,
  )


def _escalation_out(e: EscalationRecord) -> EscalationOut:
  return EscalationOut(
    id=e.id,
    notificationId=e.notification_id,
    userId=e.user_id,
    ruleId=e.rule_id,
    trigger=e.trigger,
    delayMinutes=e.delay_minutes,
    channels=list(e.channels or []),
    recipients=list(e.recipients or []),
    status=e.status,
    scheduledFor=e.scheduled_for,
    triggeredAt=e.triggered_at,
    completedAt=e.completed_at,
    results=list(e.results or []),
    retryCount=e.retry_count,
    lastError=e.last_error,
  )


@router.post("", response_model=NotificationSubmitOut)
async def submit_notification(payload: NotificationSubmitIn, db: AsyncSession = Depends(get_db)) -> NotificationSubmitOut:
  result = await routing_engine.submit(
    db,
    category=payload.category,
    priority=payload.priority,
    recipient_id=payload.recipientId,
    context=payload.context,
    organization_id=payload.organizationId,
    payload=payload.payload,
    idempotency_key=payload.idempotencyKey,
    expires_at=payload.expiresAt,
  )
  return NotificationSubmitOut(
    id=result.notification_id,
    shouldDeliver=result.should_deliver,
    reason=result.reason,
    escalationScheduled=result.escalation_scheduled,
    duplicate=result.duplicate,
  )


@router.get("/{notification_id}", response_model=NotificationOut)
async def get_notification(notification_id: str, db: AsyncSession = Depends(get_db)) -> NotificationOut:
  n = await routing_engine.get_notification(db, notification_id)
  records = await routing_engine.get_deliveries(db, notification_id)
  return _notification_out(n, records)


@router.post("/{notification_id}/ack", response_model=AcknowledgeOut)
async def acknowledge_notification(notification_id: str, payload: AcknowledgeIn, db: AsyncSession = Depends(get_db)) -> AcknowledgeOut:
  result = await routing_engine.acknowledge(db, notification_id, user_id=payload.userId, action_taken=payload.actionTaken)
  return AcknowledgeOut(id=result.notification_id, state=result.state, cancelledEscalations=result.cancelled_escalations)


@router.post("/{notification_id}/receipts", response_model=DeliveryRecordOut)
async def report_delivery_receipt(notification_id: str, payload: DeliveryReceiptIn, db: AsyncSession = Depends(get_db)) -> DeliveryRecordOut:
  rec = await routing_engine.report_delivery(
    db,
    notification_id,
    channel=payload.channel,
    target=payload.target,
    status=payload.status,
    latency_ms=payload.latencyMs,
    error=payload.error,
  )
  return _delivery_out(rec)


@router.get("/{notification_id}/decision", response_model=RoutingDecisionOut)
async def get_routing_decision(notification_id: str, db: AsyncSession = Depends(get_db)) -> RoutingDecisionOut:
  d = await routing_engine.get_decision(db, notification_id)
  if d is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing decision not recorded")
  return _decision_out(d)


@router.get("/{notification_id}/escalations", response_model=list[EscalationOut])
async def list_escalations(notification_id: str, db: AsyncSession = Depends(get_db)) -> list[EscalationOut]:
  return [_escalation_out(e) for e in await routing_engine.get_escalations(db, notification_id)]
