from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


JsonType = JSON().with_variant(JSONB(), "postgresql")


class UtcDateTime(TypeDecorator):
  """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

  def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
  pass


class Notification(Base):
  __tablename__ = "notifications"
  __table_args__ = (
    UniqueConstraint("idempotency_key", name="ux_notifications_idempotency_key"),
    Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
  recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
  category: Mapped[str] = mapped_column(String, nullable=False)
  priority: Mapped[str] = mapped_column(String, nullable=False)
  routing_context: Mapped[str] = mapped_column(String, nullable=False)
  payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  state: Mapped[str] = mapped_column(String, nullable=False, default="planned")
  escalated_from_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("notifications.id"), nullable=True, index=True)
  escalation_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  escalation_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  escalation_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  escalation_retry_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  acknowledged_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  acknowledged_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
  action_taken: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  dispatched_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Device(Base):
  __tablename__ = "push_devices"
  __table_args__ = (UniqueConstraint("user_id", "device_token", "platform", name="ux_push_devices_user_token_platform"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
  platform: Mapped[str] = mapped_column(String, nullable=False)
  device_token: Mapped[str] = mapped_column(Text, nullable=False)
  device_name: Mapped[str | None] = mapped_column(String, nullable=True)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  last_active: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  preferences: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RoutingRule(Base):
  __tablename__ = "notification_routing_rules"
  __table_args__ = (Index("ix_routing_rules_category_priority", "category", "priority", "is_active"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  name: Mapped[str] = mapped_column(String(255), nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
  category: Mapped[str] = mapped_column(String, nullable=False)
  priority: Mapped[str] = mapped_column(String, nullable=False)
  priority_mode: Mapped[str] = mapped_column(String, nullable=False, default="exact")
  routing_context: Mapped[str] = mapped_column(String, nullable=False)
  primary_channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=lambda: ["push"])
  fallback_channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=lambda: ["email"])
  immediate_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  respect_dnd: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  business_hours_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  dnd_override_channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  escalation_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
  escalation_trigger: Mapped[str] = mapped_column(String, nullable=False, default="unread")
  escalation_channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=lambda: ["email"])
  escalation_recipients: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  conditions: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  rule_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
  usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_used: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserRoutingProfile(Base):
  __tablename__ = "user_routing_profiles"
  __table_args__ = (UniqueConstraint("user_id", "organization_id", name="ux_user_routing_profiles_user_org"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  # NULL user_id marks an organization-wide default profile.
  user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
  organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
  timezone: Mapped[str] = mapped_column(String, nullable=False, default="UTC")
  business_hours_start: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
  business_hours_end: Mapped[str] = mapped_column(String(5), nullable=False, default="17:00")
  business_days: Mapped[list[str]] = mapped_column(
    JsonType, nullable=False, default=lambda: ["monday", "tuesday", "wednesday", "thursday", "friday"]
  )
  dnd_windows: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
  channel_preferences: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  category_routing: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  context_settings: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  email: Mapped[str | None] = mapped_column(String(320), nullable=True)
  phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
  webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DeliveryRecord(Base):
  __tablename__ = "notification_deliveries"
  __table_args__ = (Index("ix_notification_deliveries_due", "status", "scheduled_for"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  notification_id: Mapped[str] = mapped_column(String(36), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String(64), nullable=False)
  channel: Mapped[str] = mapped_column(String, nullable=False)
  target: Mapped[str] = mapped_column(Text, nullable=False)
  device_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
  deferred_reason: Mapped[str | None] = mapped_column(String, nullable=True)
  scheduled_for: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  attempted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  delivered_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class EscalationRecord(Base):
  __tablename__ = "notification_escalations"
  __table_args__ = (
    UniqueConstraint("notification_id", "trigger", name="ux_notification_escalations_notification_trigger"),
    Index("ix_notification_escalations_scheduled", "status", "scheduled_for"),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  notification_id: Mapped[str] = mapped_column(String(36), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False)
  user_id: Mapped[str] = mapped_column(String(64), nullable=False)
  organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
  rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  trigger: Mapped[str] = mapped_column(String, nullable=False)
  delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
  channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  recipients: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  status: Mapped[str] = mapped_column(String, nullable=False, default="scheduled")
  scheduled_for: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  triggered_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  results: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RoutingDecision(Base):
  __tablename__ = "routing_decisions"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  notification_id: Mapped[str] = mapped_column(String(36), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, unique=True)
  user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
  organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
  should_deliver: Mapped[bool] = mapped_column(Boolean, nullable=False)
  reason: Mapped[str | None] = mapped_column(String, nullable=True)
  delivery_channels: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  delivery_time: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  escalation_scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  matched_rules: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  applied_rules: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
  routing_context: Mapped[str | None] = mapped_column(String, nullable=True)
  plan: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  decision_factors: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
  decision_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class OrganizationMember(Base):
  __tablename__ = "organization_members"
  __table_args__ = (UniqueConstraint("organization_id", "user_id", name="ux_organization_members_org_user"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String(64), nullable=False)
  role: Mapped[str] = mapped_column(String, nullable=False, default="member")
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
