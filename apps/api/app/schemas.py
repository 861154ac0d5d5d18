from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import field_validator

from app.routing.types import Category, Channel, EscalationTrigger, Platform, Priority, PriorityMode, RoutingContext


_TZ_SUFFIX_RE = re.compile(r"(Z|[+-]\d{2}:\d{2})$")
_HHMM_RE = re.compile(r"^\d{2}:\d{2}$")


def _parse_dt_utc_require_tz(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
    if dt.tzinfo is None:
      raise ValueError("datetime must include timezone")
    return dt.astimezone(timezone.utc)
  if isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if not _TZ_SUFFIX_RE.search(s):
      raise ValueError("datetime must include timezone")
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return dt.astimezone(timezone.utc)
  return value


# notifications


class NotificationSubmitIn(BaseModel):
  category: Category
  priority: Priority
  recipientId: str = Field(min_length=1, max_length=64)
  context: RoutingContext
  organizationId: str | None = Field(default=None, max_length=64)
  payload: dict[str, Any] = Field(default_factory=dict)
  idempotencyKey: str | None = Field(default=None, min_length=1, max_length=200)
  expiresAt: datetime | None = None

  @field_validator("expiresAt", mode="before")
  @classmethod
  def _expires_at_utc(cls, v: object) -> object:
    return _parse_dt_utc_require_tz(v)


class NotificationSubmitOut(BaseModel):
  id: str
  shouldDeliver: bool
  reason: str | None = None
  escalationScheduled: bool = False
  duplicate: bool = False


class DeliveryRecordOut(BaseModel):
  id: str
  channel: Channel
  target: str
  deviceId: str | None = None
  fallback: bool
  status: str
  deferredReason: str | None = None
  scheduledFor: datetime
  attemptedAt: datetime | None = None
  deliveredAt: datetime | None = None
  latencyMs: int | None = None
  error: str | None = None


class DeliverySummaryOut(BaseModel):
  totalTargets: int
  successful: int
  delivered: int
  failed: int
  pending: int
  expired: int
  firstDeliveryAt: datetime | None = None
  lastDeliveryAt: datetime | None = None
  deliveryTimeMs: int | None = None


class NotificationOut(BaseModel):
  id: str
  organizationId: str | None = None
  recipientId: str
  category: Category
  priority: Priority
  context: RoutingContext
  state: str
  payload: dict[str, Any]
  escalatedFromId: str | None = None
  escalationDepth: int
  escalationPending: bool
  acknowledgedAt: datetime | None = None
  acknowledgedBy: str | None = None
  actionTaken: bool
  dispatchedAt: datetime | None = None
  expiresAt: datetime | None = None
  createdAt: datetime
  deliveries: list[DeliveryRecordOut]
  summary: DeliverySummaryOut


class AcknowledgeIn(BaseModel):
  userId: str = Field(min_length=1, max_length=64)
  actionTaken: bool = False


class AcknowledgeOut(BaseModel):
  id: str
  state: str
  cancelledEscalations: list[str]


class DeliveryReceiptIn(BaseModel):
  channel: Channel
  target: str = Field(min_length=1)
  status: Literal["delivered", "failed"]
  latencyMs: int | None = Field(default=None, ge=0)
  error: str | None = Field(default=None, max_length=2000)


class RoutingDecisionOut(BaseModel):
  id: str
  notificationId: str
  userId: str
  organizationId: str | None = None
  shouldDeliver: bool
  reason: str | None = None
  deliveryChannels: list[str]
  deliveryTime: datetime
  escalationScheduled: bool
  matchedRules: list[str]
  appliedRules: list[str]
  routingContext: str | None = None
  plan: dict[str, Any]
  decisionFactors: dict[str, Any]
  decisionTimeMs: int
  createdAt: datetime


class EscalationOut(BaseModel):
  id: str
  notificationId: str
  userId: str
  ruleId: str | None = None
  trigger: EscalationTrigger
  delayMinutes: int
  channels: list[str]
  recipients: list[str]
  status: str
  scheduledFor: datetime
  triggeredAt: datetime | None = None
  completedAt: datetime | None = None
  results: list[dict[str, Any]]
  retryCount: int
  lastError: str | None = None


# routing configuration


class RoutingRuleIn(BaseModel):
  name: str = Field(min_length=1, max_length=255)
  description: str | None = Field(default=None, max_length=2000)
  organizationId: str | None = Field(default=None, max_length=64)
  category: Category
  priority: Priority
  priorityMode: PriorityMode = PriorityMode.EXACT
  routingContext: RoutingContext
  primaryChannels: list[Channel] = Field(min_length=1)
  fallbackChannels: list[Channel] = Field(default_factory=lambda: [Channel.EMAIL])
  immediateDelivery: bool = False
  respectDnd: bool = True
  businessHoursOnly: bool = False
  dndOverrideChannels: list[Channel] = Field(default_factory=list)
  escalationEnabled: bool = False
  escalationDelayMinutes: int = Field(default=15, ge=1, le=1440)
  escalationTrigger: EscalationTrigger = EscalationTrigger.UNREAD
  escalationChannels: list[Channel] = Field(default_factory=lambda: [Channel.EMAIL])
  escalationRecipients: list[str] = Field(default_factory=list)
  rulePriority: int = Field(default=100, ge=1, le=1000)
  conditions: list[dict[str, Any]] = Field(default_factory=list)
  isActive: bool = True


class RoutingRuleUpdateIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=255)
  description: str | None = Field(default=None, max_length=2000)
  priority: Priority | None = None
  priorityMode: PriorityMode | None = None
  primaryChannels: list[Channel] | None = Field(default=None, min_length=1)
  fallbackChannels: list[Channel] | None = None
  immediateDelivery: bool | None = None
  respectDnd: bool | None = None
  businessHoursOnly: bool | None = None
  dndOverrideChannels: list[Channel] | None = None
  escalationEnabled: bool | None = None
  escalationDelayMinutes: int | None = Field(default=None, ge=1, le=1440)
  escalationTrigger: EscalationTrigger | None = None
  escalationChannels: list[Channel] | None = None
  escalationRecipients: list[str] | None = None
  rulePriority: int | None = Field(default=None, ge=1, le=1000)
  conditions: list[dict[str, Any]] | None = None
  isActive: bool | None = None


class RoutingRuleOut(BaseModel):
  id: str
  name: str
  description: str | None = None
  organizationId: str | None = None
  category: Category
  priority: Priority
  priorityMode: PriorityMode
  routingContext: RoutingContext
  primaryChannels: list[Channel]
  fallbackChannels: list[Channel]
  immediateDelivery: bool
  respectDnd: bool
  businessHoursOnly: bool
  dndOverrideChannels: list[Channel]
  escalationEnabled: bool
  escalationDelayMinutes: int
  escalationTrigger: EscalationTrigger
  escalationChannels: list[Channel]
  escalationRecipients: list[str]
  rulePriority: int
  conditions: list[dict[str, Any]]
  isActive: bool
  usageCount: int
  lastUsed: datetime | None = None
  createdAt: datetime
  updatedAt: datetime


class DndWindowIn(BaseModel):
  start: str
  end: str

  @field_validator("start", "end")
  @classmethod
  def _hhmm(cls, v: str) -> str:
    s = (v or "").strip()
    if not _HHMM_RE.fullmatch(s):
      raise ValueError("Time must be HH:MM")
    return s


class RoutingProfileIn(BaseModel):
  organizationId: str | None = Field(default=None, max_length=64)
  timezone: str = Field(default="UTC", min_length=1, max_length=64)
  businessHoursStart: str = "09:00"
  businessHoursEnd: str = "17:00"
  businessDays: list[str] = Field(default_factory=lambda: ["monday", "tuesday", "wednesday", "thursday", "friday"])
  dndWindows: list[DndWindowIn] = Field(default_factory=list)
  channelPreferences: dict[str, dict[str, Any]] = Field(default_factory=dict)
  categoryRouting: dict[str, dict[str, Any]] = Field(default_factory=dict)
  contextSettings: dict[str, dict[str, Any]] = Field(default_factory=dict)
  email: str | None = Field(default=None, max_length=320)
  phone: str | None = Field(default=None, max_length=32)
  webhookUrl: str | None = Field(default=None, max_length=2000)


class RoutingProfileOut(BaseModel):
  userId: str | None = None
  organizationId: str | None = None
  source: str
  timezone: str
  businessHoursStart: str
  businessHoursEnd: str
  businessDays: list[str]
  dndWindows: list[dict[str, str]]
  channelPreferences: dict[str, dict[str, Any]]
  categoryRouting: dict[str, dict[str, Any]]
  contextSettings: dict[str, dict[str, Any]]
  email: str | None = None
  phone: str | None = None
  webhookUrl: str | None = None


class DeviceRegisterIn(BaseModel):
  userId: str = Field(min_length=1, max_length=64)
  platform: Platform
  deviceToken: str = Field(min_length=1, max_length=4096)
  deviceName: str | None = Field(default=None, max_length=200)
  isActive: bool = True
  lastActive: datetime | None = None
  preferences: dict[str, Any] = Field(default_factory=dict)

  @field_validator("lastActive", mode="before")
  @classmethod
  def _last_active_utc(cls, v: object) -> object:
    return _parse_dt_utc_require_tz(v)


class DeviceOut(BaseModel):
  id: str
  userId: str
  platform: Platform
  deviceName: str | None = None
  isActive: bool
  lastActive: datetime
  preferences: dict[str, Any]


class OrganizationMemberIn(BaseModel):
  userId: str = Field(min_length=1, max_length=64)
  role: str = Field(default="member", min_length=1, max_length=32)


class OrganizationMemberOut(BaseModel):
  organizationId: str
  userId: str
  role: str


# system


class SystemStatusSectionOut(BaseModel):
  key: str
  label: str
  state: Literal["green", "yellow", "red"]
  details: list[str] = []
  updatedAt: datetime


class SystemStatusOut(BaseModel):
  generatedAt: datetime
  version: str
  buildSha: str
  sections: list[SystemStatusSectionOut]
