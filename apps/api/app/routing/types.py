from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Category(str, Enum):
  EMERGENCY = "emergency"
  VOTING = "voting"
  COMPLIANCE = "compliance"
  MEETING = "meeting"
  GOVERNANCE = "governance"
  SECURITY = "security"


# A rule registered for the generic category applies to every category.
GENERIC_CATEGORY = Category.GOVERNANCE


class Priority(str, Enum):
  LOW = "low"
  MEDIUM = "medium"
  HIGH = "high"
  CRITICAL = "critical"

  @property
  def rank(self) -> int:
    return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


class PriorityMode(str, Enum):
  EXACT = "exact"
  MINIMUM = "minimum"


class RoutingContext(str, Enum):
  MEETING = "meeting"
  VOTING = "voting"
  COMPLIANCE = "compliance"
  EMERGENCY = "emergency"
  GOVERNANCE = "governance"


class Channel(str, Enum):
  PUSH = "push"
  EMAIL = "email"
  SMS = "sms"
  IN_APP = "in_app"
  WEBHOOK = "webhook"


class Platform(str, Enum):
  IOS = "ios"
  ANDROID = "android"
  WEB = "web"


class EscalationTrigger(str, Enum):
  UNREAD = "unread"
  UNDELIVERED = "undelivered"
  NO_ACTION = "no_action"
  TIME_CRITICAL = "time_critical"


class EscalationStatus(str, Enum):
  SCHEDULED = "scheduled"
  TRIGGERED = "triggered"
  COMPLETED = "completed"
  CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
  PENDING = "pending"
  SENT = "sent"
  DELIVERED = "delivered"
  FAILED = "failed"
  EXPIRED = "expired"


class NotificationState(str, Enum):
  PLANNED = "planned"
  DISPATCHED = "dispatched"
  ACKNOWLEDGED = "acknowledged"
  UNDELIVERABLE = "undeliverable"
  EXPIRED = "expired"
  ESCALATED = "escalated"


NO_DELIVERABLE_ENDPOINT = "no_deliverable_endpoint"

CONDITION_OPERATORS = ("eq", "ne", "gt", "lt", "in", "contains", "starts_with")
CONDITION_JOINERS = ("and", "or")


@dataclass(frozen=True)
class EscalationPolicy:
  enabled: bool = False
  delay_minutes: int = 15
  trigger: EscalationTrigger = EscalationTrigger.UNREAD
  channels: tuple[Channel, ...] = (Channel.EMAIL,)
  recipients: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoutingRule:
  id: str
  name: str
  category: Category
  priority: Priority
  context: RoutingContext
  organization_id: str | None = None
  priority_mode: PriorityMode = PriorityMode.EXACT
  primary_channels: tuple[Channel, ...] = (Channel.PUSH,)
  fallback_channels: tuple[Channel, ...] = (Channel.EMAIL,)
  immediate_delivery: bool = False
  respect_dnd: bool = True
  business_hours_only: bool = False
  dnd_override_channels: tuple[Channel, ...] = ()
  escalation: EscalationPolicy = field(default_factory=EscalationPolicy)
  rule_priority: int = 100
  conditions: tuple[dict[str, Any], ...] = ()
  is_active: bool = True
  created_at: datetime | None = None

  def matches_priority(self, priority: Priority) -> bool:
    if self.priority_mode is PriorityMode.MINIMUM:
      return priority.rank >= self.priority.rank
    return priority is self.priority


@dataclass(frozen=True)
class Device:
  id: str
  user_id: str
  platform: Platform
  token: str
  last_active: datetime
  allow_critical_override: bool = True
  dnd_start: str | None = None
  dnd_end: str | None = None
  category_prefs: dict[str, dict[str, bool]] = field(default_factory=dict)

  def accepts(self, category: Category) -> bool:
    prefs = self.category_prefs.get(category.value) or {}
    return bool(prefs.get("enabled", True))


@dataclass(frozen=True)
class Notification:
  id: str
  organization_id: str | None
  recipient_id: str
  category: Category
  priority: Priority
  context: RoutingContext
  created_at: datetime
  payload: dict[str, Any] = field(default_factory=dict)
  escalation_depth: int = 0


@dataclass(frozen=True)
class PlannedAttempt:
  channel: Channel
  target: str
  scheduled_at: datetime
  fallback: bool = False
  device_id: str | None = None
  deferred_reason: str | None = None


@dataclass(frozen=True)
class TimingPolicy:
  """Quiet-hours behaviour a plan was gated with; reused when attempts move later."""

  respect_dnd: bool = True
  business_hours_only: bool = False
  dnd_override_channels: tuple[Channel, ...] = ()


@dataclass(frozen=True)
class DeliveryPlan:
  notification_id: str
  should_deliver: bool
  attempts: tuple[PlannedAttempt, ...] = ()
  reason: str | None = None
  matched_rule_ids: tuple[str, ...] = ()
  effective_rule_ids: tuple[str, ...] = ()
  escalation: EscalationPolicy | None = None
  escalation_rule_id: str | None = None
  escalation_scheduled: bool = False
  rate_limited: bool = False
  factors: dict[str, Any] = field(default_factory=dict)
  timing: TimingPolicy = field(default_factory=TimingPolicy)

  @property
  def channels(self) -> list[Channel]:
    out: list[Channel] = []
    for a in self.attempts:
      if a.channel not in out:
        out.append(a.channel)
    return out

  def first_delivery_at(self) -> datetime | None:
    if not self.attempts:
      return None
    return min(a.scheduled_at for a in self.attempts)
