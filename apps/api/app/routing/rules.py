from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from cachetools import TTLCache
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import RoutingRule as RoutingRuleRow
from app.routing.errors import RoutingConfigError
from app.routing.types import (
  CONDITION_JOINERS,
  CONDITION_OPERATORS,
  Category,
  Channel,
  EscalationPolicy,
  EscalationTrigger,
  Priority,
  PriorityMode,
  RoutingContext,
  RoutingRule,
)

logger = logging.getLogger(__name__)

MIN_ESCALATION_DELAY_MINUTES = 1
MAX_ESCALATION_DELAY_MINUTES = 1440
MIN_RULE_PRIORITY = 1
MAX_RULE_PRIORITY = 1000


def _enum(enum_cls: Any, value: Any, *, field_name: str) -> Any:
  try:
    return enum_cls(getattr(value, "value", value))
  except ValueError as e:
    raise RoutingConfigError(f"{field_name}: invalid value {value!r}") from e


def _channels(values: Any, *, field_name: str) -> tuple[Channel, ...]:
  if values is None:
    return ()
  if not isinstance(values, (list, tuple)):
    raise RoutingConfigError(f"{field_name} must be a list")
  out: list[Channel] = []
  for v in values:
    ch = _enum(Channel, v, field_name=field_name)
    if ch not in out:
      out.append(ch)
  return tuple(out)


def _conditions(values: Any) -> tuple[dict[str, Any], ...]:
  if values is None:
    return ()
  if not isinstance(values, (list, tuple)) or not all(isinstance(c, dict) for c in values):
    raise RoutingConfigError("conditions must be a list of objects")
  for idx, c in enumerate(values):
    if not isinstance(c.get("field"), str) or not c["field"].strip():
      raise RoutingConfigError(f"conditions[{idx}].field is required")
    if c.get("operator") not in CONDITION_OPERATORS:
      raise RoutingConfigError(f"conditions[{idx}].operator: invalid value {c.get('operator')!r}")
    if c.get("logical_operator") not in (None, *CONDITION_JOINERS):
      raise RoutingConfigError(f"conditions[{idx}].logical_operator: invalid value {c.get('logical_operator')!r}")
  return tuple(dict(c) for c in values)


def build_rule(
  *,
  id: str,
  name: str,
  category: Any,
  priority: Any,
  routing_context: Any,
  organization_id: str | None = None,
  priority_mode: Any = PriorityMode.EXACT,
  primary_channels: Any = ("push",),
  fallback_channels: Any = ("email",),
  immediate_delivery: bool = False,
  respect_dnd: bool = True,
  business_hours_only: bool = False,
  dnd_override_channels: Any = (),
  escalation_enabled: bool = False,
  escalation_delay_minutes: int = 15,
  escalation_trigger: Any = EscalationTrigger.UNREAD,
  escalation_channels: Any = ("email",),
  escalation_recipients: Any = (),
  rule_priority: int = 100,
  conditions: Any = (),
  is_active: bool = True,
  created_at: datetime | None = None,
) -> RoutingRule:
  """Validate raw rule fields into a RoutingRule; raises RoutingConfigError."""
  if not (name or "").strip():
    raise RoutingConfigError("rule name is required")
  primary = _channels(primary_channels, field_name="primaryChannels")
  if not primary:
    raise RoutingConfigError("primaryChannels must not be empty")
  delay = int(escalation_delay_minutes)
  if not (MIN_ESCALATION_DELAY_MINUTES <= delay <= MAX_ESCALATION_DELAY_MINUTES):
    raise RoutingConfigError(f"escalationDelayMinutes must be within {MIN_ESCALATION_DELAY_MINUTES}..{MAX_ESCALATION_DELAY_MINUTES}")
  rank = int(rule_priority)
  if not (MIN_RULE_PRIORITY <= rank <= MAX_RULE_PRIORITY):
    raise RoutingConfigError(f"rulePriority must be within {MIN_RULE_PRIORITY}..{MAX_RULE_PRIORITY}")
  esc_channels = _channels(escalation_channels, field_name="escalationChannels")
  if escalation_enabled and not esc_channels:
    raise RoutingConfigError("escalationChannels are required when escalation is enabled")
  checked = _conditions(conditions)
  recipients = tuple(str(r).strip() for r in (escalation_recipients or ()) if str(r).strip())

  return RoutingRule(
    id=str(id),
    name=name.strip(),
    organization_id=organization_id or None,
    category=_enum(Category, category, field_name="category"),
    priority=_enum(Priority, priority, field_name="priority"),
    priority_mode=_enum(PriorityMode, priority_mode or PriorityMode.EXACT, field_name="priorityMode"),
    context=_enum(RoutingContext, routing_context, field_name="routingContext"),
    primary_channels=primary,
    fallback_channels=_channels(fallback_channels, field_name="fallbackChannels"),
    immediate_delivery=bool(immediate_delivery),
    respect_dnd=bool(respect_dnd),
    business_hours_only=bool(business_hours_only),
    dnd_override_channels=_channels(dnd_override_channels, field_name="dndOverrideChannels"),
    escalation=EscalationPolicy(
      enabled=bool(escalation_enabled),
      delay_minutes=delay,
      trigger=_enum(EscalationTrigger, escalation_trigger, field_name="escalationTrigger"),
      channels=esc_channels,
      recipients=recipients,
    ),
    rule_priority=rank,
    conditions=checked,
    is_active=bool(is_active),
    created_at=created_at,
  )


def rule_from_row(row: RoutingRuleRow) -> RoutingRule:
  return build_rule(
    id=row.id,
    name=row.name,
    organization_id=row.organization_id,
    category=row.category,
    priority=row.priority,
    priority_mode=row.priority_mode,
    routing_context=row.routing_context,
    primary_channels=row.primary_channels,
    fallback_channels=row.fallback_channels,
    immediate_delivery=row.immediate_delivery,
    respect_dnd=row.respect_dnd,
    business_hours_only=row.business_hours_only,
    dnd_override_channels=row.dnd_override_channels,
    escalation_enabled=row.escalation_enabled,
    escalation_delay_minutes=row.escalation_delay_minutes,
    escalation_trigger=row.escalation_trigger,
    escalation_channels=row.escalation_channels,
    escalation_recipients=row.escalation_recipients,
    rule_priority=row.rule_priority,
    conditions=row.conditions,
    is_active=row.is_active,
    created_at=row.created_at,
  )


class RoutingRuleStore:
  """
  Read side of the routing rules table.

  Active rules are loaded per organization (global rules included) and kept
  in a short TTL cache; rule edits become visible within the TTL.
  """

  def __init__(self, ttl_seconds: float | None = None, maxsize: int = 1024) -> None:
    ttl = settings.rule_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
    self._cache: TTLCache[str, tuple[RoutingRule, ...]] = TTLCache(maxsize=maxsize, ttl=max(0.001, float(ttl)))

  def invalidate(self) -> None:
    self._cache.clear()

  async def active_rules(self, db: AsyncSession, *, organization_id: str | None) -> tuple[RoutingRule, ...]:
    key = organization_id or ""
    cached = self._cache.get(key)
    if cached is not None:
      return cached

    scope = RoutingRuleRow.organization_id.is_(None)
    if organization_id:
      scope = or_(scope, RoutingRuleRow.organization_id == organization_id)
    res = await db.execute(
      select(RoutingRuleRow)
      .where(RoutingRuleRow.is_active.is_(True), scope)
      .order_by(RoutingRuleRow.created_at.asc(), RoutingRuleRow.id.asc())
    )
    rules: list[RoutingRule] = []
    for row in res.scalars().all():
      try:
        rules.append(rule_from_row(row))
      except (RoutingConfigError, TypeError, ValueError) as e:
        logger.error("Skipping malformed routing rule %s: %s", row.id, e)
    loaded = tuple(rules)
    self._cache[key] = loaded
    return loaded

  async def record_usage(self, db: AsyncSession, *, rule_ids: list[str], now: datetime) -> None:
    if not rule_ids:
      return
    await db.execute(
      update(RoutingRuleRow)
      .where(RoutingRuleRow.id.in_(rule_ids))
      .values(usage_count=RoutingRuleRow.usage_count + 1, last_used=now)
      .execution_options(synchronize_session=False)
    )


DEFAULT_RULES: list[dict[str, Any]] = [
  {
    "name": "Emergency Board Alert",
    "description": "Critical emergency notifications for board members",
    "category": "emergency",
    "priority": "critical",
    "routing_context": "emergency",
    "primary_channels": ["push", "sms"],
    "fallback_channels": ["email"],
    "immediate_delivery": True,
    "respect_dnd": False,
    "escalation_enabled": True,
    "escalation_delay_minutes": 5,
    "escalation_channels": ["sms", "email"],
  },
  {
    "name": "Urgent Voting Alert",
    "description": "Time-sensitive voting notifications",
    "category": "voting",
    "priority": "high",
    "routing_context": "voting",
    "primary_channels": ["push", "in_app"],
    "fallback_channels": ["email"],
    "immediate_delivery": True,
    "respect_dnd": False,
    "escalation_enabled": True,
    "escalation_delay_minutes": 15,
    "escalation_channels": ["email"],
  },
  {
    "name": "Compliance Alert",
    "description": "Regulatory compliance notifications",
    "category": "compliance",
    "priority": "high",
    "routing_context": "compliance",
    "primary_channels": ["push", "email"],
    "fallback_channels": ["in_app"],
    "immediate_delivery": False,
    "respect_dnd": True,
    "escalation_enabled": True,
    "escalation_delay_minutes": 30,
    "escalation_channels": ["email"],
  },
  {
    "name": "Meeting Alert",
    "description": "Meeting-related notifications",
    "category": "meeting",
    "priority": "medium",
    "routing_context": "meeting",
    "primary_channels": ["push", "in_app"],
    "fallback_channels": ["email"],
    "immediate_delivery": False,
    "respect_dnd": True,
    "escalation_enabled": False,
    "escalation_delay_minutes": 60,
    "escalation_channels": [],
  },
  {
    "name": "Governance Update",
    "description": "General governance notifications",
    "category": "governance",
    "priority": "low",
    "routing_context": "governance",
    "primary_channels": ["in_app"],
    "fallback_channels": ["email"],
    "immediate_delivery": False,
    "respect_dnd": True,
    "escalation_enabled": False,
    "escalation_delay_minutes": 240,
    "escalation_channels": [],
  },
  {
    "name": "Security Alert",
    "description": "Security incident notifications",
    "category": "security",
    "priority": "critical",
    "routing_context": "emergency",
    "primary_channels": ["push", "sms", "email"],
    "fallback_channels": ["in_app"],
    "immediate_delivery": True,
    "respect_dnd": False,
    "escalation_enabled": True,
    "escalation_delay_minutes": 2,
    "escalation_channels": ["sms", "email"],
  },
]


async def seed_default_rules(db: AsyncSession) -> int:
  """Insert the global default rules that are missing (matched by name)."""
  res = await db.execute(select(RoutingRuleRow.name).where(RoutingRuleRow.organization_id.is_(None)))
  existing = set(res.scalars().all())
  added = 0
  for spec in DEFAULT_RULES:
    if spec["name"] in existing:
      continue
    build_rule(id="seed", **{k: v for k, v in spec.items() if k != "description"})
    db.add(RoutingRuleRow(**spec))
    added += 1
  if added:
    logger.info("Seeded %d default routing rules", added)
  return added


rule_store = RoutingRuleStore()
