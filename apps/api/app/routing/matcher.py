from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from app.routing.profiles import RoutingProfile
from app.routing.types import GENERIC_CATEGORY, Category, Channel, Notification, Priority, RoutingContext, RoutingRule

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def rule_order_key(rule: RoutingRule) -> tuple[int, int, datetime, str]:
  # critical-priority rules first, then lower rule_priority, then creation order
  return (-rule.priority.rank, rule.rule_priority, rule.created_at or _EPOCH, rule.id)


def condition_facts(notification: Notification, profile: RoutingProfile | None = None) -> dict[str, Any]:
  """Dotted-path namespace rule conditions are evaluated against."""
  facts: dict[str, Any] = {
    "notification": {
      "id": notification.id,
      "category": notification.category.value,
      "priority": notification.priority.value,
      "organization_id": notification.organization_id,
      "recipient_id": notification.recipient_id,
      "escalation_depth": notification.escalation_depth,
      "data": dict(notification.payload or {}),
    },
    "context": {"routing_context": notification.context.value},
  }
  if profile is not None:
    facts["user"] = {
      "id": profile.user_id,
      "organization_id": profile.organization_id,
      "timezone": profile.timezone,
      "email": profile.email,
      "phone": profile.phone,
      "profile_source": profile.source,
    }
  return facts


def field_value(facts: Mapping[str, Any], path: str) -> Any:
  current: Any = facts
  for key in path.split("."):
    if not isinstance(current, Mapping):
      return None
    current = current.get(key)
  return current


def condition_holds(condition: Mapping[str, Any], facts: Mapping[str, Any]) -> bool:
  operator = condition.get("operator")
  expected = condition.get("value")
  actual = field_value(facts, str(condition.get("field") or ""))
  if operator == "eq":
    return actual == expected
  if operator == "ne":
    return actual != expected
  if operator in ("gt", "lt"):
    try:
      return actual > expected if operator == "gt" else actual < expected
    except TypeError:
      return False
  if operator == "in":
    return isinstance(expected, (list, tuple)) and actual in expected
  if operator == "contains":
    return isinstance(actual, str) and isinstance(expected, str) and expected in actual
  if operator == "starts_with":
    return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
  return False


def conditions_hold(conditions: Iterable[Mapping[str, Any]], facts: Mapping[str, Any]) -> bool:
  """
  Fold conditions left to right. A condition's logical_operator joins it to
  the next one ("and" when absent); an empty list always holds.
  """
  result = True
  joiner = "and"
  for condition in conditions:
    holds = condition_holds(condition, facts)
    result = (result and holds) if joiner == "and" else (result or holds)
    joiner = condition.get("logical_operator") or "and"
  return result


def rule_applies(
  rule: RoutingRule,
  *,
  category: Category,
  priority: Priority,
  organization_id: str | None,
  facts: Mapping[str, Any] | None = None,
) -> bool:
  if not rule.is_active:
    return False
  if rule.organization_id is not None and rule.organization_id != organization_id:
    return False
  if rule.category is not category and rule.category is not GENERIC_CATEGORY:
    return False
  if not rule.matches_priority(priority):
    return False
  return conditions_hold(rule.conditions, facts or {})


def match_rules(
  rules: Iterable[RoutingRule],
  *,
  category: Category,
  priority: Priority,
  organization_id: str | None,
  context: RoutingContext | None = None,
  facts: Mapping[str, Any] | None = None,
) -> list[RoutingRule]:
  """
  Return every applicable rule, ordered for evaluation.

  An empty list is a valid answer; the planner then uses profile defaults.
  The routing context does not narrow the match, it only selects caps and
  aggregation windows downstream. Rules carrying conditions only apply when
  their conditions hold over `facts` (see condition_facts).
  """
  matched = [
    r for r in rules if rule_applies(r, category=category, priority=priority, organization_id=organization_id, facts=facts)
  ]
  return sorted(matched, key=rule_order_key)


@dataclass(frozen=True)
class EffectiveRules:
  matched: tuple[RoutingRule, ...]
  tier: tuple[RoutingRule, ...]

  @property
  def lead(self) -> RoutingRule | None:
    return self.tier[0] if self.tier else None

  @property
  def primary_channels(self) -> list[Channel]:
    return _union(r.primary_channels for r in self.tier)

  @property
  def fallback_channels(self) -> list[Channel]:
    return _union(r.fallback_channels for r in self.tier)

  @property
  def escalation_rule(self) -> RoutingRule | None:
    # first match wins so one notification never schedules two escalations
    for r in self.tier:
      if r.escalation.enabled:
        return r
    return None


def _union(groups: Iterable[Iterable[Channel]]) -> list[Channel]:
  out: list[Channel] = []
  for group in groups:
    for ch in group:
      if ch not in out:
        out.append(ch)
  return out


def effective_rules(matched: list[RoutingRule]) -> EffectiveRules:
  """Rules sharing the top priority rank are merged into one effective set."""
  if not matched:
    return EffectiveRules(matched=(), tier=())
  top = matched[0].priority.rank
  tier = tuple(r for r in matched if r.priority.rank == top)
  return EffectiveRules(matched=tuple(matched), tier=tier)
