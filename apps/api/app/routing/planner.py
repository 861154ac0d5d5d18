from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from app.routing.matcher import EffectiveRules, effective_rules
from app.routing.profiles import RoutingProfile, TimeWindow, minute_of_day
from app.routing.types import (
  NO_DELIVERABLE_ENDPOINT,
  Category,
  Channel,
  DeliveryPlan,
  Device,
  EscalationPolicy,
  Notification,
  PlannedAttempt,
  Priority,
  RoutingContext,
  RoutingRule,
  TimingPolicy,
)

NO_ELIGIBLE_CHANNEL = "no_eligible_channel"
DEFERRED_DND = "dnd"
DEFERRED_DEVICE_DND = "device_dnd"
DEFERRED_BUSINESS_HOURS = "business_hours"
DEFERRED_AGGREGATION = "aggregation"
DEFERRED_RATE_CAP = "rate_cap"


def active_devices(devices: list[Device], *, now: datetime, active_days: int) -> list[Device]:
  cutoff = now - timedelta(days=active_days)
  live = [d for d in devices if d.last_active >= cutoff]
  return sorted(live, key=lambda d: (-d.last_active.timestamp(), d.id))


def aggregation_boundary(now: datetime, window_minutes: int) -> datetime:
  """Next multiple of the aggregation window (UTC), or now when the window is 0."""
  if window_minutes <= 0:
    return now
  step = window_minutes * 60
  ts = now.timestamp()
  boundary = -(-int(ts) // step) * step
  if boundary <= ts:
    return now
  return datetime.fromtimestamp(boundary, tz=timezone.utc)


@dataclass(frozen=True)
class _Target:
  channel: Channel
  address: str
  device: Device | None = None


def channel_targets(channel: Channel, *, notification: Notification, profile: RoutingProfile, devices: list[Device]) -> list[_Target]:
  if channel is Channel.PUSH:
    return [_Target(channel, d.token, d) for d in devices if d.accepts(notification.category)]
  if channel is Channel.IN_APP:
    return [_Target(channel, f"inapp:{notification.recipient_id}")] if devices else []
  if channel is Channel.EMAIL:
    return [_Target(channel, profile.email)] if profile.email else []
  if channel is Channel.SMS:
    return [_Target(channel, profile.phone)] if profile.phone else []
  if channel is Channel.WEBHOOK:
    return [_Target(channel, profile.webhook_url)] if profile.webhook_url else []
  return []


class DeliveryPlanner:
  """
  Turns matched rules, a recipient profile and the recipient's devices into
  a DeliveryPlan. Pure: no I/O, no mutation of its inputs. Rate capping is
  applied afterwards with apply_rate_cap, once the shared counter answered.
  """

  def __init__(self, *, device_active_days: int = 30) -> None:
    self.device_active_days = device_active_days

  def plan(
    self,
    notification: Notification,
    *,
    matched: list[RoutingRule],
    profile: RoutingProfile,
    devices: list[Device],
    now: datetime,
  ) -> DeliveryPlan:
    live = active_devices(devices, now=now, active_days=self.device_active_days)
    eff = effective_rules(matched)
    lead = eff.lead
    local = profile.local(now)
    factors: dict[str, Any] = {
      "profileSource": profile.source,
      "timezone": profile.timezone,
      "localTime": local.isoformat(),
      "devices": _platform_counts(live),
    }

    enabled = profile.enabled_channels()
    if eff.tier:
      candidates = self._rule_candidates(eff, profile, enabled)
      immediate = bool(lead.immediate_delivery) if lead else False
      timing = TimingPolicy(
        respect_dnd=bool(lead.respect_dnd) if lead else True,
        business_hours_only=bool(lead.business_hours_only) if lead else False,
        dnd_override_channels=tuple(lead.dnd_override_channels) if lead else (),
      )
    else:
      preferred = [c for c in profile.category(notification.category).preferred_channels if c in enabled]
      candidates = preferred or list(enabled)
      immediate = profile.context(notification.context).immediate_alerts
      timing = TimingPolicy()
    factors["candidateChannels"] = [c.value for c in candidates]
    factors["immediate"] = immediate

    window = profile.context(notification.context).aggregation_window_minutes
    base_time = now if immediate else aggregation_boundary(now, window)
    if base_time > now:
      factors["aggregationWindowMinutes"] = window

    gate = _TemporalGate(
      notification=notification,
      profile=profile,
      now=now,
      timing=timing,
      base_time=base_time,
      base_reason=DEFERRED_AGGREGATION if base_time > now else None,
    )
    factors.update(gate.describe())

    unavailable: list[str] = []
    attempts = self._attempts(candidates, notification, profile, live, gate, fallback=False, unavailable=unavailable)
    fallback_used = None

    if not attempts:
      rule_fallback = [c for c in eff.fallback_channels if c in enabled]
      attempts = self._attempts(rule_fallback, notification, profile, live, gate, fallback=False, unavailable=unavailable)
      if attempts:
        fallback_used = "rule_fallback"
    if not attempts:
      lowest = _lowest_priority_with_target(enabled, notification, profile, live)
      if lowest is not None:
        attempts = self._attempts([lowest], notification, profile, live, gate, fallback=False, unavailable=unavailable)
        fallback_used = "profile_lowest_priority"
    if not attempts and notification.priority.rank >= Priority.HIGH.rank:
      # Guarantee for high/critical: any channel that can physically reach the recipient.
      ordered = sorted(Channel, key=profile.channel_rank)
      attempts = self._attempts(ordered, notification, profile, live, gate, fallback=False, unavailable=[])
      if attempts:
        fallback_used = "any_reachable_channel"
    elif attempts and eff.tier:
      used = {a.channel for a in attempts}
      extra = [c for c in eff.fallback_channels if c in enabled and c not in used]
      attempts += self._attempts(extra, notification, profile, live, gate, fallback=True, unavailable=unavailable)

    if fallback_used:
      factors["fallbackUsed"] = fallback_used
    if unavailable:
      factors["unavailableChannels"] = sorted(set(unavailable))

    esc_rule = None if notification.escalation_depth > 0 else eff.escalation_rule
    escalation = None
    if esc_rule is not None:
      escalation = _with_profile_threshold(esc_rule.escalation, profile, notification.category)
    elif notification.escalation_depth == 0:
      escalation = _manager_escalation(profile, notification.category)

    if not attempts:
      reachable = bool(live) or bool(profile.email or profile.phone or profile.webhook_url)
      reason = NO_ELIGIBLE_CHANNEL if reachable else NO_DELIVERABLE_ENDPOINT
      return DeliveryPlan(
        notification_id=notification.id,
        should_deliver=False,
        reason=reason,
        matched_rule_ids=tuple(r.id for r in eff.matched),
        effective_rule_ids=tuple(r.id for r in eff.tier),
        factors=factors,
        timing=timing,
      )

    return DeliveryPlan(
      notification_id=notification.id,
      should_deliver=True,
      attempts=tuple(attempts),
      matched_rule_ids=tuple(r.id for r in eff.matched),
      effective_rule_ids=tuple(r.id for r in eff.tier),
      escalation=escalation,
      escalation_rule_id=esc_rule.id if esc_rule is not None else None,
      factors=factors,
      timing=timing,
    )

  def plan_escalation(
    self,
    notification: Notification,
    *,
    channels: tuple[Channel, ...],
    profile: RoutingProfile,
    devices: list[Device],
    now: datetime,
  ) -> DeliveryPlan:
    """Escalation plans bypass DND, business hours and rate caps and never escalate again."""
    live = active_devices(devices, now=now, active_days=self.device_active_days)
    attempts: list[PlannedAttempt] = []
    for ch in channels:
      for t in channel_targets(ch, notification=notification, profile=profile, devices=live):
        attempts.append(PlannedAttempt(channel=ch, target=t.address, scheduled_at=now, device_id=t.device.id if t.device else None))
    factors: dict[str, Any] = {"escalation": True, "requestedChannels": [c.value for c in channels], "devices": _platform_counts(live)}
    if not attempts:
      for ch in profile.enabled_channels():
        targets = channel_targets(ch, notification=notification, profile=profile, devices=live)
        if targets:
          factors["fallbackUsed"] = ch.value
          attempts = [PlannedAttempt(channel=ch, target=t.address, scheduled_at=now, device_id=t.device.id if t.device else None) for t in targets]
          break
    if not attempts:
      return DeliveryPlan(notification_id=notification.id, should_deliver=False, reason=NO_DELIVERABLE_ENDPOINT, factors=factors)
    return DeliveryPlan(notification_id=notification.id, should_deliver=True, attempts=tuple(attempts), factors=factors)

  def safe_plan(self, notification: Notification, *, profile: RoutingProfile, devices: list[Device], now: datetime) -> DeliveryPlan:
    """Last-resort plan when planning inputs are unusable: every enabled reachable channel, now."""
    live = active_devices(devices, now=now, active_days=self.device_active_days)
    attempts: list[PlannedAttempt] = []
    for ch in profile.enabled_channels():
      for t in channel_targets(ch, notification=notification, profile=profile, devices=live):
        attempts.append(PlannedAttempt(channel=ch, target=t.address, scheduled_at=now, device_id=t.device.id if t.device else None))
    if not attempts:
      return DeliveryPlan(notification_id=notification.id, should_deliver=False, reason=NO_DELIVERABLE_ENDPOINT, factors={"safeDefault": True})
    return DeliveryPlan(notification_id=notification.id, should_deliver=True, attempts=tuple(attempts), factors={"safeDefault": True})

  def _rule_candidates(self, eff: EffectiveRules, profile: RoutingProfile, enabled: list[Channel]) -> list[Channel]:
    positions: dict[Channel, int] = {}
    for rule in eff.tier:
      for idx, ch in enumerate(rule.primary_channels):
        positions[ch] = min(idx, positions.get(ch, idx))
    chosen = [c for c in positions if c in enabled]
    return sorted(chosen, key=lambda c: (positions[c], profile.channel_rank(c)))

  def _attempts(
    self,
    channels: list[Channel],
    notification: Notification,
    profile: RoutingProfile,
    devices: list[Device],
    gate: _TemporalGate,
    *,
    fallback: bool,
    unavailable: list[str],
  ) -> list[PlannedAttempt]:
    out: list[PlannedAttempt] = []
    for ch in channels:
      targets = channel_targets(ch, notification=notification, profile=profile, devices=devices)
      if not targets:
        unavailable.append(ch.value)
        continue
      for t in targets:
        when, reason = gate.schedule(ch, t.device)
        out.append(
          PlannedAttempt(
            channel=ch,
            target=t.address,
            scheduled_at=when,
            fallback=fallback,
            device_id=t.device.id if t.device else None,
            deferred_reason=reason,
          )
        )
    return out


class _TemporalGate:
  """
  Moves an attempt forward until it lands outside every quiet period that
  applies to it: profile DND, device DND and, for business-hours rules,
  closed hours. Each check runs against the candidate time itself, so a
  deferral that lands inside another window keeps moving.
  """

  max_steps = 16

  def __init__(
    self,
    *,
    notification: Notification,
    profile: RoutingProfile,
    now: datetime,
    timing: TimingPolicy,
    base_time: datetime,
    base_reason: str | None = None,
  ) -> None:
    self.notification = notification
    self.profile = profile
    self.now = now
    self.timing = timing
    self.base_time = base_time
    self.base_reason = base_reason
    local = profile.local(now)
    self.dnd_window: TimeWindow | None = profile.active_dnd_window(local) if timing.respect_dnd else None
    self.dnd_until = self.dnd_window.end_after(local).astimezone(timezone.utc) if self.dnd_window else None
    self.closed_until: datetime | None = None
    if timing.business_hours_only and not profile.in_business_hours(local):
      self.closed_until = profile.next_business_start(local).astimezone(timezone.utc)

  def describe(self) -> dict[str, Any]:
    out: dict[str, Any] = {"dndActive": self.dnd_window is not None}
    if self.dnd_until:
      out["dndUntil"] = self.dnd_until.isoformat()
    if self.timing.business_hours_only:
      out["businessHoursOnly"] = True
      out["outsideBusinessHours"] = self.closed_until is not None
      if self.closed_until:
        out["businessHoursResume"] = self.closed_until.isoformat()
    return out

  def _may_override(self, channel: Channel, device: Device | None) -> bool:
    if self.notification.priority is not Priority.CRITICAL:
      return False
    if channel not in self.timing.dnd_override_channels:
      return False
    if not self.profile.channel(channel).dnd_override_allowed:
      return False
    if device is not None and not device.allow_critical_override:
      return False
    return True

  def _blocked_until(self, when: datetime, device: Device | None) -> tuple[datetime, str] | None:
    local = self.profile.local(when)
    if self.timing.respect_dnd:
      window = self.profile.active_dnd_window(local)
      if window is not None:
        return window.end_after(local).astimezone(timezone.utc), DEFERRED_DND
      device_window = TimeWindow.parse(device.dnd_start, device.dnd_end) if device is not None else None
      if device_window is not None and device_window.contains(minute_of_day(local)):
        return device_window.end_after(local).astimezone(timezone.utc), DEFERRED_DEVICE_DND
    if self.timing.business_hours_only and not self.profile.in_business_hours(local):
      return self.profile.next_business_start(local).astimezone(timezone.utc), DEFERRED_BUSINESS_HOURS
    return None

  def schedule(self, channel: Channel, device: Device | None) -> tuple[datetime, str | None]:
    when, reason = self.base_time, self.base_reason
    if self._may_override(channel, device):
      return when, reason
    for _ in range(self.max_steps):
      blocked = self._blocked_until(when, device)
      if blocked is None or blocked[0] <= when:
        break
      when, reason = blocked
    return when, reason


def _platform_counts(devices: list[Device]) -> dict[str, int]:
  out: dict[str, int] = {}
  for d in devices:
    out[d.platform.value] = out.get(d.platform.value, 0) + 1
  return out


def _lowest_priority_with_target(
  enabled: list[Channel], notification: Notification, profile: RoutingProfile, devices: list[Device]
) -> Channel | None:
  for ch in reversed(enabled):
    if channel_targets(ch, notification=notification, profile=profile, devices=devices):
      return ch
  return None


def _with_profile_threshold(policy: EscalationPolicy, profile: RoutingProfile, category: Category) -> EscalationPolicy:
  threshold = profile.category(category).escalation_threshold_minutes
  if threshold is None:
    return policy
  return replace(policy, delay_minutes=int(threshold))


def rate_capped(context: RoutingContext) -> bool:
  return context is not RoutingContext.EMERGENCY


def apply_rate_cap(
  plan: DeliveryPlan,
  *,
  window_end: datetime,
  notification: Notification,
  profile: RoutingProfile,
  devices: list[Device] | None = None,
) -> DeliveryPlan:
  """
  Queue every attempt of an over-cap plan until the hour bucket rolls over.
  Queued attempts go back through the plan's quiet-hours gate, so the new
  slot never falls inside DND or closed business hours.
  """
  by_id = {d.id: d for d in devices or []}
  gate = _TemporalGate(
    notification=notification,
    profile=profile,
    now=window_end,
    timing=plan.timing,
    base_time=window_end,
    base_reason=DEFERRED_RATE_CAP,
  )
  attempts: list[PlannedAttempt] = []
  for a in plan.attempts:
    if a.scheduled_at >= window_end:
      attempts.append(a)
      continue
    when, reason = gate.schedule(a.channel, by_id.get(a.device_id) if a.device_id else None)
    attempts.append(replace(a, scheduled_at=when, deferred_reason=reason))
  factors = dict(plan.factors)
  factors["rateLimitedUntil"] = window_end.isoformat()
  return replace(plan, attempts=tuple(attempts), rate_limited=True, factors=factors)


def _manager_escalation(profile: RoutingProfile, category: Category) -> EscalationPolicy | None:
  routing = profile.category(category)
  if not routing.auto_escalate_to_manager or routing.escalation_threshold_minutes is None:
    return None
  return EscalationPolicy(
    enabled=True,
    delay_minutes=int(routing.escalation_threshold_minutes),
    channels=(Channel.PUSH, Channel.EMAIL),
  )
