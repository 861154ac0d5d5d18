from __future__ import annotations

from datetime import timedelta

from app.routing.planner import (
  DEFERRED_AGGREGATION,
  DEFERRED_BUSINESS_HOURS,
  DEFERRED_DEVICE_DND,
  DEFERRED_DND,
  DEFERRED_RATE_CAP,
  DeliveryPlanner,
  aggregation_boundary,
  apply_rate_cap,
)
from app.routing.profiles import build_profile, default_profile
from app.routing.rules import build_rule
from app.routing.types import (
  NO_DELIVERABLE_ENDPOINT,
  Category,
  Channel,
  Device,
  Notification,
  Platform,
  Priority,
  RoutingContext,
)
from conftest import utc

# 2026-03-10 23:00 in New York (EDT, UTC-4)
LATE_NIGHT = utc(2026, 3, 11, 3, 0)


def _notification(priority: str = "critical", category: str = "emergency", context: str = "emergency", **fields) -> Notification:
  return Notification(
    id="n-1",
    organization_id=None,
    recipient_id="alice",
    category=Category(category),
    priority=Priority(priority),
    context=RoutingContext(context),
    created_at=LATE_NIGHT,
    **fields,
  )


def _profile(**fields):
  values = dict(
    user_id="alice",
    organization_id=None,
    timezone="America/New_York",
    business_hours_start="09:00",
    business_hours_end="17:00",
    business_days=None,
    dnd_windows=[{"start": "22:00", "end": "07:00"}],
    channel_preferences=None,
    category_routing=None,
    context_settings=None,
    email="alice@example.org",
  )
  values.update(fields)
  return build_profile(**values)


def _device(**fields) -> Device:
  values = dict(id="dev-1", user_id="alice", platform=Platform.IOS, token="apns-token", last_active=LATE_NIGHT - timedelta(days=1))
  values.update(fields)
  return Device(**values)


def _rule(**fields):
  values = dict(
    id="r-emergency",
    name="Emergency",
    category="emergency",
    priority="critical",
    routing_context="emergency",
    primary_channels=["push"],
    fallback_channels=["email"],
    immediate_delivery=True,
    respect_dnd=True,
    dnd_override_channels=["push"],
  )
  values.update(fields)
  return build_rule(**values)


def test_critical_push_overrides_quiet_hours_at_23_local() -> None:
  plan = DeliveryPlanner().plan(_notification(), matched=[_rule()], profile=_profile(), devices=[_device()], now=LATE_NIGHT)

  assert plan.should_deliver
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert len(push) == 1
  assert push[0].scheduled_at == LATE_NIGHT
  assert push[0].deferred_reason is None
  assert push[0].target == "apns-token"
  assert plan.factors["dndActive"] is True

  # email is not override-allowed, so it waits for 07:00 local
  email = [a for a in plan.attempts if a.channel is Channel.EMAIL]
  assert email and email[0].fallback is True
  assert email[0].scheduled_at == utc(2026, 3, 11, 11, 0)
  assert email[0].deferred_reason == DEFERRED_DND


def test_high_priority_waits_for_quiet_hours_to_end() -> None:
  plan = DeliveryPlanner().plan(
    _notification(priority="high"),
    matched=[_rule(priority="high")],
    profile=_profile(),
    devices=[_device()],
    now=LATE_NIGHT,
  )
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert push[0].scheduled_at == utc(2026, 3, 11, 11, 0)
  assert push[0].deferred_reason == DEFERRED_DND


def test_device_that_refuses_critical_override_is_deferred() -> None:
  plan = DeliveryPlanner().plan(
    _notification(),
    matched=[_rule()],
    profile=_profile(),
    devices=[_device(allow_critical_override=False)],
    now=LATE_NIGHT,
  )
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert push[0].deferred_reason == DEFERRED_DND


def test_profile_can_forbid_override_on_a_channel() -> None:
  profile = _profile(channel_preferences={"push": {"dnd_override_allowed": False}})
  plan = DeliveryPlanner().plan(_notification(), matched=[_rule()], profile=profile, devices=[_device()], now=LATE_NIGHT)
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert push[0].deferred_reason == DEFERRED_DND


def test_inactive_devices_are_excluded() -> None:
  stale = _device(last_active=LATE_NIGHT - timedelta(days=31))
  plan = DeliveryPlanner().plan(_notification(), matched=[_rule()], profile=_profile(dnd_windows=[]), devices=[stale], now=LATE_NIGHT)
  assert all(a.channel is not Channel.PUSH for a in plan.attempts)
  assert plan.should_deliver
  assert "push" in plan.factors["unavailableChannels"]


def test_critical_without_profile_or_rules_still_reaches_the_device() -> None:
  plan = DeliveryPlanner().plan(
    _notification(category="security"),
    matched=[],
    profile=default_profile("alice"),
    devices=[_device()],
    now=LATE_NIGHT,
  )
  assert plan.should_deliver
  assert [a.channel for a in plan.attempts] == [Channel.PUSH]


def test_critical_uses_any_reachable_channel_when_every_preference_is_off() -> None:
  profile = _profile(
    dnd_windows=[],
    email=None,
    channel_preferences={"push": {"enabled": False}, "email": {"enabled": False}, "in_app": {"enabled": False}},
  )
  plan = DeliveryPlanner().plan(_notification(category="security"), matched=[], profile=profile, devices=[_device()], now=LATE_NIGHT)
  assert plan.should_deliver
  assert plan.factors["fallbackUsed"] == "any_reachable_channel"
  assert {a.channel for a in plan.attempts} == {Channel.PUSH, Channel.IN_APP}


def test_no_endpoints_yields_no_deliverable_endpoint() -> None:
  plan = DeliveryPlanner().plan(_notification(), matched=[_rule()], profile=default_profile("alice"), devices=[], now=LATE_NIGHT)
  assert plan.should_deliver is False
  assert plan.reason == NO_DELIVERABLE_ENDPOINT
  assert plan.attempts == ()


def test_low_priority_without_eligible_channel_is_a_valid_empty_plan() -> None:
  profile = _profile(channel_preferences={"push": {"enabled": False}, "email": {"enabled": False}, "in_app": {"enabled": False}})
  plan = DeliveryPlanner().plan(
    _notification(priority="low", category="meeting", context="meeting"),
    matched=[],
    profile=profile,
    devices=[_device()],
    now=LATE_NIGHT,
  )
  assert plan.should_deliver is False
  assert plan.reason is not None


def test_business_hours_only_rule_waits_for_next_business_morning() -> None:
  rule = _rule(priority="high", business_hours_only=True, respect_dnd=False, dnd_override_channels=[])
  plan = DeliveryPlanner().plan(
    _notification(priority="high"),
    matched=[rule],
    profile=_profile(dnd_windows=[]),
    devices=[_device()],
    now=LATE_NIGHT,
  )
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  # Wednesday 09:00 EDT
  assert push[0].scheduled_at == utc(2026, 3, 11, 13, 0)
  assert push[0].deferred_reason == DEFERRED_BUSINESS_HOURS


def test_non_immediate_rule_aligns_to_aggregation_window() -> None:
  now = utc(2026, 3, 11, 15, 7)
  rule = _rule(category="meeting", priority="medium", routing_context="meeting", immediate_delivery=False)
  plan = DeliveryPlanner().plan(
    _notification(priority="medium", category="meeting", context="meeting"),
    matched=[rule],
    profile=_profile(dnd_windows=[]),
    devices=[_device()],
    now=now,
  )
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert push[0].scheduled_at == utc(2026, 3, 11, 15, 10)
  assert push[0].deferred_reason == DEFERRED_AGGREGATION
  assert aggregation_boundary(utc(2026, 3, 11, 15, 10), 5) == utc(2026, 3, 11, 15, 10)


def test_rule_escalation_picks_up_profile_threshold() -> None:
  rule = _rule(escalation_enabled=True, escalation_delay_minutes=15)
  profile = _profile(category_routing={"emergency": {"escalation_threshold_minutes": 7}})
  plan = DeliveryPlanner().plan(_notification(), matched=[rule], profile=profile, devices=[_device()], now=LATE_NIGHT)
  assert plan.escalation is not None
  assert plan.escalation.delay_minutes == 7
  assert plan.escalation_rule_id == "r-emergency"


def test_escalated_notifications_never_carry_an_escalation() -> None:
  rule = _rule(escalation_enabled=True)
  plan = DeliveryPlanner().plan(
    _notification(escalation_depth=1), matched=[rule], profile=_profile(), devices=[_device()], now=LATE_NIGHT
  )
  assert plan.escalation is None


def test_planning_is_deterministic_and_leaves_inputs_alone() -> None:
  rule = _rule(escalation_enabled=True)
  profile = _profile()
  devices = [_device(), _device(id="dev-2", token="fcm-token", platform=Platform.ANDROID, last_active=LATE_NIGHT - timedelta(hours=1))]
  planner = DeliveryPlanner()
  first = planner.plan(_notification(), matched=[rule], profile=profile, devices=devices, now=LATE_NIGHT)
  second = planner.plan(_notification(), matched=[rule], profile=profile, devices=devices, now=LATE_NIGHT)
  assert first == second
  # most recently active device first
  assert [a.device_id for a in first.attempts if a.channel is Channel.PUSH] == ["dev-2", "dev-1"]
  assert devices[0].id == "dev-1"


def test_rate_cap_queues_attempts_until_the_hour_rolls_over() -> None:
  plan = DeliveryPlanner().plan(_notification(), matched=[_rule()], profile=_profile(dnd_windows=[]), devices=[_device()], now=LATE_NIGHT)
  capped = apply_rate_cap(
    plan, window_end=utc(2026, 3, 11, 4, 0), notification=_notification(), profile=_profile(dnd_windows=[]), devices=[_device()]
  )
  assert capped.rate_limited
  assert all(a.scheduled_at >= utc(2026, 3, 11, 4, 0) for a in capped.attempts)
  assert all(a.deferred_reason == DEFERRED_RATE_CAP for a in capped.attempts)
  assert len(capped.attempts) == len(plan.attempts)


def test_escalation_plan_bypasses_quiet_hours() -> None:
  plan = DeliveryPlanner().plan_escalation(
    _notification(escalation_depth=1),
    channels=(Channel.EMAIL,),
    profile=_profile(),
    devices=[],
    now=LATE_NIGHT,
  )
  assert plan.should_deliver
  assert [(a.channel, a.scheduled_at) for a in plan.attempts] == [(Channel.EMAIL, LATE_NIGHT)]


def test_aggregation_slot_inside_quiet_hours_moves_to_quiet_hours_end() -> None:
  # 21:30 UTC, the hourly governance digest slot is 22:00, which is already quiet time
  now = utc(2026, 3, 10, 21, 30)
  rule = _rule(
    id="r-digest",
    category="governance",
    priority="low",
    routing_context="governance",
    primary_channels=["in_app"],
    immediate_delivery=False,
    dnd_override_channels=[],
  )
  plan = DeliveryPlanner().plan(
    _notification(priority="low", category="governance", context="governance"),
    matched=[rule],
    profile=_profile(timezone="UTC"),
    devices=[_device(last_active=now)],
    now=now,
  )
  assert plan.factors["dndActive"] is False
  in_app = [a for a in plan.attempts if a.channel is Channel.IN_APP]
  assert in_app[0].scheduled_at == utc(2026, 3, 11, 7, 0)
  assert in_app[0].deferred_reason == DEFERRED_DND


def test_device_quiet_hours_apply_at_the_deferred_time() -> None:
  now = utc(2026, 3, 10, 21, 30)
  rule = _rule(id="r-digest", category="governance", priority="low", routing_context="governance", immediate_delivery=False, dnd_override_channels=[])
  device = _device(last_active=now, dnd_start="21:45", dnd_end="06:30")
  plan = DeliveryPlanner().plan(
    _notification(priority="low", category="governance", context="governance"),
    matched=[rule],
    profile=_profile(timezone="UTC", dnd_windows=[]),
    devices=[device],
    now=now,
  )
  push = [a for a in plan.attempts if a.channel is Channel.PUSH]
  assert push[0].scheduled_at == utc(2026, 3, 11, 6, 30)
  assert push[0].deferred_reason == DEFERRED_DEVICE_DND


def test_rate_capped_attempts_do_not_land_inside_quiet_hours() -> None:
  now = utc(2026, 3, 10, 21, 10)
  notification = _notification(priority="medium", category="meeting", context="meeting")
  profile = _profile(timezone="UTC")
  devices = [_device(last_active=now)]
  rule = _rule(id="r-meeting", category="meeting", priority="medium", routing_context="meeting", dnd_override_channels=[])
  plan = DeliveryPlanner().plan(notification, matched=[rule], profile=profile, devices=devices, now=now)
  assert [a.scheduled_at for a in plan.attempts if a.channel is Channel.PUSH] == [now]

  capped = apply_rate_cap(plan, window_end=utc(2026, 3, 10, 22, 0), notification=notification, profile=profile, devices=devices)
  push = [a for a in capped.attempts if a.channel is Channel.PUSH]
  assert push[0].scheduled_at == utc(2026, 3, 11, 7, 0)
  assert push[0].deferred_reason == DEFERRED_DND
  assert capped.factors["rateLimitedUntil"] == utc(2026, 3, 10, 22, 0).isoformat()


def test_rate_capped_business_hours_rule_waits_for_the_next_opening() -> None:
  # Friday 16:30 UTC, the cap resets at 17:00 when the office is closed until Monday
  now = utc(2026, 3, 13, 16, 30)
  notification = _notification(priority="medium", category="meeting", context="meeting")
  profile = _profile(timezone="UTC", dnd_windows=[])
  devices = [_device(last_active=now)]
  rule = _rule(
    id="r-office",
    category="meeting",
    priority="medium",
    routing_context="meeting",
    business_hours_only=True,
    dnd_override_channels=[],
  )
  plan = DeliveryPlanner().plan(notification, matched=[rule], profile=profile, devices=devices, now=now)
  capped = apply_rate_cap(plan, window_end=utc(2026, 3, 13, 17, 0), notification=notification, profile=profile, devices=devices)
  assert all(a.scheduled_at == utc(2026, 3, 16, 9, 0) for a in capped.attempts)
  assert all(a.deferred_reason == DEFERRED_BUSINESS_HOURS for a in capped.attempts)
