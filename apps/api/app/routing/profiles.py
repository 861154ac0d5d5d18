from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.routing.errors import RoutingConfigError
from app.routing.types import Category, Channel, RoutingContext

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_hhmm(value: str | None) -> int | None:
  s = (value or "").strip()
  if not s or len(s) != 5 or s[2] != ":":
    return None
  hh, mm = s[:2], s[3:]
  if not (hh.isdigit() and mm.isdigit()):
    return None
  hhi, mmi = int(hh), int(mm)
  if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
    return None
  return hhi * 60 + mmi


def require_hhmm(value: str | None, *, field_name: str) -> int:
  minute = parse_hhmm(value)
  if minute is None:
    raise RoutingConfigError(f"{field_name} must be HH:MM")
  return minute


@dataclass(frozen=True)
class TimeWindow:
  """Minute-of-day window, wrapping midnight when start > end."""

  start: int
  end: int

  @classmethod
  def parse(cls, start: str | None, end: str | None) -> TimeWindow | None:
    s, e = parse_hhmm(start), parse_hhmm(end)
    if s is None or e is None or s == e:
      return None
    return cls(start=s, end=e)

  def contains(self, minute: int) -> bool:
    if self.start < self.end:
      return self.start <= minute < self.end
    return minute >= self.start or minute < self.end

  def end_after(self, local: datetime) -> datetime:
    """Next local datetime at which this window closes."""
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    candidate = midnight + timedelta(minutes=self.end)
    if candidate <= local:
      candidate += timedelta(days=1)
    return candidate

  def as_dict(self) -> dict[str, str]:
    return {"start": _fmt(self.start), "end": _fmt(self.end)}


def _fmt(minute: int) -> str:
  return f"{minute // 60:02d}:{minute % 60:02d}"


def minute_of_day(local: datetime) -> int:
  return local.hour * 60 + local.minute


@dataclass(frozen=True)
class ChannelPreference:
  enabled: bool = True
  priority: int = 100
  dnd_override_allowed: bool = False


@dataclass(frozen=True)
class CategoryRouting:
  preferred_channels: tuple[Channel, ...] = ()
  escalation_threshold_minutes: int | None = None
  auto_escalate_to_manager: bool = False


@dataclass(frozen=True)
class ContextSettings:
  immediate_alerts: bool = True
  aggregation_window_minutes: int = 0
  max_notifications_per_hour: int = 10


DEFAULT_CHANNELS: dict[Channel, ChannelPreference] = {
  Channel.PUSH: ChannelPreference(enabled=True, priority=1, dnd_override_allowed=True),
  Channel.EMAIL: ChannelPreference(enabled=True, priority=2, dnd_override_allowed=False),
  Channel.SMS: ChannelPreference(enabled=False, priority=3, dnd_override_allowed=True),
  Channel.IN_APP: ChannelPreference(enabled=True, priority=4, dnd_override_allowed=False),
  Channel.WEBHOOK: ChannelPreference(enabled=False, priority=5, dnd_override_allowed=False),
}

DEFAULT_CATEGORIES: dict[Category, CategoryRouting] = {
  Category.EMERGENCY: CategoryRouting((Channel.PUSH, Channel.EMAIL), None, True),
  Category.VOTING: CategoryRouting((Channel.PUSH, Channel.IN_APP), None, False),
  Category.COMPLIANCE: CategoryRouting((Channel.PUSH, Channel.EMAIL), None, True),
  Category.MEETING: CategoryRouting((Channel.PUSH, Channel.IN_APP), None, False),
  Category.GOVERNANCE: CategoryRouting((Channel.IN_APP, Channel.EMAIL), None, False),
  Category.SECURITY: CategoryRouting((Channel.PUSH, Channel.EMAIL, Channel.SMS), None, True),
}

DEFAULT_CONTEXTS: dict[RoutingContext, ContextSettings] = {
  RoutingContext.MEETING: ContextSettings(True, 5, 10),
  RoutingContext.VOTING: ContextSettings(True, 0, 5),
  RoutingContext.COMPLIANCE: ContextSettings(True, 15, 3),
  RoutingContext.EMERGENCY: ContextSettings(True, 0, 50),
  RoutingContext.GOVERNANCE: ContextSettings(False, 60, 10),
}


@dataclass(frozen=True)
class RoutingProfile:
  user_id: str | None
  organization_id: str | None = None
  timezone: str = "UTC"
  business_hours: TimeWindow = TimeWindow(start=9 * 60, end=17 * 60)
  business_days: tuple[str, ...] = WEEKDAYS[:5]
  dnd_windows: tuple[TimeWindow, ...] = ()
  channels: dict[Channel, ChannelPreference] = field(default_factory=lambda: dict(DEFAULT_CHANNELS))
  categories: dict[Category, CategoryRouting] = field(default_factory=lambda: dict(DEFAULT_CATEGORIES))
  contexts: dict[RoutingContext, ContextSettings] = field(default_factory=lambda: dict(DEFAULT_CONTEXTS))
  email: str | None = None
  phone: str | None = None
  webhook_url: str | None = None
  source: str = "global"

  def tzinfo(self) -> ZoneInfo:
    try:
      return ZoneInfo(self.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
      logger.warning("Unknown timezone %r for user %s, using UTC", self.timezone, self.user_id)
      return ZoneInfo("UTC")

  def local(self, now: datetime) -> datetime:
    return now.astimezone(self.tzinfo())

  def channel(self, channel: Channel) -> ChannelPreference:
    return self.channels.get(channel) or DEFAULT_CHANNELS.get(channel) or ChannelPreference(enabled=False)

  def enabled_channels(self) -> list[Channel]:
    enabled = [c for c in Channel if self.channel(c).enabled]
    return sorted(enabled, key=lambda c: self.channel(c).priority)

  def channel_rank(self, channel: Channel) -> int:
    return self.channel(channel).priority

  def category(self, category: Category) -> CategoryRouting:
    return self.categories.get(category) or DEFAULT_CATEGORIES.get(category) or CategoryRouting()

  def context(self, context: RoutingContext) -> ContextSettings:
    return self.contexts.get(context) or DEFAULT_CONTEXTS.get(context) or ContextSettings()

  def active_dnd_window(self, local: datetime) -> TimeWindow | None:
    minute = minute_of_day(local)
    for w in self.dnd_windows:
      if w.contains(minute):
        return w
    return None

  def in_business_hours(self, local: datetime) -> bool:
    if WEEKDAYS[local.weekday()] not in self.business_days:
      return False
    return self.business_hours.contains(minute_of_day(local))

  def next_business_start(self, local: datetime) -> datetime:
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    for offset in range(0, 8):
      day = midnight + timedelta(days=offset)
      if WEEKDAYS[day.weekday()] not in self.business_days:
        continue
      candidate = day + timedelta(minutes=self.business_hours.start)
      if candidate > local:
        return candidate
    # no business days configured
    return local


def default_profile(user_id: str | None, organization_id: str | None = None, *, timezone: str = "UTC") -> RoutingProfile:
  return RoutingProfile(user_id=user_id, organization_id=organization_id, timezone=timezone, source="global")


def _channel_list(values: Any, *, field_name: str) -> tuple[Channel, ...]:
  out: list[Channel] = []
  for v in values or []:
    try:
      ch = Channel(str(v))
    except ValueError as e:
      raise RoutingConfigError(f"{field_name}: unknown channel {v!r}") from e
    if ch not in out:
      out.append(ch)
  return tuple(out)


def _int(value: Any, *, field_name: str) -> int:
  if isinstance(value, bool):
    raise RoutingConfigError(f"{field_name} must be an integer")
  try:
    return int(value)
  except (TypeError, ValueError) as e:
    raise RoutingConfigError(f"{field_name} must be an integer") from e


def _flag(value: Any, *, field_name: str) -> bool:
  if not isinstance(value, bool):
    raise RoutingConfigError(f"{field_name} must be true or false")
  return value


def build_profile(
  *,
  user_id: str | None,
  organization_id: str | None,
  timezone: str | None,
  business_hours_start: str | None,
  business_hours_end: str | None,
  business_days: list[str] | None,
  dnd_windows: list[dict[str, Any]] | None,
  channel_preferences: dict[str, Any] | None,
  category_routing: dict[str, Any] | None,
  context_settings: dict[str, Any] | None,
  email: str | None = None,
  phone: str | None = None,
  webhook_url: str | None = None,
  source: str = "user",
) -> RoutingProfile:
  """
  Validate stored profile data into a RoutingProfile.

  Missing sections inherit the built-in defaults; malformed sections raise
  RoutingConfigError so ingestion rejects them and lookups can fall back.
  """
  tz = (timezone or "UTC").strip() or "UTC"
  try:
    ZoneInfo(tz)
  except (ZoneInfoNotFoundError, ValueError) as e:
    raise RoutingConfigError(f"unknown timezone {tz!r}") from e

  bh_start = require_hhmm(business_hours_start or "09:00", field_name="businessHoursStart")
  bh_end = require_hhmm(business_hours_end or "17:00", field_name="businessHoursEnd")
  if bh_start == bh_end:
    raise RoutingConfigError("business hours window must not be empty")

  days: list[str] = []
  for d in business_days if business_days is not None else WEEKDAYS[:5]:
    key = str(d).strip().lower()
    if key not in WEEKDAYS:
      raise RoutingConfigError(f"unknown business day {d!r}")
    if key not in days:
      days.append(key)

  windows: list[TimeWindow] = []
  for w in dnd_windows or []:
    start = require_hhmm((w or {}).get("start"), field_name="dnd.start")
    end = require_hhmm((w or {}).get("end"), field_name="dnd.end")
    if start != end:
      windows.append(TimeWindow(start=start, end=end))

  channels = dict(DEFAULT_CHANNELS)
  for key, raw in (channel_preferences or {}).items():
    try:
      ch = Channel(str(key))
    except ValueError as e:
      raise RoutingConfigError(f"unknown channel {key!r}") from e
    if not isinstance(raw, dict):
      raise RoutingConfigError(f"channel preference for {key!r} must be an object")
    base = channels[ch]
    channels[ch] = ChannelPreference(
      enabled=_flag(raw.get("enabled", base.enabled), field_name=f"{key}.enabled"),
      priority=_int(raw.get("priority", base.priority), field_name=f"{key}.priority"),
      dnd_override_allowed=_flag(raw.get("dnd_override_allowed", base.dnd_override_allowed), field_name=f"{key}.dnd_override_allowed"),
    )

  categories = dict(DEFAULT_CATEGORIES)
  for key, raw in (category_routing or {}).items():
    try:
      cat = Category(str(key))
    except ValueError as e:
      raise RoutingConfigError(f"unknown category {key!r}") from e
    if not isinstance(raw, dict):
      raise RoutingConfigError(f"category routing for {key!r} must be an object")
    base = categories[cat]
    threshold = raw.get("escalation_threshold_minutes", base.escalation_threshold_minutes)
    if threshold is not None:
      threshold = _int(threshold, field_name=f"{key}.escalation_threshold_minutes")
    if threshold is not None and threshold <= 0:
      raise RoutingConfigError(f"escalation threshold for {key!r} must be positive")
    preferred = raw.get("preferred_channels")
    categories[cat] = CategoryRouting(
      preferred_channels=_channel_list(preferred, field_name=f"{key}.preferred_channels") if preferred is not None else base.preferred_channels,
      escalation_threshold_minutes=threshold,
      auto_escalate_to_manager=_flag(raw.get("auto_escalate_to_manager", base.auto_escalate_to_manager), field_name=f"{key}.auto_escalate_to_manager"),
    )

  contexts = dict(DEFAULT_CONTEXTS)
  for key, raw in (context_settings or {}).items():
    try:
      ctx = RoutingContext(str(key))
    except ValueError as e:
      raise RoutingConfigError(f"unknown routing context {key!r}") from e
    if not isinstance(raw, dict):
      raise RoutingConfigError(f"context settings for {key!r} must be an object")
    base = contexts[ctx]
    cap = _int(raw.get("max_notifications_per_hour", base.max_notifications_per_hour), field_name=f"{key}.max_notifications_per_hour")
    window = _int(raw.get("aggregation_window_minutes", base.aggregation_window_minutes), field_name=f"{key}.aggregation_window_minutes")
    if cap < 0 or window < 0:
      raise RoutingConfigError(f"context settings for {key!r} must be non-negative")
    contexts[ctx] = ContextSettings(
      immediate_alerts=_flag(raw.get("immediate_alerts", base.immediate_alerts), field_name=f"{key}.immediate_alerts"),
      aggregation_window_minutes=window,
      max_notifications_per_hour=cap,
    )

  return RoutingProfile(
    user_id=user_id,
    organization_id=organization_id,
    timezone=tz,
    business_hours=TimeWindow(start=bh_start, end=bh_end),
    business_days=tuple(days),
    dnd_windows=tuple(windows),
    channels=channels,
    categories=categories,
    contexts=contexts,
    email=(email or "").strip() or None,
    phone=(phone or "").strip() or None,
    webhook_url=(webhook_url or "").strip() or None,
    source=source,
  )


def profile_to_dict(profile: RoutingProfile) -> dict[str, Any]:
  return {
    "userId": profile.user_id,
    "organizationId": profile.organization_id,
    "source": profile.source,
    "timezone": profile.timezone,
    "businessHoursStart": _fmt(profile.business_hours.start),
    "businessHoursEnd": _fmt(profile.business_hours.end),
    "businessDays": list(profile.business_days),
    "dndWindows": [w.as_dict() for w in profile.dnd_windows],
    "channelPreferences": {
      c.value: {"enabled": p.enabled, "priority": p.priority, "dnd_override_allowed": p.dnd_override_allowed}
      for c, p in sorted(profile.channels.items(), key=lambda kv: kv[1].priority)
    },
    "categoryRouting": {
      c.value: {
        "preferred_channels": [ch.value for ch in r.preferred_channels],
        "escalation_threshold_minutes": r.escalation_threshold_minutes,
        "auto_escalate_to_manager": r.auto_escalate_to_manager,
      }
      for c, r in profile.categories.items()
    },
    "contextSettings": {
      c.value: {
        "immediate_alerts": s.immediate_alerts,
        "aggregation_window_minutes": s.aggregation_window_minutes,
        "max_notifications_per_hour": s.max_notifications_per_hour,
      }
      for c, s in profile.contexts.items()
    },
    "email": profile.email,
    "phone": profile.phone,
    "webhookUrl": profile.webhook_url,
  }
