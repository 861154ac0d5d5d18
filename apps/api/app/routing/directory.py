from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from cachetools import TTLCache
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models import Device as DeviceRow, OrganizationMember, UserRoutingProfile
from app.routing.errors import RoutingConfigError
from app.routing.profiles import RoutingProfile, build_profile, default_profile
from app.routing.types import Device, Platform

logger = logging.getLogger(__name__)


class DeviceDirectory(Protocol):
  async def active_devices(self, db: AsyncSession, *, user_id: str, now: datetime) -> list[Device]: ...


class ProfileDirectory(Protocol):
  async def routing_profile(self, db: AsyncSession, *, user_id: str, organization_id: str | None) -> RoutingProfile: ...


class MembershipDirectory(Protocol):
  async def escalation_targets(self, db: AsyncSession, *, organization_id: str | None, roles: list[str]) -> list[str]: ...


def device_from_row(row: DeviceRow) -> Device:
  prefs = row.preferences if isinstance(row.preferences, dict) else {}
  dnd = prefs.get("dnd") if isinstance(prefs.get("dnd"), dict) else {}
  categories = prefs.get("categories") if isinstance(prefs.get("categories"), dict) else {}
  return Device(
    id=row.id,
    user_id=row.user_id,
    platform=Platform(str(row.platform)),
    token=row.device_token,
    last_active=row.last_active,
    allow_critical_override=bool(prefs.get("allow_critical_override", True)),
    dnd_start=dnd.get("start") if dnd.get("enabled", True) else None,
    dnd_end=dnd.get("end") if dnd.get("enabled", True) else None,
    category_prefs={str(k): dict(v) for k, v in categories.items() if isinstance(v, dict)},
  )


class SqlDeviceDirectory:
  def __init__(self, *, active_days: int | None = None) -> None:
    self.active_days = settings.device_active_days if active_days is None else active_days

  async def active_devices(self, db: AsyncSession, *, user_id: str, now: datetime) -> list[Device]:
    cutoff = now - timedelta(days=self.active_days)
    res = await db.execute(
      select(DeviceRow)
      .where(DeviceRow.user_id == user_id, DeviceRow.is_active.is_(True), DeviceRow.last_active >= cutoff)
      .order_by(DeviceRow.last_active.desc(), DeviceRow.id.asc())
    )
    out: list[Device] = []
    for row in res.scalars().all():
      try:
        out.append(device_from_row(row))
      except (TypeError, ValueError) as e:
        logger.warning("Skipping malformed device %s for user %s: %s", row.id, user_id, e)
    return out


def profile_from_row(row: UserRoutingProfile, *, source: str) -> RoutingProfile:
  return build_profile(
    user_id=row.user_id,
    organization_id=row.organization_id,
    timezone=row.timezone,
    business_hours_start=row.business_hours_start,
    business_hours_end=row.business_hours_end,
    business_days=row.business_days,
    dnd_windows=row.dnd_windows,
    channel_preferences=row.channel_preferences,
    category_routing=row.category_routing,
    context_settings=row.context_settings,
    email=row.email,
    phone=row.phone,
    webhook_url=row.webhook_url,
    source=source,
  )


class SqlProfileDirectory:
  """
  Profile lookup: user+organization, then the user's own profile, then the
  organization default (user_id NULL), then built-in defaults.

  Stored profiles that fail validation are logged and skipped, so lookups
  degrade to the next level instead of failing the notification.
  """

  def __init__(self, *, ttl_seconds: float | None = None, maxsize: int = 4096) -> None:
    ttl = settings.rule_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
    self._cache: TTLCache[tuple[str, str], RoutingProfile] = TTLCache(maxsize=maxsize, ttl=max(0.001, float(ttl)))

  def invalidate(self) -> None:
    self._cache.clear()

  async def routing_profile(self, db: AsyncSession, *, user_id: str, organization_id: str | None) -> RoutingProfile:
    key = (user_id, organization_id or "")
    cached = self._cache.get(key)
    if cached is not None:
      return cached

    lookups: list[tuple[Any, Any, str]] = []
    if organization_id:
      lookups.append((UserRoutingProfile.user_id == user_id, UserRoutingProfile.organization_id == organization_id, "user"))
    lookups.append((UserRoutingProfile.user_id == user_id, UserRoutingProfile.organization_id.is_(None), "user"))
    if organization_id:
      lookups.append((UserRoutingProfile.user_id.is_(None), UserRoutingProfile.organization_id == organization_id, "organization"))

    profile: RoutingProfile | None = None
    for who, org, source in lookups:
      res = await db.execute(select(UserRoutingProfile).where(who, org).limit(1))
      row = res.scalar_one_or_none()
      if row is None:
        continue
      try:
        profile = profile_from_row(row, source=source)
      except (RoutingConfigError, TypeError, ValueError) as e:
        logger.error("Malformed routing profile %s for user %s: %s", row.id, user_id, e)
        continue
      if source == "organization":
        # org defaults apply to the recipient, not to a NULL user
        profile = _for_user(profile, user_id)
      break

    if profile is None:
      profile = default_profile(user_id, organization_id, timezone=settings.default_timezone)
    self._cache[key] = profile
    return profile


def _for_user(profile: RoutingProfile, user_id: str) -> RoutingProfile:
  # contact data in an org default belongs to nobody in particular
  return replace(profile, user_id=user_id, email=None, phone=None, webhook_url=None)


class SqlMembershipDirectory:
  async def escalation_targets(self, db: AsyncSession, *, organization_id: str | None, roles: list[str]) -> list[str]:
    if not organization_id or not roles:
      return []
    res = await db.execute(
      select(OrganizationMember.user_id)
      .where(OrganizationMember.organization_id == organization_id, OrganizationMember.role.in_(roles))
      .order_by(OrganizationMember.created_at.asc(), OrganizationMember.user_id.asc())
    )
    seen: list[str] = []
    for uid in res.scalars().all():
      if uid not in seen:
        seen.append(uid)
    return seen


devices = SqlDeviceDirectory()
profiles = SqlProfileDirectory()
memberships = SqlMembershipDirectory()
