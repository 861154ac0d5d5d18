from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.deps import get_db, require_service_token
from app.models import Device, OrganizationMember, RoutingRule, UserRoutingProfile
from app.routing.directory import device_from_row, profiles
from app.routing.errors import RoutingConfigError
from app.routing.profiles import build_profile, profile_to_dict
from app.routing.rules import rule_from_row, rule_store
from app.schemas import (
  DeviceOut,
  DeviceRegisterIn,
  OrganizationMemberIn,
  OrganizationMemberOut,
  RoutingProfileIn,
  RoutingProfileOut,
  RoutingRuleIn,
  RoutingRuleOut,
  RoutingRuleUpdateIn,
)

router = APIRouter(prefix="/routing", tags=["routing"], dependencies=[Depends(require_service_token)])

# camelCase request field -> column
_RULE_FIELDS = {
  "name": "name",
  "description": "description",
  "priority": "priority",
  "priorityMode": "priority_mode",
  "primaryChannels": "primary_channels",
  "fallbackChannels": "fallback_channels",
  "immediateDelivery": "immediate_delivery",
  "respectDnd": "respect_dnd",
  "businessHoursOnly": "business_hours_only",
  "dndOverrideChannels": "dnd_override_channels",
  "escalationEnabled": "escalation_enabled",
  "escalationDelayMinutes": "escalation_delay_minutes",
  "escalationTrigger": "escalation_trigger",
  "escalationChannels": "escalation_channels",
  "escalationRecipients": "escalation_recipients",
  "rulePriority": "rule_priority",
  "conditions": "conditions",
  "isActive": "is_active",
}


def _plain(v: object) -> object:
  if isinstance(v, list):
    return [_plain(x) for x in v]
  return getattr(v, "value", v)


def _rule_out(r: RoutingRule) -> RoutingRuleOut:
  return RoutingRuleOut(
    id=r.id,
    name=r.name,
    description=r.description,
    organizationId=r.organization_id,
    category=r.category,
    priority=r.priority,
    priorityMode=r.priority_mode,
    routingContext=r.routing_context,
    primaryChannels=list(r.primary_channels or []),
    fallbackChannels=list(r.fallback_channels or []),
    immediateDelivery=r.immediate_delivery,
    respectDnd=r.respect_dnd,
    businessHoursOnly=r.business_hours_only,
    dndOverrideChannels=list(r.dnd_override_channels or []),
    escalationEnabled=r.escalation_enabled,
    escalationDelayMinutes=r.escalation_delay_minutes,
    escalationTrigger=r.escalation_trigger,
    escalationChannels=list(r.escalation_channels or []),
    escalationRecipients=list(r.escalation_recipients or []),
    rulePriority=r.rule_priority,
    conditions=list(r.conditions or []),
    isActive=r.is_active,
    usageCount=r.usage_count,
    lastUsed=r.last_used,
    createdAt=r.created_at,
    updatedAt=r.updated_at,
  )


@router.get("/rules", response_model=list[RoutingRuleOut])
async def list_rules(
  organizationId: str | None = Query(default=None),
  includeInactive: bool = Query(default=False),
  db: AsyncSession = Depends(get_db),
) -> list[RoutingRuleOut]:
  q = select(RoutingRule)
  if organizationId:
    q = q.where((RoutingRule.organization_id.is_(None)) | (RoutingRule.organization_id == organizationId))
  if not includeInactive:
    q = q.where(RoutingRule.is_active.is_(True))
  res = await db.execute(q.order_by(RoutingRule.created_at.asc(), RoutingRule.id.asc()))
  return [_rule_out(r) for r in res.scalars().all()]


@router.post("/rules", response_model=RoutingRuleOut)
async def create_rule(payload: RoutingRuleIn, db: AsyncSession = Depends(get_db)) -> RoutingRuleOut:
  row = RoutingRule(
    name=payload.name.strip(),
    description=payload.description,
    organization_id=payload.organizationId,
    category=payload.category.value,
    routing_context=payload.routingContext.value,
  )
  for field, column in _RULE_FIELDS.items():
    if field in ("name", "description"):
      continue
    setattr(row, column, _plain(getattr(payload, field)))
  db.add(row)
  await db.flush()
  # reject at ingestion so planning never sees a malformed rule
  try:
    rule_from_row(row)
  except RoutingConfigError:
    await db.rollback()
    raise
  await db.commit()
  await db.refresh(row)
  rule_store.invalidate()
  return _rule_out(row)


@router.patch("/rules/{rule_id}", response_model=RoutingRuleOut)
async def update_rule(rule_id: str, payload: RoutingRuleUpdateIn, db: AsyncSession = Depends(get_db)) -> RoutingRuleOut:
  res = await db.execute(select(RoutingRule).where(RoutingRule.id == rule_id))
  row = res.scalar_one_or_none()
  if not row:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
  for field in payload.model_fields_set:
    column = _RULE_FIELDS.get(field)
    if column is None:
      continue
    value = getattr(payload, field)
    if value is None and column not in ("description",):
      continue
    setattr(row, column, _plain(value))
  try:
    rule_from_row(row)
  except RoutingConfigError:
    await db.rollback()
    raise
  await db.commit()
  await db.refresh(row)
  rule_store.invalidate()
  return _rule_out(row)


@router.get("/profiles/{user_id}", response_model=RoutingProfileOut)
async def get_profile(user_id: str, organizationId: str | None = Query(default=None), db: AsyncSession = Depends(get_db)) -> RoutingProfileOut:
  profile = await profiles.routing_profile(db, user_id=user_id, organization_id=organizationId)
  return RoutingProfileOut(**profile_to_dict(profile))


@router.put("/profiles/{user_id}", response_model=RoutingProfileOut)
async def put_profile(user_id: str, payload: RoutingProfileIn, db: AsyncSession = Depends(get_db)) -> RoutingProfileOut:
  fields = dict(
    timezone=payload.timezone,
    business_hours_start=payload.businessHoursStart,
    business_hours_end=payload.businessHoursEnd,
    business_days=list(payload.businessDays),
    dnd_windows=[w.model_dump() for w in payload.dndWindows],
    channel_preferences=payload.channelPreferences,
    category_routing=payload.categoryRouting,
    context_settings=payload.contextSettings,
    email=payload.email,
    phone=payload.phone,
    webhook_url=payload.webhookUrl,
  )
  profile = build_profile(user_id=user_id, organization_id=payload.organizationId, source="user", **fields)

  org = UserRoutingProfile.organization_id == payload.organizationId if payload.organizationId else UserRoutingProfile.organization_id.is_(None)
  res = await db.execute(select(UserRoutingProfile).where(UserRoutingProfile.user_id == user_id, org))
  row = res.scalar_one_or_none()
  if row is None:
    row = UserRoutingProfile(user_id=user_id, organization_id=payload.organizationId)
    db.add(row)
  for k, v in fields.items():
    setattr(row, k, v)
  await db.commit()
  profiles.invalidate()
  return RoutingProfileOut(**profile_to_dict(profile))


@router.post("/devices", response_model=DeviceOut)
async def register_device(payload: DeviceRegisterIn, db: AsyncSession = Depends(get_db)) -> DeviceOut:
  res = await db.execute(
    select(Device).where(
      Device.user_id == payload.userId,
      Device.device_token == payload.deviceToken,
      Device.platform == payload.platform.value,
    )
  )
  row = res.scalar_one_or_none()
  if row is None:
    row = Device(user_id=payload.userId, device_token=payload.deviceToken, platform=payload.platform.value)
    db.add(row)
  row.device_name = payload.deviceName
  row.is_active = payload.isActive
  row.last_active = payload.lastActive or datetime.now(timezone.utc)
  row.preferences = payload.preferences or {}
  try:
    device_from_row(row)
  except (TypeError, ValueError) as e:
    await db.rollback()
    raise RoutingConfigError(f"invalid device preferences: {e}") from e
  await db.commit()
  await db.refresh(row)
  return DeviceOut(
    id=row.id,
    userId=row.user_id,
    platform=row.platform,
    deviceName=row.device_name,
    isActive=row.is_active,
    lastActive=row.last_active,
    preferences=row.preferences or {},
  )


@router.put("/organizations/{organization_id}/members", response_model=OrganizationMemberOut)
async def upsert_member(organization_id: str, payload: OrganizationMemberIn, db: AsyncSession = Depends(get_db)) -> OrganizationMemberOut:
  res = await db.execute(
    select(OrganizationMember).where(OrganizationMember.organization_id == organization_id, OrganizationMember.user_id == payload.userId)
  )
  row = res.scalar_one_or_none()
  if row is None:
    row = OrganizationMember(organization_id=organization_id, user_id=payload.userId)
    db.add(row)
  row.role = payload.role.strip().lower()
  await db.commit()
  return OrganizationMemberOut(organizationId=organization_id, userId=row.user_id, role=row.role)
