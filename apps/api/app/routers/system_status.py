from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.deps import get_db, require_service_token
from app.metrics import runtime_metrics
from app.models import DeliveryRecord, EscalationRecord, Notification
from app.routing.escalation import escalation_scheduler
from app.routing.types import DeliveryStatus, EscalationStatus
from app.schemas import SystemStatusOut, SystemStatusSectionOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/system/status", tags=["system"], dependencies=[Depends(require_service_token)])


def _as_state(ok: bool, warn: bool = False) -> str:
  if not ok:
    return "red"
  return "yellow" if warn else "green"


async def _redis_metrics() -> tuple[str, list[str]]:
  if not settings.redis_url:
    return ("yellow", ["provider: disabled (in-process rate caps and events)", "memory usage: n/a"])

  client = redis_from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
  try:
    info = await client.info()
    memory_bytes = int(info.get("used_memory", 0) or 0)
    evictions = int(info.get("evicted_keys", 0) or 0)
    cap_keys = 0
    async for _ in client.scan_iter(match="ratecap:*", count=500):
      cap_keys += 1
    return (
      _as_state(True, warn=evictions > 0),
      [
        "provider: redis",
        f"memory: {memory_bytes // (1024 * 1024)}MB",
        f"evictions: {evictions}",
        f"rate cap buckets: {cap_keys}",
      ],
    )
  except (RedisError, OSError) as e:
    logger.warning("system status: redis unreachable: %s", e)
    return ("yellow", ["provider: redis unreachable", f"detail: {str(e)[:120]}"])
  finally:
    await client.aclose()


async def _database_section(db: AsyncSession) -> tuple[str, list[str]]:
  try:
    await db.execute(text("select 1"))
  except SQLAlchemyError as e:
    return ("red", [f"database unreachable: {str(e)[:120]}"])
  details = [f"dialect: {db.bind.dialect.name}"]
  if db.bind.dialect.name != "postgresql":
    return ("green", details)
  try:
    pg_row = (
      await db.execute(
        text(
          """
          select
            count(*)::int as total,
            sum(case when wait_event_type = 'Lock' then 1 else 0 end)::int as waiting_lock,
            sum(
              case
                when state = 'active'
                  and query_start is not null
                  and now() - query_start > interval '30 seconds'
                then 1
                else 0
              end
            )::int as long_running
          from pg_stat_activity
          where datname = current_database()
          """
        )
      )
    ).mappings().first()
    max_conn = (await db.execute(text("select setting::int as max_connections from pg_settings where name='max_connections'"))).mappings().first()
  except SQLAlchemyError as e:
    return ("yellow", details + [f"pg_stat unavailable: {str(e)[:120]}"])
  total = int(pg_row["total"] or 0) if pg_row else 0
  waiting_lock = int(pg_row["waiting_lock"] or 0) if pg_row else 0
  long_running = int(pg_row["long_running"] or 0) if pg_row else 0
  max_connections = int(max_conn["max_connections"] or 0) if max_conn else 0
  ratio = (total / max_connections) if max_connections > 0 else 0
  details += [
    f"connections: {total}/{max_connections or '?'}",
    f"long-running (>30s): {long_running}",
    f"waiting locks: {waiting_lock}",
  ]
  # row-lock waits are expected briefly while escalations claim notifications
  return (_as_state(ratio < 0.9, warn=ratio >= 0.7 or long_running > 0 or waiting_lock > 0), details)


@router.get("", response_model=SystemStatusOut)
async def get_system_status(db: AsyncSession = Depends(get_db)) -> SystemStatusOut:
  now = datetime.now(timezone.utc)
  sections: list[SystemStatusSectionOut] = []
  runtime = runtime_metrics.snapshot()

  sections.append(
    SystemStatusSectionOut(
      key="api",
      label="API health",
      state=_as_state(runtime["errorRate15m"] < 1.0 and runtime["p95LatencyMs24h"] < 1000, warn=runtime["errorRate15m"] > 0),
      details=[
        f"uptime: {runtime['uptimeSeconds']}s",
        f"error rate (15m): {runtime['errorRate15m']}%",
        f"error rate (24h): {runtime['errorRate24h']}%",
        f"p95 latency (24h): {runtime['p95LatencyMs24h']}ms",
        f"routing decisions (24h): {runtime['decisionCount24h']}",
        f"p95 decision time (24h): {runtime['decisionP95Ms24h']}ms",
        f"version: {settings.app_version}",
        f"build: {settings.build_sha}",
      ],
      updatedAt=now,
    )
  )

  db_state, db_details = await _database_section(db)
  sections.append(SystemStatusSectionOut(key="database", label="Database", state=db_state, details=db_details, updatedAt=now))

  cache_state, cache_details = await _redis_metrics()
  sections.append(SystemStatusSectionOut(key="cache", label="Cache", state=cache_state, details=cache_details, updatedAt=now))

  pending_due = (
    await db.execute(
      select(func.count())
      .select_from(DeliveryRecord)
      .where(DeliveryRecord.status == DeliveryStatus.PENDING.value, DeliveryRecord.scheduled_for <= now)
    )
  ).scalar_one()
  deferred = (
    await db.execute(
      select(func.count())
      .select_from(DeliveryRecord)
      .where(DeliveryRecord.status == DeliveryStatus.PENDING.value, DeliveryRecord.scheduled_for > now)
    )
  ).scalar_one()
  failed_hour = (
    await db.execute(
      select(func.count())
      .select_from(DeliveryRecord)
      .where(DeliveryRecord.status == DeliveryStatus.FAILED.value, DeliveryRecord.attempted_at >= now.replace(minute=0, second=0, microsecond=0))
    )
  ).scalar_one()
  oldest_due = (
    await db.execute(
      select(func.min(DeliveryRecord.scheduled_for)).where(
        DeliveryRecord.status == DeliveryStatus.PENDING.value, DeliveryRecord.scheduled_for <= now
      )
    )
  ).scalar_one_or_none()
  oldest_seconds = max(0, int((now - oldest_due).total_seconds())) if oldest_due else 0
  channel_details = [
    f"{channel} (hour): {counts['sent']} sent, {counts['failed']} failed" for channel, counts in runtime["sendsByChannel1h"].items()
  ]
  sections.append(
    SystemStatusSectionOut(
      key="deliveries",
      label="Delivery attempts",
      state=_as_state(oldest_seconds < 3600, warn=oldest_seconds > settings.dispatch_poll_seconds * 4 or failed_hour > 0),
      details=[
        f"due now: {int(pending_due)}",
        f"deferred: {int(deferred)}",
        f"oldest due: {oldest_seconds}s",
        f"failed (hour): {int(failed_hour)}",
        f"send failure rate (hour): {runtime['sendFailureRate1h']}%",
        *channel_details,
      ],
      updatedAt=now,
    )
  )

  scheduled = (
    await db.execute(select(func.count()).select_from(EscalationRecord).where(EscalationRecord.status == EscalationStatus.SCHEDULED.value))
  ).scalar_one()
  overdue = (
    await db.execute(
      select(func.count())
      .select_from(EscalationRecord)
      .where(EscalationRecord.status == EscalationStatus.SCHEDULED.value, EscalationRecord.scheduled_for <= now)
    )
  ).scalar_one()
  exhausted = (
    await db.execute(
      select(func.count())
      .select_from(EscalationRecord)
      .where(
        EscalationRecord.status == EscalationStatus.SCHEDULED.value,
        EscalationRecord.retry_count >= escalation_scheduler.max_retries,
      )
    )
  ).scalar_one()
  pending_schedule = (
    await db.execute(select(func.count()).select_from(Notification).where(Notification.escalation_pending.is_(True)))
  ).scalar_one()
  sections.append(
    SystemStatusSectionOut(
      key="escalations",
      label="Escalations",
      state=_as_state(exhausted == 0, warn=overdue > 0 or pending_schedule > 0),
      details=[
        f"scheduled: {int(scheduled)}",
        f"overdue: {int(overdue)}",
        f"armed timers: {len(escalation_scheduler.armed())}",
        f"retries exhausted: {int(exhausted)}",
        f"awaiting schedule retry: {int(pending_schedule)}",
      ],
      updatedAt=now,
    )
  )

  return SystemStatusOut(
    generatedAt=now,
    version=settings.app_version,
    buildSha=settings.build_sha,
    sections=sections,
  )
