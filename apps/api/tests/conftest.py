from __future__ import annotations

import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./routing_test.db")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("API_TOKEN", "test-token")
os.environ.setdefault("RULE_CACHE_TTL_SECONDS", "0")

from app.config import settings
from app.db import SessionLocal, engine
from app.events import event_bus
from app.main import app
from app.models import (
  Base,
  DeliveryRecord,
  Device,
  EscalationRecord,
  Notification,
  OrganizationMember,
  RoutingDecision,
  RoutingRule,
  UserRoutingProfile,
)
from app.rate_limit import rate_caps
from app.routing.directory import profiles
from app.routing.escalation import escalation_scheduler
from app.routing.rules import rule_store

AUTH = {"Authorization": f"Bearer {settings.api_token}"}


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  rate_caps.reset()
  rule_store.invalidate()
  profiles.invalidate()
  event_bus.clear()
  await escalation_scheduler.shutdown()
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
  async with SessionLocal() as db:
    await db.execute(delete(RoutingDecision))
    await db.execute(delete(DeliveryRecord))
    await db.execute(delete(EscalationRecord))
    await db.execute(delete(Notification).where(Notification.escalated_from_id.is_not(None)))
    await db.execute(delete(Notification))
    await db.execute(delete(RoutingRule))
    await db.execute(delete(UserRoutingProfile))
    await db.execute(delete(Device))
    await db.execute(delete(OrganizationMember))
    await db.commit()
  await engine.dispose()


@pytest.fixture
async def clean_db() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. routing_test)."
    )
  await _reset_db()
  yield
  await _reset_db()


@pytest.fixture(autouse=True)
def _clean_between_tests(request: pytest.FixtureRequest) -> None:
  # sync tests are pure planner/matcher checks and never touch the database
  if inspect.iscoroutinefunction(request.function):
    request.getfixturevalue("clean_db")


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost", headers=AUTH) as c:
    yield c


def utc(*args: int) -> datetime:
  return datetime(*args, tzinfo=timezone.utc)


async def add_rule(**fields: Any) -> str:
  values: dict[str, Any] = {
    "name": "Test rule",
    "category": "voting",
    "priority": "high",
    "routing_context": "voting",
    "primary_channels": ["push"],
    "fallback_channels": ["email"],
    "immediate_delivery": True,
    "escalation_channels": ["email"],
    "created_at": utc(2026, 1, 1),
  }
  values.update(fields)
  async with SessionLocal() as db:
    row = RoutingRule(**values)
    db.add(row)
    await db.commit()
    rule_store.invalidate()
    return row.id


async def add_profile(user_id: str | None, **fields: Any) -> None:
  async with SessionLocal() as db:
    db.add(UserRoutingProfile(user_id=user_id, **fields))
    await db.commit()
  profiles.invalidate()


async def add_device(user_id: str, *, token: str = "tok-1", platform: str = "ios", last_active: datetime | None = None, **fields: Any) -> str:
  async with SessionLocal() as db:
    row = Device(
      user_id=user_id,
      device_token=token,
      platform=platform,
      last_active=last_active or datetime.now(timezone.utc),
      **fields,
    )
    db.add(row)
    await db.commit()
    return row.id


async def add_member(organization_id: str, user_id: str, role: str = "admin") -> None:
  async with SessionLocal() as db:
    db.add(OrganizationMember(organization_id=organization_id, user_id=user_id, role=role))
    await db.commit()


class EventLog:
  def __init__(self) -> None:
    self.events: list = []

  async def __call__(self, event) -> None:
    self.events.append(event)

  def types(self) -> list[str]:
    return [e.event_type for e in self.events]


@pytest.fixture
def events() -> EventLog:
  log = EventLog()
  event_bus.subscribe("*", log)
  return log
