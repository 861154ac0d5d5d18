from __future__ import annotations

import pytest

from conftest import add_device, add_rule


@pytest.mark.anyio
async def test_health_and_version_are_public(client) -> None:
  res = await client.get("/health", headers={"Authorization": ""})
  assert res.status_code == 200
  assert res.json() == {"ok": True}
  res = await client.get("/version")
  assert res.status_code == 200
  assert "version" in res.json()
  assert res.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.anyio
async def test_system_status_reports_every_section(client) -> None:
  await add_rule(escalation_enabled=True, escalation_recipients=["manager-1"])
  await add_device("alice")
  res = await client.post("/notifications", json={"category": "voting", "priority": "high", "recipientId": "alice", "context": "voting"})
  assert res.status_code == 200, res.text

  res = await client.get("/system/status")
  assert res.status_code == 200, res.text
  body = res.json()
  sections = {s["key"]: s for s in body["sections"]}
  assert list(sections) == ["api", "database", "cache", "deliveries", "escalations"]
  for s in sections.values():
    assert s["state"] in ("green", "yellow", "red")

  # no redis configured under test
  assert sections["cache"]["state"] == "yellow"
  assert any(d.startswith("routing decisions (24h): ") for d in sections["api"]["details"])
  assert any(d.startswith("push (hour): ") for d in sections["deliveries"]["details"])
  assert "scheduled: 1" in sections["escalations"]["details"]
  assert sections["escalations"]["state"] == "green"
  assert sections["database"]["state"] in ("green", "yellow")


@pytest.mark.anyio
async def test_system_status_requires_the_service_token(client) -> None:
  res = await client.get("/system/status", headers={"Authorization": "Bearer nope"})
  assert res.status_code == 401
