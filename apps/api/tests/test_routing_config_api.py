from __future__ import annotations

import pytest

from app.db import SessionLocal
from app.routing.rules import DEFAULT_RULES, seed_default_rules
from conftest import add_device, add_profile


def _rule_body(**fields) -> dict:
  body = {
    "name": "Critical votes",
    "category": "voting",
    "priority": "critical",
    "routingContext": "voting",
    "primaryChannels": ["push", "sms"],
    "fallbackChannels": ["email"],
    "immediateDelivery": True,
    "dndOverrideChannels": ["push"],
    "escalationEnabled": True,
    "escalationDelayMinutes": 10,
  }
  body.update(fields)
  return body


@pytest.mark.anyio
async def test_rule_lifecycle(client) -> None:
  res = await client.post("/routing/rules", json=_rule_body())
  assert res.status_code == 200, res.text
  rule = res.json()
  assert rule["primaryChannels"] == ["push", "sms"]
  assert rule["priorityMode"] == "exact"
  assert rule["usageCount"] == 0
  assert rule["isActive"] is True

  res = await client.get("/routing/rules")
  assert [r["id"] for r in res.json()] == [rule["id"]]

  res = await client.patch(f"/routing/rules/{rule['id']}", json={"rulePriority": 5, "escalationTrigger": "no_action"})
  assert res.status_code == 200, res.text
  assert res.json()["rulePriority"] == 5
  assert res.json()["escalationTrigger"] == "no_action"
  assert res.json()["name"] == "Critical votes"

  res = await client.patch(f"/routing/rules/{rule['id']}", json={"isActive": False})
  assert res.status_code == 200, res.text
  assert (await client.get("/routing/rules")).json() == []
  inactive = (await client.get("/routing/rules", params={"includeInactive": "true"})).json()
  assert [r["id"] for r in inactive] == [rule["id"]]


@pytest.mark.anyio
async def test_rules_are_listed_per_organization(client) -> None:
  await client.post("/routing/rules", json=_rule_body(name="global"))
  await client.post("/routing/rules", json=_rule_body(name="org-a", organizationId="org-a"))
  await client.post("/routing/rules", json=_rule_body(name="org-b", organizationId="org-b"))

  names = sorted(r["name"] for r in (await client.get("/routing/rules", params={"organizationId": "org-a"})).json())
  assert names == ["global", "org-a"]


@pytest.mark.anyio
async def test_malformed_rules_are_rejected(client) -> None:
  res = await client.post("/routing/rules", json=_rule_body(primaryChannels=["pigeon"]))
  assert res.status_code == 422
  res = await client.post("/routing/rules", json=_rule_body(primaryChannels=[]))
  assert res.status_code == 422
  res = await client.post("/routing/rules", json=_rule_body(escalationDelayMinutes=0))
  assert res.status_code == 422
  res = await client.post("/routing/rules", json=_rule_body(category="gossip"))
  assert res.status_code == 422
  assert (await client.get("/routing/rules", params={"includeInactive": "true"})).json() == []

  res = await client.patch("/routing/rules/missing", json={"rulePriority": 5})
  assert res.status_code == 404


@pytest.mark.anyio
async def test_profile_put_and_get(client) -> None:
  body = {
    "timezone": "Europe/Berlin",
    "dndWindows": [{"start": "22:00", "end": "07:00"}],
    "channelPreferences": {"sms": {"enabled": True, "priority": 1}},
    "contextSettings": {"voting": {"max_notifications_per_hour": 4}},
    "email": "alice@example.org",
    "phone": "+4915550100",
  }
  res = await client.put("/routing/profiles/alice", json=body)
  assert res.status_code == 200, res.text
  assert res.json()["timezone"] == "Europe/Berlin"

  res = await client.get("/routing/profiles/alice")
  assert res.status_code == 200, res.text
  profile = res.json()
  assert profile["source"] == "user"
  assert profile["dndWindows"] == [{"start": "22:00", "end": "07:00"}]
  assert profile["channelPreferences"]["sms"]["enabled"] is True
  assert profile["contextSettings"]["voting"]["max_notifications_per_hour"] == 4
  assert profile["phone"] == "+4915550100"

  # second put replaces, it does not add a row
  body["timezone"] = "Europe/Paris"
  res = await client.put("/routing/profiles/alice", json=body)
  assert res.status_code == 200, res.text
  assert (await client.get("/routing/profiles/alice")).json()["timezone"] == "Europe/Paris"


@pytest.mark.anyio
async def test_invalid_profiles_are_rejected(client) -> None:
  res = await client.put("/routing/profiles/alice", json={"timezone": "Mars/Olympus_Mons"})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"dndWindows": [{"start": "25:00", "end": "07:00"}]})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"businessDays": ["someday"]})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"channelPreferences": {"push": {"priority": "first"}}})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"channelPreferences": {"sms": {"enabled": "false"}}})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"categoryRouting": {"voting": {"escalation_threshold_minutes": "soon"}}})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"contextSettings": {"meeting": {"aggregation_window_minutes": [5]}}})
  assert res.status_code == 422
  res = await client.put("/routing/profiles/alice", json={"contextSettings": {"meeting": {"immediate_alerts": 1}}})
  assert res.status_code == 422
  assert (await client.get("/routing/profiles/alice")).json()["source"] == "global"


@pytest.mark.anyio
async def test_organization_default_profile_applies_without_contact_data(client) -> None:
  await add_profile(None, organization_id="org-1", timezone="Asia/Tokyo", email="team@example.org")

  res = await client.get("/routing/profiles/bob", params={"organizationId": "org-1"})
  assert res.status_code == 200, res.text
  profile = res.json()
  assert profile["source"] == "organization"
  assert profile["userId"] == "bob"
  assert profile["timezone"] == "Asia/Tokyo"
  assert profile["email"] is None

  res = await client.get("/routing/profiles/bob")
  assert res.json()["source"] == "global"


@pytest.mark.anyio
async def test_device_registration_is_an_upsert(client) -> None:
  body = {"userId": "alice", "platform": "ios", "deviceToken": "apns-1", "deviceName": "Phone"}
  first = await client.post("/routing/devices", json=body)
  assert first.status_code == 200, first.text
  body["preferences"] = {"allow_critical_override": False, "dnd": {"enabled": True, "start": "23:00", "end": "06:00"}}
  second = await client.post("/routing/devices", json=body)
  assert second.status_code == 200, second.text
  assert second.json()["id"] == first.json()["id"]
  assert second.json()["preferences"]["allow_critical_override"] is False

  res = await client.post("/routing/devices", json={**body, "platform": "blackberry"})
  assert res.status_code == 422
  res = await client.post("/routing/devices", json={**body, "lastActive": "2026-03-11T12:00:00"})
  assert res.status_code == 422


@pytest.mark.anyio
async def test_registered_device_receives_push(client) -> None:
  await client.post("/routing/rules", json=_rule_body(priority="high", escalationEnabled=False))
  await client.post("/routing/devices", json={"userId": "carol", "platform": "android", "deviceToken": "fcm-carol"})

  res = await client.post("/notifications", json={"category": "voting", "priority": "high", "recipientId": "carol", "context": "voting"})
  assert res.status_code == 200, res.text
  n = (await client.get(f"/notifications/{res.json()['id']}")).json()
  assert ("push", "fcm-carol", "sent") in [(d["channel"], d["target"], d["status"]) for d in n["deliveries"]]

  [rule] = (await client.get("/routing/rules")).json()
  assert rule["usageCount"] == 1
  assert rule["lastUsed"] is not None


@pytest.mark.anyio
async def test_organization_members_are_upserted(client) -> None:
  res = await client.put("/routing/organizations/org-1/members", json={"userId": "dana", "role": "Admin"})
  assert res.status_code == 200, res.text
  assert res.json() == {"organizationId": "org-1", "userId": "dana", "role": "admin"}

  res = await client.put("/routing/organizations/org-1/members", json={"userId": "dana", "role": "member"})
  assert res.status_code == 200, res.text
  assert res.json()["role"] == "member"


@pytest.mark.anyio
async def test_default_rules_are_seeded_once_and_route(client) -> None:
  async with SessionLocal() as db:
    assert await seed_default_rules(db) == len(DEFAULT_RULES)
    await db.commit()
  async with SessionLocal() as db:
    assert await seed_default_rules(db) == 0
    await db.commit()

  rules = (await client.get("/routing/rules")).json()
  assert sorted(r["name"] for r in rules) == sorted(r["name"] for r in DEFAULT_RULES)
  assert {r["priorityMode"] for r in rules} == {"exact"}
  assert {r["escalationTrigger"] for r in rules} == {"unread"}
  emergency = next(r for r in rules if r["name"] == "Emergency Board Alert")

  await add_device("alice", token="apns-alice")
  res = await client.post("/notifications", json={"category": "emergency", "priority": "critical", "recipientId": "alice", "context": "emergency"})
  assert res.status_code == 200, res.text
  decision = (await client.get(f"/notifications/{res.json()['id']}/decision")).json()
  assert decision["appliedRules"] == [emergency["id"]]
  assert decision["plan"]["escalation"]["delayMinutes"] == 5


@pytest.mark.anyio
async def test_rule_conditions_are_validated(client) -> None:
  res = await client.post("/routing/rules", json=_rule_body(conditions=[{"field": "notification.priority", "operator": "like", "value": "x"}]))
  assert res.status_code == 422
  res = await client.post("/routing/rules", json=_rule_body(conditions=[{"operator": "eq", "value": "x"}]))
  assert res.status_code == 422
  res = await client.post(
    "/routing/rules",
    json=_rule_body(conditions=[{"field": "notification.priority", "operator": "eq", "value": "critical", "logical_operator": "xor"}]),
  )
  assert res.status_code == 422


@pytest.mark.anyio
async def test_conditional_rule_only_applies_when_its_conditions_hold(client) -> None:
  board_only = [{"field": "notification.data.board", "operator": "eq", "value": "audit"}]
  res = await client.post("/routing/rules", json=_rule_body(name="Audit board", priority="high", escalationEnabled=False, conditions=board_only))
  assert res.status_code == 200, res.text
  rule_id = res.json()["id"]
  await add_device("carol", token="fcm-carol")

  body = {"category": "voting", "priority": "high", "recipientId": "carol", "context": "voting"}
  other = await client.post("/notifications", json={**body, "payload": {"board": "finance"}})
  audit = await client.post("/notifications", json={**body, "payload": {"board": "audit"}})
  assert other.status_code == 200 and audit.status_code == 200

  other_decision = (await client.get(f"/notifications/{other.json()['id']}/decision")).json()
  audit_decision = (await client.get(f"/notifications/{audit.json()['id']}/decision")).json()
  assert other_decision["matchedRules"] == []
  assert audit_decision["matchedRules"] == [rule_id]
