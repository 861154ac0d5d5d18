from __future__ import annotations

import asyncio
import os

from sqlalchemy import select

from app.db import SessionLocal
from app.log import configure_logging
from app.models import OrganizationMember, UserRoutingProfile
from app.routing.rules import seed_default_rules


async def seed() -> None:
  async with SessionLocal() as db:
    added = await seed_default_rules(db)

    # optional demo organization: a manager to escalate to and an org-wide default profile
    org_id = (os.getenv("SEED_ORGANIZATION_ID") or "").strip()
    if org_id:
      manager_id = (os.getenv("SEED_MANAGER_ID") or "manager").strip()
      res = await db.execute(
        select(OrganizationMember).where(OrganizationMember.organization_id == org_id, OrganizationMember.user_id == manager_id)
      )
      if res.scalar_one_or_none() is None:
        db.add(OrganizationMember(organization_id=org_id, user_id=manager_id, role="admin"))
      res = await db.execute(
        select(UserRoutingProfile).where(UserRoutingProfile.user_id.is_(None), UserRoutingProfile.organization_id == org_id)
      )
      if res.scalar_one_or_none() is None:
        db.add(
          UserRoutingProfile(
            user_id=None,
            organization_id=org_id,
            timezone=os.getenv("SEED_TIMEZONE", "UTC"),
            dnd_windows=[{"start": "22:00", "end": "07:00"}],
          )
        )

    await db.commit()
    print(f"Seeded {added} routing rules" + (f", organization {org_id}" if org_id else ""))


def main() -> None:
  configure_logging()
  asyncio.run(seed())


if __name__ == "__main__":
  main()
