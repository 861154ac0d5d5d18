from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db import SessionLocal


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


async def require_service_token(request: Request) -> None:
  auth = request.headers.get("authorization")
  if not auth or not auth.lower().startswith("bearer "):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
  token = auth.split(" ", 1)[1].strip()
  if not token or not hmac.compare_digest(token.encode("utf-8"), settings.api_token.encode("utf-8")):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
