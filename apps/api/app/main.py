from __future__ import annotations

import asyncio
import logging
from time import monotonic

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.config import settings
from app.db import SessionLocal
from app.events import RedisEventForwarder, event_bus
from app.log import configure_logging
from app.metrics import runtime_metrics
from app.routers.notifications import router as notifications_router
from app.routers.routing import router as routing_router
from app.routers.system_status import router as system_status_router
from app.routing.engine import routing_engine
from app.routing.errors import DeliveryNotFound, NotificationNotFound, RoutingConfigError
from app.routing.escalation import escalation_scheduler
from app.routing.rules import seed_default_rules

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
  title="Governance Notification Routing API",
  version=settings.app_version,
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(RoutingConfigError)
async def _routing_config_error_handler(_, exc: RoutingConfigError) -> JSONResponse:
  return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotificationNotFound)
async def _notification_not_found_handler(_, exc: NotificationNotFound) -> JSONResponse:
  return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeliveryNotFound)
async def _delivery_not_found_handler(_, exc: DeliveryNotFound) -> JSONResponse:
  return JSONResponse(status_code=404, content={"detail": str(exc)})


app.include_router(notifications_router)
app.include_router(routing_router)
app.include_router(system_status_router)


@app.middleware("http")
async def _request_metrics_middleware(request, call_next):
  start = monotonic()
  response = await call_next(request)
  elapsed_ms = (monotonic() - start) * 1000.0
  runtime_metrics.observe_request(response.status_code, elapsed_ms)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


_dispatch_loop_task: asyncio.Task | None = None
_escalation_loop_task: asyncio.Task | None = None


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


async def _dispatch_loop() -> None:
  # deferred attempts (quiet hours, business hours, rate caps) and expiry
  while True:
    await asyncio.sleep(max(1, int(settings.dispatch_poll_seconds)))
    async with SessionLocal() as db:
      try:
        handled = await routing_engine.dispatch_due_once(db, limit=settings.dispatch_batch_size)
        expired = await routing_engine.expire_stale_once(db)
        if handled or expired:
          logger.info("Dispatch loop: %d notifications dispatched, %d expired", handled, expired)
      except Exception:
        logger.exception("Dispatch loop iteration failed")


async def _escalation_recovery_loop() -> None:
  while True:
    try:
      stats = await escalation_scheduler.recover_once()
      if any(stats.values()):
        logger.info("Escalation recovery: %s", stats)
    except Exception:
      logger.exception("Escalation recovery iteration failed")
    await asyncio.sleep(max(1, int(settings.escalation_poll_seconds)))


@app.on_event("startup")
async def _startup() -> None:
  global _dispatch_loop_task, _escalation_loop_task
  if _is_test_db():
    return
  if settings.seed_default_rules:
    async with SessionLocal() as db:
      await seed_default_rules(db)
      await db.commit()
  if settings.redis_url:
    event_bus.subscribe("*", RedisEventForwarder.from_url(settings.redis_url))
  if _dispatch_loop_task is None:
    _dispatch_loop_task = asyncio.create_task(_dispatch_loop())
  if _escalation_loop_task is None:
    # recover_once runs right away, then every escalation_poll_seconds
    _escalation_loop_task = asyncio.create_task(_escalation_recovery_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
  global _dispatch_loop_task, _escalation_loop_task
  for task in (_dispatch_loop_task, _escalation_loop_task):
    if task is not None:
      task.cancel()
  _dispatch_loop_task = None
  _escalation_loop_task = None
  await escalation_scheduler.shutdown()
