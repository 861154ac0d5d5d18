from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock

from redis import asyncio as redis_asyncio

from app.config import settings

logger = logging.getLogger(__name__)

BUCKET_SECONDS = 3600


def hour_bucket(now: datetime) -> tuple[str, datetime]:
  """(bucket label, bucket end) for the UTC hour containing now."""
  start = now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
  return start.strftime("%Y%m%d%H"), start + timedelta(seconds=BUCKET_SECONDS)


@dataclass(frozen=True)
class CapResult:
  allowed: bool
  count: int
  window_end: datetime


class _Shard:
  def __init__(self) -> None:
    self.lock = Lock()
    self.counts: dict[str, tuple[int, datetime]] = {}


class RateCapCounter:
  """
  Per (user, routing context, UTC hour) delivery counter.

  Increment-and-check is a single atomic step: Redis INCR when Redis is
  configured, otherwise an in-process counter split across lock shards so
  unrelated recipients never contend on one lock.
  """

  def __init__(self, *, redis_url: str | None = None, shards: int = 64, redis_client: redis_asyncio.Redis | None = None) -> None:
    self._shards = [_Shard() for _ in range(max(1, shards))]
    self._redis = redis_client
    if self._redis is None and redis_url:
      try:
        self._redis = redis_asyncio.Redis.from_url(redis_url, decode_responses=True)
      except ValueError as e:
        logger.warning("Invalid redis_url for rate caps, using in-process counters: %s", e)
        self._redis = None

  def _shard(self, key: str) -> _Shard:
    return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

  async def hit(self, *, user_id: str, context: str, limit: int, now: datetime) -> CapResult:
    label, window_end = hour_bucket(now)
    key = f"ratecap:{user_id}:{context}:{label}"

    if self._redis is not None:
      try:
        pipe = self._redis.pipeline()
        pipe.incr(key, 1)
        pipe.expireat(key, int(window_end.timestamp()) + 60)
        count, _ = await pipe.execute()
        return CapResult(allowed=int(count) <= int(limit), count=int(count), window_end=window_end)
      except Exception as e:
        logger.warning("Redis rate cap unavailable for %s, using in-process counter: %s", key, e)

    shard = self._shard(key)
    with shard.lock:
      count, _ = shard.counts.get(key, (0, window_end))
      count += 1
      shard.counts[key] = (count, window_end)
      self._prune_locked(shard, now)
    return CapResult(allowed=count <= int(limit), count=count, window_end=window_end)

  @staticmethod
  def _prune_locked(shard: _Shard, now: datetime) -> None:
    for k in [k for k, (_, end) in shard.counts.items() if end <= now]:
      del shard.counts[k]

  def reset(self) -> None:
    for shard in self._shards:
      with shard.lock:
        shard.counts.clear()


rate_caps = RateCapCounter(redis_url=settings.redis_url)
