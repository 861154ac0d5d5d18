from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any, Protocol

import httpx

from app.config import settings
from app.routing.types import Channel, DeliveryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
  status: DeliveryStatus
  latency_ms: int = 0
  error: str | None = None


class ChannelSender(Protocol):
  async def send(self, *, target: str, payload: dict[str, Any]) -> SendResult: ...


class LocalChannelSender:
  """Accepts every send. Stands in for transports that live outside this service."""

  def __init__(self, channel: Channel) -> None:
    self.channel = channel

  async def send(self, *, target: str, payload: dict[str, Any]) -> SendResult:
    logger.debug("Local %s send to %s for notification %s", self.channel.value, target, payload.get("notificationId"))
    return SendResult(status=DeliveryStatus.SENT)


class WebhookChannelSender:
  def __init__(self, *, timeout: float | None = None, client: httpx.AsyncClient | None = None) -> None:
    self.timeout = settings.webhook_timeout_seconds if timeout is None else timeout
    self._client = client

  async def send(self, *, target: str, payload: dict[str, Any]) -> SendResult:
    start = monotonic()
    try:
      if self._client is not None:
        r = await self._client.post(target, json=payload, timeout=self.timeout)
      else:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
          r = await client.post(target, json=payload)
      r.raise_for_status()
    except httpx.HTTPError as e:
      return SendResult(status=DeliveryStatus.FAILED, latency_ms=_elapsed_ms(start), error=str(e) or type(e).__name__)
    return SendResult(status=DeliveryStatus.SENT, latency_ms=_elapsed_ms(start))


def default_senders() -> dict[Channel, ChannelSender]:
  senders: dict[Channel, ChannelSender] = {c: LocalChannelSender(c) for c in Channel}
  senders[Channel.WEBHOOK] = WebhookChannelSender()
  return senders


@dataclass(frozen=True)
class DueAttempt:
  record_id: str
  channel: Channel
  target: str
  fallback: bool = False


@dataclass(frozen=True)
class AttemptOutcome:
  record_id: str
  channel: Channel
  status: DeliveryStatus
  latency_ms: int | None = None
  error: str | None = None
  attempted: bool = True


def _elapsed_ms(start: float) -> int:
  return max(0, int((monotonic() - start) * 1000))


def _ok(o: AttemptOutcome) -> bool:
  return o.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)


def _group(attempts: list[DueAttempt]) -> dict[Channel, list[DueAttempt]]:
  groups: dict[Channel, list[DueAttempt]] = {}
  for a in attempts:
    groups.setdefault(a.channel, []).append(a)
  return groups


class ChannelDispatcher:
  """
  Sends due attempts of one notification.

  Primary channels go out concurrently. Fallback channels go out one channel
  at a time, in plan order, and only while nothing has been sent yet. Every
  send is bounded by a timeout; timeouts and sender errors become failed
  outcomes and never escape.
  """

  def __init__(self, senders: dict[Channel, ChannelSender] | None = None, *, timeout: float | None = None) -> None:
    self.senders = senders if senders is not None else default_senders()
    self.timeout = settings.channel_send_timeout_seconds if timeout is None else timeout

  async def dispatch(
    self,
    attempts: list[DueAttempt],
    *,
    payload: dict[str, Any],
    already_delivered: bool = False,
  ) -> list[AttemptOutcome]:
    primary = [a for a in attempts if not a.fallback]
    fallback = [a for a in attempts if a.fallback]
    outcomes: list[AttemptOutcome] = []

    groups = _group(primary)
    results = await asyncio.gather(*(self._send_channel(ch, group, payload) for ch, group in groups.items()))
    for res in results:
      outcomes.extend(res)
    succeeded = already_delivered or any(_ok(o) for o in outcomes)

    tried = set(groups)
    for ch, group in _group(fallback).items():
      if succeeded or ch in tried:
        outcomes.extend(
          AttemptOutcome(record_id=a.record_id, channel=ch, status=DeliveryStatus.EXPIRED, error="not_needed", attempted=False)
          for a in group
        )
        continue
      res = await self._send_channel(ch, group, payload)
      outcomes.extend(res)
      tried.add(ch)
      succeeded = any(_ok(o) for o in res)
    return outcomes

  async def _send_channel(self, channel: Channel, group: list[DueAttempt], payload: dict[str, Any]) -> list[AttemptOutcome]:
    return list(await asyncio.gather(*(self._send_one(a, payload) for a in group)))

  async def _send_one(self, attempt: DueAttempt, payload: dict[str, Any]) -> AttemptOutcome:
    sender = self.senders.get(attempt.channel)
    if sender is None:
      return AttemptOutcome(record_id=attempt.record_id, channel=attempt.channel, status=DeliveryStatus.FAILED, error="no_sender")
    start = monotonic()
    try:
      result = await asyncio.wait_for(sender.send(target=attempt.target, payload=payload), timeout=self.timeout)
    except asyncio.TimeoutError:
      logger.warning("Send timed out on %s for notification %s", attempt.channel.value, payload.get("notificationId"))
      return AttemptOutcome(
        record_id=attempt.record_id, channel=attempt.channel, status=DeliveryStatus.FAILED, latency_ms=_elapsed_ms(start), error="timeout"
      )
    except Exception as e:
      logger.warning(
        "Sender %s raised for notification %s: %s", attempt.channel.value, payload.get("notificationId"), e, exc_info=True
      )
      return AttemptOutcome(
        record_id=attempt.record_id, channel=attempt.channel, status=DeliveryStatus.FAILED, latency_ms=_elapsed_ms(start), error=str(e)
      )
    status = result.status if result.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED) else DeliveryStatus.FAILED
    latency = result.latency_ms if result.latency_ms else _elapsed_ms(start)
    return AttemptOutcome(record_id=attempt.record_id, channel=attempt.channel, status=status, latency_ms=latency, error=result.error)
