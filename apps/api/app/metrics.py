from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic

WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class Sample:
  ts: datetime
  value_ms: float
  failed: bool = False
  label: str = ""


class _Window:
  """Rolling 24h window of samples. Callers hold the owning lock."""

  def __init__(self) -> None:
    self.samples: deque[Sample] = deque()

  def add(self, sample: Sample) -> None:
    self.samples.append(sample)

  def prune(self, now: datetime) -> None:
    cutoff = now - WINDOW
    while self.samples and self.samples[0].ts < cutoff:
      self.samples.popleft()

  def since(self, cutoff: datetime) -> list[Sample]:
    return [s for s in self.samples if s.ts >= cutoff]


def p95(values: list[float]) -> float:
  if not values:
    return 0.0
  ordered = sorted(values)
  return ordered[max(0, int(len(ordered) * 0.95) - 1)]


def _rate(failed: int, total: int) -> float:
  return round((failed / total) * 100, 2) if total else 0.0


class RuntimeMetrics:
  """
  In-process counters for the status page: HTTP requests, routing decision
  latency and channel send outcomes. Lost on restart; the database records
  stay authoritative.
  """

  def __init__(self) -> None:
    self._started_monotonic = monotonic()
    self._started_at = datetime.now(timezone.utc)
    self._requests = _Window()
    self._decisions = _Window()
    self._sends = _Window()
    self._lock = Lock()

  @property
  def started_at(self) -> datetime:
    return self._started_at

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def _observe(self, window: _Window, sample: Sample) -> None:
    with self._lock:
      window.add(sample)
      window.prune(sample.ts)

  def observe_request(self, status_code: int, latency_ms: float) -> None:
    self._observe(self._requests, Sample(ts=datetime.now(timezone.utc), value_ms=float(latency_ms), failed=status_code >= 500))

  def observe_decision(self, decision_ms: float) -> None:
    self._observe(self._decisions, Sample(ts=datetime.now(timezone.utc), value_ms=float(decision_ms)))

  def observe_send(self, channel: str, *, ok: bool, latency_ms: float | None) -> None:
    sample = Sample(ts=datetime.now(timezone.utc), value_ms=float(latency_ms or 0), failed=not ok, label=channel)
    self._observe(self._sends, sample)

  def snapshot(self) -> dict:
    now = datetime.now(timezone.utc)
    with self._lock:
      for w in (self._requests, self._decisions, self._sends):
        w.prune(now)
      requests = list(self._requests.samples)
      decisions = list(self._decisions.samples)
      sends_hour = self._sends.since(now - timedelta(hours=1))
      requests_15m = self._requests.since(now - timedelta(minutes=15))

    errors_15 = sum(1 for s in requests_15m if s.failed)
    errors_24h = sum(1 for s in requests if s.failed)
    by_channel: dict[str, dict[str, int]] = {}
    for s in sends_hour:
      counts = by_channel.setdefault(s.label, {"sent": 0, "failed": 0})
      counts["failed" if s.failed else "sent"] += 1

    return {
      "uptimeSeconds": self.uptime_seconds(),
      "p95LatencyMs24h": round(p95([s.value_ms for s in requests]), 2),
      "requestCount15m": len(requests_15m),
      "requestCount24h": len(requests),
      "errorCount15m": errors_15,
      "errorCount24h": errors_24h,
      "errorRate15m": _rate(errors_15, len(requests_15m)),
      "errorRate24h": _rate(errors_24h, len(requests)),
      "decisionCount24h": len(decisions),
      "decisionP95Ms24h": round(p95([s.value_ms for s in decisions]), 2),
      "sendFailureRate1h": _rate(sum(1 for s in sends_hour if s.failed), len(sends_hour)),
      "sendsByChannel1h": dict(sorted(by_channel.items())),
    }


runtime_metrics = RuntimeMetrics()
