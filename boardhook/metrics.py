from __future__ import annotations

from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic
from typing import NamedTuple

SAMPLE_RETENTION = timedelta(hours=24)
RECENT_WINDOW = timedelta(minutes=15)


class _Sample(NamedTuple):
  at: datetime
  status_code: int
  latency_ms: float


def _p95(values: list[float]) -> float:
  if not values:
    return 0.0
  ordered = sorted(values)
  return ordered[max(0, int(len(ordered) * 0.95) - 1)]


class RuntimeMetrics:
  """
  Process-local request latency window plus named event counters
  (webhooks accepted/rejected, deliveries sent/failed, duplicates).
  """

  def __init__(self) -> None:
    self._boot = monotonic()
    self._lock = Lock()
    self._requests: deque[_Sample] = deque()
    self._counters: Counter[str] = Counter()

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._boot))

  def observe_request(self, status_code: int, latency_ms: float) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._requests.append(_Sample(now, status_code, latency_ms))
      self._trim(now)

  def incr(self, name: str, amount: int = 1) -> None:
    with self._lock:
      self._counters[name] += amount

  def counter(self, name: str) -> int:
    with self._lock:
      return self._counters[name]

  def reset_counters(self) -> None:
    with self._lock:
      self._counters.clear()

  def _trim(self, now: datetime) -> None:
    while self._requests and now - self._requests[0].at > SAMPLE_RETENTION:
      self._requests.popleft()

  def snapshot(self) -> dict:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._trim(now)
      samples = list(self._requests)
      counters = dict(self._counters)

    recent = [s for s in samples if now - s.at <= RECENT_WINDOW]
    recent_errors = sum(1 for s in recent if s.status_code >= 500)
    sent = counters.get("deliveries.sent", 0)
    failed = counters.get("deliveries.failed", 0)
    return {
      "uptimeSeconds": self.uptime_seconds(),
      "requestCount15m": len(recent),
      "requestCount24h": len(samples),
      "errorCount15m": recent_errors,
      "errorRate15m": round(recent_errors * 100 / len(recent), 2) if recent else 0.0,
      "p95LatencyMs24h": round(_p95([s.latency_ms for s in samples]), 2),
      "deliverySuccessRate": round(sent * 100 / (sent + failed), 2) if sent + failed else None,
      "counters": counters,
    }


runtime_metrics = RuntimeMetrics()
