from __future__ import annotations

import logging
from collections import OrderedDict
from threading import Lock
from time import monotonic
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SeenSet:
  """
  Bounded, time-evicted set of event keys.

  ``claim`` is an atomic test-and-insert: it returns True only for the first
  caller presenting a key within the window.
  """

  def __init__(self, *, window_seconds: int = 600, max_entries: int = 10000, clock: Callable[[], float] = monotonic) -> None:
    self.window_seconds = max(0, int(window_seconds))
    self.max_entries = max(1, int(max_entries))
    self._clock = clock
    self._lock = Lock()
    self._seen: OrderedDict[str, float] = OrderedDict()

  def _prune_locked(self, now: float) -> None:
    while self._seen:
      key, expires_at = next(iter(self._seen.items()))
      if expires_at > now:
        break
      self._seen.popitem(last=False)
    while len(self._seen) > self.max_entries:
      self._seen.popitem(last=False)

  def claim(self, key: str) -> bool:
    if self.window_seconds == 0:
      return True
    now = self._clock()
    with self._lock:
      self._prune_locked(now)
      if key in self._seen:
        return False
      self._seen[key] = now + self.window_seconds
      self._prune_locked(now)
      return True

  def release(self, key: str) -> None:
    with self._lock:
      self._seen.pop(key, None)

  def __len__(self) -> int:
    with self._lock:
      self._prune_locked(self._clock())
      return len(self._seen)


class EventDeduplicator:
  """
  Seen-set shared across replicas through Redis when ``redis_url`` is set,
  with the in-process SeenSet used when Redis is absent or unreachable.
  """

  def __init__(self, local: SeenSet, *, redis_url: str | None = None, prefix: str = "boardhook:seen:") -> None:
    self.local = local
    self.prefix = prefix
    self._redis = redis.from_url(redis_url, decode_responses=True) if redis_url else None

  async def claim(self, key: str) -> bool:
    if self._redis is not None and self.local.window_seconds > 0:
      try:
        created = await self._redis.set(f"{self.prefix}{key}", "1", nx=True, ex=self.local.window_seconds)
        return bool(created)
      except RedisError as e:
        logger.warning("Redis dedup unavailable, using in-process seen-set: %s", e)
    return self.local.claim(key)

  async def release(self, key: str) -> None:
    if self._redis is not None:
      try:
        await self._redis.delete(f"{self.prefix}{key}")
      except RedisError as e:
        logger.warning("Redis dedup release failed for %s: %s", key, e)
    self.local.release(key)

  async def close(self) -> None:
    if self._redis is not None:
      await self._redis.aclose()
