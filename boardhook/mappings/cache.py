from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from itertools import count
from threading import Lock
from time import monotonic
from typing import Callable

from boardhook.mappings.types import ChannelMappingRecord

logger = logging.getLogger(__name__)

_SNOWFLAKE_RE = re.compile(r":\d{17,19}")


def mask_key(key: str) -> str:
  return _SNOWFLAKE_RE.sub(":***", key)


def channel_key(community_id: str, channel_id: str) -> str:
  return f"channel:{community_id}:{channel_id}"


@dataclass
class _Entry:
  value: ChannelMappingRecord
  expires_at: float


class MappingCache:
  """
  TTL cache of channel mappings, sharded so unrelated keys never contend.

  A ttl of 0 disables caching entirely: every get is a miss and put is a no-op.
  Only positive results are stored; absence is never cached.
  """

  def __init__(
    self,
    *,
    ttl_seconds: int = 300,
    max_keys: int = 1000,
    shards: int = 16,
    clock: Callable[[], float] = monotonic,
  ) -> None:
    self.ttl_seconds = max(0, int(ttl_seconds))
    self.max_keys = max(1, int(max_keys))
    self._clock = clock
    self._shards: list[dict[str, _Entry]] = [{} for _ in range(max(1, shards))]
    # stamped on every invalidation; a reader that saw an older version must not repopulate.
    # Keys pruned from a shard read as that shard's floor, which is newer than any stamp handed out before.
    self._seq = count(1)
    self._versions: list[dict[str, int]] = [{} for _ in self._shards]
    self._floors = [0 for _ in self._shards]
    self._locks = [Lock() for _ in self._shards]
    self._stats_lock = Lock()
    self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}

  @property
  def enabled(self) -> bool:
    return self.ttl_seconds > 0

  def _shard(self, key: str) -> int:
    return hash(key) % len(self._shards)

  def _bump(self, name: str) -> None:
    with self._stats_lock:
      self._stats[name] += 1

  def get(self, community_id: str, channel_id: str) -> ChannelMappingRecord | None:
    if not self.enabled:
      self._bump("misses")
      return None
    key = channel_key(community_id, channel_id)
    idx = self._shard(key)
    now = self._clock()
    with self._locks[idx]:
      entry = self._shards[idx].get(key)
      if entry is not None and entry.expires_at <= now:
        del self._shards[idx][key]
        entry = None
    if entry is None:
      self._bump("misses")
      logger.debug("Cache MISS %s", mask_key(key))
      return None
    self._bump("hits")
    logger.debug("Cache HIT %s", mask_key(key))
    return entry.value

  def version(self, community_id: str, channel_id: str) -> int:
    key = channel_key(community_id, channel_id)
    idx = self._shard(key)
    with self._locks[idx]:
      return self._versions[idx].get(key, self._floors[idx])

  def put(
    self,
    community_id: str,
    channel_id: str,
    mapping: ChannelMappingRecord,
    ttl: int | None = None,
    *,
    if_version: int | None = None,
  ) -> bool:
    ttl_seconds = self.ttl_seconds if ttl is None else int(ttl)
    if not self.enabled or ttl_seconds <= 0:
      return False
    key = channel_key(community_id, channel_id)
    idx = self._shard(key)
    now = self._clock()
    with self._locks[idx]:
      if if_version is not None and self._versions[idx].get(key, self._floors[idx]) != if_version:
        return False
      shard = self._shards[idx]
      if key not in shard and len(shard) >= self._shard_capacity():
        self._evict_locked(shard, now)
      shard[key] = _Entry(value=mapping, expires_at=now + ttl_seconds)
    self._bump("sets")
    return True

  def invalidate(self, community_id: str, channel_id: str) -> None:
    key = channel_key(community_id, channel_id)
    idx = self._shard(key)
    with self._locks[idx]:
      removed = self._shards[idx].pop(key, None)
      self._stamp_locked(idx, key)
    if removed is not None:
      self._bump("deletes")
      logger.debug("Cache DEL %s", mask_key(key))

  def invalidate_community(self, community_id: str) -> int:
    prefix = f"channel:{community_id}:"
    removed = 0
    for idx, shard in enumerate(self._shards):
      with self._locks[idx]:
        for key in [k for k in shard if k.startswith(prefix)]:
          del shard[key]
          self._stamp_locked(idx, key)
          removed += 1
    if removed:
      with self._stats_lock:
        self._stats["deletes"] += removed
    logger.info("Cache invalidated for community %s: %d keys removed", community_id, removed)
    return removed

  def clear(self) -> None:
    for idx, shard in enumerate(self._shards):
      with self._locks[idx]:
        shard.clear()
    with self._stats_lock:
      self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}

  def _stamp_locked(self, idx: int, key: str) -> None:
    versions = self._versions[idx]
    versions[key] = next(self._seq)
    if len(versions) > 2 * self._shard_capacity():
      shard = self._shards[idx]
      self._floors[idx] = next(self._seq)
      for stale in [k for k in versions if k not in shard]:
        del versions[stale]

  def tracked_versions(self) -> int:
    return sum(len(v) for v in self._versions)

  def _shard_capacity(self) -> int:
    return max(1, self.max_keys // len(self._shards))

  def _evict_locked(self, shard: dict[str, _Entry], now: float) -> None:
    for key in [k for k, e in shard.items() if e.expires_at <= now]:
      del shard[key]
    if len(shard) >= self._shard_capacity():
      oldest = min(shard, key=lambda k: shard[k].expires_at)
      del shard[oldest]

  def size(self) -> int:
    total = 0
    for idx, shard in enumerate(self._shards):
      with self._locks[idx]:
        total += len(shard)
    return total

  def stats(self) -> dict:
    with self._stats_lock:
      s = dict(self._stats)
    lookups = s["hits"] + s["misses"]
    s["hitRate"] = round((s["hits"] / lookups) * 100, 2) if lookups else 0.0
    s["keys"] = self.size()
    s["ttlSeconds"] = self.ttl_seconds
    s["maxKeys"] = self.max_keys
    return s
