from __future__ import annotations

import logging

from boardhook.errors import NoMappingConfigured, NotFound
from boardhook.mappings.cache import MappingCache
from boardhook.mappings.store import MappingStore
from boardhook.mappings.types import ChannelMappingRecord, ChannelTarget, DefaultMappingRecord, Resolution

logger = logging.getLogger(__name__)


class MappingResolver:
  """
  Answers "which board/list serves this channel" and the reverse question
  "which channels listen to this board".

  Lookup order is cache -> store -> community default -> environment default.
  Writes go through here so the cache entry for the key is invalidated before
  the write call returns.
  """

  def __init__(
    self,
    store: MappingStore,
    cache: MappingCache,
    *,
    environment_default: tuple[str, str] | None = None,
  ) -> None:
    self.store = store
    self.cache = cache
    self.environment_default = environment_default

  async def lookup(self, community_id: str, channel_id: str) -> ChannelMappingRecord | None:
    cached = self.cache.get(community_id, channel_id)
    if cached is not None:
      return cached
    version = self.cache.version(community_id, channel_id)
    try:
      record = await self.store.get(community_id, channel_id)
    except NotFound:
      return None
    self.cache.put(community_id, channel_id, record, if_version=version)
    return record

  async def resolve(self, community_id: str, channel_id: str) -> Resolution:
    record = await self.lookup(community_id, channel_id)
    if record is not None:
      return Resolution(board_id=record.board_id, list_id=record.list_id, source="channel")

    # default results are never cached under the channel key
    default = await self.store.get_default(community_id)
    if default is not None:
      return Resolution(board_id=default.board_id, list_id=default.list_id, source="default")
    if self.environment_default is not None:
      board_id, list_id = self.environment_default
      return Resolution(board_id=board_id, list_id=list_id, source="environment")
    raise NoMappingConfigured(community_id, channel_id)

  async def set_mapping(self, community_id: str, channel_id: str, board_id: str, list_id: str) -> ChannelMappingRecord:
    try:
      return await self.store.upsert(community_id, channel_id, board_id, list_id)
    finally:
      self.cache.invalidate(community_id, channel_id)

  async def remove_mapping(self, community_id: str, channel_id: str) -> ChannelMappingRecord:
    try:
      return await self.store.delete(community_id, channel_id)
    finally:
      self.cache.invalidate(community_id, channel_id)

  async def set_default(
    self,
    community_id: str,
    board_id: str,
    list_id: str,
    notification_channel_id: str | None = None,
  ) -> DefaultMappingRecord:
    return await self.store.set_default(community_id, board_id, list_id, notification_channel_id)

  async def remove_default(self, community_id: str) -> DefaultMappingRecord:
    return await self.store.delete_default(community_id)

  async def targets_for_board(self, board_id: str) -> list[ChannelTarget]:
    """
    Reverse lookup, always recomputed from the store so it cannot lag a write.

    Includes every channel explicitly mapped to the board and, for communities
    whose default points at the board, the default's notification channel when
    that channel itself resolves through the default.
    """
    targets: dict[ChannelTarget, None] = {}
    for m in await self.store.list_by_board(board_id):
      targets[ChannelTarget(community_id=m.community_id, channel_id=m.channel_id)] = None

    for d in await self.store.list_defaults_by_board(board_id):
      if not d.notification_channel_id:
        continue
      explicit = await self.lookup(d.community_id, d.notification_channel_id)
      if explicit is not None and explicit.board_id != board_id:
        continue
      targets[ChannelTarget(community_id=d.community_id, channel_id=d.notification_channel_id)] = None
    return list(targets)

  async def referenced_board_ids(self) -> set[str]:
    boards = await self.store.referenced_board_ids()
    if self.environment_default is not None:
      boards.add(self.environment_default[0])
    return boards
