from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boardhook.audit import write_audit
from boardhook.errors import ConstraintViolation, NotFound
from boardhook.mappings.types import ChannelMappingRecord, DefaultMappingRecord
from boardhook.models import ChannelMapping, DefaultMapping, new_id, utcnow

logger = logging.getLogger(__name__)


class MappingStore:
  """
  Durable table of channel -> board/list mappings plus per-community defaults.

  Every write is a single-row statement committed on its own session; callers
  never share a transaction across channels.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._sessions = session_factory

  async def _find(self, db: AsyncSession, community_id: str, channel_id: str) -> ChannelMapping | None:
    res = await db.execute(
      select(ChannelMapping).where(ChannelMapping.community_id == community_id, ChannelMapping.channel_id == channel_id)
    )
    return res.scalar_one_or_none()

  async def get(self, community_id: str, channel_id: str) -> ChannelMappingRecord:
    async with self._sessions() as db:
      row = await self._find(db, community_id, channel_id)
      if not row:
        raise NotFound("No mapping for channel", community_id=community_id, channel_id=channel_id)
      return ChannelMappingRecord.from_row(row)

  async def create(self, community_id: str, channel_id: str, board_id: str, list_id: str) -> ChannelMappingRecord:
    async with self._sessions() as db:
      row = ChannelMapping(id=new_id(), community_id=community_id, channel_id=channel_id, board_id=board_id, list_id=list_id)
      db.add(row)
      await write_audit(
        db,
        event_type="mapping.created",
        entity_type="ChannelMapping",
        entity_id=row.id,
        community_id=community_id,
        channel_id=channel_id,
        board_id=board_id,
        payload={"listId": list_id},
      )
      try:
        await db.commit()
      except IntegrityError as exc:
        await db.rollback()
        raise ConstraintViolation(
          "A mapping already exists for this channel", community_id=community_id, channel_id=channel_id
        ) from exc
      return ChannelMappingRecord.from_row(row)

  async def upsert(self, community_id: str, channel_id: str, board_id: str, list_id: str) -> ChannelMappingRecord:
    try:
      return await self._upsert_once(community_id, channel_id, board_id, list_id)
    except ConstraintViolation:
      # lost an insert race against another writer for the same key; the row exists now
      logger.info("Mapping insert raced for %s/%s, retrying as update", community_id, channel_id)
      return await self._upsert_once(community_id, channel_id, board_id, list_id)

  async def _upsert_once(self, community_id: str, channel_id: str, board_id: str, list_id: str) -> ChannelMappingRecord:
    async with self._sessions() as db:
      row = await self._find(db, community_id, channel_id)
      if row is not None:
        return await self._update(db, row, board_id, list_id)
    return await self.create(community_id, channel_id, board_id, list_id)

  async def _update(self, db: AsyncSession, row: ChannelMapping, board_id: str, list_id: str) -> ChannelMappingRecord:
    community_id, channel_id = row.community_id, row.channel_id
    previous = {"boardId": row.board_id, "listId": row.list_id}
    row.board_id = board_id
    row.list_id = list_id
    row.updated_at = utcnow()
    await write_audit(
      db,
      event_type="mapping.updated",
      entity_type="ChannelMapping",
      entity_id=row.id,
      community_id=community_id,
      channel_id=channel_id,
      board_id=board_id,
      payload={"listId": list_id, "previous": previous},
    )
    await db.commit()
    return ChannelMappingRecord.from_row(row)

  async def delete(self, community_id: str, channel_id: str) -> ChannelMappingRecord:
    async with self._sessions() as db:
      row = await self._find(db, community_id, channel_id)
      if not row:
        raise NotFound("No mapping for channel", community_id=community_id, channel_id=channel_id)
      removed = ChannelMappingRecord.from_row(row)
      await db.execute(delete(ChannelMapping).where(ChannelMapping.id == row.id))
      await write_audit(
        db,
        event_type="mapping.deleted",
        entity_type="ChannelMapping",
        entity_id=row.id,
        community_id=community_id,
        channel_id=channel_id,
        board_id=removed.board_id,
      )
      await db.commit()
      return removed

  async def list_by_board(self, board_id: str) -> list[ChannelMappingRecord]:
    async with self._sessions() as db:
      res = await db.execute(
        select(ChannelMapping)
        .where(ChannelMapping.board_id == board_id)
        .order_by(ChannelMapping.community_id.asc(), ChannelMapping.channel_id.asc())
      )
      return [ChannelMappingRecord.from_row(r) for r in res.scalars().all()]

  async def list_all(self, community_id: str | None = None) -> list[ChannelMappingRecord]:
    q = select(ChannelMapping).order_by(ChannelMapping.updated_at.desc(), ChannelMapping.channel_id.asc())
    if community_id is not None:
      q = q.where(ChannelMapping.community_id == community_id)
    async with self._sessions() as db:
      res = await db.execute(q)
      return [ChannelMappingRecord.from_row(r) for r in res.scalars().all()]

  async def get_default(self, community_id: str) -> DefaultMappingRecord | None:
    async with self._sessions() as db:
      res = await db.execute(select(DefaultMapping).where(DefaultMapping.community_id == community_id))
      row = res.scalar_one_or_none()
      return DefaultMappingRecord.from_row(row) if row else None

  async def set_default(
    self,
    community_id: str,
    board_id: str,
    list_id: str,
    notification_channel_id: str | None = None,
  ) -> DefaultMappingRecord:
    async with self._sessions() as db:
      res = await db.execute(select(DefaultMapping).where(DefaultMapping.community_id == community_id))
      row = res.scalar_one_or_none()
      if row is None:
        row = DefaultMapping(
          id=new_id(),
          community_id=community_id,
          board_id=board_id,
          list_id=list_id,
          notification_channel_id=notification_channel_id,
        )
        db.add(row)
      else:
        row.board_id = board_id
        row.list_id = list_id
        row.notification_channel_id = notification_channel_id
        row.updated_at = utcnow()
      await write_audit(
        db,
        event_type="default_mapping.set",
        entity_type="DefaultMapping",
        entity_id=row.id,
        community_id=community_id,
        channel_id=notification_channel_id,
        board_id=board_id,
        payload={"listId": list_id},
      )
      try:
        await db.commit()
      except IntegrityError as exc:
        await db.rollback()
        raise ConstraintViolation("Default mapping changed concurrently", community_id=community_id) from exc
      return DefaultMappingRecord.from_row(row)

  async def delete_default(self, community_id: str) -> DefaultMappingRecord:
    async with self._sessions() as db:
      res = await db.execute(select(DefaultMapping).where(DefaultMapping.community_id == community_id))
      row = res.scalar_one_or_none()
      if not row:
        raise NotFound("No default mapping for community", community_id=community_id)
      removed = DefaultMappingRecord.from_row(row)
      await db.execute(delete(DefaultMapping).where(DefaultMapping.id == row.id))
      await write_audit(
        db,
        event_type="default_mapping.deleted",
        entity_type="DefaultMapping",
        entity_id=row.id,
        community_id=community_id,
        board_id=removed.board_id,
      )
      await db.commit()
      return removed

  async def list_defaults_by_board(self, board_id: str) -> list[DefaultMappingRecord]:
    async with self._sessions() as db:
      res = await db.execute(
        select(DefaultMapping).where(DefaultMapping.board_id == board_id).order_by(DefaultMapping.community_id.asc())
      )
      return [DefaultMappingRecord.from_row(r) for r in res.scalars().all()]

  async def referenced_board_ids(self) -> set[str]:
    async with self._sessions() as db:
      channel_boards = (await db.execute(select(ChannelMapping.board_id).distinct())).scalars().all()
      default_boards = (await db.execute(select(DefaultMapping.board_id).distinct())).scalars().all()
    return {b for b in [*channel_boards, *default_boards] if b}
