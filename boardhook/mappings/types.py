from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from boardhook.models import ChannelMapping, DefaultMapping


@dataclass(frozen=True)
class ChannelMappingRecord:
  community_id: str
  channel_id: str
  board_id: str
  list_id: str
  created_at: datetime | None = None
  updated_at: datetime | None = None

  @classmethod
  def from_row(cls, row: ChannelMapping) -> "ChannelMappingRecord":
    return cls(
      community_id=row.community_id,
      channel_id=row.channel_id,
      board_id=row.board_id,
      list_id=row.list_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )


@dataclass(frozen=True)
class DefaultMappingRecord:
  community_id: str
  board_id: str
  list_id: str
  notification_channel_id: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None

  @classmethod
  def from_row(cls, row: DefaultMapping) -> "DefaultMappingRecord":
    return cls(
      community_id=row.community_id,
      board_id=row.board_id,
      list_id=row.list_id,
      notification_channel_id=row.notification_channel_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
    )


@dataclass(frozen=True)
class Resolution:
  """Where a channel's cards go, and which layer answered."""

  board_id: str
  list_id: str
  source: str  # channel | default | environment


@dataclass(frozen=True)
class ChannelTarget:
  community_id: str
  channel_id: str
