from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from boardhook.mappings.types import ChannelMappingRecord, DefaultMappingRecord
from boardhook.webhooks.registry import RegistrationRecord


def _strip_id(value: object) -> object:
  if isinstance(value, str):
    s = value.strip()
    return s or None
  return value


class WebhookAcceptedOut(BaseModel):
  ok: bool = True
  eventKey: str


class MappingOut(BaseModel):
  communityId: str
  channelId: str
  boardId: str
  listId: str
  createdAt: datetime | None = None
  updatedAt: datetime | None = None

  @classmethod
  def from_record(cls, r: ChannelMappingRecord) -> "MappingOut":
    return cls(
      communityId=r.community_id,
      channelId=r.channel_id,
      boardId=r.board_id,
      listId=r.list_id,
      createdAt=r.created_at,
      updatedAt=r.updated_at,
    )


class DefaultMappingOut(BaseModel):
  communityId: str
  boardId: str
  listId: str
  notificationChannelId: str | None = None
  updatedAt: datetime | None = None

  @classmethod
  def from_record(cls, r: DefaultMappingRecord) -> "DefaultMappingOut":
    return cls(
      communityId=r.community_id,
      boardId=r.board_id,
      listId=r.list_id,
      notificationChannelId=r.notification_channel_id,
      updatedAt=r.updated_at,
    )


class ResolutionOut(BaseModel):
  boardId: str
  listId: str
  source: Literal["channel", "default", "environment"]


class MappingLookupOut(BaseModel):
  explicit: MappingOut | None = None
  resolved: ResolutionOut


class MappingSetIn(BaseModel):
  boardId: str = Field(min_length=1, max_length=64)
  listId: str | None = Field(default=None, max_length=64)

  @field_validator("boardId", "listId", mode="before")
  @classmethod
  def strip_ids(cls, v: object) -> object:
    return _strip_id(v)


class DefaultMappingSetIn(BaseModel):
  boardId: str = Field(min_length=1, max_length=64)
  listId: str | None = Field(default=None, max_length=64)
  notificationChannelId: str | None = Field(default=None, max_length=64)

  @field_validator("boardId", "listId", "notificationChannelId", mode="before")
  @classmethod
  def strip_ids(cls, v: object) -> object:
    return _strip_id(v)


class CommandOut(BaseModel):
  status: Literal["ok", "degraded"]
  message: str | None = None
  mapping: MappingOut | None = None
  defaultMapping: DefaultMappingOut | None = None
  boardName: str | None = None
  listName: str | None = None
  reconcile: dict[str, Any] | None = None


class MappingSummaryOut(BaseModel):
  hasDefault: bool
  mappingCount: int
  recentMappings: list[MappingOut]
  isConfigured: bool


class MappingListOut(BaseModel):
  communityId: str
  mappings: list[MappingOut]
  defaultMapping: DefaultMappingOut | None = None
  summary: MappingSummaryOut


class RegistrationOut(BaseModel):
  boardId: str
  externalWebhookId: str
  callbackUrl: str
  description: str | None = None
  createdAt: datetime | None = None

  @classmethod
  def from_record(cls, r: RegistrationRecord) -> "RegistrationOut":
    return cls(
      boardId=r.board_id,
      externalWebhookId=r.external_webhook_id,
      callbackUrl=r.callback_url,
      description=r.description,
      createdAt=r.created_at,
    )


class WebhookHealthOut(BaseModel):
  total: int
  active: int
  upstreamCount: int | None = None
  healthy: bool
  error: str | None = None


class StatusOut(BaseModel):
  generatedAt: datetime
  version: str
  buildSha: str
  runtime: dict[str, Any]
  mappingCache: dict[str, Any]
  dedupEntries: int
  notificationProvider: str
