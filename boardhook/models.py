from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class Base(DeclarativeBase):
  pass


class ChannelMapping(Base):
  __tablename__ = "channel_mappings"
  __table_args__ = (UniqueConstraint("community_id", "channel_id", name="ux_channel_mappings_community_channel"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  community_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  channel_id: Mapped[str] = mapped_column(String, nullable=False)
  board_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  list_id: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class DefaultMapping(Base):
  __tablename__ = "default_mappings"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  community_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  board_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  list_id: Mapped[str] = mapped_column(String, nullable=False)
  notification_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class WebhookRegistration(Base):
  __tablename__ = "webhook_registrations"
  __table_args__ = (UniqueConstraint("board_id", "callback_url", name="ux_webhook_registrations_board_callback"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  board_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  external_webhook_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  callback_url: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  community_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
  board_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
