from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from boardhook.models import AuditEvent


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  community_id: str | None = None,
  channel_id: str | None = None,
  board_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> None:
  """Stage a configuration-change record on ``db``; it commits with the change itself."""
  db.add(
    AuditEvent(
      event_type=event_type,
      entity_type=entity_type,
      entity_id=entity_id,
      community_id=community_id,
      channel_id=channel_id,
      board_id=board_id,
      payload=jsonable_encoder(payload or {}),
    )
  )
