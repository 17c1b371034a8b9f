from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from boardhook.errors import InvalidRequest
from boardhook.mappings.resolver import MappingResolver
from boardhook.mappings.types import ChannelMappingRecord, DefaultMappingRecord, Resolution
from boardhook.trello.service import BoardTarget, BoardValidator
from boardhook.webhooks.registry import ReconcileReport, WebhookRegistry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_DEGRADED = "degraded"


@dataclass
class CommandResult:
  status: str
  record: ChannelMappingRecord | DefaultMappingRecord | None = None
  target: BoardTarget | None = None
  reconcile: ReconcileReport | None = None
  message: str | None = None


class MappingService:
  """
  Configuration commands issued from the chat layer.

  Every mutation is followed by a webhook reconcile. The caller waits for it at
  most ``command_timeout`` seconds; past that the command still succeeds with a
  degraded status and the reconcile keeps running in the background.
  """

  def __init__(
    self,
    resolver: MappingResolver,
    registry: WebhookRegistry,
    validator: BoardValidator | None = None,
    *,
    command_timeout: float = 3.0,
  ) -> None:
    self.resolver = resolver
    self.registry = registry
    self.validator = validator
    self.command_timeout = command_timeout
    self._background: set[asyncio.Task] = set()

  async def _validate(self, board_id: str, list_id: str | None) -> BoardTarget:
    if self.validator is None:
      if not list_id:
        raise InvalidRequest("listId is required when board validation is disabled", board_id=board_id)
      return BoardTarget(board_id=board_id, list_id=list_id)
    return await self.validator.validate(board_id, list_id)

  async def _reconcile_bounded(self) -> tuple[str, ReconcileReport | None, str | None]:
    task = asyncio.create_task(self.registry.reconcile())
    self._background.add(task)
    task.add_done_callback(self._reconcile_done)
    try:
      report = await asyncio.wait_for(asyncio.shield(task), timeout=self.command_timeout)
    except asyncio.TimeoutError:
      logger.warning("Webhook reconcile still running after %.1fs; continuing in background", self.command_timeout)
      return STATUS_DEGRADED, None, "Mapping saved; notification registration is pending."
    except Exception:
      # logged by _reconcile_done; the mapping itself is already committed
      return STATUS_DEGRADED, None, "Mapping saved; notification registration failed and will be retried on the next change."
    if report.failed:
      return STATUS_DEGRADED, report, "Mapping saved; live notifications could not be registered for some boards."
    return STATUS_OK, report, None

  def _reconcile_done(self, task: asyncio.Task) -> None:
    self._background.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Background webhook reconcile failed: %s", exc)

  async def drain(self) -> None:
    """Wait for background reconcile passes; used on shutdown and in tests."""
    if self._background:
      await asyncio.gather(*list(self._background), return_exceptions=True)

  async def get_mapping(self, community_id: str, channel_id: str) -> tuple[ChannelMappingRecord | None, Resolution]:
    explicit = await self.resolver.lookup(community_id, channel_id)
    resolution = await self.resolver.resolve(community_id, channel_id)
    return explicit, resolution

  async def set_mapping(self, community_id: str, channel_id: str, board_id: str, list_id: str | None = None) -> CommandResult:
    target = await self._validate(board_id, list_id)
    record = await self.resolver.set_mapping(community_id, channel_id, target.board_id, target.list_id)
    logger.info("Mapped channel %s/%s to board %s list %s", community_id, channel_id, target.board_id, target.list_id)
    status, report, message = await self._reconcile_bounded()
    return CommandResult(status=status, record=record, target=target, reconcile=report, message=message)

  async def remove_mapping(self, community_id: str, channel_id: str) -> CommandResult:
    record = await self.resolver.remove_mapping(community_id, channel_id)
    logger.info("Removed mapping for channel %s/%s (board %s)", community_id, channel_id, record.board_id)
    status, report, message = await self._reconcile_bounded()
    return CommandResult(status=status, record=record, reconcile=report, message=message)

  async def set_default_mapping(
    self,
    community_id: str,
    board_id: str,
    list_id: str | None = None,
    notification_channel_id: str | None = None,
  ) -> CommandResult:
    target = await self._validate(board_id, list_id)
    record = await self.resolver.set_default(community_id, target.board_id, target.list_id, notification_channel_id)
    logger.info("Default for community %s set to board %s list %s", community_id, target.board_id, target.list_id)
    status, report, message = await self._reconcile_bounded()
    return CommandResult(status=status, record=record, target=target, reconcile=report, message=message)

  async def remove_default_mapping(self, community_id: str) -> CommandResult:
    record = await self.resolver.remove_default(community_id)
    status, report, message = await self._reconcile_bounded()
    return CommandResult(status=status, record=record, reconcile=report, message=message)

  async def list_mappings(self, community_id: str) -> tuple[list[ChannelMappingRecord], DefaultMappingRecord | None]:
    mappings = await self.resolver.store.list_all(community_id)
    default = await self.resolver.store.get_default(community_id)
    return mappings, default

  async def summary(self, community_id: str) -> dict[str, Any]:
    mappings, default = await self.list_mappings(community_id)
    return {
      "hasDefault": default is not None,
      "mappingCount": len(mappings),
      "recentMappings": mappings[:5],
      "isConfigured": default is not None or bool(mappings) or self.resolver.environment_default is not None,
    }
