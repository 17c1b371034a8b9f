from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boardhook.config import Settings
from boardhook.events.dedup import EventDeduplicator, SeenSet
from boardhook.events.router import EventRouter
from boardhook.mappings.cache import MappingCache
from boardhook.mappings.resolver import MappingResolver
from boardhook.mappings.service import MappingService
from boardhook.mappings.store import MappingStore
from boardhook.metrics import runtime_metrics
from boardhook.notifications.service import NotificationSink, sink_for
from boardhook.security import verify_bearer
from boardhook.trello.client import TrelloAuth, TrelloClient
from boardhook.trello.service import BoardValidator
from boardhook.webhooks.registry import WebhookRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
  settings: Settings
  store: MappingStore
  cache: MappingCache
  resolver: MappingResolver
  trello: TrelloClient
  validator: BoardValidator
  registry: WebhookRegistry
  mappings: MappingService
  dedup: EventDeduplicator
  sink: NotificationSink
  router: EventRouter

  async def close(self) -> None:
    await self.mappings.drain()
    await self.dedup.close()


def build_services(
  cfg: Settings,
  session_factory: async_sessionmaker[AsyncSession],
  *,
  trello: TrelloClient | None = None,
  sink: NotificationSink | None = None,
) -> Services:
  if trello is None:
    if not (cfg.trello_api_key and cfg.trello_api_token):
      logger.warning("TRELLO_API_KEY/TRELLO_API_TOKEN not set; board validation and webhook registration will fail")
    trello = TrelloClient(
      TrelloAuth(
        api_key=cfg.trello_api_key or "",
        token=cfg.trello_api_token or "",
        base_url=cfg.trello_base_url,
        timeout=cfg.trello_timeout_seconds,
      )
    )
  if sink is None:
    sink = sink_for(cfg.notification_provider, bot_token=cfg.discord_bot_token, base_url=cfg.discord_api_base_url)

  store = MappingStore(session_factory)
  cache = MappingCache(ttl_seconds=cfg.mapping_cache_ttl_seconds, max_keys=cfg.mapping_cache_max_keys)
  resolver = MappingResolver(store, cache, environment_default=cfg.environment_default())
  validator = BoardValidator(trello, ttl_seconds=cfg.board_validation_ttl_seconds)
  registry = WebhookRegistry(
    session_factory,
    trello,
    resolver,
    callback_url=cfg.callback_url(),
    max_attempts=cfg.registry_max_attempts,
    base_delay=cfg.registry_base_delay_seconds,
  )
  mappings = MappingService(resolver, registry, validator, command_timeout=cfg.config_command_timeout_seconds)
  dedup = EventDeduplicator(
    SeenSet(window_seconds=cfg.dedup_window_seconds, max_entries=cfg.dedup_max_entries),
    redis_url=cfg.redis_url,
  )
  router = EventRouter(
    resolver,
    sink,
    dedup,
    max_attempts=cfg.delivery_max_attempts,
    base_delay=cfg.delivery_base_delay_seconds,
    timeout=cfg.delivery_timeout_seconds,
    metrics=runtime_metrics,
  )
  return Services(
    settings=cfg,
    store=store,
    cache=cache,
    resolver=resolver,
    trello=trello,
    validator=validator,
    registry=registry,
    mappings=mappings,
    dedup=dedup,
    sink=sink,
    router=router,
  )


def get_services(request: Request) -> Services:
  services = getattr(request.app.state, "services", None)
  if services is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
  return services


async def require_admin(request: Request) -> None:
  services = get_services(request)
  if not services.settings.admin_token:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin API not configured")
  if not verify_bearer(request.headers.get("authorization"), services.settings.admin_token):
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")
