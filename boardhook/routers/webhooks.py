from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from boardhook.config import settings
from boardhook.deps import Services, get_services
from boardhook.errors import MalformedEvent, Unauthorized
from boardhook.events.router import EventRouter
from boardhook.events.types import InboundEvent, parse_event
from boardhook.metrics import runtime_metrics
from boardhook.schemas import WebhookAcceptedOut
from boardhook.security import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


async def _route_in_background(event_router: EventRouter, event: InboundEvent) -> None:
  try:
    result = await event_router.route(event)
  except Exception:
    logger.exception("Routing failed: board=%s event=%s key=%s", event.board_id, event.action_type, event.dedup_key())
    runtime_metrics.incr("events.route_errors")
    return
  logger.info(
    "Routed %s for board %s: %s (%d/%d delivered)",
    event.action_type,
    event.board_id,
    result.outcome.value,
    result.delivered_count,
    len(result.deliveries),
  )


@router.head(settings.webhook_path)
async def trello_callback_check() -> Response:
  # Trello sends HEAD to the callback URL before it accepts a new webhook
  return Response(status_code=200)


@router.post(settings.webhook_path, response_model=WebhookAcceptedOut)
async def receive_trello_webhook(
  request: Request,
  background_tasks: BackgroundTasks,
  services: Services = Depends(get_services),
) -> WebhookAcceptedOut:
  raw = await request.body()
  cfg = services.settings
  if cfg.webhook_require_signature:
    callback = cfg.callback_url()
    if not callback or not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), cfg.trello_api_secret, callback):
      runtime_metrics.incr("webhooks.rejected")
      logger.warning("Rejected webhook with invalid or missing signature from %s", request.client.host if request.client else "?")
      raise Unauthorized("Invalid webhook signature")

  try:
    payload = json.loads(raw)
  except ValueError as exc:
    raise MalformedEvent("Body is not valid JSON") from exc
  event = parse_event(payload)

  runtime_metrics.incr("webhooks.accepted")
  background_tasks.add_task(_route_in_background, services.router, event)
  return WebhookAcceptedOut(eventKey=event.dedup_key())
