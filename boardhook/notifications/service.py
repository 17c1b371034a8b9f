from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
  target_channel_id: str
  title: str
  body: str
  color: int
  link: str | None = None
  fields: tuple[tuple[str, str], ...] = field(default_factory=tuple)
  timestamp: str | None = None
  community_id: str | None = None


class DeliveryError(RuntimeError):
  def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
    super().__init__(message)
    self.retryable = retryable
    self.status_code = status_code


class NotificationSink(Protocol):
  async def send(self, notification: Notification) -> dict[str, Any]: ...


class LocalNotificationSink:
  """Logs notifications instead of posting them; used when no chat token is configured."""

  async def send(self, notification: Notification) -> dict[str, Any]:
    logger.info("Notification for channel %s: %s", notification.target_channel_id, notification.title)
    return {"provider": "local", "status": "sent", "channelId": notification.target_channel_id}


def discord_embed(notification: Notification) -> dict[str, Any]:
  embed: dict[str, Any] = {
    "title": notification.title[:256],
    "description": notification.body[:4096],
    "color": int(notification.color),
    "footer": {"text": "Trello"},
  }
  if notification.link:
    embed["url"] = notification.link
  if notification.timestamp:
    embed["timestamp"] = notification.timestamp
  if notification.fields:
    embed["fields"] = [{"name": n[:256], "value": (v or "-")[:1024], "inline": False} for n, v in notification.fields[:25]]
  return embed


class DiscordNotificationSink:
  def __init__(
    self,
    *,
    bot_token: str,
    base_url: str = "https://discord.com/api/v10",
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    if not bot_token:
      raise ValueError("Discord bot token is required")
    self.bot_token = bot_token
    self.base_url = base_url.rstrip("/")
    self.timeout = timeout
    self._transport = transport

  async def send(self, notification: Notification) -> dict[str, Any]:
    headers = {"Authorization": f"Bot {self.bot_token}", "User-Agent": "boardhook (https://github.com, 0.1)"}
    url = f"{self.base_url}/channels/{notification.target_channel_id}/messages"
    try:
      async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
        r = await client.post(url, json={"embeds": [discord_embed(notification)]}, headers=headers)
    except (httpx.TimeoutException, httpx.TransportError) as exc:
      raise DeliveryError(f"Discord unreachable: {exc.__class__.__name__}") from exc
    if r.status_code >= 400:
      retryable = r.status_code == 429 or r.status_code >= 500
      raise DeliveryError(f"Discord rejected message ({r.status_code})", retryable=retryable, status_code=r.status_code)
    try:
      data = r.json() if r.content else {}
    except ValueError:
      logger.warning("Discord accepted message for channel %s with a non-JSON body", notification.target_channel_id)
      data = {}
    message_id = data.get("id") if isinstance(data, dict) else None
    return {"provider": "discord", "status": "sent", "messageId": message_id}


def sink_for(provider: str, *, bot_token: str | None = None, base_url: str | None = None) -> NotificationSink:
  if provider == "discord" and bot_token:
    return DiscordNotificationSink(bot_token=bot_token, base_url=base_url or "https://discord.com/api/v10")
  if provider == "discord":
    logger.warning("Discord notifications requested but DISCORD_BOT_TOKEN is empty; using local sink")
  return LocalNotificationSink()
