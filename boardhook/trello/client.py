from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from boardhook.errors import UpstreamUnavailable


def normalize_base_url(base_url: str) -> str:
  b = (base_url or "").strip().rstrip("/")
  if not b:
    raise ValueError("baseUrl is required")
  if not (b.startswith("http://") or b.startswith("https://")):
    b = "https://" + b
  return b


class TrelloApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.details = details or {}

  @property
  def retryable(self) -> bool:
    return self.status_code == 429 or self.status_code >= 500


def _extract_trello_error(payload: Any) -> tuple[str, dict[str, Any]]:
  if isinstance(payload, dict):
    msg = str(payload.get("message") or payload.get("error") or "").strip() or "Trello request failed"
    return msg, {k: v for k, v in payload.items() if k in ("message", "error", "code")}
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500], {}
  return "Trello request failed", {}


async def _request_json(client: httpx.AsyncClient, method: str, path: str, *, log_path: str | None = None, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except (httpx.TimeoutException, httpx.TransportError) as exc:
    raise UpstreamUnavailable(f"Trello unreachable: {exc.__class__.__name__}", path=log_path or path) from exc
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    msg, details = _extract_trello_error(payload)
    raise TrelloApiError(status_code=r.status_code, message=msg, details=details)
  if r.status_code == 204 or not r.content:
    return None
  return r.json()


@dataclass
class TrelloAuth:
  api_key: str = field(repr=False)
  token: str = field(repr=False)
  base_url: str = "https://api.trello.com/1"
  timeout: float = 10.0

  def authorization(self) -> str:
    # credentials travel in a header so they never show up in request URLs
    return f'OAuth oauth_consumer_key="{self.api_key}", oauth_token="{self.token}"'

  def httpx_client(self, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    headers = {"Accept": "application/json", "User-Agent": "boardhook/0.1", "Authorization": self.authorization()}
    return httpx.AsyncClient(
      base_url=normalize_base_url(self.base_url), headers=headers, timeout=self.timeout, transport=transport
    )


class TrelloClient:
  """Thin async wrapper over the Trello REST endpoints this service uses."""

  def __init__(self, auth: TrelloAuth, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self.auth = auth
    self._transport = transport

  async def _call(self, method: str, path: str, *, log_path: str | None = None, **params: Any) -> Any:
    async with self.auth.httpx_client(self._transport) as client:
      return await _request_json(client, method, path, log_path=log_path, params=params or None)

  async def create_webhook(self, board_id: str, callback_url: str, description: str = "boardhook board webhook") -> str:
    data = await self._call("POST", "/webhooks", callbackURL=callback_url, idModel=board_id, description=description)
    if not isinstance(data, dict) or not data.get("id"):
      raise TrelloApiError(status_code=502, message="Trello did not return a webhook id")
    return str(data["id"])

  async def delete_webhook(self, external_id: str) -> None:
    await self._call("DELETE", f"/webhooks/{external_id}")

  async def list_webhooks(self) -> list[dict]:
    data = await self._call("GET", f"/tokens/{self.auth.token}/webhooks", log_path="/tokens/***/webhooks")
    return [w for w in (data or []) if isinstance(w, dict)]

  async def get_board(self, board_id: str) -> dict:
    return await self._call("GET", f"/boards/{board_id}", fields="name,url,closed")

  async def get_list(self, list_id: str) -> dict:
    return await self._call("GET", f"/lists/{list_id}", fields="name,idBoard,closed")

  async def get_board_lists(self, board_id: str) -> list[dict]:
    data = await self._call("GET", f"/boards/{board_id}/lists", filter="open")
    return [x for x in (data or []) if isinstance(x, dict)]
