from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

_DB_PATH = Path(tempfile.gettempdir()) / f"boardhook_test_{os.getpid()}.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["TRELLO_API_KEY"] = "test-key"
os.environ["TRELLO_API_TOKEN"] = "test-token"
os.environ["TRELLO_API_SECRET"] = "test-webhook-secret"
os.environ["PUBLIC_BASE_URL"] = "https://hooks.example.test"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["REGISTRY_BASE_DELAY_SECONDS"] = "0"
os.environ["DELIVERY_BASE_DELAY_SECONDS"] = "0"
os.environ["RECONCILE_ON_STARTUP"] = "false"
os.environ.pop("TRELLO_BOARD_ID", None)
os.environ.pop("TRELLO_LIST_ID", None)
os.environ.pop("REDIS_URL", None)

from boardhook.config import settings
from boardhook.db import SessionLocal, create_all, engine
from boardhook.deps import Services, build_services
from boardhook.main import app
from boardhook.metrics import runtime_metrics
from boardhook.models import AuditEvent, ChannelMapping, DefaultMapping, WebhookRegistration
from boardhook.notifications.service import DeliveryError, Notification
from boardhook.trello.client import TrelloApiError

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


class FakeTrello:
  """In-memory stand-in for TrelloClient; counts every upstream call."""

  def __init__(self) -> None:
    self.webhooks: dict[str, dict[str, Any]] = {}
    self.boards: dict[str, dict[str, Any]] = {}
    self.lists: dict[str, dict[str, Any]] = {}
    self.calls: list[tuple[str, str]] = []
    self.create_failures = 0
    self.create_error_status = 503
    self._seq = 0

  def add_board(self, board_id: str, name: str, lists: list[tuple[str, str]]) -> None:
    self.boards[board_id] = {"id": board_id, "name": name, "closed": False}
    for list_id, list_name in lists:
      self.lists[list_id] = {"id": list_id, "name": list_name, "idBoard": board_id, "closed": False}

  def upstream_hook(self, board_id: str, callback_url: str, hook_id: str | None = None) -> str:
    self._seq += 1
    hook_id = hook_id or f"wh{self._seq}"
    self.webhooks[hook_id] = {"id": hook_id, "idModel": board_id, "callbackURL": callback_url, "active": True}
    return hook_id

  def hooks_for(self, board_id: str) -> list[dict[str, Any]]:
    return [w for w in self.webhooks.values() if w["idModel"] == board_id]

  async def create_webhook(self, board_id: str, callback_url: str, description: str = "") -> str:
    self.calls.append(("create_webhook", board_id))
    if self.create_failures > 0:
      self.create_failures -= 1
      raise TrelloApiError(status_code=self.create_error_status, message="upstream failure")
    return self.upstream_hook(board_id, callback_url)

  async def delete_webhook(self, external_id: str) -> None:
    self.calls.append(("delete_webhook", external_id))
    if self.webhooks.pop(external_id, None) is None:
      raise TrelloApiError(status_code=404, message="webhook not found")

  async def list_webhooks(self) -> list[dict]:
    self.calls.append(("list_webhooks", ""))
    return [dict(w) for w in self.webhooks.values()]

  async def get_board(self, board_id: str) -> dict:
    self.calls.append(("get_board", board_id))
    if board_id not in self.boards:
      raise TrelloApiError(status_code=404, message="board not found")
    return self.boards[board_id]

  async def get_list(self, list_id: str) -> dict:
    self.calls.append(("get_list", list_id))
    if list_id not in self.lists:
      raise TrelloApiError(status_code=404, message="list not found")
    return self.lists[list_id]

  async def get_board_lists(self, board_id: str) -> list[dict]:
    self.calls.append(("get_board_lists", board_id))
    return [lst for lst in self.lists.values() if lst["idBoard"] == board_id]

  def external_calls(self) -> list[tuple[str, str]]:
    return [c for c in self.calls if c[0] in ("create_webhook", "delete_webhook")]


class RecordingSink:
  def __init__(self) -> None:
    self.sent: list[Notification] = []
    self.failing_channels: set[str] = set()
    self.transient_failures: dict[str, int] = {}

  async def send(self, notification: Notification) -> dict:
    channel = notification.target_channel_id
    if channel in self.failing_channels:
      raise DeliveryError("channel unavailable", retryable=True, status_code=503)
    if self.transient_failures.get(channel, 0) > 0:
      self.transient_failures[channel] -= 1
      raise DeliveryError("rate limited", retryable=True, status_code=429)
    self.sent.append(notification)
    return {"provider": "test", "status": "sent", "channelId": channel}

  def channels(self) -> list[str]:
    return [n.target_channel_id for n in self.sent]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  await create_all()
  async with SessionLocal() as db:
    await db.execute(delete(AuditEvent))
    await db.execute(delete(WebhookRegistration))
    await db.execute(delete(DefaultMapping))
    await db.execute(delete(ChannelMapping))
    await db.commit()
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests(anyio_backend: str) -> None:
  if "test" not in settings.database_url.rsplit("/", 1)[-1]:
    raise RuntimeError("Refusing to run destructive tests against a non-test database.")
  await _reset_db()
  runtime_metrics.reset_counters()
  yield
  await _reset_db()


@pytest.fixture
def trello() -> FakeTrello:
  fake = FakeTrello()
  fake.add_board("B0", "Default board", [("L0", "Inbox")])
  fake.add_board("B1", "Team board", [("L1", "To Do"), ("L1b", "Doing")])
  fake.add_board("B2", "Ops board", [("L2", "Queue")])
  return fake


@pytest.fixture
def sink() -> RecordingSink:
  return RecordingSink()


@pytest.fixture
async def services(trello: FakeTrello, sink: RecordingSink) -> Services:
  svc = build_services(settings, SessionLocal, trello=trello, sink=sink)
  yield svc
  await svc.close()


@pytest.fixture
async def client(services: Services) -> AsyncClient:
  app.state.services = services
  transport = ASGITransport(app=app)
  try:
    async with AsyncClient(transport=transport, base_url="http://localhost") as c:
      yield c
  finally:
    app.state.services = None
