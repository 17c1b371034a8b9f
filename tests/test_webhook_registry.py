from __future__ import annotations

import asyncio

import pytest

from boardhook.config import settings
from boardhook.db import SessionLocal
from boardhook.deps import Services
from boardhook.webhooks.registry import WebhookRegistry

from conftest import FakeTrello

CALLBACK = settings.callback_url()


async def _no_sleep(_: float) -> None:
  return None


def _registry(services: Services, trello: FakeTrello, *, max_attempts: int = 3) -> WebhookRegistry:
  return WebhookRegistry(
    SessionLocal,
    trello,
    services.resolver,
    callback_url=CALLBACK,
    max_attempts=max_attempts,
    base_delay=0,
    sleep=_no_sleep,
  )


@pytest.mark.anyio
async def test_reconcile_registers_referenced_boards_once(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "101", "B1", "L1")
  await services.resolver.set_default("42", "B0", "L0")

  report = await registry.reconcile()

  assert sorted(report.registered) == ["B0", "B1"]
  assert sorted(r.board_id for r in await registry.list_registrations()) == ["B0", "B1"]
  assert len(trello.hooks_for("B1")) == 1
  assert all(w["callbackURL"] == CALLBACK for w in trello.webhooks.values())


@pytest.mark.anyio
async def test_repeated_reconcile_without_changes_makes_no_external_calls(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await registry.reconcile()
  trello.calls.clear()

  for _ in range(3):
    report = await registry.reconcile()
    assert report.registered == [] and report.deregistered == []
  assert trello.calls == []


@pytest.mark.anyio
async def test_removing_last_mapping_deregisters_and_readding_registers_again(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "101", "B1", "L1")
  await registry.reconcile()
  first = await registry.get_registration("B1")

  await services.resolver.remove_mapping("42", "100")
  report = await registry.reconcile()
  assert report.deregistered == []
  assert await registry.get_registration("B1") == first

  await services.resolver.remove_mapping("42", "101")
  report = await registry.reconcile()
  assert report.deregistered == ["B1"]
  assert await registry.get_registration("B1") is None
  assert trello.hooks_for("B1") == []

  await services.resolver.set_mapping("42", "100", "B1", "L1")
  report = await registry.reconcile()
  assert report.registered == ["B1"]
  again = await registry.get_registration("B1")
  assert again is not None and again.external_webhook_id != first.external_webhook_id
  assert len(trello.hooks_for("B1")) == 1


@pytest.mark.anyio
async def test_concurrent_ensure_registered_creates_one_webhook(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  results = await asyncio.gather(*(registry.ensure_registered("B1") for _ in range(5)))
  assert len({r.external_webhook_id for r in results}) == 1
  assert [c for c in trello.calls if c[0] == "create_webhook"] == [("create_webhook", "B1")]


@pytest.mark.anyio
async def test_concurrent_reconcile_passes_do_not_duplicate(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "200", "B2", "L2")
  await asyncio.gather(registry.reconcile(), registry.reconcile(), registry.reconcile())
  assert len(trello.hooks_for("B1")) == 1
  assert len(trello.hooks_for("B2")) == 1


@pytest.mark.anyio
async def test_transient_registration_failure_is_retried(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello, max_attempts=3)
  trello.create_failures = 2
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  report = await registry.reconcile()
  assert report.registered == ["B1"]
  assert len([c for c in trello.calls if c[0] == "create_webhook"]) == 3


@pytest.mark.anyio
async def test_exhausted_retries_leave_board_unregistered_but_mapping_valid(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello, max_attempts=2)
  trello.create_failures = 5
  await services.resolver.set_mapping("42", "100", "B1", "L1")

  report = await registry.reconcile()

  assert report.failed == ["B1"]
  assert await registry.get_registration("B1") is None
  assert (await services.resolver.resolve("42", "100")).board_id == "B1"

  trello.create_failures = 0
  assert (await registry.reconcile()).registered == ["B1"]


@pytest.mark.anyio
async def test_auth_failure_is_not_retried(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello, max_attempts=4)
  trello.create_failures = 1
  trello.create_error_status = 401
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  report = await registry.reconcile()
  assert report.failed == ["B1"]
  assert len([c for c in trello.calls if c[0] == "create_webhook"]) == 1


@pytest.mark.anyio
async def test_deregister_tolerates_webhook_already_gone_upstream(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  rec = await registry.ensure_registered("B1")
  trello.webhooks.pop(rec.external_webhook_id)
  assert await registry.deregister("B1") is True
  assert await registry.get_registration("B1") is None
  assert await registry.deregister("B1") is False


@pytest.mark.anyio
async def test_startup_reconcile_aligns_with_upstream(services: Services, trello: FakeTrello) -> None:
  registry = _registry(services, trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "200", "B2", "L2")
  await services.resolver.set_mapping("42", "300", "B0", "L0")

  # B1: recorded locally but deleted upstream -> recreated
  lost = await registry.ensure_registered("B1")
  trello.webhooks.pop(lost.external_webhook_id)
  # B2: exists upstream only -> adopted
  adopted_id = trello.upstream_hook("B2", CALLBACK)
  # B0: upstream twice -> one adopted, the duplicate removed
  trello.upstream_hook("B0", CALLBACK)
  trello.upstream_hook("B0", CALLBACK)
  # unreferenced board upstream -> removed
  orphan_id = trello.upstream_hook("B9", CALLBACK)
  # someone else's webhook -> untouched
  foreign_id = trello.upstream_hook("B9", "https://elsewhere.example/hook")

  report = await registry.reconcile_with_upstream()

  assert report.dropped_local == ["B1"]
  assert report.registered == ["B1"]
  assert sorted(report.adopted) == ["B0", "B2"]
  assert orphan_id in report.removed_upstream
  assert len(report.removed_upstream) == 2
  assert foreign_id in trello.webhooks
  assert (await registry.get_registration("B2")).external_webhook_id == adopted_id
  for board in ("B0", "B1", "B2"):
    assert len([w for w in trello.hooks_for(board) if w["callbackURL"] == CALLBACK]) == 1

  health = await registry.health_check()
  assert health["total"] == 3
  assert health["active"] == 3
  assert health["upstreamCount"] == 3
  assert health["healthy"] is True


@pytest.mark.anyio
async def test_reconcile_without_callback_url_is_skipped(services: Services, trello: FakeTrello) -> None:
  registry = WebhookRegistry(SessionLocal, trello, services.resolver, callback_url=None)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  report = await registry.reconcile()
  assert report.skipped
  assert trello.calls == []


class GatedTrello(FakeTrello):
  """Holds create/delete calls open until the test releases them."""

  def __init__(self, source: FakeTrello) -> None:
    super().__init__()
    self.boards = source.boards
    self.lists = source.lists
    self.gate_creates = False
    self.gate_deletes = False
    self.entered = asyncio.Event()
    self.release = asyncio.Event()

  async def _hold(self) -> None:
    self.entered.set()
    await self.release.wait()

  async def create_webhook(self, board_id: str, callback_url: str, description: str = "") -> str:
    if self.gate_creates:
      await self._hold()
    return await super().create_webhook(board_id, callback_url, description)

  async def delete_webhook(self, external_id: str) -> None:
    if self.gate_deletes:
      await self._hold()
    await super().delete_webhook(external_id)


@pytest.mark.anyio
async def test_mapping_readded_during_deregistration_keeps_board_registered(services: Services, trello: FakeTrello) -> None:
  gated = GatedTrello(trello)
  registry = _registry(services, gated)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await registry.reconcile()

  await services.resolver.remove_mapping("42", "100")
  gated.gate_deletes = True
  first = asyncio.create_task(registry.reconcile())
  await gated.entered.wait()

  await services.resolver.set_mapping("42", "100", "B1", "L1")
  gated.gate_deletes = False
  second = asyncio.create_task(registry.reconcile())
  await asyncio.sleep(0)
  gated.release.set()
  first_report, second_report = await asyncio.gather(first, second)

  assert first_report.deregistered == ["B1"]
  assert first_report.registered == ["B1"]
  assert second_report.registered == []
  rec = await registry.get_registration("B1")
  assert rec is not None
  assert [w["id"] for w in gated.hooks_for("B1")] == [rec.external_webhook_id]


@pytest.mark.anyio
async def test_newer_pass_supersedes_older_one(services: Services, trello: FakeTrello) -> None:
  gated = GatedTrello(trello)
  registry = _registry(services, gated)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "200", "B2", "L2")

  gated.gate_creates = True
  first = asyncio.create_task(registry.reconcile())
  await gated.entered.wait()
  second = asyncio.create_task(registry.reconcile())
  await asyncio.sleep(0)
  gated.release.set()
  first_report, second_report = await asyncio.gather(first, second)

  assert first_report.superseded is True
  assert first_report.registered == ["B1"]
  assert second_report.superseded is False
  assert second_report.registered == ["B2"]
  assert len(gated.hooks_for("B1")) == 1
  assert len(gated.hooks_for("B2")) == 1


@pytest.mark.anyio
async def test_cancelled_caller_still_records_issued_registration(services: Services, trello: FakeTrello) -> None:
  gated = GatedTrello(trello)
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  gated.gate_creates = True
  registry = _registry(services, gated)

  caller = asyncio.create_task(registry.ensure_registered("B1"))
  await gated.entered.wait()
  caller.cancel()
  gated.release.set()
  with pytest.raises(asyncio.CancelledError):
    await caller

  rec = await registry.get_registration("B1")
  assert rec is not None
  assert [w["id"] for w in gated.hooks_for("B1")] == [rec.external_webhook_id]

  gated.calls.clear()
  assert (await registry.reconcile()).registered == []
  assert gated.external_calls() == []
