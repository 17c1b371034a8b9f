from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boardhook.errors import BoardhookError, UpstreamUnavailable
from boardhook.mappings.resolver import MappingResolver
from boardhook.models import WebhookRegistration, new_id
from boardhook.retry import RetryExhausted, retry_with_backoff
from boardhook.trello.client import TrelloApiError, TrelloClient

logger = logging.getLogger(__name__)

UPSTREAM_ERRORS = (TrelloApiError, UpstreamUnavailable)

_DONE = "done"
_UNCHANGED = "unchanged"
_SUPERSEDED = "superseded"
_REPLACED = "replaced"


def _retryable(exc: BaseException) -> bool:
  if isinstance(exc, TrelloApiError):
    return exc.retryable
  return True


@dataclass(frozen=True)
class RegistrationRecord:
  board_id: str
  external_webhook_id: str
  callback_url: str
  description: str | None = None
  created_at: datetime | None = None

  @classmethod
  def from_row(cls, row: WebhookRegistration) -> "RegistrationRecord":
    return cls(
      board_id=row.board_id,
      external_webhook_id=row.external_webhook_id,
      callback_url=row.callback_url,
      description=row.description,
      created_at=row.created_at,
    )


@dataclass
class ReconcileReport:
  registered: list[str] = field(default_factory=list)
  deregistered: list[str] = field(default_factory=list)
  failed: list[str] = field(default_factory=list)
  adopted: list[str] = field(default_factory=list)
  removed_upstream: list[str] = field(default_factory=list)
  dropped_local: list[str] = field(default_factory=list)
  superseded: bool = False
  skipped: str | None = None

  def as_dict(self) -> dict[str, Any]:
    return {
      "registered": self.registered,
      "deregistered": self.deregistered,
      "failed": self.failed,
      "adopted": self.adopted,
      "removedUpstream": self.removed_upstream,
      "droppedLocal": self.dropped_local,
      "superseded": self.superseded,
      "skipped": self.skipped,
    }


class WebhookRegistry:
  """
  Keeps exactly one Trello webhook per board that some mapping references.

  Registration and deregistration for a board run under that board's lock, so
  concurrent reconcile passes never create two upstream webhooks for it.
  """

  def __init__(
    self,
    session_factory: async_sessionmaker[AsyncSession],
    client: TrelloClient,
    resolver: MappingResolver,
    *,
    callback_url: str | None,
    max_attempts: int = 4,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
  ) -> None:
    self._sessions = session_factory
    self.client = client
    self.resolver = resolver
    self.callback_url = callback_url
    self.max_attempts = max_attempts
    self.base_delay = base_delay
    self._sleep = sleep
    self._board_locks: dict[str, asyncio.Lock] = {}
    self._generation = 0

  def _lock_for(self, board_id: str) -> asyncio.Lock:
    lock = self._board_locks.get(board_id)
    if lock is None:
      lock = self._board_locks[board_id] = asyncio.Lock()
    return lock

  async def _retry(self, func: Callable[[], Awaitable[Any]], label: str) -> Any:
    return await retry_with_backoff(
      func,
      max_attempts=self.max_attempts,
      base_delay=self.base_delay,
      retry_on=UPSTREAM_ERRORS,
      should_retry=_retryable,
      label=label,
      sleep=self._sleep,
    )

  async def get_registration(self, board_id: str) -> RegistrationRecord | None:
    async with self._sessions() as db:
      res = await db.execute(select(WebhookRegistration).where(WebhookRegistration.board_id == board_id))
      row = res.scalars().first()
      return RegistrationRecord.from_row(row) if row else None

  async def list_registrations(self) -> list[RegistrationRecord]:
    async with self._sessions() as db:
      res = await db.execute(select(WebhookRegistration).order_by(WebhookRegistration.created_at.asc()))
      return [RegistrationRecord.from_row(r) for r in res.scalars().all()]

  async def _record(self, board_id: str, external_id: str, description: str) -> RegistrationRecord | None:
    async with self._sessions() as db:
      row = WebhookRegistration(
        id=new_id(),
        board_id=board_id,
        external_webhook_id=external_id,
        callback_url=self.callback_url,
        description=description,
      )
      db.add(row)
      try:
        await db.commit()
      except IntegrityError:
        await db.rollback()
        return None
      return RegistrationRecord.from_row(row)

  async def _forget(self, external_id: str) -> None:
    async with self._sessions() as db:
      await db.execute(delete(WebhookRegistration).where(WebhookRegistration.external_webhook_id == external_id))
      await db.commit()

  async def _create_and_record(self, board_id: str) -> RegistrationRecord:
    description = f"boardhook board {board_id}"
    external_id = await self._retry(
      lambda: self.client.create_webhook(board_id, self.callback_url, description),
      label=f"register webhook for board {board_id}",
    )
    record = await self._record(board_id, external_id, description)
    if record is not None:
      logger.info("Registered webhook %s for board %s", external_id, board_id)
      return record

    # another process recorded this board first; drop the upstream webhook we just made
    existing = await self.get_registration(board_id)
    logger.info("Board %s was registered concurrently; removing extra webhook %s", board_id, external_id)
    try:
      await self.client.delete_webhook(external_id)
    except UPSTREAM_ERRORS as e:
      logger.warning("Could not remove extra webhook %s for board %s: %s", external_id, board_id, e)
    if existing is None:
      raise BoardhookError("Webhook registration conflict", board_id=board_id)
    return existing

  async def _create_shielded(self, board_id: str) -> RegistrationRecord:
    # once the upstream create is issued it is recorded even if the caller goes away;
    # the board lock stays held until then
    task = asyncio.ensure_future(self._create_and_record(board_id))
    try:
      return await asyncio.shield(task)
    except asyncio.CancelledError:
      await asyncio.wait([task])
      if not task.cancelled() and task.exception() is not None:
        logger.warning("Webhook registration for board %s failed after its caller went away: %s", board_id, task.exception())
      raise

  async def ensure_registered(self, board_id: str) -> RegistrationRecord:
    if not self.callback_url:
      raise BoardhookError("PUBLIC_BASE_URL is not configured; cannot register webhooks", board_id=board_id)
    async with self._lock_for(board_id):
      existing = await self.get_registration(board_id)
      if existing is not None:
        return existing
      return await self._create_shielded(board_id)

  async def _delete_registration(self, existing: RegistrationRecord) -> None:
    async def _delete() -> None:
      try:
        await self.client.delete_webhook(existing.external_webhook_id)
      except TrelloApiError as e:
        if e.status_code != 404:
          raise
        logger.info("Webhook %s for board %s was already gone upstream", existing.external_webhook_id, existing.board_id)

    await self._retry(_delete, label=f"deregister webhook for board {existing.board_id}")
    await self._forget(existing.external_webhook_id)
    logger.info("Deregistered webhook %s for board %s", existing.external_webhook_id, existing.board_id)

  async def deregister(self, board_id: str) -> bool:
    async with self._lock_for(board_id):
      existing = await self.get_registration(board_id)
      if existing is None:
        return False
      await self._delete_registration(existing)
      return True

  async def _register_for_pass(self, board_id: str, generation: int) -> str:
    async with self._lock_for(board_id):
      if generation != self._generation:
        return _SUPERSEDED
      if board_id not in await self.resolver.referenced_board_ids():
        return _UNCHANGED
      if await self.get_registration(board_id) is not None:
        return _UNCHANGED
      await self._create_shielded(board_id)
      return _DONE

  async def _deregister_for_pass(self, board_id: str, generation: int) -> str:
    async with self._lock_for(board_id):
      if generation != self._generation:
        return _SUPERSEDED
      # a mapping added since the pass started wins over the stale snapshot
      if board_id in await self.resolver.referenced_board_ids():
        return _UNCHANGED
      existing = await self.get_registration(board_id)
      if existing is None:
        return _UNCHANGED
      await self._delete_registration(existing)
      # the board may have been mapped again while the delete was in flight
      if board_id in await self.resolver.referenced_board_ids():
        await self._create_shielded(board_id)
        return _REPLACED
      return _DONE

  async def reconcile(self) -> ReconcileReport:
    """
    Register boards that are referenced but unregistered and deregister boards
    nobody references any more. With nothing to change it makes no Trello calls.
    """
    self._generation += 1
    generation = self._generation
    report = ReconcileReport()
    if not self.callback_url:
      report.skipped = "callback url not configured"
      logger.warning("Skipping webhook reconciliation: PUBLIC_BASE_URL is not configured")
      return report

    referenced = await self.resolver.referenced_board_ids()
    registered = {r.board_id for r in await self.list_registrations()}
    missing = sorted(referenced - registered)
    stale = sorted(registered - referenced)

    for board_id in missing:
      try:
        outcome = await self._register_for_pass(board_id, generation)
      except (RetryExhausted, TrelloApiError, BoardhookError) as e:
        logger.warning(
          "Webhook registration for board %s failed; live notifications are disabled for it until the next reconcile: %s",
          board_id,
          e,
        )
        report.failed.append(board_id)
        continue
      if outcome == _SUPERSEDED:
        report.superseded = True
        break
      if outcome == _DONE:
        report.registered.append(board_id)

    for board_id in stale:
      if report.superseded:
        break
      try:
        outcome = await self._deregister_for_pass(board_id, generation)
      except (RetryExhausted, TrelloApiError, BoardhookError) as e:
        logger.warning("Webhook deregistration for board %s failed: %s", board_id, e)
        report.failed.append(board_id)
        continue
      if outcome == _SUPERSEDED:
        report.superseded = True
        break
      if outcome in (_DONE, _REPLACED):
        report.deregistered.append(board_id)
      if outcome == _REPLACED:
        report.registered.append(board_id)

    if report.superseded:
      logger.info("Reconcile pass %d superseded by a newer pass", generation)
    return report

  async def _upstream_webhooks(self) -> list[dict]:
    hooks = await self._retry(self.client.list_webhooks, label="list upstream webhooks")
    return [w for w in hooks if w.get("callbackURL") == self.callback_url]

  async def reconcile_with_upstream(self) -> ReconcileReport:
    """
    Startup pass: align local records with what Trello actually has for our
    callback URL, then run a normal reconcile.

    Local records missing upstream are dropped (and recreated by the reconcile
    when still referenced). Upstream webhooks for referenced boards that we
    have no record of are adopted; the rest, including duplicates, are deleted.
    """
    if not self.callback_url:
      return await self.reconcile()

    upstream = await self._upstream_webhooks()
    upstream_ids = {str(w.get("id")) for w in upstream}
    referenced = await self.resolver.referenced_board_ids()

    dropped: list[str] = []
    known_ids: set[str] = set()
    known_boards: set[str] = set()
    for rec in await self.list_registrations():
      if rec.external_webhook_id not in upstream_ids:
        await self._forget(rec.external_webhook_id)
        dropped.append(rec.board_id)
        logger.info("Dropped local record for webhook %s (board %s): missing upstream", rec.external_webhook_id, rec.board_id)
        continue
      known_ids.add(rec.external_webhook_id)
      known_boards.add(rec.board_id)

    adopted: list[str] = []
    removed: list[str] = []
    for hook in upstream:
      external_id = str(hook.get("id"))
      board_id = str(hook.get("idModel") or "")
      if external_id in known_ids:
        continue
      if board_id in referenced and board_id not in known_boards:
        if await self._record(board_id, external_id, str(hook.get("description") or "")) is not None:
          known_boards.add(board_id)
          adopted.append(board_id)
          logger.info("Adopted upstream webhook %s for board %s", external_id, board_id)
          continue
      try:
        await self._retry(lambda: self.client.delete_webhook(external_id), label=f"delete orphan webhook {external_id}")
        removed.append(external_id)
        logger.info("Removed orphan upstream webhook %s (board %s)", external_id, board_id)
      except (RetryExhausted, TrelloApiError, UpstreamUnavailable) as e:
        logger.warning("Could not remove orphan webhook %s: %s", external_id, e)

    report = await self.reconcile()
    report.adopted = adopted
    report.removed_upstream = removed
    report.dropped_local = dropped
    return report

  async def health_check(self) -> dict[str, Any]:
    local = await self.list_registrations()
    out: dict[str, Any] = {"total": len(local), "active": 0, "upstreamCount": None, "healthy": False, "error": None}
    if not self.callback_url:
      out["error"] = "callback url not configured"
      return out
    try:
      upstream = await self._upstream_webhooks()
    except (RetryExhausted, TrelloApiError, UpstreamUnavailable) as e:
      out["error"] = str(e)
      return out
    active_ids = {str(w.get("id")) for w in upstream if w.get("active", True)}
    out["upstreamCount"] = len(upstream)
    out["active"] = sum(1 for r in local if r.external_webhook_id in active_ids)
    out["healthy"] = out["active"] == len(local)
    return out
