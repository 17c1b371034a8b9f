from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from time import monotonic
from typing import Callable

from boardhook.errors import NotFound, UpstreamUnavailable
from boardhook.trello.client import TrelloApiError, TrelloClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoardTarget:
  board_id: str
  list_id: str
  board_name: str | None = None
  list_name: str | None = None


class BoardValidator:
  """
  Checks that a board (and list) is reachable with the configured token before
  a mapping is accepted. Positive results are cached; boards rarely change.
  """

  def __init__(self, client: TrelloClient, *, ttl_seconds: int = 3600, clock: Callable[[], float] = monotonic) -> None:
    self.client = client
    self.ttl_seconds = ttl_seconds
    self._clock = clock
    self._lock = Lock()
    self._boards: dict[str, tuple[float, dict]] = {}
    self._lists: dict[str, tuple[float, dict]] = {}

  def _cached(self, table: dict[str, tuple[float, dict]], key: str) -> dict | None:
    with self._lock:
      hit = table.get(key)
      if hit is None:
        return None
      if hit[0] <= self._clock():
        del table[key]
        return None
      return hit[1]

  def _remember(self, table: dict[str, tuple[float, dict]], key: str, value: dict) -> None:
    if self.ttl_seconds <= 0:
      return
    with self._lock:
      table[key] = (self._clock() + self.ttl_seconds, value)

  async def _fetch(self, kind: str, ident: str, fetch) -> dict:
    try:
      return await fetch(ident)
    except TrelloApiError as e:
      if e.retryable:
        raise UpstreamUnavailable(f"Trello {kind} lookup failed: {e.message}", status=e.status_code) from e
      raise NotFound(f"Cannot access {kind} {ident}: {e.message}", status=e.status_code) from e

  async def board(self, board_id: str) -> dict:
    cached = self._cached(self._boards, board_id)
    if cached is not None:
      return cached
    data = await self._fetch("board", board_id, self.client.get_board)
    self._remember(self._boards, board_id, data)
    return data

  async def list_(self, list_id: str) -> dict:
    cached = self._cached(self._lists, list_id)
    if cached is not None:
      return cached
    data = await self._fetch("list", list_id, self.client.get_list)
    self._remember(self._lists, list_id, data)
    return data

  async def validate(self, board_id: str, list_id: str | None = None) -> BoardTarget:
    board = await self.board(board_id)
    if not list_id:
      try:
        lists = await self.client.get_board_lists(board_id)
      except TrelloApiError as e:
        raise UpstreamUnavailable(f"Could not read lists for board {board_id}: {e.message}") from e
      if not lists:
        raise NotFound(f"Board {board_id} has no open lists", board_id=board_id)
      first = lists[0]
      logger.info("Using first list %s (%s) for board %s", first.get("name"), first.get("id"), board_id)
      return BoardTarget(board_id=board_id, list_id=str(first["id"]), board_name=board.get("name"), list_name=first.get("name"))

    lst = await self.list_(list_id)
    if lst.get("idBoard") and lst.get("idBoard") != board_id and lst.get("idBoard") != board.get("id"):
      raise NotFound(f"List {list_id} does not belong to board {board_id}", board_id=board_id, list_id=list_id)
    return BoardTarget(board_id=board_id, list_id=list_id, board_name=board.get("name"), list_name=lst.get("name"))
