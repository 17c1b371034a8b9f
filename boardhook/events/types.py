from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any

from dateutil import parser as dateparser

from boardhook.errors import MalformedEvent


class EventType(str, Enum):
  CARD_CREATED = "card_created"
  CARD_UPDATED = "card_updated"
  COMMENT_ADDED = "comment_added"
  MEMBER_ADDED = "member_added"
  MEMBER_REMOVED = "member_removed"
  CHECKITEM_STATE_CHANGED = "checkitem_state_changed"
  OTHER = "other"


TRELLO_ACTION_TYPES: dict[str, EventType] = {
  "createCard": EventType.CARD_CREATED,
  "updateCard": EventType.CARD_UPDATED,
  "commentCard": EventType.COMMENT_ADDED,
  "addMemberToCard": EventType.MEMBER_ADDED,
  "removeMemberFromCard": EventType.MEMBER_REMOVED,
  "updateCheckItemStateOnCard": EventType.CHECKITEM_STATE_CHANGED,
}


def classify(action_type: str | None) -> EventType:
  return TRELLO_ACTION_TYPES.get(str(action_type or ""), EventType.OTHER)


@dataclass(frozen=True)
class InboundEvent:
  event_type: EventType
  action_type: str
  board_id: str
  subject_id: str
  actor: str
  timestamp: str
  raw_summary: str
  action_id: str | None = None
  data: dict[str, Any] = field(default_factory=dict)
  link: str | None = None

  def dedup_key(self) -> str:
    # action_type keeps distinct unrecognised types apart even though they share EventType.OTHER
    return "|".join([self.board_id, self.subject_id, self.action_type, self.timestamp])


def _obj(v: Any) -> dict[str, Any]:
  return v if isinstance(v, dict) else {}


def _name(v: Any, default: str = "") -> str:
  d = _obj(v)
  return str(d.get("name") or d.get("fullName") or d.get("username") or default)


def _normalize_timestamp(value: Any) -> str:
  if isinstance(value, str) and value.strip():
    try:
      dt = dateparser.isoparse(value.strip())
    except (ValueError, OverflowError) as exc:
      raise MalformedEvent("action.date is not an ISO timestamp") from exc
  else:
    raise MalformedEvent("action.date is required")
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _subject_id(event_type: EventType, data: dict[str, Any], action_id: str | None) -> str:
  card = _obj(data.get("card"))
  if event_type == EventType.CHECKITEM_STATE_CHANGED and _obj(data.get("checkItem")).get("id"):
    return str(data["checkItem"]["id"])
  if event_type in (EventType.MEMBER_ADDED, EventType.MEMBER_REMOVED):
    member_id = _obj(data.get("member")).get("id") or data.get("idMember")
    if card.get("id") and member_id:
      return f"{card['id']}:{member_id}"
  for key in ("card", "list", "member"):
    ident = _obj(data.get(key)).get("id")
    if ident:
      return str(ident)
  if action_id:
    return action_id
  raise MalformedEvent("action has no identifiable subject")


def _link(data: dict[str, Any], model: dict[str, Any]) -> str | None:
  card = _obj(data.get("card"))
  if card.get("shortLink"):
    return f"https://trello.com/c/{card['shortLink']}"
  board = _obj(data.get("board"))
  if board.get("shortLink"):
    return f"https://trello.com/b/{board['shortLink']}"
  url = model.get("url")
  return str(url) if url else None


def _summary(event_type: EventType, action_type: str, actor: str, data: dict[str, Any]) -> str:
  card = _name(data.get("card"), "a card")
  if event_type == EventType.CARD_CREATED:
    return f"{actor} created card '{card}' in list '{_name(data.get('list'), 'unknown list')}'"
  if event_type == EventType.CARD_UPDATED:
    return f"{actor} updated card '{card}'"
  if event_type == EventType.COMMENT_ADDED:
    return f"{actor} commented on card '{card}'"
  if event_type == EventType.MEMBER_ADDED:
    return f"{actor} added {_name(data.get('member'), 'a member')} to card '{card}'"
  if event_type == EventType.MEMBER_REMOVED:
    return f"{actor} removed {_name(data.get('member'), 'a member')} from card '{card}'"
  if event_type == EventType.CHECKITEM_STATE_CHANGED:
    item = _obj(data.get("checkItem"))
    return f"{actor} marked '{item.get('name', 'an item')}' {item.get('state', 'changed')} on card '{card}'"
  return f"{actor} performed {action_type or 'an action'}"


def parse_event(payload: Any) -> InboundEvent:
  """Normalise a verified Trello webhook body (``action``, ``model``) into an InboundEvent."""
  if not isinstance(payload, dict):
    raise MalformedEvent("JSON object body required")
  action = payload.get("action")
  if not isinstance(action, dict):
    raise MalformedEvent("action object is required")
  action_type = str(action.get("type") or "").strip()
  if not action_type:
    raise MalformedEvent("action.type is required")

  data = _obj(action.get("data"))
  model = _obj(payload.get("model"))
  board_id = str(_obj(data.get("board")).get("id") or model.get("id") or "").strip()
  if not board_id:
    raise MalformedEvent("board id missing from action.data.board and model")

  event_type = classify(action_type)
  action_id = str(action["id"]) if action.get("id") else None
  actor = _name(action.get("memberCreator"), "Someone")
  return InboundEvent(
    event_type=event_type,
    action_type=action_type,
    board_id=board_id,
    subject_id=_subject_id(event_type, data, action_id),
    actor=actor,
    timestamp=_normalize_timestamp(action.get("date")),
    raw_summary=_summary(event_type, action_type, actor, data),
    action_id=action_id,
    data=data,
    link=_link(data, model),
  )