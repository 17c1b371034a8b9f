from __future__ import annotations

from typing import Any

from boardhook.events.types import EventType, InboundEvent
from boardhook.mappings.types import ChannelTarget
from boardhook.notifications.service import Notification

COLORS: dict[EventType, int] = {
  EventType.CARD_CREATED: 0x00FF00,
  EventType.CARD_UPDATED: 0xFFA500,
  EventType.COMMENT_ADDED: 0x0099FF,
  EventType.MEMBER_ADDED: 0x9370DB,
  EventType.MEMBER_REMOVED: 0xFF6347,
  EventType.OTHER: 0x0079BF,
}
CHECKITEM_COMPLETE_COLOR = 0x00FF00
CHECKITEM_INCOMPLETE_COLOR = 0xFFFF00
COMMENT_PREVIEW_CHARS = 200


def _name(v: Any, default: str = "") -> str:
  if isinstance(v, dict):
    return str(v.get("name") or v.get("fullName") or default)
  return default


def _truncate(text: str, limit: int) -> str:
  return text if len(text) <= limit else text[:limit] + "..."


def _card_update_fields(data: dict[str, Any]) -> list[tuple[str, str]]:
  old = data.get("old") if isinstance(data.get("old"), dict) else {}
  card = data.get("card") if isinstance(data.get("card"), dict) else {}
  out: list[tuple[str, str]] = []
  if "name" in old and old.get("name") != card.get("name"):
    out.append(("Name changed", f"{old.get('name')} -> {card.get('name')}"))
  if "desc" in old:
    out.append(("Description updated", "Description was modified"))
  if "due" in old:
    out.append(("Due date changed", str(card.get("due")) if card.get("due") else "Due date removed"))
  if "idList" in old:
    before = _name(data.get("listBefore"), str(old.get("idList")))
    after = _name(data.get("listAfter"), str(card.get("idList", "")))
    out.append(("Moved", f"{before} -> {after}"))
  if "closed" in old:
    out.append(("Archived" if card.get("closed") else "Restored", _name(card, "card")))
  return out


def title_and_color(event: InboundEvent) -> tuple[str, int]:
  et = event.event_type
  if et == EventType.CARD_CREATED:
    return "New Card Created", COLORS[et]
  if et == EventType.CARD_UPDATED:
    return "Card Updated", COLORS[et]
  if et == EventType.COMMENT_ADDED:
    return "New Comment", COLORS[et]
  if et == EventType.MEMBER_ADDED:
    return "Member Added to Card", COLORS[et]
  if et == EventType.MEMBER_REMOVED:
    return "Member Removed from Card", COLORS[et]
  if et == EventType.CHECKITEM_STATE_CHANGED:
    item = event.data.get("checkItem") if isinstance(event.data.get("checkItem"), dict) else {}
    complete = item.get("state") == "complete"
    return (
      "Checklist Item Completed" if complete else "Checklist Item Reopened",
      CHECKITEM_COMPLETE_COLOR if complete else CHECKITEM_INCOMPLETE_COLOR,
    )
  return "Trello Activity", COLORS[EventType.OTHER]


def event_fields(event: InboundEvent) -> list[tuple[str, str]]:
  data = event.data
  card = _name(data.get("card"))
  et = event.event_type
  fields: list[tuple[str, str]] = []
  if card:
    fields.append(("Card", card))
  if et == EventType.CARD_CREATED:
    fields.append(("List", _name(data.get("list"), "unknown")))
  elif et == EventType.CARD_UPDATED:
    fields.extend(_card_update_fields(data))
  elif et == EventType.COMMENT_ADDED:
    fields.append(("Comment", _truncate(str(data.get("text") or ""), COMMENT_PREVIEW_CHARS)))
  elif et in (EventType.MEMBER_ADDED, EventType.MEMBER_REMOVED):
    fields.append(("Member", _name(data.get("member"), "unknown")))
  elif et == EventType.CHECKITEM_STATE_CHANGED:
    fields.append(("Item", _name(data.get("checkItem"), "unknown")))
  else:
    fields.append(("Event", event.action_type))
  fields.append(("By", event.actor))
  return fields


def format_notification(event: InboundEvent, target: ChannelTarget) -> Notification:
  """Build the chat message for one target channel. Pure; no I/O."""
  title, color = title_and_color(event)
  return Notification(
    target_channel_id=target.channel_id,
    community_id=target.community_id,
    title=title,
    body=event.raw_summary,
    color=color,
    link=event.link,
    fields=tuple(event_fields(event)),
    timestamp=event.timestamp,
  )
