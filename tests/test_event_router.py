from __future__ import annotations

import asyncio

import pytest

from boardhook.deps import Services
from boardhook.events.dedup import EventDeduplicator, SeenSet
from boardhook.events.router import EventRouter, RouteOutcome
from boardhook.events.types import parse_event
from boardhook.metrics import runtime_metrics
from boardhook.notifications.service import Notification

from conftest import RecordingSink
from test_events import trello_payload


def _router(services: Services, sink, *, max_attempts: int = 3, timeout: float = 5.0, window: int = 600) -> EventRouter:
  return EventRouter(
    services.resolver,
    sink,
    EventDeduplicator(SeenSet(window_seconds=window)),
    max_attempts=max_attempts,
    base_delay=0,
    timeout=timeout,
  )


@pytest.mark.anyio
async def test_duplicate_create_card_notifies_channel_once(services: Services, sink: RecordingSink) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  router = _router(services, sink)
  event = parse_event(trello_payload("createCard"))

  first = await router.route(event)
  second = await router.route(parse_event(trello_payload("createCard")))

  assert first.outcome == RouteOutcome.DELIVERED_TO_ALL
  assert second.outcome == RouteOutcome.DUPLICATE
  assert sink.channels() == ["100"]
  assert runtime_metrics.counter("events.duplicate") == 1


@pytest.mark.anyio
async def test_every_mapped_channel_gets_exactly_one_notification(services: Services, sink: RecordingSink) -> None:
  channels = [str(c) for c in range(100, 105)]
  for c in channels:
    await services.resolver.set_mapping("42", c, "B1", "L1")
  await services.resolver.set_mapping("42", "999", "B2", "L2")
  router = _router(services, sink)

  event = parse_event(trello_payload("commentCard", data={"text": "hello"}))
  await router.route(event)
  await router.route(event)

  assert sorted(sink.channels()) == channels


@pytest.mark.anyio
async def test_distinct_events_on_same_card_are_not_deduplicated(services: Services, sink: RecordingSink) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  router = _router(services, sink)
  await router.route(parse_event(trello_payload("updateCard", date="2026-03-01T10:00:00.000Z")))
  await router.route(parse_event(trello_payload("updateCard", date="2026-03-01T10:00:01.000Z")))
  await router.route(parse_event(trello_payload("commentCard", date="2026-03-01T10:00:01.000Z")))
  assert len(sink.sent) == 3


@pytest.mark.anyio
async def test_board_without_mappings_is_no_targets(services: Services, sink: RecordingSink) -> None:
  router = _router(services, sink)
  result = await router.route(parse_event(trello_payload()))
  assert result.outcome == RouteOutcome.NO_TARGETS
  assert sink.sent == []


@pytest.mark.anyio
async def test_failing_channel_does_not_block_others(services: Services, sink: RecordingSink) -> None:
  for c in ("100", "101", "102"):
    await services.resolver.set_mapping("42", c, "B1", "L1")
  sink.failing_channels.add("101")
  router = _router(services, sink, max_attempts=3)

  result = await router.route(parse_event(trello_payload()))

  assert result.outcome == RouteOutcome.PARTIALLY_DELIVERED
  assert sorted(sink.channels()) == ["100", "102"]
  failed = [d for d in result.deliveries if not d.delivered]
  assert len(failed) == 1
  assert failed[0].target.channel_id == "101"
  assert failed[0].attempts == 3
  assert runtime_metrics.counter("deliveries.failed") == 1


@pytest.mark.anyio
async def test_transient_failure_is_retried(services: Services, sink: RecordingSink) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  sink.transient_failures["100"] = 2
  router = _router(services, sink, max_attempts=3)

  result = await router.route(parse_event(trello_payload()))

  assert result.outcome == RouteOutcome.DELIVERED_TO_ALL
  assert result.deliveries[0].attempts == 3
  assert sink.channels() == ["100"]


@pytest.mark.anyio
async def test_all_channels_failing_is_reported(services: Services, sink: RecordingSink) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  sink.failing_channels.add("100")
  result = await _router(services, sink, max_attempts=2).route(parse_event(trello_payload()))
  assert result.outcome == RouteOutcome.FAILED
  assert result.deliveries[0].error


class SlowSink(RecordingSink):
  def __init__(self, slow_channel: str) -> None:
    super().__init__()
    self.slow_channel = slow_channel

  async def send(self, notification: Notification) -> dict:
    if notification.target_channel_id == self.slow_channel:
      await asyncio.sleep(10)
    return await super().send(notification)


@pytest.mark.anyio
async def test_slow_channel_times_out_without_holding_back_others(services: Services) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "101", "B1", "L1")
  slow = SlowSink("101")
  router = _router(services, slow, max_attempts=1, timeout=0.05)

  result = await asyncio.wait_for(router.route(parse_event(trello_payload())), timeout=2)

  assert result.outcome == RouteOutcome.PARTIALLY_DELIVERED
  assert slow.channels() == ["100"]


@pytest.mark.anyio
async def test_default_notification_channel_receives_board_events(services: Services, sink: RecordingSink) -> None:
  await services.resolver.set_default("42", "B1", "L1", notification_channel_id="500")
  result = await _router(services, sink).route(parse_event(trello_payload()))
  assert result.outcome == RouteOutcome.DELIVERED_TO_ALL
  assert sink.channels() == ["500"]
  assert sink.sent[0].community_id == "42"


class BrokenSink(RecordingSink):
  def __init__(self, broken_channels: set[str]) -> None:
    super().__init__()
    self.broken_channels = broken_channels
    self.attempts: dict[str, int] = {}

  async def send(self, notification: Notification) -> dict:
    channel = notification.target_channel_id
    self.attempts[channel] = self.attempts.get(channel, 0) + 1
    if channel in self.broken_channels:
      raise ValueError("unexpected response body")
    return await super().send(notification)


@pytest.mark.anyio
async def test_unexpected_sink_error_fails_only_that_channel(services: Services) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  await services.resolver.set_mapping("42", "101", "B1", "L1")
  broken = BrokenSink({"101"})
  router = _router(services, broken)

  result = await router.route(parse_event(trello_payload()))

  assert result.outcome == RouteOutcome.PARTIALLY_DELIVERED
  assert broken.channels() == ["100"]
  failed = [d for d in result.deliveries if not d.delivered]
  assert [d.target.channel_id for d in failed] == ["101"]
  assert "unexpected response body" in failed[0].error
  assert broken.attempts["101"] == 1
  assert runtime_metrics.counter("deliveries.failed") == 1
  assert runtime_metrics.counter("deliveries.sent") == 1


@pytest.mark.anyio
async def test_event_nobody_received_can_be_redelivered(services: Services) -> None:
  await services.resolver.set_mapping("42", "100", "B1", "L1")
  broken = BrokenSink({"100"})
  router = _router(services, broken)

  first = await router.route(parse_event(trello_payload()))
  broken.broken_channels.clear()
  second = await router.route(parse_event(trello_payload()))

  assert first.outcome == RouteOutcome.FAILED
  assert second.outcome == RouteOutcome.DELIVERED_TO_ALL
  assert broken.channels() == ["100"]
