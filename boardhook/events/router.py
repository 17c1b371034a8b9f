from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from boardhook.events.dedup import EventDeduplicator
from boardhook.events.formatting import format_notification
from boardhook.events.types import InboundEvent
from boardhook.mappings.resolver import MappingResolver
from boardhook.mappings.types import ChannelTarget
from boardhook.metrics import RuntimeMetrics, runtime_metrics
from boardhook.notifications.service import DeliveryError, NotificationSink
from boardhook.retry import RetryExhausted, retry_with_backoff

logger = logging.getLogger(__name__)


class RouteOutcome(str, Enum):
  DELIVERED_TO_ALL = "delivered_to_all"
  PARTIALLY_DELIVERED = "partially_delivered"
  FAILED = "failed"
  NO_TARGETS = "no_targets"
  DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DeliveryResult:
  target: ChannelTarget
  delivered: bool
  attempts: int
  error: str | None = None


@dataclass
class RouteResult:
  outcome: RouteOutcome
  event_key: str
  deliveries: list[DeliveryResult] = field(default_factory=list)

  @property
  def delivered_count(self) -> int:
    return sum(1 for d in self.deliveries if d.delivered)


class EventRouter:
  """
  Fans a verified event out to every channel listening on its board.

  Each target is delivered independently with its own retry/backoff, so a slow
  or failing channel never holds back the others.
  """

  def __init__(
    self,
    resolver: MappingResolver,
    sink: NotificationSink,
    dedup: EventDeduplicator,
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    timeout: float = 5.0,
    metrics: RuntimeMetrics = runtime_metrics,
  ) -> None:
    self.resolver = resolver
    self.sink = sink
    self.dedup = dedup
    self.max_attempts = max_attempts
    self.base_delay = base_delay
    self.timeout = timeout
    self.metrics = metrics

  async def route(self, event: InboundEvent) -> RouteResult:
    key = event.dedup_key()
    if not await self.dedup.claim(key):
      logger.info("Duplicate %s event for board %s suppressed (%s)", event.action_type, event.board_id, key)
      self.metrics.incr("events.duplicate")
      return RouteResult(outcome=RouteOutcome.DUPLICATE, event_key=key)

    try:
      targets = await self.resolver.targets_for_board(event.board_id)
    except Exception:
      # nothing was delivered, so a provider retry must not be suppressed
      await self.dedup.release(key)
      raise
    if not targets:
      logger.info("No channels mapped to board %s; dropping %s event", event.board_id, event.action_type)
      self.metrics.incr("events.no_targets")
      return RouteResult(outcome=RouteOutcome.NO_TARGETS, event_key=key)

    deliveries = await asyncio.gather(*(self._deliver(event, t) for t in targets))
    delivered = sum(1 for d in deliveries if d.delivered)
    if delivered == len(deliveries):
      outcome = RouteOutcome.DELIVERED_TO_ALL
    elif delivered:
      outcome = RouteOutcome.PARTIALLY_DELIVERED
    else:
      outcome = RouteOutcome.FAILED
      # no channel saw it, so a provider redelivery may try again
      await self.dedup.release(key)
    self.metrics.incr("events.routed")
    return RouteResult(outcome=outcome, event_key=key, deliveries=list(deliveries))

  async def _deliver(self, event: InboundEvent, target: ChannelTarget) -> DeliveryResult:
    notification = format_notification(event, target)
    attempts = 0

    async def _send() -> None:
      nonlocal attempts
      attempts += 1
      await asyncio.wait_for(self.sink.send(notification), timeout=self.timeout)

    try:
      await retry_with_backoff(
        _send,
        max_attempts=self.max_attempts,
        base_delay=self.base_delay,
        retry_on=(DeliveryError, asyncio.TimeoutError, OSError),
        should_retry=lambda e: getattr(e, "retryable", True),
        label=f"deliver to channel {target.channel_id}",
      )
    except (RetryExhausted, DeliveryError, asyncio.TimeoutError, OSError) as e:
      cause = e.last_error if isinstance(e, RetryExhausted) else e
      logger.error(
        "Delivery failed: board=%s community=%s channel=%s event=%s attempts=%d error=%s",
        event.board_id,
        target.community_id,
        target.channel_id,
        event.action_type,
        attempts,
        cause,
      )
      self.metrics.incr("deliveries.failed")
      return DeliveryResult(target=target, delivered=False, attempts=attempts, error=str(cause) or cause.__class__.__name__)
    except Exception as e:
      # an unexpected sink error fails this target only
      logger.exception(
        "Delivery crashed: board=%s community=%s channel=%s event=%s attempts=%d",
        event.board_id,
        target.community_id,
        target.channel_id,
        event.action_type,
        attempts,
      )
      self.metrics.incr("deliveries.failed")
      return DeliveryResult(target=target, delivered=False, attempts=attempts, error=str(e) or e.__class__.__name__)

    self.metrics.incr("deliveries.sent")
    return DeliveryResult(target=target, delivered=True, attempts=attempts)
