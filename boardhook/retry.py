"""
Bounded exponential backoff for calls to Trello and the chat platform.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
  """Raised when every attempt failed; the last error is chained."""

  def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
    super().__init__(message)
    self.attempts = attempts
    self.last_error = last_error


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float, jitter: bool = True) -> float:
  delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))
  if jitter and delay > 0:
    delay = delay * (0.5 + random.random() / 2)
  return delay


async def retry_with_backoff(
  func: Callable[[], Awaitable[Any]],
  *,
  max_attempts: int = 3,
  base_delay: float = 0.5,
  max_delay: float = 30.0,
  jitter: bool = True,
  retry_on: tuple[type[BaseException], ...] = (Exception,),
  should_retry: Callable[[BaseException], bool] | None = None,
  label: str = "operation",
  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
  """
  Run ``func`` up to ``max_attempts`` times.

  Errors outside ``retry_on``, or rejected by ``should_retry``, propagate
  immediately. When attempts run out a ``RetryExhausted`` is raised from the
  last error.
  """
  attempts = max(1, int(max_attempts))
  for attempt in range(1, attempts + 1):
    try:
      result = await func()
      if attempt > 1:
        logger.info("%s succeeded on attempt %d/%d", label, attempt, attempts)
      return result
    except retry_on as exc:
      if should_retry is not None and not should_retry(exc):
        raise
      if attempt >= attempts:
        raise RetryExhausted(f"{label} failed after {attempts} attempts", attempts=attempts, last_error=exc) from exc
      delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay, jitter=jitter)
      logger.warning("%s failed (attempt %d/%d): %s; retrying in %.2fs", label, attempt, attempts, exc, delay)
      await sleep(delay)
