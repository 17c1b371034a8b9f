from __future__ import annotations

from typing import Any


class BoardhookError(RuntimeError):
  status_code = 500

  def __init__(self, message: str, **context: Any) -> None:
    super().__init__(message)
    self.message = message
    self.context = context


class Unauthorized(BoardhookError):
  status_code = 401


class NotFound(BoardhookError):
  status_code = 404


class ConstraintViolation(BoardhookError):
  status_code = 409


class MalformedEvent(BoardhookError):
  status_code = 400


class NoMappingConfigured(BoardhookError):
  status_code = 422

  def __init__(self, community_id: str, channel_id: str) -> None:
    super().__init__(
      "No board is configured for this channel. Set one with a channel mapping or a server default.",
      community_id=community_id,
      channel_id=channel_id,
    )


class UpstreamUnavailable(BoardhookError):
  status_code = 503


class InvalidRequest(BoardhookError):
  status_code = 400
