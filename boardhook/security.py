from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

SIGNATURE_HEADER = "X-Trello-Webhook"


def trello_signature(raw_body: bytes, callback_url: str, secret: str) -> str:
  # Trello signs body + callback URL with HMAC-SHA1 and base64-encodes the digest
  content = raw_body + callback_url.encode("utf-8")
  digest = hmac.new(secret.encode("utf-8"), content, hashlib.sha1).digest()
  return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, provided_signature: str | None, shared_secret: str | None, callback_url: str) -> bool:
  if not shared_secret or not provided_signature:
    return False
  expected = trello_signature(raw_body, callback_url, shared_secret)
  return secrets.compare_digest(provided_signature.strip().encode("ascii", "ignore"), expected.encode("ascii"))


def verify_bearer(auth_header: str | None, expected_token: str | None) -> bool:
  if not expected_token:
    return False
  if not auth_header or not auth_header.lower().startswith("bearer "):
    return False
  provided = auth_header.split(" ", 1)[1].strip()
  return secrets.compare_digest(provided.encode("utf-8"), expected_token.encode("utf-8"))
