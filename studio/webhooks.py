"""
Verification and parsing of Replicate webhook deliveries.

Replicate signs each delivery with the ``webhook-id``, ``webhook-timestamp``
and ``webhook-signature`` headers. The signed content is
``"{id}.{timestamp}.{body}"``; the HMAC-SHA256 key is the base64 payload of a
``whsec_`` prefixed secret. The signature header may carry several
space-separated ``v1,<base64>`` entries (during secret rotation).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

SECRET_PREFIX = "whsec_"


class WebhookVerificationError(RuntimeError):
  """Raised when a webhook delivery fails signature checks."""


@dataclass
class WebhookEvent:
  kind: str  # "training" | "prediction"
  data: Dict[str, Any]

  @property
  def replicate_id(self) -> Optional[str]:
    return self.data.get("id")

  @property
  def status(self) -> Optional[str]:
    return self.data.get("status")


def _signing_key(secret: str) -> bytes:
  if secret.startswith(SECRET_PREFIX):
    try:
      return base64.b64decode(secret[len(SECRET_PREFIX):])
    except (binascii.Error, ValueError) as exc:
      raise WebhookVerificationError("Webhook secret is not valid base64.") from exc
  return secret.encode("utf-8")


def compute_signature(secret: str, webhook_id: str, timestamp: str, body: str) -> str:
  """Return the base64 HMAC-SHA256 signature for a delivery."""
  signed = f"{webhook_id}.{timestamp}.{body}".encode("utf-8")
  digest = hmac.new(_signing_key(secret), signed, hashlib.sha256).digest()
  return base64.b64encode(digest).decode("ascii")


def verify_signature(
  secret: str,
  webhook_id: str,
  timestamp: str,
  body: str,
  signature_header: str,
  *,
  tolerance: int = 300,
  now: Optional[float] = None,
) -> None:
  """Raise :class:`WebhookVerificationError` unless the delivery is authentic."""
  if not secret:
    raise WebhookVerificationError("Webhook secret is not configured.")
  if not webhook_id or not timestamp or not signature_header:
    raise WebhookVerificationError("Missing webhook signature headers.")

  try:
    sent_at = int(timestamp)
  except ValueError as exc:
    raise WebhookVerificationError("Webhook timestamp is not an integer.") from exc

  current = time.time() if now is None else now
  if abs(current - sent_at) > tolerance:
    raise WebhookVerificationError("Webhook timestamp is outside the allowed tolerance.")

  expected = compute_signature(secret, webhook_id, timestamp, body)
  for entry in signature_header.split():
    version, _, received = entry.partition(",")
    if version == "v1" and hmac.compare_digest(received.encode("utf-8"), expected.encode("ascii")):
      return
  raise WebhookVerificationError("Invalid webhook signature.")


def parse_event(body: str) -> Optional[WebhookEvent]:
  """
  Decode a delivery body into a :class:`WebhookEvent`.

  Training notifications are sometimes wrapped in a ``training`` key; bare
  objects with ``id`` and ``status`` are treated as predictions until the
  caller matches them against a stored training. Returns ``None`` for
  payloads with neither shape.
  """
  try:
    data = json.loads(body)
  except ValueError as exc:
    raise WebhookVerificationError("Webhook body is not valid JSON.") from exc

  if not isinstance(data, dict):
    return None
  if isinstance(data.get("training"), dict):
    return WebhookEvent(kind="training", data=data["training"])
  if data.get("id") and data.get("status"):
    return WebhookEvent(kind="prediction", data=data)
  return None


__all__ = [
  "WebhookEvent",
  "WebhookVerificationError",
  "compute_signature",
  "parse_event",
  "verify_signature",
]
