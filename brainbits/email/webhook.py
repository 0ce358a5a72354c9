"""
Inbound Resend (Svix-signed) webhook verification and handling.

Signature: base64(HMAC-SHA256(secret, "{id}.{timestamp}.{body}")), where the
secret is base64 after an optional "whsec_" prefix. The signature header holds
space-separated "v1,<signature>" entries; any match is accepted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

from brainbits.config import WEBHOOK_TOLERANCE_SECONDS
from brainbits.email.send_records import TRACKED_EVENT_COLUMNS, SendRecordRepository
from brainbits.errors import WebhookVerificationError
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event
from brainbits.utils.dates import ensure_utc, parse_iso, utc_now

logger = get_logger(__name__)

SECRET_PREFIX = "whsec_"


def _secret_bytes(secret: str) -> bytes:
    raw = secret[len(SECRET_PREFIX) :] if secret.startswith(SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError) as e:
        raise WebhookVerificationError("Webhook secret is not valid base64") from e


def sign_payload(payload: str, msg_id: str, timestamp: str, secret: str) -> str:
    """Expected base64 signature for a payload."""
    signed_content = f"{msg_id}.{timestamp}.{payload}".encode()
    digest = hmac.new(_secret_bytes(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook(
    payload: str,
    signature: str,
    timestamp: str,
    msg_id: str,
    secret: str,
    now: datetime | None = None,
    tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS,
) -> Any:
    """
    Verify and decode a webhook body.

    Raises:
        WebhookVerificationError: Bad timestamp, stale/future timestamp, or no matching signature
    """
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError) as e:
        raise WebhookVerificationError("Invalid webhook timestamp") from e

    now_seconds = int(ensure_utc(now or utc_now()).timestamp())
    if abs(now_seconds - sent_at) > tolerance_seconds:
        raise WebhookVerificationError("Webhook timestamp outside tolerance window")

    expected = sign_payload(payload, msg_id, timestamp, secret).encode("ascii")
    candidates = [
        entry.split(",", 1)[1]
        for entry in (part.strip() for part in signature.split(" "))
        if "," in entry
    ]
    if not any(hmac.compare_digest(c.encode("ascii", "ignore"), expected) for c in candidates):
        counter("webhook.signature_mismatch")
        raise WebhookVerificationError("Webhook signature mismatch")

    try:
        return json.loads(payload)
    except ValueError as e:
        raise WebhookVerificationError("Webhook body is not valid JSON") from e


def apply_webhook_event(event: Any) -> bool:
    """
    Record opens and clicks on the matching send log row.

    Returns:
        True if a row was updated. Unknown event types, unknown message ids and
        bodies that are not JSON objects are ignored.
    """
    if not isinstance(event, dict):
        logger.warning("Ignoring webhook body of type %s", type(event).__name__)
        return False

    event_type = event.get("type")
    if not isinstance(event_type, str) or event_type not in TRACKED_EVENT_COLUMNS:
        return False

    data = event.get("data")
    message_id = data.get("email_id") if isinstance(data, dict) else None
    if not isinstance(message_id, str) or not message_id:
        logger.warning("Webhook %s without email_id", event_type)
        return False

    occurred_at = parse_iso(event.get("created_at")) or utc_now()
    updated = SendRecordRepository.mark_event(message_id, event_type, occurred_at)
    log_event("webhook.applied", event_type=event_type, updated=updated)
    return updated
