"""
Resend email delivery client.

Every send carries a caller-supplied idempotency key in the Idempotency-Key
header, so a retried or replayed send is de-duplicated by the provider.
Only 429 and 500 responses are retried, with exponential backoff.

Dry-run mode returns a synthetic id without touching the network.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import requests

from brainbits.config import (
    DELIVERY_INITIAL_BACKOFF_SECONDS,
    DELIVERY_MAX_RETRIES,
    DELIVERY_RETRYABLE_STATUSES,
    DELIVERY_TIMEOUT_SECONDS,
    RESEND_API_URL,
    RESEND_DEFAULT_FROM,
)
from brainbits.errors import DeliveryConfigError
from brainbits.infrastructure.env import get_optional_env
from brainbits.infrastructure.retry import AdapterError, RetryPolicy
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event

logger = get_logger(__name__)

_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_tag_value(value: str) -> str:
    """Provider tags allow only ASCII letters, digits, "_" and "-"."""
    return _TAG_UNSAFE.sub("-", str(getattr(value, "value", value)))[:256]


@dataclass
class EmailPayload:
    to: str
    subject: str
    text: str
    html: str | None = None
    from_address: str | None = None
    reply_to: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    def to_api_dict(self, default_from: str, default_reply_to: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "from": self.from_address or default_from,
            "to": [self.to],
            "subject": self.subject,
            "text": self.text,
        }
        if self.html:
            body["html"] = self.html
        reply_to = self.reply_to or default_reply_to
        if reply_to:
            body["reply_to"] = reply_to
        if self.tags:
            body["tags"] = [{"name": k, "value": sanitize_tag_value(v)} for k, v in self.tags.items()]
        return body


@dataclass
class SendError:
    name: str
    message: str
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "message": self.message, "status_code": self.status_code}


@dataclass
class SendResult:
    id: str | None
    error: SendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DeliveryClient:
    """
    Sends transactional email through the Resend HTTP API.

    The API key is read from RESEND_API_KEY unless passed in. A missing key is
    only an error when a real (non dry-run) send is attempted.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str = RESEND_API_URL,
        max_retries: int = DELIVERY_MAX_RETRIES,
        initial_backoff: float = DELIVERY_INITIAL_BACKOFF_SECONDS,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key if api_key is not None else get_optional_env("RESEND_API_KEY")
        self.api_url = api_url
        self.timeout = timeout
        self.from_address = get_optional_env("RESEND_FROM", RESEND_DEFAULT_FROM)
        self.reply_to = get_optional_env("RESEND_REPLY_TO") or None
        self.session = session or requests.Session()
        self.retry_policy = RetryPolicy(
            stage="delivery.resend",
            max_attempts=max_retries + 1,
            base_delay=initial_backoff,
            max_delay=initial_backoff * (2**max_retries),
            jitter=0.0,
            retryable_statuses=DELIVERY_RETRYABLE_STATUSES,
            sleep_fn=sleep_fn,
        )

    def send(self, payload: EmailPayload, idempotency_key: str, dry_run: bool = False) -> SendResult:
        """
        Send one email.

        Returns:
            SendResult with the provider message id, or an error after a
            non-retryable failure or exhausted retries

        Raises:
            DeliveryConfigError: If RESEND_API_KEY is missing for a real send

        Side Effects:
            - HTTP POST to the provider (skipped on dry run)
            - Sleeps between retries
        """
        if dry_run:
            counter("delivery.dry_run")
            return SendResult(id=f"dry-run-{idempotency_key}")

        if not self.api_key:
            raise DeliveryConfigError("RESEND_API_KEY is not set")

        body = payload.to_api_dict(self.from_address, self.reply_to)
        try:
            message_id = self.retry_policy.execute(self._post, body, idempotency_key)
        except AdapterError as exc:
            counter("delivery.failed")
            log_event("delivery.failed", status=exc.status_code, error_name=exc.name)
            return SendResult(
                id=None,
                error=SendError(name=exc.name, message=str(exc), status_code=exc.status_code),
            )

        counter("delivery.sent")
        return SendResult(id=message_id)

    def _post(self, body: dict[str, Any], idempotency_key: str) -> str | None:
        try:
            response = self.session.post(
                self.api_url,
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Idempotency-Key": idempotency_key,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AdapterError(f"Resend request failed: {e}", name="network_error") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            logger.warning(
                "Resend returned %s for key %s: %s",
                response.status_code,
                idempotency_key,
                data.get("message"),
            )
            raise AdapterError(
                data.get("message") or f"Resend returned HTTP {response.status_code}",
                status_code=response.status_code,
                name=data.get("name") or "resend_error",
            )

        return data.get("id")


@lru_cache(maxsize=1)
def get_delivery_client() -> DeliveryClient:
    """Process-wide client (connection reuse across a batch run)."""
    return DeliveryClient()
