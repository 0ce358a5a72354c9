"""
Tests for the Resend delivery client.

Validates:
1. Idempotency-Key and auth headers on every request
2. Only 429 and 500 are retried, with exponential backoff
3. Dry run never touches the network
4. A missing API key is a configuration error, not a send failure
"""

from __future__ import annotations

import pytest
import requests

from brainbits.config import RESEND_DEFAULT_FROM
from brainbits.email.delivery import DeliveryClient, EmailPayload, sanitize_tag_value
from brainbits.errors import DeliveryConfigError
from brainbits.observability.telemetry import get_counters


class FakeResponse:
    def __init__(self, status_code: int, data=None):
        self.status_code = status_code
        self._data = data

    def json(self):
        if self._data is None:
            raise ValueError("no body")
        return self._data


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


PAYLOAD = EmailPayload(
    to="ada@example.com",
    subject="Weekly Brain Bits (1 note)",
    text="Hello",
    html="<p>Hello</p>",
    tags={"category": "note_digest", "frequency": "weekly"},
)


def make_client(session: FakeSession, sleeps: list | None = None, **kwargs) -> DeliveryClient:
    return DeliveryClient(
        api_key="re_test",
        session=session,
        initial_backoff=0.5,
        sleep_fn=(sleeps.append if sleeps is not None else lambda _: None),
        **kwargs,
    )


def test_successful_send():
    session = FakeSession(FakeResponse(200, {"id": "email-123"}))

    result = make_client(session).send(PAYLOAD, "note-digest-7")

    assert result.ok
    assert result.id == "email-123"
    call = session.calls[0]
    assert call["headers"] == {"Authorization": "Bearer re_test", "Idempotency-Key": "note-digest-7"}
    assert call["json"]["from"] == RESEND_DEFAULT_FROM
    assert call["json"]["to"] == ["ada@example.com"]
    assert call["json"]["html"] == "<p>Hello</p>"
    assert call["json"]["tags"] == [
        {"name": "category", "value": "note_digest"},
        {"name": "frequency", "value": "weekly"},
    ]
    assert get_counters("delivery.") == {"delivery.sent": 1}


def test_rate_limit_is_retried_with_backoff():
    sleeps: list[float] = []
    session = FakeSession(
        FakeResponse(429, {"message": "slow down"}),
        FakeResponse(500, {"message": "oops"}),
        FakeResponse(200, {"id": "email-1"}),
    )

    result = make_client(session, sleeps).send(PAYLOAD, "key-1")

    assert result.id == "email-1"
    assert len(session.calls) == 3
    assert sleeps == [0.5, 1.0]
    assert {c["headers"]["Idempotency-Key"] for c in session.calls} == {"key-1"}


def test_retries_are_bounded():
    session = FakeSession(*[FakeResponse(500, {"message": "down"}) for _ in range(3)])

    result = make_client(session, max_retries=2).send(PAYLOAD, "key-1")

    assert not result.ok
    assert result.error.status_code == 500
    assert result.error.message == "down"
    assert len(session.calls) == 3
    assert get_counters("delivery.")["delivery.failed"] == 1


def test_client_errors_are_not_retried():
    session = FakeSession(FakeResponse(422, {"name": "validation_error", "message": "bad to"}))

    result = make_client(session).send(PAYLOAD, "key-1")

    assert result.error.name == "validation_error"
    assert result.error.status_code == 422
    assert len(session.calls) == 1


def test_other_server_errors_are_not_retried():
    session = FakeSession(FakeResponse(503))

    result = make_client(session).send(PAYLOAD, "key-1")

    assert result.error.status_code == 503
    assert result.error.message == "Resend returned HTTP 503"
    assert len(session.calls) == 1


def test_network_errors_are_reported_without_retry():
    session = FakeSession(requests.ConnectionError("connection refused"))

    result = make_client(session).send(PAYLOAD, "key-1")

    assert result.error.name == "network_error"
    assert result.error.status_code is None
    assert len(session.calls) == 1


def test_dry_run_skips_the_network():
    session = FakeSession()

    result = DeliveryClient(api_key="", session=session).send(PAYLOAD, "key-1", dry_run=True)

    assert result.id == "dry-run-key-1"
    assert session.calls == []


def test_missing_api_key_raises():
    with pytest.raises(DeliveryConfigError):
        DeliveryClient(api_key="", session=FakeSession()).send(PAYLOAD, "key-1")


def test_api_key_and_sender_from_env(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_env")
    monkeypatch.setenv("RESEND_FROM", "Notes <notes@example.com>")
    monkeypatch.setenv("RESEND_REPLY_TO", "help@example.com")
    session = FakeSession(FakeResponse(200, {"id": "x"}))

    DeliveryClient(session=session).send(PAYLOAD, "key-1")

    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer re_env"
    assert call["json"]["from"] == "Notes <notes@example.com>"
    assert call["json"]["reply_to"] == "help@example.com"


def test_sanitize_tag_value():
    assert sanitize_tag_value("note digest/1") == "note-digest-1"
    assert sanitize_tag_value("welcome-2") == "welcome-2"
    assert len(sanitize_tag_value("x" * 300)) == 256
