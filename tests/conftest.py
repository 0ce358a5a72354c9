"""
Pytest configuration for Brain Bits tests

Every database test gets its own SQLite file under tmp_path; the global
connection pool is reset around it so BRAINBITS_DB_PATH is re-read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from brainbits.accounts.models import ConnectionStatus, IntegrationConnection, User, UserSettings
from brainbits.accounts.repository import ConnectionRepository, UserRepository, UserSettingsRepository
from brainbits.email.delivery import EmailPayload, SendError, SendResult, get_delivery_client
from brainbits.infrastructure.database import db_transaction, init_database, reset_pool
from brainbits.observability.telemetry import reset_telemetry
from brainbits.utils.dates import to_iso

ENV_VARS_TO_CLEAR = (
    "BRAINBITS_ENCRYPTION_KEY",
    "BRAINBITS_SCHEDULE_POLICY",
    "DEPLOYMENT_MODE",
    "DIGEST_EMAIL_DRY_RUN",
    "SEQUENCE_EMAIL_DRY_RUN",
    "RESEND_API_KEY",
    "RESEND_FROM",
    "RESEND_REPLY_TO",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer env vars from leaking into tests."""
    for key in ENV_VARS_TO_CLEAR:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("FRONTEND_URL", "http://app.test")
    reset_telemetry()
    get_delivery_client.cache_clear()
    yield
    reset_telemetry()
    get_delivery_client.cache_clear()


@pytest.fixture
def db(tmp_path, monkeypatch) -> Path:
    """Fresh, initialized database for one test."""
    db_path = tmp_path / "brainbits.db"
    monkeypatch.setenv("BRAINBITS_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    yield db_path
    reset_pool()


@pytest.fixture
def make_user(db):
    """Factory for verified users with optional digest settings."""

    def _make_user(
        user_id: str = "user-1",
        email: str | None = "ada@example.com",
        name: str | None = "Ada Lovelace",
        verified: bool = True,
        **settings,
    ) -> User:
        user = UserRepository.upsert(
            User(id=user_id, email=email, name=name, email_verified=verified)
        )
        if settings:
            UserSettingsRepository.upsert(UserSettings(user_id=user_id, **settings))
        return user

    return _make_user


@pytest.fixture
def make_connection(db):
    def _make_connection(
        user_id: str = "user-1",
        kind: str = "obsidian",
        display_name: str | None = "Vault",
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> IntegrationConnection:
        return ConnectionRepository.create(user_id, kind, display_name=display_name, status=status)

    return _make_connection


@pytest.fixture
def make_subscription(db):
    """Insert a billing_subscriptions row (status "active" makes the user Pro)."""

    def _make_subscription(user_id: str, status: str = "active") -> None:
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO billing_subscriptions (user_id, status, updated_at) VALUES (?, ?, ?)",
                (user_id, status, to_iso(datetime.now(UTC))),
            )

    return _make_subscription


@dataclass
class FakeDelivery:
    """Stands in for DeliveryClient; records every send."""

    fail_with: SendError | None = None
    sent: list[tuple[EmailPayload, str, bool]] = field(default_factory=list)

    def send(self, payload: EmailPayload, idempotency_key: str, dry_run: bool = False) -> SendResult:
        self.sent.append((payload, idempotency_key, dry_run))
        if self.fail_with is not None:
            return SendResult(id=None, error=self.fail_with)
        return SendResult(id=f"msg-{len(self.sent)}")


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()
