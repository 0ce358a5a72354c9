"""
Account repositories - users, settings and integration connections.

Batch jobs load these once per run, keyed by the candidate id set.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from brainbits.accounts.models import (
    ConnectionStatus,
    IntegrationConnection,
    IntegrationSummary,
    User,
    UserSettings,
)
from brainbits.infrastructure.database import (
    db_transaction,
    get_db_connection,
    placeholders,
    retry_on_db_lock,
)
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import to_iso, utc_now

logger = get_logger(__name__)


class UserRepository:
    @staticmethod
    @retry_on_db_lock()
    def upsert(user: User) -> User:
        """
        Insert or update a user row.

        Side Effects:
            - Writes to users table
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, name, email_verified, created_at)
                VALUES (:id, :email, :name, :email_verified, :created_at)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    name = excluded.name,
                    email_verified = excluded.email_verified
                """,
                {
                    "id": user.id,
                    "email": user.email,
                    "name": user.name,
                    "email_verified": int(user.email_verified),
                    "created_at": to_iso(user.created_at),
                },
            )
        return user

    @staticmethod
    def get(user_id: str) -> User | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_db_row(dict(row)) if row else None

    @staticmethod
    def get_many(user_ids: Iterable[str]) -> dict[str, User]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM users WHERE id IN ({placeholders(ids)})", ids
            ).fetchall()
        return {row["id"]: User.from_db_row(dict(row)) for row in rows}

    @staticmethod
    def list_all() -> list[User]:
        with get_db_connection() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at, id").fetchall()
        return [User.from_db_row(dict(row)) for row in rows]


class UserSettingsRepository:
    @staticmethod
    @retry_on_db_lock()
    def upsert(settings: UserSettings) -> UserSettings:
        """
        Insert or replace a user's digest settings.

        Side Effects:
            - Writes to user_settings table
        """
        data = settings.model_dump(mode="json")
        data["updated_at"] = to_iso(utc_now())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_settings (
                    user_id, email_frequency, notes_per_digest, timezone,
                    preferred_send_hour, updated_at
                ) VALUES (
                    :user_id, :email_frequency, :notes_per_digest, :timezone,
                    :preferred_send_hour, :updated_at
                )
                ON CONFLICT(user_id) DO UPDATE SET
                    email_frequency = excluded.email_frequency,
                    notes_per_digest = excluded.notes_per_digest,
                    timezone = excluded.timezone,
                    preferred_send_hour = excluded.preferred_send_hour,
                    updated_at = excluded.updated_at
                """,
                data,
            )
        return settings

    @staticmethod
    def get_many(user_ids: Iterable[str]) -> dict[str, UserSettings]:
        """Settings per user, with defaults for users that never saved any."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_settings WHERE user_id IN ({placeholders(ids)})", ids
            ).fetchall()
        found = {row["user_id"]: UserSettings.from_db_row(dict(row)) for row in rows}
        return {user_id: found.get(user_id) or UserSettings(user_id=user_id) for user_id in ids}


class ConnectionRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(
        user_id: str,
        kind: str,
        display_name: str | None = None,
        config: dict[str, Any] | None = None,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
        account_external_id: str | None = None,
    ) -> IntegrationConnection:
        """
        Register a source connection for a user.

        Side Effects:
            - Inserts row into integration_connections
        """
        now = to_iso(utc_now())
        status_value = status.value if isinstance(status, ConnectionStatus) else status
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO integration_connections (
                    user_id, kind, status, display_name, account_external_id,
                    config_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    kind,
                    status_value,
                    display_name,
                    account_external_id,
                    json.dumps(config) if config else None,
                    now,
                    now,
                ),
            )
            connection_id = cursor.lastrowid

        logger.info("Created %s connection %s for user %s", kind, connection_id, user_id)
        return IntegrationConnection(
            id=connection_id,
            user_id=user_id,
            kind=kind,
            status=status_value,
            display_name=display_name,
            account_external_id=account_external_id,
            config=config or {},
        )

    @staticmethod
    def get(connection_id: int) -> IntegrationConnection | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM integration_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        return IntegrationConnection.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_active(kind: str) -> list[IntegrationConnection]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM integration_connections
                WHERE kind = ? AND status = 'active'
                ORDER BY id
                """,
                (kind,),
            ).fetchall()
        return [IntegrationConnection.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def summarize_for_users(user_ids: Iterable[str]) -> dict[str, IntegrationSummary]:
        """Connection count and first connected source per user (every id gets an entry)."""
        ids = list(dict.fromkeys(user_ids))
        summaries = {user_id: IntegrationSummary() for user_id in ids}
        if not ids:
            return summaries
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT user_id, kind, display_name FROM integration_connections
                WHERE user_id IN ({placeholders(ids)})
                ORDER BY created_at, id
                """,
                ids,
            ).fetchall()

        for row in rows:
            summary = summaries[row["user_id"]]
            if summary.connection_count == 0:
                summary.first_source_kind = row["kind"]
                summary.first_source_name = row["display_name"]
            summary.connection_count += 1
        return summaries
