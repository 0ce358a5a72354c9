"""
Send log (email_sends): append-only, de-duplicated on idempotency_key.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from brainbits.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import to_iso, utc_now

logger = get_logger(__name__)

PROVIDER_RESEND = "resend"

TRACKED_EVENT_COLUMNS = {
    "email.opened": "opened_at",
    "email.clicked": "clicked_at",
}


class SendRecordRepository:
    @staticmethod
    def insert(
        conn: sqlite3.Connection,
        user_id: str,
        email_name: str,
        idempotency_key: str,
        provider_message_id: str | None,
        sent_at: datetime,
        sequence_name: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """
        Insert inside the caller's transaction. Returns False when the key was already logged.
        """
        cursor = conn.execute(
            """
            INSERT INTO email_sends (
                user_id, sequence_name, email_name, idempotency_key, provider,
                provider_message_id, sent_at, payload_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING
            """,
            (
                user_id,
                sequence_name,
                email_name,
                idempotency_key,
                PROVIDER_RESEND,
                provider_message_id,
                to_iso(sent_at),
                json.dumps(payload, default=str) if payload is not None else None,
                to_iso(utc_now()),
            ),
        )
        inserted = cursor.rowcount > 0
        if not inserted:
            logger.info("Send %s already recorded, ignoring", idempotency_key)
        return inserted

    @staticmethod
    @retry_on_db_lock()
    def record(
        user_id: str,
        email_name: str,
        idempotency_key: str,
        provider_message_id: str | None,
        sent_at: datetime,
        sequence_name: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """
        Insert in its own transaction.

        Side Effects:
            - Inserts one email_sends row unless the key exists
        """
        with db_transaction() as conn:
            return SendRecordRepository.insert(
                conn,
                user_id,
                email_name,
                idempotency_key,
                provider_message_id,
                sent_at,
                sequence_name,
                payload,
            )

    @staticmethod
    def get_by_key(idempotency_key: str) -> dict[str, Any] | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM email_sends WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def list_for_user(user_id: str) -> list[dict[str, Any]]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM email_sends WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def mark_event(provider_message_id: str, event_type: str, occurred_at: datetime) -> bool:
        """
        Set opened_at / clicked_at for a provider message, first event only.

        Returns:
            True if a row was updated

        Side Effects:
            - Updates at most the matching email_sends rows with a NULL column
        """
        column = TRACKED_EVENT_COLUMNS.get(event_type)
        if column is None:
            return False
        with db_transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE email_sends SET {column} = ?
                WHERE provider_message_id = ? AND {column} IS NULL
                """,
                (to_iso(occurred_at), provider_message_id),
            )
        return cursor.rowcount > 0
