"""
Digest repositories - note_digests, note_digest_items and review_states.

A digest row and its items are always written together in one transaction,
so a digest is never visible with a partial item list.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from brainbits.digest.models import (
    PENDING_STATUSES,
    Digest,
    DigestItem,
    DigestStatus,
    ReviewCandidate,
    ReviewStatus,
)
from brainbits.infrastructure.database import (
    db_transaction,
    get_db_connection,
    placeholders,
    retry_on_db_lock,
)
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import parse_iso, to_iso, utc_now

logger = get_logger(__name__)


def _dump(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


@dataclass(frozen=True)
class DigestStats:
    """Sent-digest totals for one user (sequence templates and upgrade discovery)."""

    digest_count: int = 0
    note_count: int = 0
    first_sent_at: datetime | None = None


@dataclass(frozen=True)
class SnapshotItem:
    """One digest item joined with its current document state."""

    document_id: int
    position: int
    content_hash_at_send: str
    title: str | None
    content_ciphertext: str | None
    content_alg: str | None
    current_content_hash: str | None
    deleted_at_source: datetime | None
    source_kind: str | None
    source_name: str | None

    @property
    def has_drifted(self) -> bool:
        return (
            self.deleted_at_source is not None
            or self.current_content_hash != self.content_hash_at_send
        )


class DigestRepository:
    @staticmethod
    @retry_on_db_lock()
    def save_with_items(
        user_id: str,
        status: DigestStatus | str,
        items: list[DigestItem] | None,
        scheduled_for: datetime | None = None,
        sent_at: datetime | None = None,
        payload: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
        digest_id: int | None = None,
    ) -> int:
        """
        Insert a digest (or update digest_id) and replace its items atomically.

        items=None leaves existing items untouched; an empty list clears them.

        Returns:
            Digest id

        Side Effects:
            - Writes note_digests and note_digest_items in one transaction
        """
        now = to_iso(utc_now())
        status_value = getattr(status, "value", status)
        with db_transaction() as conn:
            if digest_id is not None:
                conn.execute(
                    """
                    UPDATE note_digests
                    SET status = ?, scheduled_for = ?, sent_at = ?,
                        payload_json = ?, error_json = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        status_value,
                        to_iso(scheduled_for),
                        to_iso(sent_at),
                        _dump(payload),
                        _dump(error),
                        now,
                        digest_id,
                    ),
                )
                if items is not None:
                    conn.execute("DELETE FROM note_digest_items WHERE digest_id = ?", (digest_id,))
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO note_digests (
                        user_id, scheduled_for, sent_at, status,
                        payload_json, error_json, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        to_iso(scheduled_for),
                        to_iso(sent_at),
                        status_value,
                        _dump(payload),
                        _dump(error),
                        now,
                        now,
                    ),
                )
                digest_id = int(cursor.lastrowid)

            if items:
                conn.executemany(
                    """
                    INSERT INTO note_digest_items (
                        digest_id, document_id, position, content_hash_at_send, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (digest_id, item.document_id, item.position, item.content_hash_at_send, now)
                        for item in items
                    ],
                )
        return digest_id

    @staticmethod
    def get(digest_id: int) -> Digest | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM note_digests WHERE id = ?", (digest_id,)).fetchone()
        return Digest.from_db_row(dict(row)) if row else None

    @staticmethod
    def latest_for_user(user_id: str) -> Digest | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM note_digests
                WHERE user_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return Digest.from_db_row(dict(row)) if row else None

    @staticmethod
    def latest_pending_for_user(user_id: str) -> Digest | None:
        """Newest digest still waiting to go out (scheduled, or failed and retryable)."""
        with get_db_connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM note_digests
                WHERE user_id = ? AND status IN ({placeholders(PENDING_STATUSES)})
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (user_id, *PENDING_STATUSES),
            ).fetchone()
        return Digest.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_for_user(user_id: str) -> list[Digest]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM note_digests WHERE user_id = ? ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [Digest.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def list_items(digest_id: int) -> list[DigestItem]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT document_id, position, content_hash_at_send
                FROM note_digest_items
                WHERE digest_id = ?
                ORDER BY position
                """,
                (digest_id,),
            ).fetchall()
        return [DigestItem(**dict(row)) for row in rows]

    @staticmethod
    def load_snapshot(user_id: str, digest_id: int) -> list[SnapshotItem]:
        """Items of a digest in position order, joined with their documents and sources."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    i.document_id, i.position, i.content_hash_at_send,
                    d.title, d.content_ciphertext, d.content_alg,
                    d.content_hash AS current_content_hash, d.deleted_at_source,
                    c.kind AS source_kind, c.display_name AS source_name
                FROM note_digest_items i
                JOIN note_digests n ON n.id = i.digest_id
                LEFT JOIN documents d ON d.id = i.document_id AND d.user_id = n.user_id
                LEFT JOIN integration_connections c ON c.id = d.connection_id
                WHERE i.digest_id = ? AND n.user_id = ?
                ORDER BY i.position
                """,
                (digest_id, user_id),
            ).fetchall()
        return [
            SnapshotItem(
                document_id=row["document_id"],
                position=row["position"],
                content_hash_at_send=row["content_hash_at_send"],
                title=row["title"],
                content_ciphertext=row["content_ciphertext"],
                content_alg=row["content_alg"],
                current_content_hash=row["current_content_hash"],
                deleted_at_source=parse_iso(row["deleted_at_source"]),
                source_kind=row["source_kind"],
                source_name=row["source_name"],
            )
            for row in rows
        ]

    @staticmethod
    def mark_sent(
        conn: sqlite3.Connection,
        digest_id: int,
        sent_at: datetime,
        payload: dict[str, Any],
    ) -> None:
        """Mark sent inside the caller's transaction; items are kept."""
        conn.execute(
            """
            UPDATE note_digests
            SET status = ?, sent_at = ?, payload_json = ?, error_json = NULL, updated_at = ?
            WHERE id = ?
            """,
            (DigestStatus.SENT.value, to_iso(sent_at), _dump(payload), to_iso(utc_now()), digest_id),
        )

    @staticmethod
    @retry_on_db_lock()
    def mark_failed(digest_id: int, error: dict[str, Any], payload: dict[str, Any]) -> None:
        """
        Side Effects:
            - Sets status=failed and error_json; the digest stays pending for the next run
        """
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE note_digests
                SET status = ?, error_json = ?, payload_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (DigestStatus.FAILED.value, _dump(error), _dump(payload), to_iso(utc_now()), digest_id),
            )

    @staticmethod
    @retry_on_db_lock()
    def mark_skipped(digest_id: int, reason: str) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE note_digests
                SET status = ?, payload_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (DigestStatus.SKIPPED.value, _dump({"reason": reason}), to_iso(utc_now()), digest_id),
            )

    @staticmethod
    def last_sent_map(user_ids: Iterable[str]) -> dict[str, datetime]:
        """Most recent sent_at per user, for users with at least one sent digest."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT user_id, MAX(sent_at) AS last_sent_at
                FROM note_digests
                WHERE status = 'sent' AND sent_at IS NOT NULL
                    AND user_id IN ({placeholders(ids)})
                GROUP BY user_id
                """,
                ids,
            ).fetchall()
        return {row["user_id"]: parse_iso(row["last_sent_at"]) for row in rows}

    @staticmethod
    def sent_stats_for_users(user_ids: Iterable[str] | None = None) -> dict[str, DigestStats]:
        """
        Sent digest count, total notes delivered and first send time per user.

        With user_ids=None every user with a sent digest is returned.
        """
        ids = list(dict.fromkeys(user_ids)) if user_ids is not None else None
        if ids is not None and not ids:
            return {}
        where = "n.status = 'sent'"
        params: list[Any] = []
        if ids is not None:
            where += f" AND n.user_id IN ({placeholders(ids)})"
            params = ids
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    n.user_id,
                    COUNT(DISTINCT n.id) AS digest_count,
                    COUNT(i.id) AS note_count,
                    MIN(n.sent_at) AS first_sent_at
                FROM note_digests n
                LEFT JOIN note_digest_items i ON i.digest_id = n.id
                WHERE {where}
                GROUP BY n.user_id
                """,
                params,
            ).fetchall()
        return {
            row["user_id"]: DigestStats(
                digest_count=int(row["digest_count"]),
                note_count=int(row["note_count"]),
                first_sent_at=parse_iso(row["first_sent_at"]),
            )
            for row in rows
        }


class ReviewStateRepository:
    @staticmethod
    def candidates_for_user(user_id: str) -> dict[int, ReviewCandidate]:
        """Review state per document id; documents without a row are absent."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT document_id, status, next_due_at, last_sent_at,
                       priority_weight, deprioritized_until
                FROM review_states
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchall()
        return {
            row["document_id"]: ReviewCandidate(
                document_id=row["document_id"],
                status=row["status"],
                next_due_at=parse_iso(row["next_due_at"]),
                last_sent_at=parse_iso(row["last_sent_at"]),
                priority_weight=row["priority_weight"],
                deprioritized_until=parse_iso(row["deprioritized_until"]),
            )
            for row in rows
        }

    @staticmethod
    @retry_on_db_lock()
    def upsert(
        user_id: str,
        document_id: int,
        status: ReviewStatus | str = ReviewStatus.NEW,
        next_due_at: datetime | None = None,
        priority_weight: float = 1.0,
        deprioritized_until: datetime | None = None,
    ) -> None:
        """
        Side Effects:
            - Inserts or updates one review_states row (last_sent_at is preserved)
        """
        now = to_iso(utc_now())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO review_states (
                    document_id, user_id, status, priority_weight,
                    deprioritized_until, next_due_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    status = excluded.status,
                    priority_weight = excluded.priority_weight,
                    deprioritized_until = excluded.deprioritized_until,
                    next_due_at = excluded.next_due_at,
                    updated_at = excluded.updated_at
                """,
                (
                    document_id,
                    user_id,
                    getattr(status, "value", status),
                    priority_weight,
                    to_iso(deprioritized_until),
                    to_iso(next_due_at),
                    now,
                    now,
                ),
            )

    @staticmethod
    def mark_sent(
        conn: sqlite3.Connection,
        user_id: str,
        document_ids: Iterable[int],
        sent_at: datetime,
    ) -> None:
        """Set last_sent_at for delivered documents inside the caller's transaction."""
        sent = to_iso(sent_at)
        now = to_iso(utc_now())
        conn.executemany(
            """
            INSERT INTO review_states (
                document_id, user_id, status, last_sent_at, created_at, updated_at
            ) VALUES (?, ?, 'new', ?, ?, ?)
            ON CONFLICT(document_id) DO UPDATE SET
                last_sent_at = excluded.last_sent_at,
                updated_at = excluded.updated_at
            """,
            [(document_id, user_id, sent, now, now) for document_id in document_ids],
        )
