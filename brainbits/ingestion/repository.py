"""
Ingestion repositories - documents, per-connection sync cursors and scope rules.

Documents are never hard-deleted. Every write here is the result of an
"apply" decision from brainbits.ingestion.conflict.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from brainbits.ingestion.conflict import ExistingSnapshot
from brainbits.ingestion.content import EMPTY_CONTENT_HASH, encode_content
from brainbits.ingestion.types import SyncItemDelete, SyncItemUpsert
from brainbits.infrastructure.database import (
    db_transaction,
    get_db_connection,
    placeholders,
    retry_on_db_lock,
)
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import parse_iso, to_iso, utc_now

logger = get_logger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _dump_metadata(metadata: dict[str, Any] | None) -> str | None:
    return json.dumps(metadata, sort_keys=True, default=str) if metadata is not None else None


class DocumentRepository:
    """Canonical note store, one row per (user, connection, external id)."""

    @staticmethod
    def fetch_snapshots(
        user_id: str, connection_id: int, external_ids: Iterable[str]
    ) -> dict[str, ExistingSnapshot]:
        """Bulk-load resolver snapshots for one batch, keyed by external id."""
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id, external_id, content_hash, updated_at_source, deleted_at_source
                FROM documents
                WHERE user_id = ? AND connection_id = ? AND external_id IN ({placeholders(ids)})
                """,
                [user_id, connection_id, *ids],
            ).fetchall()
        return {
            row["external_id"]: ExistingSnapshot(
                document_id=row["id"],
                content_hash=row["content_hash"],
                updated_at_source=parse_iso(row["updated_at_source"]),
                deleted_at_source=parse_iso(row["deleted_at_source"]),
            )
            for row in rows
        }

    @staticmethod
    def count_active(user_id: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM documents WHERE user_id = ? AND deleted_at_source IS NULL",
                (user_id,),
            ).fetchone()
        return int(row[0])

    @staticmethod
    def get(document_id: int) -> dict[str, Any] | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def get_by_external_id(
        user_id: str, connection_id: int, external_id: str
    ) -> dict[str, Any] | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM documents
                WHERE user_id = ? AND connection_id = ? AND external_id = ?
                """,
                (user_id, connection_id, external_id),
            ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def list_active_for_user(user_id: str) -> list[dict[str, Any]]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, connection_id, title, content_hash
                FROM documents
                WHERE user_id = ? AND deleted_at_source IS NULL
                ORDER BY id
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def apply_upsert(
        user_id: str,
        connection_id: int,
        item: SyncItemUpsert,
        event_time: datetime,
        synced_at: datetime,
    ) -> int:
        """
        Write an accepted upsert, clearing any tombstone.

        Returns:
            Document id

        Side Effects:
            - Inserts or updates one documents row
        """
        encoded = encode_content(item.content_markdown)
        now = to_iso(utc_now())
        params = {
            "user_id": user_id,
            "connection_id": connection_id,
            "external_id": item.external_id,
            "title": item.title,
            "content_ciphertext": encoded.ciphertext,
            "content_alg": encoded.alg,
            "content_key_version": encoded.key_version,
            "content_size_bytes": encoded.size_bytes,
            "content_hash": item.content_hash,
            "metadata_json": _dump_metadata(item.metadata),
            "created_at_source": to_iso(item.created_at_source),
            "updated_at_source": to_iso(event_time),
            "last_synced_at": to_iso(synced_at),
            "now": now,
        }
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    user_id, connection_id, external_id, title,
                    content_ciphertext, content_alg, content_key_version, content_size_bytes,
                    content_hash, metadata_json, created_at_source, updated_at_source,
                    deleted_at_source, last_synced_at, created_at, updated_at
                ) VALUES (
                    :user_id, :connection_id, :external_id, :title,
                    :content_ciphertext, :content_alg, :content_key_version, :content_size_bytes,
                    :content_hash, :metadata_json, :created_at_source, :updated_at_source,
                    NULL, :last_synced_at, :now, :now
                )
                ON CONFLICT(user_id, connection_id, external_id) DO UPDATE SET
                    title = excluded.title,
                    content_ciphertext = excluded.content_ciphertext,
                    content_alg = excluded.content_alg,
                    content_key_version = excluded.content_key_version,
                    content_size_bytes = excluded.content_size_bytes,
                    content_hash = excluded.content_hash,
                    metadata_json = COALESCE(excluded.metadata_json, documents.metadata_json),
                    created_at_source = COALESCE(
                        documents.created_at_source, excluded.created_at_source
                    ),
                    updated_at_source = excluded.updated_at_source,
                    deleted_at_source = NULL,
                    last_synced_at = excluded.last_synced_at,
                    updated_at = excluded.updated_at
                """,
                params,
            )
            return _document_id(conn, user_id, connection_id, item.external_id)

    @staticmethod
    @retry_on_db_lock()
    def insert_tombstone(
        user_id: str,
        connection_id: int,
        item: SyncItemDelete,
        synced_at: datetime,
    ) -> int:
        """
        Record a delete for a document never seen before, so a late upsert
        with an older timestamp cannot resurrect it.

        Side Effects:
            - Inserts one documents row with empty content
        """
        encoded = encode_content("")
        now = to_iso(utc_now())
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    user_id, connection_id, external_id, title,
                    content_ciphertext, content_alg, content_key_version, content_size_bytes,
                    content_hash, metadata_json, updated_at_source, deleted_at_source,
                    last_synced_at, created_at, updated_at
                ) VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    connection_id,
                    item.external_id,
                    encoded.ciphertext,
                    encoded.alg,
                    encoded.key_version,
                    encoded.size_bytes,
                    EMPTY_CONTENT_HASH,
                    _dump_metadata(item.metadata),
                    to_iso(item.updated_at_source),
                    to_iso(item.deleted_at_source),
                    to_iso(synced_at),
                    now,
                    now,
                ),
            )
            return _document_id(conn, user_id, connection_id, item.external_id)

    @staticmethod
    @retry_on_db_lock()
    def apply_delete(document_id: int, item: SyncItemDelete, synced_at: datetime) -> None:
        """
        Tombstone an existing document. Content and hash are left as they were.

        Side Effects:
            - Updates one documents row
        """
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE documents SET
                    deleted_at_source = ?,
                    updated_at_source = COALESCE(?, updated_at_source),
                    metadata_json = COALESCE(?, metadata_json),
                    last_synced_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    to_iso(item.deleted_at_source),
                    to_iso(item.updated_at_source),
                    _dump_metadata(item.metadata),
                    to_iso(synced_at),
                    to_iso(utc_now()),
                    document_id,
                ),
            )


def _document_id(
    conn: sqlite3.Connection, user_id: str, connection_id: int, external_id: str
) -> int:
    row = conn.execute(
        "SELECT id FROM documents WHERE user_id = ? AND connection_id = ? AND external_id = ?",
        (user_id, connection_id, external_id),
    ).fetchone()
    return int(row["id"])


class SyncStateRepository:
    """Per-connection cursor. Written after every batch, including empty ones."""

    @staticmethod
    @retry_on_db_lock()
    def record_batch(
        connection_id: int,
        received_at: datetime,
        cursor: dict[str, Any] | None = UNSET,
    ) -> None:
        """
        Advance last_incremental_sync_at; replace cursor_json only when a cursor
        argument was passed (None clears it).

        Side Effects:
            - Upserts one sync_state row
        """
        received = to_iso(received_at)
        now = to_iso(utc_now())
        with db_transaction() as conn:
            if cursor is UNSET:
                conn.execute(
                    """
                    INSERT INTO sync_state (connection_id, last_incremental_sync_at, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(connection_id) DO UPDATE SET
                        last_incremental_sync_at = excluded.last_incremental_sync_at,
                        updated_at = excluded.updated_at
                    """,
                    (connection_id, received, now),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO sync_state (
                        connection_id, last_incremental_sync_at, cursor_json, updated_at
                    ) VALUES (?, ?, ?, ?)
                    ON CONFLICT(connection_id) DO UPDATE SET
                        last_incremental_sync_at = excluded.last_incremental_sync_at,
                        cursor_json = excluded.cursor_json,
                        updated_at = excluded.updated_at
                    """,
                    (connection_id, received, json.dumps(cursor) if cursor is not None else None, now),
                )

    @staticmethod
    def get(connection_id: int) -> dict[str, Any] | None:
        """Stored sync state with cursor_json decoded into "cursor"."""
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_state WHERE connection_id = ?", (connection_id,)
            ).fetchone()
        if not row:
            return None
        state = dict(row)
        state["cursor"] = json.loads(row["cursor_json"]) if row["cursor_json"] else None
        return state


class ScopeRepository:
    @staticmethod
    @retry_on_db_lock()
    def add(connection_id: int, scope_type: str, scope_value: str, enabled: bool = True) -> None:
        """
        Add (or re-enable) a scope rule.

        Side Effects:
            - Upserts one integration_scope_items row
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO integration_scope_items (connection_id, scope_type, scope_value, enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(connection_id, scope_type, scope_value)
                DO UPDATE SET enabled = excluded.enabled
                """,
                (connection_id, scope_type, scope_value, int(enabled)),
            )

    @staticmethod
    def list_enabled(connection_id: int, scope_type: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM integration_scope_items WHERE connection_id = ? AND enabled = 1"
        params: list[Any] = [connection_id]
        if scope_type is not None:
            query += " AND scope_type = ?"
            params.append(scope_type)
        with get_db_connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [dict(row) for row in rows]
