"""
Database schema initialization for Brain Bits.

Timestamps are stored as ISO-8601 UTC strings (see brainbits.utils.dates).
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from brainbits.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT,
                name TEXT,
                email_verified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_settings (
                user_id TEXT PRIMARY KEY,
                email_frequency TEXT NOT NULL DEFAULT 'weekly'
                    CHECK (email_frequency IN ('daily', 'weekly', 'monthly')),
                notes_per_digest INTEGER NOT NULL DEFAULT 5,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                preferred_send_hour INTEGER NOT NULL DEFAULT 8
                    CHECK (preferred_send_hour BETWEEN 0 AND 23),
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS billing_subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS integration_connections (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('notion', 'obsidian')),
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'paused', 'revoked', 'error')),
                display_name TEXT,
                account_external_id TEXT,
                config_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS integration_scope_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                connection_id INTEGER NOT NULL
                    REFERENCES integration_connections(id) ON DELETE CASCADE,
                scope_type TEXT NOT NULL CHECK (scope_type IN ('notion_database', 'obsidian_glob')),
                scope_value TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                UNIQUE (connection_id, scope_type, scope_value)
            );

            CREATE TABLE IF NOT EXISTS documents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                connection_id INTEGER NOT NULL
                    REFERENCES integration_connections(id) ON DELETE CASCADE,
                external_id TEXT NOT NULL,
                title TEXT,
                content_ciphertext TEXT NOT NULL,
                content_alg TEXT NOT NULL DEFAULT 'none',
                content_key_version INTEGER NOT NULL DEFAULT 0,
                content_size_bytes INTEGER NOT NULL DEFAULT 0,
                content_hash TEXT NOT NULL,
                metadata_json TEXT,
                created_at_source TEXT,
                updated_at_source TEXT,
                deleted_at_source TEXT,
                last_synced_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, connection_id, external_id)
            );

            CREATE TABLE IF NOT EXISTS sync_state (
                connection_id INTEGER PRIMARY KEY
                    REFERENCES integration_connections(id) ON DELETE CASCADE,
                last_full_sync_at TEXT,
                last_incremental_sync_at TEXT,
                cursor_json TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS review_states (
                document_id INTEGER PRIMARY KEY REFERENCES documents(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'new'
                    CHECK (status IN ('new', 'reviewing', 'suspended')),
                priority_weight REAL NOT NULL DEFAULT 1.0,
                deprioritized_until TEXT,
                last_sent_at TEXT,
                next_due_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS note_digests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                scheduled_for TEXT,
                sent_at TEXT,
                status TEXT NOT NULL DEFAULT 'scheduled'
                    CHECK (status IN ('scheduled', 'sent', 'failed', 'skipped')),
                payload_json TEXT,
                error_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS note_digest_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                digest_id INTEGER NOT NULL REFERENCES note_digests(id) ON DELETE CASCADE,
                document_id INTEGER NOT NULL REFERENCES documents(id),
                position INTEGER NOT NULL,
                content_hash_at_send TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (digest_id, document_id)
            );

            CREATE TABLE IF NOT EXISTS email_sequence_states (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                sequence_name TEXT NOT NULL
                    CHECK (sequence_name IN ('welcome', 'onboarding', 'upgrade')),
                current_step INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'exited')),
                entered_at TEXT NOT NULL,
                last_email_sent_at TEXT,
                completed_at TEXT,
                exit_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, sequence_name)
            );

            CREATE TABLE IF NOT EXISTS email_sends (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                sequence_name TEXT,
                email_name TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                provider TEXT NOT NULL DEFAULT 'resend',
                provider_message_id TEXT,
                sent_at TEXT NOT NULL,
                opened_at TEXT,
                clicked_at TEXT,
                payload_json TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_connections_kind_status
                ON integration_connections(kind, status);
            CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id);
            CREATE INDEX IF NOT EXISTS idx_documents_connection ON documents(connection_id);
            CREATE INDEX IF NOT EXISTS idx_review_states_user ON review_states(user_id);
            CREATE INDEX IF NOT EXISTS idx_note_digests_user_status
                ON note_digests(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_note_digest_items_digest
                ON note_digest_items(digest_id);
            CREATE INDEX IF NOT EXISTS idx_sequence_states_status
                ON email_sequence_states(status);
            CREATE INDEX IF NOT EXISTS idx_email_sends_provider_id
                ON email_sends(provider_message_id);
            CREATE INDEX IF NOT EXISTS idx_billing_user ON billing_subscriptions(user_id);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Args:
        conn: Active database connection

    Returns:
        True if valid

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "users": ["id", "email", "email_verified"],
        "user_settings": ["user_id", "email_frequency", "timezone", "preferred_send_hour"],
        "integration_connections": ["id", "user_id", "kind", "status"],
        "integration_scope_items": ["connection_id", "scope_type", "scope_value", "enabled"],
        "documents": ["id", "external_id", "content_hash", "updated_at_source", "deleted_at_source"],
        "sync_state": ["connection_id", "last_incremental_sync_at", "cursor_json"],
        "review_states": ["document_id", "status", "last_sent_at", "next_due_at"],
        "note_digests": ["id", "user_id", "status", "scheduled_for", "sent_at"],
        "note_digest_items": ["digest_id", "document_id", "position", "content_hash_at_send"],
        "email_sequence_states": ["user_id", "sequence_name", "current_step", "status"],
        "email_sends": ["idempotency_key", "provider_message_id", "opened_at", "clicked_at"],
        "billing_subscriptions": ["user_id", "status"],
    }

    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables.keys()) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {sorted(missing_tables)}")

    for table, required_cols in required_tables.items():
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")

        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}
        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table {table} missing columns: {sorted(missing_cols)}")

    return True
