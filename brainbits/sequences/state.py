"""
Drip sequence state (email_sequence_states).

One row per (user, sequence). Rows move active -> completed or
active -> exited and never back: every transition is guarded by
status = 'active', and entering a sequence is INSERT OR IGNORE, so a user
who finished or left a sequence can never re-enter it.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from brainbits.infrastructure.database import (
    db_transaction,
    get_db_connection,
    placeholders,
    retry_on_db_lock,
)
from brainbits.observability.logging import get_logger
from brainbits.scheduling.sequence_schedule import SequenceName, total_steps
from brainbits.utils.dates import parse_iso, to_iso, utc_now

logger = get_logger(__name__)


class SequenceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"


class ExitReason(str, Enum):
    CONNECTED = "connected"
    UPGRADED = "upgraded"


class SequenceState(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: int
    user_id: str
    sequence_name: SequenceName
    current_step: int = 1
    status: SequenceStatus = SequenceStatus.ACTIVE
    entered_at: datetime
    last_email_sent_at: datetime | None = None
    completed_at: datetime | None = None
    exit_reason: str | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> SequenceState:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            sequence_name=SequenceName(row["sequence_name"]),
            current_step=row["current_step"],
            status=SequenceStatus(row["status"]),
            entered_at=parse_iso(row["entered_at"]),
            last_email_sent_at=parse_iso(row.get("last_email_sent_at")),
            completed_at=parse_iso(row.get("completed_at")),
            exit_reason=row.get("exit_reason"),
        )


class SequenceStateRepository:
    @staticmethod
    def enter(user_id: str, sequence_name: SequenceName | str, entered_at: datetime) -> bool:
        """
        Start a sequence for a user at step 1.

        Returns:
            True if a row was created, False if the user already has (or had) one

        Side Effects:
            - Inserts one email_sequence_states row unless (user, sequence) exists
        """
        return SequenceStateRepository.enter_many([user_id], sequence_name, entered_at) == 1

    @staticmethod
    @retry_on_db_lock()
    def enter_many(
        user_ids: Iterable[str], sequence_name: SequenceName | str, entered_at: datetime
    ) -> int:
        """INSERT OR IGNORE for many users at once. Returns the number of rows created."""
        name = getattr(sequence_name, "value", sequence_name)
        entered = to_iso(entered_at)
        now = to_iso(utc_now())
        created = 0
        with db_transaction() as conn:
            for user_id in dict.fromkeys(user_ids):
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO email_sequence_states (
                        user_id, sequence_name, current_step, status,
                        entered_at, created_at, updated_at
                    ) VALUES (?, ?, 1, 'active', ?, ?, ?)
                    """,
                    (user_id, name, entered, now, now),
                )
                created += cursor.rowcount
        return created

    @staticmethod
    def get(user_id: str, sequence_name: SequenceName | str) -> SequenceState | None:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM email_sequence_states
                WHERE user_id = ? AND sequence_name = ?
                """,
                (user_id, getattr(sequence_name, "value", sequence_name)),
            ).fetchone()
        return SequenceState.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_active() -> list[SequenceState]:
        names = [name.value for name in SequenceName]
        with get_db_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM email_sequence_states
                WHERE status = 'active' AND sequence_name IN ({placeholders(names)})
                ORDER BY id
                """,
                names,
            ).fetchall()
        return [SequenceState.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def users_with_sequence(sequence_name: SequenceName | str) -> set[str]:
        """Users holding a row for the sequence in any status."""
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT user_id FROM email_sequence_states WHERE sequence_name = ?",
                (getattr(sequence_name, "value", sequence_name),),
            ).fetchall()
        return {row["user_id"] for row in rows}

    @staticmethod
    @retry_on_db_lock()
    def mark_exited(state_id: int, reason: str, now: datetime) -> bool:
        """Returns False if the row was no longer active."""
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE email_sequence_states
                SET status = 'exited', exit_reason = ?, completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (reason, to_iso(now), to_iso(utc_now()), state_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    @retry_on_db_lock()
    def mark_completed(state_id: int, now: datetime) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE email_sequence_states
                SET status = 'completed', completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (to_iso(now), to_iso(utc_now()), state_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    def advance(conn: sqlite3.Connection, state: SequenceState, now: datetime) -> bool:
        """
        Move to the next step inside the caller's transaction, completing the
        sequence once the last step has been sent.
        """
        next_step = state.current_step + 1
        finished = next_step > total_steps(state.sequence_name)
        cursor = conn.execute(
            """
            UPDATE email_sequence_states
            SET current_step = ?, last_email_sent_at = ?, updated_at = ?,
                status = CASE WHEN ? THEN 'completed' ELSE status END,
                completed_at = CASE WHEN ? THEN ? ELSE completed_at END
            WHERE id = ? AND status = 'active' AND current_step = ?
            """,
            (
                next_step,
                to_iso(now),
                to_iso(utc_now()),
                int(finished),
                int(finished),
                to_iso(now),
                state.id,
                state.current_step,
            ),
        )
        return cursor.rowcount > 0
