"""
Digest domain models.

A digest is one email's worth of notes for one user. Its item list and status
always change together (see DigestRepository.save_with_items).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from brainbits.utils.dates import parse_iso, utc_now


class DigestStatus(str, Enum):
    SCHEDULED = "scheduled"  # Generated, waiting for its send window
    SENT = "sent"
    FAILED = "failed"  # Send failed; picked up again by the next send run
    SKIPPED = "skipped"  # Nothing to send (no documents, empty selection, empty snapshot)


PENDING_STATUSES = (DigestStatus.SCHEDULED.value, DigestStatus.FAILED.value)


class ReviewStatus(str, Enum):
    NEW = "new"
    REVIEWING = "reviewing"
    SUSPENDED = "suspended"


class DigestItem(BaseModel):
    document_id: int
    position: int = Field(..., ge=1)
    content_hash_at_send: str


class Digest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: int
    user_id: str
    status: DigestStatus = DigestStatus.SCHEDULED
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    payload: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def local_day_anchor(self) -> datetime:
        """The timestamp used for "already generated today" checks."""
        return self.scheduled_for or self.created_at

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Digest:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=DigestStatus(row["status"]),
            scheduled_for=parse_iso(row.get("scheduled_for")),
            sent_at=parse_iso(row.get("sent_at")),
            payload=json.loads(row["payload_json"]) if row.get("payload_json") else None,
            error=json.loads(row["error_json"]) if row.get("error_json") else None,
            created_at=parse_iso(row.get("created_at")) or utc_now(),
            updated_at=parse_iso(row.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ReviewCandidate:
    """What the selector sees for one document."""

    document_id: int
    status: str = ReviewStatus.NEW.value
    next_due_at: datetime | None = None
    last_sent_at: datetime | None = None
    priority_weight: float | None = 1.0
    deprioritized_until: datetime | None = None


@dataclass(frozen=True)
class SelectedItem:
    document_id: int
    position: int
    score: float = 0.0
    reason: str = ""


@dataclass
class SelectionResult:
    items: list[SelectedItem] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
