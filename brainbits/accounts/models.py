"""
Account-side models: users, their delivery settings and source connections.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from brainbits.config import (
    DIGEST_DEFAULT_FREQUENCY,
    DIGEST_DEFAULT_NOTES_PER_DIGEST,
    DIGEST_DEFAULT_SEND_HOUR,
    DIGEST_DEFAULT_TIMEZONE,
)
from brainbits.utils.dates import parse_iso, utc_now


class EmailFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"
    ERROR = "error"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    email: str | None = None
    name: str | None = None
    email_verified: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def can_receive_email(self) -> bool:
        return bool(self.email) and self.email_verified

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> User:
        return cls(
            id=row["id"],
            email=row.get("email"),
            name=row.get("name"),
            email_verified=bool(row.get("email_verified")),
            created_at=parse_iso(row.get("created_at")) or utc_now(),
        )


class UserSettings(BaseModel):
    """Per-user digest preferences. Missing rows fall back to these defaults."""

    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    email_frequency: EmailFrequency = EmailFrequency(DIGEST_DEFAULT_FREQUENCY)
    notes_per_digest: int = Field(default=DIGEST_DEFAULT_NOTES_PER_DIGEST, ge=1)
    timezone: str = DIGEST_DEFAULT_TIMEZONE
    preferred_send_hour: int = Field(default=DIGEST_DEFAULT_SEND_HOUR, ge=0, le=23)

    @field_validator("timezone")
    @classmethod
    def timezone_is_known(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> UserSettings:
        # Stored timezones are not re-validated; the scheduler falls back to UTC for bad ones
        return cls.model_construct(
            user_id=row["user_id"],
            email_frequency=row.get("email_frequency") or DIGEST_DEFAULT_FREQUENCY,
            notes_per_digest=row.get("notes_per_digest") or DIGEST_DEFAULT_NOTES_PER_DIGEST,
            timezone=row.get("timezone") or DIGEST_DEFAULT_TIMEZONE,
            preferred_send_hour=(
                row["preferred_send_hour"]
                if row.get("preferred_send_hour") is not None
                else DIGEST_DEFAULT_SEND_HOUR
            ),
        )


class IntegrationConnection(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: int
    user_id: str
    kind: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    display_name: str | None = None
    account_external_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> IntegrationConnection:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            kind=row["kind"],
            status=ConnectionStatus(row["status"]),
            display_name=row.get("display_name"),
            account_external_id=row.get("account_external_id"),
            config=json.loads(row["config_json"]) if row.get("config_json") else {},
        )


class IntegrationSummary(BaseModel):
    """What the sequence templates and exit rules need to know about a user's sources."""

    connection_count: int = 0
    first_source_kind: str | None = None
    first_source_name: str | None = None

    @property
    def has_connection(self) -> bool:
        return self.connection_count > 0
