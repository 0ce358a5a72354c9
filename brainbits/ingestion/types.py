"""
Sync item and result types for the ingestion pipeline.

A sync item is a tagged union on "op": SyncItemUpsert or SyncItemDelete.
Sources send camelCase keys (externalId, contentMarkdown, updatedAtSource...);
both camelCase and snake_case are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from brainbits.utils.dates import ensure_utc


class SourceKind(str, Enum):
    """Where a connection's notes come from."""

    NOTION = "notion"
    OBSIDIAN = "obsidian"


class _SyncItemBase(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )

    external_id: str = Field(..., alias="externalId", min_length=1)
    metadata: dict[str, Any] | None = None

    @field_validator("external_id")
    @classmethod
    def external_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("externalId cannot be blank")
        return v

    @field_validator("*", mode="after")
    @classmethod
    def datetimes_are_utc(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class SyncItemUpsert(_SyncItemBase):
    """Create or replace a note's content."""

    op: Literal["upsert"]
    title: str | None = None
    content_markdown: str | None = Field(default=None, alias="contentMarkdown")
    content_hash: str | None = Field(default=None, alias="contentHash")
    created_at_source: datetime | None = Field(default=None, alias="createdAtSource")
    updated_at_source: datetime | None = Field(default=None, alias="updatedAtSource")

    @property
    def event_time(self) -> datetime | None:
        return self.updated_at_source


class SyncItemDelete(_SyncItemBase):
    """Tombstone a note. deleted_at_source is always present by the time items are validated."""

    op: Literal["delete"]
    deleted_at_source: datetime = Field(..., alias="deletedAtSource")
    updated_at_source: datetime | None = Field(default=None, alias="updatedAtSource")

    @property
    def event_time(self) -> datetime | None:
        return self.deleted_at_source


SyncItem = Annotated[SyncItemUpsert | SyncItemDelete, Field(discriminator="op")]

_SYNC_ITEM_ADAPTER: TypeAdapter[SyncItemUpsert | SyncItemDelete] = TypeAdapter(SyncItem)


def parse_sync_item(raw: dict[str, Any]) -> SyncItemUpsert | SyncItemDelete:
    """Validate a raw item. Raises pydantic.ValidationError when malformed."""
    return _SYNC_ITEM_ADAPTER.validate_python(raw)


def raw_external_id(raw: Any) -> str:
    """Best-effort external id for reporting on items that failed validation."""
    if isinstance(raw, dict):
        value = raw.get("externalId", raw.get("external_id"))
        if isinstance(value, str) and value:
            return value
    return "unknown"


class ItemStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class RejectReason:
    INVALID_ITEM = "invalid_item"
    MISSING_PATH = "missing_path"
    OUT_OF_SCOPE = "out_of_scope"
    NOTE_LIMIT_REACHED = "note_limit_reached"
    SERVER_ERROR = "server_error"


@dataclass
class ItemResult:
    """Outcome for one item of a sync batch."""

    external_id: str
    status: ItemStatus
    reason: str | None = None
    document_id: int | None = None


@dataclass
class IngestResult:
    """Aggregate outcome of one sync batch."""

    accepted: int = 0
    rejected: int = 0
    skipped: int = 0
    items: list[ItemResult] = field(default_factory=list)

    def record(self, result: ItemResult) -> None:
        self.items.append(result)
        if result.status == ItemStatus.ACCEPTED:
            self.accepted += 1
        elif result.status == ItemStatus.REJECTED:
            self.rejected += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "items": [
                {
                    "external_id": item.external_id,
                    "status": item.status.value,
                    "reason": item.reason,
                    "document_id": item.document_id,
                }
                for item in self.items
            ],
        }


@dataclass
class PullResult:
    """What a source adapter returns for one pull."""

    items: list[dict[str, Any]]
    next_cursor: dict[str, Any] | None = None
    stats: dict[str, Any] = field(default_factory=dict)


class SourceAdapter(Protocol):
    """Pull-based source client, one implementation per SourceKind."""

    def pull(
        self,
        connection: Any,
        scope: list[Any],
        cursor: dict[str, Any] | None,
    ) -> PullResult: ...
