"""
Conflict resolution for incoming sync events.

Pure functions: given the stored snapshot of a document (or None) and an
incoming event, decide whether to apply or skip it. The order is total over
(source timestamp, tombstone precedence, content hash), so replicas fed the
same events in any order converge without locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from brainbits.ingestion.types import SyncItemDelete, SyncItemUpsert


class DecisionAction(str, Enum):
    APPLY = "apply"
    SKIP = "skip"


class SkipReason:
    STALE = "stale_source_timestamp"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ExistingSnapshot:
    """The stored fields the resolver compares against."""

    document_id: int
    content_hash: str | None
    updated_at_source: datetime | None
    deleted_at_source: datetime | None

    @property
    def is_tombstoned(self) -> bool:
        return self.deleted_at_source is not None

    @property
    def latest_source_time(self) -> datetime | None:
        times = [t for t in (self.updated_at_source, self.deleted_at_source) if t is not None]
        return max(times) if times else None


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str | None = None
    tombstone: bool = False

    @property
    def should_apply(self) -> bool:
        return self.action == DecisionAction.APPLY


APPLY = Decision(DecisionAction.APPLY)


def resolve_upsert(
    existing: ExistingSnapshot | None,
    item: SyncItemUpsert,
    received_at: datetime,
) -> Decision:
    if existing is None:
        return APPLY

    event_time = item.event_time or received_at
    existing_time = existing.latest_source_time

    if existing_time is not None:
        if event_time < existing_time:
            return Decision(DecisionAction.SKIP, SkipReason.STALE)
        if event_time == existing_time:
            # Equal timestamps: a prior deletion wins
            if existing.is_tombstoned:
                return Decision(DecisionAction.SKIP, SkipReason.STALE)
            if item.content_hash is not None and item.content_hash == existing.content_hash:
                return Decision(DecisionAction.SKIP, SkipReason.UNCHANGED)

    return APPLY


def resolve_delete(
    existing: ExistingSnapshot | None,
    item: SyncItemDelete,
    received_at: datetime,
) -> Decision:
    if existing is None:
        return Decision(DecisionAction.APPLY, tombstone=True)

    event_time = item.event_time or received_at
    existing_time = existing.latest_source_time

    # Deletes need a strictly newer timestamp; an equal one is a replay
    if existing_time is not None and event_time <= existing_time:
        return Decision(DecisionAction.SKIP, SkipReason.STALE)

    return APPLY


def resolve(
    existing: ExistingSnapshot | None,
    item: SyncItemUpsert | SyncItemDelete,
    received_at: datetime,
) -> Decision:
    """Dispatch on the item variant."""
    if isinstance(item, SyncItemDelete):
        return resolve_delete(existing, item, received_at)
    return resolve_upsert(existing, item, received_at)
