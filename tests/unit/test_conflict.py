"""
Tests for sync conflict resolution.

Validates:
1. Older events never overwrite newer state
2. Equal timestamps: tombstones win, identical content is skipped
3. Deletes need a strictly newer timestamp
4. Items without a source timestamp are dated at receipt
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from brainbits.ingestion.conflict import (
    DecisionAction,
    ExistingSnapshot,
    SkipReason,
    resolve,
    resolve_delete,
    resolve_upsert,
)
from brainbits.ingestion.types import SyncItemDelete, SyncItemUpsert

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
HOUR = timedelta(hours=1)


def upsert(updated_at=T0, content_hash="hash-1") -> SyncItemUpsert:
    return SyncItemUpsert(
        op="upsert", externalId="note-1", contentHash=content_hash, updatedAtSource=updated_at
    )


def delete(deleted_at=T0) -> SyncItemDelete:
    return SyncItemDelete(op="delete", externalId="note-1", deletedAtSource=deleted_at)


def live(updated_at=T0, content_hash="hash-1") -> ExistingSnapshot:
    return ExistingSnapshot(1, content_hash, updated_at, None)


def tombstoned(deleted_at=T0) -> ExistingSnapshot:
    return ExistingSnapshot(1, "hash-1", T0 - HOUR, deleted_at)


class TestResolveUpsert:
    """Tests for upsert ordering against the stored snapshot"""

    def test_upsert_for_unknown_document_applies(self):
        assert resolve_upsert(None, upsert(), T0).should_apply

    def test_older_upsert_is_stale(self):
        decision = resolve_upsert(live(T0), upsert(T0 - HOUR), T0)
        assert decision.action == DecisionAction.SKIP
        assert decision.reason == SkipReason.STALE

    def test_newer_upsert_applies(self):
        assert resolve_upsert(live(T0), upsert(T0 + HOUR, "hash-2"), T0).should_apply

    def test_equal_timestamp_same_hash_is_unchanged(self):
        decision = resolve_upsert(live(T0), upsert(T0), T0)
        assert decision.reason == SkipReason.UNCHANGED

    def test_equal_timestamp_different_hash_applies(self):
        assert resolve_upsert(live(T0), upsert(T0, "hash-2"), T0).should_apply

    def test_tombstone_wins_timestamp_tie(self):
        """A deletion beats an upsert carrying the same timestamp"""
        decision = resolve_upsert(tombstoned(T0), upsert(T0, "hash-2"), T0)
        assert not decision.should_apply
        assert decision.reason == SkipReason.STALE

    def test_newer_upsert_resurrects_tombstone(self):
        assert resolve_upsert(tombstoned(T0), upsert(T0 + HOUR), T0).should_apply

    def test_upsert_without_timestamp_uses_received_at(self):
        """Items without updatedAtSource are dated at receipt"""
        item = SyncItemUpsert(op="upsert", externalId="note-1", contentHash="hash-2")

        assert resolve_upsert(live(T0), item, T0 + HOUR).should_apply
        assert not resolve_upsert(live(T0), item, T0 - HOUR).should_apply


class TestResolveDelete:
    """Tests for delete ordering; deletes need a strictly newer timestamp"""

    def test_delete_for_unknown_document_records_tombstone(self):
        decision = resolve_delete(None, delete(), T0)
        assert decision.should_apply
        assert decision.tombstone is True

    def test_delete_with_equal_timestamp_is_a_replay(self):
        """An equal timestamp is treated as a replay of the stored event"""
        decision = resolve_delete(live(T0), delete(T0), T0)
        assert decision.reason == SkipReason.STALE

    def test_delete_replay_against_tombstone_is_skipped(self):
        assert not resolve_delete(tombstoned(T0), delete(T0), T0).should_apply

    def test_newer_delete_applies_without_new_tombstone_row(self):
        decision = resolve_delete(live(T0), delete(T0 + HOUR), T0)
        assert decision.should_apply
        assert decision.tombstone is False

    def test_older_delete_is_stale(self):
        assert not resolve_delete(live(T0), delete(T0 - HOUR), T0).should_apply


def test_resolve_dispatches_on_variant():
    assert resolve(None, delete(), T0).tombstone is True
    assert resolve(None, upsert(), T0).tombstone is False


def test_snapshot_latest_source_time_covers_deletes():
    snapshot = ExistingSnapshot(1, "h", T0, T0 + HOUR)
    assert snapshot.latest_source_time == T0 + HOUR
    assert ExistingSnapshot(1, "h", None, None).latest_source_time is None
