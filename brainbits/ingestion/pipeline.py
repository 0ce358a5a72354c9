"""
Ingestion pipeline: one sync batch from one connection into the document store.

Stages per batch:
1. Scope filter (vault sources only)
2. Schema validation into SyncItemUpsert / SyncItemDelete
3. Bulk snapshot load for the batch's external ids
4. Conflict resolution, one item at a time
5. Plan note limit for upserts that would create or revive a document
6. The matching store write
7. Cursor advance (always, even for an empty batch)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ValidationError

from brainbits.billing.plans import get_user_limits
from brainbits.ingestion.conflict import ExistingSnapshot, resolve
from brainbits.ingestion.content import EMPTY_CONTENT_HASH, hash_content
from brainbits.ingestion.repository import (
    UNSET,
    DocumentRepository,
    ScopeRepository,
    SyncStateRepository,
)
from brainbits.ingestion.scope import apply_scope_filter
from brainbits.ingestion.types import (
    IngestResult,
    ItemResult,
    ItemStatus,
    RejectReason,
    SourceKind,
    SyncItemDelete,
    SyncItemUpsert,
    parse_sync_item,
    raw_external_id,
)
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event, time_block
from brainbits.utils.dates import ensure_utc, to_iso

logger = get_logger(__name__)

OBSIDIAN_SCOPE_TYPE = "obsidian_glob"


def _needs_scope_filter(source_kind: str) -> bool:
    return source_kind == SourceKind.OBSIDIAN.value


def _fill_delete_timestamp(raw: Any, received_at: datetime) -> Any:
    """Deletes without a timestamp are dated at batch receipt."""
    if (
        isinstance(raw, dict)
        and raw.get("op") == "delete"
        and not (raw.get("deletedAtSource") or raw.get("deleted_at_source"))
    ):
        return {**raw, "deletedAtSource": to_iso(received_at)}
    return raw


def _with_content_hash(item: SyncItemUpsert) -> SyncItemUpsert:
    if item.content_hash:
        return item
    return item.model_copy(update={"content_hash": hash_content(item.content_markdown)})


def run_sync_pipeline(
    connection_id: int,
    user_id: str,
    items: list[Any],
    received_at: datetime,
    source_kind: str,
    next_cursor: dict[str, Any] | None = UNSET,
) -> IngestResult:
    """
    Reconcile one batch of source items into the document store.

    Args:
        connection_id: Connection the batch came from
        user_id: Owner of the connection
        items: Raw items as sent by the source
        received_at: Server receipt time, used when an item has no timestamp
        source_kind: "notion" or "obsidian"
        next_cursor: Continuation token to store; omit to keep the stored one

    Returns:
        IngestResult with per-item outcomes and accepted/rejected/skipped counts

    Side Effects:
        - Writes documents rows for applied items
        - Upserts the connection's sync_state row
        - Increments ingest.* counters
    """
    received_at = ensure_utc(received_at)
    result = IngestResult()

    with time_block("ingest.batch"):
        raw_items = list(items)
        if _needs_scope_filter(source_kind):
            rules = [
                rule["scope_value"]
                for rule in ScopeRepository.list_enabled(connection_id, OBSIDIAN_SCOPE_TYPE)
            ]
            raw_items, rejected = apply_scope_filter(raw_items, rules, received_at)
            for rejection in rejected:
                result.record(rejection)

        parsed: list[SyncItemUpsert | SyncItemDelete] = []
        for raw in raw_items:
            try:
                item = parse_sync_item(_fill_delete_timestamp(raw, received_at))
            except (ValidationError, TypeError) as e:
                logger.debug("Invalid sync item %s: %s", raw_external_id(raw), e)
                result.record(
                    ItemResult(raw_external_id(raw), ItemStatus.REJECTED, RejectReason.INVALID_ITEM)
                )
                continue
            if isinstance(item, SyncItemUpsert):
                item = _with_content_hash(item)
            parsed.append(item)

        if parsed:
            snapshots = DocumentRepository.fetch_snapshots(
                user_id, connection_id, (item.external_id for item in parsed)
            )
            max_notes = get_user_limits(user_id).max_notes
            active_count = DocumentRepository.count_active(user_id)

            for item in parsed:
                existing = snapshots.get(item.external_id)
                outcome, snapshot = _process_item(
                    connection_id,
                    user_id,
                    item,
                    existing,
                    received_at,
                    has_capacity=active_count < max_notes,
                )
                result.record(outcome)
                if outcome.status != ItemStatus.ACCEPTED:
                    continue

                was_active = existing is not None and not existing.is_tombstoned
                if isinstance(item, SyncItemUpsert) and not was_active:
                    active_count += 1
                elif isinstance(item, SyncItemDelete) and was_active:
                    active_count -= 1
                if snapshot is not None:
                    snapshots[item.external_id] = snapshot

        SyncStateRepository.record_batch(connection_id, received_at, next_cursor)

    counter("ingest.accepted", result.accepted)
    counter("ingest.rejected", result.rejected)
    counter("ingest.skipped", result.skipped)
    log_event(
        "ingest.batch_completed",
        connection_id=connection_id,
        source_kind=source_kind,
        accepted=result.accepted,
        rejected=result.rejected,
        skipped=result.skipped,
    )
    return result


def _process_item(
    connection_id: int,
    user_id: str,
    item: SyncItemUpsert | SyncItemDelete,
    existing: ExistingSnapshot | None,
    received_at: datetime,
    has_capacity: bool = True,
) -> tuple[ItemResult, ExistingSnapshot | None]:
    """
    Resolve and write one item. Store failures become a "server_error" rejection.

    An upsert that would add an active document is rejected with
    "note_limit_reached" when has_capacity is False, but only after the
    resolver has decided to apply it.

    Returns the outcome and, when something was written, the new snapshot so a
    later item in the same batch with the same external id is resolved against it.
    """
    try:
        decision = resolve(existing, item, received_at)
        if not decision.should_apply:
            skipped = ItemResult(
                item.external_id,
                ItemStatus.SKIPPED,
                decision.reason,
                existing.document_id if existing else None,
            )
            return skipped, None

        creates_active = existing is None or existing.is_tombstoned
        if isinstance(item, SyncItemUpsert) and creates_active and not has_capacity:
            rejected = ItemResult(
                item.external_id, ItemStatus.REJECTED, RejectReason.NOTE_LIMIT_REACHED
            )
            return rejected, None

        event_time = item.event_time or received_at
        if isinstance(item, SyncItemUpsert):
            document_id = DocumentRepository.apply_upsert(
                user_id, connection_id, item, event_time, received_at
            )
            snapshot = ExistingSnapshot(document_id, item.content_hash, event_time, None)
        elif decision.tombstone:
            document_id = DocumentRepository.insert_tombstone(
                user_id, connection_id, item, received_at
            )
            snapshot = ExistingSnapshot(
                document_id, EMPTY_CONTENT_HASH, item.updated_at_source, item.deleted_at_source
            )
        else:
            assert existing is not None
            document_id = existing.document_id
            DocumentRepository.apply_delete(document_id, item, received_at)
            snapshot = ExistingSnapshot(
                document_id,
                existing.content_hash,
                item.updated_at_source or existing.updated_at_source,
                item.deleted_at_source,
            )
    except Exception:
        logger.exception(
            "Failed to ingest item %s for connection %s", item.external_id, connection_id
        )
        counter("ingest.item_errors")
        return ItemResult(item.external_id, ItemStatus.REJECTED, RejectReason.SERVER_ERROR), None

    return ItemResult(item.external_id, ItemStatus.ACCEPTED, document_id=document_id), snapshot
