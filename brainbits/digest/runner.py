"""
Digest batch jobs.

generate_digests_for_all_users: once per user per local day, pick the notes
for the next digest and persist them as a "scheduled" digest.

send_due_digests: for users whose schedule says a digest is due, send the
pending digest generated for today and record the outcome. A failed send
leaves the digest pending so the next run retries it with the same
idempotency key.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from brainbits.accounts.models import User, UserSettings
from brainbits.accounts.repository import ConnectionRepository, UserRepository, UserSettingsRepository
from brainbits.billing.plans import (
    clamp_notes_per_digest,
    get_paying_user_ids,
    get_plan_limits,
    resolve_effective_frequency,
)
from brainbits.digest.email import SOURCE_LABELS, RenderedEmail, build_digest_email, to_email_item
from brainbits.digest.models import Digest, DigestItem, DigestStatus, ReviewCandidate
from brainbits.digest.repository import DigestRepository, ReviewStateRepository, SnapshotItem
from brainbits.digest.selection import Selector, default_selector
from brainbits.email.delivery import DeliveryClient, EmailPayload, get_delivery_client
from brainbits.email.send_records import PROVIDER_RESEND, SendRecordRepository
from brainbits.errors import ConsistencyError, DeliveryConfigError
from brainbits.infrastructure.database import db_transaction
from brainbits.infrastructure.env import get_optional_env
from brainbits.infrastructure.idempotency import digest_key
from brainbits.infrastructure.settings import FRONTEND_URL, is_flag_enabled
from brainbits.ingestion.repository import DocumentRepository
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event, time_block
from brainbits.scheduling.digest_schedule import (
    ScheduleInput,
    SchedulePolicy,
    get_schedule_policy,
    is_same_local_day,
    start_of_local_day,
)
from brainbits.utils.dates import ensure_utc, utc_now

logger = get_logger(__name__)

DIGEST_EMAIL_NAME = "note-digest"
CREATED_BY = "digest_job"


@dataclass
class DigestRunSummary:
    """Per-status counts for one job run."""

    counts: Counter = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)

    def add(self, status: str) -> None:
        self.counts[status] += 1

    def to_dict(self) -> dict[str, Any]:
        return {**dict(self.counts), "errors": list(self.errors)}


def build_candidates(user_id: str) -> tuple[list[ReviewCandidate], dict[int, str | None]]:
    """
    Selector input for a user's active documents.

    Returns:
        (candidates, content hash per document id)
    """
    documents = DocumentRepository.list_active_for_user(user_id)
    reviews = ReviewStateRepository.candidates_for_user(user_id)
    candidates = [reviews.get(doc["id"]) or ReviewCandidate(document_id=doc["id"]) for doc in documents]
    return candidates, {doc["id"]: doc["content_hash"] for doc in documents}


def plan_digest_items(
    user_id: str, notes_per_digest: int, now: datetime, selector: Selector = default_selector
) -> tuple[list[DigestItem], bool]:
    """
    Run the selector and attach each item's current content hash.

    Returns:
        (items, has_documents)

    Raises:
        ConsistencyError: If a selected document has no content hash
    """
    candidates, hashes = build_candidates(user_id)
    if not candidates:
        return [], False

    selection = selector(candidates, notes_per_digest, now)
    items = []
    for selected in selection.items:
        content_hash = hashes.get(selected.document_id)
        if not content_hash:
            raise ConsistencyError(
                f"Selected document {selected.document_id} has no content hash",
                code="missing_document_hash",
            )
        items.append(
            DigestItem(
                document_id=selected.document_id,
                position=selected.position,
                content_hash_at_send=content_hash,
            )
        )
    return items, True


def generate_digests_for_all_users(
    now: datetime | None = None, selector: Selector = default_selector
) -> DigestRunSummary:
    """
    Generate today's digest for every user who does not have one yet.

    Returns:
        DigestRunSummary with counts for scheduled, skipped, already_generated, failed

    Side Effects:
        - Inserts note_digests and note_digest_items rows
        - Increments digest.generated / digest.generation_failed counters
    """
    now = ensure_utc(now or utc_now())
    summary = DigestRunSummary()
    users = UserRepository.list_all()
    user_ids = [user.id for user in users]
    settings_map = UserSettingsRepository.get_many(user_ids)
    paying = get_paying_user_ids(user_ids)
    logger.info("[generate-digests] found %d users", len(users))

    with time_block("digest.generate"):
        for user in users:
            settings = settings_map.get(user.id) or UserSettings(user_id=user.id)
            try:
                status = _generate_for_user(user, settings, user.id in paying, now, selector)
            except ConsistencyError as e:
                logger.error("[generate-digests] user %s: %s (%s)", user.id, e, e.code)
                counter("digest.consistency_fault")
                summary.add("failed")
                summary.errors.append(f"{user.id}: {e.code}")
                continue
            except Exception as e:
                logger.exception("[generate-digests] user %s failed", user.id)
                counter("digest.generation_failed")
                summary.add("failed")
                summary.errors.append(f"{user.id}: {e}")
                continue
            summary.add(status)

    log_event("digest.generation_completed", **dict(summary.counts))
    return summary


def _generate_for_user(
    user: User, settings: UserSettings, is_pro: bool, now: datetime, selector: Selector
) -> str:
    latest = DigestRepository.latest_for_user(user.id)
    if latest and is_same_local_day(now, latest.local_day_anchor, settings.timezone):
        return "already_generated"

    limits = get_plan_limits(is_pro)
    notes_per_digest = clamp_notes_per_digest(settings.notes_per_digest, limits)
    scheduled_for = start_of_local_day(now, settings.timezone)
    items, has_documents = plan_digest_items(user.id, notes_per_digest, now, selector)

    if not items:
        reason = "empty_selection" if has_documents else "no_documents"
        DigestRepository.save_with_items(
            user.id,
            DigestStatus.SKIPPED,
            [],
            scheduled_for=scheduled_for,
            payload={"reason": reason, "created_by": CREATED_BY},
        )
        counter("digest.skipped")
        return DigestStatus.SKIPPED.value

    digest_id = DigestRepository.save_with_items(
        user.id,
        DigestStatus.SCHEDULED,
        items,
        scheduled_for=scheduled_for,
        payload={"created_by": CREATED_BY},
    )
    counter("digest.generated")
    logger.info("[generate-digests] digest %s for user %s: %d notes", digest_id, user.id, len(items))
    return DigestStatus.SCHEDULED.value


def send_due_digests(
    now: datetime | None = None,
    dry_run: bool | None = None,
    target_user_id: str | None = None,
    delivery: DeliveryClient | None = None,
    policy: SchedulePolicy | None = None,
) -> DigestRunSummary:
    """
    Send every due, pending digest.

    Args:
        now: Run time (defaults to the current UTC time)
        dry_run: Skip the provider call; defaults to DIGEST_EMAIL_DRY_RUN
        target_user_id: Restrict the run to one user
        delivery: Delivery client (defaults to the process-wide client)
        policy: Schedule policy (defaults to BRAINBITS_SCHEDULE_POLICY)

    Returns:
        DigestRunSummary with counts for sent, failed, skipped, not_due, no_pending

    Raises:
        DeliveryConfigError: If delivery is not configured for a real send

    Side Effects:
        - HTTP calls to the email provider
        - Updates note_digests, review_states and email_sends
    """
    now = ensure_utc(now or utc_now())
    if dry_run is None:
        dry_run = is_flag_enabled("DIGEST_EMAIL_DRY_RUN")
    delivery = delivery or get_delivery_client()
    policy = policy or get_schedule_policy()
    summary = DigestRunSummary()

    if target_user_id:
        user = UserRepository.get(target_user_id)
        users = [user] if user else []
    else:
        users = UserRepository.list_all()
    user_ids = [user.id for user in users]
    settings_map = UserSettingsRepository.get_many(user_ids)
    paying = get_paying_user_ids(user_ids)
    last_sent = DigestRepository.last_sent_map(user_ids)
    eligible = [user for user in users if user.can_receive_email]
    logger.info(
        "[send-digests] %d users, %d eligible, %d paying (policy=%s, dry_run=%s)",
        len(users),
        len(eligible),
        len(paying),
        policy.name,
        dry_run,
    )

    with time_block("digest.send"):
        for user in eligible:
            settings = settings_map.get(user.id) or UserSettings(user_id=user.id)
            try:
                status = _send_for_user(
                    user,
                    settings,
                    user.id in paying,
                    last_sent.get(user.id),
                    now,
                    dry_run,
                    delivery,
                    policy,
                )
            except DeliveryConfigError:
                raise
            except Exception as e:
                logger.exception("[send-digests] user %s failed", user.id)
                counter("digest.send_error")
                summary.add("failed")
                summary.errors.append(f"{user.id}: {e}")
                continue
            summary.add(status)

    log_event("digest.send_completed", dry_run=dry_run, **dict(summary.counts))
    return summary


def _send_for_user(
    user: User,
    settings: UserSettings,
    is_pro: bool,
    last_sent_at: datetime | None,
    now: datetime,
    dry_run: bool,
    delivery: DeliveryClient,
    policy: SchedulePolicy,
) -> str:
    frequency = resolve_effective_frequency(settings.email_frequency, is_pro)
    schedule = ScheduleInput(
        user_id=user.id,
        frequency=frequency,
        timezone=settings.timezone,
        preferred_hour=settings.preferred_send_hour,
        last_sent_at=last_sent_at,
    )
    if not policy.is_due(now, schedule):
        logger.debug("[send-digests] user %s not due (%s, last sent %s)", user.id, frequency, last_sent_at)
        return "not_due"

    digest = DigestRepository.latest_pending_for_user(user.id)
    if digest is None or not is_same_local_day(now, digest.local_day_anchor, settings.timezone):
        logger.info("[send-digests] user %s has no pending digest for today", user.id)
        return "no_pending"

    snapshot = DigestRepository.load_snapshot(user.id, digest.id)
    if not snapshot:
        DigestRepository.mark_skipped(digest.id, "empty_snapshot")
        counter("digest.skipped")
        return DigestStatus.SKIPPED.value

    drifted = [item.document_id for item in snapshot if item.has_drifted]
    if drifted:
        logger.warning(
            "[send-digests] digest %s: %d notes changed since generation", digest.id, len(drifted)
        )
        counter("digest.drifted_items", len(drifted))

    email = _render(user, digest, snapshot, frequency, is_first_digest=last_sent_at is None)
    key = digest_key(digest.id)
    payload = EmailPayload(
        to=user.email or "",
        subject=email.subject,
        text=email.text,
        html=email.html,
        tags={"category": "note_digest", "frequency": frequency},
    )
    result = delivery.send(payload, key, dry_run=dry_run)

    if not result.ok:
        assert result.error is not None
        DigestRepository.mark_failed(
            digest.id,
            result.error.to_dict(),
            {"idempotency_key": key, "provider": PROVIDER_RESEND},
        )
        counter("digest.failed")
        logger.warning("[send-digests] digest %s failed: %s", digest.id, result.error.message)
        return DigestStatus.FAILED.value

    sent_payload = {
        "idempotency_key": key,
        "provider_message_id": result.id,
        "provider": PROVIDER_RESEND,
        "drifted_document_ids": drifted,
        "dry_run": dry_run,
    }
    with db_transaction() as conn:
        ReviewStateRepository.mark_sent(conn, user.id, [item.document_id for item in snapshot], now)
        SendRecordRepository.insert(
            conn,
            user.id,
            DIGEST_EMAIL_NAME,
            key,
            result.id,
            now,
            payload={"digest_id": digest.id, "item_count": len(snapshot)},
        )
        DigestRepository.mark_sent(conn, digest.id, now, sent_payload)

    counter("digest.sent")
    logger.info("[send-digests] sent digest %s to user %s (%d notes)", digest.id, user.id, len(snapshot))
    return DigestStatus.SENT.value


def _render(
    user: User,
    digest: Digest,
    snapshot: list[SnapshotItem],
    frequency: str,
    is_first_digest: bool,
) -> RenderedEmail:
    total_note_count = 0
    source_label = None
    if is_first_digest:
        total_note_count = DocumentRepository.count_active(user.id)
        summary = ConnectionRepository.summarize_for_users([user.id])[user.id]
        if summary.first_source_kind:
            kind = SOURCE_LABELS.get(summary.first_source_kind, summary.first_source_kind)
            name = summary.first_source_name
            source_label = f"{kind} ({name})" if name else kind

    return build_digest_email(
        [to_email_item(item) for item in snapshot],
        frequency=frequency,
        frontend_url=get_optional_env("FRONTEND_URL", FRONTEND_URL),
        user_name=user.name,
        digest_date=digest.local_day_anchor,
        is_first_digest=is_first_digest,
        total_note_count=total_note_count,
        source_label=source_label,
    )
