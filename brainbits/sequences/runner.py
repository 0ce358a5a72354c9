"""
Drip sequence runner.

One run:
1. Discover users who qualify for the upgrade sequence and enter them.
2. Load every active sequence row plus the per-user context in bulk.
3. Process rows one at a time: exit, complete, wait, or send the current step.

A step is sent with the key sequence:{name}:{user}:{step}, so a crash between
the provider call and the state update re-sends with the same key and the
provider drops the duplicate.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from brainbits.billing.plans import (
    clamp_notes_per_digest,
    get_paying_user_ids,
    get_plan_limits,
    is_billing_enabled,
    resolve_effective_frequency,
)
from brainbits.config import UPGRADE_DIGEST_THRESHOLD
from brainbits.digest.repository import DigestRepository
from brainbits.email.delivery import DeliveryClient, EmailPayload, SendError, get_delivery_client
from brainbits.email.send_records import PROVIDER_RESEND, SendRecordRepository
from brainbits.errors import DeliveryConfigError
from brainbits.infrastructure.database import db_transaction
from brainbits.infrastructure.env import get_optional_env
from brainbits.infrastructure.idempotency import sequence_key
from brainbits.infrastructure.settings import FRONTEND_URL, is_flag_enabled
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter, log_event, time_block
from brainbits.scheduling.digest_schedule import FREQUENCY_INTERVAL_DAYS
from brainbits.scheduling.sequence_schedule import SequenceName, step_content_id, step_due_at
from brainbits.sequences.context import SequenceBatchContext, SequenceContext
from brainbits.sequences.state import ExitReason, SequenceState, SequenceStateRepository
from brainbits.sequences.templates import (
    SequenceTemplateParams,
    build_sequence_email,
    format_digest_timing,
    format_first_name,
)
from brainbits.utils.dates import ensure_utc, utc_now

logger = get_logger(__name__)

SOURCE_NAMES = {"notion": "Notion", "obsidian": "Obsidian"}


@dataclass
class SequenceProcessResult:
    status: str  # sent | not_due | blocked | completed | exited | skipped | failed
    email_id: str | None = None
    due_at: datetime | None = None
    error: SendError | None = None


@dataclass
class SequenceRunSummary:
    counts: Counter = field(default_factory=Counter)
    discovered_user_ids: list[str] = field(default_factory=list)

    def add(self, result: SequenceProcessResult) -> None:
        self.counts[result.status] += 1

    def to_dict(self) -> dict[str, Any]:
        return {**dict(self.counts), "discovered": len(self.discovered_user_ids)}


def enter_sequence(user_id: str, sequence_name: SequenceName | str, now: datetime | None = None) -> bool:
    """
    Start a sequence for a user (e.g. welcome at signup, onboarding on first
    connection). A user who already has a row for the sequence, in any
    status, is left alone.
    """
    created = SequenceStateRepository.enter(user_id, sequence_name, ensure_utc(now or utc_now()))
    if created:
        counter("sequence.entered")
        log_event("sequence.entered", user_id=user_id, sequence=getattr(sequence_name, "value", sequence_name))
    return created


def discover_upgrade_sequence_entries(
    now: datetime, paying: set[str] | None = None, billing_enabled: bool | None = None
) -> list[str]:
    """
    Enter the upgrade sequence for users with enough sent digests who are not
    paying and never had an upgrade row.

    Returns:
        Ids of users entered by this call
    """
    if billing_enabled is None:
        billing_enabled = is_billing_enabled()
    if not billing_enabled:
        return []

    stats = DigestRepository.sent_stats_for_users()
    qualified = [
        user_id
        for user_id, user_stats in stats.items()
        if user_stats.digest_count >= UPGRADE_DIGEST_THRESHOLD
    ]
    if not qualified:
        return []

    if paying is None:
        paying = get_paying_user_ids(qualified)
    existing = SequenceStateRepository.users_with_sequence(SequenceName.UPGRADE)
    candidates = sorted(u for u in qualified if u not in paying and u not in existing)
    if not candidates:
        return []

    SequenceStateRepository.enter_many(candidates, SequenceName.UPGRADE, now)
    counter("sequence.upgrade_discovered", len(candidates))
    logger.info("[sequences] entered %d users into the upgrade sequence", len(candidates))
    return candidates


def run_sequence_runner(
    now: datetime | None = None,
    dry_run: bool = False,
    delivery: DeliveryClient | None = None,
) -> SequenceRunSummary:
    """
    Process every active sequence row once.

    Args:
        now: Run time (defaults to the current UTC time)
        dry_run: Skip the provider call; SEQUENCE_EMAIL_DRY_RUN also enables it
        delivery: Delivery client (defaults to the process-wide client)

    Returns:
        SequenceRunSummary with counts by result status

    Raises:
        DeliveryConfigError: If delivery is not configured for a real send

    Side Effects:
        - Inserts upgrade sequence rows for newly qualified users
        - HTTP calls to the email provider
        - Updates email_sequence_states and inserts email_sends rows
    """
    now = ensure_utc(now or utc_now())
    dry_run = dry_run or is_flag_enabled("SEQUENCE_EMAIL_DRY_RUN")
    delivery = delivery or get_delivery_client()
    summary = SequenceRunSummary()

    with time_block("sequence.run"):
        summary.discovered_user_ids = discover_upgrade_sequence_entries(now)

        states = SequenceStateRepository.list_active()
        logger.info("[sequences] %d active sequence rows (dry_run=%s)", len(states), dry_run)
        if not states:
            return summary

        batch = SequenceBatchContext.load([state.user_id for state in states])
        for state in states:
            try:
                result = process_sequence_state(
                    state, batch.for_user(state.user_id), now, dry_run, delivery
                )
            except DeliveryConfigError:
                raise
            except Exception:
                logger.exception(
                    "[sequences] %s step %s for user %s failed",
                    state.sequence_name,
                    state.current_step,
                    state.user_id,
                )
                result = SequenceProcessResult(status="failed")

            if result.status == "failed":
                counter("sequence.failed")
                if result.error:
                    logger.warning(
                        "[sequences] send failed for %s/%s: %s",
                        state.sequence_name,
                        state.user_id,
                        result.error.message,
                    )
            summary.add(result)

    log_event("sequence.run_completed", dry_run=dry_run, **summary.to_dict())
    return summary


def process_sequence_state(
    state: SequenceState,
    context: SequenceContext,
    now: datetime,
    dry_run: bool,
    delivery: DeliveryClient,
) -> SequenceProcessResult:
    """Advance one active row by at most one step."""
    user = context.user
    if user is None or not user.can_receive_email:
        return SequenceProcessResult(status="skipped")

    exit_reason = _exit_reason(state, context)
    if exit_reason:
        SequenceStateRepository.mark_exited(state.id, exit_reason, now)
        counter("sequence.exited")
        logger.info("[sequences] user %s exited %s (%s)", state.user_id, state.sequence_name, exit_reason)
        return SequenceProcessResult(status="exited")

    email_id = step_content_id(state.sequence_name, state.current_step)
    if email_id is None:
        SequenceStateRepository.mark_completed(state.id, now)
        counter("sequence.completed")
        return SequenceProcessResult(status="completed")

    due_at = step_due_at(
        state.sequence_name,
        state.current_step,
        state.entered_at,
        context.digest_stats.first_sent_at,
    )
    if due_at is None:
        return SequenceProcessResult(status="blocked", email_id=email_id)
    if due_at > now:
        return SequenceProcessResult(status="not_due", email_id=email_id, due_at=due_at)

    email = build_sequence_email(email_id, build_template_params(context))
    key = sequence_key(state.sequence_name, state.user_id, state.current_step)
    payload = EmailPayload(
        to=user.email or "",
        subject=email.subject,
        text=email.text,
        html=email.html,
        tags={"email_type": "sequence", "sequence": state.sequence_name, "step": email_id},
    )
    result = delivery.send(payload, key, dry_run=dry_run)
    if not result.ok:
        return SequenceProcessResult(status="failed", email_id=email_id, error=result.error)

    with db_transaction() as conn:
        SendRecordRepository.insert(
            conn,
            state.user_id,
            email_id,
            key,
            result.id,
            now,
            sequence_name=state.sequence_name,
            payload={"provider": PROVIDER_RESEND, "step": state.current_step, "dry_run": dry_run},
        )
        SequenceStateRepository.advance(conn, state, now)

    counter("sequence.sent")
    logger.info("[sequences] sent %s to user %s", email_id, state.user_id)
    return SequenceProcessResult(status="sent", email_id=email_id)


def _exit_reason(state: SequenceState, context: SequenceContext) -> str | None:
    if state.sequence_name == SequenceName.WELCOME.value:
        if context.integration_summary.has_connection:
            return ExitReason.CONNECTED.value
        return None
    if context.billing_enabled and context.is_pro:
        return ExitReason.UPGRADED.value
    return None


def build_template_params(context: SequenceContext) -> SequenceTemplateParams:
    user = context.user
    limits = get_plan_limits(context.is_pro)
    frequency = resolve_effective_frequency(context.settings.email_frequency, context.is_pro)
    summary = context.integration_summary
    return SequenceTemplateParams(
        first_name=format_first_name(user.name if user else None),
        frontend_url=get_optional_env("FRONTEND_URL", FRONTEND_URL),
        source_name=SOURCE_NAMES.get(summary.first_source_kind or ""),
        digest_timing=format_digest_timing(FREQUENCY_INTERVAL_DAYS[frequency]),
        notes_per_digest=clamp_notes_per_digest(context.settings.notes_per_digest, limits),
        total_note_count=context.digest_stats.note_count,
        digest_count=context.digest_stats.digest_count,
        is_pro=context.is_pro,
    )
