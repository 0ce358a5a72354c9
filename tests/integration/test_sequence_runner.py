"""
Integration tests for the drip sequence runner.

Validates:
1. Steps are sent in order and the row advances only after a successful send
2. Exits (connected, upgraded) are final and a user never re-enters
3. The milestone step waits for the first sent digest
4. Upgrade discovery enters qualifying free users exactly once
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from brainbits.digest.models import DigestStatus
from brainbits.digest.repository import DigestRepository
from brainbits.email.delivery import SendError
from brainbits.email.send_records import SendRecordRepository
from brainbits.scheduling.sequence_schedule import SequenceName
from brainbits.sequences.runner import (
    discover_upgrade_sequence_entries,
    enter_sequence,
    run_sequence_runner,
)
from brainbits.sequences.state import SequenceStateRepository

ENTERED = datetime(2025, 4, 1, 10, 0, tzinfo=UTC)
DAY = timedelta(days=1)


def add_sent_digests(user_id: str, count: int, first_sent_at: datetime) -> None:
    for i in range(count):
        DigestRepository.save_with_items(
            user_id,
            DigestStatus.SENT,
            [],
            scheduled_for=first_sent_at + i * DAY,
            sent_at=first_sent_at + i * DAY,
        )


def test_welcome_step_is_sent_and_advances(make_user, delivery):
    make_user("user-1")
    assert enter_sequence("user-1", SequenceName.WELCOME, ENTERED)

    summary = run_sequence_runner(now=ENTERED, delivery=delivery)

    assert summary.counts["sent"] == 1
    payload, key, dry_run = delivery.sent[0]
    assert key == "sequence:welcome:user-1:1"
    assert dry_run is False
    assert payload.tags == {"email_type": "sequence", "sequence": "welcome", "step": "welcome-1"}

    state = SequenceStateRepository.get("user-1", SequenceName.WELCOME)
    assert state.current_step == 2
    assert state.last_email_sent_at == ENTERED

    record = SendRecordRepository.get_by_key(key)
    assert record["email_name"] == "welcome-1"
    assert record["sequence_name"] == "welcome"


def test_next_step_waits_for_its_offset(make_user, delivery):
    make_user("user-1")
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)
    run_sequence_runner(now=ENTERED, delivery=delivery)

    summary = run_sequence_runner(now=ENTERED + DAY, delivery=delivery)

    assert summary.counts["not_due"] == 1
    assert len(delivery.sent) == 1


def test_last_step_completes_the_sequence(make_user, delivery):
    make_user("user-1")
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)

    for days in (0, 2, 4, 7):
        run_sequence_runner(now=ENTERED + days * DAY, delivery=delivery)

    state = SequenceStateRepository.get("user-1", SequenceName.WELCOME)
    assert state.status == "completed"
    assert [key for _, key, _ in delivery.sent] == [
        f"sequence:welcome:user-1:{step}" for step in range(1, 5)
    ]
    assert sum(run_sequence_runner(now=ENTERED + 30 * DAY, delivery=delivery).counts.values()) == 0


def test_failed_send_does_not_advance(make_user, delivery):
    make_user("user-1")
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)
    delivery.fail_with = SendError(name="application_error", message="boom", status_code=500)

    summary = run_sequence_runner(now=ENTERED, delivery=delivery)

    assert summary.counts["failed"] == 1
    assert SequenceStateRepository.get("user-1", SequenceName.WELCOME).current_step == 1
    assert SendRecordRepository.list_for_user("user-1") == []

    delivery.fail_with = None
    run_sequence_runner(now=ENTERED + timedelta(minutes=5), delivery=delivery)
    assert [key for _, key, _ in delivery.sent] == ["sequence:welcome:user-1:1"] * 2


def test_welcome_exits_once_a_source_is_connected(make_user, make_connection, delivery):
    make_user("user-1")
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)
    make_connection("user-1")

    summary = run_sequence_runner(now=ENTERED, delivery=delivery)

    assert summary.counts["exited"] == 1
    state = SequenceStateRepository.get("user-1", SequenceName.WELCOME)
    assert (state.status, state.exit_reason) == ("exited", "connected")
    assert delivery.sent == []
    assert enter_sequence("user-1", SequenceName.WELCOME, ENTERED + DAY) is False


def test_unverified_user_is_skipped(make_user, delivery):
    make_user("user-1", verified=False)
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)

    summary = run_sequence_runner(now=ENTERED, delivery=delivery)

    assert summary.counts["skipped"] == 1
    assert SequenceStateRepository.get("user-1", SequenceName.WELCOME).status == "active"


def test_milestone_step_is_blocked_until_first_digest(make_user, make_connection, delivery):
    make_user("user-1")
    make_connection("user-1")
    enter_sequence("user-1", SequenceName.ONBOARDING, ENTERED)
    run_sequence_runner(now=ENTERED, delivery=delivery)
    run_sequence_runner(now=ENTERED + DAY, delivery=delivery)

    blocked = run_sequence_runner(now=ENTERED + 10 * DAY, delivery=delivery)

    assert blocked.counts["blocked"] == 1
    assert SequenceStateRepository.get("user-1", SequenceName.ONBOARDING).current_step == 3

    first_digest = ENTERED + 11 * DAY
    add_sent_digests("user-1", 1, first_digest)
    early = run_sequence_runner(now=first_digest + timedelta(hours=1), delivery=delivery)
    sent = run_sequence_runner(now=first_digest + timedelta(hours=2), delivery=delivery)

    assert early.counts["not_due"] == 1
    assert sent.counts["sent"] == 1
    assert delivery.sent[-1][1] == "sequence:onboarding:user-1:3"


def test_upgrade_discovery_requires_enough_sent_digests(make_user, delivery):
    make_user("user-1")
    make_user("user-2", email="bob@example.com")
    add_sent_digests("user-1", 4, ENTERED - 10 * DAY)
    add_sent_digests("user-2", 3, ENTERED - 10 * DAY)

    summary = run_sequence_runner(now=ENTERED, delivery=delivery)

    assert summary.discovered_user_ids == ["user-1"]
    assert summary.to_dict() == {"sent": 1, "discovered": 1}
    assert delivery.sent[0][1] == "sequence:upgrade:user-1:1"
    assert SequenceStateRepository.get("user-2", SequenceName.UPGRADE) is None

    again = run_sequence_runner(now=ENTERED + DAY, delivery=delivery)
    assert again.discovered_user_ids == []


def test_upgrade_discovery_skips_paying_users(make_user, make_subscription):
    make_user("user-1")
    add_sent_digests("user-1", 5, ENTERED - 10 * DAY)
    make_subscription("user-1", status="trialing")

    assert discover_upgrade_sequence_entries(ENTERED) == []


def test_upgrade_discovery_is_off_when_self_hosted(make_user, monkeypatch):
    make_user("user-1")
    add_sent_digests("user-1", 5, ENTERED - 10 * DAY)
    monkeypatch.setenv("DEPLOYMENT_MODE", "self-hosted")

    assert discover_upgrade_sequence_entries(ENTERED) == []


def test_upgrade_exits_after_subscribing_and_never_reenters(make_user, make_subscription, delivery):
    make_user("user-1")
    add_sent_digests("user-1", 4, ENTERED - 10 * DAY)
    run_sequence_runner(now=ENTERED, delivery=delivery)

    make_subscription("user-1")
    summary = run_sequence_runner(now=ENTERED + 3 * DAY, delivery=delivery)

    assert summary.counts["exited"] == 1
    state = SequenceStateRepository.get("user-1", SequenceName.UPGRADE)
    assert (state.status, state.exit_reason) == ("exited", "upgraded")
    assert discover_upgrade_sequence_entries(ENTERED + 4 * DAY, paying=set()) == []
    assert len(delivery.sent) == 1


@pytest.mark.parametrize("env_value", ["true", "1"])
def test_dry_run_from_env(make_user, delivery, monkeypatch, env_value):
    monkeypatch.setenv("SEQUENCE_EMAIL_DRY_RUN", env_value)
    make_user("user-1")
    enter_sequence("user-1", SequenceName.WELCOME, ENTERED)

    run_sequence_runner(now=ENTERED, delivery=delivery)

    assert delivery.sent[0][2] is True
