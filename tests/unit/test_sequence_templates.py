from __future__ import annotations

import pytest

from brainbits.scheduling.sequence_schedule import SEQUENCE_STEPS
from brainbits.sequences.templates import (
    SEQUENCE_TEMPLATES,
    SequenceTemplateParams,
    build_frontend_url,
    build_sequence_email,
    format_digest_timing,
    format_first_name,
)


def params(**overrides) -> SequenceTemplateParams:
    values = {"first_name": "Ada", "frontend_url": "http://app.test/"}
    values.update(overrides)
    return SequenceTemplateParams(**values)


def test_every_step_has_a_template():
    for steps in SEQUENCE_STEPS.values():
        for step in steps:
            assert step.email_id in SEQUENCE_TEMPLATES


def test_every_template_renders():
    for email_id in SEQUENCE_TEMPLATES:
        email = build_sequence_email(email_id, params(source_name="Notion", digest_timing="soon"))
        assert email.subject
        assert "{" not in email.text


def test_welcome_email_links_to_source_picker():
    email = build_sequence_email("welcome-4", params())

    assert email.subject == "Your notes are waiting, Ada"
    assert email.text.startswith("Hello Ada,\n\n")
    assert email.text.endswith("- The Brain Bits Team\n")
    assert "http://app.test/onboarding/choose-source" in email.text
    assert '<a href="http://app.test/onboarding/choose-source">' in email.html


def test_onboarding_subject_uses_source_name():
    assert build_sequence_email("onboarding-1", params()).subject == "Your notes are syncing"
    assert (
        build_sequence_email("onboarding-1", params(source_name="Obsidian")).subject
        == "Your Obsidian are syncing"
    )


def test_upgrade_email_reports_digest_stats():
    email = build_sequence_email("upgrade-1", params(total_note_count=37, digest_count=6))

    assert email.subject == "You've rediscovered 37 notes so far"
    assert "received 6 digests containing 37 notes" in email.text
    assert "http://app.test/settings?tab=billing" in email.text


def test_plan_specific_copy():
    free = build_sequence_email("onboarding-4", params(is_pro=False)).text
    pro = build_sequence_email("onboarding-4", params(is_pro=True)).text

    assert "Upgrade to Pro for daily" in free
    assert "Upgrade to Pro for daily" not in pro


def test_html_escapes_user_values():
    email = build_sequence_email("welcome-1", params(first_name="<b>Ada</b>"))
    assert "&lt;b&gt;Ada&lt;/b&gt;" in email.html
    assert "<b>Ada</b>" not in email.html


def test_unknown_email_id():
    with pytest.raises(KeyError):
        build_sequence_email("welcome-9", params())


def test_format_first_name():
    assert format_first_name("  Ada   Lovelace ") == "Ada"
    assert format_first_name(None) == "there"
    assert format_first_name("   ") == "there"


def test_format_digest_timing():
    assert format_digest_timing(1) == "tomorrow morning"
    assert format_digest_timing(3) == "in a few days"
    assert format_digest_timing(7) == "later this week"
    assert format_digest_timing(14) == "next week"
    assert format_digest_timing(30) == "this month"


def test_build_frontend_url():
    assert build_frontend_url("http://app.test/", "/dash") == "http://app.test/dash"
    assert build_frontend_url("http://app.test", "dash") == "http://app.test/dash"
