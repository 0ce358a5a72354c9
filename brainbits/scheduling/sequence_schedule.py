"""
Drip sequence step timing.

Each sequence is an ordered list of steps. A step is due either a fixed
offset after the user entered the sequence, or a fixed offset after a
milestone (the user's first sent digest). A milestone step whose milestone
has not happened yet is blocked: step_due_at returns None.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from brainbits.utils.dates import ensure_utc


class SequenceName(str, Enum):
    WELCOME = "welcome"
    ONBOARDING = "onboarding"
    UPGRADE = "upgrade"


class StepAnchor(str, Enum):
    ENTERED = "entered"
    FIRST_DIGEST = "first_digest"


@dataclass(frozen=True)
class SequenceStep:
    email_id: str
    offset: timedelta
    anchor: StepAnchor = StepAnchor.ENTERED


def _relative(email_id: str, days: int) -> SequenceStep:
    return SequenceStep(email_id, timedelta(days=days))


SEQUENCE_STEPS: dict[str, tuple[SequenceStep, ...]] = {
    SequenceName.WELCOME.value: (
        _relative("welcome-1", 0),
        _relative("welcome-2", 2),
        _relative("welcome-3", 4),
        _relative("welcome-4", 7),
    ),
    SequenceName.ONBOARDING.value: (
        _relative("onboarding-1", 0),
        _relative("onboarding-2", 1),
        SequenceStep("onboarding-3", timedelta(hours=2), StepAnchor.FIRST_DIGEST),
        _relative("onboarding-4", 5),
        _relative("onboarding-5", 9),
        _relative("onboarding-6", 14),
    ),
    SequenceName.UPGRADE.value: (
        _relative("upgrade-1", 0),
        _relative("upgrade-2", 3),
        _relative("upgrade-3", 7),
        _relative("upgrade-4", 14),
        _relative("upgrade-5", 21),
    ),
}


def _key(sequence_name: str) -> str:
    return getattr(sequence_name, "value", sequence_name)


def total_steps(sequence_name: str) -> int:
    return len(SEQUENCE_STEPS.get(_key(sequence_name), ()))


def get_step(sequence_name: str, step: int) -> SequenceStep | None:
    """Step definition for a 1-based step number, or None past the end."""
    steps = SEQUENCE_STEPS.get(_key(sequence_name), ())
    if step < 1 or step > len(steps):
        return None
    return steps[step - 1]


def step_content_id(sequence_name: str, step: int) -> str | None:
    definition = get_step(sequence_name, step)
    return definition.email_id if definition else None


def step_due_at(
    sequence_name: str,
    step: int,
    entered_at: datetime,
    first_digest_sent_at: datetime | None = None,
) -> datetime | None:
    """
    When the step becomes sendable.

    None means the step is undefined or waiting on a milestone that has not
    happened. It never means "due now".
    """
    definition = get_step(sequence_name, step)
    if definition is None:
        return None
    if definition.anchor == StepAnchor.FIRST_DIGEST:
        if first_digest_sent_at is None:
            return None
        return ensure_utc(first_digest_sent_at) + definition.offset
    return ensure_utc(entered_at) + definition.offset


class StepDue(str, Enum):
    DUE = "due"
    NOT_DUE = "not_due"
    BLOCKED = "blocked"


def step_due(
    sequence_name: str,
    step: int,
    entered_at: datetime,
    now: datetime,
    first_digest_sent_at: datetime | None = None,
) -> StepDue:
    due_at = step_due_at(sequence_name, step, entered_at, first_digest_sent_at)
    if due_at is None:
        return StepDue.BLOCKED
    if due_at > ensure_utc(now):
        return StepDue.NOT_DUE
    return StepDue.DUE


def is_step_due(
    sequence_name: str,
    step: int,
    entered_at: datetime,
    now: datetime,
    first_digest_sent_at: datetime | None = None,
) -> bool:
    return step_due(sequence_name, step, entered_at, now, first_digest_sent_at) == StepDue.DUE
