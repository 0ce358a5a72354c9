"""
Default note selector for digests.

Any callable with the Selector signature can replace it; the digest runner
only relies on the returned document ids and positions.

Scoring:
- new (never scheduled): 50
- overdue: 100 + 3 per day overdue (capped at 30 days)
- due within 3 days: 70 - 5 per day until due
- scheduled later: 20 - days until due (capped at 30)
multiplied by the clamped priority weight, and by 0.25 when the note was sent
within the last day. Due notes are taken first, then new notes up to 40% of
the batch, then scheduled notes, then any remaining new notes.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from brainbits.config import (
    SELECTION_COOLDOWN_DAYS,
    SELECTION_DUE_SOON_DAYS,
    SELECTION_MAX_OVERDUE_DAYS,
    SELECTION_MAX_WEIGHT,
    SELECTION_MIN_WEIGHT,
    SELECTION_NEW_SHARE,
)
from brainbits.digest.models import ReviewCandidate, ReviewStatus, SelectedItem, SelectionResult
from brainbits.utils.dates import ensure_utc

Selector = Callable[[list[ReviewCandidate], int, datetime], SelectionResult]

COOLDOWN_MULTIPLIER = 0.25
DAY_SECONDS = 86400.0


@dataclass
class _Scored:
    candidate: ReviewCandidate
    score: float
    reason: str
    weight: float


def _clamp_weight(weight: float | None) -> float:
    if weight is None:
        weight = 1.0
    if math.isnan(weight):
        return SELECTION_MIN_WEIGHT
    return min(SELECTION_MAX_WEIGHT, max(SELECTION_MIN_WEIGHT, weight))


def _score_by_due_date(next_due_at: datetime | None, now: datetime) -> tuple[float, str]:
    if next_due_at is None:
        return 50.0, "new"

    delta = (ensure_utc(next_due_at) - now).total_seconds()
    if delta <= 0:
        overdue_days = min(math.floor(-delta / DAY_SECONDS), SELECTION_MAX_OVERDUE_DAYS)
        return 100.0 + overdue_days * 3, "overdue"

    days_until = math.ceil(delta / DAY_SECONDS)
    if delta <= SELECTION_DUE_SOON_DAYS * DAY_SECONDS:
        return 70.0 - days_until * 5, "due_soon"
    return 20.0 - min(days_until, SELECTION_MAX_OVERDUE_DAYS), "scheduled"


def _sort_key(item: _Scored) -> tuple:
    due = item.candidate.next_due_at
    due_ts = ensure_utc(due).timestamp() if due else math.inf
    return (-item.score, due_ts, -item.weight, item.candidate.document_id)


def default_selector(
    candidates: list[ReviewCandidate], batch_size: int, now: datetime
) -> SelectionResult:
    now = ensure_utc(now)
    batch_size = max(0, int(batch_size))
    cooldown_cutoff = now - timedelta(days=SELECTION_COOLDOWN_DAYS)
    result = SelectionResult()
    scored: list[_Scored] = []

    for candidate in candidates:
        if candidate.status == ReviewStatus.SUSPENDED.value:
            result.skipped.append({"document_id": candidate.document_id, "reason": "suspended"})
            continue
        if candidate.deprioritized_until and ensure_utc(candidate.deprioritized_until) > now:
            result.skipped.append({"document_id": candidate.document_id, "reason": "deprioritized"})
            continue

        weight = _clamp_weight(candidate.priority_weight)
        base, reason = _score_by_due_date(candidate.next_due_at, now)
        score = base * weight
        if candidate.last_sent_at and ensure_utc(candidate.last_sent_at) > cooldown_cutoff:
            score *= COOLDOWN_MULTIPLIER
        scored.append(_Scored(candidate, score, reason, weight))

    if batch_size == 0 or not scored:
        return result

    ordered = sorted(scored, key=_sort_key)
    due = [s for s in ordered if s.reason in ("overdue", "due_soon")]
    fresh = [s for s in ordered if s.reason == "new"]
    scheduled = [s for s in ordered if s.reason == "scheduled"]
    max_new = max(0, math.floor(batch_size * SELECTION_NEW_SHARE))

    selected: list[_Scored] = due[:batch_size]
    new_taken = fresh[: max(0, min(max_new, batch_size - len(selected)))]
    selected.extend(new_taken)
    selected.extend(scheduled[: batch_size - len(selected)])
    selected.extend(fresh[len(new_taken) :][: batch_size - len(selected)])

    result.items = [
        SelectedItem(s.candidate.document_id, position, round(s.score, 4), s.reason)
        for position, s in enumerate(selected[:batch_size], start=1)
    ]
    return result
