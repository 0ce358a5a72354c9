"""
Plan limits and entitlements.

Billing itself lives elsewhere; this module only reads billing_subscriptions
to decide who is paying. Self-hosted deployments have billing disabled and
treat every user as paying.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from brainbits.infrastructure.database import get_db_connection, placeholders
from brainbits.infrastructure.settings import DEPLOYMENT_MODE_SELF_HOSTED, get_deployment_mode

PAYING_STATUSES = ("active", "trialing")
DEFAULT_DIGEST_INTERVAL_DAYS = 7


class PlanName(str, Enum):
    FREE = "free"
    PRO = "pro"


@dataclass(frozen=True)
class PlanLimits:
    max_notes: int
    max_sources: int | None  # None means unlimited
    max_notes_per_digest: int
    min_digest_interval_days: int
    max_digest_interval_days: int


PLANS: dict[PlanName, PlanLimits] = {
    PlanName.FREE: PlanLimits(
        max_notes=500,
        max_sources=1,
        max_notes_per_digest=5,
        min_digest_interval_days=3,
        max_digest_interval_days=30,
    ),
    PlanName.PRO: PlanLimits(
        max_notes=10000,
        max_sources=None,
        max_notes_per_digest=50,
        min_digest_interval_days=1,
        max_digest_interval_days=30,
    ),
}


def is_billing_enabled() -> bool:
    return get_deployment_mode() != DEPLOYMENT_MODE_SELF_HOSTED


def get_plan_limits(is_pro: bool) -> PlanLimits:
    return PLANS[PlanName.PRO if is_pro else PlanName.FREE]


def get_paying_user_ids(user_ids: Iterable[str] | None = None) -> set[str]:
    """
    Users with an active or trialing subscription.

    Restricted to user_ids when given. With billing disabled every requested
    user (or every known user) counts as paying.
    """
    ids = list(dict.fromkeys(user_ids)) if user_ids is not None else None

    with get_db_connection() as conn:
        if not is_billing_enabled():
            if ids is not None:
                return set(ids)
            return {row["id"] for row in conn.execute("SELECT id FROM users").fetchall()}

        if ids is not None and not ids:
            return set()

        query = (
            "SELECT DISTINCT user_id FROM billing_subscriptions "
            f"WHERE status IN ({placeholders(PAYING_STATUSES)})"
        )
        params: list[str] = list(PAYING_STATUSES)
        if ids is not None:
            query += f" AND user_id IN ({placeholders(ids)})"
            params.extend(ids)
        rows = conn.execute(query, params).fetchall()

    return {row["user_id"] for row in rows}


def is_paying(user_id: str) -> bool:
    return user_id in get_paying_user_ids([user_id])


def get_user_limits(user_id: str) -> PlanLimits:
    return get_plan_limits(is_paying(user_id))


def resolve_effective_frequency(requested: str, is_pro: bool) -> str:
    """Daily digests are a paid feature; free users asking for daily get weekly."""
    key = getattr(requested, "value", requested)
    if key == "daily" and not is_pro:
        return "weekly"
    return key


def clamp_interval_to_limits(requested_days: int | None, limits: PlanLimits) -> int:
    """Keep a digest interval within the plan's [min, max] days."""
    days = requested_days if requested_days is not None else DEFAULT_DIGEST_INTERVAL_DAYS
    return max(limits.min_digest_interval_days, min(days, limits.max_digest_interval_days))


def clamp_notes_per_digest(requested: int, limits: PlanLimits) -> int:
    return max(1, min(requested, limits.max_notes_per_digest))
