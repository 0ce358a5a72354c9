"""
Digest due-date rules.

Two policies exist and are kept as separate, named strategies:

- TimezoneWindowPolicy (default): send in the user's preferred local hour,
  at most once per local calendar day, once the frequency interval has elapsed.
- UtcStaggerPolicy: UTC calendar days, with weekly/monthly users spread
  across weekdays / days of the month by a hash of their user id.

They disagree at day boundaries, so exactly one is active per run, chosen by
BRAINBITS_SCHEDULE_POLICY ("timezone" or "utc_stagger").
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError, available_timezones

from brainbits.config import DIGEST_SCHEDULE_POLICY
from brainbits.observability.logging import get_logger
from brainbits.utils.dates import ensure_utc

logger = get_logger(__name__)

UTC_ZONE = ZoneInfo("UTC")

FREQUENCY_INTERVAL_DAYS: dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
}


def frequency_interval(frequency: str) -> timedelta:
    """
    Raises:
        ValueError: For an unknown frequency
    """
    key = getattr(frequency, "value", frequency)
    if key not in FREQUENCY_INTERVAL_DAYS:
        raise ValueError(f"Unknown digest frequency: {frequency}")
    return timedelta(days=FREQUENCY_INTERVAL_DAYS[key])


def is_valid_timezone(name: str | None) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: str | None) -> ZoneInfo:
    """IANA zone for name; unknown names fall back to UTC with a warning."""
    if is_valid_timezone(name):
        return ZoneInfo(name)  # type: ignore[arg-type]
    logger.warning("Unknown timezone %r, falling back to UTC", name)
    return UTC_ZONE


def to_local(moment: datetime, timezone: str | None) -> datetime:
    return ensure_utc(moment).astimezone(resolve_timezone(timezone))


def local_hour(moment: datetime, timezone: str | None) -> int:
    return to_local(moment, timezone).hour


def local_date(moment: datetime, timezone: str | None) -> date:
    return to_local(moment, timezone).date()


def is_same_local_day(a: datetime, b: datetime, timezone: str | None) -> bool:
    return local_date(a, timezone) == local_date(b, timezone)


def start_of_local_day(moment: datetime, timezone: str | None) -> datetime:
    """Local midnight of moment's local date, returned in UTC."""
    zone = resolve_timezone(timezone)
    local_day = ensure_utc(moment).astimezone(zone).date()
    return datetime.combine(local_day, time.min, tzinfo=zone).astimezone(UTC_ZONE)


def timezones_at_hour(now: datetime, hour: int) -> list[str]:
    """All IANA zones whose local hour at `now` equals hour."""
    moment = ensure_utc(now)
    return sorted(tz for tz in available_timezones() if moment.astimezone(ZoneInfo(tz)).hour == hour)


def is_in_send_window(now: datetime, timezone: str | None, preferred_hour: int) -> bool:
    return local_hour(now, timezone) == preferred_hour


def is_digest_due(
    now: datetime,
    last_sent_at: datetime | None,
    frequency: str,
    timezone: str | None,
    preferred_hour: int,
) -> bool:
    """
    Timezone send-window rule.

    Due when the local hour equals preferred_hour, nothing was sent earlier
    the same local day, and at least one frequency interval has passed since
    the last send (or nothing was ever sent).
    """
    if not is_in_send_window(now, timezone, preferred_hour):
        return False
    if last_sent_at is None:
        return True
    if is_same_local_day(last_sent_at, now, timezone):
        return False
    return ensure_utc(now) - ensure_utc(last_sent_at) >= frequency_interval(frequency)


def stagger_hash(user_id: str) -> int:
    """Deterministic 32-bit hash of a user id (h = h * 31 + code unit)."""
    h = 0
    for unit in _utf16_units(user_id):
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h


def _utf16_units(value: str) -> list[int]:
    raw = value.encode("utf-16-le")
    return [int.from_bytes(raw[i : i + 2], "little") for i in range(0, len(raw), 2)]


def is_stagger_day(now: datetime, frequency: str, user_id: str) -> bool:
    """Weekly users get one UTC weekday (Sunday=0), monthly users one day 1-28."""
    moment = ensure_utc(now)
    key = getattr(frequency, "value", frequency)
    if key == "weekly":
        return stagger_hash(user_id) % 7 == (moment.weekday() + 1) % 7
    if key == "monthly":
        return stagger_hash(user_id) % 28 + 1 == moment.day
    return True


def is_digest_due_utc_stagger(
    now: datetime,
    last_sent_at: datetime | None,
    frequency: str,
    user_id: str,
) -> bool:
    """UTC-day rule with deterministic staggering for weekly and monthly users."""
    moment = ensure_utc(now)
    if last_sent_at is not None:
        last = ensure_utc(last_sent_at)
        if last.date() == moment.date():
            return False
        if moment - last < frequency_interval(frequency):
            return False
    return is_stagger_day(moment, frequency, user_id)


@dataclass(frozen=True)
class ScheduleInput:
    user_id: str
    frequency: str
    timezone: str | None
    preferred_hour: int
    last_sent_at: datetime | None


class SchedulePolicy(Protocol):
    name: str

    def is_due(self, now: datetime, schedule: ScheduleInput) -> bool: ...


class TimezoneWindowPolicy:
    name = "timezone"

    def is_due(self, now: datetime, schedule: ScheduleInput) -> bool:
        return is_digest_due(
            now,
            schedule.last_sent_at,
            schedule.frequency,
            schedule.timezone,
            schedule.preferred_hour,
        )


class UtcStaggerPolicy:
    name = "utc_stagger"

    def is_due(self, now: datetime, schedule: ScheduleInput) -> bool:
        return is_digest_due_utc_stagger(
            now, schedule.last_sent_at, schedule.frequency, schedule.user_id
        )


SCHEDULE_POLICIES: dict[str, type] = {
    TimezoneWindowPolicy.name: TimezoneWindowPolicy,
    UtcStaggerPolicy.name: UtcStaggerPolicy,
}


def get_schedule_policy(name: str | None = None) -> SchedulePolicy:
    """
    Policy by name, else BRAINBITS_SCHEDULE_POLICY, else "timezone".

    Raises:
        ValueError: For an unknown policy name
    """
    selected = (name or os.getenv("BRAINBITS_SCHEDULE_POLICY") or DIGEST_SCHEDULE_POLICY).strip()
    if selected not in SCHEDULE_POLICIES:
        raise ValueError(
            f"Unknown schedule policy {selected!r}; expected one of {sorted(SCHEDULE_POLICIES)}"
        )
    return SCHEDULE_POLICIES[selected]()
