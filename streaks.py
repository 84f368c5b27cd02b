"""Daily streak arithmetic.

Streaks are counted in calendar days. Comparisons use `date` day keys rather
than elapsed hours, so an activity at 23:59 followed by one at 00:01 is a
one-day step and DST shifts never produce a gap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime


@dataclass(frozen=True)
class StreakUpdate:
    current_streak: int
    longest_streak: int
    is_new_day: bool
    streak_broken: bool
    activity_date: str  # ISO day the update is stamped with


def day_key(value: str | date | datetime | None) -> date | None:
    """Normalise an ISO date/datetime string (or date object) to a `date`."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def compute_streak(
    last_activity_date: str | date | None,
    today: date,
    current_streak: int,
    longest_streak: int,
) -> StreakUpdate:
    """Apply one day of activity to a streak.

    - same day as the last activity: unchanged, not a new day
    - exactly one day later: streak + 1
    - more than one day later: streak restarts at 1 (broken)
    - no previous activity: streak starts at 1
    """
    last_day = day_key(last_activity_date)

    if last_day is None:
        current = 1
        is_new_day, broken = True, False
    else:
        gap = (today - last_day).days
        if gap <= 0:
            # Same day, or a stored date ahead of the clock
            return StreakUpdate(
                current_streak=current_streak,
                longest_streak=max(longest_streak, current_streak),
                is_new_day=False,
                streak_broken=False,
                activity_date=last_day.isoformat(),
            )
        if gap == 1:
            current = current_streak + 1
            is_new_day, broken = True, False
        else:
            current = 1
            is_new_day, broken = True, True

    return StreakUpdate(
        current_streak=current,
        longest_streak=max(longest_streak, current),
        is_new_day=is_new_day,
        streak_broken=broken,
        activity_date=today.isoformat(),
    )


def streak_is_alive(last_activity_date: str | date | None, today: date) -> bool:
    """True when the streak can still be continued today (active today or yesterday)."""
    last_day = day_key(last_activity_date)
    if last_day is None:
        return False
    return (today - last_day).days <= 1
