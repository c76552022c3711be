"""Calendar occurrences for recurring (habit) goals."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from stepflow.core.errors import InvalidDateRange, NoOccurrencesFound, ScheduleOverflow

logger = logging.getLogger(__name__)

WEEKDAY_CODES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
MAX_WALK_DAYS = 365


@dataclass(frozen=True)
class OccurrenceSchedule:
    occurrences: List[datetime] = field(default_factory=list)
    trimmed_count: int = 0

    def isoformat(self) -> List[str]:
        return [occurrence.isoformat() for occurrence in self.occurrences]


def normalize_weekdays(selected_days: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, validate and de-duplicate weekday codes while keeping their order."""
    normalized: List[str] = []
    for raw in selected_days or []:
        code = str(raw).strip().lower()[:3]
        if code not in WEEKDAY_CODES:
            raise ValueError(f"Unknown weekday code: {raw!r}")
        if code not in normalized:
            normalized.append(code)
    return normalized


def parse_time_of_day(value: Optional[str], default: str = "08:00") -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute), falling back to the default on junk input."""
    for candidate in (value, default):
        if not candidate:
            continue
        try:
            hour_str, _, minute_str = candidate.partition(":")
            hour, minute = int(hour_str), int(minute_str or 0)
        except ValueError:
            continue
        if 0 <= hour < 24 and 0 <= minute < 60:
            return hour, minute
    return 8, 0


def compute_occurrences(
    start_date: date,
    due_date: Optional[date],
    frequency_per_week: Optional[int],
    selected_days: Optional[Sequence[str]],
    duration_weeks: int,
    *,
    hour: int = 8,
    minute: int = 0,
    tz: Optional[tzinfo] = None,
) -> OccurrenceSchedule:
    """
    Return the ordered occurrence timestamps for a goal.

    Identical inputs always produce identical output, so a retry can safely recompute the
    schedule instead of trusting whatever was persisted.
    """
    days = normalize_weekdays(selected_days)

    if due_date is not None and start_date > due_date:
        raise InvalidDateRange(
            f"Start date {start_date.isoformat()} is after the due date {due_date.isoformat()}."
        )

    if days:
        dates = _walk_selected_days(start_date, due_date, days, duration_weeks)
    else:
        count = max(0, (frequency_per_week or 0) * max(duration_weeks, 0))
        dates = [start_date + timedelta(days=offset) for offset in range(count)]

    occurrences = [datetime.combine(day, time(hour, minute), tzinfo=tz) for day in dates]

    trimmed = 0
    if due_date is not None and occurrences:
        boundary = datetime.combine(due_date, time.max, tzinfo=tz)
        kept = [occurrence for occurrence in occurrences if occurrence <= boundary]
        trimmed = len(occurrences) - len(kept)
        occurrences = kept

    if not occurrences:
        raise NoOccurrencesFound(_no_occurrences_message(days, start_date, due_date))

    if trimmed:
        logger.info("Trimmed %s occurrence(s) past due date %s", trimmed, due_date)
    return OccurrenceSchedule(occurrences=occurrences, trimmed_count=trimmed)


def _walk_selected_days(
    start_date: date,
    due_date: Optional[date],
    days: List[str],
    duration_weeks: int,
) -> List[date]:
    wanted = {WEEKDAY_CODES.index(code) for code in days}
    if due_date is not None:
        horizon = due_date
        bound = min((due_date - start_date).days + 7, MAX_WALK_DAYS)
    else:
        horizon = start_date + timedelta(days=max(duration_weeks, 1) * 7 - 1)
        bound = MAX_WALK_DAYS

    collected: List[date] = []
    current = start_date
    for _ in range(bound):
        if current > horizon:
            return collected
        if current.weekday() in wanted:
            collected.append(current)
        current += timedelta(days=1)

    if current > horizon:
        return collected
    raise ScheduleOverflow(
        f"Schedule from {start_date.isoformat()} to {horizon.isoformat()} exceeds {bound} days."
    )


def _no_occurrences_message(days: List[str], start_date: date, due_date: Optional[date]) -> str:
    range_text = f"{start_date:%b} {start_date.day}"
    if due_date is not None:
        range_text = f"{range_text} and {due_date:%b} {due_date.day}"
    if days:
        names = ", ".join(code.upper() for code in days)
        return f"No {names} days occur between {range_text}. Please adjust your dates or selected days."
    return f"No occurrences fit between {range_text}. Please adjust your dates or frequency."


def schedule_for_goal(goal: Any, *, start_time: Optional[str], timezone_name: str = "UTC") -> OccurrenceSchedule:
    """Occurrences for a stored goal; one-off goals get a single occurrence on the start date."""
    hour, minute = parse_time_of_day(start_time)
    tz = ZoneInfo(timezone_name)
    if not goal.is_habit:
        return OccurrenceSchedule(occurrences=[datetime.combine(goal.start_date, time(hour, minute), tzinfo=tz)])
    return compute_occurrences(
        goal.start_date,
        goal.due_date,
        goal.frequency_per_week,
        goal.selected_days,
        goal.duration_weeks or 0,
        hour=hour,
        minute=minute,
        tz=tz,
    )
