"""
adherence.py
------------
Adherence aggregation over the medication list and the taken-history log:
per-day compliance classification, the rolling compliance percentage, the
month calendar used by the progress report and a few small summaries.

Days are compared as local calendar dates (year/month/day equality), never as
24 hour windows.
"""

import calendar
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from reminders import applies_on
from tracker import HistoryEntry, Medication

COMPLIANCE_WINDOW_DAYS = 30


class DayStatus(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"
    UNSCHEDULED = "unscheduled"


@dataclass(frozen=True)
class CalendarCell:
    key: str
    type: str  # "blank" or "day"
    calendar_date: Optional[date] = None
    day: Optional[int] = None
    status: Optional[DayStatus] = None
    is_today: bool = False


def local_date(value) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.date()
    return value


def is_scheduled_on(medication: Medication, day: date) -> bool:
    if medication.reminder is None:
        return False
    return applies_on(medication.reminder, local_date(day))


def _taken_ids_on(history: Iterable[HistoryEntry], day: date) -> Set[str]:
    return {h.medication_id for h in history if local_date(h.taken_at) == day}


def _day_counts(day: date, medications: List[Medication], history: List[HistoryEntry]) -> Tuple[int, int]:
    scheduled = [m for m in medications if is_scheduled_on(m, day)]
    if not scheduled:
        return 0, 0
    taken_ids = _taken_ids_on(history, day)
    taken = sum(1 for m in scheduled if m.id in taken_ids)
    return len(scheduled), taken


def day_status(day, medications: List[Medication], history: List[HistoryEntry]) -> DayStatus:
    """Classify one day by how many of its scheduled medications were taken.

    Only medications scheduled on that day count; taking an unscheduled one
    leaves the status untouched.
    """
    scheduled, taken = _day_counts(local_date(day), medications, history)
    if scheduled == 0:
        return DayStatus.UNSCHEDULED
    if taken == 0:
        return DayStatus.NONE
    if taken == scheduled:
        return DayStatus.FULL
    return DayStatus.PARTIAL


def rolling_compliance(
    medications: List[Medication],
    history: List[HistoryEntry],
    today,
    days: int = COMPLIANCE_WINDOW_DAYS,
) -> int:
    """Percentage of scheduled doses taken over ``days`` days ending today.

    With nothing scheduled in the window the result is 100.
    """
    today = local_date(today)
    total_scheduled = 0
    total_taken = 0
    for offset in range(days):
        scheduled, taken = _day_counts(today - timedelta(days=offset), medications, history)
        total_scheduled += scheduled
        total_taken += taken
    if total_scheduled == 0:
        return 100
    # round half up, matching the stored reports
    return int(100 * total_taken / total_scheduled + 0.5)


def shift_month(year: int, month: int, offset: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def calendar_grid(
    year: int,
    month: int,
    medications: List[Medication],
    history: List[HistoryEntry],
    today,
) -> List[CalendarCell]:
    today = local_date(today)
    # monthrange weekday is Monday = 0; the grid starts on Sunday
    first_weekday, days_in_month = calendar.monthrange(year, month)
    leading = (first_weekday + 1) % 7

    grid: List[CalendarCell] = [CalendarCell(key=f"blank-{i}", type="blank") for i in range(leading)]
    for day_number in range(1, days_in_month + 1):
        current = date(year, month, day_number)
        grid.append(CalendarCell(
            key=current.isoformat(),
            type="day",
            calendar_date=current,
            day=day_number,
            status=day_status(current, medications, history),
            is_today=current == today,
        ))
    return grid


def today_progress(medications: List[Medication]) -> float:
    if not medications:
        return 0.0
    return 100.0 * sum(1 for m in medications if m.taken) / len(medications)


def doses_taken(history: List[HistoryEntry], medication_id: str) -> int:
    return sum(1 for h in history if h.medication_id == medication_id)


def group_history_by_day(history: List[HistoryEntry]) -> Dict[date, List[HistoryEntry]]:
    """Newest first, keyed by local calendar date."""
    grouped: Dict[date, List[HistoryEntry]] = OrderedDict()
    for entry in sorted(history, key=lambda h: h.taken_at, reverse=True):
        grouped.setdefault(local_date(entry.taken_at), []).append(entry)
    return grouped
