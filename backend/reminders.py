"""
reminders.py
------------
Reminder rules attached to a medication and the recurrence evaluation that
turns a rule into the next notification instant.

Weekday indices follow the stored document convention: 0 = Sunday .. 6 = Saturday.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
# today plus the following six days
LOOKAHEAD_DAYS = 7

Frequency = Literal["daily", "specific_days"]


def _parse_clock_time(token: str) -> Optional[str]:
    match = re.match(r"(?i)^\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*$", token)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    ampm = match.group(3)
    if ampm:
        ampm = ampm.lower()
        if hour == 12:
            hour = 0
        if ampm == "pm":
            hour += 12
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


class Reminder(BaseModel):
    times: List[str] = Field(default_factory=list, description="Times of day as HH:MM")
    frequency: Frequency = "daily"
    days: List[int] = Field(default_factory=list, description="Weekday indices, 0 = Sunday")

    @field_validator("times", mode="before")
    @classmethod
    def _normalize_times(cls, value):
        if value is None:
            return []
        normalized: List[str] = []
        for raw in value:
            if not isinstance(raw, str) or not raw.strip():
                continue
            parsed = _parse_clock_time(raw)
            if parsed is None:
                raise ValueError(f"invalid time of day: {raw!r}")
            if parsed not in normalized:
                normalized.append(parsed)
        return normalized

    @field_validator("days", mode="before")
    @classmethod
    def _normalize_days(cls, value):
        if value is None:
            return []
        days: List[int] = []
        for raw in value:
            day = int(raw)
            if day < 0 or day > 6:
                raise ValueError(f"weekday index out of range: {raw!r}")
            if day not in days:
                days.append(day)
        return days


def weekday_index(day: date) -> int:
    """Python counts Monday as 0; reminders count Sunday as 0."""
    return (day.weekday() + 1) % 7


def applies_on(reminder: Reminder, day: date) -> bool:
    if reminder.frequency == "daily":
        return True
    return reminder.frequency == "specific_days" and weekday_index(day) in reminder.days


def _split_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def next_fire_time(reminder: Reminder, now: datetime) -> Optional[datetime]:
    """Return the earliest configured instant strictly after ``now``.

    Every qualifying day in the seven days starting today
    contributes one candidate per time of day, so arbitrary weekday subsets
    need no special casing. Returns None when the rule has no times or no
    candidate survives.
    """
    if not reminder.times:
        return None

    candidates: List[datetime] = []
    for offset in range(LOOKAHEAD_DAYS):
        day = now.date() + timedelta(days=offset)
        if not applies_on(reminder, day):
            continue
        for slot in reminder.times:
            candidate = datetime.combine(day, _split_time(slot), tzinfo=now.tzinfo)
            if candidate > now:
                candidates.append(candidate)

    if not candidates:
        return None
    return min(candidates)


def normalize_reminder(reminder: Optional[Reminder]) -> Optional[Reminder]:
    """Collapse a degenerate rule to None instead of storing it."""
    if reminder is None or not reminder.times:
        return None
    if reminder.frequency == "specific_days" and not reminder.days:
        return None
    if reminder.frequency == "daily" and reminder.days:
        reminder = reminder.model_copy(update={"days": []})
    return reminder


def format_reminder_text(reminder: Optional[Reminder]) -> str:
    if not reminder or not reminder.times:
        return "No reminder set"

    time_string = ", ".join(sorted(reminder.times))
    if reminder.frequency == "daily":
        return f"Daily at {time_string}"

    days = sorted(reminder.days)
    if not days:
        return "No reminder set"
    if len(days) == 7:
        return f"Daily at {time_string}"
    day_string = ", ".join(DAY_NAMES[d] for d in days)
    return f"On {day_string} at {time_string}"
