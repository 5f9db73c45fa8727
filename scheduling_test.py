"""
Reminder recurrence and notification scheduling tests
2024-01-01 is a Monday (weekday index 1); 2023-12-31 is a Sunday (index 0).
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from notifications import NotificationPermission, NotificationScheduler, notification_body
from reminders import (
    Reminder,
    format_reminder_text,
    next_fire_time,
    normalize_reminder,
    weekday_index,
)
from tracker import Medication

MONDAY_10AM = datetime(2024, 1, 1, 10, 0)


def test_weekday_index_starts_on_sunday():
    assert weekday_index(date(2023, 12, 31)) == 0
    assert weekday_index(date(2024, 1, 1)) == 1
    assert weekday_index(date(2024, 1, 6)) == 6


def test_reminder_times_are_normalized():
    reminder = Reminder(times=["9", "9:00", " ", "9pm", "12am"], frequency="daily")
    assert reminder.times == ["09:00", "21:00", "00:00"]


def test_reminder_rejects_bad_values():
    with pytest.raises(ValidationError):
        Reminder(times=["25:00"])
    with pytest.raises(ValidationError):
        Reminder(times=["08:00"], frequency="specific_days", days=[7])
    with pytest.raises(ValidationError):
        Reminder(times=["08:00"], frequency="weekly")


def test_daily_later_today():
    reminder = Reminder(times=["09:00", "21:00"], frequency="daily")
    assert next_fire_time(reminder, MONDAY_10AM) == datetime(2024, 1, 1, 21, 0)


def test_daily_already_passed_wraps_to_tomorrow():
    reminder = Reminder(times=["09:00"], frequency="daily")
    fire_at = next_fire_time(reminder, MONDAY_10AM)
    assert fire_at == datetime(2024, 1, 2, 9, 0)
    assert fire_at - MONDAY_10AM <= timedelta(hours=24)


def test_time_equal_to_now_is_not_future():
    reminder = Reminder(times=["10:00"], frequency="daily")
    assert next_fire_time(reminder, MONDAY_10AM) == datetime(2024, 1, 2, 10, 0)


def test_specific_days_picks_next_matching_weekday():
    reminder = Reminder(times=["08:00"], frequency="specific_days", days=[3, 5])
    assert next_fire_time(reminder, MONDAY_10AM) == datetime(2024, 1, 3, 8, 0)


def test_specific_days_same_weekday_already_passed_finds_nothing():
    reminder = Reminder(times=["08:00"], frequency="specific_days", days=[1])
    assert next_fire_time(reminder, MONDAY_10AM) is None


def test_specific_days_without_days_never_fires():
    reminder = Reminder(times=["08:00"], frequency="specific_days", days=[])
    assert next_fire_time(reminder, MONDAY_10AM) is None


def test_no_times_never_fires():
    assert next_fire_time(Reminder(times=[], frequency="daily"), MONDAY_10AM) is None


def test_fire_time_keeps_timezone():
    now = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    fire_at = next_fire_time(Reminder(times=["11:30"]), now)
    assert fire_at == datetime(2024, 1, 1, 11, 30, tzinfo=timezone.utc)


def test_normalize_reminder_collapses_degenerate_rules():
    assert normalize_reminder(None) is None
    assert normalize_reminder(Reminder(times=[" "], frequency="daily")) is None
    assert normalize_reminder(Reminder(times=["08:00"], frequency="specific_days", days=[])) is None
    kept = normalize_reminder(Reminder(times=["08:00"], frequency="daily", days=[2]))
    assert kept.times == ["08:00"]
    assert kept.days == []


def test_format_reminder_text():
    assert format_reminder_text(None) == "No reminder set"
    assert format_reminder_text(Reminder(times=["20:00", "08:00"])) == "Daily at 08:00, 20:00"
    assert format_reminder_text(
        Reminder(times=["09:00"], frequency="specific_days", days=[3, 1])
    ) == "On Mon, Wed at 09:00"
    assert format_reminder_text(
        Reminder(times=["09:00"], frequency="specific_days", days=list(range(7)))
    ) == "Daily at 09:00"


class FakeClock:
    """Returns the queued instants in order, then keeps returning the last one."""

    def __init__(self, *instants):
        self.instants = list(instants)

    def __call__(self):
        if len(self.instants) > 1:
            return self.instants.pop(0)
        return self.instants[0]


def _medication(med_id, reminder):
    return Medication(id=med_id, name="Metformin", dosage="500mg", reminder=reminder)


def test_sync_arms_one_timer_per_reminder():
    async def scenario():
        scheduler = NotificationScheduler(notifier=lambda t, b: None, clock=lambda: MONDAY_10AM)
        meds = [
            _medication("a", Reminder(times=["21:00"])),
            _medication("b", None),
            _medication("c", Reminder(times=["08:00"], frequency="specific_days", days=[3])),
        ]
        scheduler.sync(meds, NotificationPermission.GRANTED)
        pending = scheduler.pending()
        scheduler.cancel_all()
        return pending

    pending = asyncio.run(scenario())
    assert pending == {
        "a": datetime(2024, 1, 1, 21, 0),
        "c": datetime(2024, 1, 3, 8, 0),
    }


@pytest.mark.parametrize("permission", [NotificationPermission.DEFAULT, NotificationPermission.DENIED])
def test_nothing_armed_without_permission(permission):
    async def scenario():
        scheduler = NotificationScheduler(notifier=lambda t, b: None, clock=lambda: MONDAY_10AM)
        scheduler.sync([_medication("a", Reminder(times=["21:00"]))], permission)
        return scheduler.pending()

    assert asyncio.run(scenario()) == {}


def test_sync_replaces_previous_timers():
    async def scenario():
        scheduler = NotificationScheduler(notifier=lambda t, b: None, clock=lambda: MONDAY_10AM)
        scheduler.sync([_medication("a", Reminder(times=["21:00"]))], NotificationPermission.GRANTED)
        scheduler.sync([_medication("b", Reminder(times=["22:00"]))], NotificationPermission.GRANTED)
        pending = scheduler.pending()
        scheduler.cancel_all()
        return pending

    assert asyncio.run(scenario()) == {"b": datetime(2024, 1, 1, 22, 0)}


def test_fired_reminder_notifies_and_rearms():
    just_before = datetime(2024, 1, 1, 8, 59, 59, 950000)
    just_after = datetime(2024, 1, 1, 9, 0, 0, 10000)
    sent = []

    async def scenario():
        scheduler = NotificationScheduler(
            notifier=lambda title, body: sent.append((title, body)),
            clock=FakeClock(just_before, just_after),
        )
        med = _medication("a", Reminder(times=["09:00"]))
        scheduler.sync([med], NotificationPermission.GRANTED)
        await asyncio.sleep(0.3)
        pending = scheduler.pending()
        scheduler.cancel_all()
        return pending

    pending = asyncio.run(scenario())
    assert sent == [("Medication Reminder", "Time to take your Metformin (500mg).")]
    assert pending == {"a": datetime(2024, 1, 2, 9, 0)}


def test_failing_notifier_still_rearms():
    just_before = datetime(2024, 1, 1, 8, 59, 59, 950000)
    just_after = datetime(2024, 1, 1, 9, 0, 0, 10000)

    def broken(title, body):
        raise RuntimeError("notification surface unavailable")

    async def scenario():
        scheduler = NotificationScheduler(notifier=broken, clock=FakeClock(just_before, just_after))
        scheduler.sync([_medication("a", Reminder(times=["09:00"]))], NotificationPermission.GRANTED)
        await asyncio.sleep(0.3)
        pending = scheduler.pending()
        scheduler.cancel_all()
        return pending

    assert asyncio.run(scenario()) == {"a": datetime(2024, 1, 2, 9, 0)}


def test_notification_body():
    med = Medication(name="Ibuprofen", dosage="200mg")
    assert notification_body(med) == "Time to take your Ibuprofen (200mg)."
