"""
notifications.py
----------------
In-memory reminder scheduling. One timer per medication id, owned by a single
NotificationScheduler; any change to the medication list or to notification
permission cancels every timer and re-derives them from the reminder rules.

Nothing is persisted: after a restart the table is rebuilt from the rules.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

from reminders import next_fire_time
from tracker import Medication

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Medication Reminder"

Notifier = Callable[[str, str], None]


class NotificationPermission(str, Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


def log_notification(title: str, body: str) -> None:
    logger.info("[notify] %s: %s", title, body)


def notification_body(medication: Medication) -> str:
    return f"Time to take your {medication.name} ({medication.dosage})."


class NotificationScheduler:
    def __init__(
        self,
        notifier: Notifier = log_notification,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.notifier = notifier
        self.clock = clock
        self._loop = loop
        self._tasks: Dict[str, Tuple[datetime, asyncio.TimerHandle]] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def pending(self) -> Dict[str, datetime]:
        return {med_id: fire_at for med_id, (fire_at, _) in self._tasks.items()}

    def cancel_all(self) -> None:
        for _, handle in self._tasks.values():
            handle.cancel()
        self._tasks.clear()

    def sync(self, medications: Iterable[Medication], permission: NotificationPermission) -> None:
        """Cancel every pending timer, then arm one per medication with a reminder."""
        self.cancel_all()
        if permission != NotificationPermission.GRANTED:
            return
        for med in medications:
            if med.reminder is not None:
                self._arm(med)

    def _arm(self, medication: Medication) -> None:
        now = self.clock()
        fire_at = next_fire_time(medication.reminder, now)
        if fire_at is None:
            return
        delay = (fire_at - now).total_seconds()
        if delay <= 0:
            return
        handle = self.loop.call_later(delay, self._fire, medication)
        self._tasks[medication.id] = (fire_at, handle)
        logger.debug("[notify] armed %s for %s", medication.id, fire_at.isoformat())

    def _fire(self, medication: Medication) -> None:
        self._tasks.pop(medication.id, None)
        try:
            self.notifier(NOTIFICATION_TITLE, notification_body(medication))
        except Exception as exc:
            logger.error("[notify] delivery failed for %s: %s", medication.id, exc)
        self._arm(medication)
