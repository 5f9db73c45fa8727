"""
session.py
----------
Client side of the tracker: one TrackerSession per user profile. It owns the
application state, loads it once from the backend, saves it back after a quiet
period following each change, and keeps the reminder timers in step with the
medication list and the notification permission.

HTTP calls go through a requests-compatible session and run off the event loop
with asyncio.to_thread. Failures never raise out of the session; they become a
single user-facing message in ``session.error``.
"""

import asyncio
import logging
import mimetypes
import os
import random
import string
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import requests

import adherence
import tracker
from notifications import NotificationPermission, NotificationScheduler, Notifier, log_notification
from reminders import Reminder
from tracker import AppStatus, ParsedMedication, TrackerState

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000"
USER_ID_FILENAME = "user_id"

LOAD_ERROR_PREFIX = "Failed to load data"
SAVE_ERROR_PREFIX = "Could not save your changes"
EXTRACT_ERROR_PREFIX = "Failed to analyze the prescription"
NOTHING_FOUND_MESSAGE = (
    "No medication information was found in the file. "
    "Please try using a clearer image or add the medication manually."
)


class SessionError(Exception):
    pass


def tracker_home() -> Path:
    return Path(os.getenv("TRACKER_HOME", Path.home() / ".medication-tracker"))


def _random_suffix(length: int = 7) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def get_or_create_user_id(path: Path) -> str:
    """Read the profile's user id, creating and storing one on first use."""
    if path.exists():
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    user_id = f"user-{int(time.time() * 1000)}-{_random_suffix()}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(user_id, encoding="utf-8")
    logger.info("Created user id %s", user_id)
    return user_id


def _error_message(response: Any, prefix: str) -> str:
    try:
        body = response.json()
    except ValueError:
        logger.error("Could not parse error response from server. Body: %s", response.text)
        return f"{prefix}. The server returned an unexpected response."
    if not isinstance(body, dict):
        return f"{prefix}. The server returned an unexpected response."
    if body.get("details"):
        logger.error("Server error details: %s", body["details"])
    return f"{prefix}: {body.get('error') or f'HTTP {response.status_code}'}"


class TrackerSession:
    def __init__(
        self,
        api_url: Optional[str] = None,
        user_id: Optional[str] = None,
        notifier: Notifier = log_notification,
        http: Optional[Any] = None,
        save_delay: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.api_url = (api_url or os.getenv("TRACKER_API_URL", DEFAULT_API_URL)).rstrip("/")
        self.user_id = user_id or get_or_create_user_id(tracker_home() / USER_ID_FILENAME)
        self.http = http or requests.Session()
        if save_delay is None:
            save_delay = float(os.getenv("SAVE_DEBOUNCE_SECONDS", "0.5"))
        self.save_delay = save_delay

        self.state = TrackerState()
        self.status = AppStatus.IDLE
        self.error: Optional[str] = None
        self.is_loading = False
        self.permission = NotificationPermission.DEFAULT
        self.meds_for_review: Optional[List[ParsedMedication]] = None

        scheduler_kwargs = {"clock": clock} if clock else {}
        self.scheduler = NotificationScheduler(notifier, **scheduler_kwargs)
        self._loaded = False
        self._save_timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def medications(self) -> List[tracker.Medication]:
        return self.state.medications

    @property
    def history(self) -> List[tracker.HistoryEntry]:
        return self.state.history

    def _url(self, path: str) -> str:
        return f"{self.api_url}{path}"

    # Persistence

    async def load(self) -> bool:
        self.is_loading = True
        self.error = None
        try:
            response = await asyncio.to_thread(
                self.http.get, self._url("/api/load"), params={"userId": self.user_id}
            )
            if response.status_code >= 400:
                raise SessionError(_error_message(response, LOAD_ERROR_PREFIX))
            result = response.json()
            if not isinstance(result, dict):
                raise SessionError(f"{LOAD_ERROR_PREFIX}. The server returned an unexpected response.")
            self.state = tracker.load_document(result.get("data"))
        except SessionError as e:
            return self._load_failed(str(e))
        except requests.RequestException as e:
            logger.error("Failed to load state from API: %s", e)
            return self._load_failed(f"{LOAD_ERROR_PREFIX} from server.")
        except ValueError as e:
            logger.error("Stored document could not be read: %s", e)
            return self._load_failed(f"{LOAD_ERROR_PREFIX}. The saved document is unreadable.")
        finally:
            self.is_loading = False

        # saving is only enabled once server state has been read
        self._loaded = True
        self.scheduler.sync(self.state.medications, self.permission)
        return True

    def _load_failed(self, message: str) -> bool:
        self.error = message
        self.status = AppStatus.ERROR
        return False

    async def save(self) -> bool:
        payload = {"userId": self.user_id, "data": tracker.dump_document(self.state)}
        try:
            response = await asyncio.to_thread(self.http.post, self._url("/api/save"), json=payload)
            if response.status_code >= 400:
                raise SessionError(_error_message(response, SAVE_ERROR_PREFIX))
        except SessionError as e:
            logger.error("Failed to save state to API: %s", e)
            self.error = str(e)
            return False
        except requests.RequestException as e:
            logger.error("Failed to save state to API: %s", e)
            self.error = f"{SAVE_ERROR_PREFIX}."
            return False

        if self.error and self.error.startswith(SAVE_ERROR_PREFIX):
            self.error = None
        return True

    def schedule_save(self) -> None:
        """Restart the quiet-period timer; the save runs when it expires."""
        if not self._loaded:
            return
        if self._save_timer is not None:
            self._save_timer.cancel()
        self._save_timer = asyncio.get_running_loop().call_later(self.save_delay, self._start_save)

    def _start_save(self) -> None:
        self._save_timer = None
        task = asyncio.ensure_future(self.save())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def flush(self) -> None:
        """Run a pending debounced save now and wait for saves in flight."""
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None
            await self.save()
        if self._inflight:
            await asyncio.gather(*list(self._inflight))

    def close(self) -> None:
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None
        self.scheduler.cancel_all()

    # State updates

    def dispatch(self, command: Callable[..., TrackerState], *args, **kwargs) -> TrackerState:
        previous = self.state
        self.state = command(previous, *args, **kwargs)
        if self.state is previous:
            return self.state
        if self.state.medications != previous.medications:
            self.scheduler.sync(self.state.medications, self.permission)
        self.schedule_save()
        return self.state

    def add_manual_medication(self, parsed: ParsedMedication) -> TrackerState:
        state = self.dispatch(tracker.add_manual_medication, parsed)
        self.status = AppStatus.SUCCESS
        return state

    def toggle_taken(self, medication_id: str) -> TrackerState:
        return self.dispatch(tracker.toggle_taken, medication_id)

    def set_reminder(self, medication_id: str, reminder: Optional[Reminder]) -> TrackerState:
        return self.dispatch(tracker.set_reminder, medication_id, reminder)

    def bulk_delete(self, medication_ids: Iterable[str]) -> TrackerState:
        return self.dispatch(tracker.bulk_delete, list(medication_ids))

    def bulk_mark_taken(self, medication_ids: Iterable[str]) -> TrackerState:
        return self.dispatch(tracker.bulk_mark_taken, list(medication_ids))

    def clear_history(self) -> TrackerState:
        return self.dispatch(tracker.clear_history)

    # Extraction and review

    async def upload_prescription(self, path, mime_type: Optional[str] = None) -> List[ParsedMedication]:
        path = Path(path)
        mime_type = mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        self.status = AppStatus.LOADING
        self.error = None
        self.meds_for_review = None
        try:
            data = path.read_bytes()
            response = await asyncio.to_thread(
                self.http.post, self._url("/api/extract"), files={"file": (path.name, data, mime_type)}
            )
            if response.status_code >= 400:
                raise SessionError(_error_message(response, EXTRACT_ERROR_PREFIX))
            result = response.json()
            if not isinstance(result, dict):
                raise SessionError(f"{EXTRACT_ERROR_PREFIX}. The server returned an unexpected response.")
            medications = [ParsedMedication.model_validate(m) for m in result.get("medications") or []]
        except SessionError as e:
            return self._extract_failed(str(e))
        except (ValueError, TypeError) as e:
            logger.error("Extraction response could not be read: %s", e)
            return self._extract_failed(f"{EXTRACT_ERROR_PREFIX}. The server returned an unexpected response.")
        except (requests.RequestException, OSError) as e:
            logger.error("Error extracting medication info: %s", e)
            return self._extract_failed(f"{EXTRACT_ERROR_PREFIX}. Please ensure the image is clear and try again.")

        if not medications:
            self.error = NOTHING_FOUND_MESSAGE
            self.status = AppStatus.ERROR
            return []
        self.meds_for_review = medications
        self.status = AppStatus.IDLE
        return medications

    def _extract_failed(self, message: str) -> List[ParsedMedication]:
        self.error = message
        self.status = AppStatus.ERROR
        return []

    def confirm_review(self, reviewed: Optional[Iterable[ParsedMedication]] = None) -> TrackerState:
        reviewed = list(reviewed if reviewed is not None else (self.meds_for_review or []))
        state = self.dispatch(tracker.add_reviewed_medications, reviewed)
        self.meds_for_review = None
        self.status = AppStatus.SUCCESS
        return state

    def cancel_review(self) -> None:
        self.meds_for_review = None
        self.status = AppStatus.IDLE

    # Notifications

    def set_notification_permission(self, permission) -> None:
        self.permission = NotificationPermission(permission)
        self.scheduler.sync(self.state.medications, self.permission)

    def request_notification_permission(self, granted: bool = True) -> NotificationPermission:
        """Ask for permission; a denied permission is never overridden."""
        if self.permission == NotificationPermission.DENIED:
            return self.permission
        self.set_notification_permission(
            NotificationPermission.GRANTED if granted else NotificationPermission.DENIED
        )
        return self.permission

    # Reports

    def progress_report(self, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or datetime.now().date()
        meds, history = self.state.medications, self.state.history
        return {
            "progress": round(adherence.today_progress(meds)),
            "compliance": adherence.rolling_compliance(meds, history, today),
            "calendar": adherence.calendar_grid(today.year, today.month, meds, history, today),
            "doses_taken": {m.id: adherence.doses_taken(history, m.id) for m in meds},
        }
