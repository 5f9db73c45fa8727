"""
tracker.py
----------
Application state for one user session and the commands that update it.

Every command takes the current TrackerState and returns a new one; the inputs
are never mutated, so commands compose and callers can compare old and new
state to decide whether anything needs saving or rescheduling.

The persisted document is the JSON text of TrackerState dumped with its
camelCase aliases: {"medications": [...], "history": [...]}.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from reminders import Reminder, normalize_reminder


class AppStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class ParsedMedication(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    dosage: str = ""
    quantity: str = ""
    instructions: str = ""
    total_quantity: Optional[int] = Field(None, alias="totalQuantity")

    @field_validator("name", "dosage", "quantity", "instructions", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value


class Medication(ParsedMedication):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    taken: bool = False
    reminder: Optional[Reminder] = None


class HistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    medication_id: str = Field(..., alias="medicationId")
    medication_name: str = Field("", alias="medicationName")
    taken_at: datetime = Field(..., alias="takenAt")

    @field_serializer("taken_at")
    def _serialize_taken_at(self, value: datetime) -> str:
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return value.isoformat(timespec="milliseconds")


class TrackerState(BaseModel):
    medications: List[Medication] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)


def now_local() -> datetime:
    """Current local time, truncated to the millisecond precision the document keeps."""
    current = datetime.now().astimezone()
    return current.replace(microsecond=current.microsecond // 1000 * 1000)


def _history_entry(med: Medication, taken_at: datetime) -> HistoryEntry:
    return HistoryEntry(medication_id=med.id, medication_name=med.name, taken_at=taken_at)


def _new_medication(parsed: ParsedMedication) -> Medication:
    return Medication(**parsed.model_dump(), taken=False, reminder=None)


def add_reviewed_medications(state: TrackerState, reviewed: Iterable[ParsedMedication]) -> TrackerState:
    """Append reviewed extraction results; entries left without a name are dropped."""
    new_meds = [_new_medication(med) for med in reviewed if med.name.strip()]
    if not new_meds:
        return state
    return state.model_copy(update={"medications": state.medications + new_meds})


def add_manual_medication(state: TrackerState, parsed: ParsedMedication) -> TrackerState:
    if not parsed.name.strip():
        raise ValueError("Medication name is required")
    return state.model_copy(update={"medications": state.medications + [_new_medication(parsed)]})


def toggle_taken(state: TrackerState, medication_id: str, now: Optional[datetime] = None) -> TrackerState:
    target = next((m for m in state.medications if m.id == medication_id), None)
    if target is None:
        return state

    if not target.taken:
        history = state.history + [_history_entry(target, now or now_local())]
    else:
        # undo removes only the newest entry for this medication
        entries = [h for h in state.history if h.medication_id == medication_id]
        if entries:
            # ties go to the entry added last
            latest = max(reversed(entries), key=lambda h: h.taken_at)
            history = [h for h in state.history if h.id != latest.id]
        else:
            history = state.history

    medications = [
        m.model_copy(update={"taken": not m.taken}) if m.id == medication_id else m
        for m in state.medications
    ]
    return TrackerState(medications=medications, history=history)


def set_reminder(state: TrackerState, medication_id: str, reminder: Optional[Reminder]) -> TrackerState:
    reminder = normalize_reminder(reminder)
    medications = [
        m.model_copy(update={"reminder": reminder}) if m.id == medication_id else m
        for m in state.medications
    ]
    return state.model_copy(update={"medications": medications})


def bulk_delete(state: TrackerState, medication_ids: Iterable[str]) -> TrackerState:
    selected = set(medication_ids)
    return TrackerState(
        medications=[m for m in state.medications if m.id not in selected],
        history=[h for h in state.history if h.medication_id not in selected],
    )


def bulk_mark_taken(state: TrackerState, medication_ids: Iterable[str], now: Optional[datetime] = None) -> TrackerState:
    """Mark the selection as taken. Medications already taken get no extra history entry."""
    selected = set(medication_ids)
    taken_at = now or now_local()
    new_entries: List[HistoryEntry] = []
    medications: List[Medication] = []
    for med in state.medications:
        if med.id not in selected:
            medications.append(med)
            continue
        if not med.taken:
            new_entries.append(_history_entry(med, taken_at))
        medications.append(med.model_copy(update={"taken": True}))
    return TrackerState(medications=medications, history=state.history + new_entries)


def clear_history(state: TrackerState) -> TrackerState:
    return state.model_copy(update={"history": []})


def dump_document(state: TrackerState) -> str:
    return state.model_dump_json(by_alias=True)


def load_document(text: Optional[str]) -> TrackerState:
    """Parse a stored document. Missing keys fall back to empty lists."""
    if not text:
        return TrackerState()
    payload = json.loads(text) if isinstance(text, str) else text
    if not isinstance(payload, dict):
        raise ValueError("Stored document must be a JSON object")
    return TrackerState(
        medications=payload.get("medications") or [],
        history=payload.get("history") or [],
    )
