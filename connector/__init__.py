"""Collaborator interfaces and in-memory implementations for the booking engine."""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from scheduling.models import UPDATABLE_FIELDS, Appointment

from .calendar import CalendarEventRef, CalendarGateway, GoogleCalendarClient, NullCalendar, calendar_from_env
from .fhir import FHIRClient, FHIRPatientDirectory
from .http_client import ConnectorAPIError, ConnectorAuthError, ConnectorError
from .notifications import (
    EmailNotifier,
    LoggingNotifier,
    MultiChannelNotifier,
    Notifier,
    TwilioSMSNotifier,
    notifier_from_env,
)
from .sqlite_store import SQLiteAppointmentStore


class AppointmentStore(Protocol):
    """Persistence contract the booking agent relies on.

    ``transaction()`` wraps the read-check-write sequence so two concurrent
    bookings cannot both pass the conflict check against a stale read.
    """

    def transaction(self) -> ContextManager[None]:
        """Critical section for check-then-write sequences."""

    def get_bookings_for_date(self, date: str) -> Sequence[Appointment]:
        """Return every booking on ``YYYY-MM-DD`` ordered by time."""

    def get_booking(self, appointment_id: str) -> Optional[Appointment]:
        """Return the booking with exactly this id, if any."""

    def get_booking_by_confirmation(self, code: str) -> Optional[Appointment]:
        """Return the booking whose confirmation number equals *code*."""

    def create_booking(self, appointment: Appointment) -> Appointment:
        """Persist a new booking."""

    def update_booking(self, appointment_id: str, fields: Mapping[str, Any]) -> Appointment:
        """Apply a partial update and return the stored booking."""

    def find_bookings(self, term: str) -> Sequence[Appointment]:
        """Match *term* against patient phone and email."""

    def list_bookings(self, status: Optional[str] = None) -> Sequence[Appointment]:
        """Return all bookings, optionally filtered by status."""

    def mark_reminder_sent(self, appointment_id: str) -> None:
        """Flag that the reminder for this booking went out."""


class PatientDirectory(Protocol):
    """Longitudinal patient record lookup used to stamp ``patient_id``."""

    def get_or_create_patient(
        self,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        timezone: Optional[str] = None,
    ) -> Optional[str]:
        """Return the patient reference for these contact details."""


def _check_update_fields(update: Mapping[str, Any]) -> None:
    unknown = set(update) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown or immutable appointment fields: {sorted(unknown)}")


def _sort_key_recent_first(record: Appointment) -> tuple:
    return (record.date, record.time)


class InMemoryAppointmentStore:
    """Dict-backed appointment store guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._appointments: Dict[str, Appointment] = {}
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def get_bookings_for_date(self, date: str) -> List[Appointment]:
        with self._lock:
            records = [replace(record) for record in self._appointments.values() if record.date == date]
        return sorted(records, key=lambda record: (record.time, record.start_time))

    def get_booking(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            record = self._appointments.get(appointment_id)
            return replace(record) if record else None

    def get_booking_by_confirmation(self, code: str) -> Optional[Appointment]:
        code = code.strip().upper()
        with self._lock:
            for record in self._appointments.values():
                if record.confirmation_number == code:
                    return replace(record)
        return None

    def create_booking(self, appointment: Appointment) -> Appointment:
        with self._lock:
            if appointment.id in self._appointments:
                raise ValueError(f"Appointment '{appointment.id}' already exists")
            self._appointments[appointment.id] = replace(appointment)
        return replace(appointment)

    def update_booking(self, appointment_id: str, fields: Mapping[str, Any]) -> Appointment:
        _check_update_fields(fields)
        with self._lock:
            record = self._appointments.get(appointment_id)
            if record is None:
                raise KeyError(appointment_id)
            updated = replace(record, **dict(fields), updated_at=datetime.now(timezone.utc))
            self._appointments[appointment_id] = updated
            return replace(updated)

    def find_bookings(self, term: str) -> List[Appointment]:
        needle = term.strip().lower()
        if not needle:
            return []
        with self._lock:
            matches = [
                replace(record)
                for record in self._appointments.values()
                if needle in (record.patient_phone or "").lower() or needle in (record.patient_email or "").lower()
            ]
        return sorted(matches, key=_sort_key_recent_first, reverse=True)

    def list_bookings(self, status: Optional[str] = None) -> List[Appointment]:
        with self._lock:
            records = [
                replace(record)
                for record in self._appointments.values()
                if status is None or record.status == status
            ]
        return sorted(records, key=_sort_key_recent_first, reverse=True)

    def mark_reminder_sent(self, appointment_id: str) -> None:
        self.update_booking(appointment_id, {"reminder_sent": True})


class InMemoryPatientDirectory:
    """Patient directory simulator keyed by phone, then email."""

    def __init__(self) -> None:
        self._patients: Dict[str, Dict[str, Optional[str]]] = {}
        self._lock = threading.Lock()

    def register_patient(
        self,
        patient_id: str,
        *,
        name: str = "",
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        if not patient_id:
            raise ValueError("patient_id must be provided")
        with self._lock:
            self._patients[patient_id] = {"name": name, "phone": phone, "email": email}

    def patient_exists(self, patient_id: str) -> bool:
        return patient_id in self._patients

    def get_or_create_patient(
        self,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        timezone: Optional[str] = None,
    ) -> str:
        with self._lock:
            for key in ("phone", "email"):
                value = phone if key == "phone" else email
                if not value:
                    continue
                for patient_id, record in self._patients.items():
                    if record.get(key) == value:
                        return patient_id
            patient_id = f"patient-{uuid.uuid4()}"
            self._patients[patient_id] = {"name": name, "phone": phone, "email": email}
            return patient_id


__all__ = [
    "AppointmentStore",
    "CalendarEventRef",
    "CalendarGateway",
    "ConnectorAPIError",
    "ConnectorAuthError",
    "ConnectorError",
    "EmailNotifier",
    "FHIRClient",
    "FHIRPatientDirectory",
    "GoogleCalendarClient",
    "InMemoryAppointmentStore",
    "InMemoryPatientDirectory",
    "LoggingNotifier",
    "MultiChannelNotifier",
    "Notifier",
    "NullCalendar",
    "PatientDirectory",
    "SQLiteAppointmentStore",
    "TwilioSMSNotifier",
    "calendar_from_env",
    "notifier_from_env",
]
