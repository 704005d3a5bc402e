"""Appointment agent providing scheduling operations.

``BookingAgent`` drives the appointment lifecycle::

    scheduled --confirm--> confirmed
    scheduled/confirmed --reschedule--> (same status, new time)
    scheduled/confirmed --cancel--> cancelled   (terminal)

Confirm and cancel are idempotent. Validation and availability failures raise
typed :mod:`scheduling.errors` exceptions. Calendar, notification and
patient-directory calls are best-effort: they run with a bounded timeout and
their failures are logged, never propagated.
"""
from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from connector import (
    AppointmentStore,
    CalendarGateway,
    LoggingNotifier,
    Notifier,
    NullCalendar,
    PatientDirectory,
)
from scheduling.availability import AvailabilityEngine, AvailabilityReport
from scheduling.config import SchedulingConfig
from scheduling.errors import BookingError, InvalidTransition, NotFound, ValidationError
from scheduling.models import CONFIRMATION_PREFIX, Appointment, AppointmentStatus, BookingInterval
from scheduling.registry import AppointmentTypeRegistry, DEFAULT_REGISTRY
from scheduling.timeparse import DATE_FORMAT, normalize, parse_date

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Not specified"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _validate_identifier(value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError([f"{label} must be a non-empty string"])
    return value.strip()


def _append_note(existing: str, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


@dataclass
class ScheduleRequest:
    """Canonical booking request; callers map loosely shaped input onto this."""

    patient_name: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = None
    appointment_type: Optional[str] = None
    timezone: Optional[str] = None
    provider: Optional[str] = None
    notes: Optional[str] = None

    def validate(self) -> List[str]:
        """Return every violation found, in a stable order."""

        errors: List[str] = []
        if not _clean(self.patient_name):
            errors.append("Patient name is required")
        if not _clean(self.patient_phone) and not _clean(self.patient_email):
            errors.append("Patient phone or email is required")
        if not _clean(self.date):
            errors.append("Appointment date is required")
        if not _clean(self.time):
            errors.append("Appointment time is required")
        return errors


@dataclass
class BookingResult:
    """Structured outcome of a booking operation."""

    success: bool
    message: str
    appointment: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_error(cls, exc: BookingError) -> "BookingResult":
        details: Dict[str, Any] = {}
        reason = getattr(exc, "reason", None)
        if reason:
            details["reason"] = reason
            details["kind"] = getattr(exc, "kind", None)
        return cls(
            success=False,
            message=str(exc),
            details=details,
            error=str(exc),
            error_type=type(exc).__name__,
            errors=list(getattr(exc, "errors", []) or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.appointment is not None:
            payload["appointment"] = self.appointment
        payload.update(self.details)
        if not self.success:
            payload["error"] = self.error
            payload["error_type"] = self.error_type
            if self.errors:
                payload["errors"] = self.errors
        return payload


class BookingAgent:
    """Schedules, confirms, reschedules and cancels appointments."""

    _RESULT_OPERATIONS = ("schedule", "confirm", "reschedule", "cancel")

    def __init__(
        self,
        store: AppointmentStore,
        *,
        calendar: Optional[CalendarGateway] = None,
        notifier: Optional[Notifier] = None,
        patient_directory: Optional[PatientDirectory] = None,
        registry: Optional[AppointmentTypeRegistry] = None,
        config: Optional[SchedulingConfig] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._store = store
        self._calendar = calendar or NullCalendar()
        self._notifier = notifier or LoggingNotifier()
        self._patient_directory = patient_directory
        self.registry = registry or DEFAULT_REGISTRY
        self.config = config or SchedulingConfig()
        self._id_factory = id_factory or (lambda: f"{CONFIRMATION_PREFIX}{uuid.uuid4()}")
        self.availability = AvailabilityEngine(store, registry=self.registry, config=self.config)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="booking-collaborator")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # Collaborators ---------------------------------------------------------

    def _call_collaborator(self, label: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a best-effort collaborator call; return ``None`` on failure or timeout."""

        timeout = self.config.collaborator_timeout_seconds
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            # A call already running cannot be cancelled; the client's own request
            # timeout bounds the worker thread.
            future.cancel()
            logger.warning("%s timed out after %.1fs; continuing", label, timeout)
        except Exception:  # noqa: BLE001 - collaborator failures never abort a booking
            logger.exception("%s failed; continuing", label)
        return None

    def _attach_calendar_event(self, appointment: Appointment) -> Appointment:
        event = self._call_collaborator("Calendar event creation", self._calendar.create_event, appointment)
        if event is None:
            return appointment
        try:
            return self._store.update_booking(
                appointment.id,
                {"calendar_event_id": event.event_id, "calendar_link": event.html_link},
            )
        except Exception:  # noqa: BLE001 - the booking itself is already persisted
            logger.exception("Could not record calendar event %s on %s", event.event_id, appointment.id)
            return appointment

    def _attach_patient_record(self, appointment: Appointment) -> Appointment:
        if self._patient_directory is None:
            return appointment
        patient_id = self._call_collaborator(
            "Patient directory lookup",
            self._patient_directory.get_or_create_patient,
            appointment.patient_name,
            appointment.patient_phone,
            appointment.patient_email,
            appointment.timezone,
        )
        if not patient_id:
            return appointment
        try:
            return self._store.update_booking(appointment.id, {"patient_id": patient_id})
        except Exception:  # noqa: BLE001 - the booking itself is already persisted
            logger.exception("Could not link patient %s to %s", patient_id, appointment.id)
            return appointment

    def _reminder_instructions(self) -> str:
        return f"You will receive a reminder {self.config.reminder_lead_minutes} minutes before your appointment."

    # Lookups ---------------------------------------------------------------

    def _lookup(self, appointment_id: str) -> Appointment:
        appointment_id = _validate_identifier(appointment_id, "appointment_id")
        appointment = self._store.get_booking(appointment_id)
        if appointment is None:
            appointment = self._store.get_booking_by_confirmation(appointment_id)
        if appointment is None:
            raise NotFound(appointment_id)
        return appointment

    def get_appointment(self, appointment_id: str) -> Dict[str, Any]:
        return self._lookup(appointment_id).summary()

    # Operations ------------------------------------------------------------

    def schedule(self, request: ScheduleRequest) -> BookingResult:
        """Book a new appointment if the requested slot is free."""

        errors = request.validate()
        if errors:
            raise ValidationError(errors)

        type_config = self.registry.resolve(request.appointment_type)
        if request.appointment_type and not self.registry.is_registered(request.appointment_type):
            logger.info("Unknown appointment type %r; using %s", request.appointment_type, type_config.name)
        timezone_name = _clean(request.timezone) or self.config.default_timezone
        normalized = normalize(request.date, request.time, timezone_name, type_config.duration_minutes)
        candidate = BookingInterval(
            start=normalized.start,
            end=normalized.end,
            buffer_before=type_config.buffer_before_minutes,
            buffer_after=type_config.buffer_after_minutes,
        )

        patient_name = _clean(request.patient_name)
        patient_phone = _clean(request.patient_phone)
        patient_email = _clean(request.patient_email)

        with self._store.transaction():
            check = self.availability.check_interval(candidate, normalized.date, timezone_name)
            check.raise_for_unavailable()
            appointment = Appointment(
                id=self._id_factory(),
                patient_name=patient_name,
                patient_phone=patient_phone,
                patient_email=patient_email,
                appointment_type=type_config.name,
                provider=_clean(request.provider) or self.config.default_provider,
                date=normalized.date,
                time=normalized.time,
                start_time=normalized.start,
                end_time=normalized.end,
                timezone=timezone_name,
                duration_minutes=type_config.duration_minutes,
                buffer_before_minutes=type_config.buffer_before_minutes,
                buffer_after_minutes=type_config.buffer_after_minutes,
                notes=_clean(request.notes) or "",
            )
            self._store.create_booking(appointment)

        logger.info(
            "Scheduled %s: %s for %s at %s",
            appointment.id,
            appointment.appointment_type,
            appointment.patient_name,
            normalized.display,
        )
        appointment = self._attach_patient_record(appointment)
        appointment = self._attach_calendar_event(appointment)
        self._call_collaborator("Confirmation notification", self._notifier.send_confirmation, appointment)

        return BookingResult(
            success=True,
            message="Appointment scheduled successfully",
            appointment=appointment.summary(),
            details={"datetime": normalized.display, "instructions": self._reminder_instructions()},
        )

    def confirm(self, appointment_id: str) -> BookingResult:
        with self._store.transaction():
            appointment = self._lookup(appointment_id)
            if appointment.status == AppointmentStatus.CONFIRMED:
                return BookingResult(
                    success=True,
                    message="Appointment was already confirmed",
                    appointment=appointment.summary(),
                )
            if appointment.status == AppointmentStatus.CANCELLED:
                raise InvalidTransition("Cannot confirm a cancelled appointment")
            appointment = self._store.update_booking(appointment.id, {"status": AppointmentStatus.CONFIRMED})

        logger.info("Confirmed %s", appointment.id)
        self._call_collaborator("Confirmation notification", self._notifier.send_confirmation, appointment)
        return BookingResult(
            success=True,
            message="Appointment confirmed successfully",
            appointment=appointment.summary(),
        )

    def reschedule(
        self,
        appointment_id: str,
        new_date: str,
        new_time: str,
        reason: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> BookingResult:
        """Move an active appointment, keeping its identity and status."""

        errors = []
        if not _clean(new_date):
            errors.append("New appointment date is required")
        if not _clean(new_time):
            errors.append("New appointment time is required")
        if errors:
            raise ValidationError(errors)

        with self._store.transaction():
            current = self._lookup(appointment_id)
            if current.status == AppointmentStatus.CANCELLED:
                raise InvalidTransition("Cannot reschedule a cancelled appointment")

            type_config = self.registry.resolve(current.appointment_type)
            timezone_name = _clean(timezone) or current.timezone or self.config.default_timezone
            normalized = normalize(new_date, new_time, timezone_name, type_config.duration_minutes)
            candidate = BookingInterval(
                start=normalized.start,
                end=normalized.end,
                buffer_before=type_config.buffer_before_minutes,
                buffer_after=type_config.buffer_after_minutes,
            )
            check = self.availability.check_interval(
                candidate, normalized.date, timezone_name, exclude_id=current.id
            )
            check.raise_for_unavailable()

            previous = f"{current.date} at {current.time}"
            reason_text = _clean(reason) or DEFAULT_REASON
            updated = self._store.update_booking(
                current.id,
                {
                    "date": normalized.date,
                    "time": normalized.time,
                    "start_time": normalized.start,
                    "end_time": normalized.end,
                    "timezone": timezone_name,
                    "duration_minutes": type_config.duration_minutes,
                    "buffer_before_minutes": type_config.buffer_before_minutes,
                    "buffer_after_minutes": type_config.buffer_after_minutes,
                    "reminder_sent": False,
                    "notes": _append_note(current.notes, f"Rescheduled from {previous}. Reason: {reason_text}"),
                },
            )

        logger.info("Rescheduled %s from %s to %s", updated.id, previous, normalized.display)
        if updated.calendar_event_id:
            self._call_collaborator(
                "Calendar event update",
                self._calendar.update_event,
                updated.calendar_event_id,
                updated,
                rescheduled_from=previous,
            )

        return BookingResult(
            success=True,
            message="Appointment rescheduled successfully",
            appointment=updated.summary(),
            details={
                "previous_datetime": previous,
                "new_datetime": normalized.display,
                "reschedule_reason": _clean(reason),
            },
        )

    def cancel(self, appointment_id: str, reason: Optional[str] = None) -> BookingResult:
        with self._store.transaction():
            appointment = self._lookup(appointment_id)
            if appointment.status == AppointmentStatus.CANCELLED:
                return BookingResult(
                    success=True,
                    message="Appointment was already cancelled",
                    appointment=appointment.summary(),
                    details={"cancellation_reason": appointment.cancellation_reason},
                )
            reason_text = _clean(reason)
            updated = self._store.update_booking(
                appointment.id,
                {
                    "status": AppointmentStatus.CANCELLED,
                    "cancellation_reason": reason_text,
                    "notes": _append_note(appointment.notes, f"Cancelled. Reason: {reason_text or DEFAULT_REASON}"),
                },
            )

        logger.info("Cancelled %s", updated.id)
        if updated.calendar_event_id:
            self._call_collaborator("Calendar event deletion", self._calendar.delete_event, updated.calendar_event_id)

        return BookingResult(
            success=True,
            message="Appointment cancelled successfully",
            appointment=updated.summary(),
            details={"cancellation_reason": reason_text},
        )

    def search(self, term: str) -> List[Dict[str, Any]]:
        """Appointments whose patient phone or email contains *term*."""

        term = (term or "").strip()
        if not term:
            return []
        return [appointment.summary() for appointment in self._store.find_bookings(term)]

    def appointments_for_date(self, date: str, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        target = parse_date(date).strftime(DATE_FORMAT)
        wanted = provider.strip().lower() if provider and provider.strip() else None
        return [
            appointment.summary()
            for appointment in self._store.get_bookings_for_date(target)
            if wanted is None or (appointment.provider or "").lower() == wanted
        ]

    def get_available_slots(
        self,
        date: str,
        appointment_type: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> AvailabilityReport:
        return self.availability.get_available_slots(date, appointment_type, timezone)

    def handle(self, operation: str, *args: Any, **kwargs: Any) -> BookingResult:
        """Run a state-machine operation, turning booking errors into a failure result."""

        if operation not in self._RESULT_OPERATIONS:
            raise ValueError(f"Unsupported operation: {operation}")
        try:
            return getattr(self, operation)(*args, **kwargs)
        except BookingError as exc:
            logger.info("%s rejected: %s", operation, exc)
            return BookingResult.from_error(exc)


__all__ = ["BookingAgent", "BookingResult", "ScheduleRequest"]
