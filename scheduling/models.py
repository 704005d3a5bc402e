"""Appointment data model shared by the engine and its storage collaborators."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

CONFIRMATION_PREFIX = "appt-"


class AppointmentStatus:
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    ACTIVE = frozenset({SCHEDULED, CONFIRMED})
    ALL = frozenset({SCHEDULED, CONFIRMED, CANCELLED})


@dataclass(frozen=True)
class BookingInterval:
    """Core interval of a booking together with its buffers."""

    start: datetime
    end: datetime
    buffer_before: int = 0
    buffer_after: int = 0

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("start must be earlier than end")

    @property
    def blocked_start(self) -> datetime:
        return self.start - timedelta(minutes=self.buffer_before)

    @property
    def blocked_end(self) -> datetime:
        return self.end + timedelta(minutes=self.buffer_after)

    def overlaps(self, other: "BookingInterval") -> bool:
        return self.blocked_start < other.blocked_end and self.blocked_end > other.blocked_start


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def confirmation_number(appointment_id: str) -> str:
    """Short caller-friendly code derived from an ``appt-<uuid>`` id."""

    core = appointment_id
    if core.startswith(CONFIRMATION_PREFIX):
        core = core[len(CONFIRMATION_PREFIX):]
    return core[:8].upper()


@dataclass
class Appointment:
    """A persisted booking.

    ``duration_minutes`` and both buffers are a snapshot of the appointment
    type taken when the booking was made (or last rescheduled); later registry
    edits do not change them.
    """

    id: str
    patient_name: str
    appointment_type: str
    date: str
    time: str
    start_time: datetime
    end_time: datetime
    timezone: str
    duration_minutes: int
    buffer_before_minutes: int
    buffer_after_minutes: int
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = None
    patient_id: Optional[str] = None
    provider: Optional[str] = None
    status: str = AppointmentStatus.SCHEDULED
    notes: str = ""
    cancellation_reason: Optional[str] = None
    reminder_sent: bool = False
    calendar_event_id: Optional[str] = None
    calendar_link: Optional[str] = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.start_time = _coerce_datetime(self.start_time)
        self.end_time = _coerce_datetime(self.end_time)
        self.created_at = _coerce_datetime(self.created_at) or _utc_now()
        self.updated_at = _coerce_datetime(self.updated_at)
        self.reminder_sent = bool(self.reminder_sent)
        if self.status not in AppointmentStatus.ALL:
            raise ValueError(f"Unknown appointment status: {self.status}")
        if self.end_time - self.start_time != timedelta(minutes=self.duration_minutes):
            raise ValueError("end_time - start_time must equal duration_minutes")

    @property
    def is_active(self) -> bool:
        return self.status in AppointmentStatus.ACTIVE

    @property
    def confirmation_number(self) -> str:
        return confirmation_number(self.id)

    @property
    def interval(self) -> BookingInterval:
        return BookingInterval(
            start=self.start_time,
            end=self.end_time,
            buffer_before=self.buffer_before_minutes,
            buffer_after=self.buffer_after_minutes,
        )

    def display_datetime(self) -> str:
        from .timeparse import format_display

        return format_display(self.start_time, self.timezone)

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        for key in ("start_time", "end_time", "created_at", "updated_at"):
            if record[key] is not None:
                record[key] = record[key].isoformat()
        return record

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Appointment":
        names = {item.name for item in fields(cls)}
        return cls(**{key: row[key] for key in row.keys() if key in names})

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "confirmation_number": self.confirmation_number,
            "patient_name": self.patient_name,
            "patient_phone": self.patient_phone,
            "appointment_type": self.appointment_type,
            "date": self.date,
            "time": self.time,
            "datetime_display": self.display_datetime(),
            "provider": self.provider,
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "calendar_link": self.calendar_link,
            "created_at": self.created_at.isoformat(),
        }


UPDATABLE_FIELDS = frozenset(item.name for item in fields(Appointment)) - {"id", "created_at"}


__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BookingInterval",
    "CONFIRMATION_PREFIX",
    "UPDATABLE_FIELDS",
    "confirmation_number",
]
