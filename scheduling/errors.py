"""Exception taxonomy for the scheduling engine."""
from __future__ import annotations

from typing import Iterable, List, Optional


class BookingError(Exception):
    """Base exception for expected booking outcomes callers branch on."""


class ValidationError(BookingError, ValueError):
    """Raised when a request is missing required fields.

    Every violation found is kept on ``errors`` rather than only the first.
    """

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}")


class InvalidTimeFormat(BookingError, ValueError):
    """Raised when a time-of-day string matches neither 12h nor 24h form."""


class InvalidDate(BookingError, ValueError):
    """Raised when a date string is not a real YYYY-MM-DD calendar date."""


class InvalidTimezone(BookingError, ValueError):
    """Raised when a timezone name is unknown to the tz database."""


class SlotUnavailable(BookingError):
    """Raised when a requested interval conflicts or falls outside business hours."""

    CONFLICT = "conflict"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"

    def __init__(self, reason: str, kind: str = CONFLICT, conflicting_id: Optional[str] = None) -> None:
        self.reason = reason
        self.kind = kind
        self.conflicting_id = conflicting_id
        super().__init__(f"Slot not available: {reason}")


class NotFound(BookingError, LookupError):
    """Raised when an appointment id or confirmation number is unknown."""

    def __init__(self, appointment_id: str) -> None:
        self.appointment_id = appointment_id
        super().__init__("Appointment not found")


class InvalidTransition(BookingError):
    """Raised for state changes the lifecycle does not allow."""


__all__ = [
    "BookingError",
    "InvalidDate",
    "InvalidTimeFormat",
    "InvalidTimezone",
    "InvalidTransition",
    "NotFound",
    "SlotUnavailable",
    "ValidationError",
]
