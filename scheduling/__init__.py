"""Appointment scheduling and availability engine."""

from .availability import AvailabilityEngine, AvailabilityReport
from .config import SchedulingConfig
from .conflicts import SlotCheck, check_slot, conflicts, find_conflict, within_business_hours
from .errors import (
    BookingError,
    InvalidDate,
    InvalidTimeFormat,
    InvalidTimezone,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from .models import Appointment, AppointmentStatus, BookingInterval
from .registry import DEFAULT_TYPE_NAME, AppointmentType, AppointmentTypeRegistry
from .slots import generate_slots
from .timeparse import NormalizedTime, normalize

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AppointmentType",
    "AppointmentTypeRegistry",
    "AvailabilityEngine",
    "AvailabilityReport",
    "BookingError",
    "BookingInterval",
    "DEFAULT_TYPE_NAME",
    "InvalidDate",
    "InvalidTimeFormat",
    "InvalidTimezone",
    "InvalidTransition",
    "NormalizedTime",
    "NotFound",
    "SchedulingConfig",
    "SlotCheck",
    "SlotUnavailable",
    "ValidationError",
    "check_slot",
    "conflicts",
    "find_conflict",
    "generate_slots",
    "normalize",
    "within_business_hours",
]
