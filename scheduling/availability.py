"""Availability engine: partitions a day's candidate slots into available and booked."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from .config import SchedulingConfig
from .conflicts import SlotCheck, check_slot, conflicts
from .models import Appointment, BookingInterval
from .registry import AppointmentTypeRegistry, DEFAULT_REGISTRY
from .slots import generate_slots
from .timeparse import DATE_FORMAT, get_zone, local_wall_clock, normalize, parse_date

logger = logging.getLogger(__name__)

_NEIGHBOUR_DAYS = 2


class BookingSource(Protocol):
    """The slice of the storage collaborator the engine reads from."""

    def get_bookings_for_date(self, date: str) -> Sequence[Appointment]:
        """Return every booking stored for the calendar date ``YYYY-MM-DD``."""


@dataclass
class AvailabilityReport:
    date: str
    timezone: str
    appointment_type: str
    available: List[str] = field(default_factory=list)
    booked: List[str] = field(default_factory=list)
    slot_duration_minutes: int = 0
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0

    @property
    def total(self) -> int:
        return len(self.available) + len(self.booked)

    @property
    def buffers(self) -> Dict[str, int]:
        return {"before": self.buffer_before_minutes, "after": self.buffer_after_minutes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "timezone": self.timezone,
            "appointment_type": self.appointment_type,
            "available_slots": list(self.available),
            "booked_slots": list(self.booked),
            "total_slots": self.total,
            "slot_duration_minutes": self.slot_duration_minutes,
            "buffer_before_minutes": self.buffer_before_minutes,
            "buffer_after_minutes": self.buffer_after_minutes,
        }


class AvailabilityEngine:
    """Composes slot generation and conflict detection against stored bookings."""

    def __init__(
        self,
        source: BookingSource,
        *,
        registry: Optional[AppointmentTypeRegistry] = None,
        config: Optional[SchedulingConfig] = None,
    ) -> None:
        self._source = source
        self.registry = registry or DEFAULT_REGISTRY
        self.config = config or SchedulingConfig()

    @property
    def hours_label(self) -> str:
        return f"{self.config.open_hour}:00 - {self.config.close_hour}:00"

    def business_window(self, target_date: Union[str, date], timezone_name: str) -> Tuple[datetime, datetime]:
        """Opening and closing instants for *target_date* on the local wall clock."""

        day = parse_date(target_date)
        return (
            local_wall_clock(day, self.config.open_hour * 60, timezone_name),
            local_wall_clock(day, self.config.close_hour * 60, timezone_name),
        )

    def active_bookings(self, target_date: str, *, exclude_id: Optional[str] = None) -> List[Appointment]:
        """Non-cancelled bookings that can overlap *target_date*, minus the one being rescheduled.

        Bookings are filed under their own local date and UTC offsets span 26
        hours, so an overlapping booking can sit up to two date strings away.
        """

        day = parse_date(target_date)
        seen = set()
        bookings: List[Appointment] = []
        for offset in range(-_NEIGHBOUR_DAYS, _NEIGHBOUR_DAYS + 1):
            key = (day + timedelta(days=offset)).strftime(DATE_FORMAT)
            for booking in self._source.get_bookings_for_date(key):
                if booking.id in seen or booking.id == exclude_id or not booking.is_active:
                    continue
                seen.add(booking.id)
                bookings.append(booking)
        return sorted(bookings, key=lambda booking: booking.start_time)

    def check_interval(
        self,
        candidate: BookingInterval,
        target_date: str,
        timezone_name: str,
        *,
        exclude_id: Optional[str] = None,
        existing: Optional[Iterable[Appointment]] = None,
    ) -> SlotCheck:
        if existing is None:
            existing = self.active_bookings(target_date, exclude_id=exclude_id)
        else:
            existing = [booking for booking in existing if booking.id != exclude_id]
        business_open, business_close = self.business_window(target_date, timezone_name)
        return check_slot(
            candidate,
            existing,
            business_open,
            business_close,
            hours_label=self.hours_label,
        )

    def get_available_slots(
        self,
        target_date: Union[str, date],
        appointment_type: Optional[str] = None,
        timezone_name: Optional[str] = None,
    ) -> AvailabilityReport:
        timezone_name = timezone_name or self.config.default_timezone
        get_zone(timezone_name)
        day = parse_date(target_date).strftime(DATE_FORMAT)
        type_config = self.registry.resolve(appointment_type)

        candidates = generate_slots(
            self.config.open_hour,
            self.config.close_hour,
            type_config.duration_minutes,
            type_config.buffer_before_minutes,
            type_config.buffer_after_minutes,
            granularity_minutes=self.config.slot_granularity_minutes,
        )
        existing = self.active_bookings(day)
        logger.debug("Checking %d candidate slots against %d bookings on %s", len(candidates), len(existing), day)

        report = AvailabilityReport(
            date=day,
            timezone=timezone_name,
            appointment_type=type_config.name,
            slot_duration_minutes=type_config.duration_minutes,
            buffer_before_minutes=type_config.buffer_before_minutes,
            buffer_after_minutes=type_config.buffer_after_minutes,
        )
        for slot in candidates:
            normalized = normalize(day, slot, timezone_name, type_config.duration_minutes)
            candidate = BookingInterval(
                start=normalized.start,
                end=normalized.end,
                buffer_before=type_config.buffer_before_minutes,
                buffer_after=type_config.buffer_after_minutes,
            )
            if conflicts(candidate, existing):
                report.booked.append(slot)
            else:
                report.available.append(slot)

        logger.info(
            "Availability for %s (%s, %s): %d available, %d booked",
            day,
            type_config.name,
            timezone_name,
            len(report.available),
            len(report.booked),
        )
        return report
