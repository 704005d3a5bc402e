"""Buffer-aware conflict detection.

Each booking blocks ``[start - buffer_before, end + buffer_after)`` using its
*own* buffers, so a crisis slot with a 5 minute lead-in and a consultation with
a 10 minute lead-in are expanded differently. Two bookings conflict when their
blocked windows overlap (half-open comparison). Cancelled bookings never take
part.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from .errors import SlotUnavailable
from .models import AppointmentStatus, BookingInterval


class ExistingBooking(Protocol):
    id: str
    status: str

    @property
    def interval(self) -> BookingInterval:
        ...


@dataclass(frozen=True)
class SlotCheck:
    """Outcome of an admissibility check for one candidate interval."""

    available: bool
    reason: Optional[str] = None
    kind: Optional[str] = None
    conflicting_id: Optional[str] = None

    def raise_for_unavailable(self) -> None:
        if self.available:
            return
        raise SlotUnavailable(
            self.reason or "Time slot unavailable",
            self.kind or SlotUnavailable.CONFLICT,
            self.conflicting_id,
        )


def find_conflict(
    candidate: BookingInterval,
    existing: Iterable[ExistingBooking],
) -> Optional[ExistingBooking]:
    """Return the first active booking whose blocked window overlaps *candidate*."""

    for booking in existing:
        if booking.status == AppointmentStatus.CANCELLED:
            continue
        if candidate.overlaps(booking.interval):
            return booking
    return None


def conflicts(candidate: BookingInterval, existing: Iterable[ExistingBooking]) -> bool:
    return find_conflict(candidate, existing) is not None


def within_business_hours(
    candidate: BookingInterval,
    business_open: datetime,
    business_close: datetime,
) -> bool:
    """True when the candidate starts after opening and its after-buffer ends by closing."""

    return candidate.start >= business_open and candidate.blocked_end <= business_close


def check_slot(
    candidate: BookingInterval,
    existing: Iterable[ExistingBooking],
    business_open: datetime,
    business_close: datetime,
    *,
    hours_label: str = "",
) -> SlotCheck:
    """Pairwise conflicts first, then business-hours containment."""

    clash = find_conflict(candidate, existing)
    if clash is not None:
        return SlotCheck(
            available=False,
            reason="Time slot conflicts with existing appointment (including buffer times)",
            kind=SlotUnavailable.CONFLICT,
            conflicting_id=clash.id,
        )
    if not within_business_hours(candidate, business_open, business_close):
        suffix = f" ({hours_label})" if hours_label else ""
        return SlotCheck(
            available=False,
            reason=f"Time slot is outside business hours{suffix}",
            kind=SlotUnavailable.OUTSIDE_BUSINESS_HOURS,
        )
    return SlotCheck(available=True)
