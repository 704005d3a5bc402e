"""Candidate slot generation across business hours."""
from __future__ import annotations

from typing import List

from .timeparse import format_clock


def generate_slots(
    start_hour: int,
    end_hour: int,
    duration_minutes: int,
    buffer_before: int = 0,
    buffer_after: int = 0,
    granularity_minutes: int = 15,
) -> List[str]:
    """Enumerate ``HH:MM`` start times whose occupied span fits business hours.

    Candidates step from ``start_hour:00`` by ``granularity_minutes``. A
    candidate is admitted only when ``start + duration + buffer_before +
    buffer_after`` does not pass ``end_hour:00``. The result depends only on
    the arguments.
    """

    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    if buffer_before < 0 or buffer_after < 0:
        raise ValueError("buffers must be non-negative")

    occupied = duration_minutes + buffer_before + buffer_after
    opening = start_hour * 60
    closing = end_hour * 60

    slots: List[str] = []
    candidate = opening
    while candidate + occupied <= closing:
        hours, minutes = divmod(candidate, 60)
        slots.append(format_clock(hours, minutes))
        candidate += granularity_minutes
    return slots
