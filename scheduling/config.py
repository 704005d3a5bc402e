"""Practice-level scheduling configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_OPEN_HOUR = int(os.getenv("BOOKING_OPEN_HOUR", "9"))
DEFAULT_CLOSE_HOUR = int(os.getenv("BOOKING_CLOSE_HOUR", "17"))
DEFAULT_TIMEZONE = os.getenv("BOOKING_TIMEZONE", "America/New_York")
DEFAULT_SLOT_GRANULARITY_MINUTES = 15
DEFAULT_COLLABORATOR_TIMEOUT_SECONDS = 10.0
DEFAULT_REMINDER_LEAD_MINUTES = 60
DEFAULT_REMINDER_WINDOW_MINUTES = 5


@dataclass(frozen=True)
class SchedulingConfig:
    """Business hours, slot granularity and collaborator limits."""

    open_hour: int = DEFAULT_OPEN_HOUR
    close_hour: int = DEFAULT_CLOSE_HOUR
    default_timezone: str = DEFAULT_TIMEZONE
    slot_granularity_minutes: int = DEFAULT_SLOT_GRANULARITY_MINUTES
    default_provider: Optional[str] = None
    collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
    reminder_lead_minutes: int = DEFAULT_REMINDER_LEAD_MINUTES
    reminder_window_minutes: int = DEFAULT_REMINDER_WINDOW_MINUTES

    def __post_init__(self) -> None:
        if not 0 <= self.open_hour < self.close_hour <= 24:
            raise ValueError(
                f"Business hours must satisfy 0 <= open < close <= 24 (got {self.open_hour}-{self.close_hour})"
            )
        if self.slot_granularity_minutes <= 0:
            raise ValueError("slot_granularity_minutes must be positive")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be positive")
        if self.reminder_lead_minutes <= 0 or self.reminder_window_minutes < 0:
            raise ValueError("reminder lead must be positive and window non-negative")
        try:
            ZoneInfo(self.default_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown default timezone: {self.default_timezone}") from exc

    @classmethod
    def from_env(cls) -> "SchedulingConfig":
        """Build a configuration from ``BOOKING_*`` environment variables."""

        return cls(
            open_hour=int(os.getenv("BOOKING_OPEN_HOUR", str(DEFAULT_OPEN_HOUR))),
            close_hour=int(os.getenv("BOOKING_CLOSE_HOUR", str(DEFAULT_CLOSE_HOUR))),
            default_timezone=os.getenv("BOOKING_TIMEZONE", DEFAULT_TIMEZONE),
            slot_granularity_minutes=int(
                os.getenv("BOOKING_SLOT_MINUTES", str(DEFAULT_SLOT_GRANULARITY_MINUTES))
            ),
            default_provider=os.getenv("BOOKING_DEFAULT_PROVIDER") or None,
            collaborator_timeout_seconds=float(
                os.getenv("BOOKING_COLLABORATOR_TIMEOUT", str(DEFAULT_COLLABORATOR_TIMEOUT_SECONDS))
            ),
            reminder_lead_minutes=int(
                os.getenv("BOOKING_REMINDER_LEAD_MINUTES", str(DEFAULT_REMINDER_LEAD_MINUTES))
            ),
        )
