"""Appointment type registry: durations and buffers per appointment type."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional


@dataclass(frozen=True)
class AppointmentType:
    """Duration and asymmetric buffers for one kind of appointment."""

    name: str
    duration_minutes: int
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    color: str = "blue"

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError(f"{self.name}: duration_minutes must be positive")
        if self.buffer_before_minutes < 0 or self.buffer_after_minutes < 0:
            raise ValueError(f"{self.name}: buffers must be non-negative")

    @property
    def occupied_minutes(self) -> int:
        return self.duration_minutes + self.buffer_before_minutes + self.buffer_after_minutes


DEFAULT_TYPE_NAME = "Mental Health Consultation"

DEFAULT_APPOINTMENT_TYPES = (
    AppointmentType("Mental Health Consultation", 50, 10, 10, "blue"),
    # Shorter lead-in for urgent cases, longer recovery afterwards.
    AppointmentType("Crisis Intervention", 30, 5, 15, "red"),
    AppointmentType("Follow-up Session", 30, 10, 10, "green"),
    AppointmentType("Initial Assessment", 60, 10, 10, "purple"),
    AppointmentType("Group Therapy", 90, 15, 15, "orange"),
    AppointmentType("Medication Review", 20, 5, 5, "yellow"),
)


class AppointmentTypeRegistry:
    """Read-only lookup of appointment types.

    Unknown names resolve to the default type instead of failing, since
    callers such as voice agents pass free-text type names.
    """

    def __init__(
        self,
        types: Optional[Mapping[str, AppointmentType]] = None,
        *,
        default_type_name: str = DEFAULT_TYPE_NAME,
    ) -> None:
        if types is None:
            types = {item.name: item for item in DEFAULT_APPOINTMENT_TYPES}
        if default_type_name not in types:
            raise ValueError(f"Default appointment type '{default_type_name}' is not registered")
        self._types: Dict[str, AppointmentType] = dict(types)
        self.default_type_name = default_type_name

    def resolve(self, type_name: Optional[str]) -> AppointmentType:
        if type_name and type_name in self._types:
            return self._types[type_name]
        return self._types[self.default_type_name]

    def is_registered(self, type_name: Optional[str]) -> bool:
        return bool(type_name) and type_name in self._types

    def names(self) -> List[str]:
        return list(self._types)


DEFAULT_REGISTRY = AppointmentTypeRegistry()


def resolve(type_name: Optional[str]) -> AppointmentType:
    """Resolve *type_name* against the built-in registry."""

    return DEFAULT_REGISTRY.resolve(type_name)
