"""Reminder agent for notifying patients shortly before their appointments."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from connector import AppointmentStore, LoggingNotifier, Notifier
from scheduling.config import SchedulingConfig
from scheduling.models import Appointment, AppointmentStatus

logger = logging.getLogger(__name__)


@dataclass
class ReminderResult:
    appointment_id: str
    confirmation_number: str
    success: bool
    message: str
    patient_name: Optional[str] = None
    contact_points: Dict[str, Any] = field(default_factory=dict)

    def to_report_entry(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "confirmation_number": self.confirmation_number,
            "success": self.success,
            "message": self.message,
            "patient_name": self.patient_name,
            "contact_points": self.contact_points,
        }


def _contact_points(appointment: Appointment) -> Dict[str, Any]:
    points: Dict[str, Any] = {}
    if appointment.patient_phone:
        points["phone"] = appointment.patient_phone
    if appointment.patient_email:
        points["email"] = appointment.patient_email
    return points


class ReminderAgent:
    """Sends one reminder per active appointment starting about ``lead`` minutes from now."""

    def __init__(
        self,
        store: AppointmentStore,
        notifier: Optional[Notifier] = None,
        *,
        config: Optional[SchedulingConfig] = None,
        report_path: Optional[Path | str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._config = config or SchedulingConfig()
        self._report_path = Path(report_path) if report_path else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def due_window(self, now: Optional[datetime] = None) -> tuple:
        now = now or self._clock()
        lead = timedelta(minutes=self._config.reminder_lead_minutes)
        window = timedelta(minutes=self._config.reminder_window_minutes)
        return now + lead - window, now + lead + window

    def find_due(self, now: Optional[datetime] = None) -> List[Appointment]:
        window_start, window_end = self.due_window(now)
        due = [
            appointment
            for appointment in self._store.list_bookings()
            if appointment.status in AppointmentStatus.ACTIVE
            and not appointment.reminder_sent
            and (appointment.patient_phone or appointment.patient_email)
            and window_start <= appointment.start_time <= window_end
        ]
        return sorted(due, key=lambda appointment: appointment.start_time)

    def run(self) -> Dict[str, Any]:
        """Send every due reminder and return a summary of the sweep."""

        due = self.find_due()
        results: List[ReminderResult] = []

        for appointment in due:
            logger.debug("Sending reminder for %s at %s", appointment.id, appointment.start_time.isoformat())
            try:
                sent = self._notifier.send_reminder(appointment)
                self._store.mark_reminder_sent(appointment.id)
                result = ReminderResult(
                    appointment_id=appointment.id,
                    confirmation_number=appointment.confirmation_number,
                    success=True,
                    message="Reminder sent" if sent else "Reminder logged",
                    patient_name=appointment.patient_name,
                    contact_points=_contact_points(appointment),
                )
                logger.info("Reminder processed for %s", appointment.id)
            except Exception as exc:  # noqa: BLE001 - one failed reminder must not stop the batch
                logger.exception("Failed to send reminder for %s", appointment.id)
                result = ReminderResult(
                    appointment_id=appointment.id,
                    confirmation_number=appointment.confirmation_number,
                    success=False,
                    message=str(exc),
                    patient_name=appointment.patient_name,
                )
            results.append(result)

        summary = self._summarize(due, results)
        if self._report_path is not None:
            self._write_report(summary)
        return summary

    def _summarize(self, due: Sequence[Appointment], results: Sequence[ReminderResult]) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "generated_at": self._clock().isoformat(),
            "total_due": len(due),
            "reminders": [result.to_report_entry() for result in results],
        }
        summary["total_sent"] = sum(1 for item in summary["reminders"] if item["success"])
        summary["total_failures"] = sum(1 for item in summary["reminders"] if not item["success"])
        return summary

    def _write_report(self, report_payload: Dict[str, Any]) -> None:
        self._report_path.parent.mkdir(parents=True, exist_ok=True)
        with self._report_path.open("w", encoding="utf-8") as handle:
            json.dump(report_payload, handle, indent=2, sort_keys=True)
        logger.info("Reminder report written to %s", self._report_path)


__all__ = ["ReminderAgent", "ReminderResult"]
