"""External calendar synchronization.

The booking agent treats the calendar as a convenience: event references are
opaque strings passed through untouched, and every failure here is absorbed
by the caller. :class:`NullCalendar` is the mock mode used when no
credentials are configured.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from scheduling.models import Appointment

from .http_client import DEFAULT_TIMEOUT_SECONDS, OAuthHTTPClient

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
DEFAULT_EVENT_COLOR = "9"


@dataclass(frozen=True)
class CalendarEventRef:
    event_id: str
    html_link: Optional[str] = None


class CalendarGateway(Protocol):
    def create_event(self, appointment: Appointment) -> Optional[CalendarEventRef]:
        """Create an event for *appointment* and return its reference."""

    def update_event(self, event_id: str, appointment: Appointment, *, rescheduled_from: Optional[str] = None) -> None:
        """Move the event to the appointment's current interval."""

    def delete_event(self, event_id: str) -> None:
        """Remove the event."""


def build_event_description(appointment: Appointment, rescheduled_from: Optional[str] = None) -> str:
    lines = [
        "Telehealth Appointment",
        "",
        f"Patient: {appointment.patient_name}",
        f"Phone: {appointment.patient_phone or 'N/A'}",
        f"Email: {appointment.patient_email or 'N/A'}",
        f"Type: {appointment.appointment_type}",
        f"Provider: {appointment.provider or 'N/A'}",
        "",
        f"Notes: {appointment.notes or 'None'}",
        "",
        f"Appointment ID: {appointment.id}",
    ]
    if rescheduled_from:
        lines.append(f"Rescheduled from: {rescheduled_from}")
    return "\n".join(lines)


def build_event_payload(appointment: Appointment, rescheduled_from: Optional[str] = None) -> Dict[str, Any]:
    """Google Calendar event resource for *appointment* (core interval only)."""

    return {
        "summary": f"{appointment.appointment_type}: {appointment.patient_name}",
        "description": build_event_description(appointment, rescheduled_from),
        "start": {"dateTime": appointment.start_time.isoformat(), "timeZone": appointment.timezone},
        "end": {"dateTime": appointment.end_time.isoformat(), "timeZone": appointment.timezone},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 60},
            ],
        },
        "colorId": DEFAULT_EVENT_COLOR,
    }


class NullCalendar:
    """Mock-mode calendar: logs and does nothing."""

    def create_event(self, appointment: Appointment) -> Optional[CalendarEventRef]:
        logger.info("Calendar not configured; no event created for %s", appointment.id)
        return None

    def update_event(self, event_id: str, appointment: Appointment, *, rescheduled_from: Optional[str] = None) -> None:
        logger.info("Calendar not configured; event %s not updated", event_id)

    def delete_event(self, event_id: str) -> None:
        logger.info("Calendar not configured; event %s not deleted", event_id)


class GoogleCalendarClient(OAuthHTTPClient):
    """Google Calendar v3 client using the OAuth2 refresh-token grant."""

    service_name = "Google Calendar"

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        base_url: str = GOOGLE_CALENDAR_BASE_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not access_token and not (client_id and client_secret and refresh_token):
            raise ValueError("client_id, client_secret and refresh_token must be provided")
        super().__init__(
            base_url=base_url,
            token_url=token_url,
            access_token=access_token,
            timeout=timeout,
            session=session,
        )
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id

    def _token_request_payload(self) -> Dict[str, str]:
        return {
            "grant_type": "refresh_token",
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            "refresh_token": self.refresh_token or "",
        }

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"calendars/{self.calendar_id}/events"
        return f"{path}/{event_id}" if event_id else path

    def create_event(self, appointment: Appointment) -> Optional[CalendarEventRef]:
        response = self._request(
            "POST",
            self._events_path(),
            json_payload=build_event_payload(appointment),
            expected_status=(200, 201),
        )
        data = response.json()
        logger.info("Google Calendar event %s created for %s", data.get("id"), appointment.id)
        return CalendarEventRef(event_id=data["id"], html_link=data.get("htmlLink"))

    def update_event(self, event_id: str, appointment: Appointment, *, rescheduled_from: Optional[str] = None) -> None:
        if not event_id:
            raise ValueError("event_id must be provided")
        self._request(
            "PUT",
            self._events_path(event_id),
            json_payload=build_event_payload(appointment, rescheduled_from),
        )
        logger.info("Google Calendar event %s updated", event_id)

    def delete_event(self, event_id: str) -> None:
        if not event_id:
            raise ValueError("event_id must be provided")
        # 410 means the event is already gone.
        self._request("DELETE", self._events_path(event_id), expected_status=(200, 204, 410))
        logger.info("Google Calendar event %s deleted", event_id)


def calendar_from_env(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> CalendarGateway:
    """Google Calendar when OAuth credentials are present, otherwise mock mode."""

    client_id = os.getenv("GOOGLE_CLIENT_ID")
    client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
    refresh_token = os.getenv("GOOGLE_REFRESH_TOKEN")
    if client_id and client_secret and refresh_token:
        return GoogleCalendarClient(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            calendar_id=os.getenv("GOOGLE_CALENDAR_ID", DEFAULT_CALENDAR_ID),
            timeout=timeout,
        )
    logger.warning("Google Calendar credentials not configured. Running in mock mode.")
    return NullCalendar()
