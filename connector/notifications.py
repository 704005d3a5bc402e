"""Patient notifications for confirmations and reminders.

Each notifier returns ``True`` when it actually dispatched a message and
``False`` when it had nothing to do (for instance no email on file). Delivery
problems raise; the booking agent logs and absorbs them.
"""
from __future__ import annotations

import logging
import os
import re
import smtplib
from email.message import EmailMessage
from typing import Iterable, List, Optional, Protocol

import requests

from scheduling.models import Appointment

from .http_client import DEFAULT_TIMEOUT_SECONDS, ConnectorAPIError

logger = logging.getLogger(__name__)

TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01"
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


class Notifier(Protocol):
    def send_confirmation(self, appointment: Appointment) -> bool:
        """Tell the patient their appointment is booked or confirmed."""

    def send_reminder(self, appointment: Appointment) -> bool:
        """Remind the patient of an upcoming appointment."""


def confirmation_text(appointment: Appointment) -> str:
    return (
        f"Hi {appointment.patient_name}, your {appointment.appointment_type} is confirmed for "
        f"{appointment.display_datetime()}. Confirmation #{appointment.confirmation_number}."
    )


def reminder_text(appointment: Appointment) -> str:
    return (
        f"Reminder: {appointment.patient_name}, your {appointment.appointment_type} starts "
        f"{appointment.display_datetime()}. Reply or call to reschedule. "
        f"Confirmation #{appointment.confirmation_number}."
    )


def format_phone_number(phone: str) -> str:
    """Normalize to E.164; 10-digit numbers are treated as US numbers."""

    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


class LoggingNotifier:
    """Stub notifier that only records the intent to notify."""

    def send_confirmation(self, appointment: Appointment) -> bool:
        logger.info("Confirmation for appointment %s (%s) logged only", appointment.id, appointment.patient_name)
        return False

    def send_reminder(self, appointment: Appointment) -> bool:
        logger.info("Reminder for appointment %s (%s) logged only", appointment.id, appointment.patient_name)
        return False


class EmailNotifier:
    """SMTP email notifier using STARTTLS."""

    def __init__(
        self,
        host: str,
        *,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not host:
            raise ValueError("host is required for EmailNotifier")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.use_tls = use_tls
        self.timeout = timeout
        if not self.sender:
            raise ValueError("sender or username is required for EmailNotifier")

    def _build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        return message

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    def send_confirmation(self, appointment: Appointment) -> bool:
        if not appointment.patient_email:
            logger.debug("No email on file for %s; skipping confirmation email", appointment.id)
            return False
        self._send(
            self._build_message(appointment.patient_email, "Appointment Confirmed", confirmation_text(appointment))
        )
        logger.info("Confirmation email sent for %s", appointment.id)
        return True

    def send_reminder(self, appointment: Appointment) -> bool:
        if not appointment.patient_email:
            return False
        self._send(self._build_message(appointment.patient_email, "Appointment Reminder", reminder_text(appointment)))
        logger.info("Reminder email sent for %s", appointment.id)
        return True


class TwilioSMSNotifier:
    """SMS notifier backed by the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        base_url: str = TWILIO_API_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not account_sid or not auth_token:
            raise ValueError("account_sid and auth_token are required for TwilioSMSNotifier")
        if not from_number:
            raise ValueError("from_number is required for TwilioSMSNotifier")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, phone: str, body: str) -> str:
        to_number = format_phone_number(phone)
        if not _E164.match(to_number):
            raise ValueError(f"Invalid phone number format: {phone}")

        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = self.session.post(
                url,
                data={"To": to_number, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectorAPIError(f"Twilio request failed: {exc}") from exc

        if response.status_code not in (200, 201):
            raise ConnectorAPIError(f"Twilio SMS failed (status={response.status_code}): {response.text}")
        sid = response.json().get("sid", "")
        logger.info("SMS sent to %s (sid=%s)", to_number, sid)
        return sid

    def send_confirmation(self, appointment: Appointment) -> bool:
        if not appointment.patient_phone:
            return False
        self._send(appointment.patient_phone, confirmation_text(appointment))
        return True

    def send_reminder(self, appointment: Appointment) -> bool:
        if not appointment.patient_phone:
            return False
        self._send(appointment.patient_phone, reminder_text(appointment))
        return True


class MultiChannelNotifier:
    """Fans a notification out to every channel.

    A failing channel is logged and the remaining channels still run; the
    call fails only when every channel that attempted delivery failed.
    """

    def __init__(self, channels: Iterable[Notifier]) -> None:
        self._channels: List[Notifier] = list(channels)

    @property
    def channels(self) -> List[Notifier]:
        return list(self._channels)

    def _dispatch(self, method: str, appointment: Appointment) -> bool:
        sent = False
        errors: List[Exception] = []
        for channel in self._channels:
            try:
                sent = getattr(channel, method)(appointment) or sent
            except Exception as exc:  # noqa: BLE001 - one channel must not block the others
                logger.exception("%s via %s failed for %s", method, type(channel).__name__, appointment.id)
                errors.append(exc)
        if errors and not sent:
            raise errors[0]
        return sent

    def send_confirmation(self, appointment: Appointment) -> bool:
        return self._dispatch("send_confirmation", appointment)

    def send_reminder(self, appointment: Appointment) -> bool:
        return self._dispatch("send_reminder", appointment)


def notifier_from_env(timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Notifier:
    """Email and/or SMS channels for whichever credentials are configured."""

    channels: List[Notifier] = []
    smtp_host = os.getenv("SMTP_HOST")
    if smtp_host:
        channels.append(
            EmailNotifier(
                smtp_host,
                port=int(os.getenv("SMTP_PORT", "587")),
                username=os.getenv("SMTP_USER"),
                password=os.getenv("SMTP_PASSWORD"),
                sender=os.getenv("SMTP_FROM"),
                timeout=timeout,
            )
        )
    sid = os.getenv("TWILIO_ACCOUNT_SID")
    token = os.getenv("TWILIO_AUTH_TOKEN")
    from_number = os.getenv("TWILIO_PHONE_NUMBER")
    if sid and token and from_number:
        channels.append(TwilioSMSNotifier(sid, token, from_number, timeout=timeout))
    if not channels:
        logger.warning("No notification channel configured; notifications will be logged only")
        return LoggingNotifier()
    return MultiChannelNotifier(channels)
