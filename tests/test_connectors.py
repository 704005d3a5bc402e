import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock, patch

import requests

from connector import (
    ConnectorAPIError,
    ConnectorAuthError,
    EmailNotifier,
    FHIRClient,
    FHIRPatientDirectory,
    GoogleCalendarClient,
    InMemoryAppointmentStore,
    InMemoryPatientDirectory,
    LoggingNotifier,
    MultiChannelNotifier,
    NullCalendar,
    TwilioSMSNotifier,
    calendar_from_env,
    notifier_from_env,
)
from connector.calendar import build_event_payload
from connector.fhir import build_patient_resource
from connector.notifications import format_phone_number
from scheduling.models import Appointment


def _appointment(**overrides) -> Appointment:
    start = datetime(2026, 1, 5, 19, 0, tzinfo=timezone.utc)
    values = dict(
        id="appt-1a2b3c4d-0000",
        patient_name="Jordan Lee",
        patient_phone="(555) 010-2000",
        patient_email="jordan@example.com",
        appointment_type="Crisis Intervention",
        date="2026-01-05",
        time="14:00",
        start_time=start,
        end_time=start + timedelta(minutes=30),
        timezone="America/New_York",
        duration_minutes=30,
        buffer_before_minutes=5,
        buffer_after_minutes=15,
    )
    values.update(overrides)
    return Appointment(**values)


def _response(status: int, payload=None, text: str = "") -> Mock:
    response = Mock()
    response.status_code = status
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    response.headers = {"Content-Type": "application/json"}
    return response


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = Mock()
        token_response = _response(200, {"access_token": "token-abc", "expires_in": 3600})
        token_response.raise_for_status = Mock()
        self.session.post.return_value = token_response
        self.client = GoogleCalendarClient(
            client_id="client",
            client_secret="secret",
            refresh_token="refresh",
            calendar_id="clinic",
            session=self.session,
        )

    def test_create_event_posts_payload_and_returns_reference(self) -> None:
        self.session.request.return_value = _response(200, {"id": "evt-9", "htmlLink": "https://cal/evt-9"})

        ref = self.client.create_event(_appointment())

        self.assertEqual((ref.event_id, ref.html_link), ("evt-9", "https://cal/evt-9"))
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["method"], "POST")
        self.assertTrue(kwargs["url"].endswith("/calendars/clinic/events"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-abc")
        self.assertEqual(kwargs["json"]["summary"], "Crisis Intervention: Jordan Lee")
        token_payload = self.session.post.call_args.kwargs["data"]
        self.assertEqual(token_payload["grant_type"], "refresh_token")

    def test_token_is_cached(self) -> None:
        self.session.request.return_value = _response(200, {"id": "evt-9"})

        self.client.create_event(_appointment())
        self.client.create_event(_appointment())

        self.assertEqual(self.session.post.call_count, 1)

    def test_delete_tolerates_gone_event(self) -> None:
        self.session.request.return_value = _response(410)

        self.client.delete_event("evt-9")

        self.assertEqual(self.session.request.call_args.kwargs["method"], "DELETE")

    def test_update_raises_on_error_status(self) -> None:
        self.session.request.return_value = _response(500, {"error": "boom"}, "boom")

        with self.assertLogs("connector.http_client", level="ERROR"):
            with self.assertRaises(ConnectorAPIError):
                self.client.update_event("evt-9", _appointment(), rescheduled_from="2026-01-05 at 10:00")

    def test_transport_errors_become_connector_errors(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("offline")

        with self.assertLogs("connector.http_client", level="ERROR"):
            with self.assertRaises(ConnectorAPIError):
                self.client.create_event(_appointment())

    def test_token_failure(self) -> None:
        self.session.post.side_effect = requests.ConnectionError("offline")

        with self.assertLogs("connector.http_client", level="ERROR"):
            with self.assertRaises(ConnectorAuthError):
                self.client.create_event(_appointment())

    def test_requires_credentials(self) -> None:
        with self.assertRaises(ValueError):
            GoogleCalendarClient(client_id="client")

    def test_event_payload(self) -> None:
        payload = build_event_payload(_appointment(), rescheduled_from="2026-01-05 at 10:00")

        self.assertEqual(payload["start"], {"dateTime": "2026-01-05T19:00:00+00:00", "timeZone": "America/New_York"})
        self.assertEqual(payload["end"]["dateTime"], "2026-01-05T19:30:00+00:00")
        self.assertIn("Rescheduled from: 2026-01-05 at 10:00", payload["description"])
        self.assertEqual(payload["reminders"]["overrides"][0], {"method": "email", "minutes": 1440})

    def test_calendar_from_env_without_credentials_is_mock_mode(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            with self.assertLogs("connector.calendar", level="WARNING"):
                calendar = calendar_from_env()

        self.assertIsInstance(calendar, NullCalendar)
        self.assertIsNone(calendar.create_event(_appointment()))

    def test_calendar_from_env_passes_timeout(self) -> None:
        env = {"GOOGLE_CLIENT_ID": "id", "GOOGLE_CLIENT_SECRET": "secret", "GOOGLE_REFRESH_TOKEN": "refresh"}
        with patch.dict("os.environ", env, clear=True):
            calendar = calendar_from_env(timeout=2.5)

        self.assertIsInstance(calendar, GoogleCalendarClient)
        self.assertEqual(calendar.timeout, 2.5)


class FHIRPatientDirectoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = Mock()
        self.client = FHIRClient(base_url="https://fhir.example/r4", access_token="static", session=self.session)
        self.directory = FHIRPatientDirectory(self.client)

    def test_returns_existing_patient_by_phone(self) -> None:
        self.session.request.return_value = _response(
            200, {"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Patient", "id": "pat-7"}}]}
        )

        patient_id = self.directory.get_or_create_patient("Jordan Lee", "555-010-2000", None)

        self.assertEqual(patient_id, "pat-7")
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["params"], {"telecom": "555-010-2000"})
        self.session.post.assert_not_called()

    def test_creates_patient_when_no_match(self) -> None:
        self.session.request.side_effect = [
            _response(200, {"resourceType": "Bundle"}),
            _response(200, {"resourceType": "Bundle", "entry": []}),
            _response(201, {"resourceType": "Patient", "id": "pat-new"}),
        ]

        patient_id = self.directory.get_or_create_patient("Jordan Lee", "555-010-2000", "jordan@example.com", "UTC")

        self.assertEqual(patient_id, "pat-new")
        create_call = self.session.request.call_args_list[-1].kwargs
        self.assertEqual(create_call["method"], "POST")
        self.assertEqual(create_call["json"]["name"][0]["given"], ["Jordan"])

    def test_patient_resource_shape(self) -> None:
        resource = build_patient_resource("Jordan Avery Lee", None, "jordan@example.com")

        self.assertEqual(resource["name"][0]["family"], "Avery Lee")
        self.assertEqual(resource["telecom"], [{"system": "email", "value": "jordan@example.com"}])
        self.assertNotIn("extension", resource)


class NotifierTests(unittest.TestCase):
    def test_format_phone_number(self) -> None:
        self.assertEqual(format_phone_number("(555) 010-2000"), "+15550102000")
        self.assertEqual(format_phone_number("1-555-010-2000"), "+15550102000")
        self.assertEqual(format_phone_number("+44 20 7946 0958"), "+442079460958")

    def test_twilio_sends_sms(self) -> None:
        session = Mock()
        session.post.return_value = _response(201, {"sid": "SM123"})
        notifier = TwilioSMSNotifier("AC1", "token", "+15550000000", session=session)

        self.assertTrue(notifier.send_confirmation(_appointment()))

        args, kwargs = session.post.call_args
        self.assertTrue(args[0].endswith("/Accounts/AC1/Messages.json"))
        self.assertEqual(kwargs["data"]["To"], "+15550102000")
        self.assertIn("Confirmation #1A2B3C4D", kwargs["data"]["Body"])
        self.assertEqual(kwargs["auth"], ("AC1", "token"))

    def test_twilio_error_status_raises(self) -> None:
        session = Mock()
        session.post.return_value = _response(400, text="bad number")
        notifier = TwilioSMSNotifier("AC1", "token", "+15550000000", session=session)

        with self.assertRaises(ConnectorAPIError):
            notifier.send_reminder(_appointment())

    def test_twilio_skips_without_phone(self) -> None:
        session = Mock()
        notifier = TwilioSMSNotifier("AC1", "token", "+15550000000", session=session)

        self.assertFalse(notifier.send_reminder(_appointment(patient_phone=None)))
        session.post.assert_not_called()

    @patch("connector.notifications.smtplib.SMTP")
    def test_email_notifier_uses_starttls(self, smtp_cls: MagicMock) -> None:
        server = smtp_cls.return_value.__enter__.return_value
        notifier = EmailNotifier("smtp.example", username="bot@example.com", password="pw")

        self.assertTrue(notifier.send_confirmation(_appointment()))

        smtp_cls.assert_called_once_with("smtp.example", 587, timeout=notifier.timeout)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "pw")
        message = server.send_message.call_args.args[0]
        self.assertEqual(message["To"], "jordan@example.com")
        self.assertEqual(message["Subject"], "Appointment Confirmed")

    def test_multichannel_continues_after_failure(self) -> None:
        failing = Mock()
        failing.send_reminder.side_effect = ConnectorAPIError("sms down")
        working = Mock()
        working.send_reminder.return_value = True
        notifier = MultiChannelNotifier([failing, working])

        with self.assertLogs("connector.notifications", level="ERROR"):
            self.assertTrue(notifier.send_reminder(_appointment()))
        working.send_reminder.assert_called_once()

    def test_multichannel_raises_when_all_fail(self) -> None:
        failing = Mock()
        failing.send_confirmation.side_effect = ConnectorAPIError("down")
        notifier = MultiChannelNotifier([failing, LoggingNotifier()])

        with self.assertLogs("connector.notifications", level="ERROR"):
            with self.assertRaises(ConnectorAPIError):
                notifier.send_confirmation(_appointment())

    def test_notifier_from_env(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            with self.assertLogs("connector.notifications", level="WARNING"):
                self.assertIsInstance(notifier_from_env(), LoggingNotifier)

        env = {
            "SMTP_HOST": "smtp.example",
            "SMTP_USER": "bot@example.com",
            "TWILIO_ACCOUNT_SID": "AC1",
            "TWILIO_AUTH_TOKEN": "token",
            "TWILIO_PHONE_NUMBER": "+15550000000",
        }
        with patch.dict("os.environ", env, clear=True):
            notifier = notifier_from_env(timeout=2.5)

        self.assertIsInstance(notifier, MultiChannelNotifier)
        self.assertEqual([channel.timeout for channel in notifier.channels], [2.5, 2.5])


class InMemoryCollaboratorTests(unittest.TestCase):
    def test_store_returns_copies(self) -> None:
        store = InMemoryAppointmentStore()
        store.create_booking(_appointment())

        fetched = store.get_booking("appt-1a2b3c4d-0000")
        fetched.notes = "mutated outside the store"

        self.assertEqual(store.get_booking("appt-1a2b3c4d-0000").notes, "")

    def test_store_rejects_immutable_fields(self) -> None:
        store = InMemoryAppointmentStore()
        store.create_booking(_appointment())

        with self.assertRaises(ValueError):
            store.update_booking("appt-1a2b3c4d-0000", {"created_at": datetime.now(timezone.utc)})
        with self.assertRaises(KeyError):
            store.update_booking("appt-missing", {"notes": "x"})

    def test_patient_directory_matches_phone_then_email(self) -> None:
        directory = InMemoryPatientDirectory()
        directory.register_patient("patient-1", name="Jordan Lee", email="jordan@example.com")

        self.assertEqual(directory.get_or_create_patient("Jordan Lee", "555", "jordan@example.com"), "patient-1")
        created = directory.get_or_create_patient("Sam Ortiz", "555-777", None)
        self.assertTrue(created.startswith("patient-"))
        self.assertTrue(directory.patient_exists(created))
        self.assertEqual(directory.get_or_create_patient("Sam", "555-777", None), created)


if __name__ == "__main__":
    unittest.main()
