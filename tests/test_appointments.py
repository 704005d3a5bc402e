import threading
import unittest
from unittest.mock import ANY, Mock

from agents.appointments import BookingAgent, BookingResult, ScheduleRequest
from connector import CalendarEventRef, ConnectorAPIError, InMemoryAppointmentStore, InMemoryPatientDirectory
from scheduling.config import SchedulingConfig
from scheduling.errors import (
    InvalidDate,
    InvalidTimeFormat,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from scheduling.models import AppointmentStatus


def _request(**overrides) -> ScheduleRequest:
    values = {
        "patient_name": "Jordan Lee",
        "patient_phone": "555-010-2000",
        "patient_email": "jordan@example.com",
        "date": "2026-01-05",
        "time": "2:00 PM",
        "appointment_type": "Mental Health Consultation",
    }
    values.update(overrides)
    return ScheduleRequest(**values)


class BookingAgentTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryAppointmentStore()
        self.calendar = Mock()
        self.calendar.create_event.return_value = CalendarEventRef("evt-1", "https://calendar.example/evt-1")
        self.notifier = Mock()
        self.notifier.send_confirmation.return_value = True
        self.directory = InMemoryPatientDirectory()
        self.config = SchedulingConfig(
            open_hour=9,
            close_hour=17,
            default_timezone="America/New_York",
            collaborator_timeout_seconds=1.0,
        )
        self.agent = BookingAgent(
            self.store,
            calendar=self.calendar,
            notifier=self.notifier,
            patient_directory=self.directory,
            config=self.config,
        )

    def tearDown(self) -> None:
        self.agent.close()


class ScheduleTests(BookingAgentTestCase):
    def test_schedule_success(self) -> None:
        result = self.agent.schedule(_request())

        self.assertTrue(result.success)
        self.assertEqual(result.message, "Appointment scheduled successfully")
        self.assertEqual(result.details["datetime"], "Monday, January 5, 2026 at 2:00 PM")
        self.assertIn("reminder", result.details["instructions"])
        summary = result.appointment
        self.assertEqual(summary["status"], AppointmentStatus.SCHEDULED)
        self.assertEqual(summary["time"], "14:00")
        self.assertEqual(summary["calendar_link"], "https://calendar.example/evt-1")
        self.assertEqual(summary["confirmation_number"], summary["id"][5:13].upper())

        stored = self.store.get_booking(summary["id"])
        self.assertEqual(stored.calendar_event_id, "evt-1")
        self.assertEqual(
            (stored.duration_minutes, stored.buffer_before_minutes, stored.buffer_after_minutes),
            (50, 10, 10),
        )
        self.assertTrue(stored.patient_id.startswith("patient-"))
        self.calendar.create_event.assert_called_once()
        self.notifier.send_confirmation.assert_called_once()

    def test_schedule_collects_every_validation_error(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.agent.schedule(ScheduleRequest(patient_name="  "))

        self.assertEqual(
            ctx.exception.errors,
            [
                "Patient name is required",
                "Patient phone or email is required",
                "Appointment date is required",
                "Appointment time is required",
            ],
        )
        self.assertEqual(self.store.list_bookings(), [])

    def test_email_alone_is_enough_contact(self) -> None:
        result = self.agent.schedule(_request(patient_phone=None))

        self.assertTrue(result.success)

    def test_schedule_rejects_unparseable_input(self) -> None:
        with self.assertRaises(InvalidTimeFormat):
            self.agent.schedule(_request(time="quarter past two"))
        with self.assertRaises(InvalidDate):
            self.agent.schedule(_request(date="2026-02-30"))

    def test_overlapping_buffers_are_rejected(self) -> None:
        self.agent.schedule(_request())

        with self.assertRaises(SlotUnavailable) as ctx:
            self.agent.schedule(
                _request(patient_name="Sam Ortiz", time="2:30 PM", appointment_type="Crisis Intervention")
            )

        self.assertEqual(ctx.exception.kind, SlotUnavailable.CONFLICT)
        self.assertIn("including buffer times", ctx.exception.reason)
        self.assertEqual(len(self.store.list_bookings()), 1)
        self.notifier.send_confirmation.assert_called_once()

    def test_outside_business_hours(self) -> None:
        for time in ("8:30 AM", "4:10 PM", "18:00"):
            with self.subTest(time=time):
                with self.assertRaises(SlotUnavailable) as ctx:
                    self.agent.schedule(_request(time=time))
                self.assertEqual(ctx.exception.kind, SlotUnavailable.OUTSIDE_BUSINESS_HOURS)
                self.assertIn("9:00 - 17:00", ctx.exception.reason)

    def test_after_buffer_may_end_exactly_at_close(self) -> None:
        result = self.agent.schedule(_request(time="4:00 PM"))

        self.assertTrue(result.success)

    def test_cancelled_slot_can_be_rebooked(self) -> None:
        first = self.agent.schedule(_request())
        self.agent.cancel(first.appointment["id"], "Conflict at work")

        second = self.agent.schedule(_request(patient_name="Sam Ortiz", patient_phone="555-010-3000"))

        self.assertTrue(second.success)
        self.assertNotEqual(first.appointment["id"], second.appointment["id"])

    def test_unknown_type_uses_default(self) -> None:
        result = self.agent.schedule(_request(appointment_type="Quick chat"))

        self.assertEqual(result.appointment["appointment_type"], "Mental Health Consultation")
        self.assertEqual(result.appointment["duration_minutes"], 50)

    def test_provider_defaults_from_config(self) -> None:
        agent = BookingAgent(self.store, config=SchedulingConfig(default_provider="Dr. Rivera"))
        try:
            result = agent.schedule(_request())
        finally:
            agent.close()

        self.assertEqual(result.appointment["provider"], "Dr. Rivera")

    def test_same_instant_booked_from_another_timezone_conflicts(self) -> None:
        self.agent.schedule(_request(time="3:00 PM"))

        # 09:00 in Auckland on the 6th is 20:00 UTC on the 5th, the same instant.
        with self.assertRaises(SlotUnavailable) as ctx:
            self.agent.schedule(
                _request(
                    patient_name="Sam Ortiz",
                    patient_phone="555-010-3000",
                    date="2026-01-06",
                    time="09:00",
                    timezone="Pacific/Auckland",
                )
            )

        self.assertEqual(ctx.exception.kind, SlotUnavailable.CONFLICT)
        self.assertEqual(len(self.store.list_bookings()), 1)


class CollaboratorFailureTests(BookingAgentTestCase):
    def test_calendar_and_notification_failures_do_not_fail_booking(self) -> None:
        self.calendar.create_event.side_effect = ConnectorAPIError("calendar down")
        self.notifier.send_confirmation.side_effect = RuntimeError("smtp down")

        with self.assertLogs("agents.appointments", level="ERROR") as logs:
            result = self.agent.schedule(_request())

        self.assertTrue(result.success)
        self.assertIsNone(result.appointment["calendar_link"])
        self.assertEqual(len(self.store.list_bookings()), 1)
        self.assertTrue(any("Calendar event creation failed" in line for line in logs.output))

    def test_patient_directory_failure_leaves_patient_unlinked(self) -> None:
        directory = Mock()
        directory.get_or_create_patient.side_effect = ConnectorAPIError("fhir down")
        agent = BookingAgent(self.store, patient_directory=directory, config=self.config)
        try:
            with self.assertLogs("agents.appointments", level="ERROR"):
                result = agent.schedule(_request())
        finally:
            agent.close()

        self.assertIsNone(self.store.get_booking(result.appointment["id"]).patient_id)

    def test_rejected_booking_leaves_patient_directory_untouched(self) -> None:
        directory = Mock(wraps=InMemoryPatientDirectory())
        agent = BookingAgent(self.store, patient_directory=directory, config=self.config)
        self.addCleanup(agent.close)
        agent.schedule(_request())

        with self.assertRaises(SlotUnavailable):
            agent.schedule(_request(patient_name="Sam Ortiz", patient_phone="555-010-3000", patient_email=None))

        directory.get_or_create_patient.assert_called_once_with(
            "Jordan Lee", "555-010-2000", "jordan@example.com", "America/New_York"
        )

    def test_slow_collaborator_is_abandoned_after_timeout(self) -> None:
        release = threading.Event()
        self.addCleanup(release.set)
        self.calendar.create_event.side_effect = lambda appointment: release.wait(5)
        agent = BookingAgent(
            self.store,
            calendar=self.calendar,
            notifier=self.notifier,
            config=SchedulingConfig(collaborator_timeout_seconds=0.05),
        )
        self.addCleanup(agent.close)

        with self.assertLogs("agents.appointments", level="WARNING") as logs:
            result = agent.schedule(_request())

        self.assertTrue(result.success)
        self.assertTrue(any("timed out" in line for line in logs.output))
        self.notifier.send_confirmation.assert_called_once()


class ConfirmTests(BookingAgentTestCase):
    def test_confirm_is_idempotent(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]

        first = self.agent.confirm(appointment_id)
        second = self.agent.confirm(appointment_id)

        self.assertEqual(first.message, "Appointment confirmed successfully")
        self.assertEqual(second.message, "Appointment was already confirmed")
        self.assertEqual(second.appointment["status"], AppointmentStatus.CONFIRMED)
        self.assertEqual(self.notifier.send_confirmation.call_count, 2)

    def test_confirm_by_confirmation_number(self) -> None:
        summary = self.agent.schedule(_request()).appointment

        result = self.agent.confirm(summary["confirmation_number"].lower())

        self.assertEqual(result.appointment["id"], summary["id"])

    def test_partial_confirmation_number_does_not_match(self) -> None:
        summary = self.agent.schedule(_request()).appointment

        with self.assertRaises(NotFound):
            self.agent.confirm(summary["confirmation_number"][:4])

    def test_cannot_confirm_cancelled(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]
        self.agent.cancel(appointment_id)

        with self.assertRaises(InvalidTransition):
            self.agent.confirm(appointment_id)

    def test_unknown_appointment(self) -> None:
        with self.assertRaises(NotFound):
            self.agent.confirm("appt-missing")
        with self.assertRaises(ValidationError):
            self.agent.confirm("")


class RescheduleTests(BookingAgentTestCase):
    def test_reschedule_frees_old_slot_and_blocks_new_one(self) -> None:
        appointment_id = self.agent.schedule(_request(appointment_type="Medication Review")).appointment["id"]

        result = self.agent.reschedule(appointment_id, "2026-01-05", "15:00", reason="Patient request")

        self.assertEqual(result.appointment["id"], appointment_id)
        self.assertEqual(result.appointment["status"], AppointmentStatus.SCHEDULED)
        self.assertEqual(result.details["previous_datetime"], "2026-01-05 at 14:00")
        self.assertEqual(result.details["new_datetime"], "Monday, January 5, 2026 at 3:00 PM")
        self.assertEqual(result.details["reschedule_reason"], "Patient request")

        report = self.agent.get_available_slots("2026-01-05", "Medication Review")
        self.assertIn("14:00", report.available)
        self.assertEqual(report.booked, ["14:45", "15:00", "15:15"])

        stored = self.store.get_booking(appointment_id)
        self.assertIn("Rescheduled from 2026-01-05 at 14:00. Reason: Patient request", stored.notes)
        self.calendar.update_event.assert_called_once_with(
            "evt-1", ANY, rescheduled_from="2026-01-05 at 14:00"
        )

    def test_reschedule_excludes_itself_from_conflicts(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]

        result = self.agent.reschedule(appointment_id, "2026-01-05", "2:15 PM")

        self.assertEqual(result.appointment["time"], "14:15")
        self.assertIn("Reason: Not specified", self.store.get_booking(appointment_id).notes)

    def test_reschedule_into_other_booking_fails_and_keeps_original(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]
        self.agent.schedule(_request(patient_name="Sam Ortiz", time="11:00"))

        with self.assertRaises(SlotUnavailable):
            self.agent.reschedule(appointment_id, "2026-01-05", "11:30")

        stored = self.store.get_booking(appointment_id)
        self.assertEqual(stored.time, "14:00")
        self.assertEqual(stored.notes, "")

    def test_reschedule_keeps_confirmed_status(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]
        self.agent.confirm(appointment_id)

        result = self.agent.reschedule(appointment_id, "2026-01-06", "10:00")

        self.assertEqual(result.appointment["status"], AppointmentStatus.CONFIRMED)
        self.assertEqual(result.appointment["date"], "2026-01-06")

    def test_cancelled_appointment_cannot_be_rescheduled(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]
        self.agent.cancel(appointment_id)

        with self.assertRaises(InvalidTransition):
            self.agent.reschedule(appointment_id, "2026-01-06", "10:00")

    def test_reschedule_requires_new_date_and_time(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]

        with self.assertRaises(ValidationError) as ctx:
            self.agent.reschedule(appointment_id, "", None)

        self.assertEqual(len(ctx.exception.errors), 2)

    def test_calendar_update_failure_does_not_block_reschedule(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]
        self.calendar.update_event.side_effect = ConnectorAPIError("calendar down")

        with self.assertLogs("agents.appointments", level="ERROR"):
            result = self.agent.reschedule(appointment_id, "2026-01-05", "10:00")

        self.assertEqual(self.store.get_booking(appointment_id).time, "10:00")
        self.assertTrue(result.success)


class CancelTests(BookingAgentTestCase):
    def test_cancel_is_idempotent(self) -> None:
        appointment_id = self.agent.schedule(_request()).appointment["id"]

        first = self.agent.cancel(appointment_id, "Feeling better")
        second = self.agent.cancel(appointment_id, "Again")

        self.assertEqual(first.message, "Appointment cancelled successfully")
        self.assertEqual(first.details["cancellation_reason"], "Feeling better")
        self.assertEqual(second.message, "Appointment was already cancelled")
        self.assertEqual(second.details["cancellation_reason"], "Feeling better")
        self.calendar.delete_event.assert_called_once_with("evt-1")

        stored = self.store.get_booking(appointment_id)
        self.assertEqual(stored.status, AppointmentStatus.CANCELLED)
        self.assertIn("Cancelled. Reason: Feeling better", stored.notes)

    def test_cancel_unknown(self) -> None:
        with self.assertRaises(NotFound):
            self.agent.cancel("appt-missing")


class SearchAndResultTests(BookingAgentTestCase):
    def test_search_by_phone_or_email(self) -> None:
        self.agent.schedule(_request())
        self.agent.schedule(
            _request(patient_name="Sam Ortiz", patient_phone="555-777-1234", patient_email="sam@clinic.test", time="10:00")
        )

        self.assertEqual(len(self.agent.search("010-2000")), 1)
        self.assertEqual(self.agent.search("SAM@CLINIC")[0]["patient_name"], "Sam Ortiz")
        self.assertEqual(len(self.agent.search("555")), 2)
        self.assertEqual(self.agent.search("nobody@nowhere"), [])
        self.assertEqual(self.agent.search("   "), [])

    def test_handle_turns_errors_into_results(self) -> None:
        result = self.agent.handle("confirm", "appt-missing")

        self.assertIsInstance(result, BookingResult)
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "NotFound")
        self.assertEqual(result.to_dict()["error"], "Appointment not found")

    def test_handle_validation_result_lists_errors(self) -> None:
        result = self.agent.handle("schedule", ScheduleRequest())

        self.assertEqual(result.error_type, "ValidationError")
        self.assertEqual(len(result.to_dict()["errors"]), 4)

    def test_handle_rejects_unknown_operation(self) -> None:
        with self.assertRaises(ValueError):
            self.agent.handle("search", "555")

    def test_appointments_for_date_filters_provider(self) -> None:
        self.agent.schedule(_request(provider="Dr. Rivera"))
        self.agent.schedule(_request(patient_name="Sam Ortiz", time="10:00", provider="Dr. Chen"))

        self.assertEqual(len(self.agent.appointments_for_date("2026-01-05")), 2)
        only_chen = self.agent.appointments_for_date("2026-01-05", "dr. chen")
        self.assertEqual([item["patient_name"] for item in only_chen], ["Sam Ortiz"])


class ConcurrentBookingTests(BookingAgentTestCase):
    def test_same_slot_is_booked_once(self) -> None:
        workers = 8
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def book(index: int) -> None:
            barrier.wait()
            outcome = self.agent.handle(
                "schedule", _request(patient_name=f"Patient {index}", patient_phone=f"555-000-{index:04d}")
            )
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=book, args=(index,)) for index in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len(results), workers)
        self.assertEqual(sum(1 for result in results if result.success), 1)
        self.assertTrue(all(result.error_type == "SlotUnavailable" for result in results if not result.success))
        self.assertEqual(len(self.store.list_bookings()), 1)


if __name__ == "__main__":
    unittest.main()
