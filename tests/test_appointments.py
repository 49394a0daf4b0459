import unittest
from datetime import date, datetime, timezone

from agents import appointments
from connector import InMemoryDocumentStore

FIXED_NOW = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


class AppointmentAgentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryDocumentStore(clock=lambda: FIXED_NOW)

    def test_book_appointment_success(self) -> None:
        appointment = appointments.book_appointment(
            self.store, "patient-1", "doctor-1", date(2024, 1, 12), "9:30", notes="Follow-up"
        )

        self.assertEqual(appointment["patientId"], "patient-1")
        self.assertEqual(appointment["doctorId"], "doctor-1")
        self.assertEqual(appointment["date"], "2024-01-12")
        self.assertEqual(appointment["time"], "09:30")
        self.assertEqual(appointment["status"], "scheduled")
        self.assertEqual(appointment["notes"], "Follow-up")
        self.assertEqual(appointment["createdAt"], FIXED_NOW)
        self.assertEqual(appointment["updatedAt"], FIXED_NOW)

    def test_book_appointment_rejects_unavailable_slot(self) -> None:
        appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")

        with self.assertRaises(ValueError):
            appointments.book_appointment(self.store, "patient-2", "doctor-1", "2024-01-12", "10:00")

        other_doctor = appointments.book_appointment(
            self.store, "patient-2", "doctor-2", "2024-01-12", "10:00"
        )
        self.assertEqual(other_doctor["doctorId"], "doctor-2")

    def test_cancelled_appointment_frees_the_slot(self) -> None:
        first = appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")
        appointments.cancel_appointment(self.store, first["id"])

        self.assertEqual(self.store.get_document("appointments", first["id"])["status"], "cancelled")
        second = appointments.book_appointment(self.store, "patient-2", "doctor-1", "2024-01-12", "10:00")
        self.assertEqual(second["patientId"], "patient-2")

    def test_book_appointment_validates_input(self) -> None:
        with self.assertRaises(ValueError):
            appointments.book_appointment(self.store, "", "doctor-1", "2024-01-12", "10:00")
        with self.assertRaises(ValueError):
            appointments.book_appointment(self.store, "patient-1", "doctor-1", "12/01/2024", "10:00")
        with self.assertRaises(ValueError):
            appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10am")

    def test_status_changes_require_existing_appointment(self) -> None:
        with self.assertRaises(ValueError):
            appointments.cancel_appointment(self.store, "missing")

        appointment = appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")
        with self.assertRaises(ValueError):
            appointments.set_appointment_status(self.store, appointment["id"], "postponed")

        appointments.complete_appointment(self.store, appointment["id"])
        self.assertEqual(self.store.get_document("appointments", appointment["id"])["status"], "completed")

    def test_reschedule_moves_appointment(self) -> None:
        appointment = appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")
        appointments.book_appointment(self.store, "patient-2", "doctor-1", "2024-01-13", "11:00")

        with self.assertRaises(ValueError):
            appointments.reschedule_appointment(self.store, appointment["id"], "2024-01-13", "11:00")

        # Moving within its own slot is allowed.
        appointments.reschedule_appointment(self.store, appointment["id"], "2024-01-12", "10:00")
        appointments.reschedule_appointment(self.store, appointment["id"], "2024-01-14", "08:15")
        moved = self.store.get_document("appointments", appointment["id"])
        self.assertEqual((moved["date"], moved["time"], moved["status"]), ("2024-01-14", "08:15", "scheduled"))

        appointments.complete_appointment(self.store, appointment["id"])
        with self.assertRaises(ValueError):
            appointments.reschedule_appointment(self.store, appointment["id"], "2024-01-15", "08:15")

    def test_add_visit_notes_files_medical_note(self) -> None:
        appointment = appointments.book_appointment(
            self.store,
            "patient-1",
            "doctor-1",
            "2024-01-12",
            "10:00",
            details={"specialty": "Cardiology"},
        )
        long_notes = "x" * 150

        note_id = appointments.add_visit_notes(
            self.store, appointment["id"], long_notes, doctor_name="Dr. Grey"
        )

        note = self.store.get_document("medicalNotes", note_id)
        self.assertEqual(note["summary"], "x" * 100 + "...")
        self.assertEqual(note["fullNote"], long_notes)
        self.assertEqual(note["title"], "Visit Notes - 2024-01-12")
        self.assertEqual(note["specialty"], "Cardiology")
        self.assertEqual(note["doctorName"], "Dr. Grey")
        self.assertEqual(self.store.get_document("appointments", appointment["id"])["notes"], long_notes)

    def test_short_notes_are_not_truncated(self) -> None:
        appointment = appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")
        note_id = appointments.add_visit_notes(self.store, appointment["id"], "All clear.")

        note = self.store.get_document("medicalNotes", note_id)
        self.assertEqual(note["summary"], "All clear.")
        self.assertEqual(note["specialty"], "General Practice")

        with self.assertRaises(ValueError):
            appointments.add_visit_notes(self.store, appointment["id"], "   ")

    def test_approve_emergency_books_for_today(self) -> None:
        [request_id] = self.store.seed(
            "emergencyRequests",
            [
                {
                    "id": "req-1",
                    "doctorId": "doctor-1",
                    "patientId": "patient-9",
                    "patientName": "Ada",
                    "reason": "Chest pain",
                    "status": "pending",
                }
            ],
        )

        appointment_id = appointments.approve_emergency(
            self.store, request_id, "doctor-1", now=datetime(2024, 1, 10, 14, 5)
        )

        appointment = self.store.get_document("appointments", appointment_id)
        self.assertEqual(appointment["status"], "emergency")
        self.assertEqual((appointment["date"], appointment["time"]), ("2024-01-10", "14:05"))
        self.assertEqual(appointment["patientId"], "patient-9")
        self.assertEqual(self.store.get_document("emergencyRequests", "req-1")["status"], "approved")

        with self.assertRaises(ValueError):
            appointments.approve_emergency(self.store, request_id, "doctor-1")

    def test_reject_emergency(self) -> None:
        self.store.seed("emergencyRequests", [{"id": "req-2", "doctorId": "doctor-1", "status": "pending"}])

        appointments.reject_emergency(self.store, "req-2")

        self.assertEqual(self.store.get_document("emergencyRequests", "req-2")["status"], "rejected")

    def test_block_time_slots_skips_booked_times(self) -> None:
        appointments.book_appointment(self.store, "patient-1", "doctor-1", "2024-01-12", "10:00")

        outcome = appointments.block_time_slots(
            self.store, "doctor-1", "2024-01-12", ["09:00", "10:00", "11:00"], reason="Surgery"
        )

        self.assertEqual(outcome, {"blocked": ["09:00", "11:00"], "conflicts": ["10:00"]})
        self.assertFalse(appointments.is_slot_available(self.store, "doctor-1", "2024-01-12", "09:00"))
        with self.assertRaises(ValueError):
            appointments.book_appointment(self.store, "patient-2", "doctor-1", "2024-01-12", "11:00")

    def test_get_schedule_orders_by_date_then_time(self) -> None:
        self.store.seed(
            "appointments",
            [
                {"id": "a", "doctorId": "doctor-1", "patientId": "p1", "date": "2024-01-13", "time": "09:00"},
                {"id": "b", "doctorId": "doctor-1", "patientId": "p2", "date": "2024-01-12", "time": "15:00"},
                {"id": "c", "doctorId": "doctor-1", "patientId": "p1", "date": "2024-01-12", "time": "08:30"},
                {"id": "d", "doctorId": "doctor-2", "patientId": "p1", "date": "2024-01-12", "time": "07:00"},
            ],
        )

        schedule = appointments.get_schedule(self.store, "doctor-1", "doctor")
        self.assertEqual([item["id"] for item in schedule], ["c", "b", "a"])

        one_day = appointments.get_schedule(self.store, "p1", "patient", date(2024, 1, 12))
        self.assertEqual([item["id"] for item in one_day], ["d", "c"])

        with self.assertRaises(ValueError):
            appointments.get_schedule(self.store, "admin-1", "admin")


if __name__ == "__main__":
    unittest.main()
