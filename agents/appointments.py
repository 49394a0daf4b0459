"""Appointment agent providing scheduling operations."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from connector import DocumentStore, FieldFilter
from connector.query import sort_records

from .queries import fetch_without_index, where_equals
from .subscriptions import owner_field

logger = logging.getLogger(__name__)

APPOINTMENT_STATUSES = ("scheduled", "upcoming", "completed", "cancelled", "emergency")
NOTE_SUMMARY_LENGTH = 100


def validate_identifier(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def validate_day(value: Any, label: str = "date") -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()).isoformat()
        except ValueError as exc:
            raise ValueError(f"{label} must be an ISO date (YYYY-MM-DD)") from exc
    raise TypeError(f"{label} must be a date or an ISO date string")


def _validate_time(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("time must be a string")
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except ValueError as exc:
        raise ValueError("time must be formatted as HH:MM") from exc
    return parsed.strftime("%H:%M")


def require_document(store: DocumentStore, collection: str, document_id: str, label: str) -> Dict[str, Any]:
    record = store.get_document(collection, document_id)
    if record is None:
        raise ValueError(f"{label} '{document_id}' does not exist")
    return record


def is_slot_available(
    store: DocumentStore,
    doctor_id: str,
    day: str,
    time: str,
    *,
    exclude_appointment_id: Optional[str] = None,
) -> bool:
    """A slot is free when it is not blocked and holds no live appointment."""

    taken = fetch_without_index(
        store,
        "appointments",
        where_equals("doctorId", doctor_id),
        [
            FieldFilter("date", "==", day),
            FieldFilter("time", "==", time),
            FieldFilter("status", "!=", "cancelled"),
        ],
    )
    if any(appointment["id"] != exclude_appointment_id for appointment in taken):
        return False

    blocked = fetch_without_index(
        store,
        "scheduleSlots",
        where_equals("doctorId", doctor_id),
        [
            FieldFilter("day", "==", day),
            FieldFilter("time", "==", time),
            FieldFilter("isBlocked", "==", True),
        ],
    )
    return not blocked


def book_appointment(
    store: DocumentStore,
    patient_id: str,
    doctor_id: str,
    day: Any,
    time: str,
    *,
    notes: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Book an appointment if the slot is available."""

    patient_id = validate_identifier(patient_id, "patient_id")
    doctor_id = validate_identifier(doctor_id, "doctor_id")
    day = validate_day(day)
    time = _validate_time(time)

    if not is_slot_available(store, doctor_id, day, time):
        raise ValueError("Requested time slot is unavailable")

    appointment: Dict[str, Any] = dict(details or {})
    appointment.update(
        {"patientId": patient_id, "doctorId": doctor_id, "date": day, "time": time, "status": "scheduled"}
    )
    if notes:
        appointment["notes"] = notes
    appointment_id = store.create_document("appointments", appointment)
    logger.info("Booked appointment %s with doctor %s on %s %s", appointment_id, doctor_id, day, time)
    return require_document(store, "appointments", appointment_id, "Appointment")


def set_appointment_status(store: DocumentStore, appointment_id: str, status: str) -> None:
    appointment_id = validate_identifier(appointment_id, "appointment_id")
    if status not in APPOINTMENT_STATUSES:
        raise ValueError(f"Unknown appointment status: {status!r}")
    require_document(store, "appointments", appointment_id, "Appointment")
    store.update_document("appointments", appointment_id, {"status": status})


def cancel_appointment(store: DocumentStore, appointment_id: str) -> None:
    """Cancel an existing appointment."""

    set_appointment_status(store, appointment_id, "cancelled")


def complete_appointment(store: DocumentStore, appointment_id: str) -> None:
    set_appointment_status(store, appointment_id, "completed")


def reschedule_appointment(store: DocumentStore, appointment_id: str, day: Any, time: str) -> None:
    """Move an appointment to a new free slot; it becomes ``scheduled`` again."""

    appointment_id = validate_identifier(appointment_id, "appointment_id")
    day = validate_day(day)
    time = _validate_time(time)
    appointment = require_document(store, "appointments", appointment_id, "Appointment")
    if appointment.get("status") in ("completed", "cancelled"):
        raise ValueError(f"A {appointment['status']} appointment cannot be rescheduled")
    if not is_slot_available(
        store, appointment["doctorId"], day, time, exclude_appointment_id=appointment_id
    ):
        raise ValueError("Requested time slot is unavailable")
    store.update_document("appointments", appointment_id, {"date": day, "time": time, "status": "scheduled"})


def add_visit_notes(
    store: DocumentStore,
    appointment_id: str,
    notes: str,
    *,
    doctor_name: Optional[str] = None,
    specialty: Optional[str] = None,
) -> str:
    """Save notes on the appointment and file them as a medical note; returns the note id."""

    appointment_id = validate_identifier(appointment_id, "appointment_id")
    if not isinstance(notes, str) or not notes.strip():
        raise ValueError("notes must be a non-empty string")
    appointment = require_document(store, "appointments", appointment_id, "Appointment")
    store.update_document("appointments", appointment_id, {"notes": notes})

    summary = notes if len(notes) <= NOTE_SUMMARY_LENGTH else f"{notes[:NOTE_SUMMARY_LENGTH]}..."
    note = {
        "patientId": appointment.get("patientId"),
        "doctorId": appointment.get("doctorId"),
        "doctorName": doctor_name or appointment.get("doctorName"),
        "specialty": specialty or appointment.get("specialty") or "General Practice",
        "appointmentId": appointment_id,
        "title": f"Visit Notes - {appointment.get('date')}",
        "date": appointment.get("date"),
        "summary": summary,
        "fullNote": notes,
    }
    return store.create_document("medicalNotes", note)


def approve_emergency(
    store: DocumentStore,
    request_id: str,
    doctor_id: str,
    *,
    doctor_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Approve a pending emergency request and book it for today; returns the appointment id."""

    request_id = validate_identifier(request_id, "request_id")
    doctor_id = validate_identifier(doctor_id, "doctor_id")
    request = require_document(store, "emergencyRequests", request_id, "Emergency request")
    if request.get("status") != "pending":
        raise ValueError(f"Emergency request '{request_id}' is already {request.get('status')}")

    moment = now or datetime.now()
    store.update_document("emergencyRequests", request_id, {"status": "approved"})
    appointment = {
        "doctorId": doctor_id,
        "patientId": request.get("patientId"),
        "patientName": request.get("patientName"),
        "doctorName": doctor_name,
        "date": moment.date().isoformat(),
        "time": moment.strftime("%H:%M"),
        "specialty": request.get("reason"),
        "status": "emergency",
    }
    appointment_id = store.create_document("appointments", appointment)
    logger.info("Approved emergency request %s as appointment %s", request_id, appointment_id)
    return appointment_id


def reject_emergency(store: DocumentStore, request_id: str) -> None:
    request_id = validate_identifier(request_id, "request_id")
    require_document(store, "emergencyRequests", request_id, "Emergency request")
    store.update_document("emergencyRequests", request_id, {"status": "rejected"})


def block_time_slots(
    store: DocumentStore,
    doctor_id: str,
    day: Any,
    times: Iterable[str],
    *,
    reason: str = "",
) -> Dict[str, List[str]]:
    """Block each time on ``day``; times already holding an appointment are skipped."""

    doctor_id = validate_identifier(doctor_id, "doctor_id")
    day = validate_day(day)
    booked = {
        appointment.get("time")
        for appointment in fetch_without_index(
            store,
            "appointments",
            where_equals("doctorId", doctor_id),
            [FieldFilter("date", "==", day), FieldFilter("status", "!=", "cancelled")],
        )
    }

    outcome: Dict[str, List[str]] = {"blocked": [], "conflicts": []}
    for raw_time in times:
        time = _validate_time(raw_time)
        if time in booked:
            logger.warning("Not blocking %s %s for doctor %s: appointment exists", day, time, doctor_id)
            outcome["conflicts"].append(time)
            continue
        store.create_document(
            "scheduleSlots",
            {
                "doctorId": doctor_id,
                "day": day,
                "time": time,
                "isBlocked": True,
                "isAvailable": False,
                "reason": reason,
            },
        )
        outcome["blocked"].append(time)
    return outcome


def get_schedule(
    store: DocumentStore,
    user_id: str,
    role: str,
    day: Optional[Any] = None,
) -> List[Dict[str, Any]]:
    """Retrieve a user's appointments, optionally for a single day, ordered by time."""

    user_id = validate_identifier(user_id, "user_id")
    additional = [FieldFilter("date", "==", validate_day(day))] if day is not None else []
    appointments = fetch_without_index(
        store,
        "appointments",
        where_equals(owner_field(role), user_id),
        additional,
        sort_by="time",
    )
    if day is None:
        appointments = sort_records(appointments, "date")
    return appointments
