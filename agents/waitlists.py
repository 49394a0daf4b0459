"""Waitlist and emergency-request operations initiated by patients."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from connector import DocumentStore

from .appointments import require_document, validate_day, validate_identifier
from .queries import fetch_without_index, where_equals

logger = logging.getLogger(__name__)

URGENCY_LEVELS = ("normal", "urgent", "emergency")


def join_waitlist(
    store: DocumentStore,
    patient_id: str,
    doctor_id: str,
    *,
    urgency: str = "normal",
    specialty: Optional[str] = None,
    request_date: Optional[Any] = None,
) -> str:
    """Queue the patient behind everyone already waiting for this doctor."""

    patient_id = validate_identifier(patient_id, "patient_id")
    doctor_id = validate_identifier(doctor_id, "doctor_id")
    if urgency not in URGENCY_LEVELS:
        raise ValueError(f"Unknown urgency: {urgency!r}")

    queue = fetch_without_index(store, "waitlists", where_equals("doctorId", doctor_id))
    entry: Dict[str, Any] = {
        "patientId": patient_id,
        "doctorId": doctor_id,
        "urgency": urgency,
        "requestDate": validate_day(request_date or date.today(), "request_date"),
        "position": len(queue) + 1,
    }
    if specialty:
        entry["specialty"] = specialty
    entry_id = store.create_document("waitlists", entry)
    logger.info("Patient %s joined waitlist for doctor %s at position %d", patient_id, doctor_id, entry["position"])
    return entry_id


def cancel_waitlist(store: DocumentStore, entry_id: str) -> None:
    store.delete_document("waitlists", validate_identifier(entry_id, "entry_id"))


def upgrade_to_emergency(
    store: DocumentStore,
    entry_id: str,
    *,
    patient_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Escalate a waitlist entry and file a pending emergency request; returns the request id."""

    entry_id = validate_identifier(entry_id, "entry_id")
    entry = require_document(store, "waitlists", entry_id, "Waitlist entry")
    store.update_document("waitlists", entry_id, {"urgency": "emergency"})
    moment = now or datetime.now()
    return store.create_document(
        "emergencyRequests",
        {
            "doctorId": entry.get("doctorId"),
            "patientId": entry.get("patientId"),
            "patientName": patient_name or "Patient",
            "reason": entry.get("specialty"),
            "requestTime": moment.isoformat(timespec="minutes"),
            "status": "pending",
        },
    )
