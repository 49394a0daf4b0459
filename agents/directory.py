"""Patient medical history and the doctor directory.

Both views fetch with a single equality filter and narrow the result in
memory, so neither needs a composite index.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from connector import DocumentStore, FieldFilter

from .appointments import validate_identifier
from .queries import fetch_without_index, where_equals

logger = logging.getLogger(__name__)

ALL_SPECIALTIES = frozenset({"", "all", "All Specialties"})

NOTE_SEARCH_FIELDS = ("title", "summary", "doctorName", "specialty", "fullNote")
DOCTOR_SEARCH_FIELDS = ("name", "specialty", "hospitalAffiliation", "bio")

# Directory sort option -> profile field.
DOCTOR_SORT_FIELDS = {
    "rating": "rating",
    "availability": "availableSlots",
    "experience": "experience",
}


def _specialty_filters(specialty: Optional[str]) -> List[FieldFilter]:
    if specialty is None or specialty.strip() in ALL_SPECIALTIES:
        return []
    return [FieldFilter("specialty", "==", specialty)]


def _search(records: Iterable[Mapping[str, Any]], query: str, fields: Iterable[str]) -> List[Dict[str, Any]]:
    needle = (query or "").strip().lower()
    fields = tuple(fields)
    if not needle:
        return [dict(record) for record in records]
    return [
        dict(record)
        for record in records
        if any(needle in str(record.get(field) or "").lower() for field in fields)
    ]


def fetch_medical_history(
    store: DocumentStore,
    patient_id: str,
    *,
    specialty: Optional[str] = None,
    newest_first: bool = True,
) -> List[Dict[str, Any]]:
    """A patient's ``medicalNotes`` ordered by ``date``, optionally for one specialty."""

    patient_id = validate_identifier(patient_id, "patient_id")
    notes = fetch_without_index(
        store,
        "medicalNotes",
        where_equals("patientId", patient_id),
        _specialty_filters(specialty),
        sort_by="date",
        descending=newest_first,
    )
    logger.debug("Loaded %d medical notes for patient %s", len(notes), patient_id)
    return notes


def search_notes(notes: Iterable[Mapping[str, Any]], query: str) -> List[Dict[str, Any]]:
    """Case-insensitive match on title, summary, doctor, specialty or note text."""

    return _search(notes, query, NOTE_SEARCH_FIELDS)


def _numeric(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def find_doctors(
    store: DocumentStore,
    *,
    specialty: Optional[str] = None,
    sort_by: str = "rating",
) -> List[Dict[str, Any]]:
    """Doctor profiles, highest ``sort_by`` first.

    ``sort_by`` is one of ``rating``, ``availability`` or ``experience``;
    missing or non-numeric values rank as zero.
    """

    try:
        field_path = DOCTOR_SORT_FIELDS[sort_by]
    except KeyError:
        raise ValueError(f"Unknown doctor sort option: {sort_by}") from None

    doctors = fetch_without_index(store, "users", where_equals("role", "doctor"), _specialty_filters(specialty))
    doctors.sort(key=lambda doctor: _numeric(doctor.get(field_path)), reverse=True)
    return doctors


def search_doctors(doctors: Iterable[Mapping[str, Any]], query: str) -> List[Dict[str, Any]]:
    return _search(doctors, query, DOCTOR_SEARCH_FIELDS)
