"""Doctor's patient roster.

The roster joins four independent collections client-side: a doctor's
appointments, waitlist entries, pending emergency requests and the referenced
patient profiles. :func:`build_roster` is the pure join; :class:`PatientRosterAgent`
fetches its inputs and :class:`RosterRefresher` re-runs it on an interval
because the sources are not jointly subscribed.
"""
from __future__ import annotations

import logging
import os
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from connector import CarebookClientError, DocumentStore, FieldFilter, Query

from .fallback import first_non_empty
from .notifications import Notifier, run_action
from .queries import fetch_without_index, where_equals

logger = logging.getLogger(__name__)

STATUS_EMERGENCY = "emergency"
STATUS_WAITING = "waiting"
STATUS_NEW = "new"
STATUS_ACTIVE = "active"

UPCOMING_STATUSES = frozenset({"scheduled", "upcoming", "emergency"})
PLACEHOLDER_NAME = "Unknown Patient"
DEFAULT_REFRESH_SECONDS = float(os.getenv("CAREBOOK_ROSTER_REFRESH_SECONDS", "60"))

TAB_ALL = "all"
TAB_UPCOMING = "upcoming"
TAB_WAITLIST = "waitlist"
TAB_EMERGENCY = "emergency"
TAB_RECENT = "recent"
ROSTER_TABS = (TAB_ALL, TAB_UPCOMING, TAB_WAITLIST, TAB_EMERGENCY, TAB_RECENT)
RECENT_VISIT_DAYS = 30

Record = Mapping[str, Any]


@dataclass(frozen=True)
class RosterEntry:
    """One patient as seen from a doctor's roster."""

    patient_id: str
    name: str
    email: str
    phone: str
    medical_conditions: Tuple[str, ...] = ()
    last_visit: Optional[str] = None
    upcoming_appointment: Optional[str] = None
    upcoming_appointment_id: Optional[str] = None
    waitlist_count: int = 0
    emergency_count: int = 0
    notes_count: Optional[int] = None
    status: str = STATUS_ACTIVE
    is_placeholder: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["medical_conditions"] = list(self.medical_conditions)
        return payload


def collect_patient_ids(*sources: Iterable[Record]) -> List[str]:
    """Distinct ``patientId`` values across ``sources``, in first-seen order."""

    seen: Dict[str, None] = {}
    for source in sources:
        for record in source:
            patient_id = record.get("patientId")
            if patient_id:
                seen.setdefault(str(patient_id), None)
    return list(seen)


def derive_status(*, emergency_count: int, waitlist_count: int, last_visit: Optional[str]) -> str:
    """Priority: emergency, then waiting, then new (never visited), else active."""

    if emergency_count > 0:
        return STATUS_EMERGENCY
    if waitlist_count > 0:
        return STATUS_WAITING
    if not last_visit:
        return STATUS_NEW
    return STATUS_ACTIVE


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            logger.debug("Ignoring unparseable appointment date %r", value)
    return None


def _dated(appointments: Iterable[Record], statuses: Iterable[str]) -> List[Tuple[date, Record]]:
    wanted = set(statuses)
    dated: List[Tuple[date, Record]] = []
    for appointment in appointments:
        if appointment.get("status") not in wanted:
            continue
        parsed = _parse_date(appointment.get("date"))
        if parsed is not None:
            dated.append((parsed, appointment))
    return dated


def _is_pending(request: Record) -> bool:
    return request.get("status") == "pending"


def _profile_fields(patient_id: str, profile: Optional[Record]) -> Dict[str, Any]:
    if profile is None:
        return {
            "name": PLACEHOLDER_NAME,
            "email": "No email available",
            "phone": "No phone available",
            "medical_conditions": (),
            "is_placeholder": True,
        }
    conditions = profile.get("medicalConditions") or ()
    return {
        "name": first_non_empty(
            profile.get("fullName"), profile.get("name"), profile.get("displayName"), default="Unknown"
        ),
        "email": first_non_empty(profile.get("email"), default=""),
        "phone": first_non_empty(profile.get("phoneNumber"), profile.get("phone"), default=""),
        "medical_conditions": tuple(str(item) for item in conditions),
        "is_placeholder": False,
    }


def build_roster(
    appointments: Sequence[Record],
    waitlist: Sequence[Record],
    emergencies: Sequence[Record],
    profiles: Mapping[str, Optional[Record]],
    *,
    today: date,
    notes_counts: Optional[Mapping[str, Optional[int]]] = None,
) -> List[RosterEntry]:
    """Join the roster sources into one entry per distinct patient.

    Patients missing from ``profiles`` still get an entry, named
    ``"Unknown Patient"``. Only emergency requests whose status is exactly
    ``"pending"`` are counted, matching the filter :meth:`PatientRosterAgent.fetch`
    applies server-side.
    """

    pending = [request for request in emergencies if _is_pending(request)]
    entries: List[RosterEntry] = []
    for patient_id in collect_patient_ids(appointments, waitlist, pending):
        own = [appt for appt in appointments if appt.get("patientId") == patient_id]

        completed = _dated(own, ("completed",))
        last_visit = max(completed, key=lambda item: item[0])[1].get("date") if completed else None

        upcoming = [item for item in _dated(own, UPCOMING_STATUSES) if item[0] >= today]
        soonest = min(upcoming, key=lambda item: item[0])[1] if upcoming else None

        waitlist_count = sum(1 for entry in waitlist if entry.get("patientId") == patient_id)
        emergency_count = sum(1 for request in pending if request.get("patientId") == patient_id)

        entries.append(
            RosterEntry(
                patient_id=patient_id,
                last_visit=last_visit,
                upcoming_appointment=soonest.get("date") if soonest else None,
                upcoming_appointment_id=soonest.get("id") if soonest else None,
                waitlist_count=waitlist_count,
                emergency_count=emergency_count,
                notes_count=(notes_counts or {}).get(patient_id),
                status=derive_status(
                    emergency_count=emergency_count,
                    waitlist_count=waitlist_count,
                    last_visit=last_visit,
                ),
                **_profile_fields(patient_id, profiles.get(patient_id)),
            )
        )
    return entries


def _matches_search(entry: RosterEntry, needle: str) -> bool:
    if not needle:
        return True
    haystacks = (entry.name, entry.email, *entry.medical_conditions)
    return any(needle in str(value).lower() for value in haystacks)


def filter_roster(
    entries: Iterable[RosterEntry],
    query: str = "",
    tab: str = TAB_ALL,
    *,
    today: date,
) -> List[RosterEntry]:
    """Narrow a roster by a case-insensitive search and one of :data:`ROSTER_TABS`.

    The search matches name, email or any medical condition. An unknown tab
    applies the search alone.
    """

    needle = (query or "").strip().lower()
    recent_cutoff = today - timedelta(days=RECENT_VISIT_DAYS)
    filtered: List[RosterEntry] = []
    for entry in entries:
        if not _matches_search(entry, needle):
            continue
        if tab == TAB_UPCOMING and entry.upcoming_appointment is None:
            continue
        if tab == TAB_WAITLIST and entry.waitlist_count <= 0:
            continue
        if tab == TAB_EMERGENCY and entry.emergency_count <= 0:
            continue
        if tab == TAB_RECENT:
            visited = _parse_date(entry.last_visit)
            if visited is None or visited < recent_cutoff:
                continue
        filtered.append(entry)
    return filtered


class PatientRosterAgent:
    """Fetches roster inputs for a doctor and joins them."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        today: Callable[[], date] = date.today,
        count_notes: bool = True,
    ) -> None:
        self._store = store
        self._today = today
        self._count_notes = count_notes

    def fetch(self, doctor_id: str) -> List[RosterEntry]:
        if not doctor_id:
            raise ValueError("doctor_id must be provided")

        # Issued independently and joined; no cross-collection consistency.
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="roster") as pool:
            appointments_future = pool.submit(
                self._store.run_query, Query("appointments").where("doctorId", "==", doctor_id)
            )
            waitlist_future = pool.submit(
                fetch_without_index, self._store, "waitlists", where_equals("doctorId", doctor_id)
            )
            emergencies_future = pool.submit(
                fetch_without_index,
                self._store,
                "emergencyRequests",
                where_equals("doctorId", doctor_id),
                [FieldFilter("status", "==", "pending")],
            )
            appointments = appointments_future.result()
            waitlist = waitlist_future.result()
            emergencies = emergencies_future.result()

        patient_ids = collect_patient_ids(appointments, waitlist, emergencies)
        profiles = {patient_id: self.resolve_profile(patient_id) for patient_id in patient_ids}
        notes_counts = (
            {patient_id: self.count_notes(doctor_id, patient_id) for patient_id in patient_ids}
            if self._count_notes
            else None
        )
        roster = build_roster(
            appointments,
            waitlist,
            emergencies,
            profiles,
            today=self._today(),
            notes_counts=notes_counts,
        )
        logger.info("Built roster of %d patients for doctor %s", len(roster), doctor_id)
        return roster

    def resolve_profile(self, patient_id: str) -> Optional[Dict[str, Any]]:
        """Look the patient up by document id, then by ``userId`` field; ``None`` if neither exists."""

        try:
            user = self._store.get_document("users", patient_id)
            if user is not None and user.get("role") in (None, "", "patient"):
                return user
            matches = fetch_without_index(self._store, "patients", where_equals("userId", patient_id))
            if matches:
                return matches[0]
        except CarebookClientError as exc:
            logger.error("Error fetching patient %s: %s", patient_id, exc)
        return None

    def count_notes(self, doctor_id: str, patient_id: str) -> Optional[int]:
        try:
            notes = fetch_without_index(
                self._store,
                "medicalNotes",
                where_equals("patientId", patient_id),
                [FieldFilter("doctorId", "==", doctor_id)],
            )
        except CarebookClientError as exc:
            logger.error("Error counting notes for patient %s: %s", patient_id, exc)
            return None
        return len(notes)


class RosterRefresher:
    """Re-runs a roster fetch on start and then every ``interval_seconds``.

    A failed refresh is reported through the notifier and keeps the previous
    roster as :attr:`latest`.
    """

    def __init__(
        self,
        agent: PatientRosterAgent,
        doctor_id: str,
        callback: Callable[[List[RosterEntry]], None],
        *,
        notifier: Notifier,
        interval_seconds: float = DEFAULT_REFRESH_SECONDS,
    ) -> None:
        if not doctor_id:
            raise ValueError("doctor_id must be provided")
        self._agent = agent
        self._doctor_id = doctor_id
        self._callback = callback
        self._notifier = notifier
        self._interval_seconds = max(1.0, interval_seconds)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.latest: Optional[List[RosterEntry]] = None

    def refresh(self) -> bool:
        result = run_action(
            lambda: self._agent.fetch(self._doctor_id),
            self._notifier,
            failure_description="Failed to retrieve patient information.",
        )
        if not result.success:
            return False
        self.latest = result.value
        try:
            self._callback(result.value or [])
        except Exception:  # noqa: BLE001
            logger.exception("Roster callback for doctor %s failed", self._doctor_id)
        return True

    def start(self) -> None:
        """Refresh in a background thread until :meth:`stop`."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"roster-{self._doctor_id}", daemon=True)
        self._thread.start()

    def run_forever(self) -> None:
        """Refresh in the calling thread until interrupted."""

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)
        self._stop_event.clear()
        self._loop()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval_seconds)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.refresh()
            except Exception:  # noqa: BLE001
                logger.exception("Roster refresh for doctor %s failed", self._doctor_id)
            self._stop_event.wait(self._interval_seconds)

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[no-untyped-def]
        self._stop_event.set()
