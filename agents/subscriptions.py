"""Live appointment and waitlist feeds with client-side filtering and ordering."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from connector import DocumentStore, Query
from connector.query import sort_records

logger = logging.getLogger(__name__)

Records = List[Dict[str, Any]]

_ROLE_FIELDS = {"patient": "patientId", "doctor": "doctorId"}


def owner_field(role: str) -> str:
    try:
        return _ROLE_FIELDS[role]
    except KeyError:
        raise ValueError(f"Subscriptions are only available to patients and doctors, not {role!r}") from None


def _log_subscription_error(label: str) -> Callable[[Exception], None]:
    def handle(exc: Exception) -> None:
        logger.error("Error subscribing to %s: %s", label, exc)

    return handle


def subscribe_to_appointments(
    store: DocumentStore,
    user_id: str,
    role: str,
    callback: Callable[[Records], None],
    *,
    date_filter: Optional[str] = None,
    descending: bool = False,
) -> Callable[[], None]:
    """Stream a user's appointments, optionally for one date, ordered by time of day.

    The callback receives the complete list on every snapshot. Call the
    returned function to stop listening.
    """

    if not user_id:
        raise ValueError("user_id must be provided")
    query = Query("appointments").where(owner_field(role), "==", user_id)

    def deliver(records: Records) -> None:
        if date_filter is not None:
            records = [record for record in records if record.get("date") == date_filter]
        callback(sort_records(records, "time", descending=descending))

    return store.subscribe(query, deliver, _log_subscription_error("appointments"))


def _waitlist_key(indexed: Tuple[int, Mapping[str, Any]]) -> Tuple[int, Any, int]:
    index, record = indexed
    position = record.get("position")
    if isinstance(position, (int, float)) and not isinstance(position, bool):
        return (0, position, index)
    created_at = record.get("createdAt")
    if created_at is not None and hasattr(created_at, "timestamp"):
        return (1, created_at.timestamp(), index)
    return (2, 0, index)


def order_waitlist(records: Records) -> Records:
    """Order by queue position, then by creation time; unordered entries last."""

    return [record for _, record in sorted(enumerate(records), key=_waitlist_key)]


def subscribe_to_waitlists(
    store: DocumentStore,
    user_id: str,
    role: str,
    callback: Callable[[Records], None],
) -> Callable[[], None]:
    if not user_id:
        raise ValueError("user_id must be provided")
    query = Query("waitlists").where(owner_field(role), "==", user_id)
    return store.subscribe(
        query,
        lambda records: callback(order_waitlist(records)),
        _log_subscription_error("waitlist"),
    )
