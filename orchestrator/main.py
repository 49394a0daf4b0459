"""Command-line entry point for Carebook workflows."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from agents.appointments import get_schedule
from agents.notifications import LoggingNotifier
from agents.roster import (
    DEFAULT_REFRESH_SECONDS,
    ROSTER_TABS,
    TAB_ALL,
    PatientRosterAgent,
    RosterEntry,
    RosterRefresher,
    filter_roster,
)
from connector import DocumentStore, FirebaseAuthClient, FirestoreClient, InMemoryDocumentStore

LOG_PATH = Path(os.getenv("CAREBOOK_TASK_LOG", Path(__file__).resolve().parent / "task_log.json"))
LOG_MAX_ENTRIES = int(os.getenv("CAREBOOK_TASK_LOG_MAX_ENTRIES", "500"))

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


class TaskLogger:
    """Keeps the most recent ``max_entries`` command runs in a JSON file.

    Each entry records the command, its arguments, the outcome and the
    summary the command produced (roster counts, appointment totals).
    """

    def __init__(self, log_path: Path, *, max_entries: int = LOG_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._log_path = log_path
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        task_name: str,
        status: str,
        *,
        start_time: Optional[datetime] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
        arguments: Optional[Dict[str, object]] = None,
    ) -> None:
        finished = _utc_now()
        entry: Dict[str, object] = {
            "task": task_name,
            "status": status,
            "started_at": _format_timestamp(start_time or finished),
            "completed_at": _format_timestamp(finished),
        }
        if arguments:
            entry["arguments"] = {key: value for key, value in arguments.items() if value is not None}
        if message:
            entry["message"] = message
        if details is not None:
            entry["details"] = details

        with self._lock:
            history = self.entries()
            history.append(entry)
            history = history[-self._max_entries :]
            self._log_path.write_text(json.dumps(history, indent=2, default=str) + "\n", encoding="utf-8")

    def entries(self) -> List[Dict[str, object]]:
        """Logged runs, oldest first."""

        if not self._log_path.exists():
            return []
        raw_content = self._log_path.read_text(encoding="utf-8").strip()
        if not raw_content:
            return []
        try:
            history = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Run log {self._log_path} is not valid JSON: {exc.msg}") from exc
        if not isinstance(history, list):
            raise ValueError(f"Run log {self._log_path} must hold a JSON list of runs.")
        return history


def execute_with_logging(
    task_name: str,
    action: Callable[[], Dict[str, Any]],
    task_logger: TaskLogger,
    *,
    arguments: Optional[Dict[str, object]] = None,
) -> Dict[str, Any]:
    """Run ``action`` and log its summary; the ``records`` payload is not logged."""

    start_time = _utc_now()
    try:
        result = action()
    except Exception as exc:
        logger.error("%s failed: %s", task_name, exc)
        task_logger.log(task_name, "failed", start_time=start_time, message=str(exc), arguments=arguments)
        raise

    summary = {key: value for key, value in result.items() if key != "records"}
    task_logger.log(task_name, "success", start_time=start_time, details=summary, arguments=arguments)
    return result


def load_fixture(path: Path) -> InMemoryDocumentStore:
    """Build an in-memory store from ``{"collection": [record, ...], ...}``."""

    raw_content = path.read_text(encoding="utf-8").strip()
    try:
        payload = json.loads(raw_content) if raw_content else {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid fixture JSON data: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Fixture file must contain an object mapping collections to records.")

    store = InMemoryDocumentStore()
    for collection, records in payload.items():
        if not isinstance(records, list) or not all(isinstance(record, dict) for record in records):
            raise ValueError(f"Fixture collection {collection!r} must be a list of objects.")
        store.seed(str(collection), records)
    return store


def build_store(args: argparse.Namespace) -> DocumentStore:
    if args.fixture:
        return load_fixture(Path(args.fixture))

    auth = FirebaseAuthClient()
    email = args.email or os.getenv("CAREBOOK_EMAIL")
    password = args.password or os.getenv("CAREBOOK_PASSWORD")
    if email and password:
        auth.sign_in(email, password)
    return FirestoreClient(token_provider=auth.get_id_token)


def _parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}; expected YYYY-MM-DD") from exc


def _roster_payload(entries: List[RosterEntry]) -> Dict[str, Any]:
    records = [entry.to_dict() for entry in entries]
    counts: Dict[str, int] = {}
    for entry in entries:
        counts[entry.status] = counts.get(entry.status, 0) + 1
    return {"patient_count": len(records), "status_counts": counts, "records": records}


def run_roster(
    store: DocumentStore,
    doctor_id: str,
    today: Optional[date] = None,
    *,
    search: str = "",
    tab: str = TAB_ALL,
) -> Dict[str, Any]:
    reference = today or date.today()
    agent = PatientRosterAgent(store, today=lambda: reference)
    return _roster_payload(filter_roster(agent.fetch(doctor_id), search, tab, today=reference))


def run_schedule(store: DocumentStore, user_id: str, role: str, day: Optional[date] = None) -> Dict[str, Any]:
    records = get_schedule(store, user_id, role, day)
    return {"appointment_count": len(records), "records": records}


def watch_roster(
    store: DocumentStore, doctor_id: str, interval: float, task_logger: TaskLogger
) -> None:
    def publish(entries: List[RosterEntry]) -> None:
        print(json.dumps(_roster_payload(entries), indent=2, default=str), flush=True)

    refresher = RosterRefresher(
        PatientRosterAgent(store),
        doctor_id,
        publish,
        notifier=LoggingNotifier(),
        interval_seconds=interval,
    )
    task_logger.log(
        "watch_roster",
        "started",
        message=f"Refreshing roster for doctor {doctor_id}.",
        arguments={"doctor_id": doctor_id, "interval": interval},
    )
    try:
        refresher.run_forever()
    finally:
        task_logger.log("watch_roster", "stopped", message="Roster refresh stopped.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Carebook scheduling workflows")
    parser.add_argument("--fixture", help="JSON file of collections to load into an in-memory store")
    parser.add_argument("--email", help="Account email for the remote backend")
    parser.add_argument("--password", help="Account password for the remote backend")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    roster = subparsers.add_parser("roster", help="Print a doctor's patient roster")
    roster.add_argument("--doctor-id", required=True)
    roster.add_argument("--today", type=_parse_day, help="Reference date (YYYY-MM-DD)")
    roster.add_argument("--search", default="", help="Match name, email or medical condition")
    roster.add_argument("--tab", choices=ROSTER_TABS, default=TAB_ALL)

    watch = subparsers.add_parser("watch-roster", help="Print the roster on a refresh interval")
    watch.add_argument("--doctor-id", required=True)
    watch.add_argument("--interval", type=float, default=DEFAULT_REFRESH_SECONDS)

    schedule = subparsers.add_parser("schedule", help="Print a user's appointments")
    schedule.add_argument("--user-id", required=True)
    schedule.add_argument("--role", choices=("patient", "doctor"), required=True)
    schedule.add_argument("--date", type=_parse_day, help="Only this date (YYYY-MM-DD)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    task_logger = TaskLogger(LOG_PATH)
    store = build_store(args)

    if args.command == "watch-roster":
        watch_roster(store, args.doctor_id, args.interval, task_logger)
        return 0

    if args.command == "roster":
        arguments = {"doctor_id": args.doctor_id, "today": args.today}
        if args.search or args.tab != TAB_ALL:
            arguments.update(search=args.search, tab=args.tab)
        result = execute_with_logging(
            "roster",
            lambda: run_roster(store, args.doctor_id, args.today, search=args.search, tab=args.tab),
            task_logger,
            arguments=arguments,
        )
    else:
        result = execute_with_logging(
            "schedule",
            lambda: run_schedule(store, args.user_id, args.role, args.date),
            task_logger,
            arguments={"user_id": args.user_id, "role": args.role, "date": args.date},
        )
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
