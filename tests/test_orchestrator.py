import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

from orchestrator import main as cli

FIXTURE = {
    "appointments": [
        {"id": "a1", "doctorId": "doc-1", "patientId": "p1", "date": "2024-01-05", "time": "10:00", "status": "completed"},
        {"id": "a2", "doctorId": "doc-1", "patientId": "p1", "date": "2024-06-01", "time": "09:00", "status": "scheduled"},
        {"id": "a3", "doctorId": "doc-1", "patientId": "p2", "date": "2024-06-01", "time": "08:00", "status": "scheduled"},
    ],
    "emergencyRequests": [{"id": "e1", "doctorId": "doc-1", "patientId": "p2", "status": "pending"}],
    "users": [{"id": "p1", "fullName": "Patient One", "role": "patient"}],
}


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self._tmp.name)
        self.fixture_path = self.tmp_path / "fixture.json"
        self.fixture_path.write_text(json.dumps(FIXTURE), encoding="utf-8")
        self.log_path = self.tmp_path / "logs" / "task_log.json"
        self.log_patcher = patch.object(cli, "LOG_PATH", self.log_path)
        self.log_patcher.start()

    def tearDown(self) -> None:
        self.log_patcher.stop()
        self._tmp.cleanup()

    def run_cli(self, *argv: str) -> dict:
        output = io.StringIO()
        with redirect_stdout(output):
            exit_code = cli.main(["--fixture", str(self.fixture_path), *argv])
        self.assertEqual(exit_code, 0)
        return json.loads(output.getvalue())

    def test_roster_command(self) -> None:
        result = self.run_cli("roster", "--doctor-id", "doc-1", "--today", "2024-01-10")

        self.assertEqual(result["patient_count"], 2)
        self.assertEqual(result["status_counts"], {"active": 1, "emergency": 1})
        by_id = {record["patient_id"]: record for record in result["records"]}
        self.assertEqual(by_id["p1"]["last_visit"], "2024-01-05")
        self.assertEqual(by_id["p1"]["upcoming_appointment"], "2024-06-01")
        self.assertEqual(by_id["p2"]["name"], "Unknown Patient")

        [entry] = json.loads(self.log_path.read_text(encoding="utf-8"))
        self.assertEqual(entry["task"], "roster")
        self.assertEqual(entry["status"], "success")
        self.assertEqual(entry["details"], {"patient_count": 2, "status_counts": {"active": 1, "emergency": 1}})
        self.assertEqual(entry["arguments"], {"doctor_id": "doc-1", "today": "2024-01-10"})

    def test_roster_command_with_tab_and_search(self) -> None:
        result = self.run_cli("roster", "--doctor-id", "doc-1", "--today", "2024-01-10", "--tab", "emergency")
        self.assertEqual([record["patient_id"] for record in result["records"]], ["p2"])

        result = self.run_cli("roster", "--doctor-id", "doc-1", "--today", "2024-01-10", "--search", "patient one")
        self.assertEqual([record["patient_id"] for record in result["records"]], ["p1"])

        entry = json.loads(self.log_path.read_text(encoding="utf-8"))[-1]
        self.assertEqual(entry["arguments"]["search"], "patient one")
        self.assertEqual(entry["arguments"]["tab"], "all")

    def test_schedule_command(self) -> None:
        result = self.run_cli("schedule", "--user-id", "doc-1", "--role", "doctor", "--date", "2024-06-01")

        self.assertEqual(result["appointment_count"], 2)
        self.assertEqual([record["id"] for record in result["records"]], ["a3", "a2"])

    def test_invalid_fixture_rejected(self) -> None:
        self.fixture_path.write_text(json.dumps({"appointments": {"id": "a1"}}), encoding="utf-8")

        with self.assertRaises(ValueError):
            cli.load_fixture(self.fixture_path)


class TaskLoggerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.log_path = Path(self._tmp.name) / "task_log.json"
        self.task_logger = cli.TaskLogger(self.log_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_failed_action_is_logged_and_reraised(self) -> None:
        def action():
            raise ValueError("doctor_id must be provided")

        with self.assertRaises(ValueError):
            cli.execute_with_logging("roster", action, self.task_logger)

        [entry] = json.loads(self.log_path.read_text(encoding="utf-8"))
        self.assertEqual(entry["status"], "failed")
        self.assertEqual(entry["message"], "doctor_id must be provided")
        self.assertTrue(entry["started_at"].endswith("Z"))

    def test_entries_accumulate(self) -> None:
        self.task_logger.log("watch_roster", "started")
        self.task_logger.log("watch_roster", "stopped", message="done")

        history = json.loads(self.log_path.read_text(encoding="utf-8"))
        self.assertEqual([entry["status"] for entry in history], ["started", "stopped"])

    def test_history_keeps_most_recent_entries(self) -> None:
        task_logger = cli.TaskLogger(self.log_path, max_entries=2)

        for index in range(3):
            task_logger.log("roster", "success", details={"run": index})

        self.assertEqual([entry["details"]["run"] for entry in task_logger.entries()], [1, 2])

    def test_corrupted_log_raises(self) -> None:
        self.log_path.write_text("{not json", encoding="utf-8")

        with self.assertRaises(ValueError):
            self.task_logger.log("roster", "success")


if __name__ == "__main__":
    unittest.main()
