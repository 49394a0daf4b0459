import unittest
from datetime import datetime, timedelta, timezone

from connector import DocumentNotFoundError, InMemoryDocumentStore, Query


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(minutes=1)
        return current


class InMemoryDocumentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = SteppingClock()
        self.store = InMemoryDocumentStore(clock=self.clock)

    def test_create_stamps_server_timestamps(self) -> None:
        created_at = self.clock.now
        document_id = self.store.create_document(
            "waitlists", {"patientId": "p1", "createdAt": "client value", "id": "ignored"}
        )

        record = self.store.get_document("waitlists", document_id)
        self.assertEqual(record["id"], document_id)
        self.assertNotEqual(document_id, "ignored")
        self.assertEqual(record["createdAt"], created_at)
        self.assertEqual(record["updatedAt"], created_at)
        self.assertEqual(len(document_id), 20)

    def test_create_with_explicit_id(self) -> None:
        self.assertEqual(self.store.create_document("users", {"role": "doctor"}, document_id="u1"), "u1")
        self.assertEqual(self.store.get_document("users", "u1")["role"], "doctor")

    def test_update_merges_and_restamps(self) -> None:
        document_id = self.store.create_document("appointments", {"status": "scheduled", "time": "10:00"})
        created = self.store.get_document("appointments", document_id)

        self.store.update_document("appointments", document_id, {"status": "completed"})

        updated = self.store.get_document("appointments", document_id)
        self.assertEqual(updated["status"], "completed")
        self.assertEqual(updated["time"], "10:00")
        self.assertEqual(updated["createdAt"], created["createdAt"])
        self.assertGreater(updated["updatedAt"], created["updatedAt"])

    def test_update_missing_document_raises(self) -> None:
        with self.assertRaises(DocumentNotFoundError):
            self.store.update_document("appointments", "missing", {"status": "cancelled"})

    def test_get_missing_document_returns_none(self) -> None:
        self.assertIsNone(self.store.get_document("users", "nobody"))

    def test_seed_keeps_records_verbatim(self) -> None:
        self.store.seed("users", [{"id": "u1", "name": "Ada"}])

        self.assertEqual(self.store.get_document("users", "u1"), {"id": "u1", "name": "Ada"})

    def test_returned_records_are_copies(self) -> None:
        self.store.seed("users", [{"id": "u1", "conditions": ["asthma"]}])

        record = self.store.get_document("users", "u1")
        record["conditions"].append("mutated")

        self.assertEqual(self.store.get_document("users", "u1")["conditions"], ["asthma"])

    def test_delete_document(self) -> None:
        self.store.seed("waitlists", [{"id": "w1"}])
        self.store.delete_document("waitlists", "w1")
        self.assertIsNone(self.store.get_document("waitlists", "w1"))

    def test_run_query_filters_collection(self) -> None:
        self.store.seed(
            "appointments",
            [{"id": "a", "doctorId": "d1"}, {"id": "b", "doctorId": "d2"}, {"id": "c", "doctorId": "d1"}],
        )

        results = self.store.run_query(Query("appointments").where("doctorId", "==", "d1"))

        self.assertEqual([record["id"] for record in results], ["a", "c"])

    def test_subscribe_delivers_initial_and_changed_snapshots(self) -> None:
        snapshots = []
        query = Query("appointments").where("doctorId", "==", "d1")

        unsubscribe = self.store.subscribe(query, snapshots.append)
        self.store.create_document("appointments", {"doctorId": "d1"}, document_id="a1")
        self.store.create_document("emergencyRequests", {"doctorId": "d1"})
        unsubscribe()
        self.store.create_document("appointments", {"doctorId": "d1"}, document_id="a2")

        self.assertEqual(len(snapshots), 2)
        self.assertEqual(snapshots[0], [])
        self.assertEqual([record["id"] for record in snapshots[1]], ["a1"])

    def test_failing_subscriber_does_not_break_writes_or_other_listeners(self) -> None:
        deliveries = []

        def render(records):
            deliveries.append(len(records))
            if len(deliveries) > 1:
                raise RuntimeError("render failed")

        healthy = []
        query = Query("appointments")
        self.store.subscribe(query, render)
        self.store.subscribe(query, lambda records: healthy.append(len(records)))

        with self.assertLogs("connector.memory", level="ERROR"):
            document_id = self.store.create_document("appointments", {"doctorId": "d1"})

        self.assertIsNotNone(self.store.get_document("appointments", document_id))
        self.assertEqual(healthy, [0, 1])
        self.assertEqual(deliveries, [0, 1])

    def test_subscriber_failing_on_first_snapshot_can_unsubscribe(self) -> None:
        calls = []

        def broken(records):
            calls.append(records)
            raise RuntimeError("boom")

        with self.assertLogs("connector.memory", level="ERROR"):
            unsubscribe = self.store.subscribe(Query("appointments"), broken)
        unsubscribe()
        self.store.create_document("appointments", {"doctorId": "d1"})

        self.assertEqual(len(calls), 1)

    def test_subscribe_document_follows_one_document(self) -> None:
        seen = []
        unsubscribe = self.store.subscribe_document("users", "u1", seen.append)
        self.store.seed("users", [{"id": "u1", "name": "Ada"}])
        self.store.delete_document("users", "u1")
        unsubscribe()

        self.assertEqual(seen, [None, {"id": "u1", "name": "Ada"}, None])


if __name__ == "__main__":
    unittest.main()
