import tempfile
import unittest
from datetime import date, timedelta
from pathlib import Path

from gaply.models import Gap, RollingWindow, Task, WorkPreferences
from gaply.state_store import StateStore

MONDAY = date(2024, 4, 29)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "data" / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_sync_run_lifecycle(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual")
        self.store.finish_sync_run(
            run_id=run_id, status="success", message="ok", duration_ms=12, changes_applied=3, conflicts=1
        )
        run = self.store.recent_sync_runs()[0]
        self.assertEqual((run["id"], run["status"], run["changes_applied"]), (run_id, "success", 3))

    def test_preferences_round_trip(self) -> None:
        self.assertIsNone(self.store.load_preferences())
        prefs = WorkPreferences(work_start=480, working_days=frozenset({0, 1, 2}))
        self.store.save_preferences(prefs)
        self.assertEqual(self.store.load_preferences(), prefs)

    def test_tasks_upsert_and_filter_by_date(self) -> None:
        self.store.upsert_tasks([Task(id="a", due_date=MONDAY, due_time=600, duration=30), Task(id="b")])
        self.store.upsert_tasks([Task(id="a", title="renamed", due_date=MONDAY, due_time=600, duration=30)])
        self.assertEqual(self.store.task_count(), 2)
        self.assertEqual([task.title for task in self.store.tasks_for_date(MONDAY)], ["renamed"])
        self.store.replace_tasks([Task(id="c")])
        self.assertEqual([task.id for task in self.store.list_tasks()], ["c"])

    def test_gaps_are_replaced_per_date_in_start_order(self) -> None:
        self.store.replace_gaps(MONDAY, [Gap(date=MONDAY, start=600, end=660), Gap(date=MONDAY, start=540, end=600)])
        self.assertEqual([gap.start for gap in self.store.gaps_for_date(MONDAY)], [540, 600])
        self.store.replace_gaps(MONDAY, [Gap(date=MONDAY, start=700, end=720)])
        self.assertEqual(self.store.gap_count(), 1)
        self.assertEqual(list(self.store.all_gaps()), [MONDAY])

    def test_gap_access_stats_track_reads_and_pins(self) -> None:
        self.store.replace_gaps(MONDAY, [Gap(date=MONDAY, start=540, end=600, modified_by="user")])
        self.store.gaps_for_date(MONDAY)
        self.store.gaps_for_date(MONDAY, touch=False)
        stats = self.store.gap_access_stats()
        self.assertEqual(len(stats), 1)
        self.assertEqual((stats[0]["key"], stats[0]["size"], stats[0]["pinned"]), ("2024-04-29", 1, 1))
        self.assertEqual(stats[0]["access_count"], 2)

    def test_delete_gaps_outside_window(self) -> None:
        old = MONDAY - timedelta(days=9)
        self.store.replace_gaps(old, [Gap(date=old, start=540, end=600)])
        self.store.replace_gaps(MONDAY, [Gap(date=MONDAY, start=540, end=600)])
        self.assertEqual(self.store.delete_gaps_outside(RollingWindow.around(MONDAY)), 1)
        self.assertEqual(list(self.store.all_gaps()), [MONDAY])

    def test_audit_events_filter(self) -> None:
        self.store.record_audit_event(scope="sync", subject="a", action="one", details={"n": 1})
        self.store.record_audit_event(scope="sync", subject="b", action="two", details={"n": 2})
        events = self.store.recent_audit_events(action="one")
        self.assertEqual([event["details"] for event in events], [{"n": 1}])
        self.assertEqual(len(self.store.recent_audit_events()), 2)


if __name__ == "__main__":
    unittest.main()
