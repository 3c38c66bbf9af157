import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import mock

from gaply.errors import RemoteError
from gaply.models import Gap, RollingWindow, SessionContext, Task, WorkPreferences
from gaply.reconciler import ReconciliationStore, merge_gaps, merge_preferences, merge_tasks
from gaply.state_store import StateStore

MONDAY = date(2024, 4, 29)
WINDOW = RollingWindow.around(MONDAY)
SESSION = SessionContext(today=MONDAY, window=WINDOW)
EARLY = datetime(2024, 4, 28, 9, 0, tzinfo=timezone.utc)
LATE = datetime(2024, 4, 29, 9, 0, tzinfo=timezone.utc)


def _gap(start: int, end: int, updated_at: datetime = EARLY, target: date = MONDAY) -> Gap:
    return Gap(date=target, start=start, end=end, created_at=EARLY, updated_at=updated_at)


class MergeTests(unittest.TestCase):
    def test_local_gaps_survive_remote_silence(self) -> None:
        local = {MONDAY: [_gap(540, 600), _gap(600, 660), _gap(660, 720)]}
        result = merge_gaps(local, {MONDAY: []}, WINDOW)
        self.assertEqual(len(result.gaps[MONDAY]), 3)
        self.assertEqual(result.replaced_dates, [])
        self.assertEqual(merge_gaps(local, {}, WINDOW).gaps, local)

    def test_remote_fills_empty_local_dates(self) -> None:
        remote = {MONDAY: [_gap(600, 660), _gap(540, 600)]}
        result = merge_gaps({}, remote, WINDOW)
        self.assertEqual([(g.start, g.end) for g in result.gaps[MONDAY]], [(540, 600), (600, 660)])
        self.assertEqual(result.replaced_dates, [MONDAY])
        self.assertEqual(result.conflicts, 0)

    def test_strictly_newer_remote_wins(self) -> None:
        local = {MONDAY: [_gap(540, 600)]}
        newer = merge_gaps(local, {MONDAY: [_gap(540, 570, LATE)]}, WINDOW)
        self.assertEqual([(g.start, g.end) for g in newer.gaps[MONDAY]], [(540, 570)])
        self.assertEqual(newer.conflicts, 1)

        same_age = merge_gaps(local, {MONDAY: [_gap(540, 570)]}, WINDOW)
        self.assertEqual([(g.start, g.end) for g in same_age.gaps[MONDAY]], [(540, 600)])

    def test_dates_outside_window_are_ignored(self) -> None:
        far = date(2024, 6, 3)
        result = merge_gaps({}, {far: [_gap(540, 600, target=far)]}, WINDOW)
        self.assertNotIn(far, result.gaps)

    def test_merge_is_idempotent(self) -> None:
        local = {MONDAY: [_gap(540, 600)]}
        remote = {MONDAY: [_gap(540, 570, LATE)], date(2024, 4, 30): [_gap(600, 660, target=date(2024, 4, 30))]}
        once = merge_gaps(local, remote, WINDOW)
        twice = merge_gaps(once.gaps, remote, WINDOW)
        self.assertEqual(once.gaps, twice.gaps)
        self.assertEqual(twice.replaced_dates, [])

    def test_task_merge_prefers_newer_remote(self) -> None:
        local = [Task(id="a", title="local", updated_at=LATE), Task(id="b", title="old", updated_at=EARLY)]
        remote = [
            Task(id="a", title="remote", updated_at=EARLY),
            Task(id="b", title="new", updated_at=LATE),
            Task(id="c", title="added"),
        ]
        result = merge_tasks(local, remote)
        self.assertEqual([task.title for task in result.tasks], ["local", "new", "added"])
        self.assertEqual((result.added, result.remote_wins, result.conflicts), (1, 1, 2))

    def test_preferences_replaced_only_when_remote_present(self) -> None:
        local = WorkPreferences()
        self.assertEqual(merge_preferences(local, None), (local, False))
        remote = WorkPreferences(work_end=1080)
        self.assertEqual(merge_preferences(local, remote), (remote, True))


class ReconciliationStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.remote = mock.Mock()
        self.remote.is_configured.return_value = True
        self.remote.get_tasks.return_value = []
        self.remote.get_all_gaps.return_value = {}
        self.remote.get_preferences.return_value = None
        self.reconciler = ReconciliationStore(self.store, self.remote)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_without_remote_nothing_happens(self) -> None:
        reconciliation = ReconciliationStore(self.store)
        report = reconciliation.reconnect(SESSION)
        self.assertFalse(report.remote_available)
        self.assertFalse(reconciliation.push_preferences(WorkPreferences()))

    def test_reconnect_merges_and_pushes(self) -> None:
        self.store.replace_gaps(MONDAY, [_gap(540, 600), _gap(600, 660), _gap(660, 720)])
        self.store.upsert_tasks([Task(id="local", due_date=MONDAY, due_time=600, duration=30)])
        self.remote.get_tasks.return_value = [Task(id="remote", due_date=date(2024, 4, 30), due_time=540, duration=60)]
        self.remote.get_preferences.return_value = WorkPreferences(work_start=480)

        report = self.reconciler.reconnect(SESSION)

        self.assertTrue(report.remote_available)
        self.assertEqual(report.tasks_synced, 2)
        self.assertTrue(report.preferences_replaced)
        self.assertEqual(report.changed_dates, [date(2024, 4, 30)])
        self.assertEqual(len(self.store.gaps_for_date(MONDAY)), 3)
        self.assertEqual(self.store.load_preferences().work_start, 480)
        self.remote.save_tasks.assert_called_once()
        self.remote.save_gaps.assert_called_once()
        self.assertEqual(len(self.store.recent_audit_events(action="reconcile_remote")), 1)

    def test_partial_failure_keeps_other_collections(self) -> None:
        self.remote.get_tasks.side_effect = RemoteError("timeout")
        self.remote.get_all_gaps.return_value = {MONDAY: [_gap(540, 600)]}
        report = self.reconciler.reconnect(SESSION)
        self.assertTrue(report.remote_available)
        self.assertEqual(len(report.errors), 1)
        self.assertEqual(report.gaps_synced, 1)
        self.remote.save_tasks.assert_not_called()

    def test_unreachable_remote_keeps_local_data(self) -> None:
        self.store.replace_gaps(MONDAY, [_gap(540, 600)])
        for name in ("get_tasks", "get_all_gaps", "get_preferences"):
            getattr(self.remote, name).side_effect = RemoteError("offline")
        report = self.reconciler.reconnect(SESSION)
        self.assertFalse(report.remote_available)
        self.assertEqual(len(self.store.gaps_for_date(MONDAY)), 1)
        self.remote.save_gaps.assert_not_called()

    def test_push_failure_is_reported_not_raised(self) -> None:
        self.store.replace_gaps(MONDAY, [_gap(540, 600)])
        self.remote.save_gaps.side_effect = RemoteError("503")
        report = self.reconciler.reconnect(SESSION)
        self.assertIn("push: 503", report.errors)

    def test_push_preferences(self) -> None:
        self.assertTrue(self.reconciler.push_preferences(WorkPreferences()))
        self.remote.save_preferences.side_effect = RemoteError("down")
        self.assertFalse(self.reconciler.push_preferences(WorkPreferences()))


if __name__ == "__main__":
    unittest.main()
