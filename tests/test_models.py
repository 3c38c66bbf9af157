import unittest
from datetime import date, datetime, timezone

from gaply.errors import ValidationError
from gaply.models import (
    AppConfig,
    Gap,
    RollingWindow,
    SessionContext,
    Task,
    WorkPreferences,
    format_minutes,
    normalize_working_days,
    parse_clock_minutes,
    parse_duration_minutes,
)


class ClockParsingTests(unittest.TestCase):
    def test_accepts_common_forms(self) -> None:
        self.assertEqual(parse_clock_minutes("09:00"), 540)
        self.assertEqual(parse_clock_minutes("9:05"), 545)
        self.assertEqual(parse_clock_minutes("17:30:45"), 1050)
        self.assertEqual(parse_clock_minutes("2024-05-01T13:15:00Z"), 795)
        self.assertEqual(parse_clock_minutes("24:00"), 1440)

    def test_rejects_malformed_values(self) -> None:
        for value in ("", "noon", "25:00", "10:75", "24:30", None, True):
            with self.assertRaises(ValidationError):
                parse_clock_minutes(value)

    def test_format_minutes(self) -> None:
        self.assertEqual(format_minutes(765), "12:45")
        self.assertEqual(format_minutes(1440), "24:00")


class DurationParsingTests(unittest.TestCase):
    def test_accepts_common_forms(self) -> None:
        cases = {
            "01:30": 90,
            "00:45:00": 45,
            "30 min": 30,
            "30m": 30,
            "1h": 60,
            "1h 30m": 90,
            "90": 90,
            45: 45,
        }
        for raw, expected in cases.items():
            self.assertEqual(parse_duration_minutes(raw), expected, raw)

    def test_rejects_zero_and_garbage(self) -> None:
        for value in ("0", "00:00", "soon", -5, ""):
            with self.assertRaises(ValidationError):
                parse_duration_minutes(value)


class WorkingDaysTests(unittest.TestCase):
    def test_equivalent_representations(self) -> None:
        expected = frozenset({0, 2, 4})
        self.assertEqual(normalize_working_days(["Mon", "wednesday", "FRI"]), expected)
        self.assertEqual(normalize_working_days({"monday": True, "tuesday": False, "wed": True, "fr": True}), expected)
        self.assertEqual(normalize_working_days("mon, wed,fri"), expected)
        self.assertEqual(normalize_working_days([0, 2, 4]), expected)

    def test_unknown_tokens_are_ignored(self) -> None:
        self.assertEqual(normalize_working_days(["mon", "t", "funday", 9]), frozenset({0}))

    def test_missing_value_uses_weekdays(self) -> None:
        self.assertEqual(normalize_working_days(None), frozenset(range(5)))


class WorkPreferencesTests(unittest.TestCase):
    def test_defaults(self) -> None:
        prefs = WorkPreferences.from_dict({})
        self.assertEqual(prefs.work_start, 540)
        self.assertEqual(prefs.work_end, 1020)
        self.assertEqual(prefs.working_days, frozenset(range(5)))
        self.assertEqual(prefs.min_gap_minutes, 15)
        self.assertEqual(prefs.all_day_block_mode, "workday")
        self.assertEqual(prefs.dedupe_strategy, "auto")
        self.assertFalse(prefs.subtract_busy_blocks)
        self.assertEqual(prefs, WorkPreferences())

    def test_explicit_null_work_hours_are_unset(self) -> None:
        prefs = WorkPreferences.from_dict({"work_start": None, "work_end": "late"})
        self.assertIsNone(prefs.work_start)
        self.assertIsNone(prefs.work_end)
        self.assertIsNone(prefs.work_interval())

    def test_source_aliases_are_accepted(self) -> None:
        prefs = WorkPreferences.from_dict(
            {
                "calendar_work_start": "08:30",
                "calendar_work_end": "16:00",
                "calendar_working_days": {"monday": True, "saturday": True},
                "calendar_min_gap": 20,
                "show_device_calendar_busy": True,
                "device_calendar_included_ids": ["b", "a", "a"],
            }
        )
        self.assertEqual(prefs.work_start, 510)
        self.assertEqual(prefs.work_end, 960)
        self.assertEqual(prefs.working_days, frozenset({0, 5}))
        self.assertEqual(prefs.min_gap_minutes, 20)
        self.assertTrue(prefs.subtract_busy_blocks)
        self.assertEqual(prefs.included_calendar_ids, ("a", "b"))

    def test_invalid_choice_falls_back_to_default(self) -> None:
        prefs = WorkPreferences.from_dict({"all_day_block_mode": "sometimes", "dedupe_strategy": "PREFER_GOOGLE"})
        self.assertEqual(prefs.all_day_block_mode, "workday")
        self.assertEqual(prefs.dedupe_strategy, "prefer_google")

    def test_to_dict_round_trips_through_from_dict(self) -> None:
        prefs = WorkPreferences.from_dict({"work_start": "07:15", "working_days": ["sun", "mon"]})
        self.assertEqual(WorkPreferences.from_dict(prefs.to_dict()), prefs)
        self.assertEqual(prefs.to_dict()["working_days"], ["monday", "sunday"])

    def test_work_interval_clamps_inverted_end(self) -> None:
        prefs = WorkPreferences(work_start=20 * 60, work_end=2 * 60)
        self.assertEqual(prefs.work_interval(), (1200, 1440))


class TaskAndGapTests(unittest.TestCase):
    def test_task_from_dict(self) -> None:
        task = Task.from_dict(
            {"id": "t1", "dueDate": "2024-04-29", "dueTime": "10:00", "duration": "01:00", "status": "pending"}
        )
        self.assertEqual(task.due_date, date(2024, 4, 29))
        self.assertEqual(task.interval(), (600, 660))
        self.assertTrue(task.is_active)

    def test_completed_or_deleted_tasks_are_inactive(self) -> None:
        self.assertFalse(Task(id="a", status="completed").is_active)
        self.assertFalse(Task.from_dict({"id": "b", "deleted_at": "2024-04-29T10:00:00Z"}).is_active)

    def test_task_requires_id(self) -> None:
        with self.assertRaises(ValidationError):
            Task.from_dict({"title": "no id"})

    def test_gap_duration_follows_bounds(self) -> None:
        gap = Gap(date=date(2024, 4, 29), start=540, end=600)
        self.assertEqual(gap.duration_minutes, 60)
        trimmed = gap.trimmed(560, 600)
        self.assertEqual(trimmed.id, gap.id)
        self.assertEqual(trimmed.duration_minutes, 40)

    def test_gap_fragment_keeps_lineage(self) -> None:
        gap = Gap(date=date(2024, 4, 29), start=540, end=600)
        piece = gap.fragment(570, 600, "calendar_sync")
        self.assertEqual(piece.parent_gap_id, gap.id)
        self.assertEqual(piece.origin_gap_id, gap.id)
        self.assertEqual(piece.fragment(580, 600, "system").origin_gap_id, gap.id)

    def test_gap_rejects_empty_interval(self) -> None:
        with self.assertRaises(ValidationError):
            Gap(date=date(2024, 4, 29), start=600, end=600)

    def test_gap_from_dict_recomputes_duration(self) -> None:
        gap = Gap.from_dict({"id": "g", "date": "2024-04-29", "start": "09:00", "end": "09:45", "duration_minutes": 5})
        self.assertEqual(gap.duration_minutes, 45)


class WindowAndConfigTests(unittest.TestCase):
    def test_rolling_window_spans_fifteen_days(self) -> None:
        window = RollingWindow.around(date(2024, 5, 1))
        self.assertEqual(window.start, date(2024, 4, 24))
        self.assertEqual(window.end, date(2024, 5, 8))
        self.assertEqual(len(window.dates()), 15)
        self.assertFalse(window.contains(date(2024, 5, 9)))

    def test_session_starts_cold_and_falls_back_to_utc(self) -> None:
        now = datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc)
        session = SessionContext.begin(now, "Not/A_Zone")
        self.assertEqual(session.today, date(2024, 5, 1))
        self.assertEqual(session.window, RollingWindow.around(date(2024, 5, 1)))
        self.assertEqual(session.phase, "cold")
        self.assertEqual(session.warm().phase, "warm")

    def test_app_config_defaults(self) -> None:
        config = AppConfig.from_dict({"sync": {"interval_seconds": 5}})
        self.assertEqual(config.sync.interval_seconds, 30)
        self.assertEqual(config.calendar.cache_ttl_minutes, 60)
        self.assertEqual(config.cache_limits.max_gaps, 5000)
        self.assertEqual(config.remote.timeout_seconds, 15)


if __name__ == "__main__":
    unittest.main()
