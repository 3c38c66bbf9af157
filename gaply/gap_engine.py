from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from gaply.errors import ValidationError
from gaply.models import BusyBlock, Gap, RollingWindow, Task, WorkPreferences, utc_now

logger = logging.getLogger(__name__)

Interval = tuple[int, int]


def _hourly_slices(start: int, end: int) -> list[Interval]:
    """Cut ``[start, end)`` at clock-hour boundaries."""
    slices: list[Interval] = []
    cursor = start
    while cursor < end:
        boundary = min(end, (cursor // 60 + 1) * 60)
        slices.append((cursor, boundary))
        cursor = boundary
    return slices


def _padded(interval: Interval, buffer_minutes: int) -> Interval:
    start, end = interval
    return max(0, start - buffer_minutes), end


def compute_base_gaps(target: date, prefs: WorkPreferences, window: RollingWindow) -> list[Gap]:
    """Baseline hourly gaps covering the working interval of ``target``.

    Returns nothing for dates outside the window, for non-working days and when
    the work hours are unset. A work end at or before the start is read as
    running to the end of the day.
    """
    if not window.contains(target) or not prefs.is_working_day(target):
        return []
    interval = prefs.work_interval()
    if interval is None:
        logger.warning("No usable work hours for %s; no gaps computed", target)
        return []
    now = utc_now()
    return [
        Gap(date=target, start=start, end=end, modified_by="system", created_at=now, updated_at=now)
        for start, end in _hourly_slices(*interval)
    ]


def _subtract(gaps: list[Gap], intervals: Iterable[Interval], modified_by: str, now: datetime) -> list[Gap]:
    current = gaps
    for start, end in sorted(intervals):
        if end <= start:
            continue
        remaining: list[Gap] = []
        for gap in current:
            if not gap.overlaps(start, end):
                remaining.append(gap)
                continue
            if start > gap.start:
                remaining.append(gap.fragment(gap.start, start, modified_by, now))
            if end < gap.end:
                remaining.append(gap.fragment(end, gap.end, modified_by, now))
        current = remaining
    return sorted(current, key=lambda gap: gap.start)


def _task_intervals(target: date, tasks: Iterable[Task], buffer_minutes: int) -> list[Interval]:
    intervals: list[Interval] = []
    for task in tasks:
        try:
            if not task.is_active or task.due_date != target:
                continue
            interval = task.interval()
        except (AttributeError, TypeError, ValidationError) as exc:
            logger.warning("Skipping malformed task %s: %s", getattr(task, "id", "?"), exc)
            continue
        if interval is not None:
            intervals.append(_padded(interval, buffer_minutes))
    return intervals


def _block_intervals(target: date, blocks: Iterable[BusyBlock], buffer_minutes: int) -> list[Interval]:
    intervals: list[Interval] = []
    for block in blocks:
        try:
            if block.date != target:
                continue
            if not block.start < block.end:
                raise ValidationError(f"empty busy block {block.start}..{block.end}")
        except (AttributeError, TypeError, ValidationError) as exc:
            logger.warning("Skipping malformed busy block %s: %s", getattr(block, "uid", "?"), exc)
            continue
        intervals.append(_padded((block.start, block.end), buffer_minutes))
    return intervals


def _subtract_inputs(
    target: date,
    gaps: list[Gap],
    tasks: Iterable[Task],
    busy_blocks: Iterable[BusyBlock],
    prefs: WorkPreferences,
) -> list[Gap]:
    now = utc_now()
    gaps = _subtract(gaps, _task_intervals(target, tasks, prefs.buffer_minutes), "system", now)
    if prefs.subtract_busy_blocks:
        gaps = _subtract(gaps, _block_intervals(target, busy_blocks, prefs.buffer_minutes), "calendar_sync", now)
    return gaps


def reconcile(
    target: date,
    tasks: Iterable[Task],
    busy_blocks: Iterable[BusyBlock],
    prefs: WorkPreferences,
    window: RollingWindow,
) -> list[Gap]:
    """Baseline gaps for ``target`` minus its tasks and, when enabled, its busy blocks."""
    gaps = compute_base_gaps(target, prefs, window)
    if not gaps:
        return []
    return _subtract_inputs(target, gaps, tasks, busy_blocks, prefs)


def optimize(gaps: Iterable[Gap], prefs: WorkPreferences) -> list[Gap]:
    return [gap for gap in gaps if gap.duration_minutes >= prefs.min_gap_minutes]


def handle_preference_change(
    target: date,
    existing: list[Gap],
    old: WorkPreferences,
    new: WorkPreferences,
    window: RollingWindow,
    tasks: Iterable[Task] = (),
    busy_blocks: Iterable[BusyBlock] = (),
) -> list[Gap]:
    """Patch the stored gaps of one date after a work-hours or working-day edit."""
    if not window.contains(target) or not new.is_working_day(target):
        return []
    old_interval = old.work_interval()
    new_interval = new.work_interval()
    if new_interval is None:
        return []
    if not old.is_working_day(target) or old_interval is None:
        return optimize(reconcile(target, tasks, busy_blocks, new, window), new)

    new_start, new_end = new_interval
    old_start, old_end = old_interval
    now = utc_now()
    patched: list[Gap] = []
    for gap in existing:
        start, end = max(gap.start, new_start), min(gap.end, new_end)
        if end <= start:
            continue
        if (start, end) == (gap.start, gap.end):
            patched.append(gap)
            continue
        trimmed = gap.trimmed(start, end, now)
        if trimmed.duration_minutes >= new.min_gap_minutes:
            patched.append(trimmed)

    added_ranges: list[Interval] = []
    if new_start < old_start:
        added_ranges.append((new_start, min(old_start, new_end)))
    if new_end > old_end:
        added_ranges.append((max(old_end, new_start), new_end))
    tasks = list(tasks)
    busy_blocks = list(busy_blocks)
    for range_start, range_end in added_ranges:
        fresh = [
            Gap(date=target, start=start, end=end, modified_by="system", created_at=now, updated_at=now)
            for start, end in _hourly_slices(range_start, range_end)
        ]
        patched.extend(optimize(_subtract_inputs(target, fresh, tasks, busy_blocks, new), new))
    return sorted(patched, key=lambda gap: gap.start)


def merge_user_gaps(existing: Iterable[Gap], computed: Iterable[Gap]) -> tuple[list[Gap], int]:
    """Keep hand-edited gaps; computed gaps overlapping one of them are dropped.

    Returns the merged gaps and the number of computed gaps that were dropped.
    """
    user_gaps = [gap for gap in existing if gap.modified_by == "user"]
    merged = list(user_gaps)
    conflicts = 0
    for gap in computed:
        if any(gap.overlaps(user.start, user.end) for user in user_gaps):
            conflicts += 1
            continue
        merged.append(gap)
    return sorted(merged, key=lambda gap: gap.start), conflicts


@dataclass
class GapValidation:
    date: date
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def validate_gaps(target: date, gaps: list[Gap], prefs: WorkPreferences) -> GapValidation:
    errors: list[str] = []
    warnings: list[str] = []
    ordered = sorted(gaps, key=lambda gap: (gap.start, gap.end))
    for index, gap in enumerate(ordered):
        if gap.duration_minutes != gap.end - gap.start:
            errors.append(f"Gap duration mismatch: {gap.id}")
        for other in ordered[index + 1 :]:
            if other.start >= gap.end:
                break
            errors.append(f"Gap overlap detected: {gap.id} and {other.id}")
    interval = prefs.work_interval()
    if interval is not None:
        work_start, work_end = interval
        for gap in ordered:
            if gap.start < work_start or gap.end > work_end:
                warnings.append(f"Gap outside work hours: {gap.id}")
    if gaps and not prefs.is_working_day(target):
        warnings.append(f"Gaps stored for non-working day {target.isoformat()}")
    return GapValidation(date=target, valid=not errors, errors=errors, warnings=warnings)
