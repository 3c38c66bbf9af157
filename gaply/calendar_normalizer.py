from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable

from gaply.deduplicator import DedupeDecision, deduplicate_events
from gaply.errors import ValidationError
from gaply.models import MINUTES_PER_DAY, BusyBlock, RawEvent, WorkPreferences, ensure_tz, utc_now

logger = logging.getLogger(__name__)


@dataclass
class NormalizedBusy:
    blocks: list[BusyBlock] = field(default_factory=list)
    decisions: list[DedupeDecision] = field(default_factory=list)


def _as_date(value: datetime | date) -> date:
    return value.date() if isinstance(value, datetime) else value


def _as_local(value: datetime | date, tz: tzinfo) -> datetime:
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=tz)
    return ensure_tz(value).astimezone(tz)


def _all_day_blocks(event: RawEvent, synced_at: datetime) -> list[BusyBlock]:
    first = _as_date(event.start)
    last = _as_date(event.end)
    # All-day end dates are exclusive; a same-day end still covers one date.
    days = max(1, (last - first).days)
    return [
        BusyBlock(
            date=first + timedelta(days=offset),
            start=0,
            end=MINUTES_PER_DAY,
            source=event.source,
            calendar_id=event.calendar_id,
            transparency=event.transparency,
            status=event.status,
            is_all_day=True,
            uid=event.id,
            title=event.title,
            last_synced_at=synced_at,
        )
        for offset in range(days)
    ]


def _timed_blocks(event: RawEvent, tz: tzinfo, synced_at: datetime) -> list[BusyBlock]:
    start = _as_local(event.start, tz)
    end = _as_local(event.end, tz)
    if end <= start:
        raise ValidationError(f"event {event.id} ends before it starts")
    blocks: list[BusyBlock] = []
    cursor = start
    while cursor < end:
        day_start = datetime.combine(cursor.date(), time.min, tzinfo=cursor.tzinfo)
        next_day = day_start + timedelta(days=1)
        segment_end = min(end, next_day)
        start_minute = cursor.hour * 60 + cursor.minute
        end_minute = MINUTES_PER_DAY if segment_end >= next_day else segment_end.hour * 60 + segment_end.minute
        if end_minute > start_minute:
            blocks.append(
                BusyBlock(
                    date=cursor.date(),
                    start=start_minute,
                    end=end_minute,
                    source=event.source,
                    calendar_id=event.calendar_id,
                    transparency=event.transparency,
                    status=event.status,
                    uid=event.id,
                    title=event.title,
                    last_synced_at=synced_at,
                )
            )
        cursor = next_day
    return blocks


def events_to_blocks(events: Iterable[RawEvent], tz: tzinfo) -> list[BusyBlock]:
    """Split provider events into per-date busy blocks in local time."""
    synced_at = utc_now()
    blocks: list[BusyBlock] = []
    for event in events:
        try:
            if event.is_all_day:
                blocks.extend(_all_day_blocks(event, synced_at))
            else:
                blocks.extend(_timed_blocks(event, tz, synced_at))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed calendar event %s: %s", getattr(event, "id", "?"), exc)
    return blocks


def expand_all_day(block: BusyBlock, prefs: WorkPreferences) -> BusyBlock | None:
    if not block.is_all_day:
        return block
    mode = prefs.all_day_block_mode
    if mode == "ignore":
        return None
    interval = prefs.work_interval()
    if interval is None:
        return None
    work_start, work_end = interval
    if mode == "workday":
        return replace(block, start=work_start, end=work_end)

    window = work_end - work_start
    length = min(prefs.all_day_block_minutes, window)
    if length <= 0:
        return None
    if prefs.all_day_block_position == "end":
        start = max(work_start, work_end - length)
    elif prefs.all_day_block_position == "middle":
        start = work_start + (window - length) // 2
    else:
        start = work_start
    return replace(block, start=start, end=start + length)


def filter_by_transparency(blocks: Iterable[BusyBlock], prefs: WorkPreferences) -> list[BusyBlock]:
    kept: list[BusyBlock] = []
    for block in blocks:
        if block.status == "cancelled" or block.transparency == "free":
            continue
        if block.transparency == "tentative" and not prefs.block_tentative:
            continue
        kept.append(block)
    return kept


def _merge_order(block: BusyBlock) -> tuple:
    return (block.date, block.start, -block.end, block.source, block.calendar_id, block.uid)


def merge_overlaps(blocks: Iterable[BusyBlock]) -> list[BusyBlock]:
    """Fold overlapping or touching blocks per date; the earliest block's provenance wins."""
    merged: list[BusyBlock] = []
    for block in sorted(blocks, key=_merge_order):
        if merged and merged[-1].date == block.date and block.start <= merged[-1].end:
            if block.end > merged[-1].end:
                merged[-1] = replace(merged[-1], end=block.end)
            continue
        merged.append(block)
    return merged


def normalize_events(events: Iterable[RawEvent], prefs: WorkPreferences, tz: tzinfo) -> NormalizedBusy:
    expanded: list[BusyBlock] = []
    for block in events_to_blocks(events, tz):
        result = expand_all_day(block, prefs)
        if result is not None:
            expanded.append(result)
    deduped = deduplicate_events(filter_by_transparency(expanded, prefs), prefs.dedupe_strategy)
    return NormalizedBusy(blocks=merge_overlaps(deduped.blocks), decisions=deduped.decisions)
