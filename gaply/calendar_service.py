from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable

from gaply.busy_cache import BusyBlockCache
from gaply.calendar_normalizer import NormalizedBusy, normalize_events
from gaply.calendar_provider import CalendarProvider
from gaply.deduplicator import DedupeDecision
from gaply.errors import ProviderError
from gaply.models import BusyBlock, CalendarFetchConfig, SessionContext, WorkPreferences, resolve_timezone
from gaply.state_store import StateStore

logger = logging.getLogger(__name__)

# preferences that shape how provider events become cached busy blocks
BUSY_SHAPING_FIELDS = frozenset(
    {
        "work_start",
        "work_end",
        "all_day_block_mode",
        "all_day_block_minutes",
        "all_day_block_position",
        "block_tentative",
        "dedupe_strategy",
        "included_calendar_ids",
        "subtract_busy_blocks",
        "timezone",
    }
)


@dataclass
class BusyFetchResult:
    blocks: list[BusyBlock] = field(default_factory=list)
    available: bool = True
    from_cache: bool = False
    decisions: list[DedupeDecision] = field(default_factory=list)


class CalendarService:
    """Fetches busy blocks from the provider with bounded waits and cache fallback."""

    def __init__(
        self,
        provider: CalendarProvider | None,
        cache: BusyBlockCache,
        config: CalendarFetchConfig,
        store: StateStore | None = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.config = config
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="gaply-calendar")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def get_busy_blocks(self, target: date, prefs: WorkPreferences, session: SessionContext) -> BusyFetchResult:
        if not prefs.subtract_busy_blocks:
            return BusyFetchResult()
        cached = self.cache.get(target)
        if cached is not None:
            return BusyFetchResult(blocks=cached, from_cache=True)

        timeout = self.config.today_timeout_seconds if target == session.today else self.config.range_timeout_seconds
        try:
            normalized = self._run_with_timeout(lambda: self._fetch(target, target, prefs), timeout)
        except Exception as exc:  # provider failures degrade to cached data
            return self._fallback(target, exc)

        blocks = self._store_by_date(normalized, [target])[target]
        self._audit(target, normalized.decisions)
        return BusyFetchResult(blocks=blocks, decisions=normalized.decisions)

    def preload(self, prefs: WorkPreferences, session: SessionContext) -> bool:
        """Fetch the whole window in one provider call and cache every date."""
        if not prefs.subtract_busy_blocks:
            return True
        window = session.window
        try:
            normalized = self._run_with_timeout(
                lambda: self._fetch(window.start, window.end, prefs), self.config.range_timeout_seconds
            )
        except Exception as exc:
            logger.warning("Busy block preload failed: %s", str(exc) or type(exc).__name__)
            return False
        self._store_by_date(normalized, window.dates())
        self._audit(window.start, normalized.decisions)
        return True

    def invalidate(self, dates: Iterable[date]) -> int:
        """Drop cached blocks so the next read normalizes them under the current preferences."""
        count = 0
        for target in dates:
            self.cache.invalidate(target)
            count += 1
        return count

    def refresh(self, target: date, prefs: WorkPreferences, session: SessionContext) -> BusyFetchResult:
        self.cache.invalidate(target)
        return self.get_busy_blocks(target, prefs, session)

    def _run_with_timeout(self, func: Callable[[], NormalizedBusy], timeout: float) -> NormalizedBusy:
        if self.provider is None:
            raise ProviderError("No calendar provider configured.")
        future = self._executor.submit(func)
        return future.result(timeout=timeout)

    def _fetch(self, start: date, end: date, prefs: WorkPreferences) -> NormalizedBusy:
        if self.provider is None:
            raise ProviderError("No calendar provider configured.")
        if not self.provider.request_permission():
            raise ProviderError("Calendar permission denied.")
        calendar_ids = self.provider.list_calendars()
        if prefs.included_calendar_ids:
            wanted = set(prefs.included_calendar_ids)
            calendar_ids = [calendar_id for calendar_id in calendar_ids if calendar_id in wanted]
        if not calendar_ids:
            return NormalizedBusy()
        events = self.provider.list_events(start, end, calendar_ids)
        return normalize_events(events, prefs, resolve_timezone(prefs.timezone))

    def _store_by_date(self, normalized: NormalizedBusy, dates: list[date]) -> dict[date, list[BusyBlock]]:
        grouped: dict[date, list[BusyBlock]] = {target: [] for target in dates}
        for block in normalized.blocks:
            if block.date in grouped:
                grouped[block.date].append(block)
        for target, blocks in grouped.items():
            self.cache.set(target, blocks)
        return grouped

    def _fallback(self, target: date, exc: BaseException) -> BusyFetchResult:
        reason = str(exc) or type(exc).__name__
        stale = self.cache.get_stale(target)
        logger.warning(
            "Calendar unavailable for %s (%s); using %s",
            target,
            reason,
            "stale cache" if stale is not None else "no busy blocks",
        )
        return BusyFetchResult(blocks=stale or [], available=False, from_cache=stale is not None)

    def _audit(self, subject: date, decisions: list[DedupeDecision]) -> None:
        if self.store is None or not decisions:
            return
        details: dict[str, Any] = {"decisions": [decision.to_dict() for decision in decisions]}
        self.store.record_audit_event(
            scope="calendar", subject=subject.isoformat(), action="dedupe_busy_blocks", details=details
        )
