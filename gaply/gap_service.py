from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from gaply.cache_limits import CacheLimitGuard
from gaply.calendar_service import CalendarService
from gaply.errors import StorageLimitExceeded
from gaply.events import GAPS_UPDATED, EventBus
from gaply.gap_engine import (
    GapValidation,
    handle_preference_change,
    merge_user_gaps,
    optimize,
    reconcile,
    validate_gaps,
)
from gaply.models import Gap, SessionContext, WorkPreferences, serialize_datetime, utc_now
from gaply.state_store import StateStore

logger = logging.getLogger(__name__)


class DateLockRegistry:
    """One lock per date so recomputations of the same date never interleave."""

    def __init__(self) -> None:
        self._locks: dict[date, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, target: date) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(target)
            if lock is None:
                lock = threading.Lock()
                self._locks[target] = lock
            return lock

    def discard_outside(self, session: SessionContext) -> int:
        with self._guard:
            stale = [key for key in self._locks if not session.window.contains(key)]
            for key in stale:
                del self._locks[key]
        return len(stale)


@dataclass
class RecomputeOutcome:
    date: date
    gaps: list[Gap] = field(default_factory=list)
    calendar_available: bool = True
    conflicts: int = 0


class GapService:
    def __init__(
        self,
        store: StateStore,
        calendar: CalendarService,
        guard: CacheLimitGuard,
        bus: EventBus,
        max_workers: int = 3,
    ) -> None:
        self.store = store
        self.calendar = calendar
        self.guard = guard
        self.bus = bus
        self.max_workers = max(1, int(max_workers))
        self.locks = DateLockRegistry()
        self._validation: dict[date, dict[str, Any]] = {}
        self._validation_lock = threading.Lock()

    def recompute_date(self, target: date, prefs: WorkPreferences, session: SessionContext) -> RecomputeOutcome:
        if not session.window.contains(target):
            return RecomputeOutcome(date=target)
        with self.locks.lock_for(target):
            existing = self.store.gaps_for_date(target, touch=False)
            tasks = self.store.tasks_for_date(target)
            busy = self.calendar.get_busy_blocks(target, prefs, session)
            computed = optimize(reconcile(target, tasks, busy.blocks, prefs, session.window), prefs)
            gaps, conflicts = merge_user_gaps(existing, computed)
            self.store.replace_gaps(target, gaps)
            self._remember_validation(validate_gaps(target, gaps, prefs))
        if conflicts:
            logger.info("Kept %d user-edited gaps on %s over computed ones", conflicts, target)
        self._publish(target, gaps, busy.available)
        return RecomputeOutcome(date=target, gaps=gaps, calendar_available=busy.available, conflicts=conflicts)

    def gaps_for_date(self, target: date, prefs: WorkPreferences, session: SessionContext) -> list[Gap]:
        """Stored gaps for ``target``, computing them on first request."""
        if not session.window.contains(target):
            return []
        if self.store.has_gaps(target):
            return self.store.gaps_for_date(target)
        return self.recompute_date(target, prefs, session).gaps

    def recompute_window(
        self,
        prefs: WorkPreferences,
        session: SessionContext,
        dates: list[date] | None = None,
    ) -> list[RecomputeOutcome]:
        targets = [item for item in (dates or session.window.dates()) if session.window.contains(item)]
        outcomes: list[RecomputeOutcome] = []
        if session.phase == "cold" and session.today in targets:
            targets.remove(session.today)
            outcomes.append(self.recompute_date(session.today, prefs, session))
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gaply-gaps") as pool:
            futures = {item: pool.submit(self.recompute_date, item, prefs, session) for item in targets}
            for item, future in futures.items():
                try:
                    outcomes.append(future.result())
                except Exception:
                    logger.exception("Gap recompute failed for %s", item)
        return sorted(outcomes, key=lambda outcome: outcome.date)

    def apply_preference_patch(
        self,
        old: WorkPreferences,
        new: WorkPreferences,
        session: SessionContext,
        dates: list[date] | None = None,
    ) -> int:
        """Patch stored gaps in place after a work-hours edit, without a provider round trip."""
        patched = 0
        for target in dates or session.window.dates():
            if not session.window.contains(target):
                continue
            with self.locks.lock_for(target):
                existing = self.store.gaps_for_date(target, touch=False)
                busy = (self.calendar.cache.get_stale(target) or []) if new.subtract_busy_blocks else []
                tasks = self.store.tasks_for_date(target)
                if existing:
                    gaps = handle_preference_change(
                        target, existing, old, new, session.window, tasks=tasks, busy_blocks=busy
                    )
                else:
                    # nothing stored to patch: the whole day has to come from the new hours
                    gaps = optimize(reconcile(target, tasks, busy, new, session.window), new)
                self.store.replace_gaps(target, gaps)
                self._remember_validation(validate_gaps(target, gaps, new))
            self._publish(target, gaps, True)
            patched += 1
        return patched

    def cleanup_window(self, session: SessionContext) -> dict[str, int]:
        removed_gaps = self.store.delete_gaps_outside(session.window)
        removed_busy = self.calendar.cache.cleanup(session.window)
        with self._validation_lock:
            stale = [key for key in self._validation if not session.window.contains(key)]
            for key in stale:
                del self._validation[key]
        self.locks.discard_outside(session)
        if removed_gaps or removed_busy:
            logger.info("Window cleanup removed %d gaps and %d busy cache dates", removed_gaps, removed_busy)
        return {"gaps": removed_gaps, "busy_dates": removed_busy, "validation_results": len(stale)}

    def refresh_usage(self) -> None:
        self.guard.update_usage("tasks", self.store.task_count())
        self.guard.update_usage("gaps", self.store.gap_count())
        self.guard.update_usage("busy_blocks", self.calendar.cache.block_count())
        with self._validation_lock:
            self.guard.update_usage("validation_results", len(self._validation))
        self.guard.update_usage("storage_bytes", self.store.storage_bytes())

    def run_maintenance(self, session: SessionContext) -> dict[str, Any]:
        report: dict[str, Any] = {"purged": None, "evicted": {}, "hints": []}
        self.refresh_usage()
        try:
            self.guard.check_hard_ceiling()
        except StorageLimitExceeded as exc:
            logger.warning("%s; purging data outside the rolling window", exc)
            report["purged"] = self.cleanup_window(session)
            self.store.record_audit_event(
                scope="storage",
                subject=exc.collection,
                action="purge_outside_window",
                details={"current": exc.current, "limit": exc.limit, **report["purged"]},
            )
            self.refresh_usage()

        if not self.guard.needs_cleanup():
            return report
        for violation in self.guard.check_violations():
            name = violation.collection
            if name == "gaps":
                candidates = [
                    row
                    for row in self.store.gap_access_stats()
                    if not row.get("pinned") and row["key"] != session.today.isoformat()
                ]
                plan = self.guard.plan_eviction(name, candidates)
                self.store.delete_gap_dates(plan.keys)
            elif name == "busy_blocks":
                plan = self.guard.plan_eviction(name, self.calendar.cache.access_stats())
                self.calendar.cache.evict(plan.keys)
            elif name == "validation_results":
                plan = self.guard.plan_eviction(name, self._validation_stats())
                self._drop_validation(plan.keys)
            else:
                report["hints"].append(violation.to_dict())
                continue
            if plan.keys:
                report["evicted"][name] = plan.keys
                self.store.record_audit_event(
                    scope="storage",
                    subject=name,
                    action="evict_cache_entries",
                    details={"keys": plan.keys, "freed": plan.freed},
                )
        self.refresh_usage()
        return report

    def validation_report(self, target: date) -> GapValidation | None:
        with self._validation_lock:
            entry = self._validation.get(target)
            if entry is None:
                return None
            entry["access_count"] += 1
            entry["last_accessed"] = serialize_datetime(utc_now())
            return entry["report"]

    def _remember_validation(self, report: GapValidation) -> None:
        if not report.valid:
            logger.warning("Gap validation failed for %s: %s", report.date, "; ".join(report.errors))
        with self._validation_lock:
            previous = self._validation.get(report.date, {})
            self._validation[report.date] = {
                "report": report,
                "access_count": previous.get("access_count", 0),
                "last_accessed": serialize_datetime(utc_now()),
            }

    def _validation_stats(self) -> list[dict[str, Any]]:
        with self._validation_lock:
            return [
                {
                    "key": key.isoformat(),
                    "size": 1,
                    "access_count": entry["access_count"],
                    "last_accessed": entry["last_accessed"],
                }
                for key, entry in self._validation.items()
            ]

    def _drop_validation(self, keys: list[str]) -> None:
        with self._validation_lock:
            for key in keys:
                self._validation.pop(date.fromisoformat(key), None)

    def _publish(self, target: date, gaps: list[Gap], calendar_available: bool) -> None:
        self.bus.publish(
            GAPS_UPDATED,
            {
                "date": target.isoformat(),
                "gaps": [gap.to_dict() for gap in gaps],
                "calendar_available": calendar_available,
            },
        )
