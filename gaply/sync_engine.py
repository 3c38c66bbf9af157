from __future__ import annotations

import json
import logging
import threading
import traceback
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from gaply.busy_cache import BusyBlockCache
from gaply.cache_limits import CacheLimitGuard
from gaply.calendar_provider import CalDAVCalendarProvider
from gaply.calendar_service import BUSY_SHAPING_FIELDS, CalendarService
from gaply.change_impact import HIGH_IMPACT_FIELDS, ChangeDetectionResult, classify
from gaply.config_manager import ConfigManager
from gaply.events import PREFERENCE_CHANGE_SUMMARY, EventBus
from gaply.gap_service import GapService, RecomputeOutcome
from gaply.models import (
    AppConfig,
    Gap,
    SessionContext,
    SyncResult,
    Task,
    WorkPreferences,
    canonical_preference_keys,
    utc_now,
)
from gaply.reconciler import ReconciliationStore
from gaply.remote_client import RemoteClient
from gaply.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    fingerprint: str
    calendar: CalendarService
    gaps: GapService
    reconciliation: ReconciliationStore


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        bus: EventBus | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.bus = bus or EventBus()
        self._runtime: Runtime | None = None
        self._session: SessionContext | None = None
        self._lock = threading.RLock()

    def _build_runtime(self, config: AppConfig) -> Runtime:
        fingerprint = json.dumps(config.to_dict(), sort_keys=True)
        with self._lock:
            if self._runtime is not None and self._runtime.fingerprint == fingerprint:
                return self._runtime
            if self._runtime is not None:
                self._runtime.calendar.shutdown()
            provider = None
            if config.caldav.base_url and config.caldav.username:
                provider = CalDAVCalendarProvider(config.caldav)
            cache = BusyBlockCache(self.state_store, ttl_minutes=config.calendar.cache_ttl_minutes)
            calendar = CalendarService(provider, cache, config.calendar, store=self.state_store)
            gaps = GapService(
                self.state_store,
                calendar,
                CacheLimitGuard(config.cache_limits),
                self.bus,
                max_workers=config.sync.max_workers,
            )
            remote = RemoteClient(config.remote) if config.remote.base_url else None
            self._runtime = Runtime(
                fingerprint=fingerprint,
                calendar=calendar,
                gaps=gaps,
                reconciliation=ReconciliationStore(self.state_store, remote),
            )
            return self._runtime

    def runtime(self) -> Runtime:
        return self._build_runtime(self.config_manager.load())

    def session(self, now: datetime | None = None) -> SessionContext:
        """Current session; a new day slides the window but keeps the warm phase."""
        config = self.config_manager.load()
        fresh = SessionContext.begin(now or utc_now(), config.sync.timezone, config.sync.window_days)
        with self._lock:
            if self._session is None or self._session.window != fresh.window:
                phase = self._session.phase if self._session is not None else "cold"
                self._session = SessionContext(today=fresh.today, window=fresh.window, phase=phase)
            return self._session

    def preferences(self) -> WorkPreferences:
        stored = self.state_store.load_preferences()
        if stored is not None:
            return stored
        return WorkPreferences(timezone=self.config_manager.load().sync.timezone)

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id = self.state_store.start_sync_run(trigger=trigger)
        changes_applied = 0
        conflicts = 0
        try:
            runtime = self.runtime()
            session = self.session()
            previous_prefs = self.preferences()

            report = runtime.reconciliation.reconnect(session)
            conflicts += report.conflicts_resolved
            prefs = self.preferences()
            if report.preferences_replaced:
                self._announce(classify(previous_prefs, prefs, session.today, session.window))

            runtime.gaps.cleanup_window(session)
            calendar_ok = runtime.calendar.preload(prefs, session)
            outcomes = runtime.gaps.recompute_window(prefs, session)
            changes_applied = sum(len(outcome.gaps) for outcome in outcomes)
            conflicts += sum(outcome.conflicts for outcome in outcomes)
            maintenance = runtime.gaps.run_maintenance(session)
            with self._lock:
                self._session = session.warm()

            message = f"Recomputed {len(outcomes)} dates, {changes_applied} gaps."
            if report.remote_available:
                message += f" Synced {report.tasks_synced} tasks, {report.gaps_synced} remote gaps."
            elif runtime.reconciliation.remote_enabled():
                message += " Remote unavailable; kept local data."
            if not calendar_ok:
                message += " Calendar unavailable; used cached busy blocks."
            if maintenance["evicted"] or maintenance["purged"]:
                message += " Cache maintenance ran."
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=_elapsed_ms(started_at),
                changes_applied=changes_applied,
                conflicts=conflicts,
            )
            logger.info("Sync run %s (%s): %s", run_id, trigger, message)
            return SyncResult(
                status="success",
                message=f"{message} run_id={run_id}",
                duration_ms=_elapsed_ms(started_at),
                changes_applied=changes_applied,
                conflicts=conflicts,
                trigger=trigger,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync run %s (%s) failed", run_id, trigger)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                conflicts=conflicts,
            )
            self.state_store.record_audit_event(
                scope="system",
                subject="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                changes_applied=changes_applied,
                conflicts=conflicts,
                trigger=trigger,
            )

    def update_preferences(self, payload: dict[str, Any]) -> ChangeDetectionResult:
        """Store edited preferences, patch work-hour changes in place and report the impact."""
        runtime = self.runtime()
        session = self.session()
        old = self.preferences()
        merged = {**old.to_dict(), **canonical_preference_keys(payload)}
        merged["updated_at"] = utc_now().isoformat()
        new = WorkPreferences.from_dict(merged)
        result = classify(old, new, session.today, session.window)
        self.state_store.save_preferences(new)
        if not result.has_changes:
            return result

        changed_fields = {change.field for change in result.changes}
        if changed_fields <= HIGH_IMPACT_FIELDS:
            runtime.gaps.apply_preference_patch(old, new, session)
        if changed_fields & BUSY_SHAPING_FIELDS:
            # cached blocks were normalized under the old preferences
            runtime.calendar.invalidate(session.window.dates())
        self.state_store.record_audit_event(
            scope="preferences",
            subject="user",
            action="preference_change",
            details=result.to_dict(),
        )
        self._announce(result)
        runtime.reconciliation.push_preferences(new)
        return result

    def recompute_dates(self, dates: list[date] | None = None) -> list[RecomputeOutcome]:
        runtime = self.runtime()
        return runtime.gaps.recompute_window(self.preferences(), self.session(), dates)

    def recompute_date(self, target: date) -> RecomputeOutcome:
        return self.runtime().gaps.recompute_date(target, self.preferences(), self.session())

    def gaps_for(self, target: date) -> list[Gap]:
        return self.runtime().gaps.gaps_for_date(target, self.preferences(), self.session())

    def upsert_task(self, task: Task) -> RecomputeOutcome | None:
        self.state_store.upsert_tasks([task])
        session = self.session()
        if task.due_date is None or not session.window.contains(task.due_date):
            return None
        return self.recompute_date(task.due_date)

    def storage_health(self) -> dict[str, Any]:
        runtime = self.runtime()
        runtime.gaps.refresh_usage()
        health = runtime.gaps.guard.health_status()
        health["violations"] = [item.to_dict() for item in runtime.gaps.guard.check_violations()]
        health["needs_cleanup"] = runtime.gaps.guard.needs_cleanup()
        return health

    def shutdown(self) -> None:
        with self._lock:
            if self._runtime is not None:
                self._runtime.calendar.shutdown()
                self._runtime = None

    def _announce(self, result: ChangeDetectionResult) -> None:
        if result.has_changes:
            self.bus.publish(PREFERENCE_CHANGE_SUMMARY, result.to_dict())
