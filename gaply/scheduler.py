from __future__ import annotations

import logging
import threading
import time
from datetime import date
from typing import Optional

from gaply.change_impact import ChangeDetectionResult
from gaply.config_manager import ConfigManager
from gaply.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background loop for periodic runs, manual triggers and debounced preference recomputes."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._state_lock = threading.Lock()
        self._manual_requested = False
        self._pending_dates: set[date] = set()
        self._last_edit_at: float | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="gaply-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        with self._state_lock:
            self._manual_requested = True
        self._wake_event.set()

    def notify_preference_change(self, result: ChangeDetectionResult) -> bool:
        """Queue a debounced recompute of the dates a preference edit affects."""
        if not result.requires_recalculation:
            return False
        with self._state_lock:
            self._pending_dates.update(result.affected_dates)
            self._last_edit_at = time.monotonic()
        self._wake_event.set()
        return True

    def pending_dates(self) -> list[date]:
        with self._state_lock:
            return sorted(self._pending_dates)

    def flush_pending(self) -> int:
        """Recompute queued dates now; returns how many dates were recomputed."""
        with self._state_lock:
            dates = sorted(self._pending_dates)
            self._pending_dates.clear()
            self._last_edit_at = None
        if not dates:
            return 0
        outcomes = self.sync_engine.recompute_dates(dates)
        logger.info("Recomputed %d dates after preference change", len(outcomes))
        return len(outcomes)

    def _debounce_remaining(self, debounce_seconds: float) -> float | None:
        with self._state_lock:
            if self._last_edit_at is None:
                return None
            return max(0.0, self._last_edit_at + debounce_seconds - time.monotonic())

    def _loop(self) -> None:
        self.sync_engine.run_once(trigger="startup")
        next_run = time.monotonic() + max(30, int(self.config_manager.load().sync.interval_seconds))

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            timeout = max(0.0, next_run - time.monotonic())
            remaining = self._debounce_remaining(config.sync.debounce_seconds)
            if remaining is not None:
                timeout = min(timeout, remaining)
            self._wake_event.wait(timeout=timeout)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break

            with self._state_lock:
                manual = self._manual_requested
                self._manual_requested = False
            if manual:
                self.sync_engine.run_once(trigger="manual")
                next_run = time.monotonic() + interval_seconds
                continue

            remaining = self._debounce_remaining(config.sync.debounce_seconds)
            if remaining is not None and remaining <= 0:
                try:
                    self.flush_pending()
                except Exception:
                    logger.exception("Debounced preference recompute failed")

            if time.monotonic() >= next_run:
                self.sync_engine.run_once(trigger="scheduled")
                next_run = time.monotonic() + interval_seconds
