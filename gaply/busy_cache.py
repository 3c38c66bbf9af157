from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from gaply.errors import ValidationError
from gaply.models import BusyBlock, RollingWindow, parse_iso_datetime, serialize_datetime, utc_now
from gaply.state_store import StateStore

logger = logging.getLogger(__name__)


class BusyBlockCache:
    """Per-date cache of normalized busy blocks with a time-to-live."""

    def __init__(
        self,
        store: StateStore,
        ttl_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=max(1, int(ttl_minutes)))
        self._clock = clock

    def get(self, target: date) -> list[BusyBlock] | None:
        """Fresh blocks for ``target``, or ``None`` when absent, unreadable or expired."""
        entry = self._read(target)
        if entry is None:
            return None
        blocks, cached_at = entry
        if self._clock() - cached_at > self.ttl:
            logger.debug("Busy cache entry for %s expired", target)
            return None
        return blocks

    def get_stale(self, target: date) -> list[BusyBlock] | None:
        entry = self._read(target)
        return entry[0] if entry else None

    def set(self, target: date, blocks: Iterable[BusyBlock]) -> None:
        items = list(blocks)
        payload = json.dumps([block.to_dict() for block in items], ensure_ascii=False)
        self.store.put_busy_entry(target, payload, len(items), serialize_datetime(self._clock()) or "")

    def invalidate(self, target: date) -> None:
        self.store.delete_busy_dates([target.isoformat()])

    def cleanup(self, window: RollingWindow) -> int:
        stale = [key for key in self.store.busy_dates() if not self._in_window(key, window)]
        removed = self.store.delete_busy_dates(stale)
        if stale:
            logger.info("Removed %d busy cache dates outside %s..%s", len(stale), window.start, window.end)
        return removed

    def evict(self, keys: Iterable[str]) -> int:
        return self.store.delete_busy_dates(list(keys))

    def block_count(self) -> int:
        return self.store.busy_block_count()

    def access_stats(self) -> list[dict[str, Any]]:
        return self.store.busy_access_stats()

    def _read(self, target: date) -> tuple[list[BusyBlock], datetime] | None:
        row = self.store.get_busy_entry(target)
        if row is None:
            return None
        try:
            cached_at = parse_iso_datetime(row["cached_at"])
            payload = json.loads(row["payload_json"])
            blocks = [BusyBlock.from_dict(item) for item in payload]
        except (TypeError, KeyError, ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable busy cache entry for %s: %s", target, exc)
            return None
        if cached_at is None:
            return None
        return blocks, cached_at

    @staticmethod
    def _in_window(key: str, window: RollingWindow) -> bool:
        try:
            return window.contains(date.fromisoformat(key))
        except ValueError:
            return False
