from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from gaply.errors import StorageLimitExceeded
from gaply.models import CacheLimitsConfig

logger = logging.getLogger(__name__)

REMEDIATION_HINTS = {
    "tasks": "Archive or delete completed tasks.",
    "gaps": "Delete gaps outside the rolling window or evict rarely viewed dates.",
    "busy_blocks": "Clear cached busy blocks for dates that are rarely viewed.",
    "validation_results": "Drop cached gap validation reports.",
    "storage_bytes": "Purge data outside the rolling window to shrink local storage.",
}


@dataclass
class LimitViolation:
    collection: str
    current: int
    limit: int
    percentage: float
    severity: str
    hint: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "current": self.current,
            "limit": self.limit,
            "percentage": self.percentage,
            "severity": self.severity,
            "hint": self.hint,
        }


@dataclass
class EvictionPlan:
    collection: str
    keys: list[str] = field(default_factory=list)
    freed: int = 0


def _rank(candidate: Mapping[str, Any]) -> tuple[int, str]:
    return int(candidate.get("access_count") or 0), str(candidate.get("last_accessed") or "")


class CacheLimitGuard:
    """Tracks usage of every cached collection against its ceiling.

    The guard only measures and plans; the owning store performs evictions.
    """

    def __init__(self, config: CacheLimitsConfig) -> None:
        self.config = config
        self.limits = dict(config.collection_limits())
        self.limits["storage_bytes"] = config.max_storage_bytes
        self._usage: dict[str, int] = {name: 0 for name in self.limits}
        self._lock = threading.Lock()

    def update_usage(self, collection: str, current: int) -> None:
        if collection not in self.limits:
            raise KeyError(f"unknown collection: {collection}")
        with self._lock:
            self._usage[collection] = max(0, int(current))

    def usage(self) -> dict[str, int]:
        with self._lock:
            return dict(self._usage)

    def percentage(self, collection: str) -> float:
        limit = self.limits[collection]
        return round(self._usage[collection] / limit * 100, 1)

    def check_violations(self) -> list[LimitViolation]:
        """Collections at or above the cleanup threshold, with a remediation hint."""
        violations: list[LimitViolation] = []
        for name, current in self.usage().items():
            limit = self.limits[name]
            if current < limit * self.config.cleanup_threshold:
                continue
            violations.append(
                LimitViolation(
                    collection=name,
                    current=current,
                    limit=limit,
                    percentage=self.percentage(name),
                    severity="critical" if current > limit else "warning",
                    hint=REMEDIATION_HINTS[name],
                )
            )
        return violations

    def needs_cleanup(self) -> bool:
        return any(current > self.limits[name] * self.config.cleanup_threshold for name, current in self.usage().items())

    def check_hard_ceiling(self) -> None:
        for name, current in self.usage().items():
            ceiling = int(self.limits[name] * self.config.hard_ceiling)
            if current > ceiling:
                raise StorageLimitExceeded(name, current, ceiling)

    def health_status(self) -> dict[str, Any]:
        collections: dict[str, Any] = {}
        overall = "healthy"
        for name, current in self.usage().items():
            limit = self.limits[name]
            ratio = current / limit
            if ratio > self.config.hard_ceiling:
                status = "critical"
            elif ratio > self.config.cleanup_threshold:
                status = "warning"
            else:
                status = "healthy"
            if status == "critical" or (status == "warning" and overall == "healthy"):
                overall = status
            collections[name] = {
                "current": current,
                "limit": limit,
                "percentage": self.percentage(name),
                "status": status,
            }
        return {"status": overall, "collections": collections}

    def plan_eviction(self, collection: str, candidates: Iterable[Mapping[str, Any]]) -> EvictionPlan:
        """Least-used-first eviction in batches until usage is back under the threshold."""
        ranked = sorted(candidates, key=_rank)
        plan = EvictionPlan(collection=collection)
        if not ranked:
            return plan
        target = int(self.limits[collection] * self.config.cleanup_threshold)
        current = self.usage()[collection]
        batch = max(1, math.ceil(len(ranked) * self.config.eviction_fraction))
        index = 0
        while current > target and index < len(ranked):
            for candidate in ranked[index : index + batch]:
                size = max(1, int(candidate.get("size") or 1))
                plan.keys.append(str(candidate["key"]))
                plan.freed += size
                current -= size
            index += batch
        if plan.keys:
            logger.info("Planned eviction of %d %s entries (%d items)", len(plan.keys), collection, plan.freed)
        return plan
