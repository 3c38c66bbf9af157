from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import date
from typing import Any, Mapping

from gaply.models import RollingWindow, WorkPreferences

logger = logging.getLogger(__name__)

HIGH_IMPACT_FIELDS = frozenset({"work_start", "work_end", "working_days"})
MEDIUM_IMPACT_FIELDS = frozenset(
    {
        "min_gap_minutes",
        "buffer_minutes",
        "subtract_busy_blocks",
        "included_calendar_ids",
        "block_tentative",
        "dedupe_strategy",
    }
)
UNTRACKED_FIELDS = frozenset({"updated_at"})


@dataclass
class PreferenceChangeEvent:
    field: str
    old: Any
    new: Any
    impact: str
    requires_recalculation: bool
    requires_immediate_update: bool
    affected_dates: list[date] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "old": self.old,
            "new": self.new,
            "impact": self.impact,
            "requires_recalculation": self.requires_recalculation,
            "requires_immediate_update": self.requires_immediate_update,
            "affected_dates": [item.isoformat() for item in self.affected_dates],
        }


@dataclass
class ChangeDetectionResult:
    has_changes: bool
    changes: list[PreferenceChangeEvent]
    requires_recalculation: bool
    requires_immediate_update: bool
    summary: str
    affected_range: tuple[date, date] | None = None

    @property
    def affected_dates(self) -> list[date]:
        return sorted({item for change in self.changes for item in change.affected_dates})

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_changes": self.has_changes,
            "changes": [change.to_dict() for change in self.changes],
            "requires_recalculation": self.requires_recalculation,
            "requires_immediate_update": self.requires_immediate_update,
            "summary": self.summary,
            "affected_range": (
                {"start": self.affected_range[0].isoformat(), "end": self.affected_range[1].isoformat()}
                if self.affected_range
                else None
            ),
        }


def impact_of(name: str) -> str:
    if name in HIGH_IMPACT_FIELDS:
        return "high"
    if name in MEDIUM_IMPACT_FIELDS:
        return "medium"
    return "low"


def _affected_dates(impact: str, today: date, window: RollingWindow) -> list[date]:
    if impact == "high":
        return window.dates()
    if impact == "medium":
        return [item for item in window.dates() if item >= today]
    return []


def _plural(count: int, label: str) -> str:
    return f"{count} {label} change{'s' if count != 1 else ''}"


def summarize(changes: list[PreferenceChangeEvent]) -> str:
    if not changes:
        return "No changes detected"
    counts = {impact: sum(1 for change in changes if change.impact == impact) for impact in ("high", "medium", "low")}
    parts = []
    if counts["high"]:
        parts.append(_plural(counts["high"], "critical"))
    if counts["medium"]:
        parts.append(_plural(counts["medium"], "medium"))
    if counts["low"]:
        parts.append(_plural(counts["low"], "minor"))
    return ", ".join(parts)


def _coerce(prefs: WorkPreferences | Mapping[str, Any] | None) -> WorkPreferences:
    if isinstance(prefs, WorkPreferences):
        return prefs
    return WorkPreferences.from_dict(prefs)


def classify(
    old: WorkPreferences | Mapping[str, Any] | None,
    new: WorkPreferences | Mapping[str, Any] | None,
    today: date,
    window: RollingWindow,
) -> ChangeDetectionResult:
    """Compare two preference snapshots and decide how gaps must be recomputed.

    Raw mappings go through the same boundary parsing as stored preferences,
    so a key that was never set compares equal to its default and working
    days compare as sets.
    """
    before = _coerce(old)
    after = _coerce(new)
    old_values = before.to_dict()
    new_values = after.to_dict()

    changes: list[PreferenceChangeEvent] = []
    for item in fields(WorkPreferences):
        name = item.name
        if name in UNTRACKED_FIELDS or getattr(before, name) == getattr(after, name):
            continue
        impact = impact_of(name)
        changes.append(
            PreferenceChangeEvent(
                field=name,
                old=old_values[name],
                new=new_values[name],
                impact=impact,
                requires_recalculation=impact != "low",
                requires_immediate_update=impact == "high",
                affected_dates=_affected_dates(impact, today, window),
            )
        )

    affected = sorted({day for change in changes for day in change.affected_dates})
    result = ChangeDetectionResult(
        has_changes=bool(changes),
        changes=changes,
        requires_recalculation=any(change.requires_recalculation for change in changes),
        requires_immediate_update=any(change.requires_immediate_update for change in changes),
        summary=summarize(changes),
        affected_range=(affected[0], affected[-1]) if affected else None,
    )
    if changes:
        logger.info("Preference change: %s", result.summary)
    return result
