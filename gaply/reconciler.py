from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from gaply.errors import RemoteError
from gaply.models import Gap, RollingWindow, SessionContext, Task, WorkPreferences
from gaply.remote_client import RemoteClient
from gaply.state_store import StateStore

logger = logging.getLogger(__name__)


def _strictly_newer(candidate: datetime | None, current: datetime | None) -> bool:
    if candidate is None:
        return False
    return current is None or candidate > current


def _latest(gaps: Iterable[Gap]) -> datetime | None:
    stamps = [gap.updated_at for gap in gaps if gap.updated_at is not None]
    return max(stamps) if stamps else None


@dataclass
class TaskMerge:
    tasks: list[Task]
    added: int = 0
    remote_wins: int = 0
    conflicts: int = 0


@dataclass
class GapMerge:
    gaps: dict[date, list[Gap]]
    replaced_dates: list[date] = field(default_factory=list)
    conflicts: int = 0


def merge_tasks(local: Iterable[Task], remote: Iterable[Task]) -> TaskMerge:
    """Merge by id; the remote copy wins only when its ``updated_at`` is strictly newer."""
    merged = {task.id: task for task in local}
    result = TaskMerge(tasks=[])
    for incoming in remote:
        current = merged.get(incoming.id)
        if current is None:
            merged[incoming.id] = incoming
            result.added += 1
            continue
        if current == incoming:
            continue
        result.conflicts += 1
        if _strictly_newer(incoming.updated_at, current.updated_at):
            merged[incoming.id] = incoming
            result.remote_wins += 1
    result.tasks = [merged[key] for key in sorted(merged)]
    return result


def merge_gaps(
    local: dict[date, list[Gap]],
    remote: dict[date, list[Gap]],
    window: RollingWindow,
) -> GapMerge:
    """Merge per date. A date the remote has nothing for keeps its local gaps."""
    merged = {key: list(gaps) for key, gaps in local.items()}
    result = GapMerge(gaps=merged)
    for target in sorted(remote):
        incoming = remote[target]
        if not incoming or not window.contains(target):
            continue
        current = merged.get(target) or []
        if not current:
            merged[target] = sorted(incoming, key=lambda gap: gap.start)
            result.replaced_dates.append(target)
            continue
        if _strictly_newer(_latest(incoming), _latest(current)):
            merged[target] = sorted(incoming, key=lambda gap: gap.start)
            result.replaced_dates.append(target)
            result.conflicts += 1
    return result


def merge_preferences(
    local: WorkPreferences | None,
    remote: WorkPreferences | None,
) -> tuple[WorkPreferences | None, bool]:
    if remote is None:
        return local, False
    return remote, remote != local


@dataclass
class ReconcileReport:
    tasks_synced: int = 0
    gaps_synced: int = 0
    conflicts_resolved: int = 0
    preferences_replaced: bool = False
    errors: list[str] = field(default_factory=list)
    remote_available: bool = True
    changed_dates: list[date] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks_synced": self.tasks_synced,
            "gaps_synced": self.gaps_synced,
            "conflicts_resolved": self.conflicts_resolved,
            "preferences_replaced": self.preferences_replaced,
            "errors": list(self.errors),
            "remote_available": self.remote_available,
            "changed_dates": [item.isoformat() for item in self.changed_dates],
        }


class ReconciliationStore:
    """Local copy of tasks, gaps and preferences, merged with the remote copy on reconnect."""

    def __init__(self, store: StateStore, remote: RemoteClient | None = None) -> None:
        self.store = store
        self.remote = remote

    def remote_enabled(self) -> bool:
        return self.remote is not None and self.remote.is_configured()

    def reconnect(self, session: SessionContext) -> ReconcileReport:
        report = ReconcileReport()
        remote = self.remote
        if remote is None or not remote.is_configured():
            report.remote_available = False
            return report

        local_tasks = self.store.list_tasks()
        local_gaps = self.store.all_gaps()
        local_prefs = self.store.load_preferences()

        remote_tasks = self._fetch(report, "tasks", remote.get_tasks)
        remote_gaps = self._fetch(report, "gaps", remote.get_all_gaps)
        remote_prefs = self._fetch(report, "preferences", remote.get_preferences)
        if len(report.errors) == 3:
            report.remote_available = False
            logger.warning("Remote unreachable; keeping local data only")
            return report

        changed: set[date] = set()
        tasks = local_tasks
        if remote_tasks is not None:
            task_merge = merge_tasks(local_tasks, remote_tasks)
            tasks = task_merge.tasks
            before = {task.id: task for task in local_tasks}
            changed.update(
                task.due_date for task in tasks if task.due_date and before.get(task.id) != task
            )
            changed.update(
                old.due_date for old in local_tasks if old.due_date and old not in tasks
            )
            self.store.replace_tasks(tasks)
            report.tasks_synced = len(tasks)
            report.conflicts_resolved += task_merge.conflicts

        gaps = local_gaps
        if remote_gaps is not None:
            gap_merge = merge_gaps(local_gaps, remote_gaps, session.window)
            gaps = gap_merge.gaps
            for target in gap_merge.replaced_dates:
                report.gaps_synced += self.store.replace_gaps(target, gaps[target])
            report.conflicts_resolved += gap_merge.conflicts

        if remote_prefs is not None:
            prefs, replaced = merge_preferences(local_prefs, remote_prefs)
            if replaced and prefs is not None:
                self.store.save_preferences(prefs)
                report.preferences_replaced = True

        report.changed_dates = sorted(target for target in changed if session.window.contains(target))
        if report.conflicts_resolved or report.preferences_replaced:
            self.store.record_audit_event(
                scope="sync",
                subject="reconnect",
                action="reconcile_remote",
                details=report.to_dict(),
            )
        self._push(remote, report, tasks if remote_tasks is not None else None, gaps, session)
        return report

    def _fetch(self, report: ReconcileReport, name: str, func: Any) -> Any:
        try:
            return func()
        except RemoteError as exc:
            logger.warning("Remote %s fetch failed: %s", name, exc)
            report.errors.append(f"{name}: {exc}")
            return None

    def _push(
        self,
        remote: RemoteClient,
        report: ReconcileReport,
        tasks: list[Task] | None,
        gaps: dict[date, list[Gap]],
        session: SessionContext,
    ) -> None:
        try:
            if tasks is not None:
                remote.save_tasks(tasks, replace_all=True)
            for target in sorted(gaps):
                if session.window.contains(target) and gaps[target]:
                    remote.save_gaps(gaps[target], target)
        except RemoteError as exc:
            logger.warning("Pushing merged data to remote failed: %s", exc)
            report.errors.append(f"push: {exc}")

    def push_preferences(self, prefs: WorkPreferences) -> bool:
        remote = self.remote
        if remote is None or not remote.is_configured():
            return False
        try:
            remote.save_preferences(prefs)
        except RemoteError as exc:
            logger.warning("Saving preferences remotely failed: %s", exc)
            return False
        return True
