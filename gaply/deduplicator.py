from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from gaply.models import BusyBlock

logger = logging.getLogger(__name__)


@dataclass
class DedupeDecision:
    key: str
    kept: str
    dropped: list[str]
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "kept": self.kept, "dropped": list(self.dropped), "reason": self.reason}


@dataclass
class DedupeResult:
    blocks: list[BusyBlock] = field(default_factory=list)
    decisions: list[DedupeDecision] = field(default_factory=list)

    @property
    def dropped_count(self) -> int:
        return sum(len(decision.dropped) for decision in self.decisions)


def _group_key(block: BusyBlock) -> str:
    return f"{block.date.isoformat()}_{block.start}_{block.end}"


def _select(group: list[BusyBlock], strategy: str) -> BusyBlock:
    if strategy == "prefer_google":
        preferred = [block for block in group if block.source == "google"]
    elif strategy == "prefer_device":
        preferred = [block for block in group if block.source == "device"]
    else:
        preferred = [block for block in group if block.transparency != "free" and block.status != "tentative"]
    return preferred[0] if preferred else group[0]


def deduplicate_events(blocks: Iterable[BusyBlock], strategy: str = "auto") -> DedupeResult:
    """Collapse blocks mirrored across calendars onto one representative.

    Blocks are the same event only when date, start and end match exactly. With
    ``strategy="none"`` every block is kept. Otherwise each collapsed group
    yields a decision naming the kept identity and the dropped ones, and the
    kept blocks come back in input order.
    """
    items = list(blocks)
    if strategy == "none":
        return DedupeResult(blocks=items)

    groups: dict[str, list[BusyBlock]] = {}
    for block in items:
        groups.setdefault(_group_key(block), []).append(block)

    kept_ids: set[int] = set()
    decisions: list[DedupeDecision] = []
    for key, group in groups.items():
        winner = _select(group, strategy)
        kept_ids.add(id(winner))
        if len(group) == 1:
            continue
        dropped = [block.identity for block in group if block is not winner]
        decisions.append(DedupeDecision(key=key, kept=winner.identity, dropped=dropped, reason=strategy))
        logger.debug("Dedupe %s kept %s dropped %s", key, winner.identity, dropped)

    return DedupeResult(blocks=[block for block in items if id(block) in kept_ids], decisions=decisions)
