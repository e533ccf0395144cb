"""Score-window grouping and the wait-deadline backfill strategy."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional
import random

from .models import QueueEntry


def _sort_key(entry: QueueEntry) -> tuple[float, datetime, str]:
    return (float(entry.match_score), entry.enqueue_time, entry.agent_id)


def group_by_score_window(
    entries: Iterable[QueueEntry],
    *,
    score_range: float,
    players_per_room: int,
    min_players: int,
) -> tuple[list[list[QueueEntry]], list[QueueEntry]]:
    """Greedy grouping over score-sorted candidates.

    Every unmatched candidate proposes the group of itself plus the closest
    others within ``score_range``, capped at ``players_per_room``. The
    largest proposal is taken (ties go to the lowest score) once it reaches
    ``min_players``, and the scan restarts over what remains. Returns
    ``(groups, leftovers)``.
    """
    working = sorted(entries, key=_sort_key)
    groups: list[list[QueueEntry]] = []
    while working:
        best: list[QueueEntry] = []
        for candidate in working:
            proposal = window_members(candidate, working, score_range=score_range, limit=players_per_room)
            if len(proposal) > len(best):
                best = proposal
        if len(best) < min_players:
            break
        groups.append(best)
        taken = {entry.agent_id for entry in best}
        working = [entry for entry in working if entry.agent_id not in taken]
    return groups, working


class BackfillPolicy:
    """Decides when a waiting human gets topped up with synthetic agents."""

    def __init__(self, *, max_wait_seconds: float, rng: Optional[random.Random] = None) -> None:
        self.max_wait_seconds = max(0.0, float(max_wait_seconds))
        self._rng = rng or random.Random()

    def overdue_seed(self, entries: Iterable[QueueEntry], *, now: datetime) -> QueueEntry | None:
        humans = [entry for entry in entries if not entry.is_synthetic]
        if not humans:
            return None
        earliest = min(humans, key=lambda entry: (entry.enqueue_time, entry.agent_id))
        waited = (now - earliest.enqueue_time).total_seconds()
        return earliest if waited >= self.max_wait_seconds else None

    def pick_synthetic(self, candidates: list[dict[str, Any]], needed: int) -> list[dict[str, Any]]:
        if needed <= 0 or not candidates:
            return []
        pool = sorted(candidates, key=lambda item: str(item.get("agent_id") or ""))
        return self._rng.sample(pool, min(int(needed), len(pool)))


def window_members(
    seed: QueueEntry,
    entries: Iterable[QueueEntry],
    *,
    score_range: float,
    limit: int,
) -> list[QueueEntry]:
    """The seed plus the closest-scored remaining entries inside its window."""
    others = [
        entry
        for entry in entries
        if entry.agent_id != seed.agent_id
        and abs(float(entry.match_score) - float(seed.match_score)) <= float(score_range)
    ]
    others.sort(key=lambda entry: (abs(float(entry.match_score) - float(seed.match_score)), entry.enqueue_time))
    return [seed] + others[: max(0, int(limit) - 1)]
