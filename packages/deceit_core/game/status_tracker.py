"""Authoritative in-memory record of where every agent currently is."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator
import logging
import threading

from .errors import IllegalTransition
from .models import (
    AGENT_STATUSES,
    STATUS_IDLE,
    STATUS_IN_GAME,
    STATUS_QUEUED,
    AgentStatusRecord,
    utc_now,
)


logger = logging.getLogger("deceit_core.status_tracker")

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_IDLE: frozenset({STATUS_QUEUED}),
    STATUS_QUEUED: frozenset({STATUS_IDLE, STATUS_IN_GAME}),
    STATUS_IN_GAME: frozenset({STATUS_IDLE}),
}


class AgentStatusTracker:
    """Validated status transitions, one lock per agent.

    Reads hand out copies. Composite operations that must stay consistent with
    the queue (enqueue + transition, dequeue + transition) hold
    ``agent_lock(agent_id)`` for their whole duration.
    """

    def __init__(self, *, now_fn: Callable = utc_now) -> None:
        self._now = now_fn
        self._records: dict[str, AgentStatusRecord] = {}
        self._agent_locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, agent_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._agent_locks.get(agent_id)
            if lock is None:
                lock = threading.RLock()
                self._agent_locks[agent_id] = lock
            return lock

    @contextmanager
    def agent_lock(self, agent_id: str) -> Iterator[None]:
        lock = self._lock_for(str(agent_id))
        with lock:
            yield

    def _record(self, agent_id: str) -> AgentStatusRecord:
        with self._registry_lock:
            record = self._records.get(agent_id)
            if record is None:
                record = AgentStatusRecord(agent_id=agent_id, last_update_time=self._now())
                self._records[agent_id] = record
            return record

    def get_status(self, agent_id: str) -> AgentStatusRecord:
        aid = str(agent_id)
        with self.agent_lock(aid):
            return replace(self._record(aid))

    def transition(self, agent_id: str, desired: str, room_id: str | None = None) -> AgentStatusRecord:
        aid = str(agent_id)
        if desired not in AGENT_STATUSES:
            raise ValueError(f"Unknown agent status: {desired}")
        with self.agent_lock(aid):
            record = self._record(aid)
            if desired not in ALLOWED_TRANSITIONS[record.status]:
                raise IllegalTransition(agent_id=aid, current=record.status, desired=desired)
            previous = record.status
            record.status = desired
            record.room_id = str(room_id) if (desired == STATUS_IN_GAME and room_id) else None
            record.last_update_time = self._now()
            logger.debug("[STATUS] %s: %s -> %s (room=%s)", aid, previous, desired, record.room_id)
            return replace(record)

    def compare_and_transition(
        self,
        agent_id: str,
        *,
        expected: str,
        desired: str,
        room_id: str | None = None,
    ) -> bool:
        """Transition only when the current status is ``expected``; False otherwise."""
        aid = str(agent_id)
        with self.agent_lock(aid):
            if self._record(aid).status != expected:
                return False
            self.transition(aid, desired, room_id)
            return True

    def snapshot(self) -> list[AgentStatusRecord]:
        with self._registry_lock:
            return [replace(record) for record in self._records.values()]

    def reset(self, agent_id: str) -> AgentStatusRecord:
        aid = str(agent_id)
        with self.agent_lock(aid):
            record = self._record(aid)
            record.status = STATUS_IDLE
            record.room_id = None
            record.last_update_time = self._now()
            return replace(record)
