"""Background matchmaking loop: pool the queue, group by score, hand off rooms."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional
import logging
import threading
import time
import uuid

from .config import GameConfig
from .errors import GroupAborted, SchedulerCycleStale
from .gateway import PersistenceGateway
from .grouping import BackfillPolicy, group_by_score_window, window_members
from .matching_queue import MatchingQueue
from .models import STATUS_IDLE, STATUS_QUEUED, QueueEntry, to_iso, utc_now
from .room_factory import RoomFactory
from .status_tracker import AgentStatusTracker


logger = logging.getLogger("deceit_core.match_scheduler")


@dataclass
class TickReport:
    tick_id: str
    started_at: str
    skipped: bool = False
    forced_stale_clear: bool = False
    formed_rooms: list[str] = field(default_factory=list)
    aborted_groups: list[list[str]] = field(default_factory=list)
    backfilled_agents: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at,
            "skipped": self.skipped,
            "forced_stale_clear": self.forced_stale_clear,
            "formed_rooms": list(self.formed_rooms),
            "aborted_groups": [list(g) for g in self.aborted_groups],
            "backfilled_agents": list(self.backfilled_agents),
            "error": self.error,
        }


class MatchScheduler:
    def __init__(
        self,
        *,
        gateway: PersistenceGateway,
        tracker: AgentStatusTracker,
        queue: MatchingQueue,
        factory: RoomFactory,
        config: GameConfig,
        backfill_policy: Optional[BackfillPolicy] = None,
        now_fn: Callable[[], datetime] = utc_now,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._tracker = tracker
        self._queue = queue
        self._factory = factory
        self._config = config
        self._backfill = backfill_policy
        self._now = now_fn
        self._monotonic = monotonic_fn

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._guard_lock = threading.Lock()
        self._tick_token: str | None = None
        self._tick_started_mono: float | None = None
        self._last_tick_started_at: str | None = None
        self._last_tick_finished_at: str | None = None
        self._last_error: str | None = None
        self._last_report: TickReport | None = None
        self._instance_id = f"matcher-{uuid.uuid4().hex[:12]}"

    def start(self) -> bool:
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return False
            self._stop_event.clear()
            thread = threading.Thread(
                target=self._run_loop,
                name="deceit-match-scheduler",
                daemon=True,
            )
            thread.start()
            self._thread = thread
            logger.info(
                "[MATCH] Match scheduler started (interval=%.1fs)", self._config.match_interval_seconds
            )
            return True

    def stop(self, *, join_timeout_seconds: float = 3.0) -> bool:
        with self._state_lock:
            thread = self._thread
            if not thread:
                return False
            self._stop_event.set()
        thread.join(timeout=max(0.1, float(join_timeout_seconds)))
        with self._state_lock:
            if self._thread is thread:
                self._thread = None
        logger.info("[MATCH] Match scheduler stopped")
        return True

    def status(self) -> dict[str, object]:
        with self._state_lock:
            running = bool(self._thread and self._thread.is_alive())
            thread_name = self._thread.name if self._thread else None
        with self._guard_lock:
            in_progress = self._tick_token is not None
        return {
            "running": running,
            "thread_name": thread_name,
            "instance_id": self._instance_id,
            "tick_in_progress": in_progress,
            "interval_seconds": self._config.match_interval_seconds,
            "last_tick_started_at": self._last_tick_started_at,
            "last_tick_finished_at": self._last_tick_finished_at,
            "last_error": self._last_error,
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_tick()
            self._stop_event.wait(max(0.05, float(self._config.match_interval_seconds)))

    def _acquire_guard(self, report: TickReport) -> str | None:
        with self._guard_lock:
            if self._tick_token is not None:
                age = self._monotonic() - float(self._tick_started_mono or 0.0)
                if age <= self._config.tick_stale_seconds:
                    return None
                stale = SchedulerCycleStale(
                    f"Tick {self._tick_token} has been running for {age:.1f}s, clearing guard"
                )
                logger.warning("[MATCH] %s", stale)
                report.forced_stale_clear = True
            token = report.tick_id
            self._tick_token = token
            self._tick_started_mono = self._monotonic()
            return token

    def _release_guard(self, token: str) -> None:
        with self._guard_lock:
            # A stale tick that finally returns must not clear a newer tick's guard.
            if self._tick_token == token:
                self._tick_token = None
                self._tick_started_mono = None

    def run_tick(self) -> TickReport:
        report = TickReport(tick_id=uuid.uuid4().hex[:12], started_at=to_iso(self._now()) or "")
        token = self._acquire_guard(report)
        if token is None:
            report.skipped = True
            logger.debug("[MATCH] Tick skipped, previous tick still in progress")
            return report

        self._last_tick_started_at = report.started_at
        try:
            self._match(report)
        except Exception as exc:
            report.error = f"{exc.__class__.__name__}: {exc}"
            self._last_error = report.error
            logger.exception(
                "[MATCH] Tick failed: operation=match_tick tick_id=%s started_at=%s forced_stale_clear=%s error=%s",
                report.tick_id,
                report.started_at,
                report.forced_stale_clear,
                report.error,
            )
        finally:
            self._release_guard(token)
            self._last_tick_finished_at = to_iso(self._now())
            self._last_report = report
        return report

    def _match(self, report: TickReport) -> None:
        entries = self._queue.list_all()
        now = self._now()
        has_overdue = bool(self._backfill and self._backfill.overdue_seed(entries, now=now))
        if len(entries) < self._config.min_players_to_start and not has_overdue:
            return

        groups, leftovers = group_by_score_window(
            entries,
            score_range=self._config.score_range,
            players_per_room=self._config.players_per_room,
            min_players=self._config.min_players_to_start,
        )
        for group in groups:
            self._hand_off(group, report)

        if self._backfill is None:
            return
        while leftovers:
            seed = self._backfill.overdue_seed(leftovers, now=now)
            if seed is None:
                break
            real = window_members(
                seed,
                leftovers,
                score_range=self._config.score_range,
                limit=self._config.players_per_room,
            )
            taken = {entry.agent_id for entry in real}
            leftovers = [entry for entry in leftovers if entry.agent_id not in taken]

            synthetic = self._draw_synthetic(self._config.players_per_room - len(real))
            report.backfilled_agents.extend(entry.agent_id for entry in synthetic)
            group = real + synthetic
            if len(group) < self._config.min_players_to_start:
                logger.info(
                    "[MATCH] Not enough synthetic agents to backfill %s (have %d)", seed.agent_id, len(group)
                )
                self._release_synthetic([entry.agent_id for entry in synthetic])
                continue
            logger.info(
                "[MATCH] Backfilling %s after wait deadline with %d synthetic agents",
                seed.agent_id,
                len(synthetic),
            )
            if not self._hand_off(group, report):
                self._release_synthetic([entry.agent_id for entry in synthetic])

    def _hand_off(self, group: list[QueueEntry], report: TickReport) -> bool:
        ids = [entry.agent_id for entry in group]
        try:
            room = self._factory.create_room(group)
        except GroupAborted as exc:
            report.aborted_groups.append(ids)
            logger.info("[MATCH] Group %s aborted: %s", ids, exc)
            return False
        except Exception as exc:
            report.aborted_groups.append(ids)
            logger.warning("[MATCH] Room creation failed for %s: %s", ids, exc)
            return False
        report.formed_rooms.append(room.room_id)
        return True

    def _draw_synthetic(self, needed: int) -> list[QueueEntry]:
        if needed <= 0 or self._backfill is None:
            return []
        queued = {entry.agent_id for entry in self._queue.list_all()}
        pool = [
            agent
            for agent in self._gateway.list_agents()
            if agent.get("is_synthetic")
            and agent["agent_id"] not in queued
            and self._tracker.get_status(agent["agent_id"]).status == STATUS_IDLE
        ]
        drafted: list[QueueEntry] = []
        for agent in self._backfill.pick_synthetic(pool, needed):
            aid = str(agent["agent_id"])
            with self._tracker.agent_lock(aid):
                if not self._tracker.compare_and_transition(aid, expected=STATUS_IDLE, desired=STATUS_QUEUED):
                    continue
                try:
                    entry = self._queue.enqueue(aid, float(agent.get("score") or 0.0), is_synthetic=True)
                except Exception:
                    self._tracker.transition(aid, STATUS_IDLE)
                    raise
            drafted.append(entry)
        return drafted

    def _release_synthetic(self, agent_ids: list[str]) -> None:
        for aid in agent_ids:
            with self._tracker.agent_lock(aid):
                if self._tracker.get_status(aid).status != STATUS_QUEUED:
                    continue
                self._queue.dequeue(aid)
                self._tracker.transition(aid, STATUS_IDLE)
