"""Composition root wiring tracker, queue, scheduler and rooms behind one facade."""

from __future__ import annotations

from typing import Any, Optional, Protocol
import logging
import random

from .config import GameConfig
from .errors import (
    AgentNotFound,
    DeadPlayerAction,
    IllegalTransition,
    PlayerNotInRoom,
    ReasonerUnavailable,
    RoomNotActive,
)
from .gateway import PersistenceGateway
from .grouping import BackfillPolicy
from .match_scheduler import MatchScheduler
from .matching_queue import MatchingQueue
from .models import (
    ACTION_SPEECH,
    ACTION_VOTE,
    EVENT_SPEECH,
    ROLE_SPY,
    ROOM_PLAYING,
    STATUS_IDLE,
    STATUS_IN_GAME,
    STATUS_QUEUED,
    Player,
    RoomState,
    RoomView,
)
from .room_factory import RoomFactory
from .room_machine import ActionOutcome, RoomManager
from .settlement import ScoreReporter
from .status_tracker import AgentStatusTracker


logger = logging.getLogger("deceit_core.engine")


class TurnReasoner(Protocol):
    def generate_speech(self, agent_id: str, context: dict[str, Any]) -> str: ...

    def generate_vote(self, agent_id: str, choices: list[str], context: dict[str, Any]) -> str: ...


class GameEngine:
    def __init__(
        self,
        *,
        gateway: PersistenceGateway,
        config: Optional[GameConfig] = None,
        tracker: Optional[AgentStatusTracker] = None,
        backfill_policy: Optional[BackfillPolicy] = None,
        rng: Optional[random.Random] = None,
        reasoner: Optional[TurnReasoner] = None,
        scheduler_kwargs: Optional[dict[str, Any]] = None,
    ) -> None:
        self.config = config or GameConfig()
        self.gateway = gateway
        self.tracker = tracker or AgentStatusTracker()
        self.queue = MatchingQueue(gateway)
        self.reporter = ScoreReporter(gateway=gateway, tracker=self.tracker)
        self.rooms = RoomManager(gateway=gateway, reporter=self.reporter, config=self.config)
        self.factory = RoomFactory(
            gateway=gateway,
            tracker=self.tracker,
            queue=self.queue,
            config=self.config,
            rng=rng,
        )
        if backfill_policy is None:
            backfill_policy = BackfillPolicy(max_wait_seconds=self.config.max_wait_seconds)
        self.scheduler = MatchScheduler(
            gateway=gateway,
            tracker=self.tracker,
            queue=self.queue,
            factory=self.factory,
            config=self.config,
            backfill_policy=backfill_policy,
            **(scheduler_kwargs or {}),
        )
        self.reasoner = reasoner

    # -- matching ---------------------------------------------------------

    def start_matching(self, agent_id: str) -> dict[str, Any]:
        aid = str(agent_id)
        agent = self.gateway.load_agent(aid)
        if not agent:
            raise AgentNotFound(f"Agent not found: {aid}", agent_id=aid)
        with self.tracker.agent_lock(aid):
            self.tracker.transition(aid, STATUS_QUEUED)
            try:
                entry = self.queue.enqueue(aid, float(agent.get("score") or 0.0), is_synthetic=False)
            except Exception:
                self.tracker.transition(aid, STATUS_IDLE)
                self.queue.dequeue(aid)
                raise
        logger.info("[MATCH] Agent %s joined the queue (score=%.1f)", aid, entry.match_score)
        return entry.to_dict()

    def cancel_matching(self, agent_id: str) -> dict[str, Any]:
        aid = str(agent_id)
        with self.tracker.agent_lock(aid):
            current = self.tracker.get_status(aid)
            if current.status != STATUS_QUEUED:
                # The scheduler may already have seated this agent; callers treat this as a conflict.
                raise IllegalTransition(agent_id=aid, current=current.status, desired=STATUS_IDLE)
            self.queue.dequeue(aid)
            record = self.tracker.transition(aid, STATUS_IDLE)
        logger.info("[MATCH] Agent %s left the queue", aid)
        return record.to_dict()

    def check_match_status(self, agent_id: str) -> dict[str, Any]:
        record = self.tracker.get_status(str(agent_id))
        return {"agent_id": record.agent_id, "status": record.status, "room_id": record.room_id}

    def get_matching_queue_info(self) -> dict[str, Any]:
        entries = self.queue.list_all()
        return {
            "count": len(entries),
            "items": [
                {"agent_id": e.agent_id, "is_human": not e.is_synthetic, "match_score": e.match_score}
                for e in sorted(entries, key=lambda e: e.enqueue_time)
            ],
        }

    def recover(self) -> dict[str, int]:
        """Rebuild tracker state from persisted queue entries and playing rooms.

        Statuses live in memory only, so a restarted process would otherwise see
        queued and seated agents as idle. Any status already tracked is reset
        first, so the result depends on persisted state alone. Call it at
        startup, before the scheduler runs.
        """
        for record in self.tracker.snapshot():
            self.tracker.reset(record.agent_id)
        queued = 0
        for entry in self.queue.list_all():
            with self.tracker.agent_lock(entry.agent_id):
                if self.tracker.compare_and_transition(entry.agent_id, expected=STATUS_IDLE, desired=STATUS_QUEUED):
                    queued += 1
        seated = 0
        for room in self.rooms.list_rooms(status=ROOM_PLAYING, limit=1000):
            for player in room.players:
                aid = player.agent_id
                with self.tracker.agent_lock(aid):
                    if self.tracker.get_status(aid).status == STATUS_QUEUED:
                        self.queue.dequeue(aid)
                    else:
                        self.tracker.compare_and_transition(aid, expected=STATUS_IDLE, desired=STATUS_QUEUED)
                    if self.tracker.compare_and_transition(
                        aid, expected=STATUS_QUEUED, desired=STATUS_IN_GAME, room_id=room.room_id
                    ):
                        seated += 1
        if queued or seated:
            logger.info("[STARTUP] Recovered %d queued and %d seated agents", queued, seated)
        return {"queued": queued, "seated": seated}

    # -- rooms ------------------------------------------------------------

    def get_room_view(self, room_id: str) -> RoomView:
        return self.rooms.get_room_view(room_id)

    def process_action(
        self,
        room_id: str,
        *,
        agent_id: str,
        action: str,
        content: str = "",
        vote_target: Optional[str] = None,
    ) -> ActionOutcome:
        return self.rooms.process_action(
            room_id,
            agent_id=agent_id,
            action=action,
            content=content,
            vote_target=vote_target,
        )

    def play_turn(self, room_id: str, *, agent_id: str) -> ActionOutcome:
        """Let the reasoner act for one seated agent.

        Speaks until every alive player has spoken this round, then votes.
        The room and seat are checked before the reasoner is asked, and a
        reasoner failure propagates before anything touches the room.
        """
        aid = str(agent_id)
        if self.reasoner is None:
            raise ReasonerUnavailable("No reasoner configured for automatic turns", agent_id=aid, room_id=str(room_id))
        state = self.rooms.get_room_state(room_id)
        if state.status != ROOM_PLAYING:
            raise RoomNotActive(
                f"Room is {state.status}, actions are not accepted", agent_id=aid, room_id=state.room_id
            )
        player = state.player_by_agent(aid)
        if player is None:
            raise PlayerNotInRoom(f"Agent {aid} is not seated in this room", agent_id=aid, room_id=state.room_id)
        if not player.alive:
            raise DeadPlayerAction("Dead players cannot act", agent_id=aid, room_id=state.room_id)

        action, context = self._turn_context(state, player)
        if action == ACTION_SPEECH:
            text = self.reasoner.generate_speech(aid, context)
            return self.process_action(room_id, agent_id=aid, action=ACTION_SPEECH, content=text)
        target = self.reasoner.generate_vote(aid, list(context["choices"]), context)
        return self.process_action(room_id, agent_id=aid, action=ACTION_VOTE, vote_target=target)

    @staticmethod
    def _turn_context(state: RoomState, player: Player) -> tuple[str, dict[str, Any]]:
        alive = state.alive_players()
        spoke = {
            e.agent_id
            for e in state.events
            if e.event_type == EVENT_SPEECH and e.round == state.current_round
        }
        action = ACTION_VOTE if all(p.agent_id in spoke for p in alive) else ACTION_SPEECH
        context = {
            "room_id": state.room_id,
            "round": state.current_round,
            "name": player.display_name,
            "word": (state.spy_word if player.role == ROLE_SPY else state.secret_word) or "",
            "events": [e.to_dict() for e in state.events],
            "choices": [p.display_name for p in alive if p.agent_id != player.agent_id],
        }
        return action, context

    def list_rooms(self, *, status: Optional[str] = None, limit: int = 50) -> list[RoomState]:
        return self.rooms.list_rooms(status=status, limit=limit)
