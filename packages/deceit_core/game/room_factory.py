"""Transactional handoff of a matched group into a freshly created room."""

from __future__ import annotations

from typing import Callable, Optional, Sequence
import logging
import random
import uuid

from .config import GameConfig
from .errors import AgentNotFound, GroupAborted
from .gateway import PersistenceGateway
from .matching_queue import MatchingQueue
from .models import (
    EVENT_HOST_SPEECH,
    EVENT_START,
    ROLE_INNOCENT,
    ROLE_SPY,
    ROOM_PLAYING,
    STATUS_IDLE,
    STATUS_IN_GAME,
    STATUS_QUEUED,
    GameEvent,
    Player,
    QueueEntry,
    RoomState,
)
from .roster import DISPLAY_NAME_POOL, draw_display_names, draw_spy_indices, draw_word_pair
from .status_tracker import AgentStatusTracker


logger = logging.getLogger("deceit_core.room_factory")


def _new_room_id() -> str:
    return str(uuid.uuid4())


class RoomFactory:
    """Creates rooms for matched groups, compensating on any partial failure.

    The gateway only promises single-record atomicity, so every step that has
    already been applied (status transitions, dequeues, the persisted room) is
    undone here before the original error propagates.
    """

    def __init__(
        self,
        *,
        gateway: PersistenceGateway,
        tracker: AgentStatusTracker,
        queue: MatchingQueue,
        config: GameConfig,
        name_pool: Sequence[str] = DISPLAY_NAME_POOL,
        rng: Optional[random.Random] = None,
        room_id_fn: Callable[[], str] = _new_room_id,
    ) -> None:
        self._gateway = gateway
        self._tracker = tracker
        self._queue = queue
        self._config = config
        self._name_pool = tuple(name_pool)
        self._rng = rng
        self._room_id_fn = room_id_fn
        if len(self._name_pool) < config.players_per_room:
            raise ValueError("Display name pool is smaller than players_per_room")

    def create_room(self, entries: Sequence[QueueEntry]) -> RoomState:
        members = [entry.agent_id for entry in entries]
        if not self._config.min_players_to_start <= len(members) <= self._config.players_per_room:
            raise ValueError(f"Group size {len(members)} is outside the allowed room size")

        for aid in members:
            current = self._tracker.get_status(aid)
            if current.status != STATUS_QUEUED:
                raise GroupAborted(
                    f"Member {aid} is {current.status}, expected {STATUS_QUEUED}",
                    agent_id=aid,
                )

        room_id = str(self._room_id_fn())
        persisted = False
        try:
            state = self._build_state(room_id, members)
            self._gateway.save_room(state)
            persisted = True

            for aid in members:
                with self._tracker.agent_lock(aid):
                    moved = self._tracker.compare_and_transition(
                        aid, expected=STATUS_QUEUED, desired=STATUS_IN_GAME, room_id=room_id
                    )
                    if not moved:
                        lost = self._tracker.get_status(aid)
                        raise GroupAborted(
                            f"Member {aid} changed to {lost.status} before joining the room",
                            agent_id=aid,
                            room_id=room_id,
                        )
                    self._queue.dequeue(aid)

            state.status = ROOM_PLAYING
            self._gateway.save_room(state)
        except Exception as exc:
            logger.warning("[ROOM] Creating room %s failed, rolling back %d members: %s", room_id, len(members), exc)
            self._rollback(members, room_id)
            if persisted:
                try:
                    self._gateway.delete_room(room_id)
                except Exception:
                    logger.exception("[ROOM] Could not delete half-created room %s", room_id)
            raise

        spies = sum(1 for p in state.players if p.role == ROLE_SPY)
        logger.info("[ROOM] Created room %s with %d players (%d spies)", room_id, len(state.players), spies)
        return state

    def _build_state(self, room_id: str, members: list[str]) -> RoomState:
        names = draw_display_names(len(members), pool=self._name_pool, rng=self._rng)
        players: list[Player] = []
        for aid, display_name in zip(members, names):
            profile = self._gateway.load_agent(aid)
            if not profile:
                raise AgentNotFound(f"Agent not found: {aid}", agent_id=aid, room_id=room_id)
            players.append(
                Player(
                    agent_id=aid,
                    display_name=display_name,
                    agent_name=str(profile.get("name") or aid),
                    role=ROLE_INNOCENT,
                    avatar=profile.get("avatar"),
                    rank=profile.get("rank"),
                    score=float(profile.get("score") or 0.0),
                    game_count=int(profile.get("game_count") or 0),
                    win_count=int(profile.get("win_count") or 0),
                )
            )

        spy_count = self._config.spy_count(len(players))
        for idx in draw_spy_indices(len(players), spy_count, rng=self._rng):
            players[idx].role = ROLE_SPY

        secret_word, spy_word = draw_word_pair(rng=self._rng)
        state = RoomState(room_id=room_id, secret_word=secret_word, spy_word=spy_word, players=players)
        state.events.append(
            GameEvent(
                event_type=EVENT_START,
                round=1,
                highlight_index=0,
                current_status_descriptions=state.status_descriptions(),
            )
        )
        state.events.append(
            GameEvent(
                event_type=EVENT_HOST_SPEECH,
                round=1,
                highlight_index=0,
                current_status_descriptions=state.status_descriptions(),
                text="Game start. Welcome to Who Is The Spy! Round 1 begins.",
            )
        )
        return state

    def _rollback(self, members: list[str], room_id: str) -> None:
        for aid in members:
            try:
                with self._tracker.agent_lock(aid):
                    current = self._tracker.get_status(aid)
                    if current.status == STATUS_IN_GAME and current.room_id == room_id:
                        self._tracker.transition(aid, STATUS_IDLE)
                    elif current.status == STATUS_QUEUED:
                        self._queue.dequeue(aid)
                        self._tracker.transition(aid, STATUS_IDLE)
            except Exception:
                logger.exception("[ROOM] Rollback of %s for room %s failed", aid, room_id)
