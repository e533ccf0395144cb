"""Speech/vote state machine for one room, plus the per-room serialized manager."""

from __future__ import annotations

from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional
import logging
import threading

from .config import GameConfig
from .errors import (
    DeadPlayerAction,
    EmptyVoteTarget,
    InvalidVoteTarget,
    PlayerNotInRoom,
    RoomNotActive,
    RoomNotFound,
    UnsupportedActionType,
)
from .gateway import PersistenceGateway
from .models import (
    ACTION_SPEECH,
    ACTION_VOTE,
    EVENT_END,
    EVENT_HOST_SPEECH,
    EVENT_SPEECH,
    EVENT_VOTE,
    PLAYER_DEAD,
    ROLE_INNOCENT,
    ROLE_SPY,
    ROOM_FINISHED,
    ROOM_PLAYING,
    EndGameData,
    GameEvent,
    RoomState,
    RoomView,
)
from .settlement import ScoreReporter, compute_score_deltas


logger = logging.getLogger("deceit_core.room_machine")

SUPPORTED_ACTIONS = (ACTION_SPEECH, ACTION_VOTE)


@dataclass(frozen=True)
class ActionOutcome:
    room_id: str
    event: dict[str, Any]
    round_resolved: bool = False
    eliminated: Optional[str] = None
    tie: bool = False
    finished: bool = False
    winner_role: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "event": self.event,
            "round_resolved": self.round_resolved,
            "eliminated": self.eliminated,
            "tie": self.tie,
            "finished": self.finished,
            "winner_role": self.winner_role,
        }


def winner_role_for(state: RoomState) -> str | None:
    """``innocent`` when no spy is alive, ``spy`` at parity, otherwise None."""
    alive = state.alive_players()
    alive_spies = sum(1 for p in alive if p.role == ROLE_SPY)
    alive_innocents = sum(1 for p in alive if p.role == ROLE_INNOCENT)
    if alive_spies == 0:
        return ROLE_INNOCENT
    if alive_spies >= alive_innocents:
        return ROLE_SPY
    return None


def tally_votes(events: list[GameEvent], round_number: int) -> Counter:
    return Counter(
        e.vote_target
        for e in events
        if e.event_type == EVENT_VOTE and e.round == round_number and e.vote_is_valid and e.vote_target
    )


def valid_vote_count(state: RoomState) -> int:
    return sum(tally_votes(state.events, state.current_round).values())


class RoomStateMachine:
    """Applies validated actions to one in-memory ``RoomState``.

    Validation always runs before the first mutation, so a rejected action
    leaves the state untouched.
    """

    def __init__(self, state: RoomState, *, config: GameConfig) -> None:
        self.state = state
        self._config = config

    def _append(self, event_type: str, *, highlight_index: int = 0, **fields: Any) -> GameEvent:
        event = GameEvent(
            event_type=event_type,
            round=self.state.current_round,
            highlight_index=int(highlight_index),
            current_status_descriptions=self.state.status_descriptions(),
            **fields,
        )
        self.state.events.append(event)
        return event

    def announce(self, text: str, *, highlight_index: int = 0) -> GameEvent:
        return self._append(EVENT_HOST_SPEECH, highlight_index=highlight_index, text=text)

    def apply(
        self,
        *,
        agent_id: str,
        action: str,
        content: str = "",
        vote_target: str | None = None,
    ) -> ActionOutcome:
        state = self.state
        kind = str(action or "").strip()
        if kind not in SUPPORTED_ACTIONS:
            raise UnsupportedActionType(
                f"Unsupported action type: {action!r}", agent_id=agent_id, room_id=state.room_id
            )
        if state.status != ROOM_PLAYING:
            raise RoomNotActive(
                f"Room is {state.status}, actions are not accepted", agent_id=agent_id, room_id=state.room_id
            )
        actor = state.player_by_agent(agent_id)
        if actor is None:
            raise PlayerNotInRoom(
                f"Agent {agent_id} is not seated in this room", agent_id=agent_id, room_id=state.room_id
            )

        if kind == ACTION_SPEECH:
            if not actor.alive:
                raise DeadPlayerAction("Dead players cannot speak", agent_id=agent_id, room_id=state.room_id)
            event = self._append(
                EVENT_SPEECH,
                highlight_index=state.index_of(agent_id),
                agent_id=agent_id,
                display_name=actor.display_name,
                text=str(content or ""),
            )
            return ActionOutcome(room_id=state.room_id, event=event.to_dict())

        target_name = str(vote_target or "").strip()
        if not target_name:
            raise EmptyVoteTarget("Vote target must not be empty", agent_id=agent_id, room_id=state.room_id)
        target = state.player_by_name(target_name)
        if target is None:
            raise InvalidVoteTarget(
                f"No player is named {target_name!r}", agent_id=agent_id, room_id=state.room_id
            )
        if not actor.alive:
            raise DeadPlayerAction("Dead players cannot vote", agent_id=agent_id, room_id=state.room_id)

        already_voted = any(
            e.event_type == EVENT_VOTE
            and e.round == state.current_round
            and e.agent_id == agent_id
            and e.vote_is_valid
            for e in state.events
        )
        is_valid = target.alive and target.agent_id != agent_id and not already_voted
        event = self._append(
            EVENT_VOTE,
            highlight_index=state.index_of(agent_id),
            agent_id=agent_id,
            display_name=actor.display_name,
            text=str(content or "") or None,
            vote_target=target.display_name,
            vote_target_agent_id=target.agent_id,
            vote_is_valid=is_valid,
        )
        if not is_valid or valid_vote_count(state) != len(state.alive_players()):
            return ActionOutcome(room_id=state.room_id, event=event.to_dict())
        return self._resolve_round(event)

    def _resolve_round(self, trigger: GameEvent) -> ActionOutcome:
        state = self.state
        tally = tally_votes(state.events, state.current_round)
        top = max(tally.values())
        leaders = sorted(name for name, count in tally.items() if count == top)

        eliminated: str | None = None
        if len(leaders) == 1:
            voted_out = state.player_by_name(leaders[0])
            if voted_out is not None:
                voted_out.player_status = PLAYER_DEAD
                eliminated = voted_out.display_name
                self.announce(
                    f"{eliminated} received {top} votes and is out.",
                    highlight_index=state.index_of(voted_out.agent_id),
                )
        else:
            self.announce(f"Tie between {', '.join(leaders)} with {top} votes each. Nobody is out.")
        logger.info(
            "[ROOM] %s round %d resolved: tally=%s eliminated=%s",
            state.room_id,
            state.current_round,
            dict(tally),
            eliminated,
        )

        winner = winner_role_for(state)
        if winner is not None:
            self._finish(winner)
            return ActionOutcome(
                room_id=state.room_id,
                event=trigger.to_dict(),
                round_resolved=True,
                eliminated=eliminated,
                tie=eliminated is None,
                finished=True,
                winner_role=winner,
            )

        state.current_round += 1
        self.announce(f"Round {state.current_round} begins.")
        return ActionOutcome(
            room_id=state.room_id,
            event=trigger.to_dict(),
            round_resolved=True,
            eliminated=eliminated,
            tie=eliminated is None,
        )

    def _finish(self, winner_role: str) -> None:
        state = self.state
        if state.end_game_data is not None:
            return
        state.end_game_data = EndGameData(
            winner_role=winner_role,
            winners=[p for p in state.players if p.role == winner_role],
            scores=compute_score_deltas(
                players=state.players,
                winner_role=winner_role,
                win_delta=self._config.win_score_delta,
                loss_delta=self._config.loss_score_delta,
            ),
        )
        state.status = ROOM_FINISHED
        self._append(EVENT_END, winner_role=winner_role)


def build_room_view(state: RoomState) -> RoomView:
    last = state.events[-1] if state.events else None
    return RoomView(
        room_id=state.room_id,
        status=state.status,
        current_round=state.current_round,
        word=state.secret_word or "",
        event_list=[e.to_dict() for e in state.events],
        initial_player_list=[p.to_dict() for p in state.players],
        current_status_descriptions=list(last.current_status_descriptions) if last else [],
        highlight_index=last.highlight_index if last else 0,
        end_game_data=state.end_game_data.to_dict() if state.end_game_data else None,
    )


class RoomManager:
    """Routes actions to rooms by id; one writer per room at a time."""

    def __init__(
        self,
        *,
        gateway: PersistenceGateway,
        reporter: ScoreReporter,
        config: GameConfig,
    ) -> None:
        self._gateway = gateway
        self._reporter = reporter
        self._config = config
        self._room_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def room_lock(self, room_id: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._room_locks.setdefault(str(room_id), threading.Lock())
        with lock:
            yield

    def _load(self, room_id: str) -> RoomState:
        state = self._gateway.load_room(str(room_id))
        if state is None:
            raise RoomNotFound(f"Room not found: {room_id}", room_id=str(room_id))
        return state

    def process_action(
        self,
        room_id: str,
        *,
        agent_id: str,
        action: str,
        content: str = "",
        vote_target: str | None = None,
    ) -> ActionOutcome:
        with self.room_lock(room_id):
            state = self._load(room_id)
            machine = RoomStateMachine(state, config=self._config)
            outcome = machine.apply(
                agent_id=str(agent_id),
                action=action,
                content=content,
                vote_target=vote_target,
            )
            self._gateway.save_room(state)
            if outcome.finished:
                logger.info("[ROOM] %s finished, winner=%s", state.room_id, outcome.winner_role)
                self._reporter.settle(state)
            return outcome

    def get_room_state(self, room_id: str) -> RoomState:
        return self._load(room_id)

    def get_room_view(self, room_id: str) -> RoomView:
        return build_room_view(self._load(room_id))

    def list_rooms(self, *, status: str | None = None, limit: int = 50) -> list[RoomState]:
        return self._gateway.list_rooms(status=status, limit=limit)
