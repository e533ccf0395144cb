"""Typed failures raised by the matching and room engines."""

from __future__ import annotations

from typing import Any


class GameError(RuntimeError):
    error_kind = "game_error"

    def __init__(
        self,
        message: str,
        *,
        agent_id: str | None = None,
        room_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.agent_id = agent_id
        self.room_id = room_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.error_kind,
            "message": str(self),
            "agent_id": self.agent_id,
            "room_id": self.room_id,
        }


class IllegalTransition(GameError):
    error_kind = "illegal_transition"

    def __init__(self, *, agent_id: str, current: str, desired: str) -> None:
        super().__init__(f"Illegal status transition: {current} -> {desired}", agent_id=agent_id)
        self.current = current
        self.desired = desired


class AgentNotFound(GameError):
    error_kind = "agent_not_found"


class RoomNotFound(GameError):
    error_kind = "room_not_found"


class RoomNotActive(GameError):
    error_kind = "room_not_active"


class PlayerNotInRoom(GameError):
    error_kind = "player_not_in_room"


class DeadPlayerAction(GameError):
    error_kind = "dead_player_action"


class InvalidVoteTarget(GameError):
    error_kind = "invalid_vote_target"


class EmptyVoteTarget(GameError):
    error_kind = "empty_vote_target"


class UnsupportedActionType(GameError):
    error_kind = "unsupported_action_type"


class GroupAborted(GameError):
    """A matched group was dropped because a member left the queue mid-flight."""

    error_kind = "group_aborted"


class SchedulerCycleStale(GameError):
    error_kind = "scheduler_cycle_stale"


class ReasonerUnavailable(GameError):
    """Automatic turns were requested but no reasoner is wired in."""

    error_kind = "reasoner_unavailable"
