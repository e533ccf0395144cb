"""Matchmaking and room engine for Who Is The Spy agent games."""

from .config import GameConfig
from .engine import GameEngine
from .errors import (
    AgentNotFound,
    DeadPlayerAction,
    EmptyVoteTarget,
    GameError,
    GroupAborted,
    IllegalTransition,
    InvalidVoteTarget,
    PlayerNotInRoom,
    ReasonerUnavailable,
    RoomNotActive,
    RoomNotFound,
    SchedulerCycleStale,
    UnsupportedActionType,
)
from .gateway import InMemoryGateway, PersistenceGateway, normalize_agent_record
from .grouping import BackfillPolicy, group_by_score_window
from .match_scheduler import MatchScheduler, TickReport
from .matching_queue import MatchingQueue
from .room_factory import RoomFactory
from .room_machine import ActionOutcome, RoomManager, RoomStateMachine, build_room_view
from .settlement import ScoreReporter, compute_score_deltas
from .status_tracker import AgentStatusTracker

__all__ = [
    "GameConfig",
    "GameEngine",
    "GameError",
    "IllegalTransition",
    "AgentNotFound",
    "RoomNotFound",
    "RoomNotActive",
    "PlayerNotInRoom",
    "DeadPlayerAction",
    "InvalidVoteTarget",
    "EmptyVoteTarget",
    "UnsupportedActionType",
    "GroupAborted",
    "SchedulerCycleStale",
    "ReasonerUnavailable",
    "PersistenceGateway",
    "InMemoryGateway",
    "normalize_agent_record",
    "BackfillPolicy",
    "group_by_score_window",
    "MatchScheduler",
    "TickReport",
    "MatchingQueue",
    "RoomFactory",
    "ActionOutcome",
    "RoomManager",
    "RoomStateMachine",
    "build_room_view",
    "ScoreReporter",
    "compute_score_deltas",
    "AgentStatusTracker",
]
