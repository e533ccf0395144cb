"""Records shared by the status tracker, matching queue and room engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


STATUS_IDLE = "idle"
STATUS_QUEUED = "queued"
STATUS_IN_GAME = "in_game"
AGENT_STATUSES = (STATUS_IDLE, STATUS_QUEUED, STATUS_IN_GAME)

ROOM_WAITING = "waiting"
ROOM_PLAYING = "playing"
ROOM_FINISHED = "finished"

ROLE_SPY = "spy"
ROLE_INNOCENT = "innocent"

PLAYER_ALIVE = "alive"
PLAYER_DEAD = "dead"

EVENT_START = "start"
EVENT_HOST_SPEECH = "hostSpeech"
EVENT_SPEECH = "speech"
EVENT_VOTE = "vote"
EVENT_END = "end"

ACTION_SPEECH = "speech"
ACTION_VOTE = "vote"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class AgentStatusRecord:
    agent_id: str
    status: str = STATUS_IDLE
    room_id: str | None = None
    last_update_time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status,
            "room_id": self.room_id,
            "last_update_time": to_iso(self.last_update_time),
        }


@dataclass(frozen=True)
class QueueEntry:
    agent_id: str
    match_score: float
    enqueue_time: datetime
    is_synthetic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "match_score": float(self.match_score),
            "enqueue_time": to_iso(self.enqueue_time),
            "is_synthetic": bool(self.is_synthetic),
        }


@dataclass
class Player:
    agent_id: str
    display_name: str
    agent_name: str
    role: str = ROLE_INNOCENT
    player_status: str = PLAYER_ALIVE
    avatar: str | None = None
    rank: int | None = None
    score: float = 0.0
    game_count: int = 0
    win_count: int = 0

    @property
    def alive(self) -> bool:
        return self.player_status == PLAYER_ALIVE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Player":
        return cls(
            agent_id=str(raw["agent_id"]),
            display_name=str(raw["display_name"]),
            agent_name=str(raw.get("agent_name") or ""),
            role=str(raw.get("role") or ROLE_INNOCENT),
            player_status=str(raw.get("player_status") or PLAYER_ALIVE),
            avatar=raw.get("avatar"),
            rank=int(raw["rank"]) if raw.get("rank") is not None else None,
            score=float(raw.get("score") or 0.0),
            game_count=int(raw.get("game_count") or 0),
            win_count=int(raw.get("win_count") or 0),
        )


@dataclass
class GameEvent:
    event_type: str
    round: int
    highlight_index: int
    current_status_descriptions: list[str]
    agent_id: str | None = None
    display_name: str | None = None
    text: str | None = None
    vote_target: str | None = None
    vote_target_agent_id: str | None = None
    vote_is_valid: bool | None = None
    winner_role: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["current_status_descriptions"] = list(self.current_status_descriptions)
        out["created_at"] = to_iso(self.created_at)
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GameEvent":
        return cls(
            event_type=str(raw["event_type"]),
            round=int(raw.get("round") or 1),
            highlight_index=int(raw.get("highlight_index") or 0),
            current_status_descriptions=[str(x) for x in (raw.get("current_status_descriptions") or [])],
            agent_id=raw.get("agent_id"),
            display_name=raw.get("display_name"),
            text=raw.get("text"),
            vote_target=raw.get("vote_target"),
            vote_target_agent_id=raw.get("vote_target_agent_id"),
            vote_is_valid=raw.get("vote_is_valid"),
            winner_role=raw.get("winner_role"),
            created_at=parse_iso(raw.get("created_at")) or utc_now(),
        )


@dataclass
class EndGameData:
    winner_role: str
    winners: list[Player]
    scores: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "winner_role": self.winner_role,
            "winners": [p.to_dict() for p in self.winners],
            "scores": [dict(item) for item in self.scores],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "EndGameData":
        return cls(
            winner_role=str(raw["winner_role"]),
            winners=[Player.from_dict(p) for p in (raw.get("winners") or [])],
            scores=[dict(item) for item in (raw.get("scores") or [])],
        )


@dataclass
class RoomState:
    room_id: str
    status: str = ROOM_WAITING
    current_round: int = 1
    secret_word: str | None = None
    spy_word: str | None = None
    players: list[Player] = field(default_factory=list)
    events: list[GameEvent] = field(default_factory=list)
    end_game_data: EndGameData | None = None
    created_at: datetime = field(default_factory=utc_now)

    def player_by_agent(self, agent_id: str) -> Player | None:
        for player in self.players:
            if player.agent_id == agent_id:
                return player
        return None

    def player_by_name(self, display_name: str) -> Player | None:
        for player in self.players:
            if player.display_name == display_name:
                return player
        return None

    def index_of(self, agent_id: str) -> int:
        for idx, player in enumerate(self.players):
            if player.agent_id == agent_id:
                return idx
        return 0

    def alive_players(self) -> list[Player]:
        return [p for p in self.players if p.alive]

    def status_descriptions(self) -> list[str]:
        return [f"{p.display_name}({p.player_status})" for p in self.players]

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "status": self.status,
            "current_round": int(self.current_round),
            "secret_word": self.secret_word,
            "spy_word": self.spy_word,
            "players": [p.to_dict() for p in self.players],
            "events": [e.to_dict() for e in self.events],
            "end_game_data": self.end_game_data.to_dict() if self.end_game_data else None,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RoomState":
        end_raw = raw.get("end_game_data")
        return cls(
            room_id=str(raw["room_id"]),
            status=str(raw.get("status") or ROOM_WAITING),
            current_round=int(raw.get("current_round") or 1),
            secret_word=raw.get("secret_word"),
            spy_word=raw.get("spy_word"),
            players=[Player.from_dict(p) for p in (raw.get("players") or [])],
            events=[GameEvent.from_dict(e) for e in (raw.get("events") or [])],
            end_game_data=EndGameData.from_dict(end_raw) if end_raw else None,
            created_at=parse_iso(raw.get("created_at")) or utc_now(),
        )


@dataclass(frozen=True)
class RoomView:
    room_id: str
    status: str
    current_round: int
    word: str
    event_list: list[dict[str, Any]]
    initial_player_list: list[dict[str, Any]]
    current_status_descriptions: list[str]
    highlight_index: int
    end_game_data: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
