"""Persistence boundary consumed by the matching and room engines.

Every method is expected to be atomic for one record only. Multi-record
consistency is the caller's job (see ``RoomFactory`` rollback).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Optional
import threading

from .models import QueueEntry, RoomState, utc_now


class PersistenceGateway(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def load_agent(self, agent_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def save_agent(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_agents(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def load_room(self, room_id: str) -> Optional[RoomState]:
        raise NotImplementedError

    @abstractmethod
    def save_room(self, state: RoomState) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_room(self, room_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_rooms(self, *, status: str | None = None, limit: int = 50) -> list[RoomState]:
        raise NotImplementedError

    @abstractmethod
    def list_matching_entries(self) -> list[QueueEntry]:
        raise NotImplementedError

    @abstractmethod
    def insert_matching_entry(self, agent_id: str, score: float, is_synthetic: bool) -> QueueEntry:
        raise NotImplementedError

    @abstractmethod
    def delete_matching_entry(self, agent_id: str) -> bool:
        raise NotImplementedError


def normalize_agent_record(record: dict[str, Any]) -> dict[str, Any]:
    out = dict(record)
    out["agent_id"] = str(out.get("agent_id") or "").strip()
    if not out["agent_id"]:
        raise ValueError("agent record requires agent_id")
    out["name"] = str(out.get("name") or out["agent_id"])
    out["avatar"] = out.get("avatar") or None
    out["score"] = float(out.get("score") or 0.0)
    out["game_count"] = int(out.get("game_count") or 0)
    out["win_count"] = int(out.get("win_count") or 0)
    out["rank"] = int(out["rank"]) if out.get("rank") is not None else None
    out["is_synthetic"] = bool(out.get("is_synthetic", False))
    prompts = out.get("prompts")
    out["prompts"] = dict(prompts) if isinstance(prompts, dict) else {}
    return out


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway for tests and single-process embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._agents: dict[str, dict[str, Any]] = {}
        self._rooms: dict[str, dict[str, Any]] = {}
        self._queue: dict[str, QueueEntry] = {}

    def init_db(self) -> None:
        return None

    def load_agent(self, agent_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._agents.get(str(agent_id))
            return deepcopy(record) if record else None

    def save_agent(self, record: dict[str, Any]) -> dict[str, Any]:
        normalized = normalize_agent_record(record)
        with self._lock:
            self._agents[normalized["agent_id"]] = deepcopy(normalized)
        return normalized

    def list_agents(self) -> list[dict[str, Any]]:
        with self._lock:
            return [deepcopy(item) for item in self._agents.values()]

    def load_room(self, room_id: str) -> Optional[RoomState]:
        with self._lock:
            raw = self._rooms.get(str(room_id))
            return RoomState.from_dict(deepcopy(raw)) if raw else None

    def save_room(self, state: RoomState) -> None:
        with self._lock:
            self._rooms[state.room_id] = state.to_dict()

    def delete_room(self, room_id: str) -> bool:
        with self._lock:
            return self._rooms.pop(str(room_id), None) is not None

    def list_rooms(self, *, status: str | None = None, limit: int = 50) -> list[RoomState]:
        with self._lock:
            raws = [deepcopy(raw) for raw in self._rooms.values()]
        rooms = [RoomState.from_dict(raw) for raw in raws]
        if status:
            rooms = [room for room in rooms if room.status == status]
        rooms.sort(key=lambda room: room.created_at, reverse=True)
        return rooms[: max(1, int(limit))]

    def list_matching_entries(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._queue.values())

    def insert_matching_entry(self, agent_id: str, score: float, is_synthetic: bool) -> QueueEntry:
        entry = QueueEntry(
            agent_id=str(agent_id),
            match_score=float(score),
            enqueue_time=utc_now(),
            is_synthetic=bool(is_synthetic),
        )
        with self._lock:
            self._queue[entry.agent_id] = entry
        return entry

    def delete_matching_entry(self, agent_id: str) -> bool:
        with self._lock:
            return self._queue.pop(str(agent_id), None) is not None
