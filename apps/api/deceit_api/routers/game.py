"""Matchmaking and room endpoints."""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..middleware.rate_limit import InMemoryRateLimiter
from ..services.game_service import get_game_engine, match_scheduler_status

logger = logging.getLogger("deceit_api.game")

router = APIRouter(prefix="/api/v1/game", tags=["game"])

_action_limiter = InMemoryRateLimiter(max_requests=30, window_seconds=60)


class MatchingRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=80)


class RoomActionRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=80)
    action: str = Field(min_length=1, max_length=20)
    content: str = Field(default="", max_length=2000)
    vote_target: Optional[str] = Field(default=None, max_length=80)


class AutoTurnRequest(BaseModel):
    agent_id: str = Field(min_length=1, max_length=80)


def _check_action_rate(agent_id: str) -> None:
    if not _action_limiter.check(agent_id):
        retry = _action_limiter.retry_after_seconds(agent_id)
        raise HTTPException(
            status_code=429,
            detail="Action rate limit exceeded. Slow down.",
            headers={"Retry-After": str(retry)},
        )


@router.post("/matching/start")
def start_matching(req: MatchingRequest) -> dict[str, Any]:
    entry = get_game_engine().start_matching(req.agent_id)
    return {"ok": True, "entry": entry}


@router.post("/matching/cancel")
def cancel_matching(req: MatchingRequest) -> dict[str, Any]:
    record = get_game_engine().cancel_matching(req.agent_id)
    return {"ok": True, "status": record}


@router.get("/matching/status")
def matching_status(agent_id: str = Query(min_length=1, max_length=80)) -> dict[str, Any]:
    return {"ok": True, **get_game_engine().check_match_status(agent_id)}


@router.get("/matching/queue")
def matching_queue() -> dict[str, Any]:
    return {"ok": True, **get_game_engine().get_matching_queue_info()}


@router.post("/matching/tick")
def matching_tick() -> dict[str, Any]:
    report = get_game_engine().scheduler.run_tick()
    logger.info("[MATCH] Manual tick %s formed %d rooms", report.tick_id, len(report.formed_rooms))
    return {"ok": True, "report": report.to_dict()}


@router.get("/matching/scheduler")
def matching_scheduler() -> dict[str, Any]:
    return {"ok": True, "scheduler": match_scheduler_status()}


@router.get("/rooms")
def list_rooms(
    status: Optional[Literal["waiting", "playing", "finished"]] = None,
    limit: int = Query(default=20, ge=1, le=200),
) -> dict[str, Any]:
    rooms = get_game_engine().list_rooms(status=status, limit=limit)
    return {
        "ok": True,
        "count": len(rooms),
        "rooms": [
            {
                "room_id": room.room_id,
                "status": room.status,
                "current_round": room.current_round,
                "player_count": len(room.players),
                "alive_count": len(room.alive_players()),
                "created_at": room.to_dict()["created_at"],
            }
            for room in rooms
        ],
    }


@router.get("/rooms/{room_id}")
def get_room(room_id: str) -> dict[str, Any]:
    return {"ok": True, "room": get_game_engine().get_room_view(room_id).to_dict()}


@router.post("/rooms/{room_id}/actions")
def submit_action(room_id: str, req: RoomActionRequest) -> dict[str, Any]:
    _check_action_rate(req.agent_id)
    outcome = get_game_engine().process_action(
        room_id,
        agent_id=req.agent_id,
        action=req.action,
        content=req.content,
        vote_target=req.vote_target,
    )
    return {"ok": True, "outcome": outcome.to_dict()}


@router.post("/rooms/{room_id}/auto-turn")
def auto_turn(room_id: str, req: AutoTurnRequest) -> dict[str, Any]:
    _check_action_rate(req.agent_id)
    outcome = get_game_engine().play_turn(room_id, agent_id=req.agent_id)
    return {"ok": True, "outcome": outcome.to_dict()}


def reset_action_rate_limiter_for_tests() -> None:
    _action_limiter.reset()
