"""Agent registry endpoints."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..middleware.rate_limit import InMemoryRateLimiter
from ..services.game_service import get_game_engine
from ..storage.games import DEFAULT_AVATAR, get_agent, list_agents, register_agent, seed_test_agents

logger = logging.getLogger("deceit_api.agents")

router = APIRouter(prefix="/api/v1/agents", tags=["agents"])

_register_limiter = InMemoryRateLimiter(max_requests=50, window_seconds=3600)


class RegisterAgentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    avatar: Optional[str] = Field(default=None, max_length=500)
    score: float = Field(default=0.0, ge=0.0, le=100000.0)
    prompts: Optional[dict[str, Any]] = None
    is_synthetic: bool = False
    agent_id: Optional[str] = Field(default=None, min_length=1, max_length=80)


def _with_status(agent: dict[str, Any]) -> dict[str, Any]:
    out = dict(agent)
    out["match_status"] = get_game_engine().check_match_status(agent["agent_id"])
    return out


@router.get("")
def list_agents_endpoint() -> dict[str, Any]:
    agents = [_with_status(a) for a in list_agents()]
    return {"ok": True, "count": len(agents), "agents": agents}


@router.get("/{agent_id}")
def get_agent_endpoint(agent_id: str) -> dict[str, Any]:
    agent = get_agent(agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail=f"Agent not found: {agent_id}")
    return {"ok": True, "agent": _with_status(agent)}


@router.post("/register")
def register_agent_endpoint(req: RegisterAgentRequest, request: Request) -> dict[str, Any]:
    client_ip = request.client.host if request.client else "unknown"
    if not _register_limiter.check(client_ip):
        raise HTTPException(status_code=429, detail="Too many registrations. Try again later.")
    if req.agent_id and get_agent(req.agent_id):
        raise HTTPException(status_code=409, detail=f"Agent already exists: {req.agent_id}")

    created = register_agent(
        name=req.name.strip(),
        avatar=req.avatar or DEFAULT_AVATAR,
        score=req.score,
        prompts=req.prompts,
        is_synthetic=req.is_synthetic,
        agent_id=req.agent_id,
    )
    logger.info("[AGENTS] Agent registered: id=%s, name='%s'", created["agent_id"], created["name"])
    return {"ok": True, "agent": created}


@router.post("/init-test-data")
def init_test_data_endpoint() -> dict[str, Any]:
    seeded = seed_test_agents()
    logger.info("[AGENTS] Test data initialized: %d agents", len(seeded))
    return {"ok": True, "count": len(seeded), "agents": seeded}


def reset_rate_limiter_for_tests() -> None:
    _register_limiter.reset()
