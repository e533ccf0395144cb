"""FastAPI entrypoint for the Deceit game server."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from packages.deceit_core.game.errors import (
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
    UnsupportedActionType,
)

from .routers.agents import router as agents_router
from .routers.game import router as game_router
from .services.game_service import get_game_engine, start_match_scheduler, stop_match_scheduler
from .storage.games import get_gateway, init_db as init_games_db, seed_test_agents

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("deceit_api")


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


_STATUS_BY_ERROR: tuple[tuple[type[GameError], int], ...] = (
    (AgentNotFound, 404),
    (RoomNotFound, 404),
    (IllegalTransition, 409),
    (RoomNotActive, 409),
    (GroupAborted, 409),
    (DeadPlayerAction, 409),
    (PlayerNotInRoom, 409),
    (EmptyVoteTarget, 422),
    (InvalidVoteTarget, 422),
    (UnsupportedActionType, 422),
    (ReasonerUnavailable, 503),
)


def status_code_for(exc: GameError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


app = FastAPI(title="Deceit API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("DECEIT_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(agents_router)
app.include_router(game_router)


@app.exception_handler(GameError)
async def _game_error_handler(request: Request, exc: GameError):
    status_code = status_code_for(exc)
    logger.info("[GAME] %s %s -> %d %s: %s", request.method, request.url.path, status_code, exc.error_kind, exc)
    return JSONResponse(status_code=status_code, content={"ok": False, "error": exc.to_dict()})


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] Deceit API starting up at %s", datetime.now(timezone.utc).isoformat())
    try:
        logger.info("[STARTUP] Initializing game database...")
        init_games_db()
        logger.info("[STARTUP] Game database initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize game database: %s", e)
        raise

    if _truthy_env("DECEIT_SEED_TEST_AGENTS", default=False):
        seed_test_agents()
        logger.info("[STARTUP] Test agents seeded")

    get_game_engine()

    if _truthy_env("DECEIT_AUTOSTART_MATCH_SCHEDULER", default=False):
        start_match_scheduler()
        logger.info("[STARTUP] Background match scheduler autostart is enabled")

    logger.info("[STARTUP] Deceit API startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_match_scheduler()


@app.get("/healthz")
def healthz():
    logger.debug("[HEALTH] Health check requested")
    try:
        get_gateway().list_matching_entries()
    except Exception as exc:
        logger.warning("[HEALTH] DB check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    return {"status": "ok"}
