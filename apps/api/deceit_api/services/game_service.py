"""Process-wide game engine wiring for the API layer."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from packages.deceit_core.game.config import GameConfig
from packages.deceit_core.game.engine import GameEngine
from packages.deceit_core.llm.reasoner import AgentReasoner

from ..storage.games import get_gateway


logger = logging.getLogger("deceit_api.game_service")

_ENGINE: Optional[GameEngine] = None
_ENGINE_LOCK = threading.Lock()


def _build_engine() -> GameEngine:
    gateway = get_gateway()
    gateway.init_db()
    config = GameConfig.from_env()
    reasoner = AgentReasoner(prompt_lookup=gateway.load_agent)
    engine = GameEngine(gateway=gateway, config=config, reasoner=reasoner)
    engine.recover()
    logger.info(
        "[MATCH] Game engine ready (players_per_room=%d, min_players=%d, score_range=%.1f)",
        config.players_per_room,
        config.min_players_to_start,
        config.score_range,
    )
    return engine


def get_game_engine() -> GameEngine:
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            _ENGINE = _build_engine()
        return _ENGINE


def reset_game_engine_for_tests() -> None:
    global _ENGINE
    with _ENGINE_LOCK:
        engine = _ENGINE
        _ENGINE = None
    if engine is not None:
        engine.scheduler.stop(join_timeout_seconds=1.0)


def start_match_scheduler() -> bool:
    return get_game_engine().scheduler.start()


def stop_match_scheduler() -> bool:
    with _ENGINE_LOCK:
        engine = _ENGINE
    if engine is None:
        return False
    return engine.scheduler.stop()


def match_scheduler_status() -> dict[str, object]:
    return get_game_engine().scheduler.status()
