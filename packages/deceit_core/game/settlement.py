"""End-of-game score deltas and member release."""

from __future__ import annotations

from typing import Any
import logging

from .gateway import PersistenceGateway
from .models import STATUS_IN_GAME, STATUS_IDLE, Player, RoomState
from .status_tracker import AgentStatusTracker


logger = logging.getLogger("deceit_core.settlement")


def compute_score_deltas(
    *,
    players: list[Player],
    winner_role: str,
    win_delta: float,
    loss_delta: float,
) -> list[dict[str, Any]]:
    return [
        {
            "agent_id": player.agent_id,
            "delta": float(win_delta) if player.role == winner_role else float(loss_delta),
        }
        for player in players
    ]


class ScoreReporter:
    """Applies score deltas through the gateway and returns members to idle."""

    def __init__(self, *, gateway: PersistenceGateway, tracker: AgentStatusTracker) -> None:
        self._gateway = gateway
        self._tracker = tracker

    def settle(self, room: RoomState) -> None:
        end = room.end_game_data
        if end is None:
            raise ValueError(f"Room {room.room_id} has no end game data to settle")
        deltas = {str(item["agent_id"]): float(item["delta"]) for item in end.scores}
        winner_ids = {p.agent_id for p in end.winners}
        for player in room.players:
            aid = player.agent_id
            try:
                self._apply_delta(aid, delta=deltas.get(aid, 0.0), won=aid in winner_ids)
            except Exception:
                logger.exception("[SETTLE] Failed to persist settlement for %s in room %s", aid, room.room_id)
            finally:
                self._release(aid, room.room_id)
        logger.info(
            "[SETTLE] Room %s settled: %s win (%d players)",
            room.room_id,
            end.winner_role,
            len(room.players),
        )

    def _apply_delta(self, agent_id: str, *, delta: float, won: bool) -> None:
        record = self._gateway.load_agent(agent_id)
        if record is None:
            logger.warning("[SETTLE] Agent %s vanished before settlement", agent_id)
            return
        record["score"] = float(record.get("score") or 0.0) + float(delta)
        record["game_count"] = int(record.get("game_count") or 0) + 1
        record["win_count"] = int(record.get("win_count") or 0) + (1 if won else 0)
        self._gateway.save_agent(record)

    def _release(self, agent_id: str, room_id: str) -> None:
        with self._tracker.agent_lock(agent_id):
            current = self._tracker.get_status(agent_id)
            if current.status == STATUS_IN_GAME and current.room_id == room_id:
                self._tracker.transition(agent_id, STATUS_IDLE)
