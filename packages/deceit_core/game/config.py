"""Tunable matchmaking and settlement constants."""

from __future__ import annotations

from dataclasses import dataclass
import os


def _env_int(name: str, default: int) -> int:
    raw = str(os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = str(os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class GameConfig:
    players_per_room: int = 6
    min_players_to_start: int = 3
    score_range: float = 50.0
    spy_ratio: float = 1.0 / 3.0
    match_interval_seconds: float = 5.0
    tick_stale_seconds: float = 30.0
    max_wait_seconds: float = 10.0
    win_score_delta: float = 10.0
    loss_score_delta: float = 0.0

    def __post_init__(self) -> None:
        if self.min_players_to_start < 2:
            raise ValueError("min_players_to_start must be at least 2")
        if self.players_per_room < self.min_players_to_start:
            raise ValueError("players_per_room must be >= min_players_to_start")
        if not 0.0 < self.spy_ratio < 0.5:
            raise ValueError("spy_ratio must be in (0, 0.5)")

    def spy_count(self, player_count: int) -> int:
        # Float floor of n/3 can undershoot (e.g. 6 * (1/3) == 1.9999...).
        return int(player_count * self.spy_ratio + 1e-9)

    @classmethod
    def from_env(cls) -> "GameConfig":
        defaults = cls()
        return cls(
            players_per_room=_env_int("DECEIT_PLAYERS_PER_ROOM", defaults.players_per_room),
            min_players_to_start=_env_int("DECEIT_MIN_PLAYERS_TO_START", defaults.min_players_to_start),
            score_range=_env_float("DECEIT_SCORE_RANGE", defaults.score_range),
            spy_ratio=_env_float("DECEIT_SPY_RATIO", defaults.spy_ratio),
            match_interval_seconds=_env_float("DECEIT_MATCH_INTERVAL_SECONDS", defaults.match_interval_seconds),
            tick_stale_seconds=_env_float("DECEIT_TICK_STALE_SECONDS", defaults.tick_stale_seconds),
            max_wait_seconds=_env_float("DECEIT_MAX_WAIT_SECONDS", defaults.max_wait_seconds),
            win_score_delta=_env_float("DECEIT_WIN_SCORE_DELTA", defaults.win_score_delta),
            loss_score_delta=_env_float("DECEIT_LOSS_SCORE_DELTA", defaults.loss_score_delta),
        )
