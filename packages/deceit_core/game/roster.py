"""Seat names, role draws and word pairs for new rooms."""

from __future__ import annotations

from typing import Sequence
import random
import secrets


DISPLAY_NAME_POOL: tuple[str, ...] = (
    "张三", "李四", "王五", "赵六", "钱七", "孙八",
    "周九", "吴十", "郑一", "王二", "刘一", "陈二",
    "杨三", "黄四", "周五", "吴六",
)

# (innocent word, spy word)
WORD_PAIRS: tuple[tuple[str, str], ...] = (
    ("苹果", "梨"),
    ("牛奶", "豆浆"),
    ("饺子", "包子"),
    ("火锅", "麻辣烫"),
    ("蝴蝶", "蜜蜂"),
    ("钢琴", "吉他"),
    ("地铁", "公交"),
    ("眼镜", "隐形眼镜"),
    ("月饼", "汤圆"),
    ("警察", "保安"),
)

_SYSTEM_RANDOM = secrets.SystemRandom()


def draw_display_names(
    count: int,
    *,
    pool: Sequence[str] = DISPLAY_NAME_POOL,
    rng: random.Random | None = None,
) -> list[str]:
    if count > len(pool):
        raise ValueError(f"Name pool has {len(pool)} names, {count} requested")
    return (rng or _SYSTEM_RANDOM).sample(list(pool), int(count))


def draw_spy_indices(player_count: int, spy_count: int, *, rng: random.Random | None = None) -> set[int]:
    if not 0 <= spy_count <= player_count:
        raise ValueError(f"Cannot seat {spy_count} spies among {player_count} players")
    return set((rng or _SYSTEM_RANDOM).sample(range(int(player_count)), int(spy_count)))


def draw_word_pair(
    *,
    pairs: Sequence[tuple[str, str]] = WORD_PAIRS,
    rng: random.Random | None = None,
) -> tuple[str, str]:
    return (rng or _SYSTEM_RANDOM).choice(list(pairs))
