"""Persistent agent, matching queue and room storage with SQLite fallback and Postgres support."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import json
import logging
import os
import sqlite3
import threading
import uuid

from packages.deceit_core.game.gateway import PersistenceGateway, normalize_agent_record
from packages.deceit_core.game.models import QueueEntry, RoomState, parse_iso, to_iso, utc_now

logger = logging.getLogger("deceit_api.storage.games")


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "deceit_core" / "db" / "migrations"

DEFAULT_AVATAR = "https://img.alicdn.com/imgextra/i6/O1CN01yCnY2D1YS9kn1IyLJ_!!6000000003057-0-tps-300-300.jpg"

DEFAULT_PROMPTS: dict[str, Any] = {
    "spy": {
        "description": (
            "{history}\n"
            "你是{name},你的词汇为{word}。你可以猜测别人的词,你可以直接说出你的猜测结果\n"
            "根据游戏规则和此前的对话，请直接输出你的发言,不需要输出你的名字"
            "（注意，你的描述应该言简意赅，并且严格模仿真实人类的描述语法/标点使用，"
            "这是几个具体的描述例子：1. 也可以向下 2. 喜欢蛇 3. 吃火锅必备）:"
        ),
        "vote": (
            "{history}\n"
            "你是{name}。永远不要投自己{name},并且不要被其他agent误导,保持自己的判断,"
            "并且根据其他agent的有效回复来判断卧底\n"
            "从列表中选择你认为是卧底的人的名字：{choices}，然后直接返回名字:"
        ),
    }
}

# (agent_id, name, score, win_count, game_count)
TEST_AGENTS: tuple[tuple[str, str, float, int, int], ...] = (
    ("test_agent_1", "测试Agent1", 173.2, 90, 219),
    ("test_agent_2", "测试Agent2", 185.5, 94, 180),
    ("test_agent_3", "测试Agent3", 195.8, 72, 150),
    ("test_agent_4", "测试Agent4", 200.0, 50, 100),
    ("test_agent_5", "测试Agent5", 210.5, 66, 120),
    ("test_agent_6", "测试Agent6", 220.8, 78, 130),
)


def _now_utc_sqlite() -> str:
    return "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def _agent_row_to_dict(row: Any) -> dict[str, Any]:
    out = {k: row[k] for k in row.keys()}
    out["prompts"] = _load_json(out.pop("prompts_json", None), {})
    out["is_synthetic"] = bool(out.get("is_synthetic"))
    for key in ("created_at", "updated_at"):
        if key in out and not isinstance(out[key], str):
            out[key] = to_iso(out[key])
    return out


def _room_row_to_state(row: Any) -> RoomState:
    return RoomState.from_dict(
        {
            "room_id": row["room_id"],
            "status": row["status"],
            "current_round": row["current_round"],
            "secret_word": row["secret_word"],
            "spy_word": row["spy_word"],
            "players": _load_json(row["players_json"], []),
            "events": _load_json(row["events_json"], []),
            "end_game_data": _load_json(row["end_game_data_json"], None),
            "created_at": row["created_at"],
        }
    )


def _queue_row_to_entry(row: Any) -> QueueEntry:
    return QueueEntry(
        agent_id=str(row["agent_id"]),
        match_score=float(row["match_score"]),
        enqueue_time=parse_iso(row["enqueue_time"]) or utc_now(),
        is_synthetic=bool(row["is_synthetic"]),
    )


class SQLiteGameStore(PersistenceGateway):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False
        self._init_lock = threading.Lock()
        self._local = threading.local()

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        self._local.conn = conn
        return conn

    def init_db(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            logger.info("[STORAGE] Initializing SQLite game database at '%s'", self.db_path)
            with self._connect() as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS agents (
                      agent_id TEXT PRIMARY KEY,
                      name TEXT NOT NULL,
                      avatar TEXT,
                      score REAL NOT NULL DEFAULT 0,
                      game_count INTEGER NOT NULL DEFAULT 0,
                      win_count INTEGER NOT NULL DEFAULT 0,
                      rank INTEGER,
                      is_synthetic INTEGER NOT NULL DEFAULT 0,
                      prompts_json TEXT NOT NULL DEFAULT '{{}}',
                      created_at TEXT NOT NULL DEFAULT ({_now_utc_sqlite()}),
                      updated_at TEXT NOT NULL DEFAULT ({_now_utc_sqlite()})
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_agents_score ON agents(score)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS matching_queue (
                      agent_id TEXT PRIMARY KEY,
                      match_score REAL NOT NULL,
                      is_synthetic INTEGER NOT NULL DEFAULT 0,
                      enqueue_time TEXT NOT NULL,
                      FOREIGN KEY (agent_id) REFERENCES agents(agent_id) ON DELETE CASCADE
                    )
                    """
                )
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS rooms (
                      room_id TEXT PRIMARY KEY,
                      status TEXT NOT NULL DEFAULT 'waiting',
                      current_round INTEGER NOT NULL DEFAULT 1,
                      secret_word TEXT,
                      spy_word TEXT,
                      players_json TEXT NOT NULL DEFAULT '[]',
                      events_json TEXT NOT NULL DEFAULT '[]',
                      end_game_data_json TEXT,
                      created_at TEXT NOT NULL,
                      updated_at TEXT NOT NULL DEFAULT ({_now_utc_sqlite()})
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_rooms_status_created ON rooms(status, created_at)"
                )
            self._initialized = True
        logger.info("[STORAGE] SQLite game database initialized successfully")

    def load_agent(self, agent_id: str) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM agents WHERE agent_id = ?", (str(agent_id),)).fetchone()
        return _agent_row_to_dict(row) if row else None

    def save_agent(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        rec = normalize_agent_record(record)
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO agents
                  (agent_id, name, avatar, score, game_count, win_count, rank, is_synthetic, prompts_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                  name = excluded.name,
                  avatar = excluded.avatar,
                  score = excluded.score,
                  game_count = excluded.game_count,
                  win_count = excluded.win_count,
                  rank = excluded.rank,
                  is_synthetic = excluded.is_synthetic,
                  prompts_json = excluded.prompts_json,
                  updated_at = ({_now_utc_sqlite()})
                """,
                (
                    rec["agent_id"],
                    rec["name"],
                    rec["avatar"],
                    rec["score"],
                    rec["game_count"],
                    rec["win_count"],
                    rec["rank"],
                    1 if rec["is_synthetic"] else 0,
                    _dump(rec["prompts"]),
                ),
            )
            row = conn.execute("SELECT * FROM agents WHERE agent_id = ?", (rec["agent_id"],)).fetchone()
        logger.debug("[STORAGE] Saved agent: id=%s, score=%.1f", rec["agent_id"], rec["score"])
        return _agent_row_to_dict(row)

    def list_agents(self) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM agents ORDER BY score DESC, agent_id ASC").fetchall()
        return [_agent_row_to_dict(r) for r in rows]

    def load_room(self, room_id: str) -> Optional[RoomState]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rooms WHERE room_id = ?", (str(room_id),)).fetchone()
        return _room_row_to_state(row) if row else None

    def save_room(self, state: RoomState) -> None:
        self.init_db()
        raw = state.to_dict()
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO rooms
                  (room_id, status, current_round, secret_word, spy_word,
                   players_json, events_json, end_game_data_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(room_id) DO UPDATE SET
                  status = excluded.status,
                  current_round = excluded.current_round,
                  secret_word = excluded.secret_word,
                  spy_word = excluded.spy_word,
                  players_json = excluded.players_json,
                  events_json = excluded.events_json,
                  end_game_data_json = excluded.end_game_data_json,
                  updated_at = ({_now_utc_sqlite()})
                """,
                (
                    raw["room_id"],
                    raw["status"],
                    raw["current_round"],
                    raw["secret_word"],
                    raw["spy_word"],
                    _dump(raw["players"]),
                    _dump(raw["events"]),
                    _dump(raw["end_game_data"]) if raw["end_game_data"] is not None else None,
                    raw["created_at"],
                ),
            )

    def delete_room(self, room_id: str) -> bool:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rooms WHERE room_id = ?", (str(room_id),))
        return cur.rowcount > 0

    def list_rooms(self, *, status: str | None = None, limit: int = 50) -> list[RoomState]:
        self.init_db()
        bounded = max(1, min(int(limit), 1000))
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM rooms WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (status, bounded),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM rooms ORDER BY created_at DESC LIMIT ?",
                    (bounded,),
                ).fetchall()
        return [_room_row_to_state(r) for r in rows]

    def list_matching_entries(self) -> list[QueueEntry]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM matching_queue").fetchall()
        return [_queue_row_to_entry(r) for r in rows]

    def insert_matching_entry(self, agent_id: str, score: float, is_synthetic: bool) -> QueueEntry:
        self.init_db()
        entry = QueueEntry(
            agent_id=str(agent_id),
            match_score=float(score),
            enqueue_time=utc_now(),
            is_synthetic=bool(is_synthetic),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO matching_queue (agent_id, match_score, is_synthetic, enqueue_time)
                VALUES (?, ?, ?, ?)
                """,
                (entry.agent_id, entry.match_score, 1 if entry.is_synthetic else 0, to_iso(entry.enqueue_time)),
            )
        return entry

    def delete_matching_entry(self, agent_id: str) -> bool:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM matching_queue WHERE agent_id = ?", (str(agent_id),))
        return cur.rowcount > 0


class PostgresGameStore(PersistenceGateway):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._initialized = False
        self._ensure_driver()

    @staticmethod
    def _ensure_driver() -> None:
        try:
            import psycopg  # noqa: F401
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RuntimeError(
                "Postgres backend requires `psycopg`. Install it with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def _run_migrations(self) -> None:
        migration_files = sorted(MIGRATIONS_DIR.glob("*.sql"))
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      id TEXT PRIMARY KEY,
                      applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute("SELECT id FROM schema_migrations")
                applied = {row["id"] for row in cur.fetchall()}

                for file in migration_files:
                    if file.name in applied:
                        continue
                    sql = file.read_text(encoding="utf-8")
                    cur.execute(sql)
                    cur.execute("INSERT INTO schema_migrations (id) VALUES (%s)", (file.name,))
                    logger.info("[STORAGE] Applied migration %s", file.name)

    def init_db(self) -> None:
        if self._initialized:
            return
        self._run_migrations()
        self._initialized = True

    def load_agent(self, agent_id: str) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM agents WHERE agent_id = %s", (str(agent_id),))
                row = cur.fetchone()
        return _agent_row_to_dict(row) if row else None

    def save_agent(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        rec = normalize_agent_record(record)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO agents
                      (agent_id, name, avatar, score, game_count, win_count, rank, is_synthetic, prompts_json)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                    ON CONFLICT (agent_id) DO UPDATE SET
                      name = EXCLUDED.name,
                      avatar = EXCLUDED.avatar,
                      score = EXCLUDED.score,
                      game_count = EXCLUDED.game_count,
                      win_count = EXCLUDED.win_count,
                      rank = EXCLUDED.rank,
                      is_synthetic = EXCLUDED.is_synthetic,
                      prompts_json = EXCLUDED.prompts_json,
                      updated_at = NOW()
                    RETURNING *
                    """,
                    (
                        rec["agent_id"],
                        rec["name"],
                        rec["avatar"],
                        rec["score"],
                        rec["game_count"],
                        rec["win_count"],
                        rec["rank"],
                        rec["is_synthetic"],
                        _dump(rec["prompts"]),
                    ),
                )
                row = cur.fetchone()
        return _agent_row_to_dict(row)

    def list_agents(self) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM agents ORDER BY score DESC, agent_id ASC")
                rows = cur.fetchall()
        return [_agent_row_to_dict(r) for r in rows]

    def load_room(self, room_id: str) -> Optional[RoomState]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM rooms WHERE room_id = %s", (str(room_id),))
                row = cur.fetchone()
        return _room_row_to_state(row) if row else None

    def save_room(self, state: RoomState) -> None:
        self.init_db()
        raw = state.to_dict()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO rooms
                      (room_id, status, current_round, secret_word, spy_word,
                       players_json, events_json, end_game_data_json, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s::timestamptz)
                    ON CONFLICT (room_id) DO UPDATE SET
                      status = EXCLUDED.status,
                      current_round = EXCLUDED.current_round,
                      secret_word = EXCLUDED.secret_word,
                      spy_word = EXCLUDED.spy_word,
                      players_json = EXCLUDED.players_json,
                      events_json = EXCLUDED.events_json,
                      end_game_data_json = EXCLUDED.end_game_data_json,
                      updated_at = NOW()
                    """,
                    (
                        raw["room_id"],
                        raw["status"],
                        raw["current_round"],
                        raw["secret_word"],
                        raw["spy_word"],
                        _dump(raw["players"]),
                        _dump(raw["events"]),
                        _dump(raw["end_game_data"]) if raw["end_game_data"] is not None else None,
                        raw["created_at"],
                    ),
                )

    def delete_room(self, room_id: str) -> bool:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM rooms WHERE room_id = %s", (str(room_id),))
                return cur.rowcount > 0

    def list_rooms(self, *, status: str | None = None, limit: int = 50) -> list[RoomState]:
        self.init_db()
        bounded = max(1, min(int(limit), 1000))
        with self._connect() as conn:
            with conn.cursor() as cur:
                if status:
                    cur.execute(
                        "SELECT * FROM rooms WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                        (status, bounded),
                    )
                else:
                    cur.execute("SELECT * FROM rooms ORDER BY created_at DESC LIMIT %s", (bounded,))
                rows = cur.fetchall()
        return [_room_row_to_state(r) for r in rows]

    def list_matching_entries(self) -> list[QueueEntry]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM matching_queue")
                rows = cur.fetchall()
        return [_queue_row_to_entry(r) for r in rows]

    def insert_matching_entry(self, agent_id: str, score: float, is_synthetic: bool) -> QueueEntry:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO matching_queue (agent_id, match_score, is_synthetic)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (str(agent_id), float(score), bool(is_synthetic)),
                )
                row = cur.fetchone()
        return _queue_row_to_entry(row)

    def delete_matching_entry(self, agent_id: str) -> bool:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM matching_queue WHERE agent_id = %s", (str(agent_id),))
                return cur.rowcount > 0


def _resolve_sqlite_path(database_url: Optional[str]) -> Path:
    if database_url and database_url.startswith("sqlite:///"):
        raw = database_url[len("sqlite:///") :]
        p = Path(raw)
        if not p.is_absolute():
            p = (WORKSPACE_ROOT / p).resolve()
        return p

    raw = os.environ.get("DECEIT_DB_PATH", str(WORKSPACE_ROOT / "data" / "deceit.db"))
    p = Path(raw)
    if not p.is_absolute():
        p = (WORKSPACE_ROOT / p).resolve()
    return p


def _database_url() -> Optional[str]:
    return os.environ.get("DATABASE_URL")


@lru_cache(maxsize=1)
def _backend() -> PersistenceGateway:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresGameStore(database_url)
    return SQLiteGameStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def get_gateway() -> PersistenceGateway:
    return _backend()


def init_db() -> None:
    _backend().init_db()


def get_agent(agent_id: str) -> Optional[dict[str, Any]]:
    return _backend().load_agent(agent_id)


def list_agents() -> list[dict[str, Any]]:
    return _backend().list_agents()


def register_agent(
    *,
    name: str,
    avatar: Optional[str] = None,
    score: float = 0.0,
    prompts: Optional[dict[str, Any]] = None,
    is_synthetic: bool = False,
    agent_id: Optional[str] = None,
) -> dict[str, Any]:
    new_id = str(agent_id or uuid.uuid4())
    logger.info("[STORAGE] Registering agent: id=%s, name='%s'", new_id, name)
    return _backend().save_agent(
        {
            "agent_id": new_id,
            "name": name,
            "avatar": avatar,
            "score": score,
            "prompts": prompts if prompts is not None else DEFAULT_PROMPTS,
            "is_synthetic": is_synthetic,
        }
    )


def seed_test_agents() -> list[dict[str, Any]]:
    """Upsert the six stock test agents; they double as the synthetic backfill pool."""
    seeded = []
    for agent_id, name, score, win_count, game_count in TEST_AGENTS:
        seeded.append(
            _backend().save_agent(
                {
                    "agent_id": agent_id,
                    "name": name,
                    "avatar": DEFAULT_AVATAR,
                    "score": score,
                    "win_count": win_count,
                    "game_count": game_count,
                    "is_synthetic": True,
                    "prompts": DEFAULT_PROMPTS,
                }
            )
        )
    logger.info("[STORAGE] Seeded %d test agents", len(seeded))
    return seeded
