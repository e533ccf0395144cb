#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
TEST_DB_PATH = Path(TEST_DB_DIR.name) / "test_game_deceit.db"
os.environ["DECEIT_DB_PATH"] = str(TEST_DB_PATH)

from apps.api.deceit_api.main import app
from apps.api.deceit_api.routers.agents import reset_rate_limiter_for_tests as reset_register_limiter
from apps.api.deceit_api.routers.game import reset_action_rate_limiter_for_tests as reset_action_limiter
from apps.api.deceit_api.services.game_service import reset_game_engine_for_tests as reset_game_engine
from apps.api.deceit_api.storage.games import reset_backend_cache_for_tests as reset_games_backend


class GameApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["DECEIT_DB_PATH"] = str(TEST_DB_PATH)
        os.environ.pop("DATABASE_URL", None)
        reset_game_engine()
        if TEST_DB_PATH.exists():
            TEST_DB_PATH.unlink()
        reset_games_backend()
        reset_register_limiter()
        reset_action_limiter()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        reset_game_engine()

    def _seed(self) -> list[str]:
        resp = self.client.post("/api/v1/agents/init-test-data")
        self.assertEqual(resp.status_code, 200)
        return [agent["agent_id"] for agent in resp.json()["agents"]]

    def _start_room(self) -> dict:
        ids = self._seed()
        for aid in ids:
            resp = self.client.post("/api/v1/game/matching/start", json={"agent_id": aid})
            self.assertEqual(resp.status_code, 200)
        tick = self.client.post("/api/v1/game/matching/tick")
        self.assertEqual(tick.status_code, 200)
        formed = tick.json()["report"]["formed_rooms"]
        self.assertEqual(len(formed), 1)
        room = self.client.get(f"/api/v1/game/rooms/{formed[0]}")
        self.assertEqual(room.status_code, 200)
        return room.json()["room"]

    def _act(self, room_id: str, agent_id: str, **body) -> dict:
        resp = self.client.post(f"/api/v1/game/rooms/{room_id}/actions", json={"agent_id": agent_id, **body})
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["outcome"]

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_seed_and_register_agents(self) -> None:
        ids = self._seed()
        self.assertEqual(len(ids), 6)

        created = self.client.post("/api/v1/agents/register", json={"name": "Newcomer", "score": 42.5})
        self.assertEqual(created.status_code, 200)
        agent = created.json()["agent"]
        self.assertEqual(agent["score"], 42.5)
        self.assertFalse(agent["is_synthetic"])
        self.assertIn("spy", agent["prompts"])

        listing = self.client.get("/api/v1/agents").json()
        self.assertEqual(listing["count"], 7)
        self.assertEqual(listing["agents"][0]["agent_id"], "test_agent_6")

        one = self.client.get(f"/api/v1/agents/{agent['agent_id']}")
        self.assertEqual(one.status_code, 200)
        self.assertEqual(one.json()["agent"]["match_status"]["status"], "idle")
        self.assertEqual(self.client.get("/api/v1/agents/missing").status_code, 404)

        dup = self.client.post(
            "/api/v1/agents/register", json={"name": "Clash", "agent_id": "test_agent_1"}
        )
        self.assertEqual(dup.status_code, 409)

    def test_matching_start_cancel_and_queue(self) -> None:
        self._seed()
        start = self.client.post("/api/v1/game/matching/start", json={"agent_id": "test_agent_1"})
        self.assertEqual(start.status_code, 200)
        self.assertEqual(start.json()["entry"]["match_score"], 173.2)

        again = self.client.post("/api/v1/game/matching/start", json={"agent_id": "test_agent_1"})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["kind"], "illegal_transition")

        queue = self.client.get("/api/v1/game/matching/queue").json()
        self.assertEqual(queue["count"], 1)
        self.assertTrue(queue["items"][0]["is_human"])

        status = self.client.get("/api/v1/game/matching/status", params={"agent_id": "test_agent_1"}).json()
        self.assertEqual(status["status"], "queued")

        cancel = self.client.post("/api/v1/game/matching/cancel", json={"agent_id": "test_agent_1"})
        self.assertEqual(cancel.status_code, 200)
        self.assertEqual(cancel.json()["status"]["status"], "idle")

        idle_cancel = self.client.post("/api/v1/game/matching/cancel", json={"agent_id": "test_agent_1"})
        self.assertEqual(idle_cancel.status_code, 409)

    def test_unknown_agent_cannot_queue(self) -> None:
        resp = self.client.post("/api/v1/game/matching/start", json={"agent_id": "ghost"})
        self.assertEqual(resp.status_code, 404)
        body = resp.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"]["kind"], "agent_not_found")
        self.assertEqual(body["error"]["agent_id"], "ghost")

    def test_room_errors_map_to_status_codes(self) -> None:
        missing = self.client.get("/api/v1/game/rooms/nope")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["kind"], "room_not_found")

        room = self._start_room()
        room_id = room["room_id"]
        seated = room["initial_player_list"][0]["agent_id"]

        bad_kind = self.client.post(
            f"/api/v1/game/rooms/{room_id}/actions", json={"agent_id": seated, "action": "dance"}
        )
        self.assertEqual(bad_kind.status_code, 422)
        self.assertEqual(bad_kind.json()["error"]["kind"], "unsupported_action_type")

        empty = self.client.post(
            f"/api/v1/game/rooms/{room_id}/actions", json={"agent_id": seated, "action": "vote", "vote_target": ""}
        )
        self.assertEqual(empty.status_code, 422)
        self.assertEqual(empty.json()["error"]["kind"], "empty_vote_target")

        stranger = self.client.post(
            f"/api/v1/game/rooms/{room_id}/actions", json={"agent_id": "ghost", "action": "speech", "content": "hi"}
        )
        self.assertEqual(stranger.status_code, 409)
        self.assertEqual(stranger.json()["error"]["kind"], "player_not_in_room")

        cancel = self.client.post("/api/v1/game/matching/cancel", json={"agent_id": seated})
        self.assertEqual(cancel.status_code, 409)

    def test_full_game_to_settlement(self) -> None:
        room = self._start_room()
        room_id = room["room_id"]
        players = room["initial_player_list"]
        self.assertEqual(len(players), 6)
        self.assertEqual(room["status"], "playing")
        self.assertEqual([e["event_type"] for e in room["event_list"]], ["start", "hostSpeech"])

        spies = [p for p in players if p["role"] == "spy"]
        innocents = [p for p in players if p["role"] == "innocent"]
        self.assertEqual((len(spies), len(innocents)), (2, 4))
        before = {a["agent_id"]: a for a in self.client.get("/api/v1/agents").json()["agents"]}
        for p in players:
            self.assertEqual(before[p["agent_id"]]["match_status"]["status"], "in_game")

        speech = self._act(room_id, players[0]["agent_id"], action="speech", content="Crunchy and sweet.")
        self.assertEqual(speech["event"]["text"], "Crunchy and sweet.")

        first_spy, second_spy = spies
        for p in players:
            target = innocents[0] if p["agent_id"] == first_spy["agent_id"] else first_spy
            outcome = self._act(room_id, p["agent_id"], action="vote", vote_target=target["display_name"])
        self.assertTrue(outcome["round_resolved"])
        self.assertEqual(outcome["eliminated"], first_spy["display_name"])
        self.assertFalse(outcome["finished"])

        for p in players:
            if p["agent_id"] == first_spy["agent_id"]:
                continue
            target = innocents[0] if p["agent_id"] == second_spy["agent_id"] else second_spy
            outcome = self._act(room_id, p["agent_id"], action="vote", vote_target=target["display_name"])
        self.assertTrue(outcome["finished"])
        self.assertEqual(outcome["winner_role"], "innocent")

        view = self.client.get(f"/api/v1/game/rooms/{room_id}").json()["room"]
        self.assertEqual(view["status"], "finished")
        self.assertEqual(view["current_round"], 2)
        self.assertEqual(view["end_game_data"]["winner_role"], "innocent")
        self.assertEqual(view["event_list"][-1]["event_type"], "end")

        after = {a["agent_id"]: a for a in self.client.get("/api/v1/agents").json()["agents"]}
        for p in players:
            aid = p["agent_id"]
            won = p["role"] == "innocent"
            self.assertAlmostEqual(after[aid]["score"], before[aid]["score"] + (10.0 if won else 0.0))
            self.assertEqual(after[aid]["game_count"], before[aid]["game_count"] + 1)
            self.assertEqual(after[aid]["win_count"], before[aid]["win_count"] + (1 if won else 0))
            self.assertEqual(after[aid]["match_status"]["status"], "idle")

        late = self.client.post(
            f"/api/v1/game/rooms/{room_id}/actions",
            json={"agent_id": players[1]["agent_id"], "action": "speech", "content": "late"},
        )
        self.assertEqual(late.status_code, 409)
        self.assertEqual(late.json()["error"]["kind"], "room_not_active")

        rooms = self.client.get("/api/v1/game/rooms", params={"status": "finished"}).json()
        self.assertEqual(rooms["count"], 1)
        self.assertEqual(rooms["rooms"][0]["alive_count"], 4)

    def test_auto_turn_without_api_key_uses_fallback(self) -> None:
        room = self._start_room()
        aid = room["initial_player_list"][0]["agent_id"]
        os.environ.pop("DECEIT_LLM_API_KEY", None)
        os.environ.pop("OPENAI_API_KEY", None)
        os.environ.pop("DECEIT_LLM_ALLOW_EMPTY_API_KEY", None)
        resp = self.client.post(f"/api/v1/game/rooms/{room['room_id']}/auto-turn", json={"agent_id": aid})
        self.assertEqual(resp.status_code, 200, resp.text)
        outcome = resp.json()["outcome"]
        self.assertEqual(outcome["event"]["event_type"], "speech")
        self.assertTrue(outcome["event"]["text"])

    def test_action_rate_limit(self) -> None:
        room = self._start_room()
        aid = room["initial_player_list"][0]["agent_id"]
        for _ in range(30):
            self._act(room["room_id"], aid, action="speech", content="again")
        limited = self.client.post(
            f"/api/v1/game/rooms/{room['room_id']}/actions",
            json={"agent_id": aid, "action": "speech", "content": "too much"},
        )
        self.assertEqual(limited.status_code, 429)
        self.assertIn("Retry-After", limited.headers)

    def test_scheduler_status_endpoint(self) -> None:
        resp = self.client.get("/api/v1/game/matching/scheduler")
        self.assertEqual(resp.status_code, 200)
        scheduler = resp.json()["scheduler"]
        self.assertFalse(scheduler["running"])
        self.assertEqual(scheduler["interval_seconds"], 5.0)


if __name__ == "__main__":
    unittest.main()
