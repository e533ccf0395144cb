#!/usr/bin/env python3

from __future__ import annotations

import threading
import time
import unittest

from packages.deceit_core.game.config import GameConfig
from packages.deceit_core.game.errors import (
    DeadPlayerAction,
    EmptyVoteTarget,
    InvalidVoteTarget,
    PlayerNotInRoom,
    RoomNotActive,
    RoomNotFound,
    UnsupportedActionType,
)
from packages.deceit_core.game.gateway import InMemoryGateway
from packages.deceit_core.game.models import Player, RoomState
from packages.deceit_core.game.room_machine import RoomManager, RoomStateMachine, build_room_view, winner_role_for
from packages.deceit_core.game.settlement import ScoreReporter
from packages.deceit_core.game.status_tracker import AgentStatusTracker

NAMES = ["甲", "乙", "丙", "丁", "戊", "己"]


def _room(roles: list[str], *, room_id: str = "room-1") -> RoomState:
    players = [
        Player(agent_id=f"agent-{i}", display_name=NAMES[i], agent_name=f"Agent {i}", role=role, score=100.0)
        for i, role in enumerate(roles)
    ]
    return RoomState(room_id=room_id, status="playing", secret_word="苹果", spy_word="梨", players=players)


class RoomStateMachineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = GameConfig()

    def _machine(self, roles: list[str]) -> RoomStateMachine:
        return RoomStateMachine(_room(roles), config=self.config)

    def test_speech_appends_event_with_descriptions(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent"])
        outcome = machine.apply(agent_id="agent-1", action="speech", content="It is round.")
        self.assertEqual(outcome.event["event_type"], "speech")
        self.assertEqual(outcome.event["display_name"], "乙")
        self.assertEqual(outcome.event["highlight_index"], 1)
        self.assertEqual(outcome.event["current_status_descriptions"][0], "甲(alive)")
        self.assertEqual(len(machine.state.events), 1)

    def test_three_to_one_vote_kills_last_spy_and_innocents_win(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent"])
        machine.apply(agent_id="agent-0", action="vote", vote_target="乙")
        machine.apply(agent_id="agent-1", action="vote", vote_target="甲")
        last_before = machine.apply(agent_id="agent-2", action="vote", vote_target="甲")
        self.assertFalse(last_before.round_resolved)

        outcome = machine.apply(agent_id="agent-3", action="vote", vote_target="甲")
        state = machine.state
        self.assertTrue(outcome.round_resolved)
        self.assertTrue(outcome.finished)
        self.assertEqual(outcome.eliminated, "甲")
        self.assertEqual(outcome.winner_role, "innocent")
        self.assertEqual(state.status, "finished")
        self.assertEqual(state.player_by_name("甲").player_status, "dead")
        self.assertEqual(state.events[-1].event_type, "end")
        self.assertEqual(state.events[-1].winner_role, "innocent")
        self.assertEqual(state.end_game_data.winner_role, "innocent")
        self.assertEqual(sorted(p.display_name for p in state.end_game_data.winners), ["丁", "丙", "乙"])
        deltas = {item["agent_id"]: item["delta"] for item in state.end_game_data.scores}
        self.assertEqual(deltas, {"agent-0": 0.0, "agent-1": 10.0, "agent-2": 10.0, "agent-3": 10.0})
        self.assertIn("甲(dead)", state.events[-1].current_status_descriptions)

    def test_tie_eliminates_nobody_and_advances_round(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent"])
        machine.apply(agent_id="agent-0", action="vote", vote_target="乙")
        machine.apply(agent_id="agent-1", action="vote", vote_target="甲")
        machine.apply(agent_id="agent-2", action="vote", vote_target="甲")
        outcome = machine.apply(agent_id="agent-3", action="vote", vote_target="乙")
        self.assertTrue(outcome.round_resolved)
        self.assertTrue(outcome.tie)
        self.assertIsNone(outcome.eliminated)
        self.assertFalse(outcome.finished)
        self.assertEqual(machine.state.current_round, 2)
        self.assertEqual(machine.state.status, "playing")
        self.assertEqual(len(machine.state.alive_players()), 4)
        self.assertEqual(machine.state.events[-1].event_type, "hostSpeech")
        self.assertEqual(machine.state.events[-1].round, 2)

    def test_spies_win_at_parity(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent"])
        machine.apply(agent_id="agent-0", action="vote", vote_target="乙")
        machine.apply(agent_id="agent-1", action="vote", vote_target="丙")
        outcome = machine.apply(agent_id="agent-2", action="vote", vote_target="乙")
        self.assertEqual(outcome.eliminated, "乙")
        self.assertTrue(outcome.finished)
        self.assertEqual(outcome.winner_role, "spy")

    def test_invalid_votes_are_recorded_but_not_counted(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent"])
        self_vote = machine.apply(agent_id="agent-0", action="vote", vote_target="甲")
        self.assertFalse(self_vote.event["vote_is_valid"])
        first = machine.apply(agent_id="agent-1", action="vote", vote_target="甲")
        self.assertTrue(first.event["vote_is_valid"])
        duplicate = machine.apply(agent_id="agent-1", action="vote", vote_target="丙")
        self.assertFalse(duplicate.event["vote_is_valid"])
        self.assertEqual(machine.state.current_round, 1)
        self.assertEqual(len(machine.state.events), 3)

    def test_vote_for_dead_player_is_invalid(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent", "innocent"])
        machine.state.players[4].player_status = "dead"
        outcome = machine.apply(agent_id="agent-1", action="vote", vote_target="戊")
        self.assertFalse(outcome.event["vote_is_valid"])

    def test_resolution_waits_for_every_alive_player(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent", "innocent"])
        machine.state.players[4].player_status = "dead"
        for aid in ("agent-1", "agent-2", "agent-3"):
            self.assertFalse(machine.apply(agent_id=aid, action="vote", vote_target="甲").round_resolved)
        self.assertTrue(machine.apply(agent_id="agent-0", action="vote", vote_target="乙").round_resolved)

    def test_dead_players_cannot_act(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent", "innocent"])
        machine.state.players[2].player_status = "dead"
        with self.assertRaises(DeadPlayerAction):
            machine.apply(agent_id="agent-2", action="speech", content="hello")
        with self.assertRaises(DeadPlayerAction):
            machine.apply(agent_id="agent-2", action="vote", vote_target="甲")
        self.assertEqual(machine.state.events, [])

    def test_validation_errors_leave_state_untouched(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent"])
        with self.assertRaises(EmptyVoteTarget):
            machine.apply(agent_id="agent-0", action="vote", vote_target="  ")
        with self.assertRaises(InvalidVoteTarget):
            machine.apply(agent_id="agent-0", action="vote", vote_target="nobody")
        with self.assertRaises(UnsupportedActionType):
            machine.apply(agent_id="agent-0", action="dance")
        with self.assertRaises(PlayerNotInRoom) as ctx:
            machine.apply(agent_id="stranger", action="speech", content="hi")
        self.assertEqual(ctx.exception.room_id, "room-1")
        self.assertEqual(machine.state.events, [])
        self.assertEqual(machine.state.current_round, 1)

    def test_finished_room_rejects_actions(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent"])
        machine.state.status = "finished"
        with self.assertRaises(RoomNotActive):
            machine.apply(agent_id="agent-0", action="speech", content="late")

    def test_winner_role_for(self) -> None:
        state = _room(["spy", "spy", "innocent", "innocent", "innocent", "innocent"])
        self.assertIsNone(winner_role_for(state))
        state.players[2].player_status = "dead"
        state.players[3].player_status = "dead"
        self.assertEqual(winner_role_for(state), "spy")

    def test_room_view_reports_latest_event(self) -> None:
        machine = self._machine(["spy", "innocent", "innocent"])
        machine.announce("Round 1 begins.")
        machine.apply(agent_id="agent-2", action="speech", content="red")
        view = build_room_view(machine.state)
        self.assertEqual(view.word, "苹果")
        self.assertEqual(view.highlight_index, 2)
        self.assertEqual(len(view.event_list), 2)
        self.assertEqual(len(view.initial_player_list), 3)
        self.assertIsNone(view.end_game_data)


class RoomManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = InMemoryGateway()
        self.tracker = AgentStatusTracker()
        self.manager = RoomManager(
            gateway=self.gateway,
            reporter=ScoreReporter(gateway=self.gateway, tracker=self.tracker),
            config=GameConfig(),
        )
        state = _room(["spy", "innocent", "innocent", "innocent"])
        for player in state.players:
            self.gateway.save_agent(
                {"agent_id": player.agent_id, "name": player.agent_name, "score": 100.0, "game_count": 3, "win_count": 1}
            )
            self.tracker.transition(player.agent_id, "queued")
            self.tracker.transition(player.agent_id, "in_game", room_id=state.room_id)
        self.gateway.save_room(state)

    def test_missing_room_raises(self) -> None:
        with self.assertRaises(RoomNotFound):
            self.manager.process_action("missing", agent_id="agent-0", action="speech", content="x")
        with self.assertRaises(RoomNotFound):
            self.manager.get_room_view("missing")

    def test_actions_are_persisted(self) -> None:
        self.manager.process_action("room-1", agent_id="agent-0", action="speech", content="fruit")
        stored = self.gateway.load_room("room-1")
        self.assertEqual(len(stored.events), 1)
        self.assertEqual(stored.events[0].text, "fruit")

    def test_finishing_settles_scores_and_releases_members(self) -> None:
        self.manager.process_action("room-1", agent_id="agent-0", action="vote", vote_target="乙")
        for aid in ("agent-1", "agent-2", "agent-3"):
            outcome = self.manager.process_action("room-1", agent_id=aid, action="vote", vote_target="甲")
        self.assertTrue(outcome.finished)

        spy = self.gateway.load_agent("agent-0")
        self.assertEqual(spy["score"], 100.0)
        self.assertEqual(spy["game_count"], 4)
        self.assertEqual(spy["win_count"], 1)
        innocent = self.gateway.load_agent("agent-1")
        self.assertEqual(innocent["score"], 110.0)
        self.assertEqual(innocent["game_count"], 4)
        self.assertEqual(innocent["win_count"], 2)
        for i in range(4):
            record = self.tracker.get_status(f"agent-{i}")
            self.assertEqual(record.status, "idle")
            self.assertIsNone(record.room_id)

        view = self.manager.get_room_view("room-1")
        self.assertEqual(view.status, "finished")
        self.assertEqual(view.end_game_data["winner_role"], "innocent")
        with self.assertRaises(RoomNotActive):
            self.manager.process_action("room-1", agent_id="agent-1", action="speech", content="again")


class SlowLoadGateway(InMemoryGateway):
    """Widens the load/save window so unserialized writers would lose votes."""

    def load_room(self, room_id: str):
        state = super().load_room(room_id)
        time.sleep(0.005)
        return state


class RoomManagerConcurrencyTests(unittest.TestCase):
    def test_concurrent_votes_resolve_round_once(self) -> None:
        gateway = SlowLoadGateway()
        tracker = AgentStatusTracker()
        manager = RoomManager(
            gateway=gateway,
            reporter=ScoreReporter(gateway=gateway, tracker=tracker),
            config=GameConfig(),
        )
        gateway.save_room(_room(["spy", "spy", "innocent", "innocent", "innocent", "innocent"]))

        barrier = threading.Barrier(6)
        errors: list[BaseException] = []

        def vote(index: int) -> None:
            barrier.wait()
            target = "乙" if index == 0 else "甲"
            try:
                manager.process_action("room-1", agent_id=f"agent-{index}", action="vote", vote_target=target)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=vote, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(errors, [])
        state = gateway.load_room("room-1")
        round_one_votes = [e for e in state.events if e.event_type == "vote" and e.round == 1]
        self.assertEqual(len(round_one_votes), 6)
        self.assertTrue(all(e.vote_is_valid for e in round_one_votes))
        announcements = [e.text for e in state.events if e.event_type == "hostSpeech"]
        self.assertEqual(announcements, ["甲 received 5 votes and is out.", "Round 2 begins."])
        self.assertEqual(state.current_round, 2)
        self.assertEqual(state.player_by_name("甲").player_status, "dead")


if __name__ == "__main__":
    unittest.main()
