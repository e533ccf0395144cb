#!/usr/bin/env python3

from __future__ import annotations

import io
import json
import os
import random
import unittest
from unittest import mock
from urllib import error

from packages.deceit_core.llm.providers import (
    ProviderConfig,
    ProviderExecutionError,
    ProviderExecutionResult,
    ProviderUnavailableError,
    execute_prompt,
    provider_config_from_env,
    reply_line,
)
from packages.deceit_core.llm.reasoner import FALLBACK_SPEECHES, AgentReasoner, match_choice


def _event(event_type: str, **fields) -> dict:
    return {"event_type": event_type, "round": 1, **fields}


START_EVENTS = [_event("start"), _event("hostSpeech", text="Game start.")]


def _context(**overrides) -> dict:
    context = {
        "room_id": "room-1",
        "round": 1,
        "name": "张三",
        "word": "苹果",
        "events": list(START_EVENTS),
        "choices": ["李四", "王五"],
    }
    context.update(overrides)
    return context


class AgentReasonerTests(unittest.TestCase):
    def test_speech_uses_provider_text(self) -> None:
        prompts: list[str] = []

        def fake_provider(**kwargs):
            prompts.append(kwargs["prompt"])
            return ProviderExecutionResult(text="  It grows on trees.  ", model_name="openai_compatible:test")

        reasoner = AgentReasoner(provider_invoker=fake_provider)
        text = reasoner.generate_speech("agent-a", _context())
        self.assertEqual(text, "It grows on trees.")
        self.assertIn("张三", prompts[0])
        self.assertIn("苹果", prompts[0])
        self.assertIn("Host: Game start.", prompts[0])

    def test_provider_failure_falls_back_to_stock_speech(self) -> None:
        def failing_provider(**kwargs):
            raise ProviderExecutionError("boom", error_code="network_error")

        reasoner = AgentReasoner(provider_invoker=failing_provider, rng=random.Random(1))
        self.assertIn(reasoner.generate_speech("agent-a", _context()), FALLBACK_SPEECHES)

    def test_vote_matches_choice_in_reply(self) -> None:
        def fake_provider(**kwargs):
            return ProviderExecutionResult(text="我投王五。", model_name="m")

        reasoner = AgentReasoner(provider_invoker=fake_provider)
        self.assertEqual(reasoner.generate_vote("agent-a", ["李四", "王五"], _context()), "王五")

    def test_unmatched_vote_falls_back_to_legal_target(self) -> None:
        def fake_provider(**kwargs):
            return ProviderExecutionResult(text="张三", model_name="m")

        reasoner = AgentReasoner(provider_invoker=fake_provider, rng=random.Random(3))
        picked = reasoner.generate_vote("agent-a", ["张三", "李四", "王五"], _context())
        self.assertIn(picked, {"李四", "王五"})

    def test_vote_without_legal_targets_raises(self) -> None:
        reasoner = AgentReasoner(provider_invoker=lambda **_: ProviderExecutionResult(text="x", model_name="m"))
        with self.assertRaises(ValueError):
            reasoner.generate_vote("agent-a", ["张三"], _context())

    def test_stored_prompt_templates_override_defaults(self) -> None:
        prompts: list[str] = []

        def fake_provider(**kwargs):
            prompts.append(kwargs["prompt"])
            return ProviderExecutionResult(text="李四", model_name="m")

        record = {"prompts": {"spy": {"vote": "I am {name}; pick from {choices} {unknown}"}}}
        reasoner = AgentReasoner(prompt_lookup=lambda _: record, provider_invoker=fake_provider)
        reasoner.generate_vote("agent-a", ["李四", "王五"], _context())
        self.assertEqual(prompts[0], "I am 张三; pick from 李四, 王五 {unknown}")

    def test_memory_follows_room_events_once(self) -> None:
        reasoner = AgentReasoner(provider_invoker=lambda **_: ProviderExecutionResult(text="ok", model_name="m"))
        reasoner.generate_speech("agent-a", _context())
        events = START_EVENTS + [
            _event("speech", display_name="李四", text="red"),
            _event("vote", display_name="王五", vote_target="李四"),
            _event("hostSpeech", text="李四 received 3 votes and is out."),
        ]
        reasoner.generate_speech("agent-a", _context(events=events))
        memory = reasoner.memory("agent-a")
        self.assertEqual(memory.word, "苹果")
        self.assertEqual(memory.history.count("Host: Game start."), 1)
        self.assertEqual(
            memory.history[-3:],
            ["李四: red", "王五: votes for 李四", "Host: 李四 received 3 votes and is out."],
        )

        reasoner.generate_speech("agent-a", _context(room_id="room-2", word="梨", events=[]))
        memory = reasoner.memory("agent-a")
        self.assertEqual(memory.word, "梨")
        self.assertEqual(memory.history, ["Host: 张三, your word is 梨"])

    def test_end_event_is_remembered_as_result(self) -> None:
        reasoner = AgentReasoner(provider_invoker=lambda **_: ProviderExecutionResult(text="ok", model_name="m"))
        reasoner.generate_speech("agent-a", _context(events=START_EVENTS + [_event("end", winner_role="innocent")]))
        self.assertEqual(reasoner.memory("agent-a").history[-1], "Host: Game over, the innocent side wins.")

    def test_forget_drops_memory(self) -> None:
        reasoner = AgentReasoner()
        reasoner.perceive("agent-a", "start", name="张三", room_id="room-1")
        reasoner.perceive("agent-a", "vote", name="李四", message="王五")
        reasoner.forget("agent-a")
        self.assertEqual(reasoner.memory("agent-a").history, [])
        self.assertIsNone(reasoner.memory("agent-a").room_id)

    def test_match_choice(self) -> None:
        self.assertEqual(match_choice(" 李四. ", ["李四", "王五"]), "李四")
        self.assertIsNone(match_choice("李四 or 王五", ["李四", "王五"]))
        self.assertIsNone(match_choice("", ["李四"]))


class ProviderConfigTests(unittest.TestCase):
    def test_missing_api_key_is_unavailable(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ProviderUnavailableError) as ctx:
                provider_config_from_env()
        self.assertEqual(ctx.exception.error_code, "missing_api_key")

    def test_env_overrides(self) -> None:
        env = {
            "DECEIT_LLM_API_KEY": "sk-test",
            "DECEIT_LLM_MODEL": "tiny-model",
            "DECEIT_LLM_BASE_URL": "http://localhost:9000/v1/",
            "DECEIT_LLM_TIMEOUT_MS": "2500",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = provider_config_from_env()
        self.assertEqual(config.model, "tiny-model")
        self.assertEqual(config.base_url, "http://localhost:9000/v1")
        self.assertEqual(config.api_key, "sk-test")
        self.assertEqual(config.timeout_ms, 2500)
        self.assertEqual(config.model_name(), "openai_compatible:tiny-model")

    def test_openai_key_fallback_and_empty_key_opt_in(self) -> None:
        with mock.patch.dict(os.environ, {"OPENAI_API_KEY": "sk-openai"}, clear=True):
            self.assertEqual(provider_config_from_env().api_key, "sk-openai")
        with mock.patch.dict(os.environ, {"DECEIT_LLM_ALLOW_EMPTY_API_KEY": "1"}, clear=True):
            self.assertIsNone(provider_config_from_env().api_key)


class FakeResponse:
    def __init__(self, body: dict) -> None:
        self._raw = json.dumps(body).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None

    def read(self) -> bytes:
        return self._raw


CONFIG = ProviderConfig(model="tiny", base_url="http://llm.local/v1", api_key="sk-test")


class ProviderTransportTests(unittest.TestCase):
    def test_reply_is_reduced_to_first_line(self) -> None:
        body = {
            "model": "tiny-2024",
            "choices": [{"message": {"content": "\n\"A round fruit.\"\nextra reasoning"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 4},
        }
        with mock.patch(
            "packages.deceit_core.llm.providers.request.urlopen", return_value=FakeResponse(body)
        ) as urlopen:
            result = execute_prompt(prompt="describe", config=CONFIG)

        self.assertEqual(result.text, "A round fruit.")
        self.assertEqual(result.model_name, "tiny-2024")
        self.assertEqual(result.prompt_tokens, 12)
        sent = urlopen.call_args[0][0]
        self.assertEqual(sent.full_url, "http://llm.local/v1/chat/completions")
        self.assertEqual(sent.get_header("Authorization"), "Bearer sk-test")
        payload = json.loads(sent.data.decode("utf-8"))
        self.assertEqual([m["role"] for m in payload["messages"]], ["system", "user"])
        self.assertEqual(payload["messages"][1]["content"], "describe")

    def test_refused_credentials_mark_provider_unavailable(self) -> None:
        refused = error.HTTPError("http://llm.local/v1/chat/completions", 401, "Unauthorized", None, io.BytesIO(b"no"))
        with mock.patch("packages.deceit_core.llm.providers.request.urlopen", side_effect=refused):
            with self.assertRaises(ProviderUnavailableError) as ctx:
                execute_prompt(prompt="vote", config=CONFIG)
        self.assertEqual(ctx.exception.error_code, "rejected_credentials")

    def test_blank_reply_is_an_execution_error(self) -> None:
        body = {"choices": [{"message": {"content": "   \n  "}}]}
        with mock.patch("packages.deceit_core.llm.providers.request.urlopen", return_value=FakeResponse(body)):
            with self.assertRaises(ProviderExecutionError) as ctx:
                execute_prompt(prompt="vote", config=CONFIG)
        self.assertEqual(ctx.exception.error_code, "empty_response")

    def test_reply_line_joins_content_parts(self) -> None:
        self.assertEqual(reply_line([{"type": "text", "text": "王五"}, {"type": "text", "text": "."}]), "王五.")
        self.assertEqual(reply_line(None), "")


if __name__ == "__main__":
    unittest.main()
