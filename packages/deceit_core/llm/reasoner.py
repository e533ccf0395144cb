"""Per-agent memory and LLM-backed speech/vote generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import logging
import random
import threading

from ..game.models import EVENT_END, EVENT_HOST_SPEECH, EVENT_SPEECH, EVENT_VOTE
from .providers import ProviderError, ProviderExecutionResult, execute_prompt


logger = logging.getLogger("deceit_core.reasoner")

ProviderInvoker = Callable[..., ProviderExecutionResult]
PromptLookup = Callable[[str], Optional[dict[str, Any]]]

GAME_TYPE = "spy"

DEFAULT_DESCRIPTION_PROMPT = (
    "You are {name}, playing Who Is The Spy. Your secret word is \"{word}\".\n"
    "Describe your word in one short sentence without saying it. Stay vague enough "
    "that a spy cannot guess it, but clear enough that teammates recognise it.\n\n"
    "Game so far:\n{history}\n\n"
    "Reply with the sentence only."
)

DEFAULT_VOTE_PROMPT = (
    "You are {name}, playing Who Is The Spy.\n"
    "Game so far:\n{history}\n\n"
    "Pick the player whose descriptions sound least like the others. "
    "Choices: {choices}\n"
    "Reply with exactly one name from the choices."
)

FALLBACK_SPEECHES = (
    "It's something most people have come across.",
    "You can find it in daily life.",
    "I'd rather not give too much away, but it's pretty common.",
    "Some people like it a lot, others don't care.",
)


@dataclass
class AgentMemory:
    name: str = ""
    word: str = ""
    room_id: str | None = None
    history: list[str] = field(default_factory=list)
    seen_events: int = 0


def _fill(template: str, values: dict[str, str]) -> str:
    # Stored templates are free text, so str.format would choke on stray braces.
    out = template
    for key, value in values.items():
        out = out.replace("{" + key + "}", value)
    return out


def match_choice(text: str, choices: list[str]) -> str | None:
    cleaned = str(text or "").strip().strip("\"'.。 ")
    for choice in choices:
        if cleaned == choice:
            return choice
    hits = [choice for choice in choices if choice and choice in str(text or "")]
    if len(hits) == 1:
        return hits[0]
    return None


class AgentReasoner:
    """Remembers what each agent has seen and asks a model for its next move.

    Provider failures fall back to a stock speech or a random legal vote, so
    a flaky model never stalls a room.
    """

    def __init__(
        self,
        *,
        prompt_lookup: PromptLookup | None = None,
        provider_invoker: ProviderInvoker | None = None,
        rng: random.Random | None = None,
        temperature: float = 0.0,
    ) -> None:
        self._prompt_lookup = prompt_lookup
        self._provider_invoker = provider_invoker or execute_prompt
        self._rng = rng or random.Random()
        self._temperature = float(temperature)
        self._memories: dict[str, AgentMemory] = {}
        self._lock = threading.Lock()

    def memory(self, agent_id: str) -> AgentMemory:
        with self._lock:
            mem = self._memories.get(str(agent_id))
            if mem is None:
                mem = AgentMemory()
                self._memories[str(agent_id)] = mem
            return mem

    def forget(self, agent_id: str) -> None:
        with self._lock:
            self._memories.pop(str(agent_id), None)

    def perceive(self, agent_id: str, kind: str, **fields: Any) -> None:
        """Record one thing the agent witnessed.

        Kinds: ``start`` (name, room_id), ``distribution`` (word), ``speech``
        and ``vote`` (name, message), ``host`` (message) and ``result``
        (message).
        """
        mem = self.memory(agent_id)
        if kind == "start":
            mem.history = []
            mem.word = ""
            mem.seen_events = 0
            mem.name = str(fields.get("name") or mem.name)
            mem.room_id = fields.get("room_id")
        elif kind == "distribution":
            if fields.get("word"):
                mem.word = str(fields["word"])
                mem.history.append(f"Host: {mem.name}, your word is {mem.word}")
        elif kind == "speech":
            if fields.get("name") and fields.get("message"):
                mem.history.append(f"{fields['name']}: {fields['message']}")
        elif kind == "vote":
            if fields.get("name") and fields.get("message"):
                mem.history.append(f"{fields['name']}: votes for {fields['message']}")
        elif kind in ("host", "result"):
            if fields.get("message"):
                mem.history.append(f"Host: {fields['message']}")
        else:
            logger.debug("[REASONER] Ignoring unknown perception %s for %s", kind, agent_id)

    def _observe(self, agent_id: str, event: dict[str, Any]) -> None:
        event_type = event.get("event_type")
        if event_type == EVENT_SPEECH:
            self.perceive(agent_id, "speech", name=event.get("display_name"), message=event.get("text"))
        elif event_type == EVENT_VOTE:
            self.perceive(agent_id, "vote", name=event.get("display_name"), message=event.get("vote_target"))
        elif event_type == EVENT_HOST_SPEECH:
            self.perceive(agent_id, "host", message=event.get("text"))
        elif event_type == EVENT_END:
            self.perceive(agent_id, "result", message=f"Game over, the {event.get('winner_role')} side wins.")

    def _sync(self, agent_id: str, context: dict[str, Any]) -> AgentMemory:
        room_id = context.get("room_id")
        if self.memory(agent_id).room_id != room_id:
            self.forget(agent_id)
            self.perceive(agent_id, "start", name=context.get("name"), room_id=room_id)
            self.perceive(agent_id, "distribution", word=context.get("word"))
        mem = self.memory(agent_id)
        events = list(context.get("events") or [])
        for event in events[mem.seen_events :]:
            self._observe(agent_id, event)
        mem.seen_events = max(mem.seen_events, len(events))
        return mem

    def _template(self, agent_id: str, key: str, default: str) -> str:
        if self._prompt_lookup is None:
            return default
        record = self._prompt_lookup(str(agent_id)) or {}
        prompts = record.get("prompts") or {}
        game_prompts = prompts.get(GAME_TYPE) if isinstance(prompts, dict) else None
        template = (game_prompts or {}).get(key) if isinstance(game_prompts, dict) else None
        return str(template) if template else default

    def _invoke(self, prompt: str) -> str:
        result = self._provider_invoker(prompt=prompt, temperature=self._temperature, max_output_tokens=200)
        return str(result.text or "").strip()

    def generate_speech(self, agent_id: str, context: dict[str, Any]) -> str:
        mem = self._sync(agent_id, context)
        prompt = _fill(
            self._template(agent_id, "description", DEFAULT_DESCRIPTION_PROMPT),
            {"name": mem.name, "word": mem.word, "history": "\n".join(mem.history)},
        )
        try:
            text = self._invoke(prompt)
        except ProviderError as exc:
            logger.warning("[REASONER] Speech for %s fell back to heuristic: %s (%s)", agent_id, exc, exc.error_code)
            text = ""
        if not text:
            text = self._rng.choice(FALLBACK_SPEECHES)
        return text

    def generate_vote(self, agent_id: str, choices: list[str], context: dict[str, Any]) -> str:
        mem = self._sync(agent_id, context)
        legal = [c for c in choices if c and c != mem.name]
        if not legal:
            raise ValueError(f"No legal vote target for agent {agent_id}")
        prompt = _fill(
            self._template(agent_id, "vote", DEFAULT_VOTE_PROMPT),
            {"name": mem.name, "choices": ", ".join(legal), "history": "\n".join(mem.history)},
        )
        picked: str | None = None
        try:
            picked = match_choice(self._invoke(prompt), legal)
        except ProviderError as exc:
            logger.warning("[REASONER] Vote for %s fell back to heuristic: %s (%s)", agent_id, exc, exc.error_code)
        if picked is None:
            picked = self._rng.choice(sorted(legal))
        return picked
