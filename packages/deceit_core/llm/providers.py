"""Chat-completions transport for agent speeches and votes.

Any vendor exposing the OpenAI-compatible ``/chat/completions`` route can
drive agents. Replies are reduced to one plain line of text, which is all a
speech or a vote needs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib import error, request
import json
import os


DEFAULT_OPENAI_COMPATIBLE_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_MS = 15000
MIN_TIMEOUT_MS = 200

PLAYER_SYSTEM_PROMPT = (
    "You are a player in the party game Who Is The Spy. "
    "Answer with a single line of plain text and no commentary."
)

ENV_FLAG_VALUES = {"1", "true", "yes", "on"}


def _env(*names: str) -> str | None:
    """First non-blank value among the named environment variables."""
    for name in names:
        value = str(os.environ.get(name) or "").strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class ProviderExecutionResult:
    text: str
    model_name: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, model_name: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.model_name = model_name


class ProviderUnavailableError(ProviderError):
    """The provider cannot be used at all (no key, credentials refused)."""


class ProviderExecutionError(ProviderError):
    """One request failed; a later turn may succeed."""


@dataclass(frozen=True)
class ProviderConfig:
    model: str
    base_url: str
    api_key: str | None
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def model_name(self) -> str:
        return f"openai_compatible:{self.model}"

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


def provider_config_from_env() -> ProviderConfig:
    api_key = _env("DECEIT_LLM_API_KEY", "OPENAI_API_KEY")
    allow_empty = str(_env("DECEIT_LLM_ALLOW_EMPTY_API_KEY") or "").lower() in ENV_FLAG_VALUES
    if api_key is None and not allow_empty:
        raise ProviderUnavailableError("No API key configured for agent reasoning", error_code="missing_api_key")

    raw_timeout = _env("DECEIT_LLM_TIMEOUT_MS")
    timeout_ms = int(raw_timeout) if raw_timeout and raw_timeout.isdigit() else DEFAULT_TIMEOUT_MS
    return ProviderConfig(
        model=_env("DECEIT_LLM_MODEL") or DEFAULT_MODEL,
        base_url=(_env("DECEIT_LLM_BASE_URL") or DEFAULT_OPENAI_COMPATIBLE_BASE_URL).rstrip("/"),
        api_key=api_key,
        timeout_ms=max(MIN_TIMEOUT_MS, timeout_ms),
    )


def build_chat_payload(
    config: ProviderConfig,
    *,
    prompt: str,
    temperature: float,
    max_output_tokens: int,
) -> dict[str, Any]:
    return {
        "model": config.model,
        "messages": [
            {"role": "system", "content": PLAYER_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "temperature": float(temperature),
        "max_tokens": int(max_output_tokens),
    }


def reply_line(content: Any) -> str:
    """Collapse a message ``content`` (string or content parts) to its first non-blank line."""
    if isinstance(content, list):
        content = "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    for line in str(content or "").splitlines():
        line = line.strip().strip('"“”').strip()
        if line:
            return line
    return ""


def _error_for_status(status: int, detail: str, model_name: str) -> ProviderError:
    if status in (401, 403):
        return ProviderUnavailableError(
            f"Provider refused credentials ({status})", error_code="rejected_credentials", model_name=model_name
        )
    if status == 429:
        return ProviderExecutionError("Provider rate limited the request", error_code="rate_limited", model_name=model_name)
    return ProviderExecutionError(
        f"Provider HTTP error {status}: {detail[:240]}", error_code=f"http_{status}", model_name=model_name
    )


def _send(config: ProviderConfig, payload: dict[str, Any]) -> dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    if config.api_key:
        headers["Authorization"] = f"Bearer {config.api_key}"
    req = request.Request(
        config.endpoint,
        method="POST",
        data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        headers=headers,
    )
    try:
        with request.urlopen(req, timeout=config.timeout_seconds) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise _error_for_status(exc.code, detail, config.model_name()) from exc
    except (error.URLError, OSError) as exc:
        raise ProviderExecutionError(
            f"Provider network error: {exc}", error_code="network_error", model_name=config.model_name()
        ) from exc

    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ProviderExecutionError(
            "Provider returned non-JSON response", error_code="invalid_provider_response", model_name=config.model_name()
        ) from exc
    if not isinstance(parsed, dict):
        raise ProviderExecutionError(
            "Provider returned an unexpected body", error_code="invalid_provider_response", model_name=config.model_name()
        )
    return parsed


def execute_prompt(
    *,
    prompt: str,
    temperature: float = 0.0,
    max_output_tokens: int = 256,
    config: ProviderConfig | None = None,
) -> ProviderExecutionResult:
    """Ask the configured model for one speech or vote line."""
    cfg = config or provider_config_from_env()
    parsed = _send(
        cfg,
        build_chat_payload(cfg, prompt=prompt, temperature=temperature, max_output_tokens=max_output_tokens),
    )
    choices = parsed.get("choices") or [{}]
    text = reply_line(((choices[0] or {}).get("message") or {}).get("content"))
    if not text:
        raise ProviderExecutionError("Empty model response", error_code="empty_response", model_name=cfg.model_name())
    usage = parsed.get("usage") or {}
    return ProviderExecutionResult(
        text=text,
        model_name=str(parsed.get("model") or cfg.model_name()),
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
    )
