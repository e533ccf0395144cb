"""LLM boundary for agent speech and vote generation."""

from .providers import (
    ProviderError,
    ProviderExecutionError,
    ProviderExecutionResult,
    ProviderUnavailableError,
    execute_prompt,
)
from .reasoner import AgentReasoner

__all__ = [
    "ProviderError",
    "ProviderExecutionError",
    "ProviderExecutionResult",
    "ProviderUnavailableError",
    "execute_prompt",
    "AgentReasoner",
]
