"""Shared LLM types."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

ChunkCallback = Callable[[str], None]
ReasoningCallback = Callable[[str], None]

DEFAULT_MAX_OUTPUT_TOKENS = 16_384
MIN_MAX_OUTPUT_TOKENS = 8_192


class AbortSignal(Protocol):
    """Cooperative cancellation flag; ``threading.Event`` satisfies it."""

    def is_set(self) -> bool:
        ...


@dataclass(slots=True)
class LLMSettings:
    """Runtime configuration for the LLM client."""

    base_url: str
    model: str
    api_key: str | None
    timeout_seconds: float = 120.0
    max_retries: int = 2
    offline_mode: bool = False
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS


@dataclass(slots=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` holds the raw JSON text exactly as streamed; parsing happens
    in the agent loop so malformed payloads can be recovered.
    """

    id: str
    name: str
    arguments: str = ""

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int | None = None


@dataclass(slots=True)
class ChatResponse:
    """Holds the decoded result of one streamed chat completion."""

    content: str = ""
    reasoning: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    latency_seconds: float = 0.0
    cached: bool = False


__all__ = [
    "AbortSignal",
    "ChatResponse",
    "ChunkCallback",
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "LLMSettings",
    "MIN_MAX_OUTPUT_TOKENS",
    "ReasoningCallback",
    "TokenUsage",
    "ToolCall",
]
