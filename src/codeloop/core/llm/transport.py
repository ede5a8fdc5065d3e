"""HTTP transport helpers and the streaming decoder for the LLM client."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from .errors import LLMAbortedError
from .types import (
    MIN_MAX_OUTPUT_TOKENS,
    AbortSignal,
    ChatResponse,
    ChunkCallback,
    LLMSettings,
    ReasoningCallback,
    TokenUsage,
    ToolCall,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
MAX_LOGGED_PARSE_ERRORS = 3
MISTRAL_TEMPERATURE = 0.15
DEFAULT_TEMPERATURE = 0.3
DEEPSEEK_MAX_OUTPUT_TOKENS = 8_192

_SMALL_MODEL_PATTERN = re.compile(
    r"ministral|devstral.*small|small|7b|8b|3b|14b|nano|mini|qwen.*30b|qwen.*coder.*30|glm",
    re.IGNORECASE,
)

ReasoningExtractor = Callable[[dict[str, Any]], list[str]]
CachedTokenExtractor = Callable[[dict[str, Any]], "int | None"]


# ---------------------------------------------------------------------------
# Request construction
# ---------------------------------------------------------------------------


def build_endpoint(settings: LLMSettings) -> str:
    return f"{settings.base_url.rstrip('/')}/chat/completions"


def build_headers(settings: LLMSettings) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return headers


def is_local_provider(base_url: str) -> bool:
    return "localhost" in base_url or "127.0.0.1" in base_url or "11434" in base_url


def resolve_max_tokens(settings: LLMSettings) -> int:
    requested = settings.max_output_tokens
    max_tokens = min(max(int(requested), MIN_MAX_OUTPUT_TOKENS), 16_384)
    if requested < MIN_MAX_OUTPUT_TOKENS:
        logger.warning(
            "max_output_tokens=%s is below the minimum %s; using %s",
            requested,
            MIN_MAX_OUTPUT_TOKENS,
            MIN_MAX_OUTPUT_TOKENS,
        )
    if "deepseek.com" in settings.base_url:
        max_tokens = min(max_tokens, DEEPSEEK_MAX_OUTPUT_TOKENS)
    return max_tokens


def build_payload(
    settings: LLMSettings,
    messages: Sequence[dict[str, Any]],
    tools: Sequence[dict[str, Any]] | None = None,
    *,
    tool_choice: str = "auto",
) -> dict[str, Any]:
    temperature = MISTRAL_TEMPERATURE if "mistral.ai" in settings.base_url else DEFAULT_TEMPERATURE
    payload: dict[str, Any] = {
        "model": settings.model,
        "messages": list(messages),
        "stream": True,
        "temperature": temperature,
        "top_p": 1,
        "n": 1,
        "max_tokens": resolve_max_tokens(settings),
    }
    if tools:
        payload["tools"] = list(tools)
        if _SMALL_MODEL_PATTERN.search(settings.model):
            # Small models emit broken parallel tool calls.
            payload["parallel_tool_calls"] = False
        if tool_choice and not is_local_provider(settings.base_url):
            payload["tool_choice"] = tool_choice
    return payload


# ---------------------------------------------------------------------------
# Provider shape extractors
# ---------------------------------------------------------------------------


def _reasoning_details(delta: dict[str, Any]) -> list[str]:
    details = delta.get("reasoning_details")
    if not isinstance(details, list):
        return []
    parts: list[str] = []
    for detail in details:
        if not isinstance(detail, dict):
            continue
        kind = detail.get("type")
        if kind == "reasoning.text" and detail.get("text"):
            parts.append(str(detail["text"]))
        elif kind == "reasoning.summary" and detail.get("summary"):
            parts.append(str(detail["summary"]))
    return parts


def _delta_field(name: str) -> ReasoningExtractor:
    def _extract(delta: dict[str, Any]) -> list[str]:
        value = delta.get(name)
        if isinstance(value, str) and value:
            return [value]
        return []

    _extract.__name__ = f"_extract_{name}"
    return _extract


def _usage_path(*keys: str) -> CachedTokenExtractor:
    def _extract(usage: dict[str, Any]) -> int | None:
        node: Any = usage
        for key in keys:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        if isinstance(node, bool):
            return None
        if isinstance(node, (int, float)):
            return int(node)
        return None

    return _extract


REASONING_EXTRACTORS: list[ReasoningExtractor] = [
    _reasoning_details,
    _delta_field("reasoning_content"),
    _delta_field("reasoning"),
    _delta_field("thinking"),
]

CACHED_TOKEN_EXTRACTORS: list[CachedTokenExtractor] = [
    _usage_path("prompt_tokens_details", "cached_tokens"),
    _usage_path("prompt_cache_hit_tokens"),
    _usage_path("cache_read_input_tokens"),
]


def parse_usage(usage_payload: object) -> TokenUsage | None:
    if not isinstance(usage_payload, dict):
        return None
    cached: int | None = None
    for extractor in CACHED_TOKEN_EXTRACTORS:
        cached = extractor(usage_payload)
        if cached is not None:
            break
    return TokenUsage(
        prompt_tokens=_as_int(usage_payload.get("prompt_tokens")),
        completion_tokens=_as_int(usage_payload.get("completion_tokens")),
        total_tokens=_as_int(usage_payload.get("total_tokens")),
        cached_tokens=cached,
    )


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------


def consume_stream(
    lines: Iterable[str],
    on_chunk: ChunkCallback | None = None,
    *,
    on_reasoning: ReasoningCallback | None = None,
    abort: AbortSignal | None = None,
) -> ChatResponse:
    """Fold ``data: <json>`` frames into a single :class:`ChatResponse`.

    Malformed frames are skipped so content already received is never lost.
    Tool-call fragments are merged by their ``index`` slot. The abort signal is
    checked before every line; callers are expected to close the underlying
    response when :class:`LLMAbortedError` propagates.
    """

    content_parts: list[str] = []
    reasoning = ""
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    slots: dict[int, ToolCall] = {}
    parse_errors = 0
    events = 0

    for raw_line in lines:
        if abort is not None and abort.is_set():
            raise LLMAbortedError("Aborted")
        line = raw_line.strip()
        if not line or not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == DONE_SENTINEL:
            break
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            parse_errors += 1
            if parse_errors <= MAX_LOGGED_PARSE_ERRORS:
                logger.debug("Skipping malformed stream frame (%s): %s", parse_errors, str(exc)[:120])
            continue
        if not isinstance(event, dict):
            continue
        events += 1

        if "usage" in event and event["usage"]:
            parsed_usage = parse_usage(event["usage"])
            if parsed_usage is not None:
                usage = parsed_usage

        choices = event.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            continue
        if choice.get("finish_reason"):
            finish_reason = str(choice["finish_reason"])
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            continue

        text = delta.get("content")
        if isinstance(text, str) and text:
            content_parts.append(text)
            if on_chunk:
                on_chunk(text)

        for extractor in REASONING_EXTRACTORS:
            for piece in extractor(delta):
                reasoning += piece
                if on_reasoning:
                    on_reasoning(reasoning)

        _merge_tool_call_fragments(slots, delta.get("tool_calls"))

    tool_calls = [slots[index] for index in sorted(slots)]
    logger.debug(
        "Stream decoded: events=%s parse_errors=%s tool_calls=%s finish_reason=%s chars=%s",
        events,
        parse_errors,
        len(tool_calls),
        finish_reason or "none",
        sum(len(part) for part in content_parts),
    )
    if finish_reason == "length":
        logger.info("Response hit the output token limit (finish_reason=length)")
    return ChatResponse(
        content="".join(content_parts),
        reasoning=reasoning or None,
        tool_calls=tool_calls,
        finish_reason=finish_reason,
        usage=usage,
    )


def _merge_tool_call_fragments(slots: dict[int, ToolCall], fragments: object) -> None:
    if not isinstance(fragments, list):
        return
    for fragment in fragments:
        if not isinstance(fragment, dict):
            continue
        index = fragment.get("index")
        if not isinstance(index, int):
            index = 0
        slot = slots.get(index)
        if slot is None:
            slot = ToolCall(id="", name="")
            slots[index] = slot
        if fragment.get("id"):
            slot.id = str(fragment["id"])
        function = fragment.get("function")
        if isinstance(function, dict):
            if function.get("name"):
                slot.name += str(function["name"])
            if function.get("arguments"):
                slot.arguments += str(function["arguments"])


__all__ = [
    "CACHED_TOKEN_EXTRACTORS",
    "REASONING_EXTRACTORS",
    "build_endpoint",
    "build_headers",
    "build_payload",
    "consume_stream",
    "parse_usage",
    "resolve_max_tokens",
]
