"""Conversation budget helpers: token estimates, truncation and drop compression.

Compression never rewrites a message that stays in the conversation. It only
removes whole assistant+tool groups from the oldest end, so the prefix sent to
the provider stays byte-identical between iterations and prompt caches keep
hitting.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

Message = dict[str, Any]
TokenEstimator = Callable[[Sequence[Message]], int]

DEFAULT_CONTEXT_WINDOW = 32_000
MAX_EFFECTIVE_CONTEXT = 128_000
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_CHARS = 20
DROP_TARGET_RATIO = 0.65
MIN_KEEP_MESSAGES = 12
MAX_TOOL_RESULT_CHARS = 12_000
TERMINAL_LINE_LIMIT = 40
TERMINAL_KEEP_LINES = 15
HEAD_RATIO = 0.7
TAIL_RATIO = 0.2
INTERRUPTED_TOOL_RESULT = json.dumps({"error": "Tool call was interrupted before it completed."})
CONTINUE_PROMPT = "Continue."


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Character-count estimate (~4 chars per token) used when usage is unknown."""

    chars = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            chars += len(content)
        tool_calls = message.get("tool_calls")
        if tool_calls:
            chars += len(json.dumps(tool_calls))
        if message.get("role") == "tool":
            chars += len(message.get("tool_call_id") or "") + len(message.get("name") or "")
        chars += MESSAGE_OVERHEAD_CHARS
    return math.ceil(chars / CHARS_PER_TOKEN)


def context_buffer(window: int) -> int:
    if window <= 16_000:
        return 4_000
    if window <= 32_000:
        return 8_000
    if window <= 65_000:
        return 16_000
    if window <= 131_000:
        return 30_000
    return 40_000


@dataclass(slots=True)
class ContextBudget:
    """Derived size limits for a model with the given context window."""

    context_window: int | None = None

    @property
    def context_limit(self) -> int:
        return self.context_window or DEFAULT_CONTEXT_WINDOW

    @property
    def effective_window(self) -> int:
        return min(self.context_limit, MAX_EFFECTIVE_CONTEXT)

    @property
    def compress_threshold(self) -> int:
        window = self.effective_window
        buffer = context_buffer(window)
        return max(int(window * 0.8) - buffer, min(window - buffer, 40_000))

    @property
    def drop_target(self) -> int:
        return int(self.compress_threshold * DROP_TARGET_RATIO)

    @property
    def read_file_chars(self) -> int:
        token_budget = max(6_000, min(20_000, math.floor(self.effective_window * 0.35)))
        return token_budget * CHARS_PER_TOKEN

    def result_limit(self, tool_name: str) -> int:
        return self.read_file_chars if tool_name == "read_file" else MAX_TOOL_RESULT_CHARS


# ---------------------------------------------------------------------------
# Tool result truncation
# ---------------------------------------------------------------------------


def _truncation_marker(removed: int) -> str:
    return f"\n\n... [truncated {removed} chars to save tokens] ...\n\n"


def truncate_head_tail(text: str, max_chars: int) -> str:
    """Keep the start and end of ``text`` so the result fits in ``max_chars``."""

    if len(text) <= max_chars:
        return text
    if len(_truncation_marker(len(text))) >= max_chars:
        return text[:max_chars]
    head = int(max_chars * HEAD_RATIO)
    tail = int(max_chars * TAIL_RATIO)
    excess = head + tail + len(_truncation_marker(len(text))) - max_chars
    if excess > 0:
        scale = max(head + tail - excess, 0) / (head + tail)
        head, tail = int(head * scale), int(tail * scale)
    marker = _truncation_marker(len(text) - head - tail)
    return text[:head] + marker + (text[-tail:] if tail else "")


def truncate_terminal_lines(text: str) -> str:
    lines = text.split("\n")
    if len(lines) <= TERMINAL_LINE_LIMIT:
        return text
    omitted = len(lines) - 2 * TERMINAL_KEEP_LINES
    return "\n".join(
        [
            *lines[:TERMINAL_KEEP_LINES],
            f"\n... [{omitted} lines omitted to save context] ...\n",
            *lines[-TERMINAL_KEEP_LINES:],
        ]
    )


def truncate_tool_result(tool_name: str, content: str, budget: ContextBudget) -> str:
    limit = budget.result_limit(tool_name)
    result = content
    if tool_name == "terminal" and len(content) > MAX_TOOL_RESULT_CHARS:
        result = truncate_terminal_lines(content)
    if len(result) > limit:
        result = truncate_head_tail(result, limit)
    if result is not content:
        logger.debug("Tool result for %s truncated: %s -> %s chars", tool_name, len(content), len(result))
    return result


# ---------------------------------------------------------------------------
# Conversation repair
# ---------------------------------------------------------------------------


def sanitize_conversation(messages: list[Message]) -> list[Message]:
    """Drop assistant messages that carry neither text nor tool calls."""

    kept = [
        message
        for message in messages
        if not (message.get("role") == "assistant" and not message.get("content") and not message.get("tool_calls"))
    ]
    if len(kept) != len(messages):
        logger.debug("Removed %s empty assistant message(s)", len(messages) - len(kept))
    return kept


def _tool_call_ids(message: Message) -> list[str]:
    return [call.get("id") for call in message.get("tool_calls") or [] if isinstance(call, dict) and call.get("id")]


def remove_orphans(messages: list[Message]) -> int:
    """Delete tool results without a matching call and calls without any result.

    Works in place and returns the number of removed messages.
    """

    removed = 0
    call_ids = {call_id for message in messages if message.get("role") == "assistant" for call_id in _tool_call_ids(message)}
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.get("role") == "tool" and message.get("tool_call_id") not in call_ids:
            del messages[index]
            removed += 1

    result_ids = {message.get("tool_call_id") for message in messages if message.get("role") == "tool"}
    for index in range(len(messages) - 1, -1, -1):
        ids = _tool_call_ids(messages[index]) if messages[index].get("role") == "assistant" else []
        if ids and all(call_id not in result_ids for call_id in ids):
            del messages[index]
            removed += 1
    return removed


def ensure_last_message_valid(messages: list[Message]) -> list[Message]:
    """Make sure the conversation ends with a ``user`` or ``tool`` message.

    Unanswered tool calls get an "interrupted" result; a trailing plain
    assistant reply is followed by a short continuation prompt.
    """

    if not messages:
        return messages
    last = messages[-1]
    if last.get("role") in {"user", "tool"}:
        return messages
    if last.get("role") == "assistant" and last.get("tool_calls"):
        for call_id in _tool_call_ids(last):
            messages.append({"role": "tool", "tool_call_id": call_id, "content": INTERRUPTED_TOOL_RESULT})
        logger.debug("Closed %s unanswered tool call(s)", len(_tool_call_ids(last)))
        return messages
    messages.append({"role": "user", "content": CONTINUE_PROMPT})
    return messages


# ---------------------------------------------------------------------------
# Drop compression
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CompressionReport:
    tokens_before: int
    tokens_after: int
    dropped_groups: int = 0
    dropped_messages: int = 0
    orphans_removed: int = 0
    summaries: list[str] = field(default_factory=list)


def _group_summary(message: Message) -> str:
    names = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        name = function.get("name") or "?"
        try:
            args = json.loads(function.get("arguments") or "{}")
        except (TypeError, ValueError):
            args = {}
        label = ""
        if isinstance(args, dict):
            for key in ("file_path", "command", "query"):
                if isinstance(args.get(key), str):
                    label = args[key][:25]
                    break
        names.append(f"{name}:{label}" if label else name)
    return ", ".join(names)


class CompactionStrategy:
    """Interface for conversation compaction policies."""

    def compact(
        self,
        messages: list[Message],
        budget: ContextBudget,
        *,
        current_tokens: int,
        estimator: TokenEstimator,
    ) -> CompressionReport | None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class DropOldestGroupsStrategy(CompactionStrategy):
    """Removes the oldest assistant+tool groups until the drop target is met."""

    keep_last: int = MIN_KEEP_MESSAGES

    def _protected_prefix(self, messages: list[Message]) -> int:
        for index, message in enumerate(messages):
            if message.get("role") == "user":
                return index + 1
        return 1 if messages and messages[0].get("role") == "system" else 0

    def _groups(self, messages: list[Message]) -> list[tuple[int, int]]:
        boundary = len(messages) - self.keep_last
        groups: list[tuple[int, int]] = []
        index = self._protected_prefix(messages)
        while index < boundary:
            if messages[index].get("role") != "assistant":
                index += 1
                continue
            start = index
            index += 1
            while index < len(messages) and messages[index].get("role") == "tool":
                index += 1
            if index > boundary:
                break
            groups.append((start, index))
        return groups

    def compact(
        self,
        messages: list[Message],
        budget: ContextBudget,
        *,
        current_tokens: int,
        estimator: TokenEstimator,
    ) -> CompressionReport | None:
        if current_tokens <= budget.compress_threshold:
            return None
        to_save = current_tokens - budget.drop_target
        selected: list[tuple[int, int]] = []
        saved = 0
        for start, end in self._groups(messages):
            if saved >= to_save:
                break
            saved += estimator(messages[start:end])
            selected.append((start, end))

        report = CompressionReport(tokens_before=current_tokens, tokens_after=current_tokens)
        if not selected:
            logger.info("Context over threshold (%s tokens) but nothing can be dropped", current_tokens)
            return report

        for start, end in reversed(selected):
            report.summaries.insert(0, _group_summary(messages[start]))
            report.dropped_messages += end - start
            del messages[start:end]
        report.dropped_groups = len(selected)
        report.orphans_removed = remove_orphans(messages)
        report.tokens_after = estimator(messages)
        logger.info(
            "Dropped %s group(s) / %s message(s): %s -> %s tokens [%s]",
            report.dropped_groups,
            report.dropped_messages,
            current_tokens,
            report.tokens_after,
            " | ".join(summary for summary in report.summaries if summary),
        )
        return report


def compress_conversation(
    messages: list[Message],
    budget: ContextBudget,
    *,
    current_tokens: int | None = None,
    estimator: TokenEstimator = estimate_tokens,
    strategy: CompactionStrategy | None = None,
) -> CompressionReport | None:
    """Shrink ``messages`` in place when they exceed the budget threshold."""

    tokens = current_tokens if current_tokens is not None else estimator(messages)
    return (strategy or DropOldestGroupsStrategy()).compact(
        messages,
        budget,
        current_tokens=tokens,
        estimator=estimator,
    )


__all__ = [
    "CompactionStrategy",
    "CompressionReport",
    "ContextBudget",
    "DEFAULT_CONTEXT_WINDOW",
    "DropOldestGroupsStrategy",
    "MAX_TOOL_RESULT_CHARS",
    "MIN_KEEP_MESSAGES",
    "TokenEstimator",
    "compress_conversation",
    "context_buffer",
    "ensure_last_message_valid",
    "estimate_tokens",
    "remove_orphans",
    "sanitize_conversation",
    "truncate_head_tail",
    "truncate_terminal_lines",
    "truncate_tool_result",
]
