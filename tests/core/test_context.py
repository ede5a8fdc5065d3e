from __future__ import annotations

import json

import pytest

from codeloop.core.context import (
    CONTINUE_PROMPT,
    MIN_KEEP_MESSAGES,
    ContextBudget,
    compress_conversation,
    ensure_last_message_valid,
    estimate_tokens,
    remove_orphans,
    sanitize_conversation,
    truncate_head_tail,
    truncate_tool_result,
)


def _group(index: int, size: int = 8_000) -> list[dict]:
    call_id = f"call_{index}"
    return [
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": "read_file", "arguments": json.dumps({"file_path": f"f{index}.py"})},
                }
            ],
        },
        {"role": "tool", "tool_call_id": call_id, "content": "x" * size},
    ]


def _conversation(groups: int = 20) -> list[dict]:
    messages: list[dict] = [
        {"role": "system", "content": "You are a coding agent."},
        {"role": "user", "content": "Refactor the parser."},
    ]
    for index in range(groups):
        messages.extend(_group(index))
    return messages


def _assert_no_orphans(messages: list[dict]) -> None:
    call_ids = {call["id"] for m in messages if m["role"] == "assistant" for call in m.get("tool_calls") or []}
    result_ids = {m["tool_call_id"] for m in messages if m["role"] == "tool"}
    assert result_ids <= call_ids
    for message in messages:
        if message["role"] == "assistant" and message.get("tool_calls"):
            assert any(call["id"] in result_ids for call in message["tool_calls"])


@pytest.mark.parametrize("limit", [50, 200, 1_000, 12_000])
def test_truncate_head_tail_respects_limit(limit: int) -> None:
    text = "".join(chr(ord("a") + index % 26) for index in range(limit * 3))

    truncated = truncate_head_tail(text, limit)

    assert len(truncated) <= limit
    if limit >= 200:
        assert "[truncated" in truncated
        assert truncated.startswith(text[:10])
        assert truncated.endswith(text[-5:])


def test_truncate_head_tail_leaves_short_text_alone() -> None:
    assert truncate_head_tail("short", 100) == "short"


def test_terminal_results_keep_first_and_last_lines() -> None:
    output = "\n".join(f"line {index:03d} " + "." * 300 for index in range(100))

    truncated = truncate_tool_result("terminal", output, ContextBudget())

    assert "lines omitted to save context" in truncated
    assert truncated.startswith("line 000")
    assert truncated.rstrip(".").endswith("line 099 ")
    assert len(truncated) <= 12_000


def test_read_file_results_get_a_larger_budget() -> None:
    budget = ContextBudget()
    content = "y" * 20_000

    assert budget.read_file_chars == 44_800
    assert truncate_tool_result("read_file", content, budget) == content
    assert len(truncate_tool_result("search", content, budget)) <= 12_000


def test_budget_thresholds_scale_with_window() -> None:
    small = ContextBudget(context_window=16_000)
    huge = ContextBudget(context_window=1_000_000)

    assert small.compress_threshold == 12_000
    assert small.drop_target == 7_800
    assert huge.effective_window == 128_000
    assert huge.compress_threshold == 72_400


def test_estimate_tokens_counts_content_and_calls() -> None:
    assert estimate_tokens([{"role": "user", "content": "abcd"}]) == 6
    with_calls = estimate_tokens(_group(0, size=0))
    assert with_calls > estimate_tokens([{"role": "assistant", "content": ""}])


def test_compression_below_threshold_is_a_noop() -> None:
    messages = _conversation(groups=2)
    snapshot = [dict(message) for message in messages]

    assert compress_conversation(messages, ContextBudget(context_window=16_000)) is None
    assert messages == snapshot


def test_compression_drops_oldest_groups_and_keeps_anchors() -> None:
    messages = _conversation()
    tail = messages[-MIN_KEEP_MESSAGES:]
    before = estimate_tokens(messages)

    report = compress_conversation(messages, ContextBudget(context_window=16_000), current_tokens=20_000)

    assert report is not None
    assert report.dropped_groups == 6
    assert report.dropped_messages == 12
    assert report.summaries[0] == "read_file:f0.py"
    assert report.tokens_after < before
    assert messages[0]["role"] == "system"
    assert messages[1] == {"role": "user", "content": "Refactor the parser."}
    assert messages[2]["tool_calls"][0]["id"] == "call_6"
    assert messages[-MIN_KEEP_MESSAGES:] == tail
    assert all(a is b for a, b in zip(messages[-MIN_KEEP_MESSAGES:], tail))
    _assert_no_orphans(messages)


def test_compression_never_touches_protected_tail() -> None:
    messages = _conversation(groups=6)
    original = list(messages)

    report = compress_conversation(messages, ContextBudget(context_window=16_000), current_tokens=50_000)

    assert report is not None
    assert messages[:2] == original[:2]
    assert messages[-MIN_KEEP_MESSAGES:] == original[-MIN_KEEP_MESSAGES:]
    _assert_no_orphans(messages)


def test_remove_orphans_in_both_directions() -> None:
    messages = [
        {"role": "user", "content": "go"},
        {"role": "tool", "tool_call_id": "ghost", "content": "{}"},
        {"role": "assistant", "content": "", "tool_calls": [{"id": "lonely", "function": {"name": "search"}}]},
        *_group(1, size=10),
    ]

    removed = remove_orphans(messages)

    assert removed == 2
    assert [m["role"] for m in messages] == ["user", "assistant", "tool"]
    _assert_no_orphans(messages)


def test_sanitize_drops_empty_assistant_messages() -> None:
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": ""},
        {"role": "assistant", "content": "hello"},
    ]

    assert sanitize_conversation(messages) == [messages[0], messages[2]]


def test_ensure_last_message_valid() -> None:
    unanswered = [{"role": "user", "content": "go"}, _group(3)[0]]
    plain = [{"role": "user", "content": "go"}, {"role": "assistant", "content": "done"}]
    fine = [{"role": "user", "content": "go"}]

    ensure_last_message_valid(unanswered)
    ensure_last_message_valid(plain)

    assert unanswered[-1]["role"] == "tool"
    assert unanswered[-1]["tool_call_id"] == "call_3"
    assert "interrupted" in unanswered[-1]["content"]
    assert plain[-1] == {"role": "user", "content": CONTINUE_PROMPT}
    assert ensure_last_message_valid(fine) == [{"role": "user", "content": "go"}]
