import json
import threading

import pytest

from codeloop.core.llm import LLMAbortedError, LLMSettings
from codeloop.core.llm.transport import build_payload, consume_stream, parse_usage, resolve_max_tokens


def _frame(event: object) -> str:
    return f"data: {json.dumps(event)}"


def _settings(**overrides: object) -> LLMSettings:
    values: dict[str, object] = {"base_url": "https://api.example.com/v1", "model": "big-model", "api_key": "k"}
    values.update(overrides)
    return LLMSettings(**values)  # type: ignore[arg-type]


def test_consume_stream_skips_malformed_frames_and_keeps_content() -> None:
    lines = [
        _frame({"choices": [{"delta": {"content": "Hel"}}]}),
        "data: {not json",
        ": keep-alive comment",
        "",
        _frame({"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]}),
        "data: [DONE]",
        _frame({"choices": [{"delta": {"content": "ignored"}}]}),
    ]

    response = consume_stream(lines)

    assert response.content == "Hello"
    assert response.finish_reason == "stop"
    assert response.tool_calls == []


def test_consume_stream_merges_parallel_tool_calls_by_index() -> None:
    lines = [
        _frame(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 1, "id": "b", "function": {"name": "search", "arguments": '{"query":'}},
                                {"index": 0, "id": "a", "function": {"name": "read_file", "arguments": "{}"}},
                            ]
                        }
                    }
                ]
            }
        ),
        _frame({"choices": [{"delta": {"tool_calls": [{"index": 1, "function": {"arguments": ' "x"}'}}]}}]}),
    ]

    response = consume_stream(lines)

    assert [call.id for call in response.tool_calls] == ["a", "b"]
    assert response.tool_calls[1].name == "search"
    assert json.loads(response.tool_calls[1].arguments) == {"query": "x"}


def test_consume_stream_accumulates_reasoning_from_any_shape() -> None:
    seen: list[str] = []
    lines = [
        _frame({"choices": [{"delta": {"reasoning_content": "think "}}]}),
        _frame({"choices": [{"delta": {"reasoning_details": [{"type": "reasoning.text", "text": "more "}]}}]}),
        _frame({"choices": [{"delta": {"thinking": "done"}}]}),
    ]

    response = consume_stream(lines, on_reasoning=seen.append)

    assert response.reasoning == "think more done"
    assert seen[-1] == "think more done"


def test_consume_stream_raises_when_aborted() -> None:
    abort = threading.Event()

    def lines():
        yield _frame({"choices": [{"delta": {"content": "a"}}]})
        abort.set()
        yield _frame({"choices": [{"delta": {"content": "b"}}]})

    with pytest.raises(LLMAbortedError):
        consume_stream(lines(), abort=abort)


def test_parse_usage_reads_cached_tokens_variants() -> None:
    openai_style = parse_usage({"prompt_tokens": 10, "prompt_tokens_details": {"cached_tokens": 4}})
    deepseek_style = parse_usage({"prompt_tokens": 10, "prompt_cache_hit_tokens": 6})

    assert openai_style is not None and openai_style.cached_tokens == 4
    assert deepseek_style is not None and deepseek_style.cached_tokens == 6
    assert parse_usage("nope") is None


def test_resolve_max_tokens_clamps_to_supported_range() -> None:
    assert resolve_max_tokens(_settings(max_output_tokens=100)) == 8_192
    assert resolve_max_tokens(_settings(max_output_tokens=100_000)) == 16_384
    assert resolve_max_tokens(_settings(base_url="https://api.deepseek.com/v1", max_output_tokens=16_384)) == 8_192


def test_build_payload_provider_adjustments() -> None:
    tools = [{"type": "function", "function": {"name": "read_file"}}]

    mistral = build_payload(_settings(base_url="https://api.mistral.ai/v1"), [], tools)
    local_small = build_payload(_settings(base_url="http://localhost:11434/v1", model="qwen-7b"), [], tools)
    plain = build_payload(_settings(), [{"role": "user", "content": "hi"}])

    assert mistral["temperature"] == 0.15
    assert mistral["tool_choice"] == "auto"
    assert "tool_choice" not in local_small
    assert local_small["parallel_tool_calls"] is False
    assert "tools" not in plain
    assert plain["temperature"] == 0.3
