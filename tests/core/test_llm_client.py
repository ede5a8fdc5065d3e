import json
import threading

import httpx
import pytest

from codeloop.core.llm import ChatResponse, LLMAbortedError, LLMClient, LLMError, LLMSettings


def _sse(*events: object) -> bytes:
    frames = [f"data: {json.dumps(event)}\n\n" for event in events]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


def _settings(**overrides: object) -> LLMSettings:
    values: dict[str, object] = {
        "base_url": "https://api.example.com/v1",
        "model": "demo-model",
        "api_key": "test-key",
    }
    values.update(overrides)
    return LLMSettings(**values)  # type: ignore[arg-type]


def test_chat_offline_returns_stub() -> None:
    client = LLMClient(_settings(api_key=None, offline_mode=True))
    tokens: list[str] = []

    response = client.chat([{"role": "user", "content": "hello world"}], on_chunk=tokens.append)

    assert isinstance(response, ChatResponse)
    assert response.cached is True
    assert "[offline stub]" in response.content
    assert tokens == [response.content]


def test_keyless_local_provider_sends_a_real_request() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        body = _sse({"choices": [{"delta": {"content": "local reply"}, "finish_reason": "stop"}]})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    settings = _settings(base_url="http://localhost:11434/v1", api_key=None)
    client = LLMClient(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))

    response = client.chat([{"role": "user", "content": "hi"}])

    assert response.content == "local reply"
    assert len(requests) == 1
    assert "Authorization" not in requests[0].headers


def test_chat_streams_content_and_tool_calls() -> None:
    body = _sse(
        {"choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "look."}}]},
        {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": "call_1", "function": {"name": "read_file", "arguments": '{"file_'}}
                        ]
                    }
                }
            ]
        },
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'path": "a.py"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 11, "completion_tokens": 7, "total_tokens": 18}},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/chat/completions")
        assert request.headers["Authorization"] == "Bearer test-key"
        payload = json.loads(request.content.decode())
        assert payload["stream"] is True
        assert payload["tool_choice"] == "auto"
        assert payload["tools"][0]["function"]["name"] == "read_file"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

    client = LLMClient(_settings(), client=httpx.Client(transport=httpx.MockTransport(handler)))
    tokens: list[str] = []
    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]

    response = client.chat([{"role": "user", "content": "read a.py"}], tools=tools, on_chunk=tokens.append)

    assert response.content == "Let me look."
    assert tokens == ["Let me ", "look."]
    assert response.finish_reason == "tool_calls"
    assert len(response.tool_calls) == 1
    call = response.tool_calls[0]
    assert (call.id, call.name) == ("call_1", "read_file")
    assert json.loads(call.arguments) == {"file_path": "a.py"}
    assert response.usage is not None
    assert response.usage.prompt_tokens == 11
    assert response.usage.completion_tokens == 7


def test_chat_raises_on_http_error_with_status() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=401, json={"error": {"message": "bad key"}})

    client = LLMClient(_settings(), client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(LLMError) as excinfo:
        client.chat([{"role": "user", "content": "ping"}])

    assert "API request failed (401)" in str(excinfo.value)
    assert "bad key" in str(excinfo.value)


def test_chat_does_not_retry_rate_limits() -> None:
    calls: list[int] = []

    def handler(_request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(status_code=429, text="slow down")

    client = LLMClient(_settings(), client=httpx.Client(transport=httpx.MockTransport(handler)), sleep=lambda _s: None)

    with pytest.raises(LLMError, match=r"\(429\)"):
        client.chat([{"role": "user", "content": "ping"}])
    assert len(calls) == 1


def test_chat_retries_transient_network_errors() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 2:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}))

    client = LLMClient(
        _settings(max_retries=2),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=sleeps.append,
    )

    response = client.chat([{"role": "user", "content": "ping"}])

    assert response.content == "ok"
    assert len(attempts) == 2
    assert sleeps == [1.5]


def test_chat_gives_up_after_max_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = LLMClient(
        _settings(max_retries=1),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=lambda _s: None,
    )

    with pytest.raises(LLMError, match="timeout"):
        client.chat([{"role": "user", "content": "ping"}])


def test_chat_honours_abort_before_request() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("request should not be sent")

    abort = threading.Event()
    abort.set()
    client = LLMClient(_settings(), client=httpx.Client(transport=httpx.MockTransport(handler)))

    with pytest.raises(LLMAbortedError):
        client.chat([{"role": "user", "content": "ping"}], abort=abort)
