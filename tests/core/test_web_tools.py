from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import httpx

from codeloop.core.tool_registry import ToolDispatcher, build_default_registry
from codeloop.core.tools.base import ToolEnvironment
from codeloop.core.tools.web import TAVILY_ENDPOINT


def _dispatcher(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    api_key: str | None = None,
) -> ToolDispatcher:
    env = ToolEnvironment(
        workspace_root=tmp_path,
        web_search_api_key=api_key,
        extras={"http_client": httpx.Client(transport=httpx.MockTransport(handler))},
    )
    return ToolDispatcher(build_default_registry(env))


def test_fetch_url_returns_status_headers_and_body(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["User-Agent"] == "codeloop/1.0"
        return httpx.Response(200, headers={"content-type": "text/plain", "x-secret": "1"}, text="pong")

    result = _dispatcher(tmp_path, handler).dispatch("fetch_url", {"url": "http://localhost:3000/health"})

    assert result["success"] is True
    assert result["status_code"] == 200
    assert result["body"] == "pong"
    assert result["headers"]["content-type"] == "text/plain"
    assert "x-secret" not in result["headers"]
    assert result["truncated"] is False


def test_fetch_url_rejects_other_schemes(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path, lambda _r: httpx.Response(200)).dispatch("fetch_url", {"url": "ftp://example.com/x"})

    assert result["error"] == "Only HTTP and HTTPS URLs are supported. Got: ftp:"


def test_fetch_url_connection_failure_has_hint(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = _dispatcher(tmp_path, handler).dispatch("fetch_url", {"url": "http://localhost:9/"})

    assert result["success"] is False
    assert "connection refused" in result["error"]
    assert "Is the server running" in result["hint"]


def test_web_search_requires_api_key(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path, lambda _r: httpx.Response(200)).dispatch("web_search", {"query": "httpx streaming"})

    assert result["error"] == "Web search is not configured."
    assert result["results"] == []


def test_web_search_formats_results(tmp_path: Path) -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content.decode())
        return httpx.Response(
            200,
            json={
                "answer": "Use client.stream().",
                "results": [{"title": "Streaming", "url": "https://www.python-httpx.org/", "content": "iter_lines"}],
            },
        )

    result = _dispatcher(tmp_path, handler, api_key="tvly-test").dispatch(
        "web_search", {"query": "httpx streaming", "max_results": 50}
    )

    assert seen["url"] == TAVILY_ENDPOINT
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["max_results"] == 10
    assert body["api_key"] == "tvly-test"
    assert result["results_count"] == 1
    assert result["answer"] == "Use client.stream()."
    assert "### 1. Streaming" in result["formatted"]


def test_web_search_api_error(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path, lambda _r: httpx.Response(500, text="down"), api_key="k").dispatch(
        "web_search", {"query": "x"}
    )

    assert result["success"] is False
    assert result["error"] == "Search API error: 500 - down"
