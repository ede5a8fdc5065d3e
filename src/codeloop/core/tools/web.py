"""HTTP fetch and web search tools."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from codeloop.core.tools.base import Tool, ToolEnvironment, ToolInvocationError, Toolkit, ToolResult, json_result

logger = logging.getLogger(__name__)

USER_AGENT = "codeloop/1.0"
MAX_BODY_CHARS = 50_000
DEFAULT_FETCH_TIMEOUT_MS = 10_000
MAX_FETCH_TIMEOUT_MS = 30_000
IMPORTANT_HEADERS = ("content-type", "content-length", "server", "location", "x-powered-by")
TAVILY_ENDPOINT = "https://api.tavily.com/search"
SEARCH_SNIPPET_CHARS = 500
CONNECTION_HINT = "Connection failed. Is the server running? Check the URL and port."


def _http_client(env: ToolEnvironment) -> httpx.Client | None:
    client = env.extras.get("http_client")
    return client if isinstance(client, httpx.Client) else None


def _send(env: ToolEnvironment, method: str, url: str, **kwargs: Any) -> httpx.Response:
    client = _http_client(env)
    if client is not None:
        return client.request(method, url, **kwargs)
    # Certificate checks are relaxed for local dev servers only.
    host = urlparse(url).hostname or ""
    verify = host not in {"localhost", "127.0.0.1"}
    with httpx.Client(verify=verify, follow_redirects=False) as fresh:
        return fresh.request(method, url, **kwargs)


def _fetch_url_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    url = payload.get("url")
    if not isinstance(url, str) or not url:
        raise ToolInvocationError("fetch_url requires url (string)")
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ToolInvocationError(f"Invalid URL: {url}")
    if parsed.scheme not in {"http", "https"}:
        raise ToolInvocationError(f"Only HTTP and HTTPS URLs are supported. Got: {parsed.scheme}:")

    method = str(payload.get("method") or "GET").upper()
    requested = payload.get("timeout_ms")
    timeout_ms = min(requested if isinstance(requested, int) and requested > 0 else DEFAULT_FETCH_TIMEOUT_MS, MAX_FETCH_TIMEOUT_MS)

    try:
        response = _send(
            env,
            method,
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html,application/json,text/plain,*/*"},
            timeout=timeout_ms / 1000,
        )
    except httpx.TimeoutException:
        return json_result(
            {"success": False, "error": f"Request timed out after {timeout_ms}ms", "url": url},
            summary="Request timed out",
        )
    except httpx.HTTPError as exc:
        logger.debug("fetch_url failed for %s: %s", url, exc)
        return json_result(
            {"success": False, "error": str(exc) or exc.__class__.__name__, "url": url, "hint": CONNECTION_HINT},
            summary="Connection failed",
        )

    body = response.text
    truncated = len(body) > MAX_BODY_CHARS
    if truncated:
        body = body[:MAX_BODY_CHARS]
    headers = {name: response.headers[name] for name in IMPORTANT_HEADERS if name in response.headers}
    return json_result(
        {
            "success": True,
            "status_code": response.status_code,
            "status_message": response.reason_phrase,
            "headers": headers,
            "body": body,
            "truncated": truncated,
            "body_length": len(body),
            "url": url,
        },
        summary=f"{method} {url} -> {response.status_code}",
    )


def _clamp_results(value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        return 5
    return max(1, min(value, 10))


def format_search_results(query: str, answer: str | None, results: list[dict[str, Any]]) -> str:
    lines = [f'Web search results for: "{query}"', ""]
    if answer:
        lines.extend(["## AI Summary", answer, ""])
    lines.extend([f"## Search Results ({len(results)})", ""])
    for index, item in enumerate(results, start=1):
        lines.append(f"### {index}. {item['title']}")
        lines.append(f"URL: {item['url']}")
        content = item.get("content") or ""
        if content:
            if len(content) > SEARCH_SNIPPET_CHARS:
                content = content[:SEARCH_SNIPPET_CHARS] + "..."
            lines.append(content)
        lines.append("")
    return "\n".join(lines)


def _web_search_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    query = payload.get("query")
    if not isinstance(query, str) or not query.strip():
        raise ToolInvocationError('web_search requires "query" parameter')
    if not env.web_search_api_key:
        raise ToolInvocationError(
            "Web search is not configured.",
            success=False,
            results=[],
            hint="Add web_search_api_key to the codeloop config.toml to enable web search.",
        )

    max_results = _clamp_results(payload.get("max_results"))
    logger.info("Web search for %r (max_results=%s)", query, max_results)
    request = {
        "api_key": env.web_search_api_key,
        "query": query,
        "search_depth": "basic",
        "include_answer": True,
        "include_raw_content": False,
        "max_results": max_results,
        "include_domains": [],
        "exclude_domains": [],
    }
    try:
        response = _send(env, "POST", TAVILY_ENDPOINT, json=request, timeout=30.0)
    except httpx.HTTPError as exc:
        logger.warning("Web search failed: %s", exc)
        return json_result({"success": False, "error": f"Web search failed: {exc}", "results": []})

    if response.status_code >= 400:
        text = response.text
        logger.warning("Web search API error %s: %s", response.status_code, text[:200])
        return json_result(
            {"success": False, "error": f"Search API error: {response.status_code} - {text[:200]}", "results": []},
            summary="Web search failed",
        )

    try:
        data = response.json()
    except ValueError:
        return json_result({"success": False, "error": "Web search failed: invalid JSON response", "results": []})

    results = [
        {
            "title": item.get("title") or "No title",
            "url": item.get("url"),
            "content": item.get("content") or item.get("snippet") or "",
            "score": item.get("score"),
        }
        for item in data.get("results") or []
    ]
    answer = data.get("answer") or None
    return json_result(
        {
            "success": True,
            "query": query,
            "answer": answer,
            "results_count": len(results),
            "results": results,
            "formatted": format_search_results(query, answer, results),
        },
        summary=f"{len(results)} web result(s)",
    )


def web_toolkit(env: ToolEnvironment) -> Toolkit:
    tools = [
        Tool(
            name="fetch_url",
            description=(
                "Fetch a URL via HTTP. Returns status code, important headers and body (max 50KB).\n"
                "Use to check whether a dev server responds or to read an API endpoint."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "Full URL including scheme"},
                    "method": {"type": "string", "description": "HTTP method (default: GET)"},
                    "timeout_ms": {"type": "integer", "description": "Timeout in milliseconds (default 10000, max 30000)"},
                },
                "required": ["url"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _fetch_url_handler(env, payload),
        ),
        Tool(
            name="web_search",
            description=(
                "Search the web for documentation, error messages or library usage. "
                "Returns a short summary and the top results."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "max_results": {"type": "integer", "description": "Number of results (1-10, default 5)"},
                },
                "required": ["query"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _web_search_handler(env, payload),
        ),
    ]
    return Toolkit(
        name="codeloop.web",
        version="1.0.0",
        description="Network access for agents.",
        tools=tools,
    )


__all__ = ["format_search_results", "web_toolkit"]
