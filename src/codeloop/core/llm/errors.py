"""LLM errors and provider error parsing."""

from __future__ import annotations

import json
import re

_STATUS_PATTERN = re.compile(r"\((\d{3})\)")
_HTML_TITLE_PATTERN = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")

_CONNECTION_MARKERS = ("fetch", "ECONNREFUSED", "ENOTFOUND", "network", "connect")
_TIMEOUT_MARKERS = ("timeout", "ETIMEDOUT", "timed out")


class LLMError(RuntimeError):
    """Raised when the LLM client cannot complete a request."""


class LLMAbortedError(LLMError):
    """Raised when a streaming request is cancelled through its abort signal."""


def format_http_error(status_code: int, body: str) -> str:
    """Build the canonical failure message for a non-2xx provider response.

    HTML bodies (gateway error pages) are reduced to their title and a short
    text excerpt so the message stays readable.
    """

    error = body
    if "<html" in body or "<!DOCTYPE" in body or "<HTML" in body:
        title_match = _HTML_TITLE_PATTERN.search(body)
        text_only = _WHITESPACE_PATTERN.sub(" ", _HTML_TAG_PATTERN.sub(" ", body)).strip()
        if title_match:
            error = f"{title_match.group(1).strip()}: {text_only[:200]}"
        else:
            error = text_only[:300]
    return f"API request failed ({status_code}): {error}"


def parse_api_error(error: BaseException | str) -> tuple[str, str]:
    """Translate a transport failure into ``(summary, details)``.

    The summary is a one-line, human readable explanation keyed on the HTTP
    status embedded in the message; details carry the pretty-printed JSON body
    when one is present, otherwise the raw message.
    """

    message = str(error)
    status_match = _STATUS_PATTERN.search(message)
    status = int(status_match.group(1)) if status_match else 0

    inner = ""
    json_body = ""
    json_start = message.find("{")
    if json_start != -1:
        try:
            parsed = json.loads(message[json_start:])
        except json.JSONDecodeError:
            parsed = None
        if parsed is not None:
            inner = _inner_message(parsed)
            json_body = json.dumps(parsed, indent=2, ensure_ascii=False)

    if status == 429:
        summary = "Rate limit exceeded. Wait 30-60 seconds and try again."
    elif status == 400:
        summary = f"Error 400: {inner or 'invalid request data'}"
    elif status == 401:
        summary = "Error 401: invalid API key"
    elif status == 403:
        summary = "Error 403: no access to this model"
    elif status == 404:
        summary = "Error 404: model not found"
    elif status in {500, 502, 503}:
        summary = f"Error {status}: provider server unavailable"
    elif status == 0:
        if any(marker in message for marker in _CONNECTION_MARKERS):
            summary = "No connection to the server"
        elif any(marker in message for marker in _TIMEOUT_MARKERS):
            summary = "Request timed out"
        else:
            summary = f"Error: {message[:150]}"
    else:
        summary = f"Error {status}: {inner or message[:150]}"

    return summary, json_body or message


def is_rate_limit_error(error: BaseException | str, summary: str) -> bool:
    message = str(error)
    lowered = summary.lower()
    return (
        "(429)" in message
        or "429" in summary
        or "rate limit" in lowered
        or "too many requests" in lowered
    )


def _inner_message(parsed: object) -> str:
    if not isinstance(parsed, dict):
        return ""
    error = parsed.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(parsed.get("message"), str):
        return parsed["message"]
    if isinstance(error, str):
        return error
    return ""


__all__ = [
    "LLMAbortedError",
    "LLMError",
    "format_http_error",
    "is_rate_limit_error",
    "parse_api_error",
]
