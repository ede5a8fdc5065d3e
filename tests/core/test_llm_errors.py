import pytest

from codeloop.core.llm.errors import format_http_error, is_rate_limit_error, parse_api_error


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("API request failed (401): nope", "Error 401: invalid API key"),
        ("API request failed (403): nope", "Error 403: no access to this model"),
        ("API request failed (404): nope", "Error 404: model not found"),
        ("API request failed (502): bad gateway", "Error 502: provider server unavailable"),
        ("ECONNREFUSED 127.0.0.1:8080", "No connection to the server"),
        ("operation timed out", "Request timed out"),
    ],
)
def test_parse_api_error_summaries(message: str, expected: str) -> None:
    summary, _details = parse_api_error(message)
    assert summary == expected


def test_parse_api_error_uses_inner_message_and_pretty_json() -> None:
    summary, details = parse_api_error('API request failed (400): {"error": {"message": "context too long"}}')

    assert summary == "Error 400: context too long"
    assert '"message": "context too long"' in details
    assert "\n" in details


def test_parse_api_error_unknown_status_falls_back_to_message() -> None:
    summary, details = parse_api_error("API request failed (418): teapot")

    assert summary.startswith("Error 418: API request failed")
    assert details == "API request failed (418): teapot"


def test_rate_limit_detection() -> None:
    summary, _ = parse_api_error("API request failed (429): slow down")

    assert summary.startswith("Rate limit exceeded")
    assert is_rate_limit_error("API request failed (429): slow down", summary)
    assert not is_rate_limit_error("API request failed (500): x", "Error 500: provider server unavailable")


def test_format_http_error_reduces_html_pages() -> None:
    body = "<!DOCTYPE html><html><head><title>502 Bad Gateway</title></head><body><h1>Oops</h1></body></html>"

    message = format_http_error(502, body)

    assert message.startswith("API request failed (502): 502 Bad Gateway:")
    assert "<h1>" not in message
