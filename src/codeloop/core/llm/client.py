"""Concrete LLM client implementation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

import httpx

from .errors import LLMAbortedError, LLMError, format_http_error
from .offline import offline_response
from .transport import build_endpoint, build_headers, build_payload, consume_stream
from .types import AbortSignal, ChatResponse, ChunkCallback, LLMSettings, ReasoningCallback

logger = logging.getLogger(__name__)


class LLMClient:
    """Streaming chat-completions client with tool calling and retry logic.

    Only transient transport failures (timeouts, dropped connections) are
    retried here. HTTP status failures, including 429, are raised as
    :class:`LLMError` so the agent loop can apply its own backoff policy.
    """

    def __init__(
        self,
        settings: LLMSettings,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)
        self._sleep = sleep or time.sleep

    @property
    def settings(self) -> LLMSettings:
        return self._settings

    def chat(
        self,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        on_reasoning: ReasoningCallback | None = None,
        abort: AbortSignal | None = None,
    ) -> ChatResponse:
        """Send the conversation and stream the response back."""

        if self._settings.offline_mode:
            logger.info("LLM offline mode active; returning stub response.")
            content = offline_response(messages)
            if on_chunk:
                on_chunk(content)
            return ChatResponse(content=content, finish_reason="stop", cached=True)

        url = build_endpoint(self._settings)
        headers = build_headers(self._settings)
        payload = build_payload(self._settings, messages, tools)
        logger.debug(
            "LLM request: model=%s messages=%s tools=%s",
            self._settings.model,
            len(messages),
            len(tools or []),
        )

        attempt = 0
        backoff = 1.5
        last_error: Exception | None = None

        while attempt <= self._settings.max_retries:
            if abort is not None and abort.is_set():
                raise LLMAbortedError("Aborted")
            start_time = time.perf_counter()
            try:
                with self._client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        body = response.read().decode("utf-8", errors="replace")
                        raise LLMError(format_http_error(response.status_code, body))
                    result = consume_stream(
                        response.iter_lines(),
                        on_chunk,
                        on_reasoning=on_reasoning,
                        abort=abort,
                    )
                result.latency_seconds = time.perf_counter() - start_time
                logger.debug(
                    "LLM call successful (model=%s, latency=%.2fs, usage=%s)",
                    self._settings.model,
                    result.latency_seconds,
                    result.usage,
                )
                return result
            except (httpx.TimeoutException, httpx.NetworkError) as exc:  # noqa: PERF203
                last_error = exc
                attempt += 1
                if attempt > self._settings.max_retries:
                    break
                sleep_for = backoff ** attempt
                logger.warning("LLM request failed (%s); retrying in %.1fs", type(exc).__name__, sleep_for)
                self._sleep(sleep_for)
                continue
            except LLMError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected LLM error: %s", exc)
                raise LLMError(f"Unexpected LLM error: {exc}") from exc

        message = f"LLM request failed after {self._settings.max_retries + 1} attempts"
        if last_error:
            kind = "timeout" if isinstance(last_error, httpx.TimeoutException) else "network"
            message = f"{message} ({kind}): {last_error}"
        raise LLMError(message)

    def close(self) -> None:
        """Dispose the underlying HTTP client if owned by this instance."""

        if self._owns_client:
            self._client.close()

    def update_settings(self, *, model: str | None = None, base_url: str | None = None) -> None:
        """Update mutable LLM settings at runtime."""

        if model:
            logger.debug("Updating LLM model from %s to %s", self._settings.model, model)
            self._settings.model = model
        if base_url:
            logger.debug("Updating LLM base URL from %s to %s", self._settings.base_url, base_url)
            self._settings.base_url = base_url


__all__ = ["LLMClient"]
