"""Offline LLM helpers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


def offline_response(messages: Sequence[dict[str, Any]]) -> str:
    """Return a deterministic stub reply for offline mode."""

    prompt = ""
    for message in reversed(messages):
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            prompt = message["content"].strip()
            break
    if not prompt:
        return "[offline stub] No prompt provided."
    preview = prompt if len(prompt) <= 80 else f"{prompt[:77]}..."
    return f"[offline stub] Received: {preview}"


__all__ = ["offline_response"]
