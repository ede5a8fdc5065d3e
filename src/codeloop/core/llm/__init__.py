"""LLM client package.

This namespace hosts the streaming `LLMClient` along with supporting types
(`types.py`), the chat-completions transport and stream decoder
(`transport.py`), provider error parsing (`errors.py`) and offline fallback
responses (`offline.py`).
"""

from .client import LLMClient
from .errors import LLMAbortedError, LLMError, parse_api_error
from .types import AbortSignal, ChatResponse, LLMSettings, TokenUsage, ToolCall

__all__ = [
    "AbortSignal",
    "ChatResponse",
    "LLMAbortedError",
    "LLMClient",
    "LLMError",
    "LLMSettings",
    "TokenUsage",
    "ToolCall",
    "parse_api_error",
]
