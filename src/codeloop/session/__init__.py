"""Session persistence for codeloop."""

from .manager import (
    MAX_SESSIONS,
    SessionContext,
    SessionLoadError,
    SessionManager,
    SessionMetadata,
    SessionStorage,
)

__all__ = [
    "MAX_SESSIONS",
    "SessionContext",
    "SessionLoadError",
    "SessionManager",
    "SessionMetadata",
    "SessionStorage",
]
