"""Per-session record of which files the agent has read."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable

from codeloop.core.snapshots import normalize_path

logger = logging.getLogger(__name__)


class ReadTracker:
    """Enforces read-before-edit: edits to unread files are refused."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._sessions: dict[str, dict[str, float]] = {}
        self.current_session = "default"

    @staticmethod
    def _key(file_path: str | os.PathLike[str]) -> str:
        return os.path.normcase(normalize_path(file_path))

    def set_session(self, session_id: str) -> None:
        self.current_session = session_id

    def record_read(self, file_path: str | os.PathLike[str]) -> None:
        reads = self._sessions.setdefault(self.current_session, {})
        reads[self._key(file_path)] = self._clock()

    def was_read(self, file_path: str | os.PathLike[str]) -> bool:
        return self._key(file_path) in self._sessions.get(self.current_session, {})

    def check(self, file_path: str | os.PathLike[str]) -> str | None:
        """Return an error message when ``file_path`` was not read this session."""

        if self.was_read(file_path):
            return None
        logger.debug("Edit refused for unread file %s (session %s)", file_path, self.current_session)
        return (
            f'You must read the file "{file_path}" with read_file before editing it. '
            "This prevents blind overwrites and ensures you see the current content."
        )

    def clear(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(session_id, None)


__all__ = ["ReadTracker"]
