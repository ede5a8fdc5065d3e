"""Request/response ports through which the agent loop asks the user for decisions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class ConfirmationCancelled(RuntimeError):
    """Raised when a confirmation request cannot be answered."""


@dataclass(slots=True)
class TerminalDecision:
    approved: bool
    command: str | None = None


TerminalPrompt = Callable[[str, str], TerminalDecision]
ContinuePrompt = Callable[[int], bool]
ToolApprovalPrompt = Callable[[str, dict[str, Any]], bool]


class ConfirmationPorts:
    """Holds the user-facing prompts and serialises requests per kind.

    At most one request of each kind may be outstanding. After :meth:`close`
    every request raises :class:`ConfirmationCancelled`. ``detach`` is set by
    the front end to let a running terminal command continue in the background.
    """

    def __init__(
        self,
        *,
        terminal: TerminalPrompt | None = None,
        continuation: ContinuePrompt | None = None,
        tool_approval: ToolApprovalPrompt | None = None,
        detach: threading.Event | None = None,
    ) -> None:
        self._terminal = terminal
        self._continuation = continuation
        self._tool_approval = tool_approval
        self.detach = detach
        self._pending: set[str] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handles_terminal(self) -> bool:
        return self._terminal is not None

    @property
    def handles_continuation(self) -> bool:
        return self._continuation is not None

    @property
    def handles_tool_approval(self) -> bool:
        return self._tool_approval is not None

    @contextmanager
    def _request(self, kind: str) -> Iterator[None]:
        with self._lock:
            if self._closed:
                raise ConfirmationCancelled(f"{kind} confirmation cancelled: session closed")
            if kind in self._pending:
                raise ConfirmationCancelled(f"{kind} confirmation already pending")
            self._pending.add(kind)
        try:
            yield
        finally:
            with self._lock:
                self._pending.discard(kind)
        if self._closed:
            raise ConfirmationCancelled(f"{kind} confirmation cancelled: session closed")

    def confirm_terminal(self, command: str, cwd: str) -> TerminalDecision:
        if self._terminal is None:
            return TerminalDecision(approved=True)
        with self._request("terminal"):
            decision = self._terminal(command, cwd)
        logger.debug("Terminal confirmation for %r: %s", command, decision)
        return decision

    def confirm_continue(self, iterations: int) -> bool:
        if self._continuation is None:
            return False
        with self._request("continuation"):
            return bool(self._continuation(iterations))

    def approve_tool(self, tool_name: str, args: dict[str, Any]) -> bool:
        if self._tool_approval is None:
            return True
        with self._request("tool_approval"):
            return bool(self._tool_approval(tool_name, args))

    def close(self) -> None:
        """Cancel outstanding and future requests (session teardown)."""

        with self._lock:
            self._closed = True
        if self.detach is not None:
            self.detach.set()


__all__ = [
    "ConfirmationCancelled",
    "ConfirmationPorts",
    "ContinuePrompt",
    "TerminalDecision",
    "TerminalPrompt",
    "ToolApprovalPrompt",
]
