"""Shared types for tool implementations."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from codeloop.core.file_tracker import ReadTracker
    from codeloop.core.snapshots import SnapshotManager
    from codeloop.core.tools.terminal import BackgroundProcessManager


class ToolRegistryError(RuntimeError):
    """Base error for tool registry failures."""


class ToolAlreadyRegisteredError(ToolRegistryError):
    """Raised when attempting to register a tool with a duplicate name."""


class ToolNotFoundError(ToolRegistryError):
    """Raised when invoking an unknown tool."""


class ToolInvocationError(ToolRegistryError):
    """Raised when a tool handler fails.

    ``details`` carries extra structured fields (``hint``, ``closest_match``
    and so on) that are merged into the error result shown to the model.
    """

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details = details


class ToolkitAlreadyRegisteredError(ToolRegistryError):
    """Raised when attempting to register a toolkit twice."""


@dataclass(slots=True)
class ToolResult:
    """Represents the outcome of invoking a tool."""

    content: str
    summary: str | None = None
    data: Any | None = None


@dataclass(slots=True)
class Tool:
    """Metadata for a registered tool."""

    name: str
    description: str
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    handler: Callable[[dict[str, Any]], ToolResult]


@dataclass(slots=True)
class Toolkit:
    """Groups related tools together."""

    name: str
    version: str
    description: str
    tools: list[Tool]


ApprovalCallback = Callable[[str], bool]


@dataclass(slots=True)
class ToolEnvironment:
    """Everything a tool handler needs to touch the outside world."""

    workspace_root: Path
    snapshots: SnapshotManager | None = None
    read_tracker: ReadTracker | None = None
    processes: BackgroundProcessManager | None = None
    approve_outside_path: ApprovalCallback | None = None
    confirm_delete: ApprovalCallback | None = None
    web_search_api_key: str | None = None
    session_id: str = "default"
    extras: dict[str, Any] = field(default_factory=dict)

    def resolve(self, file_path: str) -> Path:
        """Resolve ``file_path`` against the workspace root."""

        candidate = Path(os.path.expanduser(file_path))
        if not candidate.is_absolute():
            candidate = self.workspace_root.absolute() / candidate
        return Path(os.path.normpath(str(candidate)))

    def is_inside(self, path: Path) -> bool:
        root = Path(os.path.normpath(str(self.workspace_root.absolute())))
        try:
            path.relative_to(root)
        except ValueError:
            return False
        return True

    def check_access(self, path: Path) -> None:
        """Raise unless ``path`` is in the workspace or explicitly approved."""

        if self.is_inside(path):
            return
        if self.approve_outside_path is not None and self.approve_outside_path(str(path)):
            return
        raise ToolInvocationError(
            f"Access denied: {path} is outside the workspace.",
            hint="Only files inside the workspace can be accessed without approval.",
        )

    def relative(self, path: Path) -> str:
        if self.is_inside(path):
            return path.relative_to(Path(os.path.normpath(str(self.workspace_root.absolute())))).as_posix()
        return str(path)


def json_result(data: dict[str, Any], summary: str | None = None) -> ToolResult:
    """Wrap a structured payload the way every built-in tool reports results."""

    return ToolResult(content=json.dumps(data, indent=2, ensure_ascii=False), summary=summary, data=data)


def split_lines(content: str) -> list[str]:
    return content.replace("\r\n", "\n").split("\n")


__all__ = [
    "ApprovalCallback",
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolEnvironment",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolRegistryError",
    "ToolResult",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "json_result",
    "split_lines",
]
