"""Session lifecycle utilities."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

MAX_SESSIONS = 20
STATE_FILENAME = "state.json"
METRICS_FILENAME = "metrics.json"
SNAPSHOT_DIRNAME = "snapshots"
CONVERSATION_LIMIT = 2000

_SECRET_PATTERNS = (
    re.compile(r"\b(?:sk|pk|rk|tvly)-[A-Za-z0-9_\-]{16,}\b"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-]{16,}"),
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)(\s*[=:]\s*)([\"']?)[^\s\"',}]{8,}\3"),
)


def _default_root() -> Path:
    return Path(os.environ.get("CODELOOP_HOME", Path.home() / ".codeloop")) / "sessions"


class SessionLoadError(RuntimeError):
    """Raised when a session directory exists but cannot be deserialized."""


class SessionMetadata(BaseModel):
    session_id: str
    created_at: datetime
    updated_at: datetime
    workspace: str | None = None
    model: str | None = None
    chat_mode: bool = False
    turns: int = 0


@dataclass
class SessionContext:
    metadata: SessionMetadata
    conversation: list[dict[str, Any]] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.metadata.session_id


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, default=str, indent=2, ensure_ascii=False))
    tmp_path.replace(path)


class SessionManager:
    """One directory per session holding ``state.json`` and ``metrics.json``."""

    def __init__(self, root: Path | None = None, *, max_sessions: int = MAX_SESSIONS) -> None:
        self.root = root or _default_root()
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_sessions = max_sessions

    def start(
        self,
        session_id: str | None = None,
        *,
        workspace: Path | None = None,
        model: str | None = None,
        chat_mode: bool = False,
    ) -> SessionContext:
        if session_id:
            context = self.load(session_id)
            if workspace is not None:
                context.metadata.workspace = str(workspace)
            if model:
                context.metadata.model = model
            context.metadata.chat_mode = chat_mode
            return context
        return self._create_new(workspace=workspace, model=model, chat_mode=chat_mode)

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def snapshot_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / SNAPSHOT_DIRNAME

    def exists(self, session_id: str) -> bool:
        return (self.session_dir(session_id) / STATE_FILENAME).exists()

    def list_sessions(self) -> list[SessionMetadata]:
        """Return metadata for every readable session, newest first."""

        sessions: list[SessionMetadata] = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or not (entry / STATE_FILENAME).exists():
                continue
            try:
                sessions.append(self.load(entry.name).metadata)
            except SessionLoadError as exc:
                logger.warning("Skipping unreadable session %s: %s", entry.name, exc)
        return sorted(sessions, key=lambda meta: meta.updated_at, reverse=True)

    def save(self, context: SessionContext) -> None:
        context.conversation = context.conversation[-CONVERSATION_LIMIT:]
        context.metadata.updated_at = datetime.now(UTC)
        _write_json(
            self.session_dir(context.session_id) / STATE_FILENAME,
            {
                "metadata": context.metadata.model_dump(mode="json"),
                "conversation": context.conversation,
            },
        )
        self._enforce_rotation(keep=context.session_id)

    def load(self, session_id: str) -> SessionContext:
        state_path = self.session_dir(session_id) / STATE_FILENAME
        if not state_path.exists():
            raise FileNotFoundError(f"Session '{session_id}' not found")
        try:
            data = json.loads(state_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise SessionLoadError(f"Session '{session_id}' state is corrupted") from exc
        if not isinstance(data, dict):
            raise SessionLoadError(f"Session '{session_id}' state is corrupted")

        try:
            metadata = SessionMetadata(**data["metadata"])
        except (KeyError, TypeError, ValidationError) as exc:
            raise SessionLoadError(f"Session '{session_id}' metadata is invalid") from exc

        conversation_raw = data.get("conversation", [])
        if not isinstance(conversation_raw, list):
            raise SessionLoadError(f"Session '{session_id}' conversation is invalid")
        conversation = [
            entry
            for entry in conversation_raw[-CONVERSATION_LIMIT:]
            if isinstance(entry, dict) and isinstance(entry.get("role"), str)
        ]
        return SessionContext(metadata=metadata, conversation=conversation)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def load_metrics(self, session_id: str) -> dict[str, Any]:
        path = self.session_dir(session_id) / METRICS_FILENAME
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable metrics for session %s", session_id)
            return {}
        return data if isinstance(data, dict) else {}

    def save_metrics(self, session_id: str, metrics: dict[str, Any]) -> None:
        _write_json(self.session_dir(session_id) / METRICS_FILENAME, metrics)

    # ------------------------------------------------------------------
    def _create_new(self, *, workspace: Path | None, model: str | None, chat_mode: bool) -> SessionContext:
        now = datetime.now(UTC)
        metadata = SessionMetadata(
            session_id=uuid.uuid4().hex[:12],
            created_at=now,
            updated_at=now,
            workspace=str(workspace) if workspace is not None else None,
            model=model,
            chat_mode=chat_mode,
        )
        context = SessionContext(metadata=metadata)
        self.save(context)
        logger.info("Created session %s", metadata.session_id)
        return context

    def _enforce_rotation(self, *, keep: str | None = None) -> None:
        sessions = sorted(
            (entry for entry in self.root.iterdir() if entry.is_dir()),
            key=lambda path: path.stat().st_mtime,
            reverse=True,
        )
        for extra in sessions[self.max_sessions :]:
            if extra.name == keep:
                continue
            logger.debug("Rotating out session %s", extra.name)
            shutil.rmtree(extra, ignore_errors=True)

    # ------------------------------------------------------------------
    def export_session(self, session_id: str, *, redact: bool = True) -> dict[str, Any]:
        context = self.load(session_id)
        metadata = context.metadata.model_dump(mode="json")
        conversation = [dict(entry) for entry in context.conversation]
        if redact:
            conversation = [self._redact_entry(entry) for entry in conversation]
        return {
            "metadata": metadata,
            "metrics": self.load_metrics(session_id),
            "conversation": conversation,
        }

    def _redact_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        redacted = dict(entry)
        if isinstance(redacted.get("content"), str):
            redacted["content"] = redact_text(redacted["content"])
        tool_calls = redacted.get("tool_calls")
        if isinstance(tool_calls, list):
            cleaned: list[Any] = []
            for call in tool_calls:
                if isinstance(call, dict) and isinstance(call.get("function"), dict):
                    function = dict(call["function"])
                    if isinstance(function.get("arguments"), str):
                        function["arguments"] = redact_text(function["arguments"])
                    call = {**call, "function": function}
                cleaned.append(call)
            redacted["tool_calls"] = cleaned
        return redacted


def redact_text(text: str) -> str:
    """Mask API-key-like tokens, keeping a short prefix for recognisability."""

    def _mask(match: re.Match[str]) -> str:
        value = match.group(0)
        return f"{value[:6]}…[redacted]"

    text = _SECRET_PATTERNS[0].sub(_mask, text)
    text = _SECRET_PATTERNS[1].sub(lambda m: "Bearer …[redacted]", text)
    return _SECRET_PATTERNS[2].sub(lambda m: f"{m.group(1)}{m.group(2)}{m.group(3)}…[redacted]{m.group(3)}", text)


class SessionStorage:
    """Adapts :class:`SessionManager` to the agent loop's storage collaborator."""

    def __init__(self, manager: SessionManager, context: SessionContext) -> None:
        self.manager = manager
        self.context = context

    def load_metrics(self, session_id: str) -> dict[str, Any]:
        return self.manager.load_metrics(session_id)

    def save_metrics(self, session_id: str, metrics: dict[str, Any]) -> None:
        self.manager.save_metrics(session_id, metrics)

    def save_conversation(self, session_id: str, messages: list[dict[str, Any]]) -> None:
        if session_id != self.context.session_id:
            logger.warning("Saving conversation for %s into session %s", session_id, self.context.session_id)
        self.context.conversation = [message for message in messages if message.get("role") != "system"]
        self.context.metadata.turns += 1
        self.manager.save(self.context)


__all__ = [
    "MAX_SESSIONS",
    "SessionContext",
    "SessionLoadError",
    "SessionManager",
    "SessionMetadata",
    "SessionStorage",
    "redact_text",
]
