"""Per-file snapshots that make agent edits reversible.

Each mutated file owns exactly one :class:`FileSnapshot`: the content the file
had before the agent first touched it (``baseline_content``) plus an ordered
list of :class:`FileChange` records. A ``None`` baseline means the agent
created the file, so rolling it back deletes the file instead of restoring
content.

Changes remember a few lines of surrounding context because later edits shift
line numbers; :func:`locate_change` re-derives where a change currently sits by
content rather than by a stored offset.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

SnapshotTool = Literal["edit", "overwrite", "create", "delete"]

CONTEXT_LINES = 3
MAX_TOTAL_FILES = 50
# Rollback of a created file is skipped when the file grew past this factor of
# what the tracked changes produced.
GROWTH_GUARD_FACTOR = 3
GROWTH_GUARD_SLACK = 500

ChangeListener = Callable[[], None]


@dataclass(slots=True)
class FileChange:
    """One atomic edit inside a snapshot."""

    id: str
    timestamp: int
    context_before: list[str]
    context_after: list[str]
    old_lines: list[str]
    new_lines: list[str]
    cached_start_line: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileChange:
        return cls(
            id=str(data["id"]),
            timestamp=int(data["timestamp"]),
            context_before=list(data.get("context_before", [])),
            context_after=list(data.get("context_after", [])),
            old_lines=list(data.get("old_lines", [])),
            new_lines=list(data.get("new_lines", [])),
            cached_start_line=int(data.get("cached_start_line", 1)),
        )


@dataclass(slots=True)
class FileSnapshot:
    """Baseline plus ordered changes for a single file."""

    id: str
    file_path: str
    file_name: str
    created_at: int
    updated_at: int
    tool: SnapshotTool
    baseline_content: str | None
    changes: list[FileChange] = field(default_factory=list)
    total_lines_added: int = 0
    total_lines_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSnapshot:
        return cls(
            id=str(data["id"]),
            file_path=str(data["file_path"]),
            file_name=str(data.get("file_name") or os.path.basename(data["file_path"])),
            created_at=int(data["created_at"]),
            updated_at=int(data.get("updated_at", data["created_at"])),
            tool=data.get("tool", "edit"),
            baseline_content=data.get("baseline_content"),
            changes=[FileChange.from_dict(item) for item in data.get("changes", [])],
            total_lines_added=int(data.get("total_lines_added", 0)),
            total_lines_removed=int(data.get("total_lines_removed", 0)),
        )


@dataclass(slots=True)
class PendingFileSummary:
    file_path: str
    file_name: str
    added: int
    removed: int
    snapshot_id: str
    change_count: int


@dataclass(slots=True)
class PendingChangesSummary:
    total_files: int
    total_added: int
    total_removed: int
    files: list[PendingFileSummary]


# ---------------------------------------------------------------------------
# Position tracking
# ---------------------------------------------------------------------------


def _find_block(lines: list[str], block: list[str], start: int = 0) -> int:
    size = len(block)
    for index in range(start, len(lines) - size + 1):
        if lines[index:index + size] == block:
            return index
    return -1


def locate_change(change: FileChange, content: str) -> int:
    """Return the 1-based line where ``change`` currently starts in ``content``.

    Strategies, most specific first: context-before followed by the new lines,
    context-before alone, a unique occurrence of a multi-line new block, and
    finally the last cached line number.
    """

    lines = content.split("\n")
    before = change.context_before
    new = change.new_lines

    if before and new:
        block = before + new
        index = _find_block(lines, block)
        if index != -1:
            return index + len(before) + 1

    if before:
        index = _find_block(lines, before)
        if index != -1:
            return index + len(before) + 1

    if len(new) >= 2:
        first = _find_block(lines, new)
        if first != -1 and _find_block(lines, new, first + 1) == -1:
            return first + 1

    return change.cached_start_line


def replay_changes(baseline: str | None, changes: list[FileChange]) -> str:
    """Re-apply ``changes`` in timestamp order on top of ``baseline``.

    A ``None`` baseline is a file that did not exist, so replay starts from no lines.
    """

    lines = baseline.split("\n") if baseline is not None else []
    for change in sorted(changes, key=lambda item: item.timestamp):
        found = -1
        if change.old_lines:
            found = _find_block(lines, change.old_lines)
        elif change.context_before:
            index = _find_block(lines, change.context_before)
            if index != -1:
                found = index + len(change.context_before)
        if found == -1:
            found = max(0, change.cached_start_line - 1)
        lines = lines[:found] + change.new_lines + lines[found + len(change.old_lines):]
    return "\n".join(lines)


def _as_lines(value: str | list[str] | None) -> list[str]:
    # "" is zero lines; [""] is one empty line.
    if isinstance(value, list):
        return list(value)
    return value.split("\n") if value else []


def normalize_path(file_path: str | os.PathLike[str]) -> str:
    return os.path.normpath(str(Path(file_path).expanduser().absolute()))


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class SnapshotManager:
    """Tracks pending snapshots in memory and mirrors each one to its own file."""

    def __init__(
        self,
        storage_dir: Path,
        *,
        workspace_root: Path | None = None,
        max_files: int = MAX_TOTAL_FILES,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.storage_dir = storage_dir
        self.pending_dir = storage_dir / "pending"
        self.workspace_root = normalize_path(workspace_root) if workspace_root else None
        self.max_files = max_files
        self._clock = clock or time.time
        self._snapshots: dict[str, FileSnapshot] = {}
        self._listeners: list[ChangeListener] = []
        self.pending_dir.mkdir(parents=True, exist_ok=True)
        self._load_pending()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def create_snapshot(
        self,
        file_path: str | os.PathLike[str],
        tool: SnapshotTool,
        old_content: str | list[str] | None,
        new_content: str | list[str],
        start_line: int,
    ) -> FileSnapshot:
        """Record one change; the file on disk must already hold ``new_content``.

        Content may be given as text or as a list of lines.
        """

        key = normalize_path(file_path)
        now = self._now_ms()
        current_lines = self._read_lines(key)
        zero_start = max(0, start_line - 1)
        new_lines = _as_lines(new_content)
        old_lines = _as_lines(old_content)

        change = FileChange(
            id=f"{now}_{uuid.uuid4().hex[:9]}",
            timestamp=now,
            context_before=current_lines[max(0, zero_start - CONTEXT_LINES):zero_start],
            context_after=current_lines[zero_start + len(new_lines):zero_start + len(new_lines) + CONTEXT_LINES],
            old_lines=old_lines,
            new_lines=new_lines,
            cached_start_line=start_line,
        )

        snapshot = self._snapshots.get(key)
        if snapshot is not None:
            snapshot.changes.append(change)
            snapshot.updated_at = now
            snapshot.total_lines_added += len(new_lines)
            snapshot.total_lines_removed += len(old_lines)
            if tool not in ("create", "delete"):
                snapshot.tool = tool
        else:
            if tool == "create":
                baseline: str | None = None
            elif old_content is not None:
                before = current_lines[:zero_start]
                after = current_lines[zero_start + len(new_lines):]
                baseline = "\n".join(before + old_lines + after)
            else:
                baseline = "\n".join(current_lines)
            snapshot = FileSnapshot(
                id=f"snap_{now}_{uuid.uuid4().hex[:9]}",
                file_path=key,
                file_name=os.path.basename(key),
                created_at=now,
                updated_at=now,
                tool=tool,
                baseline_content=baseline,
                changes=[change],
                total_lines_added=len(new_lines),
                total_lines_removed=len(old_lines),
            )
            self._snapshots[key] = snapshot
            logger.debug("Created snapshot %s for %s (%s)", snapshot.id, key, tool)

        self._enforce_limits(keep=snapshot.id)
        self._save(snapshot)
        self._notify()
        return snapshot

    # ------------------------------------------------------------------
    # Accepting
    # ------------------------------------------------------------------
    def confirm(self, snapshot_id: str) -> bool:
        snapshot = self._find(snapshot_id)
        if snapshot is None:
            return False
        self._discard(snapshot)
        self._notify()
        return True

    def confirm_file(self, file_path: str | os.PathLike[str]) -> int:
        snapshot = self._snapshots.get(normalize_path(file_path))
        if snapshot is None:
            return 0
        self.confirm(snapshot.id)
        return 1

    def confirm_all(self) -> int:
        snapshots = list(self._snapshots.values())
        for snapshot in snapshots:
            self.confirm(snapshot.id)
        return len(snapshots)

    # ------------------------------------------------------------------
    # Reverting
    # ------------------------------------------------------------------
    def rollback_snapshot(self, snapshot_id: str) -> bool:
        """Restore the baseline (or delete an agent-created file)."""

        snapshot = self._find(snapshot_id)
        if snapshot is None:
            return False
        target = Path(snapshot.file_path)
        try:
            if snapshot.baseline_content is None:
                self._remove_created_file(snapshot, target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(snapshot.baseline_content, encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to roll back %s: %s", snapshot.file_path, exc)
            return False
        self._discard(snapshot)
        self._notify()
        return True

    def rollback_change(self, snapshot_id: str, change_id: str) -> bool:
        """Undo one change while keeping every sibling change in place."""

        snapshot = self._find(snapshot_id)
        if snapshot is None:
            return False
        removed = next((change for change in snapshot.changes if change.id == change_id), None)
        if removed is None:
            return False
        if len(snapshot.changes) == 1:
            return self.rollback_snapshot(snapshot_id)

        remaining = [change for change in snapshot.changes if change.id != change_id]
        content = replay_changes(snapshot.baseline_content, remaining)
        try:
            Path(snapshot.file_path).write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to roll back change %s in %s: %s", change_id, snapshot.file_path, exc)
            return False

        snapshot.changes = remaining
        snapshot.total_lines_added -= len(removed.new_lines)
        snapshot.total_lines_removed -= len(removed.old_lines)
        snapshot.updated_at = self._now_ms()
        for change in snapshot.changes:
            change.cached_start_line = locate_change(change, content)
        self._save(snapshot)
        self._notify()
        return True

    def rollback_file(self, file_path: str | os.PathLike[str]) -> int:
        snapshot = self._snapshots.get(normalize_path(file_path))
        if snapshot is None:
            return 0
        return 1 if self.rollback_snapshot(snapshot.id) else 0

    def rollback_all(self) -> int:
        count = 0
        for snapshot in list(self._snapshots.values()):
            if self.rollback_snapshot(snapshot.id):
                count += 1
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, snapshot_id: str) -> FileSnapshot | None:
        return self._find(snapshot_id)

    def get_snapshot_for_file(self, file_path: str | os.PathLike[str]) -> FileSnapshot | None:
        return self._snapshots.get(normalize_path(file_path))

    def locate(self, snapshot_id: str, change_id: str) -> int | None:
        """Return the current 1-based line of a change, or ``None`` if unknown."""

        snapshot = self._find(snapshot_id)
        if snapshot is None:
            return None
        change = next((item for item in snapshot.changes if item.id == change_id), None)
        if change is None:
            return None
        return locate_change(change, "\n".join(self._read_lines(snapshot.file_path)))

    def get_pending_snapshots(self) -> list[FileSnapshot]:
        """Snapshots in the workspace, newest first.

        Snapshots whose file vanished outside the agent's control are dropped;
        snapshots that record a deletion are kept so the file can be restored.
        """

        pending: list[FileSnapshot] = []
        for key, snapshot in list(self._snapshots.items()):
            if not self._in_workspace(key):
                continue
            if Path(key).exists() or self._records_deletion(snapshot):
                pending.append(snapshot)
                continue
            logger.info("Dropping stale snapshot %s; %s no longer exists", snapshot.id, key)
            self._discard(snapshot)
        pending.sort(key=lambda item: item.updated_at, reverse=True)
        return pending

    def get_summary(self) -> PendingChangesSummary:
        files = [
            PendingFileSummary(
                file_path=snapshot.file_path,
                file_name=snapshot.file_name,
                added=snapshot.total_lines_added,
                removed=snapshot.total_lines_removed,
                snapshot_id=snapshot.id,
                change_count=len(snapshot.changes),
            )
            for key, snapshot in self._snapshots.items()
            if self._in_workspace(key)
        ]
        return PendingChangesSummary(
            total_files=len(files),
            total_added=sum(item.added for item in files),
            total_removed=sum(item.removed for item in files),
            files=files,
        )

    def has_pending_changes(self) -> bool:
        return any(self._in_workspace(key) for key in self._snapshots)

    def on_change(self, callback: ChangeListener) -> Callable[[], None]:
        """Subscribe to snapshot changes; returns an unsubscribe function."""

        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _find(self, snapshot_id: str) -> FileSnapshot | None:
        for snapshot in self._snapshots.values():
            if snapshot.id == snapshot_id:
                return snapshot
        return None

    def _read_lines(self, key: str) -> list[str]:
        try:
            return Path(key).read_text(encoding="utf-8").split("\n")
        except (OSError, UnicodeDecodeError):
            return []

    def _remove_created_file(self, snapshot: FileSnapshot, target: Path) -> None:
        if not target.exists():
            return
        current = target.read_text(encoding="utf-8", errors="replace")
        produced = sum(len("\n".join(change.new_lines)) for change in snapshot.changes)
        if produced > 0 and len(current) > produced * GROWTH_GUARD_FACTOR + GROWTH_GUARD_SLACK:
            logger.warning(
                "%s changed substantially since it was created (%s chars vs %s produced); not deleting it",
                snapshot.file_name,
                len(current),
                produced,
            )
            return
        target.unlink()

    @staticmethod
    def _records_deletion(snapshot: FileSnapshot) -> bool:
        if snapshot.tool == "delete":
            return True
        last = snapshot.changes[-1] if snapshot.changes else None
        return last is not None and bool(last.old_lines) and not last.new_lines

    def _in_workspace(self, key: str) -> bool:
        if self.workspace_root is None:
            return True
        return key == self.workspace_root or key.startswith(self.workspace_root + os.sep)

    def _enforce_limits(self, *, keep: str) -> None:
        while len(self._snapshots) > self.max_files:
            candidates = [snapshot for snapshot in self._snapshots.values() if snapshot.id != keep]
            if not candidates:
                return
            oldest = min(candidates, key=lambda item: item.created_at)
            logger.warning(
                "Tracked file limit (%s) reached; accepting changes to %s",
                self.max_files,
                oldest.file_name,
            )
            self._discard(oldest)

    def _discard(self, snapshot: FileSnapshot) -> None:
        self._snapshots.pop(snapshot.file_path, None)
        path = self.pending_dir / f"{snapshot.id}.json"
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to delete snapshot file %s: %s", path, exc)

    def _save(self, snapshot: FileSnapshot) -> None:
        path = self.pending_dir / f"{snapshot.id}.json"
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(snapshot.to_dict(), indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            logger.error("Failed to persist snapshot %s: %s", snapshot.id, exc)

    def _load_pending(self) -> None:
        for path in sorted(self.pending_dir.glob("*.json")):
            try:
                snapshot = FileSnapshot.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Failed to load snapshot %s: %s", path.name, exc)
                continue
            self._snapshots[snapshot.file_path] = snapshot
        if self._snapshots:
            logger.debug("Loaded %s pending snapshot(s) from %s", len(self._snapshots), self.pending_dir)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.error("Snapshot change listener failed: %s", exc)


__all__ = [
    "FileChange",
    "FileSnapshot",
    "MAX_TOTAL_FILES",
    "PendingChangesSummary",
    "PendingFileSummary",
    "SnapshotManager",
    "SnapshotTool",
    "locate_change",
    "normalize_path",
    "replay_changes",
]
