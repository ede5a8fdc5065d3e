from __future__ import annotations

import json
from pathlib import Path

from codeloop.core.file_tracker import ReadTracker
from codeloop.core.snapshots import SnapshotManager
from codeloop.core.tool_registry import ToolDispatcher, build_default_registry
from codeloop.core.tools.base import ToolEnvironment
from codeloop.core.tools.files import changed_region


def _setup(tmp_path: Path, **env_kwargs: object) -> tuple[ToolDispatcher, SnapshotManager, Path]:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    snapshots = SnapshotManager(tmp_path / "snapshots", workspace_root=workspace)
    env = ToolEnvironment(
        workspace_root=workspace,
        snapshots=snapshots,
        read_tracker=ReadTracker(),
        **env_kwargs,  # type: ignore[arg-type]
    )
    return ToolDispatcher(build_default_registry(env)), snapshots, workspace


def test_read_file_numbers_lines_and_reports_range(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "a.txt").write_text("one\ntwo\nthree", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "a.txt", "start_line": 2, "end_line": 10})

    assert result["content"] == "2: two\n3: three"
    assert result["total_lines"] == 3
    assert result["returned_lines"] == 2
    assert "adjusted to 3" in result["note"]


def test_read_file_rejects_start_beyond_end_of_file(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "a.txt").write_text("one\ntwo", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "a.txt", "start_line": 9, "end_line": 3})

    assert "beyond end of file" in result["error"]
    assert result["total_lines"] == 2


def test_read_file_search_and_symbols(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    source = "import os\n\nclass Box:\n    def open(self):\n        return os.sep\n\ndef helper():\n    return 1\n"
    (workspace / "box.py").write_text(source, encoding="utf-8")

    found = dispatcher.dispatch("read_file", {"file_path": "box.py", "search": "HELPER"})
    symbols = dispatcher.dispatch("read_file", {"file_path": "box.py", "symbols": True})

    assert found["matches_found"] == 1
    assert found["matches"][0]["line"] == 7
    assert ">>> L7 | def helper():" in found["matches"][0]["context"]
    assert symbols["classes"][0]["name"] == "Box"
    assert symbols["classes"][0]["children"][0]["name"] == "open"
    assert symbols["functions"][0]["name"] == "helper"
    assert symbols["imports"] == [{"line": 1, "text": "import os"}]


def test_read_outside_workspace_is_denied_without_approval(tmp_path: Path) -> None:
    dispatcher, _, _ = _setup(tmp_path)
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "../secret.txt"})

    assert result["error"].startswith("Access denied")


def test_read_outside_workspace_with_approval(tmp_path: Path) -> None:
    approved: list[str] = []

    def approve(path: str) -> bool:
        approved.append(path)
        return True

    dispatcher, _, _ = _setup(tmp_path, approve_outside_path=approve)
    (tmp_path / "shared.txt").write_text("hello", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "../shared.txt"})

    assert result["content"] == "1: hello"
    assert approved == [str(tmp_path / "shared.txt")]


def test_edit_requires_prior_read(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "a.txt").write_text("a\nb\nc", encoding="utf-8")

    result = dispatcher.dispatch("edit_file", {"file_path": "a.txt", "old_string": "b", "new_string": "B"})

    assert "read_file" in result["error"]
    assert (workspace / "a.txt").read_text(encoding="utf-8") == "a\nb\nc"


def test_edit_applies_and_records_snapshot(tmp_path: Path) -> None:
    dispatcher, snapshots, workspace = _setup(tmp_path)
    target = workspace / "a.txt"
    target.write_text("a\nb\nc", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "a.txt"})

    result = dispatcher.dispatch("edit_file", {"file_path": "a.txt", "old_string": "b", "new_string": "B"})

    assert result["success"] is True
    assert result["line"] == 2
    assert result["strategy"] == "exact"
    assert target.read_text(encoding="utf-8") == "a\nB\nc"
    snapshot = snapshots.get_snapshot_for_file(target)
    assert snapshot is not None
    assert snapshot.baseline_content == "a\nb\nc"

    assert snapshots.rollback_all() == 1
    assert target.read_text(encoding="utf-8") == "a\nb\nc"


def test_edit_reindents_replacement_when_model_indent_is_wrong(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    target = workspace / "box.py"
    target.write_text("class A:\n    def f(self):\n        return 1\n", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "box.py"})

    result = dispatcher.dispatch(
        "edit_file",
        {
            "file_path": "box.py",
            "old_string": "def f(self):\n    return 1",
            "new_string": "def f(self):\n    return 2",
        },
    )

    assert result["strategy"] == "indentation-agnostic"
    assert target.read_text(encoding="utf-8") == "class A:\n    def f(self):\n        return 2\n"


def test_ambiguous_edit_needs_a_hint(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    target = workspace / "dup.txt"
    target.write_text("x = 1\ny\nx = 1", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "dup.txt"})

    refused = dispatcher.dispatch("edit_file", {"file_path": "dup.txt", "old_string": "x = 1", "new_string": "x = 2"})
    hinted = dispatcher.dispatch(
        "edit_file", {"file_path": "dup.txt", "old_string": "x = 1", "new_string": "x = 2", "start_line": 3}
    )

    assert "matches 2 locations" in refused["error"]
    assert hinted["line"] == 3
    assert target.read_text(encoding="utf-8") == "x = 1\ny\nx = 2"


def test_missing_old_string_reports_closest_region(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "a.py").write_text("def compute_total(items):\n    return sum(items)\n", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "a.py"})

    result = dispatcher.dispatch(
        "edit_file", {"file_path": "a.py", "old_string": "def compute_totals(values):", "new_string": "x"}
    )

    assert "old_string not found" in result["error"]
    assert result["closest_line"] == 1
    assert "L1: def compute_total(items):" in result["actual_content"]


def test_edit_rejects_near_total_rewrite(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    body = "\n".join(f"line {index}" for index in range(120))
    (workspace / "big.txt").write_text(body, encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "big.txt"})

    result = dispatcher.dispatch("edit_file", {"file_path": "big.txt", "old_string": body, "new_string": "gone"})

    assert "nearly the entire file" in result["error"]


def test_line_range_edit(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    target = workspace / "a.txt"
    target.write_text("a\nb\nc", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "a.txt"})

    result = dispatcher.dispatch("edit_file", {"file_path": "a.txt", "start_line": 2, "end_line": 2, "content": "B1\nB2"})

    assert result["message"] == "Replaced lines 2-2 (1 lines) with 2 line(s)"
    assert target.read_text(encoding="utf-8") == "a\nB1\nB2\nc"


def test_edit_reports_syntax_errors_after_write(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "mod.py").write_text("value = 1\n", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "mod.py"})

    result = dispatcher.dispatch("edit_file", {"file_path": "mod.py", "old_string": "value = 1", "new_string": "value = ("})

    assert result["success"] is True
    assert result["diagnostics"]["has_errors"] is True
    assert "error(s) detected" in result["warning"]


def test_create_file_and_undo_deletes_it(tmp_path: Path) -> None:
    dispatcher, snapshots, workspace = _setup(tmp_path)

    result = dispatcher.dispatch("create_file", {"file_path": "pkg/new.py", "content": "x = 1\n"})
    again = dispatcher.dispatch("create_file", {"file_path": "pkg/new.py", "content": "x = 2\n"})

    created = workspace / "pkg" / "new.py"
    assert result["success"] is True
    assert result["total_lines"] == 2
    assert "already exists" in again["error"]
    assert snapshots.rollback_file(created) == 1
    assert not created.exists()


def test_create_file_refuses_json_encoded_source(tmp_path: Path) -> None:
    dispatcher, _, _ = _setup(tmp_path)

    result = dispatcher.dispatch("create_file", {"file_path": "app.js", "content": '[{"type": "line"}]'})

    assert "JSON array" in result["error"]


def test_delete_file_can_be_cancelled_or_undone(tmp_path: Path) -> None:
    answers = iter([False, True])
    dispatcher, snapshots, workspace = _setup(tmp_path, confirm_delete=lambda _path: next(answers))
    target = workspace / "old.txt"
    target.write_text("keep\nme", encoding="utf-8")

    cancelled = dispatcher.dispatch("delete_file", {"file_path": "old.txt"})
    deleted = dispatcher.dispatch("delete_file", {"file_path": "old.txt"})

    assert cancelled == {"success": False, "error": "Deletion cancelled by user", "file_path": str(target)}
    assert deleted["success"] is True
    assert not target.exists()
    assert snapshots.rollback_file(target) == 1
    assert target.read_text(encoding="utf-8") == "keep\nme"


def test_changed_region_isolates_differing_lines() -> None:
    assert changed_region("a\nb\nc", "a\nB\nc") == (2, ["b"], ["B"])
    assert changed_region("a\nb", "a\nb\nc") == (3, [], ["c"])
    assert changed_region("a\nx\nc", "a\n\nc") == (2, ["x"], [""])


def test_results_are_json_serialisable(tmp_path: Path) -> None:
    dispatcher, _, workspace = _setup(tmp_path)
    (workspace / "a.txt").write_text("x", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "a.txt"})

    assert json.loads(json.dumps(result)) == result


def test_blanking_a_line_rolls_back_to_the_original(tmp_path: Path) -> None:
    dispatcher, snapshots, workspace = _setup(tmp_path)
    target = workspace / "a.txt"
    target.write_text("a\nx\nc", encoding="utf-8")
    dispatcher.dispatch("read_file", {"file_path": "a.txt"})

    result = dispatcher.dispatch("edit_file", {"file_path": "a.txt", "old_string": "x", "new_string": ""})

    assert result["success"] is True
    assert target.read_text(encoding="utf-8") == "a\n\nc"
    snapshot = snapshots.get_snapshot_for_file(target)
    assert snapshot is not None
    assert snapshot.baseline_content == "a\nx\nc"
    assert snapshots.rollback_snapshot(snapshot.id) is True
    assert target.read_text(encoding="utf-8") == "a\nx\nc"


def _untracked_dispatcher(tmp_path: Path) -> tuple[ToolDispatcher, Path]:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    env = ToolEnvironment(workspace_root=workspace)
    return ToolDispatcher(build_default_registry(env)), workspace


def test_edit_outside_workspace_is_denied_without_approval(tmp_path: Path) -> None:
    dispatcher, _ = _untracked_dispatcher(tmp_path)
    outside = tmp_path / "secret.txt"
    outside.write_text("keep me", encoding="utf-8")

    result = dispatcher.dispatch(
        "edit_file", {"file_path": str(outside), "old_string": "keep me", "new_string": "changed"}
    )

    assert result["error"].startswith("Access denied")
    assert outside.read_text(encoding="utf-8") == "keep me"


def test_symbols_outside_workspace_are_denied_without_approval(tmp_path: Path) -> None:
    dispatcher, _ = _untracked_dispatcher(tmp_path)
    (tmp_path / "other.py").write_text("def hidden():\n    pass\n", encoding="utf-8")

    result = dispatcher.dispatch("read_file", {"file_path": "../other.py", "symbols": True})

    assert result["error"].startswith("Access denied")
    assert "functions" not in result
