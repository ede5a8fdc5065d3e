from __future__ import annotations

from pathlib import Path

import pytest

from codeloop.core.tool_registry import ToolDispatcher, build_default_registry
from codeloop.core.tools.base import ToolEnvironment
from codeloop.core.tools.search import format_size, glob_to_regex


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def handler(event):\n    return event\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("# Demo\n\nSee handler docs.\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("function handler() {}\n", encoding="utf-8")
    (tmp_path / ".hidden").write_text("handler", encoding="utf-8")
    return tmp_path


@pytest.fixture()
def dispatcher(workspace: Path) -> ToolDispatcher:
    return ToolDispatcher(build_default_registry(ToolEnvironment(workspace_root=workspace)))


def test_workspace_search_skips_ignored_directories(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": "handler"})

    files = [item["file"] for item in result["results"]]
    assert result["mode"] == "workspace"
    assert "node_modules/dep.js" not in files
    assert "src/app.py" in files
    assert "README.md" in files


def test_workspace_search_respects_include_directory(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": "handler", "include": "src"})

    assert [item["file"] for item in result["results"]] == ["src/app.py"]
    assert result["results"][0]["preview"] == "def handler(event):"


def test_workspace_search_with_several_queries(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": ["return event", "Demo"], "include": "**/*.{py,md}"})

    assert result["queries"] == ["return event", "Demo"]
    assert result["results"]["return event"]["total_results"] == 1
    assert result["results"]["Demo"]["matches"][0]["file"] == "README.md"


def test_no_results_carry_a_hint(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": "does-not-appear"})

    assert result["total_results"] == 0
    assert "hint" in result


def test_files_only_matches_names(dispatcher: ToolDispatcher) -> None:
    plain = dispatcher.dispatch("search", {"query": "app", "files_only": True})
    globbed = dispatcher.dispatch("search", {"query": "**/*.md", "files_only": True})

    assert plain["results"] == ["src/app.py"]
    assert globbed["results"] == ["README.md"]


def test_search_inside_one_file(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": "EVENT", "file": "src/app.py"})

    assert result["mode"] == "in_file"
    assert result["total_matches"] == 2
    assert result["matches"][0]["context"].startswith(">>> 1: def handler(event):")


def test_empty_query_is_rejected(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("search", {"query": ""})

    assert result["error"] == "search requires query (string)"


def test_list_files_renders_tree(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("list_files", {})

    tree = result["tree"]
    assert "src/" in tree
    assert "app.py (" in tree
    assert "node_modules" not in tree
    assert ".hidden" not in tree


def test_list_files_refuses_outside_workspace(dispatcher: ToolDispatcher) -> None:
    result = dispatcher.dispatch("list_files", {"path": ".."})

    assert result["error"] == "Cannot access directories outside workspace"


def test_glob_translation() -> None:
    assert glob_to_regex("**/*.py").match("a/b/c.py")
    assert glob_to_regex("**/*.py").match("c.py")
    assert not glob_to_regex("src/*.py").match("src/sub/c.py")
    assert glob_to_regex("*.{js,ts}").match("index.ts")


def test_format_size() -> None:
    assert format_size(12) == "12B"
    assert format_size(2048) == "2.0KB"
    assert format_size(3 * 1024 * 1024) == "3.0MB"
