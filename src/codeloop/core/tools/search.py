"""Workspace search and directory listing tools."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator
from functools import lru_cache
from pathlib import Path
from typing import Any

from codeloop.core.tools.base import Tool, ToolEnvironment, ToolInvocationError, Toolkit, ToolResult, json_result

logger = logging.getLogger(__name__)

MAX_QUERIES = 15
MAX_FILE_RESULTS = 100
MAX_IN_FILE_MATCHES = 20
MAX_WORKSPACE_FILES = 200
MAX_WORKSPACE_RESULTS = 50
PREVIEW_CHARS = 100
SEARCH_CONTEXT = 3
DEFAULT_TREE_DEPTH = 4
MAX_TREE_DEPTH = 10

IGNORED_DIRS = frozenset(
    {
        "node_modules", "__pycache__", ".git", ".svn", ".hg", "dist", "build", "out", ".next",
        ".nuxt", ".cache", "coverage", ".nyc_output", ".pytest_cache", ".mypy_cache", ".tox",
        "venv", ".venv", "env", ".env", "vendor", "target", "bin", "obj", ".idea", ".vscode",
    }
)
IGNORED_FILES = frozenset(
    {
        ".DS_Store", "Thumbs.db", ".gitignore", ".gitattributes", ".gitkeep", "package-lock.json",
        "yarn.lock", "pnpm-lock.yaml", "composer.lock", "Gemfile.lock", "Cargo.lock", "poetry.lock",
    }
)
NO_MATCHES_HINT = (
    "No matches found in workspace source files. Try a different query, or use read_file to check a specific file."
)


@lru_cache(maxsize=128)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**``-aware glob into a regex over POSIX relative paths."""

    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "{":
            close = pattern.find("}", index)
            if close != -1:
                options = pattern[index + 1:close].split(",")
                parts.append("(?:" + "|".join(re.escape(option) for option in options) + ")")
                index = close + 1
                continue
            parts.append(re.escape(char))
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def iter_workspace_files(root: Path) -> Iterator[Path]:
    """Yield files under ``root`` in a stable order, skipping ignored directories."""

    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(name for name in dirs if name not in IGNORED_DIRS)
        for name in sorted(files):
            if name not in IGNORED_FILES:
                yield Path(current) / name


def _normalize_include(pattern: str | None, root: Path) -> str:
    if not pattern:
        return "**/*"
    if "*" in pattern:
        return pattern
    cleaned = pattern.rstrip("/\\")
    if os.path.isabs(cleaned):
        try:
            cleaned = Path(cleaned).relative_to(root).as_posix()
        except ValueError:
            pass
    return f"{cleaned}/**"


def _parse_queries(value: Any) -> list[str]:
    if isinstance(value, list):
        queries = [item for item in value if isinstance(item, str) and item.strip()][:MAX_QUERIES]
    elif isinstance(value, str) and value.strip():
        queries = [value]
    else:
        queries = []
    if not queries:
        raise ToolInvocationError("search requires query parameter (string or array of up to 15 strings)")
    return queries


def _find_files(root: Path, query: str) -> list[str]:
    pattern = query if any(char in query for char in "*?{") else f"**/*{query}*"
    regex = glob_to_regex(pattern)
    results: list[str] = []
    for path in iter_workspace_files(root):
        relative = path.relative_to(root).as_posix()
        if regex.match(relative):
            results.append(relative)
            if len(results) >= MAX_FILE_RESULTS:
                break
    return results


def _search_file(path: Path, raw: str, queries: list[str]) -> dict[str, Any]:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    except OSError as exc:
        raise ToolInvocationError(f"Cannot read file: {exc}") from exc

    grouped: dict[str, list[dict[str, Any]]] = {}
    for query in queries:
        needle = query.lower()
        matches: list[dict[str, Any]] = []
        for index, line in enumerate(lines):
            if needle not in line.lower():
                continue
            block = [
                f"{'>>>' if position == index else '   '} {position + 1}: {lines[position]}"
                for position in range(max(0, index - SEARCH_CONTEXT), min(len(lines), index + SEARCH_CONTEXT + 1))
            ]
            matches.append({"line": index + 1, "context": "\n".join(block)})
            if len(matches) >= MAX_IN_FILE_MATCHES:
                break
        grouped[query] = matches

    if len(queries) == 1:
        matches = grouped[queries[0]]
        return {"query": queries[0], "file": raw, "mode": "in_file", "total_matches": len(matches), "matches": matches}
    return {
        "queries": queries,
        "file": raw,
        "mode": "in_file",
        "results": {query: {"total_matches": len(grouped[query]), "matches": grouped[query]} for query in queries},
    }


def _search_workspace(root: Path, queries: list[str], include: str) -> dict[str, Any]:
    regex = glob_to_regex(include)
    lowered = [query.lower() for query in queries]
    grouped: dict[str, list[dict[str, Any]]] = {query: [] for query in queries}
    scanned = 0

    for path in iter_workspace_files(root):
        relative = path.relative_to(root).as_posix()
        if not regex.match(relative):
            continue
        if scanned >= MAX_WORKSPACE_FILES:
            break
        scanned += 1
        if all(len(grouped[query]) >= MAX_WORKSPACE_RESULTS for query in queries):
            break
        try:
            lines = path.read_text(encoding="utf-8").split("\n")
        except (OSError, UnicodeDecodeError):
            continue
        for number, line in enumerate(lines, start=1):
            line_lower = line.lower()
            for query, needle in zip(queries, lowered):
                bucket = grouped[query]
                if len(bucket) < MAX_WORKSPACE_RESULTS and needle in line_lower:
                    bucket.append({"file": relative, "line": number, "preview": line.strip()[:PREVIEW_CHARS]})

    logger.debug("Workspace search scanned %s file(s) for %s query(ies)", scanned, len(queries))
    if len(queries) == 1:
        results = grouped[queries[0]]
        payload: dict[str, Any] = {
            "query": queries[0],
            "mode": "workspace",
            "total_results": len(results),
            "results": results,
        }
        if not results:
            payload["hint"] = NO_MATCHES_HINT
        return payload
    return {
        "queries": queries,
        "mode": "workspace",
        "results": {query: {"total_results": len(grouped[query]), "matches": grouped[query]} for query in queries},
    }


def _search_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    root = env.workspace_root.absolute()
    queries = _parse_queries(payload.get("query"))

    if payload.get("files_only"):
        grouped = {query: _find_files(root, query) for query in queries}
        if len(queries) == 1:
            result: dict[str, Any] = {"query": queries[0], "mode": "files", "results": grouped[queries[0]]}
        else:
            result = {"queries": queries, "mode": "files", "results": grouped}
        return json_result(result, summary=f"File search for {len(queries)} query(ies)")

    target = payload.get("file")
    if isinstance(target, str) and target:
        result = _search_file(env.resolve(target), target, queries)
        return json_result(result, summary=f"Searched {target}")

    include = _normalize_include(payload.get("include"), root)
    result = _search_workspace(root, queries, include)
    return json_result(result, summary=f"Workspace search for {len(queries)} query(ies)")


# ---------------------------------------------------------------------------
# list_files
# ---------------------------------------------------------------------------


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / 1024 / 1024:.1f}MB"


def _tree_lines(directory: Path, prefix: str, depth: int, max_depth: int) -> list[str]:
    if depth >= max_depth:
        return [f"{prefix}└── ..."]
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        logger.debug("Unable to list %s: %s", directory, exc)
        return []

    visible = []
    for entry in entries:
        is_dir = entry.is_dir()
        if is_dir and entry.name in IGNORED_DIRS:
            continue
        if not is_dir and entry.name in IGNORED_FILES:
            continue
        if entry.name.startswith(".") and entry.name != ".env":
            continue
        visible.append((not is_dir, entry.name, entry))
    visible.sort(key=lambda item: (item[0], item[1]))

    lines: list[str] = []
    for position, (is_file, name, entry) in enumerate(visible):
        last = position == len(visible) - 1
        connector = "└── " if last else "├── "
        child_prefix = prefix + ("    " if last else "│   ")
        if is_file:
            try:
                size = format_size(entry.stat().st_size)
            except OSError:
                size = "?"
            lines.append(f"{prefix}{connector}{name} ({size})")
            continue
        children = _tree_lines(entry, child_prefix, depth + 1, max_depth)
        lines.append(f"{prefix}{connector}{name}/" if children else f"{prefix}{connector}{name}")
        lines.extend(children)
    return lines


def render_tree(directory: Path, max_depth: int) -> str:
    lines = _tree_lines(directory, "", 0, max_depth)
    header = f"{directory.name}/" if lines else directory.name
    return "\n".join([header, *lines])


def _list_files_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    root = env.workspace_root.absolute()
    raw = payload.get("path")
    target = env.resolve(raw) if isinstance(raw, str) and raw else Path(os.path.normpath(str(root)))
    if not env.is_inside(target):
        raise ToolInvocationError("Cannot access directories outside workspace")
    if not target.exists():
        raise ToolInvocationError(f"Directory not found: {target}")
    if not target.is_dir():
        raise ToolInvocationError("Path is not a directory")

    requested = payload.get("max_depth")
    depth = requested if isinstance(requested, int) and not isinstance(requested, bool) else DEFAULT_TREE_DEPTH
    max_depth = min(depth, MAX_TREE_DEPTH)
    return json_result(
        {"root": target.name, "tree": render_tree(target, max_depth), "max_depth": max_depth},
        summary=f"Listed {target.name}",
    )


def search_toolkit(env: ToolEnvironment) -> Toolkit:
    tools = [
        Tool(
            name="search",
            description=(
                "Search for text or files in workspace. Supports up to 15 words/phrases at once by passing an array.\n"
                "Set files_only=true to search by filename. Set file to search within a specific file."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "oneOf": [
                            {"type": "string"},
                            {"type": "array", "items": {"type": "string"}, "maxItems": MAX_QUERIES},
                        ],
                        "description": "Text/pattern(s) to search for. String or array of strings (max 15).",
                    },
                    "file": {"type": "string", "description": "Optional: search only in this file"},
                    "files_only": {"type": "boolean", "description": "Optional: search for file names only"},
                    "include": {"type": "string", "description": 'Optional: glob pattern (e.g. "**/*.py")'},
                },
                "required": ["query"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _search_handler(env, payload),
        ),
        Tool(
            name="list_files",
            description="List files in directory. Returns tree structure with file sizes.",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Directory path (default: workspace root)"},
                    "max_depth": {"type": "integer", "description": "Max depth (default: 4)"},
                },
                "required": [],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _list_files_handler(env, payload),
        ),
    ]
    return Toolkit(
        name="codeloop.search",
        version="1.0.0",
        description="Text search and directory listing across the workspace.",
        tools=tools,
    )


__all__ = [
    "IGNORED_DIRS",
    "IGNORED_FILES",
    "format_size",
    "glob_to_regex",
    "iter_workspace_files",
    "render_tree",
    "search_toolkit",
]
