"""File tools: read, edit, create and delete workspace files.

Every mutation writes the file first and then records a snapshot, so the
snapshot engine always sees the post-edit content on disk.
"""

from __future__ import annotations

import ast
import logging
import re
from pathlib import Path
from typing import Any

from codeloop.core.tools.base import (
    Tool,
    ToolEnvironment,
    ToolInvocationError,
    Toolkit,
    ToolResult,
    json_result,
    split_lines,
)
from codeloop.core.tools.diagnostics import auto_diagnose
from codeloop.core.tools.matching import MatchNotFoundError, find_match, fix_escape_sequences

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 2 * 1024 * 1024
MAX_READ_LINES = 800
SEARCH_CONTEXT = 3
MAX_SEARCH_MATCHES = 20
VERIFY_CONTEXT = 3
REWRITE_GUARD_MIN_LINES = 100
REWRITE_GUARD_RATIO = 0.9
IMPORT_SCAN_LINES = 100

TEXT_EXTENSIONS = {
    ".html", ".htm", ".css", ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".c", ".cpp", ".h",
    ".rb", ".go", ".rs", ".php", ".vue", ".svelte", ".xml", ".svg", ".md", ".txt", ".sh",
    ".bat", ".yaml", ".yml",
}

_IMPORT_PATTERNS: dict[tuple[str, ...], list[re.Pattern[str]]] = {
    (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"): [
        re.compile(r"^import\s+"),
        re.compile(r"^const\s+.*=\s*require\("),
        re.compile(r"^export\s+.*from\s+"),
    ],
    (".py", ".pyw"): [re.compile(r"^import\s+"), re.compile(r"^from\s+.*import\s+")],
    (".go", ".java"): [re.compile(r"^import\s+")],
    (".rs",): [re.compile(r"^use\s+")],
}
_CLASS_PATTERN = re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?(?:class|interface|struct)\s+(\w+)")
_FUNCTION_PATTERN = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?|def|fn|func|pub\s+fn)\s+(\w+)"
)


def _parse_line_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    if isinstance(value, str):
        match = re.match(r"\s*(\d+)", value)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return None


def _require_path(payload: dict[str, Any], tool: str, key: str = "file_path") -> str:
    raw = payload.get(key)
    if not isinstance(raw, str) or not raw:
        raise ToolInvocationError(f"{tool} requires {key} string argument")
    return raw


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


def _python_symbols(source: str) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    tree = ast.parse(source)
    classes: list[dict[str, Any]] = []
    functions: list[dict[str, Any]] = []
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            methods = [
                {"name": child.name, "kind": "Method", "line": child.lineno, "end_line": child.end_lineno}
                for child in node.body
                if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef))
            ]
            entry: dict[str, Any] = {"name": node.name, "kind": "Class", "line": node.lineno, "end_line": node.end_lineno}
            if methods:
                entry["children"] = methods
            classes.append(entry)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions.append({"name": node.name, "kind": "Function", "line": node.lineno, "end_line": node.end_lineno})
    return classes, functions


def _regex_symbols(lines: list[str]) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    classes: list[dict[str, Any]] = []
    functions: list[dict[str, Any]] = []
    for index, line in enumerate(lines):
        match = _CLASS_PATTERN.match(line)
        if match:
            classes.append({"name": match.group(1), "kind": "Class", "line": index + 1})
            continue
        match = _FUNCTION_PATTERN.match(line)
        if match:
            functions.append({"name": match.group(1), "kind": "Function", "line": index + 1})
    return classes, functions


def _file_symbols(path: Path, raw_path: str) -> dict[str, Any]:
    if not path.is_file():
        raise ToolInvocationError(f"File not found: {path}")
    source = path.read_text(encoding="utf-8", errors="replace")
    lines = split_lines(source)
    suffix = path.suffix.lower()

    patterns = next((items for suffixes, items in _IMPORT_PATTERNS.items() if suffix in suffixes), [])
    imports = [
        {"line": index + 1, "text": line.strip()[:100]}
        for index, line in enumerate(lines[:IMPORT_SCAN_LINES])
        if any(pattern.match(line.strip()) for pattern in patterns)
    ]

    classes: list[dict[str, Any]]
    functions: list[dict[str, Any]]
    if suffix in {".py", ".pyw"}:
        try:
            classes, functions = _python_symbols(source)
        except SyntaxError:
            classes, functions = _regex_symbols(lines)
    else:
        classes, functions = _regex_symbols(lines)

    summary = []
    if imports:
        summary.append(f"{len(imports)} imports")
    if classes:
        summary.append(f"{len(classes)} classes")
    if functions:
        summary.append(f"{len(functions)} functions")

    result: dict[str, Any] = {"file": path.name, "path": raw_path, "summary": ", ".join(summary) or "No symbols found"}
    if imports:
        result["imports"] = imports
    if classes:
        result["classes"] = classes
    if functions:
        result["functions"] = functions
    result["hint"] = (
        "Use read_file to read the file content. You can read up to 800 lines at once; "
        "prefer reading large ranges instead of many small chunks."
    )
    return result


def _search_in_lines(path: Path, lines: list[str], term: str) -> dict[str, Any]:
    needle = term.lower()
    matches: list[dict[str, Any]] = []
    covered: set[int] = set()
    for index, line in enumerate(lines):
        if index in covered or needle not in line.lower():
            continue
        block = []
        for position in range(max(0, index - SEARCH_CONTEXT), min(len(lines), index + SEARCH_CONTEXT + 1)):
            covered.add(position)
            marker = ">>>" if position == index else "   "
            block.append(f"{marker} L{position + 1} | {lines[position]}")
        matches.append({"line": index + 1, "context": "\n".join(block)})
        if len(matches) >= MAX_SEARCH_MATCHES:
            break
    return {
        "file": str(path),
        "search": term,
        "total_lines": len(lines),
        "matches_found": len(matches),
        "matches": matches,
    }


def _read_range(path: Path, lines: list[str], payload: dict[str, Any]) -> dict[str, Any]:
    total = len(lines)
    start = _parse_line_number(payload.get("start_line")) or 1
    end = _parse_line_number(payload.get("end_line"))
    clamped = False

    if end is not None:
        if end > total:
            clamped = True
            end = total
        if end < start:
            if start > total:
                raise ToolInvocationError(
                    f"start_line ({start}) is beyond end of file. File only has {total} lines. "
                    f"Use start_line=1 and end_line={total} to read the full file.",
                    total_lines=total,
                    returned_lines=0,
                )
            return {"content": "", "total_lines": total, "returned_lines": 0, "truncated": False}
        if end - start + 1 > MAX_READ_LINES:
            logger.debug("Read range for %s capped at %s lines", path, MAX_READ_LINES)
            end = start + MAX_READ_LINES - 1
    else:
        end = min(total, start + MAX_READ_LINES - 1)

    window = lines[start - 1:end]
    returned = len(window)
    result: dict[str, Any] = {
        "file": str(path),
        "content": "\n".join(f"{start + offset}: {line}" for offset, line in enumerate(window)),
        "total_lines": total,
        "returned_lines": returned,
        "start_line": start,
        "end_line": end,
        "truncated": returned < total and (end < total or returned >= MAX_READ_LINES or start > 1),
    }
    if clamped:
        result["note"] = f"end_line was adjusted to {total} (file has {total} lines)"
    return result


def _read_file_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw_path = _require_path(payload, "read_file")
    path = env.resolve(raw_path)
    env.check_access(path)

    if payload.get("symbols") is True:
        return json_result(_file_symbols(path, raw_path), summary=f"Symbols for {path.name}")

    if not path.exists():
        raise ToolInvocationError(f"File not found: {path}")
    if not path.is_file():
        raise ToolInvocationError("Path is not a file")
    if path.stat().st_size > MAX_READ_BYTES:
        raise ToolInvocationError(f"File too large to read (>{MAX_READ_BYTES} bytes)")

    lines = split_lines(path.read_text(encoding="utf-8", errors="replace"))
    if env.read_tracker is not None:
        env.read_tracker.record_read(path)

    search = payload.get("search")
    if isinstance(search, str) and search:
        result = _search_in_lines(path, lines, search)
        return json_result(result, summary=f"{result['matches_found']} match(es) in {path.name}")

    result = _read_range(path, lines, payload)
    return json_result(result, summary=f"Read {result['returned_lines']} line(s) from {path.name}")


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def changed_region(original: str, updated: str) -> tuple[int, list[str], list[str]]:
    """Return ``(start_line, old_lines, new_lines)`` for the lines that differ."""

    old_lines = split_lines(original)
    new_lines = split_lines(updated)
    shortest = min(len(old_lines), len(new_lines))
    start = next((index for index in range(shortest) if old_lines[index] != new_lines[index]), shortest)

    suffix = 0
    for offset in range(shortest):
        old_index = len(old_lines) - 1 - offset
        new_index = len(new_lines) - 1 - offset
        if old_index < start or new_index < start or old_lines[old_index] != new_lines[new_index]:
            break
        suffix = offset + 1

    return start + 1, old_lines[start:len(old_lines) - suffix], new_lines[start:len(new_lines) - suffix]


def _positional_changes(old_lines: list[str], new_lines: list[str]) -> tuple[int, int]:
    added = sum(1 for index, line in enumerate(new_lines) if index >= len(old_lines) or line != old_lines[index])
    removed = sum(1 for index, line in enumerate(old_lines) if index >= len(new_lines) or line != new_lines[index])
    return added, removed


def _write_and_snapshot(env: ToolEnvironment, path: Path, original: str, updated: str) -> dict[str, Any]:
    path.write_text(updated, encoding="utf-8")
    start, old_lines, new_lines = changed_region(original, updated)
    if env.snapshots is not None:
        env.snapshots.create_snapshot(path, "edit", old_lines, new_lines, start)
    added, removed = _positional_changes(old_lines, new_lines)
    stats: dict[str, Any] = {"lines_added": added, "lines_removed": removed}
    diagnostics = auto_diagnose(path)
    if diagnostics is not None:
        stats["diagnostics"] = diagnostics
    logger.info("Applied edit to %s (+%s/-%s)", path, added, removed)
    return stats


def _attach_diagnostics(result: dict[str, Any], stats: dict[str, Any]) -> dict[str, Any]:
    diagnostics = stats.get("diagnostics")
    if diagnostics and diagnostics.get("has_errors"):
        result["diagnostics"] = diagnostics
        result["warning"] = (
            f"Edit applied but {diagnostics['error_count']} error(s) detected! Fix them before continuing."
        )
    return result


def _verification_context(content: str, start_line: int, line_count: int) -> str:
    lines = content.split("\n")
    begin = max(0, start_line - 1 - VERIFY_CONTEXT)
    end = min(len(lines), start_line - 1 + line_count + VERIFY_CONTEXT)
    return "\n".join(f"L{index + 1}: {lines[index]}" for index in range(begin, end))


def _guard_rewrite(total: int, old_count: int, new_count: int, message: str, hint: str) -> None:
    if total <= REWRITE_GUARD_MIN_LINES:
        return
    if old_count / total >= REWRITE_GUARD_RATIO or new_count / total >= REWRITE_GUARD_RATIO:
        raise ToolInvocationError(message, hint=hint)


def _apply_line_range(
    env: ToolEnvironment,
    path: Path,
    raw_path: str,
    original: str,
    start_line: int,
    end_line: int,
    content: str,
) -> dict[str, Any]:
    lines = split_lines(original)
    total = len(lines)
    if start_line < 1:
        raise ToolInvocationError(f"start_line must be >= 1, got {start_line}")

    insertion = end_line < start_line
    actual_end = end_line
    if not insertion:
        if start_line > total:
            raise ToolInvocationError(
                f"start_line {start_line} exceeds file length ({total} lines)",
                hint=f"File has {total} lines. Use start_line <= {total}",
            )
        actual_end = min(end_line, total)

    start_index = start_line - 1
    end_index = start_index if insertion else actual_end
    removed_lines = [] if insertion else lines[start_index:end_index]
    fixed = fix_escape_sequences(content)
    new_lines = fixed.split("\n") if fixed else []

    if not insertion:
        _guard_rewrite(
            total,
            len(removed_lines),
            len(new_lines),
            f"Line-range edit replaces {len(removed_lines)}/{total} lines, nearly the entire file. "
            "Split into smaller edit_file calls (20-80 lines each).",
            "Read the file and apply targeted edit_file calls with old_string/new_string for specific regions.",
        )

    updated = "\n".join(lines[:start_index] + new_lines + lines[end_index:])
    stats = _write_and_snapshot(env, path, original, updated)
    if insertion:
        message = f"Inserted {len(new_lines)} line(s) at line {start_line}"
    else:
        message = f"Replaced lines {start_line}-{end_line} ({len(removed_lines)} lines) with {len(new_lines)} line(s)"
    result = {
        "success": True,
        "message": message,
        "file": raw_path,
        "start_line": start_line,
        "end_line": end_line,
        "linesAdded": len(new_lines),
        "linesRemoved": len(removed_lines),
    }
    return _attach_diagnostics(result, stats)


def _apply_replacement(
    env: ToolEnvironment,
    path: Path,
    raw_path: str,
    original: str,
    old_string: str,
    new_string: str,
    hint: int | None,
) -> dict[str, Any]:
    total = len(original.split("\n"))
    old_count = len(old_string.split("\n"))
    new_count = len(new_string.split("\n"))
    _guard_rewrite(
        total,
        old_count,
        new_count,
        f"Edit replaces {old_count}/{total} lines, which is nearly the entire file. "
        "Split into 2-4 smaller edit_file calls instead.",
        "Read the file and make targeted edits of 20-80 lines each.",
    )

    if old_string == "" and original.strip() == "":
        stats = _write_and_snapshot(env, path, original, new_string)
        written = new_string.split("\n")
        result = {
            "success": True,
            "message": f"File was empty, wrote {len(written)} lines",
            "file": raw_path,
            "line": 1,
            "strategy": "empty_file",
            "linesAdded": len(written),
            "linesRemoved": 0,
            "verification_context": "\n".join(f"L{index + 1}: {line}" for index, line in enumerate(written[:6])),
        }
        return _attach_diagnostics(result, stats)

    try:
        match = find_match(original, old_string, new_string, hint)
    except MatchNotFoundError as exc:
        raise ToolInvocationError(str(exc), **exc.details) from exc

    if match.match_count > 1 and not hint:
        raise ToolInvocationError(
            f"old_string matches {match.match_count} locations. "
            "Add start_line hint or include more context to make it unique.",
            hint="Either add more surrounding lines to old_string, or provide start_line to specify which occurrence.",
        )

    base = match.normalized_content
    updated = base[:match.position] + match.matched_new + base[match.position + len(match.matched_old):]
    stats = _write_and_snapshot(env, path, original, updated)
    result: dict[str, Any] = {
        "success": True,
        "message": f"Edit applied at line {match.match_line} (strategy: {match.strategy})",
        "file": raw_path,
        "line": match.match_line,
        "strategy": match.strategy,
        "linesAdded": stats["lines_added"],
        "linesRemoved": stats["lines_removed"],
        "verification_context": _verification_context(
            updated, match.match_line, len(match.matched_new.split("\n"))
        ),
    }
    if match.match_count > 1:
        result["note"] = f"{match.match_count} matches found, picked closest to hint line {hint}"
    return _attach_diagnostics(result, stats)


def _edit_file_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw_path = _require_path(payload, "edit_file")
    path = env.resolve(raw_path)
    env.check_access(path)
    if not path.is_file():
        raise ToolInvocationError(
            f"File not found: {raw_path}. Use create_file to create new files.",
            hint=f'create_file({{ "file_path": "{raw_path}", "content": "..." }})',
        )
    if env.read_tracker is not None:
        problem = env.read_tracker.check(path)
        if problem:
            raise ToolInvocationError(
                problem,
                hint=f'Call read_file({{ "file_path": "{raw_path}" }}) first, then retry your edit.',
            )

    original = path.read_text(encoding="utf-8")
    old_string = payload.get("old_string", payload.get("oldString"))
    new_string = payload.get("new_string", payload.get("newString"))
    start_line = payload.get("start_line")
    hint = start_line if isinstance(start_line, int) and not isinstance(start_line, bool) else None

    if isinstance(old_string, str) and isinstance(new_string, str):
        result = _apply_replacement(env, path, raw_path, original, old_string, new_string, hint)
    elif hint is not None and isinstance(payload.get("end_line"), int) and isinstance(payload.get("content"), str):
        result = _apply_line_range(env, path, raw_path, original, hint, payload["end_line"], payload["content"])
    else:
        raise ToolInvocationError(
            "edit_file requires: file_path, old_string, new_string",
            hint='Use: edit_file({ file_path: "...", old_string: "text to find", new_string: "replacement text" })',
        )
    return json_result(result, summary=result["message"])


def _create_file_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw_path = _require_path(payload, "create_file")
    content = payload.get("content")
    if not isinstance(content, str):
        raise ToolInvocationError("create_file requires content string argument")

    suffix = Path(raw_path).suffix.lower()
    if suffix in TEXT_EXTENSIONS:
        stripped = content.lstrip()
        if stripped.startswith("[{") or stripped.startswith("[\n{"):
            raise ToolInvocationError(
                f"Content looks like a JSON array, not valid {suffix} file content. "
                f"You must write actual {suffix} code/markup as plain text, NOT convert it to JSON objects.",
                hint=f"Please retry create_file with actual {suffix} file content as a plain text string.",
            )

    path = env.resolve(raw_path)
    env.check_access(path)
    if path.exists():
        raise ToolInvocationError(f"File already exists: {path}. Use edit_file to modify existing files.")

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if env.snapshots is not None:
        env.snapshots.create_snapshot(path, "create", None, content, 1)
    if env.read_tracker is not None:
        env.read_tracker.record_read(path)

    total = len(content.split("\n"))
    logger.info("Created %s (%s lines)", path, total)
    return json_result(
        {
            "success": True,
            "file_path": str(path),
            "file_name": path.name,
            "message": (
                f"FILE CREATED: {path} ({total} lines). Use edit_file to modify this file from now on; "
                "do NOT create_file again."
            ),
            "total_lines": total,
        },
        summary=f"Created {path.name}",
    )


def _delete_file_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw_path = _require_path(payload, "delete_file")
    path = env.resolve(raw_path)
    if not path.exists():
        raise ToolInvocationError(f"File not found: {path}")
    if path.is_dir():
        raise ToolInvocationError("Cannot delete directories. Use terminal command for that.")
    env.check_access(path)

    if env.confirm_delete is not None and not env.confirm_delete(str(path)):
        return json_result(
            {"success": False, "error": "Deletion cancelled by user", "file_path": str(path)},
            summary="Deletion cancelled",
        )

    old_content = path.read_text(encoding="utf-8", errors="replace")
    path.unlink()
    if env.snapshots is not None:
        env.snapshots.create_snapshot(path, "delete", old_content, "", 1)
    logger.info("Deleted %s", path)
    return json_result(
        {
            "success": True,
            "file_path": str(path),
            "file_name": path.name,
            "message": f"Successfully deleted {path.name}",
        },
        summary=f"Deleted {path.name}",
    )


# ---------------------------------------------------------------------------
# Toolkit
# ---------------------------------------------------------------------------


def files_toolkit(env: ToolEnvironment) -> Toolkit:
    tools = [
        Tool(
            name="read_file",
            description=(
                'Read a file from the workspace. Returns content with each line prefixed by its line number as "N: content".\n'
                "- By default returns up to 800 lines from start of file.\n"
                "- Use start_line/end_line to read a specific range.\n"
                "- Use search to find specific text (matching lines with ±3 lines context).\n"
                "- Use symbols=true to get file structure (functions, classes, imports) without content.\n"
                "- Call this tool BEFORE using edit_file. The edit will FAIL if you haven't read the file first."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Absolute or workspace-relative path to the file"},
                    "symbols": {"type": "boolean", "description": "Return only the file structure"},
                    "search": {"type": "string", "description": "Return only lines matching this text, with context"},
                    "start_line": {"type": "integer", "description": "Optional: 1-based start line"},
                    "end_line": {"type": "integer", "description": "Optional: 1-based end line"},
                },
                "required": ["file_path"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _read_file_handler(env, payload),
        ),
        Tool(
            name="edit_file",
            description=(
                "Performs exact string replacement in an existing file.\n"
                "- You MUST use read_file at least once before editing.\n"
                '- Preserve exact indentation; never include the "N: " line prefix in old_string or new_string.\n'
                "- old_string must match the file. Include 2-3 surrounding lines for unique matching.\n"
                "- The edit will FAIL if old_string matches multiple locations; add context or a start_line hint.\n"
                "- Keep each edit focused: change only the specific lines that need changing."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to existing file"},
                    "old_string": {"type": "string", "description": "Exact text to find and replace"},
                    "new_string": {"type": "string", "description": "Replacement text. Use empty string to delete."},
                    "start_line": {"type": "integer", "description": "Optional hint: approximate line of old_string"},
                },
                "required": ["file_path", "old_string", "new_string"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _edit_file_handler(env, payload),
        ),
        Tool(
            name="create_file",
            description=(
                "Create a new file. Fails if file already exists; use edit_file instead.\n"
                '- "content" must be actual file text, NOT a JSON representation.\n'
                "- Before creating, verify the target directory fits the existing project structure."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "Path to new file"},
                    "content": {"type": "string", "description": "Raw file text"},
                },
                "required": ["file_path", "content"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _create_file_handler(env, payload),
        ),
        Tool(
            name="delete_file",
            description=(
                "Delete a file. Requires user confirmation. Avoid deleting and recreating files; use edit_file instead."
            ),
            input_schema={
                "type": "object",
                "properties": {"file_path": {"type": "string", "description": "Path to file to delete"}},
                "required": ["file_path"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _delete_file_handler(env, payload),
        ),
    ]
    return Toolkit(
        name="codeloop.files",
        version="1.0.0",
        description="Read and modify workspace files with undo snapshots.",
        tools=tools,
    )


__all__ = ["MAX_READ_LINES", "changed_region", "files_toolkit"]
