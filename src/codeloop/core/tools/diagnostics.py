"""Syntax diagnostics for files the agent touches."""

from __future__ import annotations

import json
import logging
import re
import time
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from codeloop.core.tools.base import Tool, ToolEnvironment, ToolInvocationError, Toolkit, ToolResult, json_result

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20
CONTEXT_RADIUS = 5
SMALL_FILE_LINES = 50
_TOML_POSITION = re.compile(r"at line (\d+), column (\d+)")


@dataclass(slots=True)
class DiagnosticError:
    line: int
    message: str
    column: int | None = None
    severity: str = "error"
    source: str = "syntax"


@dataclass(slots=True)
class DiagnosticReport:
    checker: str
    total_lines: int
    duration_ms: int = 0
    errors: list[DiagnosticError] = field(default_factory=list)
    total_errors: int = 0
    full_file: str | None = None
    context: str | None = None

    @property
    def is_syntax_checker(self) -> bool:
        return self.checker in {"py_compile", "json", "toml"}


def _check_python(source: str, path: Path) -> list[DiagnosticError]:
    try:
        compile(source, str(path), "exec", dont_inherit=True)
    except SyntaxError as exc:
        return [DiagnosticError(line=exc.lineno or 1, column=exc.offset, message=exc.msg or str(exc))]
    except ValueError as exc:
        return [DiagnosticError(line=1, message=str(exc))]
    return []


def _check_json(source: str, path: Path) -> list[DiagnosticError]:
    if not source.strip():
        return []
    try:
        json.loads(source)
    except json.JSONDecodeError as exc:
        return [DiagnosticError(line=exc.lineno, column=exc.colno, message=exc.msg)]
    return []


def _check_toml(source: str, path: Path) -> list[DiagnosticError]:
    try:
        tomllib.loads(source)
    except tomllib.TOMLDecodeError as exc:
        message = str(exc)
        match = _TOML_POSITION.search(message)
        line = int(match.group(1)) if match else 1
        column = int(match.group(2)) if match else None
        return [DiagnosticError(line=line, column=column, message=message)]
    return []


CHECKERS: dict[str, tuple[str, Any]] = {
    ".py": ("py_compile", _check_python),
    ".pyw": ("py_compile", _check_python),
    ".json": ("json", _check_json),
    ".toml": ("toml", _check_toml),
}


def _error_context(lines: list[str], errors: list[DiagnosticError]) -> str:
    blocks: list[str] = []
    for error in errors[:3]:
        start = max(0, error.line - 1 - CONTEXT_RADIUS)
        end = min(len(lines), error.line + CONTEXT_RADIUS)
        block = []
        for index in range(start, end):
            marker = ">>>" if index + 1 == error.line else "   "
            block.append(f"{marker} {index + 1}: {lines[index]}")
        blocks.append("\n".join(block))
    return "\n...\n".join(blocks)


def run_diagnostics(path: Path) -> DiagnosticReport:
    """Check ``path`` with the checker registered for its suffix."""

    started = time.perf_counter()
    source = path.read_text(encoding="utf-8", errors="replace")
    lines = source.split("\n")
    checker_name, checker = CHECKERS.get(path.suffix.lower(), ("none", None))
    errors: list[DiagnosticError] = checker(source, path) if checker else []
    report = DiagnosticReport(
        checker=checker_name,
        total_lines=len(lines),
        errors=errors[:MAX_REPORTED_ERRORS],
        total_errors=len(errors),
    )
    if errors:
        report.context = _error_context(lines, report.errors)
    else:
        report.full_file = source
    report.duration_ms = int((time.perf_counter() - started) * 1000)
    return report


def format_report(report: DiagnosticReport) -> str:
    if not report.errors:
        parts = [f"No errors found ({report.duration_ms}ms)"]
        if report.full_file is not None and report.total_lines <= SMALL_FILE_LINES:
            parts.append("\nFile content:")
            parts.append("```")
            parts.extend(f"{index + 1}: {line}" for index, line in enumerate(report.full_file.split("\n")))
            parts.append("```")
        return "\n".join(parts)

    total = report.total_errors or len(report.errors)
    if report.is_syntax_checker:
        parts = [
            "SYNTAX ERROR (must fix first):",
            f"Found {total} syntax error(s). Fix syntax before checking types.\n",
        ]
    else:
        parts = [f"Found {total} error(s):\n"]
    for error in report.errors:
        column = f":{error.column}" if error.column else ""
        tag = "[syntax]" if error.source == "syntax" else ""
        parts.append(f"• Line {error.line}{column}: {tag} {error.message}")
    if report.context:
        parts.append("\n--- Code context ---")
        parts.append(report.context)
    return "\n".join(parts)


def auto_diagnose(path: Path) -> dict[str, Any] | None:
    """Syntax check run after a write; ``None`` when the check itself fails."""

    try:
        report = run_diagnostics(path)
    except OSError as exc:
        logger.warning("Auto-diagnostics failed for %s: %s", path, exc)
        return None
    if not report.errors:
        return {"has_errors": False, "message": "No errors found after edit"}
    logger.debug("Auto-diagnostics found %s error(s) in %s", len(report.errors), path)
    return {
        "has_errors": True,
        "error_count": len(report.errors),
        "checker": report.checker,
        "errors": [{"line": e.line, "message": e.message, "severity": e.severity} for e in report.errors],
        "formatted": format_report(report),
    }


def _diagnose_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw = payload.get("file")
    if not isinstance(raw, str) or not raw:
        raise ToolInvocationError('diagnose requires "file" parameter')
    path = env.resolve(raw)
    if not path.is_file():
        raise ToolInvocationError(f"File not found: {path}")

    report = run_diagnostics(path)
    logger.debug(
        "Diagnostics for %s: %s error(s), checker=%s, %sms",
        path,
        len(report.errors),
        report.checker,
        report.duration_ms,
    )
    return json_result(
        {
            "success": True,
            "formatted": format_report(report),
            "errors_count": len(report.errors),
            "total_errors": report.total_errors,
            "total_lines": report.total_lines,
            "checker": report.checker,
            "duration_ms": report.duration_ms,
            "errors": [asdict(error) for error in report.errors],
        },
        summary=f"{len(report.errors)} error(s) in {path.name}",
    )


def diagnostics_toolkit(env: ToolEnvironment) -> Toolkit:
    tool = Tool(
        name="diagnose",
        description=(
            "Check file for errors. Returns errors with ±5 lines of code context. "
            "Use after editing to verify changes."
        ),
        input_schema={
            "type": "object",
            "properties": {"file": {"type": "string", "description": "Path to file to check"}},
            "required": ["file"],
        },
        output_schema={"type": "object"},
        handler=lambda payload: _diagnose_handler(env, payload),
    )
    return Toolkit(
        name="codeloop.diagnostics",
        version="1.0.0",
        description="Syntax checks for workspace files.",
        tools=[tool],
    )


__all__ = [
    "DiagnosticError",
    "DiagnosticReport",
    "auto_diagnose",
    "diagnostics_toolkit",
    "format_report",
    "run_diagnostics",
]
