"""Shell command execution, including one tracked background process."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from codeloop.core.tools.base import Tool, ToolEnvironment, ToolInvocationError, Toolkit, ToolResult, json_result

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 120_000
OUTPUT_HARD_CAP = 50_000
OUTPUT_KEEP = 10_000
READ_OUTPUT_LIMIT = 10_000
WRITE_ECHO_LIMIT = 5_000
TRUNCATION_MARKER = "\n... (output truncated)"

BLOCKED_COMMANDS = (
    ":(){:|:&};:",
    "rm -rf /",
    "rm -rf /*",
    "dd if=/dev/zero",
    "mkfs.ext",
    "> /dev/sda",
    "chmod -R 777 /",
)

SERVER_PATTERNS = (
    re.compile(r"\b(npm|npx|yarn|pnpm)\s+(run\s+)?(dev|start|serve|watch)\b", re.IGNORECASE),
    re.compile(r"\bnode\s+\S+\.(js|ts)\b", re.IGNORECASE),
    re.compile(r"\b(python|python3)\s+\S+\.py\b.*\b(serve|run|start)\b", re.IGNORECASE),
    re.compile(r"\b(docker|docker-compose)\s+(up|run)\b", re.IGNORECASE),
    re.compile(r"\buvicorn\b", re.IGNORECASE),
    re.compile(r"\bgunicorn\b", re.IGNORECASE),
    re.compile(r"\bflask\s+run\b", re.IGNORECASE),
    re.compile(r"\bnext\s+(dev|start)\b", re.IGNORECASE),
    re.compile(r"\bvite\b", re.IGNORECASE),
)

_CD_PREFIX = re.compile(r'^cd\s+(?:/d\s+)?"?([^"&]+?)"?\s*&&\s*', re.IGNORECASE)
_OSC = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ESC = re.compile(r"\x1b[@-Z\\-_]")
_CONTROL = re.compile(r"[\x07\x00]")
_BLANK_LINES = re.compile(r"^\s*\n", re.MULTILINE)


def strip_ansi(text: str) -> str:
    """Remove escape sequences and blank-line noise from terminal output."""

    text = _OSC.sub("", text)
    text = _CSI.sub("", text)
    text = _ESC.sub("", text)
    text = _CONTROL.sub("", text)
    return _BLANK_LINES.sub("", text)


def is_server_command(command: str) -> bool:
    return any(pattern.search(command) for pattern in SERVER_PATTERNS)


def blocked_fragment(command: str) -> str | None:
    return next((fragment for fragment in BLOCKED_COMMANDS if fragment in command), None)


def cap_output(output: str) -> tuple[str, bool]:
    if len(output) > OUTPUT_HARD_CAP:
        return output[:OUTPUT_KEEP] + TRUNCATION_MARKER, True
    return output, False


def _decode(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _combine(stdout: str, stderr: str) -> str:
    if stdout and stderr:
        return f"{stdout}\n{stderr}"
    return stdout or stderr


class BackgroundProcessManager:
    """Owns at most one long-running process and buffers its output."""

    def __init__(self, *, startup_wait: float = 3.0, input_wait: float = 1.5) -> None:
        self.startup_wait = startup_wait
        self.input_wait = input_wait
        self.command = ""
        self._process: subprocess.Popen[str] | None = None
        self._buffer = ""
        self._lock = threading.Lock()
        self._reader: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def has_output(self) -> bool:
        with self._lock:
            return bool(self._buffer)

    @property
    def has_process(self) -> bool:
        return self._process is not None

    def start(self, command: str, cwd: Path, *, display_command: str | None = None) -> str:
        """Start ``command``, replacing any previous process; return early output."""

        self.stop()
        with self._lock:
            self._buffer = ""
        self.command = display_command or command
        self._process = subprocess.Popen(  # noqa: S602
            command,
            shell=True,  # noqa: S602
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            env=os.environ.copy(),
        )
        self._reader = threading.Thread(target=self._pump, args=(self._process,), daemon=True)
        self._reader.start()
        logger.info("Started background command: %s (pid %s)", command, self._process.pid)
        if self.startup_wait > 0:
            time.sleep(self.startup_wait)
        return self.peek()

    def _pump(self, process: subprocess.Popen[str]) -> None:
        stream = process.stdout
        if stream is None:
            return
        for chunk in iter(stream.readline, ""):
            cleaned = strip_ansi(chunk)
            if not cleaned:
                continue
            with self._lock:
                self._buffer += cleaned
                if len(self._buffer) > OUTPUT_HARD_CAP:
                    self._buffer = self._buffer[-OUTPUT_HARD_CAP:]

    def peek(self, limit: int | None = None) -> str:
        with self._lock:
            return self._buffer if limit is None else self._buffer[:limit]

    def tail(self, limit: int) -> str:
        with self._lock:
            return self._buffer[-limit:] if limit else self._buffer

    def read(self, *, clear: bool = True, limit: int = READ_OUTPUT_LIMIT) -> tuple[str, bool]:
        with self._lock:
            output = self._buffer[:limit]
            truncated = len(self._buffer) > limit
            if clear:
                self._buffer = ""
        return output, truncated

    def write(self, text: str) -> bool:
        process = self._process
        if process is None or process.poll() is not None or process.stdin is None:
            return False
        try:
            process.stdin.write(text)
            process.stdin.flush()
        except OSError as exc:
            logger.warning("Failed to write to background process: %s", exc)
            return False
        return True

    def stop(self) -> None:
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            logger.info("Stopping background command: %s", self.command)
            process.kill()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Background process %s did not exit after kill", process.pid)
        self._process = None


def run_command(command: str, cwd: Path, timeout_ms: int) -> dict[str, Any]:
    """Run ``command`` to completion and return a terminal result payload."""

    try:
        completed = subprocess.run(  # noqa: S602
            command,
            shell=True,  # noqa: S602
            check=False,
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=timeout_ms / 1000,
        )
    except subprocess.TimeoutExpired as exc:
        output, truncated = cap_output(strip_ansi(_combine(_decode(exc.stdout), _decode(exc.stderr))))
        return {
            "success": False,
            "command": command,
            "cwd": str(cwd),
            "error": f"Command timed out after {timeout_ms}ms",
            "timed_out": True,
            "output": output or "(no output)",
            "truncated": truncated,
        }
    except OSError as exc:
        return {
            "success": False,
            "command": command,
            "cwd": str(cwd),
            "exit_code": 1,
            "error": str(exc) or "Command failed",
            "output": "(no output)",
            "truncated": False,
        }

    output, truncated = cap_output(strip_ansi(_combine(completed.stdout or "", completed.stderr or "")))
    return {
        "success": completed.returncode == 0,
        "command": command,
        "cwd": str(cwd),
        "exit_code": completed.returncode,
        "output": output.strip() or "(no output)",
        "truncated": truncated,
    }


def _resolve_cwd(env: ToolEnvironment, raw: Any) -> Path:
    root = Path(os.path.normpath(str(env.workspace_root.absolute())))
    if not raw:
        return root
    cwd = env.resolve(str(raw))
    if not env.is_inside(cwd):
        raise ToolInvocationError("Working directory must be within workspace")
    return cwd


def _absorb_cd(env: ToolEnvironment, command: str, cwd: Path) -> tuple[str, Path]:
    match = _CD_PREFIX.match(command)
    if not match:
        return command, cwd
    target = Path(os.path.normpath(str(cwd / match.group(1).strip())))
    if not env.is_inside(target):
        return command, cwd
    return command[match.end():].strip(), target


def _timeout_ms(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return min(int(value), MAX_TIMEOUT_MS)
    return DEFAULT_TIMEOUT_MS


def _terminal_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    raw_command = payload.get("command")
    if not isinstance(raw_command, str) or not raw_command.strip():
        raise ToolInvocationError("command is required and cannot be empty")
    command = raw_command.strip()

    fragment = blocked_fragment(command)
    if fragment:
        raise ToolInvocationError(f'Command blocked for safety: contains "{fragment}"', success=False)

    cwd = _resolve_cwd(env, payload.get("cwd"))
    final_command, cwd = _absorb_cd(env, command, cwd)
    background = payload.get("background")

    if background is True or (is_server_command(final_command) and background is not False):
        processes = env.processes
        if processes is None:
            raise ToolInvocationError("Background execution is not available in this session")
        early_output = processes.start(final_command, cwd, display_command=command)
        result = {
            "success": True,
            "command": command,
            "cwd": str(cwd),
            "background": True,
            "output": early_output or "(no output yet)",
            "message": "Command started in the background. Use read_terminal_output to check its output.",
        }
        return json_result(result, summary=f"Started {command} in background")

    result = run_command(final_command, cwd, _timeout_ms(payload.get("timeout_ms")))
    result["command"] = command
    return json_result(result, summary=f"Command exited with {result.get('exit_code', 'timeout')}")


def _read_output_handler(env: ToolEnvironment, payload: dict[str, Any]) -> ToolResult:
    processes = env.processes
    if processes is None or (not processes.has_process and not processes.has_output):
        raise ToolInvocationError(
            "No background process is running and no output is available.",
            success=False,
            hint="Start a command with background=true first.",
        )
    output, truncated = processes.read(clear=payload.get("clear_buffer") is not False)
    return json_result(
        {
            "success": True,
            "command": processes.command,
            "is_running": processes.is_running,
            "output": output or "(no new output)",
            "truncated": truncated,
        },
        summary="Read background output",
    )


def _write_input_handler(
    env: ToolEnvironment,
    payload: dict[str, Any],
    sleep: Callable[[float], None] = time.sleep,
) -> ToolResult:
    text = payload.get("input")
    if not isinstance(text, str):
        raise ToolInvocationError("input is required (string)")
    processes = env.processes
    if processes is None or not processes.write(text):
        raise ToolInvocationError(
            "No active terminal or background process to write to. Start a command first.",
            success=False,
        )
    if processes.input_wait > 0:
        sleep(processes.input_wait)
    return json_result(
        {
            "success": True,
            "input_sent": text,
            "output": processes.tail(WRITE_ECHO_LIMIT) or "(no output yet; use read_terminal_output to check later)",
        },
        summary="Sent input to background process",
    )


def terminal_toolkit(env: ToolEnvironment) -> Toolkit:
    tools = [
        Tool(
            name="terminal",
            description=(
                "Run shell command in workspace. Returns output.\n"
                'Use the cwd parameter for working directory; do NOT prepend "cd".\n'
                "Output is cleaned of ANSI codes.\n"
                "Set background=true for long-running processes (servers, watchers). "
                "Server commands (npm run dev, etc.) auto-run in background.\n"
                "Use read_terminal_output to check output of background processes."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to run"},
                    "cwd": {"type": "string", "description": "Working directory relative to workspace (optional)"},
                    "timeout_ms": {"type": "integer", "description": "Timeout in milliseconds (default: 30000, max: 120000)"},
                    "background": {"type": "boolean", "description": "Run in background (non-blocking)"},
                },
                "required": ["command"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _terminal_handler(env, payload),
        ),
        Tool(
            name="read_terminal_output",
            description=(
                "Read output from a background terminal process started with terminal(background=true).\n"
                "Returns accumulated output since last read."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "clear_buffer": {"type": "boolean", "description": "Clear the output buffer after reading (default: true)"},
                },
                "required": [],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _read_output_handler(env, payload),
        ),
        Tool(
            name="write_to_terminal",
            description=(
                "Send input text to the background process stdin, e.g. to answer prompts (\"y\\n\").\n"
                "Include \\n at the end to press Enter. Returns the latest output after sending the input."
            ),
            input_schema={
                "type": "object",
                "properties": {"input": {"type": "string", "description": "Text to send to stdin"}},
                "required": ["input"],
            },
            output_schema={"type": "object"},
            handler=lambda payload: _write_input_handler(env, payload),
        ),
    ]
    return Toolkit(
        name="codeloop.terminal",
        version="1.0.0",
        description="Shell command execution for agents.",
        tools=tools,
    )


__all__ = [
    "BLOCKED_COMMANDS",
    "BackgroundProcessManager",
    "SERVER_PATTERNS",
    "is_server_command",
    "run_command",
    "strip_ansi",
    "terminal_toolkit",
]
