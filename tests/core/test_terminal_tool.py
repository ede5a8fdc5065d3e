from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

from codeloop.core.tool_registry import ToolDispatcher, build_default_registry
from codeloop.core.tools.base import ToolEnvironment
from codeloop.core.tools.terminal import (
    OUTPUT_HARD_CAP,
    BackgroundProcessManager,
    cap_output,
    is_server_command,
    strip_ansi,
)

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="uses POSIX shell commands")


def _dispatcher(workspace: Path, processes: BackgroundProcessManager | None = None) -> ToolDispatcher:
    env = ToolEnvironment(workspace_root=workspace, processes=processes)
    return ToolDispatcher(build_default_registry(env))


def test_terminal_runs_command_in_workspace(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "echo hello"})

    assert result["success"] is True
    assert result["exit_code"] == 0
    assert result["output"] == "hello"
    assert result["cwd"] == str(tmp_path)


def test_terminal_reports_failing_exit_code(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "echo oops >&2; exit 3"})

    assert result["success"] is False
    assert result["exit_code"] == 3
    assert result["output"] == "oops"


def test_leading_cd_becomes_working_directory(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()

    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "cd sub && pwd"})

    assert result["cwd"] == str(tmp_path / "sub")
    assert result["output"].endswith("sub")
    assert result["command"] == "cd sub && pwd"


def test_cwd_outside_workspace_is_rejected(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "ls", "cwd": ".."})

    assert result["error"] == "Working directory must be within workspace"


def test_dangerous_commands_are_blocked(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "sudo rm -rf / --no-preserve-root"})

    assert result["error"].startswith("Command blocked for safety")
    assert result["success"] is False


def test_timeout_is_reported(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path).dispatch("terminal", {"command": "sleep 2", "timeout_ms": 100})

    assert result["success"] is False
    assert result["timed_out"] is True
    assert "timed out after 100ms" in result["error"]


def test_background_process_round_trip(tmp_path: Path) -> None:
    processes = BackgroundProcessManager(startup_wait=0, input_wait=0)
    dispatcher = _dispatcher(tmp_path, processes)
    try:
        started = dispatcher.dispatch("terminal", {"command": "cat", "background": True})
        sent = dispatcher.dispatch("write_to_terminal", {"input": "ping\n"})

        deadline = time.monotonic() + 5
        while not processes.has_output and time.monotonic() < deadline:
            time.sleep(0.05)
        output = dispatcher.dispatch("read_terminal_output", {})
    finally:
        processes.stop()

    assert started["background"] is True
    assert sent["input_sent"] == "ping\n"
    assert output["is_running"] is True
    assert output["output"] == "ping\n"
    assert processes.peek() == ""


def test_read_output_without_process(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path, BackgroundProcessManager()).dispatch("read_terminal_output", {})

    assert result["error"].startswith("No background process is running")


def test_write_without_process(tmp_path: Path) -> None:
    result = _dispatcher(tmp_path, BackgroundProcessManager()).dispatch("write_to_terminal", {"input": "y\n"})

    assert "No active terminal" in result["error"]


def test_strip_ansi_removes_colour_and_blank_lines() -> None:
    assert strip_ansi("\x1b[31mred\x1b[0m\n\nnext\x07") == "red\nnext"


def test_server_detection() -> None:
    assert is_server_command("npm run dev")
    assert is_server_command("uvicorn app:main --reload")
    assert not is_server_command("ls -la")


def test_cap_output_truncates_large_output() -> None:
    output, truncated = cap_output("x" * (OUTPUT_HARD_CAP + 1))

    assert truncated is True
    assert output.endswith("(output truncated)")
    assert cap_output("short") == ("short", False)
