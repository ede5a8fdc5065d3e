from __future__ import annotations

import io
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from codeloop.cli.branding import themed_console
from codeloop.cli.runtime import AgentRuntime, build_llm_client
from codeloop.cli.shell import InteractiveShell
from codeloop.core.config import CodeLoopConfig, ConfigContext
from codeloop.core.llm import ChatResponse, ToolCall
from codeloop.session import SessionManager


class FakeLLM:
    def __init__(self, *responses: ChatResponse) -> None:
        self.responses = list(responses)
        self.tool_names: list[list[str]] = []
        self.model = "demo-model"

    def chat(self, messages, *, tools=None, on_chunk=None, on_reasoning=None, abort=None) -> ChatResponse:
        self.tool_names.append([tool["function"]["name"] for tool in tools or []])
        response = self.responses.pop(0)
        if on_chunk is not None and response.content:
            on_chunk(response.content)
        return response

    def update_settings(self, *, model: str | None = None, base_url: str | None = None) -> None:
        if model:
            self.model = model


def _call(name: str, args: dict[str, Any]) -> ChatResponse:
    return ChatResponse(
        content="",
        tool_calls=[ToolCall(id="c1", name=name, arguments=json.dumps(args))],
        finish_reason="tool_calls",
    )


def _reply(text: str) -> ChatResponse:
    return ChatResponse(content=text, finish_reason="stop")


def _make_shell(
    tmp_path: Path,
    llm: FakeLLM,
    answers: list[str] | None = None,
) -> tuple[InteractiveShell, io.StringIO, Path]:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    manager = SessionManager(root=tmp_path / "sessions")
    session = manager.start(workspace=workspace, model="demo-model")
    output = io.StringIO()
    console = themed_console(file=output, width=200, force_terminal=False)
    config = CodeLoopConfig(llm_model="demo-model", min_api_interval_seconds=0)
    runtime = AgentRuntime.build(
        workspace,
        ConfigContext(config=config, llm_api_key="", passphrase=None),
        manager,
        session,
        llm=llm,
        console=None,
    )
    pending = list(answers or [])
    shell = InteractiveShell(runtime, console, input_fn=lambda _prompt: pending.pop(0))
    return shell, output, workspace


def test_turn_creates_file_and_undo_removes_it(tmp_path: Path) -> None:
    llm = FakeLLM(_call("create_file", {"file_path": "hello.py", "content": "print('hi')\n"}), _reply("Created it."))
    shell, output, workspace = _make_shell(tmp_path, llm)

    shell.handle_line("write a hello script")

    assert (workspace / "hello.py").exists()
    assert "1 file(s) changed" in output.getvalue()
    assert shell.runtime.snapshots.has_pending_changes()

    shell.handle_line("/undo")

    assert not (workspace / "hello.py").exists()
    assert "Rolled back 1 file(s)." in output.getvalue()
    stored = shell.runtime.session_manager.load(shell.runtime.session.session_id)
    assert [entry["role"] for entry in stored.conversation] == ["user", "assistant", "tool", "assistant"]


def test_accept_keeps_changes(tmp_path: Path) -> None:
    llm = FakeLLM(_call("create_file", {"file_path": "notes.md", "content": "# notes\n"}), _reply("Done."))
    shell, output, workspace = _make_shell(tmp_path, llm)

    shell.handle_line("take notes")
    shell.handle_line("/accept notes.md")

    assert (workspace / "notes.md").exists()
    assert not shell.runtime.snapshots.has_pending_changes()
    assert "Accepted 1 file(s)." in output.getvalue()


def test_chat_mode_hides_mutating_tools(tmp_path: Path) -> None:
    llm = FakeLLM(_reply("Just chatting."))
    shell, output, _ = _make_shell(tmp_path, llm)

    shell.handle_line("/chat")
    shell.handle_line("what does this repo do?")

    assert shell.chat_mode is True
    assert "edit_file" not in llm.tool_names[0]
    assert "read_file" in llm.tool_names[0]
    assert "Just chatting." in output.getvalue()


@pytest.mark.skipif(sys.platform.startswith("win"), reason="uses POSIX shell commands")
def test_terminal_commands_ask_before_running(tmp_path: Path) -> None:
    llm = FakeLLM(_call("terminal", {"command": "touch marker.txt"}), _reply("You said no."))
    shell, output, workspace = _make_shell(tmp_path, llm, answers=["n"])

    shell.handle_line("create a marker")

    assert not (workspace / "marker.txt").exists()
    assert "touch marker.txt" in output.getvalue()
    stored = shell.runtime.session_manager.load(shell.runtime.session.session_id)
    tool_result = json.loads(stored.conversation[2]["content"])
    assert tool_result["rejected"] is True


def test_slash_commands(tmp_path: Path) -> None:
    llm = FakeLLM()
    shell, output, _ = _make_shell(tmp_path, llm)
    first_session = shell.runtime.session.session_id

    shell.handle_line("/model bigger-model")
    shell.handle_line("/new")
    shell.handle_line("/changes")
    shell.handle_line("/bogus")
    shell.handle_line("/exit")

    text = output.getvalue()
    assert llm.model == "bigger-model"
    assert shell.runtime.config.llm_model == "bigger-model"
    assert shell.runtime.session.session_id != first_session
    assert "No pending changes." in text
    assert "Unknown command /bogus" in text
    assert shell._running is False


def test_llm_client_without_key_stays_online() -> None:
    config = CodeLoopConfig(llm_base_url="http://localhost:11434/v1")

    local = build_llm_client(config, "")
    offline = build_llm_client(config, "secret", offline_mode=True)

    assert local.settings.offline_mode is False
    assert local.settings.api_key is None
    assert offline.settings.offline_mode is True
    local.close()
    offline.close()
