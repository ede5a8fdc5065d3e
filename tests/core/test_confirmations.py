from __future__ import annotations

import threading

import pytest

from codeloop.core.confirmations import ConfirmationCancelled, ConfirmationPorts, TerminalDecision


def test_missing_prompts_fall_back_to_defaults() -> None:
    ports = ConfirmationPorts()

    assert ports.confirm_terminal("ls", "/tmp") == TerminalDecision(approved=True)
    assert ports.confirm_continue(25) is False
    assert ports.approve_tool("read_file", {"file_path": "x"}) is True
    assert not ports.handles_terminal


def test_prompts_receive_request_details() -> None:
    seen: list[tuple] = []

    def terminal(command: str, cwd: str) -> TerminalDecision:
        seen.append((command, cwd))
        return TerminalDecision(approved=True, command="ls -la")

    ports = ConfirmationPorts(
        terminal=terminal,
        continuation=lambda iterations: iterations < 30,
        tool_approval=lambda name, args: args.get("file_path") == "ok.txt",
    )

    assert ports.confirm_terminal("ls", "/work").command == "ls -la"
    assert ports.confirm_continue(25) is True
    assert ports.approve_tool("read_file", {"file_path": "ok.txt"}) is True
    assert ports.approve_tool("read_file", {"file_path": "no.txt"}) is False
    assert seen == [("ls", "/work")]


def test_only_one_request_per_kind_at_a_time() -> None:
    ports: ConfirmationPorts

    def reentrant(command: str, cwd: str) -> TerminalDecision:
        return ports.confirm_terminal("nested", cwd)

    ports = ConfirmationPorts(terminal=reentrant)

    with pytest.raises(ConfirmationCancelled, match="already pending"):
        ports.confirm_terminal("outer", "/work")
    assert ports.confirm_continue(1) is False


def test_close_cancels_requests_and_releases_detach() -> None:
    detach = threading.Event()
    ports = ConfirmationPorts(continuation=lambda _n: True, detach=detach)

    ports.close()

    assert ports.closed
    assert detach.is_set()
    with pytest.raises(ConfirmationCancelled, match="session closed"):
        ports.confirm_continue(5)


def test_close_during_a_request_cancels_its_answer() -> None:
    ports: ConfirmationPorts

    def answer_then_close(_iterations: int) -> bool:
        ports.close()
        return True

    ports = ConfirmationPorts(continuation=answer_then_close)

    with pytest.raises(ConfirmationCancelled):
        ports.confirm_continue(5)
