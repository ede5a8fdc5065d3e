"""Interactive prompt_toolkit shell around :class:`AgentRuntime`."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory
from rich.console import Console
from rich.table import Table

from codeloop.cli.branding import message_panel, render_banner
from codeloop.cli.runtime import AgentRuntime
from codeloop.core.agent_loop import AgentBusyError, AgentLoopError, AgentLoopResult
from codeloop.core.confirmations import ConfirmationPorts, TerminalDecision
from codeloop.core.snapshots import SnapshotManager

logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]

HELP_TEXT = """\
/help            show this help
/chat, /agent    switch between read-only chat mode and agent mode
/changes         list pending file changes
/accept [FILE]   keep pending changes (all, or one file)
/undo [FILE]     roll back pending changes (all, or one file)
/model NAME      switch the LLM model for this run
/new             start a new session
/session         show the current session id
/exit            quit"""


def _key_argument(args: Any) -> str:
    if not isinstance(args, dict):
        return ""
    for name in ("file_path", "command", "query", "url", "path"):
        value = args.get(name)
        if isinstance(value, str) and value:
            return value if len(value) <= 80 else value[:77] + "..."
    return ""


class TurnRenderer:
    """Streams assistant text and tool activity to the console."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self.streamed = False
        self.terminal_running = threading.Event()

    def on_chunk(self, chunk: str) -> None:
        self.streamed = True
        self.console.print(chunk, end="", markup=False, highlight=False)

    def on_event(self, kind: str, payload: dict[str, Any]) -> None:
        if kind == "tool_call":
            if self.streamed:
                self.console.print()
                self.streamed = False
            if payload.get("name") == "terminal":
                self.terminal_running.set()
            label = _key_argument(payload.get("args"))
            self.console.print(f"[codeloop.tool]→ {payload.get('name')}[/] {label}", markup=True, highlight=False)
        elif kind == "tool_result":
            self.terminal_running.clear()
            result = payload.get("result") or {}
            if isinstance(result, dict) and result.get("error"):
                self.console.print(f"  [codeloop.tool.error]✗ {str(result['error'])[:200]}[/]")
        elif kind == "retry":
            self.console.print(
                f"[codeloop.warning]Rate limited; retrying in {payload.get('delay', 0):.0f}s "
                f"({payload.get('attempt')}/3)[/]"
            )
        elif kind == "compressed":
            self.console.print(
                f"[codeloop.muted]Context compressed: {payload.get('before')} → {payload.get('after')} tokens[/]"
            )

    def finish(self, result: AgentLoopResult) -> None:
        if self.streamed:
            self.console.print()
        elif result.content:
            self.console.print(message_panel("assistant", result.content))
        metrics = result.metrics
        self.console.print(
            f"[codeloop.muted]{result.iterations} iteration(s) · {metrics.input_tokens} in / "
            f"{metrics.output_tokens} out tokens · context {metrics.current_context_tokens}/{metrics.context_limit}[/]"
        )
        if result.stop_reason == "iteration_limit":
            self.console.print("[codeloop.warning]Stopped at the iteration limit.[/]")
        elif result.cancelled:
            self.console.print("[codeloop.warning]Cancelled.[/]")


def terminal_prompt(console: Console, input_fn: InputFn) -> Callable[[str, str], TerminalDecision]:
    def _ask(command: str, cwd: str) -> TerminalDecision:
        console.print(f"[codeloop.warning]Run command[/] in {cwd}: [bold]{command}[/]", highlight=False)
        while True:
            answer = input_fn("[y]es / [n]o / [e]dit: ").strip().lower()
            if answer in {"y", "yes"}:
                return TerminalDecision(approved=True)
            if answer in {"n", "no", ""}:
                return TerminalDecision(approved=False)
            if answer in {"e", "edit"}:
                edited = input_fn("Command: ").strip()
                return TerminalDecision(approved=bool(edited), command=edited or None)

    return _ask


def continuation_prompt(console: Console, input_fn: InputFn) -> Callable[[int], bool]:
    def _ask(iterations: int) -> bool:
        console.print(f"[codeloop.warning]The agent used {iterations} iterations.[/]")
        return input_fn("Continue for 5 more? [y/N]: ").strip().lower() in {"y", "yes"}

    return _ask


def tool_approval_prompt(console: Console, input_fn: InputFn) -> Callable[[str, dict[str, Any]], bool]:
    def _ask(tool_name: str, args: dict[str, Any]) -> bool:
        console.print(f"[codeloop.info]Allow {tool_name}[/] {_key_argument(args)}", highlight=False)
        return input_fn("[y/N]: ").strip().lower() in {"y", "yes"}

    return _ask


def build_ports(console: Console, input_fn: InputFn, *, detach: threading.Event | None = None) -> ConfirmationPorts:
    return ConfirmationPorts(
        terminal=terminal_prompt(console, input_fn),
        continuation=continuation_prompt(console, input_fn),
        tool_approval=tool_approval_prompt(console, input_fn),
        detach=detach,
    )


def run_turn_interruptibly(
    runtime: AgentRuntime,
    prompt: str,
    renderer: TurnRenderer,
    *,
    chat_mode: bool,
    ports: ConfirmationPorts | None,
    max_iterations: int | None = None,
    auto_run_terminal: bool | None = None,
) -> AgentLoopResult:
    """Run one turn on a worker thread; Ctrl-C detaches a running command or aborts the turn."""

    abort = threading.Event()
    outcome: dict[str, Any] = {}

    def _worker() -> None:
        try:
            outcome["result"] = runtime.run_turn(
                prompt,
                chat_mode=chat_mode,
                ports=ports,
                abort=abort,
                on_chunk=renderer.on_chunk,
                on_event=renderer.on_event,
                max_iterations=max_iterations,
                auto_run_terminal=auto_run_terminal,
            )
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=_worker, name="codeloop-agent", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.1)
        except KeyboardInterrupt:
            if renderer.terminal_running.is_set() and ports is not None and ports.detach is not None:
                logger.info("Detaching from running terminal command")
                ports.detach.set()
            else:
                logger.info("Aborting agent turn")
                abort.set()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


class InteractiveShell:
    """Read-eval loop: each line is a slash command or an agent turn."""

    def __init__(
        self,
        runtime: AgentRuntime,
        console: Console,
        *,
        chat_mode: bool = False,
        history_path: Path | None = None,
        input_fn: InputFn | None = None,
        max_iterations: int | None = None,
        auto_run_terminal: bool | None = None,
    ) -> None:
        self.runtime = runtime
        self.console = console
        self.chat_mode = chat_mode
        self.max_iterations = max_iterations
        self.auto_run_terminal = auto_run_terminal
        if input_fn is None:
            if history_path is not None:
                history_path.parent.mkdir(parents=True, exist_ok=True)
            session: PromptSession[str] = PromptSession(
                history=FileHistory(str(history_path)) if history_path is not None else InMemoryHistory()
            )
            self._read_line: InputFn = session.prompt
            input_fn = console.input
        else:
            self._read_line = input_fn
        self._input = input_fn
        self._running = True

    def run(self) -> None:
        render_banner(
            self.console,
            workspace=str(self.runtime.workspace),
            model=self.runtime.config.llm_model,
            chat_mode=self.chat_mode,
        )
        while self._running:
            try:
                line = self._read_line("chat> " if self.chat_mode else "codeloop> ")
            except (EOFError, KeyboardInterrupt):
                break
            self.handle_line(line)
        self._warn_pending()

    def handle_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return
        if line.startswith("/"):
            self._handle_command(line)
            return
        self._run_turn(line)

    # ------------------------------------------------------------------
    def _run_turn(self, prompt: str) -> None:
        renderer = TurnRenderer(self.console)
        ports = build_ports(self.console, self._input, detach=threading.Event())
        try:
            result = run_turn_interruptibly(
                self.runtime,
                prompt,
                renderer,
                chat_mode=self.chat_mode,
                ports=ports,
                max_iterations=self.max_iterations,
                auto_run_terminal=self.auto_run_terminal,
            )
        except AgentLoopError as exc:
            self.console.print(f"[codeloop.error]{exc.summary}[/]")
            if exc.details:
                logger.debug("Agent error details: %s", exc.details)
            return
        except AgentBusyError as exc:
            self.console.print(f"[codeloop.error]{exc}[/]")
            return
        finally:
            ports.close()
        renderer.finish(result)
        summary = self.runtime.snapshots.get_summary()
        if summary.total_files:
            self.console.print(
                f"[codeloop.info]{summary.total_files} file(s) changed "
                f"([codeloop.added]+{summary.total_added}[/] [codeloop.removed]-{summary.total_removed}[/]). "
                "Use /accept or /undo.[/]"
            )

    def _handle_command(self, line: str) -> None:
        command, _, argument = line.partition(" ")
        argument = argument.strip()
        if command in {"/exit", "/quit"}:
            self._running = False
        elif command == "/help":
            self.console.print(HELP_TEXT, markup=False)
        elif command == "/chat":
            self.chat_mode = True
            self.console.print("[codeloop.info]Chat mode: read-only tools.[/]")
        elif command == "/agent":
            self.chat_mode = False
            self.console.print("[codeloop.info]Agent mode.[/]")
        elif command == "/changes":
            render_pending_changes(self.console, self.runtime.snapshots)
        elif command == "/accept":
            count = (
                self.runtime.snapshots.confirm_file(self.runtime.workspace / argument)
                if argument
                else self.runtime.snapshots.confirm_all()
            )
            self.console.print(f"[codeloop.success]Accepted {count} file(s).[/]")
        elif command == "/undo":
            count = (
                self.runtime.snapshots.rollback_file(self.runtime.workspace / argument)
                if argument
                else self.runtime.snapshots.rollback_all()
            )
            self.console.print(f"[codeloop.success]Rolled back {count} file(s).[/]")
        elif command == "/model":
            self._switch_model(argument)
        elif command == "/new":
            session = self.runtime.new_session()
            self.console.print(f"[codeloop.info]New session {session.session_id}[/]")
        elif command == "/session":
            self.console.print(f"Session: {self.runtime.session.session_id}")
        else:
            self.console.print(f"[codeloop.warning]Unknown command {command}. Type /help.[/]")

    def _switch_model(self, model: str) -> None:
        if not model:
            self.console.print(f"Model: {self.runtime.config.llm_model}")
            return
        update = getattr(self.runtime.llm, "update_settings", None)
        if update is not None:
            update(model=model)
        self.runtime.config.llm_model = model
        self.runtime.session.metadata.model = model
        self.console.print(f"[codeloop.info]Model set to {model}[/]")

    def _warn_pending(self) -> None:
        if self.runtime.snapshots.has_pending_changes():
            self.console.print(
                "[codeloop.warning]Pending changes remain; review them with `codeloop snapshots list`.[/]"
            )


def render_pending_changes(console: Console, manager: SnapshotManager) -> None:
    snapshots = manager.get_pending_snapshots()
    if not snapshots:
        console.print("[codeloop.muted]No pending changes.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Snapshot")
    table.add_column("File")
    table.add_column("Tool")
    table.add_column("+", justify="right", style="codeloop.added")
    table.add_column("-", justify="right", style="codeloop.removed")
    for snapshot in snapshots:
        table.add_row(
            snapshot.id,
            snapshot.file_path,
            snapshot.tool,
            str(snapshot.total_lines_added),
            str(snapshot.total_lines_removed),
        )
    console.print(table)


__all__ = [
    "InteractiveShell",
    "TurnRenderer",
    "build_ports",
    "render_pending_changes",
    "run_turn_interruptibly",
]
