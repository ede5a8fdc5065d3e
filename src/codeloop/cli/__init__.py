"""CLI package for codeloop."""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from importlib import metadata
from pathlib import Path

import typer

from codeloop.core.agent_loop import AgentBusyError, AgentLoopError
from codeloop.core.config import ConfigContext, ConfigManager, ConfigurationError, project_config_path
from codeloop.core.confirmations import ConfirmationPorts, TerminalDecision
from codeloop.core.snapshots import SnapshotManager
from codeloop.session import SessionContext, SessionLoadError, SessionManager
from codeloop.session.manager import MAX_SESSIONS

from .branding import themed_console
from .runtime import AgentRuntime, open_snapshots, workspace_home
from .shell import InteractiveShell, TurnRenderer, build_ports, render_pending_changes, run_turn_interruptibly

logger = logging.getLogger(__name__)

app = typer.Typer(help="codeloop: a tool-calling coding agent with reversible edits", no_args_is_help=False)
snapshots_app = typer.Typer(help="Review, keep or undo pending agent edits")
sessions_app = typer.Typer(help="Inspect stored sessions")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(sessions_app, name="sessions")

CLI_CONSOLE = themed_console()
COMMANDS = {"run", "version", "snapshots", "sessions"}


def styled_echo(message: str = "", *, nl: bool = True) -> None:
    """Print using the codeloop themed console."""
    CLI_CONSOLE.print(message, end="" if not nl else "\n")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"", "0", "false", "no"}


def _config_home() -> Path:
    return Path(os.environ.get("CODELOOP_HOME", Path.home() / ".codeloop")).expanduser()


def _configure_logging(verbose: bool, log_dir: Path | None) -> None:
    root_logger = logging.getLogger()
    if verbose:
        if not root_logger.handlers:
            logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        root_logger.setLevel(logging.DEBUG)
    else:
        if root_logger.handlers:
            root_logger.setLevel(logging.WARNING)
        else:
            logging.basicConfig(level=logging.WARNING, format="%(message)s")
    if verbose and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "codeloop.log", encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root_logger.addHandler(handler)


def _build_config_manager(workspace: Path, config_file: Path | None) -> ConfigManager:
    override: Path | None = None
    if config_file is not None:
        override = config_file.expanduser()
        if not override.exists():
            styled_echo(f"[codeloop.error]Config file '{override}' not found.[/]")
            raise typer.Exit(code=1)
        override = override.resolve()
    project = project_config_path(workspace)
    return ConfigManager(
        config_dir=_config_home(),
        project_config_path=project if project.exists() else None,
        override_config_path=override,
    )


def _start_session(
    manager: SessionManager,
    workspace: Path,
    context: ConfigContext,
    *,
    session: str | None,
    new_session: bool,
    chat: bool,
) -> SessionContext:
    model = context.config.llm_model
    resume_id = None if new_session else session
    if resume_id:
        try:
            return manager.start(resume_id, workspace=workspace, model=model, chat_mode=chat)
        except FileNotFoundError:
            styled_echo(f"[codeloop.warning]Session '{resume_id}' not found; starting a new session.[/]")
        except SessionLoadError as exc:
            styled_echo(f"[codeloop.warning]{exc}. Starting a new session.[/]")
    return manager.start(workspace=workspace, model=model, chat_mode=chat)


def _non_interactive_ports() -> ConfirmationPorts:
    def _reject(command: str, cwd: str) -> TerminalDecision:
        logger.warning("Refusing terminal command %r without a terminal to confirm it (use --auto-run)", command)
        return TerminalDecision(approved=False)

    return ConfirmationPorts(terminal=_reject)


def _run_single_prompt(
    runtime: AgentRuntime,
    prompt: str,
    *,
    chat: bool,
    max_iterations: int | None,
    auto_run: bool | None,
    interactive: bool,
) -> None:
    renderer = TurnRenderer(CLI_CONSOLE)
    if interactive:
        ports = build_ports(CLI_CONSOLE, CLI_CONSOLE.input, detach=threading.Event())
    else:
        ports = _non_interactive_ports()
    try:
        result = run_turn_interruptibly(
            runtime,
            prompt,
            renderer,
            chat_mode=chat,
            ports=ports,
            max_iterations=max_iterations,
            auto_run_terminal=auto_run,
        )
    except AgentLoopError as exc:
        styled_echo(f"[codeloop.error]{exc.summary}[/]")
        if exc.details:
            logger.debug("Agent error details: %s", exc.details)
        raise typer.Exit(code=1) from exc
    except AgentBusyError as exc:
        styled_echo(f"[codeloop.error]{exc}[/]")
        raise typer.Exit(code=1) from exc
    finally:
        ports.close()
    renderer.finish(result)
    if runtime.snapshots.has_pending_changes():
        styled_echo("[codeloop.info]Pending changes recorded. Review with `codeloop snapshots list`.[/]")
    styled_echo(f"[codeloop.muted]Session {runtime.session.session_id}[/]")


def _launch(
    prompt: str | None,
    *,
    verbose: bool = False,
    session: str | None = None,
    new_session: bool = False,
    chat: bool = False,
    max_iterations: int | None = None,
    auto_run: bool | None = None,
    config_file: Path | None = None,
    llm_base_url: str | None = None,
    llm_model: str | None = None,
    llm_api_key: str | None = None,
    offline_mode: bool = False,
) -> None:
    workspace = Path.cwd()
    _configure_logging(verbose, log_dir=workspace_home(workspace) / "logs")
    interactive = sys.stdin.isatty()

    config_manager = _build_config_manager(workspace, config_file)
    try:
        config_context = config_manager.ensure(
            interactive=interactive,
            llm_base_url=llm_base_url,
            llm_model=llm_model,
            llm_api_key=llm_api_key,
            offline_mode=offline_mode,
        )
    except ConfigurationError as exc:
        styled_echo(f"[codeloop.error]{exc}[/]")
        raise typer.Exit(code=1) from exc

    session_manager = SessionManager(root=_config_home() / "sessions")
    session_context = _start_session(
        session_manager,
        workspace,
        config_context,
        session=session,
        new_session=new_session,
        chat=chat,
    )

    def _approve_outside(path: str) -> bool:
        return typer.confirm(f"Allow the agent to access {path} outside the workspace?", default=False)

    runtime = AgentRuntime.build(
        workspace,
        config_context,
        session_manager,
        session_context,
        console=CLI_CONSOLE,
        approve_outside_path=_approve_outside if interactive else None,
        offline_mode=offline_mode,
    )
    try:
        if prompt:
            _run_single_prompt(
                runtime,
                prompt,
                chat=chat,
                max_iterations=max_iterations,
                auto_run=auto_run,
                interactive=interactive,
            )
        else:
            InteractiveShell(
                runtime,
                CLI_CONSOLE,
                chat_mode=chat,
                history_path=_config_home() / "history",
                max_iterations=max_iterations,
                auto_run_terminal=auto_run,
            ).run()
    finally:
        runtime.close()


@app.command()
def run(
    prompt: str | None = typer.Argument(None, help="Task for the agent; omit to open the interactive shell"),  # noqa: B008
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),  # noqa: B008
    session: str | None = typer.Option(None, "--session", help="Resume the given session ID"),  # noqa: B008
    new_session: bool = typer.Option(False, "--new-session", help="Start a fresh session"),  # noqa: B008
    chat: bool = typer.Option(False, "--chat", help="Read-only chat mode"),  # noqa: B008
    max_iterations: int | None = typer.Option(None, "--max-iterations", min=1, help="Iteration limit per turn"),  # noqa: B008
    auto_run: bool | None = typer.Option(None, "--auto-run/--confirm-commands", help="Run terminal commands without confirmation"),  # noqa: B008
    config: Path | None = typer.Option(None, "--config", help="Merge this config file over the global and project config"),  # noqa: B008
    llm_base_url: str | None = typer.Option(None, "--llm-base-url", help="Override the LLM base URL"),  # noqa: B008
    llm_model: str | None = typer.Option(None, "--llm-model", help="Override the LLM model"),  # noqa: B008
    llm_api_key: str | None = typer.Option(None, "--llm-api-key", help="Use this API key for the current run without persisting it"),  # noqa: B008
    offline_mode: bool = typer.Option(False, "--offline-mode", help="Use canned offline responses instead of the LLM"),  # noqa: B008
) -> None:
    """Run one agent turn, or open the interactive shell."""
    _launch(
        prompt,
        verbose=verbose or _env_flag("CODELOOP_DEBUG"),
        session=session,
        new_session=new_session,
        chat=chat,
        max_iterations=max_iterations,
        auto_run=auto_run,
        config_file=config,
        llm_base_url=llm_base_url,
        llm_model=llm_model,
        llm_api_key=llm_api_key,
        offline_mode=offline_mode,
    )


@app.command()
def version() -> None:
    """Show CLI version."""
    try:
        pkg_version = metadata.version("codeloop")
    except metadata.PackageNotFoundError:
        pkg_version = "0.0.0"
    styled_echo(f"codeloop version {pkg_version}")


# ---------------------------------------------------------------------------
# snapshots
# ---------------------------------------------------------------------------


def _workspace_snapshots(workspace: Path | None) -> tuple[Path, SnapshotManager]:
    root = (workspace or Path.cwd()).resolve()
    return root, open_snapshots(root)


def _apply_to_snapshots(
    action: str,
    snapshot_id: str | None,
    file: Path | None,
    all_: bool,
    workspace: Path | None,
) -> None:
    root, manager = _workspace_snapshots(workspace)
    if sum(bool(choice) for choice in (snapshot_id, file, all_)) != 1:
        styled_echo("[codeloop.error]Pass exactly one of SNAPSHOT_ID, --file or --all.[/]")
        raise typer.Exit(code=2)
    if all_:
        count = manager.confirm_all() if action == "confirm" else manager.rollback_all()
    elif file is not None:
        target = file if file.is_absolute() else root / file
        count = manager.confirm_file(target) if action == "confirm" else manager.rollback_file(target)
    else:
        done = manager.confirm(snapshot_id or "") if action == "confirm" else manager.rollback_snapshot(snapshot_id or "")
        count = 1 if done else 0
    if count == 0:
        styled_echo("[codeloop.warning]No matching pending changes.[/]")
        raise typer.Exit(code=1)
    verb = "Kept" if action == "confirm" else "Rolled back"
    styled_echo(f"[codeloop.success]{verb} {count} file(s).[/]")


@snapshots_app.command("list")
def snapshots_list(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root (default: cwd)"),  # noqa: B008
) -> None:
    """List pending agent edits."""
    _, manager = _workspace_snapshots(workspace)
    render_pending_changes(CLI_CONSOLE, manager)


@snapshots_app.command("confirm")
def snapshots_confirm(
    snapshot_id: str | None = typer.Argument(None, help="Snapshot to keep"),  # noqa: B008
    file: Path | None = typer.Option(None, "--file", help="Keep the changes of one file"),  # noqa: B008
    all_: bool = typer.Option(False, "--all", help="Keep every pending change"),  # noqa: B008
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root (default: cwd)"),  # noqa: B008
) -> None:
    """Accept pending edits and forget their snapshots."""
    _apply_to_snapshots("confirm", snapshot_id, file, all_, workspace)


@snapshots_app.command("rollback")
def snapshots_rollback(
    snapshot_id: str | None = typer.Argument(None, help="Snapshot to undo"),  # noqa: B008
    file: Path | None = typer.Option(None, "--file", help="Undo the changes of one file"),  # noqa: B008
    all_: bool = typer.Option(False, "--all", help="Undo every pending change"),  # noqa: B008
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root (default: cwd)"),  # noqa: B008
) -> None:
    """Restore files to their state before the agent touched them."""
    _apply_to_snapshots("rollback", snapshot_id, file, all_, workspace)


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


def _format_session_text(export_data: dict[str, object]) -> str:
    meta = export_data.get("metadata", {})
    conversation = export_data.get("conversation", [])
    lines = ["Session Export", "=============="]
    if isinstance(meta, dict):
        for key in ("session_id", "created_at", "updated_at", "workspace", "model", "turns"):
            value = meta.get(key)
            if value is not None:
                lines.append(f"{key.replace('_', ' ').title()}: {value}")
    lines.append("")
    lines.append("Conversation:")
    if isinstance(conversation, list) and conversation:
        for entry in conversation:
            if not isinstance(entry, dict):
                continue
            role = entry.get("role", "?")
            content = entry.get("content") or ""
            calls = entry.get("tool_calls") or []
            if calls:
                names = ", ".join(str((call.get("function") or {}).get("name")) for call in calls if isinstance(call, dict))
                content = f"{content}\n  (tool calls: {names})".strip()
            lines.append(f"[{role}] {content}")
    else:
        lines.append("(no conversation available)")
    return "\n".join(lines)


@sessions_app.command("list")
def sessions_list() -> None:
    """List stored sessions, newest first."""
    manager = SessionManager(root=_config_home() / "sessions")
    sessions = manager.list_sessions()
    if not sessions:
        styled_echo("[codeloop.muted]No sessions stored.[/]")
        return
    for meta in sessions:
        styled_echo(f"{meta.session_id}  {meta.updated_at:%Y-%m-%d %H:%M}  {meta.turns} turn(s)  {meta.workspace or ''}")


@sessions_app.command("export")
def sessions_export(
    session_id: str = typer.Argument(..., help="Session to export"),  # noqa: B008
    fmt: str = typer.Option("json", "--format", help="json or text"),  # noqa: B008
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),  # noqa: B008
) -> None:
    """Export a session with API-key-like tokens redacted."""
    fmt_normalized = fmt.lower()
    if fmt_normalized not in {"json", "text"}:
        styled_echo(f"[codeloop.error]Unsupported export format '{fmt}'. Use 'json' or 'text'.[/]")
        raise typer.Exit(code=1)
    manager = SessionManager(root=_config_home() / "sessions")
    try:
        export_data = manager.export_session(session_id, redact=True)
    except FileNotFoundError as exc:
        styled_echo(
            f"[codeloop.warning]Session '{session_id}' not found. Only the most recent {MAX_SESSIONS} sessions are kept.[/]"
        )
        raise typer.Exit(code=1) from exc
    except SessionLoadError as exc:
        styled_echo(f"[codeloop.error]Failed to load session '{session_id}': {exc}[/]")
        raise typer.Exit(code=1) from exc

    payload = json.dumps(export_data, indent=2, ensure_ascii=False) if fmt_normalized == "json" else _format_session_text(export_data)
    if output is None:
        typer.echo(payload)
        return
    destination = output.expanduser()
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(payload)
    try:
        os.chmod(destination, 0o600)
    except PermissionError:
        logger.debug("Could not restrict permissions on %s", destination)
    styled_echo(f"[codeloop.success]Session {session_id} exported to {destination}[/]")


def main() -> None:
    """Console-script entrypoint: bare prompts and flags go to ``run``."""
    args = sys.argv[1:]
    if args and args[0] in {"--version", "-V"}:
        app(args=["version"])
        return
    if not args or (args[0] not in COMMANDS and args[0] not in {"--help", "-h"}):
        app(args=["run", *args])
        return
    app(args=args)


__all__ = ["app", "main"]
