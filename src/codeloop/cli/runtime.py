"""Wires configuration, session storage, tools and the LLM into one runtime."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rich.console import Console

from codeloop.core.agent_loop import (
    AgentLoopContext,
    AgentLoopResult,
    ChatBackend,
    EventCallback,
    run_agent_loop,
)
from codeloop.core.config import CodeLoopConfig, ConfigContext
from codeloop.core.confirmations import ConfirmationPorts
from codeloop.core.file_tracker import ReadTracker
from codeloop.core.llm import LLMClient, LLMSettings
from codeloop.core.llm.types import ChunkCallback
from codeloop.core.prompts import build_system_prompt
from codeloop.core.scheduler import Scheduler, default_scheduler
from codeloop.core.snapshots import SnapshotManager
from codeloop.core.tool_registry import CHAT_MODE_TOOLS, ToolDispatcher, ToolRegistry, build_default_registry
from codeloop.core.tools.base import ApprovalCallback, ToolEnvironment
from codeloop.core.tools.terminal import BackgroundProcessManager
from codeloop.session import SessionContext, SessionManager, SessionStorage

logger = logging.getLogger(__name__)

WORKSPACE_DIRNAME = ".codeloop"


def workspace_home(workspace: Path) -> Path:
    return workspace / WORKSPACE_DIRNAME


def open_snapshots(workspace: Path, *, max_files: int = 50) -> SnapshotManager:
    """Snapshot manager for ``workspace``; pending snapshots reload from disk."""

    return SnapshotManager(
        workspace_home(workspace) / "snapshots",
        workspace_root=workspace,
        max_files=max_files,
    )


def build_llm_client(config: CodeLoopConfig, api_key: str | None, *, offline_mode: bool = False) -> LLMClient:
    settings = LLMSettings(
        base_url=config.llm_base_url,
        model=config.llm_model,
        api_key=api_key or None,
        timeout_seconds=config.llm_timeout_seconds,
        offline_mode=offline_mode,
        max_output_tokens=config.llm_max_output_tokens,
    )
    return LLMClient(settings)


@dataclass
class AgentRuntime:
    """Everything one interactive or single-shot codeloop run needs."""

    workspace: Path
    config: CodeLoopConfig
    llm: ChatBackend
    session_manager: SessionManager
    session: SessionContext
    snapshots: SnapshotManager
    registry: ToolRegistry
    read_tracker: ReadTracker
    processes: BackgroundProcessManager
    scheduler: Scheduler
    console: Console | None = None

    @classmethod
    def build(
        cls,
        workspace: Path,
        config_context: ConfigContext,
        session_manager: SessionManager,
        session: SessionContext,
        *,
        llm: ChatBackend | None = None,
        console: Console | None = None,
        approve_outside_path: ApprovalCallback | None = None,
        confirm_delete: ApprovalCallback | None = None,
        offline_mode: bool = False,
    ) -> AgentRuntime:
        config = config_context.config
        snapshots = open_snapshots(workspace, max_files=config.max_tracked_files)
        read_tracker = ReadTracker()
        processes = BackgroundProcessManager()
        env = ToolEnvironment(
            workspace_root=workspace,
            snapshots=snapshots,
            read_tracker=read_tracker,
            processes=processes,
            approve_outside_path=approve_outside_path,
            confirm_delete=confirm_delete,
            web_search_api_key=config.web_search_api_key,
            session_id=session.session_id,
        )
        scheduler = default_scheduler()
        scheduler.min_interval = config.min_api_interval_seconds
        if llm is None:
            llm = build_llm_client(config, config_context.llm_api_key, offline_mode=offline_mode)
        return cls(
            workspace=workspace,
            config=config,
            llm=llm,
            session_manager=session_manager,
            session=session,
            snapshots=snapshots,
            registry=build_default_registry(env),
            read_tracker=read_tracker,
            processes=processes,
            scheduler=scheduler,
            console=console,
        )

    def dispatcher(self, *, chat_mode: bool = False) -> ToolDispatcher:
        return ToolDispatcher(self.registry, allowed=CHAT_MODE_TOOLS if chat_mode else None)

    def run_turn(
        self,
        prompt: str,
        *,
        chat_mode: bool = False,
        ports: ConfirmationPorts | None = None,
        abort: threading.Event | None = None,
        on_chunk: ChunkCallback | None = None,
        on_event: EventCallback | None = None,
        max_iterations: int | None = None,
        auto_run_terminal: bool | None = None,
    ) -> AgentLoopResult:
        """Run one user turn against the current session."""

        ctx = AgentLoopContext(
            llm=self.llm,
            dispatcher=self.dispatcher(chat_mode=chat_mode),
            history=list(self.session.conversation),
            prompt=prompt,
            system_prompt=build_system_prompt(self.workspace, chat=chat_mode),
            session_id=self.session.session_id,
            max_iterations=max_iterations or self.config.max_iterations,
            context_window=self.config.llm_context_window,
            chat_mode=chat_mode,
            auto_run_terminal=self.config.auto_run_terminal if auto_run_terminal is None else auto_run_terminal,
            scheduler=self.scheduler,
            storage=SessionStorage(self.session_manager, self.session),
            ports=ports,
            abort=abort,
            read_tracker=self.read_tracker,
            on_chunk=on_chunk,
            on_event=on_event,
            console=self.console,
        )
        self.session.metadata.chat_mode = chat_mode
        return run_agent_loop(ctx)

    def new_session(self) -> SessionContext:
        self.session = self.session_manager.start(workspace=self.workspace, model=self.config.llm_model)
        return self.session

    def close(self) -> None:
        self.processes.stop()
        close: Callable[[], Any] | None = getattr(self.llm, "close", None)
        if close is not None:
            close()


__all__ = ["AgentRuntime", "build_llm_client", "open_snapshots", "workspace_home"]
