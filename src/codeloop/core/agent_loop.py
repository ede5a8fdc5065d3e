"""Agent loop orchestration: request, dispatch tools, repeat until the model is done."""

from __future__ import annotations

import json
import logging
import math
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from codeloop.core.confirmations import ConfirmationCancelled, ConfirmationPorts
from codeloop.core.context import (
    ContextBudget,
    TokenEstimator,
    compress_conversation,
    ensure_last_message_valid,
    estimate_tokens,
    sanitize_conversation,
    truncate_tool_result,
)
from codeloop.core.json_recovery import try_recover_json
from codeloop.core.llm import ChatResponse, LLMAbortedError, LLMError, parse_api_error
from codeloop.core.llm.errors import is_rate_limit_error
from codeloop.core.llm.types import ChunkCallback, ReasoningCallback, ToolCall
from codeloop.core.loop_guard import LoopBreaker, TurnGuards
from codeloop.core.scheduler import Scheduler, default_scheduler
from codeloop.core.tool_registry import CHAT_MODE_TOOLS, ToolDispatcher, normalize_tool_name

if TYPE_CHECKING:  # pragma: no cover
    from rich.console import Console

    from codeloop.core.file_tracker import ReadTracker

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 25
ITERATION_EXTENSION = 5
MAX_RATE_LIMIT_RETRIES = 3
COMPRESSION_START_ITERATION = 2
DETACH_POLL_SECONDS = 0.1

TRUNCATED_ARGS_ERROR = (
    "ERROR: Your tool call arguments were truncated because the response exceeded max_tokens. "
    "The file content was too large to send in a single tool call. Please split the file into smaller "
    "parts: first create_file with a skeleton, then use edit_file with start_line/end_line to add "
    "content section by section."
)
DETACHED_OUTPUT = (
    "(The user detached from the terminal. The command keeps running in the background. "
    "Do not start it again.)"
)

Message = dict[str, Any]
EventCallback = Callable[[str, dict[str, Any]], None]


class AgentLoopError(RuntimeError):
    """Fatal error for one user turn; ``details`` holds the expandable detail text."""

    def __init__(self, summary: str, details: str | None = None) -> None:
        super().__init__(summary)
        self.summary = summary
        self.details = details


class AgentBusyError(RuntimeError):
    """Raised when a second loop is started for a session that is already running."""


class ChatBackend(Protocol):
    def chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        on_chunk: ChunkCallback | None = None,
        on_reasoning: ReasoningCallback | None = None,
        abort: threading.Event | None = None,
    ) -> ChatResponse:
        ...


class ConversationStore(Protocol):
    """Storage collaborator for conversation history and per-session metrics."""

    def load_metrics(self, session_id: str) -> dict[str, Any]:
        ...

    def save_metrics(self, session_id: str, metrics: dict[str, Any]) -> None:
        ...

    def save_conversation(self, session_id: str, messages: list[Message]) -> None:
        ...


@dataclass(slots=True)
class SessionMetrics:
    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    cached_tokens: int = 0
    current_context_tokens: int = 0
    context_limit: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> SessionMetrics:
        payload = payload or {}
        values = {}
        for name in cls.__dataclass_fields__:
            try:
                values[name] = int(payload.get(name) or 0)
            except (TypeError, ValueError):
                values[name] = 0
        return cls(**values)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class AgentLoopContext:
    """Encapsulates shared state required by the agent loop."""

    llm: ChatBackend
    dispatcher: ToolDispatcher
    history: Sequence[Message] = ()
    prompt: str | None = None
    system_prompt: str | None = None
    session_id: str = "default"
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    context_window: int | None = None
    chat_mode: bool = False
    auto_run_terminal: bool = False
    scheduler: Scheduler | None = None
    storage: ConversationStore | None = None
    ports: ConfirmationPorts | None = None
    abort: threading.Event | None = None
    read_tracker: ReadTracker | None = None
    estimator: TokenEstimator = estimate_tokens
    on_chunk: ChunkCallback | None = None
    on_reasoning: ReasoningCallback | None = None
    on_event: EventCallback | None = None
    console: Console | None = None


@dataclass(slots=True)
class AgentLoopResult:
    content: str
    messages: list[Message]
    iterations: int
    stop_reason: str
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == "cancelled"


# ---------------------------------------------------------------------------
# Reentrancy guard
# ---------------------------------------------------------------------------

_active_sessions: set[str] = set()
_active_lock = threading.Lock()


@contextmanager
def session_guard(session_id: str) -> Iterator[None]:
    """Reject a second concurrent loop for ``session_id``."""

    with _active_lock:
        if session_id in _active_sessions:
            raise AgentBusyError(f"Agent loop already running for session {session_id}")
        _active_sessions.add(session_id)
    try:
        yield
    finally:
        with _active_lock:
            _active_sessions.discard(session_id)


def install_system_prompt(messages: list[Message], system_prompt: str) -> list[Message]:
    entry = {"role": "system", "content": system_prompt}
    if messages and messages[0].get("role") == "system":
        messages[0] = entry
    else:
        messages.insert(0, entry)
    return messages


def parse_tool_arguments(call: ToolCall, tool_name: str, finish_reason: str | None) -> Any | None:
    """Decode streamed argument text; ``None`` means unrecoverable."""

    raw = call.arguments or "{}"
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return try_recover_json(raw, tool_name, finish_reason)


class _AgentRun:
    """State for a single invocation of the loop."""

    def __init__(self, ctx: AgentLoopContext) -> None:
        self.ctx = ctx
        self.scheduler = ctx.scheduler or default_scheduler()
        self.budget = ContextBudget(ctx.context_window)
        self.messages: list[Message] = [dict(message) for message in ctx.history]
        if ctx.system_prompt:
            install_system_prompt(self.messages, ctx.system_prompt)
        if ctx.prompt:
            self.messages.append({"role": "user", "content": ctx.prompt})
        self.metrics = self._load_metrics()
        self.loop_breaker = LoopBreaker()
        self.guards = TurnGuards()
        self.max_iterations = max(1, ctx.max_iterations)
        self.iteration = 0
        self.rate_limit_retries = 0
        self.last_known_context = 0
        self.messages_at_last_call = 0
        self.texts: list[str] = []
        self.stop_reason = "completed"

    # -- helpers -----------------------------------------------------------

    def _emit(self, kind: str, **payload: Any) -> None:
        if self.ctx.on_event is None:
            return
        try:
            self.ctx.on_event(kind, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Event listener failed for %s: %s", kind, exc)

    def _aborted(self) -> bool:
        return self.ctx.abort is not None and self.ctx.abort.is_set()

    def _load_metrics(self) -> SessionMetrics:
        if self.ctx.storage is None:
            return SessionMetrics(context_limit=self.budget.context_limit)
        try:
            metrics = SessionMetrics.from_dict(self.ctx.storage.load_metrics(self.ctx.session_id))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load metrics for session %s: %s", self.ctx.session_id, exc)
            metrics = SessionMetrics()
        metrics.context_limit = self.budget.context_limit
        return metrics

    def _save_metrics(self) -> None:
        if self.ctx.storage is None:
            return
        try:
            self.ctx.storage.save_metrics(self.ctx.session_id, self.metrics.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to save metrics for session %s: %s", self.ctx.session_id, exc)

    def persist(self) -> None:
        if self.ctx.storage is None:
            return
        try:
            self.ctx.storage.save_conversation(self.ctx.session_id, list(self.messages))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist conversation for session %s: %s", self.ctx.session_id, exc)

    def _tool_schemas(self) -> list[dict[str, Any]]:
        return self.ctx.dispatcher.schemas()

    # -- request -----------------------------------------------------------

    def _request(self) -> ChatResponse | None:
        """Send one request; ``None`` means retry the iteration after backoff."""

        self.scheduler.wait_for_slot()
        self.scheduler.mark_request()
        self.messages_at_last_call = len(self.messages)
        try:
            if self.ctx.console is not None:
                with self.ctx.console.status("Thinking…", spinner="dots"):
                    response = self._chat()
            else:
                response = self._chat()
        except LLMAbortedError:
            raise
        except LLMError as exc:
            summary, details = parse_api_error(exc)
            if is_rate_limit_error(exc, summary) and self.rate_limit_retries < MAX_RATE_LIMIT_RETRIES:
                self.rate_limit_retries += 1
                backoff = min(2000 * 2**self.rate_limit_retries, 30_000) / 1000
                logger.warning(
                    "Rate limited; retry %s/%s in %.0fs",
                    self.rate_limit_retries,
                    MAX_RATE_LIMIT_RETRIES,
                    backoff,
                )
                self._emit("retry", attempt=self.rate_limit_retries, delay=backoff)
                self.scheduler.defer(backoff)
                self.scheduler.sleep(backoff)
                return None
            raise AgentLoopError(summary, details) from exc
        self.rate_limit_retries = 0
        return response

    def _chat(self) -> ChatResponse:
        return self.ctx.llm.chat(
            self.messages,
            tools=self._tool_schemas(),
            on_chunk=self.ctx.on_chunk,
            on_reasoning=self.ctx.on_reasoning,
            abort=self.ctx.abort,
        )

    def _record_usage(self, response: ChatResponse) -> None:
        usage = response.usage
        if usage is not None and usage.prompt_tokens:
            input_tokens = usage.prompt_tokens
        else:
            input_tokens = self.ctx.estimator(self.messages)
        if usage is not None and usage.completion_tokens:
            output_tokens = usage.completion_tokens
        else:
            output_tokens = math.ceil(len(response.content or "") / 4) + sum(
                math.ceil(len(call.arguments or "") / 4) for call in response.tool_calls
            )
        self.metrics.api_calls += 1
        self.metrics.input_tokens += input_tokens
        self.metrics.output_tokens += output_tokens
        self.metrics.current_context_tokens = input_tokens
        self.metrics.context_limit = self.budget.context_limit
        if usage is not None and usage.cached_tokens:
            self.metrics.cached_tokens += usage.cached_tokens
        self.last_known_context = input_tokens
        self._emit("metrics", **self.metrics.to_dict())
        self._save_metrics()

    # -- tools -------------------------------------------------------------

    def _tool_message(self, call: ToolCall, content: str) -> None:
        self.messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

    def _execute_terminal(self, args: dict[str, Any]) -> dict[str, Any]:
        ports = self.ctx.ports
        command = str(args.get("command") or "")
        if self.ctx.auto_run_terminal or ports is None or not ports.handles_terminal:
            return self.ctx.dispatcher.dispatch("terminal", args)

        try:
            decision = ports.confirm_terminal(command, str(args.get("cwd") or "."))
        except ConfirmationCancelled as exc:
            logger.info("Terminal confirmation cancelled: %s", exc)
            return {"error": "Confirmation request cancelled", "cancelled": True, "command": command}
        if not decision.approved:
            return {"error": "The user rejected the command. It was not executed.", "rejected": True, "command": command}
        if decision.command and decision.command != command:
            logger.info("User edited terminal command: %r -> %r", command, decision.command)
            args = {**args, "command": decision.command}
            command = decision.command
        if ports.detach is None:
            return self.ctx.dispatcher.dispatch("terminal", args)
        return self._execute_detachable(args, command, ports.detach)

    def _execute_detachable(self, args: dict[str, Any], command: str, detach: threading.Event) -> dict[str, Any]:
        detach.clear()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeloop-terminal")
        future: Future[dict[str, Any]] = executor.submit(self.ctx.dispatcher.dispatch, "terminal", args)
        try:
            while True:
                try:
                    return future.result(timeout=DETACH_POLL_SECONDS)
                except FutureTimeoutError:
                    if detach.is_set():
                        logger.info("User detached from terminal command %r", command)
                        return {"success": True, "command": command, "output": DETACHED_OUTPUT, "detached": True}
        finally:
            detach.clear()
            executor.shutdown(wait=False)

    def _execute(self, tool_name: str, args: Any) -> dict[str, Any]:
        blocked = self.guards.before_call(tool_name, args)
        if blocked:
            return {"error": blocked}
        if self.loop_breaker.is_blocked(tool_name, args):
            return {"error": f"BLOCKED: repeated calls to {tool_name} for this target were stopped. Reply to the user."}

        if tool_name == "terminal" and not self.ctx.chat_mode and isinstance(args, dict):
            return self._execute_terminal(args)

        ports = self.ctx.ports
        if self.ctx.chat_mode and tool_name == "read_file" and ports is not None and ports.handles_tool_approval:
            try:
                approved = ports.approve_tool(tool_name, args if isinstance(args, dict) else {})
            except ConfirmationCancelled:
                return {"error": "Confirmation request cancelled", "cancelled": True}
            if not approved:
                return {"error": "The user declined this tool call."}
        return self.ctx.dispatcher.dispatch(tool_name, args)

    def _handle_tool_call(self, call: ToolCall, finish_reason: str | None) -> None:
        tool_name = normalize_tool_name(call.name)
        args = parse_tool_arguments(call, tool_name, finish_reason)
        if args is None:
            if finish_reason == "length":
                logger.warning("Arguments for %s were cut off (%s chars)", tool_name, len(call.arguments))
                self._tool_message(call, TRUNCATED_ARGS_ERROR)
                self._emit("tool_result", name=tool_name, result={"error": TRUNCATED_ARGS_ERROR})
                return
            args = {}

        self._emit("tool_call", name=tool_name, args=args)
        result = self._execute(tool_name, args)
        self.guards.after_call(tool_name, args, result)
        if "error" in result:
            logger.info("Tool %s failed: %s", tool_name, result["error"])

        content = truncate_tool_result(tool_name, json.dumps(result, ensure_ascii=False), self.budget)
        if finish_reason == "length" and tool_name in {"create_file", "edit_file"}:
            saved = result.get("total_lines", 0)
            content += (
                "\n\nWARNING: Your response was TRUNCATED (finish_reason=length). The content you tried to "
                f"write was cut off mid-stream. The file on disk may be INCOMPLETE ({saved} lines saved). "
                "Use read_file to check what was saved, then add the missing parts with small edit_file calls."
            )
        verdict = self.loop_breaker.observe(tool_name, args, content)
        if verdict is not None:
            content = verdict.message
            self._emit("loop_breaker", key=verdict.key, triggers=verdict.triggers)
        self._tool_message(call, content)
        self._emit("tool_result", name=tool_name, result=result)

    # -- compression -------------------------------------------------------

    def _maybe_compress(self) -> None:
        if self.iteration < COMPRESSION_START_ITERATION:
            return
        if self.last_known_context > 0 and self.messages_at_last_call > 0:
            current = self.last_known_context + self.ctx.estimator(self.messages[self.messages_at_last_call :])
        else:
            current = self.ctx.estimator(self.messages)
        logger.debug("Context size %s tokens (threshold %s)", current, self.budget.compress_threshold)
        report = compress_conversation(
            self.messages,
            self.budget,
            current_tokens=current,
            estimator=self.ctx.estimator,
        )
        if report is not None and report.dropped_groups:
            self.last_known_context = 0
            self._emit("compressed", before=report.tokens_before, after=report.tokens_after)

    # -- main loop ---------------------------------------------------------

    def run(self) -> AgentLoopResult:
        if self.ctx.read_tracker is not None:
            self.ctx.read_tracker.set_session(self.ctx.session_id)
        logger.info(
            "Starting agent loop for session %s (tools=%s, max_iterations=%s)",
            self.ctx.session_id,
            len(self._tool_schemas()),
            self.max_iterations,
        )
        try:
            self._loop()
        except AgentLoopError:
            logger.info("Agent loop failed; saving %s message(s) before propagating", len(self.messages))
            self.persist()
            raise
        self.persist()
        return AgentLoopResult(
            content="\n\n".join(self.texts),
            messages=list(self.messages),
            iterations=self.iteration,
            stop_reason=self.stop_reason,
            metrics=self.metrics,
        )

    def _loop(self) -> None:
        while self.iteration < self.max_iterations:
            if self._aborted():
                logger.info("Agent loop aborted by user")
                self.stop_reason = "cancelled"
                return

            self.messages = sanitize_conversation(self.messages)
            ensure_last_message_valid(self.messages)
            try:
                response = self._request()
            except LLMAbortedError:
                logger.info("Request aborted by user")
                self.stop_reason = "cancelled"
                return
            if response is None:
                continue
            self._record_usage(response)

            if response.content and response.content.strip():
                self.texts.append(response.content)
            if not response.tool_calls:
                if response.content:
                    self.messages.append({"role": "assistant", "content": response.content})
                logger.info("No tool calls; finishing after %s iteration(s)", self.iteration + 1)
                self.iteration += 1
                return

            logger.debug(
                "Model called tools: %s",
                ", ".join(f"{call.name}({call.arguments[:100]})" for call in response.tool_calls),
            )
            assistant: Message = {
                "role": "assistant",
                "content": response.content or "",
                "tool_calls": [call.to_message() for call in response.tool_calls],
            }
            if response.reasoning:
                assistant["reasoning_content"] = response.reasoning
            self.messages.append(assistant)

            for call in response.tool_calls:
                self._handle_tool_call(call, response.finish_reason)

            self._maybe_compress()
            self.iteration += 1
            if self.iteration >= self.max_iterations and not self._extend():
                self.stop_reason = "iteration_limit"
                return

    def _extend(self) -> bool:
        ports = self.ctx.ports
        if ports is None or not ports.handles_continuation:
            logger.info("Reached iteration limit %s", self.max_iterations)
            return False
        try:
            extend = ports.confirm_continue(self.max_iterations)
        except ConfirmationCancelled:
            return False
        if extend:
            self.max_iterations += ITERATION_EXTENSION
            logger.info("Iteration limit extended to %s", self.max_iterations)
        return extend


def run_agent_loop(ctx: AgentLoopContext) -> AgentLoopResult:
    """Execute the agent loop for one user turn."""

    with session_guard(ctx.session_id):
        return _AgentRun(ctx).run()


def chat_mode_dispatcher(dispatcher: ToolDispatcher) -> ToolDispatcher:
    return ToolDispatcher(dispatcher.registry, allowed=CHAT_MODE_TOOLS)


__all__ = [
    "AgentBusyError",
    "AgentLoopContext",
    "AgentLoopError",
    "AgentLoopResult",
    "ChatBackend",
    "ConversationStore",
    "EventCallback",
    "DEFAULT_MAX_ITERATIONS",
    "SessionMetrics",
    "chat_mode_dispatcher",
    "install_system_prompt",
    "parse_tool_arguments",
    "run_agent_loop",
    "session_guard",
]
