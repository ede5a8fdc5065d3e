"""Tool registry and dispatcher for agent tool calls."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any

from codeloop.core.tools import DEFAULT_TOOLKIT_FACTORIES
from codeloop.core.tools.base import (
    Tool,
    ToolAlreadyRegisteredError,
    ToolEnvironment,
    ToolInvocationError,
    Toolkit,
    ToolkitAlreadyRegisteredError,
    ToolNotFoundError,
    ToolRegistryError,
    ToolResult,
)

logger = logging.getLogger(__name__)

VALIDATION_HINT = "Please check the required parameters for this tool and try again with correct arguments."

TOOL_NAME_REMAP: dict[str, str] = {
    "write_file_content_to_path": "create_file",
    "write_file_content": "create_file",
    "write_file": "create_file",
    "save_file": "create_file",
    "write_to_file": "create_file",
    "new_file": "create_file",
    "update_file": "edit_file",
    "modify_file": "edit_file",
    "replace_in_file": "edit_file",
    "replace_string_in_file": "edit_file",
    "str_replace_editor": "edit_file",
    "patch_file": "edit_file",
    "apply_edit": "edit_file",
    "read_file_content": "read_file",
    "get_file_content": "read_file",
    "view_file": "read_file",
    "open_file": "read_file",
    "run_command": "terminal",
    "execute_command": "terminal",
    "run_terminal_command": "terminal",
    "shell": "terminal",
    "bash": "terminal",
    "exec": "terminal",
    "remove_file": "delete_file",
    "find": "search",
    "grep": "search",
    "search_files": "search",
    "search_code": "search",
    "list_directory": "list_files",
    "ls": "list_files",
    "dir": "list_files",
    "get_diagnostics": "diagnose",
    "check_errors": "diagnose",
    "http_request": "fetch_url",
    "curl": "fetch_url",
    "wget": "fetch_url",
    "http_get": "fetch_url",
    "get_url": "fetch_url",
    "fetch": "fetch_url",
    "get_terminal_output": "read_terminal_output",
    "check_terminal": "read_terminal_output",
    "terminal_output": "read_terminal_output",
    "send_terminal_input": "write_to_terminal",
    "terminal_input": "write_to_terminal",
    "stdin": "write_to_terminal",
    "send_input": "write_to_terminal",
}

CHAT_MODE_TOOLS = frozenset(
    {
        "read_file",
        "list_files",
        "search",
        "diagnose",
        "fetch_url",
        "web_search",
        "read_terminal_output",
    }
)

_MARKUP_SUFFIX = re.compile(r"<[^>]*>.*$", re.DOTALL)


def normalize_tool_name(name: str) -> str:
    """Strip stray markup from ``name`` and map invented names to real tools."""

    cleaned = _MARKUP_SUFFIX.sub("", name or "").strip()
    remapped = TOOL_NAME_REMAP.get(cleaned)
    if remapped:
        logger.info("Remapped tool name %r to %r", cleaned, remapped)
        return remapped
    return cleaned


def _is_int(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _require_str(args: dict[str, Any], tool: str, key: str) -> str | None:
    if not _non_empty_str(args.get(key)):
        return f"{tool} requires {key} (string)"
    return None


def _validate_read_file(args: dict[str, Any]) -> str | None:
    error = _require_str(args, "read_file", "file_path")
    if error:
        return error
    for key in ("start_line", "end_line"):
        value = args.get(key)
        if value is not None and (not _is_int(value) or value < 1):
            return f"read_file: {key} must be a positive integer"
    return None


def _validate_edit_file(args: dict[str, Any]) -> str | None:
    error = _require_str(args, "edit_file", "file_path")
    if error:
        return error
    old = args.get("old_string", args.get("oldString"))
    new = args.get("new_string", args.get("newString"))
    has_replacement = isinstance(old, str) and isinstance(new, str)
    has_line_range = (
        _is_int(args.get("start_line")) and _is_int(args.get("end_line")) and isinstance(args.get("content"), str)
    )
    if not has_replacement and not has_line_range:
        return (
            "edit_file requires (old_string + new_string). Use read_file to see the file first, "
            "then provide exact text in old_string and replacement in new_string."
        )
    return None


def _validate_create_file(args: dict[str, Any]) -> str | None:
    error = _require_str(args, "create_file", "file_path")
    if error:
        return error
    if not isinstance(args.get("content"), str):
        return "create_file requires content (string)"
    return None


def _validate_search(args: dict[str, Any]) -> str | None:
    query = args.get("query")
    if _non_empty_str(query):
        return None
    if isinstance(query, list) and query and all(_non_empty_str(item) for item in query):
        return None
    return "search requires query (string)"


ArgumentValidator = Callable[[dict[str, Any]], str | None]

VALIDATORS: dict[str, ArgumentValidator] = {
    "read_file": _validate_read_file,
    "edit_file": _validate_edit_file,
    "create_file": _validate_create_file,
    "delete_file": lambda args: _require_str(args, "delete_file", "file_path"),
    "terminal": lambda args: _require_str(args, "terminal", "command"),
    "diagnose": lambda args: _require_str(args, "diagnose", "file"),
    "fetch_url": lambda args: _require_str(args, "fetch_url", "url"),
    "search": _validate_search,
    "web_search": lambda args: _require_str(args, "web_search", "query"),
    "write_to_terminal": lambda args: _require_str(args, "write_to_terminal", "input"),
}


def validate_tool_args(tool_name: str, args: Any) -> str | None:
    """Return a validation message for ``args`` or ``None`` when they look usable."""

    if not isinstance(args, dict):
        return f"{tool_name} requires an arguments object"
    validator = VALIDATORS.get(tool_name)
    return validator(args) if validator else None


class ToolRegistry:
    """Stores tool handlers grouped by toolkits."""

    def __init__(self, toolkits: list[Toolkit] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        self._toolkits: dict[str, Toolkit] = {}
        if toolkits:
            for toolkit in toolkits:
                self.add_toolkit(toolkit)

    def add_toolkit(self, toolkit: Toolkit, *, overwrite: bool = False) -> None:
        previous_toolkit = self._toolkits.get(toolkit.name)
        if previous_toolkit is not None:
            if not overwrite:
                raise ToolkitAlreadyRegisteredError(f"Toolkit '{toolkit.name}' already registered")
            for tool in previous_toolkit.tools:
                self.unregister(tool.name)
                self.unregister(f"{previous_toolkit.name}.{tool.name}")

        registered: list[str] = []
        try:
            for tool in toolkit.tools:
                self.register(tool, overwrite=overwrite)
                registered.append(tool.name)
                alias = f"{toolkit.name}.{tool.name}"
                if alias not in self._tools:
                    self._tools[alias] = Tool(
                        name=alias,
                        description=tool.description,
                        input_schema=tool.input_schema,
                        output_schema=tool.output_schema,
                        handler=tool.handler,
                    )
                    registered.append(alias)
        except ToolRegistryError:
            for name in registered:
                self.unregister(name)
            if previous_toolkit is not None:
                for tool in previous_toolkit.tools:
                    self.register(tool, overwrite=True)
                self._toolkits[toolkit.name] = previous_toolkit
            raise

        self._toolkits[toolkit.name] = toolkit

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if not overwrite and tool.name in self._tools:
            raise ToolAlreadyRegisteredError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError as exc:
            raise ToolNotFoundError(f"Unknown tool: {name}") from exc

    def available_tools(self) -> dict[str, Tool]:
        return dict(self._tools)

    def available_toolkits(self) -> dict[str, Toolkit]:
        return dict(self._toolkits)

    def primary_tools(self) -> list[Tool]:
        """Tools by short name, in toolkit registration order."""

        return [tool for toolkit in self._toolkits.values() for tool in toolkit.tools]

    def invoke(self, name: str, payload: dict[str, Any] | None = None) -> ToolResult:
        tool = self.get(name)
        try:
            return tool.handler(payload or {})
        except ToolInvocationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ToolInvocationError(f"Tool '{name}' failed: {exc}") from exc


def to_openai_schema(tool: Tool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


class ToolDispatcher:
    """Validates and executes tool calls, always answering with a result dict."""

    def __init__(self, registry: ToolRegistry, *, allowed: frozenset[str] | set[str] | None = None) -> None:
        self.registry = registry
        self.allowed = frozenset(allowed) if allowed is not None else None

    def schemas(self) -> list[dict[str, Any]]:
        return [to_openai_schema(tool) for tool in self.registry.primary_tools() if self._is_allowed(tool.name)]

    def _is_allowed(self, name: str) -> bool:
        return self.allowed is None or name in self.allowed

    def dispatch(self, name: str, args: Any) -> dict[str, Any]:
        tool_name = normalize_tool_name(name)
        problem = validate_tool_args(tool_name, args)
        if problem:
            logger.info("Rejected %s call: %s", tool_name, problem)
            return {"error": problem, "hint": VALIDATION_HINT}
        if not self._is_allowed(tool_name):
            return {"error": f"Tool {tool_name} is not available in this mode"}

        started = time.perf_counter()
        try:
            result = self.registry.invoke(tool_name, args)
        except ToolNotFoundError as exc:
            logger.warning("Model requested unknown tool %r", tool_name)
            return {"error": str(exc)}
        except ToolInvocationError as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            logger.info("%s failed after %sms: %s", tool_name, elapsed, exc)
            return {"error": str(exc), **exc.details}

        elapsed = int((time.perf_counter() - started) * 1000)
        logger.debug("%s finished in %sms: %s", tool_name, elapsed, result.summary or "ok")
        if isinstance(result.data, dict):
            return result.data
        return {"success": True, "output": result.content}


def build_default_registry(env: ToolEnvironment) -> ToolRegistry:
    """Return a registry pre-populated with the built-in toolkits."""

    toolkits = [factory(env) for factory in DEFAULT_TOOLKIT_FACTORIES]
    return ToolRegistry(toolkits=toolkits)


__all__ = [
    "CHAT_MODE_TOOLS",
    "TOOL_NAME_REMAP",
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolDispatcher",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolRegistryError",
    "ToolResult",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "VALIDATION_HINT",
    "build_default_registry",
    "normalize_tool_name",
    "to_openai_schema",
    "validate_tool_args",
]
