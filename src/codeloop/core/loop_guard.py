"""Heuristics that stop the agent from repeating unproductive tool calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

REPEAT_THRESHOLD = 3
RESULT_PREFIX_CHARS = 500
MAX_CONSECUTIVE_WEB_SEARCHES = 3


def signature_key(tool_name: str, args: Any) -> str:
    """``tool:key_arg`` where the key argument is the path, command or query."""

    args = args if isinstance(args, dict) else {}
    if tool_name == "terminal":
        return f"terminal:{args.get('command') or ''}"
    for name in ("file_path", "command", "query"):
        value = args.get(name)
        if value:
            return f"{tool_name}:{value}"
    return f"{tool_name}:"


def _normalized_path(value: Any) -> str:
    return str(value or "").replace("\\", "/").lower()


@dataclass(slots=True)
class LoopVerdict:
    key: str
    triggers: int
    message: str

    @property
    def escalated(self) -> bool:
        return self.triggers >= 2


@dataclass
class LoopBreaker:
    """Detects identical consecutive tool calls with identical results."""

    threshold: int = REPEAT_THRESHOLD
    result_prefix: int = RESULT_PREFIX_CHARS
    _last_signature: str = ""
    _repeat_count: int = 0
    _triggers: dict[str, int] = field(default_factory=dict)

    def observe(self, tool_name: str, args: Any, result: str) -> LoopVerdict | None:
        """Record one call; return a verdict whose message replaces the result."""

        key = signature_key(tool_name, args)
        signature = f"{key}|{result[: self.result_prefix]}"
        if signature == self._last_signature:
            self._repeat_count += 1
        else:
            self._last_signature = signature
            self._repeat_count = 1
        if self._repeat_count < self.threshold:
            return None

        triggers = self._triggers.get(key, 0) + 1
        self._triggers[key] = triggers
        repeats = self._repeat_count
        self._repeat_count = 0
        logger.warning("Loop breaker fired for %s (%s repeats, trigger #%s)", key, repeats, triggers)
        return LoopVerdict(key=key, triggers=triggers, message=self._directive(tool_name, args, key, repeats, triggers))

    def is_blocked(self, tool_name: str, args: Any) -> bool:
        return self._triggers.get(signature_key(tool_name, args), 0) >= 2

    def _directive(self, tool_name: str, args: Any, key: str, repeats: int, triggers: int) -> str:
        if triggers >= 2:
            return (
                f'SYSTEM OVERRIDE: You have looped on "{key}" {triggers} times. '
                "You MUST stop working on this file/command immediately. "
                "Do not call any more tools for it: reply to the user now with what you accomplished "
                "and what you could not complete. Any further tool calls for this file will be blocked."
            )
        if tool_name == "terminal":
            command = str((args or {}).get("command") or "")[:60]
            return (
                f'CRITICAL: You have run the EXACT SAME terminal command "{command}" {repeats} times '
                "and got the same result each time. You are in a LOOP. STOP running this command. "
                "The command output is not going to change. "
                "Options: 1) Fix the underlying issue (edit the code/config that causes the error). "
                "2) Try a completely different command. 3) Report the problem to the user and move on."
            )
        return (
            f"CRITICAL: This tool call has produced the same result {repeats} times in a row. "
            "You are in a LOOP. STOP retrying the same approach. "
            "Options: 1) Use read_file to see current file content first. "
            "2) Try a completely different strategy. "
            "3) If the file is large, edit a smaller section at a time. "
            "4) Skip this file and move on to the next task. DO NOT retry the same call again."
        )


@dataclass
class TurnGuards:
    """Per-turn limits on web searches and delete-then-recreate cycles."""

    max_web_searches: int = MAX_CONSECUTIVE_WEB_SEARCHES
    _web_searches: int = 0
    _created: dict[str, int] = field(default_factory=dict)

    def before_call(self, tool_name: str, args: Any) -> str | None:
        """Return an error message when the call must not run."""

        if tool_name == "web_search":
            self._web_searches += 1
        else:
            self._web_searches = 0
        if tool_name == "web_search" and self._web_searches > self.max_web_searches:
            logger.info("web_search blocked after %s consecutive uses", self._web_searches)
            return (
                f"web_search limit reached: you have already performed {self.max_web_searches} consecutive "
                "web searches. Please use the information you already have, or use a different tool. "
                "The counter resets when you use any other tool."
            )
        if tool_name == "delete_file" and isinstance(args, dict) and args.get("file_path"):
            if self._created.get(_normalized_path(args["file_path"]), 0) >= 1:
                logger.info("Blocked delete_file for %s created earlier in this turn", args["file_path"])
                return (
                    f'BLOCKED: "{args["file_path"]}" was already created in this session. '
                    "Deleting and recreating it wastes tokens and causes truncated files. "
                    "Use edit_file with small targeted edits (10-30 lines each) instead."
                )
        return None

    def after_call(self, tool_name: str, args: Any, result: dict[str, Any]) -> None:
        if tool_name == "create_file" and result.get("success") and isinstance(args, dict) and args.get("file_path"):
            key = _normalized_path(args["file_path"])
            self._created[key] = self._created.get(key, 0) + 1


__all__ = [
    "LoopBreaker",
    "LoopVerdict",
    "MAX_CONSECUTIVE_WEB_SEARCHES",
    "REPEAT_THRESHOLD",
    "TurnGuards",
    "signature_key",
]
