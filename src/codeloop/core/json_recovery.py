"""Staged recovery for malformed tool-call argument payloads."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([a-zA-Z_]\w*)\s*:")
_DANGLING_SEPARATOR = re.compile(r"[,:]\s*$")


def strip_fences(raw: str) -> str:
    text = _FENCE_OPEN.sub("", raw.strip(), count=1)
    return _FENCE_CLOSE.sub("", text, count=1).strip()


def escape_control_whitespace(text: str) -> str:
    return text.replace("\r\n", "\\n").replace("\n", "\\n").replace("\r", "\\n").replace("\t", "\\t")


def remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def quote_keys(text: str) -> str:
    return _UNQUOTED_KEY.sub(r'\1"\2":', text)


def single_to_double_quotes(text: str) -> str:
    if '"' in text or "'" not in text:
        return text
    return text.replace("'", '"')


def combined_fix(text: str) -> str:
    fixed = single_to_double_quotes(text)
    fixed = escape_control_whitespace(fixed)
    fixed = remove_trailing_commas(fixed)
    return quote_keys(fixed)


def close_truncated(text: str) -> str:
    """Terminate an open string and balance brackets and braces."""

    fixed = escape_control_whitespace(text)
    braces = 0
    brackets = 0
    in_string = False
    escaped = False
    for char in fixed:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            braces += 1
        elif char == "}":
            braces -= 1
        elif char == "[":
            brackets += 1
        elif char == "]":
            brackets -= 1
    if in_string:
        fixed += '"'
    fixed = _DANGLING_SEPARATOR.sub("", fixed)
    fixed += "]" * max(brackets, 0)
    fixed += "}" * max(braces, 0)
    return fixed


RECOVERY_STAGES: list[tuple[str, Callable[[str], str]]] = [
    ("newline/tab escaping", escape_control_whitespace),
    ("trailing comma removal", remove_trailing_commas),
    ("key quoting", quote_keys),
    ("single to double quotes", single_to_double_quotes),
    ("combined fixes", combined_fix),
]


def try_recover_json(raw: str, tool_name: str, finish_reason: str | None = None) -> Any | None:
    """Parse ``raw`` leniently, returning ``None`` when nothing works.

    Stages run from least to most invasive. Bracket balancing is only tried
    when the response was cut off (``finish_reason == "length"``).
    """

    text = strip_fences(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for label, stage in RECOVERY_STAGES:
        candidate = stage(text)
        if candidate == text and label != "combined fixes":
            continue
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        logger.info("Recovered arguments for %s after %s", tool_name, label)
        return result

    if finish_reason == "length":
        try:
            result = json.loads(close_truncated(text))
        except json.JSONDecodeError:
            pass
        else:
            logger.info("Recovered truncated arguments for %s", tool_name)
            return result

    logger.warning("Unable to recover arguments for %s (%s chars)", tool_name, len(raw))
    return None


__all__ = [
    "RECOVERY_STAGES",
    "close_truncated",
    "combined_fix",
    "strip_fences",
    "try_recover_json",
]
