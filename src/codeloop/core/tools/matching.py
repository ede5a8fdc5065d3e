"""Locate an ``old_string`` in file content, tolerating common model mistakes.

Strategies run from strict to lenient and the first hit wins:

1. exact
2. trailing whitespace normalized
3. indentation agnostic
4. line fuzzy (70 % of lines present in a window)
5. boundary (first and last lines anchor a slightly resized region)
6. substring (longest line anchors a region containing most lines)
7. levenshtein (line edit distance within 30 %)

Every strategy reports the text that was *actually* matched in the file so the
replacement is applied to real content, plus a re-indented ``new_string`` when
the model got the indentation wrong.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

FUZZY_THRESHOLD = 0.7
WINDOW_DELTAS = (0, 1, -1, 2, -2)
SIMILARITY_FLOOR = 0.4
_LEADING_WS = re.compile(r"^(\s*)")


@dataclass(slots=True)
class StringMatch:
    normalized_content: str
    matched_old: str
    matched_new: str
    strategy: str
    position: int
    match_count: int
    match_line: int


class MatchNotFoundError(RuntimeError):
    """Raised when no strategy locates ``old_string``; ``details`` guides a retry."""

    def __init__(self, message: str, details: dict[str, Any]) -> None:
        super().__init__(message)
        self.details = details


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fix_escape_sequences(text: str) -> str:
    return text.replace('\\"', '"')


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n")


def _trim_trailing(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))


def _line_at(content: str, position: int) -> int:
    return content.count("\n", 0, position) + 1


def _line_offset(lines: list[str], index: int) -> int:
    return sum(len(line) + 1 for line in lines[:index])


def _leading_whitespace(line: str) -> str:
    match = _LEADING_WS.match(line)
    return match.group(1) if match else ""


def _indent_width(indent: str) -> int:
    return len(indent.replace("\t", "    "))


def adjust_indentation(model_old: list[str], actual_old: list[str], new_string: str) -> str:
    """Shift ``new_string`` by the indentation gap between the model's and the file's first line."""

    if not model_old or not actual_old:
        return new_string
    model_indent = _leading_whitespace(model_old[0])
    actual_indent = _leading_whitespace(actual_old[0])
    if model_indent == actual_indent:
        return new_string
    diff = _indent_width(actual_indent) - _indent_width(model_indent)
    if diff == 0:
        return new_string

    adjusted: list[str] = []
    for line in new_string.split("\n"):
        if not line.strip():
            adjusted.append(line)
        elif diff > 0:
            adjusted.append(" " * diff + line)
        else:
            width = max(0, _indent_width(_leading_whitespace(line)) + diff)
            adjusted.append(" " * width + line.lstrip())
    return "\n".join(adjusted)


def line_edit_distance(a: list[str], b: list[str]) -> int:
    """Levenshtein distance over lines, comparing stripped text."""

    m, n = len(a), len(b)
    if abs(m - n) > max(m, n) * 0.5:
        return max(m, n)
    previous = list(range(n + 1))
    for i in range(1, m + 1):
        current = [i] + [0] * n
        left = a[i - 1].strip()
        for j in range(1, n + 1):
            cost = 0 if left == b[j - 1].strip() else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[n]


def string_similarity(a: str, b: str) -> float:
    """Jaccard similarity over character trigrams."""

    if a == b:
        return 1.0
    size = 3
    if len(a) < size or len(b) < size:
        return 0.0
    grams_a = {a[i:i + size] for i in range(len(a) - size + 1)}
    grams_b = {b[i:i + size] for i in range(len(b) - size + 1)}
    shared = len(grams_a & grams_b)
    union = len(grams_a) + len(grams_b) - shared
    return shared / union if union else 0.0


def _numbered(lines: list[str], start: int) -> str:
    return "\n".join(f"L{start + offset + 1}: {line}" for offset, line in enumerate(lines))


def _region_match(
    content: str,
    content_lines: list[str],
    old_lines: list[str],
    new_string: str,
    start: int,
    end: int,
    strategy: str,
    match_count: int = 1,
) -> StringMatch:
    actual = content_lines[start:end]
    return StringMatch(
        normalized_content=content,
        matched_old="\n".join(actual),
        matched_new=adjust_indentation(old_lines, actual, new_string),
        strategy=strategy,
        position=_line_offset(content_lines, start),
        match_count=match_count,
        match_line=start + 1,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _pick_best(content: str, needle: str, replacement: str, strategy: str, hint: int | None) -> StringMatch | None:
    positions: list[int] = []
    index = content.find(needle)
    while index != -1:
        positions.append(index)
        index = content.find(needle, index + 1)
    if not positions:
        return None
    best = positions[0]
    if hint and len(positions) > 1:
        best = min(positions, key=lambda pos: abs(_line_at(content, pos) - hint))
    return StringMatch(
        normalized_content=content,
        matched_old=needle,
        matched_new=replacement,
        strategy=strategy,
        position=best,
        match_count=len(positions),
        match_line=_line_at(content, best),
    )


def _exact(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    return _pick_best(content, old, new, "exact", hint)


def _whitespace_normalized(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    return _pick_best(_trim_trailing(content), _trim_trailing(old), _trim_trailing(new), "whitespace-normalized", hint)


def _indentation_agnostic(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    stripped = [line.lstrip() for line in old_lines]
    size = len(old_lines)
    matches = [
        index
        for index in range(len(content_lines) - size + 1)
        if all(content_lines[index + offset].lstrip() == stripped[offset] for offset in range(size))
    ]
    if not matches:
        return None
    best = matches[0]
    if hint and len(matches) > 1:
        best = min(matches, key=lambda index: abs(index + 1 - hint))
    return _region_match(content, content_lines, old_lines, new, best, best + size, "indentation-agnostic", len(matches))


def _line_fuzzy(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    if len(old_lines) < 3:
        return None
    best_score = 0.0
    best_index = -1
    for delta in WINDOW_DELTAS:
        window_size = len(old_lines) + delta
        if window_size < 2 or window_size > len(content_lines):
            continue
        for index in range(len(content_lines) - window_size + 1):
            window = {line.strip() for line in content_lines[index:index + window_size]}
            matching = sum(1 for line in old_lines if not line.strip() or line.strip() in window)
            score = matching / len(old_lines)
            if hint:
                score -= abs(index + 1 - hint) / len(content_lines) * 0.1
            if score >= FUZZY_THRESHOLD and score > best_score:
                best_score = score
                best_index = index
    if best_index == -1:
        return None
    return _region_match(content, content_lines, old_lines, new, best_index, best_index + len(old_lines), "line-fuzzy")


def _boundary(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    if len(old_lines) < 3:
        return None
    anchors = [line.strip() for line in old_lines if line.strip()]
    if not anchors:
        return None
    first, last = anchors[0], anchors[-1]
    tolerance = max(3, len(old_lines) * 0.2)
    for start, line in enumerate(content_lines):
        if line.strip() != first:
            continue
        expected_end = start + len(old_lines) - 1
        for end in range(max(start + 1, expected_end - 3), min(len(content_lines) - 1, expected_end + 3) + 1):
            if content_lines[end].strip() != last:
                continue
            if abs(end - start + 1 - len(old_lines)) <= tolerance:
                return _region_match(content, content_lines, old_lines, new, start, end + 1, "boundary")
    return None


def _substring(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    non_empty = [line for line in old_lines if line.strip()]
    if len(non_empty) < 2:
        return None
    anchor = non_empty[0]
    for line in non_empty[1:]:
        if len(line.strip()) > len(anchor.strip()):
            anchor = line
    anchor_text = anchor.strip()
    anchor_offset = next(i for i, line in enumerate(non_empty) if line.strip() == anchor_text)
    wanted = [line.strip() for line in non_empty]

    for index, line in enumerate(content_lines):
        if line.strip() != anchor_text:
            continue
        start = max(0, index - anchor_offset)
        region = {item.strip() for item in content_lines[start:min(len(content_lines), start + len(old_lines) + 2)]}
        matched = sum(1 for item in wanted if item in region)
        if matched >= len(non_empty) * FUZZY_THRESHOLD:
            end = min(len(content_lines), start + len(old_lines))
            return _region_match(content, content_lines, old_lines, new, start, end, "substring")
    return None


def _levenshtein(content: str, old: str, new: str, hint: int | None) -> StringMatch | None:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    if len(old_lines) < 2:
        return None
    max_distance = math.ceil(len(old_lines) * 0.3)
    best_distance = math.inf
    best_index = -1
    for delta in WINDOW_DELTAS:
        window_size = len(old_lines) + delta
        if window_size < 2 or window_size > len(content_lines):
            continue
        for index in range(len(content_lines) - window_size + 1):
            distance = line_edit_distance(old_lines, content_lines[index:index + window_size])
            if distance < best_distance and distance <= max_distance:
                best_distance = distance
                best_index = index
    if best_index == -1:
        return None
    return _region_match(content, content_lines, old_lines, new, best_index, best_index + len(old_lines), "levenshtein")


MatchStrategy = Callable[[str, str, str, "int | None"], "StringMatch | None"]

STRATEGIES: list[MatchStrategy] = [
    _exact,
    _whitespace_normalized,
    _indentation_agnostic,
    _line_fuzzy,
    _boundary,
    _substring,
    _levenshtein,
]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def find_match(content: str, old_string: str, new_string: str, start_line_hint: int | None = None) -> StringMatch:
    """Return the best match for ``old_string`` or raise :class:`MatchNotFoundError`."""

    normalized = _normalize_newlines(content)
    old = _normalize_newlines(fix_escape_sequences(old_string))
    new = _normalize_newlines(fix_escape_sequences(new_string))

    if not old.strip():
        raise MatchNotFoundError(
            "old_string is empty. Provide the text you want to replace.",
            {
                "actual_content": _numbered(normalized.split("\n")[:10], 0),
                "hint": "Provide the exact text you want to find and replace.",
            },
        )

    for strategy in STRATEGIES:
        match = strategy(normalized, old, new, start_line_hint)
        if match is not None:
            return match

    raise MatchNotFoundError(
        f"old_string not found in file (tried {len(STRATEGIES)} matching strategies). "
        "The text may have changed since you last read the file.",
        _closest_region_details(normalized, old),
    )


def _closest_region_details(content: str, old: str) -> dict[str, Any]:
    content_lines = content.split("\n")
    old_lines = old.split("\n")
    first_old = next((line.strip() for line in old_lines if line.strip()), "")

    closest_line = -1
    closest_similarity = 0.0
    region = ""
    if len(first_old) >= 5:
        for index, line in enumerate(content_lines):
            trimmed = line.strip()
            if not trimmed:
                continue
            similarity = string_similarity(trimmed, first_old)
            if similarity > closest_similarity and similarity > SIMILARITY_FLOOR:
                closest_similarity = similarity
                closest_line = index + 1
                start = max(0, index - 2)
                region = _numbered(content_lines[start:min(len(content_lines), index + len(old_lines) + 2)], start)

    if not region:
        region = _numbered(content_lines[:20], 0)

    hint = "Use read_file to see current file content, then copy the exact text you want to replace."
    if closest_line > 0 and closest_similarity > 0.5:
        hint = (
            f"Found similar text near line {closest_line} ({round(closest_similarity * 100)}% similar). "
            f"Use read_file with start_line={max(1, closest_line - 5)} to see exact content."
        )

    details: dict[str, Any] = {"actual_content": region, "hint": hint}
    if closest_line > 0:
        details["closest_match"] = region
        details["closest_line"] = closest_line
        details["similarity"] = round(closest_similarity * 100)
    return details


__all__ = [
    "MatchNotFoundError",
    "STRATEGIES",
    "StringMatch",
    "adjust_indentation",
    "find_match",
    "fix_escape_sequences",
    "line_edit_distance",
    "string_similarity",
]
