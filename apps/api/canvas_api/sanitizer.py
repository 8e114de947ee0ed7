from __future__ import annotations

import re

from .lexer import ScanState, scan, step

_FENCE_RE = re.compile(r"```[\w+-]*(?=\s*\n)|```", re.IGNORECASE)
_OBJECT_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)
_LINE_BREAK_RE = re.compile(r"\r\n?")


def strip_fences(text: str) -> str:
    """
    Delete triple-backtick fences.

    A language tag is only part of a fence when a line break follows it, so
    backticks quoted inside a string value lose the backticks but keep the
    word after them.
    """
    return _FENCE_RE.sub("", text)


def isolate_object(text: str) -> str:
    if text.startswith("{"):
        return text
    match = _OBJECT_SPAN_RE.search(text)
    if match:
        return match.group(0)
    return text


def remove_trailing_commas(text: str) -> str:
    """Drop commas that are followed, after optional whitespace, by ``}`` or ``]``."""
    result: list[str] = []
    skip_until = -1
    for index, char, state in scan(text):
        if index < skip_until:
            continue
        if char == "," and state is ScanState.normal:
            lookahead = index + 1
            while lookahead < len(text) and text[lookahead].isspace():
                lookahead += 1
            if lookahead < len(text) and text[lookahead] in "}]":
                skip_until = lookahead
                continue
        result.append(char)
    return "".join(result)


def _sanitize_once(text: str) -> str:
    sanitized = strip_fences(text).strip()
    sanitized = isolate_object(sanitized)
    sanitized = _LINE_BREAK_RE.sub("\n", sanitized)
    sanitized = sanitized.replace("\x00", "")
    sanitized = remove_trailing_commas(sanitized)
    return sanitized.strip()


def sanitize_json_text(text: str) -> str:
    """
    Turn raw model output into a JSON object candidate.

    Fences are removed, the outermost ``{...}`` span is isolated when the text
    does not already start with ``{``, line breaks are normalized to ``\\n``,
    NUL characters are dropped and trailing commas outside string literals are
    removed. Every pass only deletes characters, so the passes are repeated
    until the text stops changing; dropping a NUL or a comma can otherwise
    expose a new fence or trailing comma.
    """
    if not text:
        return ""
    sanitized = text
    while True:
        cleaned = _sanitize_once(sanitized)
        if cleaned == sanitized:
            return cleaned
        sanitized = cleaned


def has_balanced_delimiters(text: str) -> bool:
    depth = 0
    state = ScanState.normal
    for char in text:
        if state is ScanState.normal:
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth < 0:
                    return False
        state = step(state, char)
    return depth == 0 and state is ScanState.normal


def is_likely_truncated(text: str) -> bool:
    """
    Cheap structural check for JSON that was cut off mid-object.

    This never parses the candidate; it only tells "ran out of tokens" apart
    from other decode failures.
    """
    trimmed = text.strip()
    if not trimmed:
        return True
    if not trimmed.startswith("{") or not trimmed.endswith("}"):
        return True
    return not has_balanced_delimiters(trimmed)
