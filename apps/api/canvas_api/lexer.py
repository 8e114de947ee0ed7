from __future__ import annotations

from enum import Enum
from typing import Iterator


class ScanState(str, Enum):
    normal = "normal"
    in_string = "in_string"
    escaped = "escaped"


def step(state: ScanState, char: str) -> ScanState:
    """Return the state after consuming ``char`` in ``state``."""
    if state is ScanState.escaped:
        return ScanState.in_string
    if state is ScanState.in_string:
        if char == "\\":
            return ScanState.escaped
        if char == '"':
            return ScanState.normal
        return ScanState.in_string
    if char == '"':
        return ScanState.in_string
    return ScanState.normal


def scan(text: str) -> Iterator[tuple[int, str, ScanState]]:
    """
    Walk ``text`` one character at a time.

    Yields ``(index, char, state)`` where ``state`` is the state the character
    was read in. Only characters read in ``ScanState.normal`` are structural;
    the quote that opens a string is read in ``normal`` as well, the one that
    closes it in ``in_string``, and the character after a backslash in
    ``escaped``.
    """
    state = ScanState.normal
    for index, char in enumerate(text):
        yield index, char, state
        state = step(state, char)
