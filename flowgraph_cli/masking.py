"""Comment and string masking plus small text-offset helpers.

Every scanner works on *masked* text: comment bodies and string-literal
contents are replaced by spaces.  The masked text has exactly the same length
and newline positions as the original, so offsets and line numbers found on
the masked copy are valid in the raw source too.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from functools import lru_cache
from typing import List, Optional

from .config import FAMILY_PYTHON, FAMILY_RUST, family_of

OPENERS = {"(": ")", "[": "]", "{": "}"}
CLOSERS = {")": "(", "]": "[", "}": "{"}

_RUST_RAW_STRING = re.compile(r'r(#*)"')
_RUST_CHAR = re.compile(r"'(?:\\(?:u\{[0-9A-Fa-f]{1,6}\}|x[0-9A-Fa-f]{2}|.)|[^\\'\n])'")
_PY_STRING_START = re.compile(r"('''|\"\"\"|'|\")")


def _blank(out: List[str], start: int, end: int) -> None:
    for i in range(start, end):
        if out[i] != "\n":
            out[i] = " "


def _string_end(text: str, start: int, quote: str, multiline: bool) -> int:
    """Index just past the closing *quote*, or where the literal gives up."""
    i, n = start, len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        if ch == "\n" and not multiline:
            return i
        i += 1
    return n


def _block_comment_end(text: str, start: int, nested: bool) -> int:
    depth = 0
    i, n = start, len(text)
    while i < n:
        pair = text[i:i + 2]
        if pair == "/*":
            depth += 1
            i += 2
            if not nested and depth > 1:
                depth = 1
            continue
        if pair == "*/":
            depth -= 1
            i += 2
            if depth == 0:
                return i
            continue
        i += 1
    return n


def _mask_braced(text: str, rust: bool) -> str:
    out = list(text)
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            end = text.find("\n", i)
            end = n if end < 0 else end
            _blank(out, i, end)
            i = end
            continue
        if ch == "/" and nxt == "*":
            end = _block_comment_end(text, i, nested=rust)
            _blank(out, i, end)
            i = end
            continue
        if rust and ch == "r" and (i == 0 or not (text[i - 1].isalnum() or text[i - 1] == "_")):
            m = _RUST_RAW_STRING.match(text, i)
            if m:
                closing = '"' + m.group(1)
                close_at = text.find(closing, m.end())
                end = n if close_at < 0 else close_at
                _blank(out, m.end(), end)
                i = n if close_at < 0 else close_at + len(closing)
                continue
        if ch == '"' or (not rust and ch in "'`"):
            end = _string_end(text, i + 1, ch, multiline=rust or ch == "`")
            inner_end = end - 1 if end > i + 1 and text[end - 1] == ch else end
            _blank(out, i + 1, inner_end)
            i = end
            continue
        if rust and ch == "'":
            m = _RUST_CHAR.match(text, i)
            if m:
                _blank(out, i + 1, m.end() - 1)
                i = m.end()
                continue
        i += 1
    return "".join(out)


def _mask_python(text: str) -> str:
    out = list(text)
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch == "#":
            end = text.find("\n", i)
            end = n if end < 0 else end
            _blank(out, i, end)
            i = end
            continue
        if ch in "'\"":
            m = _PY_STRING_START.match(text, i)
            quote = m.group(1)
            if len(quote) == 3:
                close_at = i + 3
                while True:
                    close_at = text.find(quote, close_at)
                    if close_at < 0:
                        close_at = n
                        break
                    backslashes = 0
                    k = close_at - 1
                    while k >= i + 3 and text[k] == "\\":
                        backslashes += 1
                        k -= 1
                    if backslashes % 2 == 0:
                        break
                    close_at += 1
                _blank(out, i + 3, close_at)
                i = min(n, close_at + 3)
                continue
            end = _string_end(text, i + 1, ch, multiline=False)
            inner_end = end - 1 if end > i + 1 and text[end - 1] == ch else end
            _blank(out, i + 1, inner_end)
            i = end
            continue
        i += 1
    return "".join(out)


@lru_cache(maxsize=512)
def mask_source(text: str, language: str) -> str:
    """Return *text* with comments and string contents blanked out.

    String delimiters are kept so statement structure (``import "x"``,
    docstrings) stays recognisable.
    """
    family = family_of(language)
    if family == FAMILY_PYTHON:
        return _mask_python(text)
    return _mask_braced(text, rust=family == FAMILY_RUST)


class LineMap:
    """Offset -> 1-based line number lookups over one text."""

    def __init__(self, text: str):
        self.starts = [0]
        for m in re.finditer("\n", text):
            self.starts.append(m.end())

    def line_of(self, offset: int) -> int:
        return bisect_right(self.starts, offset)


def find_matching(text: str, open_at: int, end: Optional[int] = None) -> Optional[int]:
    """Index of the bracket closing the one at *open_at*, or None.

    Only the bracket kind at *open_at* is tracked, other kinds are counted but
    not validated, matching the tolerance the scanners need on masked text.
    """
    opener = text[open_at]
    closer = OPENERS[opener]
    depth = 0
    limit = len(text) if end is None else end
    for i in range(open_at, limit):
        ch = text[i]
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return None


def split_top_level(text: str, sep: str = ",") -> List[str]:
    """Split on *sep* outside of (), [], {} and <> nesting."""
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    prev = ""
    for ch in text:
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif ch == "<":
            depth += 1
        elif ch == ">" and prev not in "-=" and depth > 0:
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        prev = ch
    tail = "".join(current)
    if tail.strip() or parts:
        parts.append(tail)
    return parts


def collapse(text: str, limit: int = 60) -> str:
    """Single-line, whitespace-collapsed preview of *text*."""
    flat = " ".join(text.split())
    if len(flat) > limit:
        flat = flat[: limit - 3].rstrip() + "..."
    return flat
