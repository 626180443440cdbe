"""Per-function control-flow graphs.

The function body is first parsed into a small statement tree (a token-level
recursive descent for the brace families, an indentation pass for Python),
then lowered to nodes and edges.  Lowering threads a list of *pending*
edges through the statements: the next node created receives all of them,
so join points after branches and loops exist only when something follows.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import FAMILY_PYTHON, FAMILY_RUST, family_of
from .errors import NotFoundError
from .masking import LineMap, collapse, find_matching, mask_source, split_top_level
from .models import CfgEdge, CfgGraph, CfgNode, ExitPath, IndexEntry, PathCondition, ScannedFile, ScanWarning
from .scanners import LogicalLine, header_colon, logical_lines

logger = logging.getLogger(__name__)

# Node kinds
ENTRY = "entry"
BRANCH = "branch"
LOOP_HEAD = "loop-head"
BLOCK = "statement-block"
JUMP = "jump"
EXIT = "exit"

# Edge kinds
FALLTHROUGH = "fallthrough"
TRUE = "true"
FALSE = "false"
CASE = "case"
BACK = "back"
LOOP_EXIT = "loop-exit"
EXCEPTION = "exception"
JUMP_EDGE = "jump"

TERMINAL_KINDS = ("return", "raise", "exit")


@dataclass
class Arm:
    label: str
    start: int
    body: List["Stmt"] = field(default_factory=list)


@dataclass
class Stmt:
    """One node of the statement tree.  Offsets index the file text."""

    kind: str
    start: int
    end: int
    header: str = ""
    body: List["Stmt"] = field(default_factory=list)
    orelse: List["Stmt"] = field(default_factory=list)
    arms: List[Arm] = field(default_factory=list)
    final: Optional[List["Stmt"]] = None
    infinite: bool = False
    post_test: bool = False
    fallthrough: bool = False
    exhaustive: bool = False
    label: Optional[str] = None


Pending = List[Tuple[int, str, Optional[str]]]


# ===================================================================
# Statement classification (shared)
# ===================================================================

_PANIC = re.compile(r"(?:panic|unreachable|todo|unimplemented)\s*!")
_EXIT_CALL = re.compile(
    r"(?:(?:std\s*::\s*)?process\s*::\s*exit|process\s*\.\s*exit|Deno\s*\.\s*exit"
    r"|sys\s*\.\s*exit|os\s*\.\s*_exit|exit|quit)\s*\("
)
_JUMP = re.compile(r"(break|continue)\b\s*('?)([A-Za-z_$][\w$]*)?\s*;?\s*$")

TRY_OP = "try-op"


def has_try_operator(text: str) -> bool:
    """Whether a Rust statement applies ``?`` outside any nested block."""
    depth = 0
    for i, ch in enumerate(text):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        elif ch == "?" and depth == 0 and not text.startswith("Sized", i + 1):
            return True
    return False


def classify_simple(text: str, rust: bool = False) -> Tuple[str, Optional[str]]:
    """Kind of a simple statement from its (masked) text.

    Rust labels carry a leading quote; a bare word after ``break`` there is
    the loop value.  A Rust statement using ``?`` is a conditional early
    return.
    """
    t = text.strip()
    m = _JUMP.match(t)
    if m:
        label = m.group(3)
        if rust and not m.group(2):
            label = None
        return m.group(1), label
    if re.match(r"(?:break|continue)\b", t):
        return t.split()[0].rstrip(";"), None
    if re.match(r"return\b", t):
        return "return", None
    if re.match(r"(?:throw|raise)\b", t) or _PANIC.match(t):
        return "raise", None
    if _EXIT_CALL.match(t):
        return "exit", None
    if rust and has_try_operator(t):
        return TRY_OP, None
    return "simple", None


# ===================================================================
# Brace-family parser
# ===================================================================

_WORD = re.compile(r"[A-Za-z_$][\w$]*")
_LABEL = re.compile(r"'?([A-Za-z_$][\w$]*)\s*:(?!:)\s*(?=(?:for|while|do|loop)\b)")
_CONT_END = set("=+-*/%&|^<>,.?:([{!~")
_CONT_START = set(".?:+-*/%&|^=<>,)]")
_DECL_WORDS = {"function", "fn", "class", "struct", "enum", "impl", "trait", "interface", "type", "mod"}


class _BraceParser:
    def __init__(self, text: str, raw: str, rust: bool, warn):
        self.text = text
        self.raw = raw
        self.rust = rust
        self.warn = warn

    def skip_ws(self, pos: int, end: int) -> int:
        while pos < end and self.text[pos].isspace():
            pos += 1
        return pos

    def word_at(self, pos: int) -> str:
        m = _WORD.match(self.text, pos)
        return m.group() if m else ""

    def parse_block(self, pos: int, end: int, stop_words: Sequence[str] = ()) -> Tuple[List[Stmt], int]:
        """Parse statements up to the ``}`` closing the current block."""
        stmts: List[Stmt] = []
        while True:
            pos = self.skip_ws(pos, end)
            if pos >= end:
                return stmts, end
            if self.text[pos] == "}":
                return stmts, pos + 1
            if stop_words and self.word_at(pos) in stop_words:
                return stmts, pos
            stmt, new_pos = self.parse_statement(pos, end)
            if stmt is not None:
                stmts.append(stmt)
            if new_pos <= pos:
                new_pos = pos + 1
            pos = new_pos

    def parse_braced(self, pos: int, end: int, what: str) -> Tuple[List[Stmt], int]:
        pos = self.skip_ws(pos, end)
        if pos < end and self.text[pos] == "{":
            close = find_matching(self.text, pos, end)
            if close is None:
                self.warn(pos, f"missing '}}' after {what}")
                body, _ = self.parse_block(pos + 1, end)
                return body, end
            body, _ = self.parse_block(pos + 1, close)
            return body, close + 1
        if self.rust:
            self.warn(pos, f"expected '{{' after {what}")
        stmt, new_pos = self.parse_statement(pos, end)
        return ([stmt] if stmt is not None else []), new_pos

    def header(self, pos: int, end: int) -> Tuple[str, int]:
        """Condition text after a keyword and the offset where the body starts."""
        pos = self.skip_ws(pos, end)
        if not self.rust and pos < end and self.text[pos] == "(":
            close = find_matching(self.text, pos, end)
            if close is not None:
                return self.raw[pos + 1:close], close + 1
            self.warn(pos, "unbalanced '(' in condition")
        depth = 0
        i = pos
        while i < end:
            ch = self.text[i]
            if ch in "([":
                depth += 1
            elif ch in ")]":
                depth -= 1
            elif ch == "{" and depth <= 0:
                return self.raw[pos:i], i
            elif ch in ";}" and depth <= 0:
                break
            i += 1
        self.warn(pos, "could not find block after condition")
        return self.raw[pos:i], i

    def statement_end(self, pos: int, end: int) -> int:
        text = self.text
        depth = 0
        i = pos
        while i < end:
            ch = text[i]
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                if depth == 0:
                    return i
                depth -= 1
                if depth == 0 and ch == "}" and self._ends_after_brace(i + 1, end):
                    return i + 1
            elif ch == ";" and depth == 0:
                return i + 1
            elif ch == "\n" and depth == 0 and self._newline_ends(pos, i, end):
                return i
            i += 1
        return end

    def _ends_after_brace(self, pos: int, end: int) -> bool:
        rest = self.text[pos:end]
        stripped = rest.lstrip()
        if not stripped:
            return True
        if "\n" not in rest[: len(rest) - len(stripped)]:
            return False
        if stripped[0] in _CONT_START or stripped[0] == ";":
            return False
        return self.word_at(pos + len(rest) - len(stripped)) not in ("else", "catch", "finally", "while", "as")

    def _newline_ends(self, start: int, pos: int, end: int) -> bool:
        before = self.text[start:pos].rstrip()
        if not before or before[-1] in _CONT_END:
            return False
        after = self.text[pos:end].lstrip()
        if not after:
            return True
        if after[0] in _CONT_START or after.startswith("=>"):
            return False
        return True

    def parse_statement(self, pos: int, end: int) -> Tuple[Optional[Stmt], int]:
        text = self.text
        pos = self.skip_ws(pos, end)
        if pos >= end:
            return None, end
        ch = text[pos]
        if ch == "}":
            return None, pos
        if ch == ";":
            return None, pos + 1
        if ch == "{":
            body, new_pos = self.parse_braced(pos, end, "block")
            return Stmt("block", pos, new_pos, body=body), new_pos

        label = None
        lm = _LABEL.match(text, pos)
        if lm:
            label = lm.group(1)
            pos = lm.end()

        word = self.word_at(pos)
        after = pos + len(word)
        if word == "if":
            return self._parse_if(pos, after, end)
        if word in ("while", "for") or (self.rust and word == "loop"):
            stmt, new_pos = self._parse_loop(word, pos, after, end)
            stmt.label = label
            return stmt, new_pos
        if word == "do" and not self.rust:
            body, p = self.parse_braced(after, end, "do")
            p = self.skip_ws(p, end)
            cond = ""
            if self.word_at(p) == "while":
                cond, p = self.header(p + 5, end)
                p = self.skip_ws(p, end)
                if p < end and text[p] == ";":
                    p += 1
            else:
                self.warn(p, "'do' without 'while'")
            return Stmt("loop", pos, p, header=f"do ... while ({cond.strip()})", body=body,
                        post_test=True, label=label), p
        if word == "switch" and not self.rust:
            return self._parse_switch(pos, after, end)
        if word == "match" and self.rust:
            return self._parse_match(pos, after, end)
        if word == "try" and not self.rust:
            return self._parse_try(pos, after, end)
        if word == "else":
            self.warn(pos, "'else' without matching 'if'")
            body, new_pos = self.parse_braced(after, end, "else")
            return Stmt("block", pos, new_pos, body=body), new_pos
        if self.rust and word in ("unsafe", "async", "const") and text[self.skip_ws(after, end):self.skip_ws(after, end) + 1] == "{":
            body, new_pos = self.parse_braced(after, end, word)
            return Stmt("block", pos, new_pos, body=body), new_pos

        stmt_end = self.statement_end(pos, end)
        kind, target = ("simple", None) if word in _DECL_WORDS else classify_simple(text[pos:stmt_end], self.rust)
        return Stmt(kind, pos, stmt_end, label=target), stmt_end

    def _parse_if(self, start: int, after: int, end: int) -> Tuple[Stmt, int]:
        cond, body_at = self.header(after, end)
        then, p = self.parse_braced(body_at, end, "if")
        orelse: List[Stmt] = []
        q = self.skip_ws(p, end)
        if self.word_at(q) == "else":
            r = self.skip_ws(q + 4, end)
            if self.word_at(r) == "if":
                nested, p = self.parse_statement(r, end)
                orelse = [nested] if nested is not None else []
            else:
                orelse, p = self.parse_braced(r, end, "else")
        return Stmt("if", start, p, header=cond, body=then, orelse=orelse), p

    def _parse_loop(self, word: str, start: int, after: int, end: int) -> Tuple[Stmt, int]:
        if word == "loop":
            body, p = self.parse_braced(after, end, "loop")
            return Stmt("loop", start, p, header="loop", body=body, infinite=True), p
        p = self.skip_ws(after, end)
        if self.word_at(p) == "await":
            p += 5
        cond, body_at = self.header(p, end)
        body, p = self.parse_braced(body_at, end, word)
        stripped = cond.strip()
        infinite = False
        if word == "while":
            infinite = stripped in ("true", "1", "(true)")
        elif not self.rust:
            parts = split_top_level(stripped, ";")
            infinite = len(parts) == 3 and not parts[1].strip()
        return Stmt("loop", start, p, header=f"{word} {collapse(stripped)}", body=body,
                    infinite=infinite), p

    def _parse_switch(self, start: int, after: int, end: int) -> Tuple[Stmt, int]:
        subject, body_at = self.header(after, end)
        body_at = self.skip_ws(body_at, end)
        close = find_matching(self.text, body_at, end) if body_at < end and self.text[body_at] == "{" else None
        if close is None:
            self.warn(body_at, "malformed switch body")
            close = end
        arms: List[Arm] = []
        pos = body_at + 1
        while True:
            pos = self.skip_ws(pos, close)
            if pos >= close:
                break
            word = self.word_at(pos)
            if word not in ("case", "default"):
                stmt, pos = self.parse_statement(pos, close)
                if stmt is not None:
                    self.warn(stmt.start, "statement before first case label")
                continue
            colon = self._label_colon(pos + len(word), close)
            label = "default" if word == "default" else collapse(self.raw[pos + 4:colon].strip())
            body, pos = self.parse_block(colon + 1, close, stop_words=("case", "default"))
            arms.append(Arm(label, pos, body))
        p = min(close + 1, end)
        return Stmt("switch", start, p, header=f"switch ({collapse(subject.strip())})", arms=arms,
                    fallthrough=True), p

    def _label_colon(self, pos: int, end: int) -> int:
        depth = 0
        for i in range(pos, end):
            ch = self.text[i]
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
            elif ch == ":" and depth == 0:
                return i
        return end

    def _parse_match(self, start: int, after: int, end: int) -> Tuple[Stmt, int]:
        subject, body_at = self.header(after, end)
        close = find_matching(self.text, body_at, end) if body_at < end and self.text[body_at] == "{" else None
        if close is None:
            self.warn(body_at, "malformed match body")
            close = end
        arms: List[Arm] = []
        pos = body_at + 1
        text = self.text
        while True:
            pos = self.skip_ws(pos, close)
            if pos >= close:
                break
            arrow = text.find("=>", pos, close)
            if arrow < 0:
                self.warn(pos, "match arm without '=>'")
                break
            label = collapse(self.raw[pos:arrow].strip())
            body_pos = self.skip_ws(arrow + 2, close)
            if body_pos < close and text[body_pos] == "{":
                body, pos = self.parse_braced(body_pos, close, "match arm")
            else:
                arm_end = self._arm_end(body_pos, close)
                kind, target = classify_simple(text[body_pos:arm_end], self.rust)
                body = [Stmt(kind, body_pos, arm_end, label=target)]
                pos = arm_end
            pos = self.skip_ws(pos, close)
            if pos < close and text[pos] == ",":
                pos += 1
            arms.append(Arm(label, body_pos, body))
        p = min(close + 1, end)
        return Stmt("switch", start, p, header=f"match {collapse(subject.strip())}", arms=arms,
                    exhaustive=True), p

    def _arm_end(self, pos: int, end: int) -> int:
        depth = 0
        for i in range(pos, end):
            ch = self.text[i]
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
            elif ch == "," and depth == 0:
                return i
        return end

    def _parse_try(self, start: int, after: int, end: int) -> Tuple[Stmt, int]:
        body, p = self.parse_braced(after, end, "try")
        arms: List[Arm] = []
        final = None
        while True:
            q = self.skip_ws(p, end)
            word = self.word_at(q)
            if word == "catch":
                r = self.skip_ws(q + 5, end)
                label = "catch"
                if r < end and self.text[r] == "(":
                    close = find_matching(self.text, r, end)
                    if close is not None:
                        label = f"catch ({collapse(self.raw[r + 1:close])})"
                        r = close + 1
                handler, p = self.parse_braced(r, end, "catch")
                arms.append(Arm(label, q, handler))
            elif word == "finally":
                final, p = self.parse_braced(q + 7, end, "finally")
            else:
                break
        if not arms and final is None:
            self.warn(start, "'try' without 'catch' or 'finally'")
        return Stmt("try", start, p, header="try", body=body, arms=arms, final=final), p


# ===================================================================
# Python parser
# ===================================================================

_PY_COMPOUND = {"if", "elif", "else", "for", "while", "try", "except", "finally", "with",
                "match", "case", "def", "class", "async"}


class _PythonParser:
    def __init__(self, masked: str, raw: str, lines: List[LogicalLine], warn):
        self.masked = masked
        self.raw = raw
        self.lines = lines
        self.warn = warn

    @staticmethod
    def first_word(ll: LogicalLine) -> str:
        m = re.match(r"[A-Za-z_]\w*", ll.text)
        return m.group() if m else ""

    def _split_header(self, ll: LogicalLine) -> Tuple[str, str, Optional[int]]:
        colon = header_colon(self.masked, ll.start, ll.end)
        if colon is None:
            return ll.text, "", None
        return self.raw[ll.start:colon], self.masked[colon + 1:ll.end].strip(), colon + 1

    def parse_suite(self, i: int) -> Tuple[List[Stmt], int]:
        stmts: List[Stmt] = []
        if i >= len(self.lines):
            return stmts, i
        indent = self.lines[i].indent
        while i < len(self.lines) and self.lines[i].indent >= indent:
            ll = self.lines[i]
            if ll.indent > indent:
                self.warn(ll.start, "unexpected indent")
                body, i = self.parse_suite(i)
                stmts.append(Stmt("block", ll.start, ll.end, body=body))
                continue
            stmt, i = self.parse_statement(i)
            if stmt is not None:
                stmts.append(stmt)
        return stmts, i

    def block(self, i: int) -> Tuple[List[Stmt], int, str]:
        """Body of the compound statement at line *i* (inline or indented)."""
        ll = self.lines[i]
        header, inline, inline_at = self._split_header(ll)
        if inline:
            body = []
            for part in split_top_level(inline, ";"):
                if part.strip():
                    kind, target = classify_simple(part)
                    body.append(Stmt(kind, inline_at, ll.end, label=target))
            return body, i + 1, header
        if i + 1 < len(self.lines) and self.lines[i + 1].indent > ll.indent:
            body, nxt = self.parse_suite(i + 1)
            return body, nxt, header
        self.warn(ll.start, "expected an indented block")
        return [], i + 1, header

    def _continues(self, i: int, indent: int, words: Sequence[str]) -> bool:
        return (
            i < len(self.lines)
            and self.lines[i].indent == indent
            and self.first_word(self.lines[i]) in words
        )

    def parse_statement(self, i: int) -> Tuple[Optional[Stmt], int]:
        ll = self.lines[i]
        m = re.match(r"(?:async\s+)?([A-Za-z_]\w*)", ll.text)
        word = m.group(1) if m else ""
        if word not in _PY_COMPOUND or header_colon(self.masked, ll.start, ll.end) is None:
            kind, target = classify_simple(ll.text)
            return Stmt(kind, ll.start, ll.end, label=target), i + 1

        if word == "if":
            return self._parse_if(i)
        if word in ("for", "while"):
            body, nxt, header = self.block(i)
            cond = header.strip()[len(word):].strip()
            infinite = word == "while" and cond in ("True", "1", "(True)")
            orelse: List[Stmt] = []
            if self._continues(nxt, ll.indent, ("else",)):
                orelse, nxt, _ = self.block(nxt)
            end = self.lines[nxt - 1].end
            return Stmt("loop", ll.start, end, header=collapse(header.strip()), body=body,
                        orelse=orelse, infinite=infinite), nxt
        if word == "try":
            body, nxt, _ = self.block(i)
            arms: List[Arm] = []
            orelse = []
            final = None
            while self._continues(nxt, ll.indent, ("except", "else", "finally")):
                kw = self.first_word(self.lines[nxt])
                start = self.lines[nxt].start
                part, after, header = self.block(nxt)
                if kw == "except":
                    arms.append(Arm(collapse(header.strip()), start, part))
                elif kw == "else":
                    orelse = part
                else:
                    final = part
                nxt = after
            end = self.lines[nxt - 1].end
            return Stmt("try", ll.start, end, header="try", body=body, arms=arms, orelse=orelse,
                        final=final), nxt
        if word == "with":
            body, nxt, header = self.block(i)
            head = Stmt("simple", ll.start, ll.start + len(header))
            return Stmt("block", ll.start, self.lines[nxt - 1].end, header=collapse(header),
                        body=[head] + body), nxt
        if word == "match":
            return self._parse_match(i)
        if word in ("def", "class"):
            nxt = i + 1
            while nxt < len(self.lines) and self.lines[nxt].indent > ll.indent:
                nxt += 1
            return Stmt("simple", ll.start, self.lines[nxt - 1].end), nxt
        self.warn(ll.start, f"'{word}' without matching statement")
        body, nxt, _ = self.block(i)
        return Stmt("block", ll.start, self.lines[nxt - 1].end, body=body), nxt

    def _parse_if(self, i: int) -> Tuple[Stmt, int]:
        ll = self.lines[i]
        body, nxt, header = self.block(i)
        root = Stmt("if", ll.start, ll.end, header=header.strip()[2:].strip(), body=body)
        current = root
        while self._continues(nxt, ll.indent, ("elif", "else")):
            line = self.lines[nxt]
            kw = self.first_word(line)
            part, after, part_header = self.block(nxt)
            if kw == "elif":
                nested = Stmt("if", line.start, line.end, header=part_header.strip()[4:].strip(), body=part)
                current.orelse = [nested]
                current = nested
                nxt = after
            else:
                current.orelse = part
                nxt = after
                break
        root.end = self.lines[nxt - 1].end
        return root, nxt

    def _parse_match(self, i: int) -> Tuple[Stmt, int]:
        ll = self.lines[i]
        header, _, _ = self._split_header(ll)
        nxt = i + 1
        arms: List[Arm] = []
        if nxt < len(self.lines) and self.lines[nxt].indent > ll.indent:
            case_indent = self.lines[nxt].indent
            while nxt < len(self.lines) and self.lines[nxt].indent == case_indent:
                line = self.lines[nxt]
                if self.first_word(line) != "case":
                    self.warn(line.start, "expected 'case' inside match")
                    nxt += 1
                    continue
                body, nxt, case_header = self.block(nxt)
                arms.append(Arm(collapse(case_header.strip()[4:].strip()), line.start, body))
        else:
            self.warn(ll.start, "expected an indented block")
        end = self.lines[nxt - 1].end
        return Stmt("switch", ll.start, end, header=collapse(header.strip()), arms=arms), nxt


# ===================================================================
# Lowering
# ===================================================================

@dataclass
class _Breakable:
    head: Optional[int]
    is_loop: bool
    label: Optional[str] = None
    breaks: Pending = field(default_factory=list)


class _Lowering:
    def __init__(self, graph: CfgGraph, raw: str, lines: LineMap, warn):
        self.graph = graph
        self.raw = raw
        self.lines = lines
        self.warn = warn
        self.open_block: Optional[int] = None
        self.stack: List[_Breakable] = []

    def node(self, kind: str, start: int, end: int, label: str, exit_kind: Optional[str] = None) -> int:
        nid = len(self.graph.nodes)
        start_line = self.lines.line_of(start)
        end_line = max(start_line, self.lines.line_of(max(start, end - 1)))
        self.graph.nodes.append(CfgNode(nid, kind, start_line, end_line, label, exit_kind=exit_kind))
        self.open_block = nid if kind == BLOCK else None
        if kind == EXIT:
            self.graph.exits.append(nid)
        return nid

    def edge(self, src: int, dst: int, kind: str, condition: Optional[str] = None) -> None:
        eid = len(self.graph.edges)
        self.graph.edges.append(CfgEdge(eid, src, dst, kind, condition))
        self.graph.nodes[src].out_edges.append(eid)

    def connect(self, pending: Pending, dst: int) -> None:
        for src, kind, cond in pending:
            self.edge(src, dst, kind, cond)

    def text(self, start: int, end: int, limit: int = 48) -> str:
        return collapse(self.raw[start:end], limit)

    def lower(self, stmts: Sequence[Stmt], pending: Pending) -> Pending:
        for stmt in stmts:
            pending = self.lower_one(stmt, pending)
        return pending

    def lower_one(self, st: Stmt, pending: Pending) -> Pending:
        kind = st.kind
        if kind == "simple":
            if self.open_block is not None and pending == [(self.open_block, FALLTHROUGH, None)]:
                node = self.graph.nodes[self.open_block]
                node.end_line = max(node.end_line, self.lines.line_of(max(st.start, st.end - 1)))
                return pending
            nid = self.node(BLOCK, st.start, st.end, self.text(st.start, st.end))
            self.connect(pending, nid)
            return [(nid, FALLTHROUGH, None)]
        if kind in TERMINAL_KINDS:
            nid = self.node(EXIT, st.start, st.end, self.text(st.start, st.end), exit_kind=kind)
            self.connect(pending, nid)
            return []
        if kind == TRY_OP:
            text = self.text(st.start, st.end)
            nid = self.node(BRANCH, st.start, st.end, text)
            self.connect(pending, nid)
            early = self.node(EXIT, st.start, st.end, "? early return", exit_kind="return")
            self.edge(nid, early, FALSE, text)
            return [(nid, TRUE, text)]
        if kind in ("break", "continue"):
            return self._lower_jump(st, pending)
        if kind == "if":
            cond = collapse(st.header) if st.header else ""
            nid = self.node(BRANCH, st.start, st.start + 1, f"if {cond}".strip())
            self.connect(pending, nid)
            then = self.lower(st.body, [(nid, TRUE, cond)])
            if st.orelse:
                other = self.lower(st.orelse, [(nid, FALSE, cond)])
            else:
                other = [(nid, FALSE, cond)]
            return then + other
        if kind == "loop":
            return self._lower_loop(st, pending)
        if kind == "switch":
            return self._lower_switch(st, pending)
        if kind == "try":
            return self._lower_try(st, pending)
        if kind == "block":
            return self.lower(st.body, pending)
        self.warn(st.start, f"unknown statement kind '{kind}'")
        return pending

    def _lower_jump(self, st: Stmt, pending: Pending) -> Pending:
        nid = self.node(JUMP, st.start, st.end, self.text(st.start, st.end))
        self.connect(pending, nid)
        target = None
        for ctx in reversed(self.stack):
            if st.label is not None:
                if ctx.label == st.label:
                    target = ctx
                    break
                continue
            if st.kind == "continue" and not ctx.is_loop:
                continue
            target = ctx
            break
        if target is None:
            self.warn(st.start, f"'{st.kind}' outside of a loop")
            return []
        if st.kind == "continue" and target.head is not None:
            self.edge(nid, target.head, JUMP_EDGE)
        else:
            target.breaks.append((nid, JUMP_EDGE, None))
        return []

    def _lower_loop(self, st: Stmt, pending: Pending) -> Pending:
        cond = st.header
        head = self.node(LOOP_HEAD, st.start, st.start + 1, cond)
        self.connect(pending, head)
        ctx = _Breakable(head, True, st.label)
        self.stack.append(ctx)
        enter_kind = FALLTHROUGH if st.infinite or st.post_test else TRUE
        body_out = self.lower(st.body, [(head, enter_kind, None if st.infinite else cond)])
        for src, _, c in body_out:
            self.edge(src, head, BACK, c)
        self.stack.pop()
        self.open_block = None
        if st.infinite:
            return list(ctx.breaks)
        normal: Pending = [(head, LOOP_EXIT, cond)]
        if st.orelse:
            normal = self.lower(st.orelse, normal)
        return normal + ctx.breaks

    def _lower_switch(self, st: Stmt, pending: Pending) -> Pending:
        nid = self.node(BRANCH, st.start, st.start + 1, st.header)
        self.connect(pending, nid)
        ctx = _Breakable(None, False)
        self.stack.append(ctx)
        out: Pending = []
        carry: Pending = []
        has_default = False
        for arm in st.arms:
            if arm.label in ("default", "_"):
                has_default = True
            incoming = [(nid, CASE, arm.label)] + (carry if st.fallthrough else [])
            result = self.lower(arm.body, incoming)
            if st.fallthrough:
                carry = result
            else:
                out.extend(result)
        out.extend(carry)
        self.stack.pop()
        self.open_block = None
        if not has_default and not st.exhaustive:
            out.append((nid, FALSE, "no match"))
        return out + ctx.breaks

    def _lower_try(self, st: Stmt, pending: Pending) -> Pending:
        nid = self.node(BRANCH, st.start, st.start + 1, "try")
        self.connect(pending, nid)
        out = self.lower(st.body, [(nid, FALLTHROUGH, None)])
        if st.orelse:
            out = self.lower(st.orelse, out)
        for arm in st.arms:
            out = out + self.lower(arm.body, [(nid, EXCEPTION, arm.label)])
        if st.final is not None:
            out = self.lower(st.final, out + [(nid, EXCEPTION, "finally")])
        self.open_block = None
        return out


# ===================================================================
# Public API
# ===================================================================

def reachable_from(graph: CfgGraph, start: int) -> List[int]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in graph.successors(current):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return sorted(seen)


MAX_EXIT_PATHS = 1000

_CONDITION_KINDS = {TRUE: True, CASE: True, EXCEPTION: True, FALSE: False, LOOP_EXIT: False}


def _path_condition(graph: CfgGraph, edge: CfgEdge) -> Optional[PathCondition]:
    if edge.condition is None or edge.kind not in _CONDITION_KINDS:
        return None
    return PathCondition(edge.condition, _CONDITION_KINDS[edge.kind], graph.nodes[edge.src].start_line)


def exit_paths(graph: CfgGraph, limit: int = MAX_EXIT_PATHS) -> Tuple[List[ExitPath], bool]:
    """Entry-to-exit paths with the branch decisions taken along each.

    A path never revisits a node, so loops are walked at most once per path.
    Enumeration stops after *limit* paths; the flag reports that it did.
    """
    found: List[ExitPath] = []
    if not graph.nodes:
        return found, False
    exits = set(graph.exits)
    path = [graph.entry]
    on_path = {graph.entry}
    conditions: List[PathCondition] = []
    stack = [(iter(graph.nodes[graph.entry].out_edges), False)]
    while stack:
        edges, pushed = stack[-1]
        eid = next(edges, None)
        if eid is None:
            stack.pop()
            on_path.discard(path.pop())
            if pushed:
                conditions.pop()
            continue
        edge = graph.edges[eid]
        if edge.dst in on_path:
            continue
        condition = _path_condition(graph, edge)
        if edge.dst in exits:
            taken = conditions + ([condition] if condition is not None else [])
            exit_kind = graph.nodes[edge.dst].exit_kind or "return"
            found.append(ExitPath(path + [edge.dst], taken, edge.dst, exit_kind))
            if len(found) >= limit:
                logger.warning("Stopped after %d exit paths in %s", limit, graph.function_id)
                return found, True
            continue
        if condition is not None:
            conditions.append(condition)
        path.append(edge.dst)
        on_path.add(edge.dst)
        stack.append((iter(graph.nodes[edge.dst].out_edges), condition is not None))
    return found, False


def parse_statements(file: ScannedFile, entry: IndexEntry, warn) -> List[Stmt]:
    """Statement tree of *entry*'s body."""
    masked = mask_source(file.content, file.language)
    family = family_of(file.language)
    start, end = entry.body_offset, entry.end_offset
    if family == FAMILY_PYTHON:
        lines, depth = logical_lines(masked, start, end)
        if depth > 0:
            warn(start, f"{depth} unclosed bracket(s) in body")
        parser = _PythonParser(masked, file.content, lines, warn)
        stmts: List[Stmt] = []
        i = 0
        while i < len(lines):
            part, i = parser.parse_suite(i)
            stmts.extend(part)
        return stmts
    braced = start > 0 and masked[start - 1] == "{"
    if not braced:
        # Expression-bodied arrow function.
        return [Stmt("return", start, end)]
    if end > start and masked[end - 1] == "}":
        end -= 1
    parser = _BraceParser(masked, file.content, family == FAMILY_RUST, warn)
    stmts, _ = parser.parse_block(start, end)
    return stmts


def build_for_entry(file: ScannedFile, entry: IndexEntry, include_diagram: bool = False) -> CfgGraph:
    graph = CfgGraph(
        function_id=entry.id,
        name=entry.name,
        file=file.path,
        language=file.language,
        start_line=entry.start_line,
    )
    lines = LineMap(file.content)

    def warn(offset: int, message: str) -> None:
        graph.warnings.append(ScanWarning(file.path, message, lines.line_of(offset)))

    stmts = parse_statements(file, entry, warn)
    lowering = _Lowering(graph, file.content, lines, warn)
    entry_node = lowering.node(ENTRY, entry.decl_offset, entry.decl_offset + 1, entry.name)
    graph.entry = entry_node
    pending = lowering.lower(stmts, [(entry_node, FALLTHROUGH, None)])
    if pending:
        last = max(entry.decl_offset, entry.end_offset - 1)
        exit_node = lowering.node(EXIT, last, last + 1, "end", exit_kind="return")
        lowering.connect(pending, exit_node)

    reached = set(reachable_from(graph, graph.entry))
    graph.unreachable = [n.id for n in graph.nodes if n.id not in reached]
    graph.exits = sorted(graph.exits)
    graph.exit_paths, graph.exit_paths_truncated = exit_paths(graph)
    graph.warnings.sort(key=lambda w: (w.line or 0, w.message))
    if include_diagram:
        from .graph_export import render_mermaid

        graph.diagram = render_mermaid(graph)
    logger.debug(
        "CFG for %s: %d nodes, %d edges, %d unreachable, %d exit path(s)",
        entry.id, len(graph.nodes), len(graph.edges), len(graph.unreachable), len(graph.exit_paths),
    )
    return graph


def find_function(file: ScannedFile, function_name: str, entries: Sequence[IndexEntry]) -> Tuple[IndexEntry, int]:
    """Pick the entry named *function_name* in *file*.

    Accepts the id, the qualified name or the bare name.  Returns the first
    match by line and the total number of matches.

    Raises:
        NotFoundError: No function of that name is indexed for *file*.
    """
    matches = [
        e for e in entries
        if e.file == file.path and e.kind != "module"
        and function_name in (e.id, e.name, e.bare_name)
    ]
    if not matches:
        raise NotFoundError(f"Function '{function_name}' not found in {file.path}")
    matches.sort(key=lambda e: (e.start_line, e.id))
    return matches[0], len(matches)


def build(
    file: ScannedFile,
    function_name: str,
    entries: Sequence[IndexEntry],
    include_diagram: bool = False,
) -> CfgGraph:
    """Control-flow graph of one function of *file*."""
    entry, count = find_function(file, function_name, entries)
    graph = build_for_entry(file, entry, include_diagram)
    if count > 1:
        graph.warnings.insert(
            0,
            ScanWarning(
                file.path,
                f"'{function_name}' matches {count} functions; using the one at line {entry.start_line}",
                entry.start_line,
            ),
        )
    return graph
