"""Heuristic declaration scanners, one per syntax family.

Each scanner reads the masked text of a file and emits ``IndexEntry`` records
for functions, methods and inline modules.  No parse tree is built: brace
families track a block stack plus paren depth, the indentation family tracks
an indent stack over logical lines.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .collector import map_files
from .config import FAMILY_CURLY, FAMILY_PYTHON, FAMILY_RUST, family_of
from .masking import LineMap, find_matching, mask_source
from .models import GraphError, IndexEntry, ScannedFile, ScanWarning

logger = logging.getLogger(__name__)

KIND_FUNCTION = "function"
KIND_METHOD = "method"
KIND_MODULE = "module"


@dataclass
class _Decl:
    qualname: str
    bare_name: str
    kind: str
    container: Optional[str]
    decl_offset: int
    body_offset: int = 0
    end_offset: int = 0
    tags: Tuple[str, ...] = ()


@dataclass
class _Frame:
    """One open ``{`` block (or indented suite) on the scanner stack."""

    kind: str  # "block", "type", "module" or "entry"
    name: Optional[str] = None
    paren: int = 0
    decl: Optional[_Decl] = None
    tags: Tuple[str, ...] = ()
    indent: int = 0


@dataclass
class _Pending:
    """A declaration head waiting for its body brace."""

    kind: str  # "entry", "type", "module", "impl"
    name: Optional[str]
    decl_offset: int
    paren: int
    tags: Tuple[str, ...] = ()
    header_start: int = 0
    brace_at: Optional[int] = None


@dataclass
class FileScan:
    entries: List[IndexEntry]
    warnings: List[ScanWarning] = field(default_factory=list)


@dataclass
class IndexResult:
    entries: List[IndexEntry] = field(default_factory=list)
    errors: List[GraphError] = field(default_factory=list)
    warnings: List[ScanWarning] = field(default_factory=list)


# ===================================================================
# Abstract Scanner Interface
# ===================================================================

class Scanner(ABC):
    """Common contract: ``scan(file) -> sorted IndexEntry list``."""

    family = ""
    separator = "."

    def scan(self, file: ScannedFile) -> List[IndexEntry]:
        return self.analyze(file).entries

    def analyze(self, file: ScannedFile) -> FileScan:
        """Scan *file* and keep the structural warnings alongside the entries."""
        masked = mask_source(file.content, file.language)
        warnings: List[ScanWarning] = []
        decls = self._declarations(file, masked, warnings)
        return FileScan(self._finalize(file, decls), warnings)

    @abstractmethod
    def _declarations(
        self, file: ScannedFile, masked: str, warnings: List[ScanWarning]
    ) -> List[_Decl]:
        ...

    def _qualify(self, stack: Sequence[_Frame], name: str) -> str:
        parts = [f.name for f in stack if f.kind != "block" and f.name]
        parts.append(name)
        return self.separator.join(parts)

    def _finalize(self, file: ScannedFile, decls: List[_Decl]) -> List[IndexEntry]:
        lines = LineMap(file.content)
        counts = Counter(d.qualname for d in decls)
        entries = []
        for d in decls:
            start = lines.line_of(d.decl_offset)
            end = lines.line_of(max(d.decl_offset, d.end_offset - 1))
            ident = f"{file.path}::{d.qualname}"
            if counts[d.qualname] > 1:
                ident = f"{ident}@{start}"
            entries.append(
                IndexEntry(
                    id=ident,
                    name=d.qualname,
                    bare_name=d.bare_name,
                    kind=d.kind,
                    file=file.path,
                    start_line=start,
                    end_line=max(start, end),
                    language=file.language,
                    container=d.container,
                    decl_offset=d.decl_offset,
                    body_offset=d.body_offset,
                    end_offset=d.end_offset,
                    tags=d.tags,
                )
            )
        entries.sort(key=lambda e: e.sort_key)
        return entries


def _statement_prefix(masked: str, offset: int) -> str:
    """Text between the previous statement boundary and *offset*."""
    start = max(masked.rfind(ch, 0, offset) for ch in ";{}")
    return masked[start + 1:offset]


def _inherited_tags(stack: Sequence[_Frame], wanted: Sequence[str]) -> Tuple[str, ...]:
    found = []
    for frame in stack:
        for tag in frame.tags:
            if tag in wanted and tag not in found:
                found.append(tag)
    return tuple(found)


class _BraceScanner(Scanner):
    """Shared block-stack bookkeeping for the curly-brace families."""

    def _close_entry(self, frame: _Frame, end: int, decls: List[_Decl]) -> None:
        if frame.decl is not None:
            frame.decl.end_offset = end
            decls.append(frame.decl)

    def _unwind(
        self,
        file: ScannedFile,
        masked: str,
        stack: List[_Frame],
        paren: int,
        decls: List[_Decl],
        warnings: List[ScanWarning],
    ) -> None:
        lines = LineMap(file.content)
        if paren > 0:
            warnings.append(ScanWarning(file.path, f"{paren} unclosed '(' or '['", None))
        if stack:
            warnings.append(ScanWarning(file.path, f"{len(stack)} unclosed '{{'", None))
        while stack:
            frame = stack.pop()
            if frame.decl is not None:
                warnings.append(
                    ScanWarning(
                        file.path,
                        f"unclosed body for '{frame.decl.qualname}'",
                        lines.line_of(frame.decl.decl_offset),
                    )
                )
                self._close_entry(frame, len(masked), decls)

    def _enclosing_type(self, stack: Sequence[_Frame]) -> Optional[_Frame]:
        if stack and stack[-1].kind == "type":
            return stack[-1]
        return None


# ===================================================================
# Family S: Rust
# ===================================================================

_RUST_TOKENS = re.compile(
    r"(?P<fn>\bfn\s+(?P<fn_name>[A-Za-z_]\w*))"
    r"|(?P<impl>\bimpl\b)"
    r"|(?P<trait>\btrait\s+(?P<trait_name>[A-Za-z_]\w*))"
    r"|(?P<mod>\bmod\s+(?P<mod_name>[A-Za-z_]\w*))"
    r"|(?P<open>[{(\[])"
    r"|(?P<close>[})\]])"
    r"|(?P<semi>;)"
)
_RUST_TEST_ATTR = re.compile(r"#\s*\[\s*(?:\w+\s*::\s*)*test\b")
_RUST_CFG_TEST = re.compile(r"#\s*\[\s*cfg\s*\(\s*test\s*\)\s*\]")
_RUST_PATH = re.compile(r"((?:[A-Za-z_]\w*\s*::\s*)*[A-Za-z_]\w*)")


def _strip_angle(text: str) -> str:
    """Drop a leading ``<...>`` generic list."""
    text = text.lstrip()
    if not text.startswith("<"):
        return text
    depth = 0
    for i, ch in enumerate(text):
        if ch == "<":
            depth += 1
        elif ch == ">" and (i == 0 or text[i - 1] != "-"):
            depth -= 1
            if depth == 0:
                return text[i + 1:]
    return ""


def rust_impl_target(header: str) -> Tuple[Optional[str], bool]:
    """Return ``(type name, is trait impl)`` for the text after ``impl``."""
    head = _strip_angle(header)
    head = re.split(r"\bwhere\b", head)[0]
    trait_impl = False
    m = re.search(r"\bfor\s+(?!<)(.+)$", head, re.S)
    if m:
        head = m.group(1)
        trait_impl = True
    head = head.strip().lstrip("&").strip()
    head = re.sub(r"^(?:mut\s+|dyn\s+|'\w+\s+)+", "", head)
    pm = _RUST_PATH.match(head)
    if not pm:
        return None, trait_impl
    return pm.group(1).split("::")[-1].strip(), trait_impl


class RustScanner(_BraceScanner):
    family = FAMILY_RUST
    separator = "::"

    def _item_level(self, masked: str, offset: int) -> bool:
        i = offset - 1
        while i >= 0 and masked[i].isspace():
            i -= 1
        if i < 0 or masked[i] in "{};]":
            return True
        word = re.search(r"(\w+)$", masked[max(0, i - 10):i + 1])
        return bool(word and word.group(1) in ("unsafe", "default"))

    def _tags(self, masked: str, offset: int, stack: Sequence[_Frame]) -> Tuple[str, ...]:
        prefix = _statement_prefix(masked, offset)
        tags = list(_inherited_tags(stack, ("test",)))
        if _RUST_TEST_ATTR.search(prefix) and "test" not in tags:
            tags.append("test")
        if re.search(r"\bpub\b", prefix):
            tags.append("pub")
        if re.search(r"\basync\b", prefix):
            tags.append("async")
        return tuple(tags)

    def _declarations(self, file, masked, warnings):
        decls: List[_Decl] = []
        stack: List[_Frame] = []
        pending: Optional[_Pending] = None
        paren = 0
        lines = LineMap(file.content)

        for m in _RUST_TOKENS.finditer(masked):
            kind = m.lastgroup
            if kind == "fn":
                if pending is None or pending.paren >= paren:
                    pending = _Pending("entry", m.group("fn_name"), m.start(), paren,
                                       self._tags(masked, m.start(), stack))
            elif kind == "impl":
                if self._item_level(masked, m.start()):
                    pending = _Pending("impl", None, m.start(), paren, header_start=m.end())
            elif kind == "trait":
                pending = _Pending("type", m.group("trait_name"), m.start(), paren,
                                   ("trait",) + self._tags(masked, m.start(), stack))
            elif kind == "mod":
                tags = self._tags(masked, m.start(), stack)
                if _RUST_CFG_TEST.search(_statement_prefix(masked, m.start())):
                    tags = tags + ("test",)
                pending = _Pending("module", m.group("mod_name"), m.start(), paren, tags)
            elif kind == "open":
                ch = m.group()
                if ch != "{":
                    paren += 1
                    continue
                if pending is not None and pending.paren == paren:
                    stack.append(self._bind(pending, m, masked, stack))
                    pending = None
                else:
                    stack.append(_Frame("block", paren=paren))
            elif kind == "close":
                ch = m.group()
                if ch != "}":
                    if paren == 0:
                        warnings.append(ScanWarning(file.path, f"unbalanced '{ch}'",
                                                    lines.line_of(m.start())))
                    else:
                        paren -= 1
                    continue
                if pending is not None and pending.paren >= paren:
                    pending = None
                if not stack:
                    warnings.append(ScanWarning(file.path, "unbalanced '}'", lines.line_of(m.start())))
                    continue
                frame = stack.pop()
                paren = frame.paren
                self._close_entry(frame, m.end(), decls)
            elif kind == "semi":
                if pending is not None and pending.paren == paren:
                    pending = None

        self._unwind(file, masked, stack, paren, decls, warnings)
        return decls

    def _bind(self, pending: _Pending, brace: re.Match, masked: str, stack: List[_Frame]) -> _Frame:
        body = brace.end()
        if pending.kind == "impl":
            target, trait_impl = rust_impl_target(masked[pending.header_start:brace.start()])
            tags = ("trait-impl",) if trait_impl else ()
            return _Frame("type", target, pending.paren, tags=tags + _inherited_tags(stack, ("test",)))
        if pending.kind == "type":
            return _Frame("type", pending.name, pending.paren, tags=pending.tags)
        qualname = self._qualify(stack, pending.name)
        if pending.kind == "module":
            decl = _Decl(qualname, pending.name, KIND_MODULE, None, pending.decl_offset, body,
                         tags=pending.tags)
            return _Frame("module", pending.name, pending.paren, decl=decl, tags=pending.tags)
        owner = self._enclosing_type(stack)
        tags = pending.tags
        if owner is not None:
            tags = tags + tuple(t for t in owner.tags if t in ("trait-impl", "trait"))
            kind, container = KIND_METHOD, owner.name
        else:
            kind, container = KIND_FUNCTION, None
        decl = _Decl(qualname, pending.name, kind, container, pending.decl_offset, body, tags=tags)
        return _Frame("entry", pending.name, pending.paren, decl=decl, tags=tags)


# ===================================================================
# Family C: TypeScript / JavaScript
# ===================================================================

_MODIFIERS = r"(?:(?:public|private|protected|static|async|readonly|override|abstract|declare|get|set|accessor)\s+)*"

_CURLY_TOKENS = re.compile(
    r"(?P<func>\bfunction\b\s*\*?\s*(?P<func_name>[A-Za-z_$][\w$]*)?)"
    r"|(?P<cls>\bclass\s+(?P<cls_name>[A-Za-z_$][\w$]*))"
    r"|(?P<iface>\binterface\s+(?P<iface_name>[A-Za-z_$][\w$]*))"
    r"|(?P<ns>\b(?:namespace|module)\s+(?P<ns_name>[A-Za-z_$][\w$.]*)(?=\s*\{))"
    r"|(?P<bind>\b(?:const|let|var)\s+(?P<bind_name>[A-Za-z_$][\w$]*)\s*(?::[^=;{}]*)?=(?![=>])\s*)"
    r"|(?P<member>^[ \t]*" + _MODIFIERS + r"\*?\s*(?P<member_name>#?[A-Za-z_$][\w$]*)\s*\??\s*(?:<[^>(){};]*>)?\s*(?=\())"
    r"|(?P<field>^[ \t]*" + _MODIFIERS + r"(?P<field_name>#?[A-Za-z_$][\w$]*)\s*(?::[^=;{}()]*)?=(?![=>])\s*)"
    r"|(?P<open>[{(\[])"
    r"|(?P<close>[})\]])"
    r"|(?P<semi>;)",
    re.M,
)
_ARROW_HEAD = re.compile(
    r"(?:async\s+)?(?:(?P<params>\()|(?P<ident>[A-Za-z_$][\w$]*)\s*=>|(?P<function>function\b))"
)
_ARROW_TAIL = re.compile(r"\s*(?::[^;{}]*?)?=>\s*")
_EXPORT_LIST = re.compile(r"\bexport\s*\{([^}]*)\}")
_CJS_EXPORT_OBJ = re.compile(r"\bmodule\.exports\s*=\s*\{([^}]*)\}")
_CJS_EXPORT_ONE = re.compile(r"\b(?:module\.)?exports\.([A-Za-z_$][\w$]*)\s*=")
_CJS_EXPORT_DEFAULT = re.compile(r"\bmodule\.exports\s*=\s*([A-Za-z_$][\w$]*)\s*;?")
_CONTINUATION_END = set("=+-*/%&|^<>,.?:([{!~")
_CONTINUATION_START = set(".?:+-*/%&|^=<>,)]")

CURLY_KEYWORDS = {
    "if", "for", "while", "switch", "catch", "return", "function", "super", "new",
    "typeof", "await", "yield", "do", "else", "try", "with", "delete", "void", "import",
    "throw", "case", "in", "of", "instanceof",
}


def expression_end(text: str, start: int, limit: Optional[int] = None) -> int:
    """End offset of an expression starting at *start* (exclusive).

    Stops at ``;`` or ``,`` at depth 0, at a closer that would unbalance the
    expression, or at a newline that does not continue the expression.
    """
    n = len(text) if limit is None else limit
    depth = 0
    i = start
    while i < n:
        ch = text[i]
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            if depth == 0:
                return i
            depth -= 1
        elif depth == 0 and ch in ";,":
            return i
        elif depth == 0 and ch == "\n":
            before = text[start:i].rstrip()
            after = text[i:n].lstrip()
            if before and before[-1] not in _CONTINUATION_END and not (
                after and (after[0] in _CONTINUATION_START or after.startswith("=>"))
            ):
                return i
        i += 1
    return n


class CurlyScanner(_BraceScanner):
    family = FAMILY_CURLY
    separator = "."

    def _tags(self, masked: str, offset: int, stack: Sequence[_Frame]) -> Tuple[str, ...]:
        prefix = _statement_prefix(masked, offset)
        tags = list(_inherited_tags(stack, ("exported",)))
        if re.search(r"\bexport\b", prefix) and "exported" not in tags:
            tags.append("exported")
        if re.search(r"\babstract\b", prefix):
            tags.append("abstract")
        if re.search(r"\basync\b", prefix):
            tags.append("async")
        return tuple(tags)

    def _arrow_body(self, masked: str, start: int) -> Optional[Tuple[int, bool]]:
        """Locate the body of ``= (..) => body`` starting at *start*.

        Returns ``(offset, braced)`` or None when the value is not an arrow.
        """
        head = _ARROW_HEAD.match(masked, start)
        if head is None or head.group("function"):
            return None
        if head.group("ident"):
            pos = head.end()
        else:
            close = find_matching(masked, head.start("params"))
            if close is None:
                return None
            tail = _ARROW_TAIL.match(masked, close + 1)
            if tail is None:
                return None
            pos = tail.end()
        while pos < len(masked) and masked[pos].isspace():
            pos += 1
        braced = pos < len(masked) and masked[pos] == "{"
        return pos, braced

    def _declarations(self, file, masked, warnings):
        decls: List[_Decl] = []
        stack: List[_Frame] = []
        pending: Optional[_Pending] = None
        named_function: Dict[int, Tuple[str, int, Tuple[str, ...]]] = {}
        paren = 0
        lines = LineMap(file.content)

        def entry_kind(name: str) -> Tuple[str, Optional[str], Tuple[str, ...]]:
            owner = self._enclosing_type(stack)
            if owner is not None and stack[-1].paren == paren:
                return KIND_METHOD, owner.name, owner.tags
            return KIND_FUNCTION, None, ()

        def bind_value(name: str, decl_at: int, value_at: int, tags: Tuple[str, ...]) -> Optional[_Pending]:
            head = _ARROW_HEAD.match(masked, value_at)
            if head is not None and head.group("function"):
                named_function[head.start("function")] = (name, decl_at, tags)
                return None
            body = self._arrow_body(masked, value_at)
            if body is None:
                return None
            pos, braced = body
            if braced:
                return _Pending("entry", name, decl_at, paren, tags, brace_at=pos)
            kind, container, owner_tags = entry_kind(name)
            end = expression_end(masked, pos)
            decls.append(_Decl(self._qualify(stack, name), name, kind, container, decl_at, pos,
                               end, tags + tuple(t for t in owner_tags if t not in tags)))
            return None

        for m in _CURLY_TOKENS.finditer(masked):
            kind = m.lastgroup
            if kind == "func":
                name = m.group("func_name")
                decl_at = m.start()
                tags = self._tags(masked, m.start(), stack)
                if m.start() in named_function:
                    # Bound function expressions are called through the binding.
                    name, decl_at, tags = named_function.pop(m.start())
                if name is not None:
                    pending = _Pending("entry", name, decl_at, paren, tags)
            elif kind == "cls":
                pending = _Pending("type", m.group("cls_name"), m.start(), paren,
                                   ("class",) + self._tags(masked, m.start(), stack))
            elif kind == "iface":
                pending = _Pending("type", m.group("iface_name"), m.start(), paren,
                                   ("interface",) + self._tags(masked, m.start(), stack))
            elif kind == "ns":
                pending = _Pending("module", m.group("ns_name"), m.start(), paren,
                                   self._tags(masked, m.start(), stack))
            elif kind == "bind":
                found = bind_value(m.group("bind_name"), m.start("bind"), m.end(),
                                   self._tags(masked, m.start(), stack))
                if found is not None:
                    pending = found
            elif kind in ("member", "field"):
                owner = self._enclosing_type(stack)
                if owner is None or stack[-1].paren != paren or "class" not in owner.tags:
                    continue
                name = m.group(kind + "_name")
                if name in CURLY_KEYWORDS:
                    continue
                decl_at = m.start(kind + "_name")
                text = m.group()
                tags = tuple(t for t in ("async", "abstract") if re.search(rf"\b{t}\b", text))
                if kind == "member":
                    pending = _Pending("entry", name, decl_at, paren, tags)
                else:
                    found = bind_value(name, decl_at, m.end(), tags)
                    if found is not None:
                        pending = found
            elif kind == "open":
                ch = m.group()
                if ch != "{":
                    paren += 1
                    continue
                if (
                    pending is not None
                    and pending.paren == paren
                    and (pending.brace_at is None or pending.brace_at == m.start())
                ):
                    stack.append(self._bind(pending, m, stack, entry_kind))
                    pending = None
                else:
                    stack.append(_Frame("block", paren=paren))
            elif kind == "close":
                ch = m.group()
                if ch != "}":
                    if paren == 0:
                        warnings.append(ScanWarning(file.path, f"unbalanced '{ch}'",
                                                    lines.line_of(m.start())))
                    else:
                        paren -= 1
                    continue
                if pending is not None and pending.paren >= paren:
                    pending = None
                if not stack:
                    warnings.append(ScanWarning(file.path, "unbalanced '}'", lines.line_of(m.start())))
                    continue
                frame = stack.pop()
                paren = frame.paren
                self._close_entry(frame, m.end(), decls)
            elif kind == "semi":
                if pending is not None and pending.paren == paren:
                    pending = None

        self._unwind(file, masked, stack, paren, decls, warnings)
        return self._mark_exports(masked, decls)

    def _bind(self, pending, brace, stack, entry_kind) -> _Frame:
        body = brace.end()
        if pending.kind == "type":
            return _Frame("type", pending.name, pending.paren, tags=pending.tags)
        qualname = self._qualify(stack, pending.name)
        if pending.kind == "module":
            decl = _Decl(qualname, pending.name.split(".")[-1], KIND_MODULE, None,
                         pending.decl_offset, body, tags=pending.tags)
            return _Frame("module", pending.name, pending.paren, decl=decl, tags=pending.tags)
        kind, container, owner_tags = entry_kind(pending.name)
        tags = pending.tags + tuple(t for t in owner_tags if t == "exported" and t not in pending.tags)
        if pending.name == "constructor" and kind == KIND_METHOD:
            tags = tags + ("constructor",)
        decl = _Decl(qualname, pending.name, kind, container, pending.decl_offset, body, tags=tags)
        return _Frame("entry", pending.name, pending.paren, decl=decl, tags=tags)

    def _mark_exports(self, masked: str, decls: List[_Decl]) -> List[_Decl]:
        """Tag declarations named in ``export { .. }`` or CommonJS exports."""
        names = set()
        for pattern in (_EXPORT_LIST, _CJS_EXPORT_OBJ):
            for m in pattern.finditer(masked):
                for item in m.group(1).split(","):
                    item = item.strip()
                    if not item:
                        continue
                    names.add(re.split(r"\s+as\s+|\s*:\s*", item)[0].strip())
        names.update(m.group(1) for m in _CJS_EXPORT_ONE.finditer(masked))
        names.update(m.group(1) for m in _CJS_EXPORT_DEFAULT.finditer(masked))
        for d in decls:
            if d.container is None and d.bare_name in names and "exported" not in d.tags:
                d.tags = d.tags + ("exported",)
        return decls


# ===================================================================
# Family D: Python
# ===================================================================

_PY_DEF = re.compile(r"(?:async\s+)?def\s+(?P<name>[A-Za-z_]\w*)")
_PY_CLASS = re.compile(r"class\s+(?P<name>[A-Za-z_]\w*)")
_PY_DECORATOR = re.compile(r"@\s*(?P<name>[A-Za-z_][\w.]*)")
_TRIPLE = re.compile(r"'''|\"\"\"")


@dataclass
class LogicalLine:
    indent: int
    start: int
    end: int
    line: int
    text: str


def logical_lines(masked: str, start: int = 0, end: Optional[int] = None) -> Tuple[List[LogicalLine], int]:
    """Join physical lines into logical ones.

    Lines are joined while brackets are open, after a trailing backslash and
    inside multi-line string delimiters.  Returns the lines and the bracket
    depth left open at the end (negative when closers were unbalanced).
    """
    stop = len(masked) if end is None else end
    result: List[LogicalLine] = []
    line_no = masked.count("\n", 0, start) + 1
    depth = 0
    worst = 0
    in_triple = False
    current: Optional[List] = None
    pos = start
    while pos < stop:
        nl = masked.find("\n", pos, stop)
        line_end = stop if nl < 0 else nl
        raw = masked[pos:line_end]
        if current is None:
            stripped = raw.strip()
            if not stripped:
                pos = line_end + 1
                line_no += 1
                continue
            indent = len(raw) - len(raw.lstrip(" \t"))
            current = [indent, pos + indent, line_end, line_no, [raw.strip()]]
        else:
            current[2] = line_end
            current[4].append(raw.strip())
        for ch in raw:
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
        worst = min(worst, depth)
        if depth < 0:
            depth = 0
        if len(_TRIPLE.findall(raw)) % 2 == 1:
            in_triple = not in_triple
        continued = depth > 0 or in_triple or raw.rstrip().endswith("\\")
        if not continued:
            indent, s, e, ln, parts = current
            result.append(LogicalLine(indent, s, e, ln, " ".join(p for p in parts if p)))
            current = None
        pos = line_end + 1
        line_no += 1
    if current is not None:
        indent, s, e, ln, parts = current
        result.append(LogicalLine(indent, s, e, ln, " ".join(p for p in parts if p)))
    return result, depth if depth else worst


def header_colon(masked: str, start: int, end: int) -> Optional[int]:
    """Offset of the ``:`` closing a compound-statement header."""
    depth = 0
    for i in range(start, end):
        ch = masked[i]
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif ch == ":" and depth == 0 and masked[i + 1:i + 2] != "=":
            return i
    return None


def _is_test_path(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    parts = path.split("/")
    return (
        name.startswith("test_")
        or name.endswith("_test.py")
        or "tests" in parts[:-1]
        or "test" in parts[:-1]
        or name == "conftest.py"
    )


class PythonScanner(Scanner):
    family = FAMILY_PYTHON
    separator = "."

    def _declarations(self, file, masked, warnings):
        decls: List[_Decl] = []
        stack: List[_Frame] = []
        decorators: List[str] = []
        test_file = _is_test_path(file.path)
        lines, depth = logical_lines(masked)
        last_end = 0

        def close_until(indent: int) -> None:
            while stack and indent <= stack[-1].indent:
                frame = stack.pop()
                if frame.decl is not None:
                    frame.decl.end_offset = last_end
                    decls.append(frame.decl)

        for ll in lines:
            close_until(ll.indent)
            text = masked[ll.start:ll.end]
            dec = _PY_DECORATOR.match(text)
            if dec:
                decorators.append(dec.group("name").split(".")[-1])
                last_end = ll.end
                continue
            m = _PY_DEF.match(text)
            if m:
                name = m.group("name")
                colon = header_colon(masked, ll.start + m.end(), ll.end)
                body = ll.end if colon is None else colon + 1
                owner = stack[-1] if stack and stack[-1].kind == "type" else None
                tags = tuple(f"decorator:{d}" for d in decorators)
                if decorators:
                    tags = ("decorated",) + tags
                if test_file or name.startswith("test"):
                    tags = tags + ("test",)
                if re.match(r"async\b", text):
                    tags = tags + ("async",)
                kind = KIND_METHOD if owner is not None else KIND_FUNCTION
                decl = _Decl(self._qualify(stack, name), name, kind,
                             owner.name if owner else None, ll.start, body, ll.end, tags)
                stack.append(_Frame("entry", name, decl=decl, indent=ll.indent, tags=tags))
            else:
                c = _PY_CLASS.match(text)
                if c:
                    stack.append(_Frame("type", c.group("name"), indent=ll.indent))
            decorators = []
            last_end = ll.end

        close_until(-1)
        if depth > 0:
            warnings.append(ScanWarning(file.path, f"{depth} unclosed bracket(s)", None))
        elif depth < 0:
            warnings.append(ScanWarning(file.path, "unbalanced closing bracket", None))
        return decls


# ===================================================================
# Dispatch
# ===================================================================

SCANNERS: Dict[str, Scanner] = {
    FAMILY_RUST: RustScanner(),
    FAMILY_CURLY: CurlyScanner(),
    FAMILY_PYTHON: PythonScanner(),
}


def scanner_for(language: str) -> Scanner:
    return SCANNERS[family_of(language)]


def _index_one(file: ScannedFile) -> Tuple[ScannedFile, Optional[FileScan], Optional[GraphError]]:
    try:
        return file, scanner_for(file.language).analyze(file), None
    except Exception as exc:
        logger.warning("Scan failed for %s: %s", file.path, exc)
        return file, None, GraphError(file.path, f"scan failed: {exc}")


def index_files(files: Sequence[ScannedFile], workers: int = 1) -> IndexResult:
    """Scan every file and merge the per-file results deterministically."""
    result = IndexResult()
    for file, scanned, error in map_files(_index_one, files, workers):
        if error is not None:
            result.errors.append(error)
            continue
        logger.debug("Indexed %s: %d entries", file.path, len(scanned.entries))
        result.entries.extend(scanned.entries)
        result.warnings.extend(scanned.warnings)
    result.entries.sort(key=lambda e: e.sort_key)
    result.warnings.sort(key=lambda w: (w.path, w.line or 0, w.message))
    result.errors.sort(key=lambda e: (e.path, e.message))
    logger.info("Indexed %d entries from %d file(s)", len(result.entries), len(files))
    return result
