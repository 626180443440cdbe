"""Structural smell detectors over the index and call graph.

Four categories are reported: pass-through wrapper chains, lonely
abstractions, orphans and placeholder bodies.  Detectors only read their
inputs; the result is a sorted ``AuditReport``.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import FAMILY_CURLY, FAMILY_PYTHON, FAMILY_RUST, family_of
from .masking import find_matching, mask_source, split_top_level
from .models import AuditReport, Finding, GraphReport, IndexEntry, ScannedFile
from .scanners import KIND_MODULE, logical_lines

logger = logging.getLogger(__name__)

PASS_THROUGH = "pass-through"
LONELY_ABSTRACTION = "lonely-abstraction"
ORPHAN = "orphan"
PLACEHOLDER = "placeholder"
CATEGORIES = (PASS_THROUGH, LONELY_ABSTRACTION, ORPHAN, PLACEHOLDER)

MAX_CHAIN = 20

_IDENT = re.compile(r"[A-Za-z_$][\w$]*")
_CALL_HEAD = re.compile(
    r"(?P<path>[A-Za-z_$][\w$]*(?:\s*(?:\?\.|\.|::)\s*[A-Za-z_$][\w$]*)*)(?:\s*::\s*<[^()]*>)?\s*\("
)
_PY_DOCSTRING = re.compile(r"[rRbBuUfF]{0,2}(\"\"\"|'''|\"|')\s*\1")
_PY_PLACEHOLDER = re.compile(r"pass|\.\.\.|raise\s+NotImplementedError(?:\s*\(\s*(?:\"\s*\"|'\s*')?\s*\))?")
_RUST_PLACEHOLDER = re.compile(r"(?:todo|unimplemented)\s*!\s*[(\[{].*")
_CURLY_THROW = re.compile(r"throw\s+new\s+\w*Error\s*\(\s*(['\"`])\s*\1\s*\)\s*$")
_NOT_IMPLEMENTED_WORDS = ("not implemented", "unimplemented", "todo", "not yet implemented")

_SKIP_DECORATORS = {"abstractmethod", "overload", "abstractproperty", "abstractclassmethod",
                    "abstractstaticmethod"}
_RECEIVERS = {"self", "&self", "&mut self", "mut self", "cls", "this"}

_PY_CLASS = re.compile(r"^[ \t]*class\s+(\w+)\s*(?:\(([^)]*)\))?\s*:", re.MULTILINE)
_PY_ABSTRACT_BASES = {"ABC", "ABCMeta", "Protocol"}
_TS_ABSTRACT = re.compile(r"\b(?:interface|abstract\s+class)\s+([A-Za-z_$][\w$]*)")
_TS_CLASS_HERITAGE = re.compile(r"\bclass\s+[A-Za-z_$][\w$]*[^{;]*?\b(?:implements|extends)\s+([^{]+)\{")
_RUST_TRAIT = re.compile(r"\btrait\s+([A-Za-z_]\w*)")
_RUST_IMPL_FOR = re.compile(r"\bimpl\s*(?:<[^{]*?>)?\s*([\w:]+)(?:\s*<[^{]*?>)?\s+for\b")


ALLOW_LONELY = "flowgraph:allow-lonely"

_COMMENT_LEADERS = ("#", "//", "/*", "*", "@")
_PY_DOC_OPEN = re.compile(r"[rRuU]?(\"\"\"|'''|\"|')")


def has_allow_marker(content: str, decl_at: int, body_at: Optional[int] = None) -> bool:
    """Whether the declaration at *decl_at* opts out of lonely-abstraction findings.

    The marker is looked for, case-insensitively, on the declaration line, in
    the run of comment, attribute and decorator lines directly above it and,
    when *body_at* is given, in a Python docstring opening the body.
    """
    line_start = content.rfind("\n", 0, decl_at) + 1
    line_end = content.find("\n", decl_at)
    texts = [content[line_start:len(content) if line_end < 0 else line_end]]
    pos = line_start
    while pos > 0:
        prev = content.rfind("\n", 0, pos - 1) + 1
        line = content[prev:pos - 1].strip()
        if not line.startswith(_COMMENT_LEADERS):
            break
        texts.append(line)
        pos = prev
    if body_at is not None:
        start = body_at
        while start < len(content) and content[start].isspace():
            start += 1
        m = _PY_DOC_OPEN.match(content, start)
        if m:
            close = content.find(m.group(1), m.end())
            texts.append(content[m.end():len(content) if close < 0 else close])
    return any(ALLOW_LONELY in text.lower() for text in texts)


def _last_segment(path: str) -> str:
    return re.split(r"::|\.|\?\.", path.strip())[-1].strip()


def _strip_generics(text: str) -> str:
    out = []
    depth = 0
    for ch in text:
        if ch == "<":
            depth += 1
        elif ch == ">" and depth:
            depth -= 1
        elif depth == 0:
            out.append(ch)
    return "".join(out)


class AuditDetector:
    """Run every detector against one indexed scan."""

    def __init__(
        self,
        entries: Sequence[IndexEntry],
        call_graph: GraphReport,
        files: Sequence[ScannedFile],
    ):
        self.files = {f.path: f for f in files}
        self.masked = {f.path: mask_source(f.content, f.language) for f in files}
        self.functions = sorted(
            (e for e in entries if e.kind != KIND_MODULE and e.file in self.files),
            key=lambda e: e.sort_key,
        )
        self.by_id = {e.id: e for e in self.functions}
        self.bare_names = Counter(e.bare_name for e in self.functions)
        self.resolved_in: Dict[str, List[str]] = {}
        self.resolved_out: Dict[str, Set[str]] = {}
        self.unresolved_by_name: Dict[str, List[str]] = {}
        for edge in call_graph.edges:
            if edge.resolved and edge.dst:
                self.resolved_in.setdefault(edge.dst, []).append(edge.src)
                self.resolved_out.setdefault(edge.src, set()).add(edge.dst)
            elif not edge.resolved:
                self.unresolved_by_name.setdefault(_last_segment(edge.callee_raw), []).append(edge.src)
        self.identifiers: Counter = Counter()
        for text in self.masked.values():
            self.identifiers.update(_IDENT.findall(text))
        self.abstract_types = self._abstract_types()

    # -- helpers ----------------------------------------------------------

    def _signature(self, entry: IndexEntry) -> str:
        return self.masked[entry.file][entry.decl_offset:entry.body_offset]

    def _braced(self, entry: IndexEntry) -> bool:
        return entry.body_offset > 0 and self.masked[entry.file][entry.body_offset - 1] == "{"

    def _body_range(self, entry: IndexEntry) -> Tuple[int, int]:
        start, end = entry.body_offset, entry.end_offset
        masked = self.masked[entry.file]
        if self._braced(entry) and end > start and masked[end - 1] == "}":
            end -= 1
        return start, end

    def statements(self, entry: IndexEntry) -> List[str]:
        """Top-level statements of the body, Python docstring dropped."""
        masked = self.masked[entry.file]
        start, end = self._body_range(entry)
        if family_of(entry.language) == FAMILY_PYTHON:
            lines = [ll.text for ll in logical_lines(masked, start, end)[0]]
            if lines and _PY_DOCSTRING.fullmatch(lines[0]):
                lines = lines[1:]
            return [part.strip() for line in lines for part in line.split(";") if part.strip()]
        body = masked[start:end].strip()
        if not self._braced(entry):
            return [body.rstrip(";").strip()] if body else []
        return [part.strip() for part in split_top_level(body, ";") if part.strip()]

    def parameters(self, entry: IndexEntry) -> Optional[List[str]]:
        """Positional parameter names, or None when the list can't be forwarded verbatim."""
        sig = self._signature(entry)
        named = re.search(r"(?<![\w$])" + re.escape(entry.bare_name) + r"(?![\w$])", sig)
        pos = named.end() if named else 0
        open_at = sig.find("(", pos)
        if open_at < 0:
            m = re.search(r"([A-Za-z_$][\w$]*)\s*=>", sig)
            return [m.group(1)] if m else None
        close = find_matching(sig, open_at)
        if close is None:
            return None
        names = []
        for part in split_top_level(sig[open_at + 1:close], ","):
            part = part.strip()
            if not part:
                continue
            if part in _RECEIVERS or re.match(r"(?:&\s*(?:'\w+\s+)?(?:mut\s+)?)?self\b", part):
                continue
            if part.startswith(("*", "...", "{", "[", "(", "/")):
                return None
            if re.match(r"this\s*:", part):
                continue
            head = re.split(r"[:=]", part, 1)[0].strip().rstrip("?")
            words = head.split()
            if not words:
                return None
            name = words[-1]
            if not _IDENT.fullmatch(name):
                return None
            names.append(name)
        return names

    def forwarded_call(self, entry: IndexEntry) -> Optional[str]:
        """Callee path when the body is a single call forwarding all parameters."""
        stmts = self.statements(entry)
        if len(stmts) != 1:
            return None
        params = self.parameters(entry)
        if params is None:
            return None
        stmt = stmts[0]
        changed = True
        while changed:
            before = stmt
            stmt = re.sub(r"^(?:return|await)\b\s*", "", stmt)
            stmt = re.sub(r"\s*(?:\.\s*await|\?)\s*$", "", stmt).strip()
            changed = stmt != before
        m = _CALL_HEAD.match(stmt)
        if m is None:
            return None
        open_at = m.end() - 1
        if find_matching(stmt, open_at) != len(stmt) - 1:
            return None
        args = [a.strip() for a in split_top_level(stmt[open_at + 1:-1], ",") if a.strip()]
        path = re.sub(r"\s+", "", m.group("path"))
        if args != params or (_last_segment(path) == entry.bare_name and not entry.container):
            return None
        return path

    def _callers(self, entry: IndexEntry) -> Tuple[List[str], List[str]]:
        """Callers by resolved edge and callers of unresolved sites with the same bare name."""
        inbound = [src for src in self.resolved_in.get(entry.id, []) if src != entry.id]
        by_name = [src for src in self.unresolved_by_name.get(entry.bare_name, []) if src != entry.id]
        return inbound, by_name

    def _is_entry_point(self, entry: IndexEntry) -> bool:
        name = entry.bare_name
        tags = set(entry.tags)
        return (
            name == "main"
            or "test" in tags
            or (name.startswith("__") and name.endswith("__"))
            or "constructor" in tags
            or "trait-impl" in tags
            or "exported" in tags
            or "decorated" in tags
            or entry.file.endswith(".pyi")
        )

    def _finding(self, category: str, entry: IndexEntry, message: str, **kwargs) -> Finding:
        return Finding(
            category=category,
            severity=kwargs.pop("severity", "info"),
            confidence=kwargs.pop("confidence", "medium"),
            message=message,
            file=entry.file,
            line=entry.start_line,
            symbol=entry.id,
            language=entry.language,
            **kwargs,
        )

    # -- pass-through -----------------------------------------------------

    def _forward_target(self, entry: IndexEntry, path: str) -> Optional[str]:
        resolved = self.resolved_out.get(entry.id, set())
        if len(resolved) == 1:
            return next(iter(resolved))
        bare = _last_segment(path)
        same_file = [f.id for f in self.functions
                     if f.file == entry.file and f.bare_name == bare and f.id != entry.id]
        return same_file[0] if len(same_file) == 1 else None

    def detect_pass_through(self) -> List[Finding]:
        wrappers: Dict[str, Tuple[str, Optional[str]]] = {}
        for entry in self.functions:
            path = self.forwarded_call(entry)
            if path is not None:
                wrappers[entry.id] = (path, self._forward_target(entry, path))

        targeted = {target for _, target in wrappers.values() if target in wrappers}
        heads = [w for w in sorted(wrappers) if w not in targeted]
        visited: Set[str] = set()
        findings = []
        for head in heads + sorted(wrappers):
            if head in visited:
                continue
            chain = [head]
            current = head
            while current in wrappers and len(chain) <= MAX_CHAIN:
                visited.add(current)
                path, target = wrappers[current]
                nxt = target if target is not None else path
                chain.append(nxt)
                if target is None or target in chain[:-1]:
                    break
                current = target
            hops = len(chain) - 1
            names = [self.by_id[c].name if c in self.by_id else c for c in chain]
            entry = self.by_id[head]
            findings.append(self._finding(
                PASS_THROUGH, entry,
                f"Pass-through wrapper chain length {hops}: {' -> '.join(names)}",
                confidence="high" if chain[-1] in self.by_id else "medium",
                chain=chain,
                evidence=[f"{self.by_id[c].name} forwards its parameters unchanged"
                          for c in chain if c in wrappers],
                suggestion=f"Call {names[-1]} directly and remove the wrapper",
            ))
        return findings

    # -- lonely abstraction -----------------------------------------------

    def _abstract_types(self) -> Dict[str, Dict[str, Tuple[str, int, int]]]:
        """language family -> abstract type name -> (file, offset, implementations)."""
        declared: Dict[str, Dict[str, Tuple[str, int]]] = {FAMILY_PYTHON: {}, FAMILY_CURLY: {}, FAMILY_RUST: {}}
        impls: Dict[str, Counter] = {FAMILY_PYTHON: Counter(), FAMILY_CURLY: Counter(), FAMILY_RUST: Counter()}
        for path in sorted(self.masked):
            masked = self.masked[path]
            family = family_of(self.files[path].language)
            if family == FAMILY_PYTHON:
                for m in _PY_CLASS.finditer(masked):
                    bases = [b.strip() for b in split_top_level(m.group(2) or "", ",") if b.strip()]
                    names = {_last_segment(b.split("=")[-1]) for b in bases}
                    if names & _PY_ABSTRACT_BASES:
                        declared[family].setdefault(m.group(1), (path, m.start(1)))
                    for b in bases:
                        if "=" not in b:
                            impls[family][_last_segment(_strip_generics(b.split("[")[0]))] += 1
            elif family == FAMILY_CURLY:
                for m in _TS_ABSTRACT.finditer(masked):
                    declared[family].setdefault(m.group(1), (path, m.start(1)))
                for m in _TS_CLASS_HERITAGE.finditer(masked):
                    heritage = re.sub(r"\b(?:implements|extends)\b", ",", _strip_generics(m.group(1)))
                    for name in heritage.split(","):
                        if name.strip():
                            impls[family][_last_segment(name)] += 1
            else:
                for m in _RUST_TRAIT.finditer(masked):
                    declared[family].setdefault(m.group(1), (path, m.start(1)))
                for m in _RUST_IMPL_FOR.finditer(masked):
                    impls[family][_last_segment(m.group(1))] += 1
        return {
            family: {name: (path, offset, impls[family][name]) for name, (path, offset) in types.items()}
            for family, types in declared.items()
        }

    def detect_lonely_abstractions(self) -> List[Finding]:
        findings = []
        for entry in self.functions:
            if self._is_entry_point(entry):
                continue
            inbound, by_name = self._callers(entry)
            if inbound or len(by_name) != 1:
                continue
            content = self.files[entry.file].content
            python = family_of(entry.language) == FAMILY_PYTHON
            if has_allow_marker(content, entry.decl_offset, entry.body_offset if python else None):
                continue
            caller = self.by_id.get(by_name[0])
            caller_name = caller.name if caller is not None else by_name[0]
            findings.append(self._finding(
                LONELY_ABSTRACTION, entry,
                f"'{entry.name}' has no resolved callers and a single call site ({caller_name})",
                confidence="medium" if self.bare_names[entry.bare_name] == 1 else "low",
                evidence=[f"call sites: 0 resolved, 1 unresolved by name from {caller_name}"],
                suggestion=f"Consider inlining {entry.name} into its only caller",
            ))

        for family in sorted(self.abstract_types):
            for name, (path, offset, count) in sorted(self.abstract_types[family].items()):
                if count > 1:
                    continue
                content = self.files[path].content
                body_at = None
                if family == FAMILY_PYTHON:
                    body_at = self.masked[path].find(":", offset) + 1
                if has_allow_marker(content, offset, body_at):
                    logger.debug("Lonely abstraction %s allowed by marker", name)
                    continue
                masked = self.masked[path]
                line = masked.count("\n", 0, offset) + 1
                findings.append(Finding(
                    category=LONELY_ABSTRACTION,
                    severity="info",
                    confidence="medium" if count == 1 else "low",
                    message=f"Abstract type '{name}' has {count} implementation(s)",
                    file=path,
                    line=line,
                    symbol=name,
                    language=self.files[path].language,
                    evidence=[f"implementations found: {count}"],
                    suggestion=f"Use the concrete type directly instead of {name}",
                ))
        return findings

    # -- orphans ----------------------------------------------------------

    def detect_orphans(self) -> List[Finding]:
        findings = []
        for entry in self.functions:
            if self._is_entry_point(entry):
                continue
            inbound, by_name = self._callers(entry)
            if inbound or by_name:
                continue
            if entry.language == "rust" and "pub" in entry.tags:
                confidence = "low"
            elif self.identifiers[entry.bare_name] > 1:
                confidence = "medium"
            else:
                confidence = "high"
            findings.append(self._finding(
                ORPHAN, entry,
                f"'{entry.name}' has no callers in the scanned files",
                severity="warning" if confidence == "high" else "info",
                confidence=confidence,
                evidence=[f"'{entry.bare_name}' appears {self.identifiers[entry.bare_name]} time(s) as an identifier"],
                suggestion=f"Remove {entry.name} or wire it into a caller",
            ))
        return findings

    # -- placeholders -----------------------------------------------------

    def _skip_placeholder(self, entry: IndexEntry) -> bool:
        decorators = {t.split(":", 1)[1].split(".")[-1] for t in entry.tags if t.startswith("decorator:")}
        if decorators & _SKIP_DECORATORS:
            return True
        if "constructor" in entry.tags or "abstract" in entry.tags or entry.file.endswith(".pyi"):
            return True
        family = family_of(entry.language)
        return bool(entry.container and entry.container in self.abstract_types.get(family, {}))

    def placeholder_reason(self, entry: IndexEntry) -> Optional[Tuple[str, str]]:
        """``(evidence, confidence)`` when the body is only a stub."""
        family = family_of(entry.language)
        stmts = self.statements(entry)
        if family == FAMILY_PYTHON:
            if stmts and all(_PY_PLACEHOLDER.fullmatch(s) for s in stmts):
                return f"body is only: {'; '.join(stmts)}", "high"
            return None
        if family == FAMILY_RUST:
            if len(stmts) == 1 and _RUST_PLACEHOLDER.fullmatch(stmts[0]):
                return f"body is only {stmts[0].split('!')[0].strip()}!()", "high"
            return None
        if not self._braced(entry):
            return None
        if not stmts:
            return "empty body", "medium"
        if len(stmts) == 1:
            m = _CURLY_THROW.match(stmts[0])
            if m:
                # The message is masked; read it from the source text.
                start, _ = self._body_range(entry)
                masked = self.masked[entry.file]
                quote_at = masked.index(stmts[0], start) + m.start(1)
                close = masked.index(m.group(1), quote_at + 1)
                message = self.files[entry.file].content[quote_at + 1:close]
                if any(w in message.lower() for w in _NOT_IMPLEMENTED_WORDS):
                    return f"throws '{message}'", "high"
        return None

    def detect_placeholders(self) -> List[Finding]:
        findings = []
        for entry in self.functions:
            if self._skip_placeholder(entry):
                continue
            reason = self.placeholder_reason(entry)
            if reason is None:
                continue
            evidence, confidence = reason
            findings.append(self._finding(
                PLACEHOLDER, entry,
                f"'{entry.name}' has a placeholder body",
                severity="warning",
                confidence=confidence,
                evidence=[evidence],
                suggestion=f"Implement {entry.name} or remove it",
            ))
        return findings

    def run(self) -> List[Finding]:
        findings = (
            self.detect_pass_through()
            + self.detect_lonely_abstractions()
            + self.detect_orphans()
            + self.detect_placeholders()
        )
        findings.sort(key=lambda f: f.sort_key)
        return findings


def summarize(findings: Iterable[Finding], files_scanned: int) -> Dict[str, object]:
    findings = list(findings)
    by_category = {c: 0 for c in CATEGORIES}
    by_category.update(Counter(f.category for f in findings))
    return {
        "files_scanned": files_scanned,
        "findings": len(findings),
        "by_category": dict(sorted(by_category.items())),
        "by_language": dict(sorted(Counter(f.language for f in findings).items())),
    }


def detect(
    index: Sequence[IndexEntry],
    call_graph: GraphReport,
    files: Sequence[ScannedFile],
) -> AuditReport:
    """Run all detectors.  *call_graph* should keep unresolved edges."""
    findings = AuditDetector(index, call_graph, files).run()
    summary = summarize(findings, len(files))
    logger.info("Audit: %d finding(s) across %d file(s)", summary["findings"], len(files))
    return AuditReport(summary, findings)
