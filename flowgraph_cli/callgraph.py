"""Function-level call graph and degree statistics."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from . import blueprint as blueprint_builder
from .config import (
    DEFAULT_HUB_COUNT,
    DEFAULT_MAX_CALLS_PER_FUNCTION,
    FAMILY_CURLY,
    FAMILY_PYTHON,
    FAMILY_RUST,
    family_of,
)
from .errors import ConfigError
from .masking import LineMap, mask_source
from .models import CallEdge, CallNode, GraphError, GraphReport, IndexEntry, ScannedFile, ScanWarning
from .resolver import EdgeResolver, ScopeIndex

logger = logging.getLogger(__name__)

_PATH = r"[A-Za-z_$#][\w$]*(?:\s*(?:\?\.|\.|::)\s*[A-Za-z_$#][\w$]*)*"

CALL_PATTERNS = {
    FAMILY_RUST: re.compile(r"(?P<path>" + _PATH + r")(?:\s*::\s*<[^;{}()]*>)?\s*\("),
    FAMILY_CURLY: re.compile(r"(?P<path>" + _PATH + r")(?:\s*<[\w\s,.\[\]|&<>]*>)?\s*(?:\?\.\s*)?\("),
    FAMILY_PYTHON: re.compile(r"(?P<path>" + _PATH + r")\s*\("),
}

CALL_KEYWORDS = {
    "if", "elif", "else", "for", "while", "switch", "catch", "return", "match", "except",
    "with", "assert", "not", "and", "or", "in", "is", "lambda", "yield", "await", "typeof",
    "sizeof", "loop", "fn", "def", "function", "class", "new", "super", "throw", "case",
    "del", "from", "import", "raise", "as", "where", "impl", "unsafe", "move", "async",
    "void", "delete", "instanceof", "do", "try", "finally",
}

_DECL_BEFORE = re.compile(r"(?:\bfn|\bdef|\bfunction|\bclass|\binterface|\bstruct|\benum)\s*\*?\s*$")


@dataclass(frozen=True)
class CallSite:
    callee_raw: str
    line: int


def _nested_spans(entry: IndexEntry, siblings: Sequence[IndexEntry]) -> List[Tuple[int, int]]:
    spans = []
    for other in siblings:
        if other.id == entry.id:
            continue
        if other.decl_offset >= entry.body_offset and other.end_offset <= entry.end_offset:
            spans.append((other.decl_offset, other.end_offset))
    return spans


def extract_calls(
    entry: IndexEntry,
    masked: str,
    lines: LineMap,
    siblings: Sequence[IndexEntry] = (),
) -> List[CallSite]:
    """Call sites inside *entry*'s body in source order.

    The signature and nested declarations are excluded; keywords and macros
    (``name!(``) never match.
    """
    start, end = entry.body_offset, entry.end_offset
    body = list(masked[start:end])
    for s, e in _nested_spans(entry, siblings):
        for i in range(max(s, start), min(e, end)):
            if body[i - start] != "\n":
                body[i - start] = " "
    text = "".join(body)
    pattern = CALL_PATTERNS[family_of(entry.language)]
    sites: List[CallSite] = []
    for m in pattern.finditer(text):
        path = m.group("path")
        first = re.split(r"\?\.|\.|::", path)[0].strip()
        if path.strip() in CALL_KEYWORDS or first in ("fn", "def", "function"):
            continue
        before = text[:m.start()].rstrip()
        if _DECL_BEFORE.search(before):
            continue
        raw = re.sub(r"\s+", "", path)
        if before.endswith("?.") or before.endswith(".") or before.endswith("::"):
            receiver = _chained_receiver(before)
            raw = f"{receiver}.{raw}" if receiver else f".{raw}"
        sites.append(CallSite(raw, lines.line_of(start + m.start())))
    return sites


def _chained_receiver(before: str) -> str:
    """``super()`` for ``super().x(``; empty for other expression receivers."""
    trimmed = before.rstrip(".?:").rstrip()
    if re.search(r"\bsuper\s*\(\s*[^()]*\)$", trimmed):
        return "super()"
    return ""


def compute_degrees(
    node_ids: Iterable[str], edges: Iterable[CallEdge]
) -> Dict[str, Dict[str, int]]:
    """In/out/total degree over unique resolved (caller, callee) pairs."""
    pairs: Set[Tuple[str, str]] = {(e.src, e.dst) for e in edges if e.resolved and e.dst}
    degrees = {nid: {"in": 0, "out": 0, "total": 0} for nid in node_ids}
    for src, dst in sorted(pairs):
        if src in degrees:
            degrees[src]["out"] += 1
            degrees[src]["total"] += 1
        if dst in degrees:
            degrees[dst]["in"] += 1
            degrees[dst]["total"] += 1
    return degrees


def classify(degrees: Dict[str, Dict[str, int]], hub_count: int) -> Dict[str, list]:
    ids = sorted(degrees)
    ranked = sorted(
        (nid for nid in ids if degrees[nid]["total"] > 0),
        key=lambda nid: (-degrees[nid]["total"], nid),
    )
    return {
        "hubs": [{"id": nid, "degree": degrees[nid]["total"]} for nid in ranked[:hub_count]],
        "orphans": [nid for nid in ids if degrees[nid]["in"] == 0],
        "sources": [nid for nid in ids if degrees[nid]["in"] == 0 and degrees[nid]["out"] > 0],
        "sinks": [nid for nid in ids if degrees[nid]["out"] == 0],
    }


def build(
    files: Sequence[ScannedFile],
    entries: Sequence[IndexEntry],
    max_calls_per_function: int = DEFAULT_MAX_CALLS_PER_FUNCTION,
    resolved_only: bool = False,
    hub_count: int = DEFAULT_HUB_COUNT,
    read_errors: Iterable[GraphError] = (),
    index_warnings: Iterable[ScanWarning] = (),
    blueprint: Optional[GraphReport] = None,
    workers: int = 1,
) -> GraphReport:
    """Build the call graph over the indexed functions of *files*.

    Args:
        files: Scanned files; entries must come from these files.
        entries: Index entries (module entries are ignored as nodes).
        max_calls_per_function: Call sites kept per function body.
        resolved_only: Drop unresolved edges from the emitted edge list.
            Stats still count them.
        hub_count: How many top-degree nodes to report as hubs.
        blueprint: Pre-built blueprint report used for file visibility.
            Built on demand when omitted.
    """
    if max_calls_per_function < 1:
        raise ConfigError("max_calls_per_function must be >= 1")
    if blueprint is None:
        blueprint = blueprint_builder.build(files, workers=workers)
    by_path = {f.path: f for f in files}
    functions = [e for e in entries if e.kind != "module" and e.file in by_path]
    scope = ScopeIndex(
        by_path.keys(), functions, visible=blueprint_builder.visible_files(blueprint)
    )
    resolver = EdgeResolver(scope)

    by_file: Dict[str, List[IndexEntry]] = {}
    for e in entries:
        by_file.setdefault(e.file, []).append(e)

    all_edges: List[CallEdge] = []
    truncated = 0
    for path in sorted(by_file):
        file = by_path.get(path)
        if file is None:
            continue
        masked = mask_source(file.content, file.language)
        lines = LineMap(file.content)
        for entry in by_file[path]:
            if entry.kind == "module":
                continue
            sites = extract_calls(entry, masked, lines, by_file[path])
            if len(sites) > max_calls_per_function:
                truncated += 1
                logger.debug("Truncated %s at %d calls", entry.id, max_calls_per_function)
                sites = sites[:max_calls_per_function]
            for site in sites:
                dst = resolver.resolve_call(entry, site.callee_raw)
                all_edges.append(CallEdge(entry.id, dst, site.callee_raw, site.line, dst is not None))

    all_edges.sort(key=lambda e: e.sort_key)
    nodes = sorted(
        (CallNode(e.id, e.name, e.kind, e.file, e.start_line, e.language) for e in functions),
        key=lambda n: n.id,
    )
    emitted = [e for e in all_edges if e.resolved] if resolved_only else all_edges
    degrees = compute_degrees((n.id for n in nodes), all_edges)
    errors = sorted(list(read_errors) + list(blueprint.errors), key=lambda e: (e.path, e.message))
    errors = [e for i, e in enumerate(errors) if i == 0 or e != errors[i - 1]]

    stats: Dict[str, object] = {
        "files_scanned": len(files),
        "files_errored": len({e.path for e in errors}),
        "functions": len(nodes),
        "edges": len(all_edges),
        "edges_resolved": sum(1 for e in all_edges if e.resolved),
        "edges_emitted": len(emitted),
        "by_language": dict(sorted(Counter(n.language for n in nodes).items())),
        "truncated_functions": truncated,
        "degrees": degrees,
    }
    stats.update(classify(degrees, hub_count))
    warnings = sorted(index_warnings, key=lambda w: (w.path, w.line or 0, w.message))
    logger.info(
        "Call graph: %d functions, %d call sites (%d resolved)",
        stats["functions"], stats["edges"], stats["edges_resolved"],
    )
    return GraphReport("callgraph", nodes, emitted, stats, errors, warnings)
