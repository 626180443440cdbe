"""File-level dependency ("blueprint") graph.

One node per scanned file, one edge per module declaration, import or use
statement.  Extraction is a head-of-statement pattern match over masked text;
only Rust ``use`` trees are accumulated across lines up to their ``;``.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .collector import map_files
from .config import FAMILY_CURLY, FAMILY_PYTHON, FAMILY_RUST, family_of
from .masking import LineMap, mask_source
from .models import BlueprintEdge, BlueprintNode, GraphError, GraphReport, ScannedFile
from .resolver import EdgeResolver, ScopeIndex, discover_rust_crates, expand_rust_use
from .scanners import logical_lines

logger = logging.getLogger(__name__)

EDGE_MOD = "mod"
EDGE_IMPORT = "import"
EDGE_USE = "use"


@dataclass(frozen=True)
class RawEdge:
    to_raw: str
    kind: str
    line: int


_RUST_MOD = re.compile(r"\bmod\s+([A-Za-z_]\w*)\s*;")
_RUST_USE = re.compile(r"(?<![\w:])use\s+([^;{}]*(?:\{[^;]*\})?[^;{}]*);")

_CURLY_PATTERNS = (
    re.compile(r"\bimport\s+(?:type\s+)?[^'\";`]*?\bfrom\s*(['\"])"),
    re.compile(r"\bimport\s*(['\"])"),
    re.compile(r"\bexport\s+(?:type\s+)?(?:\*(?:\s+as\s+[\w$]+)?|\{[^}]*\})\s*from\s*(['\"])"),
    re.compile(r"\brequire\s*\(\s*(['\"])"),
    re.compile(r"\bimport\s*\(\s*(['\"])"),
)

_PY_IMPORT = re.compile(r"import\s+(.+)$")
_PY_FROM = re.compile(r"from\s+(\.+[\w.]*|[A-Za-z_][\w.]*)\s+import\s+(.+)$")


def _rust_edges(file: ScannedFile, masked: str, lines: LineMap) -> List[RawEdge]:
    edges = []
    for m in _RUST_MOD.finditer(masked):
        edges.append(RawEdge(m.group(1), EDGE_MOD, lines.line_of(m.start())))
    for m in _RUST_USE.finditer(masked):
        line = lines.line_of(m.start())
        for path in expand_rust_use(m.group(1)):
            edges.append(RawEdge(path, EDGE_USE, line))
    return edges


def _curly_edges(file: ScannedFile, masked: str, lines: LineMap) -> List[RawEdge]:
    by_quote: Dict[int, RawEdge] = {}
    for pattern in _CURLY_PATTERNS:
        for m in pattern.finditer(masked):
            quote_at = m.start(1)
            if quote_at in by_quote:
                continue
            close = masked.find(m.group(1), quote_at + 1)
            newline = masked.find("\n", quote_at + 1)
            if close < 0 or (0 <= newline < close):
                continue
            spec = file.content[quote_at + 1:close].strip()
            if spec:
                by_quote[quote_at] = RawEdge(spec, EDGE_IMPORT, lines.line_of(m.start()))
    return [by_quote[k] for k in sorted(by_quote)]


def _python_names(clause: str) -> List[str]:
    clause = clause.strip().strip("()").strip()
    names = []
    for part in clause.split(","):
        name = re.sub(r"\s+as\s+\w+$", "", part.strip()).strip()
        if name and name != "*":
            names.append(name)
    return names


def _python_edges(file: ScannedFile, masked: str, lines: LineMap) -> List[RawEdge]:
    edges = []
    for ll in logical_lines(masked)[0]:
        text = ll.text.replace("\\", " ")
        m = _PY_FROM.match(text)
        if m:
            module = m.group(1)
            if module.strip("."):
                edges.append(RawEdge(module, EDGE_IMPORT, ll.line))
            else:
                for name in _python_names(m.group(2)):
                    edges.append(RawEdge(module + name, EDGE_IMPORT, ll.line))
            continue
        m = _PY_IMPORT.match(text)
        if m:
            for name in _python_names(m.group(1)):
                edges.append(RawEdge(name, EDGE_IMPORT, ll.line))
    return edges


_EXTRACTORS = {
    FAMILY_RUST: _rust_edges,
    FAMILY_CURLY: _curly_edges,
    FAMILY_PYTHON: _python_edges,
}


def extract_edges(file: ScannedFile) -> List[RawEdge]:
    """Raw, unresolved dependency declarations of one file."""
    masked = mask_source(file.content, file.language)
    return _EXTRACTORS[family_of(file.language)](file, masked, LineMap(file.content))


def _extract_one(file: ScannedFile) -> Tuple[ScannedFile, Optional[List[RawEdge]], Optional[GraphError]]:
    try:
        return file, extract_edges(file), None
    except Exception as exc:
        logger.warning("Import extraction failed for %s: %s", file.path, exc)
        return file, None, GraphError(file.path, f"extraction failed: {exc}")


def compute_stats(
    nodes: Sequence[BlueprintNode], edges: Sequence[BlueprintEdge], errors: Sequence[GraphError]
) -> Dict[str, object]:
    resolved = [e for e in edges if e.resolved]
    return {
        "files_scanned": len(nodes),
        "files_errored": len(errors),
        "nodes": len(nodes),
        "edges": len(edges),
        "edges_resolved": len(resolved),
        "by_language": dict(sorted(Counter(n.language for n in nodes).items())),
        "by_edge_kind": dict(sorted(Counter(e.kind for e in edges).items())),
        "by_edge_kind_resolved": dict(sorted(Counter(e.kind for e in resolved).items())),
    }


def build(
    files: Sequence[ScannedFile],
    read_errors: Iterable[GraphError] = (),
    workers: int = 1,
    crates: Optional[Mapping[str, str]] = None,
) -> GraphReport:
    """Build the blueprint report for *files*.

    Extraction runs per file (optionally on a thread pool); resolution and
    sorting happen afterwards on the merged result, once every candidate
    path is known.
    """
    errors = list(read_errors)
    extracted: List[Tuple[ScannedFile, List[RawEdge]]] = []
    for file, raws, error in map_files(_extract_one, files, workers):
        if error is not None:
            errors.append(error)
        else:
            extracted.append((file, raws))

    scanned = [f for f, _ in extracted]
    if crates is None:
        crates = discover_rust_crates(scanned)
    resolver = EdgeResolver(ScopeIndex([f.path for f in scanned], crates=crates))

    edges: List[BlueprintEdge] = []
    for file, raws in extracted:
        for raw in raws:
            dst = resolver.resolve_file_edge(file.path, file.language, raw.kind, raw.to_raw)
            edges.append(BlueprintEdge(file.path, dst, raw.to_raw, raw.kind, raw.line, dst is not None))
    edges.sort(key=lambda e: e.sort_key)

    nodes = sorted(
        (BlueprintNode(f.path, f.language, f.size_bytes, f.line_count) for f in scanned),
        key=lambda n: n.path,
    )
    errors.sort(key=lambda e: (e.path, e.message))
    stats = compute_stats(nodes, edges, errors)
    logger.info(
        "Blueprint: %d files, %d edges (%d resolved)",
        stats["nodes"], stats["edges"], stats["edges_resolved"],
    )
    return GraphReport("blueprint", nodes, edges, stats, errors)


def visible_files(report: GraphReport) -> Dict[str, Set[str]]:
    """File -> files reachable through one resolved blueprint edge."""
    visible: Dict[str, Set[str]] = {}
    for edge in report.edges:
        if edge.resolved and edge.dst:
            visible.setdefault(edge.src, set()).add(edge.dst)
    return visible
