"""Core data models shared by the indexer, graph builders and diff engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ScannedFile:
    path: str
    abs_path: str
    language: str
    size_bytes: int
    line_count: int
    content: str = field(repr=False)


@dataclass(frozen=True)
class GraphError:
    path: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "message": self.message}


@dataclass(frozen=True)
class ScanWarning:
    path: str
    message: str
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "line": self.line, "message": self.message}


@dataclass(frozen=True)
class IndexEntry:
    """A declared function, method or inline module."""

    id: str
    name: str
    bare_name: str
    kind: str
    file: str
    start_line: int
    end_line: int
    language: str
    container: Optional[str] = None
    # Character offsets into the file content: declaration start, body start
    # (just past the opening brace or colon) and body end.
    decl_offset: int = field(default=0, repr=False, compare=False)
    body_offset: int = field(default=0, repr=False, compare=False)
    end_offset: int = field(default=0, repr=False, compare=False)
    # Scanner hints such as "exported", "pub", "trait-impl", "test" or
    # "decorator:<name>".  Consumed by the audit detectors only.
    tags: Tuple[str, ...] = field(default=(), repr=False, compare=False)

    @property
    def sort_key(self) -> Tuple[str, int, str]:
        return (self.file, self.start_line, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "bare_name": self.bare_name,
            "kind": self.kind,
            "file": self.file,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "container": self.container,
        }


# ---------------------------------------------------------------------------
# Graph report nodes / edges
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlueprintNode:
    path: str
    language: str
    size_bytes: int
    lines: int

    @property
    def node_id(self) -> str:
        return self.path

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlueprintNode":
        return cls(
            path=data["path"],
            language=data.get("language", ""),
            size_bytes=int(data.get("size_bytes", 0)),
            lines=int(data.get("lines", 0)),
        )


@dataclass(frozen=True)
class BlueprintEdge:
    src: str
    dst: Optional[str]
    to_raw: str
    kind: str
    line: Optional[int]
    resolved: bool

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.src, self.dst or "", self.kind)

    @property
    def sort_key(self) -> Tuple[str, str, str, int]:
        return (self.src, self.kind, self.to_raw, self.line or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.src,
            "to": self.dst,
            "to_raw": self.to_raw,
            "kind": self.kind,
            "line": self.line,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlueprintEdge":
        return cls(
            src=data["from"],
            dst=data.get("to"),
            to_raw=data.get("to_raw", ""),
            kind=data.get("kind", "import"),
            line=data.get("line"),
            resolved=bool(data.get("resolved", False)),
        )


@dataclass(frozen=True)
class CallNode:
    id: str
    name: str
    kind: str
    file: str
    line: int
    language: str

    @property
    def node_id(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallNode":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            kind=data.get("kind", "function"),
            file=data.get("file", ""),
            line=int(data.get("line", 0)),
            language=data.get("language", ""),
        )


@dataclass(frozen=True)
class CallEdge:
    src: str
    dst: Optional[str]
    callee_raw: str
    line: int
    resolved: bool

    kind = "call"

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.src, self.dst or "", self.kind)

    @property
    def sort_key(self) -> Tuple[str, int, str, str]:
        return (self.src, self.line, self.callee_raw, self.dst or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.src,
            "to": self.dst,
            "callee_raw": self.callee_raw,
            "line": self.line,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallEdge":
        return cls(
            src=data["from"],
            dst=data.get("to"),
            callee_raw=data.get("callee_raw", ""),
            line=int(data.get("line", 0)),
            resolved=bool(data.get("resolved", False)),
        )


REPORT_KINDS = ("blueprint", "callgraph")


@dataclass
class GraphReport:
    """Blueprint or call-graph snapshot.  ``kind`` selects the node/edge types."""

    kind: str
    nodes: List[Any]
    edges: List[Any]
    stats: Dict[str, Any]
    errors: List[GraphError] = field(default_factory=list)
    warnings: List[ScanWarning] = field(default_factory=list)

    def node_ids(self) -> List[str]:
        return [n.node_id for n in self.nodes]

    def resolved_edges(self) -> List[Any]:
        return [e for e in self.edges if e.resolved]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "stats": self.stats,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphReport":
        kind = data.get("kind", "blueprint")
        if kind == "callgraph":
            node_cls, edge_cls = CallNode, CallEdge
        else:
            node_cls, edge_cls = BlueprintNode, BlueprintEdge
        return cls(
            kind=kind,
            nodes=[node_cls.from_dict(n) for n in data.get("nodes", [])],
            edges=[edge_cls.from_dict(e) for e in data.get("edges", [])],
            stats=dict(data.get("stats", {})),
            errors=[GraphError(e["path"], e.get("message", "")) for e in data.get("errors", [])],
            warnings=[
                ScanWarning(w["path"], w.get("message", ""), w.get("line"))
                for w in data.get("warnings", [])
            ],
        )


# ---------------------------------------------------------------------------
# Control-flow graph
# ---------------------------------------------------------------------------

@dataclass
class CfgNode:
    id: int
    kind: str
    start_line: int
    end_line: int
    label: str = ""
    out_edges: List[int] = field(default_factory=list)
    exit_kind: Optional[str] = None  # "return", "raise" or "exit" on exit nodes

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CfgEdge:
    id: int
    src: int
    dst: int
    kind: str
    condition: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.src,
            "to": self.dst,
            "kind": self.kind,
            "condition": self.condition,
        }


@dataclass(frozen=True)
class PathCondition:
    """A branch decision taken on the way to an exit."""

    expression: str
    must_be_true: bool
    line: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ExitPath:
    nodes: List[int]
    conditions: List[PathCondition]
    exit_node: int
    exit_kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": list(self.nodes),
            "conditions": [c.to_dict() for c in self.conditions],
            "exit_node": self.exit_node,
            "exit_kind": self.exit_kind,
        }


@dataclass
class CfgGraph:
    function_id: str
    name: str
    file: str
    language: str
    start_line: int
    nodes: List[CfgNode] = field(default_factory=list)
    edges: List[CfgEdge] = field(default_factory=list)
    entry: int = 0
    exits: List[int] = field(default_factory=list)
    unreachable: List[int] = field(default_factory=list)
    exit_paths: List[ExitPath] = field(default_factory=list)
    exit_paths_truncated: bool = False
    warnings: List[ScanWarning] = field(default_factory=list)
    diagram: Optional[str] = None

    def node(self, node_id: int) -> CfgNode:
        return self.nodes[node_id]

    def successors(self, node_id: int) -> List[int]:
        return [self.edges[e].dst for e in self.nodes[node_id].out_edges]

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": len(self.nodes),
            "edges": len(self.edges),
            "exits": len(self.exits),
            "unreachable_nodes": len(self.unreachable),
            "exit_paths": len(self.exit_paths),
            "exit_paths_truncated": self.exit_paths_truncated,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function_id": self.function_id,
            "name": self.name,
            "file": self.file,
            "language": self.language,
            "start_line": self.start_line,
            "entry": self.entry,
            "exits": list(self.exits),
            "unreachable": list(self.unreachable),
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "warnings": [w.to_dict() for w in self.warnings],
            "exit_paths": [p.to_dict() for p in self.exit_paths],
            "stats": self.stats,
            "diagram": self.diagram,
        }


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

EdgeKey = Tuple[str, str, str]


@dataclass(frozen=True)
class MoveSuggestion:
    src: str
    dst: str
    score: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.src, "to": self.dst, "score": self.score, "reason": self.reason}


@dataclass(frozen=True)
class DiffResult:
    kind: str
    added_nodes: List[str]
    removed_nodes: List[str]
    added_edges: List[EdgeKey]
    removed_edges: List[EdgeKey]
    suggestions: List[MoveSuggestion] = field(default_factory=list)
    mapping_template: Dict[str, str] = field(default_factory=dict)
    unmapped: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added_nodes or self.removed_nodes or self.added_edges or self.removed_edges)

    def to_dict(self) -> Dict[str, Any]:
        def edge(e: EdgeKey) -> Dict[str, str]:
            return {"from": e[0], "to": e[1], "kind": e[2]}

        return {
            "kind": self.kind,
            "added_nodes": list(self.added_nodes),
            "removed_nodes": list(self.removed_nodes),
            "added_edges": [edge(e) for e in self.added_edges],
            "removed_edges": [edge(e) for e in self.removed_edges],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "mapping_template": {"mappings": dict(self.mapping_template)},
            "unmapped": list(self.unmapped),
            "summary": {
                "added_nodes": len(self.added_nodes),
                "removed_nodes": len(self.removed_nodes),
                "added_edges": len(self.added_edges),
                "removed_edges": len(self.removed_edges),
                "suggestions": len(self.suggestions),
            },
        }


# ---------------------------------------------------------------------------
# Audit findings
# ---------------------------------------------------------------------------

@dataclass
class Finding:
    category: str
    severity: str
    confidence: str
    message: str
    file: str
    line: Optional[int]
    symbol: Optional[str]
    language: str
    evidence: List[str] = field(default_factory=list)
    chain: List[str] = field(default_factory=list)
    suggestion: str = ""

    @property
    def sort_key(self) -> Tuple[str, int, str, str]:
        return (self.file, self.line or 0, self.category, self.symbol or "")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AuditReport:
    summary: Dict[str, Any]
    findings: List[Finding]

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "findings": [f.to_dict() for f in self.findings]}
