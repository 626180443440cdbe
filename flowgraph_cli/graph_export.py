"""Serializers for reports: JSON, JSON Lines, Mermaid, DOT and Markdown."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Set

from .config import OUTPUT_FORMATS
from .errors import UnsupportedFormatError
from .models import AuditReport, CfgGraph, DiffResult, GraphReport

_MERMAID_SHAPES = {
    "entry": ('(["', '"])'),
    "branch": ('{"', '"}'),
    "loop-head": ('{{"', '"}}'),
    "statement-block": ('["', '"]'),
    "jump": ('>"', '"]'),
    "exit": ('[["', '"]]'),
}


def check_format(fmt: str) -> str:
    if fmt not in OUTPUT_FORMATS:
        raise UnsupportedFormatError(fmt, OUTPUT_FORMATS)
    return fmt


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True)


def dump_report(report: GraphReport, fmt: str = "json") -> str:
    """Serialize *report* as one JSON document or as JSON Lines.

    JSON Lines output starts with a ``stats`` record followed by one record
    per node, edge, error and warning, each tagged with its ``type``.
    """
    document = report.to_dict()
    return _dump_records(
        {"type": "stats", "kind": report.kind, "stats": report.stats},
        [
            ("node", document["nodes"]),
            ("edge", document["edges"]),
            ("error", document["errors"]),
            ("warning", document["warnings"]),
        ],
        fmt,
        document,
    )


def _mermaid_text(text: str) -> str:
    return text.replace('"', "#quot;").replace("\n", " ") or " "


def render_mermaid(cfg: CfgGraph) -> str:
    """Mermaid ``flowchart`` for one control-flow graph."""
    lines = ["flowchart TD"]
    for node in cfg.nodes:
        opener, closer = _MERMAID_SHAPES.get(node.kind, ('["', '"]'))
        label = node.label
        if node.kind == "statement-block":
            span = f"L{node.start_line}" if node.start_line == node.end_line else f"L{node.start_line}-{node.end_line}"
            label = f"{span}: {label}" if label else span
        lines.append(f"    n{node.id}{opener}{_mermaid_text(label)}{closer}")
    for edge in cfg.edges:
        text = edge.kind if not edge.condition else f"{edge.kind}: {edge.condition}"
        lines.append(f'    n{edge.src} -->|"{_mermaid_text(text)}"| n{edge.dst}')
    if cfg.unreachable:
        lines.append("    classDef unreachable stroke-dasharray: 5 5,fill:#eee,color:#888")
        lines.append("    class " + ",".join(f"n{i}" for i in cfg.unreachable) + " unreachable")
    return "\n".join(lines) + "\n"


def _esc(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _focused(report: GraphReport, focus: str) -> Set[str]:
    ids = set(report.node_ids())
    if not focus:
        return ids
    matched = {nid for nid in ids if focus in nid}
    selected = set(matched)
    for edge in report.resolved_edges():
        if edge.src in matched or edge.dst in matched:
            selected.update((edge.src, edge.dst))
    return selected & ids


def render_dot(report: GraphReport, focus: str = "", resolved_only: bool = True) -> str:
    """Graphviz source for a blueprint or call graph report."""
    selected = _focused(report, focus)
    name = "Blueprint" if report.kind == "blueprint" else "CallGraph"
    lines = [f"digraph {name} {{", "  rankdir=LR;"]
    for node in report.nodes:
        if node.node_id not in selected:
            continue
        label = f"{node.language}\\n{node.node_id}"
        lines.append(f'  "{_esc(node.node_id)}" [label="{_esc(label)}"];')
    edges = report.resolved_edges() if resolved_only else report.edges
    seen = set()
    for edge in edges:
        if edge.src not in selected or edge.dst not in selected:
            continue
        key = (edge.src, edge.dst, edge.kind)
        if key in seen:
            continue
        seen.add(key)
        lines.append(f'  "{_esc(edge.src)}" -> "{_esc(edge.dst)}" [label="{_esc(edge.kind)}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def export_dot(report: GraphReport, output_file: Path, focus: str = "") -> None:
    output_file.write_text(render_dot(report, focus), encoding="utf-8")


def render_diff_summary(result: DiffResult) -> str:
    """Markdown summary of a graph diff, suitable for a pull request comment."""
    out = [f"## {result.kind.capitalize()} diff", ""]
    if result.is_empty:
        out.append("No structural changes.")
        return "\n".join(out) + "\n"

    out.append("| | Added | Removed |")
    out.append("|---|---:|---:|")
    out.append(f"| Nodes | {len(result.added_nodes)} | {len(result.removed_nodes)} |")
    out.append(f"| Edges | {len(result.added_edges)} | {len(result.removed_edges)} |")
    out.append("")

    def section(title: str, items: List[str]) -> None:
        if not items:
            return
        out.append(f"### {title}")
        out.append("")
        out.extend(f"- `{item}`" for item in items)
        out.append("")

    section("Added nodes", result.added_nodes)
    section("Removed nodes", result.removed_nodes)
    section("Added edges", [f"{s} -> {d} ({k})" for s, d, k in result.added_edges])
    section("Removed edges", [f"{s} -> {d} ({k})" for s, d, k in result.removed_edges])

    if result.suggestions:
        out.append("### Suggested mappings")
        out.append("")
        out.append("| From | To | Score | Reason |")
        out.append("|---|---|---:|---|")
        for s in result.suggestions:
            out.append(f"| `{s.src}` | `{s.dst}` | {s.score} | {s.reason} |")
        out.append("")
    if result.unmapped:
        section("Unmapped removals", result.unmapped)
    return "\n".join(out).rstrip() + "\n"


def _dump_records(head: Dict[str, Any], groups: List[tuple], fmt: str, document: Dict[str, Any]) -> str:
    check_format(fmt)
    if fmt == "json":
        return dump_json(document)
    records: List[Dict[str, Any]] = [head]
    for record_type, items in groups:
        records.extend({"type": record_type, **item} for item in items)
    return "\n".join(json.dumps(r, sort_keys=True) for r in records) + "\n"


def dump_index(data: Dict[str, Any], fmt: str = "json") -> str:
    """Serialize the ``index`` command document (entries, errors, warnings, stats)."""
    return _dump_records(
        {"type": "stats", "kind": "index", "stats": data["stats"]},
        [("entry", data["entries"]), ("error", data["errors"]), ("warning", data["warnings"])],
        fmt,
        data,
    )


def dump_audit(report: AuditReport, fmt: str = "json") -> str:
    document = report.to_dict()
    return _dump_records(
        {"type": "summary", **document["summary"]},
        [("finding", document["findings"])],
        fmt,
        document,
    )
