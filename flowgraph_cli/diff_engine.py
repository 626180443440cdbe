"""Snapshot diffing for blueprint and call graphs.

Compares two previously emitted reports, proposes where removed nodes went
and enforces the refactor-mapping contract: every removed node must be
explained before a diff is accepted.
"""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

import yaml

from .errors import MissingMappingError, ReportFormatError
from .models import REPORT_KINDS, DiffResult, EdgeKey, GraphReport, MoveSuggestion

logger = logging.getLogger(__name__)


# ===================================================================
# Loading
# ===================================================================

def _parse_jsonl(text: str) -> Dict[str, Any]:
    data: Dict[str, Any] = {"nodes": [], "edges": [], "errors": [], "warnings": []}
    plural = {"node": "nodes", "edge": "edges", "error": "errors", "warning": "warnings"}
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ReportFormatError(f"line {number}: {exc.msg}") from exc
        kind = record.pop("type", None)
        if kind == "stats":
            data["kind"] = record.get("kind")
            data["stats"] = record.get("stats", {})
        elif kind in plural:
            data[plural[kind]].append(record)
        else:
            raise ReportFormatError(f"line {number}: unknown record type {kind!r}")
    return data


def parse_report(text: str) -> GraphReport:
    """Parse a report serialized as JSON or JSON Lines."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # A JSON Lines report is several documents; a lone stats line parses
        # as one and is handled below.
        data = _parse_jsonl(text)
    else:
        if isinstance(data, dict) and data.get("type") == "stats":
            data = _parse_jsonl(text)
    if not isinstance(data, dict):
        raise ReportFormatError("report must be a JSON object")
    if data.get("kind") not in REPORT_KINDS:
        raise ReportFormatError(f"unknown report kind {data.get('kind')!r}")
    if not isinstance(data.get("nodes", []), list) or not isinstance(data.get("edges", []), list):
        raise ReportFormatError("'nodes' and 'edges' must be lists")
    try:
        return GraphReport.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        raise ReportFormatError(f"malformed report entry: {exc}") from exc


def load_report(path: Path) -> GraphReport:
    """Read a blueprint or call graph snapshot from *path*.

    Raises:
        ReportFormatError: The file is unreadable or is not a graph report.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ReportFormatError(f"{path}: {exc}") from exc
    try:
        return parse_report(text)
    except ReportFormatError as exc:
        raise ReportFormatError(f"{path}: {exc}") from exc


def load_mapping(path: Path) -> Dict[str, str]:
    """Read a mapping file (YAML or JSON, which YAML also accepts).

    The document is either a mapping of removed node to successor or
    explanation, or such a mapping under a ``mappings`` key.
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ReportFormatError(f"{path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ReportFormatError(f"{path}: invalid YAML: {exc}") from exc
    if data is None:
        return {}
    if isinstance(data, dict) and isinstance(data.get("mappings"), dict):
        data = data["mappings"]
    elif isinstance(data, dict) and "mappings" in data and data["mappings"] is None:
        data = {}
    if not isinstance(data, dict):
        raise ReportFormatError(f"{path}: mapping file must contain a mapping")
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


# ===================================================================
# Diffing
# ===================================================================

def _neighbours(report: GraphReport) -> Dict[str, Set[str]]:
    result: Dict[str, Set[str]] = {}
    for edge in report.resolved_edges():
        if not edge.dst or edge.dst == edge.src:
            continue
        result.setdefault(edge.src, set()).add(edge.dst)
        result.setdefault(edge.dst, set()).add(edge.src)
    return result


def base_name(node_id: str, kind: str) -> str:
    """File name for blueprint nodes, bare function name for call nodes."""
    if kind == "blueprint":
        return posixpath.basename(node_id)
    qualname = node_id.split("::", 1)[1] if "::" in node_id else node_id
    qualname = re.sub(r"@\d+$", "", qualname)
    return re.split(r"::|\.", qualname)[-1]


def suggest_moves(
    before: GraphReport,
    after: GraphReport,
    removed: Iterable[str],
    added: Iterable[str],
) -> List[MoveSuggestion]:
    """Pair removed nodes with the added node sharing the most neighbours."""
    before_nb = _neighbours(before)
    after_nb = _neighbours(after)
    added = sorted(added)
    suggestions = []
    for old in sorted(removed):
        old_nb = before_nb.get(old, set())
        best: Optional[str] = None
        best_score = 0
        for new in added:
            score = len(old_nb & after_nb.get(new, set()))
            if score > best_score:
                best, best_score = new, score
        old_base = base_name(old, before.kind)
        if best is None:
            same = [new for new in added if base_name(new, after.kind) == old_base]
            if len(same) != 1:
                continue
            best = same[0]
        reason = "move" if base_name(best, after.kind) == old_base else "rename"
        suggestions.append(MoveSuggestion(old, best, best_score, reason))
    return suggestions


def _edge_keys(report: GraphReport) -> Set[EdgeKey]:
    return {e.identity for e in report.resolved_edges()}


def diff(before: GraphReport, after: GraphReport) -> DiffResult:
    """Structural delta between two snapshots of the same kind.

    Nodes compare by identity (path or function id); edges compare by
    ``(from, to, kind)`` over resolved edges, so a call that only moved
    lines is not a change.
    """
    if before.kind != after.kind:
        raise ReportFormatError(f"Cannot diff a {before.kind} report against a {after.kind} report")
    before_nodes = set(before.node_ids())
    after_nodes = set(after.node_ids())
    removed = sorted(before_nodes - after_nodes)
    added = sorted(after_nodes - before_nodes)
    before_edges = _edge_keys(before)
    after_edges = _edge_keys(after)

    suggestions = suggest_moves(before, after, removed, added)
    result = DiffResult(
        kind=before.kind,
        added_nodes=added,
        removed_nodes=removed,
        added_edges=sorted(after_edges - before_edges),
        removed_edges=sorted(before_edges - after_edges),
        suggestions=suggestions,
        mapping_template=mapping_template(removed),
    )
    logger.info(
        "Diff: +%d/-%d nodes, +%d/-%d edges, %d suggestion(s)",
        len(added), len(removed), len(result.added_edges), len(result.removed_edges), len(suggestions),
    )
    return result


def mapping_template(removed_nodes: Iterable[str]) -> Dict[str, str]:
    """One blank entry per removed node, left for a human to fill in."""
    return {node: "" for node in removed_nodes}


def dump_mapping_template(result: DiffResult) -> str:
    """YAML template; suggested successors are written as comments only."""
    lines = ["# Explain every removed node before running with --require-mapping."]
    for s in result.suggestions:
        lines.append(f"# suggested: {s.src} -> {s.dst} ({s.reason}, score {s.score})")
    body = yaml.safe_dump(
        {"mappings": dict(result.mapping_template)}, sort_keys=True, default_flow_style=False
    )
    return "\n".join(lines) + "\n" + body


def unmapped_nodes(result: DiffResult, mapping: Mapping[str, str]) -> List[str]:
    return [n for n in result.removed_nodes if not str(mapping.get(n) or "").strip()]


def with_mapping(result: DiffResult, mapping: Mapping[str, str]) -> DiffResult:
    """Copy of *result* whose ``unmapped`` reflects *mapping*."""
    return replace(result, unmapped=unmapped_nodes(result, mapping))


def enforce_mapping(result: DiffResult, mapping: Mapping[str, str]) -> DiffResult:
    """Require every removed node to be explained in *mapping*.

    Raises:
        MissingMappingError: Lists each removed node without a non-blank entry.
    """
    checked = with_mapping(result, mapping)
    if checked.unmapped:
        raise MissingMappingError(checked.unmapped)
    return checked


def diff_files(
    before_path: Path,
    after_path: Path,
    mapping_path: Optional[Path] = None,
    require_mapping: bool = False,
) -> DiffResult:
    """Load two snapshots, diff them and optionally enforce a mapping file."""
    result = diff(load_report(before_path), load_report(after_path))
    mapping = load_mapping(mapping_path) if mapping_path is not None else {}
    if require_mapping:
        return enforce_mapping(result, mapping)
    if mapping_path is not None:
        return with_mapping(result, mapping)
    return result
