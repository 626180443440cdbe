"""Pipeline wiring: collector -> indexer -> graph builders -> audit."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import audit, blueprint, callgraph, cfg
from .collector import collect_files
from .config import AnalysisConfig
from .errors import NotFoundError
from .models import AuditReport, CfgGraph, GraphError, GraphReport, ScannedFile
from .scanners import IndexResult, index_files

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Files and index of one scan.  Built once per invocation."""

    base_dir: Path
    files: List[ScannedFile]
    read_errors: List[GraphError]
    index: IndexResult
    _blueprint: Optional[GraphReport] = field(default=None, repr=False)

    @property
    def errors(self) -> List[GraphError]:
        return sorted(set(self.read_errors) | set(self.index.errors), key=lambda e: (e.path, e.message))


class FlowGraphOrchestrator:
    """Runs the analysis pipeline for the CLI and library callers."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = (config or AnalysisConfig()).validate()

    def _base_dir(self, paths: Sequence[Path]) -> Path:
        if self.config.base_dir is not None:
            return self.config.resolved_base_dir()
        if len(paths) == 1 and Path(paths[0]).is_dir():
            return Path(paths[0]).resolve()
        return Path.cwd().resolve()

    def scan(self, paths: Sequence[Path]) -> Workspace:
        base = self._base_dir(paths)
        collected = collect_files(
            paths, base_dir=base, ignore_globs=self.config.ignore_globs, max_file_kb=self.config.max_file_kb
        )
        index = index_files(collected.files, workers=self.config.workers)
        return Workspace(base, collected.files, collected.errors, index)

    def index_report(self, workspace: Workspace) -> Dict[str, Any]:
        entries = workspace.index.entries
        by_kind: Dict[str, int] = {}
        for e in entries:
            by_kind[e.kind] = by_kind.get(e.kind, 0) + 1
        errors = workspace.errors
        return {
            "entries": [e.to_dict() for e in entries],
            "errors": [e.to_dict() for e in errors],
            "warnings": [w.to_dict() for w in workspace.index.warnings],
            "stats": {
                "files_scanned": len(workspace.files),
                "files_errored": len({e.path for e in errors}),
                "entries": len(entries),
                "by_kind": dict(sorted(by_kind.items())),
            },
        }

    def blueprint(self, workspace: Workspace) -> GraphReport:
        if workspace._blueprint is None:
            workspace._blueprint = blueprint.build(
                workspace.files,
                read_errors=workspace.read_errors,
                workers=self.config.workers,
            )
        return workspace._blueprint

    def calls(self, workspace: Workspace, resolved_only: Optional[bool] = None) -> GraphReport:
        if resolved_only is None:
            resolved_only = self.config.resolved_only
        return callgraph.build(
            workspace.files,
            workspace.index.entries,
            max_calls_per_function=self.config.max_calls_per_function,
            resolved_only=resolved_only,
            hub_count=self.config.hub_count,
            read_errors=workspace.errors,
            index_warnings=workspace.index.warnings,
            blueprint=self.blueprint(workspace),
            workers=self.config.workers,
        )

    def cfg(self, file_path: Path, function_name: str, include_diagram: bool = False) -> CfgGraph:
        """CFG of *function_name* in one source file.

        Raises:
            NotFoundError: The file is unsupported, unreadable or lacks the function.
        """
        workspace = self.scan([file_path])
        if not workspace.files:
            reason = workspace.errors[0].message if workspace.errors else "not a supported source file"
            raise NotFoundError(f"Cannot analyze {file_path}: {reason}")
        return cfg.build(workspace.files[0], function_name, workspace.index.entries, include_diagram)

    def audit(self, workspace: Workspace) -> AuditReport:
        graph = self.calls(workspace, resolved_only=False)
        return audit.detect(workspace.index.entries, graph, workspace.files)
