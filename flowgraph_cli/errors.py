"""Exception taxonomy for operation-level failures.

Per-file problems (unreadable files, unbalanced delimiters) are *data*: they
are recorded as ``GraphError`` / ``ScanWarning`` entries on the report and
never raised across a batch.  The exceptions below abort a single operation.
"""

from __future__ import annotations

from typing import Iterable, List


class FlowGraphError(Exception):
    """Base class for all FlowGraph failures."""


class ConfigError(FlowGraphError):
    """Invalid configuration value."""


class UnsupportedFormatError(FlowGraphError):
    """An unknown output serialization was requested."""

    def __init__(self, fmt: str, supported: Iterable[str]):
        self.fmt = fmt
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported output format '{fmt}' (expected one of: {', '.join(self.supported)})"
        )


class NotFoundError(FlowGraphError):
    """A function requested for CFG construction is absent from the index."""


class ReportFormatError(FlowGraphError):
    """A graph snapshot could not be read or has the wrong shape."""


class MissingMappingError(FlowGraphError):
    """Mapping enforcement found removed nodes without an explanation."""

    def __init__(self, unmapped: List[str]):
        self.unmapped = list(unmapped)
        preview = ", ".join(self.unmapped[:5])
        if len(self.unmapped) > 5:
            preview += f", ... ({len(self.unmapped) - 5} more)"
        super().__init__(f"{len(self.unmapped)} removed node(s) are not mapped: {preview}")
