"""FlowGraph CLI: heuristic blueprint, call-graph and control-flow analysis."""

__version__ = "0.4.0"
