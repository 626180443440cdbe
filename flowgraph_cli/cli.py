"""Typer-based CLI for FlowGraph structural analysis."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .audit import summarize
from .config import OUTPUT_FORMATS, AnalysisConfig, load_config
from .diff_engine import diff, dump_mapping_template, enforce_mapping, load_mapping, load_report, with_mapping
from .errors import (
    ConfigError,
    MissingMappingError,
    NotFoundError,
    ReportFormatError,
    UnsupportedFormatError,
)
from .graph_export import (
    check_format,
    dump_audit,
    dump_index,
    dump_json,
    dump_report,
    export_dot,
    render_diff_summary,
)
from .models import AuditReport
from .orchestrator import FlowGraphOrchestrator

app = typer.Typer(
    help="FlowGraph: dependency, call and control-flow graphs for Rust, TypeScript/JavaScript and Python.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_USAGE = 2


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"FlowGraph CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log progress to stderr."),
):
    """FlowGraph CLI: heuristic static analysis without a compiler front end."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


# ===================================================================
# Shared helpers
# ===================================================================

def _fail(message: str, code: int = EXIT_FAILURE) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=code)


def _config(config_file: Optional[Path], **overrides: Any) -> AnalysisConfig:
    """Load and validate configuration; usage errors exit with code 2."""
    fmt = overrides.get("output_format")
    try:
        if fmt is not None:
            check_format(fmt)
        return load_config(config_file, **overrides).validate()
    except UnsupportedFormatError as exc:
        _fail(str(exc), EXIT_USAGE)
    except ConfigError as exc:
        _fail(f"Configuration error: {exc}", EXIT_USAGE)


def _emit(text: str, output: Optional[Path]) -> None:
    if output is None:
        typer.echo(text, nl=not text.endswith("\n"))
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    console.print(f"[green]Wrote[/green] {output}")


def _stats_table(title: str, stats: Dict[str, Any], keys: List[str]) -> Table:
    table = Table(title=title, show_header=True, show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in keys:
        if key in stats:
            table.add_row(key.replace("_", " "), str(stats[key]))
    return table


def _report_errors(errors: List[Any]) -> None:
    for error in errors[:10]:
        console.print(f"[yellow]![/yellow] {error.path}: {error.message}")
    if len(errors) > 10:
        console.print(f"[yellow]... {len(errors) - 10} more error(s)[/yellow]")


_PATHS = typer.Argument(..., exists=True, help="Files or directories to analyze.")
_CONFIG = typer.Option(None, "--config", "-c", help="TOML config file (default: flowgraph.toml).")
_FORMAT = typer.Option(None, "--format", "-f", help=f"Output format: {', '.join(OUTPUT_FORMATS)}.")
_OUTPUT = typer.Option(None, "--output", "-o", help="Write the result to this file instead of stdout.")
_IGNORE = typer.Option(None, "--ignore", "-i", help="Glob of paths to skip (repeatable).")
_WORKERS = typer.Option(None, "--workers", "-w", min=1, help="Worker threads for per-file work.")
_BASE = typer.Option(None, "--base-dir", help="Directory that report paths are relative to.")


# ===================================================================
# Commands
# ===================================================================

@app.command("index")
def index_command(
    paths: List[Path] = _PATHS,
    output: Optional[Path] = _OUTPUT,
    fmt: Optional[str] = _FORMAT,
    config_file: Optional[Path] = _CONFIG,
    ignore: Optional[List[str]] = _IGNORE,
    workers: Optional[int] = _WORKERS,
    base_dir: Optional[Path] = _BASE,
):
    """List functions, methods and inline modules with their spans."""
    cfg = _config(config_file, output_format=fmt, ignore_globs=ignore or None, workers=workers, base_dir=base_dir)
    orchestrator = FlowGraphOrchestrator(cfg)
    workspace = orchestrator.scan(paths)
    data = orchestrator.index_report(workspace)
    _emit(dump_index(data, cfg.output_format), output)
    if output is not None:
        console.print(_stats_table("Index", data["stats"], ["files_scanned", "files_errored", "entries"]))
    _report_errors(workspace.errors)


@app.command("blueprint")
def blueprint_command(
    paths: List[Path] = _PATHS,
    output: Optional[Path] = _OUTPUT,
    fmt: Optional[str] = _FORMAT,
    dot: Optional[Path] = typer.Option(None, "--dot", help="Also write a Graphviz DOT file."),
    config_file: Optional[Path] = _CONFIG,
    ignore: Optional[List[str]] = _IGNORE,
    workers: Optional[int] = _WORKERS,
    base_dir: Optional[Path] = _BASE,
):
    """Build the file-level dependency graph."""
    cfg = _config(config_file, output_format=fmt, ignore_globs=ignore or None, workers=workers, base_dir=base_dir)
    orchestrator = FlowGraphOrchestrator(cfg)
    report = orchestrator.blueprint(orchestrator.scan(paths))
    _emit(dump_report(report, cfg.output_format), output)
    if dot is not None:
        export_dot(report, dot)
        console.print(f"[green]Wrote[/green] {dot}")
    if output is not None:
        console.print(_stats_table(
            "Blueprint", report.stats,
            ["files_scanned", "files_errored", "nodes", "edges", "edges_resolved"],
        ))
    _report_errors(report.errors)


@app.command("calls")
def calls_command(
    paths: List[Path] = _PATHS,
    output: Optional[Path] = _OUTPUT,
    fmt: Optional[str] = _FORMAT,
    resolved_only: Optional[bool] = typer.Option(
        None, "--resolved-only/--all-edges", help="Emit only resolved call edges."
    ),
    max_calls: Optional[int] = typer.Option(
        None, "--max-calls", min=1, help="Call sites kept per function body."
    ),
    hubs: Optional[int] = typer.Option(None, "--hubs", min=0, help="Number of hub functions to report."),
    dot: Optional[Path] = typer.Option(None, "--dot", help="Also write a Graphviz DOT file."),
    config_file: Optional[Path] = _CONFIG,
    ignore: Optional[List[str]] = _IGNORE,
    workers: Optional[int] = _WORKERS,
    base_dir: Optional[Path] = _BASE,
):
    """Build the function-level call graph with degree statistics."""
    cfg = _config(
        config_file,
        output_format=fmt,
        resolved_only=resolved_only,
        max_calls_per_function=max_calls,
        hub_count=hubs,
        ignore_globs=ignore or None,
        workers=workers,
        base_dir=base_dir,
    )
    orchestrator = FlowGraphOrchestrator(cfg)
    report = orchestrator.calls(orchestrator.scan(paths))
    _emit(dump_report(report, cfg.output_format), output)
    if dot is not None:
        export_dot(report, dot)
        console.print(f"[green]Wrote[/green] {dot}")
    if output is not None:
        console.print(_stats_table(
            "Call graph", report.stats,
            ["files_scanned", "files_errored", "functions", "edges", "edges_resolved", "truncated_functions"],
        ))
        hub_table = Table(title="Hubs", show_header=True)
        hub_table.add_column("Function", style="cyan")
        hub_table.add_column("Degree", justify="right")
        for hub in report.stats.get("hubs", []):
            hub_table.add_row(hub["id"], str(hub["degree"]))
        if report.stats.get("hubs"):
            console.print(hub_table)
    _report_errors(report.errors)


@app.command("cfg")
def cfg_command(
    file_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Source file."),
    function: str = typer.Argument(..., help="Function name (bare, qualified or id)."),
    output: Optional[Path] = _OUTPUT,
    diagram: bool = typer.Option(False, "--diagram", help="Attach a Mermaid flowchart."),
    mermaid: bool = typer.Option(False, "--mermaid", help="Print only the Mermaid flowchart."),
    config_file: Optional[Path] = _CONFIG,
):
    """Build the control-flow graph of one function."""
    cfg = _config(config_file, workers=1)
    try:
        graph = FlowGraphOrchestrator(cfg).cfg(file_path, function, include_diagram=diagram or mermaid)
    except NotFoundError as exc:
        _fail(str(exc))
    if mermaid:
        _emit(graph.diagram or "", output)
    else:
        _emit(dump_json(graph.to_dict()), output)
    for warning in graph.warnings:
        line = f":{warning.line}" if warning.line else ""
        console.print(f"[yellow]![/yellow] {warning.path}{line}: {warning.message}")
    if graph.unreachable:
        console.print(f"[yellow]{len(graph.unreachable)} unreachable node(s)[/yellow]")
    if graph.exit_paths_truncated:
        console.print(f"[yellow]Exit paths truncated at {len(graph.exit_paths)}[/yellow]")


@app.command("diff")
def diff_command(
    before: Path = typer.Argument(..., exists=True, dir_okay=False, help="Earlier report snapshot."),
    after: Path = typer.Argument(..., exists=True, dir_okay=False, help="Later report snapshot."),
    mapping: Optional[Path] = typer.Option(
        None, "--mapping", "-m", exists=True, dir_okay=False, help="YAML/JSON mapping of removed nodes."
    ),
    require_mapping: bool = typer.Option(
        False, "--require-mapping", help="Fail unless every removed node is mapped."
    ),
    write_mapping: Optional[Path] = typer.Option(
        None, "--write-mapping", help="Write a mapping template for the removed nodes."
    ),
    summary: bool = typer.Option(False, "--summary", help="Print a Markdown summary instead of JSON."),
    output: Optional[Path] = _OUTPUT,
):
    """Compare two blueprint or call graph snapshots."""
    try:
        result = diff(load_report(before), load_report(after))
        mapping_data = load_mapping(mapping) if mapping is not None else {}
    except ReportFormatError as exc:
        _fail(f"Invalid input: {exc}")

    if write_mapping is not None:
        write_mapping.write_text(dump_mapping_template(result), encoding="utf-8")
        console.print(f"[green]Wrote[/green] mapping template {write_mapping}")

    missing: Optional[MissingMappingError] = None
    if require_mapping:
        try:
            result = enforce_mapping(result, mapping_data)
        except MissingMappingError as exc:
            missing = exc
            result = with_mapping(result, mapping_data)
    elif mapping is not None:
        result = with_mapping(result, mapping_data)

    _emit(render_diff_summary(result) if summary else dump_json(result.to_dict()), output)
    if missing is not None:
        for node in missing.unmapped:
            console.print(f"[red]unmapped:[/red] {node}")
        _fail(str(missing))


@app.command("audit")
def audit_command(
    paths: List[Path] = _PATHS,
    output: Optional[Path] = _OUTPUT,
    fmt: Optional[str] = _FORMAT,
    category: Optional[List[str]] = typer.Option(
        None, "--category", help="Only report these categories (repeatable)."
    ),
    config_file: Optional[Path] = _CONFIG,
    ignore: Optional[List[str]] = _IGNORE,
    workers: Optional[int] = _WORKERS,
    base_dir: Optional[Path] = _BASE,
):
    """Report pass-through wrappers, lonely abstractions, orphans and placeholders."""
    cfg = _config(config_file, output_format=fmt, ignore_globs=ignore or None, workers=workers, base_dir=base_dir)
    orchestrator = FlowGraphOrchestrator(cfg)
    report = orchestrator.audit(orchestrator.scan(paths))
    if category:
        kept = [f for f in report.findings if f.category in category]
        report = AuditReport(summarize(kept, report.summary["files_scanned"]), kept)
    _emit(dump_audit(report, cfg.output_format), output)
    if output is not None:
        table = Table(title="Audit findings", show_header=True)
        table.add_column("Category", style="cyan")
        table.add_column("Count", justify="right")
        for name, count in report.summary["by_category"].items():
            table.add_row(name, str(count))
        console.print(table)


@app.command("version")
def version_command():
    """Show the installed version."""
    typer.echo(f"FlowGraph CLI v{__version__}")


if __name__ == "__main__":
    app()
