"""Tests for snapshot diffing and refactor-mapping enforcement."""

import dataclasses
import json
from pathlib import Path

import pytest
import yaml

from flowgraph_cli import blueprint
from flowgraph_cli.collector import collect_files
from flowgraph_cli.config import AnalysisConfig
from flowgraph_cli.diff_engine import (
    base_name,
    diff,
    diff_files,
    dump_mapping_template,
    enforce_mapping,
    load_mapping,
    parse_report,
    with_mapping,
)
from flowgraph_cli.errors import MissingMappingError, ReportFormatError
from flowgraph_cli.graph_export import dump_report, render_diff_summary
from flowgraph_cli.models import BlueprintEdge, BlueprintNode, GraphReport
from flowgraph_cli.orchestrator import FlowGraphOrchestrator


def _report(nodes, edges):
    return GraphReport(
        "blueprint",
        [BlueprintNode(n, "python", 1, 1) for n in nodes],
        [BlueprintEdge(s, d, d, "import", 1, True) for s, d in edges],
        {},
    )


def _blueprint(root: Path):
    return blueprint.build(collect_files([root], base_dir=root).files)


def _calls(root: Path):
    orchestrator = FlowGraphOrchestrator(AnalysisConfig(workers=1, base_dir=root))
    return orchestrator.calls(orchestrator.scan([root]))


BEFORE = _report(
    ["src/a.py", "src/b.py", "src/c.py"],
    [("src/a.py", "src/b.py"), ("src/b.py", "src/c.py")],
)
AFTER = _report(
    ["src/a.py", "src/c.py", "src/d.py"],
    [("src/a.py", "src/c.py"), ("src/a.py", "src/d.py")],
)


class TestDiff:
    """Set semantics of node and edge deltas."""

    def test_set_law(self):
        result = diff(BEFORE, AFTER)

        assert result.added_nodes == ["src/d.py"]
        assert result.removed_nodes == ["src/b.py"]
        assert result.added_edges == [
            ("src/a.py", "src/c.py", "import"),
            ("src/a.py", "src/d.py", "import"),
        ]
        assert result.removed_edges == [
            ("src/a.py", "src/b.py", "import"),
            ("src/b.py", "src/c.py", "import"),
        ]

    def test_self_diff_is_empty(self):
        result = diff(BEFORE, BEFORE)
        assert result.is_empty
        assert result.suggestions == []
        assert result.mapping_template == {}

    def test_unresolved_edges_are_ignored(self):
        after = _report(["src/a.py", "src/b.py", "src/c.py"],
                        [("src/a.py", "src/b.py"), ("src/b.py", "src/c.py")])
        after.edges.append(BlueprintEdge("src/a.py", None, "requests", "import", 2, False))
        assert diff(BEFORE, after).is_empty

    def test_kinds_must_match(self):
        calls = GraphReport("callgraph", [], [], {})
        with pytest.raises(ReportFormatError, match="Cannot diff"):
            diff(BEFORE, calls)

    def test_suggestion_and_template(self):
        result = diff(BEFORE, AFTER)

        assert [(s.src, s.dst, s.score, s.reason) for s in result.suggestions] == [
            ("src/b.py", "src/d.py", 1, "rename"),
        ]
        assert result.mapping_template == {"src/b.py": ""}
        text = dump_mapping_template(result)
        assert yaml.safe_load(text) == {"mappings": {"src/b.py": ""}}
        assert "# suggested: src/b.py -> src/d.py (rename, score 1)" in text

    def test_template_does_not_satisfy_enforcement(self, temp_dir: Path):
        """A freshly written template still needs a human explanation per removal."""
        result = diff(BEFORE, AFTER)

        with pytest.raises(MissingMappingError) as excinfo:
            enforce_mapping(result, result.mapping_template)
        assert excinfo.value.unmapped == ["src/b.py"]
        path = temp_dir / "template.yaml"
        path.write_text(dump_mapping_template(result), encoding="utf-8")
        with pytest.raises(MissingMappingError):
            enforce_mapping(result, load_mapping(path))

    def test_same_basename_move_without_shared_neighbours(self):
        before = _report(["old/util.py", "x.py"], [])
        after = _report(["new/util.py", "x.py"], [])
        [suggestion] = diff(before, after).suggestions

        assert (suggestion.dst, suggestion.score, suggestion.reason) == ("new/util.py", 0, "move")

    def test_base_name(self):
        assert base_name("src/a/util.rs", "blueprint") == "util.rs"
        assert base_name("src/lib.rs::Store::new", "callgraph") == "new"
        assert base_name("m.py::A.run@12", "callgraph") == "run"

    def test_summary_markdown(self):
        text = render_diff_summary(diff(BEFORE, AFTER))

        assert text.startswith("## Blueprint diff")
        assert "| Nodes | 1 | 1 |" in text
        assert "### Suggested mappings" in text
        assert render_diff_summary(diff(BEFORE, BEFORE)).endswith("No structural changes.\n")


class TestSourceLevelDiffs:
    """Diffs of graphs built from real files."""

    def test_moving_a_call_is_not_an_edge_change(self, make_project):
        before = make_project({"m.py": """\
            def callee():
                return 1


            def caller():
                return callee()
        """})
        after = make_project({"m.py": """\
            def callee():
                return 1


            def caller():
                # the call moved down two lines
                value = 2
                return callee() + value
        """})
        old, new = _calls(before), _calls(after)

        assert [e.line for e in old.edges] != [e.line for e in new.edges]
        result = diff(old, new)
        assert result.added_edges == [] and result.removed_edges == []
        assert result.is_empty

    def test_mapping_enforcement(self, make_project):
        before = _blueprint(make_project({
            "main.py": "import util\n",
            "util.py": "",
        }))
        after = _blueprint(make_project({
            "main.py": "import tools\n",
            "tools.py": "",
        }))
        result = diff(before, after)

        with pytest.raises(MissingMappingError) as excinfo:
            enforce_mapping(result, {})
        assert excinfo.value.unmapped == ["util.py"]
        assert "util.py" in str(excinfo.value)

        with pytest.raises(MissingMappingError):
            enforce_mapping(result, {"util.py": "   "})

        assert enforce_mapping(result, {"util.py": "tools.py"}).unmapped == []

    def test_results_are_not_modified_in_place(self):
        """Mapping checks return a new result and leave the diff untouched."""
        result = diff(BEFORE, AFTER)
        checked = with_mapping(result, {})

        assert checked.unmapped == ["src/b.py"]
        assert result.unmapped == []
        assert enforce_mapping(result, {"src/b.py": "merged"}) is not result
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.unmapped = ["src/b.py"]


class TestLoading:
    """Reading snapshots and mapping files from disk."""

    def test_json_and_jsonl_snapshots(self, temp_dir: Path):
        for fmt in ("json", "jsonl"):
            path = temp_dir / f"before.{fmt}"
            path.write_text(dump_report(BEFORE, fmt), encoding="utf-8")
            loaded = parse_report(path.read_text(encoding="utf-8"))
            assert loaded.node_ids() == BEFORE.node_ids()
            assert diff(loaded, BEFORE).is_empty

    def test_rejects_non_reports(self):
        with pytest.raises(ReportFormatError):
            parse_report(json.dumps({"kind": "cfg", "nodes": []}))
        with pytest.raises(ReportFormatError):
            parse_report("not json at all")
        with pytest.raises(ReportFormatError):
            parse_report(json.dumps({"kind": "blueprint", "nodes": {}}))

    def test_mapping_file_shapes(self, temp_dir: Path):
        nested = temp_dir / "nested.yaml"
        nested.write_text("mappings:\n  src/b.py: src/d.py\n", encoding="utf-8")
        flat = temp_dir / "flat.json"
        flat.write_text(json.dumps({"src/b.py": "merged into d"}), encoding="utf-8")
        empty = temp_dir / "empty.yaml"
        empty.write_text("", encoding="utf-8")
        blank = temp_dir / "blank.yaml"
        blank.write_text("mappings:\n  src/b.py:\n", encoding="utf-8")

        assert load_mapping(nested) == {"src/b.py": "src/d.py"}
        assert load_mapping(flat) == {"src/b.py": "merged into d"}
        assert load_mapping(empty) == {}
        assert load_mapping(blank) == {"src/b.py": ""}

    def test_bad_mapping_file(self, temp_dir: Path):
        path = temp_dir / "bad.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ReportFormatError):
            load_mapping(path)

    def test_diff_files_end_to_end(self, temp_dir: Path):
        before = temp_dir / "before.json"
        after = temp_dir / "after.json"
        mapping = temp_dir / "map.yaml"
        before.write_text(dump_report(BEFORE), encoding="utf-8")
        after.write_text(dump_report(AFTER, "jsonl"), encoding="utf-8")
        mapping.write_text("mappings:\n  src/b.py: split into src/d.py\n", encoding="utf-8")

        with pytest.raises(MissingMappingError):
            diff_files(before, after, require_mapping=True)
        result = diff_files(before, after, mapping_path=mapping, require_mapping=True)
        assert result.removed_nodes == ["src/b.py"]
        assert result.unmapped == []
