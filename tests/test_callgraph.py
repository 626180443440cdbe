"""Tests for the function-level call graph."""

from pathlib import Path

import pytest

from flowgraph_cli import callgraph
from flowgraph_cli.config import AnalysisConfig
from flowgraph_cli.errors import ConfigError
from flowgraph_cli.graph_export import dump_report
from flowgraph_cli.orchestrator import FlowGraphOrchestrator


def _calls(root: Path, **overrides):
    config = AnalysisConfig(workers=overrides.pop("workers", 1), base_dir=root, **overrides)
    orchestrator = FlowGraphOrchestrator(config)
    return orchestrator.calls(orchestrator.scan([root]))


def _resolved_pairs(report):
    return {(e.src, e.dst) for e in report.edges if e.resolved}


class TestSampleProject:
    """Cross-file resolution over the multi-language fixture."""

    def test_resolved_edges(self, sample_project_path: Path):
        report = _calls(sample_project_path)

        assert _resolved_pairs(report) == {
            ("py/app/service.py::handle", "py/app/repo.py::load_user"),
            ("py/app/service.py::handle", "py/app/service.py::render"),
            ("py/main.py::main", "py/app/service.py::handle"),
            ("rust/src/lib.rs::run", "rust/src/store.rs::Store::new"),
            ("rust/src/lib.rs::run", "rust/src/store.rs::Store::len"),
            ("rust/src/lib.rs::run", "rust/src/util.rs::helper"),
            ("web/src/index.ts::main", "web/src/format.ts::formatName"),
            ("web/src/index.ts::main", "web/src/api.ts::Api.send"),
        }

    def test_stats(self, sample_project_path: Path):
        stats = _calls(sample_project_path).stats

        assert stats["functions"] == 11
        assert stats["edges"] == 13
        assert stats["edges_resolved"] == 8
        assert stats["files_scanned"] == 10
        assert stats["by_language"] == {"python": 4, "rust": 4, "typescript": 3}

    def test_unresolved_edges_keep_raw_callee(self, sample_project_path: Path):
        report = _calls(sample_project_path)
        raws = {e.callee_raw for e in report.edges if not e.resolved}
        assert {"print", "os.getpid", "Vec::new", "self.items.len", "name.trim"} <= raws
        assert all(e.dst is None for e in report.edges if not e.resolved)

    def test_resolution_is_sound(self, sample_project_path: Path):
        report = _calls(sample_project_path)
        ids = set(report.node_ids())
        assert all(e.src in ids for e in report.edges)
        assert all(e.dst in ids for e in report.edges if e.resolved)

    def test_deterministic_across_workers(self, sample_project_path: Path):
        assert dump_report(_calls(sample_project_path, workers=1)) == dump_report(
            _calls(sample_project_path, workers=4)
        )


class TestResolutionRules:
    """Receiver-aware candidate selection."""

    def test_self_call_prefers_same_class_method(self, make_project):
        root = make_project({"m.py": """\
            class Repo:
                def save(self, item):
                    return self.validate(item)

                def validate(self, item):
                    return item


            def validate(item):
                return item


            def run(item):
                return validate(item)
        """})
        pairs = _resolved_pairs(_calls(root))

        assert ("m.py::Repo.save", "m.py::Repo.validate") in pairs
        assert ("m.py::run", "m.py::validate") in pairs

    def test_ambiguous_call_stays_unresolved(self, make_project):
        root = make_project({
            "one.py": "def helper():\n    return 1\n",
            "two.py": "def helper():\n    return 2\n",
            "main.py": "import one\nimport two\n\n\ndef run():\n    return helper()\n",
        })
        report = _calls(root)
        edge = [e for e in report.edges if e.src == "main.py::run"][0]

        assert edge.callee_raw == "helper"
        assert not edge.resolved and edge.dst is None

    def test_bound_function_expression_resolves_by_binding(self, make_project):
        root = make_project({"b.ts": """\
            export const fn1 = async function named() {
              return 1;
            };

            export function run() {
              return fn1();
            }
        """})
        report = _calls(root)

        assert "b.ts::named" not in report.node_ids()
        assert ("b.ts::run", "b.ts::fn1") in _resolved_pairs(report)

    def test_import_scopes_candidates(self, make_project):
        root = make_project({
            "one.py": "def helper():\n    return 1\n",
            "two.py": "def helper():\n    return 2\n",
            "main.py": "import one\n\n\ndef run():\n    return helper()\n",
        })
        assert ("main.py::run", "one.py::helper") in _resolved_pairs(_calls(root))

    def test_nested_function_calls_belong_to_inner(self, make_project):
        root = make_project({"m.py": """\
            def outer():
                def inner():
                    return helper()
                return inner()


            def helper():
                return 1
        """})
        pairs = _resolved_pairs(_calls(root))

        assert ("m.py::outer", "m.py::outer.inner") in pairs
        assert ("m.py::outer.inner", "m.py::helper") in pairs
        assert ("m.py::outer", "m.py::helper") not in pairs

    def test_keywords_and_macros_are_not_calls(self, make_project):
        root = make_project({"lib.rs": """\
            fn work(x: u32) -> u32 {
                if (x > 1) {
                    println!("{}", x);
                }
                match (x) {
                    _ => x,
                }
            }
        """})
        assert _calls(root).edges == []


class TestDegrees:
    """Degree statistics over unique caller/callee pairs."""

    SOURCE = """\
        def b():
            return 1


        def a():
            b()
            return b()


        def c():
            return b() + print()
    """

    def test_repeated_calls_count_once(self, make_project):
        report = _calls(make_project({"m.py": self.SOURCE}))
        degrees = report.stats["degrees"]

        assert degrees["m.py::b"] == {"in": 2, "out": 0, "total": 2}
        assert degrees["m.py::a"] == {"in": 0, "out": 1, "total": 1}
        assert report.stats["edges"] == 4

    def test_classification(self, make_project):
        stats = _calls(make_project({"m.py": self.SOURCE})).stats

        assert stats["hubs"][0] == {"id": "m.py::b", "degree": 2}
        assert stats["orphans"] == ["m.py::a", "m.py::c"]
        assert stats["sources"] == ["m.py::a", "m.py::c"]
        assert stats["sinks"] == ["m.py::b"]

    def test_resolved_only_filters_emitted_edges(self, make_project):
        report = _calls(make_project({"m.py": self.SOURCE}), resolved_only=True)

        assert all(e.resolved for e in report.edges)
        assert report.stats["edges"] == 4
        assert report.stats["edges_emitted"] == 3

    def test_max_calls_truncates(self, make_project):
        report = _calls(make_project({"m.py": self.SOURCE}), max_calls_per_function=1)

        assert report.stats["truncated_functions"] == 2
        assert [e.line for e in report.edges if e.src == "m.py::a"] == [6]

    def test_invalid_max_calls(self):
        with pytest.raises(ConfigError):
            callgraph.build([], [], max_calls_per_function=0)
