"""Tests for file-level dependency graphs and edge resolution."""

from pathlib import Path

from flowgraph_cli import blueprint
from flowgraph_cli.collector import collect_files
from flowgraph_cli.graph_export import dump_report, render_dot
from flowgraph_cli.models import IndexEntry
from flowgraph_cli.resolver import (
    EdgeResolver,
    ScopeIndex,
    expand_rust_use,
    module_stem,
    parse_callee,
    python_module_name,
    resolve,
)


def _blueprint(root: Path, workers: int = 1):
    collected = collect_files([root], base_dir=root)
    return blueprint.build(collected.files, read_errors=collected.errors, workers=workers)


def _resolved(report):
    return {(e.src, e.dst, e.kind) for e in report.edges if e.resolved}


class TestResolve:
    """The exactly-one-candidate rule."""

    def test_single_candidate_resolves(self):
        scope = ScopeIndex(["a.py", "b.py"])
        assert resolve("b", "import", scope, ["b.py"]) == "b.py"

    def test_ambiguous_and_missing_stay_unresolved(self):
        scope = ScopeIndex(["a.py", "b.py"])
        assert resolve("x", "import", scope, ["a.py", "b.py"]) is None
        assert resolve("x", "import", scope, []) is None
        assert resolve("x", "import", scope, ["elsewhere.py"]) is None

    def test_duplicate_candidates_count_once(self):
        scope = ScopeIndex(["a.py"])
        assert resolve("a", "import", scope, ["a.py", "a.py"]) == "a.py"

    def test_call_candidates_must_be_indexed(self):
        entry = IndexEntry("m.py::f", "f", "f", "function", "m.py", 1, 2, "python")
        scope = ScopeIndex(["m.py"], [entry])
        assert resolve("f", "call", scope, ["m.py::f"]) == "m.py::f"
        assert resolve("g", "call", scope, ["m.py::g"]) is None


class TestHelpers:
    """Path and name helpers used by the resolver."""

    def test_expand_rust_use(self):
        assert expand_rust_use("a::{b, c::d as e, self}") == ["a::b", "a::c::d", "a"]
        assert expand_rust_use("crate::store::*") == ["crate::store"]
        assert expand_rust_use("std::collections::{HashMap, hash_map::{Entry}}") == [
            "std::collections::HashMap",
            "std::collections::hash_map::Entry",
        ]

    def test_python_module_name(self):
        assert python_module_name("pkg/sub/mod.py") == "pkg.sub.mod"
        assert python_module_name("pkg/__init__.py") == "pkg"
        assert python_module_name("my-dir/mod.py") is None
        assert python_module_name("lib.rs") is None

    def test_module_stem(self):
        assert module_stem("src/util.rs") == "util"
        assert module_stem("src/store/mod.rs") == "store"
        assert module_stem("web/api/index.ts") == "api"

    def test_parse_callee(self):
        assert parse_callee("helper").receiver == "bare"
        target = parse_callee("self.save")
        assert (target.receiver, target.name) == ("self", "save")
        target = parse_callee("Vec::<u8>::new")
        assert (target.receiver, target.qualifier, target.name) == ("qualified", "Vec", "new")
        assert parse_callee(".map").receiver == "unknown"
        assert parse_callee("super().setup").receiver == "super"


class TestCurlyImports:
    """Relative specifier resolution for TypeScript and JavaScript."""

    def _resolver(self, *paths):
        return EdgeResolver(ScopeIndex(paths))

    def test_extension_probing(self):
        r = self._resolver("src/a.ts", "src/b.ts")
        assert r.resolve_file_edge("src/a.ts", "typescript", "import", "./b") == "src/b.ts"

    def test_js_specifier_maps_to_ts_source(self):
        r = self._resolver("src/a.ts", "src/b.ts")
        assert r.resolve_file_edge("src/a.ts", "typescript", "import", "./b.js") == "src/b.ts"

    def test_directory_index(self):
        r = self._resolver("src/a.ts", "src/lib/index.ts")
        assert r.resolve_file_edge("src/a.ts", "typescript", "import", "./lib") == "src/lib/index.ts"

    def test_package_specifiers_stay_unresolved(self):
        r = self._resolver("src/a.ts", "src/react.ts")
        assert r.resolve_file_edge("src/a.ts", "typescript", "import", "react") is None

    def test_two_extensions_are_ambiguous(self):
        r = self._resolver("src/a.ts", "src/b.ts", "src/b.js")
        assert r.resolve_file_edge("src/a.ts", "typescript", "import", "./b") is None


class TestBlueprintBuild:
    """End-to-end blueprint construction."""

    def test_sample_project_edges(self, sample_project_path: Path):
        report = _blueprint(sample_project_path)

        assert report.kind == "blueprint"
        assert len(report.nodes) == 10
        assert _resolved(report) == {
            ("py/app/service.py", "py/app/repo.py", "import"),
            ("py/main.py", "py/app/service.py", "import"),
            ("rust/src/lib.rs", "rust/src/store.rs", "mod"),
            ("rust/src/lib.rs", "rust/src/util.rs", "mod"),
            ("rust/src/lib.rs", "rust/src/store.rs", "use"),
            ("web/src/index.ts", "web/src/format.ts", "import"),
            ("web/src/index.ts", "web/src/api.ts", "import"),
        }
        unresolved = [e.to_raw for e in report.edges if not e.resolved]
        assert unresolved == ["os"]

    def test_resolved_targets_are_nodes(self, sample_project_path: Path):
        report = _blueprint(sample_project_path)
        nodes = set(report.node_ids())
        assert all(e.dst in nodes for e in report.edges if e.resolved)
        assert all(e.dst is None for e in report.edges if not e.resolved)

    def test_edge_lines_and_stats(self, sample_project_path: Path):
        report = _blueprint(sample_project_path)
        mod_edges = [e for e in report.edges if e.kind == "mod"]

        assert [(e.to_raw, e.line) for e in mod_edges] == [("store", 3), ("util", 4)]
        assert report.stats["nodes"] == 10
        assert report.stats["edges_resolved"] == 7
        assert report.stats["by_language"] == {"python": 4, "rust": 3, "typescript": 3}

    def test_crate_name_use(self, make_project):
        root = make_project({
            "Cargo.toml": '[package]\nname = "my-crate"\nversion = "0.1.0"\n',
            "src/main.rs": "mod net;\nuse my_crate::net::Client;\n",
            "src/net.rs": "pub struct Client;\n",
        })
        report = _blueprint(root)
        assert ("src/main.rs", "src/net.rs", "use") in _resolved(report)

    def test_python_relative_and_package_imports(self, make_project):
        root = make_project({
            "pkg/__init__.py": "",
            "pkg/a.py": "from . import b\nfrom .sub import c\n",
            "pkg/b.py": "",
            "pkg/sub/__init__.py": "",
            "pkg/sub/c.py": "import pkg.b\n",
        })
        edges = _resolved(_blueprint(root))

        assert ("pkg/a.py", "pkg/b.py", "import") in edges
        assert ("pkg/a.py", "pkg/sub/__init__.py", "import") in edges
        assert ("pkg/sub/c.py", "pkg/b.py", "import") in edges

    def test_invalid_utf8_becomes_an_error(self, make_project):
        files = {f"m{i}.py": f"import m{(i + 1) % 9}\n" for i in range(9)}
        files["broken.py"] = b"def f():\n    return '\xff\xfe'\n"
        report = _blueprint(make_project(files))

        assert len(report.nodes) == 9
        assert [e.path for e in report.errors] == ["broken.py"]
        assert "invalid UTF-8" in report.errors[0].message
        assert report.stats["files_errored"] == 1
        assert len(_resolved(report)) == 9

    def test_output_is_deterministic(self, sample_project_path: Path):
        first = dump_report(_blueprint(sample_project_path, workers=1))
        second = dump_report(_blueprint(sample_project_path, workers=4))
        assert first == second
        assert dump_report(_blueprint(sample_project_path), "jsonl") == dump_report(
            _blueprint(sample_project_path, workers=3), "jsonl"
        )

    def test_dot_export(self, sample_project_path: Path):
        dot = render_dot(_blueprint(sample_project_path), focus="util.rs")

        assert dot.startswith("digraph Blueprint {")
        assert '"rust/src/lib.rs" -> "rust/src/util.rs"' in dot
        assert "web/src/index.ts" not in dot
