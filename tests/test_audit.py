"""Tests for the structural audit detectors."""

from pathlib import Path

from flowgraph_cli.audit import CATEGORIES, summarize
from flowgraph_cli.config import AnalysisConfig
from flowgraph_cli.graph_export import dump_audit
from flowgraph_cli.orchestrator import FlowGraphOrchestrator


def _audit(root: Path):
    orchestrator = FlowGraphOrchestrator(AnalysisConfig(workers=1, base_dir=root))
    return orchestrator.audit(orchestrator.scan([root]))


def _findings(report, category):
    return {f.symbol: f for f in report.findings if f.category == category}


WRAPPERS = """\
    def core(value):
        return value * 2


    def wrapper(value):
        return core(value)


    def outer(value):
        return wrapper(value)


    def main():
        print(outer(3))


    def unused_helper():
        return 42


    def todo_stub(x):
        raise NotImplementedError


    def only_once():
        return 1


    def user():
        return only_once() + core(1)
"""


class TestPassThrough:
    """Wrapper chains that only forward their parameters."""

    def test_chain_is_reported_once_from_its_head(self, make_project):
        report = _audit(make_project({"app.py": WRAPPERS}))
        found = _findings(report, "pass-through")

        assert list(found) == ["app.py::outer"]
        finding = found["app.py::outer"]
        assert finding.message == "Pass-through wrapper chain length 2: outer -> wrapper -> core"
        assert finding.chain == ["app.py::outer", "app.py::wrapper", "app.py::core"]
        assert finding.confidence == "high"

    def test_changed_arguments_are_not_forwarding(self, make_project):
        report = _audit(make_project({"app.py": """\
            def core(a, b):
                return a + b


            def swap(a, b):
                return core(b, a)


            def run():
                return swap(1, 2)
        """}))
        assert _findings(report, "pass-through") == {}

    def test_rust_and_typescript_wrappers(self, make_project):
        report = _audit(make_project({
            "src/lib.rs": """\
                fn inner(x: u32) -> u32 {
                    x + 1
                }

                fn outer(x: u32) -> u32 {
                    inner(x)
                }

                pub fn entry() -> u32 {
                    outer(1)
                }
            """,
            "web/a.ts": """\
                function base(a: string, b: number): string {
                  return a.repeat(b);
                }

                const wrap = (a: string, b: number) => base(a, b);

                export function start(): string {
                  return wrap("x", 2);
                }
            """,
        }))
        found = _findings(report, "pass-through")

        assert set(found) == {"src/lib.rs::outer", "web/a.ts::wrap"}
        assert found["web/a.ts::wrap"].chain == ["web/a.ts::wrap", "web/a.ts::base"]


class TestLonelyAndOrphans:
    """Single-use functions, unused functions and under-used abstractions."""

    def test_resolved_single_caller_is_not_lonely(self, make_project):
        found = _findings(_audit(make_project({"app.py": WRAPPERS})), "lonely-abstraction")
        assert found == {}

        report = _audit(make_project({"app.py": """\
            def helper(x):
                return x + 1


            def main():
                return helper(2)
        """}))
        assert _findings(report, "lonely-abstraction") == {}

    def test_single_unresolved_call_site(self, make_project):
        report = _audit(make_project({"app.py": """\
            class Button:
                def render(self):
                    return "button"


            class Label:
                def render(self):
                    return "label"


            def main():
                widget = Button()
                print(widget.render())
        """}))
        found = _findings(report, "lonely-abstraction")

        assert set(found) == {"app.py::Button.render", "app.py::Label.render"}
        finding = found["app.py::Button.render"]
        assert finding.message == "'Button.render' has no resolved callers and a single call site (main)"
        assert finding.confidence == "low"

    def test_orphans_skip_entry_points(self, make_project):
        found = _findings(_audit(make_project({"app.py": WRAPPERS})), "orphan")

        assert set(found) == {"app.py::unused_helper", "app.py::todo_stub", "app.py::user"}
        assert found["app.py::unused_helper"].confidence == "high"
        assert found["app.py::unused_helper"].severity == "warning"

    def test_orphan_confidence_drops_when_name_is_referenced(self, make_project):
        report = _audit(make_project({"app.py": """\
            def hook():
                return 1


            HANDLERS = [hook]
        """}))
        assert _findings(report, "orphan")["app.py::hook"].confidence == "medium"

    def test_public_rust_orphan_is_low_confidence(self, make_project):
        report = _audit(make_project({"src/lib.rs": "pub fn api() -> u8 {\n    1\n}\n"}))
        assert _findings(report, "orphan")["src/lib.rs::api"].confidence == "low"

    def test_exported_and_test_functions_are_not_orphans(self, make_project):
        report = _audit(make_project({
            "a.ts": "export function api(): number {\n  return 1;\n}\n",
            "test_things.py": "def test_it():\n    assert True\n",
        }))
        assert _findings(report, "orphan") == {}

    def test_abstract_type_with_one_implementation(self, make_project):
        report = _audit(make_project({"store.py": """\
            from abc import ABC, abstractmethod


            class Store(ABC):
                @abstractmethod
                def save(self, item):
                    ...


            class MemoryStore(Store):
                def save(self, item):
                    return item
        """}))
        lonely = _findings(report, "lonely-abstraction")

        assert lonely["Store"].message == "Abstract type 'Store' has 1 implementation(s)"
        assert lonely["Store"].line == 4
        assert "store.py::Store.save" not in _findings(report, "placeholder")

    def test_allow_marker_suppresses_lonely_findings(self, make_project):
        report = _audit(make_project({
            "store.py": """\
                from abc import ABC


                # flowgraph:allow-lonely (plugin seam)
                class Store(ABC):
                    pass


                class Cache(ABC):
                    \"\"\"Kept for tests.  FlowGraph:Allow-Lonely\"\"\"


                class Ledger(ABC):
                    pass


                class MemoryStore(Store):
                    pass


                class MemoryCache(Cache):
                    pass


                class MemoryLedger(Ledger):
                    pass
            """,
            "src/lib.rs": """\
                /// flowgraph:allow-lonely
                #[allow(dead_code)]
                pub trait Codec {
                    fn encode(&self) -> u8;
                }

                pub struct Raw;

                impl Codec for Raw {
                    fn encode(&self) -> u8 {
                        0
                    }
                }
            """,
            "web/shape.ts": """\
                // flowgraph:allow-lonely
                export interface Shape {
                  area(): number;
                }

                export class Square implements Shape {
                  area(): number {
                    return 1;
                  }
                }
            """,
        }))
        lonely = _findings(report, "lonely-abstraction")

        assert set(lonely) == {"Ledger"}

    def test_allow_marker_on_function(self, make_project):
        report = _audit(make_project({"app.py": """\
            class Button:
                def render(self):
                    \"\"\"flowgraph:allow-lonely\"\"\"
                    return "button"


            class Label:
                # flowgraph:allow-lonely
                def render(self):
                    return "label"


            def main():
                widget = Button()
                print(widget.render())
        """}))
        assert _findings(report, "lonely-abstraction") == {}


class TestPlaceholders:
    """Stub bodies in each family."""

    def test_python_stub(self, make_project):
        found = _findings(_audit(make_project({"app.py": WRAPPERS})), "placeholder")

        assert set(found) == {"app.py::todo_stub"}
        assert found["app.py::todo_stub"].confidence == "high"

    def test_docstring_only_is_not_a_stub(self, make_project):
        report = _audit(make_project({"app.py": """\
            def documented():
                \"\"\"Explain things.\"\"\"
                pass


            def described():
                \"\"\"Only a docstring.\"\"\"
        """}))
        found = _findings(report, "placeholder")

        assert "app.py::documented" in found
        assert "app.py::described" not in found

    def test_rust_and_typescript_stubs(self, make_project):
        report = _audit(make_project({
            "src/lib.rs": "pub fn later() -> u8 {\n    todo!()\n}\n\npub fn empty() {}\n",
            "a.ts": """\
                export function pending(): void {
                  throw new Error("not implemented yet");
                }

                export function noop(): void {}

                export function failing(): void {
                  throw new Error("bad input");
                }
            """,
        }))
        found = _findings(report, "placeholder")

        assert set(found) == {"src/lib.rs::later", "a.ts::pending", "a.ts::noop"}
        assert found["a.ts::pending"].confidence == "high"
        assert found["a.ts::pending"].evidence == ["throws 'not implemented yet'"]
        assert found["a.ts::noop"].confidence == "medium"


class TestReport:
    """Summary and serialization."""

    def test_summary_lists_every_category(self):
        summary = summarize([], files_scanned=3)
        assert summary["by_category"] == {c: 0 for c in CATEGORIES}
        assert summary["findings"] == 0

    def test_findings_are_sorted_and_serializable(self, make_project):
        report = _audit(make_project({"app.py": WRAPPERS}))
        keys = [f.sort_key for f in report.findings]

        assert keys == sorted(keys)
        assert report.summary["findings"] == len(report.findings)
        assert dump_audit(report, "jsonl").splitlines()[0].startswith('{"by_category"')
