"""Tests for per-function control-flow graphs."""

import textwrap

import pytest

from flowgraph_cli import cfg
from flowgraph_cli.errors import NotFoundError
from flowgraph_cli.graph_export import render_mermaid
from flowgraph_cli.models import ScannedFile
from flowgraph_cli.scanners import scanner_for


def _build(path: str, language: str, source: str, name: str, diagram: bool = False):
    text = textwrap.dedent(source)
    file = ScannedFile(path, "/abs/" + path, language, len(text), text.count("\n"), text)
    entries = scanner_for(language).scan(file)
    return cfg.build(file, name, entries, include_diagram=diagram)


def _edge_kinds(graph):
    return sorted(e.kind for e in graph.edges)


def _nodes(graph, kind):
    return [n for n in graph.nodes if n.kind == kind]


class TestUnreachable:
    """Statements after an unconditional exit."""

    SOURCE = """\
        def check(x):
            if x < 0:
                return -1
            total = x * 2
            return total
            print("never")
    """

    def test_statements_after_return_are_unreachable(self):
        graph = _build("m.py", "python", self.SOURCE, "check")
        dead = [graph.node(i) for i in graph.unreachable]

        assert any(n.kind == "statement-block" and n.start_line == 6 for n in dead)
        assert graph.entry not in graph.unreachable

    def test_early_return_is_an_exit(self):
        graph = _build("m.py", "python", self.SOURCE, "check")
        exit_lines = {graph.node(i).start_line for i in graph.exits}

        assert 3 in exit_lines
        assert 5 in exit_lines
        branch = _nodes(graph, "branch")[0]
        assert branch.label == "if x < 0"
        kinds = {graph.edges[e].kind for e in branch.out_edges}
        assert kinds == {"true", "false"}

    def test_typescript_code_after_throw(self):
        graph = _build("a.ts", "typescript", """\
            function fail(msg: string): never {
              throw new Error(msg);
              console.log("unreachable");
            }
        """, "fail")

        assert [graph.node(i).start_line for i in graph.exits][0] == 2
        assert any(graph.node(i).start_line == 3 for i in graph.unreachable)


class TestBraceFamilies:
    """Loops, switches and jumps in Rust and TypeScript."""

    def test_rust_infinite_loop_has_no_loop_exit(self):
        graph = _build("lib.rs", "rust", """\
            fn spin(n: u32) -> u32 {
                let mut i = 0;
                loop {
                    i += 1;
                    if i > n {
                        break;
                    }
                }
                i
            }
        """, "spin")

        assert "loop-exit" not in _edge_kinds(graph)
        assert "back" in _edge_kinds(graph)
        jump = _nodes(graph, "jump")[0]
        target = graph.successors(jump.id)
        assert len(target) == 1
        assert graph.node(target[0]).start_line == 9
        assert graph.unreachable == []

    def test_switch_fallthrough_and_default(self):
        graph = _build("a.ts", "typescript", """\
            export function grade(score: number): string {
              switch (score) {
                case 1:
                  return "low";
                case 2:
                case 3:
                  return "mid";
                default:
                  return "high";
              }
            }
        """, "grade")
        cases = [e for e in graph.edges if e.kind == "case"]

        assert sorted(e.condition for e in cases) == ["1", "2", "3", "default"]
        by_label = {e.condition: e.dst for e in cases}
        assert by_label["2"] == by_label["3"]
        assert len(graph.exits) == 3
        assert not any(e.condition == "no match" for e in graph.edges)

    def test_switch_without_default_can_skip(self):
        graph = _build("a.js", "javascript", """\
            function pick(k) {
              switch (k) {
                case "a":
                  run();
                  break;
              }
              done();
            }
        """, "pick")

        assert any(e.kind == "false" and e.condition == "no match" for e in graph.edges)

    def test_labeled_break_leaves_outer_loop(self):
        graph = _build("a.ts", "typescript", """\
            function search(grid: number[][]): number {
              outer: for (const row of grid) {
                for (const cell of row) {
                  if (cell < 0) {
                    break outer;
                  }
                }
              }
              return -1;
            }
        """, "search")
        jump = _nodes(graph, "jump")[0]
        [dst] = graph.successors(jump.id)

        assert graph.node(dst).kind == "exit"
        assert graph.node(dst).start_line == 9
        heads = _nodes(graph, "loop-head")
        assert len(heads) == 2

    def test_do_while_enters_body_first(self):
        graph = _build("a.js", "javascript", """\
            function poll() {
              do {
                step();
              } while (busy());
            }
        """, "poll")
        head = _nodes(graph, "loop-head")[0]
        out = {graph.edges[e].kind for e in head.out_edges}

        assert out == {"fallthrough", "loop-exit"}

    def test_expression_bodied_arrow(self):
        graph = _build("a.ts", "typescript", "const double = (x: number) => x * 2;\n", "double")

        assert [n.kind for n in graph.nodes] == ["entry", "exit"]
        assert graph.exits == [1]


class TestPython:
    """Python-specific constructs."""

    def test_for_else_and_continue(self):
        graph = _build("m.py", "python", """\
            def walk(items):
                for item in items:
                    if item:
                        continue
                    print(item)
                else:
                    print("done")
                return None
        """, "walk")
        kinds = _edge_kinds(graph)

        assert "back" in kinds
        assert "loop-exit" in kinds
        jump = _nodes(graph, "jump")[0]
        assert graph.node(graph.successors(jump.id)[0]).kind == "loop-head"

    def test_try_except_finally(self):
        graph = _build("m.py", "python", """\
            def load(path):
                try:
                    data = read(path)
                except OSError:
                    return None
                finally:
                    close()
                return data
        """, "load")
        exceptional = [e for e in graph.edges if e.kind == "exception"]

        assert sorted(e.condition for e in exceptional) == ["except OSError", "finally"]
        assert _nodes(graph, "branch")[0].label == "try"

    def test_while_true_is_infinite(self):
        graph = _build("m.py", "python", """\
            def serve():
                while True:
                    handle()
        """, "serve")

        assert "loop-exit" not in _edge_kinds(graph)
        assert graph.exits == []


class TestLookup:
    """Function lookup and rendering."""

    def test_missing_function(self):
        with pytest.raises(NotFoundError, match="Function 'nope' not found in m.py"):
            _build("m.py", "python", "def f():\n    pass\n", "nope")

    def test_duplicate_names_warn_and_pick_first(self):
        source = """\
            class A:
                def run(self):
                    return 1


            class B:
                def run(self):
                    return 2
        """
        graph = _build("m.py", "python", source, "run")

        assert graph.function_id == "m.py::A.run"
        assert "matches 2 functions" in graph.warnings[0].message

    def test_qualified_lookup(self):
        source = "class A:\n    def run(self):\n        pass\n\n\nclass B:\n    def run(self):\n        pass\n"
        graph = _build("m.py", "python", source, "B.run")
        assert graph.function_id == "m.py::B.run"
        assert graph.warnings == []

    def test_mermaid(self):
        graph = _build("m.py", "python", TestUnreachable.SOURCE, "check", diagram=True)

        assert graph.diagram == render_mermaid(graph)
        assert graph.diagram.startswith("flowchart TD\n")
        assert '-->|"true: x < 0"|' in graph.diagram
        assert "classDef unreachable" in graph.diagram


class TestExitPaths:
    """Exit kinds, entry-to-exit paths and their branch conditions."""

    def test_paths_carry_branch_conditions(self):
        graph = _build("m.py", "python", TestUnreachable.SOURCE, "check")
        paths = {p.exit_node: p for p in graph.exit_paths}

        assert len(paths) == 2
        early, late = (paths[i] for i in sorted(paths))
        assert [(c.expression, c.must_be_true, c.line) for c in early.conditions] == [("x < 0", True, 2)]
        assert [(c.expression, c.must_be_true, c.line) for c in late.conditions] == [("x < 0", False, 2)]
        assert early.nodes[0] == graph.entry
        assert early.nodes[-1] == early.exit_node

    def test_exit_kinds(self):
        graph = _build("m.py", "python", """\
            def run(x):
                if x == 1:
                    raise ValueError(x)
                if x == 2:
                    sys.exit(1)
                return x
        """, "run")
        kinds = {graph.node(i).start_line: graph.node(i).exit_kind for i in graph.exits}

        assert kinds == {3: "raise", 5: "exit", 6: "return"}
        [normal] = [p for p in graph.exit_paths if p.exit_kind == "return"]
        assert [(c.expression, c.must_be_true) for c in normal.conditions] == [("x == 1", False), ("x == 2", False)]

    def test_implicit_end_is_a_return(self):
        graph = _build("a.js", "javascript", "function log(m) {\n  console.log(m);\n}\n", "log")
        [end] = graph.exits

        assert graph.node(end).label == "end"
        assert graph.node(end).exit_kind == "return"

    def test_loops_do_not_repeat_nodes(self):
        graph = _build("m.py", "python", """\
            def count(n):
                while n > 0:
                    n -= 1
                return n
        """, "count")
        [path] = graph.exit_paths
        head = _nodes(graph, "loop-head")[0]

        assert path.nodes == [graph.entry, head.id, path.exit_node]
        assert [(c.expression, c.must_be_true) for c in path.conditions] == [("while n > 0", False)]
        assert len(set(path.nodes)) == len(path.nodes)

    def test_limit_truncates(self):
        graph = _build("m.py", "python", TestUnreachable.SOURCE, "check")
        paths, truncated = cfg.exit_paths(graph, limit=1)

        assert len(paths) == 1
        assert truncated
        assert graph.exit_paths_truncated is False

    def test_stats_in_document(self):
        graph = _build("m.py", "python", TestUnreachable.SOURCE, "check")
        data = graph.to_dict()

        assert data["stats"] == {
            "nodes": len(graph.nodes),
            "edges": len(graph.edges),
            "exits": len(graph.exits),
            "unreachable_nodes": len(graph.unreachable),
            "exit_paths": 2,
            "exit_paths_truncated": False,
        }
        assert data["exit_paths"][0]["conditions"][0]["expression"] == "x < 0"
        assert {n["exit_kind"] for n in data["nodes"] if n["kind"] == "exit"} == {"return"}


class TestRustTryOperator:
    """``?`` returns early when the value is an error or None."""

    def test_question_mark_adds_an_exit(self):
        graph = _build("lib.rs", "rust", """\
            fn parse(x: Option<u8>) -> Option<u8> {
                let y = x?;
                Some(y + 1)
            }
        """, "parse")
        [branch] = _nodes(graph, "branch")
        out = {graph.edges[e].kind: graph.edges[e].dst for e in branch.out_edges}

        assert len(graph.exits) == 2
        assert graph.node(out["false"]).kind == "exit"
        assert graph.node(out["false"]).exit_kind == "return"
        assert graph.node(out["true"]).kind == "statement-block"
        assert sorted(len(p.conditions) for p in graph.exit_paths) == [1, 1]

    def test_detection(self):
        assert cfg.has_try_operator("let v = read(path)?.trim();")
        assert not cfg.has_try_operator("let r = items.iter().map(|x| { x? });")
        assert not cfg.has_try_operator("let n: Box<T: ?Sized> = b;")
        assert cfg.classify_simple("let y = x?;", rust=True) == ("try-op", None)
        assert cfg.classify_simple("let y = x?;") == ("simple", None)


class TestParseAmbiguity:
    """Malformed bodies give a partial graph plus warnings."""

    def test_unbalanced_condition(self):
        graph = _build("a.ts", "typescript", """\
            function f(x) {
              if (x {
                go();
              }
              done();
            }
        """, "f")
        messages = {(w.message, w.line) for w in graph.warnings}

        assert ("unbalanced '(' in condition", 2) in messages
        assert graph.nodes[graph.entry].kind == "entry"
        assert len(graph.exits) >= 1

    def test_else_without_if(self):
        graph = _build("a.ts", "typescript", """\
            function g(x) {
              step();
              else {
                other();
              }
              return x;
            }
        """, "g")

        assert ("'else' without matching 'if'", 3) in {(w.message, w.line) for w in graph.warnings}
        assert [graph.node(i).start_line for i in graph.exits] == [6]
        assert graph.unreachable == []
