"""Conservative reference resolution.

A raw reference resolves only when exactly one in-scope candidate matches.
Zero or several candidates leave the edge unresolved; nothing is guessed.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

import toml

from .config import FAMILY_CURLY, FAMILY_PYTHON, FAMILY_RUST, family_of
from .models import IndexEntry, ScannedFile

logger = logging.getLogger(__name__)

FILE_EDGE_KINDS = ("mod", "import", "use")
CALL_EDGE_KIND = "call"

CURLY_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")
_JS_TO_TS = {
    ".js": (".ts", ".tsx"),
    ".jsx": (".tsx",),
    ".mjs": (".mts",),
    ".cjs": (".cts",),
}


def python_module_name(path: str) -> Optional[str]:
    """Dotted module name for a ``.py``/``.pyi`` path, ``None`` otherwise."""
    stem, ext = posixpath.splitext(path)
    if ext not in (".py", ".pyi"):
        return None
    parts = [p for p in stem.split("/") if p]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    if not parts or not all(p.isidentifier() for p in parts):
        return None
    return ".".join(parts)


def module_stem(path: str) -> str:
    """Short module name of a file: ``a/b.rs`` -> ``b``, ``a/mod.rs`` -> ``a``."""
    head, name = posixpath.split(path)
    stem = posixpath.splitext(name)[0]
    if stem in ("mod", "__init__", "index", "lib", "main"):
        parent = posixpath.basename(head)
        return parent or stem
    return stem


def rust_module_dir(path: str) -> str:
    """Directory holding the child modules of the Rust file at *path*."""
    head, name = posixpath.split(path)
    stem = posixpath.splitext(name)[0]
    if stem in ("mod", "lib", "main"):
        return head
    return posixpath.join(head, stem) if head else stem


def rust_crate_src(path: str) -> str:
    """The ``.../src`` directory a Rust file belongs to ("" when unknown)."""
    parts = path.split("/")
    if "src" in parts[:-1]:
        idx = parts.index("src")
        return "/".join(parts[: idx + 1])
    return posixpath.dirname(path)


def discover_rust_crates(files: Sequence[ScannedFile]) -> Dict[str, str]:
    """Map workspace crate names (``-`` folded to ``_``) to their ``src`` dir.

    Crate names come from the ``[package]`` / ``[lib]`` tables of the
    ``Cargo.toml`` next to each ``src`` directory that holds scanned files.
    """
    crates: Dict[str, str] = {}
    seen = set()
    for f in files:
        if family_of(f.language) != FAMILY_RUST:
            continue
        src = rust_crate_src(f.path)
        if src in seen or not src.endswith("src"):
            continue
        seen.add(src)
        depth = src.count("/") + 1
        abs_src = Path(f.abs_path).parents[f.path.count("/") - depth]
        manifest = abs_src.parent / "Cargo.toml"
        if not manifest.exists():
            continue
        try:
            data = toml.load(str(manifest))
        except (toml.TomlDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable %s: %s", manifest, exc)
            continue
        for table in ("package", "lib"):
            name = data.get(table, {}).get("name")
            if isinstance(name, str):
                crates[name.replace("-", "_")] = src
    return crates


class ScopeIndex:
    """Read-only lookup tables shared by every resolution in one run."""

    def __init__(
        self,
        paths: Iterable[str],
        entries: Sequence[IndexEntry] = (),
        visible: Optional[Mapping[str, Iterable[str]]] = None,
        crates: Optional[Mapping[str, str]] = None,
    ):
        self.paths: FrozenSet[str] = frozenset(paths)

        modules: Dict[str, List[str]] = {}
        for p in sorted(self.paths):
            name = python_module_name(p)
            if name:
                modules.setdefault(name, []).append(p)
        self.python_modules = MappingProxyType({k: tuple(v) for k, v in modules.items()})

        by_id: Dict[str, IndexEntry] = {}
        by_bare: Dict[str, List[IndexEntry]] = {}
        by_file: Dict[str, List[IndexEntry]] = {}
        for e in entries:
            by_id[e.id] = e
            by_bare.setdefault(e.bare_name, []).append(e)
            by_file.setdefault(e.file, []).append(e)
        self.entries_by_id = MappingProxyType(by_id)
        self.by_bare = MappingProxyType({k: tuple(v) for k, v in by_bare.items()})
        self.by_file = MappingProxyType({k: tuple(v) for k, v in by_file.items()})

        vis = {p: frozenset([p]) for p in self.paths}
        for src, targets in (visible or {}).items():
            vis[src] = frozenset(set(targets) | {src})
        self.visible = MappingProxyType(vis)
        self.crates = MappingProxyType(dict(crates or {}))

    def visible_from(self, path: str) -> FrozenSet[str]:
        return self.visible.get(path, frozenset([path]))

    def knows(self, node_id: str, kind: str) -> bool:
        if kind == CALL_EDGE_KIND:
            return node_id in self.entries_by_id
        return node_id in self.paths


def resolve(
    raw_target: str,
    kind: str,
    scope: ScopeIndex,
    candidates: Iterable[str],
) -> Optional[str]:
    """Return the sole in-scope candidate for *raw_target*, else ``None``."""
    unique = sorted({c for c in candidates if scope.knows(c, kind)})
    if len(unique) == 1:
        return unique[0]
    if len(unique) > 1:
        logger.debug("Ambiguous %s reference %r: %d candidates", kind, raw_target, len(unique))
    return None


# ---------------------------------------------------------------------------
# Rust `use` expansion
# ---------------------------------------------------------------------------

def expand_rust_use(tree: str) -> List[str]:
    """Expand a ``use`` tree into flat paths.

    ``a::{b, c::d as e, self}`` -> ``["a::b", "a::c::d", "a"]``.  Glob
    segments are dropped: ``a::b::*`` -> ``["a::b"]``.
    """
    tree = " ".join(tree.split())
    tree = re.sub(r"\s*::\s*", "::", tree)
    tree = re.sub(r"\s*([{},])\s*", r"\1", tree).strip()
    if tree.startswith("::"):
        tree = tree[2:]
    brace = tree.find("{")
    if brace < 0:
        path = re.sub(r"\s+as\s+\w+$", "", tree).strip()
        if path.endswith("::*"):
            path = path[:-3]
        return [path] if path and path != "*" else []
    prefix = tree[:brace].rstrip(":")
    close = _matching_brace(tree, brace)
    inner = tree[brace + 1:close]
    results: List[str] = []
    for part in _split_commas(inner):
        part = part.strip()
        if not part:
            continue
        if re.sub(r"\s+as\s+\w+$", "", part) == "self":
            if prefix:
                results.append(prefix)
            continue
        for sub in expand_rust_use(part):
            results.append(f"{prefix}::{sub}" if prefix else sub)
    return results


def _matching_brace(text: str, start: int) -> int:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return i
    return len(text)


def _split_commas(text: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


# ---------------------------------------------------------------------------
# Edge resolver
# ---------------------------------------------------------------------------

@dataclass
class CallTarget:
    """A parsed callee: receiver kind, qualifier and bare name."""

    raw: str
    name: str
    receiver: str  # "bare", "self", "super", "qualified" or "unknown"
    qualifier: Optional[str] = None


def parse_callee(raw: str) -> CallTarget:
    """Split a raw callee such as ``self.save`` or ``Vec::<u8>::new``."""
    text = re.sub(r"\s+", "", raw)
    text = re.sub(r"::<.*?>", "", text)
    if text.startswith("."):
        return CallTarget(raw, text.lstrip("."), "unknown")
    if text.startswith("self::") and text.count("::") == 1:
        # Rust path into the current module, not a method receiver.
        return CallTarget(raw, text[len("self::"):], "bare")
    parts = re.split(r"\?\.|\.|::", text)
    if len(parts) == 1:
        return CallTarget(raw, parts[0], "bare")
    name = parts[-1]
    if parts[0] in ("super", "super()"):
        return CallTarget(raw, name, "super")
    if len(parts) == 2 and parts[0] in ("self", "this", "Self"):
        return CallTarget(raw, name, "self")
    return CallTarget(raw, name, "qualified", parts[-2])


class EdgeResolver:
    """Family-aware candidate generation on top of :func:`resolve`."""

    def __init__(self, scope: ScopeIndex):
        self.scope = scope

    # -- file-level edges ---------------------------------------------------

    def file_candidates(self, src: str, language: str, kind: str, raw: str) -> List[str]:
        family = family_of(language)
        if family == FAMILY_RUST:
            if kind == "mod":
                return self._rust_mod(src, raw)
            return self._rust_use(src, raw)
        if family == FAMILY_CURLY:
            return self._curly_import(src, raw)
        if family == FAMILY_PYTHON:
            return self._python_import(src, raw)
        return []

    def resolve_file_edge(self, src: str, language: str, kind: str, raw: str) -> Optional[str]:
        return resolve(raw, kind, self.scope, self.file_candidates(src, language, kind, raw))

    def _existing(self, options: Iterable[str]) -> List[str]:
        return sorted({posixpath.normpath(o) for o in options if o} & self.scope.paths)

    def _rust_mod(self, src: str, name: str) -> List[str]:
        head, filename = posixpath.split(src)
        stem = posixpath.splitext(filename)[0]
        options = [posixpath.join(head, f"{name}.rs"), posixpath.join(head, name, "mod.rs")]
        if stem not in ("mod", "lib", "main"):
            options = [
                posixpath.join(head, stem, f"{name}.rs"),
                posixpath.join(head, stem, name, "mod.rs"),
            ] + options
            found = self._existing(options[:2])
            if found:
                return found
        return self._existing(options)

    def _rust_module_file(self, module_dir: str, crate_src: str) -> List[str]:
        if module_dir == crate_src:
            return self._existing([posixpath.join(crate_src, "lib.rs"), posixpath.join(crate_src, "main.rs")])
        return self._existing([f"{module_dir}.rs", posixpath.join(module_dir, "mod.rs")])

    def _rust_use(self, src: str, raw: str) -> List[str]:
        segments = [s for s in raw.split("::") if s]
        if not segments:
            return []
        crate_src = rust_crate_src(src)
        head = segments[0]
        rest = segments[1:]
        if head == "crate":
            base = crate_src
        elif head == "self":
            base = rust_module_dir(src)
        elif head == "super":
            base = rust_module_dir(src)
            while segments and segments[0] == "super":
                base = posixpath.dirname(base)
                segments = segments[1:]
            rest = segments
            if not base.startswith(crate_src):
                base = crate_src
        elif head in self.scope.crates:
            base = self.scope.crates[head]
            crate_src = base
        else:
            return []
        for k in range(len(rest), 0, -1):
            stem = posixpath.join(base, *rest[:k]) if base else posixpath.join(*rest[:k])
            found = self._existing([f"{stem}.rs", posixpath.join(stem, "mod.rs")])
            if found:
                return found
        return self._rust_module_file(base, crate_src)

    def _curly_import(self, src: str, spec: str) -> List[str]:
        if not spec.startswith("."):
            return []
        target = posixpath.normpath(posixpath.join(posixpath.dirname(src), spec))
        if target.startswith(".."):
            return []
        if target in self.scope.paths:
            return [target]
        stem, ext = posixpath.splitext(target)
        if ext in _JS_TO_TS:
            found = self._existing(stem + twin for twin in _JS_TO_TS[ext])
            if found:
                return found
        found = self._existing(target + e for e in CURLY_EXTENSIONS)
        if found:
            return found
        return self._existing(posixpath.join(target, "index" + e) for e in CURLY_EXTENSIONS)

    def _python_import(self, src: str, raw: str) -> List[str]:
        if raw.startswith("."):
            dots = len(raw) - len(raw.lstrip("."))
            rest = raw[dots:]
            base = posixpath.dirname(src)
            for _ in range(dots - 1):
                base = posixpath.dirname(base)
            if not rest:
                return self._existing([posixpath.join(base, "__init__.py")])
            stem = posixpath.join(base, *rest.split("."))
            return self._existing([f"{stem}.py", f"{stem}.pyi", posixpath.join(stem, "__init__.py")])
        exact = list(self.scope.python_modules.get(raw, ()))
        if exact:
            return exact
        suffix = "." + raw
        found: List[str] = []
        for name, paths in self.scope.python_modules.items():
            if name.endswith(suffix):
                found.extend(paths)
        return sorted(found)

    # -- call edges ---------------------------------------------------------

    def call_candidates(self, caller: IndexEntry, raw: str) -> Tuple[str, List[str]]:
        """Candidates for one call site, tier by tier.

        Returns ``(tier, candidate ids)``; the first tier yielding anything
        decides and later tiers are not consulted.
        """
        target = parse_callee(raw)
        visible = self.scope.visible_from(caller.file)
        same_file = self.scope.by_file.get(caller.file, ())
        callables = [e for e in self.scope.by_bare.get(target.name, ()) if e.kind != "module"]

        def ids(items: Iterable[IndexEntry]) -> List[str]:
            return sorted({e.id for e in items})

        if target.receiver == "self":
            found = [
                e for e in same_file
                if e.bare_name == target.name and e.container == caller.container
                and e.container is not None and e.kind == "method"
            ]
            if found:
                return "self", ids(found)
            return self._unknown_receiver(caller, callables, visible, ids)

        if target.receiver == "qualified":
            found = [
                e for e in callables
                if e.file in visible and (
                    e.container == target.qualifier
                    or (e.container is None and self._module_matches(e, target.qualifier))
                )
            ]
            if found:
                return "qualified", ids(found)
            return self._unknown_receiver(caller, callables, visible, ids)

        if target.receiver == "unknown":
            return self._unknown_receiver(caller, callables, visible, ids)

        if target.receiver == "super":
            # Base classes are not modelled, so parent methods stay unresolved.
            return "super", []

        local = [e for e in callables if e.file == caller.file]
        if local:
            # Methods are reachable only through a receiver.
            plain = [e for e in local if e.kind == "function"]
            if plain:
                return "bare-local", ids(plain)
        found = [e for e in callables if e.file in visible and e.kind == "function"]
        return "bare-visible", ids(found)

    def _module_matches(self, entry: IndexEntry, qualifier: str) -> bool:
        if module_stem(entry.file) == qualifier:
            return True
        sep = "::" if family_of(entry.language) == FAMILY_RUST else "."
        return entry.name.startswith(qualifier + sep) or f"{sep}{qualifier}{sep}" in entry.name

    def _unknown_receiver(self, caller, callables, visible, ids) -> Tuple[str, List[str]]:
        methods = [e for e in callables if e.kind == "method" and e.id != caller.id]
        local = [e for e in methods if e.file == caller.file]
        if local:
            return "receiver-local", ids(local)
        return "receiver-visible", ids(e for e in methods if e.file in visible)

    def resolve_call(self, caller: IndexEntry, raw: str) -> Optional[str]:
        _, candidates = self.call_candidates(caller, raw)
        return resolve(raw, CALL_EDGE_KIND, self.scope, candidates)
