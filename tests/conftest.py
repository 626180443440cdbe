"""Pytest configuration and fixtures for FlowGraph CLI tests."""

import shutil
import tempfile
import textwrap
from pathlib import Path
from typing import Callable, Dict, Generator, Union

import pytest


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep a developer's FLOWGRAPH_CONFIG from leaking into tests."""
    monkeypatch.delenv("FLOWGRAPH_CONFIG", raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to the multi-language sample project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def make_project(temp_dir: Path) -> Callable[..., Path]:
    """Write ``{relative path: source}`` into a fresh directory.

    String sources are dedented; bytes are written as-is so tests can plant
    undecodable files.
    """
    counter = {"n": 0}

    def _make(files: Dict[str, Union[str, bytes]]) -> Path:
        counter["n"] += 1
        root = temp_dir / f"project{counter['n']}"
        for rel, source in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(source, bytes):
                path.write_bytes(source)
            else:
                path.write_text(textwrap.dedent(source), encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _make

