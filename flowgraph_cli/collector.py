"""File enumeration: turns paths on disk into ``ScannedFile`` records."""

from __future__ import annotations

import fnmatch
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from .config import SKIP_DIRS, language_for_path
from .models import GraphError, ScannedFile

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CollectResult:
    files: List[ScannedFile] = field(default_factory=list)
    errors: List[GraphError] = field(default_factory=list)


def is_ignored(rel_path: str, ignore_globs: Sequence[str]) -> bool:
    """True when *rel_path* or any of its components matches an ignore glob."""
    if not ignore_globs:
        return False
    parts = rel_path.split("/")
    for pattern in ignore_globs:
        trimmed = pattern.rstrip("/")
        if fnmatch.fnmatch(rel_path, trimmed) or fnmatch.fnmatch(rel_path, trimmed + "/*"):
            return True
        if any(fnmatch.fnmatch(part, trimmed) for part in parts):
            return True
    return False


def _display_path(path: Path, base_dir: Path) -> str:
    try:
        return path.resolve().relative_to(base_dir).as_posix()
    except ValueError:
        return path.as_posix()


def _skip_dir(name: str) -> bool:
    return name in SKIP_DIRS or name.endswith(".egg-info")


def _walk(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _skip_dir(d))
        for name in sorted(filenames):
            yield Path(dirpath) / name


def read_file(path: Path, display: str, language: str) -> ScannedFile:
    """Read and strictly decode one file.

    Raises:
        OSError: The file could not be read.
        UnicodeDecodeError: The file is not valid UTF-8.
    """
    raw = path.read_bytes()
    text = raw.decode("utf-8")
    if text.startswith("\ufeff"):
        text = text[1:]
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    line_count = text.count("\n") + (1 if text and not text.endswith("\n") else 0)
    return ScannedFile(
        path=display,
        abs_path=str(path.resolve()),
        language=language,
        size_bytes=len(raw),
        line_count=line_count,
        content=text,
    )


def _size_of(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def collect_files(
    paths: Sequence[Path],
    base_dir: Optional[Path] = None,
    ignore_globs: Sequence[str] = (),
    max_file_kb: int = 0,
) -> CollectResult:
    """Enumerate supported source files under *paths*.

    Directories are walked in sorted order.  Unsupported extensions are
    skipped silently, as are files over *max_file_kb* kilobytes (0 means no
    limit); unreadable or undecodable files become error entries.
    """
    base = (base_dir or Path.cwd()).resolve()
    result = CollectResult()
    seen = set()

    candidates: List[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            candidates.extend(_walk(path))
        elif path.exists():
            candidates.append(path)
        else:
            result.errors.append(GraphError(path.as_posix(), "path does not exist"))

    for path in candidates:
        display = _display_path(path, base)
        if display in seen:
            continue
        seen.add(display)
        language = language_for_path(display)
        if language is None:
            continue
        if is_ignored(display, ignore_globs):
            logger.debug("Ignoring %s", display)
            continue
        if max_file_kb and _size_of(path) > max_file_kb * 1024:
            logger.warning("Skipping %s: larger than %d KB", display, max_file_kb)
            continue
        try:
            result.files.append(read_file(path, display, language))
        except UnicodeDecodeError as exc:
            logger.warning("Skipping %s: not valid UTF-8", display)
            result.errors.append(
                GraphError(display, f"invalid UTF-8 at byte {exc.start}: {exc.reason}")
            )
        except OSError as exc:
            logger.warning("Skipping %s: %s", display, exc)
            result.errors.append(GraphError(display, f"unreadable: {exc.strerror or exc}"))

    result.files.sort(key=lambda f: f.path)
    result.errors.sort(key=lambda e: (e.path, e.message))
    logger.info("Collected %d file(s), %d error(s)", len(result.files), len(result.errors))
    return result


def map_files(
    func: Callable[[ScannedFile], T],
    files: Sequence[ScannedFile],
    workers: int = 1,
) -> List[T]:
    """Apply *func* to every file, in input order.

    ``workers > 1`` runs on a thread pool.  Results are gathered back in the
    input order so callers merge deterministically.
    """
    if workers <= 1 or len(files) <= 1:
        return [func(f) for f in files]
    results: Dict[int, T] = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(func, f): idx for idx, f in enumerate(files)}
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    return [results[idx] for idx in range(len(files))]
