"""Analysis configuration and TOML loading."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from .errors import ConfigError, UnsupportedFormatError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FLOWGRAPH_CONFIG"
DEFAULT_CONFIG_FILE = "flowgraph.toml"
CONFIG_SECTION = "flowgraph"

# Language tag per file extension.  The set is closed: adding a syntax means
# adding a scanner family, not registering a plugin.
LANGUAGE_MAP: Dict[str, str] = {
    ".rs": "rust",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
}

FAMILY_RUST = "rust"
FAMILY_CURLY = "curly"
FAMILY_PYTHON = "python"

LANGUAGE_FAMILY: Dict[str, str] = {
    "rust": FAMILY_RUST,
    "typescript": FAMILY_CURLY,
    "javascript": FAMILY_CURLY,
    "python": FAMILY_PYTHON,
}


def family_of(language: str) -> str:
    try:
        return LANGUAGE_FAMILY[language]
    except KeyError:
        raise ConfigError(f"Unsupported language tag: {language}") from None


def language_for_path(path: str) -> Optional[str]:
    suffix = os.path.splitext(path)[1].lower()
    return LANGUAGE_MAP.get(suffix)


SKIP_DIRS = {
    ".venv", "venv", "__pycache__", "node_modules", ".git", ".hg", ".svn",
    "site-packages", ".tox", ".pytest_cache", "build", "dist", "target",
    ".mypy_cache", ".ruff_cache", "htmlcov", ".eggs", ".next", "coverage",
}

OUTPUT_FORMATS = ("json", "jsonl")

DEFAULT_MAX_CALLS_PER_FUNCTION = 200
DEFAULT_HUB_COUNT = 10
DEFAULT_MAX_FILE_KB = 512


def default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


@dataclass
class AnalysisConfig:
    """Knobs shared by every builder.  Passed down explicitly, never global."""

    ignore_globs: List[str] = field(default_factory=list)
    max_calls_per_function: int = DEFAULT_MAX_CALLS_PER_FUNCTION
    resolved_only: bool = False
    output_format: str = "json"
    workers: int = field(default_factory=default_workers)
    hub_count: int = DEFAULT_HUB_COUNT
    max_file_kb: int = DEFAULT_MAX_FILE_KB
    base_dir: Optional[Path] = None

    def validate(self) -> "AnalysisConfig":
        """Fail fast on values no builder can honour."""
        if self.output_format not in OUTPUT_FORMATS:
            raise UnsupportedFormatError(self.output_format, OUTPUT_FORMATS)
        if self.max_calls_per_function < 1:
            raise ConfigError("max_calls_per_function must be >= 1")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")
        if self.hub_count < 0:
            raise ConfigError("hub_count must be >= 0")
        if self.max_file_kb < 0:
            raise ConfigError("max_file_kb must be >= 0 (0 disables the limit)")
        return self

    def resolved_base_dir(self) -> Path:
        return (self.base_dir or Path.cwd()).resolve()


def _config_path(path: Optional[Path]) -> Optional[Path]:
    if path is not None:
        return path
    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        return Path(env).expanduser()
    local = Path.cwd() / DEFAULT_CONFIG_FILE
    return local if local.exists() else None


_INT_KEYS = ("max_calls_per_function", "workers", "hub_count", "max_file_kb")


def _check_types(values: Dict[str, Any], source: str) -> None:
    """Reject values of the wrong type before they reach ``validate()``."""
    for key in _INT_KEYS:
        value = values.get(key)
        if key in values and (isinstance(value, bool) or not isinstance(value, int)):
            raise ConfigError(f"{source}: '{key}' must be an integer, got {value!r}")
    if "resolved_only" in values and not isinstance(values["resolved_only"], bool):
        raise ConfigError(f"{source}: 'resolved_only' must be true or false, got {values['resolved_only']!r}")
    if "output_format" in values and not isinstance(values["output_format"], str):
        raise ConfigError(f"{source}: 'output_format' must be a string, got {values['output_format']!r}")
    if "ignore_globs" in values and not isinstance(values["ignore_globs"], (list, tuple)):
        raise ConfigError(f"{source}: 'ignore_globs' must be a list of patterns, got {values['ignore_globs']!r}")


def load_config(path: Optional[Path] = None, **overrides: Any) -> AnalysisConfig:
    """Load ``[flowgraph]`` from a TOML file and apply keyword overrides.

    Args:
        path: Explicit config file.  Falls back to ``$FLOWGRAPH_CONFIG`` and
            then ``./flowgraph.toml``.
        **overrides: Values that win over the file (``None`` values are ignored).

    Returns:
        The merged configuration.  A malformed file yields defaults.
    """
    values: Dict[str, Any] = {}
    config_file = _config_path(path)
    if config_file is not None:
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = toml.load(f)
            values = dict(data.get(CONFIG_SECTION, {}))
        except (toml.TomlDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", config_file, exc)
            values = {}

    known = {f.name for f in fields(AnalysisConfig)}
    for key in sorted(set(values) - known):
        logger.warning("Unknown config key '%s' ignored", key)
    values = {k: v for k, v in values.items() if k in known}
    _check_types(values, str(config_file))
    values.update({k: v for k, v in overrides.items() if v is not None})
    _check_types(values, "override")

    if "base_dir" in values and values["base_dir"] is not None:
        values["base_dir"] = Path(values["base_dir"])
    if "ignore_globs" in values:
        values["ignore_globs"] = [str(g) for g in values["ignore_globs"]]
    return AnalysisConfig(**values)
