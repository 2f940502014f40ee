"""Hierarchical configuration loading.

Configuration is split across one fragment file per hierarchy level::

    live/
    ├── root.yaml                 # hierarchy root
    └── prod-account/
        ├── account.yaml
        └── us-east-1/
            ├── region.yaml
            └── staging/
                ├── env.yaml
                └── stack.yaml

Fragments are discovered once by walking up from the stack directory and merged
root-to-leaf into a single ResolvedConfig, which is then passed explicitly to
graph construction.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, cast

import yaml

from stackwright.errors import ConfigNotFoundError, ConfigParseError

logger = logging.getLogger(__name__)

# Pattern for environment variable substitution: ${env.VAR_NAME}
ENV_VAR_PATTERN = re.compile(r"\$\{env\.([A-Za-z_][A-Za-z0-9_]*)\}")

_SUFFIXES = (".yaml", ".yml", ".json")


class Level(StrEnum):
    """Hierarchy levels, ordered from root to leaf."""

    ROOT = "root"
    ACCOUNT = "account"
    REGION = "region"
    ENVIRONMENT = "environment"


# File stem for each level
LEVEL_FILES: dict[Level, str] = {
    Level.ROOT: "root",
    Level.ACCOUNT: "account",
    Level.REGION: "region",
    Level.ENVIRONMENT: "env",
}


@dataclass(frozen=True)
class ConfigFragment:
    """Values declared at one hierarchy level."""

    level: Level
    values: dict[str, Any]
    path: Path | None = None


@dataclass(frozen=True)
class ResolvedConfig:
    """Effective configuration for a stack.

    Attributes:
        values: Merged values, closer levels overriding parent levels.
        fragments: Fragment per level (empty fragments for missing optional levels).
        root: Hierarchy root directory, if one was found.

    """

    values: dict[str, Any] = field(default_factory=dict)
    fragments: dict[Level, ConfigFragment] = field(default_factory=dict)
    root: Path | None = None

    @property
    def files(self) -> list[Path]:
        """Fragment files that contributed to this configuration, root first."""
        return [f.path for f in self.fragments.values() if f.path is not None]

    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        """Look up a merged value."""
        return self.values.get(key, default)


def merge_fragments(fragments: Iterable[ConfigFragment]) -> dict[str, Any]:
    """Merge fragments root-to-leaf with shallow override.

    Fragments are ordered by level regardless of the order given, so a closer
    level always wins for identical keys. Nested mappings are replaced, not
    merged; use the ``$merge`` directive in stack values for deep merging.

    Args:
        fragments: Fragments to merge.

    Returns:
        New merged mapping.

    """
    order = list(Level)
    merged: dict[str, Any] = {}
    for fragment in sorted(fragments, key=lambda f: order.index(f.level)):
        merged.update(fragment.values)
    return merged


def load_hierarchy(
    start: Path,
    *,
    root: Path | None = None,
    required: Iterable[Level | str] = (Level.ACCOUNT,),
) -> ResolvedConfig:
    """Discover and merge configuration fragments above a directory.

    Args:
        start: Directory to start from (usually the stack file's directory).
        root: Explicit hierarchy root. When None, the walk stops at the first
            directory containing a root fragment, or at the filesystem root.
        required: Levels whose fragment must exist.

    Returns:
        ResolvedConfig for the directory.

    Raises:
        ConfigNotFoundError: If a required fragment is missing.
        ConfigParseError: If a fragment cannot be parsed.

    """
    start = start.resolve()
    if start.is_file():
        start = start.parent
    stop = root.resolve() if root is not None else None

    found: dict[Level, Path] = {}
    hierarchy_root: Path | None = stop
    for directory in (start, *start.parents):
        for level, stem in LEVEL_FILES.items():
            if level in found:
                continue
            candidate = _find_fragment_file(directory, stem)
            if candidate is not None:
                found[level] = candidate
        if stop is not None and directory == stop:
            break
        if stop is None and Level.ROOT in found:
            hierarchy_root = found[Level.ROOT].parent
            break

    fragments: dict[Level, ConfigFragment] = {}
    for level in Level:
        path = found.get(level)
        if path is None:
            fragments[level] = ConfigFragment(level=level, values={})
            continue
        fragments[level] = ConfigFragment(
            level=level, values=load_fragment_file(path), path=path
        )
        logger.debug("Loaded %s configuration from %s", level.value, path)

    missing = [Level(level) for level in required if Level(level) not in found]
    if missing:
        names = ", ".join(f"{LEVEL_FILES[level]}.yaml" for level in missing)
        raise ConfigNotFoundError(
            f"Required configuration not found above {start}: {names}"
        )

    return ResolvedConfig(
        values=merge_fragments(fragments.values()),
        fragments=fragments,
        root=hierarchy_root,
    )


def resolve_from_mapping(levels: Mapping[Level | str, dict[str, Any]]) -> ResolvedConfig:
    """Build a ResolvedConfig from in-memory fragments.

    Useful for programmatic stacks and tests where no hierarchy exists on disk.

    Args:
        levels: Mapping of level to fragment values.

    Returns:
        ResolvedConfig with the merged values.

    """
    fragments = {
        Level(level): ConfigFragment(level=Level(level), values=dict(values))
        for level, values in levels.items()
    }
    return ResolvedConfig(values=merge_fragments(fragments.values()), fragments=fragments)


def _find_fragment_file(directory: Path, stem: str) -> Path | None:
    """Return the first fragment file for a stem in a directory."""
    for suffix in _SUFFIXES:
        candidate = directory / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def load_fragment_file(path: Path) -> dict[str, Any]:
    """Load a single fragment file with environment variable substitution.

    Args:
        path: Path to a YAML or JSON fragment.

    Returns:
        Fragment values. Empty files load as an empty mapping.

    Raises:
        ConfigParseError: If the file cannot be read, is invalid, or its root
            is not a mapping.

    """
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigParseError(f"Invalid configuration in {path}: {e}") from e
    except OSError as e:
        raise ConfigParseError(f"Cannot read configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigParseError(
            f"Configuration root in {path} must be a mapping, "
            f"got {type(data).__name__}"
        )
    return cast(dict[str, Any], substitute_env_vars(data, path, ConfigParseError))


def substitute_env_vars(
    value: Any,  # noqa: ANN401
    path: Path,
    error: type[Exception],
) -> Any:  # noqa: ANN401
    """Recursively substitute ${env.VAR_NAME} patterns with environment values.

    Args:
        value: The value to process (string, dict, list, or other).
        path: The source file path (for error messages).
        error: Exception type raised for undefined variables.

    Returns:
        The value with all ${env.VAR_NAME} patterns substituted.

    """
    if isinstance(value, str):
        return _substitute_string(value, path, error)
    if isinstance(value, dict):
        dict_value = cast(dict[str, Any], value)
        return {k: substitute_env_vars(v, path, error) for k, v in dict_value.items()}
    if isinstance(value, list):
        list_value = cast(list[Any], value)
        return [substitute_env_vars(item, path, error) for item in list_value]
    # Numbers, booleans, None - return unchanged
    return value


def _substitute_string(value: str, path: Path, error: type[Exception]) -> str:
    def replace_match(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            raise error(
                f"Environment variable '{var_name}' is not defined "
                f"(referenced in {path})"
            )
        return env_value

    return ENV_VAR_PATTERN.sub(replace_match, value)
