"""Value model for unit configuration.

Unit ``values`` are JSON-like trees. Symbolic references to sibling units are
represented by the explicit ``UnitReference`` type rather than by their raw
``"../unit"`` string, so reference detection and rewriting can pattern-match
on types instead of guessing from string shape.
"""

from __future__ import annotations

import copy
import posixpath
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, TypeAlias

JsonValue: TypeAlias = (
    "str | int | float | bool | None | list[JsonValue] | dict[str, JsonValue]"
)

Value: TypeAlias = (
    "str | int | float | bool | None | UnitReference | list[Value] | dict[str, Value]"
)


@dataclass(frozen=True)
class UnitReference:
    """Reference to another unit's outputs.

    Attributes:
        path: The relative path exactly as written in the stack file (e.g. "../acm").
        target: Normalised stack-relative path of the referenced unit (e.g. "acm").
        output: Explicit output key to substitute. When None, the key is chosen
            by the resolver's naming convention.

    """

    path: str
    target: str
    output: str | None = None

    def __str__(self) -> str:
        """Render back to the symbolic path form."""
        return self.path


def is_relative_path(value: str) -> bool:
    """Check whether a string is written as a relative path reference."""
    return value.startswith(("./", "../")) or value in {".", ".."}


def resolve_relative(unit_path: str, reference: str) -> str:
    """Resolve a relative reference against the referencing unit's path.

    Unit paths are stack-relative POSIX paths. A reference is relative to the
    unit's own directory, so ``"../acm"`` written in unit ``"dns"`` resolves to
    ``"acm"`` and written in ``"edge/dns"`` resolves to ``"edge/acm"``.

    Args:
        unit_path: Stack-relative path of the referencing unit.
        reference: The relative path as written.

    Returns:
        Normalised stack-relative path.

    """
    joined = posixpath.normpath(posixpath.join(unit_path, reference))
    return "" if joined == "." else joined


def normalise_unit_path(path: str) -> str:
    """Normalise a declared unit path (strip ``./`` and trailing slashes)."""
    normalised = posixpath.normpath(path.strip())
    return "" if normalised == "." else normalised


def iter_references(value: Value) -> Iterator[UnitReference]:
    """Yield every UnitReference inside a value tree, depth first."""
    match value:
        case UnitReference():
            yield value
        case dict():
            for item in value.values():
                yield from iter_references(item)
        case list():
            for item in value:
                yield from iter_references(item)
        case _:
            return


def to_json(value: Value) -> JsonValue:
    """Render a value tree to plain JSON, turning references back into paths."""
    match value:
        case UnitReference():
            return value.path
        case dict():
            return {key: to_json(item) for key, item in value.items()}
        case list():
            return [to_json(item) for item in value]
        case _:
            return value


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two mappings without mutating either input.

    Mapping + mapping merges key by key; any other combination is replaced by
    the override value.

    Args:
        base: Base mapping.
        override: Mapping whose values take precedence.

    Returns:
        New merged mapping.

    """
    result = copy.deepcopy(base)
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = deep_merge(base_value, override_value)  # pyright: ignore[reportUnknownArgumentType]
        else:
            result[key] = copy.deepcopy(override_value)
    return result
