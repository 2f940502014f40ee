"""Filter expressions for selecting units.

Expressions are parsed up front, so a malformed filter fails before anything
is evaluated or scheduled. Each expression is one of:

- a term: exact name/path, glob, path prefix, ``name=``/``source=``/``path=``
  attribute glob or ``[ref]`` changed-files selector
- a term with graph expansion: ``X...`` (plus dependencies), ``...X`` (plus
  dependents)
- an intersection ``A | B``
- a negation ``!X`` (a single operand, no intersection)
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from functools import lru_cache
from pathlib import Path
from typing import Protocol

import pathspec

from stackwright.builder import Stack, Unit
from stackwright.errors import InvalidFilterSyntaxError

logger = logging.getLogger(__name__)

_ELLIPSIS = "..."
_GLOB_CHARS = frozenset("*?")
_ATTRIBUTE = re.compile(r"^([A-Za-z_]+)=(.*)$")
ATTRIBUTES = ("name", "path", "source")


class TermKind(StrEnum):
    """How a filter term matches units."""

    EXACT = "exact"
    GLOB = "glob"
    PREFIX = "prefix"
    ATTRIBUTE = "attribute"
    CHANGED = "changed"


@dataclass(frozen=True)
class FilterTerm:
    """A single operand of a filter expression."""

    kind: TermKind
    pattern: str
    attribute: str | None = None
    with_dependencies: bool = False
    with_dependents: bool = False


@dataclass(frozen=True)
class FilterExpression:
    """A parsed filter expression."""

    raw: str
    terms: tuple[FilterTerm, ...]
    negated: bool = False


@dataclass(frozen=True)
class FilterResult:
    """Units selected by a set of filter expressions."""

    units: tuple[str, ...]
    """Selected unit names in stack declaration order."""

    expressions: tuple[str, ...] = ()

    def __contains__(self, name: object) -> bool:
        """Whether a unit is selected."""
        return name in self.units

    def __len__(self) -> int:
        """Number of selected units."""
        return len(self.units)

    @property
    def is_empty(self) -> bool:
        """Whether nothing matched."""
        return not self.units


class ChangeDetector(Protocol):
    """Lists files changed since a revision."""

    def changed_files(self, ref: str) -> list[str]:
        """Return paths, relative to the stack directory, changed since ref."""
        ...


class GitChangeDetector:
    """ChangeDetector backed by ``git diff --name-only``."""

    def __init__(self, directory: Path) -> None:
        """Initialise detector.

        Args:
            directory: Directory inside the repository; paths are reported
                relative to it.

        """
        self._directory = directory

    def changed_files(self, ref: str) -> list[str]:
        """Run git diff against ref (``a...b`` ranges are passed through).

        Raises:
            InvalidFilterSyntaxError: If git cannot compute the diff.

        """
        cmd = ["git", "diff", "--name-only", "--relative", ref]
        try:
            completed = subprocess.run(  # noqa: S603
                cmd,
                cwd=self._directory,
                capture_output=True,
                text=True,
                check=True,
            )
        except FileNotFoundError as e:
            raise InvalidFilterSyntaxError(
                f"Cannot evaluate '[{ref}]': git executable not found"
            ) from e
        except subprocess.CalledProcessError as e:
            raise InvalidFilterSyntaxError(
                f"Cannot evaluate '[{ref}]': {e.stderr.strip() or e}"
            ) from e
        return [line.strip() for line in completed.stdout.splitlines() if line.strip()]


# =============================================================================
# Parsing
# =============================================================================


def parse_filter(expression: str) -> FilterExpression:
    """Parse a filter expression.

    Args:
        expression: Raw expression as given on the command line.

    Returns:
        Parsed FilterExpression.

    Raises:
        InvalidFilterSyntaxError: If the expression is malformed.

    """
    raw = expression.strip()
    if not raw:
        raise InvalidFilterSyntaxError("Empty filter expression")

    negated = raw.startswith("!")
    body = raw[1:].strip() if negated else raw
    if not body:
        raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': missing unit selector")
    operands = _split_operands(body, raw)

    if negated and len(operands) > 1:
        raise InvalidFilterSyntaxError(
            f"Invalid filter '{raw}': negation cannot be combined with '|'"
        )

    terms: list[FilterTerm] = []
    for operand in operands:
        if operand.startswith("!"):
            raise InvalidFilterSyntaxError(
                f"Invalid filter '{raw}': '!' is only allowed at the start of an expression"
            )
        terms.append(_parse_term(operand, raw))
    return FilterExpression(raw=raw, terms=tuple(terms), negated=negated)


def _split_operands(body: str, raw: str) -> list[str]:
    operands: list[str] = []
    depth = 0
    current: list[str] = []
    for char in body:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': unbalanced ']'")
        if char == "|" and depth == 0:
            operands.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': unbalanced '['")
    operands.append("".join(current).strip())

    if any(not operand for operand in operands):
        raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': empty operand around '|'")
    return operands


def _parse_term(operand: str, raw: str) -> FilterTerm:
    with_dependents = operand.startswith(_ELLIPSIS)
    core = operand[len(_ELLIPSIS) :] if with_dependents else operand
    with_dependencies = core.endswith(_ELLIPSIS)
    if with_dependencies:
        core = core[: -len(_ELLIPSIS)]
    core = core.strip()
    if not core:
        raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': missing unit selector")

    def term(kind: TermKind, pattern: str, attribute: str | None = None) -> FilterTerm:
        return FilterTerm(
            kind=kind,
            pattern=pattern,
            attribute=attribute,
            with_dependencies=with_dependencies,
            with_dependents=with_dependents,
        )

    if core.startswith("["):
        if not core.endswith("]") or core.count("[") != 1 or core.count("]") != 1:
            raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': malformed '[ref]' selector")
        ref = core[1:-1].strip()
        if not ref:
            raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': empty git reference")
        return term(TermKind.CHANGED, ref)
    if "[" in core or "]" in core:
        raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': unexpected bracket")

    attribute = _ATTRIBUTE.match(core)
    if attribute is not None:
        name, pattern = attribute.group(1), attribute.group(2).strip()
        if name not in ATTRIBUTES:
            raise InvalidFilterSyntaxError(
                f"Invalid filter '{raw}': unknown attribute '{name}'. "
                f"Expected one of: {', '.join(ATTRIBUTES)}"
            )
        if not pattern:
            raise InvalidFilterSyntaxError(f"Invalid filter '{raw}': empty value for '{name}='")
        return term(TermKind.ATTRIBUTE, pattern, name)

    pattern = core.removeprefix("./")
    if _GLOB_CHARS & set(pattern):
        return term(TermKind.GLOB, pattern)
    if pattern.endswith("/"):
        return term(TermKind.PREFIX, pattern)
    return term(TermKind.EXACT, pattern)


# =============================================================================
# Evaluation
# =============================================================================


class FilterEngine:
    """Selects units of a stack with filter expressions."""

    def __init__(self, stack: Stack, change_detector: ChangeDetector | None = None) -> None:
        """Initialise engine.

        Args:
            stack: The built stack to select from.
            change_detector: Source of changed files for ``[ref]`` selectors.
                Defaults to git in the stack directory.

        """
        self._stack = stack
        self._change_detector = change_detector

    def select(self, expressions: Sequence[str]) -> FilterResult:
        """Select units.

        Positive expressions are unioned and negated expressions subtracted.
        With only negated expressions (or none at all) the base set is every
        unit.

        Args:
            expressions: Raw filter expressions.

        Returns:
            FilterResult in stack declaration order.

        Raises:
            InvalidFilterSyntaxError: If any expression is malformed.

        """
        parsed = [parse_filter(expression) for expression in expressions]
        positives = [p for p in parsed if not p.negated]
        negatives = [p for p in parsed if p.negated]

        if positives:
            selected: set[str] = set()
            for expression in positives:
                selected |= self._evaluate(expression)
        else:
            selected = set(self._stack.units)

        for expression in negatives:
            selected -= self._evaluate(expression)

        units = tuple(name for name in self._stack.units if name in selected)
        logger.debug("Filters %s selected %d units", list(expressions), len(units))
        return FilterResult(units=units, expressions=tuple(e.raw for e in parsed))

    def _evaluate(self, expression: FilterExpression) -> set[str]:
        result: set[str] | None = None
        for term in expression.terms:
            matched = self._evaluate_term(term)
            result = matched if result is None else result & matched
        return result or set()

    def _evaluate_term(self, term: FilterTerm) -> set[str]:
        matched = self._match(term)
        expanded = set(matched)
        if term.with_dependencies:
            expanded |= self._stack.graph.transitive_dependencies(matched)
        if term.with_dependents:
            expanded |= self._stack.graph.transitive_dependents(matched)
        return expanded

    def _match(self, term: FilterTerm) -> set[str]:
        units = self._stack.units.values()
        match term.kind:
            case TermKind.EXACT:
                pattern = term.pattern.rstrip("/")
                return {u.name for u in units if pattern in (u.name, u.path)}
            case TermKind.GLOB:
                return {
                    u.name
                    for u in units
                    if _path_match(term.pattern, u.path) or fnmatchcase(u.name, term.pattern)
                }
            case TermKind.PREFIX:
                return {u.name for u in units if (u.path + "/").startswith(term.pattern)}
            case TermKind.ATTRIBUTE:
                return {
                    u.name
                    for u in units
                    if _attribute_match(term.pattern, u, term.attribute)
                }
            case TermKind.CHANGED:
                return self._changed_units(term.pattern)

    def _changed_units(self, ref: str) -> set[str]:
        detector = self._change_detector
        if detector is None:
            detector = GitChangeDetector(self._stack.directory or Path.cwd())
            self._change_detector = detector
        files = detector.changed_files(ref)
        return {
            u.name
            for u in self._stack.units.values()
            if _contains_changes(u.path, files)
        }


def _attribute_match(pattern: str, unit: Unit, attribute: str | None) -> bool:
    match attribute:
        case "source":
            return fnmatchcase(unit.source.render(), pattern)
        case "path":
            return _path_match(pattern, unit.path)
        case _:
            return fnmatchcase(unit.name, pattern)


@lru_cache(maxsize=128)
def _path_spec(pattern: str) -> pathspec.PathSpec:
    return pathspec.PathSpec.from_lines("gitwildmatch", [pattern])


def _path_match(pattern: str, unit_path: str) -> bool:
    """Match a unit path with gitignore-style wildcards.

    ``*`` and ``?`` stay within one path segment and ``**`` spans any number of
    them. A unit nested below a matched directory is not itself a match unless
    the pattern ends in ``/**``.
    """
    spec = _path_spec(pattern)
    if not spec.match_file(unit_path):
        return False
    if pattern.endswith("/**"):
        return True
    parts = unit_path.split("/")
    return not any(spec.match_file("/".join(parts[:i])) for i in range(1, len(parts)))


def _contains_changes(unit_path: str, files: Iterable[str]) -> bool:
    return any(f == unit_path or f.startswith(unit_path + "/") for f in files)
