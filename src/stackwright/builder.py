"""Builds an immutable Stack from a stack definition.

The UnitGraphBuilder is responsible for:
1. Rejecting duplicate unit names and paths
2. Evaluating locals and unit values against the resolved configuration
3. Detecting symbolic references between sibling units
4. Building the cycle-checked dependency graph
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from stackwright.errors import (
    DuplicateUnitNameError,
    DuplicateUnitPathError,
    MissingUnitError,
    StackParseError,
)
from stackwright.expressions import Scope, evaluate, evaluate_locals
from stackwright.graph import DependencyEdge, UnitGraph
from stackwright.hierarchy import Level, ResolvedConfig, load_hierarchy
from stackwright.models import DependencyConfig, StackDefinition, StackSettings, UnitDefinition
from stackwright.parser import DEFAULT_STACK_FILE, parse_stack
from stackwright.source import SourceReference
from stackwright.state import default_bucket, state_key
from stackwright.values import (
    UnitReference,
    Value,
    is_relative_path,
    iter_references,
    normalise_unit_path,
    resolve_relative,
)

logger = logging.getLogger(__name__)

# Explicit reference form: {"$ref": "../acm", "output": "cert_arn"}
REFERENCE_DIRECTIVE = "$ref"


@dataclass(frozen=True)
class Unit:
    """A unit instantiated from its definition."""

    name: str
    path: str
    source: SourceReference
    values: dict[str, Value]
    state_key: str
    description: str | None = None

    @property
    def references(self) -> list[UnitReference]:
        """Symbolic references inside this unit's values."""
        return list(iter_references(self.values))


@dataclass(frozen=True)
class Stack:
    """Immutable, validated stack ready for planning.

    Contains everything the planner and scheduler need:
    - The parsed StackDefinition
    - The ResolvedConfig it was evaluated against
    - Evaluated locals
    - Instantiated units keyed by name, in declaration order
    - The UnitGraph for dependency ordering
    """

    definition: StackDefinition
    config: ResolvedConfig
    locals: dict[str, Any]
    units: dict[str, Unit]
    graph: UnitGraph
    state_bucket: str
    directory: Path | None = None
    _by_path: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def name(self) -> str:
        """Stack name."""
        return self.definition.name

    @property
    def settings(self) -> StackSettings:
        """Stack execution settings."""
        return self.definition.settings

    def unit_by_path(self, path: str) -> Unit | None:
        """Find a unit by its stack-relative path."""
        name = self._by_path.get(normalise_unit_path(path))
        return self.units[name] if name is not None else None


class UnitGraphBuilder:
    """Builds stacks by validating and resolving all unit wiring upfront."""

    def __init__(self, config: ResolvedConfig) -> None:
        """Initialise builder with the configuration the stack is evaluated against.

        Args:
            config: Resolved hierarchy configuration.

        """
        self._config = config

    def build(self, definition: StackDefinition, directory: Path | None = None) -> Stack:
        """Build a Stack from a definition.

        Args:
            definition: Parsed stack definition.
            directory: Directory of the stack file, if any.

        Returns:
            Validated, immutable Stack.

        Raises:
            DuplicateUnitNameError: If two units share a name.
            DuplicateUnitPathError: If two units share a path.
            ExpressionError: If an interpolation is unknown.
            InvalidSourceReferenceError: If a source reference is malformed.
            MissingUnitError: If an explicit dependency targets an unknown path.
            CyclicDependencyError: If dependencies form a cycle.

        """
        by_path = self._check_unique(definition.units)

        scope = Scope(
            config=self._config.values,
            stack={"name": definition.name, "description": definition.description},
        )
        locals_ = evaluate_locals(definition.locals, scope)
        scope = scope.with_locals(locals_)

        bucket = self._resolve_bucket(definition.settings, scope)

        graph = UnitGraph()
        units: dict[str, Unit] = {}
        for unit_def in definition.units:
            unit = self._build_unit(unit_def, scope, by_path, bucket)
            units[unit.name] = unit
            graph.add_unit(unit.name)

        for unit_def in definition.units:
            for edge in self._build_edges(unit_def, units[unit_def.name], scope, by_path):
                graph.add_edge(edge)

        graph.validate()

        logger.debug(
            "Built stack '%s' with %d units and %d edges",
            definition.name,
            len(units),
            len(graph.all_edges()),
        )
        return Stack(
            definition=definition,
            config=self._config,
            locals=locals_,
            units=units,
            graph=graph,
            state_bucket=bucket,
            directory=directory,
            _by_path=by_path,
        )

    def _check_unique(self, unit_defs: list[UnitDefinition]) -> dict[str, str]:
        """Check unit names and paths are unique.

        Returns:
            Mapping of normalised path to unit name.

        """
        names: set[str] = set()
        by_path: dict[str, str] = {}
        for unit_def in unit_defs:
            if unit_def.name in names:
                raise DuplicateUnitNameError(
                    f"Duplicate unit name '{unit_def.name}' in stack"
                )
            names.add(unit_def.name)

            path = normalise_unit_path(unit_def.path)
            if path in by_path:
                raise DuplicateUnitPathError(
                    f"Units '{by_path[path]}' and '{unit_def.name}' share path '{path}'"
                )
            by_path[path] = unit_def.name
        return by_path

    def _resolve_bucket(self, settings: StackSettings, scope: Scope) -> str:
        if settings.state_bucket is None:
            return default_bucket(self._config.values)
        bucket = evaluate(settings.state_bucket, scope)
        if not isinstance(bucket, str) or not bucket:
            raise StackParseError("settings.state_bucket must evaluate to a non-empty string")
        return bucket

    def _build_unit(
        self,
        unit_def: UnitDefinition,
        scope: Scope,
        by_path: dict[str, str],
        bucket: str,
    ) -> Unit:
        path = normalise_unit_path(unit_def.path)
        raw_source = evaluate(unit_def.source, scope)
        if not isinstance(raw_source, str):
            raise StackParseError(f"Unit '{unit_def.name}': source must be a string")

        evaluated = cast(dict[str, Any], evaluate(unit_def.values, scope))
        values = cast(
            dict[str, Value],
            _detect_references(evaluated, path, by_path, unit_def.detect_references),
        )
        return Unit(
            name=unit_def.name,
            path=path,
            source=SourceReference.parse(raw_source),
            values=values,
            state_key=state_key(bucket, path),
            description=unit_def.description,
        )

    def _build_edges(
        self,
        unit_def: UnitDefinition,
        unit: Unit,
        scope: Scope,
        by_path: dict[str, str],
    ) -> list[DependencyEdge]:
        edges: dict[str, DependencyEdge] = {}

        for dep in unit_def.dependencies:
            target = resolve_relative(unit.path, dep.path)
            provider = by_path.get(target)
            if provider is None:
                raise MissingUnitError(
                    f"Unit '{unit.name}' depends on '{dep.path}', "
                    f"but no unit is declared at '{target}'"
                )
            edges[provider] = self._explicit_edge(unit.name, provider, dep, scope)

        for ref in unit.references:
            provider = by_path[ref.target]
            if provider not in edges:
                edges[provider] = DependencyEdge(
                    dependent=unit.name, provider=provider, path=ref.path
                )

        return list(edges.values())

    def _explicit_edge(
        self, dependent: str, provider: str, dep: DependencyConfig, scope: Scope
    ) -> DependencyEdge:
        enabled = evaluate(dep.enabled, scope)
        skip_outputs = evaluate(dep.skip_outputs, scope)
        for field_name, field_value in (("enabled", enabled), ("skip_outputs", skip_outputs)):
            if not isinstance(field_value, bool):
                raise StackParseError(
                    f"Unit '{dependent}': dependency '{dep.path}' {field_name} "
                    f"must evaluate to a boolean, got {field_value!r}"
                )
        return DependencyEdge(
            dependent=dependent,
            provider=provider,
            path=dep.path,
            enabled=enabled,
            skip_outputs=skip_outputs,
            mock_outputs=cast(dict[str, Any], evaluate(dep.mock_outputs, scope)),
            mock_outputs_allowed_actions=frozenset(dep.mock_outputs_allowed_actions),
        )


def _detect_references(
    value: Any,  # noqa: ANN401
    unit_path: str,
    by_path: dict[str, str],
    enabled: bool,
) -> Any:  # noqa: ANN401
    """Replace sibling-unit paths with UnitReference values.

    The explicit ``{"$ref": ..., "output": ...}`` form is always honoured; bare
    relative-path strings are only converted when detection is enabled.
    """
    if isinstance(value, str):
        if enabled and is_relative_path(value):
            target = resolve_relative(unit_path, value)
            if target != unit_path and target in by_path:
                return UnitReference(path=value, target=target)
        return value
    if isinstance(value, dict):
        dict_value = cast(dict[str, Any], value)
        if REFERENCE_DIRECTIVE in dict_value:
            return _explicit_reference(dict_value, unit_path, by_path)
        return {
            k: _detect_references(v, unit_path, by_path, enabled)
            for k, v in dict_value.items()
        }
    if isinstance(value, list):
        return [
            _detect_references(item, unit_path, by_path, enabled)
            for item in cast(list[Any], value)
        ]
    return value


def _explicit_reference(
    value: dict[str, Any], unit_path: str, by_path: dict[str, str]
) -> UnitReference:
    path = value[REFERENCE_DIRECTIVE]
    output = value.get("output")
    extra = set(value) - {REFERENCE_DIRECTIVE, "output"}
    if not isinstance(path, str) or extra or (output is not None and not isinstance(output, str)):
        raise StackParseError(
            f"Invalid reference {value!r}: expected {{'$ref': <path>, 'output': <key>}}"
        )
    target = resolve_relative(unit_path, path)
    if target not in by_path or target == unit_path:
        raise MissingUnitError(f"Reference '{path}' does not name a sibling unit")
    return UnitReference(path=path, target=target, output=output)


def build_stack(
    stack_path: Path,
    *,
    root: Path | None = None,
    required: Iterable[Level | str] = (Level.ACCOUNT,),
) -> Stack:
    """Parse a stack file, load its configuration hierarchy and build it.

    Args:
        stack_path: Stack file or directory containing ``stack.yaml``.
        root: Explicit hierarchy root.
        required: Hierarchy levels that must be present.

    Returns:
        Built Stack.

    """
    if stack_path.is_dir():
        stack_path = stack_path / DEFAULT_STACK_FILE
    definition = parse_stack(stack_path)
    config = load_hierarchy(stack_path.parent, root=root, required=required)
    return UnitGraphBuilder(config).build(definition, directory=stack_path.parent)
