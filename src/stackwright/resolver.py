"""Dependency resolution: rewriting unit references into provider outputs."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias, cast

from stackwright.builder import Stack, Unit
from stackwright.errors import UnresolvedDependencyError
from stackwright.graph import DependencyEdge
from stackwright.models import Action
from stackwright.values import JsonValue, UnitReference, Value

logger = logging.getLogger(__name__)

ProviderOutputs: TypeAlias = Mapping[str, dict[str, Any] | None]
"""Provider unit name to applied outputs (None when never applied)."""


class _Dropped:
    """Marker for values removed because their provider contributes no outputs."""


_DROPPED = _Dropped()


@dataclass(frozen=True)
class ResolvedValues:
    """Values ready to hand to a runner."""

    values: dict[str, JsonValue]
    mocked: list[str] = field(default_factory=list)
    """Providers whose mock outputs were substituted, sorted by name."""


class DependencyResolver:
    """Resolves a unit's references against provider outputs or mocks."""

    def __init__(self, stack: Stack) -> None:
        """Initialise resolver.

        Args:
            stack: The built stack whose graph holds the dependency edges.

        """
        self._stack = stack

    def resolve(self, unit: Unit, action: Action, outputs: ProviderOutputs) -> ResolvedValues:
        """Resolve every reference in a unit's values.

        Args:
            unit: The unit about to run.
            action: The action being executed.
            outputs: Applied outputs per provider unit name. An empty mapping
                counts as no outputs.

        Returns:
            ResolvedValues with references rewritten.

        Raises:
            UnresolvedDependencyError: If a provider has no outputs and mocks are
                not allowed for this action, or an explicit output key is missing.

        """
        by_target: dict[str, dict[str, Any] | None] = {}
        mocked: list[str] = []
        referenced = {ref.target for ref in unit.references}

        for edge in self._stack.graph.edges(unit.name):
            target = self._stack.units[edge.provider].path
            if not edge.enabled or edge.skip_outputs:
                by_target[target] = None
                continue
            if target not in referenced:
                # Ordering-only dependency
                continue
            by_target[target] = self._provider_outputs(unit, edge, action, outputs, mocked)

        resolved = _rewrite(unit.values, None, by_target, unit.name)
        return ResolvedValues(
            values=cast(dict[str, JsonValue], resolved),
            mocked=sorted(mocked),
        )

    def _provider_outputs(
        self,
        unit: Unit,
        edge: DependencyEdge,
        action: Action,
        outputs: ProviderOutputs,
        mocked: list[str],
    ) -> dict[str, Any]:
        applied = outputs.get(edge.provider)
        if applied:
            return applied

        if edge.mock_outputs and edge.allows_mocks(action):
            logger.debug(
                "Unit '%s': using mock outputs of '%s' for %s",
                unit.name,
                edge.provider,
                action.value,
            )
            mocked.append(edge.provider)
            return edge.mock_outputs

        allowed = ", ".join(sorted(a.value for a in edge.mock_outputs_allowed_actions))
        hint = (
            f"mock outputs are only allowed for: {allowed}"
            if edge.mock_outputs
            else "no mock_outputs are configured"
        )
        raise UnresolvedDependencyError(
            f"Unit '{unit.name}' depends on '{edge.provider}', which has no outputs "
            f"for {action.value} ({hint})"
        )


def _rewrite(
    value: Value,
    key: str | None,
    by_target: dict[str, dict[str, Any] | None],
    unit_name: str,
) -> JsonValue | _Dropped:
    match value:
        case UnitReference():
            if value.target not in by_target:
                raise UnresolvedDependencyError(
                    f"Unit '{unit_name}' references '{value.path}' without a dependency edge"
                )
            provider_outputs = by_target[value.target]
            if provider_outputs is None:
                return _DROPPED
            return select_output(value, key, provider_outputs)
        case dict():
            rewritten: dict[str, JsonValue] = {}
            for item_key, item in value.items():
                new_item = _rewrite(item, item_key, by_target, unit_name)
                if not isinstance(new_item, _Dropped):
                    rewritten[item_key] = new_item
            return rewritten
        case list():
            items: list[JsonValue] = []
            for item in value:
                new_item = _rewrite(item, key, by_target, unit_name)
                if not isinstance(new_item, _Dropped):
                    items.append(new_item)
            return items
        case _:
            return value


def select_output(
    reference: UnitReference | str,
    key: str | None,
    outputs: Mapping[str, Any],
) -> JsonValue:
    """Pick the output value a reference stands for.

    In order: the reference's explicit output key; the key the value is stored
    under when the outputs contain it; the only value of a single-key mapping;
    the whole mapping.

    Args:
        reference: The reference being rewritten.
        key: The values key the reference is stored under, if any.
        outputs: Provider outputs.

    Returns:
        The selected output value.

    Raises:
        UnresolvedDependencyError: If an explicit output key is missing.

    """
    explicit = reference.output if isinstance(reference, UnitReference) else None
    if explicit is not None:
        if explicit not in outputs:
            raise UnresolvedDependencyError(
                f"Output '{explicit}' not found for reference '{reference}'. "
                f"Available outputs: {sorted(outputs)}"
            )
        return outputs[explicit]
    if key is not None and key in outputs:
        return outputs[key]
    if len(outputs) == 1:
        return next(iter(outputs.values()))
    return dict(outputs)


def resolve_reference(
    value: Value,
    provider_path: str,
    outputs: Mapping[str, Any],
    *,
    key: str | None = None,
) -> Value:
    """Rewrite a single value if it refers to the given provider.

    Anything that is not a reference to ``provider_path`` is returned unchanged,
    so resolving an already-resolved value is a no-op.

    Args:
        value: Raw string or UnitReference.
        provider_path: The provider's path as written (e.g. '../acm').
        outputs: Provider outputs.
        key: The values key the value is stored under, if any.

    Returns:
        The rewritten or original value.

    """
    if isinstance(value, UnitReference) and value.path == provider_path:
        return select_output(value, key, outputs)
    if isinstance(value, str) and value == provider_path:
        return select_output(value, key, outputs)
    return value
