"""Execution planning: expanding a selection into an ordered plan.

The planner is responsible for:
1. Expanding the selection so ordering constraints are satisfiable
2. Applying the excluded-dependency policy to units the filters left out
3. Producing an immutable, deterministically ordered ExecutionPlan
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from graphlib import TopologicalSorter

from stackwright.builder import Stack, Unit
from stackwright.errors import ExcludedDependencyError
from stackwright.models import Action, ExcludedDependencyPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedUnit:
    """A unit tagged with the action to perform."""

    unit: Unit
    action: Action
    required_by: str | None = None
    """Set when the unit was re-included because a selected unit needs it."""

    @property
    def name(self) -> str:
        """Unit name."""
        return self.unit.name


@dataclass(frozen=True)
class ExecutionPlan:
    """Immutable, ordered execution plan.

    Contains all information needed by the scheduler:
    - The built Stack
    - The action to execute
    - Planned units in topological order (reversed for destroy)
    - Units outside the selection
    - Required units left out under the ``ignore`` policy
    """

    stack: Stack
    action: Action
    units: tuple[PlannedUnit, ...]
    not_selected: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    included: dict[str, str] = field(default_factory=dict)
    """Re-included unit name to the selected unit that required it."""

    @property
    def reverse(self) -> bool:
        """Whether units run dependents-first."""
        return self.action == Action.DESTROY

    @property
    def names(self) -> list[str]:
        """Planned unit names in plan order."""
        return [planned.name for planned in self.units]

    @property
    def is_empty(self) -> bool:
        """Whether the plan has nothing to execute."""
        return not self.units

    def __len__(self) -> int:
        """Number of planned units."""
        return len(self.units)

    def get(self, name: str) -> PlannedUnit | None:
        """Look up a planned unit by name."""
        for planned in self.units:
            if planned.name == name:
                return planned
        return None

    def create_sorter(self) -> TopologicalSorter[str]:
        """Create a prepared sorter over the planned units in action order.

        Excluded units stay in the sorter so ordering through them holds; the
        scheduler passes over them without running anything.
        """
        return self.stack.graph.create_sorter(
            [*self.names, *self.excluded], reverse=self.reverse
        )

    def levels(self) -> list[list[str]]:
        """Planned units grouped into levels that could run together."""
        planned = set(self.names)
        levels = self.stack.graph.levels([*self.names, *self.excluded], reverse=self.reverse)
        return [kept for level in levels if (kept := [n for n in level if n in planned])]


def required_units(stack: Stack, names: Iterable[str], action: Action) -> dict[str, str]:
    """Find the units a selection needs for an action.

    Walks enabled edges: dependencies for validate/plan/apply/output, dependents
    for destroy.

    Args:
        stack: The built stack.
        names: Selected unit names.
        action: The action to execute.

    Returns:
        Mapping of every required unit (outside names) to a unit that needs it.

    """
    graph = stack.graph
    start = list(names)
    selected = set(start)
    required: dict[str, str] = {}
    to_visit = list(start)
    while to_visit:
        current = to_visit.pop(0)
        if action == Action.DESTROY:
            neighbours = graph.get_dependents(current)
        else:
            neighbours = graph.get_dependencies(current)
        for neighbour in sorted(neighbours):
            if neighbour in selected or neighbour in required:
                continue
            required[neighbour] = current
            to_visit.append(neighbour)
    return required


def build_execution_plan(
    stack: Stack,
    action: Action,
    selection: Iterable[str] | None = None,
    *,
    excluded_dependency_policy: ExcludedDependencyPolicy = "include",
) -> ExecutionPlan:
    """Build an ordered plan for an action over a selection.

    Args:
        stack: The built stack.
        action: The action to execute.
        selection: Selected unit names (e.g. a FilterResult). None selects all.
        excluded_dependency_policy: What to do with required units the
            selection left out: ``include`` them with a warning, raise an
            ``error``, or ``ignore`` them.

    Returns:
        Immutable ExecutionPlan.

    Raises:
        ExcludedDependencyError: Under the ``error`` policy when a required unit
            is not selected.

    """
    selected = set(stack.units) if selection is None else set(selection)
    required = required_units(stack, sorted(selected), action)
    relation = "dependent" if action == Action.DESTROY else "dependency"

    included: dict[str, str] = {}
    excluded: list[str] = []
    if required:
        if excluded_dependency_policy == "error":
            details = ", ".join(
                f"'{name}' ({relation} of '{by}')" for name, by in sorted(required.items())
            )
            raise ExcludedDependencyError(
                f"Cannot {action.value} the selection without excluded units: {details}"
            )
        if excluded_dependency_policy == "include":
            for name, by in sorted(required.items()):
                logger.warning(
                    "Including '%s', a %s of '%s' that the filters excluded",
                    name,
                    relation,
                    by,
                )
            included = dict(required)
            selected |= set(required)
        else:
            excluded = sorted(required)
            logger.info(
                "Leaving out excluded units %s; existing state will be used", excluded
            )

    # Excluded units still constrain the order of the units around them
    order = [
        name
        for name in stack.graph.topological_order(
            selected | set(excluded), reverse=action == Action.DESTROY
        )
        if name in selected
    ]
    units = tuple(
        PlannedUnit(unit=stack.units[name], action=action, required_by=included.get(name))
        for name in order
    )
    not_selected = tuple(name for name in stack.units if name not in selected)

    logger.debug(
        "Planned %s of %d units (%d not selected)", action.value, len(units), len(not_selected)
    )
    return ExecutionPlan(
        stack=stack,
        action=action,
        units=units,
        not_selected=not_selected,
        excluded=tuple(excluded),
        included=included,
    )
