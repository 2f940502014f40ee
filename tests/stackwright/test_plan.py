"""Tests for execution planning and the excluded-dependency policies."""

import logging

import pytest

from stackwright.errors import ExcludedDependencyError
from stackwright.filters import FilterEngine
from stackwright.models import Action
from stackwright.plan import build_execution_plan, required_units

from .test_helpers import chain_stack, make_stack, unit_dict


class TestRequiredUnits:
    """Tests for required_units()."""

    def test_dependencies_for_apply(self) -> None:
        """Apply of api requires db, which requires vpc."""
        required = required_units(chain_stack(), ["api"], Action.APPLY)

        assert required == {"db": "api", "vpc": "db"}

    def test_dependents_for_destroy(self) -> None:
        """Destroy of vpc requires its dependents to go first."""
        required = required_units(chain_stack(), ["vpc"], Action.DESTROY)

        assert required == {"db": "vpc", "api": "db"}

    def test_disabled_edges_do_not_require(self) -> None:
        """Disabled edges never pull units in."""
        stack = make_stack(
            [unit_dict("a"), unit_dict("b", dependencies=[{"path": "../a", "enabled": False}])]
        )

        assert required_units(stack, ["b"], Action.APPLY) == {}


class TestBuildExecutionPlan:
    """Tests for build_execution_plan()."""

    def test_full_plan_in_dependency_order(self) -> None:
        """Without a selection every unit is planned in topological order."""
        plan = build_execution_plan(chain_stack(), Action.APPLY)

        assert plan.names == ["vpc", "db", "api"]
        assert plan.not_selected == ()
        assert not plan.reverse
        assert all(p.action == Action.APPLY for p in plan.units)

    def test_destroy_reverses_order(self) -> None:
        """Destroy runs dependents first: db is destroyed before vpc."""
        plan = build_execution_plan(chain_stack(), Action.DESTROY)

        assert plan.names == ["api", "db", "vpc"]
        assert plan.names.index("db") < plan.names.index("vpc")
        assert plan.reverse
        assert plan.levels() == [["api"], ["db"], ["vpc"]]

    def test_independent_units_share_a_level(self) -> None:
        """Units without mutual edges can run together."""
        stack = make_stack([unit_dict("b"), unit_dict("a"), unit_dict("c", values={"x": "../a"})])

        plan = build_execution_plan(stack, Action.PLAN)

        assert plan.levels() == [["a", "b"], ["c"]]
        assert plan.names == ["a", "b", "c"]

    def test_selection_keeps_unselected_units_out(self) -> None:
        """Units outside a selection without required edges are not selected."""
        stack = make_stack([unit_dict("a"), unit_dict("b")])

        plan = build_execution_plan(stack, Action.APPLY, ["a"])

        assert plan.names == ["a"]
        assert plan.not_selected == ("b",)

    def test_get_and_empty(self) -> None:
        """Planned units can be looked up by name."""
        plan = build_execution_plan(chain_stack(), Action.PLAN, ["vpc"])

        planned = plan.get("vpc")
        assert planned is not None
        assert planned.unit.path == "vpc"
        assert plan.get("api") is None
        assert not plan.is_empty
        assert len(plan) == 1


# =============================================================================
# Excluded dependency policies ('!db' on vpc <- db <- api)
# =============================================================================


class TestExcludedDependencyPolicy:
    """Tests for the include, error and ignore policies."""

    def test_include_policy_reincludes_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """The default policy adds db back and logs a warning."""
        # Arrange
        stack = chain_stack()
        selection = FilterEngine(stack).select(["!db"]).units

        # Act
        with caplog.at_level(logging.WARNING, logger="stackwright.plan"):
            plan = build_execution_plan(stack, Action.APPLY, selection)

        # Assert
        assert plan.names == ["vpc", "db", "api"]
        assert plan.included == {"db": "api"}
        planned = plan.get("db")
        assert planned is not None
        assert planned.required_by == "api"
        assert "Including 'db'" in caplog.text

    def test_error_policy_raises(self) -> None:
        """The error policy names the excluded unit and who needs it."""
        stack = chain_stack()
        selection = FilterEngine(stack).select(["!db"]).units

        with pytest.raises(ExcludedDependencyError, match="'db' \\(dependency of 'api'\\)"):
            build_execution_plan(stack, Action.APPLY, selection, excluded_dependency_policy="error")

    def test_ignore_policy_leaves_unit_out(self) -> None:
        """The ignore policy plans vpc and api only and records db as excluded."""
        stack = chain_stack()
        selection = FilterEngine(stack).select(["!db"]).units

        plan = build_execution_plan(stack, Action.APPLY, selection, excluded_dependency_policy="ignore")

        assert plan.names == ["vpc", "api"]
        assert plan.excluded == ("db",)
        assert plan.not_selected == ("db",)
        # api still runs after vpc, ordered through the excluded db
        assert plan.levels() == [["vpc"], ["api"]]

    def test_no_policy_applies_without_required_units(self) -> None:
        """A selection closed under dependencies plans exactly itself."""
        stack = chain_stack()

        plan = build_execution_plan(stack, Action.APPLY, ["vpc"], excluded_dependency_policy="error")

        assert plan.names == ["vpc"]
        assert plan.not_selected == ("db", "api")

    def test_destroy_requires_dependents(self) -> None:
        """Destroying vpc alone under the error policy fails on its dependents."""
        with pytest.raises(ExcludedDependencyError, match="dependent of 'vpc'"):
            build_execution_plan(
                chain_stack(), Action.DESTROY, ["vpc"], excluded_dependency_policy="error"
            )
