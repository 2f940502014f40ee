"""Tests for ExecutionScheduler - ordering, parallelism, failures and cancellation."""

import asyncio

from stackwright.builder import Stack
from stackwright.models import Action, ExecutionResult, SchedulerSettings, UnitStatus
from stackwright.plan import build_execution_plan
from stackwright.scheduler import CANCELLED, ExecutionScheduler
from stackwright.state import InMemoryStateStore

from .test_helpers import RecordingRunner, chain_stack, make_stack, unit_dict

CHAIN_OUTPUTS = {
    "vpc": {"vpc_id": "vpc-123"},
    "db": {"db_url": "postgres://db"},
    "api": {"endpoint": "https://api"},
}


def _run(
    stack: Stack,
    action: Action,
    runner: RecordingRunner,
    store: InMemoryStateStore | None = None,
    *,
    parallelism: int = 4,
    ignore_errors: bool = False,
    selection: list[str] | None = None,
) -> ExecutionResult:
    plan = build_execution_plan(stack, action, selection)
    settings = SchedulerSettings(parallelism=parallelism, ignore_errors=ignore_errors)
    scheduler = ExecutionScheduler(runner, store or InMemoryStateStore(), settings)
    return asyncio.run(scheduler.execute(plan))


def _mocked_chain() -> Stack:
    """vpc <- db <- api with mock outputs on both edges."""
    return make_stack(
        [
            unit_dict("vpc"),
            unit_dict(
                "db",
                values={"vpc_id": "../vpc"},
                dependencies=[{"path": "../vpc", "mock_outputs": {"vpc_id": "vpc-mock"}}],
            ),
            unit_dict(
                "api",
                values={"db_url": "../db"},
                dependencies=[{"path": "../db", "mock_outputs": {"db_url": "mock://db"}}],
            ),
        ]
    )


# =============================================================================
# Ordering and outputs
# =============================================================================


class TestSchedulerApply:
    """Tests for apply runs."""

    def test_apply_runs_in_dependency_order_and_stores_outputs(self) -> None:
        """Each unit sees its provider's freshly applied outputs."""
        # Arrange
        stack = chain_stack()
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS)
        store = InMemoryStateStore()

        # Act
        result = _run(stack, Action.APPLY, runner, store)

        # Assert
        assert result.success
        assert result.succeeded == ["vpc", "db", "api"]
        assert runner.called == ["vpc", "db", "api"]
        assert result.order == ["vpc", "db", "api"]
        assert runner.values_for("db") == {"vpc_id": "vpc-123"}
        assert runner.values_for("api") == {"db_url": "postgres://db"}
        assert result.units["vpc"].outputs == {"vpc_id": "vpc-123"}
        assert asyncio.run(store.get_outputs(stack.units["db"].state_key)) == CHAIN_OUTPUTS["db"]
        assert not store.is_locked(stack.units["vpc"].state_key)

    def test_result_metadata(self) -> None:
        """The result carries run identity and the stack name."""
        result = _run(make_stack([unit_dict("vpc")]), Action.VALIDATE, RecordingRunner(), parallelism=1)

        assert result.stack == "test-stack"
        assert result.action == Action.VALIDATE
        assert len(result.run_id) == 36
        assert result.total_duration_seconds >= 0

    def test_apply_uses_previously_stored_outputs(self) -> None:
        """Providers outside the plan resolve from the state store."""
        # Arrange
        stack = chain_stack()
        store = InMemoryStateStore({stack.units["vpc"].state_key: {"vpc_id": "vpc-old"}})
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS)

        # Act
        plan = build_execution_plan(stack, Action.APPLY, ["db"], excluded_dependency_policy="ignore")
        scheduler = ExecutionScheduler(runner, store, SchedulerSettings(parallelism=2))
        result = asyncio.run(scheduler.execute(plan))

        # Assert
        assert runner.called == ["db"]
        assert runner.values_for("db") == {"vpc_id": "vpc-old"}
        assert result.units["vpc"].status == UnitStatus.NOT_SELECTED
        assert result.units["vpc"].reason == "excluded dependency"
        assert result.units["api"].status == UnitStatus.NOT_SELECTED
        assert result.units["api"].reason is None

    def test_ignored_unit_keeps_ordering_of_its_neighbours(self) -> None:
        """With '!db' ignored, api still runs after vpc and reads db from state."""
        stack = chain_stack()
        store = InMemoryStateStore({stack.units["db"].state_key: {"db_url": "postgres://old"}})
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS)
        plan = build_execution_plan(
            stack, Action.APPLY, ["vpc", "api"], excluded_dependency_policy="ignore"
        )

        result = asyncio.run(
            ExecutionScheduler(runner, store, SchedulerSettings(parallelism=4)).execute(plan)
        )

        assert runner.called == ["vpc", "api"]
        assert runner.values_for("api") == {"db_url": "postgres://old"}
        assert result.units["db"].status == UnitStatus.NOT_SELECTED

    def test_output_action_reports_outputs_without_storing(self) -> None:
        """Output returns each unit's outputs and leaves state untouched."""
        stack = make_stack([unit_dict("vpc")])
        store = InMemoryStateStore()

        result = _run(stack, Action.OUTPUT, RecordingRunner(outputs=CHAIN_OUTPUTS), store)

        assert result.units["vpc"].outputs == {"vpc_id": "vpc-123"}
        assert asyncio.run(store.list_keys()) == []


class TestSchedulerPlanAndDestroy:
    """Tests for plan and destroy runs."""

    def test_plan_uses_mock_outputs(self) -> None:
        """Plan on a fresh stack substitutes mocks and records them."""
        runner = RecordingRunner()

        result = _run(_mocked_chain(), Action.PLAN, runner)

        assert result.success
        assert runner.values_for("db") == {"vpc_id": "vpc-mock"}
        assert runner.values_for("api") == {"db_url": "mock://db"}
        assert result.units["db"].mocked == ["vpc"]
        assert result.units["vpc"].mocked == []
        assert result.units["db"].outputs is None

    def test_apply_reincludes_provider_instead_of_mocking(self) -> None:
        """Apply brings the provider in rather than running on mock outputs."""
        runner = RecordingRunner(outputs={"vpc": {"vpc_id": "vpc-real"}})

        result = _run(_mocked_chain(), Action.APPLY, runner, selection=["db"])

        # vpc is re-included and applied first, so db sees its real outputs
        assert result.units["vpc"].status == UnitStatus.SUCCEEDED
        assert result.units["db"].status == UnitStatus.SUCCEEDED
        assert runner.values_for("db") == {"vpc_id": "vpc-real"}

    def test_apply_fails_when_provider_produced_no_outputs(self) -> None:
        """A referenced provider applied without outputs fails its dependent."""
        runner = RecordingRunner()

        result = _run(_mocked_chain(), Action.APPLY, runner, selection=["db"])

        assert result.units["vpc"].status == UnitStatus.SUCCEEDED
        assert result.units["db"].status == UnitStatus.FAILED
        assert "has no outputs for apply" in (result.units["db"].error or "")
        assert runner.called == ["vpc"]

    def test_apply_of_unapplied_excluded_provider_fails(self) -> None:
        """An ignored provider that was never applied cannot be resolved."""
        stack = _mocked_chain()
        runner = RecordingRunner()
        plan = build_execution_plan(stack, Action.APPLY, ["db"], excluded_dependency_policy="ignore")

        result = asyncio.run(
            ExecutionScheduler(runner, InMemoryStateStore(), SchedulerSettings(parallelism=1)).execute(plan)
        )

        assert result.units["db"].status == UnitStatus.FAILED
        assert "has no outputs for apply" in (result.units["db"].error or "")
        assert runner.called == []

    def test_destroy_runs_dependents_first_and_deletes_state(self) -> None:
        """db is destroyed before vpc and state is removed."""
        # Arrange
        stack = chain_stack()
        store = InMemoryStateStore(
            {stack.units[name].state_key: outputs for name, outputs in CHAIN_OUTPUTS.items()}
        )
        runner = RecordingRunner()

        # Act
        result = _run(stack, Action.DESTROY, runner, store)

        # Assert
        assert result.success
        assert runner.called == ["api", "db", "vpc"]
        assert asyncio.run(store.list_keys()) == []
        assert result.units["vpc"].outputs is None


# =============================================================================
# Parallelism
# =============================================================================


class TestSchedulerConcurrency:
    """Tests for the parallelism bound."""

    def test_concurrency_limit_respected(self) -> None:
        """At most `parallelism` units execute simultaneously."""
        stack = make_stack([unit_dict(f"unit_{i}") for i in range(6)])
        runner = RecordingRunner(delay=0.05)

        result = _run(stack, Action.PLAN, runner, parallelism=2)

        assert len(result.succeeded) == 6
        assert runner.max_concurrent <= 2, (
            f"Expected max 2 concurrent, but observed {runner.max_concurrent}"
        )

    def test_independent_units_overlap(self) -> None:
        """Independent units do run in parallel when allowed."""
        stack = make_stack([unit_dict(f"unit_{i}") for i in range(4)])
        runner = RecordingRunner(delay=0.1)

        _run(stack, Action.PLAN, runner, parallelism=4)

        assert runner.max_concurrent > 1

    def test_dependent_starts_only_after_provider(self) -> None:
        """A slow provider holds back its dependent but not unrelated units."""
        stack = make_stack(
            [unit_dict("slow"), unit_dict("after", dependencies=[{"path": "../slow"}]), unit_dict("free")]
        )
        runner = RecordingRunner(delay=0.05)

        result = _run(stack, Action.PLAN, runner, parallelism=3)

        assert runner.called.index("after") > runner.called.index("slow")
        assert result.order.index("free") < result.order.index("after")


# =============================================================================
# Failures
# =============================================================================


class TestSchedulerFailures:
    """Tests for failure handling."""

    def test_failure_skips_dependents(self) -> None:
        """When db fails, api is skipped with the reason and never run."""
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS, fail={"db"})

        result = _run(chain_stack(), Action.APPLY, runner)

        assert not result.success
        assert result.succeeded == ["vpc"]
        assert result.failed == ["db"]
        assert result.skipped == ["api"]
        assert result.units["api"].reason == "upstream failure: db"
        assert "db exploded" in (result.units["db"].error or "")
        assert "api" not in runner.called

    def test_failure_does_not_affect_unrelated_units(self) -> None:
        """Siblings of a failed unit still run."""
        stack = make_stack([unit_dict("a"), unit_dict("b"), unit_dict("c", dependencies=[{"path": "../a"}])])
        runner = RecordingRunner(fail={"a"})

        result = _run(stack, Action.PLAN, runner, parallelism=1)

        assert result.succeeded == ["b"]
        assert result.skipped == ["c"]

    def test_ignore_errors_runs_dependents(self) -> None:
        """With ignore_errors, dependents of a failed unit still run."""
        stack = make_stack([unit_dict("a"), unit_dict("b", dependencies=[{"path": "../a"}])])
        runner = RecordingRunner(fail={"a"})

        result = _run(stack, Action.PLAN, runner, ignore_errors=True)

        assert result.failed == ["a"]
        assert result.succeeded == ["b"]
        assert runner.called == ["a", "b"]

    def test_failed_apply_stores_nothing_and_releases_lock(self) -> None:
        """A failed apply leaves no outputs and no lock behind."""
        stack = make_stack([unit_dict("vpc")])
        store = InMemoryStateStore()

        _run(stack, Action.APPLY, RecordingRunner(fail={"vpc"}), store)

        key = stack.units["vpc"].state_key
        assert asyncio.run(store.get_outputs(key)) is None
        assert not store.is_locked(key)

    def test_held_lock_fails_unit(self) -> None:
        """A unit whose state is locked by someone else fails without running."""
        stack = make_stack([unit_dict("vpc")])
        store = InMemoryStateStore()
        asyncio.run(store.acquire_lock(stack.units["vpc"].state_key, "other-run"))
        runner = RecordingRunner()

        result = _run(stack, Action.APPLY, runner, store)

        assert result.failed == ["vpc"]
        assert "locked by 'other-run'" in (result.units["vpc"].error or "")
        assert runner.called == []


# =============================================================================
# Cancellation and timeout
# =============================================================================


class TestSchedulerCancellation:
    """Tests for request_stop() and the run timeout."""

    def test_stop_before_start_cancels_everything(self) -> None:
        """A stop requested up front launches nothing."""
        stack = chain_stack()
        runner = RecordingRunner()
        scheduler = ExecutionScheduler(runner, InMemoryStateStore(), SchedulerSettings(parallelism=2))
        plan = build_execution_plan(stack, Action.PLAN)

        scheduler.request_stop()
        result = asyncio.run(scheduler.execute(plan))

        assert result.cancelled
        assert not result.success
        assert runner.called == []
        assert {r.reason for r in result.units.values()} == {CANCELLED}

    def test_stop_during_run_lets_in_flight_units_finish(self) -> None:
        """In-flight units complete; units not yet started are cancelled."""
        # Arrange
        stack = chain_stack()
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS, delay=0.2)
        scheduler = ExecutionScheduler(runner, InMemoryStateStore(), SchedulerSettings(parallelism=2))
        plan = build_execution_plan(stack, Action.APPLY)

        async def scenario() -> ExecutionResult:
            task = asyncio.create_task(scheduler.execute(plan))
            while not runner.started.is_set():
                await asyncio.sleep(0.01)
            scheduler.request_stop()
            return await task

        # Act
        result = asyncio.run(scenario())

        # Assert
        assert result.cancelled
        assert result.units["vpc"].status == UnitStatus.SUCCEEDED
        assert result.units["db"].status == UnitStatus.SKIPPED
        assert result.units["db"].reason == CANCELLED
        assert result.units["api"].reason == CANCELLED
        assert runner.called == ["vpc"]

    def test_scheduler_is_reusable_after_stop(self) -> None:
        """A stop applies to one run only."""
        stack = make_stack([unit_dict("vpc")])
        runner = RecordingRunner()
        scheduler = ExecutionScheduler(runner, InMemoryStateStore(), SchedulerSettings(parallelism=1))
        plan = build_execution_plan(stack, Action.PLAN)

        scheduler.request_stop()
        first = asyncio.run(scheduler.execute(plan))
        second = asyncio.run(scheduler.execute(plan))

        assert first.cancelled
        assert second.success
        assert runner.called == ["vpc"]

    def test_timeout_stops_launching_units(self) -> None:
        """After the timeout no new units start; the in-flight unit finishes."""
        stack = chain_stack()
        runner = RecordingRunner(outputs=CHAIN_OUTPUTS, delay=1.3)
        scheduler = ExecutionScheduler(
            runner, InMemoryStateStore(), SchedulerSettings(parallelism=1, timeout=1)
        )

        result = asyncio.run(scheduler.execute(build_execution_plan(stack, Action.APPLY)))

        assert result.cancelled
        assert result.units["vpc"].status == UnitStatus.SUCCEEDED
        assert result.units["db"].reason == CANCELLED
        assert runner.called == ["vpc"]
