"""Execution scheduler for running a plan with bounded parallelism.

The ExecutionScheduler runs units as soon as their own predecessors are done,
using asyncio with a semaphore for the parallelism bound. Sync runners are
bridged to async via ThreadPoolExecutor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from graphlib import TopologicalSorter
from typing import Any

from stackwright.builder import Unit
from stackwright.models import (
    Action,
    ExecutionResult,
    SchedulerSettings,
    UnitResult,
    UnitStatus,
)
from stackwright.plan import ExecutionPlan, PlannedUnit
from stackwright.resolver import DependencyResolver
from stackwright.runners import UnitRunner
from stackwright.state import StateStore
from stackwright.values import JsonValue

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


@dataclass
class _ExecutionContext:
    """Internal context for a single execution run."""

    plan: ExecutionPlan
    resolver: DependencyResolver
    semaphore: asyncio.Semaphore
    thread_pool: ThreadPoolExecutor
    owner: str
    planned: dict[str, PlannedUnit] = field(default_factory=dict)
    results: dict[str, UnitResult] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    """Unit name to skip reason."""

    order: list[str] = field(default_factory=list)
    pending: dict[asyncio.Task[UnitResult], str] = field(default_factory=dict)


class ExecutionScheduler:
    """Executes a plan in parallel using asyncio with ThreadPoolExecutor bridge."""

    def __init__(self, runner: UnitRunner, store: StateStore, settings: SchedulerSettings) -> None:
        """Initialise scheduler.

        Args:
            runner: Runner invoked for every unit.
            store: State store for outputs and locks.
            settings: Parallelism, error mode and timeout.

        """
        self._runner = runner
        self._store = store
        self._settings = settings
        self._stop_requested = False
        self._stop_event: asyncio.Event | None = None

    def request_stop(self) -> None:
        """Stop launching units. In-flight units are allowed to finish.

        Must be called from the event loop thread (e.g. a loop signal handler)
        or before execute starts.
        """
        if not self._stop_requested:
            logger.warning("Stop requested: no new units will be started")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def execute(self, plan: ExecutionPlan) -> ExecutionResult:
        """Execute every planned unit in dependency order.

        Args:
            plan: Ordered plan from build_execution_plan.

        Returns:
            ExecutionResult with a result for every unit of the stack.

        """
        start_time = time.monotonic()
        run_id = str(uuid.uuid4())
        start_timestamp = datetime.now(UTC).isoformat()
        parallelism = self._settings.parallelism

        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        logger.info(
            "Running %s on %d units of stack '%s' (parallelism %d)",
            plan.action.value,
            len(plan),
            plan.stack.name,
            parallelism,
        )

        with ThreadPoolExecutor(max_workers=parallelism) as thread_pool:
            ctx = _ExecutionContext(
                plan=plan,
                resolver=DependencyResolver(plan.stack),
                semaphore=asyncio.Semaphore(parallelism),
                thread_pool=thread_pool,
                owner=f"stackwright-{os.getpid()}-{run_id}",
                planned={p.name: p for p in plan.units},
            )
            await self._execute_plan(ctx, self._stop_event)

        cancelled = self._mark_remaining_as_skipped(ctx)
        self._stop_event = None
        self._stop_requested = False

        total_duration = time.monotonic() - start_time
        return ExecutionResult(
            run_id=run_id,
            start_timestamp=start_timestamp,
            stack=plan.stack.name,
            action=plan.action,
            units=self._collect_results(ctx),
            order=ctx.order,
            cancelled=cancelled,
            total_duration_seconds=total_duration,
        )

    async def _execute_plan(self, ctx: _ExecutionContext, stop_event: asyncio.Event) -> None:
        """Launch units as soon as they are ready and wait for completions."""
        sorter = ctx.plan.create_sorter()
        loop = asyncio.get_running_loop()
        timeout = self._settings.timeout
        deadline = loop.time() + timeout if timeout is not None else None

        stop_waiter = asyncio.create_task(stop_event.wait())
        try:
            while True:
                if not self._stop_requested:
                    self._launch_ready(sorter, ctx)
                if not ctx.pending:
                    break

                # Once stopping, only in-flight units are awaited
                waiters: set[asyncio.Future[Any]] = set(ctx.pending)
                remaining = None
                if not self._stop_requested:
                    waiters.add(stop_waiter)
                    if deadline is not None:
                        remaining = max(deadline - loop.time(), 0)
                done, _ = await asyncio.wait(
                    waiters,
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if deadline is not None and loop.time() >= deadline and not self._stop_requested:
                    logger.warning("Execution timed out after %d seconds", timeout)
                    self.request_stop()

                for task in done:
                    name = ctx.pending.pop(task, None)
                    if name is None:
                        continue
                    self._record(name, task.result(), ctx)
                    sorter.done(name)
        finally:
            stop_waiter.cancel()

    def _launch_ready(self, sorter: TopologicalSorter[str], ctx: _ExecutionContext) -> None:
        """Start every ready unit, passing over units already skipped."""
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            if not ready:
                return
            for name in ready:
                planned = ctx.planned.get(name)
                if planned is None or name in ctx.skipped:
                    # Excluded and skipped units count as done so the sorter can progress
                    sorter.done(name)
                    continue
                task = asyncio.create_task(self._run_unit(planned, ctx), name=name)
                ctx.pending[task] = name
                ctx.order.append(name)

    def _record(self, name: str, result: UnitResult, ctx: _ExecutionContext) -> None:
        ctx.results[name] = result
        if result.status == UnitStatus.FAILED:
            logger.error("Unit '%s' failed: %s", name, result.error)
            if not self._settings.ignore_errors:
                self._skip_dependents(name, ctx)
        else:
            logger.info(
                "Unit '%s' %s in %.2fs", name, result.status.value, result.duration_seconds
            )

    async def _run_unit(self, planned: PlannedUnit, ctx: _ExecutionContext) -> UnitResult:
        """Resolve, run and persist a single unit."""
        unit = planned.unit
        action = planned.action

        async with ctx.semaphore:
            start_time = time.monotonic()
            logger.info("Starting %s of unit '%s'", action.value, unit.name)
            try:
                provider_outputs = await self._provider_outputs(unit, ctx)
                resolved = ctx.resolver.resolve(unit, action, provider_outputs)

                if action in (Action.APPLY, Action.DESTROY):
                    async with self._store.locked(unit.state_key, ctx.owner):
                        produced = await self._invoke(unit, action, resolved.values, ctx)
                        if action == Action.APPLY:
                            await self._store.save_outputs(unit.state_key, produced or {})
                        else:
                            await self._store.delete(unit.state_key)
                else:
                    produced = await self._invoke(unit, action, resolved.values, ctx)

                return UnitResult(
                    unit=unit.name,
                    action=action,
                    status=UnitStatus.SUCCEEDED,
                    outputs=produced if action in (Action.APPLY, Action.OUTPUT) else None,
                    mocked=resolved.mocked,
                    duration_seconds=time.monotonic() - start_time,
                )

            except Exception as e:
                return UnitResult(
                    unit=unit.name,
                    action=action,
                    status=UnitStatus.FAILED,
                    error=str(e),
                    duration_seconds=time.monotonic() - start_time,
                )

    async def _provider_outputs(
        self, unit: Unit, ctx: _ExecutionContext
    ) -> dict[str, dict[str, Any] | None]:
        """Read applied outputs of every provider whose outputs are used."""
        stack = ctx.plan.stack
        outputs: dict[str, dict[str, Any] | None] = {}
        for edge in stack.graph.edges(unit.name):
            if not edge.enabled or edge.skip_outputs:
                continue
            provider = stack.units[edge.provider]
            outputs[edge.provider] = await self._store.get_outputs(provider.state_key)
        return outputs

    async def _invoke(
        self,
        unit: Unit,
        action: Action,
        values: dict[str, JsonValue],
        ctx: _ExecutionContext,
    ) -> dict[str, Any] | None:
        """Run the runner in the thread pool."""

        def sync_run() -> dict[str, Any] | None:
            return self._runner.run(unit, action, values)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(ctx.thread_pool, sync_run)

    def _skip_dependents(self, name: str, ctx: _ExecutionContext) -> None:
        """Mark every unit after a failed unit in action order as skipped."""
        graph = ctx.plan.stack.graph
        planned = set(ctx.plan.names)

        def successors(unit: str) -> set[str]:
            if ctx.plan.reverse:
                return graph.get_dependencies(unit)
            return graph.get_dependents(unit)

        excluded = set(ctx.plan.excluded)

        # Use iterative BFS to avoid stack overflow on deep chains
        to_skip = list(successors(name))
        visited: set[str] = set()
        while to_skip:
            dep = to_skip.pop()
            if dep in visited or dep in ctx.results:
                continue
            visited.add(dep)
            if dep in planned:
                ctx.skipped.setdefault(dep, f"upstream failure: {name}")
            elif dep not in excluded:
                continue
            # Excluded units pass the failure on to the units behind them
            to_skip.extend(successors(dep))

    def _mark_remaining_as_skipped(self, ctx: _ExecutionContext) -> bool:
        """Mark planned units that never started as cancelled.

        Returns:
            True if any unit was cancelled.

        """
        remaining = [
            name
            for name in ctx.plan.names
            if name not in ctx.results and name not in ctx.skipped
        ]
        for name in remaining:
            ctx.skipped[name] = CANCELLED
        return bool(remaining) or self._stop_requested

    def _collect_results(self, ctx: _ExecutionContext) -> dict[str, UnitResult]:
        plan = ctx.plan
        results: dict[str, UnitResult] = {}
        for name in plan.names:
            if name in ctx.results:
                results[name] = ctx.results[name]
            else:
                results[name] = UnitResult(
                    unit=name,
                    action=plan.action,
                    status=UnitStatus.SKIPPED,
                    reason=ctx.skipped[name],
                )
        for name in plan.not_selected:
            results[name] = UnitResult(
                unit=name,
                action=plan.action,
                status=UnitStatus.NOT_SELECTED,
                reason="excluded dependency" if name in plan.excluded else None,
            )
        return results
