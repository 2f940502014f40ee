"""CLI command implementation for running actions over a stack."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import typer

from stackwright.cli.errors import CLIError, cli_error_handler
from stackwright.cli.formatting import OutputFormatter
from stackwright.cli.infrastructure import (
    load_stack,
    resolve_scheduler_settings,
    setup_infrastructure,
)
from stackwright.filters import FilterEngine
from stackwright.logging import setup_logging
from stackwright.models import Action, ExcludedDependencyPolicy, ExecutionResult
from stackwright.plan import ExecutionPlan, build_execution_plan
from stackwright.scheduler import ExecutionScheduler

logger = logging.getLogger(__name__)


async def _execute_with_interrupts(
    scheduler: ExecutionScheduler, plan: ExecutionPlan
) -> ExecutionResult:
    """Execute a plan, turning SIGINT into a graceful stop."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, scheduler.request_stop)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        # Signal handlers are unavailable on some platforms and in non-main threads
        handler_installed = False

    try:
        return await scheduler.execute(plan)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _write_report(result: ExecutionResult, report_path: Path, command: str) -> None:
    """Write the execution result as JSON.

    Raises:
        CLIError: If the report cannot be written.

    """
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    except OSError as e:
        raise CLIError(
            f"Failed to write report to {report_path}: {e}",
            command=command,
            original_error=e,
        ) from e
    logger.info("Report saved to %s", report_path)


def execute_action_command(  # noqa: PLR0913 - Matches CLI entry point signature
    action: Action,
    stack_path: Path,
    filters: list[str],
    parallelism: int | None,
    output_dir: Path,
    ignore_errors: bool = False,
    excluded_dependencies: ExcludedDependencyPolicy = "include",
    report: Path | None = None,
    verbose: bool = False,
    log_level: str = "INFO",
    config_root: Path | None = None,
) -> None:
    """CLI command implementation for validate, plan, apply, destroy and output.

    Args:
        action: Action to execute
        stack_path: Path to the stack file or directory
        filters: Filter expressions selecting units
        parallelism: Parallelism override (falls back to the stack settings)
        output_dir: Directory units are rendered into
        ignore_errors: Keep running dependents of failed units
        excluded_dependencies: Policy for required units the filters left out
        report: Optional path for a JSON report
        verbose: Enable verbose output
        log_level: Logging level
        config_root: Explicit configuration hierarchy root

    Raises:
        typer.Exit: With code 1 when any unit failed.

    """
    setup_logging(level="DEBUG" if verbose else log_level)
    formatter = OutputFormatter()
    command = action.value

    with cli_error_handler(command, f"{action.value.title()} failed"):
        stack = load_stack(stack_path, config_root)
        selection = FilterEngine(stack).select(filters)
        plan = build_execution_plan(
            stack,
            action,
            selection.units,
            excluded_dependency_policy=excluded_dependencies,
        )
        settings = resolve_scheduler_settings(stack, parallelism, ignore_errors, command)
        formatter.show_startup_banner(stack_path, plan, settings.parallelism, filters)

        runner, store = setup_infrastructure(stack, output_dir)
        scheduler = ExecutionScheduler(runner, store, settings)
        result = asyncio.run(_execute_with_interrupts(scheduler, plan))

        formatter.format_execution_result(result, verbose)
        if action == Action.OUTPUT:
            formatter.format_outputs(result)
        if report is not None:
            _write_report(result, report, command)
        formatter.show_completion_summary(result, report)

        if not result.success:
            raise typer.Exit(1)
