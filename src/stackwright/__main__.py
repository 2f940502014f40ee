"""Main entry point for the stackwright CLI.

This module provides the command-line interface, including commands for:
- Rendering units (generate) and removing rendered units (clean)
- Running actions over a stack (validate, plan, apply, destroy, output)
- Inspecting the dependency graph (graph)
- Generating the stack file JSON schema
"""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Annotated, cast

import typer
from dotenv import load_dotenv

from stackwright.cli import (
    clean_command,
    execute_action_command,
    generate_schema_command,
    generate_units_command,
    graph_command,
)
from stackwright.models import Action, ExcludedDependencyPolicy
from stackwright.runners import DEFAULT_OUTPUT_DIR

# Load environment variables from .env files
# Priority: STACKWRIGHT_ENV_FILE (if set) > .env in the current directory
load_dotenv(Path.cwd() / ".env")
if _env_file := os.getenv("STACKWRIGHT_ENV_FILE"):
    load_dotenv(_env_file, override=True)

app = typer.Typer(name="stackwright", no_args_is_help=True)


class ExcludedDependencies(StrEnum):
    """Policy for required units the filters left out."""

    INCLUDE = "include"
    ERROR = "error"
    IGNORE = "ignore"


StackArgument = Annotated[
    Path,
    typer.Argument(
        help="Path to the stack file (or a directory containing stack.yaml)",
        exists=True,
        file_okay=True,
        dir_okay=True,
        readable=True,
    ),
]
FilterOption = Annotated[
    list[str] | None,
    typer.Option(
        "--filter",
        "-f",
        help="Filter expression selecting units (repeatable). E.g. 'api...', '!db', 'services/*'",
        rich_help_panel="Selection",
    ),
]
ParallelismOption = Annotated[
    int | None,
    typer.Option(
        "--parallelism",
        "-p",
        min=1,
        help="Maximum units running at once (overrides settings.parallelism)",
        rich_help_panel="Execution",
    ),
]
OutputDirOption = Annotated[
    Path,
    typer.Option(
        "--output-dir",
        help="Directory units are rendered into",
        file_okay=False,
        dir_okay=True,
        rich_help_panel="Output",
    ),
]
ConfigRootOption = Annotated[
    Path | None,
    typer.Option(
        "--config-root",
        help="Stop the configuration hierarchy search at this directory",
        file_okay=False,
        dir_okay=True,
    ),
]
LogLevelOption = Annotated[
    str,
    typer.Option(
        "--log-level",
        help="Set logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        case_sensitive=False,
    ),
]
IgnoreErrorsOption = Annotated[
    bool,
    typer.Option(
        "--ignore-errors",
        help="Run dependents of failed units anyway",
        rich_help_panel="Execution",
    ),
]
ExcludedDependenciesOption = Annotated[
    ExcludedDependencies,
    typer.Option(
        "--excluded-dependencies",
        help="What to do with required units the filters excluded",
        case_sensitive=False,
        rich_help_panel="Selection",
    ),
]
ReportOption = Annotated[
    Path | None,
    typer.Option(
        "--report",
        help="Save the execution result to a JSON file",
        file_okay=True,
        dir_okay=False,
        writable=True,
        rich_help_panel="Output",
    ),
]
VerboseOption = Annotated[
    bool,
    typer.Option(
        "--verbose",
        "-v",
        help="Enable verbose output (sets log level to DEBUG)",
    ),
]


def _run_action(  # noqa: PLR0913 - CLI entry point with many options
    action: Action,
    stack: Path,
    filters: list[str] | None,
    parallelism: int | None,
    output_dir: Path,
    ignore_errors: bool,
    excluded_dependencies: ExcludedDependencies,
    report: Path | None,
    verbose: bool,
    log_level: str,
    config_root: Path | None,
) -> None:
    execute_action_command(
        action,
        stack,
        filters=filters or [],
        parallelism=parallelism,
        output_dir=output_dir,
        ignore_errors=ignore_errors,
        excluded_dependencies=cast(ExcludedDependencyPolicy, excluded_dependencies.value),
        report=report,
        verbose=verbose,
        log_level=log_level,
        config_root=config_root,
    )


@app.command()
def validate(  # noqa: PLR0913
    stack: StackArgument,
    filters: FilterOption = None,
    parallelism: ParallelismOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    ignore_errors: IgnoreErrorsOption = False,
    excluded_dependencies: ExcludedDependenciesOption = ExcludedDependencies.INCLUDE,
    report: ReportOption = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Validate selected units."""
    _run_action(
        Action.VALIDATE,
        stack,
        filters,
        parallelism,
        output_dir,
        ignore_errors,
        excluded_dependencies,
        report,
        verbose,
        log_level,
        config_root,
    )


@app.command()
def plan(  # noqa: PLR0913
    stack: StackArgument,
    filters: FilterOption = None,
    parallelism: ParallelismOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    ignore_errors: IgnoreErrorsOption = False,
    excluded_dependencies: ExcludedDependenciesOption = ExcludedDependencies.INCLUDE,
    report: ReportOption = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Plan selected units.

    Example:
        stackwright plan live/prod -f 'api...' -p 4

    """
    _run_action(
        Action.PLAN,
        stack,
        filters,
        parallelism,
        output_dir,
        ignore_errors,
        excluded_dependencies,
        report,
        verbose,
        log_level,
        config_root,
    )


@app.command()
def apply(  # noqa: PLR0913
    stack: StackArgument,
    filters: FilterOption = None,
    parallelism: ParallelismOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    ignore_errors: IgnoreErrorsOption = False,
    excluded_dependencies: ExcludedDependenciesOption = ExcludedDependencies.INCLUDE,
    report: ReportOption = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Apply selected units in dependency order and store their outputs."""
    _run_action(
        Action.APPLY,
        stack,
        filters,
        parallelism,
        output_dir,
        ignore_errors,
        excluded_dependencies,
        report,
        verbose,
        log_level,
        config_root,
    )


@app.command()
def destroy(  # noqa: PLR0913
    stack: StackArgument,
    filters: FilterOption = None,
    parallelism: ParallelismOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    ignore_errors: IgnoreErrorsOption = False,
    excluded_dependencies: ExcludedDependenciesOption = ExcludedDependencies.INCLUDE,
    report: ReportOption = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Destroy selected units, dependents first."""
    _run_action(
        Action.DESTROY,
        stack,
        filters,
        parallelism,
        output_dir,
        ignore_errors,
        excluded_dependencies,
        report,
        verbose,
        log_level,
        config_root,
    )


@app.command()
def output(  # noqa: PLR0913
    stack: StackArgument,
    filters: FilterOption = None,
    parallelism: ParallelismOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    ignore_errors: IgnoreErrorsOption = False,
    excluded_dependencies: ExcludedDependenciesOption = ExcludedDependencies.INCLUDE,
    report: ReportOption = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Show outputs of selected units."""
    _run_action(
        Action.OUTPUT,
        stack,
        filters,
        parallelism,
        output_dir,
        ignore_errors,
        excluded_dependencies,
        report,
        verbose,
        log_level,
        config_root,
    )


@app.command()
def generate(
    stack: StackArgument,
    filters: FilterOption = None,
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Render selected units into the output directory."""
    generate_units_command(stack, filters or [], output_dir, log_level, config_root)


@app.command()
def clean(
    output_dir: OutputDirOption = DEFAULT_OUTPUT_DIR,
    log_level: LogLevelOption = "INFO",
) -> None:
    """Remove the output directory."""
    clean_command(output_dir, log_level)


@app.command()
def graph(
    stack: StackArgument,
    log_level: LogLevelOption = "INFO",
    config_root: ConfigRootOption = None,
) -> None:
    """Validate a stack and show its dependency levels."""
    graph_command(stack, log_level, config_root)


@app.command(name="generate-schema")
def generate_schema(
    output: Annotated[
        Path,
        typer.Option(
            "--output",
            "-o",
            help="Output file path for generated schema",
            file_okay=True,
            dir_okay=True,
            writable=True,
        ),
    ] = Path("stack.schema.json"),
    log_level: LogLevelOption = "INFO",
) -> None:
    """Generate JSON schema for stack files."""
    generate_schema_command(output, log_level)


if __name__ == "__main__":
    app()
