"""CLI command implementations for rendering and cleaning generated units."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

from stackwright.cli.errors import cli_error_handler
from stackwright.cli.formatting import OutputFormatter
from stackwright.cli.infrastructure import create_writer, load_stack
from stackwright.filters import FilterEngine
from stackwright.logging import setup_logging
from stackwright.runners import clean_output_dir
from stackwright.state import StateStoreConfiguration

logger = logging.getLogger(__name__)
console = Console()


def generate_units_command(
    stack_path: Path,
    filters: list[str],
    output_dir: Path,
    log_level: str = "INFO",
    config_root: Path | None = None,
) -> None:
    """CLI command implementation for rendering selected units to disk.

    Args:
        stack_path: Path to the stack file or directory
        filters: Filter expressions selecting units
        output_dir: Directory units are rendered into
        log_level: Logging level
        config_root: Explicit configuration hierarchy root

    """
    setup_logging(level=log_level)

    with cli_error_handler("generate", "Generation failed"):
        stack = load_stack(stack_path, config_root)
        selection = FilterEngine(stack).select(filters)
        writer = create_writer(stack, output_dir)
        paths = [writer.write(stack.units[name]) for name in selection.units]
        OutputFormatter().show_generated(paths, output_dir)
        logger.info("Generated %d units into %s", len(paths), output_dir)


def clean_command(output_dir: Path, log_level: str = "INFO") -> None:
    """CLI command implementation for removing the output directory.

    Args:
        output_dir: Directory to remove
        log_level: Logging level

    """
    setup_logging(level=log_level)

    with cli_error_handler("clean", "Clean failed"):
        state_path = StateStoreConfiguration.from_properties({}).path
        if clean_output_dir(output_dir, state_path):
            console.print(f"[green]✅ Removed {output_dir}[/green]")
        else:
            console.print(f"[dim]Nothing to clean at {output_dir}[/dim]")
