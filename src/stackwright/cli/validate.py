"""CLI command implementations for stack validation and schema generation."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

from stackwright.cli.errors import cli_error_handler
from stackwright.cli.formatting import OutputFormatter
from stackwright.cli.infrastructure import load_stack
from stackwright.logging import setup_logging
from stackwright.schema import StackSchemaGenerator

logger = logging.getLogger(__name__)
console = Console()


def graph_command(
    stack_path: Path, log_level: str = "INFO", config_root: Path | None = None
) -> None:
    """CLI command implementation for validating a stack and showing its graph.

    Args:
        stack_path: Path to the stack file or directory
        log_level: Logging level
        config_root: Explicit configuration hierarchy root

    """
    setup_logging(level=log_level)

    with cli_error_handler("graph", "Stack validation failed"):
        stack = load_stack(stack_path, config_root)
        OutputFormatter().format_stack_graph(stack)


def generate_schema_command(output_path: Path, log_level: str = "INFO") -> None:
    """CLI command implementation for generating the stack file JSON schema.

    Args:
        output_path: Path to save the generated schema
        log_level: Logging level

    """
    setup_logging(level=log_level)

    with cli_error_handler("generate-schema", "Schema generation failed"):
        written = StackSchemaGenerator.save_schema(output_path)
        console.print(f"[green]✅ Schema generated successfully: {written}[/green]")
        logger.info("Schema saved to %s", written)
