"""CLI error handling for stackwright."""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager

import typer
from rich.console import Console
from rich.panel import Panel
from typing_extensions import override

logger = logging.getLogger(__name__)
console = Console(stderr=True)


class CLIError(Exception):
    """Exception for CLI-level failures with the command that raised them."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        """Initialise CLI error with context.

        Args:
            message: Human-readable error message describing what went wrong
            command: Name of the CLI command that failed (e.g., "apply", "graph")
            original_error: The underlying exception that caused this CLI error

        """
        super().__init__(message)
        self.command = command
        self.original_error = original_error

    @override
    def __str__(self) -> str:
        """Return formatted error message with CLI context."""
        base_message = super().__str__()
        if self.command:
            return f"Command '{self.command}' failed: {base_message}"
        return base_message


def _show_error(title: str, message: str) -> None:
    console.print(Panel(f"[red]{message}[/red]", title=f"❌ {title}", border_style="red"))


@contextmanager
def cli_error_handler(command: str, title: str) -> Generator[None]:
    """Show errors as Rich panels and exit with code 1.

    ``typer.Exit`` raised inside the block passes through untouched.

    Args:
        command: CLI command name for error context.
        title: Panel title for the error display.

    """
    try:
        yield
    except typer.Exit:
        raise
    except CLIError as e:
        logger.error("%s: %s", title, e)
        _show_error(title, str(e))
        raise typer.Exit(1) from e
    except Exception as e:
        cli_error = CLIError(str(e), command=command, original_error=e)
        logger.error("%s: %s", title, cli_error)
        _show_error(title, f"{type(e).__name__}: {cli_error}")
        raise typer.Exit(1) from cli_error
