"""CLI command implementations for stackwright."""

from stackwright.cli.errors import CLIError
from stackwright.cli.generate import clean_command, generate_units_command
from stackwright.cli.run import execute_action_command
from stackwright.cli.validate import generate_schema_command, graph_command

__all__ = [
    "CLIError",
    "clean_command",
    "execute_action_command",
    "generate_schema_command",
    "generate_units_command",
    "graph_command",
]
