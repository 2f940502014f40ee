"""YAML parser for stack files.

This module provides functions to parse stack YAML files into validated
Pydantic models.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stackwright.errors import StackParseError
from stackwright.hierarchy import substitute_env_vars
from stackwright.models import StackDefinition

DEFAULT_STACK_FILE = "stack.yaml"


def parse_stack(path: Path) -> StackDefinition:
    """Parse a stack from a YAML file with environment variable substitution.

    Reads the YAML file, substitutes ${env.VAR_NAME} patterns with values from
    os.environ, and validates the result into a StackDefinition model. A
    directory is accepted and resolved to its ``stack.yaml``.

    Args:
        path: Path to the stack YAML file or its directory.

    Returns:
        Validated StackDefinition model.

    Raises:
        StackParseError: If the file cannot be read, YAML is invalid,
            environment variables are missing, or validation fails.

    """
    if path.is_dir():
        path = path / DEFAULT_STACK_FILE

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise StackParseError(f"Stack file not found: {path}") from e
    except yaml.YAMLError as e:
        raise StackParseError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise StackParseError(f"Cannot read stack file {path}: {e}") from e

    if not isinstance(data, dict):
        raise StackParseError(f"Stack file {path} must contain a mapping")

    data = substitute_env_vars(data, path, StackParseError)

    return parse_stack_from_dict(data)


def parse_stack_from_dict(data: dict[str, Any]) -> StackDefinition:
    """Parse a stack directly from a dictionary.

    This function performs direct Pydantic validation WITHOUT environment
    variable substitution. Any ${env.VAR_NAME} strings in the dict will remain
    as literal strings.

    Args:
        data: Dictionary containing the stack definition.

    Returns:
        Validated StackDefinition model.

    Raises:
        StackParseError: If the dict structure is invalid.

    """
    try:
        return StackDefinition.model_validate(data)
    except ValidationError as e:
        raise StackParseError(f"Invalid stack structure: {e}") from e
