"""JSON Schema generation for stack files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from stackwright.models import StackDefinition

DEFAULT_SCHEMA_FILE = "stack.schema.json"


class StackSchemaGenerator:
    """Generates JSON schemas for editor validation of stack files."""

    SCHEMA_VERSION = "1.0.0"

    @classmethod
    def generate_schema(cls) -> dict[str, Any]:
        """Generate JSON schema from the StackDefinition model.

        Returns:
            Dictionary containing the generated JSON schema.

        """
        schema = StackDefinition.model_json_schema()

        # Schema metadata goes first so editors pick it up
        return {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "version": cls.SCHEMA_VERSION,
            **schema,
            "title": "Stackwright Stack",
            "description": (
                "Stack file: units with their catalog source, output path, values "
                "and dependency configuration"
            ),
        }

    @classmethod
    def save_schema(cls, output_path: Path) -> Path:
        """Save generated schema to file.

        A directory is accepted and resolved to ``stack.schema.json`` inside it.

        Args:
            output_path: File or directory where the schema should be saved.

        Returns:
            The path written.

        Raises:
            OSError: If the file cannot be written.

        """
        if output_path.is_dir():
            output_path = output_path / DEFAULT_SCHEMA_FILE
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(cls.generate_schema(), f, indent=2, ensure_ascii=False)
        return output_path
