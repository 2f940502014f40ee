"""Unit runners: rendering units to disk and invoking OpenTofu.

Layout of a rendered unit:
    {output_dir}/{unit.path}/
        ├── unit.json                 # unit metadata and source reference
        ├── terragrunt.values.json    # values passed to the unit
        └── main.tf.json              # module wrapper and backend (TofuRunner only)

OpenTofu state never lives in the output directory: the wrapper configures a
local backend under the state root, at the unit's state key.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Protocol

from stackwright.builder import Unit
from stackwright.errors import UnitExecutionError
from stackwright.models import Action
from stackwright.state import DEFAULT_STATE_PATH
from stackwright.values import JsonValue, to_json

logger = logging.getLogger(__name__)

VALUES_FILE = "terragrunt.values.json"
UNIT_FILE = "unit.json"
MAIN_FILE = "main.tf.json"
DEFAULT_OUTPUT_DIR = Path(".stackwright/units")
DEFAULT_BINARY = "tofu"

# Root output exposing every module output as a single object
_MODULE_NAME = "unit"
_OUTPUT_NAME = "unit"

# Module block arguments that unit values may not set
RESERVED_VALUE_KEYS = frozenset(
    {"source", "version", "count", "for_each", "providers", "depends_on"}
)

# Action -> command sequence (single source of truth)
ACTION_COMMANDS: dict[Action, list[list[str]]] = {
    Action.VALIDATE: [["init", "-input=false", "-backend=false"], ["validate"]],
    Action.PLAN: [["init", "-input=false", "-reconfigure"], ["plan", "-input=false"]],
    Action.APPLY: [
        ["init", "-input=false", "-reconfigure"],
        ["apply", "-auto-approve", "-input=false"],
        ["output", "-json"],
    ],
    Action.DESTROY: [
        ["init", "-input=false", "-reconfigure"],
        ["destroy", "-auto-approve", "-input=false"],
    ],
    Action.OUTPUT: [["init", "-input=false", "-reconfigure"], ["output", "-json"]],
}


class UnitRunner(Protocol):
    """Executes an action for one unit.

    Runners are synchronous; the scheduler bridges them onto a thread pool.
    """

    def run(self, unit: Unit, action: Action, values: dict[str, JsonValue]) -> dict[str, Any] | None:
        """Run an action.

        Args:
            unit: The unit to run.
            action: The action to execute.
            values: Resolved values (references already rewritten).

        Returns:
            Outputs for apply/output, None otherwise.

        Raises:
            UnitExecutionError: If the action fails.

        """
        ...


class GeneratedUnitWriter:
    """Renders units into an output directory."""

    def __init__(self, output_dir: Path = DEFAULT_OUTPUT_DIR, source_root: Path | None = None) -> None:
        """Initialise writer.

        Args:
            output_dir: Directory that receives one sub-directory per unit.
            source_root: Directory that local sources are relative to
                (usually the stack directory).

        """
        self._output_dir = output_dir
        self._source_root = source_root

    @property
    def output_dir(self) -> Path:
        """The directory units are rendered into."""
        return self._output_dir

    def unit_dir(self, unit: Unit) -> Path:
        """Directory a unit is rendered into."""
        return self._output_dir / unit.path

    def source_for(self, unit: Unit) -> str:
        """Module source string, with local locations made absolute."""
        source = unit.source
        if source.is_local and self._source_root is not None:
            location = (self._source_root / source.location).resolve().as_posix()
            return source.render().replace(source.location, location, 1)
        return source.render()

    def write(self, unit: Unit, values: dict[str, JsonValue] | None = None) -> Path:
        """Write a unit's files.

        Args:
            unit: The unit to render.
            values: Resolved values. When None, the unit's own values are
                written with references rendered back to their paths.

        Returns:
            The unit directory.

        """
        directory = self.unit_dir(unit)
        directory.mkdir(parents=True, exist_ok=True)

        rendered = values if values is not None else to_json(unit.values)
        metadata = {
            "name": unit.name,
            "path": unit.path,
            "description": unit.description,
            "source": self.source_for(unit),
            "location": unit.source.location,
            "subpath": unit.source.subpath,
            "ref": unit.source.ref,
            "state_key": unit.state_key,
        }
        _write_json(directory / VALUES_FILE, rendered)
        _write_json(directory / UNIT_FILE, metadata)
        logger.debug("Rendered unit '%s' to %s", unit.name, directory)
        return directory


class TofuRunner:
    """Runs units with the OpenTofu CLI through subprocess."""

    def __init__(
        self,
        writer: GeneratedUnitWriter,
        binary: str | None = None,
        timeout: int | None = None,
        state_root: Path = DEFAULT_STATE_PATH,
    ) -> None:
        """Initialise runner.

        Args:
            writer: Writer used to render each unit before running it.
            binary: Executable to invoke. Defaults to ``STACKWRIGHT_BINARY`` or
                ``tofu``.
            timeout: Per-command timeout in seconds.
            state_root: Base directory of the filesystem state store. Each
                unit's local backend points at its state key below it.

        """
        self._writer = writer
        self._state_root = state_root
        self._binary = binary or os.getenv("STACKWRIGHT_BINARY", DEFAULT_BINARY)
        self._timeout = timeout

    @property
    def binary(self) -> str:
        """The executable invoked for every command."""
        return self._binary

    def run(self, unit: Unit, action: Action, values: dict[str, JsonValue]) -> dict[str, Any] | None:
        """Render the unit and run the commands for an action."""
        wrapper = self._module_wrapper(unit, values)
        directory = self._writer.write(unit, values)
        _write_json(directory / MAIN_FILE, wrapper)

        stdout = ""
        for args in ACTION_COMMANDS[action]:
            stdout = self._invoke(unit, directory, args)

        if action in (Action.APPLY, Action.OUTPUT):
            return parse_outputs(stdout)
        return None

    def state_path(self, unit: Unit) -> Path:
        """Absolute path of the OpenTofu state file for a unit."""
        return (self._state_root / unit.state_key).resolve()

    def _module_wrapper(self, unit: Unit, values: dict[str, JsonValue]) -> dict[str, Any]:
        reserved = sorted(RESERVED_VALUE_KEYS.intersection(values))
        if reserved:
            raise UnitExecutionError(
                f"Unit '{unit.name}': values cannot set module arguments {', '.join(reserved)}"
            )
        return {
            "terraform": {"backend": {"local": {"path": self.state_path(unit).as_posix()}}},
            "module": {_MODULE_NAME: {"source": self._writer.source_for(unit), **values}},
            "output": {_OUTPUT_NAME: {"value": f"${{module.{_MODULE_NAME}}}"}},
        }

    def _invoke(self, unit: Unit, directory: Path, args: list[str]) -> str:
        cmd = [self._binary, *args]
        logger.debug("Unit '%s': running %s", unit.name, " ".join(cmd))
        try:
            result = subprocess.run(  # noqa: S603 - binary and arguments are controlled
                cmd,
                cwd=directory,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise UnitExecutionError(f"Executable '{self._binary}' not found") from e
        except subprocess.TimeoutExpired as e:
            raise UnitExecutionError(
                f"Unit '{unit.name}': '{' '.join(cmd)}' timed out after {self._timeout}s"
            ) from e

        if result.returncode != 0:
            raise UnitExecutionError(
                f"Unit '{unit.name}': '{' '.join(cmd)}' exited with {result.returncode}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout


def parse_outputs(stdout: str) -> dict[str, Any]:
    """Parse ``output -json`` into a plain name -> value mapping.

    The wrapper exposes the module as a single object output; when present it
    is unwrapped, otherwise every root output is returned.

    Raises:
        UnitExecutionError: If the output is not valid JSON.

    """
    if not stdout.strip():
        return {}
    try:
        data: dict[str, Any] = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise UnitExecutionError(f"Invalid output JSON: {e}") from e

    outputs = {name: entry.get("value") for name, entry in data.items()}
    wrapped = outputs.get(_OUTPUT_NAME)
    if len(outputs) == 1 and isinstance(wrapped, dict):
        return wrapped
    return outputs


def clean_output_dir(output_dir: Path, state_path: Path | None = None) -> bool:
    """Remove the generated output directory.

    Args:
        output_dir: Directory of rendered units.
        state_path: Base directory of the state store. Cleaning refuses to
            remove a directory that contains it.

    Returns:
        True if something was removed.

    Raises:
        ValueError: If the state directory lies inside output_dir.

    """
    if not output_dir.exists():
        return False
    if state_path is not None and state_path.resolve().is_relative_to(output_dir.resolve()):
        raise ValueError(
            f"Refusing to clean {output_dir}: it contains the state directory {state_path}"
        )
    shutil.rmtree(output_dir)
    logger.info("Removed %s", output_dir)
    return True


def _write_json(path: Path, data: Any) -> None:  # noqa: ANN401
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
