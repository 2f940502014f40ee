"""Shared CLI infrastructure setup."""

from __future__ import annotations

import logging
from pathlib import Path

from stackwright.builder import Stack, build_stack
from stackwright.cli.errors import CLIError
from stackwright.models import SchedulerSettings
from stackwright.runners import GeneratedUnitWriter, TofuRunner
from stackwright.state import StateStore, StateStoreConfiguration, create_state_store

logger = logging.getLogger(__name__)


def load_stack(stack_path: Path, config_root: Path | None = None) -> Stack:
    """Parse, configure and build a stack for a command.

    Args:
        stack_path: Stack file or directory.
        config_root: Explicit configuration hierarchy root.

    Returns:
        The built stack.

    """
    stack = build_stack(stack_path, root=config_root)
    logger.debug(
        "Loaded stack '%s' with configuration from %s",
        stack.name,
        [str(path) for path in stack.config.files],
    )
    return stack


def resolve_scheduler_settings(
    stack: Stack,
    parallelism: int | None,
    ignore_errors: bool,
    command: str,
) -> SchedulerSettings:
    """Combine CLI flags with stack settings.

    The ``--parallelism`` flag wins over ``settings.parallelism``; one of them
    must be set.

    Raises:
        CLIError: If no parallelism is configured.

    """
    effective = parallelism if parallelism is not None else stack.settings.parallelism
    if effective is None:
        raise CLIError(
            "Parallelism is not configured: pass --parallelism or set "
            "settings.parallelism in the stack file",
            command=command,
        )
    return SchedulerSettings(
        parallelism=effective,
        ignore_errors=ignore_errors,
        timeout=stack.settings.timeout,
    )


def create_writer(stack: Stack, output_dir: Path) -> GeneratedUnitWriter:
    """Create the writer that renders units of a stack."""
    return GeneratedUnitWriter(output_dir, source_root=stack.directory)


def setup_infrastructure(stack: Stack, output_dir: Path) -> tuple[TofuRunner, StateStore]:
    """Set up the runner and state store for an action command.

    Returns:
        The runner and the state store.

    """
    config = StateStoreConfiguration.from_properties({})
    runner = TofuRunner(create_writer(stack, output_dir), state_root=config.path)
    store = create_state_store(config)
    logger.debug("Infrastructure setup complete (binary: %s)", runner.binary)
    return runner, store
