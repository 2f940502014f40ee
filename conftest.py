"""Workspace-level pytest configuration and fixtures.

This file provides shared fixtures and configuration for all tests in the
repository.
"""

import logging

import pytest

_ENV_VARS = (
    "STACKWRIGHT_ENV",
    "STACKWRIGHT_ENV_FILE",
    "STACKWRIGHT_BINARY",
    "STACKWRIGHT_STATE_BACKEND",
    "STACKWRIGHT_STATE_PATH",
)


@pytest.fixture(autouse=True, scope="function")
def isolate_environment(monkeypatch: pytest.MonkeyPatch):
    """Remove stackwright environment variables for each test.

    A developer's shell (or a loaded .env file) would otherwise change which
    state backend, binary or logging configuration the code under test picks.
    """
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True, scope="function")
def isolate_logging():
    """Restore the stackwright and root loggers after each test.

    CLI tests apply the packaged dictConfig, which disables propagation on the
    ``stackwright`` logger and would hide records from ``caplog`` in later tests.
    """
    package_logger = logging.getLogger("stackwright")
    root_logger = logging.getLogger()
    saved_handlers = list(package_logger.handlers)
    saved_level = package_logger.level
    saved_propagate = package_logger.propagate
    saved_root_handlers = list(root_logger.handlers)
    saved_root_level = root_logger.level

    yield

    package_logger.handlers[:] = saved_handlers
    package_logger.setLevel(saved_level)
    package_logger.propagate = saved_propagate
    root_logger.handlers[:] = saved_root_handlers
    root_logger.setLevel(saved_root_level)
