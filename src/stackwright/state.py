"""Persisted unit state: applied outputs and state locks.

Each unit's state lives at ``{bucket}/{unit_path}/tofu.tfstate``; its lock
record sits beside it at the same key plus ``.lock``.

Storage structure of the filesystem backend:
    {base_path}/
        └── {bucket}/
            └── {unit_path}/
                ├── tofu.tfstate               # OpenTofu state (local backend)
                ├── tofu.tfstate.outputs.json  # {"outputs": ..., "saved_at": ...}
                └── tofu.tfstate.lock          # {"owner": ..., "created_at": ...}
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Self

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing_extensions import override

from stackwright.errors import StateLockError

logger = logging.getLogger(__name__)

STATE_FILE = "tofu.tfstate"
LOCK_SUFFIX = ".lock"
OUTPUTS_SUFFIX = ".outputs.json"
DEFAULT_STATE_PATH = Path(".stackwright/state")


def state_key(bucket: str, unit_path: str) -> str:
    """Build the state key of a unit."""
    return f"{bucket}/{unit_path}/{STATE_FILE}"


def lock_key(key: str) -> str:
    """Build the lock key for a state key."""
    return f"{key}{LOCK_SUFFIX}"


def default_bucket(config: Mapping[str, Any]) -> str:
    """Default bucket name from configuration values.

    Missing ``account_id`` or ``environment`` values render as ``default``.
    """
    account = config.get("account_id") or "default"
    environment = config.get("environment") or "default"
    return f"tfstate-{account}-{environment}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


class StateStore(ABC):
    """Abstract base class for unit state backends.

    Outputs are saved after a successful apply and deleted by destroy. Locks
    guard a unit's state for the duration of an apply or destroy.
    """

    @abstractmethod
    async def save_outputs(self, key: str, outputs: dict[str, Any]) -> None:
        """Store applied outputs under a state key.

        Args:
            key: State key of the unit.
            outputs: Outputs reported by the runner.

        """

    @abstractmethod
    async def get_outputs(self, key: str) -> dict[str, Any] | None:
        """Retrieve applied outputs.

        Args:
            key: State key of the unit.

        Returns:
            The outputs, or None if the unit has never been applied.

        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a unit's state. No-op if absent."""

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """List state keys (locks excluded), sorted."""

    @abstractmethod
    async def acquire_lock(self, key: str, owner: str) -> None:
        """Take the lock for a state key.

        Raises:
            StateLockError: If the lock is already held.

        """

    @abstractmethod
    async def release_lock(self, key: str, owner: str) -> None:
        """Release the lock for a state key.

        Raises:
            StateLockError: If the lock is held by another owner.

        """

    @asynccontextmanager
    async def locked(self, key: str, owner: str) -> AsyncIterator[None]:
        """Hold a state lock for the duration of the block."""
        await self.acquire_lock(key, owner)
        try:
            yield
        finally:
            await self.release_lock(key, owner)


class InMemoryStateStore(StateStore):
    """State store held in process memory, for tests and dry runs."""

    def __init__(self, outputs: Mapping[str, dict[str, Any]] | None = None) -> None:
        """Initialise store, optionally pre-populated with outputs by key."""
        self._outputs: dict[str, dict[str, Any]] = dict(outputs or {})
        self._locks: dict[str, str] = {}

    @override
    async def save_outputs(self, key: str, outputs: dict[str, Any]) -> None:
        """Store outputs by key (upsert)."""
        self._outputs[key] = dict(outputs)

    @override
    async def get_outputs(self, key: str) -> dict[str, Any] | None:
        """Retrieve outputs by key, None if absent."""
        outputs = self._outputs.get(key)
        return dict(outputs) if outputs is not None else None

    @override
    async def delete(self, key: str) -> None:
        """Delete state by key."""
        self._outputs.pop(key, None)

    @override
    async def list_keys(self, prefix: str = "") -> list[str]:
        """List state keys with the given prefix."""
        return sorted(key for key in self._outputs if key.startswith(prefix))

    @override
    async def acquire_lock(self, key: str, owner: str) -> None:
        """Take the lock, failing if already held."""
        holder = self._locks.get(key)
        if holder is not None:
            raise StateLockError(f"State '{key}' is locked by '{holder}'")
        self._locks[key] = owner

    @override
    async def release_lock(self, key: str, owner: str) -> None:
        """Release the lock held by owner."""
        holder = self._locks.get(key)
        if holder is None:
            return
        if holder != owner:
            raise StateLockError(
                f"Cannot release lock on '{key}': held by '{holder}', not '{owner}'"
            )
        del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Whether a lock is currently held on key."""
        return key in self._locks


class LocalStateStore(StateStore):
    """Filesystem-backed state store. Uses aiofiles for async I/O."""

    def __init__(self, base_path: Path) -> None:
        """Initialise filesystem store.

        Args:
            base_path: Root directory for state (e.g., Path('.stackwright/state')).

        """
        self._base_path = base_path

    @property
    def base_path(self) -> Path:
        """The base path for storage."""
        return self._base_path

    def _validate_key(self, key: str) -> None:
        """Validate that a key is safe for filesystem use.

        Raises:
            ValueError: If key contains path traversal or is absolute.

        """
        if ".." in key.split("/"):
            raise ValueError(
                f"Invalid key '{key}': path traversal sequences (..) are not allowed."
            )
        if key.startswith("/"):
            raise ValueError(f"Invalid key '{key}': absolute paths are not allowed.")

    def _key_to_path(self, key: str) -> Path:
        self._validate_key(key)
        return self._base_path / key

    def path_for(self, key: str) -> Path:
        """Location of the OpenTofu state file for a key.

        The runner points the unit's local backend here. Saved outputs live in
        a sibling file so they never overwrite the state itself.
        """
        return self._key_to_path(key)

    def _outputs_path(self, key: str) -> Path:
        return self._key_to_path(key + OUTPUTS_SUFFIX)

    @override
    async def save_outputs(self, key: str, outputs: dict[str, Any]) -> None:
        """Store outputs by key (upsert)."""
        file_path = self._outputs_path(key)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        record = {"outputs": outputs, "saved_at": _now()}
        async with aiofiles.open(file_path, "w") as f:
            await f.write(json.dumps(record, indent=2, default=str))

    @override
    async def get_outputs(self, key: str) -> dict[str, Any] | None:
        """Retrieve outputs by key, None if absent."""
        file_path = self._outputs_path(key)
        if not file_path.exists():
            return None
        async with aiofiles.open(file_path) as f:
            content = await f.read()
        record: dict[str, Any] = json.loads(content)
        return record.get("outputs", {})

    @override
    async def delete(self, key: str) -> None:
        """Delete saved outputs and the state file by key."""
        file_path = self._key_to_path(key)
        for path in (self._outputs_path(key), file_path):
            if path.exists():
                path.unlink()
                logger.debug("Deleted %s", path)

        # Clean up empty directories up to the base path
        parent = file_path.parent
        while parent != self._base_path and parent.exists() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    @override
    async def list_keys(self, prefix: str = "") -> list[str]:
        """List state keys with the given prefix."""
        if not self._base_path.exists():
            return []
        keys = [
            path.relative_to(self._base_path).as_posix().removesuffix(OUTPUTS_SUFFIX)
            for path in self._base_path.rglob(STATE_FILE + OUTPUTS_SUFFIX)
            if path.is_file()
        ]
        return sorted(key for key in keys if key.startswith(prefix))

    @override
    async def acquire_lock(self, key: str, owner: str) -> None:
        """Take the lock, failing if already held."""
        lock_path = self._key_to_path(lock_key(key))
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiofiles.open(lock_path, "x") as f:
                await f.write(json.dumps({"owner": owner, "created_at": _now()}))
        except FileExistsError as e:
            raise StateLockError(
                f"State '{key}' is locked by '{self._read_owner(lock_path)}' "
                f"(lock file: {lock_path})"
            ) from e

    @override
    async def release_lock(self, key: str, owner: str) -> None:
        """Release the lock held by owner."""
        lock_path = self._key_to_path(lock_key(key))
        if not lock_path.exists():
            return
        holder = self._read_owner(lock_path)
        if holder != owner:
            raise StateLockError(
                f"Cannot release lock on '{key}': held by '{holder}', not '{owner}'"
            )
        lock_path.unlink()

    def _read_owner(self, lock_path: Path) -> str:
        try:
            record: dict[str, Any] = json.loads(lock_path.read_text())
        except (OSError, json.JSONDecodeError):
            return "unknown"
        return str(record.get("owner", "unknown"))


# =============================================================================
# Configuration
# =============================================================================


class StateStoreConfiguration(BaseModel):
    """Configuration for the state store with environment fallback.

    Supports explicit instantiation and environment variable fallback:

    - ``STACKWRIGHT_STATE_BACKEND``: ``memory`` or ``filesystem`` (default)
    - ``STACKWRIGHT_STATE_PATH``: base directory of the filesystem backend
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: str = Field(default="filesystem", description="Backend type: 'memory' or 'filesystem'")
    path: Path = Field(default=DEFAULT_STATE_PATH, description="Base directory for 'filesystem'")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate that backend is one of the supported options.

        Args:
            v: Backend name to validate

        Returns:
            Lowercase backend name

        Raises:
            ValueError: If backend is not supported

        """
        allowed = {"memory", "filesystem"}
        backend_lower = v.lower()
        if backend_lower not in allowed:
            raise ValueError(f"Backend must be one of {sorted(allowed)}, got: {v}")
        return backend_lower

    @classmethod
    def from_properties(cls, properties: dict[str, Any]) -> Self:
        """Create configuration from properties with environment fallback.

        Explicit properties win over environment variables, which win over
        defaults.

        Args:
            properties: Configuration properties dictionary

        Returns:
            Validated configuration instance

        Raises:
            ValidationError: If configuration is invalid

        """
        config_data = properties.copy()

        if "backend" not in config_data:
            config_data["backend"] = os.getenv("STACKWRIGHT_STATE_BACKEND", "filesystem")
        if "path" not in config_data:
            env_path = os.getenv("STACKWRIGHT_STATE_PATH")
            if env_path:
                config_data["path"] = env_path

        return cls.model_validate(config_data)


def create_state_store(config: StateStoreConfiguration | None = None) -> StateStore:
    """Create a state store from configuration (environment when None)."""
    if config is None:
        config = StateStoreConfiguration.from_properties({})

    if config.backend == "memory":
        logger.info("Using in-memory state store")
        return InMemoryStateStore()

    logger.info("Using filesystem state store at %s", config.path)
    return LocalStateStore(config.path)
