"""Pydantic models for stack definitions and execution results."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal, Self

from pydantic import BaseModel, Field, PositiveInt, field_validator, model_validator


class Action(StrEnum):
    """Actions that can be executed over a plan."""

    VALIDATE = "validate"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    OUTPUT = "output"


DEFAULT_MOCK_ACTIONS: tuple[Action, ...] = (Action.VALIDATE, Action.PLAN)

ExcludedDependencyPolicy = Literal["include", "error", "ignore"]


class DependencyConfig(BaseModel):
    """Explicit configuration for a dependency edge."""

    path: str
    """Relative path of the provider unit (e.g. '../vpc')."""

    enabled: bool | str = True
    """Whether the edge exists at all. May be an expression."""

    skip_outputs: bool | str = False
    """Keep ordering but never fetch outputs. May be an expression."""

    mock_outputs: dict[str, Any] = Field(default_factory=dict)
    """Outputs substituted while the provider has not been applied."""

    mock_outputs_allowed_actions: list[Action] = Field(
        default_factory=lambda: list(DEFAULT_MOCK_ACTIONS)
    )
    """Actions for which mock outputs are permitted."""


class UnitDefinition(BaseModel):
    """Declaration of a single unit in a stack file."""

    name: str = Field(min_length=1)
    source: str
    path: str
    """Output path relative to the stack (e.g. 'vpc' or 'edge/dns')."""

    description: str | None = None
    values: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[DependencyConfig] = Field(default_factory=list)

    detect_references: bool = True
    """When false, relative-path values are left as plain strings."""

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        """Reject absolute paths and paths escaping the stack directory."""
        stripped = value.strip()
        if not stripped or stripped in {".", "./"}:
            raise ValueError("Unit path must not be empty")
        if stripped.startswith("/"):
            raise ValueError(f"Unit path must be relative: {value}")
        if ".." in stripped.split("/"):
            raise ValueError(f"Unit path must not contain '..': {value}")
        return stripped


class StackSettings(BaseModel):
    """Optional execution settings declared in a stack file."""

    parallelism: PositiveInt | None = None
    """Maximum number of units executing at once. Must be set here or on the CLI."""

    timeout: PositiveInt | None = None
    """Seconds after which no new unit is launched."""

    state_bucket: str | None = None
    """State bucket identifier. May be an expression."""


class StackDefinition(BaseModel):
    """Top-level stack file model."""

    name: str
    description: str = ""
    settings: StackSettings = Field(default_factory=StackSettings)
    locals: dict[str, Any] = Field(default_factory=dict)
    units: list[UnitDefinition] = Field(default_factory=list)


class SchedulerSettings(BaseModel):
    """Execution settings for the scheduler."""

    parallelism: PositiveInt
    ignore_errors: bool = False
    timeout: PositiveInt | None = None


class UnitStatus(StrEnum):
    """Terminal status of a unit in a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_SELECTED = "not_selected"


class UnitResult(BaseModel):
    """Result of executing (or not executing) a single unit."""

    unit: str
    action: Action
    status: UnitStatus
    outputs: dict[str, Any] | None = None
    error: str | None = None
    reason: str | None = None
    """Why a unit was skipped (e.g. 'upstream failure: vpc', 'cancelled')."""

    mocked: list[str] = Field(default_factory=list)
    """Providers whose mock outputs were used."""

    duration_seconds: float = 0.0


class ExecutionResult(BaseModel):
    """Result of executing a complete plan."""

    run_id: str = Field(..., description="Unique run identifier (UUID)")
    start_timestamp: str = Field(..., description="ISO8601 timestamp with timezone")
    stack: str
    action: Action
    units: dict[str, UnitResult] = Field(default_factory=dict)
    order: list[str] = Field(default_factory=list)
    """Order in which units were launched."""

    cancelled: bool = False
    total_duration_seconds: float = 0.0

    def _with_status(self, status: UnitStatus) -> list[str]:
        return [name for name, r in self.units.items() if r.status == status]

    @property
    def succeeded(self) -> list[str]:
        """Units that completed successfully."""
        return self._with_status(UnitStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        """Units that failed."""
        return self._with_status(UnitStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        """Units skipped because of an upstream failure or cancellation."""
        return self._with_status(UnitStatus.SKIPPED)

    @property
    def not_selected(self) -> list[str]:
        """Units outside the selection."""
        return self._with_status(UnitStatus.NOT_SELECTED)

    @property
    def success(self) -> bool:
        """Whether no unit failed and the run was not cancelled."""
        return not self.failed and not self.cancelled

    @model_validator(mode="after")
    def validate_order_members(self) -> Self:
        """Validate that launch order only names known units."""
        unknown = [name for name in self.order if name not in self.units]
        if unknown:
            raise ValueError(f"Launch order names unknown units: {unknown}")
        return self
