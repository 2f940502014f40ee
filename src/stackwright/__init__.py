"""Stackwright - hierarchical configuration and dependency-ordered execution of infrastructure units."""

from stackwright.builder import Stack, Unit, UnitGraphBuilder, build_stack
from stackwright.errors import (
    ConfigNotFoundError,
    ConfigParseError,
    CyclicDependencyError,
    DuplicateUnitNameError,
    DuplicateUnitPathError,
    ExcludedDependencyError,
    ExpressionError,
    InvalidFilterSyntaxError,
    InvalidSourceReferenceError,
    MissingUnitError,
    StackParseError,
    StackwrightError,
    StateLockError,
    UnitExecutionError,
    UnresolvedDependencyError,
)
from stackwright.filters import FilterEngine, FilterResult, GitChangeDetector
from stackwright.graph import DependencyEdge, UnitGraph
from stackwright.hierarchy import (
    ConfigFragment,
    Level,
    ResolvedConfig,
    load_hierarchy,
    merge_fragments,
)
from stackwright.models import (
    Action,
    DependencyConfig,
    ExecutionResult,
    SchedulerSettings,
    StackDefinition,
    StackSettings,
    UnitDefinition,
    UnitResult,
    UnitStatus,
)
from stackwright.parser import parse_stack, parse_stack_from_dict
from stackwright.plan import ExecutionPlan, PlannedUnit, build_execution_plan
from stackwright.resolver import DependencyResolver, ResolvedValues, resolve_reference
from stackwright.scheduler import ExecutionScheduler
from stackwright.schema import StackSchemaGenerator
from stackwright.source import SourceReference
from stackwright.state import (
    InMemoryStateStore,
    LocalStateStore,
    StateStore,
    StateStoreConfiguration,
    create_state_store,
    state_key,
)
from stackwright.values import UnitReference, deep_merge

__all__ = [
    # Configuration
    "ConfigFragment",
    "Level",
    "ResolvedConfig",
    "deep_merge",
    "load_hierarchy",
    "merge_fragments",
    # Models
    "Action",
    "DependencyConfig",
    "ExecutionResult",
    "SchedulerSettings",
    "StackDefinition",
    "StackSettings",
    "UnitDefinition",
    "UnitResult",
    "UnitStatus",
    # Parser
    "parse_stack",
    "parse_stack_from_dict",
    # Values and sources
    "SourceReference",
    "UnitReference",
    # Graph and builder
    "DependencyEdge",
    "Stack",
    "Unit",
    "UnitGraph",
    "UnitGraphBuilder",
    "build_stack",
    # Resolution
    "DependencyResolver",
    "ResolvedValues",
    "resolve_reference",
    # Selection and planning
    "ExecutionPlan",
    "FilterEngine",
    "FilterResult",
    "GitChangeDetector",
    "PlannedUnit",
    "build_execution_plan",
    # Execution
    "ExecutionScheduler",
    # State
    "InMemoryStateStore",
    "LocalStateStore",
    "StateStore",
    "StateStoreConfiguration",
    "create_state_store",
    "state_key",
    # Schema
    "StackSchemaGenerator",
    # Errors
    "ConfigNotFoundError",
    "ConfigParseError",
    "CyclicDependencyError",
    "DuplicateUnitNameError",
    "DuplicateUnitPathError",
    "ExcludedDependencyError",
    "ExpressionError",
    "InvalidFilterSyntaxError",
    "InvalidSourceReferenceError",
    "MissingUnitError",
    "StackParseError",
    "StackwrightError",
    "StateLockError",
    "UnitExecutionError",
    "UnresolvedDependencyError",
]
