"""Error types for stack composition and execution failures.

Structural errors (configuration, parsing, graph and filter errors) abort a run
before any unit executes. Unit-scoped errors are captured into the unit's result
by the scheduler and aggregated into the final report.
"""


class StackwrightError(Exception):
    """Base exception for all stackwright errors."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigNotFoundError(StackwrightError):
    """Raised when a required configuration hierarchy fragment is missing."""


class ConfigParseError(StackwrightError):
    """Raised when a configuration fragment cannot be read or is malformed."""


# =============================================================================
# Stack definition
# =============================================================================


class StackParseError(StackwrightError):
    """Raised when stack file parsing fails."""


class ExpressionError(StackParseError):
    """Raised when an interpolation references an unknown value."""


class InvalidSourceReferenceError(StackParseError):
    """Raised when a unit source reference is malformed."""


# =============================================================================
# Graph building
# =============================================================================


class DuplicateUnitNameError(StackwrightError):
    """Raised when two units in the same stack share a name."""


class DuplicateUnitPathError(StackwrightError):
    """Raised when two units in the same stack share an output path."""


class MissingUnitError(StackwrightError):
    """Raised when an explicit dependency points at a unit that does not exist."""


class CyclicDependencyError(StackwrightError):
    """Raised when a cycle is detected in the unit dependency graph."""

    def __init__(self, message: str, cycle: list[str] | None = None) -> None:
        """Initialise with the offending cycle.

        Args:
            message: Human-readable error message.
            cycle: Unit names forming the cycle, first name repeated at the end.

        """
        super().__init__(message)
        self.cycle = cycle or []


# =============================================================================
# Selection
# =============================================================================


class InvalidFilterSyntaxError(StackwrightError):
    """Raised when a filter expression is malformed."""


class ExcludedDependencyError(StackwrightError):
    """Raised when a filter excludes a unit that a selected unit requires."""


# =============================================================================
# Execution (unit-scoped)
# =============================================================================


class UnresolvedDependencyError(StackwrightError):
    """Raised when a dependency has no outputs and mocks are not permitted."""


class StateLockError(StackwrightError):
    """Raised when a unit's state lock is already held."""


class UnitExecutionError(StackwrightError):
    """Raised when the external executor fails for a unit."""

    def __init__(
        self, message: str, returncode: int | None = None, stderr: str = ""
    ) -> None:
        """Initialise with executor diagnostics.

        Args:
            message: Human-readable error message.
            returncode: Exit code of the executor process, if any.
            stderr: Captured standard error of the executor process.

        """
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
