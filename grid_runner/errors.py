"""Error taxonomy for test scheduling and execution."""

from collections.abc import Sequence


class GridRunnerError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(GridRunnerError, ValueError):
    """Raised when a test unit is rejected at submission time."""


class UnavailableError(GridRunnerError):
    """Raised when no matching session became idle within the acquire timeout."""


class ExecutionFailure(GridRunnerError):
    """Base class for failures reported by an execution runner.

    Runners may attach artifact paths (screenshots, logs) captured while
    the failing attempt was running.
    """

    def __init__(self, message: str, *, artifacts: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.artifacts = tuple(artifacts)


class TransientFailure(ExecutionFailure):
    """Timing or environment failure that is likely to pass on retry."""


class TerminalFailure(ExecutionFailure):
    """Deterministic failure such as an assertion mismatch."""


class FatalFailure(ExecutionFailure):
    """The session or its transport is broken and cannot be reused."""
