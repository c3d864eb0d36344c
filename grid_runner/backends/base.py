"""Contracts for grid backends: session provisioning and step execution."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from grid_runner.models.session import SessionHandle
from grid_runner.models.unit import Capability, TestUnit


@dataclass(frozen=True, kw_only=True)
class RunReport:
    """Outcome of a passing run, with any artifacts it produced."""

    artifacts: Sequence[str] = ()


class ExecutionRunner(Protocol):
    """Drives one session through one unit's steps."""

    async def run(
        self, session: SessionHandle, unit: TestUnit, attempt: int
    ) -> RunReport:
        """Run all steps of `unit` on `session`.

        Raises:
            TransientFailure: Retryable timing or lookup failure
            TerminalFailure: Assertion or other deterministic failure
            FatalFailure: The session or transport is broken

        """
        ...


class NodeProvisioner(Protocol):
    """Creates and destroys remote sessions on grid nodes."""

    async def provision(self, capability: Capability) -> SessionHandle:
        """Open a new session satisfying `capability`."""
        ...

    async def retire(self, session: SessionHandle) -> None:
        """Close a session that left the pool."""
        ...


@dataclass(frozen=True, kw_only=True)
class GridBackend(ABC):
    """Abstract base for grid backends.

    A backend is both the execution runner and the node provisioner for the
    grid it talks to, so sessions it opens are the sessions it drives.
    """

    @abstractmethod
    async def provision(self, capability: Capability) -> SessionHandle:
        """Open a new session satisfying `capability`.

        Args:
            capability: Requested capability (browser, version, platform)

        Returns:
            Handle describing the capability the grid actually granted

        """

    @abstractmethod
    async def retire(self, session: SessionHandle) -> None:
        """Close a session on the grid."""

    @abstractmethod
    async def run(
        self, session: SessionHandle, unit: TestUnit, attempt: int
    ) -> RunReport:
        """Run all steps of `unit` on `session`.

        Args:
            session: Session borrowed from the pool for this attempt
            unit: Test unit to execute
            attempt: 1-based attempt number, used to lay out artifacts

        Returns:
            Report of the passing run

        """
