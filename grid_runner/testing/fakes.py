"""In-memory grid backend for tests."""

import asyncio
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from grid_runner.backends.base import GridBackend, RunReport
from grid_runner.models.session import SessionHandle
from grid_runner.models.unit import Capability, TestUnit

# "pass" and "hang" are scripted behaviours, exceptions are raised as-is
type ScriptedOutcome = BaseException | Literal["pass", "hang"]


@dataclass(frozen=True, kw_only=True)
class RunRecord:
    """One completed call to FakeGrid.run."""

    unit_id: str
    attempt: int
    session_id: str
    started: float
    ended: float


@dataclass(frozen=True, kw_only=True)
class FakeGrid(GridBackend):
    """Grid backend that follows a per-unit script of attempt outcomes.

    Attempts beyond the script pass.
    """

    script: Mapping[str, Sequence[ScriptedOutcome]] = field(default_factory=dict)
    run_delay: float = 0
    fail_provisioning: bool = False
    # Capability tags the grid has no node for
    missing_nodes: frozenset[str] = frozenset()
    provisioned: list[SessionHandle] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    runs: list[RunRecord] = field(default_factory=list)
    _active: set[str] = field(default_factory=set)
    _counter: list[int] = field(default_factory=lambda: [0, 0])

    @property
    def peak_in_flight(self) -> int:
        """Highest number of concurrent runs observed."""
        return self._counter[1]

    async def provision(self, capability: Capability) -> SessionHandle:
        """Create a session named after its capability."""
        if self.fail_provisioning or capability.tag in self.missing_nodes:
            raise RuntimeError("No free grid node")
        self._counter[0] += 1
        handle = SessionHandle(
            session_id=f"{capability.tag}-{self._counter[0]}", capability=capability
        )
        self.provisioned.append(handle)
        return handle

    async def retire(self, session: SessionHandle) -> None:
        """Remember the retired session."""
        self.retired.append(session.session_id)

    async def run(
        self, session: SessionHandle, unit: TestUnit, attempt: int
    ) -> RunReport:
        """Play the scripted outcome for this attempt."""
        self._active.add(session.session_id)
        self._counter[1] = max(self._counter[1], len(self._active))
        started = time.monotonic()
        try:
            outcomes = self.script.get(unit.id, ())
            outcome = outcomes[attempt - 1] if attempt <= len(outcomes) else "pass"
            if self.run_delay:
                await asyncio.sleep(self.run_delay)
            if outcome == "hang":
                await asyncio.Event().wait()
            if isinstance(outcome, BaseException):
                raise outcome
            return RunReport(artifacts=(f"{unit.id}/attempt-{attempt}.log",))
        finally:
            self._active.discard(session.session_id)
            self.runs.append(
                RunRecord(
                    unit_id=unit.id,
                    attempt=attempt,
                    session_id=session.session_id,
                    started=started,
                    ended=time.monotonic(),
                )
            )
