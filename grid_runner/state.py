"""Per-unit lifecycle state machine."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from grid_runner.errors import GridRunnerError

log = logging.getLogger(__name__)

type UnitState = Literal["queued", "dispatched", "executing", "retrying", "completed"]

TRANSITIONS: Mapping[UnitState | None, frozenset[UnitState]] = {
    None: frozenset(["queued"]),
    # queued -> completed only when no session ever became available
    "queued": frozenset(["dispatched", "completed"]),
    # dispatched -> completed when the worker dies before the first attempt
    "dispatched": frozenset(["executing", "completed"]),
    "executing": frozenset(["retrying", "completed"]),
    # retrying -> completed when no session is available for the retry
    "retrying": frozenset(["executing", "completed"]),
    "completed": frozenset(),
}


class InvalidTransitionError(GridRunnerError):
    """Raised on a lifecycle transition the state machine does not allow."""


@dataclass(kw_only=True)
class UnitTracker:
    """Records the lifecycle state of every submitted unit."""

    _history: dict[str, list[UnitState]] = field(default_factory=dict, init=False)

    def transition(self, unit_id: str, state: UnitState) -> None:
        """Move `unit_id` to `state`.

        Raises:
            InvalidTransitionError: If the current state cannot move to `state`

        """
        current = self.state(unit_id)
        if state not in TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Unit {unit_id!r} cannot move from {current} to {state}"
            )
        self._history.setdefault(unit_id, []).append(state)
        log.debug("Unit %s: %s -> %s", unit_id, current, state)

    def state(self, unit_id: str) -> UnitState | None:
        """Current state, or None for unknown units."""
        history = self._history.get(unit_id)
        return history[-1] if history else None

    def history(self, unit_id: str) -> Sequence[UnitState]:
        """Every state `unit_id` went through, in order."""
        return list(self._history.get(unit_id, ()))

    def in_state(self, state: UnitState) -> Sequence[str]:
        """IDs of the units currently in `state`."""
        return [
            unit_id for unit_id, history in self._history.items() if history[-1] == state
        ]

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._history
