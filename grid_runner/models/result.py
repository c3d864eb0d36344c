"""Models for execution attempts and test results."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

type FailureKind = Literal["transient", "terminal", "fatal", "timeout"]
type AttemptOutcome = Literal["passed", "failed", "errored", "timed_out"]
type FinalStatus = Literal["passed", "failed", "errored", "timed_out", "unavailable"]


@dataclass(frozen=True, kw_only=True)
class FailureDetail:
    """Classified failure of an attempt."""

    kind: FailureKind
    message: str


@dataclass(frozen=True, kw_only=True)
class ExecutionAttempt:
    """One run of a test unit on one session."""

    unit_id: str
    attempt: int
    session_id: str
    started_at: datetime
    ended_at: datetime
    outcome: AttemptOutcome
    failure: FailureDetail | None = None
    artifacts: Sequence[str] = ()

    @property
    def duration(self) -> float:
        """Attempt wall time in seconds."""
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def retryable(self) -> bool:
        """Whether the failure classification allows another attempt."""
        return self.failure is not None and self.failure.kind == "transient"


@dataclass(frozen=True, kw_only=True)
class TestResult:
    """Final result of a test unit, aggregating all of its attempts.

    A result without attempts means the unit never got a session, unless
    `status` says otherwise.
    """

    __test__ = False

    unit_id: str
    capability: str
    attempts: Sequence[ExecutionAttempt] = ()
    message: str | None = None
    status: FinalStatus | None = None

    @property
    def final_status(self) -> FinalStatus:
        """Outcome of the last attempt."""
        if self.status is not None:
            return self.status
        if not self.attempts:
            return "unavailable"
        return self.attempts[-1].outcome

    @property
    def retry_count(self) -> int:
        """Number of attempts after the first one."""
        return max(len(self.attempts) - 1, 0)

    @property
    def duration(self) -> float:
        """Total time spent in attempts, in seconds."""
        return sum(attempt.duration for attempt in self.attempts)

    @property
    def artifacts(self) -> Sequence[str]:
        """Artifacts of every attempt, in attempt order."""
        return [path for attempt in self.attempts for path in attempt.artifacts]

    @property
    def record_key(self) -> tuple[str, int]:
        """Idempotency key used by the result store."""
        return (self.unit_id, len(self.attempts))

    def to_record(self) -> Mapping[str, Any]:
        """Serialize to a JSON-ready mapping for reporting sinks."""
        last_failure = self.attempts[-1].failure if self.attempts else None
        return {
            "unit_id": self.unit_id,
            "capability": self.capability,
            "status": self.final_status,
            "retry_count": self.retry_count,
            "duration": round(self.duration, 3),
            "message": self.message
            or (last_failure.message if last_failure else None),
            "attempts": [
                {
                    "attempt": attempt.attempt,
                    "session_id": attempt.session_id,
                    "started_at": attempt.started_at.isoformat(),
                    "ended_at": attempt.ended_at.isoformat(),
                    "outcome": attempt.outcome,
                    "failure_kind": attempt.failure.kind if attempt.failure else None,
                    "failure_message": (
                        attempt.failure.message if attempt.failure else None
                    ),
                    "artifacts": list(attempt.artifacts),
                }
                for attempt in self.attempts
            ],
        }
