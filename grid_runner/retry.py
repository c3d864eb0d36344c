"""Bounded retry of test unit executions."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from grid_runner.backends.base import ExecutionRunner
from grid_runner.config import OrchestratorConfig
from grid_runner.errors import (
    ExecutionFailure,
    TerminalFailure,
    TransientFailure,
    UnavailableError,
)
from grid_runner.models.result import (
    AttemptOutcome,
    ExecutionAttempt,
    FailureDetail,
    FailureKind,
    TestResult,
)
from grid_runner.models.session import SessionHandle
from grid_runner.models.unit import TestUnit
from grid_runner.pool import SessionPool
from grid_runner.state import UnitTracker

log = logging.getLogger(__name__)

FAILURE_OUTCOMES: Mapping[FailureKind, AttemptOutcome] = {
    "transient": "failed",
    "terminal": "failed",
    "fatal": "errored",
    "timeout": "timed_out",
}

# Failures after which the session is not trusted anymore
SESSION_KILLING_FAILURES: frozenset[FailureKind] = frozenset(["fatal", "timeout"])


def classify_failure(exc: BaseException) -> FailureKind:
    """Classify an exception raised by an execution runner.

    Timeouts raised by the runner itself (waits, lookups) are transient;
    the attempt deadline is handled separately by the caller.
    """
    if isinstance(exc, TransientFailure | TimeoutError):
        return "transient"
    if isinstance(exc, TerminalFailure | AssertionError):
        return "terminal"
    return "fatal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class RetryController:
    """Runs a unit attempt by attempt until it passes or runs out of budget."""

    pool: SessionPool
    runner: ExecutionRunner
    config: OrchestratorConfig
    tracker: UnitTracker = field(default_factory=UnitTracker)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    now: Callable[[], datetime] = _utcnow

    # Attempts of units whose execution has not completed yet
    _attempts: dict[str, list[ExecutionAttempt]] = field(
        default_factory=dict, init=False, repr=False
    )

    def retry_budget(self, unit: TestUnit) -> int:
        """Maximum number of retries for `unit`."""
        return self.config.max_retry if unit.max_retry is None else unit.max_retry

    def deadline(self, unit: TestUnit) -> float:
        """Per-attempt deadline for `unit` in seconds."""
        return self.config.execution_timeout if unit.timeout is None else unit.timeout

    async def execute(self, unit: TestUnit, session: SessionHandle) -> TestResult:
        """Execute `unit`, starting on the already acquired `session`.

        Every retry runs on a different session than the attempt before it.
        The returned result holds every attempt in order.
        """
        budget = self.retry_budget(unit)
        attempts: list[ExecutionAttempt] = []
        self._attempts[unit.id] = attempts
        number = 1

        while True:
            attempt = await self.run_attempt(unit, session, number)
            attempts.append(attempt)

            if not attempt.retryable or number > budget:
                return self._complete(unit, attempts)

            self.tracker.transition(unit.id, "retrying")
            delay = self.config.backoff.delay(number)
            log.info(
                "Retrying unit %s (retry %d/%d) in %.2fs after: %s",
                unit.id,
                number,
                budget,
                delay,
                attempt.failure.message if attempt.failure else "",
            )
            await self.sleep(delay)

            try:
                session = await self.pool.acquire(
                    unit.capability,
                    self.config.acquire_timeout,
                    avoid={attempt.session_id},
                )
                if session.session_id == attempt.session_id:
                    session = await self.pool.recycle(session)
            except UnavailableError as exc:
                log.warning("Cannot retry unit %s: %s", unit.id, exc)
                return self._complete(unit, attempts, message=str(exc))

            number += 1

    def discard(self, unit_id: str) -> Sequence[ExecutionAttempt]:
        """Forget an execution that will not complete and return its attempts."""
        return tuple(self._attempts.pop(unit_id, ()))

    async def run_attempt(
        self, unit: TestUnit, session: SessionHandle, number: int
    ) -> ExecutionAttempt:
        """Run one attempt under the unit deadline and give the session back.

        The session is released after a pass or a transient/terminal failure,
        and marked dead after a fatal failure or a deadline expiry.
        """
        self.tracker.transition(unit.id, "executing")
        timeout = self.deadline(unit)
        started_at = self.now()
        deadline = asyncio.timeout(timeout)

        log.info(
            "Running unit %s attempt %d on session %s",
            unit.id,
            number,
            session.session_id,
        )

        try:
            async with deadline:
                report = await self.runner.run(session, unit, number)
        except asyncio.CancelledError:
            log.warning(
                "Unit %s cancelled, discarding session %s",
                unit.id,
                session.session_id,
            )
            await self.pool.mark_dead(session)
            raise
        except Exception as exc:
            ended_at = self.now()
            if deadline.expired():
                kind: FailureKind = "timeout"
                message = f"Attempt exceeded the {timeout:g}s deadline"
            else:
                kind = classify_failure(exc)
                message = str(exc) or type(exc).__name__

            log.warning(
                "Unit %s attempt %d %s failure: %s",
                unit.id,
                number,
                kind,
                message,
            )
            if kind in SESSION_KILLING_FAILURES:
                await self.pool.mark_dead(session)
            else:
                await self.pool.release(session)

            artifacts: Sequence[str] = (
                exc.artifacts if isinstance(exc, ExecutionFailure) else ()
            )
            return ExecutionAttempt(
                unit_id=unit.id,
                attempt=number,
                session_id=session.session_id,
                started_at=started_at,
                ended_at=ended_at,
                outcome=FAILURE_OUTCOMES[kind],
                failure=FailureDetail(kind=kind, message=message),
                artifacts=artifacts,
            )

        ended_at = self.now()
        await self.pool.release(session)
        return ExecutionAttempt(
            unit_id=unit.id,
            attempt=number,
            session_id=session.session_id,
            started_at=started_at,
            ended_at=ended_at,
            outcome="passed",
            artifacts=report.artifacts,
        )

    def _complete(
        self,
        unit: TestUnit,
        attempts: Sequence[ExecutionAttempt],
        message: str | None = None,
    ) -> TestResult:
        self._attempts.pop(unit.id, None)
        self.tracker.transition(unit.id, "completed")
        result = TestResult(
            unit_id=unit.id,
            capability=unit.capability.tag,
            attempts=tuple(attempts),
            message=message,
        )
        log.info(
            "Unit %s completed: status=%s retries=%d",
            unit.id,
            result.final_status,
            result.retry_count,
        )
        return result
