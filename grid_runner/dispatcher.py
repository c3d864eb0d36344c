"""Assignment of queued test units to sessions and workers."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from grid_runner.aggregator import ResultAggregator
from grid_runner.config import OrchestratorConfig
from grid_runner.errors import GridRunnerError, ValidationError
from grid_runner.models.result import TestResult
from grid_runner.models.session import SessionHandle
from grid_runner.models.unit import TestUnit
from grid_runner.pool import SessionPool
from grid_runner.retry import RetryController
from grid_runner.state import UnitState, UnitTracker

log = logging.getLogger(__name__)


@dataclass(kw_only=True)
class _QueueEntry:
    unit: TestUnit
    requeues: int = 0
    # Set while a free worker found no idle session for this queue head
    waiting_since: float | None = None


@dataclass(kw_only=True)
class Dispatcher:
    """Feeds queued units to a bounded pool of workers.

    Units wait in one FIFO queue per capability tag. A free worker scans the
    queues round-robin, starting after the last served capability, and takes
    the first head for which an idle session exists. A head that found no
    session for `acquire_timeout` seconds while workers were free is resolved
    per `unavailable_policy`.
    """

    pool: SessionPool
    controller: RetryController
    aggregator: ResultAggregator
    config: OrchestratorConfig
    tracker: UnitTracker = field(default_factory=UnitTracker)
    clock: Callable[[], float] = time.monotonic

    _queues: dict[str, deque[_QueueEntry]] = field(default_factory=dict, init=False)
    _order: list[str] = field(default_factory=list, init=False)
    _cursor: int = field(default=0, init=False)
    _outstanding: int = field(default=0, init=False)
    _waiting_workers: int = field(default=0, init=False)
    # Units taken off their queue whose result is not recorded yet
    _running: dict[str, TestUnit] = field(default_factory=dict, init=False)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list, init=False)
    _stopped: bool = field(default=False, init=False)

    async def submit(self, unit: TestUnit) -> None:
        """Validate and enqueue a unit.

        Raises:
            ValidationError: If the unit is malformed or its ID was already used
            GridRunnerError: If the dispatcher was stopped

        """
        if self._stopped:
            raise GridRunnerError("Dispatcher is stopped")

        problems = list(unit.problems())
        if unit.id in self.tracker:
            problems.append(f"unit id {unit.id!r} was already submitted")
        lease = self.config.lease_timeout
        if lease is not None and self.controller.deadline(unit) >= lease:
            problems.append(f"timeout must be shorter than the {lease:g}s lease")
        if problems:
            raise ValidationError(f"Invalid test unit {unit.id!r}: {'; '.join(problems)}")

        tag = unit.capability.tag
        async with self.pool.condition:
            if tag not in self._queues:
                self._queues[tag] = deque()
                self._order.append(tag)
            self._queues[tag].append(_QueueEntry(unit=unit))
            self._outstanding += 1
            self.tracker.transition(unit.id, "queued")
            self.pool.condition.notify_all()

        log.info("Queued unit %s for %s", unit.id, tag)

    def start(self) -> None:
        """Start the workers and, if a lease is configured, the lease reaper."""
        for number in range(self.config.concurrency_limit):
            self._tasks.append(
                asyncio.create_task(self._work(), name=f"grid-worker-{number}")
            )
        if self.config.lease_timeout is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._reap(self.config.lease_timeout), name="grid-lease-reaper"
                )
            )
        log.info("Started %d worker(s)", self.config.concurrency_limit)

    async def join(self) -> None:
        """Wait until every submitted unit has a result."""
        async with self.pool.condition:
            await self.pool.condition.wait_for(lambda: self._outstanding == 0)

    async def stop(self) -> None:
        """Cancel the workers.

        Queued units stay queued. Units cancelled mid-execution complete as
        errored, keeping the attempts they finished.
        """
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                log.error("Worker failed: %s", result, exc_info=result)
        self._tasks.clear()

        for unit in list(self._running.values()):
            await self._settle_cancelled(unit)

        if pending := self.pending():
            log.warning("Stopped with %d unit(s) still queued", len(pending))

    def pending(self) -> Sequence[str]:
        """IDs of units still waiting in a queue, in queue order."""
        return [entry.unit.id for tag in self._order for entry in self._queues[tag]]

    def state(self, unit_id: str) -> UnitState | None:
        """Lifecycle state of a submitted unit."""
        return self.tracker.state(unit_id)

    async def _work(self) -> None:
        while True:
            unit, session = await self._claim()
            self._running[unit.id] = unit
            try:
                result = await self.controller.execute(unit, session)
            except Exception as exc:
                log.error("Unit %s crashed the worker: %s", unit.id, exc, exc_info=exc)
                self._complete(unit.id)
                result = TestResult(
                    unit_id=unit.id,
                    capability=unit.capability.tag,
                    attempts=self.controller.discard(unit.id),
                    message=f"Internal error: {exc}",
                    status="errored",
                )
            await self.aggregator.record(result)
            del self._running[unit.id]
            await self._finish()

    async def _claim(self) -> tuple[TestUnit, SessionHandle]:
        condition = self.pool.condition
        while True:
            async with condition:
                # Expired heads are resolved before any session is taken
                expired = self._expire(self.clock())
                assignment = None if expired else self._select()
                if assignment is None and not expired:
                    self._waiting_workers += 1
                    try:
                        async with asyncio.timeout(self._next_expiry()):
                            await condition.wait()
                    except TimeoutError:
                        pass
                    finally:
                        self._waiting_workers -= 1
                    continue
                for entry in expired:
                    self._running[entry.unit.id] = entry.unit

            for entry in expired:
                await self._resolve_unavailable(entry)
            if assignment is not None:
                return assignment

    def _select(self) -> tuple[TestUnit, SessionHandle] | None:
        """Pick the next unit and session; must hold the pool condition."""
        now = self.clock()
        count = len(self._order)
        for offset in range(count):
            index = (self._cursor + offset) % count
            queue = self._queues[self._order[index]]
            if not queue:
                continue

            head = queue[0]
            session = self.pool.take_idle(head.unit.capability)
            if session is None:
                if head.waiting_since is None:
                    head.waiting_since = now
                continue

            queue.popleft()
            self._cursor = (index + 1) % count
            self.tracker.transition(head.unit.id, "dispatched")
            if self._waiting_workers == 0:
                # No free worker is left to wait for sessions
                self._reset_clocks()
            log.info(
                "Dispatched unit %s to session %s",
                head.unit.id,
                session.session_id,
            )
            return head.unit, session

        return None

    def _expire(self, now: float) -> list[_QueueEntry]:
        expired: list[_QueueEntry] = []
        for tag in self._order:
            queue = self._queues[tag]
            while (
                queue
                and queue[0].waiting_since is not None
                and now - queue[0].waiting_since >= self.config.acquire_timeout
            ):
                entry = queue.popleft()
                if (
                    self.config.unavailable_policy == "requeue"
                    and entry.requeues < self.config.max_requeues
                ):
                    log.warning(
                        "No session for unit %s, requeueing (%d/%d)",
                        entry.unit.id,
                        entry.requeues + 1,
                        self.config.max_requeues,
                    )
                    queue.append(_QueueEntry(unit=entry.unit, requeues=entry.requeues + 1))
                else:
                    expired.append(entry)
        return expired

    def _next_expiry(self) -> float | None:
        waits = [
            queue[0].waiting_since
            for queue in self._queues.values()
            if queue and queue[0].waiting_since is not None
        ]
        if not waits:
            return None
        return max(min(waits) + self.config.acquire_timeout - self.clock(), 0)

    def _reset_clocks(self) -> None:
        for queue in self._queues.values():
            if queue:
                queue[0].waiting_since = None

    async def _resolve_unavailable(self, entry: _QueueEntry) -> None:
        unit = entry.unit
        message = (
            f"No idle session for {unit.capability.tag} "
            f"within {self.config.acquire_timeout:g}s"
        )
        log.error("Unit %s unavailable: %s", unit.id, message)
        self._complete(unit.id)
        await self.aggregator.record(
            TestResult(unit_id=unit.id, capability=unit.capability.tag, message=message)
        )
        del self._running[unit.id]
        await self._finish()

    async def _settle_cancelled(self, unit: TestUnit) -> None:
        """Record a result for a unit whose worker was cancelled."""
        attempts = self.controller.discard(unit.id)
        self._complete(unit.id)
        if self.aggregator.get(unit.id) is None:
            log.warning("Unit %s cancelled at shutdown", unit.id)
            await self.aggregator.record(
                TestResult(
                    unit_id=unit.id,
                    capability=unit.capability.tag,
                    attempts=attempts,
                    message="Cancelled at shutdown",
                    status="errored",
                )
            )
        del self._running[unit.id]
        await self._finish()

    def _complete(self, unit_id: str) -> None:
        if self.tracker.state(unit_id) != "completed":
            self.tracker.transition(unit_id, "completed")

    async def _finish(self) -> None:
        async with self.pool.condition:
            self._outstanding -= 1
            self.pool.condition.notify_all()

    async def _reap(self, lease_timeout: float) -> None:
        while True:
            await asyncio.sleep(lease_timeout / 2)
            await self.pool.reclaim_expired(lease_timeout)
