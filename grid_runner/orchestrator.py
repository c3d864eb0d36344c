"""Test session orchestrator tying the pool, dispatcher and aggregator together."""

import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from grid_runner.aggregator import ReportSink, ResultAggregator
from grid_runner.backends.base import ExecutionRunner, NodeProvisioner
from grid_runner.config import OrchestratorConfig
from grid_runner.dispatcher import Dispatcher
from grid_runner.errors import ValidationError
from grid_runner.models.result import TestResult
from grid_runner.models.unit import TestUnit
from grid_runner.pool import SessionPool
from grid_runner.retry import RetryController
from grid_runner.state import UnitTracker

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class RejectedUnit:
    """Unit refused at submission time."""

    unit_id: str
    reason: str


@dataclass(frozen=True, kw_only=True)
class TestOrchestrator:
    """Schedules test units across a pool of grid sessions."""

    __test__ = False

    config: OrchestratorConfig
    pool: SessionPool
    dispatcher: Dispatcher
    aggregator: ResultAggregator
    tracker: UnitTracker

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        *,
        runner: ExecutionRunner,
        provisioner: NodeProvisioner,
        config: OrchestratorConfig,
        sinks: Sequence[ReportSink] = (),
    ) -> AsyncGenerator["TestOrchestrator", None]:
        """Create an orchestrator with a filled pool and running workers.

        On exit the workers are stopped and every session is retired. Units
        that never left their queue stay queued, units cut off mid-execution
        complete as errored.
        """
        tracker = UnitTracker()
        pool = SessionPool(provisioner=provisioner, min_size=config.min_pool_size)
        aggregator = ResultAggregator(sinks=sinks)
        controller = RetryController(
            pool=pool, runner=runner, config=config, tracker=tracker
        )
        dispatcher = Dispatcher(
            pool=pool,
            controller=controller,
            aggregator=aggregator,
            config=config,
            tracker=tracker,
        )
        orchestrator = cls(
            config=config,
            pool=pool,
            dispatcher=dispatcher,
            aggregator=aggregator,
            tracker=tracker,
        )

        try:
            await pool.fill()
            dispatcher.start()
            yield orchestrator
        finally:
            await dispatcher.stop()
            await pool.close()

    async def submit(self, unit: TestUnit) -> None:
        """Queue a unit for execution.

        Raises:
            ValidationError: If the unit is malformed

        """
        await self.dispatcher.submit(unit)

    async def join(self) -> None:
        """Wait until every submitted unit has a result."""
        await self.dispatcher.join()

    async def run_units(
        self, units: Iterable[TestUnit]
    ) -> tuple[Sequence[TestResult], Sequence[RejectedUnit]]:
        """Submit units, wait for all of them and return their results.

        Returns:
            Results in submission order, and the units rejected at submission

        """
        accepted: list[str] = []
        rejected: list[RejectedUnit] = []
        for unit in units:
            try:
                await self.submit(unit)
            except ValidationError as exc:
                log.error("Rejected unit %s: %s", unit.id, exc)
                rejected.append(RejectedUnit(unit_id=unit.id, reason=str(exc)))
            else:
                accepted.append(unit.id)

        log.info("Waiting for %d unit(s)...", len(accepted))
        await self.join()

        results = [self.aggregator.get(unit_id) for unit_id in accepted]
        return [result for result in results if result is not None], rejected
