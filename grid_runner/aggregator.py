"""Append-only store of test results feeding reporting sinks."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from grid_runner.models.result import FinalStatus, TestResult

log = logging.getLogger(__name__)


class ReportSink(Protocol):
    """Consumer of the result feed (one record per test result)."""

    async def emit(self, record: Mapping[str, Any]) -> None:
        """Deliver one result record."""
        ...


@dataclass(kw_only=True)
class ResultAggregator:
    """Collects test results from concurrent workers.

    Recording is idempotent on (unit ID, attempt count): recording the same
    result twice stores and emits it once.
    """

    sinks: Sequence[ReportSink] = ()

    _results: list[TestResult] = field(default_factory=list, init=False)
    _keys: set[tuple[str, int]] = field(default_factory=set, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def record(self, result: TestResult) -> bool:
        """Store a result and emit it to every sink.

        Returns:
            True if the result was new, False if it was already recorded

        """
        async with self._lock:
            if result.record_key in self._keys:
                log.debug("Result for unit %s already recorded", result.unit_id)
                return False

            self._keys.add(result.record_key)
            self._results.append(result)

            record = result.to_record()
            for sink in self.sinks:
                try:
                    await sink.emit(record)
                except Exception:
                    log.exception(
                        "Report sink %s failed for unit %s",
                        type(sink).__name__,
                        result.unit_id,
                    )
        return True

    def query(
        self,
        *,
        unit_id: str | None = None,
        capability: str | None = None,
        status: FinalStatus | None = None,
    ) -> Sequence[TestResult]:
        """Return recorded results matching every given filter."""
        return [
            result
            for result in self._results
            if (unit_id is None or result.unit_id == unit_id)
            and (capability is None or result.capability == capability)
            and (status is None or result.final_status == status)
        ]

    def get(self, unit_id: str) -> TestResult | None:
        """Return the latest result recorded for `unit_id`."""
        matches = self.query(unit_id=unit_id)
        return matches[-1] if matches else None

    def feed(self) -> Sequence[Mapping[str, Any]]:
        """Serialized records in recording order."""
        return [result.to_record() for result in self._results]

    def summary(self) -> dict[str, int]:
        """Totals per final status."""
        statuses = [result.final_status for result in self._results]
        return {
            "total": len(statuses),
            "passed": statuses.count("passed"),
            "failed": statuses.count("failed"),
            "errors": statuses.count("errored"),
            "timeouts": statuses.count("timed_out"),
            "unavailable": statuses.count("unavailable"),
            "retried": sum(1 for result in self._results if result.retry_count),
        }

    def __len__(self) -> int:
        return len(self._results)
