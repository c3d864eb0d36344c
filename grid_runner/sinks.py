"""Reporting sinks for the result feed."""

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class JsonLinesSink:
    """Appends one JSON object per result to a file."""

    path: Path

    async def emit(self, record: Mapping[str, Any]) -> None:
        """Append `record` as a single line."""
        line = json.dumps(record, sort_keys=True) + "\n"
        await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)


@dataclass(frozen=True, kw_only=True)
class LogSink:
    """Logs one line per result."""

    logger: logging.Logger = field(default=log)

    async def emit(self, record: Mapping[str, Any]) -> None:
        """Log the status line of `record`."""
        self.logger.info(
            "Result: unit=%s capability=%s status=%s retries=%d duration=%.1fs",
            record["unit_id"],
            record["capability"],
            record["status"],
            record["retry_count"],
            record["duration"],
        )
