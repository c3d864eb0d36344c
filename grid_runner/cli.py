"""CLI entry point for running a browser test suite on a grid."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from grid_runner.aggregator import ReportSink
from grid_runner.backends.loading import load_backend_manifest
from grid_runner.config import OrchestratorConfig
from grid_runner.models.result import TestResult
from grid_runner.orchestrator import RejectedUnit, TestOrchestrator
from grid_runner.sinks import JsonLinesSink, LogSink
from grid_runner.suite_loader import load_suite

STATUS_SYMBOLS = {
    "passed": "✅",
    "failed": "❌",
    "errored": "❗",
    "timed_out": "⏱️",
    "unavailable": "🚫",
}


def log_results_summary(
    log: logging.Logger,
    results: Sequence[TestResult],
    rejected: Sequence[RejectedUnit] = (),
) -> None:
    """Log a formatted summary of test results with their artifacts."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for result in results:
        symbol = STATUS_SYMBOLS.get(result.final_status, "?")
        log.info(
            "%s %s [%s]: %s (%.2fs, %d retries)",
            symbol,
            result.unit_id,
            result.capability,
            result.final_status,
            result.duration,
            result.retry_count,
        )
        if result.message:
            log.info("  Message: %s", result.message)
        for attempt in result.attempts:
            if attempt.failure:
                log.info(
                    "  Attempt %d: %s (%s)",
                    attempt.attempt,
                    attempt.failure.message,
                    attempt.failure.kind,
                )
        for artifact in result.artifacts:
            log.info("  Artifact: %s", artifact)

    for unit in rejected:
        log.info("⛔ %s: rejected", unit.unit_id)
        log.info("  Reason: %s", unit.reason)


def format_output(
    results: Sequence[TestResult], rejected: Sequence[RejectedUnit] = ()
) -> dict[str, Any]:
    """Format results for JSON output."""
    all_results = [result.to_record() for result in results]

    return {
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["status"] == "passed"),
        "failed": sum(1 for r in all_results if r["status"] == "failed"),
        "errors": sum(1 for r in all_results if r["status"] == "errored"),
        "timeouts": sum(1 for r in all_results if r["status"] == "timed_out"),
        "unavailable": sum(1 for r in all_results if r["status"] == "unavailable"),
        "rejected": [
            {"unit_id": unit.unit_id, "reason": unit.reason} for unit in rejected
        ],
        "results": all_results,
    }


async def run(
    backend_key: str,
    backend_config_json: str,
    suite_path: Path,
    config_json: str = "{}",
    report_path: Path | None = None,
) -> int:
    """Run a suite and return exit code."""
    log = logging.getLogger("grid_runner")

    log.info("Loading backend: %s", backend_key)
    manifest = load_backend_manifest(backend_key)
    backend_settings = json.loads(backend_config_json)

    log.info("Loading suite: %s", suite_path)
    suite = await load_suite(suite_path)

    if not suite.units:
        log.info("Suite has no test units")
        print(json.dumps(format_output([]), indent=2))
        return 0

    config = OrchestratorConfig(
        **{"min_pool_size": suite.pool, **json.loads(config_json)}
    )

    sinks: list[ReportSink] = [LogSink()]
    if report_path is not None:
        sinks.append(JsonLinesSink(path=report_path))

    log.info(
        "Running %d unit(s) with concurrency %d...",
        len(suite.units),
        config.concurrency_limit,
    )
    async with manifest.connect(backend_settings) as backend:
        async with TestOrchestrator.open(
            runner=backend, provisioner=backend, config=config, sinks=sinks
        ) as orchestrator:
            results, rejected = await orchestrator.run_units(suite.units)

    log_results_summary(log, results, rejected)

    output = format_output(results, rejected)
    print(json.dumps(output, indent=2))

    has_failures = bool(rejected) or any(
        result.final_status != "passed" for result in results
    )

    return 1 if has_failures else 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run browser test units in parallel on a grid"
    )
    parser.add_argument(
        "--suite",
        type=Path,
        required=True,
        help="Path to the suite YAML file",
    )
    parser.add_argument(
        "--backend",
        default="webdriver",
        help="Backend key (default: webdriver)",
    )
    parser.add_argument(
        "--backend-config",
        default="{}",
        help="JSON configuration for the backend",
    )
    parser.add_argument(
        "--config",
        default="{}",
        help="JSON orchestrator configuration (concurrency, retry, timeouts)",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Append one JSON line per result to this file",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    exit_code = asyncio.run(
        run(
            backend_key=args.backend,
            backend_config_json=args.backend_config,
            suite_path=args.suite,
            config_json=args.config,
            report_path=args.report,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
