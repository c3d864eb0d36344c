"""Tests for CLI module."""

import json
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import BaseModel

from grid_runner.backends.manifest import BackendManifest
from grid_runner.cli import format_output, log_results_summary, run
from grid_runner.errors import TerminalFailure
from grid_runner.models.result import ExecutionAttempt, FailureDetail, TestResult
from grid_runner.orchestrator import RejectedUnit
from grid_runner.testing.fakes import FakeGrid

STARTED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

SUITE = """
version: "1.0"
pool:
  chrome: 2
units:
  - id: login
    capability: chrome
    steps:
      - action: open
        value: https://example.com/login
      - action: click
        target: "#submit"
  - id: search
    capability: chrome
    max_retry: 1
    timeout: 30s
    steps:
      - action: open
        value: https://example.com/search
"""


def attempt(
    number: int,
    outcome: str = "passed",
    failure: FailureDetail | None = None,
    seconds: float = 1.5,
    artifacts: Sequence[str] = (),
) -> ExecutionAttempt:
    return ExecutionAttempt(
        unit_id="login",
        attempt=number,
        session_id=f"chrome-{number}",
        started_at=STARTED,
        ended_at=STARTED + timedelta(seconds=seconds),
        outcome=outcome,  # type: ignore[arg-type]
        failure=failure,
        artifacts=artifacts,
    )


class FakeGridConfig(BaseModel):
    """Configuration of the in-memory grid used by CLI tests."""

    failing: list[str] = []


@asynccontextmanager
async def fake_backend(config: FakeGridConfig) -> AsyncGenerator[FakeGrid, None]:
    yield FakeGrid(
        script={unit_id: [TerminalFailure("Expected title")] for unit_id in config.failing}
    )


@pytest.fixture
def suite_path(tmp_path: Path) -> Path:
    """Write a two-unit suite file."""
    path = tmp_path / "suite.yaml"
    path.write_text(SUITE)
    return path


@pytest.fixture
def fake_manifest() -> BackendManifest[FakeGridConfig]:
    """Create a manifest for the in-memory grid."""
    return BackendManifest(config_cls=FakeGridConfig, backend_factory=fake_backend)


def test_log_results_summary_passed(caplog: pytest.LogCaptureFixture) -> None:
    """Logs passed results with checkmark symbol."""
    results = [TestResult(unit_id="login", capability="chrome", attempts=[attempt(1)])]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results)

    assert "Test Results Summary:" in caplog.text
    assert "✅ login [chrome]: passed (1.50s, 0 retries)" in caplog.text


def test_log_results_summary_retried_failure(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Logs every failed attempt and the artifacts."""
    results = [
        TestResult(
            unit_id="login",
            capability="chrome",
            attempts=[
                attempt(
                    1,
                    "failed",
                    FailureDetail(kind="transient", message="stale element reference"),
                ),
                attempt(
                    2,
                    "failed",
                    FailureDetail(kind="terminal", message="Expected title 'Home'"),
                    artifacts=["artifacts/login/attempt-2/screenshot.png"],
                ),
            ],
        )
    ]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results)

    assert "❌ login [chrome]: failed (3.00s, 1 retries)" in caplog.text
    assert "Attempt 1: stale element reference (transient)" in caplog.text
    assert "Attempt 2: Expected title 'Home' (terminal)" in caplog.text
    assert "Artifact: artifacts/login/attempt-2/screenshot.png" in caplog.text


def test_log_results_summary_unavailable_and_rejected(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Logs unavailable units with their message and rejected units."""
    results = [
        TestResult(
            unit_id="legacy",
            capability="ie:11",
            message="No idle session for ie:11 within 60s",
        )
    ]
    rejected = [RejectedUnit(unit_id="empty", reason="step sequence is empty")]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results, rejected)

    assert "🚫 legacy [ie:11]: unavailable (0.00s, 0 retries)" in caplog.text
    assert "Message: No idle session for ie:11 within 60s" in caplog.text
    assert "⛔ empty: rejected" in caplog.text
    assert "Reason: step sequence is empty" in caplog.text


def test_format_output_empty() -> None:
    """Returns empty totals when no results."""
    output = format_output([])

    assert output == {
        "total": 0,
        "passed": 0,
        "failed": 0,
        "errors": 0,
        "timeouts": 0,
        "unavailable": 0,
        "rejected": [],
        "results": [],
    }


def test_format_output_mixed_results() -> None:
    """Formats mixed results with correct totals."""
    results = [
        TestResult(unit_id="a", capability="chrome", attempts=[attempt(1)]),
        TestResult(
            unit_id="b",
            capability="chrome",
            attempts=[attempt(1, "failed", FailureDetail(kind="terminal", message="x"))],
        ),
        TestResult(
            unit_id="c",
            capability="chrome",
            attempts=[attempt(1, "errored", FailureDetail(kind="fatal", message="y"))],
        ),
        TestResult(
            unit_id="d",
            capability="chrome",
            attempts=[
                attempt(1, "timed_out", FailureDetail(kind="timeout", message="z"))
            ],
        ),
        TestResult(unit_id="e", capability="firefox"),
    ]

    output = format_output(results, [RejectedUnit(unit_id="f", reason="bad")])

    assert output["total"] == 5
    assert output["passed"] == 1
    assert output["failed"] == 1
    assert output["errors"] == 1
    assert output["timeouts"] == 1
    assert output["unavailable"] == 1
    assert output["rejected"] == [{"unit_id": "f", "reason": "bad"}]
    assert output["results"][1]["message"] == "x"


class TestRun:
    """Tests for run function."""

    async def test_returns_zero_when_all_units_pass(
        self,
        suite_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Returns 0 and prints the results when every unit passes."""
        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ) as mock_load:
            exit_code = await run(
                backend_key="fake",
                backend_config_json="{}",
                suite_path=suite_path,
            )

        assert exit_code == 0
        mock_load.assert_called_once_with("fake")
        output = json.loads(capsys.readouterr().out)
        assert output["total"] == 2
        assert output["passed"] == 2
        assert [r["unit_id"] for r in output["results"]] == ["login", "search"]

    async def test_returns_one_when_unit_fails(
        self,
        suite_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Returns 1 when any unit fails."""
        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ):
            exit_code = await run(
                backend_key="fake",
                backend_config_json='{"failing": ["search"]}',
                suite_path=suite_path,
                config_json='{"concurrency_limit": 1}',
            )

        assert exit_code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["failed"] == 1

    async def test_returns_one_when_unit_unavailable(
        self,
        tmp_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
    ) -> None:
        """Returns 1 when a unit never gets a session."""
        suite_path = tmp_path / "suite.yaml"
        suite_path.write_text(
            """
version: "1.0"
pool:
  chrome: 1
units:
  - id: legacy
    capability: "ie:11"
    steps: [open]
"""
        )

        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ):
            exit_code = await run(
                backend_key="fake",
                backend_config_json="{}",
                suite_path=suite_path,
                config_json='{"acquire_timeout": "50ms"}',
            )

        assert exit_code == 1

    async def test_writes_report_file(
        self,
        suite_path: Path,
        tmp_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
    ) -> None:
        """Appends one JSON line per result to the report file."""
        report_path = tmp_path / "reports" / "results.jsonl"

        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ):
            await run(
                backend_key="fake",
                backend_config_json="{}",
                suite_path=suite_path,
                report_path=report_path,
            )

        lines = report_path.read_text().splitlines()
        assert sorted(json.loads(line)["unit_id"] for line in lines) == [
            "login",
            "search",
        ]

    async def test_returns_zero_for_empty_suite(
        self,
        tmp_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Returns 0 and prints empty results when the suite has no units."""
        suite_path = tmp_path / "suite.yaml"
        suite_path.write_text('version: "1.0"\n')

        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ):
            exit_code = await run(
                backend_key="fake",
                backend_config_json="{}",
                suite_path=suite_path,
            )

        assert exit_code == 0
        assert '"total": 0' in capsys.readouterr().out

    async def test_returns_one_when_unit_rejected(
        self,
        tmp_path: Path,
        fake_manifest: BackendManifest[FakeGridConfig],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Returns 1 and lists units rejected at submission."""
        suite_path = tmp_path / "suite.yaml"
        suite_path.write_text(
            """
version: "1.0"
pool:
  chrome: 1
units:
  - id: empty
    capability: chrome
"""
        )

        with patch(
            "grid_runner.cli.load_backend_manifest", return_value=fake_manifest
        ):
            exit_code = await run(
                backend_key="fake",
                backend_config_json="{}",
                suite_path=suite_path,
            )

        assert exit_code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["rejected"] == [
            {
                "unit_id": "empty",
                "reason": "Invalid test unit 'empty': step sequence is empty",
            }
        ]
