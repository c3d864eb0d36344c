"""Selenium Grid backend speaking the W3C WebDriver HTTP protocol."""

import asyncio
import base64
import json
import logging
import re
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from grid_runner.backends.base import GridBackend, RunReport
from grid_runner.backends.webdriver.config import WebDriverConfig
from grid_runner.backends.webdriver.models import (
    ErrorResponse,
    NewSessionResponse,
    WebDriverError,
)
from grid_runner.errors import (
    ExecutionFailure,
    FatalFailure,
    TerminalFailure,
    TransientFailure,
)
from grid_runner.models.session import SessionHandle
from grid_runner.models.unit import Capability, Step, TestUnit

log = logging.getLogger(__name__)

ELEMENT_KEY = "element-6066-11e4-a52e-4f735466cecf"

# WebDriver error codes worth another attempt on a fresh session
TRANSIENT_ERRORS: frozenset[str] = frozenset(
    [
        "no such element",
        "stale element reference",
        "element not interactable",
        "element click intercepted",
        "timeout",
        "script timeout",
    ]
)

# WebDriver error codes meaning the session itself is gone
FATAL_ERRORS: frozenset[str] = frozenset(
    [
        "invalid session id",
        "session not created",
        "unknown error",
    ]
)


def failure_for(error: WebDriverError) -> ExecutionFailure:
    """Map a WebDriver error payload to a classified failure."""
    message = f"{error.error}: {error.message}" if error.message else error.error
    if error.error in TRANSIENT_ERRORS:
        return TransientFailure(message)
    if error.error in FATAL_ERRORS:
        return FatalFailure(message)
    return TerminalFailure(message)


def capability_payload(capability: Capability) -> dict[str, str]:
    """Translate a capability into W3C capability names."""
    payload = {"browserName": capability.browser}
    if capability.version is not None:
        payload["browserVersion"] = capability.version
    if capability.platform is not None:
        payload["platformName"] = capability.platform
    return payload


def _artifact_dir_name(unit_id: str) -> str:
    return re.sub(r"[^\w.-]", "_", unit_id)


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


@dataclass(frozen=True, kw_only=True)
class WebDriverBackend(GridBackend):
    """Grid backend for a Selenium Grid hub.

    Supported step actions:
    - open: navigate to `value`
    - click: click the element at `target`
    - type: send `value` as keys to the element at `target`
    - assert_title: page title equals `value`
    - assert_text: text of the element at `target` contains `value`
    """

    config: WebDriverConfig
    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: WebDriverConfig
    ) -> AsyncGenerator["WebDriverBackend", None]:
        """Create backend with managed HTTP session lifecycle."""
        async with aiohttp.ClientSession(
            base_url=config.hub_url.rstrip("/") + "/",
            timeout=aiohttp.ClientTimeout(total=config.request_timeout),
        ) as session:
            yield cls(config=config, session=session)

    async def provision(self, capability: Capability) -> SessionHandle:
        """Open a browser session on the grid."""
        payload = {"capabilities": {"alwaysMatch": capability_payload(capability)}}

        async with self.session.post("session", json=payload) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to create session: {response.status} {text}"
                )
            data = await response.json()

        created = NewSessionResponse.model_validate(data).value
        granted = created.capabilities
        handle = SessionHandle(
            session_id=created.session_id,
            capability=Capability(
                browser=granted.get("browserName", capability.browser),
                version=granted.get("browserVersion", capability.version),
                platform=granted.get("platformName", capability.platform),
            ),
            node_url=self.config.hub_url,
        )
        log.info(
            "Created session %s (%s)", handle.session_id, handle.capability.tag
        )
        return handle

    async def retire(self, session: SessionHandle) -> None:
        """Delete a browser session on the grid."""
        async with self.session.delete(f"session/{session.session_id}") as response:
            if response.status == 404:
                log.info("Session %s was already gone", session.session_id)
                return
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to delete session: {response.status} {text}"
                )
        log.info("Deleted session %s", session.session_id)

    async def run(
        self, session: SessionHandle, unit: TestUnit, attempt: int
    ) -> RunReport:
        """Run every step in order, capturing artifacts on failure."""
        step_log: list[str] = []
        try:
            for index, step in enumerate(unit.steps, start=1):
                step_log.append(
                    f"{index}. {step.action} target={step.target!r} value={step.value!r}"
                )
                await self.perform(session, step)
        except ExecutionFailure as exc:
            step_log.append(f"FAILED ({type(exc).__name__}): {exc}")
            artifacts = await self.capture_artifacts(
                session,
                unit,
                attempt,
                step_log,
                screenshot=not isinstance(exc, FatalFailure),
            )
            raise type(exc)(str(exc), artifacts=[*exc.artifacts, *artifacts]) from exc

        return RunReport()

    async def perform(self, session: SessionHandle, step: Step) -> None:
        """Execute one step."""
        base = f"session/{session.session_id}"

        if step.action == "open":
            await self.command("POST", f"{base}/url", {"url": _require(step, "value")})
        elif step.action == "click":
            element = await self.find(session, _require(step, "target"))
            await self.command("POST", f"{base}/element/{element}/click", {})
        elif step.action == "type":
            element = await self.find(session, _require(step, "target"))
            await self.command(
                "POST",
                f"{base}/element/{element}/value",
                {"text": _require(step, "value")},
            )
        elif step.action == "assert_title":
            expected = _require(step, "value")
            title = await self.command("GET", f"{base}/title")
            if title != expected:
                raise TerminalFailure(f"Expected title {expected!r}, got {title!r}")
        elif step.action == "assert_text":
            expected = _require(step, "value")
            element = await self.find(session, _require(step, "target"))
            text = await self.command("GET", f"{base}/element/{element}/text")
            if expected not in (text or ""):
                raise TerminalFailure(
                    f"Expected {step.target!r} to contain {expected!r}, got {text!r}"
                )
        else:
            raise TerminalFailure(f"Unsupported step action: {step.action!r}")

    async def find(self, session: SessionHandle, locator: str) -> str:
        """Find an element and return its WebDriver element ID."""
        value = await self.command(
            "POST",
            f"session/{session.session_id}/element",
            {"using": self.config.locator_strategy, "value": locator},
        )
        if not isinstance(value, dict) or ELEMENT_KEY not in value:
            raise FatalFailure(f"Malformed element reference for {locator!r}")
        element_id: str = value[ELEMENT_KEY]
        return element_id

    async def command(
        self, method: str, path: str, payload: Mapping[str, Any] | None = None
    ) -> Any:
        """Send a WebDriver command and return the `value` of its response.

        Raises:
            ExecutionFailure: Classified by the WebDriver error code; transport
                errors and unreadable responses are fatal

        """
        try:
            async with self.session.request(method, path, json=payload) as response:
                status = response.status
                text = await response.text()
        except aiohttp.ClientError as exc:
            raise FatalFailure(
                f"WebDriver transport error on {method} {path}: {exc}"
            ) from exc

        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None

        if status == 200:
            return data.get("value") if isinstance(data, dict) else None

        try:
            error = ErrorResponse.model_validate(data).value
        except PydanticValidationError:
            raise FatalFailure(
                f"Unexpected WebDriver response to {method} {path}: {status} {text}"
            ) from None
        raise failure_for(error)

    async def capture_artifacts(
        self,
        session: SessionHandle,
        unit: TestUnit,
        attempt: int,
        step_log: list[str],
        *,
        screenshot: bool,
    ) -> list[str]:
        """Write the step log and, when possible, a screenshot of the page."""
        directory = (
            self.config.artifacts_dir
            / _artifact_dir_name(unit.id)
            / f"attempt-{attempt}"
        )
        log_path = directory / "steps.log"
        await asyncio.to_thread(
            _write_bytes, log_path, ("\n".join(step_log) + "\n").encode()
        )
        artifacts = [str(log_path)]

        if not (screenshot and self.config.screenshot_on_failure):
            return artifacts

        try:
            encoded = await self.command(
                "GET", f"session/{session.session_id}/screenshot"
            )
        except ExecutionFailure as exc:
            log.warning("Could not capture screenshot for unit %s: %s", unit.id, exc)
            return artifacts
        if not isinstance(encoded, str):
            log.warning("Screenshot response for unit %s was empty", unit.id)
            return artifacts

        screenshot_path = directory / "screenshot.png"
        await asyncio.to_thread(
            _write_bytes, screenshot_path, base64.b64decode(encoded)
        )
        artifacts.append(str(screenshot_path))
        return artifacts


def _require(step: Step, name: str) -> str:
    value: str | None = getattr(step, name)
    if value is None:
        raise TerminalFailure(f"Step {step.action!r} requires a {name}")
    return value
