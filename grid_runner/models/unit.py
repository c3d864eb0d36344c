"""Models for test units submitted to the orchestrator."""

from collections.abc import Sequence
from typing import Any

from pydantic import ConfigDict, Field, model_validator

from grid_runner.models.base import Model, Seconds


class Capability(Model):
    """Execution environment a test unit requires or a session offers.

    Can be written as a tag string: "browser[:version[:platform]]".
    """

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    browser: str = Field(..., min_length=1, description="Browser family")
    version: str | None = Field(default=None, description="Browser version")
    platform: str | None = Field(default=None, description="Operating system")

    @model_validator(mode="before")
    @classmethod
    def _from_tag(cls, data: Any) -> Any:
        if not isinstance(data, str):
            return data
        browser, _, rest = data.strip().partition(":")
        version, _, platform = rest.partition(":")
        return {
            "browser": browser,
            "version": version or None,
            "platform": platform or None,
        }

    @classmethod
    def parse(cls, tag: str) -> "Capability":
        """Parse a capability tag such as "chrome:120:linux"."""
        return cls.model_validate(tag)

    @property
    def tag(self) -> str:
        """Canonical string form, usable as a queue or pool key."""
        return ":".join([self.browser, self.version or "", self.platform or ""]).rstrip(
            ":"
        )

    def matches(self, offered: "Capability") -> bool:
        """Check whether a session offering `offered` satisfies this requirement."""
        if self.browser.lower() != offered.browser.lower():
            return False
        if self.version is not None and not _version_matches(
            self.version, offered.version
        ):
            return False
        if self.platform is None:
            return True
        return offered.platform is not None and (
            self.platform.lower() == offered.platform.lower()
        )


class Step(Model):
    """Single step of a test unit, interpreted only by the execution runner."""

    action: str = Field(..., description="Runner action name (e.g., 'click')")
    target: str | None = Field(default=None, description="Element locator")
    value: str | None = Field(default=None, description="Action argument")

    @model_validator(mode="before")
    @classmethod
    def _from_action_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"action": data}
        return data


class TestUnit(Model):
    """Unit of work scheduled on one browser session at a time."""

    __test__ = False

    id: str = Field(..., min_length=1, description="Unique unit identifier")
    capability: Capability = Field(..., description="Required capability")
    steps: Sequence[Step] = Field(default_factory=list, description="Ordered steps")
    max_retry: int | None = Field(
        default=None, description="Retry budget override (None uses the default)"
    )
    timeout: Seconds | None = Field(
        default=None,
        description="Per-attempt deadline in seconds (None uses the default)",
    )

    def problems(self) -> Sequence[str]:
        """Return the reasons this unit cannot be scheduled, if any."""
        problems: list[str] = []
        if not self.steps:
            problems.append("step sequence is empty")
        if self.timeout is not None and self.timeout <= 0:
            problems.append(f"timeout must be positive, got {self.timeout}")
        if self.max_retry is not None and self.max_retry < 0:
            problems.append(f"max_retry must not be negative, got {self.max_retry}")
        return problems


def _version_matches(required: str, offered: str | None) -> bool:
    """Match "120" against "120" or "120.0.6099.109", but not "1200"."""
    if offered is None:
        return False
    return offered == required or offered.startswith(f"{required}.")
