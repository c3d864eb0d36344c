"""Configuration for the test session orchestrator."""

from collections.abc import Mapping
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from grid_runner.models.base import Seconds


class FixedBackoff(BaseModel):
    """Wait the same delay before every retry."""

    kind: Literal["fixed"] = "fixed"
    delay_ms: float = Field(default=0, ge=0)

    def delay(self, retry: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        return self.delay_ms / 1000


class ExponentialBackoff(BaseModel):
    """Multiply the delay by `factor` on every retry."""

    kind: Literal["exponential"] = "exponential"
    base_ms: float = Field(default=500, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay_ms: float | None = Field(default=None, ge=0)

    def delay(self, retry: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        delay_ms = self.base_ms * self.factor ** (retry - 1)
        if self.max_delay_ms is not None:
            delay_ms = min(delay_ms, self.max_delay_ms)
        return delay_ms / 1000


BackoffPolicy = Annotated[
    FixedBackoff | ExponentialBackoff, Field(discriminator="kind")
]


class OrchestratorConfig(BaseModel):
    """Scheduling, retry and pool configuration."""

    concurrency_limit: int = Field(default=4, ge=1)
    max_retry: int = Field(default=0, ge=0)
    backoff: BackoffPolicy = Field(default_factory=FixedBackoff)
    acquire_timeout: Seconds = Field(default=60.0, gt=0)
    execution_timeout: Seconds = Field(default=300.0, gt=0)
    # Minimum live sessions per capability tag, refilled when sessions die
    min_pool_size: Mapping[str, int] = Field(default_factory=dict)
    unavailable_policy: Literal["surface", "requeue"] = "surface"
    max_requeues: int = Field(default=3, ge=0)
    lease_timeout: Seconds | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_lease(self) -> "OrchestratorConfig":
        if self.lease_timeout is not None and (
            self.lease_timeout <= self.execution_timeout
        ):
            raise ValueError("lease_timeout must exceed execution_timeout")
        return self
