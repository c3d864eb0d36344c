"""Models for suite files loaded from YAML."""

from collections.abc import Mapping, Sequence

from pydantic import Field

from grid_runner.models.base import Model
from grid_runner.models.unit import TestUnit


class SuiteDefinition(Model):
    """Complete suite: grid pool sizes plus the units to run."""

    version: str = Field(..., description="Suite schema version")
    pool: Mapping[str, int] = Field(
        default_factory=dict,
        description="Minimum sessions per capability tag (e.g., 'chrome:120')",
    )
    units: Sequence[TestUnit] = Field(default_factory=list, description="Test units")
