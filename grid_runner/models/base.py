"""Base model configuration and shared field types."""

import re
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict

DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h)?")
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class Model(BaseModel):
    """Base model with standard configuration."""

    model_config = ConfigDict(frozen=True)


def parse_duration(value: object) -> object:
    """Convert duration strings (e.g., '300s', '5m', '250ms') to seconds.

    Numbers pass through unchanged and are interpreted as seconds.
    """
    if not isinstance(value, str):
        return value

    match = DURATION_PATTERN.fullmatch(value.strip())
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")

    amount, unit = match.groups()
    return float(amount) * DURATION_UNITS[unit or "s"]


Seconds = Annotated[float, BeforeValidator(parse_duration)]
