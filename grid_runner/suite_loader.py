"""Loading of suite definitions from YAML files."""

import asyncio
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from grid_runner.models.suite import SuiteDefinition


async def load_suite(path: Path) -> SuiteDefinition:
    """Load and validate a suite file.

    Args:
        path: Path to the suite YAML file

    Returns:
        Parsed suite definition

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is empty, not valid YAML or fails validation

    """
    if not path.is_file():
        raise FileNotFoundError(f"Suite file not found: {path}")

    content = await asyncio.to_thread(path.read_text, encoding="utf-8")

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if data is None:
        raise ValueError(f"Empty suite file: {path}")

    try:
        return SuiteDefinition.model_validate(data)
    except PydanticValidationError as exc:
        raise ValueError(f"Invalid suite schema in {path}: {exc}") from exc
