"""Discovery of grid backends registered under the `grid_runner.backends` group."""

from importlib.metadata import entry_points
from typing import Any

from grid_runner.backends.manifest import BackendManifest
from grid_runner.errors import GridRunnerError

ENTRY_POINT_GROUP = "grid_runner.backends"


class BackendNotFoundError(GridRunnerError):
    """No installed package registers a grid backend under the requested name."""


def load_backend_manifest(key: str) -> BackendManifest[Any]:
    """Find the manifest of the grid backend registered as `key`.

    Args:
        key: Backend name, e.g. "webdriver" for a Selenium Grid hub

    Raises:
        BackendNotFoundError: If no installed backend uses that name

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            manifest: BackendManifest[Any] = entry.load()
            return manifest

    installed = ", ".join(sorted(e.name for e in entries)) or "none"
    raise BackendNotFoundError(
        f"No grid backend named '{key}' is installed (installed backends: {installed})"
    )
