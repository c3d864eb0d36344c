"""Registration record of a grid backend."""

from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from grid_runner.backends.base import GridBackend


@dataclass(frozen=True, kw_only=True)
class BackendManifest[ConfigT: BaseModel]:
    """What a package registers to provide a grid backend.

    `config_cls` describes how to reach the grid (hub address, timeouts,
    artifact location) and `backend_factory` opens a connection to it that
    provisions sessions and runs test units.
    """

    config_cls: type[ConfigT]
    backend_factory: Callable[[ConfigT], AbstractAsyncContextManager[GridBackend]]

    def connect(
        self, settings: Mapping[str, Any]
    ) -> AbstractAsyncContextManager[GridBackend]:
        """Validate raw connection settings and open the backend with them."""
        return self.backend_factory(self.config_cls.model_validate(settings))
