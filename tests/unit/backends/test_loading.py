"""Tests for backend discovery and manifests."""

from unittest.mock import Mock

import pydantic
import pytest

from grid_runner.backends.loading import BackendNotFoundError, load_backend_manifest
from grid_runner.backends.manifest import BackendManifest
from grid_runner.backends.webdriver import webdriver_manifest
from grid_runner.backends.webdriver.config import WebDriverConfig
from grid_runner.errors import GridRunnerError


def test_load_backend_manifest_returns_manifest() -> None:
    """Finds the WebDriver backend registered by this package."""
    manifest = load_backend_manifest("webdriver")

    assert manifest is webdriver_manifest


def test_load_backend_manifest_raises_for_unknown_backend() -> None:
    """Names the missing backend and the installed ones."""
    with pytest.raises(BackendNotFoundError) as exc_info:
        load_backend_manifest("unknown-backend")

    message = str(exc_info.value)
    assert "No grid backend named 'unknown-backend'" in message
    assert "installed backends:" in message
    assert "webdriver" in message
    assert isinstance(exc_info.value, GridRunnerError)


def test_connect_validates_settings() -> None:
    """Opens the backend with settings parsed into its config class."""
    factory = Mock()
    manifest = BackendManifest(config_cls=WebDriverConfig, backend_factory=factory)

    opened = manifest.connect({"hub_url": "http://hub:4444/", "request_timeout": 30})

    assert opened is factory.return_value
    factory.assert_called_once_with(
        WebDriverConfig(hub_url="http://hub:4444/", request_timeout=30)
    )


def test_connect_rejects_invalid_settings() -> None:
    """Raises before opening the backend when settings are invalid."""
    factory = Mock()
    manifest = BackendManifest(config_cls=WebDriverConfig, backend_factory=factory)

    with pytest.raises(pydantic.ValidationError):
        manifest.connect({"locator_strategy": "link text"})

    factory.assert_not_called()
