"""WebDriver (Selenium Grid) backend module."""

from grid_runner.backends.webdriver.backend import WebDriverBackend
from grid_runner.backends.webdriver.config import WebDriverConfig
from grid_runner.backends.webdriver.manifest import webdriver_manifest

__all__ = ["WebDriverBackend", "WebDriverConfig", "webdriver_manifest"]
