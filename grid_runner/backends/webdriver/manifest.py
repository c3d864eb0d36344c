"""WebDriver backend manifest."""

from grid_runner.backends.manifest import BackendManifest
from grid_runner.backends.webdriver.backend import WebDriverBackend
from grid_runner.backends.webdriver.config import WebDriverConfig

webdriver_manifest = BackendManifest(
    config_cls=WebDriverConfig,
    backend_factory=WebDriverBackend.from_config,
)
