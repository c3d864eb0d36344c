"""Configuration for the WebDriver grid backend."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel


class WebDriverConfig(BaseModel):
    """Configuration for a Selenium Grid (W3C WebDriver) hub."""

    hub_url: str = "http://localhost:4444/"
    artifacts_dir: Path = Path("artifacts")
    screenshot_on_failure: bool = True
    locator_strategy: Literal["css selector", "xpath"] = "css selector"
    # Seconds per HTTP request; browser start-up on a busy grid can be slow
    request_timeout: float = 120
