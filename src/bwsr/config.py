"""
bwsr Configuration

Settings are read from environment variables prefixed with BWSR_:

- BWSR_HOME: Config root (default: ~/.bwsr)
- BWSR_POLL_INTERVAL: Seconds between watchdog health sweeps (default: 5)
- BWSR_IDLE_GRACE_PERIOD: Seconds the watchdog waits with no sessions before exiting (default: 5)
- BWSR_PROBE_TIMEOUT: Timeout for watchdog -> session probes (default: 1)
- BWSR_REQUEST_TIMEOUT: Timeout for CLI -> watchdog requests (default: 10)
- BWSR_START_TIMEOUT: Timeout for the start request, which launches a browser (default: 60)
- BWSR_BOOTSTRAP_ATTEMPTS / BWSR_BOOTSTRAP_DELAY: Readiness polling limit
  after spawning the watchdog (default: 50 x 0.1s)
- BWSR_LOG_LEVEL: Watchdog log level (default: INFO)
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bwsr.paths import Paths

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """bwsr settings, loaded from BWSR_* environment variables."""

    home: Path = Field(default_factory=lambda: Path.home() / ".bwsr")

    # Watchdog timers
    poll_interval: float = 5.0
    idle_grace_period: float = 5.0

    # Control channel timeouts
    probe_timeout: float = 1.0
    request_timeout: float = 10.0
    start_timeout: float = 60.0

    # Client bootstrap retries
    bootstrap_attempts: int = 50
    bootstrap_delay: float = 0.1

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BWSR_",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_timeouts(self) -> "Settings":
        # list probes every session, so the client must outwait one probe
        if self.request_timeout <= self.probe_timeout:
            raise ValueError(
                f"request_timeout ({self.request_timeout:g}s) must exceed "
                f"probe_timeout ({self.probe_timeout:g}s)"
            )
        return self

    @property
    def paths(self) -> Paths:
        return Paths(self.home.expanduser())


_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False) -> Settings:
    """Get the process-wide Settings instance."""
    global _settings

    if _settings is None or force_reload:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """Re-read settings from the environment."""
    return get_settings(force_reload=True)
