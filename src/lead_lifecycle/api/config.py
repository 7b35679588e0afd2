"""Environment-based configuration for the lifecycle service."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".lead-lifecycle"


class Settings:
    """Service configuration loaded from environment variables."""

    def __init__(self):
        self.db_path = Path(os.getenv("LIFECYCLE_DB_PATH", str(DATA_DIR / "lifecycle.db")))
        self.journeys_path = Path(os.getenv("LIFECYCLE_JOURNEYS_PATH", str(DATA_DIR / "journeys.json")))
        self.scoring_config_path = Path(
            os.getenv("LIFECYCLE_SCORING_CONFIG", str(DATA_DIR / "scoring_config.json"))
        )
        self.bulk_concurrency = int(os.getenv("LIFECYCLE_BULK_CONCURRENCY", "8"))
        if self.bulk_concurrency < 1:
            raise RuntimeError("LIFECYCLE_BULK_CONCURRENCY must be at least 1")

        # Seconds between stage sweeps; 0 disables the background runner
        self.sweep_interval = int(os.getenv("LIFECYCLE_SWEEP_INTERVAL", "300"))

        # Hours a finished re-enroll job stays available for polling
        self.job_retention_hours = float(os.getenv("LIFECYCLE_JOB_RETENTION_HOURS", "24"))

        self.host = os.getenv("LIFECYCLE_API_HOST", "127.0.0.1")
        self.port = int(os.getenv("LIFECYCLE_API_PORT", "8000"))
        self.debug = os.getenv("LIFECYCLE_ENV", "production") != "production"


_settings = None


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings():
    """Drop cached settings so the environment is read again."""
    global _settings
    _settings = None


class _SettingsProxy:
    """Lazy proxy so settings aren't loaded until first access."""

    def __getattr__(self, name):
        return getattr(_get_settings(), name)


settings = _SettingsProxy()
