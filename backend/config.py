"""
Centralized configuration for the vendor discovery backend.

All environment variables are loaded here and exported as a singleton
Settings instance. Import `settings` from this module.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        self.MONGO_URI = os.getenv("MONGO_URI", "")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "vendor_discovery")
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

        # Scheduler defaults, overridden by the persisted scheduler_config document
        self.DISCOVERY_TIMEZONE = os.getenv("DISCOVERY_TIMEZONE", "America/Los_Angeles")
        self.DISCOVERY_RUN_HOUR = int(os.getenv("DISCOVERY_RUN_HOUR", "2"))
        self.DISCOVERY_DAILY_CAP = int(os.getenv("DISCOVERY_DAILY_CAP", "50"))
        self.DISCOVERY_TICK_SECONDS = int(os.getenv("DISCOVERY_TICK_SECONDS", "3600"))
        self.DISCOVERY_SCHEDULER_ENABLED = _env_bool("DISCOVERY_SCHEDULER_ENABLED", "true")

        self.WEBSITE_VERIFY_TIMEOUT_SECONDS = float(
            os.getenv("WEBSITE_VERIFY_TIMEOUT_SECONDS", "8")
        )


settings = Settings()
