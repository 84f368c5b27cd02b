"""
Progression engine configuration — environment-aware settings.

All environment variables are documented here. Values are read once at import
time, after `.env` (if present) has been loaded into the environment.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).parent


class BaseConfig:
    # Storage backend: "memory", "file" or "redis"
    STORE_BACKEND = os.environ.get("STORE_BACKEND", "memory")
    DATA_DIR = os.environ.get("DATA_DIR", str(BASE_DIR / "data"))
    REDIS_URL = os.environ.get("REDIS_URL", "")
    STORE_KEY_PREFIX = os.environ.get("STORE_KEY_PREFIX", "progression:")
    # 0 = unlimited; a positive value makes the memory store raise on overflow
    STORE_QUOTA_BYTES = int(os.environ.get("STORE_QUOTA_BYTES", "0"))

    # Account defaults
    STARTING_CREDITS = int(os.environ.get("STARTING_CREDITS", "500"))
    WEEKLY_GOAL_MINUTES = int(os.environ.get("WEEKLY_GOAL_MINUTES", "300"))

    # Notification history
    NOTIFICATION_HISTORY_LIMIT = int(os.environ.get("NOTIFICATION_HISTORY_LIMIT", "50"))
    NOTIFICATION_TRIM_LIMIT = int(os.environ.get("NOTIFICATION_TRIM_LIMIT", "20"))

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    STORE_BACKEND = os.environ.get("STORE_BACKEND", "redis")

    @classmethod
    def validate(cls):
        """Fail fast on missing or inconsistent configuration in production."""
        errors: list[str] = []

        if cls.STORE_BACKEND not in ("memory", "file", "redis"):
            errors.append(f"STORE_BACKEND must be memory, file or redis (got {cls.STORE_BACKEND!r}).")
        if cls.STORE_BACKEND == "redis" and not cls.REDIS_URL:
            errors.append("REDIS_URL must be set when STORE_BACKEND is redis.")
        if cls.NOTIFICATION_TRIM_LIMIT > cls.NOTIFICATION_HISTORY_LIMIT:
            errors.append("NOTIFICATION_TRIM_LIMIT cannot exceed NOTIFICATION_HISTORY_LIMIT.")

        if cls.STORE_BACKEND == "memory":
            warnings.warn("STORE_BACKEND is memory: progress will not survive a restart.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    STORE_BACKEND = "memory"
    STORE_QUOTA_BYTES = 0
    LOG_LEVEL = "DEBUG"


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config(name: str | None = None) -> type[BaseConfig]:
    """Resolve a config class by name, defaulting to $APP_ENV, then development."""
    name = name or os.environ.get("APP_ENV", "development")
    return config_by_name.get(name, DevelopmentConfig)
