"""Configuration management from environment variables."""

import os
from pathlib import Path

from careernudge.utils.time_utils import is_valid_timezone

# Load .env file if it exists
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # python-dotenv not installed, use system env vars


class Config:
    """Application configuration loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

    # Database
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "./data/careernudge.db"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Sweep
    HEARTBEAT_INTERVAL: int = int(os.getenv("HEARTBEAT_INTERVAL", "3600"))
    DAILY_SWEEP_HOUR: int = int(os.getenv("DAILY_SWEEP_HOUR", "16"))  # UTC; weekly runs Mondays
    SWEEP_CONCURRENCY: int = int(os.getenv("SWEEP_CONCURRENCY", "10"))
    SNAPSHOT_TIMEOUT: float = float(os.getenv("SNAPSHOT_TIMEOUT", "5.0"))

    # Preference defaults
    DEFAULT_DAILY_LIMIT: int = int(os.getenv("DEFAULT_DAILY_LIMIT", "3"))
    DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/Los_Angeles")

    # Rule thresholds
    INTERVIEW_LOOKAHEAD_HOURS: float = float(os.getenv("INTERVIEW_LOOKAHEAD_HOURS", "48"))
    APP_STALE_DAYS: int = int(os.getenv("APP_STALE_DAYS", "14"))
    GOAL_STALL_DAYS: int = int(os.getenv("GOAL_STALL_DAYS", "30"))
    RESUME_SCORE_THRESHOLD: int = int(os.getenv("RESUME_SCORE_THRESHOLD", "70"))

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if not cls.TELEGRAM_BOT_TOKEN:
            raise ValueError("TELEGRAM_BOT_TOKEN environment variable is required")

        if cls.DEFAULT_DAILY_LIMIT < 0:
            raise ValueError("DEFAULT_DAILY_LIMIT must not be negative")

        if cls.SNAPSHOT_TIMEOUT <= 0:
            raise ValueError("SNAPSHOT_TIMEOUT must be positive")

        if not 0 <= cls.DAILY_SWEEP_HOUR <= 23:
            raise ValueError("DAILY_SWEEP_HOUR must be between 0 and 23")

        if not is_valid_timezone(cls.DEFAULT_TIMEZONE):
            raise ValueError(f"Unknown DEFAULT_TIMEZONE: {cls.DEFAULT_TIMEZONE}")

        # Ensure database directory exists
        cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
