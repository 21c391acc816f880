import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env file if it exists
load_dotenv()

TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


@dataclass
class Settings:
    """
    Process-wide settings. Read from the environment once at startup;
    components take an explicit instance so tests can build their own.
    """
    database_url: str = "sqlite:///./breachfeed.db"

    # --- Content fetcher ---
    enable_full_content_fetch: bool = False
    content_fetch_timeout: float = 30.0    # seconds per attempt
    content_fetch_retries: int = 2         # retries after the first attempt
    content_fetch_backoff: float = 1.0     # base delay, doubled per retry
    content_min_chars: int = 500           # extracted text shorter than this is not "full content"

    # --- Feed poller / scheduler ---
    feed_fetch_timeout: float = 10.0
    feed_interval_minutes: int = 5         # used when a feed has no interval of its own
    max_concurrent_feeds: int = 5
    max_concurrent_fetches: int = 5
    scheduler_tick_seconds: int = 60

    # --- Classifier ---
    classifier_model: Optional[str] = None  # zero-shot model name; unset disables the model signal

    user_agent: str = "BreachFeed/1.0"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.environ.get("DATABASE_URL", defaults.database_url),
            enable_full_content_fetch=_env_bool("ENABLE_FULL_CONTENT_FETCH", defaults.enable_full_content_fetch),
            content_fetch_timeout=float(os.environ.get("CONTENT_FETCH_TIMEOUT", defaults.content_fetch_timeout)),
            content_fetch_retries=int(os.environ.get("CONTENT_FETCH_RETRIES", defaults.content_fetch_retries)),
            content_fetch_backoff=float(os.environ.get("CONTENT_FETCH_BACKOFF", defaults.content_fetch_backoff)),
            content_min_chars=int(os.environ.get("CONTENT_MIN_CHARS", defaults.content_min_chars)),
            feed_fetch_timeout=float(os.environ.get("FEED_FETCH_TIMEOUT", defaults.feed_fetch_timeout)),
            feed_interval_minutes=int(os.environ.get("FEED_INTERVAL_MINUTES", defaults.feed_interval_minutes)),
            max_concurrent_feeds=int(os.environ.get("MAX_CONCURRENT_FEEDS", defaults.max_concurrent_feeds)),
            max_concurrent_fetches=int(os.environ.get("MAX_CONCURRENT_FETCHES", defaults.max_concurrent_fetches)),
            scheduler_tick_seconds=int(os.environ.get("SCHEDULER_TICK_SECONDS", defaults.scheduler_tick_seconds)),
            classifier_model=os.environ.get("CLASSIFIER_MODEL") or None,
            user_agent=os.environ.get("USER_AGENT", defaults.user_agent),
            log_level=os.environ.get("LOG_LEVEL", defaults.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings singleton, loaded lazily on first call."""
    settings = Settings.from_env()
    logger.debug(f"Loaded settings (full content fetch: {settings.enable_full_content_fetch})")
    return settings
