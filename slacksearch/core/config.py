import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DUPLICATE_POLICIES = ("keep_last", "keep_first")


class Settings(BaseSettings):
    # Slack Web API settings
    SLACK_TOKEN: str = ""  # User token (xoxp-...) with search:read scope
    SLACK_API_URL: str = "https://slack.com/api"
    SLACK_API_TIMEOUT: float = 10.0  # Seconds; enforced by the HTTP client
    SLACK_MAX_CONCURRENT_REQUESTS: int = 4
    SLACK_MAX_RETRIES: int = 2  # Attempts for rate-limited calls
    SLACK_DEFAULT_CHANNELS: str | list[str] = ""  # Comma-separated channel IDs

    # Search settings
    SEARCH_PAGE_SIZE: int = 100  # search.messages maximum page size
    SEARCH_DEFAULT_LIMIT: int = 100
    CHANNEL_BATCH_SIZE: int = 5  # Channels per search call in multi-channel scopes

    # Live mode settings
    # Declared first so the interval validator can read it
    LIVE_POLL_MIN_INTERVAL_SECONDS: float = 5.0
    LIVE_POLL_INTERVAL_SECONDS: float = 30.0
    LIVE_POLL_ANCHOR_OFFSET_SECONDS: int = 1  # Skip the boundary message
    LIVE_HEARTBEAT_SECONDS: float = 1.0
    LIVE_TRANSIENT_ERROR_THRESHOLD: int = 3  # Consecutive failures before surfacing

    # Progressive reaction loading
    REACTION_INITIAL_BATCH_SIZE: int = 10  # Covers what is visible above the fold
    REACTION_CHUNK_SIZE: int = 15
    REACTION_FETCH_BATCH_SIZE: int = 10  # Requests per remote reaction lookup
    REACTION_YIELD_SECONDS: float = 0.0
    REACTION_SKIP_RATIO: float = 0.9  # Skip loading when this share already has reactions

    # Reconciliation
    RECONCILER_DUPLICATE_POLICY: str = "keep_last"

    # Local cache of users/channels
    CACHE_TTL_SECONDS: int = 6 * 60 * 60
    CACHE_MAX_ENTRIES: int = 5000
    DATA_DIR: str = "data"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
    )

    @property
    def WORKSPACE_CACHE_FILE_PATH(self) -> str:
        """Complete path to the persisted users/channels snapshot"""
        return os.path.join(self.DATA_DIR, "workspace_cache.json")

    @field_validator("SLACK_API_URL")
    @classmethod
    def validate_slack_api_url(cls, v: str) -> str:
        """Normalize Slack API base URL (scheme required, no trailing slash)."""
        v = v.strip()
        if not v:
            raise ValueError("SLACK_API_URL must be non-empty")
        if "://" not in v:
            v = "https://" + v
        return v.rstrip("/")

    @field_validator("SLACK_DEFAULT_CHANNELS", mode="before")
    @classmethod
    def parse_default_channels(cls, v: str | list[str]) -> list[str]:
        """Normalize SLACK_DEFAULT_CHANNELS to a list of channel IDs.

        Accepts either a comma-separated string or a list of strings.
        """
        if isinstance(v, list):
            return [
                channel.strip()
                for channel in v
                if isinstance(channel, str) and channel.strip()
            ]
        if isinstance(v, str):
            return [channel.strip() for channel in v.split(",") if channel.strip()]
        return []

    @field_validator(
        "SLACK_MAX_CONCURRENT_REQUESTS",
        "SLACK_MAX_RETRIES",
        "SEARCH_PAGE_SIZE",
        "SEARCH_DEFAULT_LIMIT",
        "CHANNEL_BATCH_SIZE",
        "LIVE_TRANSIENT_ERROR_THRESHOLD",
        "REACTION_INITIAL_BATCH_SIZE",
        "REACTION_CHUNK_SIZE",
        "REACTION_FETCH_BATCH_SIZE",
        "CACHE_MAX_ENTRIES",
    )
    @classmethod
    def validate_positive_int(cls, v: int, info: ValidationInfo) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1, got {v}")
        return v

    @field_validator("SEARCH_PAGE_SIZE")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        # search.messages rejects count > 100
        if v > 100:
            raise ValueError(f"SEARCH_PAGE_SIZE must be <= 100, got {v}")
        return v

    @field_validator("LIVE_POLL_MIN_INTERVAL_SECONDS", "LIVE_HEARTBEAT_SECONDS")
    @classmethod
    def validate_positive_seconds(cls, v: float, info: ValidationInfo) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0, got {v}")
        return v

    @field_validator("LIVE_POLL_INTERVAL_SECONDS")
    @classmethod
    def validate_poll_interval(cls, v: float, info: ValidationInfo) -> float:
        """Reject poll intervals shorter than the configured minimum.

        Raises:
            ValueError: If the interval is below LIVE_POLL_MIN_INTERVAL_SECONDS
        """
        minimum = info.data.get("LIVE_POLL_MIN_INTERVAL_SECONDS", 5.0)
        if v < minimum:
            raise ValueError(
                f"LIVE_POLL_INTERVAL_SECONDS must be >= {minimum}, got {v}"
            )
        return v

    @field_validator("LIVE_POLL_ANCHOR_OFFSET_SECONDS")
    @classmethod
    def validate_anchor_offset(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"LIVE_POLL_ANCHOR_OFFSET_SECONDS must be >= 0, got {v}")
        return v

    @field_validator("REACTION_YIELD_SECONDS")
    @classmethod
    def validate_yield_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"REACTION_YIELD_SECONDS must be >= 0, got {v}")
        return v

    @field_validator("REACTION_SKIP_RATIO")
    @classmethod
    def validate_skip_ratio(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"REACTION_SKIP_RATIO must be in (0.0, 1.0], got {v}")
        return v

    @field_validator("RECONCILER_DUPLICATE_POLICY")
    @classmethod
    def validate_duplicate_policy(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in DUPLICATE_POLICIES:
            raise ValueError(
                f"RECONCILER_DUPLICATE_POLICY must be one of {DUPLICATE_POLICIES}, "
                f"got {v!r}"
            )
        return normalized

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown LOG_LEVEL {v!r}")
        return level

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.DATA_DIR = os.path.abspath(self.DATA_DIR)

    def ensure_data_dirs(self) -> None:
        """Create the data directory on demand instead of at import time."""
        Path(self.DATA_DIR).mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings instance with lazy initialization.

    Settings are only created once on first access, then cached for subsequent calls.

    Returns:
        Settings: Application settings object
    """
    return Settings()


def reset_settings() -> None:
    """Reset the cached settings instance.

    Useful for testing when you need to reload settings with different values.
    """
    get_settings.cache_clear()
