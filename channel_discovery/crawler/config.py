"""Crawler configuration.

Controls pacing, retry bounds, account rotation heuristics and the spam
escalation path. All settings can be overridden via ``CRAWLER_*``
environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CrawlerConfig(BaseSettings):
    """Configuration for a discovery crawl pass."""

    model_config = SettingsConfigDict(
        env_prefix="CRAWLER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Batch and pacing
    batch_size: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Maximum unparsed sources loaded per pass",
    )
    request_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause after each successfully parsed source",
    )
    error_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Pause before retrying a source after a generic error",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts per source before it is marked parsed with an error",
    )

    # Under-provisioned accounts return short recommendation lists
    low_yield_threshold: int = Field(
        default=15,
        ge=1,
        description="Non-empty results at or below this size count as low yield",
    )
    low_yield_streak: int = Field(
        default=3,
        ge=1,
        description="Consecutive low-yield sources before the account is marked no-quota",
    )

    # Spam escalation
    not_found_streak_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive not-found sources before the spam probe is consulted",
    )
    spam_ban_seconds: int = Field(
        default=86_400,
        ge=0,
        description="Rate-limit window imposed on an account flagged as spam-restricted",
    )
    spam_probe_reply_delay: float = Field(
        default=3.0,
        ge=0.0,
        description="Seconds to wait for the spam bot reply",
    )
    spam_probe_reliable: bool = Field(
        default=False,
        description="Require two positive spam probes before flagging an account",
    )

    # Rotation and unlock waiting
    safety_buffer_seconds: int = Field(
        default=60,
        ge=0,
        description="Added to every advertised rate-limit wait",
    )
    unlock_log_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="How often remaining time is logged while waiting for an unlock",
    )
    max_unlock_wait_seconds: int | None = Field(
        default=None,
        ge=0,
        description="Longest wait rotate() will block for (None = unbounded)",
    )
    critical_wait_seconds: int = Field(
        default=300,
        ge=1,
        description="Rate-limit waits above this are logged at error level",
    )

    progress_log_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Interval of the periodic progress log during a pass",
    )
