"""
dashsync Configuration Management

Centralized configuration using Pydantic Settings for type-safe environment
variable loading with validation. All variables use the ``DASHSYNC_`` prefix,
e.g. ``DASHSYNC_UPDATE_DELAY_SECONDS=0.5``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from dashsync.resilience.caching.cache_invalidation import DelayPolicy
    from dashsync.resilience.retry import RetryPolicy


class SyncSettings(BaseSettings):
    """Settings for the data-synchronization layer."""

    model_config = SettingsConfigDict(
        env_prefix="DASHSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ═══════════════════════════════════════════════════════════════
    # QUERY CACHE
    # ═══════════════════════════════════════════════════════════════
    stale_time_seconds: float = Field(
        default=30.0, ge=0, description="How long a fetched result stays fresh"
    )
    gc_time_seconds: float = Field(
        default=300.0, ge=0, description="Retention of unobserved stale entries"
    )
    gc_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval of the periodic garbage sweep"
    )

    # ═══════════════════════════════════════════════════════════════
    # INVALIDATION DELAYS (empirical, tunable)
    # ═══════════════════════════════════════════════════════════════
    insert_delay_seconds: float = Field(default=0.1, ge=0, description="Delay after insert events")
    delete_delay_seconds: float = Field(default=0.1, ge=0, description="Delay after delete events")
    update_delay_seconds: float = Field(default=0.3, ge=0, description="Delay after update events")
    wildcard_delay_seconds: float | None = Field(
        default=None, ge=0, description="Delay after wildcard events (defaults to update delay)"
    )

    # ═══════════════════════════════════════════════════════════════
    # RETRY
    # ═══════════════════════════════════════════════════════════════
    retry_max_attempts: int = Field(default=3, ge=1, description="Max attempts per operation")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, description="First backoff wait")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1, description="Backoff growth factor")
    retry_max_delay_seconds: float | None = Field(
        default=None, ge=0, description="Ceiling for a single backoff wait"
    )

    # ═══════════════════════════════════════════════════════════════
    # CHANGE FEED (Optional)
    # ═══════════════════════════════════════════════════════════════
    redis_url: str | None = Field(default=None, description="Redis URL for the change feed")
    feed_channel_prefix: str = Field(
        default="dashsync:changes:", description="Prefix of change feed channel names"
    )

    # ═══════════════════════════════════════════════════════════════
    # LOGGING
    # ═══════════════════════════════════════════════════════════════
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_json: bool = Field(default=False, description="Render logs as JSON")
    log_configure: bool = Field(
        default=True, description="Configure structlog when a sync session starts"
    )

    @model_validator(mode="after")
    def validate_delay_ordering(self) -> SyncSettings:
        """Update events must wait at least as long as inserts and deletes."""
        shortest_safe = max(self.insert_delay_seconds, self.delete_delay_seconds)
        if self.update_delay_seconds < shortest_safe:
            raise ValueError(
                "update_delay_seconds must be >= insert_delay_seconds and delete_delay_seconds"
            )
        if self.wildcard_delay_seconds is not None and self.wildcard_delay_seconds < shortest_safe:
            raise ValueError(
                "wildcard_delay_seconds must be >= insert_delay_seconds and delete_delay_seconds"
            )
        return self

    def delay_policy(self) -> DelayPolicy:
        """Build the invalidation delay policy from these settings."""
        from dashsync.resilience.caching.cache_invalidation import DelayPolicy

        return DelayPolicy(
            insert=self.insert_delay_seconds,
            update=self.update_delay_seconds,
            delete=self.delete_delay_seconds,
            wildcard=self.wildcard_delay_seconds,
        )

    def retry_policy(self) -> RetryPolicy:
        """Build the default retry policy from these settings."""
        from dashsync.resilience.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay=self.retry_max_delay_seconds,
        )


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
