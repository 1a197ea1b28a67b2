"""Configuration management for PageSense using pydantic-settings.

Settings are read from ``PAGESENSE_*`` environment variables or a ``.env``
file. Per-call option objects in :mod:`pagesense.perception.config` take their
defaults from here.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PageSenseSettings(BaseSettings):
    """Main configuration settings for PageSense."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAGESENSE_",
        case_sensitive=False,
        extra="forbid",
    )

    # Stability settings
    stability_timeout_ms: int = Field(3000, ge=0, description="Overall wait budget")
    stability_threshold_ms: int = Field(
        300, ge=0, description="Quiet period without DOM mutations"
    )
    stability_min_wait_ms: int = Field(100, ge=0, description="Minimum time to wait")
    wait_for_network: bool = Field(True, description="Also require network quiet")
    network_idle_threshold_ms: int = Field(
        500, ge=0, description="Quiet period without resource loads"
    )
    stability_poll_interval_ms: int = Field(50, gt=0, description="Quiescence check cadence")

    # Tagger settings
    retag_debounce_ms: int = Field(100, ge=0, description="Auto-tagger debounce window")
    auto_tag: bool = Field(True, description="Start the auto-tagger on attach")

    # Protocol settings
    cdp_timeout: float = Field(30.0, gt=0, description="Timeout for a protocol call in seconds")
    cdp_retries: int = Field(3, ge=0, description="Retries when opening a protocol session")

    # Serialization settings
    name_max_length: int = Field(100, gt=0, description="Accessible name truncation")
    value_max_length: int = Field(200, gt=0, description="Value truncation")
    payload_warning_bytes: int = Field(3 * 1024 * 1024, gt=0, description="Soft size threshold")
    payload_max_bytes: int = Field(4 * 1024 * 1024, gt=0, description="Hard size ceiling")

    # Logging settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Log level"
    )
    structured_logs: bool = Field(False, description="Render logs as JSON")

    def validate_payload_limits(self) -> None:
        """Validate that the soft threshold sits below the hard ceiling."""
        if self.payload_warning_bytes >= self.payload_max_bytes:
            raise ValueError(
                "payload_warning_bytes must be smaller than payload_max_bytes, got "
                f"{self.payload_warning_bytes} >= {self.payload_max_bytes}"
            )

    def model_post_init(self, __context) -> None:
        """Post-initialization validation."""
        self.validate_payload_limits()


# Singleton instance
_settings: PageSenseSettings | None = None


def get_settings() -> PageSenseSettings:
    """Get the singleton settings instance.

    Returns:
        PageSenseSettings instance
    """
    global _settings

    if _settings is None:
        _settings = PageSenseSettings()

    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (mainly for testing)."""
    global _settings
    _settings = None
