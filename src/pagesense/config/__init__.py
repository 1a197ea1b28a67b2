"""Process-wide settings for PageSense.

Usage:
    from pagesense.config import get_settings

    settings = get_settings()
    settings.stability_threshold_ms
"""

from .settings import PageSenseSettings, get_settings, reset_settings

__all__ = ["PageSenseSettings", "get_settings", "reset_settings"]
