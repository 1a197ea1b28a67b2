"""Tests for settings and per-call perception options."""

import pytest

from pagesense.config import PageSenseSettings, get_settings, reset_settings
from pagesense.perception.config import (
    ExtractionConfig,
    FusionOptions,
    SizeLimits,
    StabilityConfig,
    TaggerConfig,
)
from pagesense.perception.exceptions import ValidationError


class TestPageSenseSettings:
    """Test environment-driven settings."""

    def test_defaults(self) -> None:
        """Defaults match the documented thresholds."""
        settings = PageSenseSettings()

        assert settings.stability_timeout_ms == 3000
        assert settings.stability_threshold_ms == 300
        assert settings.stability_min_wait_ms == 100
        assert settings.network_idle_threshold_ms == 500
        assert settings.retag_debounce_ms == 100
        assert settings.payload_warning_bytes == 3 * 1024 * 1024
        assert settings.payload_max_bytes == 4 * 1024 * 1024

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """PAGESENSE_ variables override defaults."""
        monkeypatch.setenv("PAGESENSE_STABILITY_THRESHOLD_MS", "450")
        monkeypatch.setenv("PAGESENSE_AUTO_TAG", "false")

        settings = PageSenseSettings()

        assert settings.stability_threshold_ms == 450
        assert settings.auto_tag is False

    def test_payload_limits_validated(self) -> None:
        """The warning threshold must sit below the ceiling."""
        with pytest.raises(ValueError):
            PageSenseSettings(payload_warning_bytes=10, payload_max_bytes=10)

    def test_singleton_and_reset(self) -> None:
        """get_settings caches until reset."""
        first = get_settings()
        assert get_settings() is first

        reset_settings()

        assert get_settings() is not first


class TestStabilityConfig:
    """Test stability options."""

    def test_from_settings(self) -> None:
        """Options mirror the settings."""
        settings = PageSenseSettings(stability_timeout_ms=1000, wait_for_network=False)

        config = StabilityConfig.from_settings(settings)

        assert config.timeout_ms == 1000
        assert config.wait_for_network is False
        assert config.stability_threshold_ms == 300

    def test_negative_threshold_rejected(self) -> None:
        """Negative durations are invalid."""
        with pytest.raises(ValidationError, match="stability_threshold_ms"):
            StabilityConfig(stability_threshold_ms=-1)

    def test_zero_poll_interval_rejected(self) -> None:
        """The poll interval must be positive."""
        with pytest.raises(ValidationError):
            StabilityConfig(poll_interval_ms=0)

    def test_dict_round_trip_ignores_unknown_keys(self) -> None:
        """from_dict drops keys it does not know."""
        data = StabilityConfig(timeout_ms=700).to_dict()
        data["unknown"] = True

        assert StabilityConfig.from_dict(data) == StabilityConfig(timeout_ms=700)


class TestOtherOptions:
    """Test tagging, extraction, fusion and size options."""

    def test_tagger_config_from_settings(self) -> None:
        """Debounce and auto-tag come from settings."""
        config = TaggerConfig.from_settings(PageSenseSettings(retag_debounce_ms=250))

        assert config.debounce_ms == 250
        assert config.pierce_shadow is True

    def test_extraction_config_validation(self) -> None:
        """Truncation limits must be positive."""
        with pytest.raises(ValidationError):
            ExtractionConfig(name_max_length=0)
        with pytest.raises(ValidationError):
            ExtractionConfig(timeout_seconds=0)

    def test_fusion_options_defaults(self) -> None:
        """Accessibility wins by default."""
        options = FusionOptions()

        assert options.prefer_accessibility is True
        assert options.supplement_with_dom is True
        assert options.detect_occlusion is True
        assert FusionOptions.from_dict({"detect_scrollable": False, "unknown": 1}).to_dict() == {
            "prefer_accessibility": True,
            "supplement_with_dom": True,
            "detect_occlusion": True,
            "detect_scrollable": False,
        }

    def test_size_limits_ordering(self) -> None:
        """The warning threshold must be below the ceiling."""
        with pytest.raises(ValidationError):
            SizeLimits(warning_bytes=100, max_bytes=100)

        limits = SizeLimits.from_settings(PageSenseSettings())
        assert limits.max_bytes == 4 * 1024 * 1024
