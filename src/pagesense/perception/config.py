"""Per-call options for the perception pipeline.

Each option object validates itself on construction and can be built from
the process-wide :class:`~pagesense.config.PageSenseSettings`.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any

from ..config import PageSenseSettings, get_settings
from .exceptions import ValidationError


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class StabilityConfig:
    """
    Options for waiting on page quiescence.

    Attributes
    ----------
    timeout_ms : int
        Overall budget after which the wait resolves as not stable.
    stability_threshold_ms : int
        How long the DOM must go without mutations.
    min_wait_ms : int
        The wait never resolves earlier than this.
    wait_for_network : bool
        Also require a quiet period without resource loads.
    network_idle_threshold_ms : int
        How long the network must stay quiet.
    poll_interval_ms : int
        Cadence of the quiescence check.
    """

    timeout_ms: int = 3000
    stability_threshold_ms: int = 300
    min_wait_ms: int = 100
    wait_for_network: bool = True
    network_idle_threshold_ms: int = 500
    poll_interval_ms: int = 50

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Validate stability options.

        Raises:
            ValidationError: If any option is invalid.
        """
        for name in (
            "timeout_ms",
            "stability_threshold_ms",
            "min_wait_ms",
            "network_idle_threshold_ms",
        ):
            value = getattr(self, name)
            if value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}")
        if self.poll_interval_ms <= 0:
            raise ValidationError(
                f"poll_interval_ms must be > 0, got {self.poll_interval_ms}"
            )

    @classmethod
    def from_settings(cls, settings: PageSenseSettings | None = None) -> "StabilityConfig":
        settings = settings or get_settings()
        return cls(
            timeout_ms=settings.stability_timeout_ms,
            stability_threshold_ms=settings.stability_threshold_ms,
            min_wait_ms=settings.stability_min_wait_ms,
            wait_for_network=settings.wait_for_network,
            network_idle_threshold_ms=settings.network_idle_threshold_ms,
            poll_interval_ms=settings.stability_poll_interval_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StabilityConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class TaggerConfig:
    """Options for stable identity tagging."""

    debounce_ms: int = 100
    pierce_shadow: bool = True
    auto_tag: bool = True
    # Polling cadence for the page-side mutation buffer
    poll_interval_ms: int = 50

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.debounce_ms < 0:
            raise ValidationError(f"debounce_ms must be >= 0, got {self.debounce_ms}")
        if self.poll_interval_ms <= 0:
            raise ValidationError(
                f"poll_interval_ms must be > 0, got {self.poll_interval_ms}"
            )

    @classmethod
    def from_settings(cls, settings: PageSenseSettings | None = None) -> "TaggerConfig":
        settings = settings or get_settings()
        return cls(debounce_ms=settings.retag_debounce_ms, auto_tag=settings.auto_tag)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaggerConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class ExtractionConfig:
    """
    Options for the protocol extraction path.

    Attributes
    ----------
    viewport_only : bool
        Drop nodes whose box does not intersect the scrolled viewport.
    name_max_length : int
        Accessible names are truncated to this many characters.
    value_max_length : int
        Values are truncated to this many characters.
    timeout_seconds : float
        Timeout applied to each protocol round-trip.
    max_retries : int
        Retries when opening the protocol session.
    """

    viewport_only: bool = True
    name_max_length: int = 100
    value_max_length: int = 200
    timeout_seconds: float = 30.0
    max_retries: int = 3

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.name_max_length < 1:
            raise ValidationError(
                f"name_max_length must be >= 1, got {self.name_max_length}"
            )
        if self.value_max_length < 1:
            raise ValidationError(
                f"value_max_length must be >= 1, got {self.value_max_length}"
            )
        if self.timeout_seconds <= 0:
            raise ValidationError(
                f"timeout_seconds must be > 0, got {self.timeout_seconds}"
            )
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")

    @classmethod
    def from_settings(cls, settings: PageSenseSettings | None = None) -> "ExtractionConfig":
        settings = settings or get_settings()
        return cls(
            name_max_length=settings.name_max_length,
            value_max_length=settings.value_max_length,
            timeout_seconds=settings.cdp_timeout,
            max_retries=settings.cdp_retries,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionConfig":
        return cls(**_known_fields(cls, data))


@dataclass
class FusionOptions:
    """Precedence rules used when an accessibility and a DOM record are merged.

    ``detect_occlusion`` and ``detect_scrollable`` control the overlay and
    scroll facts collected for DOM records.
    """

    prefer_accessibility: bool = True
    supplement_with_dom: bool = True
    detect_occlusion: bool = True
    detect_scrollable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FusionOptions":
        return cls(**_known_fields(cls, data))


@dataclass
class SizeLimits:
    """Byte thresholds for the payload size guard."""

    warning_bytes: int = 3 * 1024 * 1024
    max_bytes: int = 4 * 1024 * 1024

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.max_bytes <= 0:
            raise ValidationError(f"max_bytes must be > 0, got {self.max_bytes}")
        if not 0 < self.warning_bytes < self.max_bytes:
            raise ValidationError(
                f"warning_bytes must be in (0, {self.max_bytes}), got {self.warning_bytes}"
            )

    @classmethod
    def from_settings(cls, settings: PageSenseSettings | None = None) -> "SizeLimits":
        settings = settings or get_settings()
        return cls(
            warning_bytes=settings.payload_warning_bytes,
            max_bytes=settings.payload_max_bytes,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
