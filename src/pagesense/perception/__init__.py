"""
Page perception for browser automation agents.

Gives an agent a stable, compact, addressable view of a live page:
persistent identifiers on interactive elements, an element model fused
from the accessibility tree and the DOM, a minimal wire format, and waits
for the page to settle before any of it runs.
"""

from pagesense.perception.ax_filter import (
    AccessibilityMapping,
    convert_ax_node,
    filter_interactive_ax_nodes,
)
from pagesense.perception.cdp_extractor import ProtocolExtractionAdapter, ProtocolSession
from pagesense.perception.config import (
    ExtractionConfig,
    FusionOptions,
    SizeLimits,
    StabilityConfig,
    TaggerConfig,
)
from pagesense.perception.exceptions import (
    ExtractionTimeoutError,
    NodeResolutionError,
    PayloadTooLargeError,
    PerceptionError,
    ProtocolError,
    ValidationError,
)
from pagesense.perception.fusion import (
    analyze_coverage,
    create_hybrid_element,
    select_elements_accessibility_first,
)
from pagesense.perception.models import (
    BoundingBox,
    CoverageMetrics,
    DOMElementInfo,
    ExtractionMeta,
    ExtractionResult,
    HybridElement,
    Provenance,
    ScrollInfo,
    SemanticNode,
    SimplifiedAXElement,
    TaggedElement,
    ViewportInfo,
)
from pagesense.perception.mutations import ChangeBatch, ChangeSource, ChangeSubscription
from pagesense.perception.pipeline import FusionExtractor, PagePerception
from pagesense.perception.serializer import (
    SemanticSerializer,
    format_byte_size,
    get_byte_size,
    legend,
    serialize,
    validate_size,
)
from pagesense.perception.stability import (
    ActivityMonitor,
    PageReadyResult,
    StabilityResult,
    StabilityWaiter,
    wait_for_stability,
)
from pagesense.perception.tagging import StableIdTagger, TaggingContext

__all__ = [
    "AccessibilityMapping",
    "ActivityMonitor",
    "BoundingBox",
    "ChangeBatch",
    "ChangeSource",
    "ChangeSubscription",
    "CoverageMetrics",
    "DOMElementInfo",
    "ExtractionConfig",
    "ExtractionMeta",
    "ExtractionResult",
    "ExtractionTimeoutError",
    "FusionExtractor",
    "FusionOptions",
    "HybridElement",
    "NodeResolutionError",
    "PagePerception",
    "PageReadyResult",
    "PayloadTooLargeError",
    "PerceptionError",
    "ProtocolError",
    "ProtocolExtractionAdapter",
    "ProtocolSession",
    "Provenance",
    "ScrollInfo",
    "SemanticNode",
    "SemanticSerializer",
    "SimplifiedAXElement",
    "SizeLimits",
    "StabilityConfig",
    "StabilityResult",
    "StabilityWaiter",
    "StableIdTagger",
    "TaggedElement",
    "TaggerConfig",
    "TaggingContext",
    "ValidationError",
    "ViewportInfo",
    "analyze_coverage",
    "convert_ax_node",
    "create_hybrid_element",
    "filter_interactive_ax_nodes",
    "format_byte_size",
    "get_byte_size",
    "legend",
    "select_elements_accessibility_first",
    "serialize",
    "validate_size",
    "wait_for_stability",
]
