"""
Data models for page perception.

These models describe the element views built for one extraction call:
raw accessibility nodes from the protocol, DOM facts collected in the page,
the fused hybrid elements, and the compact wire nodes sent downstream.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Wire ids of elements without a data-llm-id are "b" + backendNodeId
BACKEND_ID_PREFIX = "b"


def backend_wire_id(backend_node_id: int) -> str:
    return f"{BACKEND_ID_PREFIX}{backend_node_id}"


class Provenance(str, Enum):
    """Which source(s) a hybrid element was built from."""

    ACCESSIBILITY = "accessibility"
    DOM = "dom"
    HYBRID = "hybrid"


@dataclass
class BoundingBox:
    """Bounding box in document coordinates (CSS pixels)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> tuple[int, int]:
        return (round(self.x + self.width / 2), round(self.y + self.height / 2))

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def to_list(self) -> list[int]:
        """Rounded ``[x, y, w, h]`` as used on the wire."""
        return [round(self.x), round(self.y), round(self.width), round(self.height)]

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> "BoundingBox":
        return cls(x=data["x"], y=data["y"], width=data["width"], height=data["height"])

    @classmethod
    def from_list(cls, values: list[float]) -> "BoundingBox":
        x, y, width, height = values[:4]
        return cls(x=x, y=y, width=width, height=height)

    def intersects(self, other: "BoundingBox") -> bool:
        return not (
            self.x2 <= other.x
            or other.x2 <= self.x
            or self.y2 <= other.y
            or other.y2 <= self.y
        )

    def contains(self, other: "BoundingBox") -> bool:
        return (
            self.x <= other.x
            and self.y <= other.y
            and self.x2 >= other.x2
            and self.y2 >= other.y2
        )


@dataclass
class ViewportInfo:
    """Viewport size and scroll offset of the page."""

    width: int = 1920
    height: int = 1080
    scroll_x: int = 0
    scroll_y: int = 0

    @classmethod
    def from_metrics(cls, value: dict[str, Any] | None) -> "ViewportInfo":
        """Build from page metrics; missing or zero sizes fall back to 1920x1080."""
        value = value or {}
        return cls(
            width=int(value.get("width") or 1920),
            height=int(value.get("height") or 1080),
            scroll_x=int(value.get("scrollX") or 0),
            scroll_y=int(value.get("scrollY") or 0),
        )

    @property
    def rect(self) -> BoundingBox:
        """The visible region in document coordinates."""
        return BoundingBox(self.scroll_x, self.scroll_y, self.width, self.height)

    @property
    def scroll_description(self) -> str:
        if self.scroll_y > 0:
            return f"scrolled {self.scroll_y}px down"
        return "top"

    def to_dict(self) -> dict[str, int]:
        return {
            "width": self.width,
            "height": self.height,
            "scrollX": self.scroll_x,
            "scrollY": self.scroll_y,
        }


@dataclass(frozen=True)
class ScrollInfo:
    """Scroll state of a scrollable container."""

    depth: str = "0%"
    has_more: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {"depth": self.depth, "h": self.has_more}

    @classmethod
    def from_page(cls, data: dict[str, Any] | None) -> "ScrollInfo | None":
        if not data:
            return None
        return cls(depth=str(data.get("depth") or "0%"), has_more=bool(data.get("hasMore")))


@dataclass
class AXNode:
    """A node of the full accessibility tree as reported by the protocol."""

    node_id: str
    ignored: bool = False
    role: str = ""
    chrome_role: str = ""
    name: str = ""
    description: str = ""
    value: Any = None
    properties: dict[str, Any] = field(default_factory=dict)
    backend_dom_node_id: int | None = None
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)

    def prop(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)

    @classmethod
    def from_cdp(cls, node: dict[str, Any]) -> "AXNode":
        """Create from an ``Accessibility.getFullAXTree`` node."""

        def ax_value(key: str) -> Any:
            entry = node.get(key)
            return entry.get("value") if isinstance(entry, dict) else None

        properties = {
            p["name"]: (p.get("value") or {}).get("value")
            for p in node.get("properties", [])
            if "name" in p
        }
        return cls(
            node_id=str(node.get("nodeId", "")),
            ignored=bool(node.get("ignored", False)),
            role=ax_value("role") or "",
            chrome_role=ax_value("chromeRole") or "",
            name=ax_value("name") or "",
            description=ax_value("description") or "",
            value=ax_value("value"),
            properties=properties,
            backend_dom_node_id=node.get("backendDOMNodeId"),
            parent_id=node.get("parentId"),
            child_ids=[str(c) for c in node.get("childIds", [])],
        )


@dataclass
class SimplifiedAXElement:
    """Interactive projection of an accessibility node."""

    ax_node_id: str
    role: str
    name: str = ""
    description: str = ""
    value: str = ""
    interactive: bool = True
    backend_dom_node_id: int | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    has_popup: str | None = None
    expanded: bool | None = None
    states: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "axNodeId": self.ax_node_id,
            "role": self.role,
            "name": self.name,
            "description": self.description,
            "value": self.value,
            "interactive": self.interactive,
            "backendDOMNodeId": self.backend_dom_node_id,
            "attributes": dict(self.attributes),
            "hasPopup": self.has_popup,
            "expanded": self.expanded,
            "states": list(self.states),
        }


@dataclass
class DOMElementInfo:
    """Facts about one interactive DOM element collected in the page."""

    index: int
    tag_name: str
    attributes: dict[str, str] = field(default_factory=dict)
    text_content: str = ""
    label: str = ""
    value: str = ""
    stable_id: int | None = None
    backend_node_id: int | None = None
    bbox: BoundingBox | None = None
    in_shadow: bool = False
    frame_id: int = 0
    states: list[str] = field(default_factory=list)
    occluded: bool = False
    scroll: ScrollInfo | None = None

    def attr(self, name: str) -> str | None:
        return self.attributes.get(name)

    @classmethod
    def from_page(cls, data: dict[str, Any]) -> "DOMElementInfo":
        """Create from a record produced by the page-side collector."""
        rect = data.get("rect")
        stable_id = data.get("stableId")
        return cls(
            index=int(data.get("index", 0)),
            tag_name=str(data.get("tagName", "")).lower(),
            attributes=dict(data.get("attributes") or {}),
            text_content=data.get("text") or "",
            label=data.get("label") or "",
            value=data.get("value") or "",
            stable_id=int(stable_id) if stable_id not in (None, "") else None,
            bbox=BoundingBox.from_dict(rect) if rect else None,
            in_shadow=bool(data.get("inShadow", False)),
            frame_id=int(data.get("frameId") or 0),
            states=list(data.get("states") or []),
            occluded=bool(data.get("occluded", False)),
            scroll=ScrollInfo.from_page(data.get("scroll")),
        )


@dataclass
class HybridElement:
    """The fused element record consumed by the rest of the system.

    ``id`` is the wire identifier: the element's stable id, or
    ``b{backendNodeId}`` when it carries no marker.
    """

    id: str
    role: str
    name: str = ""
    description: str = ""
    value: str = ""
    interactive: bool = True
    provenance: Provenance = Provenance.ACCESSIBILITY
    ax_element: SimplifiedAXElement | None = None
    dom_element: DOMElementInfo | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    bbox: BoundingBox | None = None
    has_popup: str | None = None
    expanded: bool | None = None
    states: list[str] = field(default_factory=list)
    occluded: bool = False
    scroll: ScrollInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "name": self.name,
            "description": self.description,
            "value": self.value,
            "interactive": self.interactive,
            "source": self.provenance.value,
            "attributes": dict(self.attributes),
            "bbox": self.bbox.to_dict() if self.bbox else None,
            "hasPopup": self.has_popup,
            "expanded": self.expanded,
            "states": list(self.states),
            "occluded": self.occluded,
            "scroll": self.scroll.to_wire() if self.scroll else None,
        }


@dataclass
class CoverageMetrics:
    """How much of the interactive surface the accessibility source covered."""

    ax_only: int = 0
    dom_only: int = 0
    overlap: int = 0
    total_interactive: int = 0
    total_ax_nodes: int = 0
    ax_coverage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "axOnlyElements": self.ax_only,
            "domOnlyElements": self.dom_only,
            "overlapElements": self.overlap,
            "totalInteractive": self.total_interactive,
            "totalAXNodes": self.total_ax_nodes,
            "axCoverage": self.ax_coverage,
        }


@dataclass(frozen=True)
class SemanticNode:
    """Wire form of one element. Keys are minified by :meth:`to_wire`."""

    id: str
    role: str
    name: str
    value: str | None = None
    state: tuple[str, ...] = ()
    xy: tuple[int, int] | None = None
    box: tuple[int, int, int, int] | None = None
    frame: int | None = None
    occluded: bool = False
    scroll: ScrollInfo | None = None

    def to_wire(self) -> dict[str, Any]:
        node: dict[str, Any] = {"i": self.id, "r": self.role, "n": self.name}
        if self.value:
            node["v"] = self.value
        if self.state:
            node["s"] = ",".join(self.state)
        if self.xy is not None:
            node["xy"] = list(self.xy)
        if self.box is not None:
            node["box"] = list(self.box)
        if self.frame:
            node["f"] = self.frame
        if self.occluded:
            node["occ"] = True
        if self.scroll is not None:
            node["scr"] = self.scroll.to_wire()
        return node


@dataclass
class ExtractionMeta:
    """Statistics returned with every extraction, even an empty one."""

    node_count: int = 0
    extraction_time_ms: float = 0.0
    ax_node_count: int = 0
    estimated_tokens: int = 0
    source: str = "protocol"
    coverage: CoverageMetrics | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "nodeCount": self.node_count,
            "extractionTimeMs": round(self.extraction_time_ms, 2),
            "axNodeCount": self.ax_node_count,
            "estimatedTokens": self.estimated_tokens,
            "source": self.source,
        }
        if self.coverage is not None:
            data["coverage"] = self.coverage.to_dict()
        return data


@dataclass
class ExtractionResult:
    """Everything one ``extract()`` call hands to the consumer."""

    interactive_tree: list[SemanticNode] = field(default_factory=list)
    viewport: ViewportInfo = field(default_factory=ViewportInfo)
    page_title: str = ""
    url: str = ""
    meta: ExtractionMeta = field(default_factory=ExtractionMeta)

    @property
    def scroll_position(self) -> str:
        return self.viewport.scroll_description

    def to_dict(self) -> dict[str, Any]:
        return {
            "interactiveTree": [node.to_wire() for node in self.interactive_tree],
            "viewport": {"width": self.viewport.width, "height": self.viewport.height},
            "pageTitle": self.page_title,
            "url": self.url,
            "scrollPosition": self.scroll_position,
            "meta": self.meta.to_dict(),
        }


@dataclass
class TaggedElement:
    """Metadata about one element carrying a stable identity marker."""

    id: int
    tag_name: str
    is_in_shadow: bool = False
    frame_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tagName": self.tag_name,
            "isInShadow": self.is_in_shadow,
            "frameId": self.frame_id,
        }
