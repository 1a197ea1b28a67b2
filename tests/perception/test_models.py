"""Tests for perception data models."""

from pagesense.perception.models import (
    AXNode,
    BoundingBox,
    CoverageMetrics,
    DOMElementInfo,
    ExtractionMeta,
    ExtractionResult,
    ScrollInfo,
    SemanticNode,
    ViewportInfo,
)


class TestBoundingBox:
    """Test box geometry."""

    def test_geometry(self) -> None:
        box = BoundingBox(10, 20, 30, 40)

        assert box.x2 == 40
        assert box.y2 == 60
        assert box.center == (25, 40)
        assert box.area == 1200
        assert box.to_list() == [10, 20, 30, 40]

    def test_intersection_is_strict(self) -> None:
        """Boxes that only touch do not intersect."""
        viewport = BoundingBox(0, 0, 1920, 1080)

        assert BoundingBox(100, 100, 100, 40).intersects(viewport)
        assert not BoundingBox(100, 2000, 100, 40).intersects(viewport)
        assert not BoundingBox(0, 1080, 10, 10).intersects(viewport)
        assert BoundingBox(-5, -5, 10, 10).intersects(viewport)

    def test_contains(self) -> None:
        outer = BoundingBox(0, 0, 100, 100)

        assert outer.contains(BoundingBox(10, 10, 20, 20))
        assert not outer.contains(BoundingBox(90, 90, 20, 20))


class TestViewportInfo:
    """Test viewport metrics."""

    def test_from_metrics_defaults(self) -> None:
        """Missing or zero sizes fall back to 1920x1080."""
        viewport = ViewportInfo.from_metrics({"width": 0, "scrollY": 250})

        assert (viewport.width, viewport.height) == (1920, 1080)
        assert viewport.rect == BoundingBox(0, 250, 1920, 1080)
        assert ViewportInfo.from_metrics(None) == ViewportInfo()

    def test_scroll_description(self) -> None:
        assert ViewportInfo().scroll_description == "top"
        assert ViewportInfo(scroll_y=400).scroll_description == "scrolled 400px down"


class TestAXNode:
    """Test parsing protocol accessibility nodes."""

    def test_from_cdp(self, cdp_factories) -> None:
        raw = cdp_factories["ax_node"](
            "17", "checkbox", "Remember me", backend_id=88, properties={"checked": True}
        )
        raw["childIds"] = [18, 19]

        node = AXNode.from_cdp(raw)

        assert node.node_id == "17"
        assert node.role == "checkbox"
        assert node.name == "Remember me"
        assert node.backend_dom_node_id == 88
        assert node.prop("checked") is True
        assert node.child_ids == ["18", "19"]
        assert node.value is None

    def test_from_cdp_missing_fields(self) -> None:
        """Sparse nodes parse with defaults."""
        node = AXNode.from_cdp({"nodeId": "1", "ignored": True})

        assert node.ignored is True
        assert node.role == ""
        assert node.properties == {}


class TestDOMElementInfo:
    """Test parsing page-side DOM records."""

    def test_from_page(self) -> None:
        element = DOMElementInfo.from_page(
            {
                "index": 3,
                "tagName": "INPUT",
                "stableId": 12,
                "attributes": {"type": "email"},
                "text": "",
                "label": "Email",
                "value": "a@b.c",
                "rect": {"x": 1, "y": 2, "width": 3, "height": 4},
                "inShadow": True,
                "frameId": 2,
                "states": ["required"],
            }
        )

        assert element.tag_name == "input"
        assert element.stable_id == 12
        assert element.attr("type") == "email"
        assert element.bbox == BoundingBox(1, 2, 3, 4)
        assert element.in_shadow is True
        assert element.frame_id == 2
        assert element.states == ["required"]

    def test_from_page_untagged(self) -> None:
        element = DOMElementInfo.from_page({"index": 0, "tagName": "a", "stableId": None})

        assert element.stable_id is None
        assert element.bbox is None
        assert element.occluded is False
        assert element.scroll is None

    def test_from_page_overlay_and_scroll_facts(self) -> None:
        element = DOMElementInfo.from_page(
            {
                "index": 1,
                "tagName": "DIV",
                "occluded": True,
                "scroll": {"depth": "40%", "hasMore": True},
            }
        )

        assert element.occluded is True
        assert element.scroll == ScrollInfo(depth="40%", has_more=True)


class TestExtractionResult:
    """Test the consumer-facing result."""

    def test_to_dict(self) -> None:
        result = ExtractionResult(
            interactive_tree=[SemanticNode("1", "btn", "Go", xy=(5, 5))],
            viewport=ViewportInfo(1280, 720, 0, 90),
            page_title="Shop",
            url="https://shop.test/",
            meta=ExtractionMeta(
                node_count=1,
                extraction_time_ms=12.3456,
                ax_node_count=40,
                estimated_tokens=9,
                source="fusion",
                coverage=CoverageMetrics(overlap=1, ax_coverage=50.0),
            ),
        )

        data = result.to_dict()

        assert data["interactiveTree"] == [{"i": "1", "r": "btn", "n": "Go", "xy": [5, 5]}]
        assert data["viewport"] == {"width": 1280, "height": 720}
        assert data["scrollPosition"] == "scrolled 90px down"
        assert data["meta"]["extractionTimeMs"] == 12.35
        assert data["meta"]["source"] == "fusion"
        assert data["meta"]["coverage"]["axCoverage"] == 50.0

    def test_empty_result_still_has_meta(self) -> None:
        data = ExtractionResult().to_dict()

        assert data["interactiveTree"] == []
        assert data["meta"]["nodeCount"] == 0
        assert "coverage" not in data["meta"]
