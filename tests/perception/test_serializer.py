"""Tests for the semantic serializer and payload size guard."""

import json
from unittest.mock import patch

import pytest

from pagesense.perception import serializer as serializer_module
from pagesense.perception.config import SizeLimits
from pagesense.perception.exceptions import PayloadTooLargeError
from pagesense.perception.models import (
    BoundingBox,
    DOMElementInfo,
    HybridElement,
    Provenance,
    ScrollInfo,
    SemanticNode,
)
from pagesense.perception.serializer import (
    MAX_PAYLOAD_BYTES,
    SemanticSerializer,
    abbreviate_role,
    estimate_tokens,
    format_byte_size,
    get_byte_size,
    legend,
    to_json,
    validate_size,
)


class TestRoleAbbreviation:
    """Test the wire role vocabulary."""

    @pytest.mark.parametrize(
        "role,expected",
        [
            ("button", "btn"),
            ("textbox", "inp"),
            ("searchbox", "inp"),
            ("combobox", "sel"),
            ("checkbox", "chk"),
            ("option", "opt"),
            ("menuitemcheckbox", "menu"),
            ("navigation", "navi"),
            ("", "unknown"),
        ],
    )
    def test_abbreviate_role(self, role: str, expected: str) -> None:
        """Known roles use the table, others their first four letters."""
        assert abbreviate_role(role) == expected


class TestSemanticNode:
    """Test building and minifying wire nodes."""

    def setup_method(self) -> None:
        self.serializer = SemanticSerializer()

    def test_center_and_box_are_rounded(self) -> None:
        """xy is the rounded center of the box."""
        node = self.serializer.node("7", "button", "Save", box=[10.4, 20.6, 100, 40])

        assert node.xy == (60, 41)
        assert node.box == (10, 21, 100, 40)

    def test_wire_keys(self) -> None:
        """Optional keys are present only when they carry information."""
        node = self.serializer.node(
            "3", "checkbox", "Agree", value="on", state=["checked", "required"], box=[0, 0, 10, 10]
        )

        assert node.to_wire() == {
            "i": "3",
            "r": "chk",
            "n": "Agree",
            "v": "on",
            "s": "checked,required",
            "xy": [5, 5],
            "box": [0, 0, 10, 10],
        }

    def test_main_frame_omits_frame_key(self) -> None:
        """Frame 0 is not emitted; other frames are."""
        main = self.serializer.node("1", "link", "Home", frame=0)
        nested = self.serializer.node("2", "link", "Home", frame=2)

        assert "f" not in main.to_wire()
        assert nested.to_wire()["f"] == 2

    def test_minimal_node(self) -> None:
        """A node without value, state or box has only the required keys."""
        assert SemanticNode("b12", "btn", "OK").to_wire() == {"i": "b12", "r": "btn", "n": "OK"}

    def test_truncation(self) -> None:
        """Names and values are truncated to the configured lengths."""
        serializer = SemanticSerializer(name_max_length=5, value_max_length=3)

        node = serializer.node("1", "textbox", "Search the catalogue", value="abcdef")

        assert node.name == "Searc"
        assert node.value == "abc"

    def test_serialize_hybrid_elements(self) -> None:
        """Hybrid elements keep their id, and empty boxes are dropped."""
        dom = DOMElementInfo(index=0, tag_name="button", frame_id=1)
        elements = [
            HybridElement(
                id="4",
                role="button",
                name="Go",
                provenance=Provenance.HYBRID,
                dom_element=dom,
                bbox=BoundingBox(0, 0, 20, 10),
                states=["disabled"],
            ),
            HybridElement(id="b5", role="link", name="Docs", bbox=BoundingBox(0, 0, 0, 10)),
        ]

        nodes = self.serializer.serialize(elements)

        assert nodes[0].to_wire() == {
            "i": "4",
            "r": "btn",
            "n": "Go",
            "s": "disabled",
            "xy": [10, 5],
            "box": [0, 0, 20, 10],
            "f": 1,
        }
        assert nodes[1].to_wire() == {"i": "b5", "r": "link", "n": "Docs"}

    def test_serialize_overlay_and_scroll_facts(self) -> None:
        """Covered elements carry occ and scrollable containers carry scr."""
        elements = [
            HybridElement(id="7", role="button", name="Buy", occluded=True),
            HybridElement(
                id="8",
                role="listbox",
                name="Results",
                scroll=ScrollInfo(depth="25%", has_more=True),
            ),
            HybridElement(id="9", role="link", name="Home"),
        ]

        wire = [node.to_wire() for node in self.serializer.serialize(elements)]

        assert wire[0] == {"i": "7", "r": "btn", "n": "Buy", "occ": True}
        assert wire[1] == {
            "i": "8",
            "r": "sel",
            "n": "Results",
            "scr": {"depth": "25%", "h": True},
        }
        assert "occ" not in wire[2]
        assert "scr" not in wire[2]

    def test_legend_covers_every_key(self) -> None:
        """The legend explains each wire key."""
        text = legend()

        keys = ("i", "r", "n", "v", "s", "xy", "box", "f", "scr", "occ")
        for key in keys:
            assert f"- {key}:" in text


class TestSizeHelpers:
    """Test byte sizing and token estimates."""

    def test_byte_size_counts_utf8_bytes(self) -> None:
        """Multi-byte characters count by encoded length."""
        assert get_byte_size("é") == 2
        assert get_byte_size("日本") == 6
        assert get_byte_size(b"abc") == 3

    def test_to_json_is_compact(self) -> None:
        """Nodes are minified without whitespace."""
        nodes = [SemanticNode("1", "btn", "Ok")]

        assert to_json(nodes) == '[{"i":"1","r":"btn","n":"Ok"}]'

    def test_estimate_tokens(self) -> None:
        """Tokens are a quarter of the serialized length, rounded up."""
        nodes = [SemanticNode("1", "btn", "Ok")]

        assert estimate_tokens(nodes) == 8  # 30 characters
        assert estimate_tokens([]) == 1

    @pytest.mark.parametrize(
        "size,expected",
        [(512, "512 B"), (1536, "1.5 KB"), (int(2.5 * 1024 * 1024), "2.50 MB")],
    )
    def test_format_byte_size(self, size: int, expected: str) -> None:
        """Sizes are formatted in the largest sensible unit."""
        assert format_byte_size(size) == expected


class TestValidateSize:
    """Test the payload size guard."""

    def test_accepts_small_payload(self) -> None:
        """Small payloads pass and report their size."""
        payload = {"interactiveTree": []}

        assert validate_size(payload) == len(json.dumps(payload, separators=(",", ":")))

    def test_rejects_payload_at_ceiling(self) -> None:
        """A payload of exactly the ceiling is rejected."""
        with pytest.raises(PayloadTooLargeError) as exc_info:
            validate_size("a" * MAX_PAYLOAD_BYTES)

        assert exc_info.value.actual_size == MAX_PAYLOAD_BYTES
        assert exc_info.value.max_size == MAX_PAYLOAD_BYTES

    def test_accepts_payload_just_below_ceiling(self) -> None:
        """One byte below the ceiling passes with a warning."""
        with patch.object(serializer_module.logger, "warning") as warning:
            size = validate_size("a" * (MAX_PAYLOAD_BYTES - 1))

        assert size == MAX_PAYLOAD_BYTES - 1
        assert "approaching limit" in warning.call_args.args[0]

    def test_multibyte_characters_count_toward_ceiling(self) -> None:
        """The guard measures bytes, not characters."""
        limits = SizeLimits(warning_bytes=5, max_bytes=10)

        assert validate_size("é" * 4, limits) == 8
        with pytest.raises(PayloadTooLargeError):
            validate_size("é" * 5, limits)
