"""
Semantic serializer and payload size guard.

Renders element models into the compact wire format consumed downstream
and refuses payloads that are too large to send onward.

Wire keys
---------
``i`` identifier, ``r`` abbreviated role, ``n`` name, ``v`` value,
``s`` comma-joined state, ``xy`` center point, ``box`` bounding box,
``f`` frame id (omitted for the main frame), ``occ`` set when an overlay
covers the element, ``scr`` scroll state of a scrollable container.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from typing import Any

from .config import SizeLimits
from .exceptions import PayloadTooLargeError
from .models import HybridElement, ScrollInfo, SemanticNode

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 4 * 1024 * 1024
WARNING_PAYLOAD_BYTES = 3 * 1024 * 1024

# Accessibility role -> wire role code
ROLE_ABBREVIATIONS: dict[str, str] = {
    "button": "btn",
    "link": "link",
    "textbox": "inp",
    "searchbox": "inp",
    "spinbutton": "inp",
    "combobox": "sel",
    "listbox": "sel",
    "checkbox": "chk",
    "radio": "radio",
    "menuitem": "menu",
    "menuitemcheckbox": "menu",
    "menuitemradio": "menu",
    "tab": "tab",
    "switch": "switch",
    "slider": "slider",
    "option": "opt",
    "treeitem": "tree",
    "heading": "h",
    "row": "row",
    "cell": "cell",
    "gridcell": "cell",
    "columnheader": "th",
    "rowheader": "th",
}

LEGEND = """LEGEND for interactive_tree format:
- i: element ID (use this in click(i) or setValue(i, text))
- r: role (btn=button, inp=input, link=link, chk=checkbox, sel=select, radio, tab, menu, opt)
- n: name/label visible to user
- v: current value (for inputs)
- s: state (disabled, checked, expanded, etc.)
- xy: [x, y] center coordinates on screen
- box: [x, y, width, height] bounding box (when included)
- f: frame ID (0=main frame, 1+=iframe)
- scr: { depth: "0%", h: true } scrollable container, depth=scroll position, h=more content below
- occ: true if the element is covered by an overlay or modal (clicking it will fail)"""


def abbreviate_role(role: str) -> str:
    """Map an accessibility role onto the short wire vocabulary."""
    if not role:
        return "unknown"
    return ROLE_ABBREVIATIONS.get(role, role[:4])


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def legend() -> str:
    """Key-to-meaning text suitable for an instruction prompt."""
    return LEGEND


class SemanticSerializer:
    """Converts element models into :class:`SemanticNode` wire records."""

    def __init__(self, name_max_length: int = 100, value_max_length: int = 200) -> None:
        self.name_max_length = name_max_length
        self.value_max_length = value_max_length

    def node(
        self,
        identifier: str,
        role: str,
        name: str,
        value: Any = None,
        state: Iterable[str] = (),
        box: list[float] | tuple[float, ...] | None = None,
        frame: int | None = None,
        occluded: bool = False,
        scroll: ScrollInfo | None = None,
    ) -> SemanticNode:
        """Build one wire node, abbreviating and truncating as needed.

        Args:
            identifier: Element identifier as exposed to the consumer.
            role: Accessibility role (unabbreviated).
            name: Accessible name.
            value: Current value, if any.
            state: State tokens.
            box: ``[x, y, w, h]`` in document coordinates.
            frame: Frame id; ``0`` and ``None`` both mean the main frame.
            occluded: Another element covers this one's center.
            scroll: Scroll state when the element is a scrollable container.

        Returns:
            The frozen wire node.
        """
        value_text = str(value) if value not in (None, "") else None
        xy = None
        rounded_box = None
        if box is not None:
            x, y, w, h = box[:4]
            xy = (round(x + w / 2), round(y + h / 2))
            rounded_box = (round(x), round(y), round(w), round(h))
        return SemanticNode(
            id=str(identifier),
            role=abbreviate_role(role),
            name=truncate(name or "", self.name_max_length),
            value=truncate(value_text, self.value_max_length) if value_text else None,
            state=tuple(state),
            xy=xy,
            box=rounded_box,
            frame=frame or None,
            occluded=occluded,
            scroll=scroll,
        )

    def serialize(self, elements: Iterable[HybridElement]) -> list[SemanticNode]:
        """Render fused elements into wire nodes."""
        nodes = []
        for element in elements:
            box = None
            if element.bbox is not None and not element.bbox.is_empty:
                b = element.bbox
                box = (b.x, b.y, b.width, b.height)
            frame = element.dom_element.frame_id if element.dom_element else None
            nodes.append(
                self.node(
                    element.id,
                    element.role,
                    element.name,
                    value=element.value,
                    state=element.states,
                    box=box,
                    frame=frame,
                    occluded=element.occluded,
                    scroll=element.scroll,
                )
            )
        return nodes


def serialize(elements: Iterable[HybridElement]) -> list[SemanticNode]:
    """Render fused elements with default truncation limits."""
    return SemanticSerializer().serialize(elements)


def to_json(payload: Any) -> str:
    """Compact JSON used for size measurement and transport."""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, list) and payload and isinstance(payload[0], SemanticNode):
        payload = [node.to_wire() for node in payload]
    elif hasattr(payload, "to_dict"):
        payload = payload.to_dict()
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def get_byte_size(payload: Any) -> int:
    """UTF-8 byte length of a payload (not its character count)."""
    if isinstance(payload, bytes):
        return len(payload)
    return len(to_json(payload).encode("utf-8"))


def format_byte_size(size: int) -> str:
    """Human readable size such as ``512 B``, ``1.5 KB`` or ``2.50 MB``."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.2f} MB"


def estimate_tokens(payload: Any) -> int:
    """Cheap token estimate proportional to serialized size."""
    return math.ceil(len(to_json(payload)) / 4)


def validate_size(payload: Any, limits: SizeLimits | None = None) -> int:
    """
    Check a payload against the size ceiling.

    Args:
        payload: String, bytes, wire nodes or any JSON-serializable value.
        limits: Thresholds to apply; defaults to 3MB warning and 4MB ceiling.

    Returns:
        The measured size in bytes.

    Raises:
        PayloadTooLargeError: If the payload is at or above the ceiling.
    """
    limits = limits or SizeLimits(WARNING_PAYLOAD_BYTES, MAX_PAYLOAD_BYTES)
    size = get_byte_size(payload)

    if size >= limits.max_bytes:
        logger.error(
            f"Payload size exceeds limit: {format_byte_size(size)} >= "
            f"{format_byte_size(limits.max_bytes)}"
        )
        raise PayloadTooLargeError(actual_size=size, max_size=limits.max_bytes)

    if size > limits.warning_bytes:
        logger.warning(f"Payload size approaching limit: {format_byte_size(size)}")
    else:
        logger.debug(f"Payload size: {format_byte_size(size)}")
    return size
