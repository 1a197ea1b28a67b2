"""
Accessibility/DOM fusion and coverage scoring.

Builds :class:`HybridElement` records with the accessibility source as the
primary description of each element and the DOM as a supplement, then
sweeps in DOM elements the accessibility source never described.

Matching order for each accessibility element:

1. an explicit mapping supplied by the caller,
2. a shared backend node handle,
3. role and accessible name among DOM elements not yet used, where a
   candidate at the same position wins a tie,
4. the DOM element at the same position, only when neither its role nor
   its name contradicts the accessibility element.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence

from .config import FusionOptions
from .models import (
    CoverageMetrics,
    DOMElementInfo,
    HybridElement,
    Provenance,
    SimplifiedAXElement,
    backend_wire_id,
)

logger = logging.getLogger(__name__)

# Prefix of ids given to elements with neither a stable id nor a backend node
LOCAL_ID_PREFIX = "x"

# (tag, input type or None for any, role); first match wins
ROLE_INFERENCE_TABLE: tuple[tuple[str, str | None, str], ...] = (
    ("button", None, "button"),
    ("a", None, "link"),
    ("select", None, "combobox"),
    ("textarea", None, "textbox"),
    ("input", "number", "spinbutton"),
    ("input", "search", "searchbox"),
    ("input", "checkbox", "checkbox"),
    ("input", "radio", "radio"),
    ("input", "range", "slider"),
    ("input", "submit", "button"),
    ("input", "button", "button"),
    ("input", "reset", "button"),
    ("input", "image", "button"),
    ("input", "file", "button"),
    ("input", "color", "button"),
    ("input", None, "textbox"),
    ("option", None, "option"),
    ("summary", None, "button"),
)

# Attributes a DOM element may contribute to a hybrid element
MERGEABLE_ATTRIBUTES = (
    "aria-label",
    "name",
    "type",
    "placeholder",
    "value",
    "role",
    "title",
    "data-id",
    "data-interactive",
    "data-visible",
    "aria-haspopup",
    "aria-expanded",
)

UNKNOWN_ROLE = "unknown"

_WHITESPACE = re.compile(r"\s+")


def _normalize(text: str | None) -> str:
    return _WHITESPACE.sub(" ", text or "").strip().casefold()


def infer_dom_role(element: DOMElementInfo) -> str:
    """Role of a DOM element from its ARIA role, else the inference table."""
    explicit = (element.attr("role") or "").strip().split(" ")[0]
    if explicit:
        return explicit.lower()
    input_type = (element.attr("type") or "text").lower()
    for tag, type_, role in ROLE_INFERENCE_TABLE:
        if element.tag_name != tag:
            continue
        if type_ is None or type_ == input_type:
            return role
    return UNKNOWN_ROLE


def infer_dom_name(element: DOMElementInfo) -> str:
    """Name of a DOM element: label, name, placeholder, then text content."""
    for candidate in (
        element.attr("aria-label"),
        element.label,
        element.attr("name"),
        element.attr("placeholder"),
        element.text_content,
    ):
        text = _WHITESPACE.sub(" ", candidate or "").strip()
        if text:
            return text
    return ""


def infer_dom_description(element: DOMElementInfo) -> str:
    return element.attr("title") or element.attr("aria-description") or ""


def infer_dom_value(element: DOMElementInfo) -> str:
    return element.value or element.attr("value") or ""


def create_hybrid_element(
    ax_element: SimplifiedAXElement,
    element_id: str,
    dom_element: DOMElementInfo | None = None,
    prefer_accessibility: bool = True,
    supplement_with_dom: bool = True,
) -> HybridElement:
    """
    Merge an accessibility element with its DOM counterpart.

    Args:
        ax_element: Primary description of the element.
        element_id: Identifier of the resulting element.
        dom_element: Matched DOM record, if any.
        prefer_accessibility: When False, DOM values overwrite accessibility ones.
        supplement_with_dom: When False, the DOM record is linked but not merged.

    Returns:
        The fused element; provenance is ``hybrid`` only when a DOM
        counterpart was matched.
    """
    hybrid = HybridElement(
        id=element_id,
        role=ax_element.role,
        name=ax_element.name,
        description=ax_element.description,
        value=ax_element.value,
        interactive=ax_element.interactive,
        provenance=Provenance.HYBRID if dom_element else Provenance.ACCESSIBILITY,
        ax_element=ax_element,
        dom_element=dom_element,
        attributes=dict(ax_element.attributes),
        has_popup=ax_element.has_popup,
        expanded=ax_element.expanded,
        states=list(ax_element.states),
    )
    if dom_element is None:
        return hybrid

    hybrid.bbox = dom_element.bbox
    hybrid.occluded = dom_element.occluded
    hybrid.scroll = dom_element.scroll
    if not supplement_with_dom:
        return hybrid

    if not prefer_accessibility or not hybrid.role or hybrid.role == UNKNOWN_ROLE:
        dom_role = infer_dom_role(dom_element)
        if dom_role != UNKNOWN_ROLE:
            hybrid.role = dom_role

    if not prefer_accessibility or not hybrid.name:
        dom_name = infer_dom_name(dom_element)
        if dom_name:
            hybrid.name = dom_name

    if not hybrid.description:
        hybrid.description = infer_dom_description(dom_element)

    if not hybrid.value:
        hybrid.value = infer_dom_value(dom_element)

    for attr in MERGEABLE_ATTRIBUTES:
        dom_value = dom_element.attr(attr)
        if dom_value and (not prefer_accessibility or not hybrid.attributes.get(attr)):
            hybrid.attributes[attr] = dom_value

    if not hybrid.has_popup:
        dom_popup = dom_element.attr("aria-haspopup")
        if dom_popup:
            hybrid.has_popup = dom_popup
            hybrid.attributes["aria-haspopup"] = dom_popup

    if hybrid.expanded is None:
        dom_expanded = dom_element.attr("aria-expanded")
        if dom_expanded is not None:
            hybrid.expanded = dom_expanded == "true"
            hybrid.attributes["aria-expanded"] = dom_expanded

    if not hybrid.states:
        hybrid.states = list(dom_element.states)

    return hybrid


def create_dom_only_element(element: DOMElementInfo, element_id: str) -> HybridElement:
    """Hybrid element for a DOM element the accessibility source missed."""
    attributes = {
        attr: element.attributes[attr]
        for attr in MERGEABLE_ATTRIBUTES
        if element.attributes.get(attr)
    }
    expanded_attr = element.attr("aria-expanded")
    return HybridElement(
        id=element_id,
        role=infer_dom_role(element),
        name=infer_dom_name(element),
        description=infer_dom_description(element),
        value=infer_dom_value(element),
        interactive=True,
        provenance=Provenance.DOM,
        dom_element=element,
        attributes=attributes,
        bbox=element.bbox,
        has_popup=element.attr("aria-haspopup"),
        expanded=None if expanded_attr is None else expanded_attr == "true",
        states=list(element.states),
        occluded=element.occluded,
        scroll=element.scroll,
    )


class _WireIds:
    """
    Wire ids unique within one result, in the tagger's numbering space.

    An element keeps its stable id; otherwise it is addressed by its backend
    node handle. An element with neither gets a local ``x{n}`` id that never
    collides with a stable id and cannot be resolved.
    """

    def __init__(self) -> None:
        self._used: set[str] = set()
        self._local = 0

    def take(
        self,
        ax_element: SimplifiedAXElement | None,
        dom_element: DOMElementInfo | None,
    ) -> str:
        choices = []
        if dom_element is not None and dom_element.stable_id is not None:
            choices.append(str(dom_element.stable_id))
        if ax_element is not None and ax_element.backend_dom_node_id is not None:
            choices.append(backend_wire_id(ax_element.backend_dom_node_id))
        if dom_element is not None and dom_element.backend_node_id is not None:
            choices.append(backend_wire_id(dom_element.backend_node_id))
        for choice in choices:
            if choice not in self._used:
                self._used.add(choice)
                return choice
        if choices:
            logger.debug(f"Wire id {choices[0]} already used in this result")
        self._local += 1
        return f"{LOCAL_ID_PREFIX}{self._local}"


def _names_conflict(ax_element: SimplifiedAXElement, dom_element: DOMElementInfo) -> bool:
    dom_name = _normalize(infer_dom_name(dom_element))
    ax_name = _normalize(ax_element.name)
    return bool(dom_name and ax_name and dom_name != ax_name)


def _roles_conflict(ax_element: SimplifiedAXElement, dom_element: DOMElementInfo) -> bool:
    dom_role = infer_dom_role(dom_element)
    return dom_role != UNKNOWN_ROLE and dom_role != ax_element.role.lower()


def find_dom_match(
    ax_element: SimplifiedAXElement,
    position: int,
    dom_elements: Sequence[DOMElementInfo],
    used: set[int],
    mapping: Mapping[str, int] | None = None,
) -> int | None:
    """
    Index of the DOM element describing the same element, if any.

    Args:
        ax_element: Accessibility element to match.
        position: Its position among the accessibility elements.
        dom_elements: Candidate DOM records.
        used: Indices already consumed by earlier matches.
        mapping: Explicit accessibility id to DOM index pairs.

    Returns:
        Index into ``dom_elements`` or None.
    """
    if mapping is not None and ax_element.ax_node_id in mapping:
        index = mapping[ax_element.ax_node_id]
        if 0 <= index < len(dom_elements) and index not in used:
            return index

    if ax_element.backend_dom_node_id is not None:
        for index, dom in enumerate(dom_elements):
            if index not in used and dom.backend_node_id == ax_element.backend_dom_node_id:
                return index

    role = ax_element.role.lower()
    name = _normalize(ax_element.name)
    candidates = [
        index
        for index, dom in enumerate(dom_elements)
        if index not in used
        and infer_dom_role(dom) == role
        and _normalize(infer_dom_name(dom)) == name
    ]
    if candidates:
        return position if position in candidates else candidates[0]

    if position < len(dom_elements) and position not in used:
        dom = dom_elements[position]
        if not _roles_conflict(ax_element, dom) and not _names_conflict(ax_element, dom):
            return position

    return None


def select_elements_accessibility_first(
    ax_elements: Sequence[SimplifiedAXElement],
    dom_elements: Sequence[DOMElementInfo],
    mapping: Mapping[str, int] | None = None,
    options: FusionOptions | None = None,
) -> list[HybridElement]:
    """
    Fuse both sources into one element list.

    Args:
        ax_elements: Filtered accessibility elements (primary source).
        dom_elements: Interactive DOM records (supplement).
        mapping: Optional explicit accessibility id to DOM index pairs.
        options: Merge precedence.

    Returns:
        Accessibility-backed elements in accessibility order, followed by
        DOM-only elements in document order. Empty when both inputs are.
    """
    options = options or FusionOptions()
    ids = _WireIds()
    used: set[int] = set()
    hybrids: list[HybridElement] = []

    for position, ax_element in enumerate(ax_elements):
        match = find_dom_match(ax_element, position, dom_elements, used, mapping)
        dom_element = None
        if match is not None:
            used.add(match)
            dom_element = dom_elements[match]
        hybrids.append(
            create_hybrid_element(
                ax_element,
                ids.take(ax_element, dom_element),
                dom_element,
                prefer_accessibility=options.prefer_accessibility,
                supplement_with_dom=options.supplement_with_dom,
            )
        )

    for index, dom_element in enumerate(dom_elements):
        if index not in used:
            hybrids.append(create_dom_only_element(dom_element, ids.take(None, dom_element)))

    logger.debug(
        f"Fused {len(ax_elements)} accessibility and {len(dom_elements)} DOM elements "
        f"into {len(hybrids)} hybrid elements ({len(used)} matched)"
    )
    return hybrids


def _dom_key(element: DOMElementInfo) -> tuple[str, str, str]:
    ref = "" if element.backend_node_id is None else str(element.backend_node_id)
    return (infer_dom_role(element), _normalize(infer_dom_name(element)), ref)


def _ax_key(element: SimplifiedAXElement) -> tuple[str, str, str]:
    ref = "" if element.backend_dom_node_id is None else str(element.backend_dom_node_id)
    return (element.role.lower(), _normalize(element.name), ref)


def analyze_coverage(
    ax_elements: Iterable[SimplifiedAXElement],
    dom_elements: Iterable[DOMElementInfo],
) -> CoverageMetrics:
    """
    Score how much of the interactive DOM the accessibility source described.

    Elements are keyed by role, name and their shared DOM reference; the
    reference is left blank on a side that does not know it, so such keys
    compare by role and name only.

    Args:
        ax_elements: Filtered accessibility elements.
        dom_elements: Interactive DOM records.

    Returns:
        Fresh metrics with ``ax_coverage`` clamped to ``[0, 100]``.
    """
    ax_list = list(ax_elements)
    dom_list = list(dom_elements)
    total_ax = len(ax_list)
    total_dom = len(dom_list)

    # Each DOM element can account for at most one accessibility element
    pool: dict[tuple[str, str], list[str]] = {}
    for dom in dom_list:
        role, name, ref = _dom_key(dom)
        pool.setdefault((role, name), []).append(ref)

    overlap = 0
    for ax in ax_list:
        role, name, ref = _ax_key(ax)
        refs = pool.get((role, name))
        if not refs:
            continue
        if ref in refs:
            refs.remove(ref)
        elif "" in refs:
            refs.remove("")
        elif not ref:
            refs.pop(0)
        else:
            continue
        overlap += 1

    if total_dom > 0:
        coverage = overlap / total_dom * 100
    elif total_ax > 0:
        coverage = 100.0
    else:
        coverage = 0.0

    return CoverageMetrics(
        ax_only=max(total_ax - overlap, 0),
        dom_only=max(total_dom - overlap, 0),
        overlap=overlap,
        total_interactive=max(total_ax, total_dom),
        total_ax_nodes=total_ax,
        ax_coverage=round(min(max(coverage, 0.0), 100.0), 2),
    )
