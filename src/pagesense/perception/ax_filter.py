"""
Accessibility node filtering and projection.

Reduces the full accessibility tree to the interactive subset and converts
each survivor into a :class:`SimplifiedAXElement`. Nodes flagged ``ignored``
never survive.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import AXNode, SimplifiedAXElement

# Roles kept by the filter
INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "textbox",
        "checkbox",
        "radio",
        "combobox",
        "listbox",
        "menuitem",
        "tab",
        "menubar",
        "menu",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "searchbox",
        "slider",
        "spinbutton",
        "switch",
        "tablist",
        "treeitem",
        "gridcell",
        "cell",
        "row",
        "columnheader",
        "rowheader",
    }
)

# Properties that make a node interactive whatever its role
STATEFUL_PROPERTIES = ("checked", "expanded", "selected")


def _is_true(value: Any) -> bool:
    return value is True or value == "true"


def _attr_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def node_role(node: AXNode) -> str:
    return node.role or node.chrome_role


def is_interactive_node(node: AXNode) -> bool:
    """Whether a non-ignored node belongs to the interactive subset."""
    if node.ignored:
        return False
    role = node_role(node)
    if not role:
        return False
    if role.lower() in INTERACTIVE_ROLES:
        return True
    if node.value is not None:
        return True
    return any(name in node.properties for name in STATEFUL_PROPERTIES)


def filter_interactive_ax_nodes(nodes: Iterable[AXNode]) -> list[AXNode]:
    """Keep the interactive, non-ignored nodes in their original order."""
    return [node for node in nodes if is_interactive_node(node)]


def extract_state(properties: Mapping[str, Any]) -> list[str]:
    """
    State tokens read from accessibility properties.

    Args:
        properties: Property name to raw value.

    Returns:
        Tokens in a fixed order: disabled, checked, selected,
        expanded/collapsed, pressed, readonly, required.
    """
    states = []
    if _is_true(properties.get("disabled")):
        states.append("disabled")
    if _is_true(properties.get("checked")):
        states.append("checked")
    if _is_true(properties.get("selected")):
        states.append("selected")
    if "expanded" in properties:
        states.append("expanded" if _is_true(properties["expanded"]) else "collapsed")
    if _is_true(properties.get("pressed")):
        states.append("pressed")
    if _is_true(properties.get("readonly")):
        states.append("readonly")
    if _is_true(properties.get("required")):
        states.append("required")
    return states


def convert_ax_node(node: AXNode) -> SimplifiedAXElement:
    """Project an accessibility node onto a :class:`SimplifiedAXElement`."""
    role = node_role(node) or "unknown"
    value = "" if node.value in (None, "") else str(node.value)

    attributes: dict[str, str] = {}
    has_popup = None
    expanded = None
    for prop_name, prop_value in node.properties.items():
        if prop_value in (None, "", False):
            continue
        attributes[prop_name] = _attr_text(prop_value)
        if prop_name in ("hasPopup", "haspopup"):
            has_popup = str(prop_value)
    if "expanded" in node.properties:
        expanded = _is_true(node.properties["expanded"])

    attributes["role"] = role
    if node.name:
        attributes["aria-label"] = node.name
    if node.description:
        attributes["title"] = node.description
    if has_popup:
        attributes["aria-haspopup"] = has_popup
    if expanded is not None:
        attributes["aria-expanded"] = "true" if expanded else "false"

    return SimplifiedAXElement(
        ax_node_id=node.node_id,
        role=role,
        name=node.name,
        description=node.description,
        value=value,
        interactive=role.lower() in INTERACTIVE_ROLES or node.value is not None,
        backend_dom_node_id=node.backend_dom_node_id,
        attributes=attributes,
        has_popup=has_popup,
        expanded=expanded,
        states=extract_state(node.properties),
    )


def simplify_ax_tree(raw_nodes: Iterable[dict[str, Any]]) -> list[SimplifiedAXElement]:
    """Parse protocol nodes, filter them and convert the survivors."""
    nodes = [AXNode.from_cdp(raw) for raw in raw_nodes]
    return [convert_ax_node(node) for node in filter_interactive_ax_nodes(nodes)]


@dataclass
class AccessibilityMapping:
    """Bidirectional links between accessibility ids, DOM indices and backend ids."""

    ax_to_index: dict[str, int] = field(default_factory=dict)
    index_to_ax: dict[int, str] = field(default_factory=dict)
    ax_to_backend: dict[str, int] = field(default_factory=dict)
    backend_to_ax: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_elements(
        cls,
        elements: Iterable[SimplifiedAXElement],
        element_mapping: Mapping[str, int] | None = None,
    ) -> "AccessibilityMapping":
        """
        Build the maps for a list of accessibility elements.

        Args:
            elements: Accessibility elements in extraction order.
            element_mapping: Known accessibility id to DOM index pairs. Elements
                missing from it map to their own position.

        Returns:
            The populated mapping.
        """
        mapping = cls()
        for position, element in enumerate(elements):
            index = (element_mapping or {}).get(element.ax_node_id, position)
            mapping.ax_to_index[element.ax_node_id] = index
            mapping.index_to_ax[index] = element.ax_node_id
            if element.backend_dom_node_id is not None:
                mapping.ax_to_backend[element.ax_node_id] = element.backend_dom_node_id
                mapping.backend_to_ax[element.backend_dom_node_id] = element.ax_node_id
        return mapping

    def element_index(self, ax_node_id: str) -> int | None:
        return self.ax_to_index.get(ax_node_id)

    def ax_node_for_index(self, index: int) -> str | None:
        return self.index_to_ax.get(index)

    def ax_node_for_backend(self, backend_node_id: int) -> str | None:
        return self.backend_to_ax.get(backend_node_id)
