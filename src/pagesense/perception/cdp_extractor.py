"""
Protocol extraction adapter.

Extracts the interactive element list through the Chrome DevTools Protocol:
the full accessibility tree supplies meaning, a DOM snapshot supplies
layout, and the two are correlated by backend node id. Nodes whose box
lies outside the scrolled viewport are pruned.

Any failed protocol call raises :class:`ProtocolError` naming the call, so
callers can fall back to the fusion path.

Example
-------
::

    adapter = ProtocolExtractionAdapter()
    try:
        result = await adapter.extract(page)
    finally:
        await adapter.close()
    print(result.meta.node_count, result.scroll_position)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Iterable
from typing import Any

from playwright.async_api import CDPSession, ElementHandle, Page
from playwright.async_api import Error as PlaywrightError

from .ax_filter import extract_state
from .config import ExtractionConfig
from .dom_query import FRAME_ATTR, LLM_ID_ATTR
from .exceptions import (
    ExtractionTimeoutError,
    NodeResolutionError,
    ProtocolError,
    with_retry,
    with_timeout,
)
from .models import (
    BACKEND_ID_PREFIX,
    AXNode,
    BoundingBox,
    ExtractionMeta,
    ExtractionResult,
    SemanticNode,
    ViewportInfo,
    backend_wire_id,
)
from .serializer import SemanticSerializer, estimate_tokens

logger = logging.getLogger(__name__)

# Roles emitted by the protocol path
PROTOCOL_INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "textbox",
        "searchbox",
        "combobox",
        "listbox",
        "checkbox",
        "radio",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "tab",
        "switch",
        "slider",
        "spinbutton",
        "option",
        "treeitem",
    }
)

SNAPSHOT_PARAMS = {
    "computedStyles": ["display", "visibility", "opacity"],
    "includePaintOrder": True,
    "includeDOMRects": True,
}

VIEWPORT_EXPRESSION = (
    "({width: window.innerWidth, height: window.innerHeight, "
    "scrollX: window.scrollX, scrollY: window.scrollY})"
)

_RESOLVE_ATTR = "data-pagesense-resolve"
_DESCRIBE_GROUP = "pagesense-describe"


class ProtocolSession:
    """A CDP session whose failures name the call that failed."""

    def __init__(self, client: CDPSession, timeout_seconds: float = 30.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    @classmethod
    async def open(
        cls, page: Page, timeout_seconds: float = 30.0, max_retries: int = 3
    ) -> "ProtocolSession":
        """Attach a new session to ``page``, retrying transient failures."""

        @with_retry(max_retries=max_retries, retryable_exceptions=(ProtocolError,))
        async def attach() -> CDPSession:
            try:
                return await page.context.new_cdp_session(page)
            except PlaywrightError as e:
                raise ProtocolError("Target.attachToTarget", e) from e

        return cls(await attach(), timeout_seconds)

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Issue one protocol command.

        Args:
            method: Protocol method, e.g. ``Accessibility.getFullAXTree``.
            params: Command parameters.

        Returns:
            The command result.

        Raises:
            ProtocolError: If the call fails or times out.
        """
        try:
            result = await with_timeout(
                self.client.send(method, params or {}),
                timeout_seconds=self.timeout_seconds,
                operation_name=method,
            )
        except (PlaywrightError, ExtractionTimeoutError) as e:
            raise ProtocolError(method, e) from e
        return result or {}

    async def detach(self) -> None:
        try:
            await self.client.detach()
        except PlaywrightError as e:
            logger.debug(f"Failed to detach protocol session: {e}")


def build_bounds_map(snapshot: dict[str, Any]) -> dict[int, list[float]]:
    """Backend node id to ``[x, y, w, h]`` for every laid-out node."""
    bounds_map: dict[int, list[float]] = {}
    for document in snapshot.get("documents") or []:
        nodes = document.get("nodes") or {}
        layout = document.get("layout") or {}
        backend_ids = nodes.get("backendNodeId") or []
        for node_index, bounds in zip(layout.get("nodeIndex") or [], layout.get("bounds") or []):
            if bounds is None or len(bounds) < 4 or node_index >= len(backend_ids):
                continue
            bounds_map[backend_ids[node_index]] = list(bounds[:4])
    return bounds_map


def build_attribute_map(snapshot: dict[str, Any], names: Iterable[str]) -> dict[int, dict[str, str]]:
    """Backend node id to the requested attributes for nodes that carry any."""
    wanted = set(names)
    strings = snapshot.get("strings") or []
    attribute_map: dict[int, dict[str, str]] = {}

    def lookup(index: int) -> str:
        return strings[index] if 0 <= index < len(strings) else ""

    for document in snapshot.get("documents") or []:
        nodes = document.get("nodes") or {}
        backend_ids = nodes.get("backendNodeId") or []
        for backend_id, flat in zip(backend_ids, nodes.get("attributes") or []):
            found = {}
            for i in range(0, len(flat) - 1, 2):
                name = lookup(flat[i])
                if name in wanted:
                    found[name] = lookup(flat[i + 1])
            if found:
                attribute_map[backend_id] = found
    return attribute_map


def parse_viewport(result: dict[str, Any]) -> ViewportInfo:
    """Viewport from a ``Runtime.evaluate`` result; defaults fill any gaps."""
    return ViewportInfo.from_metrics((result.get("result") or {}).get("value"))


def in_viewport(box: list[float], viewport: ViewportInfo) -> bool:
    """Whether ``box`` intersects the scrolled viewport rectangle."""
    return BoundingBox.from_list(box).intersects(viewport.rect)


class ProtocolExtractionAdapter:
    """
    Primary extraction path over the Chrome DevTools Protocol.

    Sessions are cached per page and discarded after any failure. At most
    one extraction per page should be in flight at a time.
    """

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        serializer: SemanticSerializer | None = None,
    ):
        self.config = config or ExtractionConfig.from_settings()
        self.serializer = serializer or SemanticSerializer(
            self.config.name_max_length, self.config.value_max_length
        )
        self._session: ProtocolSession | None = None
        self._session_page_id: int | None = None
        self._session_lock = asyncio.Lock()

    async def session_for(self, page: Page) -> ProtocolSession:
        """Get or create the protocol session for ``page``."""
        page_id = id(page)
        async with self._session_lock:
            if self._session is not None and self._session_page_id == page_id:
                return self._session

            await self._detach_session()
            self._session = await ProtocolSession.open(
                page, self.config.timeout_seconds, self.config.max_retries
            )
            self._session_page_id = page_id
            return self._session

    async def close(self) -> None:
        """Detach the cached session."""
        async with self._session_lock:
            await self._detach_session()

    async def _detach_session(self) -> None:
        session, self._session, self._session_page_id = self._session, None, None
        if session is not None:
            await session.detach()

    async def extract(self, page: Page) -> ExtractionResult:
        """
        Extract interactive nodes, page metadata and statistics.

        Args:
            page: Page to extract from.

        Returns:
            ExtractionResult; ``meta`` is filled even when no node survives.

        Raises:
            ProtocolError: If any protocol call fails.
        """
        start = time.perf_counter()
        try:
            session = await self.session_for(page)
            await asyncio.gather(
                session.send("Accessibility.enable"),
                session.send("DOM.enable"),
                session.send("DOMSnapshot.enable"),
            )
            ax_result, snapshot, metrics, title, url = await asyncio.gather(
                session.send("Accessibility.getFullAXTree"),
                session.send("DOMSnapshot.captureSnapshot", SNAPSHOT_PARAMS),
                session.send(
                    "Runtime.evaluate", {"expression": VIEWPORT_EXPRESSION, "returnByValue": True}
                ),
                session.send(
                    "Runtime.evaluate", {"expression": "document.title", "returnByValue": True}
                ),
                session.send(
                    "Runtime.evaluate",
                    {"expression": "window.location.href", "returnByValue": True},
                ),
            )
        except ProtocolError as e:
            logger.warning(f"Protocol extraction failed: {e}")
            await self.close()
            raise

        raw_nodes = ax_result.get("nodes") or []
        viewport = parse_viewport(metrics)
        nodes = self.correlate(
            raw_nodes,
            build_bounds_map(snapshot),
            build_attribute_map(snapshot, (LLM_ID_ATTR, FRAME_ATTR)),
            viewport,
        )

        elapsed_ms = (time.perf_counter() - start) * 1000
        result = ExtractionResult(
            interactive_tree=nodes,
            viewport=viewport,
            page_title=str((title.get("result") or {}).get("value") or ""),
            url=str((url.get("result") or {}).get("value") or ""),
            meta=ExtractionMeta(
                node_count=len(nodes),
                extraction_time_ms=elapsed_ms,
                ax_node_count=len(raw_nodes),
                estimated_tokens=estimate_tokens(nodes),
                source="protocol",
            ),
        )
        logger.info(
            f"Protocol extraction: {len(nodes)} nodes from {len(raw_nodes)} "
            f"accessibility nodes in {elapsed_ms:.0f}ms"
        )
        return result

    def correlate(
        self,
        raw_nodes: Iterable[dict[str, Any]],
        bounds_map: dict[int, list[float]],
        attribute_map: dict[int, dict[str, str]],
        viewport: ViewportInfo,
    ) -> list[SemanticNode]:
        """
        Join accessibility nodes with layout boxes into wire nodes.

        Args:
            raw_nodes: ``Accessibility.getFullAXTree`` nodes.
            bounds_map: Backend node id to ``[x, y, w, h]``.
            attribute_map: Backend node id to identity and frame markers.
            viewport: Viewport used for pruning.

        Returns:
            Wire nodes in accessibility-tree order.
        """
        nodes: list[SemanticNode] = []
        for raw in raw_nodes:
            node = AXNode.from_cdp(raw)
            if node.ignored or node.backend_dom_node_id is None:
                continue
            if node.role.lower() not in PROTOCOL_INTERACTIVE_ROLES:
                continue
            box = bounds_map.get(node.backend_dom_node_id)
            if box is None or box[2] == 0 or box[3] == 0:
                continue
            if self.config.viewport_only and not in_viewport(box, viewport):
                continue

            markers = attribute_map.get(node.backend_dom_node_id, {})
            identifier = markers.get(LLM_ID_ATTR) or backend_wire_id(node.backend_dom_node_id)
            try:
                frame = int(markers.get(FRAME_ATTR) or 0)
            except ValueError:
                frame = 0
            nodes.append(
                self.serializer.node(
                    identifier,
                    node.role,
                    node.name,
                    value=node.value,
                    state=extract_state(node.properties),
                    box=box,
                    frame=frame,
                )
            )
        return nodes

    async def resolve_node(self, page: Page, backend_node_id: int) -> str:
        """
        Map a backend node id to a remote object id.

        Raises:
            NodeResolutionError: If the node cannot be resolved.
        """
        session = await self.session_for(page)
        try:
            result = await session.send("DOM.resolveNode", {"backendNodeId": backend_node_id})
        except ProtocolError as e:
            raise NodeResolutionError(backend_node_id, str(e.cause)) from e
        object_id = (result.get("object") or {}).get("objectId")
        if not object_id:
            raise NodeResolutionError(backend_node_id)
        return object_id

    async def describe_kept_elements(self, page: Page, global_name: str) -> list[int | None]:
        """
        Backend node ids of an element array a page script left on ``window``.

        The array is removed from the page. Entries that cannot be described
        are None, so positions still line up with the array.

        Raises:
            ProtocolError: If a protocol call fails; the session is discarded.
        """
        session = await self.session_for(page)
        expression = (
            f"(() => {{ const kept = window[{json.dumps(global_name)}] || []; "
            f"delete window[{json.dumps(global_name)}]; return kept; }})()"
        )
        try:
            try:
                result = await session.send(
                    "Runtime.evaluate", {"expression": expression, "objectGroup": _DESCRIBE_GROUP}
                )
                array_id = (result.get("result") or {}).get("objectId")
                if not array_id:
                    return []
                properties = await session.send(
                    "Runtime.getProperties", {"objectId": array_id, "ownProperties": True}
                )
                entries = [
                    (int(prop["name"]), prop["value"]["objectId"])
                    for prop in properties.get("result") or []
                    if str(prop.get("name", "")).isdigit()
                    and (prop.get("value") or {}).get("objectId")
                ]
                described = await asyncio.gather(
                    *(
                        session.send("DOM.describeNode", {"objectId": object_id})
                        for _, object_id in entries
                    )
                )
            finally:
                await session.send("Runtime.releaseObjectGroup", {"objectGroup": _DESCRIBE_GROUP})
        except ProtocolError as e:
            logger.warning(f"Describing page elements failed: {e}")
            await self.close()
            raise

        backend_ids: list[int | None] = [None] * (max((i for i, _ in entries), default=-1) + 1)
        for (position, _), description in zip(entries, described):
            backend_ids[position] = (description.get("node") or {}).get("backendNodeId")
        return backend_ids

    async def element_handle_for(self, page: Page, backend_node_id: int) -> ElementHandle:
        """
        Resolve a backend node id to a Playwright element handle.

        Raises:
            NodeResolutionError: If the node cannot be resolved.
        """
        object_id = await self.resolve_node(page, backend_node_id)
        session = await self.session_for(page)
        token = uuid.uuid4().hex
        try:
            await session.send(
                "Runtime.callFunctionOn",
                {
                    "objectId": object_id,
                    "functionDeclaration": "function(a, v) { this.setAttribute(a, v); }",
                    "arguments": [{"value": _RESOLVE_ATTR}, {"value": token}],
                },
            )
        except ProtocolError as e:
            raise NodeResolutionError(backend_node_id, str(e.cause)) from e

        selector = f'[{_RESOLVE_ATTR}="{token}"]'
        handle = await page.query_selector(selector)
        if handle is None:
            raise NodeResolutionError(backend_node_id, "node is not an element")
        await handle.evaluate("(el, a) => el.removeAttribute(a)", _RESOLVE_ATTR)
        return handle

    async def get_element_bounds(self, page: Page, backend_node_id: int) -> BoundingBox:
        """
        Border box of a node from ``DOM.getBoxModel``.

        Raises:
            ProtocolError: If the node has no box model.
        """
        session = await self.session_for(page)
        result = await session.send("DOM.getBoxModel", {"backendNodeId": backend_node_id})
        model = result.get("model") or {}
        border = model.get("border") or []
        if len(border) < 8:
            raise ProtocolError("DOM.getBoxModel", f"no box for backendNodeId {backend_node_id}")
        xs = border[0::2]
        ys = border[1::2]
        return BoundingBox(
            x=min(xs),
            y=min(ys),
            width=model.get("width", max(xs) - min(xs)),
            height=model.get("height", max(ys) - min(ys)),
        )


def parse_identifier(identifier: str | int) -> tuple[str, int]:
    """
    Split a wire identifier into its kind and number.

    Returns:
        ``("stable", n)`` for tagger identifiers, ``("backend", n)`` for
        backend node ids.

    Raises:
        NodeResolutionError: If the identifier is malformed.
    """
    text = str(identifier).strip()
    try:
        if text.startswith(BACKEND_ID_PREFIX):
            return "backend", int(text[len(BACKEND_ID_PREFIX):])
        return "stable", int(text)
    except ValueError:
        raise NodeResolutionError(text, "unrecognized identifier") from None
