"""Shared fakes for perception tests.

``FakePage`` stands in for a Playwright page: it answers the page scripts of
the tagging and DOM query modules from an in-memory element list, so the
Python side of those modules can be exercised without a browser.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest
from playwright.async_api import Error as PlaywrightError

from pagesense.config import reset_settings
from pagesense.perception import dom_query, mutations, pipeline, stability, tagging


class FakeElement:
    """One element of a fake document."""

    def __init__(
        self,
        tag: str = "button",
        attributes: dict[str, str] | None = None,
        in_shadow: bool = False,
        display: str = "block",
        visibility: str = "visible",
        opacity: str = "1",
        rect: tuple[float, float, float, float] = (10, 10, 100, 30),
        style_error: str | None = None,
        text: str = "",
        label: str = "",
        value: str = "",
        states: list[str] | None = None,
        connected: bool = True,
        backend_id: int | None = None,
        occluded: bool = False,
        scroll: dict[str, Any] | None = None,
    ) -> None:
        self.tag = tag
        self.attributes = dict(attributes or {})
        self.in_shadow = in_shadow
        self.display = display
        self.visibility = visibility
        self.opacity = opacity
        self.rect = rect
        self.style_error = style_error
        self.text = text
        self.label = label
        self.value = value
        self.states = list(states or [])
        self.connected = connected
        self.backend_id = backend_id
        self.occluded = occluded
        self.scroll = scroll

    @property
    def stable_id(self) -> int | None:
        raw = self.attributes.get(dom_query.LLM_ID_ATTR)
        return int(raw) if raw is not None else None

    def facts(
        self, index: int, detail: bool, occlusion: bool = False, scrollable: bool = False
    ) -> dict[str, Any]:
        facts: dict[str, Any] = {
            "index": index,
            "tagName": self.tag,
            "stableId": self.stable_id,
            "inShadow": self.in_shadow,
            "ariaHidden": self.attributes.get("aria-hidden"),
            "hidden": "hidden" in self.attributes,
            "inputType": (self.attributes.get("type") or "text") if self.tag == "input" else None,
        }
        if self.style_error:
            facts["styleError"] = self.style_error
        else:
            x, y, w, h = self.rect
            facts.update(
                display=self.display,
                visibility=self.visibility,
                opacity=self.opacity,
                rect={"x": x, "y": y, "width": w, "height": h},
            )
        if detail:
            facts.update(
                attributes={
                    k: v for k, v in self.attributes.items() if k in dom_query.REPORTED_ATTRIBUTES
                },
                text=self.text,
                label=self.label,
                value=self.value,
                states=self.states,
                frameId=int(self.attributes.get(dom_query.FRAME_ATTR, "0")),
            )
            if occlusion:
                facts["occluded"] = self.occluded
            if scrollable:
                facts["scroll"] = self.scroll
        return facts


class FakePage:
    """Answers the perception page scripts from a list of :class:`FakeElement`."""

    def __init__(self, elements: list[FakeElement] | None = None, deep_fails: bool = False):
        self.elements = list(elements or [])
        self.deep_fails = deep_fails
        self.url = "https://example.test/"
        self.page_info = {"width": 1280, "height": 720, "scrollX": 0, "scrollY": 0}
        self.title = "Example"
        self.queries: list[dict[str, Any]] = []
        self.kept: dict[str, list[FakeElement]] = {}
        self.evaluate = AsyncMock(side_effect=self._evaluate)

    def tagged(self) -> list[FakeElement]:
        return [el for el in self.elements if el.stable_id is not None]

    async def _evaluate(self, script: str, arg: Any = None) -> Any:
        if script is dom_query._COLLECT_SCRIPT:
            return self._collect(arg)
        if script is tagging._STAMP_SCRIPT:
            return self._stamp(arg)
        if script is tagging._LIST_SCRIPT:
            return [
                {
                    "id": el.stable_id,
                    "tagName": el.tag,
                    "isInShadow": el.attributes.get(dom_query.SHADOW_ATTR) == "true",
                    "frameId": int(el.attributes.get(dom_query.FRAME_ATTR, "0")),
                }
                for el in self._scope(arg["deep"])
                if el.stable_id is not None
            ]
        if script is pipeline._PAGE_INFO_SCRIPT:
            return {**self.page_info, "title": self.title, "url": self.url}
        if script is stability._INSTALL_SCRIPT:
            # No body yet, so stability waits resolve at once
            return False
        if script in (stability._DRAIN_SCRIPT, stability._UNINSTALL_SCRIPT):
            return None
        if script is mutations._OBSERVE_SCRIPT:
            return True
        if script is mutations._READ_SCRIPT:
            return None
        if script is mutations._DISCONNECT_SCRIPT:
            return None
        raise AssertionError("unexpected page script")

    def _scope(self, deep: bool) -> list[FakeElement]:
        return [el for el in self.elements if deep or not el.in_shadow]

    def _collect(self, opts: dict[str, Any]) -> dict[str, Any]:
        self.queries.append(opts)
        if opts["deep"] and self.deep_fails:
            raise PlaywrightError("shadow traversal failed")
        max_existing = 0
        kept: list[FakeElement] = []
        candidates = []
        for el in self._scope(opts["deep"]):
            if el.stable_id is not None:
                max_existing = max(max_existing, el.stable_id)
            if opts["untaggedOnly"] and el.stable_id is not None:
                continue
            candidates.append(
                el.facts(len(kept), opts["detail"], opts.get("occlusion"), opts.get("scrollable"))
            )
            kept.append(el)
        if opts["keep"]:
            self.kept[opts["keep"]] = kept
        return {"candidates": candidates, "maxExistingId": max_existing}

    def _stamp(self, opts: dict[str, Any]) -> list[int]:
        kept = self.kept.pop(opts["kept"], [])
        stamped = []
        for index, stable_id, in_shadow in opts["assignments"]:
            el = kept[index]
            if not el.connected or dom_query.LLM_ID_ATTR in el.attributes:
                continue
            el.attributes[opts["idAttr"]] = str(stable_id)
            if in_shadow:
                el.attributes[opts["shadowAttr"]] = "true"
            el.attributes[opts["frameAttr"]] = str(opts["frameId"])
            stamped.append(stable_id)
        return stamped


class FakeCDPSession:
    """Playwright CDP session double answering from canned responses."""

    def __init__(self, responses: dict[str, Any] | None = None, failing: set[str] | None = None):
        self.responses = dict(responses or {})
        self.failing = set(failing or ())
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.detached = False

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        self.calls.append((method, params or {}))
        if method in self.failing:
            raise PlaywrightError(f"{method} failed")
        response = self.responses.get(method, {})
        return response(params or {}) if callable(response) else response

    async def detach(self) -> None:
        self.detached = True


def with_node_descriptions(page: FakePage, responses: dict[str, Any]) -> dict[str, Any]:
    """
    Extend session responses so backend ids of the elements a DOM query left
    on ``window`` can be described. Other ``Runtime.evaluate`` calls are
    answered by the original response.
    """
    base_evaluate = responses.get("Runtime.evaluate", {})
    described: list[FakeElement] = []

    def evaluate(params: dict[str, Any]) -> Any:
        if "objectGroup" in params:
            described[:] = page.kept.pop(dom_query.DESCRIBED_CANDIDATES, [])
            return {"result": {"type": "object", "subtype": "array", "objectId": "kept"}}
        return base_evaluate(params) if callable(base_evaluate) else base_evaluate

    def properties(params: dict[str, Any]) -> dict[str, Any]:
        entries = [
            {"name": str(i), "value": {"type": "object", "objectId": f"node-{i}"}}
            for i in range(len(described))
        ]
        entries.append({"name": "length", "value": {"type": "number", "value": len(described)}})
        return {"result": entries}

    def describe(params: dict[str, Any]) -> dict[str, Any]:
        position = int(params["objectId"].split("-")[1])
        return {"node": {"backendNodeId": described[position].backend_id}}

    return {
        **responses,
        "Runtime.evaluate": evaluate,
        "Runtime.getProperties": properties,
        "DOM.describeNode": describe,
        "Runtime.releaseObjectGroup": {},
    }


def ax_node(
    node_id: str,
    role: str,
    name: str = "",
    backend_id: int | None = None,
    ignored: bool = False,
    value: Any = None,
    properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """An ``Accessibility.getFullAXTree`` node."""
    node: dict[str, Any] = {
        "nodeId": node_id,
        "ignored": ignored,
        "role": {"type": "role", "value": role},
        "name": {"type": "computedString", "value": name},
        "properties": [
            {"name": key, "value": {"type": "boolean", "value": val}}
            for key, val in (properties or {}).items()
        ],
    }
    if backend_id is not None:
        node["backendDOMNodeId"] = backend_id
    if value is not None:
        node["value"] = {"type": "string", "value": value}
    return node


def dom_snapshot(
    bounds: dict[int, list[float]],
    attributes: dict[int, dict[str, str]] | None = None,
) -> dict[str, Any]:
    """A ``DOMSnapshot.captureSnapshot`` result with one document."""
    strings: list[str] = []

    def intern(text: str) -> int:
        if text not in strings:
            strings.append(text)
        return strings.index(text)

    backend_ids = list(bounds)
    flat_attributes = [
        [
            index
            for name, value in (attributes or {}).get(backend_id, {}).items()
            for index in (intern(name), intern(value))
        ]
        for backend_id in backend_ids
    ]
    return {
        "documents": [
            {
                "nodes": {"backendNodeId": backend_ids, "attributes": flat_attributes},
                "layout": {
                    "nodeIndex": list(range(len(backend_ids))),
                    "bounds": [bounds[b] for b in backend_ids],
                },
            }
        ],
        "strings": strings,
    }


def runtime_value(value: Any) -> dict[str, Any]:
    return {"result": {"type": "object", "value": value}}


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep settings independent of the developer environment."""
    monkeypatch.setenv("PAGESENSE_DISABLE_CONSOLE_LOGGING", "1")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def fake_element():
    return FakeElement


@pytest.fixture
def fake_page():
    return FakePage


@pytest.fixture
def fake_session():
    return FakeCDPSession


@pytest.fixture
def cdp_factories():
    """Builders for protocol payloads."""
    return {
        "ax_node": ax_node,
        "dom_snapshot": dom_snapshot,
        "runtime_value": runtime_value,
        "with_node_descriptions": with_node_descriptions,
    }
