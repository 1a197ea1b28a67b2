"""
Page-side queries for interactive elements.

Candidates are found with a two-tier strategy: a recursive traversal that
also descends into every attached shadow root, and a plain document query
used when the traversal fails. The visibility gate is applied here, in
Python, to the facts each query returns.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from playwright.async_api import ElementHandle, Frame, Page
from playwright.async_api import Error as PlaywrightError

from .exceptions import ProtocolError
from .models import DOMElementInfo

logger = logging.getLogger(__name__)

LLM_ID_ATTR = "data-llm-id"
SHADOW_ATTR = "data-llm-in-shadow"
FRAME_ATTR = "data-llm-frame-id"

INTERACTIVE_SELECTORS: tuple[str, ...] = (
    "a[href]",
    "button",
    "input",
    "textarea",
    "select",
    '[role="button"]',
    '[role="link"]',
    '[role="menuitem"]',
    '[role="menuitemcheckbox"]',
    '[role="menuitemradio"]',
    '[role="option"]',
    '[role="tab"]',
    '[role="treeitem"]',
    '[role="checkbox"]',
    '[role="radio"]',
    '[role="switch"]',
    '[role="combobox"]',
    '[role="listbox"]',
    '[role="textbox"]',
    '[role="searchbox"]',
    '[role="spinbutton"]',
    '[role="slider"]',
    "[onclick]",
    '[tabindex]:not([tabindex="-1"])',
    '[contenteditable="true"]',
)

INTERACTIVE_SELECTOR = ", ".join(INTERACTIVE_SELECTORS)

# Overflow beyond the client box before an element counts as scrollable
SCROLL_SLACK_PX = 50

# Window property holding the elements of a collection for backend id lookup
DESCRIBED_CANDIDATES = "__pagesenseDescribe"

BackendIdResolver = Callable[[Page | Frame, str], Awaitable[list[int | None]]]

# Attributes reported for DOM records
REPORTED_ATTRIBUTES: tuple[str, ...] = (
    "id",
    "href",
    "aria-label",
    "aria-description",
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

# Page-side helpers shared by every script in this module
TRAVERSAL_JS = """
const collectPlain = (root, selector) => {
    const found = [];
    if (root.nodeType === Node.ELEMENT_NODE && root.matches(selector)) {
        found.push({ el: root, inShadow: false });
    }
    for (const el of root.querySelectorAll(selector)) {
        found.push({ el, inShadow: false });
    }
    return found;
};

const collectDeep = (root, selector) => {
    const found = [];
    const seen = new Set();
    const visit = (scope, inShadow) => {
        if (scope.nodeType === Node.ELEMENT_NODE && scope.matches(selector) && !seen.has(scope)) {
            seen.add(scope);
            found.push({ el: scope, inShadow });
        }
        for (const el of scope.querySelectorAll(selector)) {
            if (!seen.has(el)) {
                seen.add(el);
                found.push({ el, inShadow });
            }
        }
        if (scope.nodeType === Node.ELEMENT_NODE && scope.shadowRoot) {
            visit(scope.shadowRoot, true);
        }
        for (const host of scope.querySelectorAll('*')) {
            if (host.shadowRoot) visit(host.shadowRoot, true);
        }
    };
    visit(root, false);
    return found;
};

const collect = (root, selector, deep) => deep ? collectDeep(root, selector) : collectPlain(root, selector);
"""

_COLLECT_SCRIPT = (
    "(opts) => {\n"
    + TRAVERSAL_JS
    + """
    const root = opts.root || (opts.rootSelector ? document.querySelector(opts.rootSelector) : document);
    if (!root) return { candidates: [], maxExistingId: 0 };

    const stableIdOf = (el) => {
        const raw = el.getAttribute(opts.idAttr);
        const parsed = raw === null ? NaN : parseInt(raw, 10);
        return Number.isNaN(parsed) ? null : parsed;
    };

    const stateOf = (el) => {
        const states = [];
        const aria = (name) => el.getAttribute('aria-' + name);
        if (el.disabled || aria('disabled') === 'true') states.push('disabled');
        if (el.checked === true || aria('checked') === 'true') states.push('checked');
        if (el.selected === true || aria('selected') === 'true') states.push('selected');
        if (aria('expanded') !== null) states.push(aria('expanded') === 'true' ? 'expanded' : 'collapsed');
        if (aria('pressed') === 'true') states.push('pressed');
        if (el.readOnly === true) states.push('readonly');
        if (el.required === true || aria('required') === 'true') states.push('required');
        return states;
    };

    const labelOf = (el) => {
        const labelledBy = el.getAttribute('aria-labelledby');
        if (labelledBy) {
            const doc = el.getRootNode();
            const text = labelledBy.split(/\\s+/)
                .map((id) => (doc.getElementById ? doc.getElementById(id) : null))
                .filter(Boolean)
                .map((node) => node.textContent.trim())
                .join(' ');
            if (text) return text;
        }
        if (el.labels && el.labels.length) return el.labels[0].textContent.trim();
        return '';
    };

    const occludedAt = (el, rect) => {
        const x = rect.left + rect.width / 2;
        const y = rect.top + rect.height / 2;
        if (x < 0 || y < 0 || x >= window.innerWidth || y >= window.innerHeight) return false;
        try {
            const scope = el.getRootNode();
            const hit = scope.elementFromPoint ? scope.elementFromPoint(x, y) : document.elementFromPoint(x, y);
            if (!hit) return false;
            return !(hit === el || el.contains(hit) || hit.contains(el));
        } catch (e) {
            return false;
        }
    };

    const scrollOf = (el) => {
        const vertical = el.scrollHeight > el.clientHeight + opts.scrollSlack;
        const horizontal = el.scrollWidth > el.clientWidth + opts.scrollSlack;
        if (!vertical && !horizontal) return null;
        const range = el.scrollHeight - el.clientHeight;
        const depth = vertical && range > 0 ? Math.round(el.scrollTop / range * 100) : 0;
        return { depth: depth + '%', hasMore: el.scrollTop + el.clientHeight < el.scrollHeight - 20 };
    };

    let maxExistingId = 0;
    const candidates = [];
    const elements = [];
    for (const { el, inShadow } of collect(root, opts.selector, opts.deep)) {
        const stableId = stableIdOf(el);
        if (stableId !== null) maxExistingId = Math.max(maxExistingId, stableId);
        if (opts.untaggedOnly && el.hasAttribute(opts.idAttr)) continue;

        const facts = {
            index: elements.length,
            tagName: el.tagName.toLowerCase(),
            stableId,
            inShadow,
            ariaHidden: el.getAttribute('aria-hidden'),
            hidden: el.hasAttribute('hidden'),
            inputType: el.tagName === 'INPUT' ? (el.getAttribute('type') || 'text').toLowerCase() : null,
        };
        try {
            const style = window.getComputedStyle(el);
            const rect = el.getBoundingClientRect();
            facts.display = style.display;
            facts.visibility = style.visibility;
            facts.opacity = style.opacity;
            facts.rect = {
                x: rect.left + window.scrollX,
                y: rect.top + window.scrollY,
                width: rect.width,
                height: rect.height,
            };
            if (opts.detail && opts.occlusion) facts.occluded = occludedAt(el, rect);
            if (opts.detail && opts.scrollable) facts.scroll = scrollOf(el);
        } catch (e) {
            facts.styleError = String(e && e.message ? e.message : e);
        }
        if (opts.detail) {
            const attributes = {};
            for (const name of opts.attributes) {
                const value = el.getAttribute(name);
                if (value !== null) attributes[name] = value;
            }
            facts.attributes = attributes;
            facts.text = (el.innerText || el.textContent || '').trim().slice(0, 200);
            facts.label = labelOf(el);
            facts.value = typeof el.value === 'string' ? el.value : '';
            facts.states = stateOf(el);
            facts.frameId = parseInt(el.getAttribute(opts.frameAttr) || '0', 10) || 0;
        }
        elements.push(el);
        candidates.push(facts);
    }
    if (opts.keep) window[opts.keep] = elements;
    return { candidates, maxExistingId };
}
"""
)


class QueryStrategy(str, Enum):
    """How candidates are located."""

    DEEP = "deep"  # recursive traversal into shadow roots
    PLAIN = "plain"  # document query only


@dataclass
class CandidateQuery:
    """Result of one candidate query."""

    candidates: list[dict[str, Any]] = field(default_factory=list)
    max_existing_id: int = 0
    strategy: QueryStrategy = QueryStrategy.DEEP

    @property
    def degraded(self) -> bool:
        return self.strategy is QueryStrategy.PLAIN


def is_visible(facts: dict[str, Any]) -> bool:
    """
    Visibility gate for one candidate.

    A candidate whose style inspection failed counts as not visible.

    Args:
        facts: Candidate facts reported by the page.

    Returns:
        True only if every visibility condition holds.
    """
    if facts.get("styleError"):
        logger.debug(
            f"Visibility check failed for <{facts.get('tagName')}>: {facts['styleError']}"
        )
        return False
    if facts.get("display") == "none":
        return False
    if facts.get("visibility") in ("hidden", "collapse"):
        return False
    try:
        if float(facts.get("opacity", 1)) == 0:
            return False
    except (TypeError, ValueError):
        pass
    if facts.get("ariaHidden") == "true":
        return False
    if facts.get("hidden"):
        return False
    if facts.get("tagName") == "input" and facts.get("inputType") == "hidden":
        return False
    rect = facts.get("rect") or {}
    if not rect.get("width") or not rect.get("height"):
        return False
    return True


def _root_options(root: str | ElementHandle | None) -> dict[str, Any]:
    if root is None:
        return {"root": None, "rootSelector": None}
    if isinstance(root, str):
        return {"root": None, "rootSelector": root}
    return {"root": root, "rootSelector": None}


async def query_candidates(
    target: Page | Frame,
    root: str | ElementHandle | None = None,
    pierce_shadow: bool = True,
    untagged_only: bool = False,
    detail: bool = False,
    keep: str | None = None,
    occlusion: bool = False,
    scrollable: bool = False,
) -> CandidateQuery:
    """
    Collect facts about interactive candidates under ``root``.

    Args:
        target: Page or frame to query.
        root: Selector or handle of the subtree root; the document when None.
        pierce_shadow: Start with the shadow-piercing traversal.
        untagged_only: Skip candidates already carrying an identity marker.
        detail: Include attributes, text, label, value and state.
        keep: Window property that receives the matched elements, in
            candidate index order, for a follow-up script.
        occlusion: With ``detail``, report whether another element covers
            the candidate's center point.
        scrollable: With ``detail``, report scroll depth of candidates that
            overflow their box.

    Returns:
        The candidates and the strategy that produced them.

    Raises:
        playwright.async_api.Error: If even the plain query fails.
    """
    strategies = (
        (QueryStrategy.DEEP, QueryStrategy.PLAIN) if pierce_shadow else (QueryStrategy.PLAIN,)
    )
    options = {
        **_root_options(root),
        "selector": INTERACTIVE_SELECTOR,
        "idAttr": LLM_ID_ATTR,
        "frameAttr": FRAME_ATTR,
        "attributes": list(REPORTED_ATTRIBUTES),
        "untaggedOnly": untagged_only,
        "detail": detail,
        "keep": keep,
        "occlusion": occlusion,
        "scrollable": scrollable,
        "scrollSlack": SCROLL_SLACK_PX,
    }
    for strategy in strategies:
        try:
            data = await target.evaluate(
                _COLLECT_SCRIPT, {**options, "deep": strategy is QueryStrategy.DEEP}
            )
        except PlaywrightError as e:
            if strategy is QueryStrategy.PLAIN:
                raise
            logger.warning(f"Shadow-piercing query failed, using plain query: {e}")
            continue
        return CandidateQuery(
            candidates=data.get("candidates", []),
            max_existing_id=int(data.get("maxExistingId") or 0),
            strategy=strategy,
        )
    raise RuntimeError("Unexpected candidate query exit")


async def collect_dom_elements(
    target: Page | Frame,
    root: str | ElementHandle | None = None,
    pierce_shadow: bool = True,
    occlusion: bool = True,
    scrollable: bool = True,
    resolve_backend_ids: BackendIdResolver | None = None,
) -> list[DOMElementInfo]:
    """
    Visible interactive DOM elements as :class:`DOMElementInfo` records.

    Args:
        target: Page or frame to query.
        root: Selector or handle of the subtree root; the document when None.
        pierce_shadow: Include elements inside shadow roots.
        occlusion: Report elements covered by an overlay.
        scrollable: Report scroll state of overflowing elements.
        resolve_backend_ids: Maps the collected elements, left on ``window``
            under :data:`DESCRIBED_CANDIDATES`, to backend node ids. Records
            keep ``backend_node_id=None`` when absent or when it fails.

    Returns:
        Records in query order, indexed from zero.
    """
    query = await query_candidates(
        target,
        root=root,
        pierce_shadow=pierce_shadow,
        detail=True,
        keep=DESCRIBED_CANDIDATES if resolve_backend_ids is not None else None,
        occlusion=occlusion,
        scrollable=scrollable,
    )
    backend_ids: list[int | None] = []
    if resolve_backend_ids is not None:
        try:
            backend_ids = await resolve_backend_ids(target, DESCRIBED_CANDIDATES)
        except (ProtocolError, PlaywrightError) as e:
            logger.warning(f"Backend ids unavailable for DOM elements: {e}")

    elements = []
    for facts in query.candidates:
        if not is_visible(facts):
            continue
        element = DOMElementInfo.from_page(facts)
        position = element.index
        if position < len(backend_ids):
            element.backend_node_id = backend_ids[position]
        element.index = len(elements)
        elements.append(element)
    return elements
