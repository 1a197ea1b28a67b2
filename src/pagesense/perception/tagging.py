"""
Stable identity tagging.

Assigns a monotonically increasing identifier to every visible interactive
element, stamping it on the element itself as ``data-llm-id`` together with
shadow-containment and frame markers. Marked elements are never re-marked,
so an identifier stays with its element for the lifetime of the document.

Classes
-------
TaggingContext
    Per-document counter and frame id.
StableIdTagger
    Tagging pass, identity lookups and the debounced auto-tagger.

Usage Examples
--------------
Tag a page and resolve an identifier::

    from pagesense.perception import StableIdTagger

    tagger = StableIdTagger(page)
    await tagger.start_auto_tagger()
    handle = await tagger.find_element_by_stable_id(12)
    if handle:
        await handle.click()

One tagger per frame::

    frame_tagger = StableIdTagger(page.frames[1], TaggingContext(frame_id=1))
    await frame_tagger.ensure_stable_ids()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from playwright.async_api import ElementHandle, Frame, Page

from .config import TaggerConfig
from .dom_query import (
    FRAME_ATTR,
    LLM_ID_ATTR,
    SHADOW_ATTR,
    TRAVERSAL_JS,
    is_visible,
    query_candidates,
)
from .models import TaggedElement
from .mutations import ChangeBatch, ChangeSource, ChangeSubscription, PageMutationSource

logger = logging.getLogger(__name__)

# Window property holding the candidates of a tagging pass until they are stamped
KEPT_CANDIDATES = "__pagesenseCandidates"

_STAMP_SCRIPT = """
(opts) => {
    const elements = window[opts.kept] || [];
    const stamped = [];
    for (const [index, id, inShadow] of opts.assignments) {
        const el = elements[index];
        if (!el || !el.isConnected || el.hasAttribute(opts.idAttr)) continue;
        el.setAttribute(opts.idAttr, String(id));
        if (inShadow) el.setAttribute(opts.shadowAttr, 'true');
        el.setAttribute(opts.frameAttr, String(opts.frameId));
        stamped.push(id);
    }
    delete window[opts.kept];
    return stamped;
}
"""

_FIND_SCRIPT = (
    "(opts) => {\n"
    + TRAVERSAL_JS
    + """
    const selector = `[${opts.idAttr}="${opts.id}"]`;
    const matches = collect(document, selector, opts.deep);
    return matches.length ? matches[0].el : null;
}
"""
)

_LIST_SCRIPT = (
    "(opts) => {\n"
    + TRAVERSAL_JS
    + """
    const selector = `[${opts.idAttr}]`;
    return collect(document, selector, opts.deep).map(({ el }) => ({
        id: parseInt(el.getAttribute(opts.idAttr), 10),
        tagName: el.tagName.toLowerCase(),
        isInShadow: el.getAttribute(opts.shadowAttr) === 'true',
        frameId: parseInt(el.getAttribute(opts.frameAttr) || '0', 10) || 0,
    })).filter((item) => !Number.isNaN(item.id));
}
"""
)


@dataclass
class TaggingContext:
    """Identity state for one loaded document."""

    next_id: int = 1
    frame_id: int = 0
    tagged_count: int = 0

    def allocate(self) -> int:
        stable_id = self.next_id
        self.next_id += 1
        return stable_id

    def observe_existing(self, max_id: int) -> None:
        """Continue numbering past identifiers already present in the page."""
        if max_id >= self.next_id:
            self.next_id = max_id + 1

    def reset(self) -> None:
        self.next_id = 1
        self.frame_id = 0
        self.tagged_count = 0


class StableIdTagger:
    """
    Assign and resolve stable identities in one page or frame.

    Tagging passes are serialized, so a pass triggered by the auto-tagger
    never interleaves with one requested by an extraction.
    """

    def __init__(
        self,
        target: Page | Frame,
        context: TaggingContext | None = None,
        config: TaggerConfig | None = None,
    ):
        """
        Initialize the tagger.

        Args:
            target: Page or frame whose document is tagged.
            context: Identity state; a fresh one when omitted.
            config: Tagging options; defaults to the process settings.
        """
        self.target = target
        self.context = context or TaggingContext()
        self.config = config or TaggerConfig.from_settings()
        self._lock = asyncio.Lock()
        self._subscription: ChangeSubscription | None = None

    @property
    def frame_id(self) -> int:
        return self.context.frame_id

    def set_frame_id(self, frame_id: int) -> None:
        self.context.frame_id = frame_id

    @property
    def current_id_counter(self) -> int:
        """The identifier the next tagged element will receive."""
        return self.context.next_id

    @property
    def auto_tagging(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def ensure_stable_ids(self, root: str | ElementHandle | None = None) -> int:
        """
        Tag every visible, untagged interactive element under ``root``.

        Args:
            root: Selector or handle of the subtree to tag; the whole document
                when None.

        Returns:
            Number of newly tagged elements.
        """
        async with self._lock:
            query = await query_candidates(
                self.target,
                root=root,
                pierce_shadow=self.config.pierce_shadow,
                untagged_only=True,
                keep=KEPT_CANDIDATES,
            )
            self.context.observe_existing(query.max_existing_id)

            assignments = [
                [facts["index"], self.context.allocate(), bool(facts.get("inShadow"))]
                for facts in query.candidates
                if is_visible(facts)
            ]
            stamped = await self.target.evaluate(
                _STAMP_SCRIPT,
                {
                    "assignments": assignments,
                    "kept": KEPT_CANDIDATES,
                    "frameId": self.context.frame_id,
                    "idAttr": LLM_ID_ATTR,
                    "shadowAttr": SHADOW_ATTR,
                    "frameAttr": FRAME_ATTR,
                },
            )
            self.context.tagged_count += len(stamped)

        if stamped:
            logger.debug(
                f"Tagged {len(stamped)} elements "
                f"(ids {stamped[0]}..{stamped[-1]}, strategy={query.strategy.value})"
            )
        return len(stamped)

    async def get_stable_id(self, element: ElementHandle) -> int | None:
        """Identifier carried by ``element``, if it has one."""
        raw = await element.get_attribute(LLM_ID_ATTR)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    async def find_element_by_stable_id(
        self, stable_id: int, deep: bool = True
    ) -> ElementHandle | None:
        """
        Resolve an identifier back to a live element.

        Args:
            stable_id: Identifier to look up.
            deep: Also search inside shadow roots.

        Returns:
            The element handle, or None when no element carries the identifier.
        """
        handle = await self.target.evaluate_handle(
            _FIND_SCRIPT, {"id": str(stable_id), "deep": deep, "idAttr": LLM_ID_ATTR}
        )
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element

    async def get_all_tagged_elements(self) -> list[TaggedElement]:
        """Every tagged element with its shadow and frame metadata."""
        items = await self.target.evaluate(
            _LIST_SCRIPT,
            {
                "deep": self.config.pierce_shadow,
                "idAttr": LLM_ID_ATTR,
                "shadowAttr": SHADOW_ATTR,
                "frameAttr": FRAME_ATTR,
            },
        )
        return [
            TaggedElement(
                id=item["id"],
                tag_name=item["tagName"],
                is_in_shadow=item["isInShadow"],
                frame_id=item["frameId"],
            )
            for item in items
        ]

    async def start_auto_tagger(self, source: ChangeSource | None = None) -> bool:
        """
        Tag now, then re-tag whenever nodes are added.

        Starting an already running auto-tagger is a no-op.

        Args:
            source: Change source; a page MutationObserver when omitted.

        Returns:
            True if the auto-tagger is running.
        """
        if self.auto_tagging:
            return True
        await self.ensure_stable_ids()
        self._subscription = ChangeSubscription(
            self._on_change,
            source=source or PageMutationSource(self.target),
            debounce_ms=self.config.debounce_ms,
            poll_interval_ms=self.config.poll_interval_ms,
        )
        started = await self._subscription.start()
        if started:
            logger.debug("Auto-tagger started")
        else:
            self._subscription = None
        return started

    async def stop_auto_tagger(self) -> None:
        if self._subscription is not None:
            await self._subscription.stop()
            self._subscription = None
            logger.debug("Auto-tagger stopped")

    async def _on_change(self, batch: ChangeBatch) -> None:
        if not batch.has_additions:
            return
        count = await self.ensure_stable_ids()
        if count:
            logger.debug(f"Auto-tagged {count} new elements after {batch.added_nodes} additions")

    async def reset(self) -> None:
        """Forget all identity state; used when the document is replaced."""
        await self.stop_auto_tagger()
        self.context.reset()
