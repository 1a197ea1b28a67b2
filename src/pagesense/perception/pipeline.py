"""
Perception pipeline orchestration.

Wires the components together for one page: the stability wait gates
extraction, the tagger keeps identities current, the protocol adapter runs
first and the fusion path takes over when it fails, and the size guard
checks whatever comes out.

Classes
-------
FusionExtractor
    Fallback extraction from accessibility and DOM sources.
PagePerception
    Public entry point for one page.

Usage Examples
--------------
::

    async with PagePerception(page) as perception:
        await perception.wait_for_page_ready()
        result = await perception.extract()
        prompt = perception.legend() + "\\n" + json.dumps(result.to_dict())
        element = await perception.resolve(result.interactive_tree[0].id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from playwright.async_api import ElementHandle, Frame, Page
from playwright.async_api import Error as PlaywrightError

from ..config import PageSenseSettings, get_settings
from ..logging import PerformanceLogger, get_logger
from .ax_filter import simplify_ax_tree
from .cdp_extractor import ProtocolExtractionAdapter, parse_identifier
from .config import ExtractionConfig, FusionOptions, SizeLimits, StabilityConfig, TaggerConfig
from .dom_query import collect_dom_elements
from .exceptions import NodeResolutionError, ProtocolError
from .fusion import analyze_coverage, select_elements_accessibility_first
from .models import (
    DOMElementInfo,
    ExtractionMeta,
    ExtractionResult,
    HybridElement,
    SimplifiedAXElement,
    ViewportInfo,
)
from .serializer import SemanticSerializer, estimate_tokens, legend, validate_size
from .stability import PageReadyResult, StabilityResult, StabilityWaiter
from .tagging import StableIdTagger, TaggingContext

logger = logging.getLogger(__name__)

_PAGE_INFO_SCRIPT = """
() => ({
    width: window.innerWidth,
    height: window.innerHeight,
    scrollX: window.scrollX,
    scrollY: window.scrollY,
    title: document.title,
    url: window.location.href,
})
"""


class FusionExtractor:
    """
    Fallback extraction combining accessibility and DOM sources.

    Either source may be missing; with neither, the result is empty and
    coverage is zero. With a tagger, untagged elements are tagged first so
    fused ids come from the tagger's numbering.
    """

    def __init__(
        self,
        protocol: ProtocolExtractionAdapter,
        options: FusionOptions | None = None,
        pierce_shadow: bool = True,
        tagger: StableIdTagger | None = None,
    ):
        self.protocol = protocol
        self.options = options or FusionOptions()
        self.pierce_shadow = pierce_shadow
        self.tagger = tagger

    @property
    def serializer(self) -> SemanticSerializer:
        return self.protocol.serializer

    async def _accessibility_elements(self, page: Page) -> list[SimplifiedAXElement]:
        try:
            session = await self.protocol.session_for(page)
            result = await session.send("Accessibility.getFullAXTree")
        except ProtocolError as e:
            logger.warning(f"Accessibility source unavailable: {e}")
            await self.protocol.close()
            return []
        return simplify_ax_tree(result.get("nodes") or [])

    async def _dom_elements(self, page: Page) -> list[DOMElementInfo]:
        try:
            return await collect_dom_elements(
                page,
                pierce_shadow=self.pierce_shadow,
                occlusion=self.options.detect_occlusion,
                scrollable=self.options.detect_scrollable,
                resolve_backend_ids=self.protocol.describe_kept_elements,
            )
        except PlaywrightError as e:
            logger.warning(f"DOM source unavailable: {e}")
            return []

    async def _page_info(self, page: Page) -> tuple[ViewportInfo, str, str]:
        try:
            info = await page.evaluate(_PAGE_INFO_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"Page metadata unavailable: {e}")
            return ViewportInfo(), "", page.url
        return ViewportInfo.from_metrics(info), info.get("title") or "", info.get("url") or page.url

    def prune(self, elements: list[HybridElement], viewport: ViewportInfo) -> list[HybridElement]:
        """Drop elements whose box lies outside the viewport; boxless ones stay."""
        visible_rect = viewport.rect
        return [
            element
            for element in elements
            if element.bbox is None or element.bbox.intersects(visible_rect)
        ]

    async def extract(self, page: Page) -> ExtractionResult:
        """Build the element model from whatever sources respond."""
        start = time.perf_counter()
        if self.tagger is not None:
            try:
                await self.tagger.ensure_stable_ids()
            except PlaywrightError as e:
                logger.warning(f"Tagging before fusion failed: {e}")
        ax_elements, dom_elements, (viewport, title, url) = await asyncio.gather(
            self._accessibility_elements(page),
            self._dom_elements(page),
            self._page_info(page),
        )
        hybrids = select_elements_accessibility_first(
            ax_elements, dom_elements, options=self.options
        )
        coverage = analyze_coverage(ax_elements, dom_elements)
        if self.protocol.config.viewport_only:
            hybrids = self.prune(hybrids, viewport)
        nodes = self.serializer.serialize(hybrids)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Fusion extraction: {len(nodes)} nodes, coverage {coverage.ax_coverage}% "
            f"in {elapsed_ms:.0f}ms"
        )
        return ExtractionResult(
            interactive_tree=nodes,
            viewport=viewport,
            page_title=title,
            url=url,
            meta=ExtractionMeta(
                node_count=len(nodes),
                extraction_time_ms=elapsed_ms,
                ax_node_count=len(ax_elements),
                estimated_tokens=estimate_tokens(nodes),
                source="fusion",
                coverage=coverage,
            ),
        )


class PagePerception:
    """
    Perception entry point for one page.

    Holds the page's tagging context; the context is reset and auto-tagging
    restarted whenever the main frame navigates.
    """

    def __init__(
        self,
        page: Page,
        settings: PageSenseSettings | None = None,
        stability: StabilityConfig | None = None,
        tagger: TaggerConfig | None = None,
        extraction: ExtractionConfig | None = None,
        fusion: FusionOptions | None = None,
        limits: SizeLimits | None = None,
    ):
        """
        Initialize the pipeline.

        Args:
            page: Page to perceive.
            settings: Source of defaults for every option left as None.
            stability: Stability wait thresholds.
            tagger: Tagging options.
            extraction: Protocol extraction options.
            fusion: Merge precedence for the fallback path.
            limits: Payload size thresholds.
        """
        settings = settings or get_settings()
        self.page = page
        self.waiter = StabilityWaiter(stability or StabilityConfig.from_settings(settings))
        self.tagger = StableIdTagger(
            page, TaggingContext(), tagger or TaggerConfig.from_settings(settings)
        )
        self.protocol = ProtocolExtractionAdapter(
            extraction or ExtractionConfig.from_settings(settings)
        )
        self.fusion = FusionExtractor(
            self.protocol,
            fusion,
            pierce_shadow=self.tagger.config.pierce_shadow,
            tagger=self.tagger,
        )
        self.limits = limits or SizeLimits.from_settings(settings)
        self.performance = PerformanceLogger()
        self._log = get_logger(__name__)
        self._attached = False
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "PagePerception":
        await self.attach()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.detach()

    async def attach(self) -> None:
        """Start auto-tagging and follow main-frame navigations."""
        if self._attached:
            return
        self.page.on("framenavigated", self._on_frame_navigated)
        self._attached = True
        if self.tagger.config.auto_tag:
            await self._start_auto_tagger()

    async def detach(self) -> None:
        """Stop background work and release the protocol session."""
        if self._attached:
            self.page.remove_listener("framenavigated", self._on_frame_navigated)
            self._attached = False
        for task in list(self._tasks):
            task.cancel()
        await self.tagger.stop_auto_tagger()
        await self.protocol.close()

    async def _start_auto_tagger(self) -> None:
        try:
            await self.tagger.start_auto_tagger()
        except PlaywrightError as e:
            logger.warning(f"Failed to start auto-tagger: {e}")

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame != self.page.main_frame:
            return
        task = asyncio.create_task(self._after_navigation())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _after_navigation(self) -> None:
        await self.reset()
        if not self.tagger.config.auto_tag:
            return
        try:
            await self.page.wait_for_load_state("domcontentloaded")
        except PlaywrightError as e:
            logger.debug(f"Page unavailable after navigation: {e}")
            return
        await self._start_auto_tagger()

    async def reset(self) -> None:
        """Forget identity state for the previous document."""
        await self.tagger.reset()
        self._log.debug("tagging_context_reset", url=self.page.url)

    def legend(self) -> str:
        """Key-to-meaning text for the wire format."""
        return legend()

    async def wait_for_stability(self, config: StabilityConfig | None = None) -> StabilityResult:
        return await self.waiter.wait_for_stability(self.page, config)

    async def wait_for_page_ready(self, config: StabilityConfig | None = None) -> PageReadyResult:
        return await self.waiter.wait_for_page_ready(self.page, config)

    async def ensure_stable_ids(self, root: str | ElementHandle | None = None) -> int:
        return await self.tagger.ensure_stable_ids(root)

    async def extract(self, wait: bool = True) -> ExtractionResult:
        """
        Extract the page's interactive elements.

        Args:
            wait: Wait for quiescence first (best effort).

        Returns:
            ExtractionResult from the protocol path, or from the fusion path
            when the protocol path failed.

        Raises:
            PayloadTooLargeError: If the result is too large to send onward.
        """
        start = time.perf_counter()
        if wait:
            stability = await self.wait_for_stability()
            if not stability.stable:
                logger.debug("Extracting before the page settled")

        try:
            await self.tagger.ensure_stable_ids()
        except PlaywrightError as e:
            logger.warning(f"Tagging before extraction failed: {e}")

        try:
            result = await self.protocol.extract(self.page)
        except ProtocolError as e:
            logger.warning(f"Falling back to fusion extraction: {e}")
            result = await self.fusion.extract(self.page)

        payload: dict[str, Any] = result.to_dict()
        size = validate_size(payload, self.limits)

        duration = time.perf_counter() - start
        self.performance.log_timing(
            "extract", duration, source=result.meta.source, nodes=result.meta.node_count
        )
        self._log.info(
            "extraction_completed",
            source=result.meta.source,
            nodes=result.meta.node_count,
            bytes=size,
            url=result.url,
        )
        return result

    async def resolve(self, identifier: str | int) -> ElementHandle:
        """
        Map a wire identifier back to a live element.

        Raises:
            NodeResolutionError: If no live element matches the identifier.
        """
        kind, number = parse_identifier(identifier)
        if kind == "backend":
            return await self.protocol.element_handle_for(self.page, number)

        element = await self.tagger.find_element_by_stable_id(number)
        if element is None:
            raise NodeResolutionError(number, "no element carries this identifier", kind="stable id")
        return element
