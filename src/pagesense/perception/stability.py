"""
Page quiescence detection.

Waits until the page stops changing before anything is extracted: no
structural, attribute or text mutations for a threshold and, optionally, no
resource loads for a second threshold. All waits resolve; none raise.

Classes
-------
ActivityMonitor
    Source of activity samples for the stability decision.
PageActivityMonitor
    Monitor backed by MutationObserver and PerformanceObserver in the page.
StabilityWaiter
    Quiescence, selector, text, predicate and page-ready waits.
StabilityResult
    Result of a stability wait.
PageReadyResult
    Result of a page-ready wait.

Usage Examples
--------------
Wait before extracting::

    from pagesense.perception import StabilityWaiter, StabilityConfig

    waiter = StabilityWaiter(StabilityConfig(stability_threshold_ms=300))
    result = await waiter.wait_for_stability(page)
    if not result.stable:
        # Best effort: extract anyway
        ...
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from playwright.async_api import ElementHandle, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import StabilityConfig

logger = logging.getLogger(__name__)

_INSTALL_SCRIPT = """
(options) => {
    if (typeof document === 'undefined' || !document.body) {
        return false;
    }
    const previous = window.__pagesenseActivity;
    if (previous) {
        previous.mutationObserver.disconnect();
        if (previous.perfObserver) previous.perfObserver.disconnect();
    }
    const state = { mutations: 0, network: 0, mutationObserver: null, perfObserver: null };
    state.mutationObserver = new MutationObserver((records) => {
        state.mutations += records.length;
    });
    state.mutationObserver.observe(document.body, {
        childList: true,
        subtree: true,
        attributes: true,
        characterData: true
    });
    if (options.watchNetwork && typeof PerformanceObserver !== 'undefined') {
        try {
            state.perfObserver = new PerformanceObserver((list) => {
                const now = performance.now();
                for (const entry of list.getEntries()) {
                    // Buffered entries older than the idle threshold are history
                    if (now - entry.responseEnd < options.networkIdleMs) {
                        state.network += 1;
                    }
                }
            });
            state.perfObserver.observe({ type: 'resource', buffered: true });
        } catch (e) {
            state.perfObserver = null;
        }
    }
    window.__pagesenseActivity = state;
    return true;
}
"""

_DRAIN_SCRIPT = """
() => {
    const state = window.__pagesenseActivity;
    if (!state) return null;
    const sample = { mutations: state.mutations, network: state.network };
    state.mutations = 0;
    state.network = 0;
    return sample;
}
"""

_UNINSTALL_SCRIPT = """
() => {
    const state = window.__pagesenseActivity;
    if (state) {
        state.mutationObserver.disconnect();
        if (state.perfObserver) state.perfObserver.disconnect();
        delete window.__pagesenseActivity;
    }
}
"""

_TEXT_PRESENT_SCRIPT = """
(needle) => {
    const body = document.body;
    if (!body) return false;
    return (body.innerText || body.textContent || '').toLowerCase().includes(needle);
}
"""


@dataclass
class ActivitySample:
    """Activity observed since the previous drain."""

    mutations: int = 0
    network_events: int = 0


@dataclass
class StabilityResult:
    """Result of waiting for page quiescence."""

    stable: bool
    wait_time_ms: float
    mutation_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "stable": self.stable,
            "waitTimeMs": round(self.wait_time_ms),
            "mutationCount": self.mutation_count,
        }


@dataclass
class PageReadyResult:
    """Result of waiting for load completion plus quiescence."""

    ready: bool
    wait_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {"ready": self.ready, "waitTimeMs": round(self.wait_time_ms)}


class ActivityMonitor(ABC):
    """Reports page activity to the stability decision."""

    @abstractmethod
    async def install(self) -> bool:
        """Start observing. Returns False when there is nothing to observe yet."""

    @abstractmethod
    async def drain(self) -> ActivitySample | None:
        """Activity since the last drain; None when observation was lost."""

    @abstractmethod
    async def uninstall(self) -> None:
        """Stop observing."""


class PageActivityMonitor(ActivityMonitor):
    """Observes a Playwright page through injected observers."""

    def __init__(self, page: Page, watch_network: bool = True, network_idle_ms: int = 500):
        self.page = page
        self.watch_network = watch_network
        self.network_idle_ms = network_idle_ms

    async def install(self) -> bool:
        return bool(
            await self.page.evaluate(
                _INSTALL_SCRIPT,
                {"watchNetwork": self.watch_network, "networkIdleMs": self.network_idle_ms},
            )
        )

    async def drain(self) -> ActivitySample | None:
        data = await self.page.evaluate(_DRAIN_SCRIPT)
        if data is None:
            return None
        return ActivitySample(mutations=data["mutations"], network_events=data["network"])

    async def uninstall(self) -> None:
        await self.page.evaluate(_UNINSTALL_SCRIPT)


class StabilityWaiter:
    """
    Wait for the page to settle before extraction.

    A periodic check declares stability once the DOM has been quiet for
    ``stability_threshold_ms`` and, when enabled, the network for
    ``network_idle_threshold_ms``; it gives up with ``stable=False`` at
    ``timeout_ms``. A page that has seen no resource loads counts as
    network-quiet.
    """

    def __init__(
        self,
        config: StabilityConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the stability waiter.

        Args:
            config: Thresholds; defaults to the process settings.
            clock: Monotonic clock in seconds.
        """
        self.config = config or StabilityConfig.from_settings()
        self._clock = clock

    def _monitor_for(self, target: Page | ActivityMonitor, config: StabilityConfig) -> ActivityMonitor:
        if isinstance(target, ActivityMonitor):
            return target
        return PageActivityMonitor(
            target,
            watch_network=config.wait_for_network,
            network_idle_ms=config.network_idle_threshold_ms,
        )

    async def wait_for_stability(
        self,
        target: Page | ActivityMonitor,
        config: StabilityConfig | None = None,
    ) -> StabilityResult:
        """
        Wait until the page is quiet or the timeout elapses.

        Args:
            target: Page to observe, or a monitor reporting its activity.
            config: Overrides the waiter's thresholds for this call.

        Returns:
            StabilityResult; ``stable`` is False on timeout or when the
            document has no body yet.
        """
        config = config or self.config
        monitor = self._monitor_for(target, config)
        start = self._clock()

        try:
            installed = await monitor.install()
        except PlaywrightError as e:
            logger.warning(f"Failed to observe page activity: {e}")
            installed = False
        if not installed:
            logger.warning("Document not ready, resolving stability wait immediately")
            return StabilityResult(stable=False, wait_time_ms=0.0, mutation_count=0)

        last_mutation = start
        last_network: float | None = None
        mutation_count = 0
        stable = False

        try:
            while True:
                try:
                    sample = await monitor.drain()
                except PlaywrightError as e:
                    # Execution context replaced, e.g. by a navigation
                    logger.debug(f"Activity drain failed: {e}")
                    sample = None
                now = self._clock()

                if sample is None:
                    last_mutation = now
                    await self._reinstall(monitor)
                else:
                    if sample.mutations:
                        mutation_count += sample.mutations
                        last_mutation = now
                    if sample.network_events:
                        last_network = now

                elapsed_ms = (now - start) * 1000
                if elapsed_ms >= config.min_wait_ms:
                    if elapsed_ms >= config.timeout_ms:
                        logger.debug(f"Stability timeout reached ({config.timeout_ms}ms)")
                        break
                    dom_quiet = (now - last_mutation) * 1000 >= config.stability_threshold_ms
                    network_quiet = (
                        not config.wait_for_network
                        or last_network is None
                        or (now - last_network) * 1000 >= config.network_idle_threshold_ms
                    )
                    if dom_quiet and network_quiet:
                        stable = True
                        break

                await asyncio.sleep(config.poll_interval_ms / 1000)
        finally:
            try:
                await monitor.uninstall()
            except PlaywrightError as e:
                logger.debug(f"Failed to remove activity observers: {e}")

        wait_time_ms = (self._clock() - start) * 1000
        logger.debug(
            f"Stability wait finished: stable={stable}, waitTime={wait_time_ms:.0f}ms, "
            f"mutations={mutation_count}"
        )
        return StabilityResult(
            stable=stable, wait_time_ms=wait_time_ms, mutation_count=mutation_count
        )

    async def _reinstall(self, monitor: ActivityMonitor) -> None:
        try:
            await monitor.install()
        except PlaywrightError as e:
            logger.debug(f"Failed to reinstall activity observers: {e}")

    async def wait_for_condition(
        self,
        condition: Callable[[], bool | Awaitable[bool]],
        timeout_ms: int = 5000,
        poll_interval_ms: int = 100,
    ) -> bool:
        """
        Poll a predicate until it holds or the timeout elapses.

        A predicate that raises counts as not yet satisfied.

        Args:
            condition: Sync or async predicate.
            timeout_ms: Give up after this long.
            poll_interval_ms: Delay between checks.

        Returns:
            True if the predicate held before the timeout.
        """
        start = self._clock()
        while True:
            try:
                outcome = condition()
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                if outcome:
                    return True
            except Exception as e:
                logger.debug(f"Condition check raised: {e}")

            if (self._clock() - start) * 1000 >= timeout_ms:
                return False
            await asyncio.sleep(poll_interval_ms / 1000)

    async def wait_for_selector(
        self, page: Page, selector: str, timeout_ms: int = 5000
    ) -> ElementHandle | None:
        """Wait for an element matching ``selector`` to be attached."""
        try:
            return await page.wait_for_selector(selector, state="attached", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug(f"Selector {selector!r} not found within {timeout_ms}ms")
            return None

    async def wait_for_text(self, page: Page, text: str, timeout_ms: int = 5000) -> bool:
        """Wait for ``text`` to appear in the page, case-insensitively."""
        needle = text.lower()
        return await self.wait_for_condition(
            lambda: page.evaluate(_TEXT_PRESENT_SCRIPT, needle), timeout_ms=timeout_ms
        )

    async def wait_for_page_ready(
        self, page: Page, config: StabilityConfig | None = None
    ) -> PageReadyResult:
        """
        Wait for load completion, then for quiescence.

        Args:
            page: Page to wait on.
            config: Thresholds; the timeout also bounds the load wait.

        Returns:
            PageReadyResult; ``ready`` mirrors the stability outcome.
        """
        config = config or self.config
        start = self._clock()
        try:
            # Playwright treats a zero timeout as "no timeout"
            await page.wait_for_load_state("load", timeout=max(config.timeout_ms, 1))
        except PlaywrightTimeoutError:
            logger.debug(f"Load state not reached within {config.timeout_ms}ms")

        stability = await self.wait_for_stability(page, config)
        return PageReadyResult(
            ready=stability.stable, wait_time_ms=(self._clock() - start) * 1000
        )


async def wait_for_stability(
    page: Page, config: StabilityConfig | None = None
) -> StabilityResult:
    """Convenience wrapper around :meth:`StabilityWaiter.wait_for_stability`."""
    return await StabilityWaiter(config).wait_for_stability(page)
