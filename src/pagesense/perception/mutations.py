"""
Debounced subscriptions to structural page changes.

A :class:`ChangeSubscription` receives change batches from any source,
either pulled from a :class:`ChangeSource` or pushed with :meth:`push`,
merges bursts, and invokes its callback once per burst after the debounce
window has passed without new changes.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .exceptions import PerceptionError

logger = logging.getLogger(__name__)

_OBSERVE_SCRIPT = """
(rootSelector) => {
    const root = rootSelector ? document.querySelector(rootSelector) : (document.body || document.documentElement);
    if (!root) return false;
    if (window.__pagesenseChanges) {
        window.__pagesenseChanges.observer.disconnect();
    }
    const state = { added: 0, removed: 0, records: 0, observer: null };
    state.observer = new MutationObserver((records) => {
        for (const record of records) {
            state.added += record.addedNodes.length;
            state.removed += record.removedNodes.length;
            state.records += 1;
        }
    });
    state.observer.observe(root, { childList: true, subtree: true });
    window.__pagesenseChanges = state;
    return true;
}
"""

_READ_SCRIPT = """
() => {
    const state = window.__pagesenseChanges;
    if (!state || state.records === 0) return null;
    const batch = { added: state.added, removed: state.removed, records: state.records };
    state.added = 0;
    state.removed = 0;
    state.records = 0;
    return batch;
}
"""

_DISCONNECT_SCRIPT = """
() => {
    if (window.__pagesenseChanges) {
        window.__pagesenseChanges.observer.disconnect();
        delete window.__pagesenseChanges;
    }
}
"""


@dataclass
class ChangeBatch:
    """Aggregated structural changes."""

    added_nodes: int = 0
    removed_nodes: int = 0
    records: int = 0

    @property
    def has_additions(self) -> bool:
        return self.added_nodes > 0

    def merge(self, other: "ChangeBatch") -> "ChangeBatch":
        return ChangeBatch(
            added_nodes=self.added_nodes + other.added_nodes,
            removed_nodes=self.removed_nodes + other.removed_nodes,
            records=self.records + other.records,
        )


class ChangeSource(ABC):
    """Pull-style source of change batches."""

    @abstractmethod
    async def open(self) -> bool:
        """Start watching; False when there is nothing to watch yet."""

    @abstractmethod
    async def read(self) -> ChangeBatch | None:
        """Changes accumulated since the last read, or None."""

    @abstractmethod
    async def close(self) -> None:
        """Stop watching."""


class PageMutationSource(ChangeSource):
    """Buffers childList mutations in the page and hands them out on read."""

    def __init__(self, page: Page, root_selector: str | None = None):
        self.page = page
        self.root_selector = root_selector

    async def open(self) -> bool:
        return bool(await self.page.evaluate(_OBSERVE_SCRIPT, self.root_selector))

    async def read(self) -> ChangeBatch | None:
        data = await self.page.evaluate(_READ_SCRIPT)
        if not data:
            return None
        return ChangeBatch(
            added_nodes=data["added"], removed_nodes=data["removed"], records=data["records"]
        )

    async def close(self) -> None:
        await self.page.evaluate(_DISCONNECT_SCRIPT)


ChangeCallback = Callable[[ChangeBatch], Awaitable[None]]


class ChangeSubscription:
    """
    Debounced subscription to structural changes.

    Every batch restarts the debounce timer; when it expires the merged
    batch of the whole burst is delivered once. Deliveries never overlap.
    """

    def __init__(
        self,
        callback: ChangeCallback,
        source: ChangeSource | None = None,
        debounce_ms: int = 100,
        poll_interval_ms: int = 50,
    ):
        """
        Initialize the subscription.

        Args:
            callback: Coroutine function receiving each merged burst.
            source: Pull-style source polled while active; push-only when None.
            debounce_ms: Quiet period that ends a burst.
            poll_interval_ms: Delay between source reads.
        """
        self.callback = callback
        self.source = source
        self.debounce_ms = debounce_ms
        self.poll_interval_ms = poll_interval_ms
        self.deliveries = 0

        self._pending: ChangeBatch | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._poller: asyncio.Task | None = None
        self._flushes: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> bool:
        """Begin delivering changes. Starting twice is a no-op."""
        if self._active:
            return True
        if self.source is not None:
            try:
                opened = await self.source.open()
            except PlaywrightError as e:
                logger.warning(f"Failed to watch page changes: {e}")
                return False
            if not opened:
                logger.debug("Change source has nothing to watch yet")
                return False
            self._poller = asyncio.create_task(self._poll(self.source))
        self._active = True
        return True

    async def stop(self) -> None:
        """Stop delivering changes and drop any pending burst."""
        self._active = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        current = asyncio.current_task()
        flushes = [task for task in self._flushes if task is not current]
        for task in flushes:
            task.cancel()
        if flushes:
            # a flush already holding the lock is cancelled inside the callback
            await asyncio.gather(*flushes, return_exceptions=True)
        self._flushes.clear()
        if self.source is not None:
            try:
                await self.source.close()
            except PlaywrightError as e:
                logger.debug(f"Failed to stop watching page changes: {e}")

    def push(self, batch: ChangeBatch) -> None:
        """Add a batch to the current burst and restart the debounce timer."""
        if not self._active:
            return
        self._pending = batch if self._pending is None else self._pending.merge(batch)
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_ms / 1000, self._schedule_flush)

    def _schedule_flush(self) -> None:
        self._timer = None
        task = asyncio.create_task(self._flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self) -> None:
        async with self._lock:
            batch, self._pending = self._pending, None
            if batch is None or not self._active:
                return
            self.deliveries += 1
            try:
                await self.callback(batch)
            except (PerceptionError, PlaywrightError) as e:
                logger.warning(f"Change callback failed: {e}")

    async def _poll(self, source: ChangeSource) -> None:
        while True:
            try:
                batch = await source.read()
            except PlaywrightError as e:
                logger.debug(f"Reading page changes failed: {e}")
                batch = None
            if batch is not None:
                self.push(batch)
            await asyncio.sleep(self.poll_interval_ms / 1000)
