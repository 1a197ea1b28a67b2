"""
Errors raised by the perception pipeline, plus the retry and timeout
wrappers used around protocol calls.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
AsyncFn = TypeVar("AsyncFn", bound=Callable[..., Awaitable[Any]])

PAYLOAD_TOO_LARGE_MESSAGE = (
    "Page content too large for processing. Try: (1) Refreshing the page, "
    "(2) Closing modals/popups, (3) Navigating to a simpler section of the site."
)


class PerceptionError(Exception):
    """Base class for every error this package raises."""


class ExtractionTimeoutError(PerceptionError):
    """An awaited page or protocol operation did not finish in time."""


class ValidationError(PerceptionError):
    """An option object was built with out-of-range values."""


class ProtocolError(PerceptionError):
    """A Chrome DevTools Protocol call failed.

    ``method`` names the failed call so an accessibility fetch failure can be
    told apart from a snapshot failure.
    """

    def __init__(self, method: str, cause: BaseException | str | None = None) -> None:
        self.method = method
        self.cause = cause
        message = f"Protocol call {method} failed"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class NodeResolutionError(PerceptionError):
    """A wire identifier no longer maps to a live element."""

    def __init__(
        self,
        backend_node_id: int | str,
        reason: str | None = None,
        kind: str = "backendNodeId",
    ) -> None:
        self.backend_node_id = backend_node_id
        self.kind = kind
        parts = [f"Failed to resolve {kind} {backend_node_id}"]
        if reason:
            parts.append(reason)
        super().__init__(": ".join(parts))


class PayloadTooLargeError(PerceptionError):
    """A serialized result reached the hard size ceiling.

    ``actual_size`` and ``max_size`` are UTF-8 byte counts; the message is
    shown to end users as is.
    """

    def __init__(
        self,
        actual_size: int,
        max_size: int,
        message: str = PAYLOAD_TOO_LARGE_MESSAGE,
    ) -> None:
        self.actual_size = actual_size
        self.max_size = max_size
        super().__init__(message)


def _delays(retries: int, base: float, cap: float, exponential: bool) -> Iterator[float]:
    for attempt in range(retries):
        yield min(base * 2**attempt, cap) if exponential else base


def with_retry(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    exponential_backoff: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] = (ProtocolError,),
) -> Callable[[AsyncFn], AsyncFn]:
    """
    Retry an async callable on the given exception types.

    The callable runs at most ``max_retries + 1`` times; the error of the
    final attempt propagates. Any other exception propagates at once.

    Example:
        @with_retry(max_retries=2)
        async def attach():
            ...
    """

    def decorator(func: AsyncFn) -> AsyncFn:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            delays = _delays(max_retries, base_delay, max_delay, exponential_backoff)
            while True:
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"Giving up on {func.__name__}: {e}")
                        raise
                    logger.warning(f"Retrying {func.__name__} in {delay:.1f}s after: {e}")
                    await asyncio.sleep(delay)

        return wrapper  # type: ignore[return-value]

    return decorator


async def with_timeout(
    coro: Awaitable[T],
    timeout_seconds: float,
    operation_name: str = "operation",
) -> T:
    """
    Await ``coro`` for at most ``timeout_seconds``.

    Raises:
        ExtractionTimeoutError: Naming ``operation_name`` when time runs out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise ExtractionTimeoutError(
            f"{operation_name} did not complete within {timeout_seconds}s"
        ) from None
