"""Tests for perception exception types and retry utilities."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from pagesense.perception.exceptions import (
    PAYLOAD_TOO_LARGE_MESSAGE,
    ExtractionTimeoutError,
    NodeResolutionError,
    PayloadTooLargeError,
    PerceptionError,
    ProtocolError,
    ValidationError,
    with_retry,
    with_timeout,
)


class TestExceptionTypes:
    """Test exception construction and messages."""

    def test_hierarchy(self) -> None:
        """Every error derives from PerceptionError."""
        for exc_type in (
            ExtractionTimeoutError,
            ProtocolError,
            NodeResolutionError,
            PayloadTooLargeError,
            ValidationError,
        ):
            assert issubclass(exc_type, PerceptionError)

    def test_protocol_error_names_the_call(self) -> None:
        """The failed protocol method appears in the message."""
        error = ProtocolError("Accessibility.getFullAXTree", "Target closed")

        assert error.method == "Accessibility.getFullAXTree"
        assert "Accessibility.getFullAXTree" in str(error)
        assert "Target closed" in str(error)

    def test_protocol_error_without_cause(self) -> None:
        """A missing cause leaves a clean message."""
        assert str(ProtocolError("DOM.enable")) == "Protocol call DOM.enable failed"

    def test_node_resolution_error_message(self) -> None:
        """The unresolvable handle is named."""
        error = NodeResolutionError(42, "No node with given id found")

        assert str(error) == "Failed to resolve backendNodeId 42: No node with given id found"
        assert error.backend_node_id == 42

    def test_node_resolution_error_kind(self) -> None:
        """The identifier kind can be overridden."""
        error = NodeResolutionError(7, kind="stable id")

        assert str(error) == "Failed to resolve stable id 7"

    def test_payload_too_large_error(self) -> None:
        """Sizes are carried and the message is user facing."""
        error = PayloadTooLargeError(actual_size=5_000_000, max_size=4_194_304)

        assert error.actual_size == 5_000_000
        assert error.max_size == 4_194_304
        assert str(error) == PAYLOAD_TOO_LARGE_MESSAGE
        assert "Refreshing the page" in str(error)


class TestWithRetry:
    """Test the retry decorator."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        """Retries until the call succeeds."""
        func = AsyncMock(side_effect=[ProtocolError("x"), ProtocolError("x"), "ok"])
        func.__name__ = "attach"
        wrapped = with_retry(max_retries=3, retryable_exceptions=(ProtocolError,))(func)

        with patch("asyncio.sleep", new=AsyncMock()):
            assert await wrapped() == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        """The last error propagates."""
        func = AsyncMock(side_effect=ProtocolError("Target.attachToTarget"))
        func.__name__ = "attach"
        wrapped = with_retry(max_retries=2, retryable_exceptions=(ProtocolError,))(func)

        with patch("asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ProtocolError):
                await wrapped()
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self) -> None:
        """Errors outside the retryable set are not retried."""
        func = AsyncMock(side_effect=ValueError("bad"))
        func.__name__ = "attach"
        wrapped = with_retry(max_retries=3, retryable_exceptions=(ProtocolError,))(func)

        with pytest.raises(ValueError):
            await wrapped()
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_delays(self) -> None:
        """Delays grow exponentially up to the cap."""
        func = AsyncMock(side_effect=[ProtocolError("x")] * 3 + ["ok"])
        func.__name__ = "attach"
        wrapped = with_retry(
            max_retries=3, base_delay=1.0, max_delay=3.0, retryable_exceptions=(ProtocolError,)
        )(func)

        sleep = AsyncMock()
        with patch("asyncio.sleep", new=sleep):
            await wrapped()
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 3.0]


class TestWithTimeout:
    """Test the timeout helper."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        """A fast coroutine returns its value."""

        async def fast() -> int:
            return 5

        assert await with_timeout(fast(), timeout_seconds=1.0) == 5

    @pytest.mark.asyncio
    async def test_raises_extraction_timeout(self) -> None:
        """A slow coroutine raises ExtractionTimeoutError naming the operation."""

        async def slow() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(ExtractionTimeoutError, match="DOMSnapshot.captureSnapshot"):
            await with_timeout(
                slow(), timeout_seconds=0.01, operation_name="DOMSnapshot.captureSnapshot"
            )
