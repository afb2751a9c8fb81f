"""
Unit tests for the circuit breaker, connect retries, and async fallback.
"""

from unittest.mock import patch

import pytest

from polystore.common.exceptions import StoreWriteError
from polystore.common.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
    retry_connect,
    with_fallback_async,
)


async def ok():
    return "ok"


async def boom():
    raise ValueError("boom")


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("t", failure_threshold=2, recovery_timeout=60)

        for _ in range(2):
            with pytest.raises(ValueError):
                await breaker.call(boom)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerError):
            await breaker.call(ok)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("t", failure_threshold=2)

        with pytest.raises(ValueError):
            await breaker.call(boom)
        assert await breaker.call(ok) == "ok"

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_closes_on_success(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=0)
        with pytest.raises(ValueError):
            await breaker.call(boom)

        assert await breaker.call(ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_reopens_on_failure(self):
        breaker = CircuitBreaker("t", failure_threshold=3, recovery_timeout=0)
        breaker.state = CircuitState.OPEN

        with pytest.raises(ValueError):
            await breaker.call(boom)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_not_counted(self):
        breaker = CircuitBreaker("t", failure_threshold=1, expected_exception=KeyError)

        with pytest.raises(ValueError):
            await breaker.call(boom)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_manual_reset(self):
        breaker = CircuitBreaker("t", failure_threshold=1, recovery_timeout=60)
        with pytest.raises(ValueError):
            await breaker.call(boom)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(ok) == "ok"


class TestRetryConnect:
    """Tests for retry_connect()."""

    def test_retries_connection_errors_then_succeeds(self):
        attempts = []

        def ping():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("not yet")
            return "up"

        with patch("tenacity.nap.time.sleep"):
            assert retry_connect(3)(ping)() == "up"
        assert len(attempts) == 3

    def test_reraises_after_last_attempt(self):
        def ping():
            raise ConnectionError("down")

        with patch("tenacity.nap.time.sleep"):
            with pytest.raises(ConnectionError):
                retry_connect(2)(ping)()

    def test_other_errors_not_retried(self):
        attempts = []

        def ping():
            attempts.append(1)
            raise ValueError("bad config")

        with pytest.raises(ValueError):
            retry_connect(5)(ping)()
        assert len(attempts) == 1


class TestWithFallbackAsync:
    """Tests for with_fallback_async()."""

    @pytest.mark.asyncio
    async def test_primary_result(self):
        result, used_fallback = await with_fallback_async(ok, boom)

        assert result == "ok"
        assert used_fallback is False

    @pytest.mark.asyncio
    async def test_fallback_on_listed_exception(self):
        async def write(rows):
            raise StoreWriteError("no", store="relational")

        async def write_elsewhere(rows):
            return len(rows)

        result, used_fallback = await with_fallback_async(
            write, write_elsewhere, [1, 2], fallback_on=(StoreWriteError,))

        assert result == 2
        assert used_fallback is True

    @pytest.mark.asyncio
    async def test_unlisted_exception_propagates(self):
        with pytest.raises(ValueError):
            await with_fallback_async(boom, ok, fallback_on=(StoreWriteError,))
