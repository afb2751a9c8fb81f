"""
Failure handling shared by the stores and the cache.

``retry_connect`` backs the explicit connect step of each store handle,
``CircuitBreaker`` keeps a dead cache backend off the request path, and
``with_fallback_async`` runs the relational-to-document degraded write.
"""

import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors a readiness probe raises while its store is still coming up
CONNECT_ERRORS = (ConnectionError, TimeoutError, OSError)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """The circuit is open; the call was not attempted."""


class CircuitBreaker:
    """
    Short-circuits calls to a backend after consecutive failures.

    Once ``failure_threshold`` failures in a row have been seen the circuit
    opens and calls fail immediately with ``CircuitBreakerError``. After
    ``recovery_timeout`` seconds one trial call is let through (half-open):
    success closes the circuit, failure opens it again. Only
    ``expected_exception`` counts as a failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Type[Exception] = Exception,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

    def _transition(self, state: CircuitState) -> None:
        if state == self.state:
            return
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"Circuit '{self.name}' {self.state.value} -> {state.value} "
            f"after {self.failure_count} failure(s)")
        self.state = state

    def _recovery_due(self) -> bool:
        if self.last_failure_time is None:
            return True
        return time.time() - self.last_failure_time >= self.recovery_timeout

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await ``func(*args, **kwargs)`` unless the circuit is open.

        Raises:
            CircuitBreakerError: While open and not yet due for a trial call
        """
        if self.state == CircuitState.OPEN:
            if not self._recovery_due():
                raise CircuitBreakerError(
                    f"Circuit '{self.name}' is open; retrying after {self.recovery_timeout}s")
            self._transition(CircuitState.HALF_OPEN)

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        self.failure_count = 0
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None
        self._transition(CircuitState.CLOSED)


def retry_connect(attempts: int = 5) -> Callable:
    """
    Decorator retrying a store readiness probe on connection-level errors.

    Waits 1s, 2s, 4s ... (capped at 10s) between tries and re-raises the
    last error after ``attempts`` tries. Other exceptions are not retried.
    """
    return retry(
        retry=retry_if_exception_type(CONNECT_ERRORS),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def with_fallback_async(
    primary_func: Callable[..., Awaitable[T]],
    fallback_func: Callable[..., Awaitable[T]],
    *args,
    fallback_on: Tuple[Type[Exception], ...] = (Exception,),
    **kwargs
) -> Tuple[T, bool]:
    """
    Await ``primary_func``; if it raises one of ``fallback_on``, await
    ``fallback_func`` with the same arguments instead.

    Returns:
        ``(result, used_fallback)``
    """
    try:
        return await primary_func(*args, **kwargs), False
    except fallback_on as e:
        logger.warning(
            f"{primary_func.__name__} failed ({e}); falling back to {fallback_func.__name__}")
    return await fallback_func(*args, **kwargs), True
