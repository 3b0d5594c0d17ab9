"""
Resilience primitives for AI provider calls

- categorize_error(): maps any exception to a MatcherErrorType
- retry_with_backoff(): exponential backoff with jitter, fails fast on
  non-retryable errors
- with_timeout(): bounds one awaitable, raising MatcherTimeoutError
- CircuitBreaker: CLOSED → OPEN after N consecutive failures,
  OPEN → HALF_OPEN after the reset timeout, HALF_OPEN → CLOSED after
  3 successful trial calls (any trial failure reopens)
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class MatcherErrorType(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    JSON_PARSE = "json_parse"
    TIMEOUT = "timeout"
    CIRCUIT_BREAKER = "circuit_breaker"
    UNKNOWN = "unknown"


NON_RETRYABLE_ERROR_TYPES = {MatcherErrorType.VALIDATION, MatcherErrorType.CIRCUIT_BREAKER}


class MatcherError(Exception):
    def __init__(
        self,
        message: str,
        error_type: MatcherErrorType = MatcherErrorType.UNKNOWN,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.retryable = error_type not in NON_RETRYABLE_ERROR_TYPES if retryable is None else retryable
        self.attempt_count = 1


class MatcherTimeoutError(MatcherError):
    def __init__(self, message: str):
        super().__init__(message, MatcherErrorType.TIMEOUT, retryable=True)


class CircuitBreakerOpenError(MatcherError):
    def __init__(self, message: str = "Circuit breaker is open - too many recent failures"):
        super().__init__(message, MatcherErrorType.CIRCUIT_BREAKER, retryable=False)


def _contains_any(text: str, needles) -> bool:
    return any(needle in text for needle in needles)


def categorize_error(error: BaseException) -> MatcherErrorType:
    """Classify an exception by its type and message"""
    if isinstance(error, MatcherError):
        return error.error_type

    message = str(error).lower()
    name = type(error).__name__.lower()

    if "circuitbreaker" in name or "circuit breaker" in message:
        return MatcherErrorType.CIRCUIT_BREAKER
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or _contains_any(
        message, ("timeout", "timed out")
    ) or "timeout" in name:
        return MatcherErrorType.TIMEOUT
    if _contains_any(message, ("network", "fetch", "econnrefused", "connection")) or "connection" in name:
        return MatcherErrorType.NETWORK
    if _contains_any(message, ("rate limit", "429", "too many requests", "quota", "token limit")) or "ratelimit" in name:
        return MatcherErrorType.RATE_LIMIT
    if _contains_any(message, ("json", "parse", "unexpected token", "syntax")) or "json" in name:
        return MatcherErrorType.JSON_PARSE
    if _contains_any(message, ("validation", "invalid", "schema")) or "validation" in name:
        return MatcherErrorType.VALIDATION
    return MatcherErrorType.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, MatcherError):
        return error.retryable
    return categorize_error(error) not in NON_RETRYABLE_ERROR_TYPES


def backoff_delay_ms(attempt: int, base_delay: int, max_delay: int) -> float:
    """Delay before the attempt after ``attempt`` (1-based), jitter included"""
    exponential = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return exponential + random.random() * 1000


async def retry_with_backoff(
    fn: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    base_delay: int = 2000,
    max_delay: int = 32000,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
):
    """
    Run ``fn`` up to ``max_retries`` times.

    Returns:
        (result, attempt_count)

    Raises:
        The last error, with ``attempt_count`` attached.
    """
    attempts = max(1, max_retries)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn(), attempt
        except Exception as e:
            last_error = e
            e.attempt_count = attempt
            if not is_retryable_error(e) or attempt >= attempts:
                raise

            delay = backoff_delay_ms(attempt, base_delay, max_delay)
            logger.warning(
                f"Attempt {attempt}/{attempts} failed ({categorize_error(e).value}): {e}. "
                f"Retrying in {delay:.0f}ms"
            )
            if on_retry:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay / 1000)

    raise last_error  # unreachable: the loop either returns or raises


async def with_timeout(awaitable: Awaitable[Any], timeout_ms: int, operation: str = "Operation"):
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise MatcherTimeoutError(f"{operation} timed out after {timeout_ms}ms")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Attributes:
        failure_threshold: consecutive failures that trip the breaker
        reset_timeout_ms: time spent OPEN before trial calls are allowed
        half_open_max_calls: successful trials needed to close again
    """

    def __init__(
        self,
        failure_threshold: int = 10,
        reset_timeout_ms: int = 60000,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self.last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.last_failure_time is not None:
            elapsed_ms = (self._clock() - self.last_failure_time) * 1000
            if elapsed_ms >= self.reset_timeout_ms:
                logger.info("Circuit breaker: OPEN → HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN:
            return self.half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        if self._state == CircuitState.HALF_OPEN:
            self.half_open_calls += 1
            if self.half_open_calls >= self.half_open_max_calls:
                logger.info("Circuit breaker: HALF_OPEN → CLOSED")
                self._state = CircuitState.CLOSED
                self.failure_count = 0
                self.half_open_calls = 0
        elif self._state == CircuitState.CLOSED:
            self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker: HALF_OPEN → OPEN (trial call failed)")
            self._state = CircuitState.OPEN
            self.half_open_calls = 0
        elif self._state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(f"Circuit breaker: CLOSED → OPEN after {self.failure_count} consecutive failures")
            self._state = CircuitState.OPEN

    def reset(self):
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "half_open_calls": self.half_open_calls,
            "last_failure_time": self.last_failure_time,
        }
