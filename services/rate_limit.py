"""
Throttle-aware retry and shared request pacing for marketplace API calls.

call_with_backoff() is the per-call state machine:

    ATTEMPT(i) -> SUCCESS
    ATTEMPT(i) -> THROTTLED -> BACKOFF(i) -> ATTEMPT(i + 1)
    ATTEMPT(max_attempts - 1) -> THROTTLED -> EXHAUSTED

Only ThrottledError is retried; anything else propagates from the attempt
that raised it. RequestPacer spaces out calls that share one throttling budget
(one account + endpoint pair) across threads.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Hashable, Optional, TypeVar

from config import THROTTLE_BASE_DELAY_SECONDS, THROTTLE_MAX_ATTEMPTS, THROTTLE_STEP_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_ATTEMPT = "ATTEMPT"
STATE_BACKOFF = "BACKOFF"
STATE_SUCCESS = "SUCCESS"
STATE_EXHAUSTED = "EXHAUSTED"


class ThrottledError(RuntimeError):
    """The remote side asked us to slow down (HTTP 429 / 'Too many requests')."""


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt was throttled."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(
    attempt_index: int,
    base_delay: float = THROTTLE_BASE_DELAY_SECONDS,
    step: float = THROTTLE_STEP_SECONDS,
) -> float:
    """Linear backoff: base + step * attempt_index (0-based)."""
    return base_delay + step * attempt_index


def call_with_backoff(
    fn: Callable[[], T],
    max_attempts: int = THROTTLE_MAX_ATTEMPTS,
    base_delay: float = THROTTLE_BASE_DELAY_SECONDS,
    step: float = THROTTLE_STEP_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "api call",
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    state = STATE_ATTEMPT
    last_error: Optional[ThrottledError] = None
    while True:
        if state == STATE_ATTEMPT:
            try:
                result = fn()
            except ThrottledError as exc:
                last_error = exc
                attempt += 1
                state = STATE_EXHAUSTED if attempt >= max_attempts else STATE_BACKOFF
                continue
            state = STATE_SUCCESS
            if attempt:
                logger.info("[RateLimit] %s succeeded after %d throttled attempt(s)", label, attempt)
            return result

        if state == STATE_BACKOFF:
            wait = backoff_delay(attempt - 1, base_delay, step)
            logger.warning(
                "[RateLimit] %s throttled (attempt %d/%d), waiting %.1fs",
                label,
                attempt,
                max_attempts,
                wait,
            )
            sleep(wait)
            state = STATE_ATTEMPT
            continue

        # STATE_EXHAUSTED
        logger.error("[RateLimit] %s still throttled after %d attempts", label, attempt)
        raise RetryExhaustedError(
            f"{label}: throttled on all {attempt} attempts",
            attempts=attempt,
            last_error=last_error,
        )


class RequestPacer:
    """Enforce a minimum gap between calls that share one throttling budget."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(float(min_interval), 0.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._call_lock = threading.Lock()
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        """Block until the next call may go out. Returns the time slept."""
        with self._lock:
            slept = 0.0
            if self._last_call is not None:
                remaining = self.min_interval - (self._clock() - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    slept = remaining
            self._last_call = self._clock()
            return slept

    @contextmanager
    def slot(self):
        """Hold the budget for the whole call so sharers never overlap."""
        with self._call_lock:
            self.wait()
            yield


class PacerRegistry:
    """One RequestPacer per key, created on first use."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._pacers: Dict[Hashable, RequestPacer] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> RequestPacer:
        with self._lock:
            pacer = self._pacers.get(key)
            if pacer is None:
                pacer = RequestPacer(self.min_interval, clock=self._clock, sleep=self._sleep)
                self._pacers[key] = pacer
            return pacer
