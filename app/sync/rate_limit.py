"""Request gate shared by every Calendar API call."""

import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from app.config import Settings, get_settings
from app.sync.errors import QuotaExceededError, SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_BACKOFF_FACTOR = 5


def is_transient_error(error: BaseException) -> bool:
    """Errors worth retrying at the request level."""
    if isinstance(error, SyncError):
        return error.transient
    return isinstance(error, (TimeoutError, ConnectionError))


class RequestGate:
    """
    Single-threaded rate limiter for Calendar API requests.

    Every call waits for a slot (minimum spacing between requests and a
    maximum number of requests per rolling window), then runs. Transient
    failures are retried with exponential backoff plus jitter up to a fixed
    number of retries; rate-limit failures back off harder.
    """

    def __init__(
        self,
        min_interval_ms: int = 100,
        max_requests_per_window: int = 100,
        window_ms: int = 60_000,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        backoff_multiplier: float = 2.0,
        max_delay_ms: int = 30_000,
        jitter_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval_ms / 1000
        self.max_requests_per_window = max_requests_per_window
        self.window = window_ms / 1000
        self.max_retries = max_retries
        self.base_delay = base_delay_ms / 1000
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay_ms / 1000
        self.jitter = jitter_ms / 1000
        self._clock = clock
        self._sleep = sleep

        self.request_count = 0
        self.window_start = clock()
        self.last_request_time: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RequestGate":
        settings = settings or get_settings()
        return cls(
            min_interval_ms=settings.min_request_interval_ms,
            max_requests_per_window=settings.max_requests_per_window,
            window_ms=settings.quota_window_ms,
            max_retries=settings.api_max_retries,
            base_delay_ms=settings.api_base_delay_ms,
            backoff_multiplier=settings.api_backoff_multiplier,
            max_delay_ms=settings.api_max_delay_ms,
        )

    def _wait_for_slot(self) -> None:
        now = self._clock()

        if now - self.window_start >= self.window:
            self.request_count = 0
            self.window_start = now

        if self.request_count >= self.max_requests_per_window:
            wait = self.window - (now - self.window_start)
            logger.info(
                f"Rate limit reached ({self.request_count} requests), "
                f"waiting {wait:.1f}s for quota reset"
            )
            if wait > 0:
                self._sleep(wait)
            self.request_count = 0
            self.window_start = self._clock()
            now = self.window_start

        if self.last_request_time is not None:
            elapsed = now - self.last_request_time
            if elapsed < self.min_interval:
                self._sleep(self.min_interval - elapsed)

        self.last_request_time = self._clock()
        self.request_count += 1

    def backoff_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        delay = self.base_delay * (self.backoff_multiplier ** attempt)
        if isinstance(error, QuotaExceededError):
            delay *= RATE_LIMIT_BACKOFF_FACTOR
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.backoff_delay(retry_state.attempt_number - 1, error)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        operation = retry_state.kwargs.get("operation_name", "API_CALL")
        logger.warning(
            f"{operation} failed with retryable error "
            f"(attempt {retry_state.attempt_number}): {error}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )

    def _attempt(self, func: Callable[[], T], operation_name: str) -> T:
        self._wait_for_slot()
        logger.debug(f"Executing {operation_name}")
        return func()

    def call(self, func: Callable[[], T], operation_name: str = "API_CALL") -> T:
        """Run ``func`` through the gate, retrying transient failures."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(is_transient_error),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._attempt, func, operation_name=operation_name)

    def status(self) -> dict[str, Any]:
        """Current window usage, for monitoring and quota recovery."""
        elapsed = self._clock() - self.window_start
        return {
            "request_count": self.request_count,
            "max_requests": self.max_requests_per_window,
            "quota_reset_in_ms": max(0, int((self.window - elapsed) * 1000)),
        }
