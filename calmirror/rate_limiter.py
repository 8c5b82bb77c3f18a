from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from calmirror.errors import DeadlineExceeded, PermanentRemoteError, RetryableRemoteError, status_of
from calmirror.models import RateLimitConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_PATTERN = re.compile(
    r"rate limit|quota exceeded|too many requests|rate limit exceeded|quota",
    re.IGNORECASE,
)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, DeadlineExceeded):
        return False
    if status_of(exc) == 429:
        return True
    return bool(RATE_LIMIT_PATTERN.search(str(exc)))


class RateLimitedExecutor:
    """Paces remote calls through one shared gate and retries rate-limit failures.

    Every attempt, first or retried, waits for the gate. Backoff delays grow
    exponentially from ``base_delay_ms`` and are capped at ``max_delay_ms``.
    No sleep is allowed to run past the caller's deadline.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], bool] | None = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.clock = clock
        self._cancelled = threading.Event()
        # Returns True when woken by cancel().
        self._sleeper = sleeper or self._cancelled.wait
        self._gate = threading.Lock()
        self._next_slot: float | None = None
        self._count_lock = threading.Lock()
        self.request_count = 0

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def execute(self, label: str, operation: Callable[[], T], *, deadline: float | None = None) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.config.base_delay_ms / 1000.0,
                max=self.config.max_delay_ms / 1000.0,
            ),
            retry=retry_if_exception(is_rate_limit_error),
            sleep=lambda seconds: self._sleep(seconds, label, deadline),
            before_sleep=lambda state: self._log_retry(label, state),
            reraise=True,
        )

        def attempt() -> T:
            self._check(label, deadline)
            self._acquire_slot(label, deadline)
            with self._count_lock:
                self.request_count += 1
            return operation()

        try:
            return retrying(attempt)
        except DeadlineExceeded:
            raise
        except Exception as exc:
            if is_rate_limit_error(exc):
                raise RetryableRemoteError(label, exc) from exc
            raise PermanentRemoteError(label, exc) from exc

    def _check(self, label: str, deadline: float | None) -> None:
        if self._cancelled.is_set():
            raise DeadlineExceeded(label, message="executor cancelled")
        if deadline is not None and self.clock() >= deadline:
            raise DeadlineExceeded(label, message="run deadline reached")

    def _sleep(self, seconds: float, label: str, deadline: float | None) -> None:
        if seconds <= 0:
            return
        if deadline is not None and self.clock() + seconds > deadline:
            raise DeadlineExceeded(label, message="run deadline reached")
        if self._sleeper(seconds):
            raise DeadlineExceeded(label, message="executor cancelled")

    def _acquire_slot(self, label: str, deadline: float | None) -> None:
        with self._gate:
            if self._next_slot is not None:
                self._sleep(self._next_slot - self.clock(), label, deadline)
            self._next_slot = self.clock() + self.config.min_interval_seconds

    def _log_retry(self, label: str, state: RetryCallState) -> None:
        exc: Any = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "%s rate limited (attempt %d of %d), retrying in %d ms: %s",
            label,
            state.attempt_number,
            self.config.max_retries + 1,
            int(delay * 1000),
            exc,
        )

    def log_summary(self) -> None:
        logger.info("Remote requests issued: %d", self.request_count)
