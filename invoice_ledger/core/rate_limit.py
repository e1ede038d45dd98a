"""Shared retry, concurrency and backpressure utilities for async operations."""
import asyncio
import gc
import logging
import os
import random
import sqlite3
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

import anyio
import psutil
from google.genai import errors as genai_errors

from .exceptions import InvoiceLedgerError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, operation_name: str, last_exception: Exception, attempts: int):
        self.operation_name = operation_name
        self.last_exception = last_exception
        self.attempts = attempts
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_exception}"
        )


class ErrorClass(str, Enum):
    """How a failure should be retried."""
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    FATAL = "fatal"


def is_rate_limit_error(error: BaseException) -> bool:
    """HTTP 429 or a quota message from the extraction service."""
    code = getattr(error, "code", None) or getattr(error, "status_code", None)
    if code == 429:
        return True
    message = str(error).lower()
    return (
        "rate limit" in message
        or "quota exceeded" in message
        or "resource_exhausted" in message
    )


def classify_retry(error: BaseException) -> ErrorClass:
    """Default classifier shared by every remote and ledger call site."""
    if isinstance(error, MemoryError):
        return ErrorClass.FATAL
    if isinstance(error, InvoiceLedgerError):
        # Domain errors (blocked provider, parsing) are decisions, not glitches
        return ErrorClass.FATAL
    if is_rate_limit_error(error):
        return ErrorClass.RATE_LIMIT
    if isinstance(error, genai_errors.ServerError):
        return ErrorClass.TRANSIENT
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, sqlite3.OperationalError) and "locked" in str(error).lower():
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


class RetryPolicy:
    """Retry an async operation according to the class of each failure.

    Rate-limit failures back off exponentially with jitter, other transient
    failures wait a short fixed delay, fatal failures are raised unchanged
    on the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 10.0,
        jitter_range: float = 3.0,
        transient_delay: float = 1.0,
        classifier: Callable[[BaseException], ErrorClass] = classify_retry,
        logger: logging.Logger | None = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_range = jitter_range
        self.transient_delay = transient_delay
        self.classifier = classifier
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter_range=settings.retry_jitter_range,
            transient_delay=settings.transient_retry_delay,
        )

    def delay_for(self, error_class: ErrorClass, attempt: int) -> float:
        """Seconds to wait before the next attempt (attempt is 0-based)."""
        if error_class == ErrorClass.RATE_LIMIT:
            delay = min(self.max_delay, self.base_delay * (2 ** attempt))
            return delay + random.uniform(0, self.jitter_range)
        return self.transient_delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        classifier: Callable[[BaseException], ErrorClass] | None = None
    ) -> T:
        """Execute the operation, retrying per classification.

        Raises:
            RetryError: When a retryable failure persists past max_attempts
            Exception: The original error when it is classified as fatal
        """
        classify = classifier or self.classifier

        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as exc:
                error_class = classify(exc)
                if error_class == ErrorClass.FATAL:
                    self._logger.debug(
                        f"[RETRY] {operation_name} - Non-retryable {type(exc).__name__}: {str(exc)[:150]}"
                    )
                    raise

                if attempt < self.max_attempts - 1:
                    delay = self.delay_for(error_class, attempt)
                    self._logger.warning(
                        f"[RETRY] {operation_name} - Attempt {attempt + 1}/{self.max_attempts} failed "
                        f"({error_class.value}): {str(exc)[:100]}. Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                    continue

                self._logger.error(
                    f"[RETRY] {operation_name} - Exhausted retries ({self.max_attempts}): {str(exc)[:150]}"
                )
                raise RetryError(operation_name, exc, self.max_attempts) from exc

        raise RetryError(operation_name, Exception("no attempts made"), 0)


class CapacityLimiter:
    """Async capacity limiter backed by anyio.CapacityLimiter."""

    def __init__(self, total_tokens: int):
        self._limiter = anyio.CapacityLimiter(total_tokens)

    async def __aenter__(self):
        await self._limiter.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._limiter.release()

    @property
    def total_tokens(self) -> int:
        return int(self._limiter.total_tokens)

    @total_tokens.setter
    def total_tokens(self, value: int) -> None:
        self._limiter.total_tokens = value

    @property
    def available_tokens(self) -> int:
        """Get available tokens/capacity."""
        return int(self._limiter.available_tokens)

    @property
    def borrowed_tokens(self) -> int:
        """Get borrowed tokens/capacity."""
        return self._limiter.borrowed_tokens


def process_memory_mb() -> float:
    """Resident set size of this process in MB."""
    return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)


class AdaptiveCapacityLimiter(CapacityLimiter):
    """Capacity limiter whose cap follows heap growth since creation.

    Growth past the soft limit halves the cap, past the hard limit drops it
    to the floor; both request a garbage collection. The cap recovers one
    token at a time once growth falls below half the soft limit.
    `initial_tokens` lets a caller start below the cap and ramp up.
    """

    def __init__(
        self,
        max_tokens: int,
        min_tokens: int = 1,
        soft_limit_mb: float = 512.0,
        hard_limit_mb: float = 1024.0,
        memory_probe: Callable[[], float] = process_memory_mb,
        initial_tokens: int | None = None
    ):
        self.max_tokens = max_tokens
        self.min_tokens = max(1, min(min_tokens, max_tokens))
        start = max_tokens if initial_tokens is None else initial_tokens
        super().__init__(max(self.min_tokens, min(start, max_tokens)))
        self.soft_limit_mb = soft_limit_mb
        self.hard_limit_mb = hard_limit_mb
        self._probe = memory_probe
        self._baseline_mb = memory_probe()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "AdaptiveCapacityLimiter":
        return cls(
            max_tokens=settings.quota_limit,
            min_tokens=settings.min_concurrency,
            soft_limit_mb=settings.memory_soft_limit_mb,
            hard_limit_mb=settings.memory_hard_limit_mb,
            **kwargs
        )

    def widen(self) -> None:
        """Run at full concurrency (used for small uploads)."""
        self.total_tokens = self.max_tokens

    def adjust(self) -> int:
        """Re-evaluate the cap against current memory growth."""
        growth = self._probe() - self._baseline_mb
        current = self.total_tokens

        if growth >= self.hard_limit_mb:
            target = self.min_tokens
        elif growth >= self.soft_limit_mb:
            target = max(self.min_tokens, current // 2)
        elif growth < self.soft_limit_mb / 2 and current < self.max_tokens:
            target = current + 1
        else:
            target = current

        if target < current:
            logger.warning(
                f"[MEMORY] Heap grew {growth:.0f}MB, reducing concurrency {current} -> {target}"
            )
            gc.collect()
        if target != current:
            self.total_tokens = target
        return target

    async def __aenter__(self):
        self.adjust()
        return await super().__aenter__()


class CircuitBreaker:
    """Trips after a run of consecutive failures within one session."""

    def __init__(self, threshold: int = 5, name: str = "upload"):
        self.threshold = threshold
        self.name = name
        self.consecutive_failures = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def record_success(self) -> None:
        if not self._open:
            self.consecutive_failures = 0

    def record_failure(self) -> None:
        if self._open:
            return
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold:
            self._open = True
            logger.error(
                f"[CIRCUIT] {self.name} - Tripped after {self.consecutive_failures} consecutive failures"
            )
