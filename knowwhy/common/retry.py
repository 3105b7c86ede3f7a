"""
Retry Policy

Reusable retry/backoff wrapper for collaborator calls. Only errors accepted
by the ``retryable`` predicate are retried; everything else propagates on
the first attempt.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from .errors import CallTimeoutError, TransportError

logger = logging.getLogger("knowwhy.common.retry")

T = TypeVar("T")


def exponential_backoff(base: float = 2.0, cap: Optional[float] = None) -> Callable[[int], float]:
    """Backoff of ``base ** attempt`` seconds after the given (1-based) attempt."""

    def _backoff(attempt: int) -> float:
        delay = base ** attempt
        return min(delay, cap) if cap is not None else delay

    return _backoff


def no_backoff(attempt: int) -> float:
    return 0.0


def is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (TransportError, ConnectionError, TimeoutError))


def run_with_timeout(fn: Callable[[], T], timeout: Optional[float]) -> T:
    """Run ``fn`` on a worker thread and give up after ``timeout`` seconds.

    The worker is not interrupted; its result is discarded.
    """
    if timeout is None:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="knowwhy-call")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise CallTimeoutError(f"call exceeded {timeout:.1f}s timeout") from None
    finally:
        executor.shutdown(wait=False)


@dataclass
class RetryPolicy:
    """Retry configuration for a guarded call.

    Attributes:
        max_attempts: Total attempts, including the first one
        backoff: Seconds to wait after a failed attempt (1-based)
        retryable: Predicate selecting errors worth retrying
        timeout: Optional per-attempt timeout in seconds
        sleep: Injected for tests
    """
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retryable: Callable[[BaseException], bool] = is_transport_error
    timeout: Optional[float] = None
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def call(
        self,
        fn: Callable[[], T],
        *,
        operation: str = "call",
        before_attempt: Optional[Callable[[], Any]] = None,
    ) -> T:
        """Invoke ``fn`` under this policy, re-raising the last error on exhaustion.

        ``before_attempt`` runs ahead of every attempt and outside the timeout,
        so blocking there (e.g. on a rate limiter) never counts against it.
        """
        attempt = 0
        while True:
            attempt += 1
            if before_attempt is not None:
                before_attempt()
            try:
                return run_with_timeout(fn, self.timeout)
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", operation, attempt, e
                    )
                    raise
                delay = self.backoff(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    operation, attempt, self.max_attempts, e, delay,
                )
                if delay > 0:
                    self.sleep(delay)
