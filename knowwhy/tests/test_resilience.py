"""Tests for retry policy, rate limiter and guarded gateways."""

import time
from unittest.mock import Mock

import pytest

from conftest import ScriptedLLM
from knowwhy.common.errors import CallTimeoutError, LLMUnavailableError, TransportError
from knowwhy.common.gateway import GuardedLLM, GuardedSearch
from knowwhy.common.rate_limiter import RateLimiter
from knowwhy.common.retry import RetryPolicy, exponential_backoff, no_backoff


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRetryPolicy:
    def test_backoff_is_exponential(self):
        backoff = exponential_backoff()
        assert [backoff(a) for a in (1, 2, 3)] == [2.0, 4.0, 8.0]
        assert exponential_backoff(cap=3.0)(5) == 3.0

    def test_retries_transport_errors_then_succeeds(self):
        sleeps = []
        fn = Mock(side_effect=[TransportError("a"), ConnectionError("b"), "ok"])
        policy = RetryPolicy(max_attempts=3, sleep=sleeps.append)

        assert policy.call(fn) == "ok"
        assert fn.call_count == 3
        assert sleeps == [2.0, 4.0]

    def test_exhaustion_reraises_last_error(self):
        fn = Mock(side_effect=TransportError("down"))
        policy = RetryPolicy(max_attempts=3, backoff=no_backoff)

        with pytest.raises(TransportError, match="down"):
            policy.call(fn)
        assert fn.call_count == 3

    def test_non_retryable_propagates_immediately(self):
        fn = Mock(side_effect=LLMUnavailableError("no client"))
        policy = RetryPolicy(max_attempts=5, backoff=no_backoff)

        with pytest.raises(LLMUnavailableError):
            policy.call(fn)
        assert fn.call_count == 1

    def test_timeout_raises_call_timeout(self):
        policy = RetryPolicy(max_attempts=1, timeout=0.05)
        with pytest.raises(CallTimeoutError):
            policy.call(lambda: time.sleep(0.5))

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRateLimiter:
    def test_burst_then_exhausted(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls=3, period_seconds=3.0, clock=clock, sleep=clock.sleep)
        assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls=2, period_seconds=2.0, clock=clock, sleep=clock.sleep)
        limiter.try_acquire()
        limiter.try_acquire()
        clock.now += 1.0
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

    def test_acquire_blocks_until_token(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls=1, period_seconds=4.0, clock=clock, sleep=clock.sleep)
        assert limiter.acquire()
        assert limiter.acquire()
        assert sum(clock.sleeps) == pytest.approx(4.0)

    def test_acquire_timeout(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls=1, period_seconds=10.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        assert limiter.acquire(timeout=1.0) is False

    def test_never_exceeds_capacity(self):
        clock = FakeClock()
        limiter = RateLimiter(max_calls=5, period_seconds=1.0, clock=clock, sleep=clock.sleep)
        clock.now += 100
        assert limiter.available == pytest.approx(5.0)


class TestGateways:
    def test_guarded_llm_acquires_and_retries(self):
        limiter = Mock()
        inner = Mock()
        inner.complete.side_effect = [TransportError("blip"), "reply"]
        llm = GuardedLLM(inner, limiter=limiter, policy=RetryPolicy(backoff=no_backoff))

        assert llm.complete("prompt", model="m") == "reply"
        assert limiter.acquire.call_count == 2
        inner.complete.assert_called_with("prompt", model="m")
        assert llm.inner is inner

    def test_guarded_search_passes_filter(self):
        inner = Mock()
        inner.search.return_value = []
        search = GuardedSearch(inner, policy=RetryPolicy(backoff=no_backoff))

        assert search.search("q", 3, filter={"type": "decision"}) == []
        inner.search.assert_called_once_with("q", 3, filter={"type": "decision"})

    def test_limiter_wait_does_not_count_against_timeout(self):
        inner = ScriptedLLM(default="reply")
        llm = GuardedLLM(
            inner,
            limiter=RateLimiter(max_calls=1, period_seconds=1.0),
            policy=RetryPolicy(max_attempts=1, timeout=0.3),
        )

        assert llm.complete("first") == "reply"
        started = time.monotonic()
        assert llm.complete("second") == "reply"

        assert time.monotonic() - started >= 0.5
        assert len(inner.prompts) == 2

    def test_token_taken_per_attempt_before_call(self):
        events = []
        limiter = Mock()
        limiter.acquire.side_effect = lambda: events.append("acquire")
        inner = Mock()
        inner.search.side_effect = lambda *a, **kw: events.append("search") or []
        search = GuardedSearch(inner, limiter=limiter, policy=RetryPolicy(backoff=no_backoff))

        search.search("q", 3)

        assert events == ["acquire", "search"]
        assert search.limiter is limiter
