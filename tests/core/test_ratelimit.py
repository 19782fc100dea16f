# SPDX-License-Identifier: Apache-2.0
"""
Rate limiters: burst and sustained admission, window accounting, adaptive
feedback and deadline-aware waiting.
"""

import pytest

from llm_gateway.config import RateLimitPolicy
from llm_gateway.context import make_ctx
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.ratelimit import (
    AdaptiveLimiter,
    NoopLimiter,
    SlidingWindowLimiter,
    TokenBucketLimiter,
    build_limiter,
)


def _admitted(limiter, key, attempts):
    return sum(1 for _ in range(attempts) if limiter.allow(key))


# --------------------------------------------------------------------------- #
# Token bucket
# --------------------------------------------------------------------------- #

def test_token_bucket_burst_then_sustained_rate(clock):
    """(r=10, b=20): at most 20 in one instant, then ~10 per second."""
    tb = TokenBucketLimiter(rate=10, burst=20, clock=clock)
    assert _admitted(tb, "p", 50) == 20

    clock.advance(1.0)
    assert _admitted(tb, "p", 50) == 10

    clock.advance(0.5)
    assert _admitted(tb, "p", 50) == 5


def test_token_bucket_refill_caps_at_burst(clock):
    tb = TokenBucketLimiter(rate=10, burst=20, clock=clock)
    _admitted(tb, "p", 20)
    clock.advance(3600)
    assert tb.tokens("p") == pytest.approx(20.0)
    assert _admitted(tb, "p", 50) == 20


def test_token_bucket_keys_are_independent(clock):
    tb = TokenBucketLimiter(rate=1, burst=1, clock=clock)
    assert tb.allow("a")
    assert not tb.allow("a")
    assert tb.allow("b")


def test_cleanup_evicts_idle_keys(clock):
    tb = TokenBucketLimiter(rate=1, burst=1, clock=clock)
    tb.allow("old")
    clock.advance(100)
    tb.allow("fresh")
    assert tb.cleanup(max_idle_s=50) == 1
    assert tb.keys() == ["fresh"]


# --------------------------------------------------------------------------- #
# Sliding window
# --------------------------------------------------------------------------- #

def test_sliding_window_admits_exactly_n_per_window(clock):
    """(N=100, W=60s, k=6): exactly N inside any W, capacity returns after W."""
    sw = SlidingWindowLimiter(window_s=60, max_requests=100, sub_windows=6, clock=clock)
    assert _admitted(sw, "p", 150) == 100

    clock.advance(59.0)
    assert _admitted(sw, "p", 10) == 0

    clock.advance(1.0)
    assert _admitted(sw, "p", 150) == 100


def test_sliding_window_old_slices_drop_out(clock):
    sw = SlidingWindowLimiter(window_s=60, max_requests=10, sub_windows=6, clock=clock)
    assert _admitted(sw, "p", 4) == 4
    clock.advance(30.0)
    assert _admitted(sw, "p", 10) == 6
    assert sw.in_window("p") == 10

    # The first 4 fall out once their slice rotates away.
    clock.advance(30.0)
    assert sw.in_window("p") == 6
    assert _admitted(sw, "p", 10) == 4


# --------------------------------------------------------------------------- #
# Adaptive
# --------------------------------------------------------------------------- #

def test_adaptive_shrinks_to_min_and_not_below(clock):
    """Sustained errors cut the rate by adjustment_factor per interval, floored at min_rate."""
    ad = AdaptiveLimiter(base_rate=10, min_rate=1, max_rate=50, adjustment_interval_s=30, clock=clock)
    assert ad.current_rate("p") == 10.0
    clock.advance(30)
    ad.record("p", False)
    assert ad.current_rate("p") == pytest.approx(9.0)

    clock.advance(30)
    ad.record("p", False)
    assert ad.current_rate("p") == pytest.approx(8.1)

    for _ in range(100):
        clock.advance(30)
        ad.record("p", False)
        assert ad.current_rate("p") >= 1.0
    assert ad.current_rate("p") == pytest.approx(1.0)


def test_adaptive_adjusts_at_most_once_per_interval(clock):
    ad = AdaptiveLimiter(base_rate=10, adjustment_interval_s=30, clock=clock)
    ad.current_rate("p")
    clock.advance(30)
    for _ in range(20):
        ad.record("p", False)
    assert ad.current_rate("p") == pytest.approx(9.0)


def test_adaptive_recovers_up_to_max_and_not_above(clock):
    ad = AdaptiveLimiter(base_rate=1, min_rate=1, max_rate=50, clock=clock)
    for _ in range(300):
        clock.advance(30)
        ad.record("p", True)
        assert ad.current_rate("p") <= 50.0
    assert ad.current_rate("p") == pytest.approx(50.0)


def test_adaptive_holds_between_thresholds(clock):
    """Error rate between threshold/2 and threshold leaves the rate alone."""
    ad = AdaptiveLimiter(base_rate=10, error_threshold=0.1, clock=clock)
    for i in range(12):
        ad.record("p", i != 0)
    assert ad.error_rate("p") == pytest.approx(1 / 12)
    clock.advance(30)
    ad.record("p", True)
    assert ad.current_rate("p") == pytest.approx(10.0)


# --------------------------------------------------------------------------- #
# Waiting and policy selection
# --------------------------------------------------------------------------- #

@pytest.mark.asyncio
async def test_wait_gives_up_before_deadline():
    """wait() refuses with timeout when the next permit lies past the deadline."""
    tb = TokenBucketLimiter(rate=1, burst=1)
    await tb.wait("p")
    with pytest.raises(LLMError) as ei:
        await tb.wait("p", make_ctx(timeout_ms=100))
    assert ei.value.kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_wait_sleeps_until_refill():
    tb = TokenBucketLimiter(rate=50, burst=1)
    await tb.wait("p")
    await tb.wait("p", make_ctx(timeout_ms=2000))
    assert not tb.allow("p")


def test_build_limiter_selects_strategy():
    assert isinstance(build_limiter(None), TokenBucketLimiter)
    assert isinstance(build_limiter(RateLimitPolicy(strategy="none")), NoopLimiter)
    sw = build_limiter(RateLimitPolicy(strategy="sliding_window", max_requests=5))
    assert isinstance(sw, SlidingWindowLimiter) and sw.max_requests == 5
    ad = build_limiter(RateLimitPolicy(strategy="adaptive", rate=100, max_rate=50))
    assert isinstance(ad, AdaptiveLimiter) and ad.base_rate == 50


def test_noop_limiter_always_admits():
    n = NoopLimiter()
    assert all(n.allow("p") for _ in range(1000))
