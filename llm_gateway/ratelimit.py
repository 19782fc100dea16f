# llm_gateway/ratelimit.py
# SPDX-License-Identifier: Apache-2.0
"""
Keyed rate limiters for per-provider admission.

Three strategies share one keyed surface:

- :class:`TokenBucketLimiter`: ``rate`` tokens/s refill up to ``burst``.
- :class:`SlidingWindowLimiter`: at most ``max_requests`` per ``window_s``,
  tracked in ``sub_windows`` rotating buckets.
- :class:`AdaptiveLimiter`: a token bucket whose rate follows the observed
  upstream error rate, with 2x hysteresis between the shrink and grow
  thresholds.

``allow(key)`` never blocks. ``wait(key, ctx)`` sleeps until admitted, giving
up with a ``timeout`` error if the caller's deadline would pass first; task
cancellation propagates as usual.

State is created lazily per key and guarded by a per-key lock that is never
held across an ``await``. ``cleanup()`` evicts idle keys; nothing depends on
it running.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from typing import Callable, Dict, Generic, List, Optional, Protocol, TypeVar

from llm_gateway.config import RateLimitPolicy
from llm_gateway.context import CallContext, remaining_ms
from llm_gateway.errors import ErrorKind, LLMError

logger = logging.getLogger(__name__)

__all__ = [
    "RateLimiter",
    "NoopLimiter",
    "TokenBucketLimiter",
    "SlidingWindowLimiter",
    "AdaptiveLimiter",
    "LimiterJanitor",
    "build_limiter",
]

Clock = Callable[[], float]
S = TypeVar("S")


class RateLimiter(Protocol):
    """Keyed admission interface used by the dispatcher."""

    def allow(self, key: str) -> bool: ...

    async def wait(self, key: str, ctx: Optional[CallContext] = None) -> None: ...

    def record(self, key: str, success: bool) -> None: ...

    def current_rate(self, key: str) -> float: ...

    def cleanup(self, max_idle_s: Optional[float] = None) -> int: ...

    def reset(self, key: str) -> None: ...


class NoopLimiter:
    """Admits everything."""

    def allow(self, key: str) -> bool:
        return True

    async def wait(self, key: str, ctx: Optional[CallContext] = None) -> None:
        return None

    def record(self, key: str, success: bool) -> None:
        return None

    def current_rate(self, key: str) -> float:
        return math.inf

    def cleanup(self, max_idle_s: Optional[float] = None) -> int:
        return 0

    def reset(self, key: str) -> None:
        return None


class _KeyedLimiter(Generic[S]):
    """Per-key state map with lazy creation, idle eviction and a shared wait loop."""

    default_idle_s: float = 600.0

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._states: Dict[str, S] = {}
        self._last_used: Dict[str, float] = {}

    def _new_state(self, now: float) -> S:
        raise NotImplementedError

    def _reserve(self, state: S, now: float) -> float:
        """Take one permit; return 0 on success or seconds until a retry may succeed."""
        raise NotImplementedError

    def _state(self, key: str) -> S:
        now = self._clock()
        with self._lock:
            st = self._states.get(key)
            if st is None:
                st = self._new_state(now)
                self._states[key] = st
            self._last_used[key] = now
            return st

    def _try(self, key: str) -> float:
        st = self._state(key)
        with st.lock:  # type: ignore[attr-defined]
            return self._reserve(st, self._clock())

    def allow(self, key: str) -> bool:
        return self._try(key) <= 0.0

    async def wait(self, key: str, ctx: Optional[CallContext] = None) -> None:
        while True:
            delay = self._try(key)
            if delay <= 0.0:
                return
            rem = remaining_ms(ctx)
            if rem is not None and rem <= delay * 1000.0:
                raise LLMError(
                    "deadline reached while waiting for rate limit",
                    kind=ErrorKind.TIMEOUT,
                    details={"key": key, "wait_s": round(delay, 3)},
                )
            await asyncio.sleep(delay)

    def record(self, key: str, success: bool) -> None:
        return None

    def reset(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)
            self._last_used.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def cleanup(self, max_idle_s: Optional[float] = None) -> int:
        """Drop keys idle for longer than ``max_idle_s``; returns how many went."""
        idle = self.default_idle_s if max_idle_s is None else max_idle_s
        now = self._clock()
        with self._lock:
            stale = [k for k, t in self._last_used.items() if now - t > idle]
            for k in stale:
                self._states.pop(k, None)
                self._last_used.pop(k, None)
        if stale:
            logger.debug("evicted %d idle limiter keys", len(stale))
        return len(stale)


class _Bucket:
    __slots__ = ("lock", "tokens", "last", "rate", "burst")

    def __init__(self, rate: float, burst: int, now: float) -> None:
        self.lock = threading.Lock()
        self.rate = float(rate)
        self.burst = int(burst)
        self.tokens = float(burst)
        self.last = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last)
        self.last = now
        self.tokens = min(float(self.burst), self.tokens + elapsed * self.rate)

    def take(self, now: float) -> float:
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0.0
        return (1.0 - self.tokens) / self.rate


class TokenBucketLimiter(_KeyedLimiter[_Bucket]):
    """
    Classic token bucket per key.

    Refill is computed lazily from elapsed time on each access, which is
    equivalent to a background refill at ``rate`` capped at ``burst``.
    """

    def __init__(
        self,
        *,
        rate: float = 10.0,
        burst: int = 20,
        cleanup_interval_s: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(clock)
        if rate <= 0 or burst < 1:
            raise LLMError("token bucket needs rate > 0 and burst >= 1", kind=ErrorKind.INVALID_CONFIG)
        self.rate = float(rate)
        self.burst = int(burst)
        self.cleanup_interval_s = float(cleanup_interval_s)
        self.default_idle_s = 2 * self.cleanup_interval_s

    def _new_state(self, now: float) -> _Bucket:
        return _Bucket(self.rate, self.burst, now)

    def _reserve(self, state: _Bucket, now: float) -> float:
        return state.take(now)

    def current_rate(self, key: str) -> float:
        return self.rate

    def tokens(self, key: str) -> float:
        st = self._state(key)
        with st.lock:
            st.refill(self._clock())
            return st.tokens


class _Window:
    __slots__ = ("lock", "counts", "index", "slot_start")

    def __init__(self, sub_windows: int, now: float) -> None:
        self.lock = threading.Lock()
        self.counts = [0] * sub_windows
        self.index = 0
        self.slot_start = now


class SlidingWindowLimiter(_KeyedLimiter[_Window]):
    """
    Sliding window approximated by ``sub_windows`` rotating buckets.

    A request is admitted iff the sum over all buckets is below
    ``max_requests``. When time moves past a bucket boundary the ring index
    advances and each bucket it lands on is zeroed (the oldest slice drops
    out of the window).
    """

    poll_interval_s = 0.1

    def __init__(
        self,
        *,
        window_s: float = 60.0,
        max_requests: int = 100,
        sub_windows: int = 6,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(clock)
        if window_s <= 0 or max_requests < 1 or sub_windows < 1:
            raise LLMError("invalid sliding window parameters", kind=ErrorKind.INVALID_CONFIG)
        self.window_s = float(window_s)
        self.max_requests = int(max_requests)
        self.sub_windows = int(sub_windows)
        self.slot_s = self.window_s / self.sub_windows
        self.default_idle_s = 2 * self.window_s

    def _new_state(self, now: float) -> _Window:
        return _Window(self.sub_windows, now)

    def _advance(self, w: _Window, now: float) -> None:
        elapsed_slots = int((now - w.slot_start) // self.slot_s)
        if elapsed_slots <= 0:
            return
        for _ in range(min(elapsed_slots, self.sub_windows)):
            w.index = (w.index + 1) % self.sub_windows
            w.counts[w.index] = 0
        w.slot_start += elapsed_slots * self.slot_s

    def _reserve(self, state: _Window, now: float) -> float:
        self._advance(state, now)
        if sum(state.counts) < self.max_requests:
            state.counts[state.index] += 1
            return 0.0
        until_rotation = self.slot_s - (now - state.slot_start)
        return max(0.001, min(self.poll_interval_s, until_rotation))

    def current_rate(self, key: str) -> float:
        return self.max_requests / self.window_s

    def in_window(self, key: str) -> int:
        st = self._state(key)
        with st.lock:
            self._advance(st, self._clock())
            return sum(st.counts)


class _AdaptiveState(_Bucket):
    __slots__ = ("total", "errors", "window_start", "last_adjusted")

    def __init__(self, rate: float, burst: int, now: float) -> None:
        super().__init__(rate, burst, now)
        self.total = 0
        self.errors = 0
        self.window_start = now
        self.last_adjusted = now


class AdaptiveLimiter(_KeyedLimiter[_AdaptiveState]):
    """
    Token bucket whose refill rate reacts to upstream errors.

    ``record(key, success)`` feeds a tumbling error window
    (``error_window_s``). At most once per ``adjustment_interval_s`` the rate
    is multiplied by ``1 - adjustment_factor`` if the error rate exceeds
    ``error_threshold`` (floored at ``min_rate``), or by
    ``1 + adjustment_factor`` if it is below half the threshold (capped at
    ``max_rate``). Between the two thresholds the rate holds.
    """

    def __init__(
        self,
        *,
        base_rate: float = 10.0,
        min_rate: float = 1.0,
        max_rate: float = 50.0,
        burst: int = 1,
        adjustment_factor: float = 0.1,
        error_threshold: float = 0.1,
        adjustment_interval_s: float = 30.0,
        error_window_s: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(clock)
        if not (0 < min_rate <= base_rate <= max_rate):
            raise LLMError("adaptive limiter needs 0 < min_rate <= base_rate <= max_rate", kind=ErrorKind.INVALID_CONFIG)
        if not (0 < adjustment_factor < 1):
            raise LLMError("adjustment_factor must be within (0, 1)", kind=ErrorKind.INVALID_CONFIG)
        self.base_rate = float(base_rate)
        self.min_rate = float(min_rate)
        self.max_rate = float(max_rate)
        self.burst = max(1, int(burst))
        self.adjustment_factor = float(adjustment_factor)
        self.error_threshold = float(error_threshold)
        self.adjustment_interval_s = float(adjustment_interval_s)
        self.error_window_s = float(error_window_s)
        self.default_idle_s = 2 * self.error_window_s

    def _new_state(self, now: float) -> _AdaptiveState:
        return _AdaptiveState(self.base_rate, self.burst, now)

    def _reserve(self, state: _AdaptiveState, now: float) -> float:
        return state.take(now)

    def record(self, key: str, success: bool) -> None:
        st = self._state(key)
        now = self._clock()
        with st.lock:
            if now - st.window_start >= self.error_window_s:
                st.total = 0
                st.errors = 0
                st.window_start = now
            st.total += 1
            if not success:
                st.errors += 1
            self._adjust(key, st, now)

    def _adjust(self, key: str, st: _AdaptiveState, now: float) -> None:
        if now - st.last_adjusted < self.adjustment_interval_s:
            return
        error_rate = st.errors / st.total if st.total else 0.0
        old = st.rate
        if error_rate > self.error_threshold:
            new = max(self.min_rate, old * (1.0 - self.adjustment_factor))
        elif error_rate < self.error_threshold / 2.0:
            new = min(self.max_rate, old * (1.0 + self.adjustment_factor))
        else:
            new = old
        if new != old:
            st.refill(now)
            st.rate = new
            logger.debug("adaptive rate for %s: %.3f -> %.3f (error rate %.3f)", key, old, new, error_rate)
        st.last_adjusted = now

    def current_rate(self, key: str) -> float:
        st = self._state(key)
        with st.lock:
            return st.rate

    def error_rate(self, key: str) -> float:
        st = self._state(key)
        with st.lock:
            return st.errors / st.total if st.total else 0.0


class LimiterJanitor:
    """Periodically calls ``cleanup()`` on a set of limiters from an asyncio task."""

    def __init__(self, limiters: Callable[[], List[RateLimiter]], *, interval_s: float = 300.0) -> None:
        self._limiters = limiters
        self.interval_s = float(interval_s)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            for limiter in self._limiters():
                limiter.cleanup()


def build_limiter(policy: Optional[RateLimitPolicy], *, clock: Optional[Clock] = None) -> RateLimiter:
    """Instantiate the limiter a policy selects (token bucket when None)."""
    policy = policy or RateLimitPolicy()
    policy.validate()
    if policy.strategy == "none":
        return NoopLimiter()
    if policy.strategy == "sliding_window":
        return SlidingWindowLimiter(
            window_s=policy.window_s,
            max_requests=policy.max_requests,
            sub_windows=policy.sub_windows,
            clock=clock,
        )
    if policy.strategy == "adaptive":
        return AdaptiveLimiter(
            base_rate=min(max(policy.rate, policy.min_rate), policy.max_rate),
            min_rate=policy.min_rate,
            max_rate=policy.max_rate,
            burst=policy.burst,
            adjustment_factor=policy.adjustment_factor,
            error_threshold=policy.error_threshold,
            adjustment_interval_s=policy.adjustment_interval_s,
            error_window_s=policy.error_window_s,
            clock=clock,
        )
    return TokenBucketLimiter(rate=policy.rate, burst=policy.burst, clock=clock)
