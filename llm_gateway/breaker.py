# llm_gateway/breaker.py
# SPDX-License-Identifier: Apache-2.0
"""
Per-key circuit breakers.

State machine
-------------
closed:
    Calls pass and update :class:`Counts`. When ``ready_to_trip(counts)``
    says so, the breaker opens for ``timeout_s``. With ``interval_s > 0``
    the counts are cleared every interval while closed.
open:
    Calls fail fast with ``admission_denied`` until the timeout expires,
    then the breaker moves to half-open.
half_open:
    Up to ``max_requests`` probes are admitted; extra callers get
    ``admission_overloaded``. ``max_requests`` consecutive successes close
    the breaker; any failure reopens it with a fresh timeout.

Every transition clears the counts and bumps a generation number. Results
reported against an older generation are discarded, so a slow call that
started before a transition cannot corrupt the new state.

Transitions are reported through ``on_state_change`` after the breaker's
lock has been released.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from llm_gateway.config import BreakerPolicy
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import ProviderKind

logger = logging.getLogger(__name__)

__all__ = [
    "BreakerState",
    "Counts",
    "BreakerSettings",
    "CircuitBreaker",
    "MultiCircuitBreaker",
    "default_ready_to_trip",
    "default_settings",
    "aggressive_settings",
    "conservative_settings",
    "settings_for_kind",
    "settings_from_policy",
]

T = TypeVar("T")
Clock = Callable[[], float]


class BreakerState(IntEnum):
    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    def __str__(self) -> str:
        return self.label


@dataclass
class Counts:
    """Request/outcome counters for the current generation."""
    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def on_request(self) -> None:
        self.requests += 1

    def on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0

    @property
    def failure_ratio(self) -> float:
        return self.total_failures / self.requests if self.requests else 0.0


def ratio_trip(min_requests: int, ratio: float) -> Callable[[Counts], bool]:
    def ready(counts: Counts) -> bool:
        return counts.requests >= min_requests and counts.failure_ratio >= ratio
    return ready


def consecutive_trip(n: int) -> Callable[[Counts], bool]:
    def ready(counts: Counts) -> bool:
        return counts.consecutive_failures >= n
    return ready


default_ready_to_trip = ratio_trip(3, 0.6)

StateChange = Callable[[str, BreakerState, BreakerState], None]


@dataclass(frozen=True)
class BreakerSettings:
    name: str = ""
    max_requests: int = 1
    interval_s: float = 0.0
    timeout_s: float = 60.0
    ready_to_trip: Callable[[Counts], bool] = default_ready_to_trip
    on_state_change: Optional[StateChange] = None
    is_successful: Callable[[Optional[BaseException]], bool] = field(default=lambda err: err is None)


class CircuitBreaker:
    """
    One breaker. Thread-safe; the internal lock is never held while the
    protected call runs.

    Two ways to use it:

    * ``await breaker.call(fn)`` for a single awaitable call.
    * ``done = breaker.allow()`` ... ``done(success)`` for calls whose
      outcome is only known later (streams).
    """

    def __init__(self, settings: BreakerSettings, *, clock: Optional[Clock] = None) -> None:
        self.name = settings.name
        self._settings = settings
        self._max_requests = max(1, int(settings.max_requests))
        self._interval = max(0.0, float(settings.interval_s))
        self._timeout = float(settings.timeout_s) if settings.timeout_s and settings.timeout_s > 0 else 60.0
        self._clock: Clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry = 0.0
        self._pending: List[Tuple[BreakerState, BreakerState]] = []
        self._new_generation(self._clock())

    # -- internals (lock held) ------------------------------------------------

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts.clear()
        if self._state is BreakerState.CLOSED:
            self._expiry = now + self._interval if self._interval > 0 else 0.0
        elif self._state is BreakerState.OPEN:
            self._expiry = now + self._timeout
        else:
            self._expiry = 0.0

    def _set_state(self, state: BreakerState, now: float) -> None:
        if self._state is state:
            return
        prev = self._state
        self._state = state
        self._new_generation(now)
        self._pending.append((prev, state))

    def _current(self, now: float) -> Tuple[BreakerState, int]:
        if self._state is BreakerState.CLOSED:
            if self._expiry and self._expiry <= now:
                self._new_generation(now)
        elif self._state is BreakerState.OPEN:
            if self._expiry <= now:
                self._set_state(BreakerState.HALF_OPEN, now)
        return self._state, self._generation

    def _on_success(self, state: BreakerState, now: float) -> None:
        self._counts.on_success()
        if state is BreakerState.HALF_OPEN and self._counts.consecutive_successes >= self._max_requests:
            self._set_state(BreakerState.CLOSED, now)

    def _on_failure(self, state: BreakerState, now: float) -> None:
        if state is BreakerState.CLOSED:
            self._counts.on_failure()
            if self._settings.ready_to_trip(replace(self._counts)):
                self._set_state(BreakerState.OPEN, now)
        elif state is BreakerState.HALF_OPEN:
            self._set_state(BreakerState.OPEN, now)

    def _flush(self) -> None:
        # Called with the lock released.
        with self._lock:
            pending, self._pending = self._pending, []
        for prev, new in pending:
            logger.info("circuit breaker %s: %s -> %s", self.name, prev.label, new.label)
            cb = self._settings.on_state_change
            if cb is None:
                continue
            try:
                cb(self.name, prev, new)
            except Exception:  # noqa: BLE001
                logger.warning("breaker state-change callback failed for %s", self.name, exc_info=True)

    # -- public API -----------------------------------------------------------

    def _refusal(self, state: BreakerState, now: float) -> Optional[LLMError]:
        if state is BreakerState.OPEN:
            return LLMError(
                f"circuit breaker {self.name!r} is open",
                kind=ErrorKind.ADMISSION_DENIED,
                details={"breaker": self.name, "state": state.label},
                retry_after_ms=max(0, int((self._expiry - now) * 1000)),
            )
        if state is BreakerState.HALF_OPEN and self._counts.requests >= self._max_requests:
            return LLMError(
                f"circuit breaker {self.name!r} is half-open and at probe capacity",
                kind=ErrorKind.ADMISSION_OVERLOADED,
                details={"breaker": self.name, "state": state.label},
            )
        return None

    def before_request(self) -> int:
        """
        Admit a call or raise.

        Returns the generation the call belongs to; pass it back to
        :meth:`after_request`.
        """
        try:
            with self._lock:
                now = self._clock()
                state, generation = self._current(now)
                err = self._refusal(state, now)
                if err is not None:
                    raise err
                self._counts.on_request()
                return generation
        finally:
            self._flush()

    def check(self) -> None:
        """Raise the error :meth:`before_request` would raise, without taking a slot."""
        try:
            with self._lock:
                now = self._clock()
                state, _ = self._current(now)
                err = self._refusal(state, now)
        finally:
            self._flush()
        if err is not None:
            raise err

    def after_request(self, generation: int, success: bool) -> None:
        with self._lock:
            now = self._clock()
            state, current = self._current(now)
            if current == generation:
                if success:
                    self._on_success(state, now)
                else:
                    self._on_failure(state, now)
        self._flush()

    def allow(self) -> Callable[[bool], None]:
        """Two-step form: admit now, report the outcome later exactly once."""
        generation = self.before_request()
        reported = False

        def done(success: bool) -> None:
            nonlocal reported
            if reported:
                return
            reported = True
            self.after_request(generation, success)

        return done

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the breaker.

        The outcome is recorded even when ``fn`` raises (including task
        cancellation); the exception is then re-raised unchanged.
        """
        generation = self.before_request()
        try:
            result = await fn()
        except BaseException as exc:
            self.after_request(generation, self._settings.is_successful(exc))
            raise
        self.after_request(generation, self._settings.is_successful(None))
        return result

    def state(self) -> BreakerState:
        try:
            with self._lock:
                return self._current(self._clock())[0]
        finally:
            self._flush()

    def counts(self) -> Counts:
        with self._lock:
            return replace(self._counts)

    @property
    def settings(self) -> BreakerSettings:
        return self._settings


class MultiCircuitBreaker:
    """
    Breakers keyed by name, created on first use.

    ``settings_factory(name)`` supplies settings for keys without an
    explicit :meth:`configure`. ``on_state_change`` is attached to every
    breaker this registry creates.
    """

    def __init__(
        self,
        settings_factory: Optional[Callable[[str], BreakerSettings]] = None,
        *,
        on_state_change: Optional[StateChange] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._factory = settings_factory or default_settings
        self._on_state_change = on_state_change
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def _build(self, name: str, settings: BreakerSettings) -> CircuitBreaker:
        settings = replace(settings, name=name)
        if self._on_state_change is not None and settings.on_state_change is None:
            settings = replace(settings, on_state_change=self._on_state_change)
        return CircuitBreaker(settings, clock=self._clock)

    def configure(self, name: str, settings: BreakerSettings) -> CircuitBreaker:
        breaker = self._build(name, settings)
        with self._lock:
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = self._build(name, self._factory(name))
                self._breakers[name] = breaker
            return breaker

    def remove(self, name: str) -> None:
        with self._lock:
            self._breakers.pop(name, None)

    def states(self) -> Dict[str, BreakerState]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: b.state() for name, b in breakers.items()}

    async def call(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.get(name).call(fn)


# -- presets -------------------------------------------------------------------


def default_settings(name: str = "") -> BreakerSettings:
    return BreakerSettings(name=name)


def aggressive_settings(name: str = "") -> BreakerSettings:
    """Trip on three consecutive failures, probe again after 30s."""
    return BreakerSettings(name=name, timeout_s=30.0, ready_to_trip=consecutive_trip(3))


def conservative_settings(name: str = "") -> BreakerSettings:
    """Needs ten requests at 80% failure; slow, wide probing."""
    return BreakerSettings(
        name=name,
        max_requests=3,
        interval_s=120.0,
        timeout_s=120.0,
        ready_to_trip=ratio_trip(10, 0.8),
    )


_KIND_TUNING: Dict[ProviderKind, Tuple[int, float, float]] = {
    ProviderKind.OPENAI: (5, 0.7, 60.0),
    ProviderKind.QIANWEN: (3, 0.6, 45.0),
    ProviderKind.CLAUDE: (5, 0.8, 90.0),
}


def settings_for_kind(kind: ProviderKind, name: str = "") -> BreakerSettings:
    """Vendor-tuned trip thresholds; other kinds use the defaults."""
    tuning = _KIND_TUNING.get(kind)
    if tuning is None:
        return default_settings(name)
    min_requests, ratio, timeout_s = tuning
    return BreakerSettings(name=name, timeout_s=timeout_s, ready_to_trip=ratio_trip(min_requests, ratio))


def settings_from_policy(policy: BreakerPolicy, name: str = "") -> BreakerSettings:
    if policy.consecutive_failures:
        ready = consecutive_trip(int(policy.consecutive_failures))
    else:
        ready = ratio_trip(int(policy.min_requests), float(policy.failure_ratio))
    return BreakerSettings(
        name=name,
        max_requests=policy.max_requests,
        interval_s=policy.interval_s,
        timeout_s=policy.timeout_s,
        ready_to_trip=ready,
    )
