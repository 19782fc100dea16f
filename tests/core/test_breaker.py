# SPDX-License-Identifier: Apache-2.0
"""
Circuit breaker state machine: trip, fail fast, half-open probing,
generation fencing and state-change reporting.
"""

import asyncio

import pytest

from llm_gateway.breaker import (
    BreakerSettings,
    BreakerState,
    CircuitBreaker,
    MultiCircuitBreaker,
    aggressive_settings,
    consecutive_trip,
    settings_for_kind,
    settings_from_policy,
)
from llm_gateway.config import BreakerPolicy
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.types import ProviderKind


class Upstream503(Exception):
    pass


def _breaker(clock, **overrides):
    settings = BreakerSettings(
        name="p1",
        timeout_s=0.1,
        ready_to_trip=consecutive_trip(3),
        **overrides,
    )
    return CircuitBreaker(settings, clock=clock)


async def _fail():
    raise Upstream503("down")


async def _ok():
    return "ok"


@pytest.mark.asyncio
async def test_three_failures_trip_and_fourth_fails_fast(clock):
    """consecutive_failures >= 3 opens; the next call never reaches the callee."""
    cb = _breaker(clock)
    for _ in range(3):
        with pytest.raises(Upstream503):
            await cb.call(_fail)
    assert cb.state() is BreakerState.OPEN

    invoked = []

    async def probe():
        invoked.append(1)
        return "x"

    with pytest.raises(LLMError) as ei:
        await cb.call(probe)
    assert ei.value.kind is ErrorKind.ADMISSION_DENIED
    assert ei.value.retry_after_ms is not None
    assert invoked == []


@pytest.mark.asyncio
async def test_half_open_success_closes(clock):
    cb = _breaker(clock)
    for _ in range(3):
        with pytest.raises(Upstream503):
            await cb.call(_fail)
    clock.advance(0.1)
    assert cb.state() is BreakerState.HALF_OPEN
    assert await cb.call(_ok) == "ok"
    assert cb.state() is BreakerState.CLOSED
    assert cb.counts().requests == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_fresh_timeout(clock):
    cb = _breaker(clock)
    for _ in range(3):
        with pytest.raises(Upstream503):
            await cb.call(_fail)
    clock.advance(0.1)
    with pytest.raises(Upstream503):
        await cb.call(_fail)
    assert cb.state() is BreakerState.OPEN

    clock.advance(0.06)
    assert cb.state() is BreakerState.OPEN
    clock.advance(0.06)
    assert cb.state() is BreakerState.HALF_OPEN


def test_half_open_probe_capacity(clock):
    """With max_requests=1 a second concurrent half-open caller is overloaded."""
    cb = _breaker(clock)
    for _ in range(3):
        cb.allow()(False)
    clock.advance(0.1)

    done = cb.allow()
    with pytest.raises(LLMError) as ei:
        cb.before_request()
    assert ei.value.kind is ErrorKind.ADMISSION_OVERLOADED

    done(True)
    assert cb.state() is BreakerState.CLOSED


def test_check_does_not_take_a_probe_slot(clock):
    cb = _breaker(clock)
    for _ in range(3):
        cb.allow()(False)
    with pytest.raises(LLMError) as ei:
        cb.check()
    assert ei.value.kind is ErrorKind.ADMISSION_DENIED

    clock.advance(0.1)
    cb.check()
    cb.check()
    assert cb.counts().requests == 0
    done = cb.allow()
    with pytest.raises(LLMError) as ei:
        cb.check()
    assert ei.value.kind is ErrorKind.ADMISSION_OVERLOADED
    done(True)
    cb.check()


def test_results_from_older_generation_are_ignored(clock):
    """A slow call admitted before a trip cannot close the reopened breaker."""
    cb = _breaker(clock)
    slow = cb.allow()
    for _ in range(3):
        cb.allow()(False)
    assert cb.state() is BreakerState.OPEN
    slow(True)
    assert cb.state() is BreakerState.OPEN


def test_done_reports_once(clock):
    cb = _breaker(clock)
    done = cb.allow()
    done(False)
    done(False)
    done(False)
    assert cb.counts().total_failures == 1


@pytest.mark.asyncio
async def test_cancellation_counts_as_failure_and_propagates(clock):
    """The outcome hook runs on BaseException too, then the exception re-raises."""
    cb = _breaker(clock)

    async def cancelled():
        raise asyncio.CancelledError()

    for _ in range(3):
        with pytest.raises(asyncio.CancelledError):
            await cb.call(cancelled)
    assert cb.state() is BreakerState.OPEN


def test_state_change_callback_after_transition(clock):
    seen = []
    cb = _breaker(clock, on_state_change=lambda name, old, new: seen.append((name, old, new)))
    for _ in range(3):
        cb.allow()(False)
    clock.advance(0.1)
    cb.allow()(True)
    assert seen == [
        ("p1", BreakerState.CLOSED, BreakerState.OPEN),
        ("p1", BreakerState.OPEN, BreakerState.HALF_OPEN),
        ("p1", BreakerState.HALF_OPEN, BreakerState.CLOSED),
    ]


def test_failing_callback_does_not_break_breaker(clock):
    def boom(*_):
        raise RuntimeError("sink down")

    cb = _breaker(clock, on_state_change=boom)
    for _ in range(3):
        cb.allow()(False)
    assert cb.state() is BreakerState.OPEN


def test_default_ratio_trip_needs_min_requests(clock):
    """Default: at least 3 requests with >= 60% failures."""
    cb = CircuitBreaker(BreakerSettings(name="d"), clock=clock)
    cb.allow()(False)
    cb.allow()(True)
    assert cb.state() is BreakerState.CLOSED
    cb.allow()(False)
    assert cb.state() is BreakerState.OPEN


def test_interval_clears_closed_counts(clock):
    cb = _breaker(clock, interval_s=10)
    cb.allow()(False)
    cb.allow()(False)
    clock.advance(10)
    cb.allow()(False)
    assert cb.state() is BreakerState.CLOSED
    assert cb.counts().consecutive_failures == 1


def test_multi_breaker_is_keyed_and_lazy(clock):
    transitions = []
    mb = MultiCircuitBreaker(
        aggressive_settings,
        on_state_change=lambda n, o, s: transitions.append((n, s)),
        clock=clock,
    )
    a = mb.get("a")
    assert mb.get("a") is a
    for _ in range(3):
        a.allow()(False)
    assert mb.states() == {"a": BreakerState.OPEN}
    assert mb.get("b").state() is BreakerState.CLOSED
    assert transitions == [("a", BreakerState.OPEN)]
    mb.remove("a")
    assert set(mb.states()) == {"b"}


def test_presets():
    claude = settings_for_kind(ProviderKind.CLAUDE)
    assert claude.timeout_s == 90.0
    assert settings_for_kind(ProviderKind.BAICHUAN).timeout_s == 60.0
    s = settings_from_policy(BreakerPolicy(consecutive_failures=2, timeout_s=5, max_requests=2))
    assert s.max_requests == 2 and s.timeout_s == 5
    assert int(BreakerState.HALF_OPEN) == 2 and str(BreakerState.HALF_OPEN) == "half_open"
