# llm_gateway/metrics.py
# SPDX-License-Identifier: Apache-2.0
"""
Per-call telemetry: records, sinks, snapshot and alerts.

Push side
---------
Every finished call produces one immutable :class:`CallMetric`. The
:class:`MetricsHub` forwards it (plus breaker transitions, rate-limit hits and
in-flight gauges) to every registered :class:`CallMetricSink`. A failing sink
is logged and skipped; it never breaks the call that produced the record.

:class:`MetricsExporter` is the canonical sink. It maps records onto the
low-cardinality ``observe`` / ``counter`` / ``gauge`` interface of a
:class:`MetricsSink`:

    requests_total{provider,model,status}
    request_duration_seconds{provider,model}
    tokens_total{provider,model,type}
    cost_total{provider,model,currency}
    errors_total{provider,model,error_kind}
    active_requests{provider,model}
    rate_limit_hits_total{provider}
    breaker_state{provider}          0=closed 1=open 2=half_open

Pull side
---------
:class:`InMemoryCollector` keeps the last N records in a ring and answers
:meth:`InMemoryCollector.snapshot` with totals and per-provider / per-model
aggregates.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from llm_gateway.errors import ErrorKind
from llm_gateway.types import ProviderKind, Usage

logger = logging.getLogger(__name__)

__all__ = [
    "CallMetric",
    "MetricsSink",
    "NoopMetrics",
    "CallMetricSink",
    "MetricsExporter",
    "AggregateStats",
    "MetricsSnapshot",
    "InMemoryCollector",
    "Alert",
    "AlertSink",
    "LoggingAlertSink",
    "AlertThresholds",
    "AlertChecker",
    "MetricsHub",
]

COMPONENT = "llm_gateway"


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class CallMetric:
    """
    One finished (or refused) call.

    ``start_time`` / ``end_time`` are epoch seconds; ``duration_s`` is
    measured on the monotonic clock.
    """
    correlation_id: str
    provider: ProviderKind
    provider_name: str
    model: str
    start_time: float
    end_time: float
    duration_s: float
    usage: Usage = Usage()
    success: bool = True
    error_kind: Optional[ErrorKind] = None
    error_message: str = ""
    cost: float = 0.0
    currency: str = ""
    stream: bool = False

    @property
    def status(self) -> str:
        return "success" if self.success else "error"


# =============================================================================
# Sink interfaces
# =============================================================================

class MetricsSink(Protocol):
    """
    Generic metrics backend.

    Implementations MUST avoid PII and high-cardinality labels.
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: float = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def gauge(
        self,
        *,
        component: str,
        name: str,
        value: float,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    """No-op metrics sink for tests or minimal deployments."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...
    def gauge(self, **_: Any) -> None: ...


class CallMetricSink(Protocol):
    """Receiver of dispatcher telemetry events."""

    def record_call(self, metric: CallMetric) -> None: ...

    def record_breaker_transition(
        self, provider_name: str, kind: Optional[ProviderKind], old: int, new: int
    ) -> None: ...

    def record_rate_limit_hit(self, provider_name: str, kind: Optional[ProviderKind]) -> None: ...

    def record_active(self, provider_name: str, kind: ProviderKind, model: str, delta: int) -> None: ...


# =============================================================================
# Canonical exporter
# =============================================================================

class MetricsExporter:
    """Translates dispatcher events into the canonical metric series."""

    def __init__(self, sink: MetricsSink, *, component: str = COMPONENT) -> None:
        self._sink = sink
        self._component = component
        self._lock = threading.Lock()
        self._active: Dict[Tuple[str, str], int] = defaultdict(int)

    def record_call(self, m: CallMetric) -> None:
        labels = {"provider": m.provider.value, "model": m.model}
        self._sink.counter(
            component=self._component,
            name="requests_total",
            value=1,
            extra={**labels, "status": m.status},
        )
        self._sink.observe(
            component=self._component,
            op="request_duration_seconds",
            ms=m.duration_s * 1000.0,
            ok=m.success,
            code=m.error_kind.value if m.error_kind else "OK",
            extra=labels,
        )
        for kind, value in (
            ("prompt", m.usage.prompt_tokens),
            ("completion", m.usage.completion_tokens),
            ("total", m.usage.total_tokens),
        ):
            if value:
                self._sink.counter(
                    component=self._component,
                    name="tokens_total",
                    value=value,
                    extra={**labels, "type": kind},
                )
        if m.cost > 0:
            self._sink.counter(
                component=self._component,
                name="cost_total",
                value=m.cost,
                extra={**labels, "currency": m.currency},
            )
        if not m.success:
            self._sink.counter(
                component=self._component,
                name="errors_total",
                value=1,
                extra={**labels, "error_kind": m.error_kind.value if m.error_kind else "unknown"},
            )

    def record_breaker_transition(
        self, provider_name: str, kind: Optional[ProviderKind], old: int, new: int
    ) -> None:
        self._sink.gauge(
            component=self._component,
            name="breaker_state",
            value=int(new),
            extra={"provider": provider_name, "from": int(old)},
        )

    def record_rate_limit_hit(self, provider_name: str, kind: Optional[ProviderKind]) -> None:
        self._sink.counter(
            component=self._component,
            name="rate_limit_hits_total",
            value=1,
            extra={"provider": provider_name},
        )

    def record_active(self, provider_name: str, kind: ProviderKind, model: str, delta: int) -> None:
        key = (kind.value, model)
        with self._lock:
            self._active[key] = max(0, self._active[key] + delta)
            value = self._active[key]
        self._sink.gauge(
            component=self._component,
            name="active_requests",
            value=value,
            extra={"provider": kind.value, "model": model},
        )


# =============================================================================
# In-memory summarizing sink
# =============================================================================

@dataclass
class AggregateStats:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    total_latency_s: float = 0.0
    max_latency_s: float = 0.0

    def add(self, m: CallMetric) -> None:
        self.requests += 1
        if m.success:
            self.successes += 1
        else:
            self.failures += 1
        self.prompt_tokens += m.usage.prompt_tokens
        self.completion_tokens += m.usage.completion_tokens
        self.total_tokens += m.usage.total_tokens
        self.cost += m.cost
        self.total_latency_s += m.duration_s
        self.max_latency_s = max(self.max_latency_s, m.duration_s)

    @property
    def avg_latency_s(self) -> float:
        return self.total_latency_s / self.requests if self.requests else 0.0

    @property
    def error_rate(self) -> float:
        return self.failures / self.requests if self.requests else 0.0


@dataclass
class MetricsSnapshot:
    totals: AggregateStats = field(default_factory=AggregateStats)
    by_provider: Dict[str, AggregateStats] = field(default_factory=dict)
    by_model: Dict[str, AggregateStats] = field(default_factory=dict)
    error_kinds: Dict[str, int] = field(default_factory=dict)
    cost_by_currency: Dict[str, float] = field(default_factory=dict)
    rate_limit_hits: Dict[str, int] = field(default_factory=dict)
    breaker_transitions: int = 0
    active_requests: Dict[str, int] = field(default_factory=dict)
    records: int = 0
    capacity: int = 0


class InMemoryCollector:
    """
    Bounded ring of recent :class:`CallMetric` records.

    Aggregates in :meth:`snapshot` cover only the retained records; the
    rate-limit and breaker counters are lifetime totals.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = max(1, int(capacity))
        self._lock = threading.Lock()
        self._ring: Deque[CallMetric] = deque(maxlen=self.capacity)
        self._rate_limit_hits: Counter = Counter()
        self._breaker_transitions = 0
        self._active: Counter = Counter()

    def record_call(self, metric: CallMetric) -> None:
        with self._lock:
            self._ring.append(metric)

    def record_breaker_transition(
        self, provider_name: str, kind: Optional[ProviderKind], old: int, new: int
    ) -> None:
        with self._lock:
            self._breaker_transitions += 1

    def record_rate_limit_hit(self, provider_name: str, kind: Optional[ProviderKind]) -> None:
        with self._lock:
            self._rate_limit_hits[provider_name] += 1

    def record_active(self, provider_name: str, kind: ProviderKind, model: str, delta: int) -> None:
        with self._lock:
            self._active[provider_name] = max(0, self._active[provider_name] + delta)

    def records(self) -> List[CallMetric]:
        with self._lock:
            return list(self._ring)

    def clear(self) -> None:
        with self._lock:
            self._ring.clear()
            self._rate_limit_hits.clear()
            self._breaker_transitions = 0

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            records = list(self._ring)
            hits = dict(self._rate_limit_hits)
            transitions = self._breaker_transitions
            active = {k: v for k, v in self._active.items() if v}

        snap = MetricsSnapshot(
            rate_limit_hits=hits,
            breaker_transitions=transitions,
            active_requests=active,
            records=len(records),
            capacity=self.capacity,
        )
        for m in records:
            snap.totals.add(m)
            snap.by_provider.setdefault(m.provider_name, AggregateStats()).add(m)
            snap.by_model.setdefault(m.model, AggregateStats()).add(m)
            if m.error_kind is not None:
                snap.error_kinds[m.error_kind.value] = snap.error_kinds.get(m.error_kind.value, 0) + 1
            if m.cost and m.currency:
                snap.cost_by_currency[m.currency] = snap.cost_by_currency.get(m.currency, 0.0) + m.cost
        return snap


# =============================================================================
# Alerts
# =============================================================================

@dataclass(frozen=True)
class Alert:
    type: str
    message: str
    provider_name: str
    provider: Optional[ProviderKind] = None
    model: str = ""
    value: float = 0.0
    threshold: float = 0.0
    severity: str = "warning"
    timestamp: float = field(default_factory=time.time)


class AlertSink(Protocol):
    def alert(self, alert: Alert) -> None: ...


class LoggingAlertSink:
    """Writes alerts to the ``llm_gateway.alerts`` logger."""

    def __init__(self, logger_name: str = "llm_gateway.alerts") -> None:
        self._log = logging.getLogger(logger_name)

    def alert(self, alert: Alert) -> None:
        self._log.warning(
            "[%s] %s provider=%s model=%s value=%.4f threshold=%.4f",
            alert.type,
            alert.message,
            alert.provider_name,
            alert.model,
            alert.value,
            alert.threshold,
        )


@dataclass(frozen=True)
class AlertThresholds:
    latency_s: float = 30.0
    cost_per_call: float = 1.0
    error_rate: float = 0.1
    error_rate_min_requests: int = 10
    error_rate_window_s: float = 300.0
    rate_limit_hits: int = 10
    rate_limit_window_s: float = 60.0


class AlertChecker:
    """
    Evaluates each event against :class:`AlertThresholds` and notifies sinks.

    Policy beyond "threshold crossed" (dedup, paging, silencing) belongs to
    the sinks.
    """

    def __init__(
        self,
        sinks: Iterable[AlertSink] = (),
        thresholds: Optional[AlertThresholds] = None,
        *,
        clock=time.monotonic,
    ) -> None:
        self._sinks: List[AlertSink] = list(sinks)
        self.thresholds = thresholds or AlertThresholds()
        self._clock = clock
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Deque[Tuple[float, bool]]] = defaultdict(deque)
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def _emit(self, alert: Alert) -> None:
        for sink in list(self._sinks):
            try:
                sink.alert(alert)
            except Exception:  # noqa: BLE001
                logger.warning("alert sink %r failed", sink, exc_info=True)

    def check_call(self, m: CallMetric) -> None:
        t = self.thresholds
        if m.duration_s > t.latency_s:
            self._emit(Alert(
                type="latency",
                message="call latency above threshold",
                provider_name=m.provider_name,
                provider=m.provider,
                model=m.model,
                value=m.duration_s,
                threshold=t.latency_s,
            ))
        if m.cost > t.cost_per_call:
            self._emit(Alert(
                type="cost",
                message="cost per call above threshold",
                provider_name=m.provider_name,
                provider=m.provider,
                model=m.model,
                value=m.cost,
                threshold=t.cost_per_call,
            ))

        now = self._clock()
        with self._lock:
            window = self._outcomes[m.provider_name]
            window.append((now, m.success))
            while window and now - window[0][0] > t.error_rate_window_s:
                window.popleft()
            total = len(window)
            failures = sum(1 for _, ok in window if not ok)
        if not m.success and total >= t.error_rate_min_requests:
            rate = failures / total
            if rate > t.error_rate:
                self._emit(Alert(
                    type="error_rate",
                    message="error rate above threshold",
                    provider_name=m.provider_name,
                    provider=m.provider,
                    model=m.model,
                    value=rate,
                    threshold=t.error_rate,
                    severity="critical",
                ))

    def check_rate_limit(self, provider_name: str, kind: Optional[ProviderKind]) -> None:
        t = self.thresholds
        now = self._clock()
        with self._lock:
            hits = self._hits[provider_name]
            hits.append(now)
            while hits and now - hits[0] > t.rate_limit_window_s:
                hits.popleft()
            count = len(hits)
        if count >= t.rate_limit_hits:
            self._emit(Alert(
                type="rate_limit",
                message="rate limiter rejecting requests frequently",
                provider_name=provider_name,
                provider=kind,
                value=float(count),
                threshold=float(t.rate_limit_hits),
            ))


# =============================================================================
# Fan-out
# =============================================================================

class MetricsHub:
    """Fans dispatcher events out to sinks and the alert checker."""

    def __init__(
        self,
        sinks: Iterable[CallMetricSink] = (),
        *,
        alerts: Optional[AlertChecker] = None,
    ) -> None:
        self._sinks: List[CallMetricSink] = list(sinks)
        self.alerts = alerts

    def add_sink(self, sink: CallMetricSink) -> None:
        self._sinks.append(sink)

    def _each(self, method: str, *args: Any) -> None:
        for sink in list(self._sinks):
            try:
                getattr(sink, method)(*args)
            except Exception:  # noqa: BLE001
                logger.warning("metrics sink %r failed in %s", sink, method, exc_info=True)

    def record_call(self, metric: CallMetric) -> None:
        self._each("record_call", metric)
        if self.alerts is not None:
            try:
                self.alerts.check_call(metric)
            except Exception:  # noqa: BLE001
                logger.warning("alert check failed", exc_info=True)

    def record_breaker_transition(
        self, provider_name: str, kind: Optional[ProviderKind], old: int, new: int
    ) -> None:
        self._each("record_breaker_transition", provider_name, kind, old, new)

    def record_rate_limit_hit(self, provider_name: str, kind: Optional[ProviderKind]) -> None:
        self._each("record_rate_limit_hit", provider_name, kind)
        if self.alerts is not None:
            try:
                self.alerts.check_rate_limit(provider_name, kind)
            except Exception:  # noqa: BLE001
                logger.warning("rate limit alert check failed", exc_info=True)

    def record_active(self, provider_name: str, kind: ProviderKind, model: str, delta: int) -> None:
        self._each("record_active", provider_name, kind, model, delta)
