# llm_gateway/dispatcher.py
# SPDX-License-Identifier: Apache-2.0
"""
Dispatcher: registry -> admission -> adapter -> metrics.

The dispatcher owns a set of named provider instances. Each one has its own
adapter, rate limiter and circuit breaker. A call flows like this:

1. Resolve the provider by name (``provider_not_found`` on a miss).
2. Install a cancellation entry when the context carries a correlation key.
3. Admission: breaker check, rate limiter, then the breaker slot. A refusal
   is recorded as a failed call and raised as ``admission_denied`` /
   ``admission_overloaded``. A breaker refusal does not spend a permit.
4. Run the adapter under ``min(caller deadline, adapter timeout)``.
5. Report the outcome to the breaker and limiter, record one
   :class:`~llm_gateway.metrics.CallMetric` (with cost) and drop the
   cancellation entry.

Streams follow the same path, except the dispatcher hands back a
:class:`DispatchStream` that relays the adapter's events verbatim and does
step 5 when the terminal event goes by, the consumer closes or drops it
early, or the call is aborted.

No retries happen here. The first failure is what the caller sees.

Example:
    dispatcher = Dispatcher()
    dispatcher.register("p1", OpenAIConfig(api_key="sk-..."))
    result = await dispatcher.generate(make_ctx(), "p1", request)

    async with await dispatcher.generate_stream(ctx, "p1", request) as stream:
        async for event in stream:
            ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    TypeVar,
    Union,
)

from llm_gateway.adapters.base import LLMAdapter
from llm_gateway.breaker import (
    BreakerSettings,
    BreakerState,
    CircuitBreaker,
    default_settings,
    settings_for_kind,
    settings_from_policy,
)
from llm_gateway.cancellation import CancelHandle, CancellationRegistry
from llm_gateway.config import BreakerPolicy, ProviderConfig, RateLimitPolicy
from llm_gateway.context import CallContext, effective_timeout_s, make_ctx, remaining_ms
from llm_gateway.errors import ErrorKind, LLMError
from llm_gateway.factory import AdapterFactory
from llm_gateway.metrics import (
    AlertChecker,
    AlertSink,
    CallMetric,
    CallMetricSink,
    InMemoryCollector,
    LoggingAlertSink,
    MetricsHub,
    MetricsSnapshot,
)
from llm_gateway.pricing import CostCalculator
from llm_gateway.ratelimit import LimiterJanitor, RateLimiter, build_limiter
from llm_gateway.types import ChatRequest, ChatResult, ModelInfo, StreamEvent, StreamEventType, Usage

logger = logging.getLogger(__name__)

__all__ = ["Dispatcher", "DispatchStream"]

T = TypeVar("T")
Clock = Callable[[], float]


def _caller_cancelled() -> bool:
    """True when the current task itself has a pending cancellation request."""
    task = asyncio.current_task()
    cancelling = getattr(task, "cancelling", None)
    return bool(cancelling is not None and cancelling())


async def _with_timeout(aw: Awaitable[T], timeout_s: Optional[float], *, provider: Any, model: str) -> T:
    try:
        return await asyncio.wait_for(aw, timeout_s)
    except asyncio.TimeoutError as exc:
        raise LLMError(
            "call exceeded its deadline" if timeout_s is None else f"call exceeded its deadline of {timeout_s:.3f}s",
            kind=ErrorKind.TIMEOUT,
            provider=provider,
            model=model,
        ) from exc


@dataclass
class _Provider:
    name: str
    adapter: LLMAdapter
    limiter: RateLimiter
    breaker: CircuitBreaker

    @property
    def kind(self):
        return self.adapter.kind()


class _CallScope:
    """
    Bookkeeping for one admitted call: reports its outcome exactly once.
    """

    def __init__(
        self,
        dispatcher: "Dispatcher",
        provider: _Provider,
        ctx: CallContext,
        model: str,
        *,
        stream: bool,
    ) -> None:
        self.dispatcher = dispatcher
        self.provider = provider
        self.ctx = ctx
        self.model = model
        self.stream = stream
        self.started_at = time.time()
        self.t0 = time.monotonic()
        self.handle: Optional[CancelHandle] = None
        self._breaker_done: Optional[Callable[[bool], None]] = None
        self._active = False
        self._finished = False

    def admitted(self, breaker_done: Callable[[bool], None]) -> None:
        self._breaker_done = breaker_done
        self._active = True
        self.dispatcher._hub.record_active(self.provider.name, self.provider.kind, self.model, +1)

    def finish(self, *, usage: Optional[Usage] = None, err: Optional[BaseException] = None) -> None:
        if self._finished:
            return
        self._finished = True
        p = self.provider
        success = err is None
        if self._breaker_done is not None:
            self._breaker_done(p.breaker.settings.is_successful(err))
            p.limiter.record(p.name, success)
        if self._active:
            self.dispatcher._hub.record_active(p.name, p.kind, self.model, -1)
        if self.handle is not None:
            self.dispatcher._cancels.remove(self.handle.key, self.handle)
        self.dispatcher._record(self, usage=usage, err=err)


class Dispatcher:
    """
    Provider registry plus the generate / stream call paths.

    Args:
        factory: Builds adapters from configs (default :class:`AdapterFactory`).
        metrics_sinks: Extra :class:`CallMetricSink` receivers. An
            :class:`InMemoryCollector` is always installed for
            :meth:`metrics_snapshot`.
        alert_sinks: Alert receivers (default: log them).
        cost: Pricing table (default: the built-in one).
        default_rate_limit: Policy for providers whose config has none.
        default_breaker: Policy for providers whose config has none. When
            neither is set the default breaker applies (trip at three or more
            requests with a failure ratio of at least 0.6).
        vendor_breaker_tuning: Use the per-kind breaker thresholds
            (:func:`~llm_gateway.breaker.settings_for_kind`) instead of the
            default breaker for providers without a policy.
        wait_for_admission: Make callers wait for a rate-limit permit (up to
            their deadline) instead of failing with ``admission_denied``.
        collector_capacity: Size of the in-memory metrics ring.
        clock: Monotonic clock for limiters and breakers (tests).
    """

    def __init__(
        self,
        *,
        factory: Optional[AdapterFactory] = None,
        metrics_sinks: Iterable[CallMetricSink] = (),
        alert_sinks: Optional[Iterable[AlertSink]] = None,
        cost: Optional[CostCalculator] = None,
        default_rate_limit: Optional[RateLimitPolicy] = None,
        default_breaker: Optional[BreakerPolicy] = None,
        vendor_breaker_tuning: bool = False,
        wait_for_admission: bool = False,
        collector_capacity: int = 1000,
        clock: Optional[Clock] = None,
    ) -> None:
        self._factory = factory or AdapterFactory()
        self._cost = cost or CostCalculator()
        self._default_rate_limit = default_rate_limit
        self._default_breaker = default_breaker
        self._vendor_breaker_tuning = vendor_breaker_tuning
        self._wait_for_admission = wait_for_admission
        self._clock = clock

        self._collector = InMemoryCollector(collector_capacity)
        sinks = list(alert_sinks) if alert_sinks is not None else [LoggingAlertSink()]
        self._hub = MetricsHub([self._collector, *metrics_sinks], alerts=AlertChecker(sinks))

        self._lock = threading.RLock()
        self._providers: Dict[str, _Provider] = {}
        self._cancels = CancellationRegistry()
        self._janitor: Optional[LimiterJanitor] = None

    # ------------------------------------------------------------------ registry

    def register(self, name: str, config: ProviderConfig) -> LLMAdapter:
        """Validate ``config``, build its adapter and register it under ``name``."""
        name = name or config.name
        self._check_name(name)
        adapter = self._factory.create(config)
        self._install(
            name,
            adapter,
            rate_limit=config.rate_limit,
            breaker=config.breaker,
            pricing=config.pricing,
        )
        logger.info("registered provider %s (%s)", name, config.kind.value)
        return adapter

    def register_adapter(
        self,
        name: str,
        adapter: LLMAdapter,
        *,
        rate_limit: Optional[RateLimitPolicy] = None,
        breaker: Union[BreakerPolicy, BreakerSettings, None] = None,
        pricing: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Register a ready-made adapter (custom vendors, test doubles)."""
        self._check_name(name)
        self._install(name, adapter, rate_limit=rate_limit, breaker=breaker, pricing=pricing)
        logger.info("registered adapter %s (%s)", name, adapter.kind().value)

    def _check_name(self, name: str) -> None:
        if not name:
            raise LLMError("provider name must be non-empty", kind=ErrorKind.INVALID_CONFIG)
        with self._lock:
            if name in self._providers:
                raise LLMError(
                    f"provider {name!r} is already registered; remove it first",
                    kind=ErrorKind.INVALID_CONFIG,
                    details={"provider_name": name},
                )

    def _install(
        self,
        name: str,
        adapter: LLMAdapter,
        *,
        rate_limit: Optional[RateLimitPolicy],
        breaker: Union[BreakerPolicy, BreakerSettings, None],
        pricing: Optional[Dict[str, Any]],
    ) -> None:
        kind = adapter.kind()
        limiter = build_limiter(rate_limit or self._default_rate_limit, clock=self._clock)

        policy = breaker if breaker is not None else self._default_breaker
        if isinstance(policy, BreakerSettings):
            settings = policy
        elif isinstance(policy, BreakerPolicy):
            settings = settings_from_policy(policy)
        elif self._vendor_breaker_tuning:
            settings = settings_for_kind(kind)
        else:
            settings = default_settings()
        cb = CircuitBreaker(
            replace(
                settings,
                name=name,
                on_state_change=self._breaker_listener(kind, settings.on_state_change),
            ),
            clock=self._clock,
        )

        self._cost.seed(kind, adapter.pricing_catalog())
        for model, price in (pricing or {}).items():
            self._cost.update_pricing(kind, model, price)

        with self._lock:
            if name in self._providers:
                raise LLMError(
                    f"provider {name!r} is already registered; remove it first",
                    kind=ErrorKind.INVALID_CONFIG,
                    details={"provider_name": name},
                )
            self._providers[name] = _Provider(name=name, adapter=adapter, limiter=limiter, breaker=cb)

    def _breaker_listener(self, kind, user_cb):
        def on_change(name: str, old: BreakerState, new: BreakerState) -> None:
            self._hub.record_breaker_transition(name, kind, int(old), int(new))
            if user_cb is not None:
                user_cb(name, old, new)

        return on_change

    def remove(self, name: str) -> Optional[LLMAdapter]:
        """
        Unregister ``name``. Unknown names are a no-op.

        Returns the removed adapter so the caller can ``await adapter.close()``.
        Calls already past admission finish normally.
        """
        with self._lock:
            provider = self._providers.pop(name, None)
        if provider is None:
            return None
        logger.info("removed provider %s", name)
        return provider.adapter

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self._providers)

    def get(self, name: str) -> LLMAdapter:
        return self._resolve(name).adapter

    def _resolve(self, name: str) -> _Provider:
        with self._lock:
            provider = self._providers.get(name)
        if provider is None:
            raise LLMError(
                f"provider {name!r} is not registered",
                kind=ErrorKind.PROVIDER_NOT_FOUND,
                details={"provider_name": name},
            )
        return provider

    # ----------------------------------------------------------------- admission

    def _aborted_error(self, scope: _CallScope) -> LLMError:
        return LLMError(
            "generation aborted",
            kind=ErrorKind.CANCELLED,
            provider=scope.provider.kind,
            model=scope.model,
            details={"correlation_key": scope.handle.key if scope.handle else None},
        )

    async def _wait_permit(self, scope: _CallScope) -> None:
        """Wait for a rate-limit permit; an abort of the call ends the wait."""
        p = scope.provider
        handle = scope.handle
        if handle is None:
            await p.limiter.wait(p.name, scope.ctx)
            return
        permit = asyncio.ensure_future(p.limiter.wait(p.name, scope.ctx))
        aborted = asyncio.ensure_future(handle.wait())
        try:
            await asyncio.wait({permit, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (permit, aborted):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(permit, aborted, return_exceptions=True)
        if handle.aborted:
            raise self._aborted_error(scope)
        permit.result()

    def _through_breaker(self, scope: _CallScope, gate: Callable[[], T]) -> T:
        p = scope.provider
        try:
            return gate()
        except LLMError as err:
            logger.warning("breaker refused call to %s: %s", p.name, err.kind.value)
            err.with_origin(provider=p.kind, model=scope.model)
            raise

    async def _admit(self, scope: _CallScope) -> None:
        p = scope.provider
        # A breaker refusal must not spend a rate-limit permit.
        self._through_breaker(scope, p.breaker.check)
        if self._wait_for_admission:
            await self._wait_permit(scope)
        elif not p.limiter.allow(p.name):
            self._hub.record_rate_limit_hit(p.name, p.kind)
            logger.warning("rate limit hit for provider %s", p.name)
            raise LLMError(
                f"rate limit exceeded for provider {p.name!r}",
                kind=ErrorKind.ADMISSION_DENIED,
                provider=p.kind,
                model=scope.model,
                details={"gate": "rate_limit", "provider_name": p.name},
            )
        scope.admitted(self._through_breaker(scope, p.breaker.allow))

    async def _open(self, ctx: Optional[CallContext], name: str, request: ChatRequest, *, stream: bool) -> _CallScope:
        ctx = ctx or make_ctx()
        provider = self._resolve(name)
        request.validate()
        scope = _CallScope(self, provider, ctx, request.model, stream=stream)
        if ctx.correlation_key:
            scope.handle = self._cancels.install(ctx.correlation_key)
        try:
            await self._admit(scope)
        except BaseException as exc:
            scope.finish(err=exc)
            raise
        return scope

    async def _run_bound(self, scope: _CallScope, make: Callable[[], Awaitable[T]]) -> T:
        """Run ``make()`` in its own task so an abort cancels only this call."""
        if scope.handle is not None and scope.handle.aborted:
            raise self._aborted_error(scope)
        task = asyncio.ensure_future(make())
        if scope.handle is not None:
            scope.handle.bind(task)
        try:
            return await task
        except asyncio.CancelledError:
            if scope.handle is not None and scope.handle.aborted and not _caller_cancelled():
                raise self._aborted_error(scope) from None
            raise

    # --------------------------------------------------------------------- calls

    async def generate(self, ctx: Optional[CallContext], name: str, request: ChatRequest) -> ChatResult:
        """Single-shot completion through provider ``name``."""
        scope = await self._open(ctx, name, request, stream=False)
        p = scope.provider
        timeout = effective_timeout_s(scope.ctx, p.adapter.timeout_s)
        try:
            result = await self._run_bound(
                scope,
                lambda: _with_timeout(
                    p.adapter.generate(scope.ctx, request), timeout, provider=p.kind, model=request.model
                ),
            )
        except LLMError as err:
            err.with_origin(provider=p.kind, model=request.model)
            scope.finish(err=err)
            raise
        except asyncio.CancelledError:
            scope.finish(err=LLMError("call cancelled by caller", kind=ErrorKind.CANCELLED))
            raise
        except Exception as exc:
            logger.exception("adapter %s raised an untranslated error", p.name)
            scope.finish(err=exc)
            raise
        scope.finish(usage=result.usage)
        return result

    async def generate_stream(
        self, ctx: Optional[CallContext], name: str, request: ChatRequest
    ) -> "DispatchStream":
        """
        Open a stream through provider ``name``.

        Failures before the first event (admission, connection, upstream
        status) are raised here. Everything after that arrives in-band.
        """
        scope = await self._open(ctx, name, request, stream=True)
        p = scope.provider
        # Streams are bounded by the caller's deadline only.
        timeout = effective_timeout_s(scope.ctx, None)
        try:
            source = await self._run_bound(
                scope,
                lambda: _with_timeout(
                    p.adapter.generate_stream(scope.ctx, request), timeout, provider=p.kind, model=request.model
                ),
            )
        except LLMError as err:
            err.with_origin(provider=p.kind, model=request.model)
            scope.finish(err=err)
            raise
        except asyncio.CancelledError:
            scope.finish(err=LLMError("call cancelled by caller", kind=ErrorKind.CANCELLED))
            raise
        except Exception as exc:
            logger.exception("adapter %s raised an untranslated error", p.name)
            scope.finish(err=exc)
            raise
        logger.debug("stream opened on %s model=%s", p.name, request.model)
        return DispatchStream(scope, source)

    def abort(self, key: str) -> None:
        """Cancel the generation running under correlation ``key`` (``not_found`` if none)."""
        self._cancels.abort(key)

    def active_generations(self) -> List[str]:
        return self._cancels.active()

    # ----------------------------------------------------------------- utilities

    async def health_check_all(self, ctx: Optional[CallContext] = None) -> Dict[str, Optional[LLMError]]:
        """Probe every provider concurrently; maps name to ``None`` or the failure."""
        ctx = ctx or make_ctx()
        with self._lock:
            providers = list(self._providers.values())

        async def probe(p: _Provider) -> Optional[LLMError]:
            try:
                await _with_timeout(
                    p.adapter.health_check(ctx),
                    effective_timeout_s(ctx, p.adapter.timeout_s),
                    provider=p.kind,
                    model="",
                )
            except LLMError as err:
                logger.warning("health check failed for %s: %s", p.name, err)
                return err.with_origin(provider=p.kind)
            except Exception as exc:  # noqa: BLE001
                logger.warning("health check failed for %s", p.name, exc_info=True)
                return LLMError(
                    f"health check raised {type(exc).__name__}: {exc}",
                    kind=ErrorKind.API_CALL_FAILED,
                    provider=p.kind,
                )
            return None

        results = await asyncio.gather(*(probe(p) for p in providers))
        return {p.name: r for p, r in zip(providers, results)}

    async def list_models(self, ctx: Optional[CallContext], name: str) -> List[ModelInfo]:
        ctx = ctx or make_ctx()
        p = self._resolve(name)
        try:
            return await _with_timeout(
                p.adapter.list_models(ctx),
                effective_timeout_s(ctx, p.adapter.timeout_s),
                provider=p.kind,
                model="",
            )
        except LLMError as err:
            err.with_origin(provider=p.kind)
            raise

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self._collector.snapshot()

    def breaker_states(self) -> Dict[str, BreakerState]:
        with self._lock:
            providers = list(self._providers.values())
        return {p.name: p.breaker.state() for p in providers}

    @property
    def cost(self) -> CostCalculator:
        return self._cost

    @property
    def metrics(self) -> MetricsHub:
        return self._hub

    def start_janitor(self, interval_s: float = 300.0) -> None:
        """Evict idle limiter keys periodically. Needs a running event loop."""
        if self._janitor is None:
            self._janitor = LimiterJanitor(self._limiters, interval_s=interval_s)
        self._janitor.start()

    def _limiters(self) -> List[RateLimiter]:
        with self._lock:
            return [p.limiter for p in self._providers.values()]

    async def close(self) -> None:
        """Stop background work and close every registered adapter."""
        if self._janitor is not None:
            await self._janitor.stop()
        with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()
        results = await asyncio.gather(*(p.adapter.close() for p in providers), return_exceptions=True)
        for p, r in zip(providers, results):
            if isinstance(r, Exception):
                logger.warning("closing adapter %s failed: %s", p.name, r)

    # ------------------------------------------------------------------- metrics

    def _record(self, scope: _CallScope, *, usage: Optional[Usage], err: Optional[BaseException]) -> None:
        p = scope.provider
        # Streams keep the usage seen before a failure; unary failures report none.
        used = (usage or Usage()).normalized() if err is None or scope.stream else Usage()
        cost, currency = self._cost.calculate(p.kind, scope.model, used)
        kind: Optional[ErrorKind] = None
        message = ""
        if err is not None:
            if isinstance(err, LLMError):
                kind, message = err.kind, err.message
            elif isinstance(err, asyncio.CancelledError):
                kind, message = ErrorKind.CANCELLED, "call cancelled"
            else:
                kind, message = ErrorKind.API_CALL_FAILED, f"{type(err).__name__}: {err}"
        metric = CallMetric(
            correlation_id=scope.ctx.correlation_key or scope.ctx.request_id,
            provider=p.kind,
            provider_name=p.name,
            model=scope.model,
            start_time=scope.started_at,
            end_time=time.time(),
            duration_s=time.monotonic() - scope.t0,
            usage=used,
            success=err is None,
            error_kind=kind,
            error_message=message,
            cost=cost,
            currency=currency,
            stream=scope.stream,
        )
        self._hub.record_call(metric)


class DispatchStream:
    """
    Relay of one adapter stream.

    Events are forwarded unchanged and in order. The relay guarantees exactly
    one terminal event: if the adapter stops without one, a ``done`` event
    carrying the last usage seen is added. An abort, deadline expiry or
    adapter exception ends the stream with an ``error`` event.

    Closing early (``aclose()`` or leaving ``async with``) cancels the
    adapter stream and records the call as cancelled. A stream dropped
    without either is finalized the same way once it is garbage collected.
    """

    def __init__(self, scope: _CallScope, source: AsyncIterator[StreamEvent]) -> None:
        self._scope = scope
        self._source = source
        self._usage: Optional[Usage] = None
        self._finished = False
        self._loop = asyncio.get_running_loop()

    @property
    def correlation_key(self) -> Optional[str]:
        return self._scope.ctx.correlation_key

    def __aiter__(self) -> "DispatchStream":
        return self

    async def __aenter__(self) -> "DispatchStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._next_event()
        if event.usage is not None:
            self._usage = event.usage
        if event.is_terminal:
            await self._finish(event)
        return event

    async def aclose(self) -> None:
        if self._finished:
            return
        logger.debug("stream on %s closed early by consumer", self._scope.provider.name)
        await self._finish(StreamEvent.error(ErrorKind.CANCELLED, "stream closed by consumer"))

    def __del__(self) -> None:
        if self._finished:
            return
        self._finished = True
        # Runs at GC time; the bookkeeping itself goes back onto the loop.
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(_finalize_abandoned, self._scope, self._source, self._usage)

    async def _next_event(self) -> StreamEvent:
        scope = self._scope
        handle = scope.handle
        if handle is not None and handle.aborted:
            return StreamEvent.error(ErrorKind.CANCELLED, "generation aborted")

        nxt = asyncio.ensure_future(self._source.__anext__())
        waiters = {nxt}
        aborted = None
        if handle is not None:
            aborted = asyncio.ensure_future(handle.wait())
            waiters.add(aborted)
        rem = remaining_ms(scope.ctx)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=rem / 1000.0 if rem is not None else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            nxt.cancel()
            await asyncio.gather(nxt, return_exceptions=True)
            await self._finish(StreamEvent.error(ErrorKind.CANCELLED, "stream consumer cancelled"))
            raise
        finally:
            if aborted is not None:
                aborted.cancel()

        if nxt in done:
            try:
                return nxt.result()
            except StopAsyncIteration:
                return StreamEvent.done(usage=self._usage)
            except LLMError as err:
                return StreamEvent.from_exception(err)
            except Exception as exc:  # noqa: BLE001
                logger.warning("adapter stream on %s raised", scope.provider.name, exc_info=True)
                return StreamEvent.error(ErrorKind.API_CALL_FAILED, f"{type(exc).__name__}: {exc}")

        nxt.cancel()
        await asyncio.gather(nxt, return_exceptions=True)
        if handle is not None and handle.aborted:
            return StreamEvent.error(ErrorKind.CANCELLED, "generation aborted")
        return StreamEvent.error(ErrorKind.TIMEOUT, "stream exceeded the caller deadline")

    async def _finish(self, terminal: StreamEvent) -> None:
        if self._finished:
            return
        self._finished = True
        await _close_source(self._source)

        err: Optional[LLMError] = None
        if terminal.type is StreamEventType.ERROR:
            err = LLMError(
                terminal.error_message or "",
                kind=terminal.error_kind or ErrorKind.API_CALL_FAILED,
                provider=self._scope.provider.kind,
                model=self._scope.model,
            )
        self._scope.finish(usage=self._usage, err=err)
        logger.debug(
            "stream on %s finished: %s",
            self._scope.provider.name,
            terminal.error_kind.value if terminal.error_kind else "done",
        )


async def _close_source(source: AsyncIterator[StreamEvent]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001
        logger.debug("closing adapter stream failed", exc_info=True)


def _finalize_abandoned(scope: _CallScope, source: AsyncIterator[StreamEvent], usage: Optional[Usage]) -> None:
    logger.debug("stream on %s dropped without being closed", scope.provider.name)
    scope.finish(
        usage=usage,
        err=LLMError(
            "stream dropped by consumer",
            kind=ErrorKind.CANCELLED,
            provider=scope.provider.kind,
            model=scope.model,
        ),
    )
    asyncio.ensure_future(_close_source(source))
