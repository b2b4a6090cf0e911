"""
Tracer - wires the collector, recorder, capture, aggregator, panel
renderer and injector together for one application.

Typical lifecycle per request (driven by ``TraceMiddleware``)::

    ctx = tracer.begin(request)
    with ctx:
        ...                                   # application runs
        response = tracer.handle_exception(exc, ctx)   # on failure
        response = tracer.finalize(ctx, response)
    tracer.terminate(ctx)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from .aggregator import TraceAggregator, TraceTabs
from .assets import AssetResponder
from .capture import ExceptionCapture
from .collector import EventCollector
from .config import TraceConfig, is_enable_trace
from .context import TraceContext
from .faults import HTTPAbort
from .identity import new_request_id
from .injector import HtmlInjector
from .panel import PanelRenderer
from .recorder import MessageRecorder
from .request import Request
from .response import Response
from .signals import SignalBus

logger = logging.getLogger("tracebar.tracer")


class Tracer:
    """
    Toolbar facade for one application.

    Args:
        config: Toolbar configuration (defaults to ``TraceConfig()``)
        signal_bus: Bus the collector listens on (process bus by default)
        reporter: The host's exception reporter
        sweep_interval: Seconds between stale-partition sweeps
    """

    def __init__(
        self,
        config: Optional[TraceConfig] = None,
        *,
        signal_bus: Optional[SignalBus] = None,
        reporter: Optional[Callable[[BaseException], Any]] = None,
        sweep_interval: float = 60.0,
    ):
        self.config = config or TraceConfig()
        self.collector = EventCollector(signal_bus, partition_ttl=self.config.partition_ttl)
        self.capture = ExceptionCapture(self.config, reporter=reporter)
        self.recorder = MessageRecorder()
        self.aggregator = TraceAggregator(self.config, self.collector, self.capture)
        self.panel = PanelRenderer(self.config.editor)
        self.assets = AssetResponder(self.config.asset_prefix)
        self.injector = HtmlInjector(self.assets.url("trace.css"), self.assets.url("trace.js"))

        self.sweep_interval = sweep_interval
        self._last_sweep = time.monotonic()

    # ========================================================================
    # Request lifecycle
    # ========================================================================

    def begin(self, request: Optional[Request]) -> TraceContext:
        """Open a trace context (and its partitions) for ``request``."""
        self.collector.register_listeners()
        request_id = new_request_id()
        enabled = is_enable_trace(self.config, request)
        ctx = TraceContext(request_id, request, self.config, enabled=enabled)
        if enabled:
            self.collector.open(request_id)
        return ctx

    def add_message(self, value: Any, kind: str = "debug", ctx: Optional[TraceContext] = None):
        return self.recorder.add_message(value, kind, ctx=ctx, stack_offset=2)

    def report(self, exc: BaseException, ctx: TraceContext) -> bool:
        return self.capture.report(exc, ctx)

    def render(self, exc: BaseException, ctx: TraceContext) -> Response:
        return self.capture.render(exc, ctx)

    def handle_exception(self, exc: BaseException, ctx: TraceContext) -> Response:
        """Report (unless it is an ``abort()``) and render ``exc``."""
        if not isinstance(exc, HTTPAbort):
            self.report(exc, ctx)
        return self.render(exc, ctx)

    def build(self, ctx: TraceContext, response: Response) -> TraceTabs:
        if not ctx.enabled:
            return {}
        return self.aggregator.build(ctx, response)

    def finalize(self, ctx: TraceContext, response: Response) -> Response:
        """
        Build the trace and inject it into ``response``.

        Any failure leaves the response as the application produced it.
        """
        ctx.response = response
        if not ctx.enabled:
            return response
        try:
            tabs = self.build(ctx, response)
            markup = self.panel.render(tabs)
            return self.injector.inject(ctx.request, response, markup, enabled=ctx.enabled)
        except Exception:
            logger.warning("Trace injection failed; response sent without panel", exc_info=True)
            return response

    def terminate(self, ctx: TraceContext) -> None:
        """Evict everything held for the request. Call exactly once per request."""
        self.capture.clear_request_exceptions(ctx.request_id)
        self.collector.close(ctx.request_id)

        now = time.monotonic()
        if now - self._last_sweep >= self.sweep_interval:
            self._last_sweep = now
            swept = self.collector.sweep() + self.capture.sweep()
            if swept:
                logger.debug(f"Swept {swept} stale trace partition(s)")

    def shutdown(self) -> None:
        self.collector.unregister_listeners()

    def __repr__(self) -> str:
        return f"<Tracer env={self.config.environment!r} enabled={self.config.enabled!r}>"
