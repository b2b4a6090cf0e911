"""
TraceMiddleware - ASGI middleware that runs the toolbar around an app.

For each HTTP request it:
1. Answers ``<asset_prefix>/trace.css|js`` itself
2. Opens a TraceContext and publishes it to the task
3. Tees the request body so the Request tab can show it
4. Buffers text/html and JSON responses (everything else streams through)
5. Reports and renders unhandled exceptions
6. Injects the panel into the buffered response
7. Always terminates the trace (partition eviction)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .config import TraceConfig
from .request import Request
from .response import Response
from .tracer import Tracer

logger = logging.getLogger("tracebar.middleware")

BUFFERED_TYPES = ("text/html", "application/json", "text/json")


def _header(headers: List[tuple], name: bytes) -> str:
    for key, value in headers:
        if key.lower() == name:
            return value.decode("latin-1")
    return ""


def _should_buffer(headers: List[tuple]) -> bool:
    content_type = _header(headers, b"content-type").lower()
    encoding = _header(headers, b"content-encoding").strip().lower()
    if encoding not in ("", "identity"):
        return False
    return any(t in content_type for t in BUFFERED_TYPES)


def _template_name(template: Any) -> str:
    return getattr(template, "name", None) or str(template)


class TraceMiddleware:
    """
    ASGI middleware wrapping an application with the trace panel.

    Usage:
        app = TraceMiddleware(app, config=TraceConfig(debug=True))

    Args:
        app: ASGI application callable
        tracer: Pre-built Tracer (shares stores with other middleware instances)
        config: Configuration used when no tracer is given
    """

    def __init__(self, app: Callable, tracer: Optional[Tracer] = None, config: Optional[TraceConfig] = None):
        self.app = app
        self.tracer = tracer or Tracer(config)

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        tracer = self.tracer
        request = Request(scope, trust_proxy=False)

        asset = tracer.assets.match(request.path)
        if asset is not None:
            response = tracer.assets.respond(request, asset)
            await response.send_asgi(send)
            return

        ctx = tracer.begin(request)
        started = time.perf_counter()

        body_chunks: List[bytes] = []
        start_message: Dict[str, Any] = {}
        buffered: List[bytes] = []
        state = {"buffering": False, "started": False, "complete": False}

        async def tee_receive() -> dict:
            message = await receive()
            if message["type"] == "http.request":
                body_chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    request.cache_body(b"".join(body_chunks))
            return message

        async def capture_send(message: dict) -> None:
            kind = message["type"]

            if kind == "http.response.debug":
                template = (message.get("info") or {}).get("template")
                if template is not None:
                    ctx.views.append(_template_name(template))
                return

            if kind == "http.response.start":
                start_message.clear()
                start_message.update(message)
                state["buffering"] = ctx.enabled and _should_buffer(message.get("headers", []))
                if not state["buffering"]:
                    state["started"] = True
                    await send(message)
                return

            if kind == "http.response.body" and state["buffering"]:
                buffered.append(message.get("body", b""))
                if not message.get("more_body", False):
                    state["complete"] = True
                return

            await send(message)

        with ctx:
            try:
                try:
                    await self.app(scope, tee_receive, capture_send)
                    response: Optional[Response] = None
                    if state["buffering"]:
                        response = Response.from_asgi(start_message, b"".join(buffered))
                except Exception as exc:
                    if state["started"]:
                        # Headers are already on the wire; nothing left to render into
                        tracer.report(exc, ctx)
                        raise
                    response = tracer.handle_exception(exc, ctx)

                if response is not None:
                    if not request.cached_body and body_chunks:
                        request.cache_body(b"".join(body_chunks))
                    response = tracer.finalize(ctx, response)
                    await response.send_asgi(send)
                    status = response.status
                else:
                    status = start_message.get("status", 0)

                logger.debug(
                    f"{request.method} {request.path} -> {status} "
                    f"({(time.perf_counter() - started) * 1000:.2f}ms, trace={'on' if ctx.enabled else 'off'})"
                )
            finally:
                tracer.terminate(ctx)
