"""
TraceContext - everything the toolbar knows about one in-flight request.

A context is created when the request scope opens and is threaded
explicitly through the collector, recorder, capture and aggregator.
The ContextVar below only exists for code that cannot be handed the
context (``trace()`` calls inside application code).
"""

from __future__ import annotations

import enum
import time
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import psutil

from .config import TraceConfig
from .identity import bind_request_id, reset_request_id
from .request import Request
from .response import Response

_current: ContextVar[Optional["TraceContext"]] = ContextVar("tracebar_context", default=None)


class CaptureState(str, enum.Enum):
    """Exception capture lifecycle for one request."""
    IDLE = "idle"
    CAPTURED = "captured"
    REPORTED = "reported"
    RENDERED = "rendered"


def memory_usage() -> int:
    """Current resident set size of this process, in bytes."""
    return psutil.Process().memory_info().rss


@dataclass
class RouteInfo:
    """
    Route metadata published by the host router.

    Read from the ASGI scope (``scope["route"]``, ``scope["endpoint"]``,
    ``scope["path_params"]``) or set explicitly by the host.
    """

    path: str = ""
    methods: List[str] = field(default_factory=list)
    name: str = ""
    endpoint: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    middleware: List[str] = field(default_factory=list)

    @classmethod
    def from_scope(cls, scope: Dict[str, Any]) -> Optional["RouteInfo"]:
        explicit = scope.get("tracebar.route")
        if isinstance(explicit, RouteInfo):
            return explicit

        route = scope.get("route")
        endpoint = scope.get("endpoint")
        if route is None and endpoint is None:
            return None

        methods = sorted(getattr(route, "methods", None) or [])
        return cls(
            path=getattr(route, "path", "") or getattr(route, "path_format", "") or "",
            methods=list(methods),
            name=getattr(route, "name", "") or "",
            endpoint=endpoint or getattr(route, "endpoint", None),
            params=dict(scope.get("path_params") or {}),
            middleware=[_middleware_name(m) for m in scope.get("tracebar.middleware", [])],
        )


def _middleware_name(item: Any) -> str:
    if isinstance(item, str):
        return item
    cls = getattr(item, "cls", None) or item
    return getattr(cls, "__name__", None) or type(cls).__name__


@dataclass
class TraceContext:
    """Per-request trace state."""

    request_id: str
    request: Request
    config: TraceConfig
    enabled: bool = True
    started_at: float = field(default_factory=time.perf_counter)
    start_memory: int = field(default_factory=memory_usage)

    # ExceptionCapture state
    state: CaptureState = CaptureState.IDLE
    exception: Optional[BaseException] = None
    rendering: bool = False

    messages: List[Dict[str, Any]] = field(default_factory=list)
    views: List[str] = field(default_factory=list)
    route: Optional[RouteInfo] = None
    response: Optional[Response] = None

    _tokens: List[Token] = field(default_factory=list, repr=False)

    def elapsed(self) -> float:
        """Seconds since the context was created."""
        return time.perf_counter() - self.started_at

    def activate(self) -> "TraceContext":
        """Publish this context (and its identity) to the current task."""
        self._tokens.append(bind_request_id(self.request_id))
        self._tokens.append(_current.set(self))
        return self

    def deactivate(self) -> None:
        if len(self._tokens) < 2:
            return
        ctx_token = self._tokens.pop()
        id_token = self._tokens.pop()
        _current.reset(ctx_token)
        reset_request_id(id_token)

    def __enter__(self) -> "TraceContext":
        return self.activate()

    def __exit__(self, *exc_info) -> None:
        self.deactivate()


def current_context() -> Optional[TraceContext]:
    return _current.get()
