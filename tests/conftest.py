"""
Shared test fixtures and helpers for the Tracebar test suite.
"""

import pytest
from typing import Any, Dict, List, Optional

from tracebar.config import TraceConfig
from tracebar.context import TraceContext
from tracebar.request import Request
from tracebar.signals import SignalBus


# ============================================================================
# Request Helpers
# ============================================================================


def make_scope(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    scheme: str = "http",
    client: Optional[tuple] = None,
) -> dict:
    """Build a minimal ASGI HTTP scope."""
    raw_headers = []
    if headers:
        for name, value in headers:
            raw_headers.append(
                (name.encode("latin-1") if isinstance(name, str) else name,
                 value.encode("latin-1") if isinstance(value, str) else value)
            )
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": query_string.encode("utf-8") if isinstance(query_string, str) else query_string,
        "headers": raw_headers,
        "scheme": scheme,
        "server": ("127.0.0.1", 8000),
        "client": client or ("127.0.0.1", 12345),
        "root_path": "",
    }


def make_receive(body: bytes = b"", *, chunks: Optional[List[bytes]] = None):
    """Create an ASGI receive callable from body bytes or chunked list."""
    if chunks:
        messages = []
        for i, chunk in enumerate(chunks):
            messages.append({
                "type": "http.request",
                "body": chunk,
                "more_body": i < len(chunks) - 1,
            })
    else:
        messages = [{"type": "http.request", "body": body, "more_body": False}]

    idx = 0

    async def receive():
        nonlocal idx
        if idx < len(messages):
            msg = messages[idx]
            idx += 1
            return msg
        return {"type": "http.disconnect"}

    return receive


def make_request(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    body: bytes = b"",
    scheme: str = "http",
    client: Optional[tuple] = None,
    **kwargs,
) -> Request:
    """Build a Request with its body already cached."""
    scope = make_scope(
        method=method,
        path=path,
        query_string=query_string,
        headers=headers,
        scheme=scheme,
        client=client,
    )
    request = Request(scope, make_receive(body), **kwargs)
    if body:
        request.cache_body(body)
    return request


def make_ctx(
    request: Optional[Request] = None,
    config: Optional[TraceConfig] = None,
    request_id: str = "req-1",
    **kwargs,
) -> TraceContext:
    """Build a TraceContext around a request."""
    return TraceContext(
        request_id,
        request or make_request(),
        config or TraceConfig(),
        **kwargs,
    )


class ResponseCapture:
    """ASGI ``send`` that records every message."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    @property
    def start(self) -> Dict[str, Any]:
        return next(m for m in self.messages if m["type"] == "http.response.start")

    @property
    def status(self) -> int:
        return self.start["status"]

    @property
    def headers(self) -> Dict[str, str]:
        return {k.decode("latin-1"): v.decode("latin-1") for k, v in self.start.get("headers", [])}

    @property
    def body(self) -> bytes:
        return b"".join(
            m.get("body", b"") for m in self.messages if m["type"] == "http.response.body"
        )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def signal_bus():
    """Isolated signal bus (never the process-wide one)."""
    bus = SignalBus()
    yield bus
    bus.clear()


@pytest.fixture
def config():
    return TraceConfig(debug=True)
