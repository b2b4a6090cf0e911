"""
Request - read-only view of an ASGI HTTP request for the trace panel.

Wraps the ASGI scope plus the body bytes the application received, so
the aggregator can describe the request synchronously after the
response is built.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from ._datastructures import Headers, MultiDict


JSON_MEDIA_TYPES = ("application/json", "application/x-json", "text/json")


class Request:
    """
    Request object used by the toolbar.

    ``receive`` is optional: the middleware feeds the body it observed
    through ``cache_body()`` instead of consuming the stream itself.
    """

    def __init__(
        self,
        scope: Mapping[str, Any],
        receive: Optional[Callable[..., Awaitable[dict]]] = None,
        *,
        trust_proxy: bool = False,
    ):
        self.scope = scope
        self._receive = receive
        self.trust_proxy = trust_proxy

        self._headers: Optional[Headers] = None
        self._query_params: Optional[MultiDict] = None
        self._body: Optional[bytes] = None

    # ========================================================================
    # Basic Properties
    # ========================================================================

    @property
    def method(self) -> str:
        """HTTP method (GET, POST, etc.)."""
        return self.scope.get("method", "GET").upper()

    @property
    def path(self) -> str:
        """Request path (decoded)."""
        return self.scope.get("path", "/")

    @property
    def query_string(self) -> str:
        raw = self.scope.get("query_string", b"")
        return raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw

    @property
    def scheme(self) -> str:
        return self.scope.get("scheme", "http")

    @property
    def host(self) -> str:
        """Host name without port."""
        host = self.header("host")
        if not host:
            server = self.scope.get("server")
            return server[0] if server else "localhost"
        if host.startswith("["):
            return host.split("]", 1)[0] + "]"
        return host.rsplit(":", 1)[0] if ":" in host else host

    @property
    def full_url(self) -> str:
        """Absolute URL including the query string."""
        host = self.header("host")
        if not host:
            server = self.scope.get("server")
            host = f"{server[0]}:{server[1]}" if server else "localhost"
        root = self.scope.get("root_path", "")
        url = f"{self.scheme}://{host}{root}{self.path}"
        if self.query_string:
            url += f"?{self.query_string}"
        return url

    @property
    def client_ip(self) -> str:
        """Client IP, honouring X-Forwarded-For when proxies are trusted."""
        if self.trust_proxy:
            forwarded_for = self.header("x-forwarded-for")
            if forwarded_for:
                return forwarded_for.split(",")[0].strip()
        client = self.scope.get("client")
        return client[0] if client else "0.0.0.0"

    @property
    def state(self) -> Dict[str, Any]:
        return self.scope.setdefault("state", {})

    # ========================================================================
    # Query Parameters & Headers
    # ========================================================================

    @property
    def query_params(self) -> MultiDict:
        if self._query_params is None:
            self._query_params = MultiDict(parse_qsl(self.query_string, keep_blank_values=True))
        return self._query_params

    @property
    def headers(self) -> Headers:
        if self._headers is None:
            self._headers = Headers(raw=list(self.scope.get("headers", [])))
        return self._headers

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get single header (case-insensitive)."""
        return self.headers.get(name, default)

    # ========================================================================
    # Content Negotiation
    # ========================================================================

    @property
    def content_type(self) -> Optional[str]:
        return self.header("content-type")

    @property
    def is_ajax(self) -> bool:
        return (self.header("x-requested-with") or "").lower() == "xmlhttprequest"

    @property
    def is_pjax(self) -> bool:
        return (self.header("x-pjax") or "").lower() == "true"

    @property
    def wants_json(self) -> bool:
        """First acceptable media type is JSON."""
        first = _first_accept(self.header("accept"))
        return "/json" in first or "+json" in first

    @property
    def accepts_any_content_type(self) -> bool:
        first = _first_accept(self.header("accept"))
        return first in ("", "*/*", "*")

    @property
    def expects_json(self) -> bool:
        """Client expects a JSON answer (AJAX with no preference, or asks for JSON)."""
        return (self.is_ajax and not self.is_pjax and self.accepts_any_content_type) or self.wants_json

    @property
    def format(self) -> str:
        return "json" if self.expects_json else "html"

    def is_json(self) -> bool:
        """Request body is JSON."""
        ct = (self.content_type or "").split(";", 1)[0].strip().lower()
        return ct in JSON_MEDIA_TYPES or ct.endswith("+json")

    # ========================================================================
    # Body
    # ========================================================================

    def cache_body(self, body: bytes) -> None:
        """Store body bytes observed elsewhere (the middleware's tee)."""
        self._body = body

    @property
    def cached_body(self) -> bytes:
        return self._body or b""

    async def body(self) -> bytes:
        """Read full request body (idempotent)."""
        if self._body is not None:
            return self._body
        chunks = []
        if self._receive is not None:
            while True:
                message = await self._receive()
                if message["type"] != "http.request":
                    break
                chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    break
        self._body = b"".join(chunks)
        return self._body

    def body_params(self) -> Any:
        """
        Decoded request body: JSON value, form fields, or ``{}``.

        Works on the cached body only; never touches the stream.
        """
        if not self._body:
            return {}
        try:
            if self.is_json():
                return json.loads(self._body)
            ct = (self.content_type or "").lower()
            if ct.startswith("application/x-www-form-urlencoded"):
                return MultiDict(parse_qsl(self._body.decode("utf-8"), keep_blank_values=True)).to_dict()
        except (ValueError, UnicodeDecodeError):
            return {}
        return {}

    # ========================================================================
    # Session
    # ========================================================================

    @property
    def session(self) -> Optional[Any]:
        """Session published by the host's session middleware, if any."""
        if "session" in self.scope:
            return self.scope["session"]
        return self.state.get("session")

    @property
    def session_id(self) -> Optional[str]:
        session = self.session
        if session is None:
            return None
        sid = getattr(session, "id", None)
        if sid is None and isinstance(session, Mapping):
            sid = session.get("_id") or session.get("session_id")
        return str(sid) if sid is not None else None

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.path}>"


def _first_accept(accept: Optional[str]) -> str:
    if not accept:
        return ""
    return accept.split(",", 1)[0].split(";", 1)[0].strip().lower()
