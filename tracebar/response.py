"""
Response - a fully buffered HTTP response the toolbar can inspect and edit.

The middleware rebuilds one of these from the application's ASGI
messages (``http.response.start`` + body chunks), lets the injector
rewrite it, then replays it through ``send_asgi``.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union


class Response:
    """
    Buffered HTTP response.

    ``attached_error`` is the exception this response was rendered for
    (set by the error renderer, or by ``abort()`` shortcuts that never
    went through the report phase).
    """

    def __init__(
        self,
        content: Union[bytes, str] = b"",
        status: int = 200,
        headers: Optional[Mapping[str, Union[str, Sequence[str]]]] = None,
        media_type: Optional[str] = None,
        *,
        encoding: str = "utf-8",
        attached_error: Optional[BaseException] = None,
    ):
        self.status = status
        self.encoding = encoding
        self.attached_error = attached_error

        self._headers: Dict[str, Union[str, List[str]]] = {}
        if headers:
            for key, value in headers.items():
                if isinstance(value, (list, tuple)):
                    self._headers[key.lower()] = list(value)
                else:
                    self._headers[key.lower()] = value

        if media_type:
            self._headers["content-type"] = media_type

        self._body = content.encode(encoding) if isinstance(content, str) else bytes(content)

    # ========================================================================
    # Factory Methods
    # ========================================================================

    @classmethod
    def html(cls, content: str, status: int = 200, **kwargs) -> "Response":
        return cls(content, status, media_type="text/html; charset=utf-8", **kwargs)

    @classmethod
    def text(cls, content: str, status: int = 200, **kwargs) -> "Response":
        return cls(content, status, media_type="text/plain; charset=utf-8", **kwargs)

    @classmethod
    def json(cls, obj: Any, status: int = 200, **kwargs) -> "Response":
        content = json.dumps(obj, ensure_ascii=False, default=str)
        return cls(content, status, media_type="application/json; charset=utf-8", **kwargs)

    @classmethod
    def from_asgi(cls, start_message: Mapping[str, Any], body: bytes) -> "Response":
        """Rebuild from an ``http.response.start`` message and the body bytes."""
        response = cls(body, start_message.get("status", 200))
        for raw_name, raw_value in start_message.get("headers", []):
            response.add_header(raw_name.decode("latin-1"), raw_value.decode("latin-1"))
        return response

    # ========================================================================
    # Headers
    # ========================================================================

    @property
    def headers(self) -> Dict[str, Union[str, List[str]]]:
        return self._headers

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._headers.get(name.lower())
        if value is None:
            return default
        return value[0] if isinstance(value, list) else value

    def set_header(self, name: str, value: str) -> None:
        self._headers[name.lower()] = value

    def add_header(self, name: str, value: str) -> None:
        key = name.lower()
        existing = self._headers.get(key)
        if existing is None:
            self._headers[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            self._headers[key] = [existing, value]

    def unset_header(self, name: str) -> None:
        self._headers.pop(name.lower(), None)

    @property
    def content_type(self) -> str:
        return self.header("content-type", "") or ""

    @property
    def media_type(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()

    @property
    def is_html(self) -> bool:
        return "text/html" in self.content_type.lower()

    @property
    def is_json(self) -> bool:
        media = self.media_type
        return media in ("application/json", "text/json") or media.endswith("+json")

    @property
    def is_encoded(self) -> bool:
        """True when the body carries a content coding such as gzip or br."""
        encoding = (self.header("content-encoding") or "").strip().lower()
        return encoding not in ("", "identity")

    # ========================================================================
    # Body
    # ========================================================================

    @property
    def body(self) -> bytes:
        return self._body

    @body.setter
    def body(self, value: Union[bytes, str]) -> None:
        self._body = value.encode(self.charset) if isinstance(value, str) else bytes(value)

    @property
    def charset(self) -> str:
        for part in self.content_type.split(";")[1:]:
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                return value.strip('"')
        return self.encoding

    @property
    def body_text(self) -> str:
        return self._body.decode(self.charset, errors="replace")

    # ========================================================================
    # ASGI
    # ========================================================================

    def _prepare_headers(self) -> List[tuple]:
        """Headers as ASGI byte pairs, content-length recomputed from the body."""
        headers_list = []
        for name, value in self._headers.items():
            if name == "content-length":
                continue
            name_bytes = name.encode("latin1")
            if isinstance(value, list):
                for v in value:
                    headers_list.append((name_bytes, v.encode("latin1")))
            else:
                headers_list.append((name_bytes, value.encode("latin1")))
        if self.status >= 200 and self.status not in (204, 304):
            headers_list.append((b"content-length", str(len(self._body)).encode("latin1")))
        return headers_list

    async def send_asgi(self, send: Callable[[dict], Awaitable[None]]) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status,
            "headers": self._prepare_headers(),
        })
        await send({
            "type": "http.response.body",
            "body": self._body if self.status not in (204, 304) else b"",
            "more_body": False,
        })

    def __repr__(self) -> str:
        return f"<Response {self.status} {self.media_type or '-'} {len(self._body)}B>"
