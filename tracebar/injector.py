"""
HtmlInjector - places the rendered panel into the outgoing response.

HTML responses get a stylesheet ``<link>`` in the head and the panel
plus a ``<script>`` at the end of the body. JSON responses (and every
non-GET request) get the panel markup in a ``_debugger`` field instead.
The HTML surgery is plain string work and tolerates malformed documents.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from .request import Request
from .response import Response

logger = logging.getLogger("tracebar.injector")

_SCHEME_RE = re.compile(r"^https?:", re.IGNORECASE)
_HEAD_OPEN_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_BODY_OPEN_RE = re.compile(r"<body(?:\s[^>]*)?>", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head>", re.IGNORECASE)
_BODY_CLOSE_RE = re.compile(r"</body>", re.IGNORECASE)

EOL = "\n"


def _last_match(pattern: re.Pattern, content: str) -> Optional[int]:
    """Start offset of the last match of ``pattern`` in ``content``."""
    start = None
    for match in pattern.finditer(content):
        start = match.start()
    return start


def protocol_relative(url: str) -> str:
    """``https://cdn/x.css`` -> ``//cdn/x.css``"""
    return _SCHEME_RE.sub("", url)


class HtmlInjector:
    """
    Injects the trace panel into responses.

    Args:
        css_url: URL of trace.css
        js_url: URL of trace.js
    """

    def __init__(self, css_url: str, js_url: str):
        self.css_url = protocol_relative(css_url)
        self.js_url = protocol_relative(js_url)

    @property
    def style_tag(self) -> str:
        return (
            f"<link rel='stylesheet' type='text/css' property='stylesheet' href='{self.css_url}' "
            "data-turbolinks-eval='false' data-turbo-eval='false'>"
        )

    @property
    def script_tag(self) -> str:
        return (
            f"<script src='{self.js_url}' type='text/javascript' "
            "data-turbolinks-eval='false' data-turbo-eval='false'></script>"
        )

    def inject(
        self,
        request: Optional[Request],
        response: Response,
        markup: str,
        *,
        enabled: bool = True,
    ) -> Response:
        """
        Put ``markup`` into ``response`` (mutated in place and returned).

        Untouched when tracing is off, the panel is empty, the body is
        empty or the body is content-encoded.
        """
        if not enabled or request is None or not markup or not response.body:
            return response
        if response.is_encoded:
            return response

        if self.wants_side_channel(request, response):
            return self.inject_json(response, markup)

        if not response.is_html:
            return response

        response.body = self.inject_html(response.body_text, markup)
        response.unset_header("content-length")
        return response

    @staticmethod
    def wants_side_channel(request: Request, response: Response) -> bool:
        return request.method != "GET" or request.expects_json or response.is_json

    def inject_json(self, response: Response, markup: str) -> Response:
        """Add ``_debugger`` to a JSON object body; anything else is left alone."""
        try:
            data: Any = json.loads(response.body_text)
        except ValueError:
            logger.debug("Response body is not JSON; side channel skipped")
            return response
        if not isinstance(data, dict):
            return response

        data["_debugger"] = markup
        response.body = json.dumps(data, ensure_ascii=False)
        response.unset_header("content-length")
        return response

    def inject_html(self, content: str, markup: str) -> str:
        content = self._insert_style(content, self.style_tag)
        return self._insert_panel(content, markup + EOL + self.script_tag)

    @staticmethod
    def _insert_style(content: str, style: str) -> str:
        pos = _last_match(_HEAD_CLOSE_RE, content)
        if pos is not None:
            return content[:pos] + EOL + style + EOL + content[pos:]

        match = _HEAD_OPEN_RE.search(content)
        if match:
            end = match.end()
            return content[:end] + EOL + style + EOL + content[end:]

        return style + EOL + content

    @staticmethod
    def _insert_panel(content: str, panel: str) -> str:
        pos = _last_match(_BODY_CLOSE_RE, content)
        if pos is not None:
            return content[:pos] + EOL + panel + content[pos:]

        match = _BODY_OPEN_RE.search(content)
        if match:
            end = match.end()
            return content[:end] + EOL + panel + EOL + content[end:]

        return content + EOL + panel
