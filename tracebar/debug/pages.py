"""
Tracebar Debug Pages - standalone HTML error pages.

render_debug_page() is the verbose page shown for unhandled exceptions
when debug mode is on: exception summary, every traceback frame with
surrounding source and locals, and the request that triggered it.

render_error_page() is the production-safe page: status and title only.

Self-contained: all styles are inlined, every dynamic value is escaped.
"""

from __future__ import annotations

import datetime
import html
import linecache
import re
import traceback
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote


_BASE_CSS = r"""
:root {
  --tb-bg: #16181d;
  --tb-card: #1f232b;
  --tb-border: #2d333d;
  --tb-text: #e4e7eb;
  --tb-muted: #8b949e;
  --tb-accent: #4ea1ff;
  --tb-error: #f85149;
  --tb-warning: #d29922;
  --tb-green: #3fb950;
}
*, *::before, *::after { box-sizing: border-box; margin: 0; padding: 0; }
body {
  font-family: 'SF Mono', 'Fira Code', 'JetBrains Mono', 'Consolas', monospace;
  background: var(--tb-bg);
  color: var(--tb-text);
  line-height: 1.6;
}
a { color: var(--tb-accent); text-decoration: none; }
a:hover { text-decoration: underline; }
.tb-container { max-width: 1200px; margin: 0 auto; padding: 32px 24px 48px; }
.tb-header { border-bottom: 2px solid var(--tb-error); padding-bottom: 20px; margin-bottom: 28px; }
.tb-exc-type { color: var(--tb-error); font-size: 14px; font-weight: 700; letter-spacing: .5px; }
.tb-exc-msg { font-size: 22px; margin: 8px 0; word-break: break-word; }
.tb-exc-loc { color: var(--tb-muted); font-size: 13px; }
.tb-card { background: var(--tb-card); border: 1px solid var(--tb-border); border-radius: 8px; margin-bottom: 16px; overflow: hidden; }
.tb-card-title { padding: 10px 16px; font-size: 13px; border-bottom: 1px solid var(--tb-border); display: flex; justify-content: space-between; }
.tb-card-title .tb-func { color: var(--tb-accent); }
.tb-frame.vendor .tb-card-title { opacity: .6; }
.tb-code-block { font-size: 13px; overflow-x: auto; }
.tb-code-line { display: flex; white-space: pre; }
.tb-code-line.error-line { background: rgba(248,81,73,.15); border-left: 3px solid var(--tb-error); }
.tb-line-no { color: var(--tb-muted); min-width: 56px; text-align: right; padding-right: 14px; user-select: none; }
.tb-locals { padding: 8px 16px; font-size: 12px; max-height: 260px; overflow-y: auto; border-top: 1px solid var(--tb-border); }
.tb-locals-key { color: var(--tb-green); margin-right: 8px; }
.tb-locals-val { color: var(--tb-muted); word-break: break-all; }
.tb-table { width: 100%; border-collapse: collapse; font-size: 13px; }
.tb-table th { text-align: left; padding: 6px 16px; color: var(--tb-accent); width: 220px; vertical-align: top; }
.tb-table td { padding: 6px 16px; border-top: 1px solid var(--tb-border); word-break: break-all; }
.tb-muted { color: var(--tb-muted); }
.tb-kw { color: var(--tb-accent); }
.tb-str { color: var(--tb-warning); }
.tb-cmt { color: var(--tb-muted); }
.tb-error-page { min-height: 100vh; display: flex; flex-direction: column; justify-content: center; align-items: center; text-align: center; padding: 24px; }
.tb-status { font-size: 96px; font-weight: 800; color: var(--tb-error); line-height: 1; }
.tb-status.client { color: var(--tb-warning); }
.tb-title { font-size: 24px; margin: 12px 0 8px; }
.tb-detail { color: var(--tb-muted); max-width: 560px; }
"""


_HTTP_STATUS_INFO = {
    400: ("Bad Request", "The server cannot process this request due to malformed syntax or invalid parameters."),
    401: ("Unauthorized", "Authentication is required to access this resource."),
    403: ("Forbidden", "You don't have permission to access this resource."),
    404: ("Not Found", "The requested resource could not be found on this server."),
    405: ("Method Not Allowed", "The HTTP method used is not supported for this endpoint."),
    410: ("Gone", "The requested resource is no longer available."),
    419: ("Page Expired", "The page has expired. Refresh and try again."),
    422: ("Unprocessable Entity", "The request was well-formed but contains semantic errors."),
    429: ("Too Many Requests", "You have exceeded the rate limit. Please try again later."),
    500: ("Internal Server Error", "An unexpected error occurred on the server."),
    502: ("Bad Gateway", "The server received an invalid response from an upstream server."),
    503: ("Service Unavailable", "The server is temporarily unable to handle the request."),
    504: ("Gateway Timeout", "The upstream server failed to respond in time."),
}

_KEYWORDS = re.compile(
    r'\b(def|class|import|from|return|if|elif|else|for|while|try|except|'
    r'finally|with|as|raise|yield|async|await|pass|break|continue|'
    r'and|or|not|in|is|lambda|None|True|False|self)\b'
)
_STRINGS = re.compile(r'(&quot;.*?&quot;|&#x27;.*?&#x27;)')
_COMMENT = re.compile(r'(#.*)$')


def _esc(text: Any) -> str:
    """HTML-escape a value."""
    return html.escape(str(text), quote=True)


def status_info(status_code: int) -> Tuple[str, str]:
    """(title, description) for an HTTP status."""
    return _HTTP_STATUS_INFO.get(status_code, ("Error", "An error occurred."))


def editor_link(editor: str, filename: str, line: int, label: Optional[str] = None) -> str:
    """``<editor>://open?file=...&line=...`` anchor for a source location."""
    href = f"{editor}://open?file={quote(filename, safe='')}&amp;line={line}"
    return f'<a href="{href}" class="trace-editor-link">{_esc(label or f"{filename}#{line}")}</a>'


def format_exception_text(exc: BaseException) -> str:
    """Full formatted traceback of ``exc`` (plain text)."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def read_source_lines(filename: str, lineno: int, context: int = 7) -> List[Tuple[int, str, bool]]:
    """Source lines around ``lineno`` as (number, text, is_error_line)."""
    lines: List[Tuple[int, str, bool]] = []
    for i in range(max(1, lineno - context), lineno + context + 1):
        line = linecache.getline(filename, i)
        if line:
            lines.append((i, line.rstrip("\n"), i == lineno))
    return lines


def _highlight(code: str) -> str:
    escaped = _esc(code)
    escaped = _KEYWORDS.sub(r'<span class="tb-kw">\1</span>', escaped)
    escaped = _STRINGS.sub(r'<span class="tb-str">\1</span>', escaped)
    return _COMMENT.sub(r'<span class="tb-cmt">\1</span>', escaped)


def _format_code_block(lines: List[Tuple[int, str, bool]]) -> str:
    if not lines:
        return '<div class="tb-code-block"><div class="tb-code-line tb-muted">  (source not available)</div></div>'

    parts = ['<div class="tb-code-block">']
    for lineno, code, is_error in lines:
        cls = "tb-code-line error-line" if is_error else "tb-code-line"
        parts.append(
            f'<div class="{cls}"><span class="tb-line-no">{lineno}</span>'
            f'<span>{_highlight(code)}</span></div>'
        )
    parts.append("</div>")
    return "\n".join(parts)


def _format_locals(frame_locals: Dict[str, Any]) -> str:
    if not frame_locals:
        return ""

    parts = ['<div class="tb-locals">']
    for key, value in sorted(frame_locals.items()):
        try:
            val_repr = repr(value)
        except Exception:
            val_repr = "<unrepresentable>"
        if len(val_repr) > 300:
            val_repr = val_repr[:300] + "…"
        parts.append(
            f'<div><span class="tb-locals-key">{_esc(key)}</span>'
            f'<span class="tb-locals-val">= {_esc(val_repr)}</span></div>'
        )
    parts.append("</div>")
    return "\n".join(parts)


def extract_frames(exc: BaseException, base_path: str = "") -> List[Dict[str, Any]]:
    """Traceback frames of ``exc``, outermost first, with source and locals."""
    frames: List[Dict[str, Any]] = []

    tb = exc.__traceback__
    while tb is not None:
        frame = tb.tb_frame
        filename = frame.f_code.co_filename
        short = filename
        if base_path and filename.startswith(base_path.rstrip("/") + "/"):
            short = filename[len(base_path.rstrip("/")) + 1:]

        frames.append({
            "filename": filename,
            "short_filename": short,
            "lineno": tb.tb_lineno,
            "func_name": frame.f_code.co_name,
            "source_lines": read_source_lines(filename, tb.tb_lineno),
            "locals": {
                k: v for k, v in frame.f_locals.items()
                if not (k.startswith("__") and k.endswith("__"))
            },
            "is_app_code": not ("site-packages" in filename or "lib/python" in filename),
        })
        tb = tb.tb_next

    # A SyntaxError points at the offending file, not at a frame
    if isinstance(exc, SyntaxError) and exc.filename and exc.lineno:
        frames.append({
            "filename": exc.filename,
            "short_filename": exc.filename,
            "lineno": exc.lineno,
            "func_name": "<module>",
            "source_lines": read_source_lines(exc.filename, exc.lineno),
            "locals": {},
            "is_app_code": True,
        })

    return frames


def _request_rows(request: Any) -> List[Tuple[str, str]]:
    if request is None:
        return []

    rows = [
        ("Method", getattr(request, "method", "")),
        ("URL", getattr(request, "full_url", "") or getattr(request, "path", "")),
        ("Client", getattr(request, "client_ip", "")),
    ]
    headers = getattr(request, "headers", None)
    if headers is not None and hasattr(headers, "items"):
        for name, value in headers.items():
            if name.lower() in ("cookie", "authorization"):
                value = "********"
            rows.append((f"Header: {name}", value))
    return rows


def render_debug_page(
    exc: BaseException,
    request: Any = None,
    *,
    editor: str = "vscode",
    base_path: str = "",
    version: str = "",
) -> str:
    """Render the verbose debug page for ``exc``."""
    frames = extract_frames(exc, base_path)
    exc_type = type(exc).__qualname__
    message = str(exc) or exc_type

    location = ""
    if frames:
        last = frames[-1]
        location = editor_link(editor, last["filename"], last["lineno"], f'{last["short_filename"]}#{last["lineno"]}')

    frame_html = []
    for frame in reversed(frames):
        cls = "tb-card tb-frame" if frame["is_app_code"] else "tb-card tb-frame vendor"
        link = editor_link(editor, frame["filename"], frame["lineno"], f'{frame["short_filename"]}:{frame["lineno"]}')
        frame_html.append(
            f'<div class="{cls}">'
            f'<div class="tb-card-title"><span class="tb-func">{_esc(frame["func_name"])}</span>{link}</div>'
            f'{_format_code_block(frame["source_lines"])}'
            f'{_format_locals(frame["locals"]) if frame["is_app_code"] else ""}'
            f"</div>"
        )

    request_html = ""
    rows = _request_rows(request)
    if rows:
        body = "".join(f"<tr><th>{_esc(k)}</th><td>{_esc(v)}</td></tr>" for k, v in rows)
        request_html = (
            '<div class="tb-card"><div class="tb-card-title">Request</div>'
            f'<table class="tb-table">{body}</table></div>'
        )

    version_display = f" v{_esc(version)}" if version else ""
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{_esc(exc_type)}: {_esc(message[:120])}</title>
  <style>{_BASE_CSS}</style>
</head>
<body>
  <div class="tb-container">
    <div class="tb-header">
      <div class="tb-exc-type">{_esc(exc_type)}</div>
      <div class="tb-exc-msg">{_esc(message)}</div>
      <div class="tb-exc-loc">{location} <span class="tb-muted">· {now} · tracebar{version_display}</span></div>
    </div>
    {''.join(frame_html) or '<div class="tb-card"><div class="tb-card-title tb-muted">No traceback available</div></div>'}
    {request_html}
  </div>
</body>
</html>"""


def render_error_page(
    status_code: int,
    message: str = "",
    detail: str = "",
    request: Any = None,
) -> str:
    """Production-safe HTTP error page: no exception details."""
    title, description = status_info(status_code)
    title = message or title
    description = detail or description
    status_cls = "tb-status client" if 400 <= status_code < 500 else "tb-status"

    meta = ""
    if request is not None:
        meta = (
            f'<div class="tb-muted" style="margin-top:16px;font-size:13px;">'
            f'{_esc(getattr(request, "method", ""))} {_esc(getattr(request, "path", ""))}</div>'
        )

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{status_code} {_esc(title)}</title>
  <style>{_BASE_CSS}</style>
</head>
<body>
  <div class="tb-error-page">
    <div class="{status_cls}">{status_code}</div>
    <div class="tb-title">{_esc(title)}</div>
    <div class="tb-detail">{_esc(description)}</div>
    {meta}
  </div>
</body>
</html>"""
