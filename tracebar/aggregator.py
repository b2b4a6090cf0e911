"""
TraceAggregator - builds the tabbed trace for one finished request.

Pulls together the collector's partitions, the recorder's messages, the
captured exception and runtime/environment metrics into an ordered
``{tab title: {label: value}}`` mapping. Reading the model partition
evicts it.
"""

from __future__ import annotations

import inspect
import ipaddress
import logging
import platform
import shutil
from collections.abc import Mapping
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from markupsafe import Markup, escape

from . import __version__
from .capture import ExceptionCapture, exception_code, exception_location
from .collector import EventCollector
from .config import TraceConfig
from .context import RouteInfo, TraceContext, memory_usage
from .debug import editor_link, format_exception_text
from .recorder import relative_path
from .response import Response

logger = logging.getLogger("tracebar.aggregator")


TraceTabs = Dict[str, Dict[Any, Any]]

TABS: Tuple[Tuple[str, str], ...] = (
    ("messages", "Messages"),
    ("base", "Base"),
    ("route", "Route"),
    ("view", "View"),
    ("models", "Models"),
    ("sql", "SQL"),
    ("exception", "Exception"),
    ("session", "Session"),
    ("request", "Request"),
)

COUNTED_TABS = ("messages", "sql", "models")

EMPTY_HINTS = {
    "messages": ("No debug messages", "call trace(*values) to dump values here"),
    "sql": ("No SQL queries", ""),
    "view": ("No views rendered", ""),
    "exception": ("No exception", ""),
}

OS_NAMES = {
    "DARWIN": "macOS",
    "LINUX": "Linux",
    "WINDOWS": "Windows",
    "WINDOWS NT": "Windows",
}


# ============================================================================
# Formatting helpers
# ============================================================================

def truncate_decimal(value: Any, places: int = 3) -> Decimal:
    """Cut ``value`` to ``places`` decimals (no rounding)."""
    quantum = Decimal(1).scaleb(-places)
    return Decimal(str(value)).quantize(quantum, rounding=ROUND_DOWN)


def _plain(value: Decimal) -> str:
    """Decimal without trailing zeros or exponent."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def size_format(size: int, dec: int = 2, binary: bool = False) -> str:
    """
    Human readable byte size: ``1.5KB`` (or ``1.46KiB`` when binary).

    Raises ValueError for negative sizes.
    """
    if size < 0:
        raise ValueError("size must not be negative")
    if size == 0:
        return "0B"

    base = 1024 if binary else 1000
    units = (
        ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB"]
        if binary
        else ["B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB"]
    )

    pos = 0
    formatted = float(size)
    while formatted >= base and pos < len(units) - 1:
        formatted /= base
        pos += 1

    return f"{_plain(Decimal(str(round(formatted, dec))))}{units[pos]}"


def format_param(value: Any) -> str:
    """Display form of a scalar: '' -> "''", None -> NULL, bools upper-case."""
    if value == "" and isinstance(value, str):
        return "''"
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def mask_ip(host: Optional[str]) -> Optional[str]:
    """Keep only the first and last octet of a public IPv4 address."""
    if not host or len(host) < 5 or host in ("localhost", "127.0.0.1"):
        return host
    try:
        ipaddress.IPv4Address(host)
    except ValueError:
        return host
    parts = host.split(".")
    return f"{parts[0]}.***.***.{parts[3]}"


def mask_username(username: str) -> str:
    return f"{username[:2]}***{username[-2:]}"


def sum_query_time(entries: List[Dict[str, Any]]) -> Decimal:
    """
    Total query time in seconds.

    Durations are summed in milliseconds first (3-decimal truncation
    after each addition), then converted once.
    """
    total = Decimal(0)
    for entry in entries:
        if entry.get("time") is None:
            continue
        try:
            total = truncate_decimal(total + Decimal(str(entry["time"])), 3)
        except InvalidOperation:
            continue
    if total <= 0:
        return Decimal(0)
    return truncate_decimal(total / 1000, 3)


def route_param(value: Any) -> Any:
    """Route-bound objects as ``Type:[keyName:key]``, everything else as is."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    get_key = getattr(value, "get_route_key", None)
    if callable(get_key):
        key_name = getattr(value, "get_route_key_name", lambda: "id")()
        return f"{type(value).__name__}:[{key_name}:{get_key()}]"
    if isinstance(value, (Mapping, list, tuple)):
        return value
    if hasattr(value, "__dict__"):
        return {k: v for k, v in vars(value).items() if not k.startswith("_")}
    return str(value)


# ============================================================================
# Aggregator
# ============================================================================

class TraceAggregator:
    """
    Builds TraceTabs for a request.

    Args:
        config: Toolbar configuration
        collector: Process-wide event collector
        capture: Process-wide exception capture
    """

    def __init__(self, config: TraceConfig, collector: EventCollector, capture: ExceptionCapture):
        self.config = config
        self.collector = collector
        self.capture = capture

    def build(self, ctx: TraceContext, response: Response) -> TraceTabs:
        """
        Assemble the tabs for ``ctx``; ``{}`` when the end hook fails.

        A section that fails to build is shown as empty; the other tabs
        are unaffected.
        """
        exception, has_syntax_error = self._section(
            "exception", self.exception_info, ({}, False), ctx, response
        )
        sql, query_time = self._section("sql", self.sql_info, ([], Decimal(0)), ctx)

        sections = {
            "messages": dict(enumerate(ctx.messages)),
            "base": self._section("base", self.base_info, {}, ctx, query_time),
            "route": self._section("route", self.route_info, {}, ctx, has_syntax_error),
            "view": dict(enumerate(self._section("view", self.view_info, [], ctx))),
            "models": dict(enumerate(self._section("models", self.collector.model_counts, [], ctx.request_id))),
            "sql": dict(enumerate(sql)),
            "exception": exception,
            "session": self.session_info(ctx),
            "request": self._section("request", self.request_info, {}, ctx, response),
        }

        tabs: TraceTabs = {}
        for name, title in TABS:
            content = sections[name]
            suffix = ""
            if content and name in COUNTED_TABS:
                suffix = f" ({len(content)})"
            elif content and name == "exception":
                suffix = " 🔴"
            tabs[title + suffix] = content if content else self.empty_hint(name)

        if self.config.end_hook is not None:
            try:
                self.config.end_hook(tabs)
            except Exception:
                logger.warning("Trace end hook failed; trace omitted", exc_info=True)
                return {}

        return tabs

    @staticmethod
    def _section(name: str, builder: Callable[..., Any], default: Any, *args: Any) -> Any:
        try:
            return builder(*args)
        except Exception:
            logger.debug("Trace section %r failed; shown as empty", name, exc_info=True)
            return default

    @staticmethod
    def empty_hint(name: str) -> Dict[int, Any]:
        message, tip = EMPTY_HINTS.get(name, ("No content", ""))
        if tip:
            return {0: Markup('{} <span class="trace-hint">Hint: {}</span>').format(message, tip)}
        return {0: message}

    # ========================================================================
    # Sections
    # ========================================================================

    def exception_info(self, ctx: TraceContext, response: Response) -> Tuple[Dict[str, Any], bool]:
        exc = ctx.exception or response.attached_error
        editor = self.config.editor

        if exc is not None:
            file, line = exception_location(exc)
            shown = relative_path(file, self.config.base_path)
            return {
                "message": str(exc),
                "line": line,
                "exception": self._pre(format_exception_text(exc)),
                "file": Markup('<span class="json-label">{}</span>').format(
                    Markup(editor_link(editor, file, line, f"{shown}#{line}"))
                ),
                "code": exception_code(exc),
            }, isinstance(exc, SyntaxError)

        cached = self.capture.last_resort(ctx.request_id)
        if cached:
            shown = relative_path(cached["file"], self.config.base_path)
            return {
                "message": cached["message"],
                "line": cached["line"],
                "exception": self._pre(cached["trace"]),
                "file": Markup('<span class="json-label">{}</span>').format(
                    Markup(editor_link(editor, cached["file"], cached["line"], f"{shown}#{cached['line']}"))
                ),
                "code": cached["code"],
            }, False

        return {}, False

    @staticmethod
    def _pre(text: str) -> Markup:
        return Markup('<pre class="show trace-exception"><code>{}</code></pre>').format(text)

    def sql_info(self, ctx: TraceContext) -> Tuple[List[Dict[str, str]], Decimal]:
        entries = self.collector.queries_for(ctx.request_id)
        query_time = sum_query_time(entries)
        rows = [
            {
                "label": entry["sql"],
                "right": f"{format_param(entry['time'])}ms" if entry.get("time") else "-",
            }
            for entry in entries
        ]
        return rows, query_time

    def base_info(self, ctx: TraceContext, query_time: Decimal) -> Dict[str, Any]:
        request = ctx.request
        runtime = truncate_decimal(ctx.elapsed(), 3)
        throughput = f"{1 / float(runtime):,.2f}" if runtime > 0 else "∞"

        base: Dict[str, Any] = {
            "Request": f"{request.method} {request.full_url}",
            "Runtime": f"{_plain(runtime)}s",
            "Throughput": f"{throughput} req/s",
            "Memory": size_format(max(0, memory_usage() - ctx.start_memory)),
            "Query Time": f"{_plain(query_time)}s",
        }

        try:
            if request.session is not None:
                base["Session"] = f"SESSION_ID={request.session_id or ''}"
        except Exception:
            base["Session"] = "SESSION_ID="

        base["Python Version"] = platform.python_version()
        base["Application"] = f"{self.config.app_name} {self.config.app_version}".strip()
        base["Tracebar Version"] = __version__
        base["Environment"] = self.config.environment
        base["Locale"] = self.config.locale

        db = self.config.database or {}
        if db:
            username = str(db.get("username") or "-")
            base["DB Driver"] = f"{db.get('driver') or '-'}({mask_ip(str(db.get('host') or '-'))}) {db.get('charset') or '-'}"
            base["DB Connect"] = f"{db.get('database') or '-'}({mask_username(username)})"
        else:
            base["DB Driver"] = "-"
            base["DB Connect"] = "-"

        system = platform.system()
        base["OS"] = f"{OS_NAMES.get(system.upper(), system)} v{platform.release()} {platform.machine()}"

        if system.upper() != "WINDOWS":
            disk = self.disk_usage("/")
            if disk:
                base["Disk Space"] = disk

        return base

    @staticmethod
    def disk_usage(path: str) -> Optional[str]:
        try:
            usage = shutil.disk_usage(path)
        except OSError:
            return None
        if not usage.total or not usage.free:
            return None
        used = usage.total - usage.free
        rate = truncate_decimal(truncate_decimal(Decimal(used) / Decimal(usage.total), 5) * 100, 2)
        return (
            f"total:{size_format(usage.total)}; used:{size_format(used)}; "
            f"free:{size_format(usage.free)}; usage:{rate}%"
        )

    def route_info(self, ctx: TraceContext, has_syntax_error: bool) -> Dict[str, Any]:
        route = ctx.route or RouteInfo.from_scope(ctx.request.scope)
        if route is None:
            return {}

        method = route.methods[0] if route.methods else ctx.request.method
        result: Dict[str, Any] = {"uri": f"{method} {route.path}" if route.path else "-"}
        if route.name:
            result["name"] = route.name

        endpoint = route.endpoint
        if endpoint is not None:
            result["controller"] = _qualified_name(endpoint)
            if not has_syntax_error:
                link = self._source_link(endpoint)
                if link is not None:
                    result["file"] = link

        params = [route_param(value) for value in route.params.values()]
        if params:
            result["params"] = params

        result["middleware"] = ", ".join(route.middleware)
        result["action"] = getattr(endpoint, "__name__", "-") if endpoint is not None else "-"
        return result

    def _source_link(self, endpoint: Any) -> Optional[Markup]:
        target = inspect.unwrap(endpoint)
        if not (inspect.isfunction(target) or inspect.ismethod(target) or inspect.isclass(target)):
            target = getattr(target, "__call__", target)
        try:
            filename = inspect.getsourcefile(target)
            lines, start = inspect.getsourcelines(target)
        except (OSError, TypeError):
            return None
        if not filename:
            return None
        end = start + len(lines) - 1
        shown = relative_path(filename, self.config.base_path)
        return Markup('<span class="json-label">{}</span>').format(
            Markup(editor_link(self.config.editor, filename, start, f"{shown}#{start}-{end}"))
        )

    def view_info(self, ctx: TraceContext) -> List[str]:
        names = list(ctx.views)
        for name in self.collector.views_for(ctx.request_id):
            if name not in names:
                names.append(name)
        return names

    def session_info(self, ctx: TraceContext) -> Dict[str, Any]:
        try:
            session = ctx.request.session
            if session is None:
                return {}
            if isinstance(session, Mapping):
                return dict(session)
            data = getattr(session, "data", None)
            return dict(data) if isinstance(data, Mapping) else {}
        except Exception:
            logger.debug("Session unavailable for trace", exc_info=True)
            return {}

    def request_info(self, ctx: TraceContext, response: Response) -> Dict[str, Any]:
        request = ctx.request
        return {
            "path": request.path,
            "status_code": response.status,
            "format": request.format,
            "content_type": response.content_type or "text/html",
            "host": request.host,
            "ip": request.client_ip,
            "request_query": request.query_params.to_dict(),
            "request_body": request.body_params(),
            "request_headers": request.headers.to_dict(),
            "response_headers": dict(response.headers),
        }


def _qualified_name(obj: Any) -> str:
    module = getattr(obj, "__module__", None) or ""
    name = getattr(obj, "__qualname__", None) or type(obj).__qualname__
    return f"{module}.{name}" if module else name
