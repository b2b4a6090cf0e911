"""
ExceptionCapture - report/render handling for unhandled exceptions.

Per request the capture moves IDLE -> CAPTURED -> REPORTED -> RENDERED.

Two de-duplication layers:

* a request-scoped hash set (exception type + location + request id):
  the same exception is processed at most once per request; evicted by
  ``clear_request_exceptions()`` when the request terminates;
* a global reported-hash set (type + location + message + code):
  recurring errors are logged/reported once per hour, not per request.
"""

from __future__ import annotations

import hashlib
import logging
import time
import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from .config import TraceConfig, get_trace_module_name
from .context import CaptureState, TraceContext
from .debug import format_exception_text, render_debug_page, render_error_page, status_info
from .faults import Fault, fault_status
from .response import Response
from .store import PartitionedStore, ReportedHashSet

logger = logging.getLogger("tracebar.capture")


def exception_location(exc: BaseException) -> Tuple[str, int]:
    """(file, line) where ``exc`` was raised; ("", 0) if it never was."""
    if isinstance(exc, SyntaxError) and exc.filename:
        return exc.filename, exc.lineno or 0
    tb = exc.__traceback__
    if tb is None:
        return "", 0
    last = traceback.extract_tb(tb)[-1]
    return last.filename, last.lineno or 0


def exception_code(exc: BaseException) -> Any:
    """Machine-readable code shown next to the exception."""
    for attr in ("status_code", "code", "errno"):
        value = getattr(exc, attr, None)
        if value is not None:
            return value
    return 0


def _md5(*parts: Any) -> str:
    return hashlib.md5("".join(str(p) for p in parts).encode("utf-8", "replace")).hexdigest()


class ExceptionCapture:
    """
    Exception handler wrapper shared by all requests.

    Args:
        config: Toolbar configuration (dont_report, handlers, debug, ...)
        reporter: The host's own reporter, called after the log write
    """

    def __init__(
        self,
        config: TraceConfig,
        *,
        reporter: Optional[Callable[[BaseException], Any]] = None,
    ):
        self.config = config
        self.reporter = reporter
        self.reported = ReportedHashSet(config.reported_cap, config.reported_ttl)
        self._request_hashes = PartitionedStore("request_exceptions", ttl=config.partition_ttl)
        self._last_resort: Dict[str, Dict[str, Any]] = {}

    # ========================================================================
    # Hashes
    # ========================================================================

    def global_hash(self, exc: BaseException) -> str:
        file, line = exception_location(exc)
        return _md5(type(exc).__qualname__, file, line, str(exc), exception_code(exc))

    def request_hash(self, exc: BaseException, request_id: str) -> str:
        file, line = exception_location(exc)
        return _md5(type(exc).__qualname__, file, line, request_id)

    def request_hashes(self, request_id: str) -> list:
        return self._request_hashes.get(request_id)

    # ========================================================================
    # Capture
    # ========================================================================

    def init_error(self, exc: BaseException, ctx: TraceContext) -> None:
        """Make ``exc`` the request's current exception (latest wins)."""
        ctx.exception = exc
        if ctx.state is CaptureState.IDLE:
            ctx.state = CaptureState.CAPTURED
        self.remember(ctx.request_id, exc)

    def remember(self, request_id: str, exc: BaseException) -> None:
        """Cache display fields for ``request_id`` without a context."""
        file, line = exception_location(exc)
        self._last_resort[request_id] = {
            "message": str(exc),
            "file": file,
            "line": line,
            "code": exception_code(exc),
            "trace": format_exception_text(exc),
            "at": time.monotonic(),
        }

    def last_resort(self, request_id: str) -> Optional[Dict[str, Any]]:
        return self._last_resort.get(request_id)

    # ========================================================================
    # Report
    # ========================================================================

    def report(self, exc: BaseException, ctx: TraceContext) -> bool:
        """
        Report ``exc`` for the request.

        Returns True when the side effects (log write, host reporter)
        ran, False when the call was de-duplicated or suppressed.
        """
        rid = ctx.request_id
        r_hash = self.request_hash(exc, rid)
        if r_hash in self._request_hashes.get(rid):
            return False

        self.init_error(exc, ctx)
        self._request_hashes.open(rid)
        self._request_hashes.append(rid, r_hash)
        ctx.state = CaptureState.REPORTED

        g_hash = self.global_hash(exc)
        if self.should_not_report(exc) or g_hash in self.reported:
            return False

        self.reported.cleanup()
        self.reported.add(g_hash)

        try:
            if not (self.config.log_already_recorded or ctx.request.state.get("log_already_recorded")):
                self.write_log(exc, ctx)
            if self.reporter is not None:
                self.reporter(exc)
        except Exception as report_error:
            # Reporting must never raise into the request
            self.write_log(report_error, ctx)
        return True

    def should_not_report(self, exc: BaseException) -> bool:
        names = set(self.config.dont_report)
        if not names:
            return False
        for cls in type(exc).__mro__:
            if cls.__name__ in names or f"{cls.__module__}.{cls.__qualname__}" in names:
                return True
        return False

    def write_log(self, exc: BaseException, ctx: Optional[TraceContext] = None) -> None:
        where = f" [{ctx.request.method} {ctx.request.path}]" if ctx is not None else ""
        logger.error(
            f"{type(exc).__qualname__}: {exc}{where}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    # ========================================================================
    # Render
    # ========================================================================

    def render(self, exc: BaseException, ctx: TraceContext) -> Response:
        """
        Build the error response for ``exc``.

        Never raises: every failure falls back to the host default.
        """
        request = ctx.request
        if ctx.rendering:
            return self.fallback(exc, request)

        ctx.rendering = True
        try:
            if ctx.exception is None or ctx.state is CaptureState.IDLE:
                # abort()-style shortcuts reach render without a report
                self.init_error(exc, ctx)
            response = self._render_chain(exc, ctx)
        except Exception:
            logger.warning("Trace exception rendering failed", exc_info=True)
            response = self.fallback(exc, request)
        finally:
            ctx.rendering = False

        if response.attached_error is None:
            response.attached_error = exc
        ctx.state = CaptureState.RENDERED
        return response

    def _render_chain(self, exc: BaseException, ctx: TraceContext) -> Response:
        request = ctx.request
        status = fault_status(exc)

        handler = self.config.status_handlers.get(status)
        if handler is not None:
            try:
                result = handler(exc, request)
                if isinstance(result, Response):
                    return result
            except Exception:
                logger.debug(f"Status handler for {status} failed", exc_info=True)

        module = get_trace_module_name(request.path, self.config.module_namespace)
        handler = self.config.module_handlers.get(module)
        if handler is not None:
            try:
                result = handler(exc, request)
                if isinstance(result, Response):
                    return result
            except Exception:
                logger.debug(f"Module handler for '{module}' failed", exc_info=True)

        if self.config.debug:
            try:
                page = render_debug_page(
                    exc,
                    request,
                    editor=self.config.editor,
                    base_path=self.config.base_path,
                    version=self.config.app_version,
                )
                return Response.html(page, status)
            except Exception:
                logger.warning("Debug page rendering failed", exc_info=True)
                return self.fallback(exc, request)

        try:
            message = public_message(exc, status)
            if self._wants_json(request):
                return Response.json({"code": status, "message": message}, status)
            return Response.html(render_error_page(status, message, request=request), status)
        except Exception:
            logger.warning("Error response rendering failed", exc_info=True)
            return self.fallback(exc, request)

    def _wants_json(self, request: Any) -> bool:
        api_prefix = self.config.api_prefix.strip("/")
        path = request.path.lstrip("/")
        is_api = bool(api_prefix) and (path == api_prefix or path.startswith(api_prefix + "/"))
        return is_api or request.method != "GET" or request.expects_json

    def fallback(self, exc: BaseException, request: Any) -> Response:
        """The host's default error response, or a plain-text one."""
        status = fault_status(exc)
        renderer = self.config.fallback_renderer
        if renderer is not None:
            try:
                result = renderer(exc, request)
                if isinstance(result, Response):
                    return result
            except Exception:
                logger.error("Fallback error renderer failed", exc_info=True)
        return Response.text(status_info(status)[0], status)

    # ========================================================================
    # Teardown
    # ========================================================================

    def clear_request_exceptions(self, request_id: str) -> None:
        self._request_hashes.evict(request_id)
        self._last_resort.pop(request_id, None)

    def sweep(self) -> int:
        cutoff = time.monotonic() - self.config.partition_ttl
        stale = [rid for rid, fields in list(self._last_resort.items()) if fields["at"] <= cutoff]
        for rid in stale:
            self._last_resort.pop(rid, None)
        return self._request_hashes.sweep() + len(stale)

    def __repr__(self) -> str:
        return f"<ExceptionCapture reported={len(self.reported)} open={len(self._request_hashes)}>"


def public_message(exc: BaseException, status: int) -> str:
    """Message safe to show to the client."""
    if isinstance(exc, Fault) and exc.public:
        return exc.message
    return status_info(status)[0]
