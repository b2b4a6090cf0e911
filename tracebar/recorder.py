"""
MessageRecorder - ad-hoc debug values pushed by application code.

    from tracebar import trace

    trace(user, {"step": 2})

Each value is stored with the location of the application line that
called it: the first stack frame outside the standard library, installed
packages, vendored code and tracebar itself.
"""

from __future__ import annotations

import logging
import os
import sys
import sysconfig
from typing import Any, Dict, Iterable, Optional

from .context import TraceContext, current_context

logger = logging.getLogger("tracebar.recorder")

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_STDLIB_DIRS = tuple(
    {os.path.abspath(p) for p in (sysconfig.get_paths().get("stdlib"), sysconfig.get_paths().get("platstdlib")) if p}
)


class MessageRecorder:
    """Records debug messages into the current request's context."""

    def __init__(self, *, max_depth: int = 10):
        self.max_depth = max_depth

    def add_message(
        self,
        value: Any,
        kind: str = "debug",
        *,
        ctx: Optional[TraceContext] = None,
        stack_offset: int = 1,
    ) -> Optional[Dict[str, Any]]:
        """
        Append ``value`` to the request's messages.

        Returns the stored entry, or None when nothing was recorded
        (tracing off, no request, or no application frame found).
        """
        ctx = ctx or current_context()
        if ctx is None or not ctx.enabled:
            return None

        frame = self._find_caller(sys._getframe(stack_offset), ctx.config.vendor_markers)
        if frame is None:
            return None

        filename = frame.f_code.co_filename
        line = frame.f_lineno or 1
        relative = relative_path(filename, ctx.config.base_path)
        entry = {
            "var": value,
            "local": f"{os.path.basename(relative)}#{line}",
            "type": "trace",
            "right": kind.upper(),
            "file_path": filename,
            "base_path": relative,
            "line": line,
        }
        ctx.messages.append(entry)
        return entry

    def _find_caller(self, frame, vendor_markers: Iterable[str]):
        markers = tuple(vendor_markers)
        depth = 0
        while frame is not None and depth < self.max_depth:
            if not self._is_library_file(frame.f_code.co_filename, markers):
                return frame
            frame = frame.f_back
            depth += 1
        return None

    @staticmethod
    def _is_library_file(filename: str, markers: tuple) -> bool:
        if not filename or filename.startswith("<"):
            return True
        path = os.path.abspath(filename)
        if path.startswith(_PACKAGE_DIR + os.sep):
            return True
        if any(marker in path for marker in markers):
            return True
        return any(path.startswith(d + os.sep) for d in _STDLIB_DIRS)


def relative_path(filename: str, base_path: str = "") -> str:
    """``filename`` relative to ``base_path`` when it lives under it."""
    if not filename:
        return ""
    if not base_path:
        return filename
    base = base_path.rstrip("/\\")
    if filename.startswith(base + os.sep) or filename.startswith(base + "/"):
        return filename[len(base) + 1:]
    return filename


_recorder = MessageRecorder()


def trace(*values: Any) -> None:
    """
    Dump values into the trace panel of the current request.

    Does nothing outside a traced request.
    """
    ctx = current_context()
    if ctx is None or not ctx.enabled:
        return
    for value in values:
        _recorder.add_message(value, "debug", ctx=ctx, stack_offset=2)
