"""
Tracebar debug pages.
"""

from .pages import (
    editor_link,
    extract_frames,
    format_exception_text,
    render_debug_page,
    render_error_page,
    status_info,
)

__all__ = [
    "editor_link",
    "extract_frames",
    "format_exception_text",
    "render_debug_page",
    "render_error_page",
    "status_info",
]
