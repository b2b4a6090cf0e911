"""
PanelRenderer - turns TraceTabs into the panel markup.

The markup is rendered with Jinja2 from ``templates/panel.html``.
Every foldable value carries its raw JSON in a ``data-original``
attribute; ``trace.js`` only ever parses that attribute.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional

from jinja2 import Environment, PackageLoader, select_autoescape
from markupsafe import Markup

from .aggregator import TraceTabs, format_param
from .debug import editor_link

logger = logging.getLogger("tracebar.panel")


def to_json(value: Any) -> str:
    """Compact JSON with non-ASCII kept; unknown objects fall back to str()."""
    return json.dumps(value, ensure_ascii=False, default=str, separators=(",", ":"))


def _is_container(value: Any) -> bool:
    return isinstance(value, (Mapping, list, tuple, set))


def _plain_data(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain_data(v) for v in value]
    return value


class PanelRenderer:
    """
    Renders the trace panel.

    Args:
        editor: URL scheme for "open in editor" links
        env: Jinja2 environment to use (defaults to the packaged templates)
    """

    template_name = "panel.html"

    def __init__(self, editor: str = "vscode", env: Optional[Environment] = None):
        self.editor = editor
        self.env = env or Environment(
            loader=PackageLoader("tracebar", "templates"),
            autoescape=select_autoescape(
                enabled_extensions=["html", "htm", "xml"],
                default_for_string=True,
            ),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, tabs: TraceTabs) -> str:
        """Panel markup for ``tabs``; '' when there is nothing to show."""
        if not tabs:
            return ""
        sections = [
            {
                "id": f"tab{index}",
                "title": title,
                "items": [self.item(key, value) for key, value in (content or {}).items()],
            }
            for index, (title, content) in enumerate(tabs.items(), start=1)
        ]
        template = self.env.get_template(self.template_name)
        return template.render(sections=sections)

    # ========================================================================
    # Items
    # ========================================================================

    def item(self, key: Any, value: Any) -> Dict[str, Any]:
        """
        View model for one ``<li>``.

        ``kind`` is one of ``trace``, ``labelled``, ``json``, ``empty``,
        ``scalar`` or ``error``.
        """
        try:
            if isinstance(value, Mapping) and value.get("type") == "trace":
                return self._trace_item(value)

            label = key if isinstance(key, str) else None
            if isinstance(value, Mapping) and value.get("label"):
                label = value["label"]

            if _is_container(value):
                extra = set(value.keys()) - {"label", "right"} if isinstance(value, Mapping) else value
                right = value.get("right") if isinstance(value, Mapping) else None
                if extra:
                    return {"kind": "json", "label": label, "json": to_json(_plain_data(value)), "right": right}
                if not value:
                    return {"kind": "empty", "label": label, "text": "array[]"}
                return {"kind": "labelled", "label": label, "right": right}

            return {
                "kind": "scalar",
                "label": label,
                "css": "json-string-content" if label is not None else "json-label",
                "text": value if isinstance(value, Markup) else self.scalar(value),
            }
        except Exception:
            logger.debug("Unrenderable trace item", exc_info=True)
            return {"kind": "error", "text": "Unrecognized data"}

    def _trace_item(self, entry: Mapping) -> Dict[str, Any]:
        link = Markup(
            editor_link(self.editor, entry.get("file_path", ""), entry.get("line", 0), entry.get("local", ""))
        )
        var = entry.get("var")
        result: Dict[str, Any] = {"kind": "trace", "link": link, "right": entry.get("right")}
        if _is_container(var) and var:
            result["json"] = to_json(_plain_data(var))
        elif _is_container(var):
            result["text"] = "[]"
        else:
            result["text"] = self.scalar(var)
        return result

    @staticmethod
    def scalar(value: Any) -> str:
        if value is None or isinstance(value, (str, int, float, bool)):
            return format_param(value)
        return f"{type(value).__name__}:{type(value).__module__}.{type(value).__qualname__}"


def render_panel(tabs: TraceTabs, editor: str = "vscode") -> str:
    return PanelRenderer(editor).render(tabs)


__all__ = ["PanelRenderer", "render_panel", "to_json"]
