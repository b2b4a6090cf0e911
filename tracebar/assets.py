"""
AssetResponder - serves the panel's trace.css / trace.js.

Assets ship as package data and are answered by the middleware itself
at ``<asset_prefix>/trace.css`` and ``<asset_prefix>/trace.js`` with
long-lived cache headers and weak ETag revalidation.
"""

from __future__ import annotations

import hashlib
import logging
import time
from email.utils import formatdate
from pathlib import Path
from typing import Dict, Optional

from .faults import AssetNotFound
from .request import Request
from .response import Response

logger = logging.getLogger("tracebar.assets")

ASSET_DIR = Path(__file__).resolve().parent / "assets"

ASSETS: Dict[str, str] = {
    "trace.css": "text/css; charset=utf-8",
    "trace.js": "text/javascript; charset=utf-8",
}

MAX_AGE = 31536000


def asset_path(name: str) -> Path:
    """Filesystem path of a bundled asset; AssetNotFound for unknown names."""
    if name not in ASSETS:
        raise AssetNotFound(name)
    path = ASSET_DIR / name
    if not path.is_file():
        raise AssetNotFound(name)
    return path


def file_etag(path: Path) -> str:
    """Weak ETag from inode, mtime and size."""
    st = path.stat()
    digest = hashlib.md5(f"{st.st_ino}-{int(st.st_mtime)}-{st.st_size}".encode()).hexdigest()
    return f'W/"{digest}"'


def etag_matches(header: Optional[str], etag: str) -> bool:
    if not header:
        return False
    wanted = etag.strip().lstrip("W/").strip('"')
    for tag in header.split(","):
        tag = tag.strip()
        if tag == "*" or tag.lstrip("W/").strip('"') == wanted:
            return True
    return False


class AssetResponder:
    """
    Answers requests under ``prefix``.

    Args:
        prefix: URL prefix of the assets (``/_trace/assets``)
    """

    def __init__(self, prefix: str = "/_trace/assets"):
        self.prefix = "/" + prefix.strip("/")

    def url(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def match(self, path: str) -> Optional[str]:
        """Asset name requested by ``path``, or None when it is not an asset URL."""
        if not path.startswith(self.prefix + "/"):
            return None
        return path[len(self.prefix) + 1:]

    def respond(self, request: Request, name: str) -> Response:
        try:
            path = asset_path(name)
        except AssetNotFound as exc:
            logger.debug(f"Unknown trace asset requested: {name}")
            return Response.text(exc.message, 404)

        etag = file_etag(path)
        headers = {
            "etag": etag,
            "cache-control": f"public, max-age={MAX_AGE}",
            "expires": formatdate(time.time() + MAX_AGE, usegmt=True),
            "last-modified": formatdate(path.stat().st_mtime, usegmt=True),
        }

        if etag_matches(request.header("if-none-match"), etag):
            return Response(b"", 304, headers=headers)

        return Response(path.read_bytes(), 200, headers=headers, media_type=ASSETS[name])
