"""
Request identity - the partition key for every per-request structure.

The identity of the request being served is also published in a
ContextVar so host code that has no handle on the trace context (ORM
signal senders, ``trace()`` calls deep inside application code) is
attributed to the right request, even with overlapping coroutines.
"""

from __future__ import annotations

import os
from contextvars import ContextVar, Token
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("tracebar_request_id", default=None)


def new_request_id() -> str:
    """Return a fresh opaque request identity (32 hex chars)."""
    return os.urandom(16).hex()


def current_request_id() -> Optional[str]:
    """Identity of the request running in the current context, if any."""
    return _request_id.get()


def bind_request_id(request_id: str) -> Token:
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)
