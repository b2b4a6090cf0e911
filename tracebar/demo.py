"""
Demo application for ``tracebar demo``.

A plain ASGI app that exercises every tab of the panel:

    /            HTML page; fires query, transaction and model signals, calls trace()
    /api/items   JSON (POST it to see the ``_debugger`` side channel)
    /boom        raises an exception
    /gone        abort(410)
"""

import json
import logging
from typing import Callable, Optional

from .config import TraceConfig
from .context import RouteInfo
from .faults import abort
from .middleware import TraceMiddleware
from .recorder import trace
from .signals import ConnectionInfo, bus

logger = logging.getLogger("tracebar.demo")

CONNECTION = ConnectionInfo(name="default", driver="sqlite")

PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Tracebar demo</title></head>
<body>
<h1>Tracebar demo</h1>
<p>Open the <b>Trace</b> badge in the bottom right corner.</p>
<ul>
  <li><a href="/api/items">/api/items</a></li>
  <li><a href="/boom">/boom</a></li>
  <li><a href="/gone">/gone</a></li>
</ul>
</body>
</html>
"""


class User:
    """Stand-in ORM model."""

    def __init__(self, id: int, name: str):
        self.id = id
        self.name = name

    def get_key(self):
        return self.id

    def get_route_key(self):
        return self.id

    def get_route_key_name(self):
        return "id"


async def _send(send: Callable, status: int, body: bytes, content_type: str) -> None:
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [(b"content-type", content_type.encode("latin-1"))],
    })
    await send({"type": "http.response.body", "body": body})


async def index(scope, receive, send):
    bus.connection_established.send_sync(CONNECTION)
    bus.transaction_beginning.send_sync(CONNECTION)
    bus.query_executed.send_sync(
        CONNECTION, sql="select * from users where id = ?", bindings=[1], time=12.5,
    )
    user = User(1, "ada")
    bus.model_signals["retrieved"].send_sync(User, instance=user)
    bus.model_signals["retrieved"].send_sync(User, instance=user)
    bus.query_executed.send_sync(
        CONNECTION, sql="insert into users (name) values (?)", bindings=["grace"], time=7.25,
    )
    bus.model_signals["created"].send_sync(User, instance=User(2, "grace"))
    bus.transaction_committed.send_sync(CONNECTION)
    bus.view_rendered.send_sync(None, template="demo/index.html")

    trace("hello from the demo", {"user": user.name, "roles": ["admin", "dev"]})

    await _send(send, 200, PAGE.encode("utf-8"), "text/html; charset=utf-8")


async def items(scope, receive, send):
    data = {"items": [{"id": 1, "name": "ada"}, {"id": 2, "name": "grace"}]}
    await _send(send, 200, json.dumps(data).encode("utf-8"), "application/json")


async def boom(scope, receive, send):
    trace("about to fail")
    raise RuntimeError("Something went wrong in the demo")


async def gone(scope, receive, send):
    abort(410, "This page is gone")


ROUTES = {
    "/": index,
    "/api/items": items,
    "/boom": boom,
    "/gone": gone,
}


async def demo_app(scope, receive, send):
    handler = ROUTES.get(scope["path"])
    if handler is None:
        await _send(send, 404, b"Not Found", "text/plain; charset=utf-8")
        return

    params = {"user": User(1, "ada")} if handler is index else {}
    scope["tracebar.route"] = RouteInfo(
        path=scope["path"],
        methods=["GET", "POST"] if handler is items else ["GET"],
        name=handler.__name__,
        endpoint=handler,
        params=params,
        middleware=["TraceMiddleware"],
    )
    await handler(scope, receive, send)


def create_app(config: Optional[TraceConfig] = None) -> TraceMiddleware:
    """The demo app wrapped in TraceMiddleware (debug mode on by default)."""
    config = config or TraceConfig(
        debug=True,
        app_name="tracebar-demo",
        database={"driver": "sqlite", "host": "localhost", "database": "demo", "username": "demo_user"},
    )
    return TraceMiddleware(demo_app, config=config)
