"""
End-to-end tests for TraceMiddleware.

Drives ASGI apps through httpx's ASGITransport (and, for the edge
cases httpx hides, by calling the middleware directly).
"""

import asyncio
import gzip
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from tracebar.config import TraceConfig
from tracebar.demo import create_app
from tracebar.faults import abort
from tracebar.middleware import TraceMiddleware
from tracebar.recorder import trace
from tracebar.tracer import Tracer

from tests.conftest import ResponseCapture, make_receive, make_scope


PAGE = "<html><head><title>t</title></head><body><p>hello</p></body></html>"


def html_app(page: str = PAGE, status: int = 200, content_type: bytes = b"text/html; charset=utf-8"):
    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": status, "headers": [(b"content-type", content_type)]})
        await send({"type": "http.response.body", "body": page.encode()})
    return app


def json_app(data):
    async def app(scope, receive, send):
        await receive()
        await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"application/json")]})
        await send({"type": "http.response.body", "body": json.dumps(data).encode()})
    return app


def client_for(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def make_tracer(signal_bus):
    tracers = []

    def build(**config):
        config.setdefault("debug", True)
        tracer = Tracer(TraceConfig(**config), signal_bus=signal_bus, reporter=MagicMock())
        tracers.append(tracer)
        return tracer

    yield build
    for tracer in tracers:
        tracer.shutdown()


# ============================================================================
# HTML
# ============================================================================

class TestHtmlResponses:

    @pytest.mark.asyncio
    async def test_panel_injected(self, make_tracer, signal_bus):
        tracer = make_tracer()

        async def app(scope, receive, send):
            signal_bus.query_executed.send_sync(None, sql="select 1", time=12.5)
            trace("from the handler")
            await html_app()(scope, receive, send)

        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            response = await client.get("/")

        assert response.status_code == 200
        body = response.text
        assert body.index("/_trace/assets/trace.css") < body.index("</head>")
        assert body.index('id="trace-tools-box"') < body.index("/_trace/assets/trace.js") < body.index("</body>")
        assert "SQL (1)" in body
        assert "Messages (1)" in body
        assert "from the handler" in body
        assert int(response.headers["content-length"]) == len(response.content)

    @pytest.mark.asyncio
    async def test_partitions_evicted_after_request(self, make_tracer, signal_bus):
        tracer = make_tracer()

        async def app(scope, receive, send):
            signal_bus.query_executed.send_sync(None, sql="select 1")
            await html_app()(scope, receive, send)

        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            await client.get("/")
            await client.get("/")

        assert len(tracer.collector.queries) == 0
        assert len(tracer.collector.models) == 0

    @pytest.mark.asyncio
    async def test_disabled_leaves_page_alone(self, make_tracer):
        tracer = make_tracer(enabled=False)
        async with client_for(TraceMiddleware(html_app(), tracer=tracer)) as client:
            response = await client.get("/")
        assert response.text == PAGE

    @pytest.mark.asyncio
    async def test_production_without_debug_is_off(self, make_tracer):
        tracer = make_tracer(environment="production", debug=False)
        async with client_for(TraceMiddleware(html_app(), tracer=tracer)) as client:
            response = await client.get("/")
        assert "trace-tools-box" not in response.text

    @pytest.mark.asyncio
    async def test_non_html_streams_through(self, make_tracer):
        tracer = make_tracer()
        app = html_app("plain body", content_type=b"text/plain")
        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            response = await client.get("/")
        assert response.text == "plain body"

    @pytest.mark.asyncio
    async def test_compressed_html_streams_through(self, make_tracer):
        tracer = make_tracer()
        compressed = gzip.compress(PAGE.encode())

        async def app(scope, receive, send):
            await send({
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"content-type", b"text/html"), (b"content-encoding", b"gzip")],
            })
            await send({"type": "http.response.body", "body": compressed})

        send = ResponseCapture()
        await TraceMiddleware(app, tracer=tracer)(make_scope(), make_receive(), send)

        assert send.headers["content-encoding"] == "gzip"
        assert send.body == compressed
        assert gzip.decompress(send.body) == PAGE.encode()

    @pytest.mark.asyncio
    async def test_template_debug_messages_fill_view_tab(self, make_tracer):
        tracer = make_tracer()

        async def app(scope, receive, send):
            await send({"type": "http.response.debug", "info": {"template": "pages/home.html"}})
            await html_app()(scope, receive, send)

        send = ResponseCapture()
        await TraceMiddleware(app, tracer=tracer)(make_scope(), make_receive(), send)

        assert b"pages/home.html" in send.body
        assert all(m["type"] != "http.response.debug" for m in send.messages)


# ============================================================================
# JSON
# ============================================================================

class TestJsonResponses:

    @pytest.mark.asyncio
    async def test_json_gets_side_channel(self, make_tracer):
        tracer = make_tracer()
        async with client_for(TraceMiddleware(json_app({"items": [1, 2]}), tracer=tracer)) as client:
            response = await client.get("/items")

        data = response.json()
        assert data["items"] == [1, 2]
        assert 'id="trace-tools-box"' in data["_debugger"]

    @pytest.mark.asyncio
    async def test_post_body_in_request_tab(self, make_tracer):
        tracer = make_tracer()
        async with client_for(TraceMiddleware(json_app({"ok": True}), tracer=tracer)) as client:
            response = await client.post("/items", json={"name": "ada"})

        debugger = response.json()["_debugger"]
        assert "request_body" in debugger
        assert "ada" in debugger

    @pytest.mark.asyncio
    async def test_json_client_is_not_traced(self, make_tracer):
        tracer = make_tracer()
        async with client_for(TraceMiddleware(json_app({"ok": True}), tracer=tracer)) as client:
            response = await client.get("/items", headers={"accept": "application/json"})
        assert response.json() == {"ok": True}


# ============================================================================
# Exceptions
# ============================================================================

class TestExceptions:

    @pytest.mark.asyncio
    async def test_unhandled_exception_renders_debug_page_with_panel(self, make_tracer):
        tracer = make_tracer()

        async def app(scope, receive, send):
            raise RuntimeError("handler exploded")

        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            response = await client.get("/")

        assert response.status_code == 500
        assert "handler exploded" in response.text
        assert "Exception 🔴" in response.text
        tracer.capture.reporter.assert_called_once()

    @pytest.mark.asyncio
    async def test_abort_is_rendered_not_reported(self, make_tracer):
        tracer = make_tracer()

        async def app(scope, receive, send):
            abort(410, "Gone away")

        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            response = await client.get("/")

        assert response.status_code == 410
        tracer.capture.reporter.assert_not_called()

    @pytest.mark.asyncio
    async def test_exception_after_start_is_reported_and_raised(self, make_tracer):
        tracer = make_tracer()

        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"text/plain")]})
            raise RuntimeError("mid-stream")

        send = ResponseCapture()
        with pytest.raises(RuntimeError, match="mid-stream"):
            await TraceMiddleware(app, tracer=tracer)(make_scope(), make_receive(), send)

        assert send.status == 200
        tracer.capture.reporter.assert_called_once()
        assert len(tracer.collector.queries) == 0


# ============================================================================
# Assets and other scopes
# ============================================================================

class TestRouting:

    @pytest.mark.asyncio
    async def test_assets_served_without_calling_app(self, make_tracer):
        tracer = make_tracer()
        app = AsyncMock()
        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            css = await client.get("/_trace/assets/trace.css")
            missing = await client.get("/_trace/assets/nope.css")

        assert css.status_code == 200
        assert css.headers["content-type"].startswith("text/css")
        assert "max-age=31536000" in css.headers["cache-control"]
        assert missing.status_code == 404
        app.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_http_scope_passes_through(self, make_tracer):
        app = AsyncMock()
        middleware = TraceMiddleware(app, tracer=make_tracer())
        scope = {"type": "lifespan"}
        receive, send = AsyncMock(), AsyncMock()

        await middleware(scope, receive, send)

        app.assert_awaited_once_with(scope, receive, send)


# ============================================================================
# Demo application
# ============================================================================

class TestDemoApp:

    @pytest.fixture
    def demo(self):
        app = create_app()
        yield app
        app.tracer.shutdown()

    @pytest.mark.asyncio
    async def test_index_fills_every_tab(self, demo):
        async with client_for(demo) as client:
            response = await client.get("/")

        body = response.text
        assert response.status_code == 200
        for title in ("Messages (2)", "Base", "Route", "View", "Models (2)", "SQL (5)", "Session", "Request"):
            assert title in body
        assert "User:1 「2次」" in body
        assert "select * from users where id = 1" in body
        assert "demo/index.html" in body

    @pytest.mark.asyncio
    async def test_items_json(self, demo):
        async with client_for(demo) as client:
            response = await client.get("/api/items")
        assert "_debugger" in response.json()

    @pytest.mark.asyncio
    async def test_boom_and_gone(self, demo):
        async with client_for(demo) as client:
            boom = await client.get("/boom")
            gone = await client.get("/gone")
        assert boom.status_code == 500
        assert gone.status_code == 410


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrentRequests:

    @pytest.mark.asyncio
    async def test_overlapping_requests_keep_their_own_panels(self, make_tracer, signal_bus):
        tracer = make_tracer()
        both_queried = asyncio.Event()
        arrived = []

        async def app(scope, receive, send):
            name = scope["path"].strip("/")
            signal_bus.query_executed.send_sync(None, sql=f"select * from {name}_table", time=1.0)
            arrived.append(name)
            if len(arrived) == 2:
                both_queried.set()
            await both_queried.wait()
            trace(f"{name} message")
            await html_app()(scope, receive, send)

        async with client_for(TraceMiddleware(app, tracer=tracer)) as client:
            alpha, beta = await asyncio.gather(client.get("/alpha"), client.get("/beta"))

        assert "select * from alpha_table" in alpha.text
        assert "alpha message" in alpha.text
        assert "beta_table" not in alpha.text
        assert "beta message" not in alpha.text

        assert "select * from beta_table" in beta.text
        assert "beta message" in beta.text
        assert "alpha_table" not in beta.text
        assert "alpha message" not in beta.text

        for response in (alpha, beta):
            assert "SQL (1)" in response.text
            assert "Messages (1)" in response.text
        assert len(tracer.collector.queries) == 0
