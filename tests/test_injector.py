"""
Tests for HtmlInjector - HTML surgery and the JSON side channel.
"""

import gzip
import json

import pytest

from tracebar.injector import HtmlInjector, protocol_relative
from tracebar.response import Response

from tests.conftest import make_request


PANEL = '<div id="trace-tools-box">panel</div>'

PAGE = "<html><head><title>x</title></head><body><p>hi</p></body></html>"


@pytest.fixture
def injector():
    return HtmlInjector("/_trace/assets/trace.css", "/_trace/assets/trace.js")


# ============================================================================
# HTML
# ============================================================================

class TestHtml:

    def test_page_gets_style_panel_and_script(self, injector):
        response = injector.inject(make_request(), Response.html(PAGE), PANEL)
        body = response.body.decode()

        head, rest = body.split("</head>", 1)
        assert injector.style_tag in head
        assert rest.index(PANEL) < rest.index(injector.script_tag) < rest.index("</body>")
        assert body.count(PANEL) == 1

    def test_stale_content_length_dropped(self, injector):
        response = Response.html(PAGE, headers={"content-length": str(len(PAGE))})
        injector.inject(make_request(), response, PANEL)
        assert response.header("content-length") is None

    def test_document_without_head(self, injector):
        result = injector.inject_html("<html><body>Hi</body></html>", PANEL)
        assert result == (
            injector.style_tag + "\n<html><body>Hi\n" + PANEL + "\n" + injector.script_tag + "</body></html>"
        )

    def test_panel_goes_before_last_body_close(self, injector):
        content = "<head></head><body><template></body></template><p>end</p></body>"
        result = injector.inject_html(content, PANEL)
        assert result.endswith("<p>end</p>\n" + PANEL + "\n" + injector.script_tag + "</body>")
        assert "<body><template></body></template>" in result

    def test_text_that_grows_when_lowercased(self, injector):
        content = "<html><head><title>İzmir</title></head><body>İstanbul İzmir</body></html>"
        result = injector.inject_html(content, PANEL)
        assert result == (
            "<html><head><title>İzmir</title>\n" + injector.style_tag + "\n</head>"
            "<body>İstanbul İzmir\n" + PANEL + "\n" + injector.script_tag + "</body></html>"
        )

    def test_uppercase_tags(self, injector):
        result = injector.inject_html("<HTML><HEAD></HEAD><BODY>x</BODY></HTML>", PANEL)
        assert result.index(injector.style_tag) < result.index("</HEAD>")
        assert result.index(PANEL) < result.index("</BODY>")

    def test_open_head_without_close(self, injector):
        result = injector.inject_html('<head lang="en"><body>x</body>', PANEL)
        assert result.startswith('<head lang="en">\n' + injector.style_tag)

    def test_no_head_prepends_style(self, injector):
        result = injector.inject_html("<body>x</body>", PANEL)
        assert result.startswith(injector.style_tag + "\n<body>")

    def test_open_body_without_close(self, injector):
        result = injector.inject_html('<head></head><body class="app"><p>x</p>', PANEL)
        assert '<body class="app">\n' + PANEL in result
        assert result.endswith("<p>x</p>")

    def test_fragment_gets_panel_appended(self, injector):
        result = injector.inject_html("<p>fragment</p>", PANEL)
        assert result.endswith("<p>fragment</p>\n" + PANEL + "\n" + injector.script_tag)

    def test_plain_text_response_untouched(self, injector):
        response = Response.text("just text")
        injector.inject(make_request(), response, PANEL)
        assert response.body == b"just text"


# ============================================================================
# JSON side channel
# ============================================================================

class TestSideChannel:

    def test_json_object_gets_debugger_field(self, injector):
        request = make_request(headers=[("accept", "application/json")])
        response = Response.json({"a": 1}, headers={"content-length": "7"})
        injector.inject(request, response, PANEL)
        assert json.loads(response.body) == {"a": 1, "_debugger": PANEL}
        assert response.header("content-length") is None

    def test_json_response_to_plain_get(self, injector):
        response = injector.inject(make_request(), Response.json({"items": []}), PANEL)
        assert json.loads(response.body)["_debugger"] == PANEL

    def test_json_list_untouched(self, injector):
        response = injector.inject(make_request(), Response.json([1, 2]), PANEL)
        assert json.loads(response.body) == [1, 2]

    def test_invalid_json_untouched(self, injector):
        response = Response(b"{not json", 200, media_type="application/json")
        injector.inject(make_request(), response, PANEL)
        assert response.body == b"{not json"

    def test_non_get_html_is_not_injected(self, injector):
        response = injector.inject(make_request(method="POST"), Response.html(PAGE), PANEL)
        assert response.body == PAGE.encode()

    def test_non_get_json_uses_side_channel(self, injector):
        response = injector.inject(make_request(method="POST"), Response.json({"id": 1}), PANEL)
        assert json.loads(response.body) == {"id": 1, "_debugger": PANEL}

    def test_unicode_kept(self, injector):
        response = injector.inject(make_request(), Response.json({"name": "Zoë"}), PANEL)
        assert "Zoë".encode() in response.body


# ============================================================================
# Pass-through
# ============================================================================

class TestPassThrough:

    def test_disabled(self, injector):
        response = injector.inject(make_request(), Response.html(PAGE), PANEL, enabled=False)
        assert response.body == PAGE.encode()

    def test_no_request(self, injector):
        response = injector.inject(None, Response.html(PAGE), PANEL)
        assert response.body == PAGE.encode()

    def test_empty_panel(self, injector):
        response = injector.inject(make_request(), Response.html(PAGE), "")
        assert response.body == PAGE.encode()

    def test_empty_body(self, injector):
        response = injector.inject(make_request(), Response.html(""), PANEL)
        assert response.body == b""

    def test_compressed_html_untouched(self, injector):
        compressed = gzip.compress(PAGE.encode())
        response = Response(
            compressed, media_type="text/html", headers={"content-encoding": "gzip", "content-length": str(len(compressed))}
        )
        injector.inject(make_request(), response, PANEL)
        assert response.body == compressed
        assert response.header("content-length") == str(len(compressed))
        assert gzip.decompress(response.body) == PAGE.encode()

    def test_compressed_json_untouched(self, injector):
        compressed = gzip.compress(b'{"a": 1}')
        response = Response(compressed, media_type="application/json", headers={"content-encoding": "br"})
        injector.inject(make_request(), response, PANEL)
        assert response.body == compressed

    def test_identity_encoding_is_injected(self, injector):
        response = Response.html(PAGE, headers={"content-encoding": "identity"})
        injector.inject(make_request(), response, PANEL)
        assert PANEL in response.body_text


class TestTags:

    def test_protocol_relative(self):
        assert protocol_relative("https://cdn.test/trace.css") == "//cdn.test/trace.css"
        assert protocol_relative("HTTP://cdn.test/trace.js") == "//cdn.test/trace.js"
        assert protocol_relative("/_trace/assets/trace.css") == "/_trace/assets/trace.css"

    def test_tags_opt_out_of_turbo(self):
        injector = HtmlInjector("https://cdn.test/trace.css", "https://cdn.test/trace.js")
        assert "href='//cdn.test/trace.css'" in injector.style_tag
        assert "src='//cdn.test/trace.js'" in injector.script_tag
        for tag in (injector.style_tag, injector.script_tag):
            assert "data-turbolinks-eval='false'" in tag
            assert "data-turbo-eval='false'" in tag
