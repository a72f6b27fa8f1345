"""Shared test fixtures for rss_digest tests."""

import threading
from dataclasses import dataclass, field
from email.message import Message
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from rss_digest.storage import open_store


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_RSS_XML_UPDATED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>Third Article</title>
      <link>https://example.com/article-3</link>
      <guid>article-3</guid>
      <description>Description of the third article</description>
      <pubDate>Fri, 13 Feb 2026 11:00:00 GMT</pubDate>
    </item>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link rel="self" href="https://example.com/entry-1.atom"/>
    <link rel="alternate" href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <author><name>Jane Doe</name></author>
    <summary>Summary of entry 1</summary>
    <content type="html">&lt;p&gt;Full content of entry 1&lt;/p&gt;</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_ATOM_XML_SAME_ITEMS = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Feed</title>
  <link href="https://example.com"/>
  <entry>
    <title>First Article</title>
    <link href="https://example.com/article-1"/>
    <id>article-1</id>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
  <entry>
    <title>Second Article</title>
    <link href="https://example.com/article-2"/>
    <id>article-2</id>
    <updated>2026-02-13T09:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Malformed Feed</title>
    <link>https://example.com</link>
    <item>
      <title>Good Item</title>
      <guid>good-item</guid>
    </item>
    <item>
      <title>Bad Item</title>
      <!-- Missing closing tags intentionally -->
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

SAMPLE_HTML_WITH_FEED_LINK = """<!DOCTYPE html>
<html>
  <head>
    <title>Example Blog</title>
    <link rel="stylesheet" href="/style.css">
    <link rel="alternate" type="application/rss+xml" title="Example Blog RSS" href="/feeds/main.xml">
  </head>
  <body><h1>Example Blog</h1></body>
</html>"""

SAMPLE_HTML_NO_FEED = """<!DOCTYPE html>
<html>
  <head><title>No feeds here</title></head>
  <body><p>Nothing to see.</p></body>
</html>"""


@dataclass
class Route:
    body: bytes = b""
    status: int = 200
    content_type: str = "application/rss+xml"
    headers: dict = field(default_factory=dict)
    etag: str | None = None


@dataclass
class RecordedRequest:
    path: str
    headers: Message


class FeedServer:
    """Threaded HTTP server on 127.0.0.1 serving canned routes.

    A route with an ``etag`` answers 304 when the request's If-None-Match
    matches it. Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[str, Route] = {}
        self.requests: list[RecordedRequest] = []
        server = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                server.requests.append(
                    RecordedRequest(path=self.path, headers=self.headers)
                )
                route = server.routes.get(self.path)
                if route is None:
                    self.send_response(404)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    return

                if route.etag is not None and self.headers.get("If-None-Match") == route.etag:
                    self.send_response(304)
                    self.send_header("ETag", route.etag)
                    self.end_headers()
                    return

                self.send_response(route.status)
                self.send_header("Content-Type", route.content_type)
                self.send_header("Content-Length", str(len(route.body)))
                if route.etag is not None:
                    self.send_header("ETag", route.etag)
                for name, value in route.headers.items():
                    self.send_header(name, value)
                self.end_headers()
                self.wfile.write(route.body)

            def log_message(self, format, *args):
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._running = False

    @property
    def base_url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return self.base_url + path

    def add(self, path: str, body: str | bytes = b"", **kwargs) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[path] = Route(body=body, **kwargs)
        return self.url(path)

    def requests_to(self, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.path == path]

    def start(self) -> None:
        self._thread.start()
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture
def feed_server():
    """A running FeedServer, shut down after the test."""
    server = FeedServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture(params=["sqlite", "markdown"])
def store(request, tmp_path):
    """A connected store for each backend."""
    s = open_store(request.param, str(tmp_path / "data"))
    s.connect()
    yield s
    s.close()


@pytest.fixture
def sqlite_store(tmp_path):
    s = open_store("sqlite", str(tmp_path / "data"))
    s.connect()
    yield s
    s.close()


@pytest.fixture
def markdown_store(tmp_path):
    s = open_store("markdown", str(tmp_path / "data"))
    s.connect()
    yield s
    s.close()


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample malformed RSS XML."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
