"""Shared test fixtures for feedwatch tests."""

import os
import tempfile

import httpx
import pytest

from feedwatch.database import Database
from feedwatch.models import Enclosure, Entry, Source


FEED_URL = "https://example.com/feed"

SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <language>en-us</language>
    <ttl>30</ttl>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <author>jane@example.com (Jane Doe)</author>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
      <enclosure url="https://example.com/audio/1.mp3" length="12345" type="audio/mpeg"/>
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
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def rss(title: str = "Test Feed", ttl: int | None = None, guids: tuple = ("article-1",)) -> bytes:
    """Build a small RSS document."""
    ttl_tag = f"<ttl>{ttl}</ttl>" if ttl is not None else ""
    items = "".join(
        f"<item><title>Item {g}</title><guid>{g}</guid><link>https://example.com/{g}</link></item>"
        for g in guids
    )
    return (
        f'<?xml version="1.0"?><rss version="2.0"><channel><title>{title}</title>'
        f"<link>https://example.com</link><description>d</description>{ttl_tag}"
        f"{items}</channel></rss>"
    ).encode()


class FakeFeedServer:
    """Answers requests through httpx.MockTransport from a script of responses.

    Each script step is either ``(status, headers, body)`` or a callable taking
    the request. The last step repeats once the script runs out. Every request
    is recorded in ``requests``.
    """

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if callable(step):
            return step(request)
        status, headers, body = step
        return httpx.Response(status, headers=headers, content=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected Database on a temporary file."""
    database = Database(tmp_db_path, busy_timeout=5.0)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML


@pytest.fixture
def document():
    """A parsed document with three entries, one carrying an enclosure."""
    return Source(
        fetch_url=FEED_URL,
        title="Test Feed",
        description="A test RSS feed",
        link="https://example.com",
        language="en-us",
        ttl=30,
        etag='"v1"',
        entries=[
            Entry(
                guid="article-1",
                title="First Article",
                link="https://example.com/article-1",
                enclosure=Enclosure(
                    url="https://example.com/audio/1.mp3",
                    mime_type="audio/mpeg",
                    length=12345,
                ),
            ),
            Entry(guid="article-2", title="Second Article"),
            Entry(guid="article-3", title="Third Article"),
        ],
    )
