"""Tests for the feedparser-based document parser."""

from datetime import datetime, timezone

import pytest

from feedwatch.feed_parser import FeedParseError, parse_feed


def test_parses_channel_metadata(sample_rss_xml):
    source = parse_feed(sample_rss_xml.encode())

    assert source.title == "Test Feed"
    assert source.description == "A test RSS feed"
    assert source.link == "https://example.com"
    assert source.language == "en-us"
    assert source.ttl == 30
    assert source.fetch_url == ""
    assert source.id is None


def test_entries_keep_document_order(sample_rss_xml):
    source = parse_feed(sample_rss_xml.encode())

    assert [e.guid for e in source.entries] == ["article-1", "article-2"]
    first = source.entries[0]
    assert first.title == "First Article"
    assert first.link == "https://example.com/article-1"
    assert first.description == "Description of the first article"
    assert "Jane Doe" in first.author
    assert first.published_at == datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)
    assert first.is_read is False
    assert first.is_starred is False


def test_enclosure_is_extracted(sample_rss_xml):
    source = parse_feed(sample_rss_xml.encode())

    enclosure = source.entries[0].enclosure
    assert enclosure is not None
    assert enclosure.url == "https://example.com/audio/1.mp3"
    assert enclosure.mime_type == "audio/mpeg"
    assert enclosure.length == 12345
    assert enclosure.file_path is None
    assert source.entries[1].enclosure is None


def test_enclosure_with_bad_length_defaults_to_zero():
    body = b"""<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>
    <item><guid>g</guid><enclosure url="https://example.com/a.mp3" length="lots" type="audio/mpeg"/></item>
    </channel></rss>"""

    source = parse_feed(body)

    assert source.entries[0].enclosure.length == 0


def test_missing_ttl_is_none():
    body = b"""<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>
    <description>d</description></channel></rss>"""

    assert parse_feed(body).ttl is None


def test_non_numeric_ttl_raises():
    body = b"""<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>
    <ttl>soon</ttl></channel></rss>"""

    with pytest.raises(FeedParseError, match="ttl is not a number"):
        parse_feed(body)


def test_guid_falls_back_to_link():
    body = b"""<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>
    <item><title>Linked</title><link>https://example.com/linked</link></item>
    </channel></rss>"""

    source = parse_feed(body)

    assert source.entries[0].guid == "https://example.com/linked"


def test_entry_without_identifier_is_skipped():
    body = b"""<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>
    <item><title>Nameless</title></item>
    <item><title>Named</title><guid>named</guid></item>
    </channel></rss>"""

    source = parse_feed(body)

    assert [e.guid for e in source.entries] == ["named"]


def test_parses_atom(sample_atom_xml):
    source = parse_feed(sample_atom_xml.encode())

    assert source.title == "Test Atom Feed"
    assert source.description == "A test Atom feed"
    assert source.entries[0].guid == "urn:uuid:entry-1"
    assert source.entries[0].published_at == datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)


def test_not_a_feed_raises(sample_not_a_feed_xml):
    with pytest.raises(FeedParseError):
        parse_feed(sample_not_a_feed_xml.encode())


def test_garbage_raises():
    with pytest.raises(FeedParseError):
        parse_feed(b"\x00\x01 definitely not xml")
