"""Tests for RSS/Atom parsing."""

from datetime import datetime, timezone

import pytest

from rss_digest.errors import ParseError
from rss_digest.feed_parser import fallback_guid, parse_feed


class TestParseFeed:
    def test_parses_rss(self, sample_rss_xml):
        parsed = parse_feed(sample_rss_xml.encode())

        assert parsed.title == "Test Feed"
        assert [e.guid for e in parsed.entries] == ["article-1", "article-2"]
        first = parsed.entries[0]
        assert first.title == "First Article"
        assert first.link == "https://example.com/article-1"
        assert first.content == "Description of the first article"
        assert first.published_at == datetime(2026, 2, 13, 10, tzinfo=timezone.utc)

    def test_parses_atom(self, sample_atom_xml):
        parsed = parse_feed(sample_atom_xml.encode())

        assert parsed.title == "Test Atom Feed"
        entry = parsed.entries[0]
        assert entry.guid == "urn:uuid:entry-1"
        assert entry.link == "https://example.com/entry-1"
        assert entry.author == "Jane Doe"
        assert entry.content == "<p>Full content of entry 1</p>"
        assert entry.published_at == datetime(2026, 2, 13, 10, tzinfo=timezone.utc)

    def test_accepts_str(self, sample_rss_xml):
        assert parse_feed(sample_rss_xml).title == "Test Feed"

    def test_malformed_feed_is_tolerated(self, sample_malformed_xml):
        parsed = parse_feed(sample_malformed_xml.encode())
        assert parsed.title == "Malformed Feed"
        assert parsed.entries[0].guid == "good-item"

    def test_not_a_feed(self, sample_not_a_feed_xml):
        with pytest.raises(ParseError):
            parse_feed(sample_not_a_feed_xml.encode())

    def test_empty_document(self):
        with pytest.raises(ParseError):
            parse_feed(b"   ")

    def test_guid_falls_back_to_link(self):
        xml = """<rss version="2.0"><channel><title>T</title>
        <item><title>No guid</title><link>https://example.com/x</link></item>
        </channel></rss>"""
        assert parse_feed(xml).entries[0].guid == "https://example.com/x"

    def test_guid_falls_back_to_hash(self):
        xml = """<rss version="2.0"><channel><title>T</title>
        <item><title>Bare</title><pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate></item>
        </channel></rss>"""
        entry = parse_feed(xml).entries[0]
        assert entry.guid == fallback_guid("Bare", "Fri, 13 Feb 2026 10:00:00 GMT")
        assert len(entry.guid) == 64

    def test_fallback_guid_is_stable(self):
        assert fallback_guid("a", "b") == fallback_guid("a", "b")
        assert fallback_guid("a", "b") != fallback_guid("a", "c")

    def test_unparseable_date_is_none(self):
        xml = """<rss version="2.0"><channel><title>T</title>
        <item><guid>g</guid><pubDate>not a date</pubDate></item>
        </channel></rss>"""
        assert parse_feed(xml).entries[0].published_at is None

    def test_blank_fields_become_none(self):
        xml = """<rss version="2.0"><channel><title>T</title>
        <item><guid>g</guid><title>   </title><description></description></item>
        </channel></rss>"""
        entry = parse_feed(xml).entries[0]
        assert entry.title is None
        assert entry.content is None
