"""End-to-end tests for subscribing and syncing feeds."""

import pytest

from conftest import (
    SAMPLE_ATOM_XML,
    SAMPLE_ATOM_XML_SAME_ITEMS,
    SAMPLE_HTML_WITH_FEED_LINK,
    SAMPLE_RSS_XML,
    SAMPLE_RSS_XML_UPDATED,
)
from rss_digest.errors import DuplicateURL, InvalidURL, NoFeedFound, NotFound, ParseError, UnexpectedStatus
from rss_digest.ingest import subscribe, sync_feed, sync_feeds
from rss_digest.models import new_feed
from rss_digest.storage import EntryFilter


class TestSubscribe:
    def test_subscribe_via_html_page(self, store, feed_server):
        page = feed_server.add("/", SAMPLE_HTML_WITH_FEED_LINK, content_type="text/html")
        feed_url = feed_server.add("/feeds/main.xml", SAMPLE_ATOM_XML)

        feed = subscribe(store, page, folder="blogs")

        assert feed.url == feed_url
        assert feed.title == "Test Atom Feed"
        assert store.get_feed_by_url(feed_url).folder == "blogs"

    def test_explicit_title_wins(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML)
        feed = subscribe(store, url, title="Mine")
        assert feed.title == "Mine"

    def test_already_subscribed(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML)
        subscribe(store, url)
        with pytest.raises(DuplicateURL):
            subscribe(store, url)

    def test_no_discover_skips_network(self, store, feed_server):
        url = feed_server.url("/not-yet.xml")
        feed = subscribe(store, url, discover_feed=False)
        assert feed.url == url
        assert feed.title is None
        assert feed_server.requests == []

    def test_no_discover_still_validates(self, store):
        with pytest.raises(InvalidURL):
            subscribe(store, "ftp://example.com/feed", discover_feed=False)

    def test_nothing_to_subscribe(self, store, feed_server):
        page = feed_server.add("/", "<html><body>hi</body></html>", content_type="text/html")
        with pytest.raises(NoFeedFound):
            subscribe(store, page)
        assert store.list_feeds() == []


class TestSyncFeed:
    @pytest.mark.asyncio
    async def test_first_sync(self, store, feed_server):
        url = feed_server.add(
            "/feed.xml",
            SAMPLE_RSS_XML,
            etag='"v1"',
            headers={"Last-Modified": "Fri, 13 Feb 2026 10:00:00 GMT"},
        )
        feed = store.create_feed(new_feed(url))

        result = await sync_feed(store, feed)

        assert result.new_entries == 2
        assert result.cached is False
        stored = store.get_feed(feed.id)
        assert stored.title == "Test Feed"
        assert stored.etag == '"v1"'
        assert stored.last_modified == "Fri, 13 Feb 2026 10:00:00 GMT"
        assert stored.last_fetched_at is not None
        assert store.count_unread_entries(feed.id) == 2

    @pytest.mark.asyncio
    async def test_second_sync_is_cached(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML, etag='"v1"')
        feed = store.create_feed(new_feed(url))
        await sync_feed(store, feed)
        first_fetch = store.get_feed(feed.id).last_fetched_at

        result = await sync_feed(store, store.get_feed(feed.id))

        assert result.cached is True
        assert result.new_entries == 0
        assert feed_server.requests[-1].headers["If-None-Match"] == '"v1"'
        stored = store.get_feed(feed.id)
        assert stored.etag == '"v1"'
        assert stored.last_fetched_at >= first_fetch
        assert len(store.list_entries()) == 2

    @pytest.mark.asyncio
    async def test_force_skips_validators(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML, etag='"v1"')
        feed = store.create_feed(new_feed(url))
        await sync_feed(store, feed)

        result = await sync_feed(store, store.get_feed(feed.id), force=True)

        assert result.cached is False
        assert result.new_entries == 0
        assert "If-None-Match" not in feed_server.requests[-1].headers

    @pytest.mark.asyncio
    async def test_read_state_preserved_across_syncs(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML, etag='"v1"')
        feed = store.create_feed(new_feed(url))
        await sync_feed(store, feed)
        first = next(e for e in store.list_entries() if e.guid == "article-1")
        store.mark_entry_read(first.id)

        feed_server.add("/feed.xml", SAMPLE_RSS_XML_UPDATED, etag='"v2"')
        result = await sync_feed(store, store.get_feed(feed.id))

        assert result.new_entries == 1
        assert store.get_entry(first.id).read is True
        assert store.get_feed(feed.id).etag == '"v2"'
        guids = [e.guid for e in store.list_entries()]
        assert guids == ["article-3", "article-1", "article-2"]
        assert [e.guid for e in store.list_entries(EntryFilter(unread_only=True))] == [
            "article-3",
            "article-2",
        ]

    @pytest.mark.asyncio
    async def test_switch_from_rss_to_atom_adds_nothing(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML, etag='"rss"')
        feed = store.create_feed(new_feed(url))
        first = await sync_feed(store, feed)

        feed_server.add("/feed.xml", SAMPLE_ATOM_XML_SAME_ITEMS, etag='"atom"')
        result = await sync_feed(store, store.get_feed(feed.id))

        assert first.new_entries == 2
        assert result.new_entries == 0
        assert sorted(e.guid for e in store.list_entries()) == ["article-1", "article-2"]
        assert store.get_feed(feed.id).etag == '"atom"'

    @pytest.mark.asyncio
    async def test_existing_title_is_kept(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML)
        feed = store.create_feed(new_feed(url, title="My Name"))
        await sync_feed(store, feed)
        assert store.get_feed(feed.id).title == "My Name"

    @pytest.mark.asyncio
    async def test_fetch_error_recorded(self, store, feed_server):
        url = feed_server.add("/feed.xml", "oops", status=500)
        feed = store.create_feed(new_feed(url))

        with pytest.raises(UnexpectedStatus):
            await sync_feed(store, feed)

        stored = store.get_feed(feed.id)
        assert stored.error_count == 1
        assert "500" in stored.last_error
        assert stored.last_fetched_at is None

    @pytest.mark.asyncio
    async def test_parse_error_recorded(self, store, feed_server):
        url = feed_server.add("/feed.xml", "<html><body>nope</body></html>", content_type="text/html")
        feed = store.create_feed(new_feed(url))

        with pytest.raises(ParseError):
            await sync_feed(store, feed)

        stored = store.get_feed(feed.id)
        assert stored.error_count == 1
        assert stored.last_error.startswith("failed to parse feed")
        assert store.list_entries() == []

    @pytest.mark.asyncio
    async def test_success_clears_previous_errors(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML)
        feed = store.create_feed(new_feed(url))
        store.update_feed_error(feed.id, "earlier failure")

        await sync_feed(store, store.get_feed(feed.id))

        stored = store.get_feed(feed.id)
        assert stored.error_count == 0
        assert stored.last_error is None


class TestSyncFeeds:
    @pytest.mark.asyncio
    async def test_batch_continues_after_failure(self, store, feed_server):
        good = feed_server.add("/good.xml", SAMPLE_RSS_XML)
        bad = feed_server.url("/gone.xml")
        store.create_feed(new_feed(bad))
        store.create_feed(new_feed(good))

        summary = await sync_feeds(store)

        assert summary.total == 2
        assert summary.errors == 1
        assert summary.new_entries == 2
        assert summary.cached == 0
        failed = [r for r in summary.results if not r.ok]
        assert failed[0].feed.url == bad
        assert store.get_feed_by_url(bad).error_count == 1

    @pytest.mark.asyncio
    async def test_single_url(self, store, feed_server):
        one = feed_server.add("/one.xml", SAMPLE_RSS_XML)
        two = feed_server.add("/two.xml", SAMPLE_ATOM_XML)
        store.create_feed(new_feed(one))
        store.create_feed(new_feed(two))

        summary = await sync_feeds(store, url=two)

        assert summary.total == 1
        assert summary.new_entries == 1
        assert feed_server.requests_to("/one.xml") == []

    @pytest.mark.asyncio
    async def test_unknown_url(self, store):
        with pytest.raises(NotFound):
            await sync_feeds(store, url="https://not-subscribed.example/feed.xml")

    @pytest.mark.asyncio
    async def test_cached_counted(self, store, feed_server):
        url = feed_server.add("/feed.xml", SAMPLE_RSS_XML, etag='"v1"')
        store.create_feed(new_feed(url))
        await sync_feeds(store)

        summary = await sync_feeds(store)

        assert summary.cached == 1
        assert summary.new_entries == 0
