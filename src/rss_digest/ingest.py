"""Ingestion: subscribe to feeds and pull new entries into a store."""

import asyncio
import logging
from dataclasses import dataclass, field

from rss_digest.discover import discover
from rss_digest.errors import DuplicateURL, FetchError, NotFound, ParseError
from rss_digest.feed_parser import ParsedEntry, parse_feed
from rss_digest.fetcher import fetch, validate_url
from rss_digest.models import Entry, Feed, new_entry, new_feed
from rss_digest.storage import Store
from rss_digest.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class FeedSyncResult:
    """Outcome of syncing one feed."""

    feed: Feed
    new_entries: int = 0
    cached: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncSummary:
    total: int = 0
    new_entries: int = 0
    cached: int = 0
    errors: int = 0
    results: list[FeedSyncResult] = field(default_factory=list)

    def add(self, result: FeedSyncResult) -> None:
        self.total += 1
        self.results.append(result)
        if result.error is not None:
            self.errors += 1
        elif result.cached:
            self.cached += 1
        else:
            self.new_entries += result.new_entries


async def sync_feed(store: Store, feed: Feed, force: bool = False) -> FeedSyncResult:
    """Fetch one feed and store the entries it has not seen before.

    Fetch and parse failures are recorded on the feed and re-raised.
    Store failures propagate untouched.
    """
    etag = None if force else feed.etag
    last_modified = None if force else feed.last_modified

    try:
        result = await asyncio.to_thread(fetch, feed.url, etag, last_modified)
    except FetchError as e:
        store.update_feed_error(feed.id, str(e))
        raise

    if result.not_modified:
        store.update_feed_fetch_state(feed.id, feed.etag, feed.last_modified, utcnow())
        logger.info("Feed '%s': not modified", feed.display_name)
        return FeedSyncResult(feed=feed, cached=True)

    try:
        parsed = parse_feed(result.body)
    except ParseError as e:
        store.update_feed_error(feed.id, f"failed to parse feed: {e}")
        raise

    new_count = 0
    with store.transaction():
        for parsed_entry in parsed.entries:
            if store.entry_exists(feed.id, parsed_entry.guid):
                continue
            store.create_entry(entry_from_parsed(feed.id, parsed_entry))
            new_count += 1

        if not feed.title and parsed.title:
            feed.title = parsed.title
            store.update_feed(feed)

        # Written last so update_feed above cannot restore the old validators
        feed.etag = result.etag or None
        feed.last_modified = result.last_modified or None
        feed.last_fetched_at = utcnow()
        store.update_feed_fetch_state(
            feed.id, feed.etag, feed.last_modified, feed.last_fetched_at
        )

    logger.info("Feed '%s': %d new entries", feed.display_name, new_count)
    return FeedSyncResult(feed=feed, new_entries=new_count)


async def sync_feeds(store: Store, url: str | None = None, force: bool = False) -> SyncSummary:
    """Sync every subscribed feed, or only the one at url.

    Feeds are processed one after another. A feed that fails to fetch or
    parse is reported in the summary and the batch carries on.

    Raises:
        NotFound: url is given but not subscribed.
    """
    if url is not None:
        feeds = [store.get_feed_by_url(url)]
    else:
        feeds = store.list_feeds()

    summary = SyncSummary()
    for feed in feeds:
        try:
            result = await sync_feed(store, feed, force=force)
        except (FetchError, ParseError) as e:
            logger.warning("Feed '%s' error: %s", feed.display_name, e)
            result = FeedSyncResult(feed=feed, error=str(e))
        summary.add(result)
    return summary


def subscribe(
    store: Store,
    url: str,
    title: str | None = None,
    folder: str = "",
    discover_feed: bool = True,
) -> Feed:
    """Add a feed, resolving url to an actual feed document first.

    Raises:
        DuplicateURL: the resolved feed URL is already subscribed.
        NoFeedFound: discovery found nothing at url.
    """
    feed_url = url
    if discover_feed:
        found = discover(url)
        feed_url = found.url
        title = title or found.title
    else:
        validate_url(url)

    try:
        store.get_feed_by_url(feed_url)
    except NotFound:
        pass
    else:
        raise DuplicateURL(f"already subscribed to {feed_url}")

    feed = store.create_feed(new_feed(feed_url, title=title, folder=folder))
    logger.info("Subscribed to %s", feed_url)
    return feed


def entry_from_parsed(feed_id: str, parsed_entry: ParsedEntry) -> Entry:
    """Build a fresh unread Entry from a parsed feed item."""
    entry = new_entry(feed_id, parsed_entry.guid, parsed_entry.title)
    entry.link = parsed_entry.link
    entry.author = parsed_entry.author
    entry.published_at = parsed_entry.published_at
    entry.content = parsed_entry.content
    return entry
