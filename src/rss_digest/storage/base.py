"""Storage interface shared by the SQLite and markdown backends."""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime

from rss_digest.errors import AmbiguousPrefix, NotFound, PrefixTooShort
from rss_digest.models import Entry, Feed

MIN_PREFIX_LENGTH = 6


@dataclass
class EntryFilter:
    """Criteria for list_entries. Every field is optional.

    ``feed_ids`` takes precedence over ``feed_id`` when both are set.
    ``since`` is inclusive, ``until`` exclusive; entries without a
    publication date never match either bound.
    """

    feed_id: str | None = None
    feed_ids: list[str] = field(default_factory=list)
    unread_only: bool = False
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None
    offset: int | None = None


@dataclass
class FeedStats:
    """Per-feed entry counts."""

    feed_id: str
    feed_url: str
    feed_title: str | None
    last_fetched_at: datetime | None
    error_count: int
    last_error: str | None
    entry_count: int
    unread_count: int


@dataclass
class OverallStats:
    total_feeds: int = 0
    total_entries: int = 0
    unread_count: int = 0


class Store(ABC):
    """Persistence for feeds and entries.

    Every operation is synchronous. Lookups that miss raise NotFound; writes
    that would break a uniqueness rule raise DuplicateURL or DuplicateEntry;
    backend failures raise StorageError chained to the original exception.
    """

    def __enter__(self) -> "Store":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @abstractmethod
    def connect(self) -> None:
        """Open the backend and make sure its layout exists."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the backend."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Group several writes so observers see all of them or none."""

    # --- Feed operations ---

    @abstractmethod
    def create_feed(self, feed: Feed) -> Feed: ...

    @abstractmethod
    def get_feed(self, feed_id: str) -> Feed: ...

    @abstractmethod
    def get_feed_by_url(self, url: str) -> Feed: ...

    @abstractmethod
    def get_feed_by_prefix(self, prefix: str) -> Feed: ...

    @abstractmethod
    def list_feeds(self) -> list[Feed]:
        """All feeds, newest first."""

    @abstractmethod
    def update_feed(self, feed: Feed) -> None: ...

    @abstractmethod
    def delete_feed(self, feed_id: str) -> None:
        """Delete a feed and all of its entries."""

    @abstractmethod
    def update_feed_fetch_state(
        self,
        feed_id: str,
        etag: str | None,
        last_modified: str | None,
        fetched_at: datetime,
    ) -> None:
        """Record a successful fetch and clear the error fields."""

    @abstractmethod
    def update_feed_error(self, feed_id: str, message: str) -> None:
        """Record a failed fetch and increment the error count."""

    # --- Entry operations ---

    @abstractmethod
    def create_entry(self, entry: Entry) -> Entry: ...

    @abstractmethod
    def get_entry(self, entry_id: str) -> Entry: ...

    @abstractmethod
    def get_entry_by_prefix(self, prefix: str) -> Entry: ...

    @abstractmethod
    def list_entries(self, entry_filter: EntryFilter | None = None) -> list[Entry]:
        """Entries matching the filter, newest published first."""

    @abstractmethod
    def update_entry(self, entry: Entry) -> None: ...

    @abstractmethod
    def delete_entry(self, entry_id: str) -> None: ...

    @abstractmethod
    def mark_entry_read(self, entry_id: str) -> None: ...

    @abstractmethod
    def mark_entry_unread(self, entry_id: str) -> None: ...

    @abstractmethod
    def mark_entries_read_before(self, cutoff: datetime) -> int:
        """Mark unread entries published before cutoff; return how many."""

    @abstractmethod
    def entry_exists(self, feed_id: str, guid: str) -> bool: ...

    @abstractmethod
    def count_unread_entries(self, feed_id: str | None = None) -> int: ...

    # --- Statistics ---

    @abstractmethod
    def get_feed_stats(self) -> list[FeedStats]: ...

    @abstractmethod
    def get_overall_stats(self) -> OverallStats: ...

    # --- Maintenance ---

    @abstractmethod
    def compact(self) -> None: ...

    @abstractmethod
    def search(self, query: str, limit: int = 20) -> list[Entry]:
        """Entries whose title or content matches query, newest first."""

    # --- Retrieval helpers ---

    def get_entry_by_id_or_prefix(self, ref: str) -> Entry:
        """Exact id first, then prefix matching."""
        try:
            return self.get_entry(ref)
        except NotFound:
            return self.get_entry_by_prefix(ref)

    def get_feed_by_url_or_prefix(self, ref: str) -> Feed:
        """Exact URL first, then id prefix matching."""
        try:
            return self.get_feed_by_url(ref)
        except NotFound:
            pass
        try:
            return self.get_feed_by_prefix(ref)
        except PrefixTooShort:
            raise NotFound(f"feed not found: {ref}") from None


def check_prefix(prefix: str) -> None:
    if len(prefix) < MIN_PREFIX_LENGTH:
        raise PrefixTooShort(
            f"prefix must be at least {MIN_PREFIX_LENGTH} characters"
        )


def single_match(matches: list, prefix: str, kind: str):
    """Return the only element of matches or raise NotFound/AmbiguousPrefix."""
    if not matches:
        raise NotFound(f"no {kind} found with prefix {prefix}")
    if len(matches) > 1:
        raise AmbiguousPrefix(prefix, len(matches))
    return matches[0]


def sort_entries(entries: list[Entry]) -> list[Entry]:
    """Newest published first; entries without a date go last."""
    dated = [e for e in entries if e.published_at is not None]
    undated = [e for e in entries if e.published_at is None]
    dated.sort(key=lambda e: e.published_at, reverse=True)
    return dated + undated


def paginate(entries: list[Entry], limit: int | None, offset: int | None) -> list[Entry]:
    if offset:
        entries = entries[offset:]
    if limit is not None and limit >= 0:
        entries = entries[:limit]
    return entries
