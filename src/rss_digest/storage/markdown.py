"""Markdown storage backend.

Layout under the data directory::

    _feeds.yaml                 feed registry (list of records, each with a slug)
    .lock                       advisory lock: shared for reads, exclusive for writes
    <feed-slug>/
        <title-slug>-<id8>.md   one entry: YAML front matter, blank line, content
"""

import logging
import os
import shutil
from contextlib import contextmanager, suppress
from datetime import datetime
from urllib.parse import urlparse

import yaml

from rss_digest.errors import DuplicateEntry, DuplicateURL, NotFound, StorageError
from rss_digest.models import Entry, Feed
from rss_digest.storage.base import (
    EntryFilter,
    FeedStats,
    OverallStats,
    Store,
    check_prefix,
    paginate,
    single_match,
    sort_entries,
)
from rss_digest.storage.files import (
    DirLock,
    atomic_write,
    dump_yaml,
    parse_front_matter,
    read_yaml,
    render_front_matter,
    slugify,
    unique_slug,
)
from rss_digest.timeutil import ensure_utc, from_storage, to_storage, utcnow

logger = logging.getLogger(__name__)

FEEDS_FILENAME = "_feeds.yaml"
ENTRY_SUFFIX = ".md"
MAX_ENTRY_SLUG = 80
ID_TAG_LENGTH = 8


class MarkdownStore(Store):
    """Human-readable store of YAML and markdown files in one directory.

    Every write goes through the outermost open transaction, which keeps
    the prior bytes of each file it touches and puts them back if the
    block raises.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self._lock = DirLock(data_dir)
        # path -> original bytes, None for files the transaction created
        self._journal: dict[str, bytes | None] | None = None
        self._new_dirs: list[str] = []
        # feed slug -> guids on disk, valid while the exclusive lock is held
        self._guid_cache: dict[str, set[str]] | None = None

    def connect(self) -> None:
        try:
            os.makedirs(self.data_dir, mode=0o700, exist_ok=True)
        except OSError as e:
            raise StorageError(f"create data directory {self.data_dir}: {e}") from e

    def close(self) -> None:
        pass

    @contextmanager
    def transaction(self):
        """Hold the exclusive lock for the block and undo its writes on error."""
        with self._lock.held():
            if self._journal is not None:
                yield self
                return

            self._journal = {}
            self._new_dirs = []
            self._guid_cache = {}
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._journal = None
                self._new_dirs = []
                self._guid_cache = None

    def _rollback(self) -> None:
        logger.debug("Rolling back %d file changes in %s", len(self._journal), self.data_dir)
        for path, original in self._journal.items():
            try:
                if original is None:
                    with suppress(FileNotFoundError):
                        os.remove(path)
                else:
                    atomic_write(path, original)
            except OSError as e:
                logger.error("Could not restore %s: %s", path, e)
        for directory in reversed(self._new_dirs):
            try:
                os.rmdir(directory)
            except OSError as e:
                logger.debug("Leaving directory %s: %s", directory, e)

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except (OSError, yaml.YAMLError) as e:
            raise StorageError(f"{action}: {e}") from e

    @contextmanager
    def _reading(self, action: str):
        with self._guard(action), self._lock.held(shared=True):
            yield

    @contextmanager
    def _writing(self, action: str):
        with self._guard(action), self.transaction():
            yield

    # --- Journalled file operations ---

    def _remember(self, path: str) -> None:
        if self._journal is None or path in self._journal:
            return
        try:
            with open(path, "rb") as f:
                self._journal[path] = f.read()
        except FileNotFoundError:
            self._journal[path] = None

    def _put(self, path: str, text: str) -> None:
        self._remember(path)
        atomic_write(path, text)

    def _drop(self, path: str) -> None:
        self._remember(path)
        os.remove(path)

    def _move(self, src: str, dst: str) -> None:
        self._remember(src)
        self._remember(dst)
        os.replace(src, dst)

    def _make_dir(self, path: str) -> None:
        if os.path.isdir(path):
            return
        os.makedirs(path, mode=0o700)
        self._new_dirs.append(path)

    def _drop_tree(self, path: str) -> None:
        for root, _, names in os.walk(path):
            for name in names:
                self._remember(os.path.join(root, name))
        shutil.rmtree(path)

    # --- Registry ---

    @property
    def feeds_path(self) -> str:
        return os.path.join(self.data_dir, FEEDS_FILENAME)

    def _feed_dir(self, slug: str) -> str:
        return os.path.join(self.data_dir, slug)

    def _read_registry(self) -> list[dict]:
        with self._guard("read feeds file"):
            records = read_yaml(self.feeds_path, default=[])
        if not isinstance(records, list):
            raise StorageError(f"read feeds file: {self.feeds_path} is not a list")
        return records

    def _write_registry(self, records: list[dict]) -> None:
        self._put(self.feeds_path, dump_yaml(records))

    def _find_record(self, records: list[dict], feed_id: str) -> dict:
        for record in records:
            if record.get("id") == feed_id:
                return record
        raise NotFound(f"feed not found: {feed_id}")

    def _feed_slug(self, feed: Feed, records: list[dict]) -> str:
        base = feed.title or urlparse(feed.url).hostname or feed.url
        registered = {r.get("slug") for r in records}
        return unique_slug(
            base,
            lambda s: s in registered or os.path.exists(self._feed_dir(s)),
        )

    # --- Feed operations ---

    def create_feed(self, feed: Feed) -> Feed:
        with self._writing("create feed"):
            records = self._read_registry()
            if any(r.get("url") == feed.url for r in records):
                raise DuplicateURL(f"feed URL {feed.url!r} already exists")
            slug = self._feed_slug(feed, records)
            self._make_dir(self._feed_dir(slug))
            records.append(_feed_to_record(feed, slug))
            self._write_registry(records)
        return feed

    def get_feed(self, feed_id: str) -> Feed:
        with self._reading("read feeds file"):
            return _record_to_feed(self._find_record(self._read_registry(), feed_id))

    def get_feed_by_url(self, url: str) -> Feed:
        with self._reading("read feeds file"):
            records = self._read_registry()
        for record in records:
            if record.get("url") == url:
                return _record_to_feed(record)
        raise NotFound(f"feed not found: {url}")

    def get_feed_by_prefix(self, prefix: str) -> Feed:
        check_prefix(prefix)
        with self._reading("read feeds file"):
            records = self._read_registry()
        matches = [
            _record_to_feed(r)
            for r in records
            if str(r.get("id", "")).startswith(prefix)
        ]
        return single_match(matches, prefix, "feed")

    def list_feeds(self) -> list[Feed]:
        with self._reading("read feeds file"):
            feeds = [_record_to_feed(r) for r in self._read_registry()]
        feeds.sort(key=lambda f: f.created_at, reverse=True)
        return feeds

    def update_feed(self, feed: Feed) -> None:
        with self._writing("update feed"):
            records = self._read_registry()
            record = self._find_record(records, feed.id)
            if any(r.get("url") == feed.url and r is not record for r in records):
                raise DuplicateURL(f"feed URL {feed.url!r} already exists")
            record.update(_feed_to_record(feed, record.get("slug")))
            self._write_registry(records)

    def delete_feed(self, feed_id: str) -> None:
        with self._writing("delete feed"):
            records = self._read_registry()
            record = self._find_record(records, feed_id)
            records.remove(record)
            self._write_registry(records)
            slug = record.get("slug")
            if slug:
                feed_dir = self._feed_dir(slug)
                if os.path.isdir(feed_dir):
                    self._drop_tree(feed_dir)
                self._forget_guids()

    def update_feed_fetch_state(
        self,
        feed_id: str,
        etag: str | None,
        last_modified: str | None,
        fetched_at: datetime,
    ) -> None:
        with self._writing("update feed fetch state"):
            records = self._read_registry()
            record = self._find_record(records, feed_id)
            record.update(
                etag=etag,
                last_modified=last_modified,
                last_fetched_at=to_storage(fetched_at),
                last_error=None,
                error_count=0,
            )
            self._write_registry(records)

    def update_feed_error(self, feed_id: str, message: str) -> None:
        with self._writing("update feed error"):
            records = self._read_registry()
            record = self._find_record(records, feed_id)
            record["error_count"] = int(record.get("error_count") or 0) + 1
            record["last_error"] = message
            self._write_registry(records)

    # --- Entry files ---

    def _entry_files(self, slug: str) -> list[str]:
        directory = self._feed_dir(slug)
        try:
            names = sorted(os.listdir(directory))
        except FileNotFoundError:
            return []
        return [
            os.path.join(directory, name)
            for name in names
            if name.endswith(ENTRY_SUFFIX) and not name.startswith(".")
        ]

    def _load_entries(self, slug: str, tag: str | None = None) -> list[tuple[str, Entry]]:
        """Parse the entry files of one feed; malformed files are skipped.

        When tag is given only files whose id suffix starts with it are read.
        """
        loaded = []
        for path in self._entry_files(slug):
            if tag is not None and not _file_tag(path).startswith(tag):
                continue
            entry = _read_entry_file(path)
            if entry is not None:
                loaded.append((path, entry))
        return loaded

    def _all_entries(self, records: list[dict], tag: str | None = None):
        for record in records:
            slug = record.get("slug")
            if slug:
                yield from self._load_entries(slug, tag)

    def _feed_guids(self, slug: str) -> set[str]:
        """Guids stored under one feed, parsed once per transaction."""
        cache = self._guid_cache
        if cache is not None and slug in cache:
            return cache[slug]
        guids = {entry.guid for _, entry in self._load_entries(slug)}
        if cache is not None:
            cache[slug] = guids
        return guids

    def _forget_guids(self) -> None:
        if self._guid_cache is not None:
            self._guid_cache.clear()

    def _locate_entry(self, entry_id: str) -> tuple[str, Entry]:
        with self._guard("read entries"):
            for path, entry in self._all_entries(
                self._read_registry(), entry_id[:ID_TAG_LENGTH]
            ):
                if entry.id == entry_id:
                    return path, entry
        raise NotFound(f"entry not found: {entry_id}")

    # --- Entry operations ---

    def create_entry(self, entry: Entry) -> Entry:
        with self._writing("create entry"):
            record = self._find_record(self._read_registry(), entry.feed_id)
            slug = record["slug"]
            guids = self._feed_guids(slug)
            if entry.guid in guids:
                raise DuplicateEntry(
                    f"entry {entry.guid!r} already exists in feed {entry.feed_id}"
                )
            self._put(_free_entry_path(self._feed_dir(slug), entry), _render_entry(entry))
            guids.add(entry.guid)
        return entry

    def get_entry(self, entry_id: str) -> Entry:
        with self._reading("read entries"):
            return self._locate_entry(entry_id)[1]

    def get_entry_by_prefix(self, prefix: str) -> Entry:
        check_prefix(prefix)
        with self._reading("read entries"):
            matches = [
                entry
                for _, entry in self._all_entries(
                    self._read_registry(), prefix[:ID_TAG_LENGTH]
                )
                if entry.id.startswith(prefix)
            ]
        return single_match(matches, prefix, "entry")

    def list_entries(self, entry_filter: EntryFilter | None = None) -> list[Entry]:
        f = entry_filter or EntryFilter()
        with self._reading("read entries"):
            records = self._read_registry()
            if f.feed_ids:
                wanted = set(f.feed_ids)
                records = [r for r in records if r.get("id") in wanted]
            elif f.feed_id is not None:
                records = [r for r in records if r.get("id") == f.feed_id]
            entries = [entry for _, entry in self._all_entries(records)]

        if f.unread_only:
            entries = [e for e in entries if not e.read]
        if f.since is not None:
            since = ensure_utc(f.since)
            entries = [e for e in entries if e.published_at is not None and e.published_at >= since]
        if f.until is not None:
            until = ensure_utc(f.until)
            entries = [e for e in entries if e.published_at is not None and e.published_at < until]

        return paginate(sort_entries(entries), f.limit, f.offset)

    def _rewrite_entry(self, path: str, entry: Entry) -> None:
        """Store entry at the file name its title now calls for.

        The old file is renamed first so the entry never exists twice.
        """
        new_path = _free_entry_path(os.path.dirname(path), entry, current=path)
        if new_path != path:
            self._move(path, new_path)
        self._put(new_path, _render_entry(entry))

    def update_entry(self, entry: Entry) -> None:
        with self._writing("update entry"):
            path, _ = self._locate_entry(entry.id)
            self._rewrite_entry(path, entry)
            self._forget_guids()

    def delete_entry(self, entry_id: str) -> None:
        with self._writing("delete entry"):
            path, _ = self._locate_entry(entry_id)
            self._drop(path)
            self._forget_guids()

    def mark_entry_read(self, entry_id: str) -> None:
        with self._writing("mark entry read"):
            path, entry = self._locate_entry(entry_id)
            if entry.read and entry.read_at is not None:
                return
            entry.mark_read()
            self._rewrite_entry(path, entry)

    def mark_entry_unread(self, entry_id: str) -> None:
        with self._writing("mark entry unread"):
            path, entry = self._locate_entry(entry_id)
            entry.mark_unread()
            self._rewrite_entry(path, entry)

    def mark_entries_read_before(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        now = utcnow()
        count = 0
        with self._writing("mark entries read before"):
            for path, entry in list(self._all_entries(self._read_registry())):
                if entry.read or entry.published_at is None or entry.published_at >= cutoff:
                    continue
                entry.mark_read(now)
                self._rewrite_entry(path, entry)
                count += 1
        return count

    def entry_exists(self, feed_id: str, guid: str) -> bool:
        with self._reading("read entries"):
            try:
                record = self._find_record(self._read_registry(), feed_id)
            except NotFound:
                return False
            return guid in self._feed_guids(record["slug"])

    def count_unread_entries(self, feed_id: str | None = None) -> int:
        with self._reading("read entries"):
            records = self._read_registry()
            if feed_id is not None:
                records = [r for r in records if r.get("id") == feed_id]
            return sum(1 for _, e in self._all_entries(records) if not e.read)

    # --- Statistics ---

    def get_feed_stats(self) -> list[FeedStats]:
        stats = []
        with self._reading("read entries"):
            for feed in self.list_feeds():
                entries = self.list_entries(EntryFilter(feed_id=feed.id))
                stats.append(
                    FeedStats(
                        feed_id=feed.id,
                        feed_url=feed.url,
                        feed_title=feed.title,
                        last_fetched_at=feed.last_fetched_at,
                        error_count=feed.error_count,
                        last_error=feed.last_error,
                        entry_count=len(entries),
                        unread_count=sum(1 for e in entries if not e.read),
                    )
                )
        return stats

    def get_overall_stats(self) -> OverallStats:
        with self._reading("read entries"):
            records = self._read_registry()
            entries = [e for _, e in self._all_entries(records)]
        return OverallStats(
            total_feeds=len(records),
            total_entries=len(entries),
            unread_count=sum(1 for e in entries if not e.read),
        )

    # --- Maintenance ---

    def compact(self) -> None:
        """Nothing to reclaim for plain files."""

    def search(self, query: str, limit: int = 20) -> list[Entry]:
        """Case-insensitive substring match on title and content."""
        needle = query.strip().lower()
        if not needle:
            return []
        matches = [
            e
            for e in self.list_entries()
            if needle in (e.title or "").lower() or needle in (e.content or "").lower()
        ]
        return matches[:limit]


# --- Helper functions ---


def entry_filename(entry: Entry) -> str:
    """``<slug(title)[:80]>-<id[:8]>.md``"""
    slug = slugify(entry.title or "untitled")[:MAX_ENTRY_SLUG]
    return f"{slug}-{entry.id[:ID_TAG_LENGTH]}{ENTRY_SUFFIX}"


def _free_entry_path(directory: str, entry: Entry, current: str | None = None) -> str:
    """Path for entry in directory that does not clobber another entry's file."""
    name = entry_filename(entry)
    path = os.path.join(directory, name)
    slug, tag = name[: -len(ENTRY_SUFFIX)].rsplit("-", 1)
    n = 2
    while path != current and os.path.exists(path):
        path = os.path.join(directory, f"{slug}-{n}-{tag}{ENTRY_SUFFIX}")
        n += 1
    return path


def _file_tag(path: str) -> str:
    name = os.path.basename(path)[: -len(ENTRY_SUFFIX)]
    return name.rsplit("-", 1)[-1]


def _feed_to_record(feed: Feed, slug: str | None) -> dict:
    return {
        "id": feed.id,
        "url": feed.url,
        "title": feed.title,
        "folder": feed.folder or "",
        "etag": feed.etag,
        "last_modified": feed.last_modified,
        "last_fetched_at": to_storage(feed.last_fetched_at),
        "last_error": feed.last_error,
        "error_count": feed.error_count,
        "created_at": to_storage(feed.created_at),
        "slug": slug,
    }


def _record_to_feed(record: dict) -> Feed:
    return Feed(
        id=str(record["id"]),
        url=str(record["url"]),
        title=_opt_str(record.get("title")),
        folder=record.get("folder") or "",
        etag=_opt_str(record.get("etag")),
        last_modified=_opt_str(record.get("last_modified")),
        last_fetched_at=_load_time(record.get("last_fetched_at")),
        last_error=_opt_str(record.get("last_error")),
        error_count=int(record.get("error_count") or 0),
        created_at=_load_time(record.get("created_at")) or utcnow(),
    )


def _render_entry(entry: Entry) -> str:
    meta = {
        "id": entry.id,
        "feed_id": entry.feed_id,
        "guid": entry.guid,
        "title": entry.title,
        "link": entry.link,
        "author": entry.author,
        "published_at": to_storage(entry.published_at),
        "read": entry.read,
        "read_at": to_storage(entry.read_at),
        "created_at": to_storage(entry.created_at),
    }
    return render_front_matter(meta, entry.content)


def _read_entry_file(path: str) -> Entry | None:
    """Parse one entry file; None if it is malformed."""
    try:
        with open(path, encoding="utf-8") as f:
            meta, body = parse_front_matter(f.read())
        return Entry(
            id=str(meta["id"]),
            feed_id=str(meta["feed_id"]),
            guid=str(meta["guid"]),
            title=_opt_str(meta.get("title")),
            link=_opt_str(meta.get("link")),
            author=_opt_str(meta.get("author")),
            content=body,
            published_at=_load_time(meta.get("published_at")),
            read=bool(meta.get("read")),
            read_at=_load_time(meta.get("read_at")),
            created_at=_load_time(meta.get("created_at")) or utcnow(),
        )
    except FileNotFoundError:
        return None
    except (KeyError, TypeError, ValueError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.debug("Skipping malformed entry file %s: %s", path, e)
        return None


def _load_time(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return from_storage(str(value))


def _opt_str(value) -> str | None:
    return None if value is None else str(value)
