"""SQLite storage backend with FTS5 full-text search."""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime

from rss_digest.errors import DuplicateEntry, DuplicateURL, NotFound, StorageError
from rss_digest.models import Entry, Feed
from rss_digest.storage.base import (
    EntryFilter,
    FeedStats,
    OverallStats,
    Store,
    check_prefix,
    single_match,
)
from rss_digest.timeutil import from_storage, to_storage, utcnow

logger = logging.getLogger(__name__)

DB_FILENAME = "digest.db"

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS feeds (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    url TEXT UNIQUE NOT NULL,
    title TEXT,
    folder TEXT NOT NULL DEFAULT '',
    etag TEXT,
    last_modified TEXT,
    last_fetched_at TEXT,
    last_error TEXT,
    error_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entries (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    guid TEXT NOT NULL,
    title TEXT,
    link TEXT,
    author TEXT,
    published_at TEXT,
    content TEXT,
    read INTEGER NOT NULL DEFAULT 0,
    read_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(feed_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_entries_feed_id ON entries(feed_id);
CREATE INDEX IF NOT EXISTS idx_entries_read ON entries(read);
CREATE INDEX IF NOT EXISTS idx_entries_published_at ON entries(published_at);

CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    title,
    content,
    content='entries',
    content_rowid='pk'
);

CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, title, content) VALUES (new.pk, new.title, new.content);
END;

CREATE TRIGGER IF NOT EXISTS entries_ad AFTER DELETE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, content) VALUES ('delete', old.pk, old.title, old.content);
END;

CREATE TRIGGER IF NOT EXISTS entries_au AFTER UPDATE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, content) VALUES ('delete', old.pk, old.title, old.content);
    INSERT INTO entries_fts(rowid, title, content) VALUES (new.pk, new.title, new.content);
END;
"""

# Applied in order; PRAGMA user_version records how many have run.
MIGRATIONS = [SCHEMA_V1]

FEED_COLUMNS = (
    "id, url, title, folder, etag, last_modified, last_fetched_at, "
    "last_error, error_count, created_at"
)
ENTRY_COLUMNS = (
    "id, feed_id, guid, title, link, author, published_at, content, "
    "read, read_at, created_at"
)
PREFIXED_ENTRY_COLUMNS = ", ".join("e." + c.strip() for c in ENTRY_COLUMNS.split(","))


class SQLiteStore(Store):
    """SQLite database manager for feeds and entries."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    @classmethod
    def in_dir(cls, data_dir: str) -> "SQLiteStore":
        return cls(os.path.join(data_dir, DB_FILENAME))

    def connect(self) -> None:
        """Open database connection and bring the schema up to date."""
        try:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, mode=0o700, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except (sqlite3.Error, OSError) as e:
            self.close()
            raise StorageError(f"open database {self.db_path}: {e}") from e

    def _migrate(self) -> None:
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        for number, script in enumerate(MIGRATIONS[version:], start=version + 1):
            logger.info("Applying schema migration %d to %s", number, self.db_path)
            self.conn.executescript(script)
            self.conn.execute(f"PRAGMA user_version = {number}")
            self.conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def transaction(self):
        """Commit on success, roll back everything on error. Nests."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self._tx_depth = 1
        try:
            yield self
            self.conn.commit()
        except BaseException:
            self.conn.rollback()
            raise
        finally:
            self._tx_depth = 0

    @contextmanager
    def _writing(self, action: str):
        """Run a write inside a transaction and translate sqlite errors."""
        try:
            with self.transaction():
                yield
        except sqlite3.Error as e:
            raise StorageError(f"{action}: {e}") from e

    def _query(self, sql: str, params=()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"query failed: {e}") from e

    # --- Feed operations ---

    def create_feed(self, feed: Feed) -> Feed:
        """Insert a new feed."""
        try:
            with self._writing("insert feed"):
                self.conn.execute(
                    f"INSERT INTO feeds ({FEED_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        feed.id,
                        feed.url,
                        feed.title,
                        feed.folder or "",
                        feed.etag,
                        feed.last_modified,
                        to_storage(feed.last_fetched_at),
                        feed.last_error,
                        feed.error_count,
                        to_storage(feed.created_at),
                    ),
                )
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError) and "feeds.url" in str(e):
                raise DuplicateURL(f"feed URL {feed.url!r} already exists") from e.__cause__
            raise
        return feed

    def get_feed(self, feed_id: str) -> Feed:
        rows = self._query(f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,))
        if not rows:
            raise NotFound(f"feed not found: {feed_id}")
        return _row_to_feed(rows[0])

    def get_feed_by_url(self, url: str) -> Feed:
        """Look up a feed by its URL."""
        rows = self._query(f"SELECT {FEED_COLUMNS} FROM feeds WHERE url = ?", (url,))
        if not rows:
            raise NotFound(f"feed not found: {url}")
        return _row_to_feed(rows[0])

    def get_feed_by_prefix(self, prefix: str) -> Feed:
        check_prefix(prefix)
        rows = self._query(
            f"SELECT {FEED_COLUMNS} FROM feeds WHERE substr(id, 1, ?) = ?",
            (len(prefix), prefix),
        )
        return single_match([_row_to_feed(r) for r in rows], prefix, "feed")

    def list_feeds(self) -> list[Feed]:
        rows = self._query(f"SELECT {FEED_COLUMNS} FROM feeds ORDER BY created_at DESC")
        return [_row_to_feed(r) for r in rows]

    def update_feed(self, feed: Feed) -> None:
        try:
            with self._writing("update feed"):
                cursor = self.conn.execute(
                    """UPDATE feeds SET url = ?, title = ?, folder = ?, etag = ?,
                       last_modified = ?, last_fetched_at = ?, last_error = ?,
                       error_count = ?
                       WHERE id = ?""",
                    (
                        feed.url,
                        feed.title,
                        feed.folder or "",
                        feed.etag,
                        feed.last_modified,
                        to_storage(feed.last_fetched_at),
                        feed.last_error,
                        feed.error_count,
                        feed.id,
                    ),
                )
                _require_row(cursor, "feed", feed.id)
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError) and "feeds.url" in str(e):
                raise DuplicateURL(f"feed URL {feed.url!r} already exists") from e.__cause__
            raise

    def delete_feed(self, feed_id: str) -> None:
        """Delete a feed; its entries go with it through ON DELETE CASCADE."""
        with self._writing("delete feed"):
            cursor = self.conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            _require_row(cursor, "feed", feed_id)

    def update_feed_fetch_state(
        self,
        feed_id: str,
        etag: str | None,
        last_modified: str | None,
        fetched_at: datetime,
    ) -> None:
        with self._writing("update feed fetch state"):
            cursor = self.conn.execute(
                """UPDATE feeds SET etag = ?, last_modified = ?, last_fetched_at = ?,
                   last_error = NULL, error_count = 0
                   WHERE id = ?""",
                (etag, last_modified, to_storage(fetched_at), feed_id),
            )
            _require_row(cursor, "feed", feed_id)

    def update_feed_error(self, feed_id: str, message: str) -> None:
        """Increment error count and store error message for a feed."""
        with self._writing("update feed error"):
            cursor = self.conn.execute(
                """UPDATE feeds SET error_count = error_count + 1, last_error = ?
                   WHERE id = ?""",
                (message, feed_id),
            )
            _require_row(cursor, "feed", feed_id)

    # --- Entry operations ---

    def create_entry(self, entry: Entry) -> Entry:
        try:
            with self._writing("insert entry"):
                self.conn.execute(
                    f"INSERT INTO entries ({ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        entry.id,
                        entry.feed_id,
                        entry.guid,
                        entry.title,
                        entry.link,
                        entry.author,
                        to_storage(entry.published_at),
                        entry.content,
                        int(entry.read),
                        to_storage(entry.read_at),
                        to_storage(entry.created_at),
                    ),
                )
        except StorageError as e:
            cause = e.__cause__
            if isinstance(cause, sqlite3.IntegrityError):
                if "entries.feed_id, entries.guid" in str(cause):
                    raise DuplicateEntry(
                        f"entry {entry.guid!r} already exists in feed {entry.feed_id}"
                    ) from cause
                if "FOREIGN KEY" in str(cause):
                    raise NotFound(f"feed not found: {entry.feed_id}") from cause
            raise
        return entry

    def get_entry(self, entry_id: str) -> Entry:
        rows = self._query(f"SELECT {ENTRY_COLUMNS} FROM entries WHERE id = ?", (entry_id,))
        if not rows:
            raise NotFound(f"entry not found: {entry_id}")
        return _row_to_entry(rows[0])

    def get_entry_by_prefix(self, prefix: str) -> Entry:
        check_prefix(prefix)
        rows = self._query(
            f"SELECT {ENTRY_COLUMNS} FROM entries WHERE substr(id, 1, ?) = ?",
            (len(prefix), prefix),
        )
        return single_match([_row_to_entry(r) for r in rows], prefix, "entry")

    def list_entries(self, entry_filter: EntryFilter | None = None) -> list[Entry]:
        """Get entries, optionally filtered, newest published first."""
        query = f"SELECT {ENTRY_COLUMNS} FROM entries WHERE 1=1"
        params: list = []
        f = entry_filter or EntryFilter()

        if f.feed_ids:
            placeholders = ",".join("?" for _ in f.feed_ids)
            query += f" AND feed_id IN ({placeholders})"
            params.extend(f.feed_ids)
        elif f.feed_id is not None:
            query += " AND feed_id = ?"
            params.append(f.feed_id)
        if f.unread_only:
            query += " AND read = 0"
        if f.since is not None:
            query += " AND published_at >= ?"
            params.append(to_storage(f.since))
        if f.until is not None:
            query += " AND published_at < ?"
            params.append(to_storage(f.until))

        query += " ORDER BY published_at IS NULL, published_at DESC"

        if f.limit is not None or f.offset:
            query += " LIMIT ? OFFSET ?"
            params.append(f.limit if f.limit is not None else -1)
            params.append(f.offset or 0)

        return [_row_to_entry(r) for r in self._query(query, params)]

    def update_entry(self, entry: Entry) -> None:
        with self._writing("update entry"):
            cursor = self.conn.execute(
                """UPDATE entries SET title = ?, link = ?, author = ?, published_at = ?,
                   content = ?, read = ?, read_at = ?
                   WHERE id = ?""",
                (
                    entry.title,
                    entry.link,
                    entry.author,
                    to_storage(entry.published_at),
                    entry.content,
                    int(entry.read),
                    to_storage(entry.read_at),
                    entry.id,
                ),
            )
            _require_row(cursor, "entry", entry.id)

    def delete_entry(self, entry_id: str) -> None:
        with self._writing("delete entry"):
            cursor = self.conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            _require_row(cursor, "entry", entry_id)

    def mark_entry_read(self, entry_id: str) -> None:
        with self._writing("mark entry read"):
            cursor = self.conn.execute(
                """UPDATE entries SET read_at = CASE WHEN read = 1 AND read_at IS NOT NULL
                   THEN read_at ELSE ? END,
                   read = 1 WHERE id = ?""",
                (to_storage(utcnow()), entry_id),
            )
            _require_row(cursor, "entry", entry_id)

    def mark_entry_unread(self, entry_id: str) -> None:
        with self._writing("mark entry unread"):
            cursor = self.conn.execute(
                "UPDATE entries SET read = 0, read_at = NULL WHERE id = ?",
                (entry_id,),
            )
            _require_row(cursor, "entry", entry_id)

    def mark_entries_read_before(self, cutoff: datetime) -> int:
        """Mark unread entries published before cutoff. Returns count of affected rows."""
        with self._writing("mark entries read before"):
            cursor = self.conn.execute(
                """UPDATE entries SET read = 1, read_at = ?
                   WHERE read = 0 AND published_at IS NOT NULL AND published_at < ?""",
                (to_storage(utcnow()), to_storage(cutoff)),
            )
        return cursor.rowcount

    def entry_exists(self, feed_id: str, guid: str) -> bool:
        """Check if an entry with the given guid exists for a feed."""
        rows = self._query(
            "SELECT 1 FROM entries WHERE feed_id = ? AND guid = ?", (feed_id, guid)
        )
        return bool(rows)

    def count_unread_entries(self, feed_id: str | None = None) -> int:
        if feed_id is None:
            rows = self._query("SELECT COUNT(*) AS cnt FROM entries WHERE read = 0")
        else:
            rows = self._query(
                "SELECT COUNT(*) AS cnt FROM entries WHERE read = 0 AND feed_id = ?",
                (feed_id,),
            )
        return rows[0]["cnt"]

    # --- Statistics ---

    def get_feed_stats(self) -> list[FeedStats]:
        rows = self._query(
            """SELECT f.id, f.url, f.title, f.last_fetched_at, f.error_count, f.last_error,
                      COUNT(e.id) AS entry_count,
                      COALESCE(SUM(CASE WHEN e.read = 0 THEN 1 ELSE 0 END), 0) AS unread_count
               FROM feeds f
               LEFT JOIN entries e ON f.id = e.feed_id
               GROUP BY f.id
               ORDER BY f.created_at DESC"""
        )
        return [
            FeedStats(
                feed_id=r["id"],
                feed_url=r["url"],
                feed_title=r["title"],
                last_fetched_at=from_storage(r["last_fetched_at"]),
                error_count=r["error_count"],
                last_error=r["last_error"],
                entry_count=r["entry_count"],
                unread_count=r["unread_count"],
            )
            for r in rows
        ]

    def get_overall_stats(self) -> OverallStats:
        row = self._query(
            """SELECT (SELECT COUNT(*) FROM feeds) AS feeds,
                      (SELECT COUNT(*) FROM entries) AS entries,
                      (SELECT COUNT(*) FROM entries WHERE read = 0) AS unread"""
        )[0]
        return OverallStats(
            total_feeds=row["feeds"],
            total_entries=row["entries"],
            unread_count=row["unread"],
        )

    # --- Maintenance ---

    def compact(self) -> None:
        """Reclaim free pages with VACUUM."""
        try:
            self.conn.execute("VACUUM")
        except sqlite3.Error as e:
            raise StorageError(f"vacuum: {e}") from e

    def search(self, query: str, limit: int = 20) -> list[Entry]:
        """Full-text search across entry titles and content using FTS5."""
        match = fts_query(query)
        if not match:
            return []
        rows = self._query(
            f"""SELECT {PREFIXED_ENTRY_COLUMNS}
                FROM entries_fts
                JOIN entries e ON e.pk = entries_fts.rowid
                WHERE entries_fts MATCH ?
                ORDER BY e.published_at IS NULL, e.published_at DESC
                LIMIT ?""",
            (match, limit),
        )
        return [_row_to_entry(r) for r in rows]


# --- Helper functions ---


def fts_query(query: str) -> str:
    """Quote each whitespace-separated term so FTS5 operators are taken literally."""
    terms = [term.replace('"', '""') for term in query.split()]
    return " ".join(f'"{term}"' for term in terms if term)


def _require_row(cursor: sqlite3.Cursor, kind: str, record_id: str) -> None:
    if cursor.rowcount == 0:
        raise NotFound(f"{kind} not found: {record_id}")


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        folder=row["folder"] or "",
        etag=row["etag"],
        last_modified=row["last_modified"],
        last_fetched_at=from_storage(row["last_fetched_at"]),
        last_error=row["last_error"],
        error_count=row["error_count"],
        created_at=from_storage(row["created_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a database row to an Entry dataclass."""
    return Entry(
        id=row["id"],
        feed_id=row["feed_id"],
        guid=row["guid"],
        title=row["title"],
        link=row["link"],
        author=row["author"],
        content=row["content"],
        published_at=from_storage(row["published_at"]),
        read=bool(row["read"]),
        read_at=from_storage(row["read_at"]),
        created_at=from_storage(row["created_at"]),
    )
