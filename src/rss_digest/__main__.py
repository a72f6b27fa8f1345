"""Entry point for rss_digest: python -m rss_digest"""

import argparse
import asyncio
import logging
import sys

from rss_digest import __version__
from rss_digest.config import Config, expand_path, get_config_path, load_config
from rss_digest.errors import DigestError
from rss_digest.ingest import subscribe, sync_feeds
from rss_digest.storage import (
    BACKENDS,
    EntryFilter,
    Store,
    is_dir_non_empty,
    migrate_data,
    open_store,
)
from rss_digest.timeutil import (
    end_of_yesterday,
    parse_period,
    start_of_today,
    start_of_week,
    start_of_yesterday,
)

logger = logging.getLogger(__name__)

DISPLAY_ID_LENGTH = 8
DEFAULT_LIST_LIMIT = 20
DATE_FORMAT = "%d %b %y %H:%M"


def setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _short_id(record_id: str) -> str:
    return record_id[:DISPLAY_ID_LENGTH]


# --- Feed commands ---


def cmd_feed_add(store: Store, args) -> int:
    if not args.no_discover:
        print(f"Discovering feed at {args.url}...")
    feed = subscribe(
        store,
        args.url,
        title=args.title,
        folder=args.folder,
        discover_feed=not args.no_discover,
    )
    if feed.url != args.url:
        print(f"Found feed: {feed.url}")
    if feed.folder:
        print(f"Added feed to folder '{feed.folder}': {feed.display_name}")
    else:
        print(f"Added feed: {feed.display_name}")
    print(f"Feed ID: {feed.id}")
    return 0


def cmd_feed_list(store: Store, args) -> int:
    feeds = store.list_feeds()
    if not feeds:
        print("No feeds found. Add a feed with 'digest feed add <url>'")
        return 0

    print(f"Found {len(feeds)} feed(s):\n")
    for feed in feeds:
        if feed.folder:
            print(f"[{feed.folder}] {feed.display_name}")
        else:
            print(feed.display_name)
        print(f"  URL: {feed.url}")
        print(f"  ID: {feed.id}")
        if feed.last_error:
            print(f"  Last error ({feed.error_count}x): {feed.last_error}")
        print()
    return 0


def cmd_feed_remove(store: Store, args) -> int:
    feed = store.get_feed_by_url_or_prefix(args.feed)
    store.delete_feed(feed.id)
    print(f"Removed feed: {feed.url}")
    return 0


def cmd_feed_move(store: Store, args) -> int:
    feed = store.get_feed_by_url_or_prefix(args.feed)
    feed.folder = args.folder
    store.update_feed(feed)
    if feed.folder:
        print(f"Moved feed to '{feed.folder}': {feed.url}")
    else:
        print(f"Moved feed to root level: {feed.url}")
    return 0


# --- Fetching ---


def cmd_fetch(store: Store, args) -> int:
    if args.url is None and not store.list_feeds():
        print("No feeds found. Add a feed with 'digest feed add <url>'")
        return 0

    summary = asyncio.run(sync_feeds(store, url=args.url, force=args.force))

    for result in summary.results:
        if result.error is not None:
            status = f"✗ {result.error}"
        elif result.cached:
            status = "- cached"
        elif result.new_entries:
            status = f"✓ {result.new_entries} new"
        else:
            status = "✓ no new entries"
        print(f"Syncing {result.feed.display_name}... {status}")

    print()
    print(f"Summary: {summary.total} feed(s) synced")
    if summary.new_entries:
        print(f"  ✓ {summary.new_entries} new entries")
    if summary.cached:
        print(f"  - {summary.cached} cached (not modified)")
    if summary.errors:
        print(f"  ✗ {summary.errors} errors")
        return 1
    return 0


# --- Reading ---


def _print_entries(store: Store, entries) -> None:
    titles = {feed.id: feed.display_name for feed in store.list_feeds()}
    for entry in entries:
        marker = " " if entry.read else "*"
        published = entry.published_at.strftime(DATE_FORMAT) if entry.published_at else "-"
        print(f"{marker} {_short_id(entry.id)}  {published:<15}  {entry.title or '(untitled)'}")
        print(f"    {titles.get(entry.feed_id, entry.feed_id)}")
        if entry.link:
            print(f"    {entry.link}")


def cmd_list(store: Store, args) -> int:
    if args.feed and args.folder:
        raise DigestError("cannot use --feed and --folder together")

    entry_filter = EntryFilter(
        unread_only=not args.all,
        limit=args.limit,
        offset=args.offset,
    )
    if args.feed:
        entry_filter.feed_id = store.get_feed_by_url_or_prefix(args.feed).id
    elif args.folder:
        entry_filter.feed_ids = [f.id for f in store.list_feeds() if f.folder == args.folder]
        if not entry_filter.feed_ids:
            raise DigestError(f"no feeds found in folder {args.folder!r}")

    if args.view == "today":
        entry_filter.since = start_of_today()
    elif args.view == "yesterday":
        entry_filter.since = start_of_yesterday()
        entry_filter.until = end_of_yesterday()
    elif args.view == "week":
        entry_filter.since = start_of_week()

    entries = store.list_entries(entry_filter)
    if not entries:
        print("No entries found")
        return 0
    _print_entries(store, entries)
    return 0


def cmd_search(store: Store, args) -> int:
    entries = store.search(args.query, limit=args.limit)
    if not entries:
        print("No entries found")
        return 0
    _print_entries(store, entries)
    return 0


def cmd_mark_read(store: Store, args) -> int:
    if args.entry and args.before:
        raise DigestError("cannot use --before with an entry ID")

    if args.entry:
        entry = store.get_entry_by_id_or_prefix(args.entry)
        if entry.read:
            print("Entry is already marked as read")
            return 0
        store.mark_entry_read(entry.id)
        print(f"Marked as read: {entry.title or entry.id}")
        return 0

    if not args.before:
        raise DigestError("provide an entry ID or use --before for bulk marking")

    cutoff = parse_period(args.before)
    if cutoff is None:
        raise DigestError(
            f"invalid period {args.before!r}: use today, yesterday, week, month, or YYYY-MM-DD"
        )
    count = store.mark_entries_read_before(cutoff)
    if count == 0:
        print("No entries to mark as read")
    else:
        print(f"Marked {count} entries as read")
    return 0


def cmd_mark_unread(store: Store, args) -> int:
    entry = store.get_entry_by_id_or_prefix(args.entry)
    if not entry.read:
        print("Entry is already marked as unread")
        return 0
    store.mark_entry_unread(entry.id)
    print(f"Marked as unread: {entry.title or entry.id}")
    return 0


# --- Maintenance ---


def cmd_stats(store: Store, args) -> int:
    overall = store.get_overall_stats()
    print(f"Feeds:   {overall.total_feeds}")
    print(f"Entries: {overall.total_entries}")
    print(f"Unread:  {overall.unread_count}")

    stats = store.get_feed_stats()
    if stats:
        print()
    for row in stats:
        print(f"{row.feed_title or row.feed_url}")
        print(f"  {row.unread_count}/{row.entry_count} unread")
        if row.last_fetched_at:
            print(f"  Last fetched: {row.last_fetched_at.strftime(DATE_FORMAT)}")
        if row.error_count:
            print(f"  Errors: {row.error_count} ({row.last_error})")
    return 0


def cmd_compact(store: Store, args) -> int:
    store.compact()
    print("Storage compacted")
    return 0


def cmd_migrate(config: Config, args) -> int:
    source_backend = config.backend
    target_backend = args.to
    if target_backend == source_backend:
        raise DigestError(
            f"target backend {target_backend!r} is the same as the current backend"
        )

    target_dir = expand_path(args.data_dir) if args.data_dir else config.get_data_dir()
    if is_dir_non_empty(target_dir) and not args.force:
        raise DigestError(
            f"target directory {target_dir!r} is not empty; use --force to overwrite"
        )

    print("Migrating digest data:")
    print(f"  Source:  {source_backend} ({config.get_data_dir()})")
    print(f"  Target:  {target_backend} ({target_dir})")
    print()

    with config.open_store() as src, open_store(target_backend, target_dir) as dst:
        summary = migrate_data(src, dst)

    print("Migration complete!")
    print(f"  Feeds:   {summary.feeds}")
    print(f"  Entries: {summary.entries}")
    print()
    print("Note: config.json was NOT updated. To switch to the new backend, edit:")
    print(f"  {get_config_path()}")
    hint = f'  Set "backend": "{target_backend}"'
    if args.data_dir:
        hint += f' and "data_dir": "{args.data_dir}"'
    print(hint)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="digest", description="RSS/Atom feed reader")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)"
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    p_feed = sub.add_parser("feed", help="Manage feed subscriptions")
    sub_feed = p_feed.add_subparsers(dest="feed_cmd", required=True)

    p_feed_add = sub_feed.add_parser("add", help="Subscribe to a feed")
    p_feed_add.add_argument("url", help="Feed URL or a page that links to one")
    p_feed_add.add_argument("--title", default=None, help="Custom title")
    p_feed_add.add_argument("--folder", default="", help="Folder to file the feed under")
    p_feed_add.add_argument(
        "--no-discover", action="store_true", help="Use the URL as-is without discovery"
    )
    p_feed_add.set_defaults(func=cmd_feed_add)

    p_feed_list = sub_feed.add_parser("list", help="List subscribed feeds")
    p_feed_list.set_defaults(func=cmd_feed_list)

    p_feed_remove = sub_feed.add_parser("remove", help="Unsubscribe and delete entries")
    p_feed_remove.add_argument("feed", help="Feed URL or ID prefix")
    p_feed_remove.set_defaults(func=cmd_feed_remove)

    p_feed_move = sub_feed.add_parser("move", help="Move a feed to another folder")
    p_feed_move.add_argument("feed", help="Feed URL or ID prefix")
    p_feed_move.add_argument("folder", help="Target folder ('' for root)")
    p_feed_move.set_defaults(func=cmd_feed_move)

    p_fetch = sub.add_parser("fetch", help="Fetch new entries from feeds")
    p_fetch.add_argument("url", nargs="?", default=None, help="Only fetch this feed")
    p_fetch.add_argument(
        "-f", "--force", action="store_true", help="Ignore cache headers and force fetch"
    )
    p_fetch.set_defaults(func=cmd_fetch)

    p_list = sub.add_parser("list", help="List entries (unread by default)")
    p_list.add_argument("--feed", default=None, help="Feed URL or ID prefix")
    p_list.add_argument(
        "--folder", "--category", dest="folder", default=None, help="Only feeds in this folder"
    )
    p_list.add_argument("-a", "--all", action="store_true", help="Include read entries")
    p_list.add_argument("-n", "--limit", type=int, default=DEFAULT_LIST_LIMIT)
    p_list.add_argument("--offset", type=int, default=0)
    p_view = p_list.add_mutually_exclusive_group()
    for view, help_text in (
        ("today", "Entries published today"),
        ("yesterday", "Entries published yesterday"),
        ("week", "Entries published since Sunday"),
    ):
        p_view.add_argument(
            f"--{view}", dest="view", action="store_const", const=view, help=help_text
        )
    p_list.set_defaults(func=cmd_list)

    p_search = sub.add_parser("search", help="Search entry titles and content")
    p_search.add_argument("query")
    p_search.add_argument("-n", "--limit", type=int, default=DEFAULT_LIST_LIMIT)
    p_search.set_defaults(func=cmd_search)

    p_mark_read = sub.add_parser("mark-read", help="Mark entries as read")
    p_mark_read.add_argument("entry", nargs="?", default=None, help="Entry ID or prefix")
    p_mark_read.add_argument(
        "--before",
        default=None,
        help="Mark everything published before: today, yesterday, week, month or YYYY-MM-DD",
    )
    p_mark_read.set_defaults(func=cmd_mark_read)

    p_mark_unread = sub.add_parser("mark-unread", help="Mark an entry as unread")
    p_mark_unread.add_argument("entry", help="Entry ID or prefix")
    p_mark_unread.set_defaults(func=cmd_mark_unread)

    p_stats = sub.add_parser("stats", help="Show feed and entry counts")
    p_stats.set_defaults(func=cmd_stats)

    p_compact = sub.add_parser("compact", help="Reclaim unused storage space")
    p_compact.set_defaults(func=cmd_compact)

    p_migrate = sub.add_parser("migrate", help="Copy data to another storage backend")
    p_migrate.add_argument("--to", required=True, choices=BACKENDS, help="Target backend")
    p_migrate.add_argument(
        "--data-dir", default=None, help="Target data directory (defaults to current)"
    )
    p_migrate.add_argument(
        "--force", action="store_true", help="Allow writing into a non-empty directory"
    )
    p_migrate.set_defaults(func=cmd_migrate, needs_store=False)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config()
        if not getattr(args, "needs_store", True):
            return args.func(config, args)
        with config.open_store() as store:
            return args.func(store, args)
    except DigestError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
