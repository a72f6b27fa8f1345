"""Feed discovery: turn an arbitrary URL into the URL of a parseable feed.

Strategies, in order:

1. the URL itself is a feed;
2. the URL is an HTML page advertising feeds via ``<link rel="alternate">``;
3. a feed lives at one of a few conventional paths.
"""

import logging
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from rss_digest.errors import (
    FetchError,
    InvalidURL,
    NetworkError,
    NoFeedFound,
    ParseError,
    PrivateAddressBlocked,
)
from rss_digest.feed_parser import ParsedFeed, parse_feed
from rss_digest.fetcher import FetchResult, fetch, validate_url

logger = logging.getLogger(__name__)

FEED_CONTENT_TYPES = (
    "application/rss+xml",
    "application/atom+xml",
    "application/xml",
    "text/xml",
)

COMMON_FEED_PATHS = ("/feed.xml", "/rss.xml", "/atom.xml", "/index.xml")


@dataclass
class DiscoveredFeed:
    """A verified feed URL and its title."""

    url: str
    title: str | None = None


def discover(url: str) -> DiscoveredFeed:
    """Find an RSS/Atom feed starting from any URL.

    Raises:
        InvalidURL / PrivateAddressBlocked / NetworkError: the starting URL
            itself cannot be fetched.
        NoFeedFound: every strategy failed.
    """
    validate_url(url)

    result = None
    try:
        result = fetch(url)
    except (InvalidURL, PrivateAddressBlocked, NetworkError):
        raise
    except FetchError as e:
        logger.info("Direct fetch of %s failed: %s", url, e)

    if result is not None:
        if not is_html_content_type(result.content_type):
            parsed = _try_parse(result)
            if parsed is not None:
                return DiscoveredFeed(url=url, title=parsed.title)

        for candidate in extract_feed_links(result.body, url):
            found = _try_candidate(candidate.url)
            if found is not None:
                if not found.title and candidate.title:
                    found.title = candidate.title
                return found

    for candidate_url in common_path_candidates(url):
        found = _try_candidate(candidate_url)
        if found is not None:
            return found

    raise NoFeedFound(f"no RSS/Atom feed found at {url}")


def is_feed_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in FEED_CONTENT_TYPES


def is_html_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in ("text/html", "application/xhtml+xml")


def extract_feed_links(html: bytes | str, base_url: str) -> list[DiscoveredFeed]:
    """Return feed links advertised by an HTML page, in document order.

    Hrefs are resolved against base_url; candidates that do not resolve to an
    http(s) URL are dropped.
    """
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")

    candidates = []
    seen = set()
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "alternate" not in (r.lower() for r in rel):
            continue
        if not is_feed_content_type(link.get("type", "")):
            continue

        try:
            resolved = urljoin(base_url, link["href"].strip())
            validate_url(resolved)
        except (ValueError, InvalidURL):
            logger.debug("Skipping invalid feed link %r", link["href"])
            continue

        if resolved in seen:
            continue
        seen.add(resolved)
        candidates.append(
            DiscoveredFeed(url=resolved, title=(link.get("title") or "").strip() or None)
        )
    return candidates


def common_path_candidates(url: str) -> list[str]:
    """Conventional feed locations under the URL's base path, then the root."""
    parsed = urlparse(url)
    path = parsed.path
    # Drop a trailing document name such as index.html
    last = path.rsplit("/", 1)[-1]
    if "." in last:
        path = path[: -len(last)]
    base_path = path.rstrip("/")

    prefixes = [base_path]
    if base_path:
        prefixes.append("")

    candidates = []
    for prefix in prefixes:
        for feed_path in COMMON_FEED_PATHS:
            candidate = urlunparse(
                (parsed.scheme, parsed.netloc, prefix + feed_path, "", "", "")
            )
            if candidate not in candidates:
                candidates.append(candidate)
    return candidates


def _try_candidate(url: str) -> DiscoveredFeed | None:
    """Fetch and parse a candidate; None if it is not a usable feed."""
    try:
        result = fetch(url)
    except FetchError as e:
        logger.debug("Candidate %s failed: %s", url, e)
        return None

    parsed = _try_parse(result)
    if parsed is None:
        return None
    return DiscoveredFeed(url=url, title=parsed.title)


def _try_parse(result: FetchResult) -> ParsedFeed | None:
    try:
        return parse_feed(result.body)
    except ParseError as e:
        logger.debug("%s is not a feed: %s", result.url, e)
        return None
