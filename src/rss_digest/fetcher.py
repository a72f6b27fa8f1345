"""HTTP fetching with conditional requests, SSRF protection and a size cap."""

import ipaddress
import logging
import socket
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from rss_digest import __version__
from rss_digest.errors import (
    InvalidURL,
    NetworkError,
    PrivateAddressBlocked,
    ResponseTooLarge,
    UnexpectedStatus,
)

logger = logging.getLogger(__name__)

MAX_RESPONSE_SIZE = 10 * 1024 * 1024  # 10 MiB
DEFAULT_TIMEOUT = 30.0
USER_AGENT = f"digest/{__version__} (RSS reader)"
MAX_REDIRECTS = 10


@dataclass
class FetchResult:
    """Outcome of a successful fetch: either a fresh body or "not modified"."""

    url: str
    body: bytes = b""
    etag: str = ""
    last_modified: str = ""
    content_type: str = ""
    not_modified: bool = False


def fetch(
    url: str,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> FetchResult:
    """Issue a single conditional GET for a feed URL.

    Args:
        url: Absolute http(s) URL.
        etag: Validator from a previous response, sent as If-None-Match.
        last_modified: Validator from a previous response, sent as
            If-Modified-Since.
        timeout: Per-request timeout in seconds.

    Returns:
        FetchResult with ``not_modified`` set on a 304, otherwise the body and
        the response's ETag / Last-Modified headers (empty when absent).

    Raises:
        InvalidURL, PrivateAddressBlocked, NetworkError, UnexpectedStatus,
        ResponseTooLarge.
    """
    validate_url(url)

    headers = {"User-Agent": USER_AGENT}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified

    try:
        with httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            event_hooks={"request": [_guard_request]},
        ) as client:
            with client.stream("GET", url, headers=headers) as response:
                logger.debug("GET %s -> %d", url, response.status_code)

                if response.status_code == httpx.codes.NOT_MODIFIED:
                    return FetchResult(url=str(response.url), not_modified=True)

                if response.status_code != httpx.codes.OK:
                    raise UnexpectedStatus(response.status_code)

                body = _read_limited(response)
                return FetchResult(
                    url=str(response.url),
                    body=body,
                    etag=response.headers.get("ETag", ""),
                    last_modified=response.headers.get("Last-Modified", ""),
                    content_type=response.headers.get("Content-Type", ""),
                )
    except httpx.InvalidURL as e:
        raise InvalidURL(f"invalid URL: {e}") from e
    except httpx.UnsupportedProtocol as e:
        raise InvalidURL(f"invalid URL: {e}") from e
    except httpx.HTTPError as e:
        raise NetworkError(f"failed to fetch URL: {e}") from e


def validate_url(url: str) -> None:
    """Check that the URL is absolute and uses http or https."""
    try:
        parsed = urlparse(url)
        host = parsed.hostname
    except ValueError as e:
        raise InvalidURL(f"invalid URL: {e}") from e
    if parsed.scheme not in ("http", "https"):
        raise InvalidURL(
            f"URL must use http or https scheme, got: {parsed.scheme or 'none'}"
        )
    if not host:
        raise InvalidURL("URL must have a host")


def check_host(host: str) -> None:
    """Refuse hosts that resolve into private networks.

    Loopback is allowed when it is the only thing the host resolves to.
    Resolution failures are left for the HTTP client to report.
    """
    try:
        infos = socket.getaddrinfo(host, None)
    except (socket.gaierror, UnicodeError):
        return

    addresses = {ipaddress.ip_address(info[4][0].split("%", 1)[0]) for info in infos}
    if addresses and all(addr.is_loopback for addr in addresses):
        return
    for addr in addresses:
        if addr.is_loopback:
            continue
        if _is_private(addr):
            raise PrivateAddressBlocked(
                f"access to private IP ranges is not allowed: {host} ({addr})"
            )


def _is_private(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    return (
        addr.is_private
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    )


def _guard_request(request: httpx.Request) -> None:
    """httpx hook: runs for the first request and for every redirect."""
    if request.url.scheme not in ("http", "https"):
        raise InvalidURL(f"redirect to unsupported scheme: {request.url.scheme}")
    check_host(request.url.host)


def _read_limited(response: httpx.Response) -> bytes:
    chunks = []
    size = 0
    for chunk in response.iter_bytes():
        size += len(chunk)
        if size > MAX_RESPONSE_SIZE:
            raise ResponseTooLarge(
                f"response too large (exceeds {MAX_RESPONSE_SIZE} bytes)"
            )
        chunks.append(chunk)
    return b"".join(chunks)
