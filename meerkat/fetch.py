"""Fetch remote contact photos without letting the server reach internal hosts.

URLs are validated before each request (scheme, literal host, every resolved
address). At connection time the host is resolved again and the connection
is pinned to the first address that passes the same rules, so a DNS answer
that changes between validation and connect cannot redirect the request.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable

import httpx

from .errors import RemoteFetchFailed

logger = logging.getLogger("meerkat.fetch")

MAX_IMAGE_SIZE = 10 * 1024 * 1024
MAX_REDIRECTS = 3
CONNECT_TIMEOUT = 10.0
TOTAL_TIMEOUT = 15.0
USER_AGENT = "Mozilla/5.0 (compatible; MeerkatCRM/1.0)"

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1", "[::1]"})

Resolver = Callable[[str, int], Awaitable[list[str]]]


async def system_resolver(host: str, port: int) -> list[str]:
    """Resolve ``host`` with the event loop's getaddrinfo."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_blocked_address(addr: str) -> bool:
    """Check whether an IP address points inside the host or its network."""
    try:
        ip = ipaddress.ip_address(addr.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback or ip.is_link_local or ip.is_private or ip.is_unspecified


def clean_url(raw: str) -> str:
    """Remove all whitespace; long URIs in exported vCards arrive wrapped."""
    return "".join(raw.split())


class _PinnedTransport(httpx.AsyncBaseTransport):
    """Re-resolves the request host and connects to a vetted address only."""

    def __init__(self, resolver: Resolver, inner: httpx.AsyncBaseTransport):
        self._resolver = resolver
        self._inner = inner

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        port = request.url.port or (443 if request.url.scheme == "https" else 80)
        addrs = await _resolve(self._resolver, host, port)

        safe = [a for a in addrs if not is_blocked_address(a)]
        if not safe:
            raise RemoteFetchFailed(f"no safe address for host {host}")

        logger.debug(f"Connecting to {host} via {safe[0]}")
        # Host header stays the original name; TLS verifies against it via SNI
        request.url = request.url.copy_with(host=safe[0])
        request.extensions = {**request.extensions, "sni_hostname": host}
        return await self._inner.handle_async_request(request)


async def _resolve(resolver: Resolver, host: str, port: int) -> list[str]:
    try:
        addrs = await resolver(host, port)
    except OSError as e:
        raise RemoteFetchFailed(f"cannot resolve {host}: {e}") from e
    if not addrs:
        raise RemoteFetchFailed(f"cannot resolve {host}: no addresses")
    return addrs


class ImageFetcher:
    """Downloads images over HTTP(S) with SSRF, size and time limits."""

    def __init__(
        self,
        resolver: Resolver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_size: int = MAX_IMAGE_SIZE,
        timeout: float = TOTAL_TIMEOUT,
    ):
        """Initialize the fetcher.

        Args:
            resolver: Async host resolver (defaults to getaddrinfo)
            transport: Underlying httpx transport (defaults to a real one)
            max_size: Maximum accepted body size in bytes
            timeout: Overall deadline for one fetch including redirects
        """
        self.resolver = resolver or system_resolver
        self.transport = transport or httpx.AsyncHTTPTransport()
        self.max_size = max_size
        self.timeout = timeout

    async def validate_url(self, url: httpx.URL) -> None:
        """Reject URLs that could reach internal services.

        Raises:
            RemoteFetchFailed: On a disallowed scheme, an internal host name
                or any resolved address that is internal
        """
        if url.scheme not in ALLOWED_SCHEMES:
            raise RemoteFetchFailed(f"scheme {url.scheme!r} not allowed")

        host = url.host.lower()
        if not host:
            raise RemoteFetchFailed("URL has no host")
        if host in BLOCKED_HOSTS:
            raise RemoteFetchFailed(f"host {host} is not allowed")

        port = url.port or (443 if url.scheme == "https" else 80)
        for addr in await _resolve(self.resolver, host, port):
            if is_blocked_address(addr):
                raise RemoteFetchFailed(f"host {host} resolves to internal address {addr}")

    async def fetch(self, raw_url: str) -> tuple[bytes, str]:
        """Fetch an image.

        Args:
            raw_url: URL string, possibly containing whitespace

        Returns:
            Tuple of (body bytes, content type)

        Raises:
            RemoteFetchFailed: If the URL is rejected, the request fails, the
                response is not an image or it exceeds the size cap
        """
        try:
            return await asyncio.wait_for(self._fetch(clean_url(raw_url)), timeout=self.timeout)
        except TimeoutError as e:
            raise RemoteFetchFailed(f"fetching {raw_url!r} timed out") from e

    async def _fetch(self, url_str: str) -> tuple[bytes, str]:
        try:
            url = httpx.URL(url_str)
        except httpx.InvalidURL as e:
            raise RemoteFetchFailed(f"invalid URL {url_str!r}: {e}") from e

        timeout = httpx.Timeout(self.timeout, connect=CONNECT_TIMEOUT)
        transport = _PinnedTransport(self.resolver, self.transport)
        async with httpx.AsyncClient(
            transport=transport,
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            for _ in range(MAX_REDIRECTS + 1):
                await self.validate_url(url)
                logger.debug(f"Fetching image {url}")
                try:
                    async with client.stream("GET", url) as response:
                        if response.is_redirect:
                            location = response.headers.get("location", "")
                            if not location:
                                raise RemoteFetchFailed("redirect without Location header")
                            url = url.join(clean_url(location))
                            continue
                        return await self._read_image(response)
                except httpx.HTTPError as e:
                    raise RemoteFetchFailed(f"request to {url} failed: {e}") from e

        raise RemoteFetchFailed(f"too many redirects (max {MAX_REDIRECTS})")

    async def _read_image(self, response: httpx.Response) -> tuple[bytes, str]:
        if response.status_code != 200:
            raise RemoteFetchFailed(f"unexpected status {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if not content_type.lower().startswith("image/"):
            raise RemoteFetchFailed(f"content type {content_type!r} is not an image")

        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_size:
            raise RemoteFetchFailed(f"image exceeds {self.max_size} bytes")

        buf = bytearray()
        async for chunk in response.aiter_bytes():
            buf.extend(chunk)
            if len(buf) > self.max_size:
                raise RemoteFetchFailed(f"image exceeds {self.max_size} bytes")

        return bytes(buf), content_type.split(";", 1)[0].strip()

    async def aclose(self) -> None:
        await self.transport.aclose()
