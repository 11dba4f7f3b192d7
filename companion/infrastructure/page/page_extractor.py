"""
Page-context collaborators.

Each provider turns "the page the user is looking at" into a bounded plain-text
snippet. Providers raise ``ContextAcquisitionFailed`` on disallowed pages; the
context gate absorbs that and any other failure.
"""

import asyncio
import ipaddress
import re
import socket
import urllib.parse
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx
import structlog
from bs4 import BeautifulSoup

from companion.domain.context.context_gate import DEFAULT_CONTEXT_CHAR_LIMIT
from companion.domain.errors import ContextAcquisitionFailed

logger = structlog.get_logger(__name__)

DEFAULT_BLOCKED_SCHEMES = ("chrome://", "edge://")

JUNK_TAGS = ["script", "style", "noscript", "iframe", "svg", "nav", "footer", "header", "aside"]
JUNK_SELECTORS = [".ad", ".ads", '[role="alert"]']

WHITESPACE = re.compile(r"\s+")

MAX_REDIRECTS = 5

Resolver = Callable[[str, int], Awaitable[List[str]]]


def ensure_allowed(url: Optional[str], blocked_schemes: Iterable[str] = DEFAULT_BLOCKED_SCHEMES) -> None:
    if url and any(url.startswith(scheme) for scheme in blocked_schemes):
        raise ContextAcquisitionFailed(f"Reading {url.split('://')[0]} pages is not allowed")


def extract_text_from_html(html: str, max_chars: int = DEFAULT_CONTEXT_CHAR_LIMIT) -> str:
    """
    Extract readable text from HTML, removing scripts, navigation and ads.
    Whitespace runs collapse to a single space.
    """
    soup = BeautifulSoup(html, "html.parser")
    root = soup.body or soup

    for tag in root.find_all(JUNK_TAGS):
        tag.decompose()

    for selector in JUNK_SELECTORS:
        for element in root.select(selector):
            element.decompose()

    text = root.get_text(separator=" ")
    text = WHITESPACE.sub(" ", text).strip()

    return text[:max_chars]


def _is_blocked_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value.split("%")[0])
    except ValueError:
        return False
    return any((
        ip.is_private,
        ip.is_loopback,
        ip.is_link_local,
        ip.is_multicast,
        ip.is_reserved,
        ip.is_unspecified,
    ))


async def resolve_host(host: str, port: int) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


async def ensure_public_url(url: str, resolver: Resolver = resolve_host) -> None:
    """Refuse URLs that are not plain http(s) or that reach internal addresses

    Raises:
        ContextAcquisitionFailed: scheme, credentials or target address not allowed
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ContextAcquisitionFailed(f"Unsupported page URL: {url}")
    if parsed.username or parsed.password:
        raise ContextAcquisitionFailed("Page URLs with embedded credentials are not allowed")

    host = (parsed.hostname or "").rstrip(".").lower()
    if not host:
        raise ContextAcquisitionFailed(f"Page URL has no host: {url}")
    if host == "localhost" or _is_blocked_ip(host):
        raise ContextAcquisitionFailed(f"Page host is not reachable from here: {host}")

    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    try:
        addresses = await resolver(host, port)
    except socket.gaierror as e:
        raise ContextAcquisitionFailed(f"Could not resolve {host}: {e}") from e

    if not addresses:
        raise ContextAcquisitionFailed(f"Could not resolve {host}")
    if any(_is_blocked_ip(address) for address in addresses):
        raise ContextAcquisitionFailed(f"Page host resolves to an internal address: {host}")


class StaticPageContext:
    """Text the caller already extracted from the page"""

    def __init__(self, text: str, url: Optional[str] = None,
                 blocked_schemes: Iterable[str] = DEFAULT_BLOCKED_SCHEMES,
                 max_chars: int = DEFAULT_CONTEXT_CHAR_LIMIT):
        self.text = text
        self.url = url
        self.blocked_schemes = tuple(blocked_schemes)
        self.max_chars = max_chars

    async def extract(self) -> str:
        ensure_allowed(self.url, self.blocked_schemes)
        return WHITESPACE.sub(" ", self.text or "").strip()[:self.max_chars]


class HtmlPageContext:
    """Raw page markup supplied by the caller"""

    def __init__(self, html: str, url: Optional[str] = None,
                 blocked_schemes: Iterable[str] = DEFAULT_BLOCKED_SCHEMES,
                 max_chars: int = DEFAULT_CONTEXT_CHAR_LIMIT):
        self.html = html
        self.url = url
        self.blocked_schemes = tuple(blocked_schemes)
        self.max_chars = max_chars

    async def extract(self) -> str:
        ensure_allowed(self.url, self.blocked_schemes)
        return extract_text_from_html(self.html or "", self.max_chars)


class UrlPageContext:
    """Fetches a public page over HTTP and extracts its text

    Every hop, redirects included, must resolve to a public address.
    """

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None,
                 blocked_schemes: Iterable[str] = DEFAULT_BLOCKED_SCHEMES,
                 max_chars: int = DEFAULT_CONTEXT_CHAR_LIMIT,
                 timeout: float = 10.0,
                 resolver: Resolver = resolve_host):
        self.url = url
        self.client = client
        self.blocked_schemes = tuple(blocked_schemes)
        self.max_chars = max_chars
        self.timeout = timeout
        self.resolver = resolver

    async def extract(self) -> str:
        ensure_allowed(self.url, self.blocked_schemes)

        if self.client is not None:
            response = await self._fetch(self.client)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await self._fetch(client)

        if response.status_code >= 400:
            raise ContextAcquisitionFailed(f"Page fetch returned {response.status_code}")

        logger.debug("Fetched page", url=str(response.url), bytes=len(response.content))
        return extract_text_from_html(response.text, self.max_chars)

    async def _fetch(self, client: httpx.AsyncClient) -> httpx.Response:
        url = self.url
        for _ in range(MAX_REDIRECTS + 1):
            await ensure_public_url(url, self.resolver)
            response = await client.get(url, follow_redirects=False)
            if not response.is_redirect or response.next_request is None:
                return response
            url = str(response.next_request.url)
        raise ContextAcquisitionFailed(f"Too many redirects fetching {self.url}")
