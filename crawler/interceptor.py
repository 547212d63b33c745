# crawler/interceptor.py
import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict
from urllib.parse import urlparse

from .frontier import BLOCKED_NAVIGATION_EXTENSIONS

logger = logging.getLogger("crawler")

# 1x1 transparent PNG served in place of every image
STUB_IMAGE = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

BLOCKED_RESOURCE_TYPES = frozenset(["stylesheet", "media", "font", "websocket", "other"])

BLOCKED_ASSET_EXTENSIONS = BLOCKED_NAVIGATION_EXTENSIONS + (".map", ".eot")

# Tracker and embed hosts; subdomains are blocked too.
BLOCKED_HOSTS = (
    "google-analytics.com",
    "google.com",
    "google.is",
    "googleads.g.doubleclick.net",
    "googletagmanager.com",
    "connect.facebook.net",
    "hotjar.com",
    "hubspot.com",
    "hubapi.com",
    "hsappstatic.net",
    "youtube.com",
    "youtu.be",
    "youtube-nocookie.com",
    "vimeo.com",
    "addthis.com",
)

BLOCKED_SCRIPT_NAMES = ("adsbygoogle.js",)

DEFAULT_MAX_AGE = 900

# Headers describing the wire encoding; the cached body is already decoded.
_HOP_HEADERS = frozenset(["content-encoding", "content-length", "transfer-encoding"])

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


@dataclass
class CacheEntry:
    url: str
    status: int
    headers: Dict[str, str]
    body: bytes
    expires_at: float

    def is_fresh(self, now):
        return self.expires_at > now


def max_age_seconds(headers):
    """Seconds a response may be reused, from its Cache-Control max-age (default 900)."""
    cache_control = headers.get("cache-control", "") if headers else ""
    match = _MAX_AGE_RE.search(cache_control)
    return int(match.group(1)) if match else DEFAULT_MAX_AGE


def is_blocked_host(hostname):
    if not hostname:
        return False
    hostname = hostname.lower()
    return any(
        hostname == host or hostname.endswith("." + host) for host in BLOCKED_HOSTS
    )


def origin(url):
    parsed = urlparse(url)
    return (parsed.scheme, parsed.netloc)


class ResourceInterceptor:
    """
    Route handler installed on every browser context of one crawl.

    Images are answered with a stub, unneeded resources with an empty 200,
    and same-origin scripts from a cache that lives as long as the
    interceptor. Everything else goes to the network untouched.

    The cache has no lock: two concurrent misses for one URL both fetch it,
    the later response overwriting the earlier entry.
    """

    def __init__(self, start_url, clock=time.time, log=None):
        self.start_origin = origin(start_url)
        self.cache: Dict[str, CacheEntry] = {}
        self._clock = clock
        self.log = log or logger

    def is_blocked(self, resource_type, url):
        if resource_type in BLOCKED_RESOURCE_TYPES:
            return True
        parsed = urlparse(url)
        path = parsed.path.lower()
        if path.endswith(BLOCKED_ASSET_EXTENSIONS) or path.endswith(BLOCKED_SCRIPT_NAMES):
            return True
        return is_blocked_host(parsed.hostname)

    def is_cacheable(self, resource_type, url):
        is_script = resource_type == "script" or urlparse(url).path.endswith(".js")
        return is_script and origin(url) == self.start_origin

    async def handle(self, route):
        request = route.request
        resource_type = request.resource_type
        url = request.url

        if resource_type == "image":
            await route.fulfill(status=200, content_type="image/png", body=STUB_IMAGE)
        elif self.is_blocked(resource_type, url):
            await route.fulfill(status=200, body="")
        elif self.is_cacheable(resource_type, url):
            await self._serve_script(route, url)
        else:
            await route.continue_()

    async def _serve_script(self, route, url):
        cached = self.cache.get(url)
        if cached is not None and cached.is_fresh(self._clock()):
            await route.fulfill(
                status=cached.status, headers=cached.headers, body=cached.body
            )
            return
        try:
            response = await route.fetch()
            body = await response.body()
        except Exception as e:
            self.log.error(f"Failed to cache script {url}: {e}")
            await route.abort()
            return
        headers = {
            k: v for k, v in response.headers.items() if k.lower() not in _HOP_HEADERS
        }
        self.cache[url] = CacheEntry(
            url=url,
            status=response.status,
            headers=headers,
            body=body,
            expires_at=self._clock() + max_age_seconds(response.headers),
        )
        await route.fulfill(status=response.status, headers=headers, body=body)
