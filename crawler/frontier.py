# crawler/frontier.py
import asyncio
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Set
from urllib.parse import urldefrag, urljoin, urlparse

from .models import ProductSnapshot, StoreConfig

# Links to these never lead to a product page.
BLOCKED_NAVIGATION_EXTENSIONS = (
    ".pdf",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".webp",
    ".ico",
    ".mp3",
    ".mp4",
    ".webm",
    ".zip",
    ".rar",
    ".7z",
    ".gz",
    ".xlsx",
    ".xls",
    ".doc",
    ".docx",
    ".css",
    ".woff",
    ".woff2",
    ".ttf",
    ".otf",
)


class TargetState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class CrawlTarget:
    url: str
    retry_count: int = 0
    state: TargetState = TargetState.PENDING
    # latest ScrapeResult or extraction error, until committed to the run
    extraction: Any = None


def normalize_url(link, base_url):
    """
    Resolve a harvested href to an absolute http(s) URL without fragment.

    Returns None for empty links, non-web schemes (mailto:, tel:,
    javascript:) and anything urllib cannot parse.
    """
    if not link or not link.strip():
        return None
    try:
        absolute = urljoin(base_url, link.strip())
        absolute, _ = urldefrag(absolute)
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return absolute


def strip_www(hostname):
    return hostname[4:] if hostname.startswith("www.") else hostname


def is_same_hostname(url, hostname):
    """Exact hostname match, tolerating a leading 'www.' on either side."""
    other = urlparse(url).hostname or ""
    return strip_www(other) == strip_www(hostname)


def has_blocked_extension(url):
    return urlparse(url).path.lower().endswith(BLOCKED_NAVIGATION_EXTENSIONS)


def is_path_allowed(url, whitelist=(), blacklist=()):
    path = urlparse(url).path or "/"
    if whitelist and not any(path.startswith(prefix) for prefix in whitelist):
        return False
    if blacklist and any(path.startswith(prefix) for prefix in blacklist):
        return False
    return True


@dataclass
class CrawlRun:
    """
    All state belonging to one crawl of one store.

    Nothing here is shared between runs, so several stores can be crawled
    in the same process. Workers mutate it only through the methods below.
    """

    store: StoreConfig
    seed_url: str
    max_requests: int
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    seen: Set[str] = field(default_factory=set)
    targets: Dict[str, CrawlTarget] = field(default_factory=dict)
    products: Dict[str, ProductSnapshot] = field(default_factory=dict)
    field_errors: Counter = field(default_factory=Counter)
    total_requests: int = 0
    total_processed: int = 0
    total_errored: int = 0
    total_failed: int = 0

    @property
    def hostname(self):
        return urlparse(self.seed_url).hostname or ""

    @property
    def budget_exhausted(self):
        return self.total_requests >= self.max_requests

    def _admit(self, url):
        target = CrawlTarget(url=url)
        self.seen.add(url)
        self.targets[url] = target
        self.queue.put_nowait(target)
        return target

    def add_seed(self, url):
        """Queue the start URL; it bypasses the path filters."""
        url, _ = urldefrag(url)
        if url in self.seen:
            return None
        return self._admit(url)

    def enqueue(self, links, base_url=None):
        """
        Filter harvested links and queue the new ones.

        Args:
            links (list[str]): Raw href values
            base_url (str, optional): URL relative links are resolved
                against. Defaults to the seed URL.

        Returns:
            list[CrawlTarget]: Targets created by this call

        Filters, in order:
            - must resolve to an absolute http(s) URL
            - path must not end in a blocked extension
            - path must start with a whitelist prefix, when any are configured
            - path must not start with a blacklist prefix
            - hostname must match the seed's (www. tolerated)
            - must not have been seen before in this run
        """
        base = base_url or self.seed_url
        added = []
        for link in links:
            url = normalize_url(link, base)
            if url is None or has_blocked_extension(url):
                continue
            if not is_path_allowed(
                url, self.store.url_whitelist, self.store.url_blacklist
            ):
                continue
            if not is_same_hostname(url, self.hostname) or url in self.seen:
                continue
            added.append(self._admit(url))
        return added

    def mark_active(self, target, retry=False):
        """
        Start (or, with `retry`, restart) processing a target.

        Returns False once the request budget is spent; retries of an
        admitted target do not count against the budget.
        """
        if not retry:
            if self.budget_exhausted:
                return False
            self.total_requests += 1
        target.state = TargetState.ACTIVE
        return True

    def mark_retry(self, target):
        target.retry_count += 1
        target.state = TargetState.PENDING

    def mark_succeeded(self, target):
        target.state = TargetState.SUCCEEDED

    def mark_failed(self, target):
        target.state = TargetState.FAILED
        self.total_failed += 1

    def record_snapshot(self, product, field_errors=()):
        self.products[product.sku] = product
        self.field_errors.update(field_errors)
        self.total_processed += 1

    def record_error(self):
        self.total_errored += 1

    def commit_extraction(self, target):
        """
        Count the last extraction of a settled target, then forget it.

        Retries can extract the same page several times; only the outcome
        of the latest attempt reaches the products and counters.
        """
        outcome, target.extraction = target.extraction, None
        if outcome is None:
            return
        if isinstance(outcome, Exception):
            self.record_error()
        else:
            self.record_snapshot(outcome.product, outcome.errors)

    def snapshots(self) -> List[ProductSnapshot]:
        return list(self.products.values())

    def drop(self):
        """Discard the frontier once the crawl is over."""
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
        self.seen.clear()


class RequestRateLimiter:
    """
    Sliding one-minute window shared by every worker of a crawl.

    `acquire()` returns once starting another request keeps the number of
    request starts in the last 60 seconds at or below `max_per_minute`.
    """

    def __init__(self, max_per_minute, clock=time.monotonic, sleep=asyncio.sleep):
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sleep = sleep
        self._starts = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        if not self.max_per_minute or self.max_per_minute <= 0:
            return
        async with self._lock:
            while True:
                now = self._clock()
                while self._starts and now - self._starts[0] >= 60:
                    self._starts.popleft()
                if len(self._starts) < self.max_per_minute:
                    self._starts.append(now)
                    return
                await self._sleep(60 - (now - self._starts[0]))
