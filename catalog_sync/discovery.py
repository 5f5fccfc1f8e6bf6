"""
Finds product page URLs on the remote menu site.

Sitemap first: cheap, one or a handful of requests. If the site has no usable
sitemap we fall back to a bounded breadth-first crawl of the menu pages and
pick product links out of the markup.
"""
import logging
import re
import time
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Set
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from .adapters.adapter_jsonld import product_nodes
from .cache import HOUR, Cache, key_for
from .errors import DiscoveryFailure, FetchFailure
from .fetcher import RateLimitedFetcher
from .normalizer import is_under, normalize_url, path_segments, same_host

logger = logging.getLogger(__name__)

SITEMAP_TTL = HOUR
CRAWL_TTL = 2 * HOUR
CRAWL_PAGE_DELAY = 0.5
MAX_SITEMAP_DEPTH = 3
DEFAULT_MAX_PAGES = 20

PRODUCT_PATTERNS = (
    re.compile(r"/products?/"),
    re.compile(r"/item/"),
    re.compile(r"/menu/[^/]+/[^/]+/?$"),  # /menu/<category>/<slug>
)
_HREF_PRODUCT_MARKER = re.compile(r"/(?:products?|item)(?:/|$)", re.I)
_HREF_CATEGORY_MARKER = re.compile(r"/(?:menu|category|pickup|delivery)/", re.I)
_CLASS_PRODUCT = re.compile(r"product", re.I)


def is_product_url(url: str, menu_base: Optional[str] = None) -> bool:
    path = urlsplit(url).path
    if any(p.search(path) for p in PRODUCT_PATTERNS):
        return True
    # Anything two or more segments below the menu base is a product page.
    if menu_base and is_under(url, menu_base):
        extra = len(path_segments(url)) - len(path_segments(menu_base))
        return extra >= 2
    return False


class CrawlFrontier:
    """FIFO queue of pages to visit plus the set already visited, for one crawl."""

    def __init__(self, start: str):
        self.visited: Set[str] = set()
        self._queue: Deque[str] = deque([start])
        self._queued: Set[str] = {start}

    def push(self, url: str) -> bool:
        if url in self.visited or url in self._queued:
            return False
        self._queued.add(url)
        self._queue.append(url)
        return True

    def next(self) -> Optional[str]:
        """Pop the oldest pending URL and mark it visited; None when exhausted."""
        while self._queue:
            url = self._queue.popleft()
            if url not in self.visited:
                self.visited.add(url)
                return url
        return None

    def __len__(self) -> int:
        return len(self._queue)


def _dedupe(urls: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out = []
    for u in urls:
        if u not in seen:
            seen.add(u)
            out.append(u)
    return out


class URLDiscoverer:
    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        cache: Cache,
        max_pages: int = DEFAULT_MAX_PAGES,
        sleep: Callable[[float], None] = time.sleep,
        page_delay: float = CRAWL_PAGE_DELAY,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.max_pages = max_pages
        self.page_delay = page_delay
        self._sleep = sleep

    def discover(self, sitemap_url: Optional[str] = None, menu_base_url: Optional[str] = None,
                 max_pages: Optional[int] = None) -> List[str]:
        if sitemap_url:
            try:
                urls = self.fetch_sitemap_urls(sitemap_url, menu_base_url)
            except DiscoveryFailure as exc:
                logger.warning("[DISCOVER] sitemap failed: %s", exc)
                urls = []
            if urls:
                logger.info("[DISCOVER] %d product URLs from sitemap %s", len(urls), sitemap_url)
                return urls

        if menu_base_url:
            urls = self.crawl(menu_base_url, max_pages=max_pages)
            if urls:
                logger.info("[DISCOVER] %d product URLs from crawling %s", len(urls), menu_base_url)
                return urls

        raise DiscoveryFailure("Could not find product URLs from sitemap or website crawl (no URLs found)")

    # ------------------------------------------------------------------ #
    # Sitemap
    # ------------------------------------------------------------------ #
    def fetch_sitemap_urls(self, sitemap_url: str, menu_base_url: Optional[str] = None) -> List[str]:
        cache_key = f"sitemap:{key_for(sitemap_url)}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            result = self.fetcher.fetch(sitemap_url)
        except FetchFailure as exc:
            raise DiscoveryFailure(f"Sitemap fetch failed: {exc}") from exc
        if not result.ok:
            raise DiscoveryFailure(f"Sitemap returned status code: {result.status}")

        locs = self._sitemap_locs(result.body, visited={sitemap_url}, depth=0)
        urls = _dedupe(
            u for u in (normalize_url(loc) for loc in locs)
            if u and is_product_url(u, menu_base_url)
        )
        self.cache.set(cache_key, urls, ttl=SITEMAP_TTL)
        return urls

    def _sitemap_locs(self, xml: str, visited: Set[str], depth: int) -> List[str]:
        soup = BeautifulSoup(xml or "", "xml")
        if soup.find("sitemapindex") is None:
            return _loc_values(soup.find_all("url")) or _loc_values([soup])

        if depth >= MAX_SITEMAP_DEPTH:
            logger.warning("[DISCOVER] sitemap index nested too deep; ignoring children")
            return []
        locs: List[str] = []
        for child in _loc_values(soup.find_all("sitemap")):
            if child in visited:
                continue
            visited.add(child)
            try:
                result = self.fetcher.fetch(child)
            except FetchFailure as exc:
                logger.warning("[DISCOVER] sub-sitemap %s failed: %s", child, exc)
                continue
            if not result.ok:
                logger.warning("[DISCOVER] sub-sitemap %s returned %d", child, result.status)
                continue
            locs.extend(self._sitemap_locs(result.body, visited, depth + 1))
        return locs

    # ------------------------------------------------------------------ #
    # Crawl fallback
    # ------------------------------------------------------------------ #
    def crawl(self, menu_base_url: str, max_pages: Optional[int] = None, use_cache: bool = True) -> List[str]:
        max_pages = max_pages or self.max_pages
        start = normalize_url(menu_base_url)
        if not start:
            raise DiscoveryFailure(f"Invalid menu base URL: {menu_base_url}")

        cache_key = f"crawl:{key_for(start)}"
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        products: List[str] = []
        found: Set[str] = set()
        frontier = CrawlFrontier(start)

        while len(frontier.visited) < max_pages:
            current = frontier.next()
            if current is None:
                break
            if len(frontier.visited) > 1:
                self._sleep(self.page_delay)

            try:
                result = self.fetcher.fetch(current)
            except FetchFailure as exc:
                logger.warning("[DISCOVER] crawl fetch failed for %s: %s", current, exc)
                continue
            if not result.ok:
                logger.info("[DISCOVER] crawl skipped %s (status %d)", current, result.status)
                continue

            soup = BeautifulSoup(result.body, "lxml")
            for url in product_links(soup, start):
                if url not in found:
                    found.add(url)
                    products.append(url)
            for link in category_links(soup, start):
                frontier.push(link)

        logger.info("[DISCOVER] crawled %d page(s) under %s, %d product URL(s)",
                    len(frontier.visited), start, len(products))
        if use_cache:
            self.cache.set(cache_key, products, ttl=CRAWL_TTL)
        return products


def _loc_values(nodes) -> List[str]:
    out = []
    for node in nodes:
        for loc in node.find_all("loc", recursive=node.name != "[document]"):
            text = (loc.get_text() or "").strip()
            parts = urlsplit(text)
            if parts.scheme in ("http", "https") and parts.netloc:
                out.append(text)
    return out


def product_links(soup: BeautifulSoup, menu_base: str) -> List[str]:
    """Product URLs on a menu page, from four independent hints."""
    candidates: List[str] = []

    # 1. Path markers in plain links.
    for a in soup.find_all("a", href=True):
        if _HREF_PRODUCT_MARKER.search(a["href"]):
            url = normalize_url(a["href"], menu_base)
            if url and is_product_url(url):
                candidates.append(url)

    # 2. data-*url* attributes (React / SPA cards).
    for tag in soup.find_all(True):
        for attr, value in tag.attrs.items():
            if attr.startswith("data-") and "url" in attr and isinstance(value, str):
                url = normalize_url(value, menu_base)
                if url and is_product_url(url):
                    candidates.append(url)

    # 3. JSON-LD Product nodes that carry their own URL.
    for node in product_nodes(soup):
        if isinstance(node.get("url"), str):
            url = normalize_url(node["url"], menu_base)
            if url:
                candidates.append(url)

    # 4. Anchors flagged as product cards.
    for a in soup.find_all("a", href=True):
        flagged = any(attr.startswith("data-product") for attr in a.attrs) or a.find_parent(
            attrs={"data-product-id": True}) is not None
        if flagged or any(_CLASS_PRODUCT.search(c) for c in a.get("class", [])):
            url = normalize_url(a["href"], menu_base)
            if url:
                candidates.append(url)

    return _dedupe(u for u in candidates if same_host(u, menu_base))


def category_links(soup: BeautifulSoup, menu_base: str) -> List[str]:
    """Same-host menu/category pages under the menu base worth visiting next."""
    links = []
    for a in soup.find_all("a", href=True):
        if not _HREF_CATEGORY_MARKER.search(a["href"]):
            continue
        url = normalize_url(a["href"], menu_base)
        if url and is_under(url, menu_base) and not is_product_url(url):
            links.append(url)
    return _dedupe(links)
