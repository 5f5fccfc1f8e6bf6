import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

import requests

from .cache import DAY, Cache, MemoryCache
from .errors import FetchFailure
from .robots import RobotsPolicy, host_root
from .schema import FetchCacheEntry

logger = logging.getLogger(__name__)

UA = "CatalogSync/1.0 (menu catalog mirror; +https://github.com/catalog-sync)"

DEFAULT_HEADERS = {
    "User-Agent": UA,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

PAGE_TIMEOUT = 30
HEAD_TIMEOUT = 5
WINDOW_SECONDS = 60.0
VALIDATOR_TTL = 7 * DAY


@dataclass
class FetchResult:
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        # A revalidated 304 carries the cached body and is as good as a 200.
        return 200 <= self.status < 300 or (self.status == 304 and self.from_cache)


class RateLimiter:
    """
    Rolling 60 s window capped at `rate_limit` requests, plus a minimum gap of
    60 / rate_limit seconds between consecutive requests.
    """

    def __init__(
        self,
        rate_limit: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_limit < 1:
            raise ValueError("rate_limit must be >= 1")
        self.rate_limit = rate_limit
        self.min_interval = WINDOW_SECONDS / rate_limit
        self._clock = clock
        self._sleep = sleep
        self._sent: Deque[float] = deque()
        self._last_by_host: Dict[str, float] = {}

    def _prune(self, now: float):
        while self._sent and now - self._sent[0] >= WINDOW_SECONDS:
            self._sent.popleft()

    def wait(self, host: str = "", min_gap: Optional[float] = None):
        """Block until a request may be sent, then record it."""
        now = self._clock()
        self._prune(now)
        if len(self._sent) >= self.rate_limit:
            wait_for = self._sent[0] + WINDOW_SECONDS - now
            if wait_for > 0:
                logger.info("[FETCH] rate limit reached (%d/min); sleeping %.1fs", self.rate_limit, wait_for)
                self._sleep(wait_for)
            now = self._clock()
            self._prune(now)

        pause = 0.0
        if self._sent:
            pause = self.min_interval - (now - self._sent[-1])
        last_to_host = self._last_by_host.get(host)
        if min_gap and last_to_host is not None:
            pause = max(pause, min_gap - (now - last_to_host))
        elif min_gap and last_to_host is None:
            # First request to a host with a Crawl-delay: wait it out once up front.
            pause = max(pause, min_gap)
        if pause > 0:
            self._sleep(pause)
            now = self._clock()

        self._sent.append(now)
        self._last_by_host[host] = now


class RateLimitedFetcher:
    """
    The only component that talks to the remote site. All GET/HEAD calls go
    through one rate limiter, robots.txt is honored per host, and GETs are
    conditional when an ETag / Last-Modified is cached for the URL.
    """

    def __init__(
        self,
        rate_limit: int = 30,
        cache: Optional[Cache] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        respect_robots: bool = True,
    ):
        self.cache = cache if cache is not None else MemoryCache()
        self.session = session if session is not None else requests.Session()
        self.limiter = RateLimiter(rate_limit, clock=clock, sleep=sleep)
        self.robots = RobotsPolicy(self.session, self.cache, UA, limiter=self.limiter) if respect_robots else None
        self.request_count = 0

    # ------------------------------------------------------------------ #
    # Conditional-request cache
    # ------------------------------------------------------------------ #
    @staticmethod
    def _cache_key(url: str) -> str:
        return f"fetch:{url}"

    def _load_entry(self, url: str) -> Optional[FetchCacheEntry]:
        raw = self.cache.get(self._cache_key(url))
        if not raw:
            return None
        return FetchCacheEntry.model_validate(raw)

    def _store_entry(self, url: str, resp: requests.Response, body: str):
        entry = FetchCacheEntry(
            etag=resp.headers.get("ETag"),
            last_modified=resp.headers.get("Last-Modified"),
            body=body,
            stored_at=time.time(),
        )
        if entry.has_validators:
            self.cache.set(self._cache_key(url), entry.model_dump(), ttl=VALIDATOR_TTL)
        else:
            # Nothing to revalidate with next time.
            self.cache.delete(self._cache_key(url))

    # ------------------------------------------------------------------ #
    # Pacing
    # ------------------------------------------------------------------ #
    def _before_request(self, url: str):
        crawl_delay = None
        if self.robots is not None:
            if not self.robots.allowed(url):
                raise FetchFailure(url, f"Disallowed by robots.txt: {url}", kind="robots")
            crawl_delay = self.robots.crawl_delay(url)
        self.limiter.wait(host_root(url), min_gap=crawl_delay)
        self.request_count += 1

    def _send(self, method: str, url: str, headers: Dict[str, str], timeout: float) -> requests.Response:
        self._before_request(url)
        try:
            if method == "HEAD":
                return self.session.head(url, headers=headers, timeout=timeout, allow_redirects=True)
            return self.session.get(url, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise FetchFailure(url, f"Timed out after {timeout}s: {url}", kind="timeout") from exc
        except requests.RequestException as exc:
            raise FetchFailure(url, f"{type(exc).__name__}: {exc}", kind="network") from exc

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def fetch(self, url: str, timeout: float = PAGE_TIMEOUT, conditional: bool = True) -> FetchResult:
        headers = dict(DEFAULT_HEADERS)
        entry = self._load_entry(url) if conditional else None
        if entry is not None:
            if entry.etag:
                headers["If-None-Match"] = entry.etag
            if entry.last_modified:
                headers["If-Modified-Since"] = entry.last_modified

        resp = self._send("GET", url, headers, timeout)

        if resp.status_code == 304 and conditional:
            if entry is not None and entry.body is not None:
                logger.debug("[FETCH] 304 %s (cached body)", url)
                return FetchResult(url, 304, dict(resp.headers), entry.body, from_cache=True)
            # 304 with nothing to serve is a miss: ask again without validators.
            logger.info("[FETCH] 304 without cached body for %s; refetching", url)
            self.cache.delete(self._cache_key(url))
            return self.fetch(url, timeout=timeout, conditional=False)

        body = resp.text or ""
        if resp.status_code == 200:
            self._store_entry(url, resp, body)
        logger.debug("[FETCH] %d %s (%d bytes)", resp.status_code, url, len(body))
        return FetchResult(url, resp.status_code, dict(resp.headers), body)

    def head(self, url: str, timeout: float = HEAD_TIMEOUT) -> FetchResult:
        resp = self._send("HEAD", url, dict(DEFAULT_HEADERS), timeout)
        return FetchResult(url, resp.status_code, dict(resp.headers))
