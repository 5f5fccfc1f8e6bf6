# robots.py
import logging
import urllib.robotparser as urp
from typing import Dict, Optional
from urllib.parse import urlsplit

import requests

from .cache import DAY, Cache

logger = logging.getLogger(__name__)

ROBOTS_TIMEOUT = 10
ROBOTS_TTL = DAY


def host_root(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class RobotsPolicy:
    """
    Per-host robots.txt rules. Bodies are cached for a day in the shared cache;
    parsed rules are kept for the lifetime of this object (one sync run).
    The robots.txt request itself waits on `limiter` like any other request.
    """

    def __init__(self, session: requests.Session, cache: Cache, user_agent: str, timeout: float = ROBOTS_TIMEOUT,
                 limiter=None):
        self.session = session
        self.cache = cache
        self.user_agent = user_agent
        self.timeout = timeout
        self.limiter = limiter
        self._parsers: Dict[str, urp.RobotFileParser] = {}

    def _download(self, base: str) -> str:
        robots_url = f"{base}/robots.txt"
        if self.limiter is not None:
            self.limiter.wait(base)
        try:
            r = self.session.get(robots_url, timeout=self.timeout, headers={"User-Agent": self.user_agent})
        except requests.RequestException as exc:
            # Unreachable robots.txt => no rules; the empty body is cached like any other.
            logger.warning("[ROBOTS] %s unreachable: %s", robots_url, exc)
            return ""
        if r.status_code != 200:
            return ""
        return r.text or ""

    def parser_for(self, url: str) -> urp.RobotFileParser:
        base = host_root(url)
        rp = self._parsers.get(base)
        if rp is not None:
            return rp

        cache_key = f"robots:{urlsplit(url).netloc.lower()}"
        body = self.cache.get(cache_key)
        if body is None:
            body = self._download(base)
            self.cache.set(cache_key, body, ttl=ROBOTS_TTL)

        rp = urp.RobotFileParser()
        rp.parse(body.splitlines())  # empty rules => allow all
        self._parsers[base] = rp
        return rp

    def is_known(self, url: str) -> bool:
        return host_root(url) in self._parsers

    def allowed(self, url: str) -> bool:
        return self.parser_for(url).can_fetch(self.user_agent, url)

    def crawl_delay(self, url: str) -> Optional[float]:
        delay = self.parser_for(url).crawl_delay(self.user_agent)
        if delay is None:
            return None
        try:
            delay = float(delay)
        except (TypeError, ValueError):
            return None
        return delay if delay > 0 else None
