"""
Pytest fixtures and test doubles for the catalog sync pipeline.

Nothing here touches the network or really sleeps: a fake `requests` session
serves canned responses and a fake clock drives every timer.
"""
from datetime import datetime, timedelta, timezone

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from catalog_sync.cache import MemoryCache
from catalog_sync.catalog_store import InMemoryCatalogStore
from catalog_sync.config import Settings

EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """One timeline for monotonic(), time(), now() and sleep()."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.sleeps = []

    def monotonic(self) -> float:
        return self.t

    def time(self) -> float:
        return EPOCH.timestamp() + self.t

    def now(self) -> datetime:
        return EPOCH + timedelta(seconds=self.t)

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.t += seconds

    def advance(self, seconds: float):
        self.t += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", headers=None):
        self.status_code = status_code
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})


class FakeSession:
    """
    Minimal stand-in for requests.Session.

    `routes` maps a URL to a FakeResponse, an exception instance (raised), or a
    list of either (served in order, the last one repeats). Unknown URLs get 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def _respond(self, method: str, url: str, headers):
        self.calls.append((method, url, dict(headers or {})))
        route = self.routes.get(url)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if route is None:
            return FakeResponse(404, "")
        if isinstance(route, Exception):
            raise route
        return route

    def get(self, url, headers=None, timeout=None, **kwargs):
        return self._respond("GET", url, headers)

    def head(self, url, headers=None, timeout=None, **kwargs):
        return self._respond("HEAD", url, headers)

    def urls(self, method: str = "GET"):
        return [u for m, u, _ in self.calls if m == method and not u.endswith("/robots.txt")]


def page(body: str, status: int = 200, **headers) -> FakeResponse:
    return FakeResponse(status, body, {k.replace("_", "-"): v for k, v in headers.items()})


def sitemap(*locs: str) -> str:
    entries = "".join(f"<url><loc>{u}</loc></url>" for u in locs)
    return f'<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'


def sitemap_index(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{u}</loc></sitemap>" for u in locs)
    return (
        '<?xml version="1.0"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        f"{entries}</sitemapindex>"
    )


def product_page(name: str = "Blue Dream", price: str = "35", extra: str = "") -> str:
    return (
        "<html><head>"
        '<script type="application/ld+json">'
        f'{{"@type":"Product","name":"{name}","offers":{{"price":"{price}"}}{extra}}}'
        "</script></head><body></body></html>"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.time)


@pytest.fixture
def store():
    return InMemoryCatalogStore()


@pytest.fixture
def settings():
    return Settings(
        sitemap_url="https://x.test/sitemap.xml",
        menu_base_url="https://x.test/menu",
        crawl_rate_limit=30,
    )


@pytest.fixture
def timeout_error():
    return requests.Timeout("read timed out")
