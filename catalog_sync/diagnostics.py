"""Dry-run checks for the admin "test" action: fetch, parse and crawl without writing anything."""
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from .cache import Cache, MemoryCache
from .config import Settings, get_settings
from .discovery import URLDiscoverer
from .errors import CatalogSyncError
from .fetcher import RateLimitedFetcher
from .parser_generic import ContentExtractor

logger = logging.getLogger(__name__)

TEST_CRAWL_PAGES = 3
SAMPLE_URLS = 5


def diagnose(
    url: Optional[str] = None,
    settings: Optional[Settings] = None,
    cache: Optional[Cache] = None,
    session: Optional[requests.Session] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    cache = cache if cache is not None else MemoryCache()
    fetcher = RateLimitedFetcher(settings.crawl_rate_limit, cache=cache, session=session, clock=clock, sleep=sleep)
    menu_base = settings.menu_base_url

    results: Dict[str, Any] = {"success": False, "tests": {}}
    tests = results["tests"]
    tests["configuration"] = {
        "menu_base_url": menu_base or "",
        "sitemap_url": settings.sitemap_url or "",
        "catalog_store": settings.catalog_store,
        "crawl_rate_limit": settings.crawl_rate_limit,
    }

    url = url or menu_base
    if not url:
        results["error"] = (
            "No URL provided. Add ?url=https://example.com/product to test a specific URL, "
            "or configure MENU_BASE_URL."
        )
        return results

    fetch_report: Dict[str, Any] = {"url": url}
    tests["fetch_page"] = fetch_report
    try:
        page = fetcher.fetch(url, conditional=False)
    except CatalogSyncError as exc:
        fetch_report.update(status="error", error=str(exc))
        return results
    if not page.ok:
        fetch_report.update(status="error", error=f"HTTP {page.status}")
        return results
    fetch_report.update(
        status="success",
        body_length=len(page.body),
        has_etag=bool(page.headers.get("ETag") or page.headers.get("etag")),
    )

    record = ContentExtractor().extract(page.body, url)
    tests["parse_product"] = {
        "status": "success",
        "data": {
            "name": record.name,
            "category": record.category,
            "brand": record.brand,
            "description_length": len(record.description),
            "price": record.price,
            "thc": record.thc,
            "cbd": record.cbd,
            "has_image": bool(record.image_url),
            "in_stock": record.in_stock,
            "effects": record.effects,
        },
    }

    if menu_base:
        crawl_report: Dict[str, Any] = {"menu_base": menu_base}
        tests["discover_urls"] = crawl_report
        discoverer = URLDiscoverer(fetcher, cache, max_pages=TEST_CRAWL_PAGES, sleep=sleep)
        try:
            urls = discoverer.crawl(menu_base, max_pages=TEST_CRAWL_PAGES, use_cache=False)
        except CatalogSyncError as exc:
            logger.warning("[SYNC] test crawl of %s failed: %s", menu_base, exc)
            crawl_report.update(status="error", error=str(exc))
        else:
            crawl_report.update(status="success", urls_found=len(urls), sample_urls=urls[:SAMPLE_URLS])

    results["success"] = True
    return results
