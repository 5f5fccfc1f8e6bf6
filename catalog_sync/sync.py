"""
One sync run: find product URLs on the remote menu, fetch and extract each
page, upsert into the catalog store, then retire products that have not been
seen for a while.

    python -m catalog_sync.sync          -> sync up to MAX_PRODUCTS_PER_SYNC products
    python -m catalog_sync.sync 10       -> sync the first 10 discovered products
"""
import logging
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import orjson
import requests

from .cache import Cache, FileCache, MemoryCache
from .catalog_store import (
    TAXONOMY_BRAND,
    TAXONOMY_CATEGORY,
    TAXONOMY_EFFECTS,
    CatalogStore,
    build_store,
)
from .config import Settings, get_settings
from .discovery import URLDiscoverer
from .errors import (
    CatalogSyncError,
    ConfigurationInvalid,
    DiscoveryFailure,
    ExtractionEmpty,
    FetchFailure,
    PersistenceFailure,
)
from .fetcher import HEAD_TIMEOUT, PAGE_TIMEOUT, WINDOW_SECONDS, RateLimitedFetcher
from .lock import PROCESS_LOCKS, RUN_LOCK_TTL, RunLock
from .normalizer import normalize_url, split_terms
from .parser_generic import ContentExtractor
from .robots import host_root
from .schema import ProductRecord, SyncRunResult, SyncStatus, utcnow

logger = logging.getLogger(__name__)

FRESH_WINDOW = timedelta(hours=1)
PRODUCT_DELAY = 2.0
SITEMAP_PROBES = ("/sitemap.xml", "/sitemap_index.xml", "/sitemaps/sitemap.xml")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SyncReconciler:
    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        fetcher: RateLimitedFetcher,
        discoverer: URLDiscoverer,
        extractor: Optional[ContentExtractor] = None,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        product_delay: float = PRODUCT_DELAY,
    ):
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.discoverer = discoverer
        self.extractor = extractor or ContentExtractor()
        self.product_delay = product_delay
        self._now = now
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #
    def resolve_sitemap_url(self) -> str:
        """Configured sitemap URL, or the first sitemap path on the menu host that answers 200."""
        base = self.settings.menu_base_url
        start = None
        if base:
            start = normalize_url(base)
            if not start:
                raise ConfigurationInvalid(f"Invalid menu URL: {base}")

        if self.settings.sitemap_url:
            url = normalize_url(self.settings.sitemap_url)
            if not url:
                raise ConfigurationInvalid(f"Invalid sitemap URL: {self.settings.sitemap_url}")
            return url

        if not start:
            raise ConfigurationInvalid("Menu URL not configured (set SITEMAP_URL or MENU_BASE_URL)")

        root = host_root(start)
        for path in SITEMAP_PROBES:
            candidate = root + path
            try:
                if self.fetcher.head(candidate, timeout=HEAD_TIMEOUT).status == 200:
                    logger.info("[SYNC] found sitemap at %s", candidate)
                    return candidate
            except FetchFailure as exc:
                logger.debug("[SYNC] sitemap probe %s failed: %s", candidate, exc)
        return root + SITEMAP_PROBES[0]

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #
    def run(self, limit: Optional[int] = None) -> SyncRunResult:
        result = SyncRunResult(started_at=self._now())
        try:
            self._run(result, limit)
        except (ConfigurationInvalid, DiscoveryFailure) as exc:
            logger.error("[SYNC] run aborted: %s", exc)
            result.status = SyncStatus.ERROR
            result.errors.append(str(exc))
        except Exception as exc:
            logger.exception("[SYNC] run crashed")
            result.status = SyncStatus.ERROR
            result.errors.append(f"{type(exc).__name__}: {exc}")
        return self._report(result)

    def _run(self, result: SyncRunResult, limit: Optional[int]):
        sitemap_url = self.resolve_sitemap_url()
        urls = self.discoverer.discover(
            sitemap_url,
            self.settings.menu_base_url,
            max_pages=self.settings.max_crawl_pages,
        )
        result.discovered = len(urls)

        cap = limit if limit and limit > 0 else self.settings.max_products_per_sync
        batch = urls[:cap]
        logger.info("[SYNC] %d product URL(s) discovered, syncing %d", len(urls), len(batch))

        fetched = 0
        for url in batch:
            try:
                existing = self.store.find_by_url(url)
            except PersistenceFailure as exc:
                result.errors.append(f"{url}: {exc}")
                continue
            if self._is_fresh(existing):
                logger.debug("[SYNC] %s synced within the last hour; skipping", url)
                result.skipped += 1
                continue

            if fetched:
                self._sleep(self.product_delay)
            fetched += 1
            self._sync_one(url, existing, result)

        self._retire_stale(urls, result)

    def _is_fresh(self, existing: Optional[ProductRecord]) -> bool:
        if existing is None or existing.last_synced_at is None:
            return False
        return self._now() - _aware(existing.last_synced_at) <= FRESH_WINDOW

    def _sync_one(self, url: str, existing: Optional[ProductRecord], result: SyncRunResult):
        try:
            self.sync_url(url, existing)
        except ExtractionEmpty as exc:
            logger.info("[SYNC] %s; skipping", exc)
            result.skipped += 1
        except FetchFailure as exc:
            logger.warning("[SYNC] fetch failed for %s: %s", url, exc)
            result.errors.append(f"{url}: {exc}")
        except CatalogSyncError as exc:
            logger.warning("[SYNC] could not store %s: %s", url, exc)
            result.errors.append(f"{url}: {exc}")
        else:
            result.synced += 1

    def sync_url(self, url: str, existing: Optional[ProductRecord] = None) -> str:
        """
        Fetch, extract and store one product page; returns the product id.

        Raises FetchFailure (transport or non-2xx), ExtractionEmpty (no name on
        the page, nothing written) or PersistenceFailure.
        """
        page = self.fetcher.fetch(url)
        if not page.ok:
            raise FetchFailure(url, f"HTTP {page.status}", kind="status", status=page.status)

        record = self.extractor.extract(page.body, url)
        if not record.is_valid:
            raise ExtractionEmpty(f"no product name found on {url}")

        product_id = self.persist(record, existing)
        logger.info("[SYNC] OK   -> %s | %s | %s", product_id, record.name, record.price)
        return product_id

    def persist(self, record: ProductRecord, existing: Optional[ProductRecord] = None) -> str:
        now = self._now()
        record.last_seen_at = now
        record.last_synced_at = now
        if existing is not None:
            record.id = existing.id

        product_id = self.store.upsert(record)
        if record.category:
            self.store.set_tags(product_id, TAXONOMY_CATEGORY, split_terms(record.category))
        if record.brand:
            self.store.set_tags(product_id, TAXONOMY_BRAND, [record.brand])
        if record.effects:
            self.store.set_tags(product_id, TAXONOMY_EFFECTS, record.effects)
        if record.image_url:
            self.store.set_image(product_id, record.image_url)
        return product_id

    def _retire_stale(self, discovered: List[str], result: SyncRunResult):
        cutoff = self._now() - timedelta(days=self.settings.staleness_days)
        try:
            stale = self.store.list_stale(cutoff, discovered)
        except PersistenceFailure as exc:
            result.errors.append(f"retire: {exc}")
            return
        for record in stale:
            try:
                self.store.mark_out_of_stock(record.id)
            except PersistenceFailure as exc:
                result.errors.append(f"{record.url}: {exc}")
                continue
            result.retired += 1
        if result.retired:
            logger.info("[SYNC] marked %d product(s) out of stock", result.retired)

    def _report(self, result: SyncRunResult) -> SyncRunResult:
        result.finish(self._now())
        summary: Dict[str, Any] = result.to_summary()
        summary.update(
            discovered=result.discovered,
            retired=result.retired,
            started_at=result.started_at.isoformat(),
            finished_at=result.finished_at.isoformat(),
        )
        try:
            self.store.save_run_summary(summary)
        except PersistenceFailure as exc:
            logger.warning("[SYNC] could not save run summary: %s", exc)
        logger.info(
            "[SYNC] %s: synced=%d skipped=%d retired=%d errors=%d",
            result.status.value, result.synced, result.skipped, result.retired, len(result.errors),
        )
        return result


# ---------------------------------------------------------------------- #
# Wiring
# ---------------------------------------------------------------------- #
def build_cache(settings: Settings) -> Cache:
    if settings.cache_dir:
        return FileCache(settings.cache_dir)
    return MemoryCache()


def build_reconciler(
    settings: Settings,
    store: Optional[CatalogStore] = None,
    cache: Optional[Cache] = None,
    session: Optional[requests.Session] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] = utcnow,
) -> SyncReconciler:
    """Wire one reconciler and its services from `settings`; tests pass fakes for the I/O edges."""
    cache = cache if cache is not None else build_cache(settings)
    fetcher = RateLimitedFetcher(settings.crawl_rate_limit, cache=cache, session=session, clock=clock, sleep=sleep)
    discoverer = URLDiscoverer(fetcher, cache, max_pages=settings.max_crawl_pages, sleep=sleep)
    return SyncReconciler(
        settings,
        store if store is not None else build_store(settings),
        fetcher,
        discoverer,
        ContentExtractor(),
        now=now,
        sleep=sleep,
    )


def run_lock_ttl(settings: Settings, limit: Optional[int] = None) -> float:
    """
    Lock TTL for one run: every request it may send paced at the slower of the
    rate limit and the product delay and then timing out, doubled. Never below
    RUN_LOCK_TTL.
    """
    cap = limit if limit and limit > 0 else settings.max_products_per_sync
    budget = cap + settings.max_crawl_pages + len(SITEMAP_PROBES) + 2
    per_request = max(WINDOW_SECONDS / settings.crawl_rate_limit, PRODUCT_DELAY) + PAGE_TIMEOUT
    return max(RUN_LOCK_TTL, 2 * budget * per_request)


def run_sync(
    limit: Optional[int] = None,
    settings: Optional[Settings] = None,
    store: Optional[CatalogStore] = None,
    cache: Optional[Cache] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """
    Run one guarded sync and return the plain summary dict. Never raises; a run
    that cannot start comes back as `status="error"`.
    """
    try:
        settings = settings or get_settings()
        if cache is not None:
            lock_cache = cache
        else:
            cache = build_cache(settings)
            lock_cache = cache if settings.cache_dir else PROCESS_LOCKS
        with RunLock(lock_cache, ttl=run_lock_ttl(settings, limit)):
            reconciler = build_reconciler(settings, store=store, cache=cache, session=session)
            result = reconciler.run(limit)
    except (CatalogSyncError, RuntimeError, OSError) as exc:
        logger.error("[SYNC] run not started: %s", exc)
        result = SyncRunResult(status=SyncStatus.ERROR, errors=[str(exc)]).finish()
    except Exception as exc:
        logger.exception("[SYNC] run could not be set up")
        result = SyncRunResult(status=SyncStatus.ERROR, errors=[f"{type(exc).__name__}: {exc}"]).finish()
    return result.to_summary()


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    limit = int(argv[0]) if argv else None
    summary = run_sync(limit)
    print(orjson.dumps(summary, option=orjson.OPT_INDENT_2).decode())
    return 0 if summary["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
