"""
Tests for SyncReconciler and the run_sync entry point.
"""
import threading
from datetime import timedelta

import orjson
import pytest

from catalog_sync import sync as sync_module
from catalog_sync.cache import MemoryCache
from catalog_sync.catalog_store import InMemoryCatalogStore
from catalog_sync.config import Settings
from catalog_sync.errors import ExtractionEmpty, FetchFailure, PersistenceFailure
from catalog_sync.lock import PROCESS_LOCKS, RUN_LOCK_KEY, RUN_LOCK_TTL, RunLock
from catalog_sync.schema import ProductRecord, SyncStatus
from catalog_sync.sync import build_reconciler, run_lock_ttl, run_sync

from conftest import FakeSession, page, product_page, sitemap

SITEMAP = "https://x.test/sitemap.xml"
BLUE_DREAM = "https://x.test/product/blue-dream"


def make_reconciler(session, store, cache, clock, settings):
    return build_reconciler(
        settings,
        store=store,
        cache=cache,
        session=session,
        clock=clock.monotonic,
        sleep=clock.sleep,
        now=clock.now,
    )


def product_urls(session):
    return [u for u in session.urls() if "/product/" in u]


class BlockingSession(FakeSession):
    """Holds the first GET of `block_url` until `release` is set."""

    def __init__(self, routes, block_url):
        super().__init__(routes)
        self.block_url = block_url
        self.entered = threading.Event()
        self.release = threading.Event()

    def get(self, url, headers=None, timeout=None, **kwargs):
        if url == self.block_url and not self.entered.is_set():
            self.entered.set()
            self.release.wait(5)
        return super().get(url, headers=headers, timeout=timeout)


class TestEndToEnd:
    """Sitemap -> fetch -> extract -> upsert."""

    def test_first_run_creates_record(self, store, cache, clock, settings):
        session = FakeSession({
            SITEMAP: page(sitemap(BLUE_DREAM, "https://x.test/menu/flower")),
            BLUE_DREAM: page(product_page(), ETag='"v1"'),
        })

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.SUCCESS
        assert result.discovered == 1
        assert result.synced == 1
        assert result.skipped == 0
        saved = store.find_by_url(BLUE_DREAM)
        assert saved.name == "Blue Dream"
        assert saved.price == "35"
        assert saved.in_stock is True
        assert saved.last_seen_at == clock.now()
        assert saved.source == "SITEMAP_CRAWL"
        assert session.urls() == [SITEMAP, BLUE_DREAM]

    def test_second_run_within_the_hour_skips(self, store, cache, clock, settings):
        session = FakeSession({
            SITEMAP: page(sitemap(BLUE_DREAM)),
            BLUE_DREAM: page(product_page(), ETag='"v1"'),
        })
        make_reconciler(session, store, cache, clock, settings).run()

        clock.advance(3600)
        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.skipped == 1
        assert result.synced == 0
        assert product_urls(session) == [BLUE_DREAM]

    def test_stale_record_is_refetched(self, store, cache, clock, settings):
        session = FakeSession({
            SITEMAP: page(sitemap(BLUE_DREAM)),
            BLUE_DREAM: [page(product_page(price="35"), ETag='"v1"'), page(product_page(price="30"), ETag='"v2"')],
        })
        make_reconciler(session, store, cache, clock, settings).run()

        clock.advance(2 * 3600)
        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.synced == 1
        assert store.find_by_url(BLUE_DREAM).price == "30"
        assert len(product_urls(session)) == 2

    def test_crawl_fallback(self, store, cache, clock):
        settings = Settings(sitemap_url=SITEMAP, menu_base_url="https://x.test/menu")
        session = FakeSession({
            "https://x.test/menu": page('<a href="/product/blue-dream">Blue Dream</a>'),
            BLUE_DREAM: page(product_page()),
        })

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.synced == 1
        assert store.find_by_url(BLUE_DREAM).name == "Blue Dream"


class TestPerUrlOutcomes:
    """Skips and errors never abort the run."""

    def test_nameless_page_is_skipped_without_write(self, store, cache, clock, settings):
        session = FakeSession({
            SITEMAP: page(sitemap(BLUE_DREAM)),
            BLUE_DREAM: page("<html><body><p>Nothing to see</p></body></html>"),
        })

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.skipped == 1
        assert result.synced == 0
        assert result.status == SyncStatus.SUCCESS
        assert store.records == {}

    def test_nameless_page_raises_extraction_empty(self, store, cache, clock, settings):
        session = FakeSession({BLUE_DREAM: page("<html><body><p>Nothing to see</p></body></html>")})
        reconciler = make_reconciler(session, store, cache, clock, settings)

        with pytest.raises(ExtractionEmpty):
            reconciler.sync_url(BLUE_DREAM)

        assert store.records == {}

    def test_http_error_raises_status_failure(self, store, cache, clock, settings):
        session = FakeSession({BLUE_DREAM: page("boom", status=503)})
        reconciler = make_reconciler(session, store, cache, clock, settings)

        with pytest.raises(FetchFailure) as exc_info:
            reconciler.sync_url(BLUE_DREAM)

        assert exc_info.value.kind == "status"
        assert exc_info.value.status == 503

    def test_http_error_is_partial(self, store, cache, clock, settings):
        ok_url = "https://x.test/product/ok"
        session = FakeSession({
            SITEMAP: page(sitemap(BLUE_DREAM, ok_url)),
            BLUE_DREAM: page("boom", status=500),
            ok_url: page(product_page(name="OK Kush")),
        })

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.PARTIAL
        assert result.synced == 1
        assert result.errors == [f"{BLUE_DREAM}: HTTP 500"]
        assert result.to_summary()["success"] is True

    def test_timeout_is_recorded(self, store, cache, clock, settings, timeout_error):
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: timeout_error})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.PARTIAL
        assert result.errors[0].startswith(BLUE_DREAM)

    def test_store_failure_is_recorded(self, cache, clock, settings):
        class FailingStore(InMemoryCatalogStore):
            def upsert(self, record):
                raise PersistenceFailure("disk full")

        store = FailingStore()
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.PARTIAL
        assert result.errors == [f"{BLUE_DREAM}: disk full"]


class TestTaxonomyAndImages:
    """Side writes after an upsert."""

    def test_terms_and_featured_image(self, store, cache, clock, settings):
        body = product_page(extra=(
            ',"category":"Flower, Indica","brand":"Acme",'
            '"image":"https://cdn.x.test/1.jpg",'
            '"additionalProperty":[{"name":"Effects","value":["Sleepy","Hungry"]}]'
        ))
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(body)})

        make_reconciler(session, store, cache, clock, settings).run()

        pid = store.find_by_url(BLUE_DREAM).id
        assert store.term_names(pid, "category") == ["Flower", "Indica"]
        assert store.term_names(pid, "brand") == ["Acme"]
        assert store.term_names(pid, "effects") == ["Sleepy", "Hungry"]
        assert store.images[pid] == "https://cdn.x.test/1.jpg"

    def test_featured_image_kept_on_resync(self, store, cache, clock, settings):
        first = product_page(extra=',"image":"https://cdn.x.test/1.jpg"')
        second = product_page(extra=',"image":"https://cdn.x.test/2.jpg"')
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: [page(first), page(second)]})

        make_reconciler(session, store, cache, clock, settings).run()
        clock.advance(2 * 3600)
        make_reconciler(session, store, cache, clock, settings).run()

        saved = store.find_by_url(BLUE_DREAM)
        assert saved.image_url == "https://cdn.x.test/2.jpg"
        assert store.images[saved.id] == "https://cdn.x.test/1.jpg"


class TestRetirement:
    """Soft retirement of products missing from discovery."""

    def test_absent_and_old_goes_out_of_stock(self, store, cache, clock, settings):
        old = clock.now() - timedelta(days=31)
        store.upsert(ProductRecord(url="https://x.test/product/gone", name="Gone", last_seen_at=old))
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.retired == 1
        gone = store.find_by_url("https://x.test/product/gone")
        assert gone.in_stock is False
        assert gone.name == "Gone"

    def test_present_but_old_stays_in_stock(self, store, cache, clock, settings):
        old = clock.now() - timedelta(days=90)
        store.upsert(ProductRecord(url=BLUE_DREAM, name="Blue Dream", last_seen_at=old))
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page("down", status=503)})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.retired == 0
        assert store.find_by_url(BLUE_DREAM).in_stock is True

    def test_recently_seen_absent_stays_in_stock(self, store, cache, clock, settings):
        recent = clock.now() - timedelta(days=3)
        store.upsert(ProductRecord(url="https://x.test/product/hiatus", name="Hiatus", last_seen_at=recent))
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())})

        make_reconciler(session, store, cache, clock, settings).run()

        assert store.find_by_url("https://x.test/product/hiatus").in_stock is True


class TestRunControl:
    """Configuration, caps, pacing and fatal errors."""

    def test_missing_configuration(self, store, cache, clock):
        result = make_reconciler(FakeSession(), store, cache, clock, Settings()).run()

        assert result.status == SyncStatus.ERROR
        assert "not configured" in result.errors[0]

    def test_malformed_menu_url(self, store, cache, clock):
        settings = Settings(menu_base_url="not a url")

        result = make_reconciler(FakeSession(), store, cache, clock, settings).run()

        assert result.status == SyncStatus.ERROR
        assert result.errors == ["Invalid menu URL: not a url"]

    def test_malformed_menu_url_with_sitemap(self, store, cache, clock):
        settings = Settings(sitemap_url=SITEMAP, menu_base_url="not a url")
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.ERROR
        assert result.errors == ["Invalid menu URL: not a url"]
        assert session.urls() == []
        assert store.records == {}

    def test_discovery_failure_is_error(self, store, cache, clock, settings):
        session = FakeSession({SITEMAP: page(sitemap("https://x.test/about"))})

        result = make_reconciler(session, store, cache, clock, settings).run()

        assert result.status == SyncStatus.ERROR
        assert result.to_summary()["success"] is False
        assert "no URLs found" in result.errors[0]

    def test_sitemap_probe(self, store, cache, clock):
        settings = Settings(menu_base_url="https://x.test/menu")
        session = FakeSession({"https://x.test/sitemap_index.xml": page(sitemap(BLUE_DREAM))})

        reconciler = make_reconciler(session, store, cache, clock, settings)

        assert reconciler.resolve_sitemap_url() == "https://x.test/sitemap_index.xml"
        heads = session.urls("HEAD")
        assert heads == ["https://x.test/sitemap.xml", "https://x.test/sitemap_index.xml"]

    def test_sitemap_probe_fallback(self, store, cache, clock):
        settings = Settings(menu_base_url="https://x.test/menu")
        reconciler = make_reconciler(FakeSession(), store, cache, clock, settings)

        assert reconciler.resolve_sitemap_url() == "https://x.test/sitemap.xml"

    def test_limit_caps_batch(self, store, cache, clock, settings):
        urls = [f"https://x.test/product/p{i}" for i in range(5)]
        routes = {u: page(product_page(name=f"P{i}")) for i, u in enumerate(urls)}
        routes[SITEMAP] = page(sitemap(*urls))
        session = FakeSession(routes)

        result = make_reconciler(session, store, cache, clock, settings).run(limit=2)

        assert result.discovered == 5
        assert result.synced == 2
        assert product_urls(session) == urls[:2]

    def test_setting_caps_batch(self, store, cache, clock):
        settings = Settings(sitemap_url=SITEMAP, max_products_per_sync=3)
        urls = [f"https://x.test/product/p{i}" for i in range(5)]
        routes = {u: page(product_page(name=f"P{i}")) for i, u in enumerate(urls)}
        routes[SITEMAP] = page(sitemap(*urls))

        result = make_reconciler(FakeSession(routes), store, cache, clock, settings).run()

        assert result.synced == 3

    def test_products_are_paced(self, store, cache, clock):
        settings = Settings(sitemap_url=SITEMAP, crawl_rate_limit=60)
        a, b = "https://x.test/product/a", "https://x.test/product/b"
        session = FakeSession({
            SITEMAP: page(sitemap(a, b)),
            a: page(product_page(name="A")),
            b: page(product_page(name="B")),
        })

        make_reconciler(session, store, cache, clock, settings).run()

        assert clock.sleeps == [1.0, 1.0, 2.0]

    def test_summary_is_persisted(self, store, cache, clock, settings):
        session = FakeSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())})

        make_reconciler(session, store, cache, clock, settings).run()

        last = store.last_run_summary()
        assert last["status"] == "success"
        assert last["synced"] == 1
        assert last["discovered"] == 1
        assert last["finished_at"] == clock.now().isoformat()


class TestRunSync:
    """Guarded entry point and CLI."""

    def test_rejects_concurrent_run(self, store, cache):
        RunLock(cache).acquire()

        summary = run_sync(settings=Settings(sitemap_url=SITEMAP), store=store, cache=cache)

        assert summary == {
            "success": False,
            "status": "error",
            "synced": 0,
            "skipped": 0,
            "errors": ["Sync already in progress"],
        }
        assert store.runs == []

    def test_releases_lock_after_run(self, store, cache):
        summary = run_sync(settings=Settings(), store=store, cache=cache)

        assert summary["status"] == "error"
        assert RunLock(cache).acquire() is True

    def test_unbuildable_store_is_an_error_result(self, cache):
        settings = Settings(sitemap_url=SITEMAP, catalog_store="supabase")

        summary = run_sync(settings=settings, cache=cache)

        assert summary["success"] is False
        assert summary["status"] == "error"
        assert "SUPABASE_URL" in summary["errors"][0]
        assert RunLock(cache).acquire() is True

    def test_concurrent_runs_without_shared_cache(self, store):
        settings = Settings(sitemap_url=SITEMAP, crawl_rate_limit=6000)
        session = BlockingSession({SITEMAP: page(sitemap(BLUE_DREAM)), BLUE_DREAM: page(product_page())}, SITEMAP)
        first = {}
        worker = threading.Thread(target=lambda: first.update(run_sync(settings=settings, store=store, session=session)))

        worker.start()
        try:
            assert session.entered.wait(5)
            second = run_sync(settings=settings, store=store, session=FakeSession())
        finally:
            session.release.set()
            worker.join(10)

        assert second["errors"] == ["Sync already in progress"]
        assert first["synced"] == 1
        assert PROCESS_LOCKS.get(RUN_LOCK_KEY) is None

    def test_lock_ttl_covers_slow_runs(self):
        assert run_lock_ttl(Settings(crawl_rate_limit=1, max_products_per_sync=500)) > 500 * 60
        assert run_lock_ttl(Settings(), limit=5) == RUN_LOCK_TTL

    def test_run_takes_lock_for_its_budget(self, store):
        taken = []

        class RecordingCache(MemoryCache):
            def add(self, key, value, ttl=None):
                taken.append((key, ttl))
                return super().add(key, value, ttl=ttl)

        settings = Settings(crawl_rate_limit=1, max_products_per_sync=500)

        run_sync(settings=settings, store=store, cache=RecordingCache())

        assert taken == [(RUN_LOCK_KEY, run_lock_ttl(settings))]

    def test_cli_prints_summary(self, monkeypatch, capsys):
        calls = []

        def fake_run_sync(limit=None):
            calls.append(limit)
            return {"success": True, "status": "success", "synced": 2, "skipped": 0, "errors": []}

        monkeypatch.setattr(sync_module, "run_sync", fake_run_sync)

        assert sync_module.main(["7"]) == 0
        assert calls == [7]
        assert orjson.loads(capsys.readouterr().out)["synced"] == 2

    def test_cli_exit_code_on_error(self, monkeypatch, capsys):
        monkeypatch.setattr(
            sync_module,
            "run_sync",
            lambda limit=None: {"success": False, "status": "error", "synced": 0, "skipped": 0, "errors": ["x"]},
        )

        assert sync_module.main([]) == 1
