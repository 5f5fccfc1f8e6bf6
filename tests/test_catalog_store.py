"""
Tests for the catalog store implementations.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from catalog_sync.catalog_store import InMemoryCatalogStore, SupabaseCatalogStore, build_store
from catalog_sync.config import Settings
from catalog_sync.errors import PersistenceFailure
from catalog_sync.schema import ProductRecord

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def record(url="https://x.test/product/a", name="A", **kwargs) -> ProductRecord:
    return ProductRecord(url=url, name=name, **kwargs)


def response(data=None, error=None):
    return MagicMock(data=data if data is not None else [], error=error)


class TestInMemoryStore:
    """Reference store used by tests and dry runs."""

    def test_upsert_is_keyed_by_url(self, store):
        first = store.upsert(record(price="10"))
        second = store.upsert(record(url="https://x.test/product/a?utm=1", price="12"))

        assert first == second
        assert len(store.records) == 1
        assert store.find_by_url("https://x.test/product/a").price == "12"

    def test_upsert_overwrites_fully(self, store):
        store.upsert(record(brand="Acme", thc="20"))
        store.upsert(record(brand=""))

        found = store.find_by_url("https://x.test/product/a")
        assert found.brand == ""
        assert found.thc == ""

    def test_refuses_nameless_record(self, store):
        with pytest.raises(PersistenceFailure):
            store.upsert(record(name="  "))
        assert store.records == {}

    def test_find_returns_copy(self, store):
        store.upsert(record())
        found = store.find_by_url("https://x.test/product/a")
        found.name = "mutated"

        assert store.find_by_url("https://x.test/product/a").name == "A"

    def test_tags_replace_per_taxonomy(self, store):
        pid = store.upsert(record())
        store.set_tags(pid, "effects", ["Happy", "happy", "Relaxed"])
        store.set_tags(pid, "brand", ["Acme"])
        store.set_tags(pid, "effects", ["Sleepy"])

        assert store.term_names(pid, "effects") == ["Sleepy"]
        assert store.term_names(pid, "brand") == ["Acme"]

    def test_tags_dedupe_by_slug(self, store):
        pid = store.upsert(record())
        store.set_tags(pid, "effects", ["Happy", "happy", "Relaxed"])

        assert store.term_names(pid, "effects") == ["Happy", "Relaxed"]

    def test_set_image_only_once(self, store):
        pid = store.upsert(record())

        assert store.set_image(pid, "https://cdn.x.test/1.jpg") is True
        assert store.set_image(pid, "https://cdn.x.test/2.jpg") is False
        assert store.images[pid] == "https://cdn.x.test/1.jpg"

    def test_unknown_id(self, store):
        with pytest.raises(PersistenceFailure):
            store.set_image("missing", "https://cdn.x.test/1.jpg")

    def test_list_stale(self, store):
        old = NOW - timedelta(days=40)
        store.upsert(record("https://x.test/product/old", "Old", last_seen_at=old))
        store.upsert(record("https://x.test/product/kept", "Kept", last_seen_at=old))
        store.upsert(record("https://x.test/product/new", "New", last_seen_at=NOW))
        store.upsert(record("https://x.test/product/gone", "Gone", last_seen_at=old, in_stock=False))

        stale = store.list_stale(NOW - timedelta(days=30), ["https://x.test/product/kept"])

        assert [r.name for r in stale] == ["Old"]

    def test_mark_out_of_stock(self, store):
        pid = store.upsert(record())
        store.mark_out_of_stock(pid)

        assert store.find_by_url("https://x.test/product/a").in_stock is False

    def test_run_summaries(self, store):
        assert store.last_run_summary() is None
        store.save_run_summary({"status": "success", "synced": 1})
        store.save_run_summary({"status": "partial", "synced": 2})

        assert store.last_run_summary() == {"status": "partial", "synced": 2}


class TestSupabaseStore:
    """Row mapping and error handling against a mocked Supabase client."""

    def test_upsert_on_product_url(self):
        client = MagicMock()
        table = client.table.return_value
        table.upsert.return_value.execute.return_value = response([{"id": "x.test-a"}])
        store = SupabaseCatalogStore(client)

        pid = store.upsert(record(brand="Acme", last_seen_at=NOW))

        assert pid == "x.test-a"
        client.table.assert_called_with("products")
        row = table.upsert.call_args.args[0]
        assert table.upsert.call_args.kwargs == {"on_conflict": "product_url"}
        assert row["product_url"] == "https://x.test/product/a"
        assert row["brand_name"] == "Acme"
        assert row["last_seen_at"] == NOW.isoformat()
        assert row["id"].startswith("x.test-")

    def test_find_by_url_maps_row(self):
        client = MagicMock()
        query = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.return_value = response([{
            "id": "p1",
            "product_url": "https://x.test/product/a",
            "name": "A",
            "brand_name": "Acme",
            "tags": None,
            "in_stock": False,
            "last_synced_at": "2026-03-01T00:00:00+00:00",
        }])
        store = SupabaseCatalogStore(client)

        found = store.find_by_url("https://x.test/product/a#top")

        client.table.return_value.select.return_value.eq.assert_called_with(
            "product_url", "https://x.test/product/a"
        )
        assert found.id == "p1"
        assert found.brand == "Acme"
        assert found.tags == []
        assert found.in_stock is False
        assert found.last_synced_at == NOW

    def test_find_by_url_missing(self):
        client = MagicMock()
        query = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        query.execute.return_value = response([])

        assert SupabaseCatalogStore(client).find_by_url("https://x.test/product/a") is None

    def test_client_exception_becomes_persistence_failure(self):
        client = MagicMock()
        client.table.return_value.upsert.return_value.execute.side_effect = RuntimeError("connection reset")

        with pytest.raises(PersistenceFailure, match="connection reset"):
            SupabaseCatalogStore(client).upsert(record())

    def test_error_payload_becomes_persistence_failure(self):
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.return_value = response(error="duplicate key")

        with pytest.raises(PersistenceFailure, match="duplicate key"):
            SupabaseCatalogStore(client).save_run_summary({"status": "success"})

    def test_set_image_only_when_empty(self):
        client = MagicMock()
        chain = client.table.return_value.update.return_value.eq.return_value.is_.return_value
        chain.execute.return_value = response([])

        assert SupabaseCatalogStore(client).set_image("p1", "https://cdn.x.test/1.jpg") is False
        client.table.return_value.update.return_value.eq.return_value.is_.assert_called_with(
            "featured_image_url", "null"
        )

    def test_set_tags_replaces_terms(self):
        client = MagicMock()
        table = client.table.return_value
        table.delete.return_value.eq.return_value.eq.return_value.execute.return_value = response([])
        table.insert.return_value.execute.return_value = response([{}])

        SupabaseCatalogStore(client).set_tags("p1", "effects", ["Happy", "happy"])

        rows = table.insert.call_args.args[0]
        assert rows == [{"product_id": "p1", "taxonomy": "effects", "name": "Happy", "slug": "happy"}]


class TestBuildStore:
    """Store selection from settings."""

    def test_memory_is_default(self):
        assert isinstance(build_store(Settings()), InMemoryCatalogStore)

    def test_supabase_requires_credentials(self):
        with pytest.raises(RuntimeError):
            build_store(Settings(catalog_store="supabase"))
