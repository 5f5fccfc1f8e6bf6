# catalog_sync/catalog_store.py
"""
The catalog is a document store keyed by canonical product URL, with
taxonomy terms (category / brand / effects) attached per document.

`InMemoryCatalogStore` backs tests and dry runs; `SupabaseCatalogStore` writes
to the `products`, `product_terms` and `sync_runs` tables.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from slugify import slugify

from .config import Settings
from .errors import PersistenceFailure
from .normalizer import make_id, normalize_url
from .schema import ProductRecord
from .supabase_client import create_supabase

logger = logging.getLogger(__name__)

TAXONOMY_CATEGORY = "category"
TAXONOMY_BRAND = "brand"
TAXONOMY_EFFECTS = "effects"


class CatalogStore(ABC):
    @abstractmethod
    def find_by_url(self, url: str) -> Optional[ProductRecord]:
        pass

    @abstractmethod
    def upsert(self, record: ProductRecord) -> str:
        """Insert or fully overwrite the record for `record.url`; returns its id."""

    @abstractmethod
    def set_tags(self, product_id: str, taxonomy: str, names: List[str]) -> None:
        pass

    @abstractmethod
    def set_image(self, product_id: str, image_url: str) -> bool:
        """Attach a featured image unless one is already set. True when attached."""

    @abstractmethod
    def list_stale(self, older_than: datetime, absent_from: Iterable[str]) -> List[ProductRecord]:
        """In-stock records last seen before `older_than` whose URL is not in `absent_from`."""

    @abstractmethod
    def mark_out_of_stock(self, product_id: str) -> None:
        pass

    @abstractmethod
    def save_run_summary(self, summary: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def last_run_summary(self) -> Optional[Dict[str, Any]]:
        pass


def _check_writable(record: ProductRecord):
    if not record.is_valid:
        raise PersistenceFailure(f"Refusing to persist a record without a name: {record.url}")


class InMemoryCatalogStore(CatalogStore):
    def __init__(self):
        self.records: Dict[str, ProductRecord] = {}
        self._ids_by_url: Dict[str, str] = {}
        self.terms: Dict[str, Dict[str, List[Dict[str, str]]]] = {}
        self.images: Dict[str, str] = {}
        self.runs: List[Dict[str, Any]] = []

    def find_by_url(self, url: str) -> Optional[ProductRecord]:
        pid = self._ids_by_url.get(normalize_url(url) or url)
        if pid is None:
            return None
        return self.records[pid].model_copy(deep=True)

    def upsert(self, record: ProductRecord) -> str:
        _check_writable(record)
        url = normalize_url(record.url) or record.url
        pid = self._ids_by_url.get(url) or record.id or make_id(url)
        self.records[pid] = record.model_copy(update={"id": pid, "url": url}, deep=True)
        self._ids_by_url[url] = pid
        return pid

    def _require(self, product_id: str) -> ProductRecord:
        try:
            return self.records[product_id]
        except KeyError:
            raise PersistenceFailure(f"Unknown product id: {product_id}") from None

    def set_tags(self, product_id: str, taxonomy: str, names: List[str]) -> None:
        self._require(product_id)
        terms = []
        seen = set()
        for name in names:
            slug = slugify(name)
            if slug and slug not in seen:
                seen.add(slug)
                terms.append({"name": name, "slug": slug})
        self.terms.setdefault(product_id, {})[taxonomy] = terms

    def term_names(self, product_id: str, taxonomy: str) -> List[str]:
        return [t["name"] for t in self.terms.get(product_id, {}).get(taxonomy, [])]

    def set_image(self, product_id: str, image_url: str) -> bool:
        self._require(product_id)
        if product_id in self.images:
            return False
        self.images[product_id] = image_url
        return True

    def list_stale(self, older_than: datetime, absent_from: Iterable[str]) -> List[ProductRecord]:
        present = set(absent_from)
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.in_stock
            and (r.last_seen_at is None or r.last_seen_at < older_than)
            and r.url not in present
        ]

    def mark_out_of_stock(self, product_id: str) -> None:
        self._require(product_id).in_stock = False

    def save_run_summary(self, summary: Dict[str, Any]) -> None:
        self.runs.append(dict(summary))

    def last_run_summary(self) -> Optional[Dict[str, Any]]:
        return dict(self.runs[-1]) if self.runs else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SupabaseCatalogStore(CatalogStore):
    PRODUCTS = "products"
    TERMS = "product_terms"
    RUNS = "sync_runs"
    PAGE_SIZE = 500

    def __init__(self, client):
        self.client = client

    def _execute(self, query, what: str) -> List[Dict[str, Any]]:
        try:
            response = query.execute()
        except Exception as exc:
            logger.exception("[STORE] Supabase %s raised an exception", what)
            raise PersistenceFailure(f"Supabase {what} failed: {exc}") from exc

        # Supabase Python client v2 returns an object with .data (and .error on older versions)
        error = getattr(response, "error", None)
        if error:
            logger.error("[STORE] Supabase %s error: %s", what, error)
            raise PersistenceFailure(f"Supabase {what} failed: {error}")
        return getattr(response, "data", None) or []

    @staticmethod
    def _to_row(record: ProductRecord, product_id: str) -> Dict[str, Any]:
        return {
            "id": product_id,
            "product_url": record.url,
            "name": record.name,
            "brand_name": record.brand,
            "category": record.category,
            "description": record.description,
            "price": record.price,
            "thc": record.thc,
            "cbd": record.cbd,
            "tags": record.tags,
            "effects": record.effects,
            "flavors": record.flavors,
            "image_url": record.image_url,
            "in_stock": record.in_stock,
            "remote_id": record.remote_id,
            "domain": record.domain,
            "source": record.source,
            "last_seen_at": _iso(record.last_seen_at),
            "last_synced_at": _iso(record.last_synced_at),
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> ProductRecord:
        return ProductRecord(
            id=row.get("id"),
            url=row["product_url"],
            name=row.get("name") or "",
            brand=row.get("brand_name") or "",
            category=row.get("category") or "",
            description=row.get("description") or "",
            price=row.get("price") or "",
            thc=row.get("thc") or "",
            cbd=row.get("cbd") or "",
            tags=row.get("tags") or [],
            effects=row.get("effects") or [],
            flavors=row.get("flavors") or [],
            image_url=row.get("image_url") or "",
            in_stock=bool(row.get("in_stock", True)),
            remote_id=row.get("remote_id") or "",
            domain=row.get("domain"),
            source=row.get("source") or "SITEMAP_CRAWL",
            last_seen_at=row.get("last_seen_at"),
            last_synced_at=row.get("last_synced_at"),
        )

    def find_by_url(self, url: str) -> Optional[ProductRecord]:
        url = normalize_url(url) or url
        rows = self._execute(
            self.client.table(self.PRODUCTS).select("*").eq("product_url", url).limit(1),
            "find_by_url",
        )
        return self._from_row(rows[0]) if rows else None

    def upsert(self, record: ProductRecord) -> str:
        _check_writable(record)
        product_id = record.id or make_id(record.url)
        row = self._to_row(record, product_id)
        logger.info("[STORE] upserting %s -> %s", row["product_url"], row["name"])
        rows = self._execute(
            self.client.table(self.PRODUCTS).upsert(row, on_conflict="product_url"),
            "upsert",
        )
        return str(rows[0].get("id") or product_id) if rows else product_id

    def set_tags(self, product_id: str, taxonomy: str, names: List[str]) -> None:
        terms = []
        seen = set()
        for name in names:
            slug = slugify(name)
            if slug and slug not in seen:
                seen.add(slug)
                terms.append({"product_id": product_id, "taxonomy": taxonomy, "name": name, "slug": slug})
        self._execute(
            self.client.table(self.TERMS).delete().eq("product_id", product_id).eq("taxonomy", taxonomy),
            "clear terms",
        )
        if terms:
            self._execute(self.client.table(self.TERMS).insert(terms), "set terms")

    def set_image(self, product_id: str, image_url: str) -> bool:
        rows = self._execute(
            self.client.table(self.PRODUCTS)
            .update({"featured_image_url": image_url})
            .eq("id", product_id)
            .is_("featured_image_url", "null"),
            "set image",
        )
        return bool(rows)

    def list_stale(self, older_than: datetime, absent_from: Iterable[str]) -> List[ProductRecord]:
        present = set(absent_from)
        stale: List[ProductRecord] = []
        start = 0
        while True:
            end = start + self.PAGE_SIZE - 1
            rows = self._execute(
                self.client.table(self.PRODUCTS)
                .select("*")
                .eq("in_stock", True)
                .or_(f"last_seen_at.is.null,last_seen_at.lt.{older_than.isoformat()}")
                .order("id")
                .range(start, end),
                "list stale",
            )
            stale.extend(r for r in (self._from_row(row) for row in rows) if r.url not in present)
            if len(rows) < self.PAGE_SIZE:
                break
            start += self.PAGE_SIZE
        return stale

    def mark_out_of_stock(self, product_id: str) -> None:
        self._execute(
            self.client.table(self.PRODUCTS).update({"in_stock": False}).eq("id", product_id),
            "mark out of stock",
        )

    def save_run_summary(self, summary: Dict[str, Any]) -> None:
        self._execute(self.client.table(self.RUNS).insert(summary), "save run summary")

    def last_run_summary(self) -> Optional[Dict[str, Any]]:
        rows = self._execute(
            self.client.table(self.RUNS).select("*").order("finished_at", desc=True).limit(1),
            "last run summary",
        )
        return rows[0] if rows else None


def build_store(settings: Settings) -> CatalogStore:
    if settings.catalog_store == "supabase":
        return SupabaseCatalogStore(create_supabase(settings))
    return InMemoryCatalogStore()
