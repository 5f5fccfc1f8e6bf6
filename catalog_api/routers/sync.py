from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from catalog_sync.cache import Cache
from catalog_sync.catalog_store import CatalogStore, build_store
from catalog_sync.config import Settings, get_settings
from catalog_sync.diagnostics import diagnose
from catalog_sync.sync import build_cache, run_sync

router = APIRouter()


@lru_cache()
def get_store() -> CatalogStore:
    return build_store(get_settings())


def get_run_store() -> Optional[CatalogStore]:
    # None lets run_sync build the store itself and report a failure as a run error.
    try:
        return get_store()
    except RuntimeError:
        return None


@lru_cache()
def get_cache() -> Cache:
    # Shared across requests so the run lock sees concurrent triggers.
    return build_cache(get_settings())


class SyncSummary(BaseModel):
    success: bool
    status: str
    synced: int
    skipped: int
    errors: List[str]


class SyncStatusResponse(BaseModel):
    menu_base_url: Optional[str] = None
    sitemap_url: Optional[str] = None
    catalog_store: str
    last_run: Optional[Dict[str, Any]] = None


@router.post("", response_model=SyncSummary)
def trigger_sync(
    limit: Optional[int] = Query(default=None, ge=1),
    settings: Settings = Depends(get_settings),
    store: Optional[CatalogStore] = Depends(get_run_store),
    cache: Cache = Depends(get_cache),
):
    """
    Run one sync synchronously and return its summary. A run that is already
    in flight makes this one return `status="error"` without touching the catalog.
    """
    return run_sync(limit, settings=settings, store=store, cache=cache)


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    settings: Settings = Depends(get_settings),
    store: CatalogStore = Depends(get_store),
):
    return SyncStatusResponse(
        menu_base_url=settings.menu_base_url,
        sitemap_url=settings.sitemap_url,
        catalog_store=settings.catalog_store,
        last_run=store.last_run_summary(),
    )


@router.get("/test")
def sync_test(
    url: Optional[str] = None,
    settings: Settings = Depends(get_settings),
):
    return diagnose(url, settings=settings)
