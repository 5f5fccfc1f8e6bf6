import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, ValidationError


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sitemap_url: Optional[str] = Field(default=None, alias="SITEMAP_URL")
    menu_base_url: Optional[str] = Field(default=None, alias="MENU_BASE_URL")
    crawl_rate_limit: int = Field(default=30, ge=1, alias="CRAWL_RATE_LIMIT")
    max_products_per_sync: int = Field(default=100, ge=1, alias="MAX_PRODUCTS_PER_SYNC")
    max_crawl_pages: int = Field(default=20, ge=1, alias="MAX_CRAWL_PAGES")
    staleness_days: int = Field(default=30, ge=1, alias="STALENESS_DAYS")

    catalog_store: str = Field(default="memory", pattern="^(memory|supabase)$", alias="CATALOG_STORE")
    cache_dir: Optional[str] = Field(default=None, alias="CACHE_DIR")
    supabase_url: Optional[HttpUrl] = Field(default=None, alias="SUPABASE_URL")
    supabase_key: Optional[str] = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    env: str = Field(default="local", alias="APP_ENV")


def _load_dotenv():
    # Load from repo root if present, otherwise rely on environment variables.
    root_env = Path(__file__).resolve().parents[1] / ".env"
    if root_env.exists():
        load_dotenv(root_env)
    else:
        load_dotenv()


def _from_environ() -> dict:
    # Empty strings mean "unset" so a blank line in .env does not trip validation.
    return {k: v for k, v in os.environ.items() if v != ""}


@lru_cache()
def get_settings() -> Settings:
    _load_dotenv()
    try:
        return Settings(**_from_environ())
    except ValidationError as exc:
        bad = [str(e["loc"][0]) for e in exc.errors()]
        detail = f"Invalid configuration values: {', '.join(bad)}"
        raise RuntimeError(detail) from exc
