from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

SOURCE_SITEMAP_CRAWL = "SITEMAP_CRAWL"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductRecord(BaseModel):
    url: str                      # canonical remote URL, no query / fragment
    name: str = ""
    id: Optional[str] = None      # store document id, assigned on upsert
    domain: Optional[str] = None  # e.g. "greenleaf.com"
    brand: str = ""
    category: str = ""
    description: str = ""
    price: str = ""               # decimal-as-string, no currency
    thc: str = ""
    cbd: str = ""
    tags: List[str] = Field(default_factory=list)
    effects: List[str] = Field(default_factory=list)
    flavors: List[str] = Field(default_factory=list)
    image_url: str = ""
    in_stock: bool = True
    remote_id: str = ""
    last_seen_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    source: str = SOURCE_SITEMAP_CRAWL

    @property
    def is_valid(self) -> bool:
        return bool(self.name.strip())


class FetchCacheEntry(BaseModel):
    """Conditional-request state for one URL."""

    etag: Optional[str] = None
    last_modified: Optional[str] = None
    body: Optional[str] = None
    stored_at: float = 0.0

    @property
    def has_validators(self) -> bool:
        return bool(self.etag or self.last_modified)


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class SyncRunResult(BaseModel):
    status: SyncStatus = SyncStatus.SUCCESS
    synced: int = 0
    skipped: int = 0
    retired: int = 0
    discovered: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @field_validator("errors")
    @classmethod
    def _errors_are_text(cls, v: List[Any]) -> List[str]:
        return [str(e) for e in v]

    def finish(self, now: Optional[datetime] = None) -> "SyncRunResult":
        if self.status != SyncStatus.ERROR:
            self.status = SyncStatus.PARTIAL if self.errors else SyncStatus.SUCCESS
        self.finished_at = now or utcnow()
        return self

    def to_summary(self) -> Dict[str, Any]:
        """Plain structure handed back to schedulers, admin actions and the API."""
        return {
            "success": self.status != SyncStatus.ERROR,
            "status": self.status.value,
            "synced": self.synced,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }
