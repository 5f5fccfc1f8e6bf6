from typing import Optional


class CatalogSyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class ConfigurationInvalid(CatalogSyncError):
    """Sitemap / menu base URL missing or malformed. Fatal for a run."""


class DiscoveryFailure(CatalogSyncError):
    """Neither the sitemap nor the crawl produced any product URL. Fatal for a run."""


class FetchFailure(CatalogSyncError):
    """
    A single URL could not be fetched.

    `kind` is one of "network", "timeout", "robots" or "status" so callers
    can tell a transport problem from a refused or unusable response.
    """

    def __init__(self, url: str, message: str, kind: str = "network", status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.kind = kind
        self.status = status


class ExtractionEmpty(CatalogSyncError):
    """No product name could be recovered from a page. Counted as skipped."""


class PersistenceFailure(CatalogSyncError):
    """The catalog store rejected a write."""


class SyncInProgress(CatalogSyncError):
    """Another sync run holds the run lock."""
