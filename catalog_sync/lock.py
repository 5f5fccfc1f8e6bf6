import logging
import os
import socket
import time
from typing import Optional

from .cache import HOUR, Cache, MemoryCache
from .errors import SyncInProgress

logger = logging.getLogger(__name__)

RUN_LOCK_KEY = "catalog_sync:run"
RUN_LOCK_TTL = 2 * HOUR

# Lock entries for runs that have no shared cache of their own (no CACHE_DIR):
# every run in this process meets the others here.
PROCESS_LOCKS = MemoryCache()


class RunLock:
    """
    Single-flight guard for sync runs, held as a cache entry with a TTL so a
    crashed run cannot block the next one forever.
    """

    def __init__(self, cache: Cache, key: str = RUN_LOCK_KEY, ttl: float = RUN_LOCK_TTL):
        self.cache = cache
        self.key = key
        self.ttl = ttl
        self.token: Optional[str] = None

    def acquire(self) -> bool:
        token = f"{socket.gethostname()}:{os.getpid()}:{time.time():.0f}"
        if not self.cache.add(self.key, token, ttl=self.ttl):
            return False
        self.token = token
        return True

    def release(self):
        if self.token is None:
            return
        # Only drop the flag if it is still ours (it may have expired and been re-taken).
        if self.cache.get(self.key) == self.token:
            self.cache.delete(self.key)
        self.token = None

    def __enter__(self) -> "RunLock":
        if not self.acquire():
            logger.warning("[SYNC] run lock %s is held; refusing to start", self.key)
            raise SyncInProgress("Sync already in progress")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
