"""
Expiring key/value cache used for sitemap / crawl results, robots.txt bodies,
conditional-request state and the run lock.

Two backends share one interface so the pipeline never cares where entries live:
`MemoryCache` for tests and one-shot runs, `FileCache` for a cache that
survives between scheduled runs.
"""
import hashlib
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import orjson

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


def key_for(key: str) -> str:
    return hashlib.sha1(key.encode()).hexdigest()


class Cache(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the live value for `key`, or None when missing or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store `value`; `ttl` in seconds, None means no expiry."""

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store only if no live entry exists. Returns True when stored."""


class MemoryCache(Cache):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Optional[float], Any]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[Optional[float], Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, _ = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[1] if entry else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (self._expiry(ttl), value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (self._expiry(ttl), value)
            return True


class FileCache(Cache):
    """
    One orjson file per key under `root`. Values must be JSON-serializable.
    """

    def __init__(self, root: os.PathLike = "data/cache", clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, key: str) -> Path:
        return self.root / f"{key_for(key)}.json"

    def _encode(self, value: Any, ttl: Optional[float]) -> bytes:
        expires_at = self._clock() + ttl if ttl is not None else None
        return orjson.dumps({"expires_at": expires_at, "value": value})

    def _read(self, path: Path) -> Optional[dict]:
        try:
            payload = orjson.loads(path.read_bytes())
        except FileNotFoundError:
            return None
        except orjson.JSONDecodeError:
            # Half-written or foreign file; treat as a miss and let the next set() replace it.
            path.unlink(missing_ok=True)
            return None
        expires_at = payload.get("expires_at")
        if expires_at is not None and self._clock() >= expires_at:
            path.unlink(missing_ok=True)
            return None
        return payload

    def get(self, key: str) -> Optional[Any]:
        payload = self._read(self._path(key))
        return payload["value"] if payload else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(self._encode(value, ttl))
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        path = self._path(key)
        # Drop an expired holder first so exclusive create can succeed.
        self._read(path)
        try:
            with open(path, "xb") as f:
                f.write(self._encode(value, ttl))
        except FileExistsError:
            return False
        return True
