"""
Page data cache with path-based revalidation.

Writes to the ledger call ``revalidate_path`` for every page whose data they
change; cached entries for that path and anything beneath it are dropped and
listeners (for example a front-end purge hook) are notified.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from loguru import logger


class PageCache:
    def __init__(self, default_ttl: int = 300, history_size: int = 100):
        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str], None]] = []
        self.default_ttl = default_ttl
        # Most recent revalidated paths, oldest dropped first
        self.revalidated: deque[str] = deque(maxlen=history_size)
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0, "revalidations": 0}

    def get(self, path: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._cache.get(path)
            if entry is not None:
                if entry["expires_at"] > time.monotonic():
                    self.stats["hits"] += 1
                    return entry["value"]
                del self._cache[path]
                self.stats["evictions"] += 1
            self.stats["misses"] += 1
            return default

    def set(self, path: str, value: Any, ttl: Optional[int] = None) -> None:
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            self._cache[path] = {"value": value, "expires_at": time.monotonic() + ttl}
            self.stats["sets"] += 1

    def subscribe(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def revalidate_path(self, *paths: str) -> None:
        for path in paths:
            prefix = path.rstrip("/") + "/"
            with self._lock:
                stale = [k for k in self._cache if k == path or k.startswith(prefix)]
                for key in stale:
                    del self._cache[key]
                self.stats["evictions"] += len(stale)
                self.stats["revalidations"] += 1
                self.revalidated.append(path)

            logger.debug("Revalidated {} ({} cached entries dropped)", path, len(stale))
            for listener in self._listeners:
                try:
                    listener(path)
                except Exception:
                    # The write has already committed; a failed purge hook must not undo it
                    logger.exception("Revalidation listener failed for {}", path)
