"""
In-memory TTL cache used as the ``store_data`` backend.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Tuple


class MemoryCache:
    """Thread-safe key/value store with optional per-key expiry."""

    def __init__(self, default_ttl_sec: Optional[float] = None) -> None:
        self.default_ttl_sec = default_ttl_sec
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[Any, Optional[float]]] = {}

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl_sec
        expires_at = time.monotonic() + float(ttl) if ttl else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return default
            value, expires_at = item
            if expires_at is not None and expires_at <= time.monotonic():
                del self._items[key]
                return default
            return value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (_, exp) in self._items.items() if exp is not None and exp <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


__all__ = ["MemoryCache"]
