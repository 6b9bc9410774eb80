"""
Key-Value Store
===============

Small key/value interface behind every piece of process-local shared state
(rate-limit windows, revoked tokens, pending reminder timers).

The in-memory implementation is guarded by a single lock and supports
per-entry time-to-live. A shared external store can be dropped in by
implementing ``KeyValueStore``.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, Optional, Tuple


class KeyValueStore(ABC):
    """Minimal key/value contract with optional expiry."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for key, or default."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key; ttl is in seconds, None means no expiry."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns True if it was present."""

    @abstractmethod
    def keys(self) -> Iterator[str]:
        """Iterate over live keys."""

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __contains__(self, key: str) -> bool:
        return self.contains(key)

    def __len__(self) -> int:
        return sum(1 for _ in self.keys())


_MISSING = object()


class InMemoryKeyValueStore(KeyValueStore):
    """
    Thread-safe dictionary with per-entry expiry.

    Expired entries are dropped when read, and every write sweeps the whole
    map once ``purge_interval`` seconds have passed since the last sweep, so
    keys that are never read again (revoked tokens nobody presents, windows
    of clients that never return) do not accumulate.
    """

    def __init__(self, time_func: Callable[[], float] = time.monotonic, purge_interval: float = 60.0):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._time = time_func
        self.purge_interval = purge_interval
        self._last_purge = time_func()

    def _is_expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, (_, exp) in self._data.items() if self._is_expired(exp, now)]
        for key in expired:
            del self._data[key]
        self._last_purge = now
        return len(expired)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if self._is_expired(expires_at, self._time()):
                del self._data[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._time()
        expires_at = now + ttl if ttl is not None else None
        with self._lock:
            if now - self._last_purge >= self.purge_interval:
                self._purge_locked(now)
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> Iterator[str]:
        now = self._time()
        with self._lock:
            live = [k for k, (_, exp) in self._data.items() if not self._is_expired(exp, now)]
        return iter(live)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            return self._purge_locked(self._time())

    def stored_count(self) -> int:
        """Entries held in memory, expired or not."""
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
