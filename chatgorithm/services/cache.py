"""Thread-safe in-memory LRU cache with per-entry expiry.

Used for two short-lived pieces of state:

• the appointment option map offered to each customer
  (``"3" → Airtable record id``), mirrored to Airtable so it survives a
  restart;
• the WhatsApp message ids already processed, so Meta's webhook retries are
  ignored for a few minutes.

Expired entries are purged lazily on access and before eviction, so there
is no background thread.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10_000


class ExpiringLRUCache:
    """Least-Recently-Used cache bounded by entry count, with optional TTLs."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float | None = None,
        *,
        clock=time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._clock = clock
        # key → (value, expires_at or None)
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._lock = threading.Lock()

    # ── Internal helpers (caller holds the lock) ─────────────────────

    def _expires_at(self, ttl: float | None) -> float | None:
        ttl = self._default_ttl if ttl is None else ttl
        return None if ttl is None else self._clock() + ttl

    def _is_expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _purge_expired(self) -> None:
        expired = [k for k, (_, exp) in self._store.items() if self._is_expired(exp)]
        for key in expired:
            del self._store[key]

    def _insert(self, key: str, value: Any, ttl: float | None) -> None:
        self._store.pop(key, None)
        if len(self._store) >= self._max_entries:
            self._purge_expired()
        while len(self._store) >= self._max_entries and self._store:
            evicted_key, _ = self._store.popitem(last=False)
            logger.debug("Cache: evicted %s", evicted_key)
        self._store[key] = (value, self._expires_at(ttl))

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached value (promoting it to MRU) or ``None``."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._is_expired(expires_at):
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Insert or overwrite *key*.  ``ttl`` falls back to the default."""
        with self._lock:
            self._insert(key, value, ttl)

    def add_if_absent(self, key: str, value: Any = True, ttl: float | None = None) -> bool:
        """Atomically store *key* unless a live entry exists.

        Returns ``True`` when the key was added (first sighting).
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is not None and not self._is_expired(entry[1]):
                return False
            self._insert(key, value, ttl)
            return True

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if a live entry existed."""
        with self._lock:
            entry = self._store.pop(key, None)
            return entry is not None and not self._is_expired(entry[1])

    def clear(self) -> None:
        """Drop all entries."""
        with self._lock:
            self._store.clear()

    # ── Introspection ────────────────────────────────────────────────

    @property
    def entry_count(self) -> int:
        """Number of live entries."""
        with self._lock:
            self._purge_expired()
            return len(self._store)

    def has(self, key: str) -> bool:
        """Check if a live key is present *without* promoting it."""
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and not self._is_expired(entry[1])
