"""Thread-safe in-memory LRU cache with a byte-size ceiling.

Used by the web search tool to remember recent successful results so it
can still answer (with possibly stale data) while the search backend is
down or its circuit is open.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via ``json.dumps`` byte length of the stored value.
• **threading.Lock** because several turns may hit the cache at once.
• Every entry remembers when it was stored so callers can report or
  bound its age.
• Purely ephemeral — lost on process restart.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Default ceiling: 5 MB
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    size: int
    stored_at: float


class LRUCache:
    """Least-Recently-Used cache bounded by total estimated byte size."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock

    @staticmethod
    def _estimate_bytes(value: Any) -> int:
        try:
            return len(json.dumps(value, default=str).encode("utf-8"))
        except (TypeError, ValueError, OverflowError):
            return len(str(value).encode("utf-8"))

    # ── Core operations ──────────────────────────────────────────────

    def get_entry(self, key: str, max_age: float | None = None) -> CacheEntry | None:
        """Return the entry (promoting it to MRU), or ``None``.

        With ``max_age`` set, entries older than that many seconds are
        treated as missing but left in place.
        """
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if max_age is not None and self._clock() - entry.stored_at > max_age:
                return None
            self._store.move_to_end(key)
            return entry

    def get(self, key: str, max_age: float | None = None) -> Any | None:
        entry = self.get_entry(key, max_age)
        return entry.value if entry else None

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*.  Evicts LRU entries if needed."""
        size = self._estimate_bytes(value)
        if size > self._max_bytes:
            logger.debug("Cache: skipping key %s (size %d > max %d)", key, size, self._max_bytes)
            return

        with self._lock:
            old = self._store.pop(key, None)
            if old is not None:
                self._current_bytes -= old.size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, evicted = self._store.popitem(last=False)
                self._current_bytes -= evicted.size
                logger.debug("Cache: evicted %s (%d bytes)", evicted_key, evicted.size)

            self._store[key] = CacheEntry(value=value, size=size, stored_at=self._clock())
            self._current_bytes += size

    def invalidate(self, key: str) -> bool:
        with self._lock:
            entry = self._store.pop(key, None)
            if entry is None:
                return False
            self._current_bytes -= entry.size
            return True

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, key: str) -> bool:
        """Check if a key is present *without* promoting it."""
        return key in self._store
