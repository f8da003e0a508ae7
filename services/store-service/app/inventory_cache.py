"""In-process inventory cache.

Shadows per-product-per-size stock so hot cart/order paths can skip a
database read. Two entry shapes share one store:

* ``(product_id, size)`` -> int, the effective available stock for that size
* ``(product_id,)`` -> :class:`InventorySnapshot`, the product's stock fields

Entries expire after their TTL; expired entries are dropped lazily on read
and by a background sweep. Nothing here is ever persisted, the database
stays authoritative.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .config import INVENTORY_CACHE_CHECK_PERIOD, INVENTORY_CACHE_TTL

logger = logging.getLogger(__name__)


class _NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


@dataclass
class InventorySnapshot:
    total_stock: int
    size_inventory: Dict[str, int] = field(default_factory=dict)


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class InventoryCache:
    def __init__(
        self,
        default_ttl: float = INVENTORY_CACHE_TTL,
        check_period: float = INVENTORY_CACHE_CHECK_PERIOD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_ttl = default_ttl
        self._check_period = check_period
        self._clock = clock
        self._entries: Dict[Tuple, _Entry] = {}
        # bumped by adjust/invalidate so a slow database read cannot overwrite newer values
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._hits = 0
        self._misses = 0

    @staticmethod
    def _key(product_id, size: Optional[str] = None) -> Tuple:
        pid = str(product_id)
        return (pid, size) if size else (pid,)

    # -- internals, caller holds the lock --

    def _live(self, key: Tuple) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _store(self, key: Tuple, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = _Entry(value, self._clock() + ttl)

    def _touch(self, pid: str) -> None:
        self._generations[pid] = self._generations.get(pid, 0) + 1

    def _drop_product(self, pid: str) -> int:
        keys = [k for k in self._entries if k[0] == pid]
        for k in keys:
            del self._entries[k]
        return len(keys)

    # -- public API --

    def get(self, product_id, size: Optional[str] = None):
        """Return the cached value or ``NOT_FOUND``.

        A size lookup that misses its own entry falls back to the product
        snapshot and, when the snapshot knows the size, caches that value
        under the size key. Size and snapshot entries that disagree are both
        discarded and the lookup reports a miss.
        """
        pid = str(product_id)
        with self._lock:
            snapshot_entry = self._live(self._key(pid))
            if not size:
                if snapshot_entry is None:
                    self._misses += 1
                    return NOT_FOUND
                self._hits += 1
                return snapshot_entry.value

            snapshot = snapshot_entry.value if snapshot_entry else None
            nested = snapshot.size_inventory.get(size) if snapshot is not None else None

            entry = self._live(self._key(pid, size))
            if entry is not None:
                if nested is not None and nested != entry.value:
                    logger.warning(
                        "Inventory cache inconsistency for product %s size %s (%r != %r); dropping entries",
                        pid, size, entry.value, nested,
                    )
                    self._drop_product(pid)
                    self._misses += 1
                    return NOT_FOUND
                self._hits += 1
                return entry.value

            if nested is not None:
                self._store(self._key(pid, size), nested)
                self._hits += 1
                return nested

            self._misses += 1
            return NOT_FOUND

    def set(self, product_id, size: Optional[str], value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._store(self._key(product_id, size), value, ttl)

    def generation(self, product_id) -> Tuple[int, int]:
        """Token that changes whenever the product is adjusted or invalidated."""
        with self._lock:
            return (self._epoch, self._generations.get(str(product_id), 0))

    def warm(self, product_id, entries: Dict[Optional[str], Any], generation: Tuple[int, int]) -> bool:
        """Cache values read from the database (size -> value, None for the snapshot).

        Nothing is stored if the product changed after ``generation`` was taken.
        """
        pid = str(product_id)
        with self._lock:
            if (self._epoch, self._generations.get(pid, 0)) != generation:
                return False
            for size, value in entries.items():
                self._store(self._key(pid, size), value)
            return True

    def invalidate(self, product_id=None, size: Optional[str] = None) -> int:
        """Drop entries; returns how many were removed.

        No product clears everything, a product alone clears its snapshot and
        every size entry, product and size clear that one size entry.
        """
        with self._lock:
            if product_id is None:
                self._epoch += 1
                count = len(self._entries)
                self._entries.clear()
                return count
            self._touch(str(product_id))
            if size:
                return 1 if self._entries.pop(self._key(product_id, size), None) is not None else 0
            return self._drop_product(str(product_id))

    def adjust(self, product_id, size: str, delta: int) -> Optional[int]:
        """Add ``delta`` to a cached size count, clamped at zero.

        Leaves the entries alone (returns None) unless a numeric size entry is
        already cached. The product snapshot, if present, follows the new value.
        """
        pid = str(product_id)
        with self._lock:
            self._touch(pid)
            entry = self._live(self._key(pid, size))
            if entry is None or not _is_count(entry.value):
                return None
            new_level = max(0, entry.value + delta)
            self._store(self._key(pid, size), new_level)

            snapshot_entry = self._live(self._key(pid))
            if snapshot_entry is not None:
                snapshot = snapshot_entry.value
                previous = snapshot.size_inventory.get(size)
                snapshot.size_inventory[size] = new_level
                if previous is not None:
                    snapshot.total_stock = max(0, snapshot.total_stock + new_level - previous)
                snapshot_entry.expires_at = self._clock() + self._default_ttl
            return new_level

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Swept %d expired inventory cache entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self._hits, "misses": self._misses}

    def start(self) -> None:
        """Start the background sweep thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _run() -> None:
            while not self._stop.wait(self._check_period):
                self.sweep()

        self._sweeper = threading.Thread(target=_run, name="inventory-cache-sweeper", daemon=True)
        self._sweeper.start()

    def dispose(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self._check_period + 1)
            self._sweeper = None
        self.invalidate()
