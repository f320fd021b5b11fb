"""In-memory TTL cache with oldest-first eviction and durable snapshots."""

import json
import math
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .interfaces import LocalStorage
from .logging_config import get_logger
from .models import CacheEntry, CacheEntrySnapshot, CacheSnapshot


logger = get_logger(__name__)


class LocalCache:
    """Maps cache keys to values with a per-entry time-to-live.

    Expired entries are not returned by :meth:`get` but are kept so that
    :meth:`peek` can serve them as a last-resort fallback. They are removed by
    invalidation, by capacity pressure (before any valid entry) and are never
    persisted. Keys matched by the ``pinned`` predicate are skipped by
    capacity eviction and only leave through invalidation.
    """

    def __init__(self,
                 storage: Optional[LocalStorage] = None,
                 max_entries: int = 500,
                 default_ttl: float = 3600.0,
                 eviction_ratio: float = 0.2,
                 storage_key: str = "data_cache",
                 clock: Callable[[], float] = time.time,
                 pinned: Optional[Callable[[str], bool]] = None):
        """Initialize the cache.

        Args:
            storage: Durable store used by persist/restore (optional)
            max_entries: Entry count above which eviction runs
            default_ttl: TTL in seconds for entries set without one
            eviction_ratio: Share of capacity freed by one eviction run
            storage_key: Key of the snapshot in durable storage
            clock: Time source in seconds
            pinned: Predicate for keys that capacity eviction must skip
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._storage = storage
        self._max_entries = max_entries
        self._default_ttl = default_ttl
        self._eviction_ratio = eviction_ratio
        self._storage_key = storage_key
        self._clock = clock
        self._pinned = pinned
        self._sequence = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` if present and not expired."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_valid(self._clock()):
            return None
        return entry.value

    def peek(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` even if it has expired."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_valid(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self._clock())

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or overwrite ``key``; evict oldest entries when over capacity."""
        self._sequence += 1
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self._default_ttl if ttl is None else ttl,
            sequence=self._sequence,
        )
        if len(self._entries) > self._max_entries:
            self._evict(protect=key)

    def invalidate(self, key: str) -> bool:
        """Remove one exact key. Returns True if it was cached."""
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``. Returns the number removed."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries with prefix {prefix}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def _evict(self, protect: str) -> None:
        """Drop oldest entries until at least ``eviction_ratio`` of capacity is free."""
        free_target = max(1, math.ceil(self._max_entries * self._eviction_ratio))
        target_size = max(1, self._max_entries - free_target)
        now = self._clock()

        # Expired entries go first, then valid ones by insertion time
        candidates = sorted(
            (e for e in self._entries.values()
             if e.key != protect and not (self._pinned and self._pinned(e.key))),
            key=lambda e: (e.is_valid(now), e.inserted_at, e.sequence)
        )
        evicted = 0
        for entry in candidates:
            if len(self._entries) <= target_size:
                break
            del self._entries[entry.key]
            evicted += 1

        self._evictions += evicted
        logger.debug(f"Evicted {evicted} cache entries (size now {len(self._entries)})")
        if len(self._entries) > self._max_entries:
            logger.warning(
                f"Cache holds {len(self._entries)} entries over its limit of "
                f"{self._max_entries}; the rest are pinned"
            )

    def persist(self) -> bool:
        """Write every valid entry to durable storage. Never raises."""
        if self._storage is None:
            return False
        try:
            now = self._clock()
            snapshot = CacheSnapshot(entries=[
                CacheEntrySnapshot(
                    key=e.key, value=e.value, inserted_at=e.inserted_at, ttl=e.ttl
                )
                for e in sorted(self._entries.values(), key=lambda e: e.sequence)
                if e.is_valid(now)
            ])
            self._storage.set_item(self._storage_key, snapshot.model_dump_json())
            logger.debug(f"Persisted {len(snapshot.entries)} cache entries")
            return True
        except Exception as e:
            logger.error(f"Failed to persist cache: {e}", exc_info=True)
            return False

    def restore(self) -> int:
        """Load entries from durable storage, skipping expired ones. Never raises."""
        if self._storage is None:
            return 0
        try:
            raw = self._storage.get_item(self._storage_key)
            if not raw:
                return 0
            snapshot = CacheSnapshot.model_validate(json.loads(raw))
        except (ValidationError, ValueError) as e:
            logger.error(f"Discarding unreadable cache snapshot: {e}")
            return 0
        except Exception as e:
            logger.error(f"Failed to restore cache: {e}", exc_info=True)
            return 0

        now = self._clock()
        restored = 0
        for item in snapshot.entries:
            entry = CacheEntry(
                key=item.key, value=item.value, inserted_at=item.inserted_at, ttl=item.ttl
            )
            if not entry.is_valid(now):
                continue
            self._sequence += 1
            entry.sequence = self._sequence
            self._entries[entry.key] = entry
            restored += 1

        if len(self._entries) > self._max_entries:
            newest = max(self._entries.values(), key=lambda e: (e.inserted_at, e.sequence))
            self._evict(protect=newest.key)

        logger.info(f"Restored {restored} cache entries from durable storage")
        return restored

    def get_metrics(self) -> Dict[str, Any]:
        now = self._clock()
        valid = sum(1 for e in self._entries.values() if e.is_valid(now))
        return {
            "size": len(self._entries),
            "valid_entries": valid,
            "expired_entries": len(self._entries) - valid,
            "max_entries": self._max_entries,
            "evictions": self._evictions,
        }
