"""Byte-budgeted cache of loaded world bundles.

The active world of a session is pinned. Under memory pressure the least
recently used inactive bundles go first; the hub's own reservation is never
released by eviction.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass

import structlog

from worldhub.worlds.content import ContentBundle

logger = structlog.get_logger()

CacheKey = tuple[str, int]


@dataclass
class CacheEntry:
    bundle: ContentBundle
    active: bool = False

    @property
    def size(self) -> int:
        return self.bundle.size_bytes


class WorldCache:
    """LRU cache of world bundles bounded by a byte budget."""

    def __init__(self, budget_bytes: int, hub_reserved_bytes: int = 0) -> None:
        if hub_reserved_bytes >= budget_bytes:
            raise ValueError("Hub reservation must be smaller than the memory budget")
        self._budget = budget_bytes
        self._hub_reserved = hub_reserved_bytes
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._budget - self._hub_reserved

    @property
    def used_bytes(self) -> int:
        return sum(e.size for e in self._entries.values())

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def get(self, key: CacheKey) -> ContentBundle | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry.bundle

    def put(self, key: CacheKey, bundle: ContentBundle, *, active: bool = False) -> list[CacheKey]:
        """Insert a bundle, evicting inactive entries as needed. Returns evicted keys."""
        self._entries.pop(key, None)
        evicted = self._make_room(bundle.size_bytes)
        self._entries[key] = CacheEntry(bundle=bundle, active=active)
        if self.used_bytes > self.capacity:
            logger.warning("memory_budget_exceeded", used=self.used_bytes, capacity=self.capacity)
        return evicted

    def set_active(self, key: CacheKey, active: bool) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.active = active

    def discard(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def discard_session(self, session_id: str) -> None:
        for key in [k for k in self._entries if k[0] == session_id]:
            del self._entries[key]

    def _make_room(self, needed: int) -> list[CacheKey]:
        evicted: list[CacheKey] = []
        for key in list(self._entries):
            if self.used_bytes + needed <= self.capacity:
                break
            if self._entries[key].active:
                continue
            del self._entries[key]
            evicted.append(key)
        if evicted:
            self._evictions += len(evicted)
            logger.info("world_cache_evicted", count=len(evicted), used=self.used_bytes)
        return evicted

    @property
    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "used_bytes": self.used_bytes,
            "capacity_bytes": self.capacity,
            "evictions": self._evictions,
        }
