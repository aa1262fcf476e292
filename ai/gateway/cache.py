from __future__ import annotations
"""Response cache for completed (non-streaming) generations.

Entries are keyed by a SHA256 of the request fingerprint
``(prompt, model_id, temperature, max_tokens)`` and expire after a fixed TTL.
Expired entries are treated as misses but are not deleted on read; they are
overwritten by the next ``put`` or dropped by ``purge_expired``.
"""

import asyncio
import hashlib
import json
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ai.gateway.models import CacheEntry, TokenUsage
from core.logging import logger

__all__ = [
    "ResponseCache",
    "make_cache_key",
]


def make_cache_key(prompt: str, model_id: str, temperature: float, max_tokens: int) -> str:
    """Deterministic fingerprint of a non-streaming request."""
    # A JSON array keeps field boundaries unambiguous ("ab"+"c" != "a"+"bc").
    stable_string = json.dumps([prompt, model_id, float(temperature), int(max_tokens)], ensure_ascii=False)
    return hashlib.sha256(stable_string.encode("utf-8")).hexdigest()


class ResponseCache:
    """asyncio-safe TTL cache with per-key locking.

    ``max_entries=None`` leaves the store bounded by TTL only; expired entries
    are then swept every ``purge_every`` writes.  With a capacity set, the least
    recently used entry is evicted when a new key is stored.
    """

    def __init__(self, ttl_sec: int = 3600, max_entries: Optional[int] = None, purge_every: int = 100) -> None:
        self._ttl = ttl_sec
        self._max_entries = max_entries
        self._purge_every = purge_every
        self._writes = 0
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def ttl(self) -> int:
        return self._ttl

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` with its hit count incremented."""
        if key not in self._store:
            return None
        async with self._lock_for(key):
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._now()):
                # expired; left in place until overwritten or purged
                return None
            entry = entry.model_copy(update={"hit_count": entry.hit_count + 1})
            self._store[key] = entry
            self._store.move_to_end(key)
            return entry

    async def put(
        self,
        key: str,
        payload: Dict[str, Any],
        usage: Optional[TokenUsage] = None,
        model_id: Optional[str] = None,
    ) -> CacheEntry:
        now = self._now()
        entry = CacheEntry(
            key=key,
            response_payload=payload,
            token_usage=usage,
            model_id=model_id,
            hit_count=0,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl),
        )
        async with self._lock_for(key):
            self._store[key] = entry
            self._store.move_to_end(key)
        self._evict_over_capacity(keep=key)
        self._writes += 1
        if self._purge_every and self._writes % self._purge_every == 0:
            purged = await self.purge_expired()
            if purged:
                logger.debug(f"Purged {purged} expired cache entries")
        return entry

    def _evict_over_capacity(self, keep: str) -> None:
        if self._max_entries is None:
            return
        while len(self._store) > self._max_entries:
            oldest_key = next(iter(self._store))
            if oldest_key == keep:
                break
            self._store.pop(oldest_key, None)
            self._locks.pop(oldest_key, None)
            logger.debug(f"Evicted cache entry {oldest_key[:12]}")

    # Administration ------------------------------------------------------
    async def purge_expired(self) -> int:
        now = self._now()
        expired = [k for k, e in list(self._store.items()) if e.is_expired(now)]
        for key in expired:
            async with self._lock_for(key):
                entry = self._store.get(key)
                if entry is not None and entry.is_expired(now):
                    del self._store[key]
            self._locks.pop(key, None)
        return len(expired)

    async def clear(self) -> int:
        count = len(self._store)
        self._store = OrderedDict()
        self._locks = {}
        logger.info(f"Response cache cleared ({count} entries)")
        return count

    def items(self, limit: int = 50) -> List[CacheEntry]:
        """Live entries ordered by hit count, most used first."""
        now = self._now()
        live = [e for e in self._store.values() if not e.is_expired(now)]
        return sorted(live, key=lambda e: e.hit_count, reverse=True)[:limit]

    def stats(self) -> Dict[str, Any]:
        now = self._now()
        live = [e for e in self._store.values() if not e.is_expired(now)]
        hit_items = sum(1 for e in live if e.hit_count > 0)
        return {
            "items": len(live),
            "expired": len(self._store) - len(live),
            "hit_rate": round(hit_items / (len(live) or 1) * 100, 1),
            "total_hits": sum(e.hit_count for e in live),
            "ttl": self._ttl,
            "max_entries": self._max_entries,
        }

    def __len__(self) -> int:
        return len(self._store)
