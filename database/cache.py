"""
Query embedding cache.

Visitors of the same portal ask the same handful of questions, so query
vectors are cached per embedding model. Entries expire after a TTL and the
least recently used entry is evicted once capacity is reached.
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int
    capacity: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def embedding_key(model: str, text: str) -> str:
    """Digest of the model name and the whitespace/case-normalized text"""
    normalized = ' '.join(text.split()).lower()
    return hashlib.sha256(f"{model}\x00{normalized}".encode('utf-8')).hexdigest()


class EmbeddingCache:
    """LRU cache of query vectors with a per-entry TTL, shared by concurrent requests"""

    def __init__(
        self,
        capacity: int = 1024,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: "OrderedDict[str, Tuple[float, Tuple[float, ...]]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, model: str, text: str) -> Optional[List[float]]:
        key = embedding_key(model, text)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] <= self._clock():
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return list(entry[1])

    async def put(self, model: str, text: str, vector: Sequence[float]) -> None:
        key = embedding_key(model, text)
        async with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, tuple(vector))
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self._evictions += 1

    async def get_or_compute(
        self,
        model: str,
        text: str,
        compute: Callable[[], Awaitable[Sequence[float]]],
    ) -> List[float]:
        """Cached vector for `text`; on a miss, await `compute` and store its result.

        Exceptions from `compute` propagate and nothing is stored.
        """
        cached = await self.get(model, text)
        if cached is not None:
            return cached
        vector = await compute()
        await self.put(model, text, vector)
        return list(vector)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def stats(self) -> CacheStats:
        async with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                capacity=self.capacity,
                evictions=self._evictions,
            )
