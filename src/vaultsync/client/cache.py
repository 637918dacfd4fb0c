"""Client-side query cache.

Learn: Entries are keyed by tuples, e.g. ("asset", "A1") for one asset and
("assets",) or ("assets", "sneaker") for list views. invalidate(prefix)
does not delete anything: it marks every entry under the prefix stale, and
the next fetch() of a stale key goes back to the server. Concurrent
fetch() calls for the same key share one load.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

Key = tuple


@dataclass
class CacheEntry:
    data: Any
    updated_at: float
    stale: bool = False


class QueryCache:

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._entries: dict[Key, CacheEntry] = {}
        self._loading: dict[Key, asyncio.Task] = {}

    def get(self, key: Key) -> Optional[Any]:
        entry = self._entries.get(key)
        return entry.data if entry else None

    def entry(self, key: Key) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def set(self, key: Key, data: Any) -> None:
        self._entries[key] = CacheEntry(data=data, updated_at=self.clock())

    def update(self, key: Key, fn: Callable[[Any], Any]) -> bool:
        """Replace a cached value with fn(old). False if the key isn't cached."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.data = fn(entry.data)
        entry.updated_at = self.clock()
        return True

    def invalidate(self, prefix: Key) -> int:
        """Mark every entry whose key starts with `prefix` stale."""
        marked = 0
        for key, entry in self._entries.items():
            if key[: len(prefix)] == prefix:
                entry.stale = True
                marked += 1
        return marked

    def is_stale(self, key: Key) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def remove(self, key: Key) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def fetch(self, key: Key, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Cached value if fresh, else load it (once, however many callers)."""
        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            return entry.data

        task = self._loading.get(key)
        if task is None:
            task = asyncio.create_task(self._load(key, loader))
            self._loading[key] = task
        return await asyncio.shield(task)

    async def _load(self, key: Key, loader: Callable[[], Awaitable[Any]]) -> Any:
        try:
            data = await loader()
            self.set(key, data)
            return data
        finally:
            self._loading.pop(key, None)
