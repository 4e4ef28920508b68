"""Bounded TTL/LRU cache with best-effort persistence through the host."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional

from .host import HostBindings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    ttl: float
    timestamp: float
    last_access: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class LRUCache:
    """Least-recently-used cache whose entries also expire after a TTL.

    Entries live in an `OrderedDict` kept in recency order (oldest first), so
    lookups, inserts, touches and evictions are all O(1). An entry expires
    `ttl` seconds after it was last written; reads refresh recency only.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: float = 3600.0,
        cleanup_threshold: float = 0.1,
        cleanup_batch_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max(1, int(max_size))
        self.ttl = max(0.001, float(ttl))
        self.cleanup_threshold = cleanup_threshold
        self.cleanup_batch_size = max(1, int(cleanup_batch_size))
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._listeners: List[Callable[[], None]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.expired(self._clock())

    def add_change_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception as e:
                logger.warning(f"Cache change listener failed: {e}")

    def get(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.expired(now):
            del self._entries[key]
            self._changed()
            return None
        entry.last_access = now
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        if key is None:
            return
        if len(self._entries) / self.max_size > self.cleanup_threshold:
            self._sweep_expired(self.cleanup_batch_size)
        now = self._clock()
        ttl = self.ttl if ttl is None else max(0.001, float(ttl))
        entry = self._entries.get(key)
        if entry is not None:
            entry.value = value
            entry.ttl = ttl
            entry.timestamp = now
            entry.last_access = now
            self._entries.move_to_end(key)
        else:
            if len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache full, evicted least recently used key {evicted!r}")
            self._entries[key] = CacheEntry(value, ttl, now, now)
        self._changed()

    def delete(self, key: Hashable) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._changed()
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._changed()

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            self._changed()
        return len(doomed)

    def _sweep_expired(self, limit: int) -> int:
        # Only the least recently used end is scanned, so the sweep stays bounded.
        now = self._clock()
        expired = []
        for scanned, (key, entry) in enumerate(self._entries.items()):
            if scanned >= limit * 2 or len(expired) >= limit:
                break
            if entry.expired(now):
                expired.append(key)
        for key in expired:
            del self._entries[key]
        return len(expired)

    def snapshot(self) -> Dict[Hashable, Dict[str, Any]]:
        return {
            key: {"value": e.value, "ttl": e.ttl, "timestamp": e.timestamp}
            for key, e in self._entries.items()
        }

    def restore(self, entries: Dict[Hashable, Dict[str, Any]]) -> int:
        """Load serialized entries, skipping expired or malformed ones."""
        now = self._clock()
        loaded = 0
        ordered = sorted(
            entries.items(), key=lambda kv: float(kv[1].get("timestamp", 0) or 0)
        )
        for key, raw in ordered:
            try:
                entry = CacheEntry(
                    value=raw["value"],
                    ttl=float(raw["ttl"]),
                    timestamp=float(raw["timestamp"]),
                    last_access=float(raw["timestamp"]),
                )
            except (KeyError, TypeError, ValueError):
                continue
            if entry.expired(now):
                continue
            if len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            loaded += 1
        return loaded


class CacheStore:
    """Serializes named caches into one JSON document under a fixed storage key.

    Writes are coalesced onto the running event loop and handed to a worker
    thread one at a time, so a cache operation never waits on the host.
    Persistence failures are logged and dropped.
    """

    def __init__(self, host: HostBindings, key: str):
        self.host = host
        self.key = key
        self._caches: Dict[str, LRUCache] = {}
        self._pending = False
        self._dirty = False
        self._writing: Optional[asyncio.Future] = None

    def register(self, name: str, cache: LRUCache) -> LRUCache:
        self._caches[name] = cache
        self._restore(name, cache)
        cache.add_change_listener(self.schedule_save)
        return cache

    def _read_document(self) -> Dict[str, Any]:
        try:
            stored = self.host.get_storage(self.key) or "{}"
            data = json.loads(stored)
        except Exception as e:
            logger.warning(f"Could not load persisted cache: {e}")
            return {}
        cache = data.get("cache") if isinstance(data, dict) else None
        return cache if isinstance(cache, dict) else {}

    def _restore(self, name: str, cache: LRUCache) -> None:
        prefix = f"{name}:"
        entries = {
            key[len(prefix):]: raw
            for key, raw in self._read_document().items()
            if key.startswith(prefix) and isinstance(raw, dict)
        }
        if entries:
            loaded = cache.restore(entries)
            logger.info(f"Restored {loaded} '{name}' cache entries.")

    def schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if not self._pending:
            self._pending = True
            loop.call_soon(self._flush)

    def _flush(self) -> None:
        self._pending = False
        if self._writing is not None:
            # One write at a time; the newest state follows once it lands.
            self._dirty = True
            return
        self._start_write(self._serialize())

    def _start_write(self, document: Optional[str]) -> None:
        if document is None:
            return
        self._writing = asyncio.ensure_future(asyncio.to_thread(self._write, document))
        self._writing.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Future) -> None:
        self._writing = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Cache persistence failed: {task.exception()}")
        if self._dirty:
            self._dirty = False
            self.schedule_save()

    def _serialize(self) -> Optional[str]:
        try:
            document = {
                f"{name}:{key}": entry
                for name, cache in self._caches.items()
                for key, entry in cache.snapshot().items()
            }
            return json.dumps({"cache": document})
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache serialization failed: {e}")
            return None

    def _write(self, document: str) -> None:
        try:
            self.host.set_storage(self.key, document)
        except Exception as e:
            logger.warning(f"Cache persistence failed: {e}")

    def save(self) -> None:
        """Write synchronously. Used when no event loop is running."""
        document = self._serialize()
        if document is not None:
            self._write(document)

    async def drain(self) -> None:
        """Wait until scheduled and in-flight writes have landed."""
        while self._pending or self._writing is not None:
            if self._writing is not None:
                await asyncio.gather(self._writing, return_exceptions=True)
            await asyncio.sleep(0)

    async def flush(self) -> None:
        """Write the current state off the loop and wait for it."""
        await self.drain()
        self._start_write(self._serialize())
        await self.drain()
