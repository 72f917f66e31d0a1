"""Two-tier cache: a fast in-process memory tier over a slower persistent tier.

Reads check memory first, then the persistent tier, promoting hits into
memory. Expiry is evaluated at read time; a periodic sweep purges expired
entries from both tiers. Memory pressure evicts by an injectable scoring
policy, storage pressure evicts low-priority and old entries first.

The memory tier is process-local; separate processes do not see each other's
memory entries.
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, TypeVar

from cachetools import Cache
from sqlalchemy import Engine, delete as sa_delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.exceptions import StoreError
from app.models.media import Priority
from app.models.tables import CacheRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIORITY_RANK = {Priority.LOW: 1, Priority.MEDIUM: 2, Priority.HIGH: 3}


@dataclass
class CacheEntry(Generic[T]):
    """A cached payload and the bookkeeping used for expiry and eviction."""

    data: T
    timestamp: float
    ttl: float
    priority: Priority = Priority.MEDIUM
    access_count: int = 0
    last_accessed: float = 0.0
    size: int = 0

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


EvictionPolicy = Callable[[CacheEntry, float], float]


def composite_eviction_score(entry: CacheEntry, now: float) -> float:
    """Lower scores are evicted first.

    Priority and access frequency raise the score, idle seconds lower it.
    """
    priority_weight = {Priority.HIGH: 100, Priority.MEDIUM: 50, Priority.LOW: 10}[
        entry.priority
    ]
    access_weight = max(1, entry.access_count) * 10
    idle_seconds = max(0.0, now - entry.last_accessed)
    return priority_weight + access_weight - idle_seconds


def lru_eviction_score(entry: CacheEntry, now: float) -> float:
    """Plain least-recently-used ordering."""
    return entry.last_accessed


def estimate_size(data: Any) -> int:
    """Serialized size in bytes, used against the storage budget."""
    return len(json.dumps(data, default=str).encode("utf-8"))


@dataclass
class CacheStats:
    memory_size: int = 0
    storage_size: int = 0
    storage_bytes: int = 0
    total_requests: int = 0
    memory_hits: int = 0
    storage_hits: int = 0
    misses: int = 0
    evictions: int = 0
    expired_purged: int = 0
    hit_rate: float = field(default=0.0)


class MemoryTier(Cache):
    """Bounded in-process tier; ``popitem`` evicts the lowest-scoring entry.

    Expiry is not handled here, ``SmartCache`` checks it at read time.
    """

    def __init__(
        self,
        maxsize: int,
        policy: EvictionPolicy,
        clock: Callable[[], float],
        on_evict: Callable[[str, CacheEntry], None] | None = None,
    ) -> None:
        super().__init__(maxsize)
        self.policy = policy
        self.clock = clock
        self.on_evict = on_evict

    def popitem(self) -> tuple[str, CacheEntry]:
        if not self:
            raise KeyError(f"{type(self).__name__} is empty")
        now = self.clock()
        key = min(self, key=lambda k: self.policy(self[k], now))
        entry = self.pop(key)
        if self.on_evict is not None:
            self.on_evict(key, entry)
        return key, entry

    def clear(self) -> None:
        # Dropping everything is not an eviction
        for key in list(self):
            del self[key]


# --- Persistent tier backends ---


class CacheBackend(ABC):
    """Storage for the persistent tier."""

    @abstractmethod
    def get(self, key: str) -> CacheEntry | None:
        pass

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> None:
        pass

    @abstractmethod
    def delete(self, keys: Iterable[str]) -> int:
        pass

    @abstractmethod
    def entries(self) -> list[tuple[str, CacheEntry]]:
        """All stored entries (payload may be omitted)."""
        pass

    @abstractmethod
    def total_size(self) -> int:
        pass

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemoryCacheBackend(CacheBackend):
    """Dictionary-backed persistent tier, for tests and single-run tools."""

    def __init__(self) -> None:
        self._rows: dict[str, CacheEntry] = {}

    def get(self, key: str) -> CacheEntry | None:
        return self._rows.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._rows[key] = entry

    def delete(self, keys: Iterable[str]) -> int:
        removed = 0
        for key in list(keys):
            if self._rows.pop(key, None) is not None:
                removed += 1
        return removed

    def entries(self) -> list[tuple[str, CacheEntry]]:
        return list(self._rows.items())

    def total_size(self) -> int:
        return sum(entry.size for entry in self._rows.values())

    def purge_expired(self, now: float) -> int:
        expired = [k for k, e in self._rows.items() if not e.is_valid(now)]
        return self.delete(expired)

    def clear(self) -> None:
        self._rows.clear()


class DatabaseCacheBackend(CacheBackend):
    """Persistent tier stored in the ``cache_entries`` table."""

    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from app.core.database import engine as default_engine

            engine = default_engine
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @staticmethod
    def _to_entry(row: CacheRow, with_payload: bool = True) -> CacheEntry:
        return CacheEntry(
            data=row.payload if with_payload else None,
            timestamp=row.timestamp,
            ttl=row.ttl,
            priority=Priority(row.priority),
            access_count=row.access_count,
            last_accessed=row.last_accessed,
            size=row.size,
        )

    def get(self, key: str) -> CacheEntry | None:
        try:
            with self._session() as session:
                row = session.get(CacheRow, key)
                return self._to_entry(row) if row else None
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read cache entry {key}", exc)

    def set(self, key: str, entry: CacheEntry) -> None:
        try:
            with self._session() as session:
                row = session.get(CacheRow, key) or CacheRow(
                    key=key, timestamp=entry.timestamp, ttl=entry.ttl
                )
                row.payload = entry.data
                row.timestamp = entry.timestamp
                row.ttl = entry.ttl
                row.priority = entry.priority
                row.access_count = entry.access_count
                row.last_accessed = entry.last_accessed
                row.size = entry.size
                session.add(row)
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to write cache entry {key}", exc)

    def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        try:
            with self._session() as session:
                result = session.exec(sa_delete(CacheRow).where(CacheRow.key.in_(keys)))
                session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError("Failed to delete cache entries", exc)

    def entries(self) -> list[tuple[str, CacheEntry]]:
        try:
            with self._session() as session:
                rows = session.exec(select(CacheRow)).all()
                return [(row.key, self._to_entry(row, with_payload=False)) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError("Failed to list cache entries", exc)

    def total_size(self) -> int:
        try:
            with self._session() as session:
                return session.exec(select(func.coalesce(func.sum(CacheRow.size), 0))).one()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to measure cache storage", exc)

    def purge_expired(self, now: float) -> int:
        try:
            with self._session() as session:
                result = session.exec(
                    sa_delete(CacheRow).where(now - CacheRow.timestamp >= CacheRow.ttl)
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError("Failed to purge expired cache entries", exc)

    def clear(self) -> None:
        try:
            with self._session() as session:
                session.exec(sa_delete(CacheRow))
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to clear cache storage", exc)


# --- Cache service ---


class SmartCache:
    """Memory tier plus optional persistent tier with priority-aware eviction."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        max_memory_entries: int = 50,
        max_storage_bytes: int = 5 * 1024 * 1024,
        storage_evict_fraction: float = 0.3,
        eviction_policy: EvictionPolicy = composite_eviction_score,
        sweep_interval: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.max_memory_entries = max_memory_entries
        self.max_storage_bytes = max_storage_bytes
        self.storage_evict_fraction = storage_evict_fraction
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._memory = MemoryTier(
            max_memory_entries,
            policy=eviction_policy,
            clock=clock,
            on_evict=self._log_memory_eviction,
        )
        self._stats = CacheStats()
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings, backend: CacheBackend | None = None) -> "SmartCache":
        return cls(
            backend=backend,
            max_memory_entries=settings.cache_memory_max_entries,
            max_storage_bytes=settings.cache_storage_max_bytes,
            storage_evict_fraction=settings.cache_storage_evict_fraction,
            sweep_interval=settings.cache_sweep_interval,
        )

    # --- Read path ---

    def get(self, key: str, ttl: float | None = None) -> Any | None:
        """Return the cached value or None.

        ``ttl`` optionally tightens freshness for this read: an entry older
        than it counts as a miss even if its own TTL has not run out.
        """
        now = self._clock()
        self._stats.total_requests += 1

        entry = self._memory.get(key)
        if entry is not None:
            if self._fresh(entry, now, ttl):
                entry.access_count += 1
                entry.last_accessed = now
                self._stats.memory_hits += 1
                return entry.data
            if not entry.is_valid(now):
                del self._memory[key]

        if self.backend is not None:
            try:
                stored = self.backend.get(key)
            except StoreError as exc:
                logger.error("Cache storage read failed for %s: %s", key, exc)
                stored = None
            if stored is not None and self._fresh(stored, now, ttl):
                stored.access_count += 1
                stored.last_accessed = now
                self._put_in_memory(key, stored)
                self._stats.storage_hits += 1
                return stored.data

        self._stats.misses += 1
        return None

    @staticmethod
    def _fresh(entry: CacheEntry, now: float, ttl: float | None) -> bool:
        if not entry.is_valid(now):
            return False
        return ttl is None or now - entry.timestamp < ttl

    # --- Write path ---

    def set(
        self,
        key: str,
        value: Any,
        ttl: float,
        persist: bool = False,
        priority: Priority | str = Priority.MEDIUM,
    ) -> None:
        """Store ``value`` for ``ttl`` seconds, optionally in the persistent tier."""
        now = self._clock()
        entry = CacheEntry(
            data=value,
            timestamp=now,
            ttl=ttl,
            priority=Priority(priority),
            access_count=0,
            last_accessed=now,
        )
        try:
            entry.size = estimate_size(value)
        except (TypeError, ValueError):
            entry.size = 1000
            if persist:
                logger.warning("Value for %s is not JSON serializable, memory only", key)
                persist = False

        self._put_in_memory(key, entry)

        if persist and self.backend is not None:
            self._put_in_storage(key, entry)

        logger.debug(
            "Cached %s (TTL: %ss, priority: %s, persisted: %s)",
            key,
            ttl,
            entry.priority.value,
            persist,
        )

    def _put_in_memory(self, key: str, entry: CacheEntry) -> None:
        self._memory[key] = entry

    def _put_in_storage(self, key: str, entry: CacheEntry) -> None:
        try:
            if self.backend.total_size() + entry.size > self.max_storage_bytes:
                self.evict_storage_entries()
            self.backend.set(key, entry)
        except StoreError as exc:
            logger.error("Cache storage write failed for %s: %s", key, exc)

    # --- Eviction ---

    def _log_memory_eviction(self, key: str, entry: CacheEntry) -> None:
        self._stats.evictions += 1
        logger.debug(
            "Evicted %s from memory (priority: %s, accesses: %d)",
            key,
            entry.priority.value,
            entry.access_count,
        )

    def evict_storage_entries(self) -> int:
        """Free a fraction of the storage budget, lowest priority and oldest first.

        Returns the number of bytes freed.
        """
        entries = self.backend.entries()
        entries.sort(key=lambda item: (PRIORITY_RANK[item[1].priority], item[1].timestamp))

        target = self.max_storage_bytes * self.storage_evict_fraction
        freed = 0
        victims = []
        for key, entry in entries:
            if freed >= target:
                break
            victims.append(key)
            freed += entry.size

        removed = self.backend.delete(victims)
        self._stats.evictions += removed
        logger.info(
            "Evicted %d storage entries, freed %dKB", removed, round(freed / 1024)
        )
        return freed

    def evict(self, key: str) -> bool:
        """Drop a key from both tiers."""
        removed = self._memory.pop(key, None) is not None
        if self.backend is not None:
            try:
                removed = self.backend.delete([key]) > 0 or removed
            except StoreError as exc:
                logger.error("Cache storage delete failed for %s: %s", key, exc)
        return removed

    def invalidate_pattern(self, pattern: str | re.Pattern) -> int:
        """Drop every key matching ``pattern`` (regex search) from both tiers."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        count = 0

        for key in [k for k in self._memory if regex.search(k)]:
            del self._memory[key]
            count += 1

        if self.backend is not None:
            try:
                keys = [k for k, _ in self.backend.entries() if regex.search(k)]
                count += self.backend.delete(keys)
            except StoreError as exc:
                logger.error("Cache storage invalidation failed: %s", exc)

        logger.info("Invalidated %d entries matching pattern: %s", count, regex.pattern)
        return count

    # --- Maintenance ---

    def sweep_expired(self) -> tuple[int, int]:
        """Purge expired entries. Returns (memory, storage) counts removed."""
        now = self._clock()
        expired = [k for k, e in self._memory.items() if not e.is_valid(now)]
        for key in expired:
            del self._memory[key]

        cleaned_storage = 0
        if self.backend is not None:
            try:
                cleaned_storage = self.backend.purge_expired(now)
            except StoreError as exc:
                logger.error("Cache storage sweep failed: %s", exc)

        self._stats.expired_purged += len(expired) + cleaned_storage
        if expired or cleaned_storage:
            logger.info(
                "Cleanup: %d memory entries, %d storage entries",
                len(expired),
                cleaned_storage,
            )
        return len(expired), cleaned_storage

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    def start(self) -> None:
        """Schedule the periodic expired-entry sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

    def clear(self) -> None:
        """Drop every entry from both tiers and reset statistics."""
        self._memory.clear()
        if self.backend is not None:
            try:
                self.backend.clear()
            except StoreError as exc:
                logger.error("Cache storage clear failed: %s", exc)
        self._stats = CacheStats()
        logger.info("All cache data cleared")

    @property
    def memory_keys(self) -> list[str]:
        return list(self._memory)

    def get_stats(self) -> CacheStats:
        stats = CacheStats(**vars(self._stats))
        stats.memory_size = len(self._memory)
        if self.backend is not None:
            try:
                stats.storage_size = len(self.backend.entries())
                stats.storage_bytes = self.backend.total_size()
            except StoreError as exc:
                logger.error("Cache storage stats failed: %s", exc)
        hits = stats.memory_hits + stats.storage_hits
        if stats.total_requests:
            stats.hit_rate = round(hits / stats.total_requests * 100, 2)
        return stats
