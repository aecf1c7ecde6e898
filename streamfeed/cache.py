"""Expiring, persisted cache shielding catalog calls from redundant traffic.

Entries live in the shared key/value storage under a namespace prefix
(``tmdb_``, ``omdb_``, ``watchmode_``). The prefix decides the default
lifetime so call sites never need to remember per-source policy. Reads past
the lifetime behave as misses and delete the stale entry. Writes are best
effort: when storage runs out of room the cache evicts expired entries, then
everything it owns, and finally gives up quietly.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from .models import CacheEntry
from .storage import KeyValueStorage, StorageError, is_quota_error
from .utils import Clock, hash_params, system_clock

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


class CachePrefix(str, Enum):
    """Namespaces owned by the cache, one per upstream catalog."""

    TMDB = "tmdb_"
    OMDB = "omdb_"
    WATCHMODE = "watchmode_"

    @property
    def label(self) -> str:
        return self.name.lower()


DEFAULT_TTLS: dict[str, int] = {
    CachePrefix.TMDB.value: 24 * HOUR_MS,
    CachePrefix.OMDB.value: 7 * 24 * HOUR_MS,
    CachePrefix.WATCHMODE.value: 24 * HOUR_MS,
}


def make_cache_key(
    endpoint: str,
    params: Mapping[str, Any] | None = None,
    *,
    prefix: CachePrefix | str = CachePrefix.TMDB,
) -> str:
    """Derive a deterministic cache key from an endpoint and its parameters.

    Parameter order never matters: the mapping is serialised with sorted keys
    before hashing.
    """

    namespace = prefix.value if isinstance(prefix, CachePrefix) else prefix
    return f"{namespace}{endpoint}_{hash_params(params)}"


def make_title_cache_key(prefix: CachePrefix | str, *parts: object) -> str:
    """Build an id-addressed key such as ``omdb_tt0111161``."""

    namespace = prefix.value if isinstance(prefix, CachePrefix) else prefix
    return namespace + "_".join(str(part) for part in parts)


@dataclass(slots=True)
class NamespaceStats:
    count: int
    ttl: int


@dataclass(slots=True)
class CacheStats:
    """Snapshot of what the cache currently holds."""

    per_namespace: dict[str, NamespaceStats] = field(default_factory=dict)
    total_size_bytes: int = 0
    total_keys: int = 0


class ExpiringCache:
    """TTL-keyed cache persisted in a :class:`KeyValueStorage`."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        ttls: Mapping[str, int] | None = None,
        clock: Clock = system_clock,
        quota_predicate: Callable[[BaseException], bool] = is_quota_error,
    ):
        self._storage = storage
        self._ttls: dict[str, int] = dict(DEFAULT_TTLS)
        if ttls:
            self._ttls.update(ttls)
        self._clock = clock
        self._is_quota_error = quota_predicate

    def ttl_for(self, key: str) -> int:
        """Return the default lifetime for ``key`` inferred from its prefix."""

        for prefix, ttl in self._ttls.items():
            if key.startswith(prefix):
                return ttl
        return self._ttls[CachePrefix.TMDB.value]

    async def get(self, key: str, ttl: int | None = None) -> Any | None:
        """Return the cached payload for ``key`` or ``None`` on a miss."""

        try:
            raw = await self._storage.get_item(key)
        except StorageError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

        if raw is None:
            logger.debug("Cache miss: %s", key)
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt cache entry %s", key)
            await self._remove(key)
            return None

        effective_ttl = ttl if ttl is not None else self.ttl_for(key)
        age = self._clock() - entry.stored_at
        if age < effective_ttl:
            logger.debug("Cache hit: %s (age %.1f min)", key, age / 60_000)
            return entry.payload

        logger.debug("Cache expired: %s", key)
        await self._remove(key)
        return None

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``; never raises on storage failure."""

        entry = CacheEntry(payload=value, stored_at=self._clock())
        serialized = entry.to_json()

        try:
            await self._storage.set_item(key, serialized)
            logger.debug("Cache set: %s", key)
            return
        except StorageError as exc:
            if not self._is_quota_error(exc):
                logger.warning("Cache write failed for %s: %s", key, exc)
                return
            logger.warning("Cache quota exceeded writing %s, clearing expired entries", key)

        await self.clear_expired()
        if await self._try_write(key, serialized):
            logger.info("Cache write for %s succeeded after clearing expired entries", key)
            return

        logger.warning("Cache still full writing %s, clearing all cached entries", key)
        await self.clear()
        if await self._try_write(key, serialized):
            logger.info("Cache write for %s succeeded after clearing the cache", key)
            return

        logger.error("Giving up caching %s: storage remains full", key)

    async def clear(self, prefix: CachePrefix | str | None = None) -> int:
        """Remove every key under ``prefix``, or under all namespaces when ``None``."""

        if isinstance(prefix, CachePrefix):
            prefix = prefix.value
        keys = await self._list_keys() if prefix is None else await self._list_keys(prefix)
        if not keys:
            return 0
        try:
            await self._storage.remove_items(keys)
        except StorageError as exc:
            logger.warning("Cache clear failed for %s: %s", prefix or "all namespaces", exc)
            return 0
        logger.info("Cleared %s cache keys from %s", len(keys), prefix or "all namespaces")
        return len(keys)

    async def clear_expired(self) -> int:
        """Delete entries past their namespace lifetime; corrupt entries count as expired."""

        now = self._clock()
        expired: list[str] = []
        for key, stored_at in await self._scan():
            if stored_at is None or now - stored_at >= self.ttl_for(key):
                expired.append(key)

        removed = await self._remove_many(expired)
        logger.info("Cleared %s expired cache entries", removed)
        return removed

    async def clear_oldest(self, max_age_ms: int | None = None) -> int:
        """Delete the oldest half of all entries, or everything older than ``max_age_ms``."""

        if max_age_ms is None:
            return await self.clear_oldest_percentage(50)

        cutoff = self._clock() - max_age_ms
        stale = [
            key
            for key, stored_at in await self._scan()
            if (stored_at or 0) < cutoff
        ]
        removed = await self._remove_many(stale)
        logger.info("Cleared %s cache entries older than %s ms", removed, max_age_ms)
        return removed

    async def clear_oldest_percentage(self, percentage: float) -> int:
        """Delete the oldest ``ceil(percentage / 100 * N)`` entries."""

        percentage = min(max(float(percentage), 0.0), 100.0)
        entries = await self._scan()
        if not entries or percentage == 0:
            return 0

        entries.sort(key=lambda pair: pair[1] or 0)
        count = math.ceil(percentage * len(entries) / 100)
        removed = await self._remove_many(key for key, _ in entries[:count])
        logger.info("Cleared oldest %s%% of cache (%s entries)", percentage, removed)
        return removed

    async def maintain(self, max_entries: int = 1_000) -> int:
        """Expire stale entries, then trim the oldest 30% if still over ``max_entries``."""

        removed = await self.clear_expired()
        remaining = len(await self._list_keys())
        if remaining > max_entries:
            logger.info(
                "Cache holds %s entries (limit %s), trimming oldest", remaining, max_entries
            )
            removed += await self.clear_oldest_percentage(30)
        return removed

    async def stats(self) -> CacheStats:
        """Return per-namespace counts, lifetimes and the approximate stored size."""

        stats = CacheStats()
        for prefix, ttl in self._ttls.items():
            keys = await self._list_keys(prefix)
            stats.per_namespace[self._namespace_label(prefix)] = NamespaceStats(
                count=len(keys), ttl=ttl
            )
            stats.total_keys += len(keys)
            for key in keys:
                try:
                    raw = await self._storage.get_item(key)
                except StorageError as exc:
                    logger.warning("Cache stats could not read %s: %s", key, exc)
                    continue
                if raw:
                    stats.total_size_bytes += len(raw.encode("utf-8"))
        return stats

    async def _try_write(self, key: str, serialized: str) -> bool:
        try:
            await self._storage.set_item(key, serialized)
        except StorageError as exc:
            logger.debug("Cache retry write for %s failed: %s", key, exc)
            return False
        return True

    async def _scan(self) -> list[tuple[str, int | None]]:
        """Return ``(key, stored_at)`` pairs; ``stored_at`` is ``None`` for corrupt entries."""

        entries: list[tuple[str, int | None]] = []
        for key in await self._list_keys():
            try:
                raw = await self._storage.get_item(key)
            except StorageError as exc:
                logger.warning("Cache scan could not read %s: %s", key, exc)
                continue
            if raw is None:
                continue
            try:
                entries.append((key, CacheEntry.model_validate_json(raw).stored_at))
            except ValidationError:
                entries.append((key, None))
        return entries

    async def _list_keys(self, prefix: str | None = None) -> list[str]:
        prefixes = (prefix,) if prefix is not None else tuple(self._ttls)
        keys: list[str] = []
        try:
            for namespace in prefixes:
                for key in await self._storage.list_keys(namespace):
                    if key not in keys:
                        keys.append(key)
        except StorageError as exc:
            logger.warning("Cache could not list keys: %s", exc)
            return []
        return keys

    async def _remove(self, key: str) -> None:
        try:
            await self._storage.remove_item(key)
        except StorageError as exc:
            logger.warning("Cache could not remove %s: %s", key, exc)

    async def _remove_many(self, keys: Iterable[str]) -> int:
        key_list = list(keys)
        if not key_list:
            return 0
        try:
            await self._storage.remove_items(key_list)
        except StorageError as exc:
            logger.warning("Cache could not remove %s entries: %s", len(key_list), exc)
            return 0
        return len(key_list)

    @staticmethod
    def _namespace_label(prefix: str) -> str:
        try:
            return CachePrefix(prefix).label
        except ValueError:
            return prefix.rstrip("_")
