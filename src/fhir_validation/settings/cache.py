# ============================================================================
# src/fhir_validation/settings/cache.py
# ============================================================================
"""
Settings Cache

Features:
- TTL expiration
- LRU eviction (oldest 10% when full)
- Tags ("active", "recent", "by-id") for group invalidation
- Dependency sets so a server configuration change only invalidates the
  settings records that reference that server
- Statistics for the health endpoint

Dependency names:
    terminology-server-<id>, profile-server-<id>, profile-<url>,
    global-settings, validation-aspects
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

GLOBAL_SETTINGS = "global-settings"
VALIDATION_ASPECTS = "validation-aspects"


def terminology_server_dependency(server_id: str) -> str:
    return f"terminology-server-{server_id}"


def profile_server_dependency(server_id: str) -> str:
    return f"profile-server-{server_id}"


def profile_dependency(profile_url: str) -> str:
    return f"profile-{profile_url}"


def settings_dependencies(settings) -> Set[str]:
    """Dependency set of a ValidationSettings record."""
    dependencies = {GLOBAL_SETTINGS, VALIDATION_ASPECTS}
    dependencies.update(terminology_server_dependency(s.id) for s in settings.terminology_servers)
    dependencies.update(profile_server_dependency(s.id) for s in settings.profile_resolution_servers)
    dependencies.update(
        profile_dependency(url)
        for urls in settings.custom_profiles.values()
        for url in urls
    )
    return dependencies


@dataclass
class CacheEntry:
    """
    Single cache entry with metadata.

    Attributes:
        key: Cache key
        value: Cached settings
        created_at: When the entry was created
        last_accessed: When the entry was last read
        access_count: Number of times accessed
        ttl_seconds: Time-to-live (None = no expiration)
        tags: Group labels
        dependencies: Names of configuration this entry was derived from
    """
    key: str
    value: Any
    created_at: datetime
    last_accessed: datetime
    access_count: int = 0
    ttl_seconds: Optional[float] = None
    tags: Set[str] = field(default_factory=set)
    dependencies: Set[str] = field(default_factory=set)

    def is_expired(self) -> bool:
        """Check if entry has expired based on TTL"""
        if self.ttl_seconds is None:
            return False
        age = (datetime.now() - self.created_at).total_seconds()
        return age > self.ttl_seconds

    def mark_accessed(self):
        """Update access metadata"""
        self.last_accessed = datetime.now()
        self.access_count += 1


class CacheStatistics:
    """Track cache performance metrics"""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0
        self.invalidations = 0
        self.writes = 0

    def hit_rate(self) -> float:
        """Calculate cache hit rate"""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
            "writes": self.writes,
            "hit_rate": self.hit_rate(),
        }


class SettingsCache:
    """
    LRU cache for settings records.

    Example:
        cache = SettingsCache(max_size=100, default_ttl=300)
        cache.set(settings.id, settings, tags={"active"},
                  dependencies=settings_dependencies(settings))
        cache.invalidate_by_dependency(terminology_server_dependency("tx-fhir-org"))
    """

    def __init__(self, max_size: int = 100, default_ttl: Optional[float] = 300.0):
        self.max_size = max_size
        self.default_ttl = default_ttl

        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = CacheStatistics()

        self.logger = logging.getLogger(__name__)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats.misses += 1
                return default

            if entry.is_expired():
                self.logger.debug(f"Cache entry expired: {key}")
                del self._cache[key]
                self._stats.misses += 1
                self._stats.expirations += 1
                return default

            entry.mark_accessed()
            self._cache.move_to_end(key)
            self._stats.hits += 1
            return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        dependencies: Optional[Iterable[str]] = None,
    ) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_size:
                self._evict()

            now = datetime.now()
            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed=now,
                ttl_seconds=ttl if ttl is not None else self.default_ttl,
                tags=set(tags or ()),
                dependencies=set(dependencies or ()),
            )
            self._cache.move_to_end(key)
            self._stats.writes += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> int:
        """Clear all entries; returns how many were dropped."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._stats.invalidations += count
            return count

    def invalidate_by_tag(self, tag: str) -> int:
        return self._invalidate_where(lambda entry: tag in entry.tags)

    def invalidate_by_dependency(self, dependency: str) -> int:
        return self._invalidate_where(lambda entry: dependency in entry.dependencies)

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            expired = [key for key, entry in self._cache.items() if entry.is_expired()]
            for key in expired:
                del self._cache[key]
            self._stats.expirations += len(expired)

            if expired:
                self.logger.info(f"Cleaned up {len(expired)} expired settings cache entries")
            return len(expired)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.to_dict()
            stats["entry_count"] = len(self._cache)
            stats["max_size"] = self.max_size
            stats["default_ttl"] = self.default_ttl
            return stats

    def _invalidate_where(self, predicate) -> int:
        with self._lock:
            keys = [key for key, entry in self._cache.items() if predicate(entry)]
            for key in keys:
                del self._cache[key]
            self._stats.invalidations += len(keys)
            return len(keys)

    def _evict(self) -> None:
        """Evict the least recently used 10% (at least one entry)."""
        count = max(1, len(self._cache) // 10)
        for _ in range(count):
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]
            self._stats.evictions += 1
            self.logger.debug(f"Evicted settings cache entry: {oldest_key}")
