# ABOUTME: Response cache for list queries
# ABOUTME: Derives deterministic keys, applies per-table TTLs and invalidates a table's entries on writes

import hashlib
import json
from typing import Any, Dict, Mapping, Optional

import structlog

from tablegate.config import CacheConfig
from tablegate.services.cache_drivers import CacheDriver, FileCache, MemoryCache, RedisCache

logger = structlog.get_logger()


def build_driver(config: CacheConfig) -> CacheDriver:
    if config.driver == "memory":
        return MemoryCache()
    if config.driver == "redis":
        return RedisCache(config.redis_url, prefix=config.redis_prefix)
    return FileCache(config.file_path)


class CacheManager:
    """
    High-level cache used by the pipeline.

    Keys have the form ``api:table:{table}:params:{md5}`` with optional
    ``:apikey:{hash}`` and ``:user:{id}`` suffixes, depending on ``vary_by``.
    Hit/miss counters are per process.
    """

    def __init__(self, config: CacheConfig, driver: Optional[CacheDriver] = None):
        self.config = config
        self.enabled = config.enabled
        self.driver = driver if driver is not None else build_driver(config)
        self.stats = {"hits": 0, "misses": 0, "writes": 0, "invalidations": 0}

    def should_cache(self, table: str) -> bool:
        return self.enabled and table not in self.config.exclude_tables

    def generate_key(
        self,
        table: str,
        params: Mapping[str, Any],
        api_key: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """
        Build the cache key for a table query.

        Args:
            table: Table name
            params: Query options; key order does not matter
            api_key: Caller's API key, used when vary_by contains "api_key"
            user_id: Authenticated user, used when vary_by contains "user_id"

        Returns:
            Deterministic cache key
        """
        encoded = json.dumps(dict(params), sort_keys=True, separators=(",", ":"), default=str)
        key = f"api:table:{table}:params:{hashlib.md5(encoded.encode('utf-8')).hexdigest()}"

        if "api_key" in self.config.vary_by and api_key:
            key += ":apikey:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
        if "user_id" in self.config.vary_by and user_id:
            key += f":user:{user_id}"
        return key

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        value = self.driver.get(key)
        if value is None:
            self.stats["misses"] += 1
        else:
            self.stats["hits"] += 1
        return value

    def set(self, key: str, value: Any, table: Optional[str] = None) -> bool:
        if not self.enabled:
            return False
        stored = self.driver.set(key, value, self.get_ttl(table or ""))
        if stored:
            self.stats["writes"] += 1
        return stored

    def get_ttl(self, table: str) -> int:
        """Per-table TTL if configured, else the default TTL."""
        return int(self.config.per_table.get(table, self.config.ttl))

    def invalidate_table(self, table: str) -> bool:
        if not self.enabled:
            return False
        removed = self.driver.delete_pattern(f"api:table:{table}:*")
        if removed:
            self.stats["invalidations"] += 1
        logger.debug("cache.invalidated", table=table, success=removed)
        return removed

    def delete(self, key: str) -> bool:
        return self.enabled and self.driver.delete(key)

    def clear(self) -> bool:
        return self.enabled and self.driver.clear()

    def has(self, key: str) -> bool:
        return self.enabled and self.driver.has(key)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.driver.get_stats(),
            **self.stats,
            "hit_ratio": round(self.stats["hits"] / lookups, 3) if lookups else 0.0,
        }
