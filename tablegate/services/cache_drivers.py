# ABOUTME: Storage drivers for the response cache
# ABOUTME: File (sharded JSON files), in-process memory and Redis backends with a common interface

import fnmatch
import hashlib
import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

CACHE_EXTENSION = ".cache"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class CacheDriver:
    """
    Interface shared by all cache backends.

    Values must be JSON-serializable. ``delete_pattern`` takes a glob
    pattern such as ``api:table:users:*``.
    """

    name = "base"

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def delete_pattern(self, pattern: str) -> bool:
        raise NotImplementedError

    def clear(self) -> bool:
        raise NotImplementedError

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def get_stats(self) -> Dict[str, Any]:
        return {"driver": self.name}


class FileCache(CacheDriver):
    """
    One JSON file per key, spread over 256 subdirectories by md5 prefix.

    Example:
        api:table:users:params:abc -> <root>/3f/api.table.users.params.abc.cache
    """

    name = "file"

    def __init__(self, cache_path: str):
        self.cache_path = Path(cache_path)
        self.cache_path.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _filename(key: str) -> str:
        return _UNSAFE_FILENAME_CHARS.sub("_", key.replace(":", ".")) + CACHE_EXTENSION

    def _file_path(self, key: str) -> Path:
        subdir = hashlib.md5(key.encode("utf-8")).hexdigest()[:2]
        return self.cache_path / subdir / self._filename(key)

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        """Entry stored at path, or None when missing, corrupt or expired."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("cache.file_unreadable", path=str(path), error=str(exc))
            path.unlink(missing_ok=True)
            return None

        if not isinstance(data, dict) or data.get("expires_at", 0) < time.time():
            path.unlink(missing_ok=True)
            return None
        return data

    def get(self, key: str) -> Optional[Any]:
        entry = self._read(self._file_path(key))
        return entry.get("value") if entry else None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        path = self._file_path(key)
        now = time.time()
        entry = {
            "key": key,
            "value": value,
            "created_at": now,
            "expires_at": now + ttl,
            "ttl": ttl,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=path.parent, prefix=".tmp_", suffix=".json", delete=False, encoding="utf-8"
            ) as fh:
                json.dump(entry, fh)
                tmp_name = fh.name
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("cache.file_write_failed", key=key, error=str(exc))
            return False
        return True

    def delete(self, key: str) -> bool:
        self._file_path(key).unlink(missing_ok=True)
        return True

    def delete_pattern(self, pattern: str) -> bool:
        file_pattern = self._filename(pattern.replace("*", "STAR")).replace("STAR", "*")
        success = True
        for path in self.cache_path.glob(f"*/*{CACHE_EXTENSION}"):
            if not fnmatch.fnmatchcase(path.name, file_pattern):
                continue
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("cache.file_delete_failed", path=str(path), error=str(exc))
                success = False
        return success

    def clear(self) -> bool:
        return self.delete_pattern("*")

    def has(self, key: str) -> bool:
        return self._read(self._file_path(key)) is not None

    def get_stats(self) -> Dict[str, Any]:
        total_files = valid_files = expired_files = total_size = 0
        now = time.time()
        for path in self.cache_path.glob(f"*/*{CACHE_EXTENSION}"):
            total_files += 1
            try:
                total_size += path.stat().st_size
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if data.get("expires_at", 0) < now:
                expired_files += 1
            else:
                valid_files += 1
        return {
            "driver": self.name,
            "cache_path": str(self.cache_path),
            "total_files": total_files,
            "valid_files": valid_files,
            "expired_files": expired_files,
            "total_size": total_size,
        }


class MemoryCache(CacheDriver):
    """Process-local cache, mostly useful for tests and single-worker deployments."""

    name = "memory"

    def __init__(self):
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < time.time():
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: int) -> bool:
        self._entries[key] = (time.time() + ttl, value)
        return True

    def delete(self, key: str) -> bool:
        self._entries.pop(key, None)
        return True

    def delete_pattern(self, pattern: str) -> bool:
        for key in [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]:
            self._entries.pop(key, None)
        return True

    def clear(self) -> bool:
        self._entries.clear()
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {"driver": self.name, "entries": len(self._entries)}


class RedisCache(CacheDriver):
    """
    Redis-backed cache. Keys are namespaced with ``prefix``; pattern deletes
    use SCAN so they never block the server the way KEYS would.
    """

    name = "redis"

    def __init__(self, url: str, prefix: str = "tablegate:", client: Optional[redis.Redis] = None):
        self.prefix = prefix
        self.client = client or redis.Redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(self._key(key))
        except RedisError as exc:
            logger.warning("cache.redis_unavailable", operation="get", error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            self.client.setex(self._key(key), ttl, json.dumps(value))
        except (RedisError, TypeError, ValueError) as exc:
            logger.warning("cache.redis_unavailable", operation="set", error=str(exc))
            return False
        return True

    def delete(self, key: str) -> bool:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            logger.warning("cache.redis_unavailable", operation="delete", error=str(exc))
            return False
        return True

    def delete_pattern(self, pattern: str) -> bool:
        try:
            keys = list(self.client.scan_iter(match=self._key(pattern), count=500))
            if keys:
                self.client.delete(*keys)
        except RedisError as exc:
            logger.warning("cache.redis_unavailable", operation="delete_pattern", error=str(exc))
            return False
        return True

    def clear(self) -> bool:
        return self.delete_pattern("*")

    def has(self, key: str) -> bool:
        try:
            return bool(self.client.exists(self._key(key)))
        except RedisError as exc:
            logger.warning("cache.redis_unavailable", operation="has", error=str(exc))
            return False

    def get_stats(self) -> Dict[str, Any]:
        try:
            keys = sum(1 for _ in self.client.scan_iter(match=self._key("*"), count=500))
        except RedisError:
            keys = None
        return {"driver": self.name, "prefix": self.prefix, "keys": keys}
