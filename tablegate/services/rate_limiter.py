# ABOUTME: Sliding-window rate limiter with one JSON file per identifier
# ABOUTME: Tracks request timestamps in a trailing window and produces X-RateLimit-* headers

import hashlib
import json
import math
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from tablegate.config import RateLimitConfig

logger = structlog.get_logger()


class RateLimiter:
    """
    Sliding-window request counter keyed by an opaque identifier.

    Each identifier's timestamps live in ``ratelimit_<sha256>.json`` under the
    storage directory. Concurrent writers may race; the last write wins, which
    can let an occasional extra request through.
    """

    def __init__(self, config: RateLimitConfig):
        self.enabled = config.enabled
        self.max_requests = config.max_requests
        self.window_seconds = config.window_seconds
        self.storage_dir = Path(config.storage_dir)
        if self.enabled:
            self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, identifier: str) -> Path:
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
        return self.storage_dir / f"ratelimit_{digest}.json"

    def _load(self, identifier: str) -> List[float]:
        path = self._path(identifier)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("rate_limiter.storage_unreadable", path=str(path), error=str(exc))
            return []
        if not isinstance(data, list):
            return []
        return [float(ts) for ts in data if isinstance(ts, (int, float))]

    def _save(self, identifier: str, timestamps: List[float]) -> None:
        path = self._path(identifier)
        try:
            with tempfile.NamedTemporaryFile(
                "w", dir=self.storage_dir, prefix=".ratelimit_", suffix=".tmp", delete=False, encoding="utf-8"
            ) as fh:
                json.dump(timestamps, fh)
                tmp_name = fh.name
            os.replace(tmp_name, path)
        except OSError as exc:
            logger.warning("rate_limiter.storage_write_failed", path=str(path), error=str(exc))

    def _window(self, identifier: str, window_seconds: int) -> List[float]:
        now = time.time()
        return [ts for ts in self._load(identifier) if now - ts < window_seconds]

    def check_limit(
        self,
        identifier: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> bool:
        """
        Record a request for the identifier if it is under the limit.

        Args:
            identifier: Client identifier (user, API key hash or IP)
            max_requests: Override for the configured request limit
            window_seconds: Override for the configured window

        Returns:
            True if the request is allowed, False if the limit is reached.
            A denied request is not recorded.
        """
        if not self.enabled:
            return True

        limit = max_requests or self.max_requests
        window = window_seconds or self.window_seconds
        timestamps = self._window(identifier, window)

        if len(timestamps) >= limit:
            self._save(identifier, timestamps)
            return False

        timestamps.append(time.time())
        self._save(identifier, timestamps)
        return True

    def get_request_count(self, identifier: str, window_seconds: Optional[int] = None) -> int:
        if not self.enabled:
            return 0
        return len(self._window(identifier, window_seconds or self.window_seconds))

    def get_remaining_requests(
        self,
        identifier: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> int:
        limit = max_requests or self.max_requests
        return max(0, limit - self.get_request_count(identifier, window_seconds))

    def get_reset_time(self, identifier: str, window_seconds: Optional[int] = None) -> int:
        """Seconds until the oldest request in the window expires, 0 if none."""
        if not self.enabled:
            return 0
        window = window_seconds or self.window_seconds
        timestamps = self._window(identifier, window)
        if not timestamps:
            return 0
        return max(0, math.ceil(min(timestamps) + window - time.time()))

    def reset(self, identifier: str) -> bool:
        """Forget all recorded requests for an identifier."""
        path = self._path(identifier)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def cleanup(self, older_than_seconds: int = 3600) -> int:
        """
        Delete records that have not been written for a while.

        Args:
            older_than_seconds: Minimum age of the file's last modification

        Returns:
            Number of records removed
        """
        if not self.storage_dir.exists():
            return 0
        cutoff = time.time() - older_than_seconds
        removed = 0
        for path in self.storage_dir.glob("ratelimit_*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("rate_limiter.cleanup_failed", path=str(path), error=str(exc))
        return removed

    def get_headers(self, identifier: str) -> Dict[str, str]:
        if not self.enabled:
            return {}
        return {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(self.get_remaining_requests(identifier)),
            "X-RateLimit-Reset": str(int(time.time()) + self.get_reset_time(identifier)),
            "X-RateLimit-Window": str(self.window_seconds),
        }

    def exceeded_payload(self, identifier: str) -> Dict[str, object]:
        """Body of a 429 response for an identifier that is over its limit."""
        retry_after = self.get_reset_time(identifier)
        reset_at = datetime.fromtimestamp(time.time() + retry_after).strftime("%Y-%m-%d %H:%M:%S")
        return {
            "error": "Rate limit exceeded",
            "message": f"Too many requests. Please try again in {retry_after} seconds.",
            "retry_after": retry_after,
            "reset_at": reset_at,
            "limit": self.max_requests,
            "window": self.window_seconds,
        }
