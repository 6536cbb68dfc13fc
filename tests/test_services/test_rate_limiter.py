# ABOUTME: Tests for the sliding-window rate limiter
# ABOUTME: Validates limit enforcement, window expiry, reset, headers and stale-record cleanup

import os
import time
from datetime import timedelta

import pytest
from freezegun import freeze_time

from tablegate.config import RateLimitConfig
from tablegate.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter(tmp_path):
    return RateLimiter(RateLimitConfig(max_requests=3, window_seconds=60, storage_dir=str(tmp_path / "rl")))


def test_allows_up_to_limit_then_denies(limiter):
    """The fourth request inside the window is denied and not recorded."""
    assert limiter.check_limit("ip:1.2.3.4")
    assert limiter.check_limit("ip:1.2.3.4")
    assert limiter.check_limit("ip:1.2.3.4")

    assert not limiter.check_limit("ip:1.2.3.4")
    assert limiter.get_request_count("ip:1.2.3.4") == 3
    assert limiter.get_remaining_requests("ip:1.2.3.4") == 0


def test_identifiers_are_independent(limiter):
    """Each identifier has its own window."""
    for _ in range(3):
        limiter.check_limit("user:alice")

    assert not limiter.check_limit("user:alice")
    assert limiter.check_limit("user:bob")


def test_window_slides(limiter):
    """Requests older than the window stop counting."""
    with freeze_time("2024-05-01 12:00:00") as frozen:
        for _ in range(3):
            assert limiter.check_limit("ip:10.0.0.1")
        assert not limiter.check_limit("ip:10.0.0.1")

        # Step 1: 59 seconds later the first requests still count
        frozen.tick(timedelta(seconds=59))
        assert not limiter.check_limit("ip:10.0.0.1")

        # Step 2: once 60 seconds have passed the window is empty again
        frozen.tick(timedelta(seconds=1))
        assert limiter.get_request_count("ip:10.0.0.1") == 0
        assert limiter.check_limit("ip:10.0.0.1")


def test_reset_time_counts_down_from_oldest_request(limiter):
    """Reset time is the seconds until the oldest request leaves the window."""
    with freeze_time("2024-05-01 12:00:00") as frozen:
        assert limiter.get_reset_time("ip:10.0.0.2") == 0

        limiter.check_limit("ip:10.0.0.2")
        frozen.tick(timedelta(seconds=20))
        limiter.check_limit("ip:10.0.0.2")

        assert limiter.get_reset_time("ip:10.0.0.2") == 40


def test_per_call_overrides(limiter):
    """max_requests and window_seconds can be overridden per check."""
    assert limiter.check_limit("api", max_requests=1)
    assert not limiter.check_limit("api", max_requests=1)
    assert limiter.check_limit("api", max_requests=5)


def test_reset_forgets_identifier(limiter):
    """reset clears recorded requests and reports whether anything was stored."""
    for _ in range(3):
        limiter.check_limit("ip:9.9.9.9")

    assert limiter.reset("ip:9.9.9.9") is True
    assert limiter.check_limit("ip:9.9.9.9")
    assert limiter.reset("ip:never-seen") is False


def test_storage_filenames_do_not_leak_identifier(limiter):
    """Identifiers are hashed into file names."""
    limiter.check_limit("apikey:super-secret")

    names = [p.name for p in limiter.storage_dir.iterdir()]
    assert len(names) == 1
    assert names[0].startswith("ratelimit_")
    assert "super-secret" not in names[0]


def test_corrupt_storage_is_treated_as_empty(limiter):
    """An unreadable record does not block the client."""
    limiter.check_limit("ip:5.5.5.5")
    limiter._path("ip:5.5.5.5").write_text("{not json", encoding="utf-8")

    assert limiter.get_request_count("ip:5.5.5.5") == 0
    assert limiter.check_limit("ip:5.5.5.5")


def test_headers(limiter):
    """Headers describe the limit, remaining requests, reset and window."""
    with freeze_time("2024-05-01 12:00:00"):
        limiter.check_limit("ip:1.1.1.1")
        headers = limiter.get_headers("ip:1.1.1.1")

        assert headers["X-RateLimit-Limit"] == "3"
        assert headers["X-RateLimit-Remaining"] == "2"
        assert headers["X-RateLimit-Window"] == "60"
        assert headers["X-RateLimit-Reset"] == str(int(time.time()) + 60)


def test_exceeded_payload(limiter):
    """The 429 body carries retry information."""
    with freeze_time("2024-05-01 12:00:00"):
        for _ in range(3):
            limiter.check_limit("ip:2.2.2.2")
        payload = limiter.exceeded_payload("ip:2.2.2.2")

    assert payload["error"] == "Rate limit exceeded"
    assert payload["retry_after"] == 60
    assert payload["message"] == "Too many requests. Please try again in 60 seconds."
    assert payload["limit"] == 3
    assert payload["window"] == 60


def test_disabled_limiter_allows_everything(tmp_path):
    """A disabled limiter never denies and adds no headers."""
    limiter = RateLimiter(RateLimitConfig(enabled=False, max_requests=1, storage_dir=str(tmp_path / "off")))

    assert all(limiter.check_limit("ip:x") for _ in range(5))
    assert limiter.get_headers("ip:x") == {}
    assert not (tmp_path / "off").exists()


def test_cleanup_removes_stale_records(limiter):
    """Only records untouched for longer than the cutoff are removed."""
    limiter.check_limit("ip:old")
    limiter.check_limit("ip:new")
    old_path = limiter._path("ip:old")
    stale = time.time() - 7200
    os.utime(old_path, (stale, stale))

    assert limiter.cleanup(3600) == 1
    assert not old_path.exists()
    assert limiter._path("ip:new").exists()
