"""Tests for the TTL state cache."""

from datetime import datetime, timedelta, timezone

import pytest

from shoppulse.recommender.cache import StateCache


class Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 12, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = StateCache("test", ttl_seconds=60, clock=clock)
    cache.set("a", 1)

    clock.now += timedelta(seconds=59)
    assert cache.get("a") == 1

    clock.now += timedelta(seconds=1)
    assert cache.get("a") is None
    assert "a" not in cache


def test_no_ttl_never_expires():
    clock = Clock()
    cache = StateCache("test", clock=clock)
    cache.set("a", 1)
    clock.now += timedelta(days=365)
    assert cache.values() == [1]


def test_iteration_skips_expired_entries():
    clock = Clock()
    cache = StateCache("test", ttl_seconds=10, clock=clock)
    cache.set("old", 1)
    clock.now += timedelta(seconds=5)
    cache.set("new", 2)
    clock.now += timedelta(seconds=6)

    assert list(cache) == ["new"]
    assert len(cache) == 1


def test_lock_is_per_key():
    cache = StateCache("test")
    assert cache.lock("a") is cache.lock("a")
    assert cache.lock("a") is not cache.lock("b")


def test_expired_entry_releases_its_lock():
    clock = Clock()
    cache = StateCache("test", ttl_seconds=10, clock=clock)
    cache.set("session", 1)
    first = cache.lock("session")

    clock.now += timedelta(seconds=10)
    assert cache.get("session") is None
    assert cache.lock("session") is not first


def test_delete_releases_idle_lock():
    cache = StateCache("test")
    cache.set("a", 1)
    first = cache.lock("a")

    cache.delete("a")

    assert "a" not in cache
    assert cache.lock("a") is not first


@pytest.mark.asyncio
async def test_held_lock_survives_delete():
    cache = StateCache("test")
    cache.set("a", 1)
    lock = cache.lock("a")

    async with lock:
        cache.delete("a")
        assert cache.lock("a") is lock


def test_prune_drops_expired_entries_and_idle_locks():
    clock = Clock()
    cache = StateCache("test", ttl_seconds=10, clock=clock)
    for key in ("a", "b"):
        cache.set(key, key)
        cache.lock(key)
    cache.lock("never-set")
    clock.now += timedelta(seconds=5)
    cache.set("b", "b")
    clock.now += timedelta(seconds=6)

    assert cache.prune() == 1
    assert list(cache) == ["b"]
    assert set(cache._locks) == {"b"}
