from __future__ import annotations

from app.services.notification_cache import MISS, NotificationCache


class _Ticker:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    ticker = _Ticker()
    cache = NotificationCache(ttl_seconds=30, clock=ticker)
    cache.set("unread:u1", 3)

    ticker.now += 29
    assert cache.get("unread:u1") == 3

    ticker.now += 1
    assert cache.get("unread:u1") is MISS
    assert cache.stats()["size"] == 0


def test_invalidate_for_user_drops_every_kind_for_that_user_only() -> None:
    cache = NotificationCache(clock=_Ticker())
    cache.set(NotificationCache.key("unread", "u1"), 2)
    cache.set(NotificationCache.key("list", "u1", 50, 0, False, "all"), ["a"])
    cache.set(NotificationCache.key("unread", "u10"), 7)
    cache.set(NotificationCache.key("unread", "u2"), 1)

    assert cache.invalidate_for_user("u1") == 2
    assert cache.get("unread:u1") is MISS
    assert cache.get("unread:u10") == 7
    assert cache.get("unread:u2") == 1


def test_sweep_removes_only_expired_entries() -> None:
    ticker = _Ticker()
    cache = NotificationCache(ttl_seconds=30, clock=ticker)
    cache.set("unread:old", 1)
    ticker.now += 20
    cache.set("unread:new", 2)
    ticker.now += 15

    assert cache.sweep() == 1
    assert cache.get("unread:new") == 2


def test_get_or_load_reads_through_and_counts_hits() -> None:
    cache = NotificationCache(clock=_Ticker())
    calls: list[int] = []

    def loader() -> int:
        calls.append(1)
        return 5

    assert cache.get_or_load("unread:u1", loader) == 5
    assert cache.get_or_load("unread:u1", loader) == 5
    assert len(calls) == 1
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 50.0


def test_get_or_load_falls_back_to_loader_when_cache_breaks(monkeypatch) -> None:
    cache = NotificationCache(clock=_Ticker())

    def broken(_key):  # noqa: ANN001
        raise RuntimeError("cache corrupted")

    monkeypatch.setattr(cache, "get", broken)
    assert cache.get_or_load("unread:u1", lambda: 9) == 9


def test_falsy_values_are_cached() -> None:
    cache = NotificationCache(clock=_Ticker())
    calls: list[int] = []

    def loader() -> int:
        calls.append(1)
        return 0

    cache.get_or_load("unread:u1", loader)
    cache.get_or_load("unread:u1", loader)
    assert len(calls) == 1


def test_invalidation_during_load_is_not_overwritten() -> None:
    cache = NotificationCache(clock=_Ticker())
    key = NotificationCache.key("unread", "u1")

    def loader() -> int:
        # A mutation commits while the count is being read.
        cache.invalidate_for_user("u1")
        return 0

    assert cache.get_or_load(key, loader) == 0
    assert cache.get(key) is MISS
    assert cache.get_or_load(key, lambda: 1) == 1
    assert cache.get(key) == 1


def test_clear_during_load_is_not_overwritten() -> None:
    cache = NotificationCache(clock=_Ticker())

    def loader() -> int:
        cache.clear()
        return 4

    cache.get_or_load("unread:u2", loader)
    assert cache.get("unread:u2") is MISS
