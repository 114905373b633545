"""Unit tests for the TTL result cache"""

from scrape_cache import ScrapeCache, make_key


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_hit_and_miss():
    cache = ScrapeCache(ttl_seconds=60, max_entries=5, clock=Clock())
    key = make_key("00000000000191", "2024", "1")
    assert cache.get(key) is None
    cache.set(key, {"subjectId": "00000000000191"})
    assert cache.get(key) == {"subjectId": "00000000000191"}
    assert make_key("00000000000191", 2024, None) == ("00000000000191", "2024", "")


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = ScrapeCache(ttl_seconds=60, max_entries=5, clock=clock)
    cache.set(("a", "", ""), 1)
    clock.now += 61
    assert cache.get(("a", "", "")) is None
    assert len(cache) == 0


def test_oldest_entry_is_evicted_at_capacity():
    cache = ScrapeCache(ttl_seconds=60, max_entries=2, clock=Clock())
    cache.set(("a", "", ""), 1)
    cache.set(("b", "", ""), 2)
    cache.set(("c", "", ""), 3)
    assert cache.get(("a", "", "")) is None
    assert len(cache) == 2


def test_access_reorders_without_extending_lifetime():
    clock = Clock()
    cache = ScrapeCache(ttl_seconds=60, max_entries=2, clock=clock)
    cache.set(("a", "", ""), 1)
    clock.now += 30
    cache.set(("b", "", ""), 2)
    # touching "a" moves it to the newest position, so "b" is evicted next
    assert cache.get(("a", "", "")) == 1
    cache.set(("c", "", ""), 3)
    assert cache.get(("b", "", "")) is None
    # but "a" still expires 60s after it was stored
    clock.now += 31
    assert cache.get(("a", "", "")) is None
    assert cache.get(("c", "", "")) == 3


def test_clear():
    cache = ScrapeCache()
    cache.set(("a", "", ""), 1)
    cache.clear()
    assert len(cache) == 0
