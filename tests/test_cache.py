"""
Property-based tests for the local TTL cache.

Covers TTL expiry, oldest-first eviction and snapshot persistence.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from biolink.sync.cache import LocalCache
from biolink.sync.storage import MemoryLocalStorage

from sync_helpers import VirtualClock


json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=10,
)


@settings(max_examples=50)
@given(
    st.text(min_size=1, max_size=30),
    json_values,
    st.floats(min_value=0.5, max_value=10_000),
)
def test_ttl_expiry_property(key: str, value, ttl: float):
    """
    A value is returned right after it is set, and never once its TTL elapsed.

    After expiry the entry is still reachable with peek() as a stale fallback.
    """
    clock = VirtualClock()
    cache = LocalCache(default_ttl=60, clock=clock)

    cache.set(key, value, ttl=ttl)
    assert cache.get(key) == value
    assert cache.is_valid(key)

    clock.advance(ttl + 1)
    assert cache.get(key) is None
    assert not cache.is_valid(key)
    assert cache.peek(key) == value


@settings(max_examples=50)
@given(st.integers(min_value=1, max_value=40), st.integers(min_value=1, max_value=120))
def test_capacity_and_newest_entry_property(max_entries: int, inserts: int):
    """
    The cache never holds more than max_entries, and the entry just written
    always survives the eviction it triggers.
    """
    clock = VirtualClock()
    cache = LocalCache(max_entries=max_entries, default_ttl=3600, clock=clock)

    for i in range(inserts):
        clock.advance(1)
        cache.set(f"doc:{i}", {"n": i})
        assert len(cache) <= max_entries
        assert cache.get(f"doc:{i}") == {"n": i}


def test_eviction_frees_at_least_twenty_percent_oldest_first():
    clock = VirtualClock()
    cache = LocalCache(max_entries=10, default_ttl=3600, clock=clock)

    for i in range(11):
        clock.advance(1)
        cache.set(f"doc:{i}", i)

    # 11 entries exceed the limit; freeing 20% of capacity leaves 8
    assert len(cache) == 8
    for i in range(3):
        assert f"doc:{i}" not in cache
    for i in range(3, 11):
        assert cache.get(f"doc:{i}") == i
    assert cache.get_metrics()["evictions"] == 3


def test_expired_entries_are_evicted_before_valid_ones():
    clock = VirtualClock()
    cache = LocalCache(max_entries=5, default_ttl=3600, clock=clock)

    for i in range(4):
        cache.set(f"fresh:{i}", i)
        clock.advance(1)
    cache.set("stale:0", "old", ttl=1)
    clock.advance(5)

    cache.set("fresh:4", 4)

    assert "stale:0" not in cache
    # Only the expired entry and the oldest valid one had to go
    assert "fresh:0" not in cache
    assert all(f"fresh:{i}" in cache for i in range(1, 5))


def test_pinned_keys_are_never_evicted():
    clock = VirtualClock()
    cache = LocalCache(max_entries=3, default_ttl=3600, clock=clock,
                       pinned=lambda key: key.startswith("keep:"))

    cache.set("keep:1", "mine", ttl=1)
    for name in "abcde":
        clock.advance(1)
        cache.set(f"doc:{name}", name)

    # Expired and oldest, but pinned
    assert cache.peek("keep:1") == "mine"
    assert len(cache) <= 3
    assert "doc:e" in cache


def test_invalidate_exact_key_and_prefix():
    cache = LocalCache(clock=VirtualClock())
    cache.set("links:a", 1)
    cache.set("links:query:abc", [1])
    cache.set("links:query:def", [2])
    cache.set("profiles:query:abc", [3])

    assert cache.invalidate("links:a") is True
    assert cache.invalidate("links:a") is False
    assert cache.invalidate_prefix("links:query:") == 2
    assert cache.keys() == ["profiles:query:abc"]


def test_persist_writes_only_valid_entries_and_restore_skips_expired():
    clock = VirtualClock()
    storage = MemoryLocalStorage()
    cache = LocalCache(storage=storage, default_ttl=100, clock=clock)

    cache.set("profiles:short", {"v": 1}, ttl=10)
    cache.set("profiles:long", {"v": 2}, ttl=100)
    cache.set("profiles:medium", {"v": 3}, ttl=50)
    clock.advance(20)

    assert cache.persist() is True
    assert "data_cache" in storage.keys()

    # Later restart: the medium entry has expired meanwhile
    clock.advance(40)
    restored_cache = LocalCache(storage=storage, default_ttl=100, clock=clock)
    assert restored_cache.restore() == 1
    assert restored_cache.get("profiles:long") == {"v": 2}
    assert "profiles:short" not in restored_cache
    assert "profiles:medium" not in restored_cache


def test_restore_keeps_original_insertion_time():
    clock = VirtualClock()
    storage = MemoryLocalStorage()
    cache = LocalCache(storage=storage, default_ttl=100, clock=clock)
    cache.set("profiles:a", "x")
    cache.persist()

    clock.advance(60)
    restored = LocalCache(storage=storage, default_ttl=100, clock=clock)
    restored.restore()
    assert restored.get("profiles:a") == "x"

    clock.advance(40)
    assert restored.get("profiles:a") is None


def test_unreadable_snapshot_is_discarded(caplog):
    storage = MemoryLocalStorage({"data_cache": "{not json"})
    cache = LocalCache(storage=storage, clock=VirtualClock())

    assert cache.restore() == 0
    assert len(cache) == 0
    assert "unreadable cache snapshot" in caplog.text


def test_persist_failure_is_logged_not_raised(caplog):
    class FullStorage(MemoryLocalStorage):
        def set_item(self, key, value):
            raise OSError("quota exceeded")

    cache = LocalCache(storage=FullStorage(), clock=VirtualClock())
    cache.set("profiles:a", 1)

    assert cache.persist() is False
    assert "Failed to persist cache" in caplog.text


def test_persist_without_storage_is_a_no_op():
    cache = LocalCache(clock=VirtualClock())
    cache.set("profiles:a", 1)
    assert cache.persist() is False
    assert cache.restore() == 0
