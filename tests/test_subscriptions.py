"""Tests for the subscription registry and the connectivity monitor."""

import asyncio

import pytest

from biolink.sync.cache import LocalCache
from biolink.sync.connectivity import ConnectivityMonitor
from biolink.sync.exceptions import InvalidOperationError
from biolink.sync.models import ChangeSource
from biolink.sync.remote import RemoteStoreAdapter
from biolink.sync.subscriptions import SubscriptionRegistry


@pytest.fixture
def cache(clock):
    return LocalCache(clock=clock)


@pytest.fixture
def registry(remote_store, cache, clock):
    return SubscriptionRegistry(RemoteStoreAdapter(remote_store), cache, clock=clock)


class TestSubscriptionRegistry:

    def test_subscribers_share_one_remote_listener(self, remote_store, registry):
        first, second = [], []
        remote_store.server_write("profiles", "p1", {"bio": "a"})

        registry.subscribe("profiles:p1", first.append)
        registry.subscribe("profiles:p1", second.append)

        assert remote_store.listener_count("profiles", "p1") == 1
        assert registry.listener_count("profiles:p1") == 2
        # Only the subscriber that opened the listener sees the initial snapshot
        assert len(first) == 1 and first[0].data["bio"] == "a"
        assert second == []

        remote_store.server_write("profiles", "p1", {"bio": "b"})
        assert [e.data["bio"] for e in first] == ["a", "b"]
        assert [e.data["bio"] for e in second] == ["b"]
        assert second[0].source == ChangeSource.REMOTE

    def test_push_refreshes_cache_and_drops_cached_queries(self, remote_store, registry, cache):
        registry.subscribe("profiles:p1", lambda event: None)
        cache.set("profiles:query:abc", [{"id": "p1"}])

        remote_store.server_write("profiles", "p1", {"bio": "fresh"})

        assert cache.get("profiles:p1")["bio"] == "fresh"
        assert "profiles:query:abc" not in cache

        remote_store.server_delete("profiles", "p1")
        assert "profiles:p1" not in cache

    def test_pushed_data_is_not_shared_with_cache(self, remote_store, registry, cache):
        received = []
        registry.subscribe("profiles:p1", received.append)

        remote_store.server_write("profiles", "p1", {"bio": "fresh"})
        received[-1].data["bio"] = "edited by subscriber"

        assert cache.get("profiles:p1")["bio"] == "fresh"

    def test_last_unsubscribe_closes_remote_listener(self, remote_store, registry):
        unsubscribe_a = registry.subscribe("profiles:p1", lambda event: None)
        unsubscribe_b = registry.subscribe("profiles:p1", lambda event: None)

        unsubscribe_a()
        assert registry.has_remote_handle("profiles:p1")
        unsubscribe_b()
        assert not registry.has_remote_handle("profiles:p1")
        assert remote_store.listener_count("profiles", "p1") == 0

        # Calling it twice is harmless
        unsubscribe_b()
        assert registry.subscriber_count() == 0

    def test_callback_never_runs_after_unsubscribe(self, remote_store, registry):
        received = []
        unsubscribe_second = None

        def first(event):
            received.append("first")
            if unsubscribe_second is not None:
                unsubscribe_second()

        registry.subscribe("profiles:p1", first)
        unsubscribe_second = registry.subscribe("profiles:p1", lambda event: received.append("second"))
        received.clear()

        remote_store.server_write("profiles", "p1", {"bio": "x"})
        assert received == ["first"]

    def test_failing_callback_does_not_block_others(self, remote_store, registry, caplog):
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        registry.subscribe("profiles:p1", broken)
        registry.subscribe("profiles:p1", received.append)
        remote_store.server_write("profiles", "p1", {"bio": "x"})

        assert len(received) == 1
        assert "subscriber bug" in caplog.text

    def test_push_filter_discards_pushes(self, remote_store, cache, clock):
        registry = SubscriptionRegistry(
            RemoteStoreAdapter(remote_store), cache,
            push_filter=lambda key, snapshot: snapshot.data is None or snapshot.data.get("keep", False),
            clock=clock,
        )
        received = []
        registry.subscribe("profiles:p1", received.append)
        remote_store.server_write("profiles", "p1", {"keep": False})
        remote_store.server_write("profiles", "p1", {"keep": True})

        assert [e.data for e in received if e.data] == [remote_store.document("profiles", "p1")]
        assert registry.get_metrics()["discarded_pushes"] == 1

    def test_listen_failure_reports_error_and_keeps_subscription(self, remote_store, cache, clock):
        errors = []

        class BrokenAdapter(RemoteStoreAdapter):
            def listen(self, collection, doc_id, on_change, on_error=None):
                raise ConnectionError("no stream")

        registry = SubscriptionRegistry(BrokenAdapter(remote_store), cache,
                                        on_listen_error=lambda key, e: errors.append((key, e)),
                                        clock=clock)
        received = []
        registry.subscribe("profiles:p1", received.append)

        assert errors and errors[0][0] == "profiles:p1"
        assert not registry.has_remote_handle("profiles:p1")
        registry.notify("profiles:p1", {"bio": "local"})
        assert received[0].source == ChangeSource.LOCAL

    def test_listener_errors_are_forwarded(self, remote_store, cache, clock):
        errors = []
        registry = SubscriptionRegistry(RemoteStoreAdapter(remote_store), cache,
                                        on_listen_error=lambda key, e: errors.append(key),
                                        clock=clock)
        registry.subscribe("profiles:p1", lambda event: None)

        remote_store.emit_error("profiles", "p1", ConnectionError("stream closed"))
        assert errors == ["profiles:p1"]
        assert registry.get_metrics()["listen_errors"] == 1

    def test_close_all_detaches_everything(self, remote_store, registry):
        received = []
        registry.subscribe("profiles:p1", received.append)
        registry.subscribe("links:l1", received.append)
        received.clear()

        registry.close_all()
        remote_store.server_write("profiles", "p1", {"bio": "x"})

        assert received == []
        assert registry.remote_listener_count() == 0
        assert remote_store.listener_count("links", "l1") == 0

    def test_invalid_key_is_rejected(self, registry):
        with pytest.raises(InvalidOperationError):
            registry.subscribe("no-collection", lambda event: None)


class TestConnectivityMonitor:

    def test_listeners_run_only_on_transitions(self):
        monitor = ConnectivityMonitor(initial_online=True)
        changes = []
        remove = monitor.add_listener(changes.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)
        assert changes == [False, True]

        remove()
        monitor.set_online(False)
        assert changes == [False, True]

    def test_probe_drives_state(self):
        async def run_test():
            results = [False]

            async def probe():
                return results[0]

            monitor = ConnectivityMonitor(initial_online=True, probe=probe, probe_interval=0.01)
            monitor.start()
            await asyncio.sleep(0.05)
            assert monitor.is_online is False

            results[0] = True
            await asyncio.sleep(0.05)
            assert monitor.is_online is True
            await monitor.stop()

        asyncio.run(run_test())

    def test_failing_probe_means_offline(self):
        async def run_test():
            async def probe():
                raise OSError("dns failure")

            monitor = ConnectivityMonitor(initial_online=True, probe=probe, probe_interval=0.01)
            monitor.start()
            await asyncio.sleep(0.03)
            assert monitor.is_online is False
            await monitor.stop()

        asyncio.run(run_test())
