"""Tests for the in-memory remote store and the remote store adapter."""

import asyncio

import pytest

from biolink.sync.circuit_breaker import CircuitBreaker, CircuitState
from biolink.sync.exceptions import (
    CircuitOpenError, InvalidOperationError, NotFoundError, UnavailableError
)
from biolink.sync.memory_store import InMemoryRemoteStore
from biolink.sync.models import Filter, OrderBy, RemoteSnapshot
from biolink.sync.remote import RemoteStoreAdapter

from sync_helpers import VirtualClock


class TestInMemoryRemoteStore:

    def test_writes_stamp_server_timestamps(self, clock, remote_store):
        async def run_test():
            stored = await remote_store.write_one("profiles", "p1", {"username": "ada"})
            assert stored["created_at"] == clock.now
            assert stored["updated_at"] == clock.now

            created = clock.now
            clock.advance(10)
            stored = await remote_store.update_one("profiles", "p1", {"bio": "hi"})
            assert stored["created_at"] == created
            assert stored["updated_at"] == created + 10
            assert stored["username"] == "ada"

        asyncio.run(run_test())

    def test_set_without_merge_replaces_document(self, remote_store):
        async def run_test():
            await remote_store.write_one("profiles", "p1", {"a": 1, "b": 2})
            await remote_store.write_one("profiles", "p1", {"a": 3})
            doc = remote_store.document("profiles", "p1")
            assert doc["a"] == 3
            assert "b" not in doc

        asyncio.run(run_test())

    def test_update_of_missing_document_raises_not_found(self, remote_store):
        with pytest.raises(NotFoundError):
            asyncio.run(remote_store.update_one("profiles", "missing", {"a": 1}))

    def test_offline_store_raises_unavailable(self, remote_store):
        remote_store.online = False
        with pytest.raises(UnavailableError):
            asyncio.run(remote_store.read_one("profiles", "p1"))

    def test_query_filters_orders_and_limits(self, remote_store):
        for doc_id, position, active in (("l1", 2, True), ("l2", 0, True), ("l3", 1, False),
                                         ("l4", 3, True)):
            remote_store.server_write("links", doc_id,
                                      {"profile_id": "p1", "position": position, "is_active": active})
        remote_store.server_write("links", "other", {"profile_id": "p2", "position": 0})
        remote_store.server_write("links", "unordered", {"profile_id": "p1", "is_active": True})

        results = asyncio.run(remote_store.query_many(
            "links",
            [Filter("profile_id", "==", "p1"), Filter("is_active", "==", True)],
            order_by=OrderBy("position"),
            limit=2,
        ))

        assert [r["id"] for r in results] == ["l2", "l1"]

    def test_range_filter_on_mixed_types_does_not_match(self, remote_store):
        remote_store.server_write("links", "a", {"clicks": "many"})
        remote_store.server_write("links", "b", {"clicks": 5})
        results = asyncio.run(remote_store.query_many("links", [Filter("clicks", ">", 1)]))
        assert [r["id"] for r in results] == ["b"]

    def test_batch_is_all_or_nothing(self, remote_store):
        remote_store.server_write("links", "l1", {"position": 0})
        operations = [
            {"kind": "update", "collection": "links", "doc_id": "l1", "data": {"position": 5}},
            {"kind": "update", "collection": "links", "doc_id": "gone", "data": {"position": 6}},
        ]

        with pytest.raises(NotFoundError):
            asyncio.run(remote_store.batch_write(operations))
        assert remote_store.document("links", "l1")["position"] == 0

    def test_batch_rejects_oversized_request(self, clock):
        store = InMemoryRemoteStore(clock=clock, max_batch_operations=2)
        operations = [{"kind": "delete", "collection": "links", "doc_id": str(i)} for i in range(3)]
        with pytest.raises(InvalidOperationError):
            asyncio.run(store.batch_write(operations))

    def test_listener_gets_initial_snapshot_and_changes(self, remote_store):
        received = []
        unsubscribe = remote_store.listen("profiles", "p1", received.append)

        assert len(received) == 1
        assert received[0].exists is False

        remote_store.server_write("profiles", "p1", {"bio": "x"})
        remote_store.server_delete("profiles", "p1")
        assert [s.exists for s in received] == [False, True, False]
        assert received[1].data["bio"] == "x"

        unsubscribe()
        remote_store.server_write("profiles", "p1", {"bio": "y"})
        assert len(received) == 3
        assert remote_store.listener_count("profiles", "p1") == 0

    def test_fail_next_raises_queued_errors_in_order(self, remote_store):
        remote_store.fail_next(ConnectionError("reset"), times=2)

        async def run_test():
            for _ in range(2):
                with pytest.raises(ConnectionError):
                    await remote_store.read_one("profiles", "p1")
            assert await remote_store.read_one("profiles", "p1") is None

        asyncio.run(run_test())
        assert remote_store.calls == ["read_one"] * 3


class TestRemoteStoreAdapter:

    def test_timeout_becomes_unavailable(self):
        store = InMemoryRemoteStore(latency=0.2)
        adapter = RemoteStoreAdapter(store, timeout=0.01)

        with pytest.raises(UnavailableError) as exc_info:
            asyncio.run(adapter.read_one("profiles", "p1"))
        assert "timed out" in str(exc_info.value)

    @pytest.mark.parametrize("error", [ConnectionError("reset"), OSError("network down")])
    def test_transport_errors_become_unavailable(self, remote_store, error):
        adapter = RemoteStoreAdapter(remote_store)
        remote_store.fail_next(error)

        with pytest.raises(UnavailableError):
            asyncio.run(adapter.write_one("profiles", "p1", {"a": 1}))
        assert adapter.get_metrics()["failures"] == 1

    def test_not_found_passes_through(self, remote_store):
        adapter = RemoteStoreAdapter(remote_store)
        with pytest.raises(NotFoundError):
            asyncio.run(adapter.update_one("profiles", "missing", {"a": 1}))
        assert adapter.get_metrics()["failures"] == 0

    def test_results_are_returned_unchanged(self, remote_store):
        adapter = RemoteStoreAdapter(remote_store)

        async def run_test():
            stored = await adapter.write_one("profiles", "p1", {"a": 1})
            assert stored["a"] == 1
            assert (await adapter.read_one("profiles", "p1"))["a"] == 1
            await adapter.delete_one("profiles", "p1")
            assert await adapter.read_one("profiles", "p1") is None

        asyncio.run(run_test())

    def test_circuit_opens_and_recovers(self):
        clock = VirtualClock()
        store = InMemoryRemoteStore(clock=clock)
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, clock=clock)
        adapter = RemoteStoreAdapter(store, circuit_breaker=breaker)

        async def run_test():
            store.online = False
            for _ in range(2):
                with pytest.raises(UnavailableError):
                    await adapter.read_one("profiles", "p1")
            assert breaker.state == CircuitState.OPEN

            store.online = True
            with pytest.raises(CircuitOpenError):
                await adapter.read_one("profiles", "p1")
            assert store.calls == ["read_one", "read_one"]

            clock.advance(30.0)
            assert await adapter.read_one("profiles", "p1") is None
            assert breaker.state == CircuitState.CLOSED

        asyncio.run(run_test())

    def test_not_found_does_not_trip_the_circuit(self, remote_store):
        breaker = CircuitBreaker(failure_threshold=1)
        adapter = RemoteStoreAdapter(remote_store, circuit_breaker=breaker)

        with pytest.raises(NotFoundError):
            asyncio.run(adapter.update_one("profiles", "missing", {"a": 1}))
        assert breaker.state == CircuitState.CLOSED

    def test_listen_errors_reach_the_caller(self, remote_store):
        adapter = RemoteStoreAdapter(remote_store)
        changes, errors = [], []
        adapter.listen("profiles", "p1", changes.append, errors.append)

        remote_store.emit_error("profiles", "p1", ConnectionError("stream closed"))

        assert len(changes) == 1
        assert isinstance(changes[0], RemoteSnapshot)
        assert len(errors) == 1
