"""Data sync manager: the single entry point for reads, writes and subscriptions."""

import asyncio
import copy
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from .cache import LocalCache
from .circuit_breaker import CircuitBreaker
from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .exceptions import (
    InvalidOperationError, NotFoundError, RetryExhaustedError, SyncError, UnavailableError
)
from .interfaces import LocalStorage, RemoteStore, Unsubscribe
from .logging_config import get_logger, log_sync_event
from .models import (
    ChangeEvent, DocumentState, DrainReport, Filter, Increment, Operation, OrderBy,
    QueueItem, RemoteSnapshot, WriteOperation, apply_fields, make_key, parse_key,
    query_key, query_prefix
)
from .remote import RemoteStoreAdapter
from .retry import RetryPolicy
from .storage import MemoryLocalStorage
from .subscriptions import SubscriptionRegistry
from .sync_queue import SyncQueue


logger = get_logger(__name__)

# Errors surfaced to error listeners and to sync_immediately callers
SURFACED_ERRORS = (RetryExhaustedError, NotFoundError, InvalidOperationError)


@dataclass
class _PendingWrite:
    item_id: str
    staged_at: float
    operation: Operation


# key, local value, deleted
LocalChange = Tuple[str, Optional[Dict[str, Any]], bool]


class DataSyncManager:
    """Offline-first access to remote documents.

    Reads are served from the local cache when possible, writes are applied
    to the cache immediately and queued for the remote store, and real-time
    subscriptions keep the cache fresh. Construct one manager per process,
    call :meth:`start` once and :meth:`destroy` on shutdown.
    """

    def __init__(self,
                 remote_store: RemoteStore,
                 local_storage: Optional[LocalStorage] = None,
                 config: Optional[SyncConfig] = None,
                 connectivity: Optional[ConnectivityMonitor] = None,
                 clock: Callable[[], float] = time.time):
        """Initialize the manager.

        Args:
            remote_store: Backend document store
            local_storage: Durable store for cache and queue snapshots
            config: Sync settings (defaults apply when omitted)
            connectivity: Online/offline signal
            clock: Time source in seconds, shared by every component
        """
        self._config = config or SyncConfig()
        self._config.validate()
        self._clock = clock
        self._storage = local_storage if local_storage is not None else MemoryLocalStorage()

        self._cache = LocalCache(
            storage=self._storage,
            max_entries=self._config.cache_max_entries,
            default_ttl=self._config.cache_ttl_seconds,
            eviction_ratio=self._config.eviction_ratio,
            storage_key=self._config.cache_storage_key,
            clock=clock,
            pinned=self._has_pending_write,
        )
        self._queue = SyncQueue(
            retry_policy=RetryPolicy.from_config(self._config),
            storage=self._storage,
            storage_key=self._config.queue_storage_key,
            clock=clock,
        )

        circuit_breaker = None
        if self._config.enable_circuit_breaker:
            circuit_breaker = CircuitBreaker(
                failure_threshold=self._config.circuit_failure_threshold,
                recovery_timeout=self._config.circuit_recovery_timeout_seconds,
                name="remote_store",
                clock=clock,
            )
        self._remote = RemoteStoreAdapter(
            remote_store, timeout=self._config.remote_timeout_seconds,
            circuit_breaker=circuit_breaker
        )
        self._connectivity = connectivity or ConnectivityMonitor()
        self._subscriptions = SubscriptionRegistry(
            self._remote, self._cache,
            push_filter=self._accept_push,
            on_listen_error=self._on_listen_error,
            clock=clock,
        )

        self._pending: Dict[str, _PendingWrite] = {}
        self._synced: Set[str] = set()
        self._error_listeners: List[Callable[[SyncError], None]] = []

        # Background tasks
        self._sync_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._drain_again = False
        self._remove_connectivity_listener: Optional[Callable[[], None]] = None

        self._started = False
        self._destroyed = False

    # Lifecycle

    async def start(self) -> None:
        """Restore persisted state and start background syncing. Runs once."""
        if self._started:
            logger.warning("DataSyncManager.start() called more than once; ignoring")
            return
        self._started = True

        restored_items = self._queue.restore()
        for item in self._queue.items():
            self._track_pending(item)
        restored_entries = self._cache.restore()

        self._remove_connectivity_listener = self._connectivity.add_listener(
            self._on_connectivity_change
        )
        self._connectivity.start()
        self._sync_task = asyncio.create_task(self._periodic_sync())
        logger.info(
            f"Sync manager started ({restored_entries} cached entries, "
            f"{restored_items} queued mutations restored)"
        )

        if self._connectivity.is_online and len(self._queue):
            self._schedule_drain()

    async def destroy(self) -> None:
        """Flush queued writes when possible, persist state and close listeners."""
        if self._destroyed:
            return
        self._destroyed = True

        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

        if self._remove_connectivity_listener is not None:
            self._remove_connectivity_listener()
            self._remove_connectivity_listener = None
        await self._connectivity.stop()

        if self._drain_task is not None and not self._drain_task.done():
            self._drain_again = False
            await self._drain_task
        if self._connectivity.is_online and len(self._queue):
            await self.sync_now()

        self._subscriptions.close_all()
        self._cache.persist()
        self._queue.persist()
        logger.info("Sync manager destroyed")

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def cache(self) -> LocalCache:
        return self._cache

    @property
    def queue(self) -> SyncQueue:
        return self._queue

    @property
    def connectivity(self) -> ConnectivityMonitor:
        return self._connectivity

    # Reads

    async def get(self, key: str, force_refresh: bool = False,
                  fallback_to_cache: bool = True) -> Optional[Dict[str, Any]]:
        """Return a copy of a document, from the cache when fresh, otherwise from the remote.

        Raises:
            UnavailableError: Remote unreachable and no cached copy to fall back on
        """
        collection, doc_id = parse_key(key)

        pending = self._pending.get(key)
        if pending is not None:
            if pending.operation == Operation.DELETE:
                return None
            local = self._cache.peek(key)
            if local is not None:
                return copy.deepcopy(local)

        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                return copy.deepcopy(cached)

        if not self._connectivity.is_online:
            return self._fallback(key, fallback_to_cache, UnavailableError("get", "device is offline"))

        try:
            document = await self._remote.read_one(collection, doc_id)
        except UnavailableError as e:
            return self._fallback(key, fallback_to_cache, e)

        if key in self._pending:
            # Queued writes stay authoritative over what the remote has so far
            return copy.deepcopy(self._overlay_pending(key, document))

        if document is None:
            if fallback_to_cache:
                return copy.deepcopy(self._cache.peek(key))
            self._cache.invalidate(key)
            self._synced.discard(key)
            return None

        self._cache.set(key, document)
        self._synced.add(key)
        return copy.deepcopy(document)

    def _overlay_pending(self, key: str,
                         document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Local view of ``key``: the cached value, or queued writes replayed on ``document``."""
        pending = self._pending[key]
        if pending.operation == Operation.DELETE:
            return None
        local = self._cache.peek(key)
        if local is not None:
            return local

        local = document
        collection, doc_id = parse_key(key)
        for item in self._queue.pending_for(key):
            if item.operation == Operation.BATCH:
                ops = [(op["kind"], op.get("data"), op.get("merge", False))
                       for op in item.payload
                       if op["collection"] == collection and op["doc_id"] == doc_id]
            elif item.operation == Operation.DELETE:
                ops = [("delete", None, False)]
            elif item.operation == Operation.UPDATE:
                ops = [("update", item.payload, False)]
            else:
                ops = [("set", item.payload, item.merge)]

            for kind, data, merge in ops:
                if kind == "delete":
                    local = None
                elif kind == "update":
                    local = apply_fields(local, copy.deepcopy(data)) if local is not None else None
                else:
                    local = apply_fields(local if merge else None, copy.deepcopy(data))

        if local is not None:
            self._cache.set(key, local)
        return local

    def _fallback(self, key: str, fallback_to_cache: bool, error: UnavailableError):
        if fallback_to_cache:
            stale = self._cache.peek(key)
            if stale is not None:
                logger.warning(f"Serving cached copy of {key}: {error.message}", extra={"key": key})
                return copy.deepcopy(stale)
        raise error

    async def query(self, collection: str,
                    filters: Optional[Sequence[Union[Filter, Sequence[Any]]]] = None,
                    order_by: Union[OrderBy, str, Tuple[str, str], None] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Run a query against the remote, falling back to the last cached result.

        Raises:
            UnavailableError: Remote unreachable and the query was never cached
        """
        if not collection or ":" in collection:
            raise InvalidOperationError(f"invalid collection name {collection!r}")
        conditions = [Filter.coerce(f) for f in (filters or [])]
        order = OrderBy.coerce(order_by)
        if limit is not None and limit <= 0:
            raise InvalidOperationError(f"limit must be positive, got {limit}")
        cache_key = query_key(collection, conditions, order, limit)

        if self._connectivity.is_online:
            try:
                results = await self._remote.query_many(collection, conditions, order_by=order, limit=limit)
            except UnavailableError as e:
                return self._fallback(cache_key, True, e)
            self._cache.set(cache_key, results, ttl=self._config.query_ttl_seconds)
            return copy.deepcopy(results)

        return self._fallback(cache_key, True, UnavailableError("query", "device is offline"))

    # Writes

    async def set(self, key: str, value: Dict[str, Any], sync_immediately: bool = False,
                  merge: bool = False) -> bool:
        """Write a whole document (or merge fields into it with ``merge``)."""
        collection, doc_id = parse_key(key)
        self._require_fields(value, "set")

        base = self._cache.peek(key) if merge else None
        local = apply_fields(base, copy.deepcopy(value))
        item = QueueItem(Operation.SET, collection, doc_id, payload=copy.deepcopy(value),
                         staged_at=self._clock(), merge=merge)
        await self._stage(item, [(key, local, False)], sync_immediately)
        return True

    async def create(self, collection: str, doc_id: Optional[str], data: Dict[str, Any],
                     sync_immediately: bool = False) -> str:
        """Create a document, generating its id when ``doc_id`` is None. Returns the id."""
        doc_id = doc_id or uuid.uuid4().hex
        await self.set(make_key(collection, doc_id), data, sync_immediately=sync_immediately)
        return doc_id

    async def update(self, key: str, fields: Dict[str, Any], sync_immediately: bool = False,
                     check_exists: bool = False, upsert: bool = False) -> Optional[Dict[str, Any]]:
        """Change fields of an existing document.

        The document must exist remotely; otherwise the queued update is
        dropped with ``NotFoundError`` when it is sent. ``check_exists``
        verifies this up front and ``upsert`` creates the document instead.

        Raises:
            NotFoundError: ``check_exists`` and the document does not exist
            UnavailableError: ``check_exists`` while the remote is unreachable

        Returns:
            The locally known document after the update, or None if it was never cached
        """
        collection, doc_id = parse_key(key)
        self._require_fields(fields, "update")
        if upsert:
            await self.set(key, fields, sync_immediately=sync_immediately, merge=True)
            return copy.deepcopy(self._cache.peek(key))

        if check_exists:
            if not self._connectivity.is_online:
                raise UnavailableError("update", "cannot verify existence while offline")
            existing = await self._remote.read_one(collection, doc_id)
            if existing is None:
                raise NotFoundError(collection, doc_id)
            if key not in self._pending:
                self._cache.set(key, existing)
                self._synced.add(key)

        pending = self._pending.get(key)
        # An update queued behind a delete will fail, so the document stays deleted locally
        deleted = pending is not None and pending.operation == Operation.DELETE
        base = self._cache.peek(key)
        local = apply_fields(base, copy.deepcopy(fields)) if base is not None else None
        item = QueueItem(Operation.UPDATE, collection, doc_id, payload=copy.deepcopy(fields),
                         staged_at=self._clock())
        await self._stage(item, [(key, local, deleted)], sync_immediately)
        return copy.deepcopy(self._cache.peek(key))

    async def delete(self, key: str, sync_immediately: bool = False) -> None:
        """Delete a document. Deleting a missing document is not an error."""
        collection, doc_id = parse_key(key)
        item = QueueItem(Operation.DELETE, collection, doc_id, staged_at=self._clock())
        await self._stage(item, [(key, None, True)], sync_immediately)

    async def increment(self, key: str, field: str, amount: Union[int, float] = 1,
                        sync_immediately: bool = False) -> None:
        """Add ``amount`` to a numeric field, creating the document if needed.

        Concurrent increments from several clients all count.
        """
        collection, doc_id = parse_key(key)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise InvalidOperationError(f"increment amount must be a number, got {amount!r}")
        fields = {field: Increment(amount)}

        pending = self._pending.get(key)
        if pending is not None and pending.operation == Operation.DELETE:
            # Counting into a deleted document starts from zero
            base = {}
        else:
            base = self._cache.peek(key)
        local = apply_fields(base, fields) if base is not None else None
        item = QueueItem(Operation.INCREMENT, collection, doc_id, payload=fields,
                         staged_at=self._clock(), merge=True)
        await self._stage(item, [(key, local, False)], sync_immediately)

    async def batch_write(self, operations: Sequence[Union[WriteOperation, Dict[str, Any]]],
                          sync_immediately: bool = False) -> bool:
        """Apply several writes locally and send them as one atomic remote batch.

        Every operation is validated before anything is staged.

        Raises:
            InvalidOperationError: Malformed operation or batch too large
        """
        ops = [self._coerce_operation(op) for op in operations]
        if not ops:
            return True
        if len(ops) > self._config.max_batch_operations:
            raise InvalidOperationError(
                f"batch of {len(ops)} operations exceeds the limit of "
                f"{self._config.max_batch_operations}"
            )

        remote_ops: List[Dict[str, Any]] = []
        local: Dict[str, Tuple[Optional[Dict[str, Any]], bool]] = {}
        for op in ops:
            collection, doc_id = parse_key(op.key)
            if op.key in local:
                base, deleted = local[op.key]
                base = None if deleted else base
            else:
                base = self._cache.peek(op.key)

            if op.kind == "delete":
                remote_ops.append({"kind": "delete", "collection": collection, "doc_id": doc_id})
                local[op.key] = (None, True)
                continue

            if op.kind == "increment":
                data = {name: Increment(amount) for name, amount in op.data.items()}
                remote_ops.append({"kind": "set", "collection": collection, "doc_id": doc_id,
                                   "data": data, "merge": True})
                local[op.key] = (apply_fields(base, data) if base is not None else None, False)
            elif op.kind == "update":
                data = copy.deepcopy(op.data)
                remote_ops.append({"kind": "update", "collection": collection, "doc_id": doc_id,
                                   "data": data})
                local[op.key] = (apply_fields(base, data) if base is not None else None, False)
            else:
                data = copy.deepcopy(op.data)
                remote_ops.append({"kind": "set", "collection": collection, "doc_id": doc_id,
                                   "data": data, "merge": op.merge})
                local[op.key] = (apply_fields(base if op.merge else None, data), False)

        item = QueueItem(Operation.BATCH, None, None, payload=remote_ops, staged_at=self._clock())
        changes = [(key, value, deleted) for key, (value, deleted) in local.items()]
        await self._stage(item, changes, sync_immediately)
        return True

    def _coerce_operation(self, op: Union[WriteOperation, Dict[str, Any]]) -> WriteOperation:
        if isinstance(op, dict):
            try:
                op = WriteOperation(kind=op["kind"], key=op["key"], data=op.get("data"),
                                    merge=op.get("merge", False))
            except KeyError as e:
                raise InvalidOperationError(f"batch operation is missing {e}")
        if op.kind not in WriteOperation.KINDS:
            raise InvalidOperationError(f"unsupported batch operation {op.kind!r}", {"key": op.key})
        parse_key(op.key)
        if op.kind != "delete":
            self._require_fields(op.data, op.kind)
        if op.kind == "increment":
            for name, amount in op.data.items():
                if isinstance(amount, bool) or not isinstance(amount, (int, float)):
                    raise InvalidOperationError(
                        f"increment of {name!r} must be a number, got {amount!r}", {"key": op.key}
                    )
        return op

    @staticmethod
    def _require_fields(value: Any, operation: str) -> None:
        if not isinstance(value, dict) or not value:
            raise InvalidOperationError(f"{operation} needs a non-empty dict of fields")

    async def _stage(self, item: QueueItem, changes: List[LocalChange],
                     sync_immediately: bool) -> None:
        """Apply a mutation locally, queue it and start syncing it."""
        queued = self._queue.enqueue(item)
        # Pending keys are pinned in the cache, so record them before writing locally
        for key, value, deleted in changes:
            operation = Operation.DELETE if deleted else item.operation
            self._pending[key] = _PendingWrite(queued.item_id, item.staged_at, operation)
            self._synced.discard(key)

        for key, value, deleted in changes:
            if value is None:
                self._cache.invalidate(key)
            else:
                self._cache.set(key, value)
            self._cache.invalidate_prefix(query_prefix(parse_key(key)[0]))
        self._queue.persist()

        for key, value, deleted in changes:
            if value is not None or deleted:
                self._subscriptions.notify(key, copy.deepcopy(value))

        log_sync_event(logger, item.operation.value, item.key,
                       f"Staged {item.operation.value} for {item.key or f'{len(changes)} documents'}")

        if not self._connectivity.is_online:
            return
        if sync_immediately:
            report = await self._queue.attempt(queued, self._send)
            self._after_drain(report)
            self._queue.persist()
            for error in report.errors:
                if isinstance(error, SURFACED_ERRORS):
                    raise error
        elif self._config.auto_drain_on_enqueue:
            self._schedule_drain()

    def _has_pending_write(self, key: str) -> bool:
        return key in self._pending

    def _track_pending(self, item: QueueItem) -> None:
        if item.operation == Operation.BATCH:
            for op in item.payload or []:
                key = make_key(op["collection"], op["doc_id"])
                operation = Operation.DELETE if op["kind"] == "delete" else Operation.BATCH
                self._pending[key] = _PendingWrite(item.item_id, item.staged_at, operation)
        elif item.key is not None:
            self._pending[item.key] = _PendingWrite(item.item_id, item.staged_at, item.operation)

    # Syncing

    async def _send(self, item: QueueItem) -> None:
        """Perform the remote write for one queued item."""
        stored = None
        if item.operation in (Operation.SET, Operation.INCREMENT):
            stored = await self._remote.write_one(item.collection, item.doc_id, item.payload,
                                                  merge=item.merge)
        elif item.operation == Operation.UPDATE:
            stored = await self._remote.update_one(item.collection, item.doc_id, item.payload)
        elif item.operation == Operation.DELETE:
            await self._remote.delete_one(item.collection, item.doc_id)
        elif item.operation == Operation.BATCH:
            await self._remote.batch_write(item.payload)
        else:
            raise InvalidOperationError(f"unknown queued operation {item.operation!r}")
        self._confirm(item, stored)

    def _confirm(self, item: QueueItem, stored: Optional[Dict[str, Any]]) -> None:
        for key in item.keys:
            pending = self._pending.get(key)
            if pending is None or pending.item_id != item.item_id:
                # A newer local write is still queued
                continue
            del self._pending[key]
            if pending.operation == Operation.DELETE:
                self._synced.discard(key)
                continue
            if stored is not None and key == item.key:
                self._cache.set(key, stored)
            self._synced.add(key)

    def _after_drain(self, report: DrainReport) -> None:
        for item in report.dropped:
            for key in item.keys:
                pending = self._pending.get(key)
                if pending is not None and pending.item_id == item.item_id:
                    # The optimistic value never reached the remote
                    del self._pending[key]
                    self._cache.invalidate(key)
                    self._cache.invalidate_prefix(query_prefix(parse_key(key)[0]))
                    self._synced.discard(key)

        for error in report.errors:
            if isinstance(error, SURFACED_ERRORS):
                self._emit_error(error)

    async def sync_now(self) -> DrainReport:
        """Run one drain pass over the queue if online."""
        if not self._connectivity.is_online or not len(self._queue):
            return DrainReport()
        report = await self._queue.drain(self._send)
        self._after_drain(report)
        self._queue.persist()
        return report

    def _schedule_drain(self) -> None:
        if self._destroyed:
            return
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_again = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._drain_task = loop.create_task(self._background_drain())

    async def _background_drain(self) -> None:
        while True:
            self._drain_again = False
            try:
                await self.sync_now()
            except Exception as e:
                logger.error(f"Background sync failed: {e}", exc_info=True)
                return
            if not self._drain_again or not self._connectivity.is_online:
                return

    async def _periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(self._config.sync_interval_seconds)
            try:
                await self.sync_now()
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}", exc_info=True)

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info(f"Back online, syncing {len(self._queue)} queued mutations")
            self._schedule_drain()

    # Subscriptions

    def subscribe(self, key: str, callback: Callable[[ChangeEvent], None]) -> Unsubscribe:
        """Call ``callback`` on every change to ``key``; returns the unsubscribe function."""
        return self._subscriptions.subscribe(key, callback)

    def _accept_push(self, key: str, snapshot: RemoteSnapshot) -> bool:
        """Last-writer-wins: drop pushes older than a pending local write."""
        pending = self._pending.get(key)
        if pending is not None and snapshot.update_time < pending.staged_at:
            return False
        if snapshot.exists and pending is None:
            self._synced.add(key)
        elif not snapshot.exists:
            self._synced.discard(key)
        return True

    def _on_listen_error(self, key: str, error: Exception) -> None:
        if isinstance(error, SyncError):
            self._emit_error(error)

    # Errors

    def add_error_listener(self, listener: Callable[[SyncError], None]) -> Callable[[], None]:
        """Receive mutations dropped by the queue and listener failures."""
        self._error_listeners.append(listener)

        def remove() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return remove

    def _emit_error(self, error: SyncError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener raised: {e}", exc_info=True)

    # Introspection

    def document_state(self, key: str) -> DocumentState:
        parse_key(key)
        pending = self._pending.get(key)
        if pending is not None:
            if pending.operation == Operation.DELETE:
                return DocumentState.PENDING_DELETE
            return DocumentState.PENDING_WRITE
        if key not in self._cache:
            return DocumentState.ABSENT
        if key in self._synced:
            return DocumentState.SYNCED
        return DocumentState.CACHED_ONLY

    def clear_cache(self, prefix: Optional[str] = None) -> int:
        """Drop cached entries (all, or those under ``prefix``). Returns the number removed."""
        if prefix is None:
            removed = len(self._cache)
            self._cache.clear()
            self._synced.clear()
        else:
            removed = self._cache.invalidate_prefix(prefix)
            self._synced = {k for k in self._synced if not k.startswith(prefix)}
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "queue_size": len(self._queue),
            "is_online": self._connectivity.is_online,
            "subscriber_count": self._subscriptions.subscriber_count(),
            "remote_listeners": self._subscriptions.remote_listener_count(),
            "pending_writes": len(self._pending),
            "started": self._started,
            "cache": self._cache.get_metrics(),
            "queue": self._queue.get_metrics(),
            "remote": self._remote.get_metrics(),
        }
