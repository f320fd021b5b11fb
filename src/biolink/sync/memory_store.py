"""In-memory RemoteStore used by tests and local development."""

import asyncio
import copy
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import InvalidOperationError, NotFoundError, UnavailableError
from .interfaces import RemoteStore, Unsubscribe
from .logging_config import get_logger
from .models import Filter, OrderBy, RemoteSnapshot, apply_fields


logger = get_logger(__name__)

Listener = Tuple[Callable[[RemoteSnapshot], None], Optional[Callable[[Exception], None]]]


def _matches(document: Dict[str, Any], condition: Filter) -> bool:
    if condition.field not in document:
        return False
    value = document[condition.field]
    op, expected = condition.op, condition.value
    try:
        if op == "==":
            return value == expected
        if op == "!=":
            return value != expected
        if op == "<":
            return value < expected
        if op == "<=":
            return value <= expected
        if op == ">":
            return value > expected
        if op == ">=":
            return value >= expected
        if op == "in":
            return value in expected
        if op == "not-in":
            return value not in expected
        if op == "array-contains":
            return isinstance(value, list) and expected in value
    except TypeError:
        # Values of incomparable types never match range filters
        return False
    return False


class InMemoryRemoteStore(RemoteStore):
    """Dict-backed document store with real-time listeners.

    Writes stamp ``created_at``/``updated_at`` from ``clock``. While ``online``
    is False every coroutine raises ``UnavailableError``. Listeners are called
    synchronously: once on registration and after every change, including
    changes made with :meth:`server_write` and :meth:`server_delete`, which
    simulate other clients and ignore the ``online`` switch.
    """

    def __init__(self, clock: Callable[[], float] = time.time, latency: float = 0.0,
                 max_batch_operations: int = 500):
        self._clock = clock
        self._latency = latency
        self._max_batch_operations = max_batch_operations
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: Dict[Tuple[str, str], List[Listener]] = {}
        self._failures: List[Exception] = []
        self.online = True
        self.calls: List[str] = []

    def fail_next(self, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls raise ``error``."""
        self._failures.extend([error] * times)

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self._latency:
            await asyncio.sleep(self._latency)
        if not self.online:
            raise UnavailableError(operation, "in-memory store is offline")
        if self._failures:
            raise self._failures.pop(0)

    # Direct access

    def document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Current stored copy of a document, or None."""
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    def server_write(self, collection: str, doc_id: str, data: Dict[str, Any],
                     merge: bool = False) -> Dict[str, Any]:
        """Write as another client would; always succeeds and notifies listeners."""
        stored = self._write(collection, doc_id, data, merge)
        self._notify(collection, doc_id)
        return stored

    def server_delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)
        self._notify(collection, doc_id)

    # Internal mutations, no notification

    def _write(self, collection: str, doc_id: str, data: Dict[str, Any],
               merge: bool) -> Dict[str, Any]:
        docs = self._collections.setdefault(collection, {})
        now = self._clock()
        existing = docs.get(doc_id)
        base = dict(existing) if (merge and existing is not None) else {}
        stored = apply_fields(base, copy.deepcopy(data))
        stored["created_at"] = existing["created_at"] if existing else now
        stored["updated_at"] = now
        docs[doc_id] = stored
        return copy.deepcopy(stored)

    def _update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._collections.get(collection, {}).get(doc_id)
        if existing is None:
            raise NotFoundError(collection, doc_id)
        return self._write(collection, doc_id, fields, merge=True)

    def _notify(self, collection: str, doc_id: str) -> None:
        snapshot = RemoteSnapshot(
            collection=collection,
            doc_id=doc_id,
            data=self.document(collection, doc_id),
            update_time=self._update_time(collection, doc_id),
        )
        for on_change, on_error in list(self._listeners.get((collection, doc_id), [])):
            try:
                on_change(copy.deepcopy(snapshot))
            except Exception as e:
                logger.error(f"Listener callback for {collection}/{doc_id} raised: {e}")
                if on_error is not None:
                    on_error(e)

    def _update_time(self, collection: str, doc_id: str) -> float:
        doc = self._collections.get(collection, {}).get(doc_id)
        if doc is not None:
            return doc.get("updated_at", self._clock())
        return self._clock()

    # RemoteStore implementation

    async def read_one(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._enter("read_one")
        return self.document(collection, doc_id)

    async def write_one(self, collection: str, doc_id: str, document: Dict[str, Any],
                        merge: bool = False) -> Optional[Dict[str, Any]]:
        await self._enter("write_one")
        stored = self._write(collection, doc_id, document, merge)
        self._notify(collection, doc_id)
        return stored

    async def update_one(self, collection: str, doc_id: str,
                         fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await self._enter("update_one")
        stored = self._update(collection, doc_id, fields)
        self._notify(collection, doc_id)
        return stored

    async def delete_one(self, collection: str, doc_id: str) -> None:
        await self._enter("delete_one")
        self._collections.get(collection, {}).pop(doc_id, None)
        self._notify(collection, doc_id)

    async def query_many(self, collection: str, filters: List[Filter],
                         order_by: Optional[OrderBy] = None,
                         limit: Optional[int] = None) -> List[Dict[str, Any]]:
        await self._enter("query_many")
        results = []
        for doc_id, doc in self._collections.get(collection, {}).items():
            if all(_matches(doc, condition) for condition in filters):
                results.append({**copy.deepcopy(doc), "id": doc_id})

        if order_by is not None:
            results = [r for r in results if order_by.field in r]
            results.sort(key=lambda r: r[order_by.field],
                         reverse=order_by.direction == "desc")
        if limit is not None:
            results = results[:limit]
        return results

    async def batch_write(self, operations: List[Dict[str, Any]]) -> None:
        await self._enter("batch_write")
        if len(operations) > self._max_batch_operations:
            raise InvalidOperationError(
                f"batch of {len(operations)} exceeds {self._max_batch_operations} operations"
            )

        # Validate everything before applying anything
        for op in operations:
            kind = op.get("kind")
            if kind not in ("set", "update", "delete"):
                raise InvalidOperationError(f"unsupported batch operation {kind!r}")
            if kind == "update" and self._collections.get(op["collection"], {}).get(op["doc_id"]) is None:
                raise NotFoundError(op["collection"], op["doc_id"])

        touched = []
        for op in operations:
            collection, doc_id = op["collection"], op["doc_id"]
            if op["kind"] == "set":
                self._write(collection, doc_id, op.get("data") or {}, op.get("merge", False))
            elif op["kind"] == "update":
                self._update(collection, doc_id, op.get("data") or {})
            else:
                self._collections.get(collection, {}).pop(doc_id, None)
            touched.append((collection, doc_id))

        for collection, doc_id in dict.fromkeys(touched):
            self._notify(collection, doc_id)

    def listen(self, collection: str, doc_id: str,
               on_change: Callable[[RemoteSnapshot], None],
               on_error: Optional[Callable[[Exception], None]] = None) -> Unsubscribe:
        entry = (on_change, on_error)
        self._listeners.setdefault((collection, doc_id), []).append(entry)
        on_change(RemoteSnapshot(
            collection=collection,
            doc_id=doc_id,
            data=self.document(collection, doc_id),
            update_time=self._update_time(collection, doc_id),
        ))

        def unsubscribe() -> None:
            listeners = self._listeners.get((collection, doc_id), [])
            if entry in listeners:
                listeners.remove(entry)
            if not listeners:
                self._listeners.pop((collection, doc_id), None)

        return unsubscribe

    def emit_error(self, collection: str, doc_id: str, error: Exception) -> None:
        """Deliver a listener error, as a dropped connection would."""
        for _, on_error in list(self._listeners.get((collection, doc_id), [])):
            if on_error is not None:
                on_error(error)

    def listener_count(self, collection: str, doc_id: str) -> int:
        return len(self._listeners.get((collection, doc_id), []))
