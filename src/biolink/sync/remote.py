"""Adapter around a RemoteStore that bounds every call and normalizes failures."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .circuit_breaker import CircuitBreaker
from .exceptions import NotFoundError, UnavailableError
from .interfaces import RemoteStore, Unsubscribe
from .logging_config import PerformanceTimer, get_logger
from .models import Filter, OrderBy, RemoteSnapshot


logger = get_logger(__name__)

# Failures that mean "no network path right now"
TRANSPORT_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError)


class RemoteStoreAdapter:
    """Uniform access to the remote document store.

    Each call is bounded by ``timeout`` seconds. Timeouts, transport errors and
    an open circuit all surface as ``UnavailableError``; ``NotFoundError`` from
    the backend passes through unchanged.
    """

    def __init__(self,
                 store: RemoteStore,
                 timeout: float = 10.0,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self._store = store
        self._timeout = timeout
        self._circuit_breaker = circuit_breaker
        self._calls = 0
        self._failures = 0

    @property
    def store(self) -> RemoteStore:
        return self._store

    @property
    def circuit_breaker(self) -> Optional[CircuitBreaker]:
        return self._circuit_breaker

    async def _call(self, operation: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        self._calls += 1
        if self._circuit_breaker is not None:
            self._circuit_breaker.before_call()

        try:
            with PerformanceTimer(logger, f"remote.{operation}"):
                result = await asyncio.wait_for(factory(), timeout=self._timeout)
        except NotFoundError:
            if self._circuit_breaker is not None:
                self._circuit_breaker.record_success()
            raise
        except asyncio.TimeoutError:
            self._record_failure()
            raise UnavailableError(operation, f"timed out after {self._timeout}s")
        except UnavailableError:
            self._record_failure()
            raise
        except TRANSPORT_ERRORS as e:
            self._record_failure()
            raise UnavailableError(operation, str(e) or type(e).__name__) from e

        if self._circuit_breaker is not None:
            self._circuit_breaker.record_success()
        return result

    def _record_failure(self) -> None:
        self._failures += 1
        if self._circuit_breaker is not None:
            self._circuit_breaker.record_failure()

    async def read_one(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return await self._call("read_one", lambda: self._store.read_one(collection, doc_id))

    async def write_one(self, collection: str, doc_id: str, document: Dict[str, Any],
                        merge: bool = False) -> Optional[Dict[str, Any]]:
        return await self._call(
            "write_one", lambda: self._store.write_one(collection, doc_id, document, merge=merge)
        )

    async def update_one(self, collection: str, doc_id: str,
                         fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._call(
            "update_one", lambda: self._store.update_one(collection, doc_id, fields)
        )

    async def delete_one(self, collection: str, doc_id: str) -> None:
        await self._call("delete_one", lambda: self._store.delete_one(collection, doc_id))

    async def query_many(self, collection: str, filters: List[Filter],
                         order_by: Optional[OrderBy] = None,
                         limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._call(
            "query_many",
            lambda: self._store.query_many(collection, filters, order_by=order_by, limit=limit)
        )

    async def batch_write(self, operations: List[Dict[str, Any]]) -> None:
        await self._call("batch_write", lambda: self._store.batch_write(operations))

    def listen(self, collection: str, doc_id: str,
               on_change: Callable[[RemoteSnapshot], None],
               on_error: Optional[Callable[[Exception], None]] = None) -> Unsubscribe:
        """Open a real-time listener; errors are logged and passed to ``on_error``."""
        def handle_error(error: Exception) -> None:
            logger.error(f"Listener for {collection}/{doc_id} failed: {error}")
            if on_error is not None:
                on_error(error)

        try:
            return self._store.listen(collection, doc_id, on_change, handle_error)
        except TRANSPORT_ERRORS as e:
            raise UnavailableError("listen", str(e) or type(e).__name__) from e

    def get_metrics(self) -> Dict[str, Any]:
        metrics = {
            "calls": self._calls,
            "failures": self._failures,
            "timeout_seconds": self._timeout,
        }
        if self._circuit_breaker is not None:
            metrics["circuit_breaker"] = self._circuit_breaker.get_metrics()
        return metrics
