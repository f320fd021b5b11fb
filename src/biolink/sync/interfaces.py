"""Base interfaces for synchronization components."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .models import Filter, OrderBy, RemoteSnapshot


Unsubscribe = Callable[[], None]


class RemoteStore(ABC):
    """Interface for the external document database.

    Every coroutine may raise ``UnavailableError`` (or a plain ``ConnectionError``
    / ``OSError``) when there is no network path. Field values may contain
    ``Increment`` sentinels which the store applies atomically.
    """

    @abstractmethod
    async def read_one(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document or None if it does not exist."""
        pass

    @abstractmethod
    async def write_one(self, collection: str, doc_id: str, document: Dict[str, Any],
                        merge: bool = False) -> Optional[Dict[str, Any]]:
        """Create or overwrite a document; merge into the existing one if ``merge``.

        Returns the stored document when the backend can provide it.
        """
        pass

    @abstractmethod
    async def update_one(self, collection: str, doc_id: str,
                         fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update fields of an existing document; raise NotFoundError if absent."""
        pass

    @abstractmethod
    async def delete_one(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""
        pass

    @abstractmethod
    async def query_many(self, collection: str, filters: List[Filter],
                         order_by: Optional[OrderBy] = None,
                         limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return documents matching all filters, each including its ``id``."""
        pass

    @abstractmethod
    async def batch_write(self, operations: List[Dict[str, Any]]) -> None:
        """Apply ``set``/``update``/``delete`` operations atomically.

        Each operation is a dict with ``kind``, ``collection``, ``doc_id`` and
        optionally ``data`` and ``merge``.
        """
        pass

    @abstractmethod
    def listen(self, collection: str, doc_id: str,
               on_change: Callable[[RemoteSnapshot], None],
               on_error: Optional[Callable[[Exception], None]] = None) -> Unsubscribe:
        """Push the document state to ``on_change`` now and on every remote change."""
        pass


class LocalStorage(ABC):
    """Interface for the durable string-keyed store used for snapshots."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass
