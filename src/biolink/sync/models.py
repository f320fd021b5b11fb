"""Data models for the client-side sync and caching core."""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from .exceptions import InvalidOperationError


QUERY_MARKER = "query"


class Operation(Enum):
    """Kinds of queued mutations."""
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"
    INCREMENT = "increment"
    BATCH = "batch"


class DocumentState(Enum):
    """Per-key lifecycle states tracked by the sync manager."""
    ABSENT = "absent"
    CACHED_ONLY = "cached_only"
    SYNCED = "synced"
    PENDING_WRITE = "pending_write"
    PENDING_DELETE = "pending_delete"


class ChangeSource(Enum):
    """Where a change notification originated."""
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class Increment:
    """Field value that adds ``amount`` to the stored number instead of overwriting it."""
    amount: Union[int, float] = 1


@dataclass(frozen=True)
class Filter:
    """A single ``field op value`` query condition."""
    field: str
    op: str
    value: Any

    OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains")

    def __post_init__(self):
        if self.op not in self.OPERATORS:
            raise InvalidOperationError(
                f"unsupported filter operator {self.op!r}",
                {"field": self.field, "operator": self.op}
            )

    @classmethod
    def coerce(cls, condition: Union["Filter", Sequence[Any]]) -> "Filter":
        """Accept either a Filter or a ``(field, op, value)`` triple."""
        if isinstance(condition, Filter):
            return condition
        if len(condition) != 3:
            raise InvalidOperationError(
                "filter conditions must be (field, op, value) triples",
                {"condition": repr(condition)}
            )
        field_name, op, value = condition
        return cls(field_name, op, value)


@dataclass(frozen=True)
class OrderBy:
    """Sort specification for queries."""
    field: str
    direction: str = "asc"

    def __post_init__(self):
        if self.direction not in ("asc", "desc"):
            raise InvalidOperationError(
                f"order direction must be 'asc' or 'desc', got {self.direction!r}"
            )

    @classmethod
    def coerce(cls, order: Union["OrderBy", str, Tuple[str, str], None]) -> Optional["OrderBy"]:
        if order is None or isinstance(order, OrderBy):
            return order
        if isinstance(order, str):
            return cls(order)
        return cls(*order)


@dataclass
class CacheEntry:
    """A cached value with its insertion time and time-to-live (seconds)."""
    key: str
    value: Any
    inserted_at: float
    ttl: float
    sequence: int = 0

    def is_valid(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl


@dataclass
class QueueItem:
    """A mutation staged locally and not yet confirmed by the remote store."""
    operation: Operation
    collection: Optional[str]
    doc_id: Optional[str]
    payload: Any = None
    enqueued_at: float = 0.0
    staged_at: float = 0.0
    retry_count: int = 0
    not_before: float = 0.0
    merge: bool = False
    item_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    last_error: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        if self.collection is None or self.doc_id is None:
            return None
        return make_key(self.collection, self.doc_id)

    @property
    def keys(self) -> List[str]:
        """Every document key this item writes."""
        if self.operation == Operation.BATCH:
            return list(dict.fromkeys(
                make_key(op["collection"], op["doc_id"]) for op in self.payload or []
            ))
        key = self.key
        return [key] if key is not None else []


@dataclass
class RemoteSnapshot:
    """State of one remote document as delivered by a real-time listener."""
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]]
    update_time: float

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass
class ChangeEvent:
    """Notification delivered to subscription callbacks."""
    key: str
    data: Any
    source: ChangeSource
    timestamp: float


@dataclass
class WriteOperation:
    """One entry of a batch write.

    ``kind`` is one of ``set``, ``update``, ``delete`` or ``increment``; for
    ``increment`` the ``data`` maps field names to amounts.
    """
    kind: str
    key: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False

    KINDS = ("set", "update", "delete", "increment")


@dataclass
class DrainReport:
    """Outcome of one pass over the sync queue."""
    succeeded: List[QueueItem] = field(default_factory=list)
    requeued: List[QueueItem] = field(default_factory=list)
    dropped: List[QueueItem] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    interrupted: bool = False

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.requeued) + len(self.dropped)


# Pydantic models for persisted snapshots

class CacheEntrySnapshot(BaseModel):
    """Serialized cache entry."""
    key: str
    value: Any = None
    inserted_at: float
    ttl: float


class CacheSnapshot(BaseModel):
    """Persisted cache contents."""
    version: int = 1
    entries: List[CacheEntrySnapshot] = Field(default_factory=list)


class QueueItemSnapshot(BaseModel):
    """Serialized queue item."""
    item_id: str
    operation: Operation
    collection: Optional[str] = None
    doc_id: Optional[str] = None
    payload: Any = None
    enqueued_at: float = 0.0
    staged_at: float = 0.0
    retry_count: int = 0
    not_before: float = 0.0
    merge: bool = False
    last_error: Optional[str] = None


class QueueSnapshot(BaseModel):
    """Persisted sync queue contents."""
    version: int = 1
    items: List[QueueItemSnapshot] = Field(default_factory=list)


def make_key(collection: str, doc_id: str) -> str:
    """Build the cache key for one document."""
    return f"{collection}:{doc_id}"


def parse_key(key: str) -> Tuple[str, str]:
    """Split a ``collection:id`` key into its parts."""
    collection, sep, doc_id = key.partition(":")
    if not sep or not collection or not doc_id:
        raise InvalidOperationError(
            f"key {key!r} is not of the form 'collection:id'", {"key": key}
        )
    if doc_id.startswith(f"{QUERY_MARKER}:"):
        raise InvalidOperationError(
            f"key {key!r} names a cached query, not a document", {"key": key}
        )
    return collection, doc_id


def query_prefix(collection: str) -> str:
    """Prefix shared by every cached query result of a collection."""
    return f"{collection}:{QUERY_MARKER}:"


def query_key(collection: str, filters: Sequence[Filter],
              order_by: Optional[OrderBy] = None, limit: Optional[int] = None) -> str:
    """Derive a stable cache key for a query from its filters, order and limit."""
    canonical = {
        "filters": sorted(
            [[f.field, f.op, f.value] for f in filters],
            key=lambda c: json.dumps(c, sort_keys=True, default=str)
        ),
        "order_by": [order_by.field, order_by.direction] if order_by else None,
        "limit": limit,
    }
    encoded = json.dumps(canonical, sort_keys=True, default=str)
    digest = hashlib.sha1(encoded.encode("utf-8")).hexdigest()[:16]
    return f"{query_prefix(collection)}{digest}"


def apply_fields(base: Optional[Dict[str, Any]], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Merge partial fields into a document, resolving Increment values."""
    merged = dict(base or {})
    for name, value in fields.items():
        if isinstance(value, Increment):
            current = merged.get(name)
            if not isinstance(current, (int, float)) or isinstance(current, bool):
                current = 0
            merged[name] = current + value.amount
        else:
            merged[name] = value
    return merged


def encode_payload(value: Any) -> Any:
    """Convert Increment sentinels into a JSON-safe marker for persistence."""
    if isinstance(value, Increment):
        return {"__increment__": value.amount}
    if isinstance(value, dict):
        return {k: encode_payload(v) for k, v in value.items()}
    if isinstance(value, list):
        return [encode_payload(v) for v in value]
    return value


def decode_payload(value: Any) -> Any:
    """Inverse of :func:`encode_payload`."""
    if isinstance(value, dict):
        if set(value.keys()) == {"__increment__"}:
            return Increment(value["__increment__"])
        return {k: decode_payload(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_payload(v) for v in value]
    return value
