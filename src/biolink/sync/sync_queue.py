"""Durable queue of mutations awaiting confirmation by the remote store."""

import asyncio
import json
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from .exceptions import (
    ConflictError, InvalidOperationError, NotFoundError, RetryExhaustedError,
    UnavailableError
)
from .interfaces import LocalStorage
from .logging_config import get_logger, log_batch_metrics, log_queue_event
from .models import (
    DrainReport, Increment, Operation, QueueItem, QueueItemSnapshot, QueueSnapshot,
    decode_payload, encode_payload
)
from .retry import RetryPolicy


logger = get_logger(__name__)

Sender = Callable[[QueueItem], Awaitable[Any]]

# Errors that can never succeed on retry
PERMANENT_ERRORS = (NotFoundError, InvalidOperationError, ConflictError)


def merge_payloads(older: Optional[Dict[str, Any]], newer: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply ``newer`` fields on top of ``older``; increments accumulate."""
    merged = dict(older or {})
    for name, value in (newer or {}).items():
        previous = merged.get(name)
        if isinstance(value, Increment):
            if isinstance(previous, Increment):
                merged[name] = Increment(previous.amount + value.amount)
            elif isinstance(previous, (int, float)) and not isinstance(previous, bool):
                merged[name] = previous + value.amount
            else:
                merged[name] = value
        else:
            merged[name] = value
    return merged


def combine_items(older: QueueItem, newer: QueueItem) -> Optional[QueueItem]:
    """Collapse two queued writes to the same document into one.

    The result has the same remote effect as applying ``older`` then ``newer``.
    Returns None when the pair cannot be expressed as a single write, in
    which case both must be sent in order.
    """
    if older.key is None or older.key != newer.key:
        return None

    combined_fields = dict(
        item_id=newer.item_id,
        enqueued_at=older.enqueued_at,
        staged_at=max(older.staged_at, newer.staged_at),
        retry_count=newer.retry_count,
        not_before=newer.not_before,
        last_error=None,
    )
    old_op, new_op = older.operation, newer.operation

    if new_op == Operation.DELETE or (new_op == Operation.SET and not newer.merge):
        return replace(newer, **combined_fields)

    if old_op == Operation.DELETE:
        if new_op in (Operation.SET, Operation.INCREMENT):
            # Writing into a deleted document starts from an empty one
            return replace(newer, operation=Operation.SET, merge=False, **combined_fields)
        return None

    payload = merge_payloads(older.payload, newer.payload)

    if new_op == Operation.UPDATE:
        if old_op == Operation.INCREMENT:
            # The increment may be what creates the document
            return None
        return replace(newer, operation=old_op, payload=payload, merge=older.merge,
                       **combined_fields)

    if old_op == Operation.UPDATE:
        # An update fails on a missing document while a merge-set or
        # increment would create it
        return None

    if new_op == Operation.SET:
        merge = older.merge if old_op == Operation.SET else True
        return replace(newer, operation=Operation.SET, payload=payload, merge=merge,
                       **combined_fields)

    if new_op == Operation.INCREMENT:
        return replace(newer, operation=old_op, payload=payload, merge=older.merge,
                       **combined_fields)

    return None


class SyncQueue:
    """Ordered list of pending mutations with retry and collapse-to-latest.

    Writes to the same document are collapsed into one item whenever possible,
    and a document's writes are never sent out of order: when an item for a
    key fails or is waiting for backoff, later items for that key wait too.
    """

    def __init__(self,
                 retry_policy: Optional[RetryPolicy] = None,
                 storage: Optional[LocalStorage] = None,
                 storage_key: str = "sync_queue",
                 clock: Callable[[], float] = time.time):
        self._retry_policy = retry_policy or RetryPolicy()
        self._storage = storage
        self._storage_key = storage_key
        self._clock = clock
        self._items: List[QueueItem] = []
        self._detached: List[QueueItem] = []
        self._drain_lock = asyncio.Lock()
        self._metrics = {
            "enqueued": 0,
            "collapsed": 0,
            "synced": 0,
            "retried": 0,
            "dropped": 0,
        }

    def __len__(self) -> int:
        return len(self._items) + len(self._detached)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def items(self) -> List[QueueItem]:
        """Snapshot of every queued item, including those in the current drain pass."""
        return list(self._detached) + list(self._items)

    def pending_for(self, key: str) -> List[QueueItem]:
        return [item for item in self.items() if key in item.keys]

    def enqueue(self, item: QueueItem) -> QueueItem:
        """Append a mutation, collapsing it into a queued write for the same key.

        Returns the queue item that now carries the mutation.
        """
        if not item.enqueued_at:
            item.enqueued_at = self._clock()
        if not item.staged_at:
            item.staged_at = item.enqueued_at
        self._metrics["enqueued"] += 1

        index = self._last_index(self._items, item.key)
        if index is not None:
            combined = combine_items(self._items[index], item)
            if combined is not None:
                self._items[index] = combined
                self._metrics["collapsed"] += 1
                log_queue_event(
                    logger, combined.item_id, combined.operation.value, "collapsed",
                    f"Collapsed {item.operation.value} into queued write for {item.key}",
                    key=item.key
                )
                return combined

        self._items.append(item)
        log_queue_event(
            logger, item.item_id, item.operation.value, "enqueued",
            f"Queued {item.operation.value} for {item.key or 'batch'}",
            key=item.key
        )
        return item

    def collapse(self) -> int:
        """Combine queued writes to the same key. Returns the number of items removed."""
        result: List[QueueItem] = []
        removed = 0
        for item in self._items:
            index = self._last_index(result, item.key)
            if index is not None:
                combined = combine_items(result[index], item)
                if combined is not None:
                    result[index] = combined
                    removed += 1
                    continue
            result.append(item)
        self._items = result
        self._metrics["collapsed"] += removed
        return removed

    def clear(self) -> None:
        self._items.clear()

    async def drain(self, sender: Sender, stop_on_unavailable: bool = True) -> DrainReport:
        """Send every due item once, in enqueue order.

        Args:
            sender: Coroutine performing the remote write for one item
            stop_on_unavailable: End the pass at the first UnavailableError,
                leaving untried items queued without charging them a retry

        Returns:
            Report of succeeded, requeued and dropped items
        """
        async with self._drain_lock:
            self.collapse()
            report = DrainReport()
            if not self._items:
                return report

            start = time.time()
            now = self._clock()
            batch, self._items = self._items, []
            self._detached = list(batch)
            held: List[QueueItem] = []
            failed: List[QueueItem] = []
            blocked = set()

            for item in batch:
                keys = item.keys
                if report.interrupted or item.not_before > now or blocked.intersection(keys):
                    held.append(item)
                    blocked.update(keys)
                    continue

                retry_item = await self._process(item, sender, report)
                if retry_item is not None:
                    failed.append(retry_item)
                    blocked.update(keys)
                    if stop_on_unavailable and isinstance(report.errors[-1], UnavailableError):
                        report.interrupted = True
                        logger.info("Remote store unavailable, ending drain pass early")

            # Untried items precede anything enqueued while the pass was running
            merged = held + self._items
            for item in failed:
                self._requeue_into(merged, item)
            self._items = merged
            self._detached = []

            if report.attempted:
                log_batch_metrics(
                    logger, report.attempted, (time.time() - start) * 1000,
                    len(report.succeeded), len(report.requeued) + len(report.dropped),
                    queue_size=len(self._items)
                )
            return report

    async def attempt(self, item: QueueItem, sender: Sender) -> DrainReport:
        """Send one queued item right away.

        Nothing is sent if the item already left the queue or an older write
        for the same key is still queued ahead of it.
        """
        async with self._drain_lock:
            report = DrainReport()
            index = next((i for i, x in enumerate(self._items) if x is item), None)
            if index is None:
                return report
            keys = set(item.keys)
            if any(keys.intersection(x.keys) for x in self._items[:index]):
                return report

            self._items.pop(index)
            self._detached = [item]
            retry_item = await self._process(item, sender, report)
            if retry_item is not None:
                self._requeue_into(self._items, retry_item)
            self._detached = []
            return report

    async def _process(self, item: QueueItem, sender: Sender,
                       report: DrainReport) -> Optional[QueueItem]:
        """Send one item and record the outcome. Returns the item if it must be retried."""
        try:
            await sender(item)
        except PERMANENT_ERRORS as e:
            self._detach(item)
            report.dropped.append(item)
            report.errors.append(e)
            self._metrics["dropped"] += 1
            log_queue_event(
                logger, item.item_id, item.operation.value, "dropped",
                f"Dropped {item.operation.value} for {item.key}: {e}",
                key=item.key
            )
            return None
        except Exception as e:
            item.retry_count += 1
            item.last_error = str(e)
            if self._retry_policy.is_exhausted(item.retry_count):
                self._detach(item)
                exhausted = RetryExhaustedError(
                    item.item_id, item.key, item.operation.value,
                    item.retry_count, item.last_error
                )
                report.dropped.append(item)
                report.errors.append(exhausted)
                self._metrics["dropped"] += 1
                log_queue_event(
                    logger, item.item_id, item.operation.value, "dropped",
                    exhausted.message, key=item.key, last_error=item.last_error
                )
                return None

            item.not_before = self._clock() + self._retry_policy.delay_for(item.retry_count)
            report.requeued.append(item)
            report.errors.append(e)
            self._metrics["retried"] += 1
            log_queue_event(
                logger, item.item_id, item.operation.value, "requeued",
                f"Sync failed for {item.key or 'batch'} (attempt {item.retry_count}): {e}",
                key=item.key
            )
            return item

        self._detach(item)
        report.succeeded.append(item)
        self._metrics["synced"] += 1
        log_queue_event(
            logger, item.item_id, item.operation.value, "synced",
            f"Synced {item.operation.value} for {item.key or 'batch'}",
            key=item.key
        )
        return None

    def _detach(self, item: QueueItem) -> None:
        self._detached = [x for x in self._detached if x is not item]

    def _requeue_into(self, items: List[QueueItem], item: QueueItem) -> None:
        """Put a failed item back without letting it overtake newer writes to its keys."""
        keys = set(item.keys)
        index = next((i for i, x in enumerate(items) if keys.intersection(x.keys)), None)
        if index is None:
            items.append(item)
            return
        combined = combine_items(item, items[index])
        if combined is not None:
            items[index] = combined
        else:
            items.insert(index, item)

    @staticmethod
    def _last_index(items: List[QueueItem], key: Optional[str]) -> Optional[int]:
        """Index of the newest item writing ``key``, batches included."""
        if key is None:
            return None
        for i in range(len(items) - 1, -1, -1):
            if key in items[i].keys:
                return i
        return None

    def persist(self) -> bool:
        """Write the whole queue to durable storage. Never raises."""
        if self._storage is None:
            return False
        try:
            snapshot = QueueSnapshot(items=[
                QueueItemSnapshot(
                    item_id=item.item_id,
                    operation=item.operation,
                    collection=item.collection,
                    doc_id=item.doc_id,
                    payload=encode_payload(item.payload),
                    enqueued_at=item.enqueued_at,
                    staged_at=item.staged_at,
                    retry_count=item.retry_count,
                    not_before=item.not_before,
                    merge=item.merge,
                    last_error=item.last_error,
                )
                for item in self.items()
            ])
            self._storage.set_item(self._storage_key, snapshot.model_dump_json())
            logger.debug(f"Persisted {len(snapshot.items)} queued mutations")
            return True
        except Exception as e:
            logger.error(f"Failed to persist sync queue: {e}", exc_info=True)
            return False

    def restore(self) -> int:
        """Reload queued mutations saved by :meth:`persist`. Never raises."""
        if self._storage is None:
            return 0
        try:
            raw = self._storage.get_item(self._storage_key)
            if not raw:
                return 0
            snapshot = QueueSnapshot.model_validate(json.loads(raw))
        except (ValidationError, ValueError) as e:
            logger.error(f"Discarding unreadable sync queue snapshot: {e}")
            return 0
        except Exception as e:
            logger.error(f"Failed to restore sync queue: {e}", exc_info=True)
            return 0

        restored = [
            QueueItem(
                operation=s.operation,
                collection=s.collection,
                doc_id=s.doc_id,
                payload=decode_payload(s.payload),
                enqueued_at=s.enqueued_at,
                staged_at=s.staged_at,
                retry_count=s.retry_count,
                not_before=s.not_before,
                merge=s.merge,
                item_id=s.item_id,
                last_error=s.last_error,
            )
            for s in snapshot.items
        ]
        known = {item.item_id for item in self._items}
        self._items = [i for i in restored if i.item_id not in known] + self._items
        self.collapse()
        for item in restored:
            log_queue_event(
                logger, item.item_id, item.operation.value, "restored",
                f"Restored queued {item.operation.value} for {item.key or 'batch'}",
                key=item.key
            )
        return len(restored)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "size": len(self),
            "oldest_enqueued_at": min((i.enqueued_at for i in self.items()), default=None),
        }
