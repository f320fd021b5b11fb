"""Reference-counted real-time subscriptions with synchronous fan-out."""

import copy
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .cache import LocalCache
from .interfaces import Unsubscribe
from .logging_config import get_logger, log_sync_event
from .models import ChangeEvent, ChangeSource, RemoteSnapshot, parse_key, query_prefix
from .remote import RemoteStoreAdapter


logger = get_logger(__name__)

Callback = Callable[[ChangeEvent], None]
PushFilter = Callable[[str, RemoteSnapshot], bool]


@dataclass(eq=False)
class _Subscription:
    key: str
    callback: Callback
    active: bool = True


class SubscriptionRegistry:
    """Shares one remote listener per key among any number of callbacks.

    Remote pushes refresh the cache, invalidate cached queries of the
    collection and are delivered to callbacks in registration order. A
    callback never runs after its unsubscribe function has returned.
    """

    def __init__(self,
                 adapter: RemoteStoreAdapter,
                 cache: LocalCache,
                 push_filter: Optional[PushFilter] = None,
                 on_listen_error: Optional[Callable[[str, Exception], None]] = None,
                 clock: Callable[[], float] = time.time):
        self._adapter = adapter
        self._cache = cache
        self._push_filter = push_filter
        self._on_listen_error = on_listen_error
        self._clock = clock
        self._subscriptions: Dict[str, List[_Subscription]] = {}
        self._handles: Dict[str, Unsubscribe] = {}
        self._opening: set = set()
        self._pushes = 0
        self._discarded_pushes = 0
        self._listen_errors = 0

    def subscribe(self, key: str, callback: Callback) -> Unsubscribe:
        """Register ``callback`` for changes to ``key``; returns its unsubscribe function."""
        collection, doc_id = parse_key(key)
        subscription = _Subscription(key, callback)
        self._subscriptions.setdefault(key, []).append(subscription)

        if key not in self._handles and key not in self._opening:
            self._open(key, collection, doc_id)

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def _open(self, key: str, collection: str, doc_id: str) -> None:
        self._opening.add(key)
        try:
            handle = self._adapter.listen(
                collection, doc_id,
                lambda snapshot: self._on_remote(key, snapshot),
                lambda error: self._on_error(key, error),
            )
        except Exception as e:
            # Not retried; cached data stays usable
            self._on_error(key, e)
            return
        finally:
            self._opening.discard(key)

        if self._subscriptions.get(key):
            self._handles[key] = handle
            log_sync_event(logger, "listen", key, f"Opened remote listener for {key}",
                           collection=collection)
        else:
            # Every subscriber left during the initial delivery
            handle()

    def _remove(self, subscription: _Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        key = subscription.key
        remaining = [s for s in self._subscriptions.get(key, []) if s is not subscription]
        if remaining:
            self._subscriptions[key] = remaining
            return

        self._subscriptions.pop(key, None)
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle()
            logger.debug(f"Closed remote listener for {key}")

    def _on_remote(self, key: str, snapshot: RemoteSnapshot) -> None:
        if key not in self._subscriptions:
            return
        if self._push_filter is not None and not self._push_filter(key, snapshot):
            self._discarded_pushes += 1
            logger.debug(f"Discarded stale push for {key} (updated at {snapshot.update_time})")
            return

        self._pushes += 1
        if snapshot.exists:
            self._cache.set(key, copy.deepcopy(snapshot.data))
        else:
            self._cache.invalidate(key)
        self._cache.invalidate_prefix(query_prefix(snapshot.collection))

        self._fan_out(key, ChangeEvent(
            key=key, data=snapshot.data, source=ChangeSource.REMOTE,
            timestamp=snapshot.update_time
        ))

    def _on_error(self, key: str, error: Exception) -> None:
        self._listen_errors += 1
        logger.error(f"Real-time listener for {key} failed: {error}", extra={"key": key})
        if self._on_listen_error is not None:
            self._on_listen_error(key, error)

    def notify(self, key: str, data, source: ChangeSource = ChangeSource.LOCAL) -> None:
        """Deliver a locally originated change to the key's callbacks."""
        if key in self._subscriptions:
            self._fan_out(key, ChangeEvent(key=key, data=data, source=source,
                                           timestamp=self._clock()))

    def _fan_out(self, key: str, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(key, [])):
            # A callback may unsubscribe others mid-delivery
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(f"Subscriber callback for {key} raised: {e}", exc_info=True)

    def close_all(self) -> None:
        """Deactivate every subscription and close every remote listener."""
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.active = False
        self._subscriptions.clear()
        handles, self._handles = self._handles, {}
        for key, handle in handles.items():
            try:
                handle()
            except Exception as e:
                logger.warning(f"Error closing listener for {key}: {e}")

    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._subscriptions.values())

    def listener_count(self, key: str) -> int:
        return len(self._subscriptions.get(key, []))

    def has_remote_handle(self, key: str) -> bool:
        return key in self._handles

    def remote_listener_count(self) -> int:
        return len(self._handles)

    def get_metrics(self) -> Dict[str, int]:
        return {
            "subscribers": self.subscriber_count(),
            "remote_listeners": self.remote_listener_count(),
            "pushes": self._pushes,
            "discarded_pushes": self._discarded_pushes,
            "listen_errors": self._listen_errors,
        }
