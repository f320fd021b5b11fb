"""Connectivity signal consumed by the sync manager."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from .logging_config import get_logger


logger = get_logger(__name__)

Listener = Callable[[bool], None]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor:
    """Tracks whether the device is online and reports transitions.

    The state can be driven externally with :meth:`set_online` or by an
    optional async ``probe`` polled every ``probe_interval`` seconds.
    """

    def __init__(self, initial_online: bool = True, probe: Optional[Probe] = None,
                 probe_interval: float = 15.0):
        self._online = initial_online
        self._probe = probe
        self._probe_interval = probe_interval
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Record the current state; listeners run only on a transition."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener raised: {e}", exc_info=True)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def start(self) -> None:
        """Begin polling the probe, if one was given."""
        if self._probe is None or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _poll(self) -> None:
        while True:
            try:
                self.set_online(bool(await self._probe()))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Connectivity probe failed: {e}")
                self.set_online(False)
            await asyncio.sleep(self._probe_interval)
