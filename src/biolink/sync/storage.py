"""In-memory durable-storage stand-in for tests and short-lived processes."""

from typing import Dict, Optional

from .interfaces import LocalStorage


class MemoryLocalStorage(LocalStorage):
    """LocalStorage kept in a dict; survives manager restarts within one process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self):
        return list(self._items.keys())
