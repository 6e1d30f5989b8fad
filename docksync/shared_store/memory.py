"""In-memory key/value backend, intended for development and tests.

Not durable and not shared between processes; every process that uses it
gets its own private store.
"""

import threading
from typing import Iterable, List, Mapping, Optional

from docksync.shared_store.base import KeyValueBackend
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="shared_store/memory")


class InMemoryBackend(KeyValueBackend):
    """Thread-safe dict-backed store (dev/test)."""

    def __init__(self) -> None:
        logger.debug("Initializing InMemoryBackend")
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def get_many(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        with self._lock:
            return {key: self._data.get(key) for key in keys}

    def set_many(self, items: Mapping[str, str]) -> None:
        with self._lock:
            self._data.update(items)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def close(self) -> None:
        """Nothing to release."""

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
