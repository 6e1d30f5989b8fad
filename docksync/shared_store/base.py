"""Shared protocol for the key/value backends behind SharedStateStore."""

from typing import Iterable, List, Mapping, Optional, Protocol


class KeyValueBackend(Protocol):
    """Durable string key/value storage shared by every process."""

    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    def get_many(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        """Return a value (or None) for each requested key."""

    def set_many(self, items: Mapping[str, str]) -> None:
        """Write all items in one atomic commit. Raises on failure."""

    def delete(self, *keys: str) -> None:
        """Remove keys without raising if they are absent."""

    def pop(self, key: str) -> Optional[str]:
        """Atomically read and clear a key."""

    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with `prefix`."""

    def close(self) -> None:
        """Release connections."""
