"""Cross-process shared state: key/value backends and the typed store over them.

The Redis and SQL backends live in `.redis` and `.sql`; `build_backend`
imports whichever one is configured.
"""

from .base import KeyValueBackend
from .factory import build_backend, build_store
from .memory import InMemoryBackend
from .store import JsonCodec, SharedStateStore

__all__ = [
    "KeyValueBackend",
    "InMemoryBackend",
    "JsonCodec",
    "SharedStateStore",
    "build_backend",
    "build_store",
]
