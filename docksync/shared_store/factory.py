"""Factory helpers for choosing the shared store backend at startup."""

from __future__ import annotations

from docksync import config
from docksync.shared_store.base import KeyValueBackend
from docksync.shared_store.memory import InMemoryBackend
from docksync.shared_store.store import SharedStateStore
from utils.logging_utils import get_tagged_logger, mask_url

logger = get_tagged_logger(__name__, tag="shared_store/factory")


DEFAULT_BACKEND_NAME = "memory"


def build_backend(settings: config.Settings | None = None) -> KeyValueBackend:
    """Instantiate the configured key/value backend."""
    settings = settings or config.settings
    backend = (settings.store_backend or DEFAULT_BACKEND_NAME).lower()

    if backend == "memory":
        logger.info("Using in-memory shared store (not shared across processes)")
        return InMemoryBackend()

    if backend == "redis":
        from .redis import RedisBackend

        url = settings.store_redis_url
        if not url:
            raise ValueError("store_redis_url must be set for the Redis shared store")
        logger.info("Using Redis shared store", extra={"redis_url": mask_url(url)})
        return RedisBackend.from_url(url, prefix=settings.store_key_prefix)

    if backend == "sql":
        from .sql import SqlBackend

        url = settings.store_database_url
        if not url:
            raise ValueError("store_database_url must be set for the SQL shared store")
        logger.info("Using SQL shared store", extra={"db_url": mask_url(url)})
        return SqlBackend.from_url(url)

    raise ValueError(f"Unknown shared store backend '{backend}'")


def build_store(settings: config.Settings | None = None) -> SharedStateStore:
    """Build a SharedStateStore over the configured backend."""
    settings = settings or config.settings
    return SharedStateStore(
        build_backend(settings),
        last_known_good_max_age=settings.last_known_good_max_age_seconds,
        refresh_request_max_age=settings.refresh_request_max_age_seconds,
    )
