"""Redis-backed key/value backend shared by phone, watch and widget processes."""

from typing import Iterable, List, Mapping, Optional

from docksync.shared_store.base import KeyValueBackend
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="shared_store/redis")


class RedisBackend(KeyValueBackend):
    """Keys live under `prefix`; multi-key writes go through a MULTI/EXEC pipeline."""

    def __init__(self, client, prefix: str = "docksync:") -> None:
        logger.debug("Initializing RedisBackend")
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "docksync:") -> "RedisBackend":
        import redis

        return cls(redis.Redis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _text(raw) -> Optional[str]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return str(raw)

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self.client.get(self._key(key))
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to read key from Redis: %s", exc)
            return None
        return self._text(raw)

    def get_many(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        keys = list(keys)
        if not keys:
            return {}
        try:
            values = self.client.mget([self._key(k) for k in keys])
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to read keys from Redis: %s", exc)
            return {k: None for k in keys}
        return {k: self._text(v) for k, v in zip(keys, values)}

    def set_many(self, items: Mapping[str, str]) -> None:
        if not items:
            return
        pipe = self.client.pipeline(transaction=True)
        for key, value in items.items():
            pipe.set(self._key(key), value)
        try:
            pipe.execute()
        except Exception as exc:
            logger.error("Failed to commit keys to Redis: %s", exc)
            raise

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self.client.delete(*[self._key(k) for k in keys])
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to delete keys from Redis: %s", exc)

    def pop(self, key: str) -> Optional[str]:
        try:
            raw = self.client.getdel(self._key(key))
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to pop key from Redis: %s", exc)
            return None
        return self._text(raw)

    def keys(self, prefix: str = "") -> List[str]:
        try:
            found = self.client.scan_iter(match=f"{self._key(prefix)}*")
            return [self._text(k)[len(self.prefix):] for k in found]
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to scan keys in Redis: %s", exc)
            return []

    def close(self) -> None:
        try:
            self.client.close()
        except Exception as exc:  # pragma: no cover - defensive
            logger.warning("Failed to close Redis client: %s", exc)
