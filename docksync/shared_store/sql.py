"""SQL-backed key/value backend (SQLite file by default).

A single `kv_store` table holds every key. Multi-key writes happen in one
transaction, and pops use DELETE ... RETURNING so only one process can
claim a value.
"""

from __future__ import annotations

import time
from typing import Iterable, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from docksync.shared_store.base import KeyValueBackend
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="shared_store/sql")


class SqlBackend(KeyValueBackend):
    """Key/value rows in a relational table, shared through the database file or server."""

    def __init__(self, engine: Engine, *, table: str = "kv_store") -> None:
        self.engine = engine
        self.table = table
        self._ensure_table()

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "SqlBackend":
        """Create an engine from a URL and build the backend."""
        engine = create_engine(database_url, future=True)
        return cls(engine, **kwargs)

    def _ensure_table(self) -> None:
        ddl = text(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                store_key VARCHAR(255) PRIMARY KEY,
                store_value TEXT NOT NULL,
                updated_at DOUBLE PRECISION
            )
            """
        )
        with self.engine.begin() as conn:
            conn.execute(ddl)

    def get(self, key: str) -> Optional[str]:
        sql = text(f"SELECT store_value FROM {self.table} WHERE store_key = :key")
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"key": key}).first()
        return row[0] if row else None

    def get_many(self, keys: Iterable[str]) -> dict[str, Optional[str]]:
        keys = list(keys)
        result: dict[str, Optional[str]] = {k: None for k in keys}
        if not keys:
            return result
        params = {f"k{i}": k for i, k in enumerate(keys)}
        placeholders = ", ".join(f":{name}" for name in params)
        sql = text(f"SELECT store_key, store_value FROM {self.table} WHERE store_key IN ({placeholders})")
        with self.engine.connect() as conn:
            for row in conn.execute(sql, params).mappings():
                result[row["store_key"]] = row["store_value"]
        return result

    def set_many(self, items: Mapping[str, str]) -> None:
        if not items:
            return
        now = time.time()
        sql = text(
            f"""
            INSERT INTO {self.table} (store_key, store_value, updated_at)
            VALUES (:key, :value, :updated_at)
            ON CONFLICT (store_key) DO UPDATE
            SET store_value = excluded.store_value, updated_at = excluded.updated_at
            """
        )
        rows = [{"key": k, "value": v, "updated_at": now} for k, v in items.items()]
        try:
            with self.engine.begin() as conn:
                conn.execute(sql, rows)
        except Exception as exc:
            logger.error("Failed to commit keys to SQL store: %s", exc)
            raise

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        sql = text(f"DELETE FROM {self.table} WHERE store_key = :key")
        with self.engine.begin() as conn:
            conn.execute(sql, [{"key": k} for k in keys])

    def pop(self, key: str) -> Optional[str]:
        sql = text(f"DELETE FROM {self.table} WHERE store_key = :key RETURNING store_value")
        with self.engine.begin() as conn:
            row = conn.execute(sql, {"key": key}).first()
        return row[0] if row else None

    def keys(self, prefix: str = "") -> List[str]:
        sql = text(
            f"SELECT store_key FROM {self.table} WHERE substr(store_key, 1, :n) = :prefix ORDER BY store_key"
        )
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(sql, {"n": len(prefix), "prefix": prefix})]

    def close(self) -> None:
        self.engine.dispose()
