"""
Durable keyed storage for the offline replica.

Each collection is a SQLite table holding the record as JSON alongside the
columns used for secondary lookups. When the platform cannot provide a
database file the store can be switched to an in-process backend for the
rest of the session.

Example:
    store = LocalStore("/tmp/offline.db")
    await store.init()
    await store.put("progress", {"id": "user_42", "userId": "42"})
    record = await store.get("progress", "user_42")
"""
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from prep_tracker.config import DEFAULT_DB_PATH
from prep_tracker.db import COLLECTIONS, get_collection, get_connection, init_db
from prep_tracker.errors import StorageError, StorageUnavailable
from prep_tracker.models import to_iso, utcnow

logger = logging.getLogger(__name__)


class LocalStore:
    """Async key-value store partitioned into named collections."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self._initialized = False
        self._memory: Optional[dict] = None
        self._next_id = 1
        self._clock = clock

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_memory_only(self) -> bool:
        return self._memory is not None

    async def init(self) -> None:
        """
        Create the database file and schema.

        Raises:
            StorageUnavailable: if the file cannot be created or opened
        """
        if self._initialized:
            return
        if self._memory is not None:
            self._initialized = True
            return
        try:
            await init_db(self.db_path)
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to open offline database at {self.db_path}: {e}")
            raise StorageUnavailable(str(e)) from e
        self._initialized = True
        logger.info(f"Offline database initialized: {self.db_path}")

    def use_memory(self) -> None:
        """Switch to a non-durable in-process backend for this session."""
        logger.warning("Offline storage unavailable, keeping data in memory only")
        self._memory = {name: {} for name in COLLECTIONS}
        self._initialized = True

    # ─────────────────────────────────────────────────────────────────
    # Generic collection operations
    # ─────────────────────────────────────────────────────────────────

    async def get(self, collection: str, key) -> Optional[dict]:
        coll = get_collection(collection)
        self._check_ready()
        if self._memory is not None:
            record = self._memory[coll.name].get(key)
            return json.loads(json.dumps(record)) if record is not None else None
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT data FROM {coll.table} WHERE {coll.key_field} = ?", (key,)
            )
            row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def put(self, collection: str, record: dict) -> dict:
        """Upsert a record by primary key, stamping lastModified. Returns the stored record."""
        coll = get_collection(collection)
        self._check_ready()
        record = dict(record)
        record["lastModified"] = to_iso(self._clock())
        if coll.auto_increment and record.get(coll.key_field) is None:
            record[coll.key_field] = await self._allocate_id(coll)
        key = record.get(coll.key_field)
        if key is None:
            raise ValueError(f"Record for {collection} is missing '{coll.key_field}'")
        try:
            payload = json.dumps(record)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Record for {collection} is not serializable: {e}") from e

        if self._memory is not None:
            self._memory[coll.name][key] = json.loads(payload)
            return record

        columns = [coll.key_field, *coll.indexes.values(), "data"]
        values = [key, *(record.get(f) for f in coll.indexes), payload]
        placeholders = ", ".join("?" for _ in columns)
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT OR REPLACE INTO {coll.table} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            await conn.commit()
        logger.debug(f"Stored {collection}/{key}")
        return record

    async def get_all(self, collection: str) -> list:
        coll = get_collection(collection)
        self._check_ready()
        if self._memory is not None:
            return [json.loads(json.dumps(r)) for r in self._memory[coll.name].values()]
        async with self._connection() as conn:
            cursor = await conn.execute(f"SELECT data FROM {coll.table} ORDER BY rowid")
            rows = await cursor.fetchall()
        return [json.loads(r["data"]) for r in rows]

    async def get_by_index(self, collection: str, index: str, value) -> list:
        """Look up records through one of the collection's secondary indexes."""
        coll = get_collection(collection)
        self._check_ready()
        if index not in coll.indexes:
            raise ValueError(f"Collection {collection} has no index '{index}'")
        if self._memory is not None:
            return [
                json.loads(json.dumps(r))
                for r in self._memory[coll.name].values()
                if r.get(index) == value
            ]
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT data FROM {coll.table} WHERE {coll.indexes[index]} = ? ORDER BY rowid",
                (value,),
            )
            rows = await cursor.fetchall()
        return [json.loads(r["data"]) for r in rows]

    async def delete(self, collection: str, key) -> None:
        coll = get_collection(collection)
        self._check_ready()
        if self._memory is not None:
            self._memory[coll.name].pop(key, None)
            return
        async with self._connection() as conn:
            await conn.execute(f"DELETE FROM {coll.table} WHERE {coll.key_field} = ?", (key,))
            await conn.commit()

    async def clear(self, collection: str) -> None:
        coll = get_collection(collection)
        self._check_ready()
        if self._memory is not None:
            self._memory[coll.name].clear()
            return
        async with self._connection() as conn:
            await conn.execute(f"DELETE FROM {coll.table}")
            await conn.commit()

    # ─────────────────────────────────────────────────────────────────
    # Question cache
    # ─────────────────────────────────────────────────────────────────

    async def cache_questions(self, questions: list) -> int:
        stamp = to_iso(self._clock())
        for question in questions:
            await self.put("questions", {**question, "cached": True, "cacheTimestamp": stamp})
        logger.info(f"Cached {len(questions)} questions for offline use")
        return len(questions)

    async def get_offline_questions(self, category: str = None, difficulty: str = None) -> list:
        if category:
            questions = await self.get_by_index("questions", "category", category)
        else:
            questions = await self.get_all("questions")
        if difficulty:
            questions = [q for q in questions if q.get("difficulty") == difficulty]
        logger.debug(f"Retrieved {len(questions)} questions from offline cache")
        return questions

    async def cache_size(self) -> int:
        """Approximate size in bytes of everything held offline."""
        total = 0
        for name in COLLECTIONS:
            total += len(json.dumps(await self.get_all(name)).encode("utf-8"))
        return total

    async def clear_cache(self) -> None:
        for name in COLLECTIONS:
            await self.clear(name)
        logger.info("Offline cache cleared")

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    def _check_ready(self) -> None:
        if not self._initialized:
            raise StorageError("LocalStore used before init()")

    async def _allocate_id(self, coll) -> int:
        if self._memory is not None:
            new_id = self._next_id
            self._next_id += 1
            return new_id
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"INSERT INTO {coll.table} (data) VALUES (?)", ("{}",)
            )
            new_id = cursor.lastrowid
            await conn.commit()
        return new_id

    @asynccontextmanager
    async def _connection(self):
        try:
            conn = await get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open offline database: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            await conn.close()
