"""Best-effort local cache for drafts and completed analyses.

Reads and writes are synchronous against an in-process map so the workflow
never yields while touching the cache. Each write is queued for a
write-behind to a backing store (SQLite via aiosqlite, or memory) so entries
survive restarts. Failures on either side are logged and swallowed: the
server-side history is the system of record.

Layout (one row per patient and namespace):

    draft:{patient_id}    -> {"draft": {...}, "savedAt": <epoch ms>}     TTL 1h
    analysis:{patient_id} -> {"analysis": {...}, "savedAt": <epoch ms>}  TTL 24h
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiosqlite

from caseflow.config import ANALYSIS_TTL_SECONDS, CACHE_MAX_BYTES, CACHE_PATH, DRAFT_TTL_SECONDS
from caseflow.errors import CacheWriteFailure

logger = logging.getLogger(__name__)

DRAFT_NAMESPACE = "draft"
ANALYSIS_NAMESPACE = "analysis"

DEFAULT_TTLS = {
    DRAFT_NAMESPACE: DRAFT_TTL_SECONDS,
    ANALYSIS_NAMESPACE: ANALYSIS_TTL_SECONDS,
}


class CacheStore:
    async def load_all(self) -> dict[str, str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def write(self, key: str, payload: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class MemoryCacheStore(CacheStore):
    rows: dict[str, str] = field(default_factory=dict)

    async def load_all(self) -> dict[str, str]:
        return dict(self.rows)

    async def write(self, key: str, payload: str) -> None:
        self.rows[key] = payload

    async def delete(self, key: str) -> None:
        self.rows.pop(key, None)

    async def close(self) -> None:
        return


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
"""


@dataclass
class SQLiteCacheStore(CacheStore):
    conn: aiosqlite.Connection

    @classmethod
    async def connect(cls, path: str = CACHE_PATH) -> SQLiteCacheStore:
        conn = await aiosqlite.connect(path)
        await conn.executescript(SQLITE_SCHEMA)
        await conn.commit()
        logger.info("Opened cache store at %s", path)
        return cls(conn)

    async def load_all(self) -> dict[str, str]:
        cursor = await self.conn.execute("SELECT key, payload FROM cache_entries")
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    async def write(self, key: str, payload: str) -> None:
        await self.conn.execute(
            "INSERT INTO cache_entries (key, payload, updated_at) VALUES (?, ?, datetime('now')) "
            "ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at",
            (key, payload),
        )
        await self.conn.commit()

    async def delete(self, key: str) -> None:
        await self.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await self.conn.commit()

    async def close(self) -> None:
        await self.conn.close()


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    saved_at: int


class DurableCache:
    def __init__(
        self,
        store: CacheStore | None = None,
        ttls: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
        max_bytes: int = CACHE_MAX_BYTES,
    ) -> None:
        self._store = store or MemoryCacheStore()
        self._ttls = dict(ttls or DEFAULT_TTLS)
        self._clock = clock
        self._max_bytes = max_bytes
        self._entries: dict[str, str] = {}
        self._size = 0
        # key -> payload, or None for a pending delete
        self._pending: dict[str, str | None] = {}
        self._flush_task: asyncio.Task | None = None

    @staticmethod
    def make_key(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def load(self) -> None:
        """Populate the in-process map from the backing store."""
        try:
            rows = await self._store.load_all()
        except Exception as exc:
            logger.warning("Failed to load cache entries: %s", exc)
            return
        # Writes and deletes made in this process are newer than the stored rows
        for key, payload in rows.items():
            if key not in self._entries and key not in self._pending:
                self._entries[key] = payload
        self._size = sum(len(k) + len(v) for k, v in self._entries.items())
        logger.info("Loaded %d cache entries", len(rows))

    def put(self, namespace: str, key: str, value: Any) -> bool:
        """Store a value. Returns False (after logging) if the write failed."""
        try:
            self._put(namespace, key, value)
        except CacheWriteFailure as exc:
            logger.warning("Cache write %s:%s failed: %s", namespace, key, exc)
            return False
        return True

    def _put(self, namespace: str, key: str, value: Any) -> None:
        if namespace not in self._ttls:
            raise CacheWriteFailure(f"unknown namespace {namespace!r}")
        full_key = self.make_key(namespace, key)
        try:
            payload = json.dumps({namespace: value, "savedAt": self._now_ms()})
        except (TypeError, ValueError) as exc:
            raise CacheWriteFailure(f"value is not serializable: {exc}") from exc

        previous = self._entries.get(full_key)
        delta = len(full_key) + len(payload)
        if previous is not None:
            delta -= len(full_key) + len(previous)
        if self._size + delta > self._max_bytes:
            raise CacheWriteFailure("quota exceeded")

        self._entries[full_key] = payload
        self._size += delta
        self._pending[full_key] = payload
        self._schedule_flush()

    def get_entry(self, namespace: str, key: str) -> CacheEntry | None:
        ttl = self._ttls.get(namespace)
        if ttl is None:
            return None
        full_key = self.make_key(namespace, key)
        raw = self._entries.get(full_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            saved_at = int(data["savedAt"])
            value = data[namespace]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Ignoring unreadable cache entry %s", full_key)
            return None
        # Lazy expiry: stale entries read as absent and stay until overwritten
        if self._now_ms() - saved_at >= ttl * 1000:
            logger.debug("Cache entry %s expired", full_key)
            return None
        return CacheEntry(value=value, saved_at=saved_at)

    def get(self, namespace: str, key: str) -> Any | None:
        entry = self.get_entry(namespace, key)
        return entry.value if entry else None

    def discard(self, namespace: str, key: str) -> None:
        full_key = self.make_key(namespace, key)
        previous = self._entries.pop(full_key, None)
        if previous is None:
            return
        self._size -= len(full_key) + len(previous)
        self._pending[full_key] = None
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); pending writes go out on the next flush()
            return
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self.flush())

    async def flush(self) -> None:
        """Drain queued writes to the backing store."""
        while self._pending:
            key, payload = next(iter(self._pending.items()))
            del self._pending[key]
            try:
                if payload is None:
                    await self._store.delete(key)
                else:
                    await self._store.write(key, payload)
            except Exception as exc:
                logger.warning("Cache store write for %s failed: %s", key, exc)

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush()
        await self._store.close()
