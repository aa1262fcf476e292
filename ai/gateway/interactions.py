from __future__ import annotations
"""Interaction logging.

Every terminal request outcome produces exactly one InteractionLogEntry.
``InteractionLogger.record`` hands the entry to a background task so the
response path never waits on persistence.  Persistence failures go to the
diagnostics channel and are otherwise dropped.

Two stores are provided:

* MemoryInteractionStore: list-backed, used by default and in tests.
* SqliteInteractionStore: append-only table in an on-disk SQLite DB.
"""

import asyncio
import json
import sqlite3
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set

from ai.gateway.models import InteractionLogEntry
from core.errors import LoggingError
from core.logging import diagnostics, logger

__all__ = [
    "InteractionStore",
    "MemoryInteractionStore",
    "SqliteInteractionStore",
    "InteractionLogger",
    "summarize_performance",
]


class InteractionStore(Protocol):
    async def append(self, entry: InteractionLogEntry) -> None:
        ...

    async def query(
        self,
        user_id: Optional[str] = None,
        model_used: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[InteractionLogEntry]:
        ...

    async def since(self, start: Optional[datetime] = None) -> List[InteractionLogEntry]:
        ...


def summarize_performance(entries: List[InteractionLogEntry]) -> Dict[str, Any]:
    """Aggregate request count, success rate, latency and per-model usage."""
    total = len(entries)
    successful = sum(1 for e in entries if e.success)
    latencies = [e.latency_ms for e in entries if e.latency_ms > 0]
    usage = Counter(e.model_used for e in entries)
    per_model_latency: Dict[str, List[int]] = {}
    for e in entries:
        if e.latency_ms > 0:
            per_model_latency.setdefault(e.model_used, []).append(e.latency_ms)
    return {
        "summary": {
            "total_requests": total,
            "success_rate": round(successful / total * 100, 1) if total else 0.0,
            "avg_latency": round(sum(latencies) / len(latencies), 1) if latencies else 0.0,
        },
        "model_usage": [
            {"model": model, "count": count, "percentage": round(count / total * 100, 1)}
            for model, count in usage.most_common()
        ],
        "avg_response_times": [
            {"model": model, "avg_time": round(sum(values) / len(values), 2)}
            for model, values in per_model_latency.items()
        ],
    }


def _matches(entry: InteractionLogEntry, user_id, model_used, success) -> bool:
    if user_id is not None and entry.user_id != user_id:
        return False
    if model_used is not None and entry.model_used != model_used:
        return False
    if success is not None and entry.success != success:
        return False
    return True


class MemoryInteractionStore:
    """In-process append-only log."""

    def __init__(self) -> None:
        self._entries: List[InteractionLogEntry] = []

    async def append(self, entry: InteractionLogEntry) -> None:
        self._entries.append(entry)

    async def query(self, user_id=None, model_used=None, success=None, limit: int = 20, offset: int = 0):
        rows = [e for e in reversed(self._entries) if _matches(e, user_id, model_used, success)]
        return rows[offset: offset + limit]

    async def since(self, start: Optional[datetime] = None) -> List[InteractionLogEntry]:
        return [e for e in self._entries if start is None or e.created_at >= start]

    @property
    def entries(self) -> List[InteractionLogEntry]:
        return list(self._entries)


class SqliteInteractionStore:
    """Append-only interaction log in an on-disk SQLite DB.

    sqlite3 calls block, so each one runs in a worker thread; the lock keeps
    writes ordered.
    """

    def __init__(self, db_path: Path) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _init_db(self) -> None:
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS interactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    model_used TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_interactions_created ON interactions(created_at)")

    def _insert(self, entry: InteractionLogEntry) -> None:
        with sqlite3.connect(self._db_path) as conn:
            conn.execute(
                "INSERT INTO interactions (id, user_id, model_used, success, created_at, body) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.user_id,
                    entry.model_used,
                    int(entry.success),
                    entry.created_at.isoformat(),
                    entry.model_dump_json(),
                ),
            )

    def _select(self, sql: str, params: tuple) -> List[InteractionLogEntry]:
        with sqlite3.connect(self._db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [InteractionLogEntry.model_validate(json.loads(body)) for (body,) in rows]

    async def append(self, entry: InteractionLogEntry) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._insert, entry)
            except sqlite3.Error as e:
                raise LoggingError(f"Failed to persist interaction {entry.id}: {e}") from e

    async def query(self, user_id=None, model_used=None, success=None, limit: int = 20, offset: int = 0):
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if model_used is not None:
            clauses.append("model_used = ?")
            params.append(model_used)
        if success is not None:
            clauses.append("success = ?")
            params.append(int(success))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT body FROM interactions {where} ORDER BY created_at DESC LIMIT ? OFFSET ?"
        async with self._lock:
            return await asyncio.to_thread(self._select, sql, (*params, limit, offset))

    async def since(self, start: Optional[datetime] = None) -> List[InteractionLogEntry]:
        async with self._lock:
            if start is None:
                return await asyncio.to_thread(
                    self._select, "SELECT body FROM interactions ORDER BY created_at", ()
                )
            return await asyncio.to_thread(
                self._select,
                "SELECT body FROM interactions WHERE created_at >= ? ORDER BY created_at",
                (start.isoformat(),),
            )


class InteractionLogger:
    """Fire-and-forget recorder in front of an InteractionStore."""

    def __init__(self, store: Optional[InteractionStore] = None, enabled: bool = True):
        self.store = store if store is not None else MemoryInteractionStore()
        self.enabled = enabled
        self._pending: Set[asyncio.Task] = set()

    def record(self, entry: InteractionLogEntry) -> None:
        """Schedule persistence of ``entry`` without waiting for it."""
        if not self.enabled:
            return
        task = asyncio.get_running_loop().create_task(self._persist(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, entry: InteractionLogEntry) -> None:
        try:
            await self.store.append(entry)
        except Exception as e:
            diagnostics.error(f"Failed to log AI interaction {entry.id}: {e}")
            return
        logger.debug(f"Recorded interaction {entry.id} (model={entry.model_used}, success={entry.success})")

    async def flush(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def query(self, **filters) -> List[InteractionLogEntry]:
        return await self.store.query(**filters)

    async def performance(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        return summarize_performance(await self.store.since(since))
