"""SQLite implementation of the chain repository."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from ..errors import ChainNotFoundError
from ..models import Chain, ChainStatus, SerializedObject, Step
from .repository import ChainRepository, ChainTransaction
from .rows import (
    CHAIN_COLUMNS,
    STEP_COLUMNS,
    as_utc,
    chain_from_row,
    chain_values,
    iso_timestamp,
    step_from_row,
    step_values,
)

_CHAIN_SELECT = f"SELECT {', '.join(CHAIN_COLUMNS)} FROM chains"
_STEP_SELECT = f"SELECT {', '.join(STEP_COLUMNS)} FROM steps"
_CHAIN_INSERT = (
    f"INSERT INTO chains ({', '.join(CHAIN_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in CHAIN_COLUMNS)})"
)
_CHAIN_UPDATE = (
    "UPDATE chains SET "
    + ", ".join(f"{c} = ?" for c in CHAIN_COLUMNS[1:])
    + " WHERE id = ?"
)
_STEP_INSERT = (
    f"INSERT INTO steps ({', '.join(STEP_COLUMNS[1:])}) "
    f"VALUES ({', '.join('?' for _ in STEP_COLUMNS[1:])})"
)


class SQLiteChainTransaction(ChainTransaction):
    def __init__(self, repo: "SQLiteChainRepository", chain: Chain) -> None:
        self._repo = repo
        self.chain = chain

    async def save_chain(self) -> None:
        values = chain_values(self.chain, iso_timestamp)
        await asyncio.to_thread(self._repo._run, _CHAIN_UPDATE, *values[1:], values[0])

    async def head_step(self) -> Optional[Step]:
        row = await asyncio.to_thread(
            self._repo._fetchone,
            f"{_STEP_SELECT} WHERE chain_id = ? ORDER BY position LIMIT 1",
            self.chain.id,
        )
        return step_from_row(row) if row else None

    async def get_step(self, step_id: int) -> Optional[Step]:
        row = await asyncio.to_thread(
            self._repo._fetchone,
            f"{_STEP_SELECT} WHERE id = ? AND chain_id = ?",
            step_id,
            self.chain.id,
        )
        return step_from_row(row) if row else None

    async def delete_step(self, step_id: int) -> None:
        await asyncio.to_thread(
            self._repo._run,
            "DELETE FROM steps WHERE id = ? AND chain_id = ?",
            step_id,
            self.chain.id,
        )

    async def delete_steps(self) -> int:
        return await asyncio.to_thread(
            self._repo._run, "DELETE FROM steps WHERE chain_id = ?", self.chain.id
        )

    async def append_step(
        self,
        job: SerializedObject,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> Step:
        # Steps are deleted once processed, so the chain row keeps the high-water mark.
        await asyncio.to_thread(
            self._repo._run,
            "UPDATE chains SET max_position = max_position + 1 WHERE id = ?",
            self.chain.id,
        )
        row = await asyncio.to_thread(
            self._repo._fetchone,
            "SELECT max_position FROM chains WHERE id = ?",
            self.chain.id,
        )
        step = Step(
            chain_id=self.chain.id,
            order=row["max_position"],
            job=job,
            delay=delay,
            queue=queue,
            connection=connection,
        )
        step_id = await asyncio.to_thread(
            self._repo._insert, _STEP_INSERT, *step_values(step, iso_timestamp)
        )
        return step.model_copy(update={"id": step_id})


class SQLiteChainRepository(ChainRepository):
    """Persist chain state using SQLite.

    Transactions use ``BEGIN IMMEDIATE`` so that concurrent processes sharing
    the database file serialize their writes. Within one process an
    ``asyncio.Lock`` keeps statements from different coroutines off the
    shared connection while a transaction is open.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS chains (
                id TEXT PRIMARY KEY,
                name TEXT,
                status TEXT NOT NULL,
                resume_at TEXT,
                delay INTEGER,
                queue TEXT,
                connection TEXT,
                on_then TEXT NOT NULL,
                on_catch TEXT NOT NULL,
                on_finally TEXT NOT NULL,
                on_paused TEXT NOT NULL,
                global_middleware TEXT NOT NULL,
                allow_failures INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                failure TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                last_processed_at TEXT,
                max_position INTEGER NOT NULL DEFAULT -1
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain_id TEXT NOT NULL REFERENCES chains(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                job TEXT NOT NULL,
                delay INTEGER,
                queue TEXT,
                connection TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE (chain_id, position)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS chains_status_idx ON chains (status, resume_at)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _run(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.rowcount

    def _insert(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _create(self, chain: Chain, steps: list[Step]) -> list[Step]:
        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            cur.execute(_CHAIN_INSERT, chain_values(chain, iso_timestamp))
            stored = []
            for step in steps:
                cur.execute(_STEP_INSERT, step_values(step, iso_timestamp))
                stored.append(step.model_copy(update={"id": cur.lastrowid}))
            cur.execute(
                "UPDATE chains SET max_position = ? WHERE id = ?",
                (max((s.order for s in steps), default=-1), chain.id),
            )
        except BaseException:
            cur.execute("ROLLBACK")
            raise
        cur.execute("COMMIT")
        return stored

    # ------------------------------------------------------------------
    # Repository API
    async def create_chain(self, chain: Chain, steps: list[Step]) -> list[Step]:
        async with self._lock:
            return await asyncio.to_thread(self._create, chain, steps)

    async def get_chain(self, chain_id: str) -> Chain | None:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone, f"{_CHAIN_SELECT} WHERE id = ?", chain_id
            )
        return chain_from_row(row) if row else None

    async def list_chains(self) -> list[Chain]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall, f"{_CHAIN_SELECT} ORDER BY created_at"
            )
        return [chain_from_row(r) for r in rows]

    async def get_steps(self, chain_id: str) -> list[Step]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"{_STEP_SELECT} WHERE chain_id = ? ORDER BY position",
                chain_id,
            )
        return [step_from_row(r) for r in rows]

    async def get_step(self, step_id: int) -> Step | None:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone, f"{_STEP_SELECT} WHERE id = ?", step_id
            )
        return step_from_row(row) if row else None

    async def increment_attempts(self, step_id: int) -> int:
        async with self._lock:
            await asyncio.to_thread(
                self._run, "UPDATE steps SET attempts = attempts + 1 WHERE id = ?", step_id
            )
            row = await asyncio.to_thread(
                self._fetchone, "SELECT attempts FROM steps WHERE id = ?", step_id
            )
        return row["attempts"] if row else 0

    @asynccontextmanager
    async def lock(self, chain_id: str) -> AsyncIterator[SQLiteChainTransaction]:
        async with self._lock:
            await asyncio.to_thread(self._run, "BEGIN IMMEDIATE")
            try:
                row = await asyncio.to_thread(
                    self._fetchone, f"{_CHAIN_SELECT} WHERE id = ?", chain_id
                )
                if row is None:
                    raise ChainNotFoundError(chain_id)
                yield SQLiteChainTransaction(self, chain_from_row(row))
            except BaseException:
                await asyncio.to_thread(self._run, "ROLLBACK")
                raise
            await asyncio.to_thread(self._run, "COMMIT")

    async def list_due_chains(self, now: datetime) -> list[Chain]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"{_CHAIN_SELECT} WHERE status = ? ORDER BY resume_at",
                ChainStatus.PAUSED.value,
            )
        now = as_utc(now)
        chains = [chain_from_row(r) for r in rows]
        return [c for c in chains if c.resume_at is not None and c.resume_at <= now]

    async def list_prunable(self, older_than: datetime) -> list[Chain]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"{_CHAIN_SELECT} WHERE status IN (?, ?)",
                ChainStatus.FINISHED.value,
                ChainStatus.FAILED.value,
            )
        older_than = as_utc(older_than)
        chains = [chain_from_row(r) for r in rows]
        return [c for c in chains if c.finished_at is not None and c.finished_at < older_than]

    async def delete_chain(self, chain_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._run, "DELETE FROM steps WHERE chain_id = ?", chain_id)
            await asyncio.to_thread(self._run, "DELETE FROM chains WHERE id = ?", chain_id)
