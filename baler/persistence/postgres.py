"""PostgreSQL implementation of the chain repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import asyncpg

from ..errors import ChainNotFoundError
from ..models import Chain, ChainStatus, SerializedObject, Step
from .repository import ChainRepository, ChainTransaction
from .rows import (
    CHAIN_COLUMNS,
    STEP_COLUMNS,
    as_utc,
    chain_from_row,
    chain_values,
    step_from_row,
    step_values,
)


def _native_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


_CHAIN_SELECT = f"SELECT {', '.join(CHAIN_COLUMNS)} FROM chains"
_STEP_SELECT = f"SELECT {', '.join(STEP_COLUMNS)} FROM steps"
_CHAIN_INSERT = (
    f"INSERT INTO chains ({', '.join(CHAIN_COLUMNS)}) "
    f"VALUES ({_placeholders(len(CHAIN_COLUMNS))})"
)
_CHAIN_UPDATE = (
    "UPDATE chains SET "
    + ", ".join(f"{c} = ${i}" for i, c in enumerate(CHAIN_COLUMNS[1:], start=2))
    + " WHERE id = $1"
)
_STEP_INSERT = (
    f"INSERT INTO steps ({', '.join(STEP_COLUMNS[1:])}) "
    f"VALUES ({_placeholders(len(STEP_COLUMNS) - 1)}) RETURNING id"
)


class PostgresChainTransaction(ChainTransaction):
    def __init__(self, conn: asyncpg.Connection, chain: Chain) -> None:
        self._conn = conn
        self.chain = chain

    async def save_chain(self) -> None:
        await self._conn.execute(
            _CHAIN_UPDATE, *chain_values(self.chain, _native_timestamp)
        )

    async def head_step(self) -> Optional[Step]:
        row = await self._conn.fetchrow(
            f"{_STEP_SELECT} WHERE chain_id = $1 ORDER BY position LIMIT 1",
            self.chain.id,
        )
        return step_from_row(row) if row else None

    async def get_step(self, step_id: int) -> Optional[Step]:
        row = await self._conn.fetchrow(
            f"{_STEP_SELECT} WHERE id = $1 AND chain_id = $2", step_id, self.chain.id
        )
        return step_from_row(row) if row else None

    async def delete_step(self, step_id: int) -> None:
        await self._conn.execute(
            "DELETE FROM steps WHERE id = $1 AND chain_id = $2", step_id, self.chain.id
        )

    async def delete_steps(self) -> int:
        status = await self._conn.execute(
            "DELETE FROM steps WHERE chain_id = $1", self.chain.id
        )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    async def append_step(
        self,
        job: SerializedObject,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> Step:
        position = await self._conn.fetchval(
            "UPDATE chains SET max_position = max_position + 1 WHERE id = $1 RETURNING max_position",
            self.chain.id,
        )
        step = Step(
            chain_id=self.chain.id,
            order=position,
            job=job,
            delay=delay,
            queue=queue,
            connection=connection,
        )
        step_id = await self._conn.fetchval(
            _STEP_INSERT, *step_values(step, _native_timestamp)
        )
        return step.model_copy(update={"id": step_id})


class PostgresChainRepository(ChainRepository):
    """Persist chain state using PostgreSQL.

    ``lock()`` takes a ``SELECT ... FOR UPDATE`` row lock on the chain for the
    duration of its transaction.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chains (
                id TEXT PRIMARY KEY,
                name TEXT,
                status TEXT NOT NULL,
                resume_at TIMESTAMPTZ,
                delay INTEGER,
                queue TEXT,
                connection TEXT,
                on_then JSONB NOT NULL,
                on_catch JSONB NOT NULL,
                on_finally JSONB NOT NULL,
                on_paused JSONB NOT NULL,
                global_middleware JSONB NOT NULL,
                allow_failures BOOLEAN NOT NULL DEFAULT FALSE,
                data JSONB NOT NULL,
                failure TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                last_processed_at TIMESTAMPTZ,
                max_position INTEGER NOT NULL DEFAULT -1
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                id SERIAL PRIMARY KEY,
                chain_id TEXT NOT NULL REFERENCES chains(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                job JSONB NOT NULL,
                delay INTEGER,
                queue TEXT,
                connection TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE (chain_id, position)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS chains_status_idx ON chains (status, resume_at)"
        )

    # ------------------------------------------------------------------
    async def create_chain(self, chain: Chain, steps: list[Step]) -> list[Step]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(_CHAIN_INSERT, *chain_values(chain, _native_timestamp))
                stored = []
                for step in steps:
                    step_id = await conn.fetchval(
                        _STEP_INSERT, *step_values(step, _native_timestamp)
                    )
                    stored.append(step.model_copy(update={"id": step_id}))
                await conn.execute(
                    "UPDATE chains SET max_position = $1 WHERE id = $2",
                    max((s.order for s in steps), default=-1),
                    chain.id,
                )
        finally:
            await conn.close()
        return stored

    async def get_chain(self, chain_id: str) -> Chain | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"{_CHAIN_SELECT} WHERE id = $1", chain_id)
        finally:
            await conn.close()
        return chain_from_row(row) if row else None

    async def list_chains(self) -> list[Chain]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"{_CHAIN_SELECT} ORDER BY created_at")
        finally:
            await conn.close()
        return [chain_from_row(r) for r in rows]

    async def get_steps(self, chain_id: str) -> list[Step]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"{_STEP_SELECT} WHERE chain_id = $1 ORDER BY position", chain_id
            )
        finally:
            await conn.close()
        return [step_from_row(r) for r in rows]

    async def get_step(self, step_id: int) -> Step | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"{_STEP_SELECT} WHERE id = $1", step_id)
        finally:
            await conn.close()
        return step_from_row(row) if row else None

    async def increment_attempts(self, step_id: int) -> int:
        conn = await self._connect()
        try:
            attempts = await conn.fetchval(
                "UPDATE steps SET attempts = attempts + 1 WHERE id = $1 RETURNING attempts",
                step_id,
            )
        finally:
            await conn.close()
        return attempts or 0

    @asynccontextmanager
    async def lock(self, chain_id: str) -> AsyncIterator[PostgresChainTransaction]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"{_CHAIN_SELECT} WHERE id = $1 FOR UPDATE", chain_id
                )
                if row is None:
                    raise ChainNotFoundError(chain_id)
                yield PostgresChainTransaction(conn, chain_from_row(row))
        finally:
            await conn.close()

    async def list_due_chains(self, now: datetime) -> list[Chain]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"{_CHAIN_SELECT} WHERE status = $1 AND resume_at <= $2 ORDER BY resume_at",
                ChainStatus.PAUSED.value,
                as_utc(now),
            )
        finally:
            await conn.close()
        return [chain_from_row(r) for r in rows]

    async def list_prunable(self, older_than: datetime) -> list[Chain]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"{_CHAIN_SELECT} WHERE status = ANY($1::text[]) AND finished_at < $2",
                [ChainStatus.FINISHED.value, ChainStatus.FAILED.value],
                as_utc(older_than),
            )
        finally:
            await conn.close()
        return [chain_from_row(r) for r in rows]

    async def delete_chain(self, chain_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM steps WHERE chain_id = $1", chain_id)
                await conn.execute("DELETE FROM chains WHERE id = $1", chain_id)
        finally:
            await conn.close()
