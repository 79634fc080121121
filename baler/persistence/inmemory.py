"""In-memory implementation of the chain repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional

from ..errors import ChainNotFoundError
from ..models import Chain, ChainStatus, SerializedObject, Step
from .repository import ChainRepository, ChainTransaction
from .rows import as_utc


class InMemoryChainTransaction(ChainTransaction):
    def __init__(self, repo: "InMemoryChainRepository", chain: Chain) -> None:
        self._repo = repo
        self.chain = chain

    async def save_chain(self) -> None:
        self._repo._chains[self.chain.id] = self.chain.model_copy(deep=True)

    def _steps(self) -> list[Step]:
        return self._repo._chain_steps(self.chain.id)

    async def head_step(self) -> Optional[Step]:
        steps = self._steps()
        return steps[0].model_copy(deep=True) if steps else None

    async def get_step(self, step_id: int) -> Optional[Step]:
        step = self._repo._steps.get(step_id)
        if step is None or step.chain_id != self.chain.id:
            return None
        return step.model_copy(deep=True)

    async def delete_step(self, step_id: int) -> None:
        step = self._repo._steps.get(step_id)
        if step is not None and step.chain_id == self.chain.id:
            del self._repo._steps[step_id]

    async def delete_steps(self) -> int:
        steps = self._steps()
        for step in steps:
            del self._repo._steps[step.id]
        return len(steps)

    async def append_step(
        self,
        job: SerializedObject,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> Step:
        position = self._repo._max_order.get(self.chain.id, -1) + 1
        step = Step(
            chain_id=self.chain.id,
            order=position,
            job=job,
            delay=delay,
            queue=queue,
            connection=connection,
        )
        return self._repo._store_step(step)


class InMemoryChainRepository(ChainRepository):
    """Store chain state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read hands out a copy so that
    callers only change state through a transaction, like with a database.
    """

    def __init__(self) -> None:
        self._chains: Dict[str, Chain] = {}
        self._steps: Dict[int, Step] = {}
        self._max_order: Dict[str, int] = {}
        self._step_id = 0
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    def _store_step(self, step: Step) -> Step:
        self._step_id += 1
        stored = step.model_copy(update={"id": self._step_id}, deep=True)
        self._steps[stored.id] = stored
        self._max_order[stored.chain_id] = max(
            self._max_order.get(stored.chain_id, -1), stored.order
        )
        return stored.model_copy(deep=True)

    def _chain_steps(self, chain_id: str) -> list[Step]:
        return sorted(
            (s for s in self._steps.values() if s.chain_id == chain_id),
            key=lambda s: s.order,
        )

    # ------------------------------------------------------------------
    async def create_chain(self, chain: Chain, steps: list[Step]) -> list[Step]:
        orders = [s.order for s in steps]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Duplicate step order in chain {chain.id}")
        if chain.id in self._chains:
            raise ValueError(f"Chain {chain.id} already exists")
        self._chains[chain.id] = chain.model_copy(deep=True)
        return [self._store_step(s) for s in steps]

    async def get_chain(self, chain_id: str) -> Chain | None:
        chain = self._chains.get(chain_id)
        return chain.model_copy(deep=True) if chain else None

    async def list_chains(self) -> list[Chain]:
        return [c.model_copy(deep=True) for c in self._chains.values()]

    async def get_steps(self, chain_id: str) -> list[Step]:
        return [s.model_copy(deep=True) for s in self._chain_steps(chain_id)]

    async def get_step(self, step_id: int) -> Step | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def increment_attempts(self, step_id: int) -> int:
        step = self._steps.get(step_id)
        if step is None:
            return 0
        step.attempts += 1
        return step.attempts

    @asynccontextmanager
    async def lock(self, chain_id: str) -> AsyncIterator[InMemoryChainTransaction]:
        if chain_id not in self._chains:
            raise ChainNotFoundError(chain_id)
        async with self._locks[chain_id]:
            chain = self._chains.get(chain_id)
            if chain is None:
                raise ChainNotFoundError(chain_id)
            chain_snapshot = chain.model_copy(deep=True)
            steps_snapshot = {
                s.id: s.model_copy(deep=True) for s in self._chain_steps(chain_id)
            }
            try:
                yield InMemoryChainTransaction(self, chain.model_copy(deep=True))
            except BaseException:
                self._chains[chain_id] = chain_snapshot
                for step in self._chain_steps(chain_id):
                    del self._steps[step.id]
                self._steps.update(steps_snapshot)
                raise

    async def list_due_chains(self, now: datetime) -> list[Chain]:
        now = as_utc(now)
        return [
            c.model_copy(deep=True)
            for c in self._chains.values()
            if c.status == ChainStatus.PAUSED
            and c.resume_at is not None
            and as_utc(c.resume_at) <= now
        ]

    async def list_prunable(self, older_than: datetime) -> list[Chain]:
        older_than = as_utc(older_than)
        return [
            c.model_copy(deep=True)
            for c in self._chains.values()
            if c.is_terminal
            and c.finished_at is not None
            and as_utc(c.finished_at) < older_than
        ]

    async def delete_chain(self, chain_id: str) -> None:
        self._chains.pop(chain_id, None)
        for step in self._chain_steps(chain_id):
            del self._steps[step.id]
        self._locks.pop(chain_id, None)
