"""Repository abstraction for chain state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from ..models import Chain, SerializedObject, Step


class ChainTransaction(Protocol):
    """Unit of work holding the exclusive lock on one chain.

    ``chain`` is loaded when the lock is taken. Changes to it are persisted
    by :meth:`save_chain`; everything is committed when the surrounding
    ``lock()`` block exits cleanly and rolled back when it raises.
    """

    chain: Chain

    async def save_chain(self) -> None:
        """Write ``chain`` back to storage."""

    async def head_step(self) -> Optional[Step]:
        """Return the remaining step with the smallest order."""

    async def get_step(self, step_id: int) -> Optional[Step]:
        """Return the step if it still belongs to this chain."""

    async def delete_step(self, step_id: int) -> None:
        """Remove a processed step."""

    async def delete_steps(self) -> int:
        """Remove every remaining step, returning how many were deleted."""

    async def append_step(
        self,
        job: SerializedObject,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> Step:
        """Insert a step after the current tail."""


class ChainRepository(Protocol):
    """Protocol for chain persistence backends."""

    async def create_chain(self, chain: Chain, steps: list[Step]) -> list[Step]:
        """Persist a chain and its steps atomically, returning the stored steps."""

    async def get_chain(self, chain_id: str) -> Chain | None:
        """Retrieve a chain by id."""

    async def list_chains(self) -> list[Chain]:
        """Return all persisted chains."""

    async def get_steps(self, chain_id: str) -> list[Step]:
        """Return the remaining steps of a chain in execution order."""

    async def get_step(self, step_id: int) -> Step | None:
        """Retrieve a single step by id."""

    async def increment_attempts(self, step_id: int) -> int:
        """Bump the attempt counter of a step and return the new value."""

    def lock(self, chain_id: str) -> AsyncContextManager[ChainTransaction]:
        """Open a transaction holding the exclusive lock on ``chain_id``.

        Raises:
            ChainNotFoundError: If the chain does not exist.
        """

    async def list_due_chains(self, now: datetime) -> list[Chain]:
        """Return paused chains whose ``resume_at`` is not after ``now``."""

    async def list_prunable(self, older_than: datetime) -> list[Chain]:
        """Return finished or failed chains that ended before ``older_than``."""

    async def delete_chain(self, chain_id: str) -> None:
        """Remove a chain and any steps it still owns."""
