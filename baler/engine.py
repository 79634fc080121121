"""Advance engine: decides which step of a chain runs next and when."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .callbacks import CALLBACKS, CallbackRegistry
from .config import BalerConfig, load_config
from .builder import check_delay
from .errors import ChainNotFoundError, ConfigurationError, StaleSignalError
from .middleware import compose_middleware
from .models import CallbackRef, Chain, ChainStatus, Step, StepMessage, utcnow
from .outcomes import Appended, Completed, Failed, Outcome, Paused, Resumed, Started
from .persistence import ChainRepository, ChainTransaction, get_repository
from .persistence.rows import as_utc
from .serialization import ObjectDeserializer, ObjectSerializer
from .transports import BaseTransport, TransportPool

if TYPE_CHECKING:
    from .builder import ChainBuilder
    from .jobs import StackableJob

logger = logging.getLogger(__name__)


@dataclass
class AdvanceResult:
    """What a call to :meth:`ChainEngine.advance` did."""

    chain: Optional[Chain]
    dispatched: Optional[StepMessage] = None
    stale: bool = False
    callback_errors: List[BaseException] = field(default_factory=list)


class ChainEngine:
    """Moves chains through their steps.

    Every state change goes through :meth:`advance`, which runs under the
    repository's per-chain lock. At most one step per chain is ever submitted
    to the work queue: a new submission only happens after the step in flight
    completed, failed, paused or after an explicit resume.
    """

    def __init__(
        self,
        repository: Optional[ChainRepository] = None,
        transports: Union[TransportPool, BaseTransport, None] = None,
        config: Optional[BalerConfig] = None,
        callbacks: Optional[CallbackRegistry] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=self.config)
        if transports is None:
            transports = TransportPool.from_config(self.config)
        elif isinstance(transports, BaseTransport):
            transports = TransportPool(transports, config=self.config)
        self.transports: TransportPool = transports
        self.callbacks = callbacks or CALLBACKS

    @property
    def automatic_processing(self) -> bool:
        return self.config.automatic_processing

    def build(self) -> "ChainBuilder":
        """Start describing a new chain."""
        from .builder import ChainBuilder

        return ChainBuilder(self)

    # ------------------------------------------------------------------
    # Public operations
    async def start(self, chain_id: str) -> AdvanceResult:
        return await self.advance(chain_id, Started())

    async def complete(self, chain_id: str, step_id: int) -> AdvanceResult:
        return await self.advance(chain_id, Completed(step_id=step_id))

    async def fail(
        self, chain_id: str, step_id: Optional[int] = None, error: Optional[str] = None
    ) -> AdvanceResult:
        return await self.advance(chain_id, Failed(step_id=step_id, error=error))

    async def pause(
        self, chain_id: str, step_id: int, resume_at: datetime, advance: bool = False
    ) -> AdvanceResult:
        return await self.advance(
            chain_id, Paused(step_id=step_id, resume_at=resume_at, advance=advance)
        )

    async def append(
        self,
        chain_id: str,
        job: "StackableJob",
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> AdvanceResult:
        return await self.advance(
            chain_id,
            Appended(
                job=ObjectSerializer.serialize(job),
                delay=check_delay(delay),
                queue=queue,
                connection=self.transports.check(connection),
            ),
        )

    async def resume(self, chain_id: str, force: bool = True) -> AdvanceResult:
        """Resume a paused chain, by default without waiting for ``resume_at``."""
        return await self.advance(chain_id, Resumed(force=force))

    async def cancel(self, chain_id: str) -> Chain:
        """Stop a chain without firing callbacks.

        The chain is marked failed with ``failure="cancelled"`` and its
        remaining steps are deleted. A step already running is not
        interrupted, but ``CheckFinished`` keeps queued ones from starting.
        """

        async with self.repository.lock(chain_id) as tx:
            if tx.chain.is_terminal:
                return tx.chain
            tx.chain.mark_failed("cancelled")
            deleted = await tx.delete_steps()
            await tx.save_chain()
        logger.info(f"Cancelled chain {chain_id}, dropped {deleted} steps")
        return tx.chain

    async def set_data(self, chain_id: str, key: str, value: Any) -> None:
        async with self.repository.lock(chain_id) as tx:
            tx.chain.data[key] = value
            await tx.save_chain()

    async def get_data(self, chain_id: str) -> Dict[str, Any]:
        chain = await self.repository.get_chain(chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)
        return chain.data

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Resume every paused chain whose ``resume_at`` has passed.

        Chains that disappear mid-sweep are skipped. Returns the ids of the
        chains that were resumed.
        """

        now = as_utc(now or utcnow())
        resumed: List[str] = []
        for chain in await self.repository.list_due_chains(now):
            try:
                result = await self.advance(chain.id, Resumed(now=now))
            except ChainNotFoundError:
                logger.warning(f"Chain {chain.id} vanished before it could be resumed")
                continue
            if not result.stale:
                resumed.append(chain.id)
        logger.info(f"Resume sweep at {now.isoformat()} resumed {len(resumed)} chains")
        return resumed

    async def prune(
        self,
        retention_window: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete finished and failed chains older than the retention window."""

        window = retention_window if retention_window is not None else self.config.retention_window
        cutoff = as_utc(now or utcnow()) - window
        chains = await self.repository.list_prunable(cutoff)
        for chain in chains:
            await self.repository.delete_chain(chain.id)
        logger.info(f"Pruned {len(chains)} chains that ended before {cutoff.isoformat()}")
        return len(chains)

    # ------------------------------------------------------------------
    # Advance engine
    async def advance(self, chain_id: str, outcome: Outcome) -> AdvanceResult:
        """Apply ``outcome`` to the chain under its lock.

        Duplicate or out-of-date signals are logged and ignored. Callbacks
        fire only after the new state is committed; their errors are logged
        and returned on the result, never raised.

        Raises:
            ChainNotFoundError: If the chain does not exist.
        """

        callbacks: List[CallbackRef] = []
        try:
            async with self.repository.lock(chain_id) as tx:
                result = AdvanceResult(chain=tx.chain)
                await self._apply(tx, outcome, result, callbacks)
        except StaleSignalError as e:
            logger.info(f"Ignoring {outcome.kind} signal: {e}")
            return AdvanceResult(chain=await self.repository.get_chain(chain_id), stale=True)

        for ref in callbacks:
            try:
                await self.callbacks.invoke(ref)
            except Exception as e:
                logger.exception(
                    f"Callback '{ref.name}' of chain {chain_id} failed; chain stays {result.chain.status.value}"
                )
                result.callback_errors.append(e)
        return result

    async def _apply(
        self,
        tx: ChainTransaction,
        outcome: Outcome,
        result: AdvanceResult,
        callbacks: List[CallbackRef],
    ) -> None:
        chain = tx.chain
        if chain.is_terminal:
            raise StaleSignalError(chain.id, f"chain already {chain.status.value}")

        if isinstance(outcome, Started):
            if chain.status != ChainStatus.PENDING:
                raise StaleSignalError(chain.id, f"chain already {chain.status.value}")
            chain.mark_running()
            logger.info(f"Starting chain {chain.id}")
            await self._dispatch_head(tx, result, callbacks)

        elif isinstance(outcome, Completed):
            await self._require_head(tx, outcome.step_id, ChainStatus.RUNNING)
            await tx.delete_step(outcome.step_id)
            await self._dispatch_head(tx, result, callbacks)

        elif isinstance(outcome, Failed):
            if outcome.step_id is not None:
                await self._require_head(tx, outcome.step_id, ChainStatus.RUNNING)
            elif chain.status == ChainStatus.PENDING:
                raise StaleSignalError(chain.id, "chain has not been started")
            if chain.allow_failures and outcome.step_id is not None:
                logger.warning(
                    f"Step {outcome.step_id} of chain {chain.id} failed, continuing: {outcome.error}"
                )
                chain.failure = outcome.error
                await tx.delete_step(outcome.step_id)
                await self._dispatch_head(tx, result, callbacks)
            else:
                chain.mark_failed(outcome.error)
                deleted = await tx.delete_steps()
                await tx.save_chain()
                logger.info(
                    f"Chain {chain.id} failed, dropped {deleted} remaining steps: {outcome.error}"
                )
                callbacks.extend(chain.on_catch)
                callbacks.extend(chain.on_finally)

        elif isinstance(outcome, Paused):
            await self._require_head(tx, outcome.step_id, ChainStatus.RUNNING)
            if outcome.advance:
                await tx.delete_step(outcome.step_id)
            chain.mark_paused(as_utc(outcome.resume_at))
            await tx.save_chain()
            logger.info(f"Paused chain {chain.id} until {chain.resume_at.isoformat()}")
            callbacks.extend(chain.on_paused)

        elif isinstance(outcome, Appended):
            idle = chain.status == ChainStatus.RUNNING and await tx.head_step() is None
            step = await tx.append_step(
                outcome.job,
                delay=outcome.delay,
                queue=outcome.queue,
                connection=outcome.connection,
            )
            logger.info(f"Appended step {step.id} at order {step.order} to chain {chain.id}")
            if idle:
                await self._dispatch_head(tx, result, callbacks)

        elif isinstance(outcome, Resumed):
            if chain.status != ChainStatus.PAUSED:
                raise StaleSignalError(chain.id, f"chain is {chain.status.value}, not paused")
            now = as_utc(outcome.now or utcnow())
            if not outcome.force and chain.resume_at > now:
                raise StaleSignalError(chain.id, f"not due until {chain.resume_at.isoformat()}")
            chain.mark_running()
            logger.info(f"Resuming chain {chain.id}")
            await self._dispatch_head(tx, result, callbacks)

        else:  # pragma: no cover - exhaustive
            raise TypeError(f"Unknown outcome {outcome!r}")

    async def _require_head(
        self, tx: ChainTransaction, step_id: int, status: ChainStatus
    ) -> Step:
        if tx.chain.status != status:
            raise StaleSignalError(
                tx.chain.id, f"chain is {tx.chain.status.value}, step {step_id} is not in flight"
            )
        head = await tx.head_step()
        if head is None or head.id != step_id:
            raise StaleSignalError(tx.chain.id, f"step {step_id} is not the current step")
        return head

    async def _dispatch_head(
        self, tx: ChainTransaction, result: AdvanceResult, callbacks: List[CallbackRef]
    ) -> None:
        chain = tx.chain
        head = await tx.head_step()
        if head is None:
            chain.mark_finished()
            await tx.save_chain()
            logger.info(f"Chain {chain.id} finished")
            callbacks.extend(chain.on_then)
            callbacks.extend(chain.on_finally)
            return

        message = self.build_message(chain, head)
        try:
            transport = self.transports.get(message.connection)
        except ConfigurationError as e:
            chain.mark_failed(str(e))
            deleted = await tx.delete_steps()
            await tx.save_chain()
            logger.error(
                f"Cannot dispatch step {head.id} of chain {chain.id}, dropped {deleted} steps: {e}"
            )
            callbacks.extend(chain.on_catch)
            callbacks.extend(chain.on_finally)
            return

        await transport.publish(message.queue, message)
        chain.last_processed_at = utcnow()
        await tx.save_chain()
        result.dispatched = message
        logger.info(
            f"Dispatched step {head.id} (order {head.order}) of chain {chain.id} "
            f"to queue {message.queue} with delay {message.delay}s"
        )

    def build_message(self, chain: Chain, step: Step) -> StepMessage:
        """Envelope for ``step`` with its effective middleware and routing."""

        job = ObjectDeserializer.deserialize(step.job)
        return StepMessage(
            chain_id=chain.id,
            step_id=step.id,
            order=step.order,
            job=step.job,
            middleware=compose_middleware(job, chain.global_middleware),
            queue=step.effective_queue(chain) or self.config.default_queue,
            connection=step.effective_connection(chain),
            delay=step.effective_delay(chain),
        )
