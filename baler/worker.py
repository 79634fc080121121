"""Worker that executes chain steps delivered by a transport."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .engine import ChainEngine
from .errors import ChainNotFoundError
from .jobs import StackableJob
from .middleware import StepContext, load_middleware, run_pipeline
from .models import StepMessage
from .serialization import ObjectDeserializer
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepWorker:
    """Executes chain steps by listening to one queue of a transport.

    With automatic processing the worker reports the outcome of each step to
    the engine; otherwise the job is expected to do so itself.
    """

    def __init__(
        self,
        engine: ChainEngine,
        queue: Optional[str] = None,
        transport: Optional[BaseTransport] = None,
        connection: Optional[str] = None,
    ) -> None:
        self._engine = engine
        self._queue = queue or engine.config.default_queue
        self._transport = transport or engine.transports.get(connection)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start consuming step messages from the queue."""
        logger.info(f"Worker listening on queue {self._queue}")
        async for raw_message, message in self._transport.subscribe(
            self._queue, lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except Exception:
                logger.exception(
                    f"Step {message.step_id} of chain {message.chain_id} could not be handled"
                )
            await self._transport.ack(raw_message)

    async def handle(self, message: StepMessage) -> Any:
        """Run one step message through its middleware and the job."""
        job = ObjectDeserializer.deserialize(message.job)
        if not isinstance(job, StackableJob):
            raise TypeError(f"{type(job).__name__} is not a StackableJob")
        job.bind(self._engine, message.chain_id, message.step_id)

        context = StepContext(engine=self._engine, message=message, job=job)
        middleware = load_middleware(message.middleware)

        try:
            result = await run_pipeline(middleware, context, self._execute)
        except Exception as e:
            await self._handle_failure(context, e)
            return None

        if context.skipped:
            return None

        if self._engine.automatic_processing and not job.signalled:
            await self._engine.complete(message.chain_id, message.step_id)
        logger.info(f"Step {message.step_id} of chain {message.chain_id} completed")
        return result

    async def _execute(self, context: StepContext) -> Any:
        logger.debug(
            f"Executing {type(context.job).__name__} for chain {context.chain_id}"
        )
        return await context.job.execute()

    async def _handle_failure(self, context: StepContext, error: Exception) -> None:
        job = context.job
        logger.error(
            f"Step {context.step_id} of chain {context.chain_id} failed: {error}"
        )
        await job.on_failure(error)
        if self._engine.automatic_processing and not job.signalled:
            try:
                await self._engine.fail(context.chain_id, context.step_id, error=str(error))
            except ChainNotFoundError:
                logger.warning(f"Chain {context.chain_id} vanished before its failure was recorded")
