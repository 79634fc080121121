"""Step middleware and the composition rules applied to every dispatched step.

Every step runs through ``MANDATORY_MIDDLEWARE`` first, then any middleware
the job declares through :meth:`StackableJob.middleware`, then the chain's
global middleware. The mandatory entries keep chain bookkeeping correct, so
they always see the step before anything else does.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, List, Optional, Union

from pydantic import BaseModel

from .errors import ConfigurationError
from .models import ChainStatus, SerializedObject, Step, StepMessage
from .serialization import ObjectDeserializer, ObjectSerializer

if TYPE_CHECKING:
    from .engine import ChainEngine
    from .jobs import StackableJob

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """State shared by the middleware and the job while one step runs."""

    engine: "ChainEngine"
    message: StepMessage
    job: "StackableJob"
    step: Optional[Step] = None
    skipped: bool = False
    extras: dict = field(default_factory=dict)

    @property
    def chain_id(self) -> str:
        return self.message.chain_id

    @property
    def step_id(self) -> int:
        return self.message.step_id

    def skip(self, reason: str) -> None:
        self.skipped = True
        logger.info(
            f"Skipping step {self.step_id} of chain {self.chain_id}: {reason}"
        )


Handler = Callable[[StepContext], Awaitable[Any]]


class Middleware(BaseModel):
    """Base class for step middleware.

    Subclasses are pydantic models so that they can be stored with the chain
    and rebuilt by the worker that runs the step.
    """

    async def handle(self, context: StepContext, call_next: Handler) -> Any:
        return await call_next(context)


class CheckFinished(Middleware):
    """Skip the step when its chain stopped running or the step was processed."""

    async def handle(self, context: StepContext, call_next: Handler) -> Any:
        repository = context.engine.repository
        chain = await repository.get_chain(context.chain_id)
        if chain is None:
            context.skip("chain no longer exists")
            return None
        if chain.status != ChainStatus.RUNNING:
            context.skip(f"chain is {chain.status.value}")
            return None
        step = await repository.get_step(context.step_id)
        if step is None or step.chain_id != context.chain_id:
            context.skip("step was already processed")
            return None
        context.step = step
        return await call_next(context)


class CheckAttempts(Middleware):
    """Fail the chain once a job has used up the tries it declares.

    Jobs without ``tries`` are never limited. No retry is scheduled here.
    """

    async def handle(self, context: StepContext, call_next: Handler) -> Any:
        tries = getattr(type(context.job), "tries", None)
        if tries is not None:
            step = context.step or await context.engine.repository.get_step(context.step_id)
            attempts = step.attempts if step else 0
            if attempts >= tries:
                context.skip(f"{attempts} attempts reached the limit of {tries}")
                await context.engine.fail(
                    context.chain_id,
                    context.step_id,
                    error=f"{type(context.job).__name__} has been attempted too many times",
                )
                return None
        return await call_next(context)


class IncrementAttempts(Middleware):
    """Count this delivery against the step."""

    async def handle(self, context: StepContext, call_next: Handler) -> Any:
        attempts = await context.engine.repository.increment_attempts(context.step_id)
        if context.step is not None:
            context.step.attempts = attempts
        return await call_next(context)


MANDATORY_MIDDLEWARE: tuple[type[Middleware], ...] = (
    CheckFinished,
    CheckAttempts,
    IncrementAttempts,
)


MiddlewareSource = Union[Iterable[Middleware], Callable[[], Iterable[Middleware]]]


def normalize_middleware(source: MiddlewareSource) -> List[Middleware]:
    """Resolve a middleware list, producer function or invokable object once.

    The result is a plain list, so stored chains never re-evaluate a producer.
    """

    if isinstance(source, Middleware):
        raise ConfigurationError("Middleware must be given as a list, not a single instance")
    if callable(source):
        produced = source()
        if inspect.isawaitable(produced):
            if inspect.iscoroutine(produced):
                produced.close()
            raise ConfigurationError("Middleware producers must be synchronous")
        source = produced
    if isinstance(source, (str, bytes)) or not isinstance(source, Iterable):
        raise ConfigurationError(f"Expected a list of middleware, got {type(source).__name__}")
    middleware = list(source)
    for item in middleware:
        if not isinstance(item, Middleware):
            raise ConfigurationError(
                f"{type(item).__name__} is not a baler Middleware instance"
            )
    return middleware


def serialize_middleware(middleware: Iterable[Middleware]) -> List[SerializedObject]:
    try:
        return [ObjectSerializer.serialize(m) for m in middleware]
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def compose_middleware(
    job: "StackableJob", global_middleware: Iterable[SerializedObject]
) -> List[SerializedObject]:
    """Return the effective middleware for a step, in execution order."""

    mandatory = [m() for m in MANDATORY_MIDDLEWARE]
    return (
        serialize_middleware(mandatory)
        + serialize_middleware(normalize_middleware(job.middleware()))
        + list(global_middleware)
    )


def load_middleware(serialized: Iterable[SerializedObject]) -> List[Middleware]:
    return [ObjectDeserializer.deserialize(m) for m in serialized]


async def run_pipeline(
    middleware: List[Middleware], context: StepContext, handler: Handler
) -> Any:
    """Run ``handler`` wrapped by ``middleware``, outermost first."""

    async def call(index: int, ctx: StepContext) -> Any:
        if index == len(middleware):
            return await handler(ctx)
        return await middleware[index].handle(ctx, lambda c: call(index + 1, c))

    return await call(0, context)
