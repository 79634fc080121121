"""Fluent builder that describes and persists a chain."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from .callbacks import Callback
from .errors import ConfigurationError
from .jobs import StackableJob
from .middleware import Middleware, MiddlewareSource, normalize_middleware, serialize_middleware
from .models import CallbackRef, Chain, SerializedObject, Step
from .serialization import ObjectSerializer

if TYPE_CHECKING:
    from .engine import ChainEngine


class PendingStep:
    """A job waiting to be persisted, with its per-step overrides."""

    def __init__(
        self,
        job: StackableJob,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> None:
        self.job = job
        self.delay = delay
        self.queue = queue
        self.connection = connection


def check_delay(delay: Optional[int]) -> Optional[int]:
    if delay is None:
        return None
    if isinstance(delay, bool) or not isinstance(delay, int):
        raise ConfigurationError(f"Delay must be a whole number of seconds, got {delay!r}")
    if delay < 0:
        raise ConfigurationError(f"Delay cannot be negative, got {delay}")
    return delay


class ChainBuilder:
    """Accumulates steps, defaults, callbacks and middleware for a chain.

    Nothing is stored until :meth:`create` or :meth:`dispatch` is awaited.
    """

    def __init__(self, engine: "ChainEngine") -> None:
        self._engine = engine
        self._steps: List[PendingStep] = []
        self._name: Optional[str] = None
        self._delay: Optional[int] = None
        self._queue: Optional[str] = None
        self._connection: Optional[str] = None
        self._middleware: Union[List[SerializedObject], MiddlewareSource] = []
        self._allow_failures = False
        self._data: Dict[str, Any] = {}
        self._callbacks: Dict[str, List[CallbackRef]] = {
            "on_then": [],
            "on_catch": [],
            "on_finally": [],
            "on_paused": [],
        }

    # ------------------------------------------------------------------
    # Steps
    def add_step(
        self,
        job: StackableJob,
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> "ChainBuilder":
        """Append a job to the chain, optionally overriding the chain defaults."""
        if not isinstance(job, StackableJob):
            raise ConfigurationError(
                f"{type(job).__name__} must subclass StackableJob to be added to a chain"
            )
        self._steps.append(
            PendingStep(job, check_delay(delay), queue, self._engine.transports.check(connection))
        )
        return self

    def add_steps(self, jobs: Iterable[Union[StackableJob, PendingStep]]) -> "ChainBuilder":
        for job in jobs:
            if isinstance(job, PendingStep):
                self.add_step(job.job, job.delay, job.queue, job.connection)
            else:
                self.add_step(job)
        return self

    # ------------------------------------------------------------------
    # Chain defaults
    def with_name(self, name: str) -> "ChainBuilder":
        self._name = name
        return self

    def with_delay(self, delay: int) -> "ChainBuilder":
        self._delay = check_delay(delay)
        return self

    def on_queue(self, queue: str) -> "ChainBuilder":
        self._queue = queue
        return self

    def on_connection(self, connection: str) -> "ChainBuilder":
        self._connection = self._engine.transports.check(connection)
        return self

    def with_middleware(self, middleware: MiddlewareSource) -> "ChainBuilder":
        """Middleware applied to every step, after the job's own middleware.

        Accepts a list, a zero-argument producer or an invokable object. Lists
        are checked right away; a producer is called once, when the chain is
        created, and its result is what gets stored.
        """
        if callable(middleware) and not isinstance(middleware, Middleware):
            self._middleware = middleware
        else:
            self._middleware = serialize_middleware(normalize_middleware(middleware))
        return self

    def with_data(self, key: str, value: Any) -> "ChainBuilder":
        """Seed the chain's shared data store."""
        self._data[key] = value
        return self

    def allow_failures(self, allow: bool = True) -> "ChainBuilder":
        """Keep going with the next step when a step fails."""
        self._allow_failures = allow
        return self

    # ------------------------------------------------------------------
    # Callbacks
    def _add_callback(self, hook: str, callback: Union[str, Callback], arguments: Dict[str, Any]) -> "ChainBuilder":
        self._callbacks[hook].append(self._engine.callbacks.ref_for(callback, arguments))
        return self

    def then(self, callback: Union[str, Callback], **arguments: Any) -> "ChainBuilder":
        return self._add_callback("on_then", callback, arguments)

    def catch(self, callback: Union[str, Callback], **arguments: Any) -> "ChainBuilder":
        return self._add_callback("on_catch", callback, arguments)

    def finally_(self, callback: Union[str, Callback], **arguments: Any) -> "ChainBuilder":
        return self._add_callback("on_finally", callback, arguments)

    def paused(self, callback: Union[str, Callback], **arguments: Any) -> "ChainBuilder":
        return self._add_callback("on_paused", callback, arguments)

    # ------------------------------------------------------------------
    # Terminal operations
    def _global_middleware(self) -> List[SerializedObject]:
        if callable(self._middleware):
            return serialize_middleware(normalize_middleware(self._middleware))
        return list(self._middleware)

    def _materialize(self) -> tuple[Chain, List[Step]]:
        chain = Chain(
            name=self._name,
            delay=self._delay,
            queue=self._queue,
            connection=self._connection,
            global_middleware=self._global_middleware(),
            allow_failures=self._allow_failures,
            data=dict(self._data),
            **{hook: list(refs) for hook, refs in self._callbacks.items()},
        )
        steps = []
        for order, pending in enumerate(self._steps):
            try:
                job = ObjectSerializer.serialize(pending.job)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            steps.append(
                Step(
                    chain_id=chain.id,
                    order=order,
                    job=job,
                    delay=pending.delay,
                    queue=pending.queue,
                    connection=pending.connection,
                )
            )
        return chain, steps

    async def create(self) -> Chain:
        """Persist the chain and its steps in one transaction without starting it."""
        chain, steps = self._materialize()
        await self._engine.repository.create_chain(chain, steps)
        return chain

    async def dispatch(self) -> Chain:
        """Persist the chain and immediately dispatch its first step."""
        chain = await self.create()
        result = await self._engine.start(chain.id)
        return result.chain or chain
