"""Base class for units of work that can be placed on a chain."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar, List, Optional, Union

from pydantic import BaseModel, PrivateAttr

from .models import utcnow

if TYPE_CHECKING:
    from .engine import ChainEngine
    from .middleware import Middleware


class JobNotBoundError(RuntimeError):
    """A chain signal was requested from a job that is not running on a chain."""


class StackableJob(BaseModel):
    """A unit of work that runs as one step of a chain.

    Subclasses are pydantic models: their fields are stored with the step and
    the worker rebuilds the job from them before calling :meth:`execute`.

    While running, a job can steer its chain with the ``request_*`` helpers.
    In automatic processing mode the worker reports success or failure after
    ``execute`` returns unless the job already signalled the chain itself.
    In manual mode the job must call :meth:`request_next` (or fail the chain
    from :meth:`on_failure`) or the chain stalls.
    """

    tries: ClassVar[Optional[int]] = None

    _engine: Any = PrivateAttr(default=None)
    _chain_id: Optional[str] = PrivateAttr(default=None)
    _step_id: Optional[int] = PrivateAttr(default=None)
    _signalled: bool = PrivateAttr(default=False)

    async def execute(self) -> Any:
        raise NotImplementedError

    def middleware(self) -> List["Middleware"]:
        """Middleware that only applies to this job."""
        return []

    async def on_failure(self, error: BaseException) -> None:
        """Called when :meth:`execute` raised."""

    # ------------------------------------------------------------------
    def bind(self, engine: "ChainEngine", chain_id: str, step_id: int) -> None:
        self._engine = engine
        self._chain_id = chain_id
        self._step_id = step_id
        self._signalled = False

    @property
    def chain_id(self) -> Optional[str]:
        return self._chain_id

    @property
    def step_id(self) -> Optional[int]:
        return self._step_id

    @property
    def signalled(self) -> bool:
        """Whether the job already decided what happens to its step."""
        return self._signalled

    def _require_engine(self) -> "ChainEngine":
        if self._engine is None or self._chain_id is None or self._step_id is None:
            raise JobNotBoundError(
                f"{type(self).__name__} is not running as part of a chain"
            )
        return self._engine

    async def request_next(self) -> None:
        """Mark this step complete and dispatch the next one."""
        engine = self._require_engine()
        self._signalled = True
        await engine.complete(self._chain_id, self._step_id)

    async def fail_chain(self, error: Union[str, BaseException, None] = None) -> None:
        """Fail the chain, firing its ``catch`` and ``finally`` callbacks."""
        engine = self._require_engine()
        self._signalled = True
        await engine.fail(
            self._chain_id, self._step_id, error=str(error) if error is not None else None
        )

    async def request_append(
        self,
        job: "StackableJob",
        delay: Optional[int] = None,
        queue: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> None:
        """Add ``job`` after the current last step of the chain."""
        engine = self._require_engine()
        await engine.append(self._chain_id, job, delay=delay, queue=queue, connection=connection)

    async def request_pause(self, resume_at: Union[datetime, timedelta, int]) -> None:
        """Park the chain and run this step again once ``resume_at`` has passed."""
        engine = self._require_engine()
        self._signalled = True
        await engine.pause(self._chain_id, self._step_id, _resolve_resume_at(resume_at))

    async def request_long_release(self, delay: Union[datetime, timedelta, int]) -> None:
        """Release this step for longer than the work queue could hold it.

        The chain is paused and the resume sweep dispatches this step again.
        """
        await self.request_pause(delay)

    async def pause_next(self, resume_at: Union[datetime, timedelta, int]) -> None:
        """Complete this step, then wait until ``resume_at`` before the next one."""
        engine = self._require_engine()
        self._signalled = True
        await engine.pause(
            self._chain_id, self._step_id, _resolve_resume_at(resume_at), advance=True
        )

    async def set_chain_data(self, key: str, value: Any) -> None:
        engine = self._require_engine()
        await engine.set_data(self._chain_id, key, value)

    async def get_chain_data(self, key: str, default: Any = None) -> Any:
        engine = self._require_engine()
        data = await engine.get_data(self._chain_id)
        return data.get(key, default)


def _resolve_resume_at(value: Union[datetime, timedelta, int]) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, timedelta):
        return utcnow() + value
    if isinstance(value, int) and value >= 0:
        return utcnow() + timedelta(seconds=value)
    raise ValueError(f"Cannot resume at {value!r}")
