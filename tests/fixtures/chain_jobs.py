"""Jobs, middleware and callbacks shared by the chain tests.

They live in an importable module because workers rebuild jobs and
middleware from their module path.
"""

from datetime import timedelta
from typing import ClassVar, List

from baler import Middleware, StackableJob, register_callback

EXECUTED: List[str] = []
CALLBACK_LOG: List[str] = []
MIDDLEWARE_LOG: List[str] = []


def reset_logs() -> None:
    EXECUTED.clear()
    CALLBACK_LOG.clear()
    MIDDLEWARE_LOG.clear()


class NameJob(StackableJob):
    name: str

    async def execute(self):
        EXECUTED.append(self.name)


class ManualNameJob(NameJob):
    async def execute(self):
        EXECUTED.append(self.name)
        await self.request_next()


class FailingJob(StackableJob):
    message: str = "boom"

    async def execute(self):
        raise RuntimeError(self.message)


class ManualFailingJob(FailingJob):
    async def on_failure(self, error):
        await self.fail_chain(error)


class LimitedJob(FailingJob):
    tries: ClassVar[int] = 1


class PausingJob(StackableJob):
    """Pauses the chain the first time it runs, completes the second time."""

    name: str
    seconds: int = 300

    async def execute(self):
        EXECUTED.append(self.name)
        key = f"paused:{self.name}"
        if not await self.get_chain_data(key):
            await self.set_chain_data(key, True)
            await self.request_long_release(timedelta(seconds=self.seconds))


class PauseNextJob(StackableJob):
    name: str
    seconds: int = 300

    async def execute(self):
        EXECUTED.append(self.name)
        await self.pause_next(self.seconds)


class AppendingJob(StackableJob):
    name: str
    append: str

    async def execute(self):
        EXECUTED.append(self.name)
        await self.request_append(NameJob(name=self.append))


class TagMiddleware(Middleware):
    tag: str

    async def handle(self, context, call_next):
        MIDDLEWARE_LOG.append(self.tag)
        return await call_next(context)


class OwnMiddlewareJob(NameJob):
    def middleware(self):
        return [TagMiddleware(tag="own")]


class MiddlewareFactory:
    """Invokable middleware descriptor."""

    def __init__(self, tag: str) -> None:
        self.tag = tag

    def __call__(self):
        return [TagMiddleware(tag=self.tag)]


@register_callback("record")
def record(label: str) -> None:
    CALLBACK_LOG.append(label)


@register_callback("record-async")
async def record_async(label: str) -> None:
    CALLBACK_LOG.append(label)


@register_callback("explode")
def explode() -> None:
    raise RuntimeError("callback exploded")
