from datetime import timedelta

import pytest

from baler import ChainEngine, ChainStatus, StepWorker
from baler.config import BalerConfig
from baler.models import utcnow
from baler.persistence import SQLiteChainRepository
from baler.transports import TransportPool
from baler.transports.inmemory import InMemoryTransport

from chain_jobs import CALLBACK_LOG, EXECUTED, AppendingJob, FailingJob, NameJob, PausingJob


def _engine(repo, transport, **config) -> ChainEngine:
    return ChainEngine(
        repository=repo, transports=TransportPool(transport), config=BalerConfig(**config)
    )


@pytest.mark.asyncio
async def test_chain_survives_restart_and_duplicate_delivery(tmp_path):
    transport = InMemoryTransport()
    repo_path = tmp_path / "chains.db"
    engine = _engine(SQLiteChainRepository(repo_path), transport)

    chain = await (
        engine.build()
        .add_steps(NameJob(name=n) for n in ("Sam", "Gareth", "Taylor"))
        .then("record", label="then")
        .finally_("record", label="finally")
        .dispatch()
    )

    raw = transport._queues["default"].popleft()
    msg = raw[1]
    dup = msg.model_copy(deep=True)
    transport._queues["default"].append((dup.to_json(), dup))

    worker = StepWorker(engine)
    await worker.handle(msg)
    raw_dup = transport._queues["default"].popleft()
    await worker.handle(raw_dup[1])

    assert EXECUTED == ["Sam"]

    # a new process picks up where the first left off
    engine = _engine(SQLiteChainRepository(repo_path), transport)
    worker = StepWorker(engine)
    while transport._queues["default"]:
        raw = transport._queues["default"].popleft()
        await worker.handle(raw[1])

    stored = await engine.repository.get_chain(chain.id)
    assert stored.status == ChainStatus.FINISHED
    assert EXECUTED == ["Sam", "Gareth", "Taylor"]
    assert CALLBACK_LOG == ["then", "finally"]
    assert await engine.repository.get_steps(chain.id) == []


@pytest.mark.asyncio
async def test_paused_chain_resumes_after_restart(tmp_path):
    transport = InMemoryTransport()
    repo_path = tmp_path / "chains.db"
    engine = _engine(SQLiteChainRepository(repo_path), transport)
    worker = StepWorker(engine)

    chain = await (
        engine.build()
        .add_step(PausingJob(name="Wait", seconds=3600))
        .add_step(AppendingJob(name="Grow", append="Tail"))
        .dispatch()
    )
    await worker.handle(transport._queues["default"].popleft()[1])

    paused = await engine.repository.get_chain(chain.id)
    assert paused.status == ChainStatus.PAUSED

    engine = _engine(SQLiteChainRepository(repo_path), transport)
    worker = StepWorker(engine)
    assert await engine.sweep(now=utcnow()) == []
    assert await engine.sweep(now=paused.resume_at + timedelta(seconds=1)) == [chain.id]

    while transport._queues["default"]:
        await worker.handle(transport._queues["default"].popleft()[1])

    assert EXECUTED == ["Wait", "Wait", "Grow", "Tail"]
    stored = await engine.repository.get_chain(chain.id)
    assert stored.status == ChainStatus.FINISHED
    assert stored.data == {"paused:Wait": True}


@pytest.mark.asyncio
async def test_failed_chain_is_pruned_after_retention(tmp_path):
    transport = InMemoryTransport()
    engine = _engine(
        SQLiteChainRepository(tmp_path / "chains.db"),
        transport,
        retention_window=timedelta(hours=1),
    )
    worker = StepWorker(engine)

    chain = await (
        engine.build()
        .add_step(FailingJob(message="disk full"))
        .add_step(NameJob(name="Never"))
        .catch("record", label="catch")
        .dispatch()
    )
    await worker.handle(transport._queues["default"].popleft()[1])

    failed = await engine.repository.get_chain(chain.id)
    assert failed.status == ChainStatus.FAILED
    assert failed.failure == "disk full"
    assert CALLBACK_LOG == ["catch"]

    assert await engine.prune() == 0
    assert await engine.prune(now=utcnow() + timedelta(hours=2)) == 1
    assert await engine.repository.get_chain(chain.id) is None
