"""Chain builder tests."""

import pytest

from baler import ChainStatus, ConfigurationError
from baler.builder import PendingStep
from baler.middleware import CheckAttempts, CheckFinished, IncrementAttempts, load_middleware
from baler.models import CallbackRef
from baler.serialization import ObjectDeserializer
from baler.transports import InMemoryTransport, TransportPool

from chain_jobs import (
    CALLBACK_LOG,
    MiddlewareFactory,
    NameJob,
    TagMiddleware,
    record,
)

DEFAULT_MIDDLEWARE = [CheckFinished(), CheckAttempts(), IncrementAttempts()]


@pytest.mark.asyncio
async def test_chain_can_be_created_with_jobs(engine, repo, transport):
    chain = await (
        engine.build()
        .add_step(NameJob(name="Sam"))
        .add_step(NameJob(name="Gareth"))
        .create()
    )

    assert chain.status == ChainStatus.PENDING
    steps = await repo.get_steps(chain.id)
    assert len(steps) == 2
    assert [s.order for s in steps] == [0, 1]
    assert ObjectDeserializer.deserialize(steps[0].job) == NameJob(name="Sam")
    assert ObjectDeserializer.deserialize(steps[1].job) == NameJob(name="Gareth")
    assert transport.published == []


@pytest.mark.asyncio
async def test_chain_can_be_created_with_default_delay_queue_and_connection(engine, repo):
    engine.transports.register("database", InMemoryTransport())
    chain = await (
        engine.build()
        .add_step(NameJob(name="Sam"))
        .with_delay(60)
        .on_queue("testing")
        .on_connection("database")
        .create()
    )

    stored = await repo.get_chain(chain.id)
    steps = await repo.get_steps(chain.id)
    assert len(steps) == 1
    assert steps[0].effective_delay(stored) == 60
    assert steps[0].effective_queue(stored) == "testing"
    assert steps[0].effective_connection(stored) == "database"


@pytest.mark.asyncio
async def test_steps_can_override_delay_queue_and_connection(repo, config):
    from baler import ChainEngine

    default = InMemoryTransport()
    database = InMemoryTransport()
    redis_like = InMemoryTransport()
    engine = ChainEngine(
        repository=repo,
        transports=TransportPool(default, {"database": database, "redis": redis_like}),
        config=config,
    )

    chain = await (
        engine.build()
        .add_step(NameJob(name="Sam"))
        .add_step(NameJob(name="Gareth"), 120, "cowboy", "redis")
        .with_delay(60)
        .on_queue("testing")
        .on_connection("database")
        .dispatch()
    )

    assert default.published == []
    [(queue, first)] = database.published
    assert (queue, first.delay, first.connection) == ("testing", 60, "database")

    await engine.complete(chain.id, first.step_id)

    [(queue, second)] = redis_like.published
    assert (queue, second.delay, second.connection) == ("cowboy", 120, "redis")
    assert len(database.published) == 1


@pytest.mark.asyncio
async def test_chain_middleware_is_applied_to_every_step(engine, transport):
    chain = await (
        engine.build()
        .add_step(NameJob(name="Sam"))
        .add_step(NameJob(name="Gareth"))
        .with_middleware([TagMiddleware(tag="global")])
        .dispatch()
    )

    sam = transport.published[0][1]
    assert load_middleware(sam.middleware) == DEFAULT_MIDDLEWARE + [TagMiddleware(tag="global")]

    await engine.complete(chain.id, sam.step_id)

    gareth = transport.published[1][1]
    assert ObjectDeserializer.deserialize(gareth.job) == NameJob(name="Gareth")
    assert load_middleware(gareth.middleware) == DEFAULT_MIDDLEWARE + [TagMiddleware(tag="global")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source",
    [
        [TagMiddleware(tag="m")],
        lambda: [TagMiddleware(tag="m")],
        MiddlewareFactory("m"),
    ],
    ids=["list", "producer", "invokable"],
)
async def test_middleware_sources_are_resolved_once(engine, repo, source):
    chain = await engine.build().add_step(NameJob(name="Sam")).with_middleware(source).create()

    stored = await repo.get_chain(chain.id)
    assert load_middleware(stored.global_middleware) == [TagMiddleware(tag="m")]


@pytest.mark.asyncio
async def test_middleware_producer_runs_once_when_chain_is_created(engine, transport):
    calls = []

    def producer():
        calls.append(1)
        return [TagMiddleware(tag="lazy")]

    builder = engine.build().add_step(NameJob(name="Sam")).add_step(NameJob(name="Gareth"))
    builder.with_middleware(producer)
    assert calls == []

    chain = await builder.dispatch()
    await engine.complete(chain.id, transport.published[0][1].step_id)

    assert calls == [1]
    for _, message in transport.published:
        assert load_middleware(message.middleware)[-1] == TagMiddleware(tag="lazy")


@pytest.mark.asyncio
async def test_chain_stores_callback_references(engine, repo):
    chain = await (
        engine.build()
        .then("record", label="A")
        .catch("record", label="B")
        .finally_(record, label="C")
        .paused("record-async", label="D")
        .create()
    )

    stored = await repo.get_chain(chain.id)
    assert stored.on_then == [CallbackRef(name="record", arguments={"label": "A"})]
    assert stored.on_catch == [CallbackRef(name="record", arguments={"label": "B"})]
    assert stored.on_finally == [CallbackRef(name="record", arguments={"label": "C"})]
    assert stored.on_paused == [CallbackRef(name="record-async", arguments={"label": "D"})]
    assert CALLBACK_LOG == []


@pytest.mark.asyncio
async def test_chain_can_be_dispatched_straight_away(engine, transport):
    chain = await (
        engine.build()
        .add_step(NameJob(name="Sam"))
        .add_step(NameJob(name="Steve"))
        .add_step(NameJob(name="Taylor"))
        .dispatch()
    )

    assert chain.status == ChainStatus.RUNNING
    assert chain.started_at is not None

    names = []
    for _ in range(3):
        queue, message = transport.published[-1]
        assert queue == "default"
        names.append(ObjectDeserializer.deserialize(message.job).name)
        await engine.complete(chain.id, message.step_id)

    assert names == ["Sam", "Steve", "Taylor"]
    assert len(transport.published) == 3


@pytest.mark.asyncio
async def test_chain_can_be_named(engine, repo):
    chain = await engine.build().add_step(NameJob(name="Sam")).with_name("My Custom Name").create()

    stored = await repo.get_chain(chain.id)
    assert stored.name == "My Custom Name"


@pytest.mark.asyncio
async def test_multiple_jobs_can_be_added_at_once(engine, repo):
    chain = await (
        engine.build()
        .add_steps([NameJob(name="Taylor"), NameJob(name="Steve"), NameJob(name="Gareth")])
        .add_steps(NameJob(name=n) for n in ("Patrick", "Mantas"))
        .add_step(NameJob(name="Teo"))
        .create()
    )

    steps = await repo.get_steps(chain.id)
    assert [ObjectDeserializer.deserialize(s.job).name for s in steps] == [
        "Taylor",
        "Steve",
        "Gareth",
        "Patrick",
        "Mantas",
        "Teo",
    ]
    assert [s.order for s in steps] == list(range(6))


@pytest.mark.asyncio
async def test_empty_chain_finishes_when_dispatched(engine, transport):
    chain = await engine.build().then("record", label="done").dispatch()

    assert chain.status == ChainStatus.FINISHED
    assert transport.published == []
    assert CALLBACK_LOG == ["done"]


@pytest.mark.asyncio
async def test_chain_data_is_seeded(engine, repo):
    chain = await engine.build().with_data("batch", 7).create()

    assert (await repo.get_chain(chain.id)).data == {"batch": 7}


def test_negative_delay_is_rejected(engine):
    with pytest.raises(ConfigurationError):
        engine.build().with_delay(-1)
    with pytest.raises(ConfigurationError):
        engine.build().add_step(NameJob(name="Sam"), delay=-5)


def test_non_job_payload_is_rejected(engine):
    with pytest.raises(ConfigurationError):
        engine.build().add_step("not a job")


def test_unregistered_callbacks_are_rejected(engine):
    def not_registered():
        pass

    with pytest.raises(ConfigurationError):
        engine.build().then("nobody-registered-this")
    with pytest.raises(ConfigurationError):
        engine.build().catch(not_registered)


def test_invalid_middleware_is_rejected(engine):
    with pytest.raises(ConfigurationError):
        engine.build().with_middleware([object()])
    with pytest.raises(ConfigurationError):
        engine.build().with_middleware(TagMiddleware(tag="single"))


@pytest.mark.asyncio
async def test_failed_build_persists_nothing(engine, repo):
    builder = engine.build().add_step(NameJob(name="Sam"))
    with pytest.raises(ConfigurationError):
        builder.with_delay(-1)

    assert await repo.list_chains() == []


def test_unknown_connection_is_rejected(engine):
    with pytest.raises(ConfigurationError, match="Unknown connection: nowhere"):
        engine.build().on_connection("nowhere")
    with pytest.raises(ConfigurationError, match="Unknown connection: nowhere"):
        engine.build().add_step(NameJob(name="Sam"), connection="nowhere")
    with pytest.raises(ConfigurationError):
        engine.build().add_steps([PendingStep(NameJob(name="Sam"), connection="nowhere")])


@pytest.mark.asyncio
async def test_configured_connection_is_accepted_before_it_is_built(repo):
    from baler import ChainEngine
    from baler.config import BalerConfig, TransportConfig

    config = BalerConfig(connections={"reports": TransportConfig(backend="inmemory")})
    engine = ChainEngine(
        repository=repo,
        transports=TransportPool(InMemoryTransport(), config=config),
        config=config,
    )

    chain = await engine.build().add_step(NameJob(name="Sam")).on_connection("reports").dispatch()

    assert chain.status == ChainStatus.RUNNING
    [(queue, message)] = engine.transports.get("reports").published
    assert (queue, message.connection) == ("default", "reports")


@pytest.mark.asyncio
async def test_dispatch_with_unknown_connection_persists_nothing(engine, repo, transport):
    with pytest.raises(ConfigurationError):
        await engine.build().add_step(NameJob(name="Sam")).on_connection("database").dispatch()

    assert await repo.list_chains() == []
    assert transport.published == []
