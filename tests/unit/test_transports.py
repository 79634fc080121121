"""Transport tests."""

import pytest

from baler.models import SerializedObject, StepMessage
from baler.transports.inmemory import InMemoryTransport


def _message(queue="test_queue", delay=0, step_id=1) -> StepMessage:
    return StepMessage(
        chain_id="chain-123",
        step_id=step_id,
        order=0,
        job=SerializedObject(data={"name": "Sam"}, type="NameJob", module="chain_jobs"),
        queue=queue,
        delay=delay,
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    await transport.publish("test_queue", _message())

    message_received = False
    async for raw_msg, received_msg in transport.subscribe("test_queue"):
        assert received_msg.chain_id == "chain-123"
        assert received_msg.job.data["name"] == "Sam"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert [q for q, _ in transport.published] == ["test_queue"]


@pytest.mark.asyncio
async def test_inmemory_transport_holds_delayed_messages():
    transport = InMemoryTransport()
    await transport.publish("test_queue", _message(delay=3600, step_id=1))
    await transport.publish("test_queue", _message(step_id=2))

    received = []
    async for raw_msg, message in transport.subscribe("test_queue", lifespan=0.3):
        received.append(message.step_id)
        await transport.ack(raw_msg)

    assert received == [2]
    assert len(transport._queues["test_queue"]) == 1


@pytest.mark.asyncio
async def test_inmemory_transport_nack_requeues():
    transport = InMemoryTransport()
    await transport.publish("test_queue", _message())

    async for raw_msg, _ in transport.subscribe("test_queue"):
        await transport.nack(raw_msg)
        break

    assert len(transport._queues["test_queue"]) == 1


def test_step_message_json_round_trip():
    message = _message(delay=30)

    restored = StepMessage.from_json(message.to_json())

    assert restored == message
    assert (restored.available_at - restored.timestamp).total_seconds() == 30


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Test Redis transport can be imported (even if redis not available)."""
    try:
        from baler.transports.redis import RedisTransport

        transport = RedisTransport()
        assert transport.host == "localhost"
        assert transport.port == 6379
        assert transport._queue_key("imports") == "baler:imports"
        assert transport._delayed_key("imports") == "baler:imports:delayed"
    except ImportError:
        pytest.fail("RedisTransport should be importable")
