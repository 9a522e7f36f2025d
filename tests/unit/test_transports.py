"""Transport tests."""

import pytest

from opsflow.contracts import RunMessage
from opsflow.transports.inmemory import InMemoryTransport
from opsflow.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    await transport.publish("runs", RunMessage(run_id="run-123", reason="webhook"))
    assert transport.pending("runs") == 1

    message_received = False
    async for raw_msg, received in transport.subscribe("runs"):
        assert received.run_id == "run-123"
        assert received.reason == "webhook"
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("runs") == 0


@pytest.mark.asyncio
async def test_inmemory_nack_requeues():
    transport = InMemoryTransport()
    await transport.publish("runs", RunMessage(run_id="run-1"))

    async for raw_msg, _ in transport.subscribe("runs"):
        await transport.nack(raw_msg)
        break
    assert transport.pending("runs") == 1


@pytest.mark.asyncio
async def test_inmemory_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [message async for _, message in transport.subscribe("empty", lifespan=0.05)]
    assert received == []


def test_run_message_json():
    message = RunMessage(run_id="run-1", reason="due")
    assert RunMessage.from_json(message.to_json()) == message


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue("opsflow.runs") == "opsflow:opsflow.runs"
