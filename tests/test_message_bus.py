"""Tests for command queues, topic routing and reconnect behaviour of the bus."""
from __future__ import annotations

import asyncio
from typing import List

import pytest
from pydantic import BaseModel

from agent_runtime.core.errors import BusUnavailableError, InfrastructureError, ValidationError
from agent_runtime.core.message_bus import BusConfig, MessageBus, topic_matches
from agent_runtime.core.models import Command, Event
from agent_runtime.core.resilience import RetryPolicy

from support import EventRecorder, connected_bus


def test_topic_patterns_follow_amqp_rules() -> None:
    assert topic_matches("*.agent.failed", "A.agent.failed")
    assert topic_matches("A.#", "A.agent.heartbeat")
    assert topic_matches("#", "recovery-controller.recovery.dead_lettered")
    assert topic_matches("*.agent.*", "A.agent.task-failed")
    assert not topic_matches("*.agent.*", "A.module.error")
    assert not topic_matches("*.failed", "A.agent.failed")
    assert topic_matches("A.#.failed", "A.failed")


@pytest.mark.anyio
async def test_commands_are_delivered_in_order_to_single_consumer() -> None:
    bus = await connected_bus()
    received: List[str] = []
    done = asyncio.Event()

    async def handler(command: Command) -> dict:
        received.append(command.payload["n"])
        if len(received) == 5:
            done.set()
        return {"ok": True}

    for n in range(5):
        await bus.publish_command("A", "work", {"n": n})
    await bus.consume_commands("A", handler)
    await asyncio.wait_for(done.wait(), 2)

    assert received == [0, 1, 2, 3, 4]
    assert bus.queue_depth("A") == 0
    with pytest.raises(InfrastructureError):
        await bus.consume_commands("A", handler)

    await bus.shutdown()


@pytest.mark.anyio
async def test_request_returns_consumer_reply() -> None:
    bus = await connected_bus()

    async def handler(command: Command) -> dict:
        return {"id": command.id, "echo": command.payload}

    await bus.consume_commands("A", handler)
    reply = await bus.request("A", "echo", {"msg": "hi"}, command_id="c1", timeout=1)

    assert reply == {"id": "c1", "echo": {"msg": "hi"}}
    await bus.shutdown()


@pytest.mark.anyio
async def test_enqueued_payload_is_not_shared_with_publisher() -> None:
    bus = await connected_bus()
    payload = {"items": [1]}
    seen = []

    async def handler(command: Command) -> None:
        seen.append(command.payload)

    await bus.publish_command("A", "work", payload)
    payload["items"].append(2)
    await bus.consume_commands("A", handler)
    await asyncio.sleep(0.05)

    assert seen == [{"items": [1]}]
    await bus.shutdown()


@pytest.mark.anyio
async def test_unacked_command_is_requeued_when_consumer_is_cancelled() -> None:
    bus = await connected_bus()
    started = asyncio.Event()

    async def stuck(command: Command) -> None:
        started.set()
        await asyncio.sleep(10)

    await bus.publish_command("A", "work", {"n": 1})
    await bus.consume_commands("A", stuck)
    await asyncio.wait_for(started.wait(), 1)
    await bus.shutdown()

    assert bus.queue_depth("A") == 1
    assert bus._queues["A"]._ready[0].retry_count == 1


@pytest.mark.anyio
async def test_subscribe_receives_only_future_events() -> None:
    bus = await connected_bus()
    await bus.publish_event("A", "agent.heartbeat", {"n": 1})
    recorder = await EventRecorder().attach(bus, "A.agent.*")
    await bus.publish_event("A", "agent.heartbeat", {"n": 2})
    await bus.publish_event("B", "agent.heartbeat", {"n": 3})
    await bus.join()

    assert [event.payload["n"] for event in recorder.events] == [2]
    await bus.shutdown()


@pytest.mark.anyio
async def test_failing_subscriber_does_not_stop_delivery() -> None:
    bus = await connected_bus()
    seen: List[int] = []

    def handler(event: Event) -> None:
        seen.append(event.payload["n"])
        if event.payload["n"] == 1:
            raise RuntimeError("bad event")

    await bus.subscribe("#", handler)
    for n in range(3):
        await bus.publish_event("A", "agent.heartbeat", {"n": n})
    await bus.join()

    assert seen == [0, 1, 2]
    await bus.shutdown()


@pytest.mark.anyio
async def test_slow_subscriber_drops_events_then_is_disconnected() -> None:
    bus = await connected_bus(config=BusConfig(subscriber_buffer=2, max_dropped=3, slow_subscriber_threshold=0.01))
    gate = asyncio.Event()
    fast = await EventRecorder().attach(bus)

    async def slow(event: Event) -> None:
        await gate.wait()

    await bus.subscribe("#", slow)
    for n in range(10):
        await bus.publish_event("A", "agent.heartbeat", {"n": n})
    gate.set()
    await bus.join()

    assert len(fast.events) == 10
    assert bus.status()["subscriptions"] == 1
    await bus.shutdown()


@pytest.mark.anyio
async def test_burst_larger_than_buffer_reaches_prompt_subscribers() -> None:
    bus = await connected_bus(config=BusConfig(subscriber_buffer=4, max_dropped=2))
    first = await EventRecorder().attach(bus)
    second = await EventRecorder().attach(bus, "A.agent.*")

    for n in range(50):
        await bus.publish_event("A", "agent.heartbeat", {"n": n})
    await bus.join()

    assert [event.payload["n"] for event in first.events] == list(range(50))
    assert len(second.events) == 50
    assert bus.status()["dropped"] == 0
    assert bus.status()["subscriptions"] == 2
    await bus.shutdown()


@pytest.mark.anyio
async def test_internal_subscription_drops_but_is_never_disconnected() -> None:
    config = BusConfig(subscriber_buffer=2, max_dropped=1, slow_subscriber_threshold=0.01, publish_timeout=0.01)
    bus = await connected_bus(config=config)
    gate = asyncio.Event()
    seen: List[int] = []

    async def lagging(event: Event) -> None:
        await gate.wait()
        seen.append(event.payload["n"])

    await bus.subscribe("#", lagging, internal=True)
    for n in range(6):
        await bus.publish_event("A", "agent.heartbeat", {"n": n})

    assert bus.status()["subscriptions"] == 1
    assert bus.status()["dropped"] == 3
    gate.set()
    await bus.join()
    assert seen == [0, 1, 2]
    await bus.shutdown()


class ContentRequest(BaseModel):
    title: str
    wordCount: int = 500


@pytest.mark.anyio
async def test_registered_schema_rejects_invalid_payloads() -> None:
    bus = await connected_bus()
    bus.register_schema("create-content", ContentRequest)
    bus.register_schema("content.published", ContentRequest)

    with pytest.raises(ValidationError) as rejected:
        await bus.publish_command("A", "create-content", {"wordCount": "many"})
    await bus.publish_command("A", "create-content", {"title": "Launch notes"})
    await bus.publish_command("A", "unchecked", {"anything": True})
    with pytest.raises(ValidationError):
        await bus.publish_event("A", "content.published", {"wordCount": 10})
    with pytest.raises(ValidationError):
        await bus.publish_command("", "create-content", {"title": "Lost"})

    assert bus.queue_depth("A") == 2
    assert [error["loc"] for error in rejected.value.details["errors"]] == ["title", "wordCount"]
    assert rejected.value.details["messageType"] == "create-content"
    await bus.shutdown()


@pytest.mark.anyio
async def test_unsubscribe_stops_delivery() -> None:
    bus = await connected_bus()
    recorder = EventRecorder()
    subscription = await bus.subscribe("#", recorder.events.append)
    await bus.publish_event("A", "agent.heartbeat")
    await bus.join()

    assert await bus.unsubscribe(subscription) is True
    assert await bus.unsubscribe(subscription) is False
    await bus.publish_event("A", "agent.heartbeat")
    await bus.join()

    assert len(recorder.events) == 1
    await bus.shutdown()


@pytest.mark.anyio
async def test_connect_gives_up_after_reconnect_attempts() -> None:
    calls: List[str] = []

    async def refuse(url: str) -> None:
        calls.append(url)
        raise ConnectionError("refused")

    policy = RetryPolicy(attempts=3, initial_delay=1, factor=1, max_delay=1)
    bus = MessageBus(BusConfig(reconnect=policy), connector=refuse)

    with pytest.raises(BusUnavailableError):
        await bus.connect()
    assert len(calls) == 3


@pytest.mark.anyio
async def test_publish_blocks_during_outage_and_resumes_after_reconnect() -> None:
    state = {"down": False}

    async def connector(url: str) -> None:
        if state["down"]:
            raise ConnectionError("broker down")

    policy = RetryPolicy(attempts=100, initial_delay=5, factor=1, max_delay=5)
    bus = MessageBus(BusConfig(reconnect=policy), connector=connector)
    await bus.connect()
    await bus.publish_command("A", "work", {"n": 1})

    state["down"] = True
    bus.connection_lost(ConnectionError("socket closed"))
    assert not bus.is_connected
    with pytest.raises(BusUnavailableError):
        await bus.publish_event("A", "agent.heartbeat", timeout=0.05)

    state["down"] = False
    await bus.publish_command("A", "work", {"n": 2}, timeout=1)

    assert bus.is_connected
    assert bus.topology_declarations == 2
    assert bus.queue_depth("A") == 2
    await bus.shutdown()


@pytest.mark.anyio
async def test_shutdown_rejects_further_publishes() -> None:
    bus = await connected_bus()
    await bus.shutdown()

    with pytest.raises(BusUnavailableError):
        await bus.publish_command("A", "work")
