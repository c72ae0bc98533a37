"""End-to-end scenarios across bus, agent, error handler and recovery controller."""
from __future__ import annotations

import pytest

from agent_runtime.core.errors import ValidationError
from agent_runtime.core.models import AgentStatus, ModuleConfig, RecoveryStrategy
from agent_runtime.core.resilience import RetryPolicy
from agent_runtime.services.error_handler import ErrorHandler
from agent_runtime.services.recovery import RecoveryController

from support import EventRecorder, agent_config, connected_bus, make_agent


@pytest.mark.anyio
async def test_happy_path_echo_reply_and_event_order() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    agent = make_agent(bus)

    await agent.initialize()
    await agent.start()
    reply = await bus.request("A", "echo", {"msg": "hi"}, command_id="c1", timeout=2)
    await bus.join()

    assert reply["id"] == "c1"
    assert reply["success"] is True
    assert reply["result"] == {"msg": "hi"}
    assert reply["duration"] >= 0
    lifecycle = [
        (event.type, event.payload["status"])
        for event in recorder.events
        if event.type in ("agent.heartbeat", "agent.status-changed")
    ]
    assert lifecycle == [
        ("agent.heartbeat", "initializing"),
        ("agent.status-changed", "running"),
        ("agent.heartbeat", "running"),
    ]

    await agent.stop()
    await bus.shutdown()


@pytest.mark.anyio
async def test_required_module_init_failure_leaves_agent_in_error() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    agent = make_agent(bus, agent_config(M=ModuleConfig(required=True, type="boom")))

    with pytest.raises(RuntimeError, match="boom"):
        await agent.initialize()
    await bus.join()

    failures = recorder.of("agent.failed")
    assert len(failures) == 1
    assert failures[0]["category"] == "module_init_failure"
    assert failures[0]["moduleId"] == "M"
    assert failures[0]["error"] == "boom"
    assert agent.status is AgentStatus.ERROR
    assert not bus.is_consuming("A")

    await bus.shutdown()


@pytest.mark.anyio
async def test_task_retried_with_backoff_until_success() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    controller = RecoveryController(bus, retry_policy=RetryPolicy(attempts=3, initial_delay=10, factor=2, max_delay=100))
    await controller.start()
    agent = make_agent(bus, agent_config(M=ModuleConfig(required=True, type="flaky", settings={"fail_times": 2})))
    await agent.initialize()
    await agent.start()

    await bus.publish_command("A", "fetch", {"taskId": "t1", "url": "https://example.test"})
    completed = await recorder.wait_for("agent.task-completed")

    scheduled = recorder.of("recovery.retry-scheduled")
    assert [item["delay"] for item in scheduled] == [10, 20]
    assert [item["attempt"] for item in scheduled] == [2, 3]
    assert completed[0]["taskId"] == "t1"
    assert completed[0]["attempt"] == 3
    assert completed[0]["result"]["calls"] == 3
    assert len(recorder.of("agent.task-failed")) == 2
    assert controller.list_dead_letters() == []

    await agent.stop()
    await controller.stop()
    await bus.shutdown()


@pytest.mark.anyio
async def test_exhausted_retries_end_in_dead_letter_queue() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    controller = RecoveryController(bus, retry_policy=RetryPolicy(attempts=3, initial_delay=10, factor=2, max_delay=100))
    await controller.start()
    agent = make_agent(bus, agent_config(M=ModuleConfig(required=True, type="flaky")))
    await agent.initialize()
    await agent.start()

    await bus.publish_command("A", "fetch", {"taskId": "t1", "url": "https://example.test"})
    dead = await recorder.wait_for("recovery.dead_lettered")

    assert len(agent.modules["M"].calls) == 3
    assert [item["attempt"] for item in recorder.of("agent.task-failed")] == [1, 2, 3]
    assert recorder.of("agent.task-completed") == []
    entries = controller.list_dead_letters("A")
    assert len(entries) == 1
    assert entries[0].count == 3
    assert entries[0].category == "timeout"
    assert entries[0].command_type == "fetch"
    assert dead[0]["key"] == entries[0].key

    await agent.stop()
    await controller.stop()
    await bus.shutdown()


@pytest.mark.anyio
async def test_repeated_validation_errors_raise_one_pattern() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    handler = ErrorHandler(bus, error_threshold=3, window=0.5)

    for _ in range(5):
        await handler.handle_error(ValidationError("Invalid email address", details={"fieldName": "email"}))
    first = await handler.detect_patterns()
    second = await handler.detect_patterns()
    await bus.join()

    assert len(first) == 1
    assert second == []
    patterns = recorder.of("error.pattern")
    assert len(patterns) == 1
    assert patterns[0]["category"] == "VALIDATION_ERROR"
    assert patterns[0]["occurrences"] == 5
    assert patterns[0]["fieldName"] == "email"
    assert len(recorder.of("error.validation")) == 1

    await bus.shutdown()


@pytest.mark.anyio
async def test_strategy_lookup_prefers_most_specific_entry() -> None:
    bus = await connected_bus()
    controller = RecoveryController(bus)
    controller.register_strategy("timeout", "retry", "A", "M", {"maxRetries": 5})
    controller.register_strategy("timeout", "restart", "A", "*")
    controller.register_strategy("timeout", "skip", "*", "*")

    exact = controller.get_strategy("A", "M", "timeout")
    agent_level = controller.get_strategy("A", "X", "timeout")
    global_level = controller.get_strategy("B", "M", "timeout")

    assert exact.strategy is RecoveryStrategy.RETRY
    assert exact.config == {"maxRetries": 5}
    assert agent_level.strategy is RecoveryStrategy.RESTART
    assert global_level.strategy is RecoveryStrategy.SKIP

    await bus.shutdown()


@pytest.mark.anyio
async def test_two_failing_tasks_on_one_agent_both_reach_dead_letter_queue() -> None:
    bus = await connected_bus()
    recorder = await EventRecorder().attach(bus)
    controller = RecoveryController(bus, retry_policy=RetryPolicy(attempts=2, initial_delay=30, factor=1, max_delay=30))
    await controller.start()
    agent = make_agent(bus, agent_config(M=ModuleConfig(required=True, type="flaky")))
    await agent.initialize()
    await agent.start()

    await bus.publish_command("A", "fetch", {"taskId": "t1", "url": "https://example.test/1"})
    await bus.publish_command("A", "fetch", {"taskId": "t2", "url": "https://example.test/2"})
    await recorder.wait_for("recovery.dead_lettered", count=2)

    attempts = sorted((item["taskId"], item["attempt"]) for item in recorder.of("agent.task-failed"))
    assert attempts == [("t1", 1), ("t1", 2), ("t2", 1), ("t2", 2)]
    assert sorted(entry.task_id for entry in controller.list_dead_letters("A")) == ["t1", "t2"]
    assert len(agent.modules["M"].calls) == 4

    await agent.stop()
    await controller.stop()
    await bus.shutdown()
