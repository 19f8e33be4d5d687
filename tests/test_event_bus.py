"""
Tests for the event bus and the lifecycle events the executor publishes.
"""

import asyncio

import pytest
from conftest import Flaky, make_graph

from nodeflow.graph.executor import WorkflowExecutor
from nodeflow.graph.model import Node, NodeSettings
from nodeflow.runtime.event_bus import EventBus, EventType, WorkflowEvent


def event(event_type=EventType.CUSTOM, workflow_id="wf-1", run_id="run-1", node=None):
    return WorkflowEvent(type=event_type, workflow_id=workflow_id, run_id=run_id, node=node)


@pytest.mark.asyncio
async def test_subscribers_receive_matching_events():
    bus = EventBus()
    received = []

    async def handler(e):
        received.append(e)

    bus.subscribe([EventType.NODE_COMPLETED], handler, filter_workflow="wf-1", filter_node="A")

    await bus.publish(event(EventType.NODE_COMPLETED, node="A"))
    await bus.publish(event(EventType.NODE_COMPLETED, node="B"))
    await bus.publish(event(EventType.NODE_COMPLETED, workflow_id="wf-2", node="A"))
    await bus.publish(event(EventType.NODE_FAILED, node="A"))

    assert len(received) == 1
    assert received[0].node == "A"


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(e):
        received.append(e)

    sub_id = bus.subscribe([EventType.CUSTOM], handler)
    assert bus.unsubscribe(sub_id)
    assert not bus.unsubscribe(sub_id)

    await bus.publish(event())

    assert received == []


@pytest.mark.asyncio
async def test_failing_handler_is_isolated():
    bus = EventBus()
    received = []

    async def broken(e):
        raise RuntimeError("handler bug")

    async def healthy(e):
        received.append(e)

    bus.subscribe([EventType.CUSTOM], broken)
    bus.subscribe([EventType.CUSTOM], healthy)

    await bus.publish(event())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_is_most_recent_first_and_bounded():
    bus = EventBus(max_history=3)

    for i in range(5):
        await bus.publish(event(run_id=f"run-{i}"))

    history = bus.get_history()
    assert [e.run_id for e in history] == ["run-4", "run-3", "run-2"]
    assert [e.run_id for e in bus.get_history(limit=1)] == ["run-4"]
    assert bus.get_history(run_id="run-3")[0].run_id == "run-3"
    assert bus.get_stats()["events_by_type"] == {"custom": 3}


@pytest.mark.asyncio
async def test_wait_for_event():
    bus = EventBus()

    waiter = asyncio.create_task(bus.wait_for(EventType.RUN_COMPLETED, run_id="run-7", timeout=1))
    await asyncio.sleep(0)
    await bus.publish(event(EventType.RUN_COMPLETED, run_id="run-6"))
    await bus.publish(event(EventType.RUN_COMPLETED, run_id="run-7"))

    found = await waiter
    assert found.run_id == "run-7"
    assert bus.get_stats()["subscriptions"] == 0


@pytest.mark.asyncio
async def test_wait_for_times_out():
    bus = EventBus()

    assert await bus.wait_for(EventType.RUN_FAILED, timeout=0.01) is None


def test_event_to_dict():
    data = event(EventType.NODE_STARTED, node="A").to_dict()

    assert data["type"] == "node_started"
    assert data["node"] == "A"
    assert "timestamp" in data


# ---- events published by the executor ----


@pytest.mark.asyncio
async def test_run_lifecycle_events(registry, config):
    bus = EventBus()
    executor = WorkflowExecutor(registry, config=config, event_bus=bus)
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Check", "if", {"condition": "={{ json.value > 0 }}"}),
            ("Yes", "noop"),
            ("No", "noop"),
        ],
        [("Start", "Check"), ("Check", "Yes", 0), ("Check", "No", 1)],
    )

    outcome = await executor.start_run(graph, items=[{"value": 1}])

    types = [e.type for e in reversed(bus.get_history(run_id=outcome.run_id))]
    assert types[0] == EventType.RUN_STARTED
    assert types[-1] == EventType.RUN_COMPLETED
    assert types.count(EventType.NODE_STARTED) == 3
    assert types.count(EventType.NODE_COMPLETED) == 3
    skipped = bus.get_history(event_type=EventType.NODE_SKIPPED)
    assert [e.node for e in skipped] == ["No"]
    completed = bus.get_history(event_type=EventType.RUN_COMPLETED)[0]
    assert completed.data["path"] == ["Start", "Check", "Yes"]


@pytest.mark.asyncio
async def test_failure_and_retry_events(registry, config, fast_sleep):
    registry.register_function("flaky", Flaky(failures=5))
    bus = EventBus()
    executor = WorkflowExecutor(registry, config=config, event_bus=bus)
    graph = make_graph(
        [
            ("Start", "trigger"),
            Node(
                name="Fetch",
                type="flaky",
                settings=NodeSettings(retry_on_fail=True, max_tries=2, wait_between_tries_ms=0),
            ),
        ],
        [("Start", "Fetch")],
    )

    await executor.start_run(graph)

    retry = bus.get_history(event_type=EventType.NODE_RETRY)
    assert [e.data["retry_count"] for e in retry] == [1]
    node_failed = bus.get_history(event_type=EventType.NODE_FAILED)[0]
    assert node_failed.data["kind"] == "retriable"
    run_failed = bus.get_history(event_type=EventType.RUN_FAILED)[0]
    assert run_failed.node == "Fetch"
