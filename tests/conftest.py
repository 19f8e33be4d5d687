"""Shared fixtures: registries with fake node types and graph helpers."""

import pytest

from nodeflow.config import EngineConfig
from nodeflow.errors import InputError, OperationalError
from nodeflow.graph.executor import WorkflowExecutor
from nodeflow.graph.model import Connection, Node, WorkflowGraph
from nodeflow.nodes import default_registry
from nodeflow.observability import clear_trace_context
from nodeflow.schemas.item import Item


def make_graph(nodes, connections, graph_id="wf-test", **kwargs) -> WorkflowGraph:
    """
    Build a graph from compact tuples.

    nodes: Node objects or (name, type) / (name, type, parameters) tuples
    connections: Connection objects or (source, target) /
        (source, target, source_output, target_input) tuples
    """
    built_nodes = []
    for entry in nodes:
        if isinstance(entry, Node):
            built_nodes.append(entry)
        else:
            name, node_type, *rest = entry
            built_nodes.append(Node(name=name, type=node_type, parameters=rest[0] if rest else {}))

    built_connections = []
    for entry in connections:
        if isinstance(entry, Connection):
            built_connections.append(entry)
        else:
            source, target, *ports = entry
            built_connections.append(
                Connection(
                    source=source,
                    target=target,
                    source_output=ports[0] if ports else 0,
                    target_input=ports[1] if len(ports) > 1 else 0,
                )
            )
    return WorkflowGraph(id=graph_id, nodes=built_nodes, connections=built_connections, **kwargs)


class CallLog:
    """Records (node name, input values) for every fake invocation."""

    def __init__(self):
        self.calls: list[tuple[str, list]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)


class Flaky:
    """Raises OperationalError on the first ``failures`` attempts."""

    def __init__(self, failures: int, error_class=OperationalError):
        self.failures = failures
        self.error_class = error_class
        self.attempts = 0

    async def __call__(self, ctx):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error_class(f"attempt {self.attempts} failed")
        return [dict(item.data, ok=True) for item in ctx.items]


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def registry(call_log):
    """Built-in node types plus a few fakes."""
    reg = default_registry()

    async def record(ctx):
        call_log.calls.append((ctx.node_name, [i.data for i in ctx.items]))
        return [Item(data=dict(i.data)) for i in ctx.items]

    async def join(ctx):
        call_log.calls.append((ctx.node_name, [[i.data for i in port] for port in ctx.inputs]))
        merged = []
        for port in ctx.inputs:
            merged.extend(dict(i.data) for i in port)
        return merged

    async def boom(ctx):
        raise InputError("bad input")

    async def crash(ctx):
        raise RuntimeError("bug in node")

    reg.register_function("record", record)
    reg.register_function("join", join, inputs=2)
    reg.register_function("boom", boom)
    reg.register_function("crash", crash)
    return reg


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        parallel_branches=True,
        max_steps=1000,
        max_node_runs=100,
        default_timeout_seconds=None,
        max_retry_delay_seconds=60.0,
        token_dir=tmp_path / "tokens",
    )


@pytest.fixture
def executor(registry, config):
    return WorkflowExecutor(registry, config=config)


@pytest.fixture
def fast_sleep(monkeypatch):
    """Skip backoff waits; records requested delays."""
    delays: list[float] = []

    async def no_sleep(seconds, *args, **kwargs):
        delays.append(seconds)

    monkeypatch.setattr("nodeflow.graph.retry.asyncio.sleep", no_sleep)
    return delays


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()
