"""
Readiness - Which node invocations can run next.

Deliveries flow from a finished invocation along outgoing connections, in
connection declaration order:

- A single-input node gets one queued invocation per delivery.
- A multi-input node collects deliveries in FIFO waiting slots; the k-th
  delivery on a port fills that port in the k-th slot. A slot with every
  port filled moves to the ready queue.
- Ports that emitted no items deliver nothing, so the branch behind them is
  skipped rather than waited on.

When the ready queue drains the scheduler calls ``advance``: deferred
re-invocations run first, then the first join slot (upstream joins before
downstream ones) whose required ports are filled is released with empty optional
ports. Slots that can never be completed are dropped.
"""

import logging

from nodeflow.graph.model import OnError, WorkflowGraph
from nodeflow.graph.node import NodeTypeRegistry, input_count, output_count
from nodeflow.schemas.item import Item, SourceRef
from nodeflow.schemas.run import ExecutionEntry, NodeRunResult, SchedulerState, WaitingSlot

logger = logging.getLogger(__name__)


def port_count(graph: WorkflowGraph, registry: NodeTypeRegistry, name: str) -> int:
    """Input ports of a node: its declared count, widened to cover its connections."""
    node = graph.get_node(name)
    declared = 1
    if node is not None:
        node_type = registry.get(node.type)
        if node_type is not None:
            declared = input_count(node_type, node)
    connected = [c.target_input + 1 for c in graph.incoming(name)]
    return max([declared, *connected])


def accepts_error_items(graph: WorkflowGraph, registry: NodeTypeRegistry, name: str) -> bool:
    node = graph.get_node(name)
    if node is None:
        return False
    node_type = registry.get(node.type)
    return bool(node_type and node_type.description.accepts_error_items)


def _error_port(graph: WorkflowGraph, registry: NodeTypeRegistry, name: str) -> int | None:
    node = graph.get_node(name)
    if node is None or node.settings.on_error != OnError.CONTINUE_ERROR_OUTPUT:
        return None
    node_type = registry.get(node.type)
    if node_type is None:
        return None
    return output_count(node_type, node) - 1


def ready_nodes(graph: WorkflowGraph, state: SchedulerState) -> list[ExecutionEntry]:
    """
    Take the invocations ready in the current cycle.

    FIFO by delivery: the order items reached each node, which follows the
    order results were recorded and connections were declared.
    """
    ready = list(state.queue)
    state.queue.clear()
    return ready


def deliver(
    graph: WorkflowGraph,
    registry: NodeTypeRegistry,
    state: SchedulerState,
    target: str,
    port: int,
    items: list[Item],
    source: SourceRef | None,
) -> None:
    """Hand one batch of items to an input port of ``target``."""
    count = port_count(graph, registry, target)

    if count <= 1:
        state.queue.append(ExecutionEntry(node=target, inputs=[items], source=[source]))
        return

    slots = state.waiting.setdefault(target, [])
    slot = next((s for s in slots if s.inputs[port] is None), None)
    if slot is None:
        slot = WaitingSlot(inputs=[None] * count, source=[None] * count)
        slots.append(slot)
    slot.inputs[port] = items
    slot.source[port] = source

    if all(p is not None for p in slot.inputs):
        slots.remove(slot)
        if not slots:
            del state.waiting[target]
        state.queue.append(
            ExecutionEntry(
                node=target,
                inputs=[p or [] for p in slot.inputs],
                source=slot.source,
            )
        )
        logger.debug(f"Join complete for {target}")


def propagate(
    graph: WorkflowGraph,
    registry: NodeTypeRegistry,
    state: SchedulerState,
    node: str,
    run_index: int,
    result: NodeRunResult,
) -> list[str]:
    """
    Deliver a recorded result along the node's outgoing connections.

    Error items on a regular port only reach node types that accept them;
    the dedicated error port delivers to any node. Returns the targets that
    received items.
    """
    error_port = _error_port(graph, registry, node)
    delivered: list[str] = []
    for conn in graph.outgoing(node):
        items = result.port(conn.source_output)
        if (
            items
            and conn.source_output != error_port
            and not accepts_error_items(graph, registry, conn.target)
        ):
            items = [i for i in items if not i.is_error]
        if not items:
            continue
        source = SourceRef(node=node, output=conn.source_output, run_index=run_index)
        deliver(graph, registry, state, conn.target, conn.target_input, items, source)
        delivered.append(conn.target)
    return delivered


def release_waiting(
    graph: WorkflowGraph,
    registry: NodeTypeRegistry,
    state: SchedulerState,
) -> ExecutionEntry | None:
    """
    Release the first join slot that has all of its required ports.

    Only called once nothing else can run. Joins are visited in topological
    order: a join downstream of another waiting join may still receive items
    from it, so the upstream one goes first.
    """
    for name in graph.topological_order():
        slots = state.waiting.get(name)
        if not slots:
            continue
        slot = slots[0]
        node = graph.get_node(name)
        node_type = registry.get(node.type) if node else None
        required = (
            node_type.description.required_ports(len(slot.inputs))
            if node_type is not None
            else list(range(len(slot.inputs)))
        )
        if all(slot.inputs[p] is not None for p in required):
            slots.pop(0)
            if not slots:
                del state.waiting[name]
            logger.debug(f"Releasing partial join for {name}")
            return ExecutionEntry(
                node=name,
                inputs=[p if p is not None else [] for p in slot.inputs],
                source=slot.source,
            )
    return None


def drop_waiting(state: SchedulerState) -> list[str]:
    """Discard join slots that can never complete; returns the affected nodes."""
    dropped = [name for name, slots in state.waiting.items() if slots]
    state.waiting.clear()
    for name in dropped:
        if name not in state.skipped:
            state.skipped.append(name)
    return dropped


def advance(
    graph: WorkflowGraph,
    registry: NodeTypeRegistry,
    state: SchedulerState,
) -> ExecutionEntry | None:
    """
    Pick the next invocation once the ready queue has drained.

    Deferred re-invocations first, then partially filled joins. Returns None
    when the run has nothing left to do.
    """
    if state.deferred:
        return state.deferred.pop(0)

    entry = release_waiting(graph, registry, state)
    if entry is not None:
        return entry

    dropped = drop_waiting(state)
    if dropped:
        logger.info(f"   ⊘ Dropping unreachable joins: {', '.join(dropped)}")
    return None
