"""
Graph Model - Nodes, connections, and the workflow graph.

Connections join a node's output port to another node's input port. Ports
are indexes: a node may emit several branches (e.g. true/false) and accept
several input streams (e.g. a merge). One output may fan out to many inputs
and one input may receive from many outputs.

The graph is built once by whoever owns workflow definitions and is treated
as read-only for the duration of a run.

Example:
    WorkflowGraph(
        id="wf-1",
        name="Even sum",
        nodes=[
            Node(name="Start", type="trigger"),
            Node(name="Even", type="filter",
                 parameters={"condition": "={{ json.value % 2 == 0 }}"}),
            Node(name="Sum", type="aggregate",
                 parameters={"field": "value", "operation": "sum"}),
        ],
        connections=[
            Connection(source="Start", target="Even"),
            Connection(source="Even", target="Sum"),
        ],
    )
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.schemas.item import Item


class OnError(StrEnum):
    """What to do once a node has failed for good."""

    STOP = "stop"  # Fail the run
    CONTINUE_REGULAR_OUTPUT = "continue_regular_output"  # Error items on port 0
    CONTINUE_ERROR_OUTPUT = "continue_error_output"  # Error items on an extra port


class Backoff(StrEnum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class NodeSettings(BaseModel):
    """Per-node execution settings."""

    retry_on_fail: bool = False
    max_tries: int = Field(default=3, description="Total attempts, first one included")
    wait_between_tries_ms: int = 1000
    backoff: Backoff = Backoff.FIXED
    timeout_seconds: float | None = None
    on_error: OnError = OnError.STOP

    model_config = {"extra": "allow"}

    @property
    def continue_on_fail(self) -> bool:
        return self.on_error != OnError.STOP


class Node(BaseModel):
    """One step of a workflow: an instance of a registered node type."""

    name: str = Field(description="Unique within the graph")
    type: str = Field(description="Node type identifier in the registry")
    parameters: dict[str, Any] = Field(default_factory=dict)
    disabled: bool = False
    credentials: dict[str, str] = Field(
        default_factory=dict,
        description="Credential slot -> opaque credential id",
    )
    settings: NodeSettings = Field(default_factory=NodeSettings)
    notes: str = ""

    model_config = {"extra": "allow"}


class Connection(BaseModel):
    """Directed edge from an output port to an input port."""

    source: str
    target: str
    source_output: int = 0
    target_input: int = 0

    model_config = {"extra": "allow"}

    @property
    def label(self) -> str:
        return f"{self.source}[{self.source_output}] -> {self.target}[{self.target_input}]"


class WorkflowSettings(BaseModel):
    """Workflow-wide settings."""

    error_workflow: str | None = Field(
        default=None,
        description="Workflow id run with the failure context when a run fails",
    )

    model_config = {"extra": "allow"}


class WorkflowGraph(BaseModel):
    """Complete description of a workflow, the unit the engine interprets."""

    id: str
    name: str = ""
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    start_node: str | None = None
    pin_data: dict[str, list[Item]] = Field(
        default_factory=dict,
        description="Node name -> items recorded instead of invoking the node",
    )
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    model_config = {"extra": "allow"}

    def get_node(self, name: str) -> Node | None:
        """Get a node by name."""
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def node_names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def outgoing(self, name: str) -> list[Connection]:
        """Connections leaving a node, in declaration order."""
        return [c for c in self.connections if c.source == name]

    def incoming(self, name: str) -> list[Connection]:
        """Connections entering a node, in declaration order."""
        return [c for c in self.connections if c.target == name]

    def parents(self, name: str) -> list[str]:
        seen: list[str] = []
        for c in self.incoming(name):
            if c.source not in seen:
                seen.append(c.source)
        return seen

    def children(self, name: str) -> list[str]:
        seen: list[str] = []
        for c in self.outgoing(name):
            if c.target not in seen:
                seen.append(c.target)
        return seen

    def root_nodes(self) -> list[str]:
        """Enabled nodes without incoming connections, in declaration order."""
        targets = {c.target for c in self.connections}
        return [n.name for n in self.nodes if n.name not in targets and not n.disabled]

    def find_cycle(self) -> list[str] | None:
        """
        Return one connection cycle as a list of node names, or None.

        Depth-first search over nodes in declaration order so the reported
        cycle is stable for a given graph.
        """
        white, grey, black = 0, 1, 2
        color = {name: white for name in self.node_names()}
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            color[name] = grey
            stack.append(name)
            for child in self.children(name):
                if child not in color:
                    continue
                if color[child] == grey:
                    return stack[stack.index(child) :] + [child]
                if color[child] == white:
                    found = visit(child)
                    if found:
                        return found
            stack.pop()
            color[name] = black
            return None

        for name in self.node_names():
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    def topological_order(self) -> list[str]:
        """
        Kahn's algorithm with declaration order as the tie-break.

        Raises:
            ValueError: if the graph contains a cycle
        """
        names = self.node_names()
        indegree = {name: 0 for name in names}
        for name in names:
            for child in self.children(name):
                if child in indegree:
                    indegree[child] += 1

        ready = [name for name in names if indegree[name] == 0]
        order: list[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for child in self.children(current):
                if child not in indegree:
                    continue
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
            ready.sort(key=names.index)

        if len(order) != len(names):
            raise ValueError(f"Graph '{self.id}' contains a cycle")
        return order

    def validate(self) -> list[str]:
        """Structural checks that need no node type information."""
        errors: list[str] = []

        seen: set[str] = set()
        for node in self.nodes:
            if not node.name:
                errors.append("Node with empty name")
            if node.name in seen:
                errors.append(f"Duplicate node name: '{node.name}'")
            seen.add(node.name)

        for conn in self.connections:
            if conn.source not in seen:
                errors.append(f"Connection '{conn.label}' references missing source")
            if conn.target not in seen:
                errors.append(f"Connection '{conn.label}' references missing target")
            if conn.source_output < 0 or conn.target_input < 0:
                errors.append(f"Connection '{conn.label}' has a negative port index")

        if self.start_node is not None and self.start_node not in seen:
            errors.append(f"Start node '{self.start_node}' not found")

        for name in self.pin_data:
            if name not in seen:
                errors.append(f"Pin data references missing node '{name}'")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Connection cycle detected: {' -> '.join(cycle)}")

        return errors
