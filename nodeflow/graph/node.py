"""
Node Protocol - The contract every node type implements.

The engine never inspects a node's logic. It looks the type identifier up in
a NodeTypeRegistry and calls ``execute`` with a NodeCallContext. A node
returns a NodeRunResult, returns ``Suspend`` to pause the run, or raises a
classified error from ``nodeflow.errors``.

Example:
    class Uppercase(BaseNodeType):
        description = NodeDescription(name="uppercase", execution_mode="each")

        async def execute(self, ctx):
            field = ctx.parameters["field"]
            data = dict(ctx.item.data)
            data[field] = str(data.get(field, "")).upper()
            return NodeRunResult.from_items([data])

    registry = NodeTypeRegistry()
    registry.register("uppercase", Uppercase())
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from nodeflow.graph.model import Node, OnError
from nodeflow.schemas.item import to_items
from nodeflow.schemas.run import NodeRunResult

if TYPE_CHECKING:
    from nodeflow.graph.context import NodeCallContext
    from nodeflow.schemas.suspension import SuspensionToken

logger = logging.getLogger(__name__)


@dataclass
class NodeDescription:
    """Static capabilities of a node type."""

    name: str
    inputs: int = 1
    outputs: int = 1
    output_names: list[str] = field(default_factory=list)

    # Input ports a join cannot run without; None means all of them
    required_inputs: list[int] | None = None

    # "each": invoked once per input item; "once": invoked with all items
    execution_mode: Literal["each", "once"] = "once"

    accepts_error_items: bool = False
    side_effect_free: bool = False
    is_trigger: bool = False

    # Handed to the node unresolved, e.g. inline workflow definitions
    literal_parameters: list[str] = field(default_factory=list)

    def required_ports(self, input_count: int) -> list[int]:
        if self.required_inputs is None:
            return list(range(input_count))
        return [p for p in self.required_inputs if p < input_count]


@dataclass
class Suspend:
    """
    Returned by a node to pause the run at this invocation.

    ``resume_at`` is advisory: the engine never polls, the caller decides
    when to resume. ``child_token`` is set when a nested run is waiting.
    """

    reason: str = "wait"
    resume_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    child_token: "SuspensionToken | None" = None


@runtime_checkable
class NodeType(Protocol):
    """Fixed invocation interface every node type implements."""

    description: NodeDescription

    async def execute(self, ctx: "NodeCallContext") -> "NodeRunResult | Suspend": ...


class BaseNodeType:
    """Convenience base with port computation and parameter validation hooks."""

    description: NodeDescription = NodeDescription(name="base")

    def input_count(self, node: Node) -> int:
        return self.description.inputs

    def output_count(self, node: Node) -> int:
        """Declared output ports for this node instance (without the error port)."""
        return self.description.outputs

    def validate_parameters(self, node: Node) -> list[str]:
        return []

    async def execute(self, ctx: "NodeCallContext") -> "NodeRunResult | Suspend":
        raise NotImplementedError


def input_count(node_type: Any, node: Node) -> int:
    if hasattr(node_type, "input_count"):
        return node_type.input_count(node)
    return node_type.description.inputs


def output_count(node_type: Any, node: Node) -> int:
    """Output ports of a node including the error port when it has one."""
    if hasattr(node_type, "output_count"):
        count = node_type.output_count(node)
    else:
        count = node_type.description.outputs
    if node.settings.on_error == OnError.CONTINUE_ERROR_OUTPUT:
        count += 1
    return count


class FunctionNodeType(BaseNodeType):
    """
    Wraps a plain function as a node type.

    The function receives the context and may return a NodeRunResult,
    Suspend, a list of items/dicts (port 0), or a single dict. Sync functions
    run in a worker thread.
    """

    def __init__(self, func: Callable, description: NodeDescription):
        self.func = func
        self.description = description
        # Callable objects count as async when their __call__ is
        self._is_async = inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
            getattr(func, "__call__", None)
        )

    async def execute(self, ctx: "NodeCallContext") -> "NodeRunResult | Suspend":
        if self._is_async:
            value = await self.func(ctx)
        else:
            value = await asyncio.to_thread(self.func, ctx)

        if isinstance(value, (NodeRunResult, Suspend)):
            return value
        return NodeRunResult(outputs=[to_items(value)])


class NodeTypeRegistry:
    """Mapping from type identifier to node implementation."""

    def __init__(self):
        self._types: dict[str, NodeType] = {}

    def register(self, type_name: str, implementation: NodeType) -> None:
        """Register a node type implementation."""
        if not isinstance(implementation, NodeType):
            raise TypeError(
                f"Node type '{type_name}' must provide 'description' and async 'execute'"
            )
        if type_name in self._types:
            logger.debug(f"Replacing node type registration: {type_name}")
        self._types[type_name] = implementation

    def register_function(
        self,
        type_name: str,
        func: Callable,
        **description: Any,
    ) -> None:
        """Register a function as a node type."""
        desc = NodeDescription(name=type_name, **description)
        self.register(type_name, FunctionNodeType(func, desc))

    def get(self, type_name: str) -> NodeType | None:
        return self._types.get(type_name)

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._types

    def types(self) -> list[str]:
        return sorted(self._types)

    def copy(self) -> "NodeTypeRegistry":
        clone = NodeTypeRegistry()
        clone._types = dict(self._types)
        return clone
