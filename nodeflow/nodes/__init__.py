"""Built-in node types."""

from nodeflow.graph.node import NodeTypeRegistry
from nodeflow.nodes.core import (
    AggregateNode,
    FilterNode,
    IfNode,
    MergeNode,
    NoOpNode,
    SetNode,
    SwitchNode,
    TriggerNode,
)
from nodeflow.nodes.flow import (
    ExecuteWorkflowNode,
    SplitInBatchesNode,
    StopAndErrorNode,
    WaitNode,
)

CORE_NODE_TYPES = [
    TriggerNode,
    NoOpNode,
    SetNode,
    FilterNode,
    IfNode,
    SwitchNode,
    MergeNode,
    AggregateNode,
    WaitNode,
    SplitInBatchesNode,
    ExecuteWorkflowNode,
    StopAndErrorNode,
]


def register_core_nodes(registry: NodeTypeRegistry) -> NodeTypeRegistry:
    for node_class in CORE_NODE_TYPES:
        node_type = node_class()
        registry.register(node_type.description.name, node_type)
    return registry


def default_registry() -> NodeTypeRegistry:
    """A registry with every built-in node type."""
    return register_core_nodes(NodeTypeRegistry())


__all__ = [
    "CORE_NODE_TYPES",
    "AggregateNode",
    "ExecuteWorkflowNode",
    "FilterNode",
    "IfNode",
    "MergeNode",
    "NoOpNode",
    "SetNode",
    "SplitInBatchesNode",
    "StopAndErrorNode",
    "SwitchNode",
    "TriggerNode",
    "WaitNode",
    "default_registry",
    "register_core_nodes",
]
