"""
nodeflow - A node-based workflow execution engine.

Example:
    from nodeflow import WorkflowExecutor, WorkflowGraph, default_registry

    executor = WorkflowExecutor(default_registry())
    outcome = await executor.start_run(WorkflowGraph.model_validate(definition))
"""

from nodeflow.config import EngineConfig
from nodeflow.errors import (
    ErrorKind,
    FatalError,
    GraphValidationError,
    InputError,
    NodeflowError,
    OperationalError,
    SubWorkflowError,
    SuspensionTokenError,
)
from nodeflow.graph.context import NodeCallContext
from nodeflow.graph.executor import RunOutcome, WorkflowExecutor
from nodeflow.graph.model import (
    Backoff,
    Connection,
    Node,
    NodeSettings,
    OnError,
    WorkflowGraph,
    WorkflowSettings,
)
from nodeflow.graph.node import BaseNodeType, NodeDescription, NodeTypeRegistry, Suspend
from nodeflow.nodes import default_registry
from nodeflow.schemas.item import Item, PairedItem
from nodeflow.schemas.run import NodeRunResult, RunStatus
from nodeflow.schemas.suspension import SuspensionToken

__version__ = "0.1.0"

__all__ = [
    # Engine
    "WorkflowExecutor",
    "RunOutcome",
    "EngineConfig",
    # Graph
    "WorkflowGraph",
    "WorkflowSettings",
    "Node",
    "NodeSettings",
    "Connection",
    "OnError",
    "Backoff",
    # Node types
    "BaseNodeType",
    "NodeDescription",
    "NodeTypeRegistry",
    "NodeCallContext",
    "Suspend",
    "default_registry",
    # Data
    "Item",
    "PairedItem",
    "NodeRunResult",
    "RunStatus",
    "SuspensionToken",
    # Errors
    "ErrorKind",
    "NodeflowError",
    "GraphValidationError",
    "InputError",
    "OperationalError",
    "FatalError",
    "SubWorkflowError",
    "SuspensionTokenError",
]
