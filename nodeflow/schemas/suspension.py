"""
Suspension Schema - Serializable capture of a paused run.

A SuspensionToken holds everything needed to continue a run in another
process: the graph itself, the trigger items, a snapshot of the run data, the
scheduler working set, and the invocation that asked to wait. Nothing refers
back to an in-process call stack.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.graph.model import WorkflowGraph
from nodeflow.schemas.item import Item, SourceRef
from nodeflow.schemas.run import NodeRunResult, SchedulerState


class RunDataSnapshot(BaseModel):
    """Deep copy of a run's recorded results: node -> run index -> result."""

    run_id: str
    data: dict[str, dict[int, NodeRunResult]] = Field(default_factory=dict)

    def get(self, node: str, run_index: int = 0) -> NodeRunResult | None:
        return self.data.get(node, {}).get(run_index)

    def latest(self, node: str) -> NodeRunResult | None:
        runs = self.data.get(node)
        if not runs:
            return None
        return runs[max(runs)]

    def output(self, node: str, port: int = 0, run_index: int | None = None) -> list[dict]:
        """Item data emitted by a node on a port (latest run by default)."""
        result = self.latest(node) if run_index is None else self.get(node, run_index)
        if result is None:
            return []
        return [item.data for item in result.port(port)]

    def nodes(self) -> list[str]:
        return list(self.data)


class SuspendedInvocation(BaseModel):
    """The invocation that suspended, with the inputs it was given."""

    node: str
    run_index: int
    inputs: list[list[Item]] = Field(default_factory=list)
    source: list[SourceRef | None] = Field(default_factory=list)
    reason: str = "wait"
    resume_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SuspensionToken(BaseModel):
    """
    First-class, JSON-serializable handle on a waiting run.

    Resuming the same token twice is rejected by the executor and the token
    store; a resumed run that suspends again produces a new token.
    """

    # Identity
    token_id: str  # Format: tok_{timestamp}_{random}
    run_id: str
    workflow_id: str
    parent_run_id: str | None = None
    created_at: str  # ISO 8601 format

    # Run state
    graph: WorkflowGraph
    trigger_items: list[Item] = Field(default_factory=list)
    run_data: RunDataSnapshot
    scheduler: SchedulerState = Field(default_factory=SchedulerState)
    suspended: SuspendedInvocation

    # Nested run waiting underneath the suspended node
    child_token: "SuspensionToken | None" = None

    # Metrics carried across the pause
    path: list[str] = Field(default_factory=list)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    nodes_with_failures: list[str] = Field(default_factory=list)
    steps: int = 0

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        run_id: str,
        graph: WorkflowGraph,
        run_data: RunDataSnapshot,
        scheduler: SchedulerState,
        suspended: SuspendedInvocation,
        trigger_items: list[Item] | None = None,
        parent_run_id: str | None = None,
        child_token: "SuspensionToken | None" = None,
        path: list[str] | None = None,
        retry_counts: dict[str, int] | None = None,
        nodes_with_failures: list[str] | None = None,
        steps: int = 0,
    ) -> "SuspensionToken":
        """Create a new token with generated ID and timestamp."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        token_id = f"tok_{timestamp}_{uuid.uuid4().hex[:8]}"

        return cls(
            token_id=token_id,
            run_id=run_id,
            workflow_id=graph.id,
            parent_run_id=parent_run_id,
            created_at=datetime.now().isoformat(),
            graph=graph,
            trigger_items=trigger_items or [],
            run_data=run_data,
            scheduler=scheduler,
            suspended=suspended,
            child_token=child_token,
            path=path or [],
            retry_counts=retry_counts or {},
            nodes_with_failures=nodes_with_failures or [],
            steps=steps,
        )

    @property
    def node(self) -> str:
        return self.suspended.node

    @property
    def innermost(self) -> "SuspensionToken":
        """The deepest nested token, the one actually waiting on the outside world."""
        token = self
        while token.child_token is not None:
            token = token.child_token
        return token


class TokenSummary(BaseModel):
    """Lightweight token metadata for index listings."""

    token_id: str
    run_id: str
    workflow_id: str
    node: str
    reason: str = "wait"
    created_at: str
    resume_at: datetime | None = None

    model_config = {"extra": "allow"}

    @classmethod
    def from_token(cls, token: SuspensionToken) -> "TokenSummary":
        return cls(
            token_id=token.token_id,
            run_id=token.run_id,
            workflow_id=token.workflow_id,
            node=token.suspended.node,
            reason=token.suspended.reason,
            created_at=token.created_at,
            resume_at=token.suspended.resume_at,
        )


class TokenIndex(BaseModel):
    """Manifest of stored tokens for fast listing."""

    tokens: list[TokenSummary] = Field(default_factory=list)
    total_tokens: int = 0

    def add_token(self, token: SuspensionToken) -> None:
        self.tokens = [t for t in self.tokens if t.token_id != token.token_id]
        self.tokens.append(TokenSummary.from_token(token))
        self.total_tokens = len(self.tokens)

    def remove_token(self, token_id: str) -> bool:
        before = len(self.tokens)
        self.tokens = [t for t in self.tokens if t.token_id != token_id]
        self.total_tokens = len(self.tokens)
        return len(self.tokens) != before
