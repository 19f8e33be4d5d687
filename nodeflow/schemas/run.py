"""
Run Schema - What a run produces and what the scheduler needs to continue it.

NodeRunResult is the recorded outcome of one node invocation. SchedulerState
is the serializable part of the scheduler's working set (ready queue, join
slots, deferred re-invocations), kept separate from run data so both can be
captured in a suspension token.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.schemas.item import Item, SourceRef


class RunStatus(StrEnum):
    """Status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    WAITING = "waiting"
    CANCELED = "canceled"


class NodeErrorRecord(BaseModel):
    """Error attached to an error-marked result (continue-on-fail)."""

    kind: str
    message: str
    description: str | None = None
    error_type: str = ""


class NodeRunResult(BaseModel):
    """
    Output of one node invocation.

    ``outputs[i]`` holds the items emitted on output port ``i``. A port that
    emitted nothing propagates nothing downstream.
    """

    outputs: list[list[Item]] = Field(default_factory=list)
    error: NodeErrorRecord | None = None
    source: list[SourceRef | None] = Field(default_factory=list)

    # Controlled iteration: ask the scheduler to invoke this node again
    reinvoke: bool = False

    @classmethod
    def from_items(cls, *ports: list[Any]) -> "NodeRunResult":
        """Build a result from one list of items (or dicts) per output port."""
        return cls(outputs=[[Item.of(v) for v in port] for port in ports])

    def port(self, index: int) -> list[Item]:
        """Items emitted on a port; empty when the port does not exist."""
        if index < len(self.outputs):
            return self.outputs[index]
        return []

    @property
    def item_count(self) -> int:
        return sum(len(p) for p in self.outputs)


class RunError(BaseModel):
    """Why a run failed."""

    node: str | None = None
    kind: str
    message: str
    description: str | None = None
    run_index: int | None = None
    error_type: str = ""


class ExecutionEntry(BaseModel):
    """One pending node invocation with its inputs, one list per input port."""

    node: str
    inputs: list[list[Item]] = Field(default_factory=list)
    source: list[SourceRef | None] = Field(default_factory=list)

    # Re-invocations requested so far in a controlled-iteration chain
    iteration: int = 0

    # Set when the entry already holds an invocation index (requeued work)
    run_index: int | None = None


class WaitingSlot(BaseModel):
    """Partially filled join for a multi-input node. None marks an empty port."""

    inputs: list[list[Item] | None] = Field(default_factory=list)
    source: list[SourceRef | None] = Field(default_factory=list)


class SchedulerState(BaseModel):
    """Serializable scheduling working set of a run."""

    queue: list[ExecutionEntry] = Field(default_factory=list)
    waiting: dict[str, list[WaitingSlot]] = Field(default_factory=dict)
    deferred: list[ExecutionEntry] = Field(default_factory=list)
    next_run_index: dict[str, int] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)

    def reserve_run_index(self, node: str) -> int:
        """Hand out the next invocation index for a node."""
        index = self.next_run_index.get(node, 0)
        self.next_run_index[node] = index + 1
        return index
