"""
Run Data Store - Append-only record of one run's node results.

Results are keyed by node name and invocation index. Writes go through an
asyncio lock so concurrently finishing branches never interleave, and an
already recorded slot can never be overwritten. Reads return the stored
objects; callers that hand data to node code copy it first.
"""

import asyncio
import logging

from nodeflow.errors import RunDataConflictError
from nodeflow.schemas.run import NodeRunResult
from nodeflow.schemas.suspension import RunDataSnapshot, SuspensionToken

logger = logging.getLogger(__name__)


class RunDataStore:
    """Per-run storage of NodeRunResults: node -> run index -> result."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._data: dict[str, dict[int, NodeRunResult]] = {}
        self._lock = asyncio.Lock()

    async def record(self, node: str, run_index: int, result: NodeRunResult) -> None:
        """
        Record the final result of one invocation.

        Raises:
            RunDataConflictError: if (node, run_index) is already recorded
        """
        async with self._lock:
            runs = self._data.setdefault(node, {})
            if run_index in runs:
                raise RunDataConflictError(node, run_index)
            runs[run_index] = result
        logger.debug(
            f"Recorded {node}[{run_index}]: {result.item_count} item(s)"
            + (" (error)" if result.error else "")
        )

    def get(self, node: str, run_index: int = 0) -> NodeRunResult | None:
        return self._data.get(node, {}).get(run_index)

    def runs(self, node: str) -> list[NodeRunResult]:
        """All results for a node in invocation order."""
        runs = self._data.get(node, {})
        return [runs[i] for i in sorted(runs)]

    def latest(self, node: str) -> NodeRunResult | None:
        runs = self._data.get(node)
        if not runs:
            return None
        return runs[max(runs)]

    def has_run(self, node: str) -> bool:
        return bool(self._data.get(node))

    def nodes(self) -> list[str]:
        """Nodes with at least one recorded result, in first-record order."""
        return [name for name, runs in self._data.items() if runs]

    def snapshot(self) -> RunDataSnapshot:
        """Deep copy of everything recorded so far."""
        data = {
            node: {index: result.model_copy(deep=True) for index, result in runs.items()}
            for node, runs in self._data.items()
        }
        return RunDataSnapshot(run_id=self.run_id, data=data)

    def restore(self, source: RunDataSnapshot | SuspensionToken) -> None:
        """Replace the store contents with a snapshot (or a token's snapshot)."""
        snapshot = source.run_data if isinstance(source, SuspensionToken) else source
        self._data = {
            node: {int(index): result.model_copy(deep=True) for index, result in runs.items()}
            for node, runs in snapshot.data.items()
        }
        logger.debug(f"Restored run data for {len(self._data)} node(s) into run {self.run_id}")

    @classmethod
    def from_snapshot(cls, source: RunDataSnapshot | SuspensionToken) -> "RunDataStore":
        snapshot = source.run_data if isinstance(source, SuspensionToken) else source
        store = cls(snapshot.run_id)
        store.restore(snapshot)
        return store
