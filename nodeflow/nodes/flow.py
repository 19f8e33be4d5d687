"""
Flow node types - Waiting, looping, nesting and stopping.
"""

import logging
from datetime import UTC, datetime, timedelta

from nodeflow.errors import ErrorKind, FatalError, InputError, NodeflowError, OperationalError
from nodeflow.graph.context import NodeCallContext
from nodeflow.graph.executor import outcome_to_result
from nodeflow.graph.model import Node
from nodeflow.graph.node import BaseNodeType, NodeDescription, Suspend
from nodeflow.schemas.item import PairedItem
from nodeflow.schemas.run import NodeRunResult, RunStatus

logger = logging.getLogger(__name__)


class WaitNode(BaseNodeType):
    """
    Pauses the run until it is resumed.

    Parameters:
        reason: free-form label stored on the token (default "wait")
        amount_seconds: advisory delay; sets the token's resume_at
        resume_at: advisory ISO-8601 timestamp
        webhook: mark the token as resumable over the webhook server

    Resuming with no payload passes the waiting items through unchanged.
    """

    description = NodeDescription(name="wait")

    def validate_parameters(self, node: Node) -> list[str]:
        amount = node.parameters.get("amount_seconds")
        if amount is not None and not isinstance(amount, str):
            if not isinstance(amount, (int, float)) or amount < 0:
                return ["'amount_seconds' must be a non-negative number"]
        return []

    async def execute(self, ctx: NodeCallContext) -> Suspend:
        resume_at = None
        if ctx.parameters.get("amount_seconds") is not None:
            seconds = float(ctx.parameters["amount_seconds"])
            resume_at = datetime.now(UTC) + timedelta(seconds=seconds)
        elif ctx.parameters.get("resume_at"):
            try:
                resume_at = datetime.fromisoformat(str(ctx.parameters["resume_at"]))
            except ValueError as e:
                raise InputError(f"Invalid resume_at: {ctx.parameters['resume_at']}") from e

        return Suspend(
            reason=str(ctx.parameters.get("reason", "wait")),
            resume_at=resume_at,
            metadata={
                "webhook": bool(ctx.parameters.get("webhook", False)),
                "item_count": len(ctx.items),
            },
        )


class SplitInBatchesNode(BaseNodeType):
    """
    Emits its input in batches, one batch per invocation.

    Output 1 ("batch") carries the current batch. The node re-invokes
    itself until every batch has been emitted, then emits all items on
    output 0 ("done").
    """

    description = NodeDescription(
        name="split_in_batches",
        outputs=2,
        output_names=["done", "batch"],
    )

    def validate_parameters(self, node: Node) -> list[str]:
        size = node.parameters.get("batch_size", 10)
        if isinstance(size, str):
            return []
        if not isinstance(size, int) or isinstance(size, bool) or size < 1:
            return ["'batch_size' must be a positive integer"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        size = int(ctx.parameters.get("batch_size", 10))
        if size < 1:
            raise InputError("'batch_size' must be a positive integer")

        start = ctx.iteration * size
        if start >= len(ctx.items):
            done = [
                item.model_copy(update={"paired_item": [PairedItem(item=i)]})
                for i, item in enumerate(ctx.items)
            ]
            ctx.logger.info(f"   Batches complete ({len(done)} item(s))")
            return NodeRunResult(outputs=[done, []])

        batch = [
            ctx.items[i].model_copy(update={"paired_item": [PairedItem(item=i)]})
            for i in range(start, min(start + size, len(ctx.items)))
        ]
        ctx.logger.info(f"   Batch {ctx.iteration + 1}: {len(batch)} item(s)")
        return NodeRunResult(outputs=[[], batch], reinvoke=True)


class ExecuteWorkflowNode(BaseNodeType):
    """
    Runs another workflow with this node's items as trigger items.

    Parameters:
        workflow: workflow id (resolved by the executor's loader) or an
            inline workflow definition

    Emits the nested run's final output. When the nested run waits, this
    node waits with it; resuming the outer token resumes the nested run.
    """

    description = NodeDescription(name="execute_workflow", literal_parameters=["workflow"])

    def validate_parameters(self, node: Node) -> list[str]:
        if not node.parameters.get("workflow"):
            return ["'workflow' is required"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult | Suspend:
        outcome = await ctx.execute_workflow(ctx.parameters["workflow"], ctx.items)
        if outcome.status == RunStatus.WAITING:
            return Suspend(
                reason="sub_workflow",
                metadata={"run_id": outcome.run_id, "workflow_id": outcome.workflow_id},
                child_token=outcome.token,
            )
        return outcome_to_result(outcome, ctx.inputs)


class StopAndErrorNode(BaseNodeType):
    """
    Fails the run with a configured message.

    Parameters:
        message: error message (expressions allowed)
        kind: input_error (default), operational or fatal
    """

    ERRORS: dict[str, type[NodeflowError]] = {
        ErrorKind.INPUT_ERROR.value: InputError,
        ErrorKind.RETRIABLE.value: OperationalError,
        "operational": OperationalError,
        ErrorKind.FATAL.value: FatalError,
    }

    description = NodeDescription(name="stop_and_error", side_effect_free=True)

    def validate_parameters(self, node: Node) -> list[str]:
        kind = node.parameters.get("kind", ErrorKind.INPUT_ERROR.value)
        if kind not in self.ERRORS:
            return [f"'kind' must be one of {', '.join(self.ERRORS)}"]
        return []

    async def execute(self, ctx: NodeCallContext) -> NodeRunResult:
        message = str(ctx.parameters.get("message") or "Workflow stopped")
        error_class = self.ERRORS.get(ctx.parameters.get("kind", ErrorKind.INPUT_ERROR.value))
        if error_class is None:
            raise InputError(f"Unknown error kind '{ctx.parameters.get('kind')}'")
        raise error_class(message)
