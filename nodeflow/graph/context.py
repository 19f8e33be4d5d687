"""
Execution Context Builder - What a node sees when it is invoked.

For each ready invocation the builder resolves the node's parameters
against the run data and packages them, together with deep copies of the
input items, into NodeCallContext objects:

- ``execution_mode == "each"``: one context per item of input port 0, with
  parameters resolved against that item.
- ``execution_mode == "once"``: a single context, parameters resolved
  against the first item, all items passed along.

Building reads the run data store and never writes to it.
"""

import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nodeflow.credentials import CredentialProvider
from nodeflow.errors import CredentialNotFoundError, InputError
from nodeflow.graph.expression import ExpressionScope, resolve_parameters, resolve_value
from nodeflow.graph.model import Node
from nodeflow.graph.node import NodeType
from nodeflow.schemas.item import BinaryRef, Item, PairedItem, SourceRef
from nodeflow.schemas.run import ExecutionEntry
from nodeflow.storage.binary import BinaryDataProvider

if TYPE_CHECKING:
    from nodeflow.graph.executor import Run, RunOutcome

# (workflow or workflow id, items, parent context) -> nested outcome
WorkflowRunner = Callable[[Any, list[Item], "NodeCallContext"], Awaitable["RunOutcome"]]


@dataclass
class NodeCallContext:
    """
    Everything one node invocation is allowed to see.

    ``items``/``inputs`` are copies: a node may mutate them freely without
    touching recorded run data.
    """

    node: Node
    run_id: str
    workflow_id: str
    run_index: int
    parameters: dict[str, Any]

    # Port 0 items, and all ports
    items: list[Item] = field(default_factory=list)
    inputs: list[list[Item]] = field(default_factory=list)
    source: list[SourceRef | None] = field(default_factory=list)

    # Set in "each" mode: the item this context was built for
    item: Item | None = None
    item_index: int = 0

    iteration: int = 0
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("nodeflow.node"))

    _scope: ExpressionScope | None = None
    _credentials: CredentialProvider | None = None
    _binary: BinaryDataProvider | None = None
    _workflow_runner: WorkflowRunner | None = None

    @property
    def node_name(self) -> str:
        return self.node.name

    def get_parameter(self, name: str, item_index: int | None = None, default: Any = None) -> Any:
        """
        A parameter resolved for a specific input item.

        Once-mode nodes use this to evaluate an expression per item, e.g. a
        filter condition.
        """
        if name not in self.node.parameters:
            return default
        if item_index is None or self._scope is None:
            return self.parameters.get(name, default)
        return resolve_value(self.node.parameters[name], self._scope.for_item(item_index))

    def get_credential(self, slot: str) -> dict[str, str]:
        """
        Secret values for a credential slot of this node.

        Raises:
            CredentialNotFoundError: slot not configured on the node, no
                provider, or the provider does not know the credential
        """
        credential_id = self.node.credentials.get(slot)
        if credential_id is None:
            raise CredentialNotFoundError(
                f"Node '{self.node.name}' has no credential configured for slot '{slot}'"
            )
        if self._credentials is None:
            raise CredentialNotFoundError("No credential provider configured")
        credential = self._credentials.get(credential_id)
        if credential is None:
            raise CredentialNotFoundError(f"Credential '{credential_id}' not found")
        return credential.as_dict()

    async def store_binary(
        self,
        data: bytes,
        mime_type: str = "application/octet-stream",
        file_name: str | None = None,
    ) -> BinaryRef:
        if self._binary is None:
            raise InputError("No binary data provider configured")
        return await self._binary.store(data, mime_type=mime_type, file_name=file_name)

    async def get_binary(self, ref: BinaryRef | str, item: Item | None = None) -> bytes:
        """Fetch a payload by reference, or by property name on an item."""
        if self._binary is None:
            raise InputError("No binary data provider configured")
        if isinstance(ref, str):
            holder = item or self.item or (self.items[0] if self.items else None)
            if holder is None or ref not in holder.binary:
                raise InputError(f"Item has no binary property '{ref}'")
            ref = holder.binary[ref]
        return await self._binary.fetch(ref)

    async def execute_workflow(self, workflow: Any, items: list[Any] | None = None) -> "RunOutcome":
        """
        Run another workflow to completion as a nested run.

        Raises:
            SubWorkflowError: when the nested run fails
        """
        if self._workflow_runner is None:
            raise InputError("Sub-workflow execution is not available in this context")
        nested_items = [Item.of(i) for i in (items if items is not None else self.items)]
        return await self._workflow_runner(workflow, nested_items, self)

    def paired(self, item_index: int | None = None, input: int = 0) -> list[PairedItem]:
        """Provenance for an output item derived from the given input item."""
        index = self.item_index if item_index is None else item_index
        return [PairedItem(item=index, input=input)]


class ExecutionContextBuilder:
    """Builds NodeCallContexts for one invocation."""

    def __init__(
        self,
        credentials: CredentialProvider | None = None,
        binary: BinaryDataProvider | None = None,
        workflow_runner: WorkflowRunner | None = None,
    ):
        self.credentials = credentials
        self.binary = binary
        self.workflow_runner = workflow_runner

    def scope_for(self, run: "Run", entry: ExecutionEntry, run_index: int) -> ExpressionScope:
        return ExpressionScope(
            run.run_data,
            trigger_items=run.trigger_items,
            inputs=entry.inputs,
            source=entry.source,
            run_index=run_index,
        )

    def build(
        self,
        run: "Run",
        entry: ExecutionEntry,
        node: Node,
        node_type: NodeType,
        run_index: int,
    ) -> list[NodeCallContext]:
        """
        Contexts for one invocation of ``node``.

        Raises:
            ExpressionError: if a parameter expression cannot be resolved
        """
        scope = self.scope_for(run, entry, run_index)
        port0 = entry.inputs[0] if entry.inputs else []
        node_logger = logging.getLogger(f"nodeflow.node.{node.type}")
        literal = set(node_type.description.literal_parameters)

        def make(item_index: int, item: Item | None) -> NodeCallContext:
            item_scope = scope.for_item(item_index)
            parameters = resolve_parameters(
                {k: v for k, v in node.parameters.items() if k not in literal}, item_scope
            )
            for name in literal & node.parameters.keys():
                parameters[name] = copy.deepcopy(node.parameters[name])
            return NodeCallContext(
                node=node,
                run_id=run.id,
                workflow_id=run.graph.id,
                run_index=run_index,
                parameters=parameters,
                items=copy.deepcopy(port0),
                inputs=copy.deepcopy(entry.inputs),
                source=list(entry.source),
                item=copy.deepcopy(item) if item is not None else None,
                item_index=item_index,
                iteration=entry.iteration,
                logger=node_logger,
                _scope=scope,
                _credentials=self.credentials,
                _binary=self.binary,
                _workflow_runner=self.workflow_runner,
            )

        if node_type.description.execution_mode == "each":
            return [make(i, item) for i, item in enumerate(port0)]
        return [make(0, None)]
