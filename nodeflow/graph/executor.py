"""
Workflow Executor - Runs workflow graphs.

The executor:
1. Validates the graph against the node type registry
2. Queues the start nodes with the trigger items
3. Takes the ready set each cycle, invokes it (concurrently or in order),
   records results in ready-set order and delivers them downstream
4. Applies the error policy (retry, continue on fail, fail the run)
5. Suspends into a SuspensionToken when a node asks to wait
6. Returns a RunOutcome

Every call operates on an explicit Run object; nothing about "the current
run" lives on the executor besides the cancellation registry.
"""

import asyncio
import copy
import inspect
import logging
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from nodeflow.config import EngineConfig
from nodeflow.credentials import CredentialProvider
from nodeflow.errors import (
    ErrorKind,
    FatalError,
    GraphValidationError,
    InputError,
    NodeTimeoutError,
    SubWorkflowError,
    SuspensionTokenError,
)
from nodeflow.graph.context import ExecutionContextBuilder, NodeCallContext
from nodeflow.graph.model import OnError, WorkflowGraph
from nodeflow.graph.node import NodeType, NodeTypeRegistry, Suspend, output_count
from nodeflow.graph.readiness import advance, propagate, ready_nodes
from nodeflow.graph.retry import ErrorPolicy, RetryAction
from nodeflow.graph.validator import validate
from nodeflow.observability import get_trace_context, set_trace_context
from nodeflow.observability.logging import trace_context
from nodeflow.schemas.item import Item, ItemError, PairedItem, to_items
from nodeflow.schemas.run import (
    ExecutionEntry,
    NodeErrorRecord,
    NodeRunResult,
    RunError,
    RunStatus,
    SchedulerState,
)
from nodeflow.schemas.suspension import RunDataSnapshot, SuspendedInvocation, SuspensionToken
from nodeflow.storage.binary import BinaryDataProvider
from nodeflow.storage.run_data import RunDataStore
from nodeflow.storage.token_store import FileTokenStore

logger = logging.getLogger(__name__)

WorkflowLoader = Callable[[str], "WorkflowGraph | dict | None | Awaitable[WorkflowGraph | None]"]


@dataclass
class Run:
    """One execution instance of a graph, passed explicitly through the engine."""

    id: str
    graph: WorkflowGraph
    trigger_items: list[Item]
    run_data: RunDataStore
    state: SchedulerState = field(default_factory=SchedulerState)
    status: RunStatus = RunStatus.PENDING
    error: RunError | None = None
    parent_run_id: str | None = None

    # Execution quality tracking
    path: list[str] = field(default_factory=list)
    retry_counts: dict[str, int] = field(default_factory=dict)
    nodes_with_failures: list[str] = field(default_factory=list)
    steps: int = 0

    dispatch_error_workflow: bool = True
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def note_failure(self, node: str) -> None:
        if node not in self.nodes_with_failures:
            self.nodes_with_failures.append(node)


@dataclass
class RunOutcome:
    """Result of start_run / resume_run."""

    run_id: str
    workflow_id: str
    status: RunStatus
    run_data: RunDataSnapshot
    error: RunError | None = None
    token: SuspensionToken | None = None
    path: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    parent_run_id: str | None = None

    # Execution quality metrics
    total_retries: int = 0
    retry_details: dict[str, int] = field(default_factory=dict)
    nodes_with_failures: list[str] = field(default_factory=list)
    execution_quality: str = "clean"  # "clean", "degraded", or "failed"

    error_workflow_outcome: "RunOutcome | None" = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def last_node(self) -> str | None:
        return self.path[-1] if self.path else None

    def output_items(self, node: str | None = None, port: int = 0) -> list[Item]:
        """Items of a node's latest run (the last executed node by default)."""
        name = node or self.last_node
        if name is None:
            return []
        result = self.run_data.latest(name)
        return list(result.port(port)) if result else []

    def output(self, node: str | None = None, port: int = 0) -> list[dict[str, Any]]:
        return [item.data for item in self.output_items(node, port)]


@dataclass
class _Invocation:
    """What one ready entry produced in a cycle."""

    result: NodeRunResult | None = None
    suspend: Suspend | None = None
    failure: RunError | None = None
    invoked: bool = True


def outcome_to_result(outcome: RunOutcome, inputs: list[list[Item]]) -> NodeRunResult:
    """Port-0 output of a nested run as a node result, paired to a single input item."""
    items = [item.model_copy(deep=True) for item in outcome.output_items()]
    port0 = inputs[0] if inputs else []
    for item in items:
        item.paired_item = [PairedItem(item=0)] if len(port0) == 1 else None
    return NodeRunResult(outputs=[items])


class WorkflowExecutor:
    """
    Executes workflow graphs.

    Example:
        registry = default_registry()
        executor = WorkflowExecutor(registry)

        outcome = await executor.start_run(graph, items=[{"value": 1}])
        if outcome.status == RunStatus.WAITING:
            outcome = await executor.resume_run(outcome.token, payload={"approved": True})
    """

    def __init__(
        self,
        registry: NodeTypeRegistry,
        config: EngineConfig | None = None,
        credentials: CredentialProvider | None = None,
        binary: BinaryDataProvider | None = None,
        workflow_loader: WorkflowLoader | None = None,
        event_bus: Any | None = None,
        token_store: FileTokenStore | None = None,
        error_policy: ErrorPolicy | None = None,
        max_consumed_tokens: int = 10_000,
    ):
        """
        Args:
            registry: Node type identifier -> implementation
            config: Engine settings (defaults from ~/.nodeflow/configuration.json)
            credentials: Provider behind ctx.get_credential()
            binary: Provider behind ctx.store_binary()/get_binary()
            workflow_loader: Resolves workflow ids for sub-workflows and the
                error workflow
            event_bus: Optional EventBus for run and node lifecycle events
            token_store: When set, tokens of waiting top-level runs are saved
            error_policy: Classification and backoff rules
            max_consumed_tokens: How many resumed token ids this executor
                remembers to reject a second resume; exactly-once across
                processes comes from FileTokenStore.claim
        """
        self.registry = registry
        self.config = config or EngineConfig()
        self.workflow_loader = workflow_loader
        self.token_store = token_store
        self.policy = error_policy or ErrorPolicy(self.config.max_retry_delay_seconds)
        self.context_builder = ExecutionContextBuilder(
            credentials=credentials,
            binary=binary,
            workflow_runner=self._run_subworkflow,
        )
        self._event_bus = event_bus
        self._runs: dict[str, Run] = {}
        self._consumed_tokens: OrderedDict[str, None] = OrderedDict()
        self._max_consumed_tokens = max_consumed_tokens
        self.logger = logging.getLogger(__name__)

    # === PUBLIC API ===

    async def start_run(
        self,
        graph: WorkflowGraph,
        items: list[Any] | None = None,
        start_node: str | None = None,
        *,
        run_id: str | None = None,
        parent_run_id: str | None = None,
        dispatch_error_workflow: bool = True,
    ) -> RunOutcome:
        """
        Execute a graph from its start nodes.

        Args:
            graph: The workflow to run
            items: Trigger items (dicts or Items); one empty item by default
            start_node: Node to start from; else graph.start_node; else every
                enabled root node in declaration order
            run_id: Explicit run id, e.g. to cancel the run from elsewhere
            parent_run_id: Set for nested runs

        Raises:
            GraphValidationError: if the graph is invalid; nothing is executed
        """
        result = validate(graph, self.registry)
        if not result.success:
            self.logger.error("❌ Graph validation failed:")
            for err in result.errors:
                self.logger.error(f"   • {err}")
            raise GraphValidationError(result.errors)

        start_nodes = self._start_nodes(graph, start_node)
        trigger_items = to_items(items) if items is not None else [Item()]

        run_id = run_id or uuid.uuid4().hex
        run = Run(
            id=run_id,
            graph=graph,
            trigger_items=trigger_items,
            run_data=RunDataStore(run_id),
            parent_run_id=parent_run_id,
            dispatch_error_workflow=dispatch_error_workflow,
        )

        for name in start_nodes:
            run.state.queue.append(
                ExecutionEntry(node=name, inputs=[copy.deepcopy(trigger_items)], source=[None])
            )

        saved_context = get_trace_context()
        self._runs[run.id] = run
        try:
            set_trace_context(run_id=run.id, workflow_id=graph.id, parent_run_id=parent_run_id)
            self.logger.info(f"🚀 Starting run: {graph.name or graph.id}")
            self.logger.info(f"   Start nodes: {', '.join(start_nodes)}")
            self.logger.info(f"   Items: {len(trigger_items)}")
            if self._event_bus:
                await self._event_bus.emit_run_started(
                    workflow_id=graph.id,
                    run_id=run.id,
                    item_count=len(trigger_items),
                    parent_run_id=parent_run_id,
                )
            return await self._drive(run)
        finally:
            self._runs.pop(run.id, None)
            trace_context.set(saved_context or None)

    async def resume_run(self, token: SuspensionToken, payload: Any = None) -> RunOutcome:
        """
        Continue a waiting run.

        The payload becomes the suspended invocation's result: a
        NodeRunResult, a list of items/dicts (port 0), a dict, a RunOutcome
        of a nested run, or None to pass the suspended input through.

        Raises:
            SuspensionTokenError: if this token was already resumed
        """
        if token.token_id in self._consumed_tokens:
            raise SuspensionTokenError(f"Token '{token.token_id}' has already been resumed")
        self._consumed_tokens[token.token_id] = None
        while len(self._consumed_tokens) > self._max_consumed_tokens:
            self._consumed_tokens.popitem(last=False)

        run = Run(
            id=token.run_id,
            graph=token.graph,
            trigger_items=[i.model_copy(deep=True) for i in token.trigger_items],
            run_data=RunDataStore.from_snapshot(token),
            state=token.scheduler.model_copy(deep=True),
            parent_run_id=token.parent_run_id,
            path=list(token.path),
            retry_counts=dict(token.retry_counts),
            nodes_with_failures=list(token.nodes_with_failures),
            steps=token.steps,
        )
        suspended = token.suspended

        saved_context = get_trace_context()
        self._runs[run.id] = run
        try:
            set_trace_context(
                run_id=run.id, workflow_id=run.graph.id, parent_run_id=run.parent_run_id
            )
            self.logger.info(f"🔄 Resuming run at node: {suspended.node}")
            if self._event_bus:
                await self._event_bus.emit_run_resumed(
                    workflow_id=run.graph.id,
                    run_id=run.id,
                    node=suspended.node,
                    token_id=token.token_id,
                )

            run.status = RunStatus.RUNNING
            node = run.graph.get_node(suspended.node)
            if node is None:
                raise SuspensionTokenError(f"Token node '{suspended.node}' is not in the graph")

            if token.child_token is not None:
                child = await self.resume_run(token.child_token, payload)
                if child.status == RunStatus.WAITING:
                    self.logger.info("   ⏸ Nested run is still waiting")
                    return await self._suspend(
                        run,
                        ExecutionEntry(
                            node=suspended.node,
                            inputs=suspended.inputs,
                            source=suspended.source,
                        ),
                        suspended.run_index,
                        Suspend(
                            reason=suspended.reason,
                            resume_at=suspended.resume_at,
                            metadata=suspended.metadata,
                            child_token=child.token,
                        ),
                    )
                if child.status == RunStatus.SUCCESS:
                    payload = child
                else:
                    error = self._subworkflow_error(child)
                    payload = self._failed_resume_result(run, node, suspended, error)
                    if payload is None:
                        run_error = self._run_error(node.name, suspended.run_index, error)
                        return await self._finish_failed(run, run_error)

            result = self._payload_to_result(payload, suspended)
            result.source = list(suspended.source)
            entry = ExecutionEntry(
                node=suspended.node, inputs=suspended.inputs, source=suspended.source
            )
            await self._record(run, entry, suspended.run_index, result)
            return await self._drive(run)
        finally:
            self._runs.pop(run.id, None)
            trace_context.set(saved_context or None)

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a running run and the runs nested under it.

        Takes effect at the next invocation boundary. Returns False if no
        such run is executing.
        """
        run = self._runs.get(run_id)
        if run is None:
            return False
        run.cancel_event.set()
        for child in list(self._runs.values()):
            if child.parent_run_id == run_id:
                self.cancel(child.id)
        self.logger.info(f"⏹ Cancellation requested for run {run_id}")
        return True

    def active_runs(self) -> list[str]:
        return list(self._runs)

    # === SCHEDULER LOOP ===

    def _start_nodes(self, graph: WorkflowGraph, start_node: str | None) -> list[str]:
        name = start_node or graph.start_node
        if name is not None:
            if graph.get_node(name) is None:
                raise GraphValidationError([f"Start node '{name}' not found"])
            return [name]
        roots = graph.root_nodes()
        if not roots:
            raise GraphValidationError([f"Graph '{graph.id}' has no start node"])
        return roots

    async def _drive(self, run: Run) -> RunOutcome:
        run.status = RunStatus.RUNNING
        graph = run.graph
        try:
            while True:
                ready = ready_nodes(graph, run.state)
                if not ready:
                    entry = advance(graph, self.registry, run.state)
                    if entry is None:
                        break
                    ready = [entry]

                if run.cancel_requested:
                    run.state.queue[:0] = ready
                    return await self._finish_canceled(run)

                outcome = await self._run_cycle(run, ready)
                if outcome is not None:
                    return outcome

            return await self._finish_success(run)

        except asyncio.CancelledError:
            self.logger.info("⏹ Run task cancelled")
            run.status = RunStatus.CANCELED
            raise

    async def _run_cycle(self, run: Run, ready: list[ExecutionEntry]) -> RunOutcome | None:
        """Invoke one ready set and fold the results back in ready-set order."""
        state = run.state
        planned: list[tuple[ExecutionEntry, int]] = []
        for entry in ready:
            index = entry.run_index
            if index is None:
                index = state.reserve_run_index(entry.node)
            planned.append((entry, index))

        run.steps += len(planned)
        if run.steps > self.config.max_steps:
            error = FatalError(f"Run exceeded max_steps ({self.config.max_steps})")
            return await self._finish_failed(run, self._run_error(planned[0][0].node, None, error))

        for entry, index in planned:
            if index >= self.config.max_node_runs:
                error = FatalError(
                    f"Node '{entry.node}' exceeded max_node_runs ({self.config.max_node_runs})"
                )
                return await self._finish_failed(run, self._run_error(entry.node, index, error))

        if self.config.parallel_branches and len(planned) > 1:
            self.logger.info(f"   ⑂ Running {len(planned)} invocations concurrently")
            invocations = list(
                await asyncio.gather(*[self._guarded_invoke(run, e, i) for e, i in planned])
            )
        else:
            invocations = []
            stop = False
            for entry, index in planned:
                if stop:
                    invocations.append(_Invocation(invoked=False))
                    continue
                invocation = await self._guarded_invoke(run, entry, index)
                invocations.append(invocation)
                if invocation.failure or invocation.suspend:
                    stop = True

        failure: RunError | None = None
        suspension: tuple[ExecutionEntry, int, Suspend] | None = None
        requeue: list[ExecutionEntry] = []

        for (entry, index), invocation in zip(planned, invocations, strict=True):
            if not invocation.invoked:
                requeue.append(entry.model_copy(update={"run_index": index}))
            elif invocation.failure is not None:
                failure = failure or invocation.failure
            elif invocation.suspend is not None:
                if suspension is None:
                    suspension = (entry, index, invocation.suspend)
                else:
                    requeue.append(entry.model_copy(update={"run_index": index}))
            elif invocation.result is not None:
                try:
                    await self._record(run, entry, index, invocation.result)
                except FatalError as e:
                    failure = failure or self._run_error(entry.node, index, e)

        state.queue[:0] = requeue

        if failure is not None:
            return await self._finish_failed(run, failure)
        if suspension is not None:
            return await self._suspend(run, *suspension)
        if run.cancel_requested and requeue:
            return await self._finish_canceled(run)
        return None

    async def _record(
        self,
        run: Run,
        entry: ExecutionEntry,
        run_index: int,
        result: NodeRunResult,
    ) -> None:
        """
        Record a final result, deliver it, and schedule a re-invocation if asked.

        Raises:
            RunDataConflictError: if the slot is already recorded
        """
        await run.run_data.record(entry.node, run_index, result)
        run.path.append(entry.node)

        targets = propagate(run.graph, self.registry, run.state, entry.node, run_index, result)
        if targets:
            self.logger.info(f"   → Next: {', '.join(dict.fromkeys(targets))}")

        if result.reinvoke:
            run.state.deferred.append(
                ExecutionEntry(
                    node=entry.node,
                    inputs=entry.inputs,
                    source=entry.source,
                    iteration=entry.iteration + 1,
                )
            )

        if self._event_bus:
            await self._event_bus.emit_node_completed(
                workflow_id=run.graph.id,
                run_id=run.id,
                node=entry.node,
                run_index=run_index,
                item_count=result.item_count,
                error=result.error is not None,
            )

    # === NODE INVOCATION ===

    async def _guarded_invoke(self, run: Run, entry: ExecutionEntry, run_index: int) -> _Invocation:
        if run.cancel_requested:
            return _Invocation(invoked=False)
        try:
            return await self._invoke(run, entry, run_index)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception(f"   ✗ Engine error while invoking {entry.node}")
            return _Invocation(failure=self._run_error(entry.node, run_index, e, ErrorKind.FATAL))

    async def _invoke(self, run: Run, entry: ExecutionEntry, run_index: int) -> _Invocation:
        graph = run.graph
        node = graph.get_node(entry.node)
        if node is None:
            raise FatalError(f"Node '{entry.node}' not found in graph")
        node_type = self.registry.get(node.type)
        if node_type is None:
            raise FatalError(f"Node type '{node.type}' is not registered")

        set_trace_context(node=node.name, run_index=run_index)
        self.logger.info(f"▶ {node.name} ({node.type}) run {run_index}")

        port0 = entry.inputs[0] if entry.inputs else []

        if node.name in graph.pin_data:
            self.logger.info("   📌 Using pinned data")
            items = [i.model_copy(deep=True) for i in graph.pin_data[node.name]]
            return _Invocation(result=NodeRunResult(outputs=[items], source=list(entry.source)))

        if node.disabled:
            self.logger.info("   ⊘ Disabled, passing input through")
            items = [i.model_copy(deep=True) for i in port0]
            return _Invocation(result=NodeRunResult(outputs=[items], source=list(entry.source)))

        if self._event_bus:
            await self._event_bus.emit_node_started(
                workflow_id=graph.id, run_id=run.id, node=node.name, run_index=run_index
            )

        settings = node.settings
        attempt = 0
        while True:
            attempt += 1
            try:
                value = await self._attempt(run, entry, node_type, run_index)
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                decision = self.policy.decide(e, settings, attempt)
                self.logger.error(f"   ✗ Failed ({decision.kind}): {e}")

                if decision.action == RetryAction.RETRY:
                    run.retry_counts[node.name] = run.retry_counts.get(node.name, 0) + 1
                    run.note_failure(node.name)
                    if self._event_bus:
                        await self._event_bus.emit_node_retry(
                            workflow_id=graph.id,
                            run_id=run.id,
                            node=node.name,
                            retry_count=attempt,
                            max_tries=settings.max_tries,
                            error=str(e),
                        )
                    await self.policy.wait(decision)
                    self.logger.info(f"   ↻ Retrying ({attempt + 1}/{settings.max_tries})...")
                    continue

                if self._event_bus:
                    await self._event_bus.emit_node_failed(
                        workflow_id=graph.id,
                        run_id=run.id,
                        node=node.name,
                        run_index=run_index,
                        kind=decision.kind.value,
                        error=str(e),
                    )

                if decision.action == RetryAction.CONTINUE:
                    self.logger.warning(f"   ⚠ Continuing on fail ({settings.on_error})")
                    run.note_failure(node.name)
                    return _Invocation(
                        result=self._error_result(node, node_type, entry, e, decision.kind)
                    )

                return _Invocation(failure=self._run_error(node.name, run_index, e, decision.kind))

        if isinstance(value, Suspend):
            return _Invocation(suspend=value)

        value.source = list(entry.source)
        self.logger.info(f"   ✓ {value.item_count} item(s)")
        return _Invocation(result=value)

    async def _attempt(
        self,
        run: Run,
        entry: ExecutionEntry,
        node_type: NodeType,
        run_index: int,
    ) -> NodeRunResult | Suspend:
        """One attempt: build contexts, call the node, enforce the timeout."""
        node = run.graph.get_node(entry.node)
        contexts = self.context_builder.build(run, entry, node, node_type, run_index)
        timeout = node.settings.timeout_seconds or self.config.default_timeout_seconds

        call = self._execute_contexts(node_type, contexts, entry)
        if timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as e:
            raise NodeTimeoutError(node.name, timeout) from e

    async def _execute_contexts(
        self,
        node_type: NodeType,
        contexts: list[NodeCallContext],
        entry: ExecutionEntry,
    ) -> NodeRunResult | Suspend:
        port0 = entry.inputs[0] if entry.inputs else []

        if node_type.description.execution_mode != "each":
            value = self._check_return(await node_type.execute(contexts[0]), contexts[0])
            if isinstance(value, NodeRunResult) and len(port0) == 1:
                _fill_pairing(value, 0)
            return value

        merged = NodeRunResult()
        for ctx in contexts:
            value = self._check_return(await node_type.execute(ctx), ctx)
            if isinstance(value, Suspend):
                return value
            _fill_pairing(value, ctx.item_index)
            for port, items in enumerate(value.outputs):
                while len(merged.outputs) <= port:
                    merged.outputs.append([])
                merged.outputs[port].extend(items)
            merged.reinvoke = merged.reinvoke or value.reinvoke
        return merged

    def _check_return(self, value: Any, ctx: NodeCallContext) -> NodeRunResult | Suspend:
        if isinstance(value, (NodeRunResult, Suspend)):
            return value
        raise FatalError(
            f"Node '{ctx.node_name}' returned {type(value).__name__}, "
            "expected NodeRunResult or Suspend"
        )

    def _error_result(
        self,
        node: Any,
        node_type: NodeType,
        entry: ExecutionEntry,
        error: BaseException,
        kind: ErrorKind,
    ) -> NodeRunResult:
        """Error-marked result recorded under continue-on-fail."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        description = getattr(error, "description", None)
        item_error = ItemError(
            node=node.name, kind=kind.value, message=message, description=description
        )

        port0 = entry.inputs[0] if entry.inputs else []
        error_items = [
            Item(data={"error": message}, paired_item=[PairedItem(item=i)], error=item_error)
            for i in range(len(port0))
        ] or [Item(data={"error": message}, error=item_error)]

        ports = output_count(node_type, node)
        outputs: list[list[Item]] = [[] for _ in range(ports)]
        target = ports - 1 if node.settings.on_error == OnError.CONTINUE_ERROR_OUTPUT else 0
        outputs[target] = error_items

        return NodeRunResult(
            outputs=outputs,
            error=NodeErrorRecord(
                kind=kind.value,
                message=message,
                description=description,
                error_type=type(error).__name__,
            ),
            source=list(entry.source),
        )

    def _run_error(
        self,
        node: str | None,
        run_index: int | None,
        error: BaseException,
        kind: ErrorKind | None = None,
    ) -> RunError:
        return RunError(
            node=node,
            kind=(kind or self.policy.classify(error)).value,
            message=getattr(error, "message", None) or str(error) or type(error).__name__,
            description=getattr(error, "description", None),
            run_index=run_index,
            error_type=type(error).__name__,
        )

    # === SUSPENSION ===

    async def _suspend(
        self,
        run: Run,
        entry: ExecutionEntry,
        run_index: int,
        suspend: Suspend,
    ) -> RunOutcome:
        token = SuspensionToken.create(
            run_id=run.id,
            graph=run.graph,
            run_data=run.run_data.snapshot(),
            scheduler=run.state.model_copy(deep=True),
            suspended=SuspendedInvocation(
                node=entry.node,
                run_index=run_index,
                inputs=copy.deepcopy(entry.inputs),
                source=list(entry.source),
                reason=suspend.reason,
                resume_at=suspend.resume_at,
                metadata=dict(suspend.metadata),
            ),
            trigger_items=run.trigger_items,
            parent_run_id=run.parent_run_id,
            child_token=suspend.child_token,
            path=run.path,
            retry_counts=run.retry_counts,
            nodes_with_failures=run.nodes_with_failures,
            steps=run.steps,
        )
        run.status = RunStatus.WAITING

        self.logger.info(f"⏸ Waiting at {entry.node}: {suspend.reason}")
        if self.token_store is not None and run.parent_run_id is None:
            await self.token_store.save(token)
            self.logger.info(f"💾 Saved token {token.token_id}")

        if self._event_bus:
            await self._event_bus.emit_run_waiting(
                workflow_id=run.graph.id,
                run_id=run.id,
                node=entry.node,
                token_id=token.token_id,
                reason=suspend.reason,
            )
        return self._outcome(run, token=token)

    def _payload_to_result(self, payload: Any, suspended: SuspendedInvocation) -> NodeRunResult:
        if isinstance(payload, NodeRunResult):
            return payload.model_copy(deep=True)
        if isinstance(payload, RunOutcome):
            return outcome_to_result(payload, suspended.inputs)

        port0 = suspended.inputs[0] if suspended.inputs else []
        if payload is None:
            items = [item.model_copy(deep=True) for item in port0]
            for i, item in enumerate(items):
                item.paired_item = [PairedItem(item=i)]
            return NodeRunResult(outputs=[items])

        result = NodeRunResult(outputs=[to_items(payload)])
        if len(port0) == 1:
            _fill_pairing(result, 0)
        return result

    def _failed_resume_result(
        self,
        run: Run,
        node: Any,
        suspended: SuspendedInvocation,
        error: SubWorkflowError,
    ) -> NodeRunResult | None:
        """Continue-on-fail for a nested run that failed after resuming; None to fail."""
        kind = self.policy.classify(error)
        if kind == ErrorKind.FATAL or not node.settings.continue_on_fail:
            return None
        node_type = self.registry.get(node.type)
        if node_type is None:
            return None
        run.note_failure(node.name)
        entry = ExecutionEntry(node=node.name, inputs=suspended.inputs, source=suspended.source)
        return self._error_result(node, node_type, entry, error, kind)

    # === SUB-WORKFLOWS ===

    async def _load_workflow(self, workflow: Any) -> WorkflowGraph:
        if isinstance(workflow, WorkflowGraph):
            return workflow
        if isinstance(workflow, dict):
            return WorkflowGraph.model_validate(workflow)
        if self.workflow_loader is None:
            raise InputError(f"Cannot load workflow '{workflow}': no workflow loader configured")

        loaded = self.workflow_loader(workflow)
        if inspect.isawaitable(loaded):
            loaded = await loaded
        if loaded is None:
            raise InputError(f"Workflow '{workflow}' not found")
        if isinstance(loaded, dict):
            loaded = WorkflowGraph.model_validate(loaded)
        return loaded

    def _subworkflow_error(self, outcome: RunOutcome) -> SubWorkflowError:
        if outcome.status == RunStatus.CANCELED:
            return SubWorkflowError(
                f"Sub-workflow '{outcome.workflow_id}' was canceled",
                kind=ErrorKind.FATAL,
                outcome=outcome,
            )
        error = outcome.error
        kind = ErrorKind(error.kind) if error else ErrorKind.FATAL
        detail = f" at node '{error.node}': {error.message}" if error else ""
        return SubWorkflowError(
            f"Sub-workflow '{outcome.workflow_id}' failed{detail}",
            kind=kind,
            outcome=outcome,
        )

    async def _run_subworkflow(
        self,
        workflow: Any,
        items: list[Item],
        ctx: NodeCallContext,
    ) -> RunOutcome:
        """Run a nested workflow for a node; failures surface as one SubWorkflowError."""
        graph = await self._load_workflow(workflow)
        try:
            outcome = await self.start_run(graph, items=items, parent_run_id=ctx.run_id)
        except GraphValidationError as e:
            raise SubWorkflowError(
                f"Sub-workflow '{graph.id}' is invalid: {e.message}",
                kind=ErrorKind.INPUT_ERROR,
            ) from e
        if outcome.status in (RunStatus.FAILED, RunStatus.CANCELED):
            raise self._subworkflow_error(outcome)
        return outcome

    # === FINISHING ===

    def _outcome(self, run: Run, token: SuspensionToken | None = None) -> RunOutcome:
        total_retries = sum(run.retry_counts.values())
        if run.status == RunStatus.FAILED:
            quality = "failed"
        elif total_retries > 0 or run.nodes_with_failures:
            quality = "degraded"
        else:
            quality = "clean"

        return RunOutcome(
            run_id=run.id,
            workflow_id=run.graph.id,
            status=run.status,
            run_data=run.run_data.snapshot(),
            error=run.error,
            token=token,
            path=list(run.path),
            skipped=[n for n in run.graph.node_names() if not run.run_data.has_run(n)]
            if run.status == RunStatus.SUCCESS
            else list(run.state.skipped),
            parent_run_id=run.parent_run_id,
            total_retries=total_retries,
            retry_details=dict(run.retry_counts),
            nodes_with_failures=list(run.nodes_with_failures),
            execution_quality=quality,
        )

    async def _finish_success(self, run: Run) -> RunOutcome:
        run.status = RunStatus.SUCCESS
        outcome = self._outcome(run)

        self.logger.info("✓ Run complete!")
        self.logger.info(f"   Path: {' → '.join(run.path)}")
        if outcome.skipped:
            self.logger.info(f"   Skipped: {', '.join(outcome.skipped)}")
        if outcome.execution_quality == "degraded":
            self.logger.info(
                f"   Quality: degraded ({outcome.total_retries} retries, "
                f"failures at {', '.join(outcome.nodes_with_failures)})"
            )

        if self._event_bus:
            for name in outcome.skipped:
                await self._event_bus.emit_node_skipped(
                    workflow_id=run.graph.id, run_id=run.id, node=name
                )
            await self._event_bus.emit_run_completed(
                workflow_id=run.graph.id,
                run_id=run.id,
                path=outcome.path,
                execution_quality=outcome.execution_quality,
            )
        return outcome

    async def _finish_canceled(self, run: Run) -> RunOutcome:
        run.status = RunStatus.CANCELED
        self.logger.info("⏹ Run canceled")
        if self._event_bus:
            await self._event_bus.emit_run_canceled(workflow_id=run.graph.id, run_id=run.id)
        return self._outcome(run)

    async def _finish_failed(self, run: Run, error: RunError) -> RunOutcome:
        run.status = RunStatus.FAILED
        run.error = error
        self.logger.error(f"✗ Run failed at {error.node} [{error.kind}]: {error.message}")

        if self._event_bus:
            await self._event_bus.emit_run_failed(
                workflow_id=run.graph.id,
                run_id=run.id,
                node=error.node,
                kind=error.kind,
                error=error.message,
            )

        outcome = self._outcome(run)
        if run.dispatch_error_workflow and error.kind != ErrorKind.FATAL:
            outcome.error_workflow_outcome = await self._dispatch_error_workflow(run, error)
        return outcome

    async def _dispatch_error_workflow(self, run: Run, error: RunError) -> RunOutcome | None:
        workflow_id = run.graph.settings.error_workflow
        if not workflow_id or workflow_id == run.graph.id:
            return None

        try:
            graph = await self._load_workflow(workflow_id)
        except InputError as e:
            self.logger.error(f"   Error workflow unavailable: {e}")
            return None

        item = {
            "run": {
                "id": run.id,
                "status": RunStatus.FAILED.value,
                "error": error.model_dump(),
                "last_node": error.node,
                "path": list(run.path),
                "parent_run_id": run.parent_run_id,
            },
            "workflow": {"id": run.graph.id, "name": run.graph.name},
        }
        self.logger.info(f"   → Dispatching error workflow: {graph.name or graph.id}")
        try:
            return await self.start_run(graph, items=[item], dispatch_error_workflow=False)
        except GraphValidationError as e:
            self.logger.error(f"   Error workflow is invalid: {e.message}")
            return None


def _fill_pairing(result: NodeRunResult, item_index: int) -> None:
    """Give output items without provenance a link to the input item they came from."""
    for port in result.outputs:
        for item in port:
            if item.paired_item is None:
                item.paired_item = [PairedItem(item=item_index)]
