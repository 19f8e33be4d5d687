"""
Event Bus - Pub/sub for run and node lifecycle events.

The executor publishes an event at every state change of a run and every
node invocation. Subscribers (dashboards, audit trails, the webhook resumer)
filter by event type, workflow, node, or run.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_WAITING = "run_waiting"
    RUN_RESUMED = "run_resumed"
    RUN_CANCELED = "run_canceled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRY = "node_retry"
    NODE_SKIPPED = "node_skipped"

    # External triggers
    WEBHOOK_RECEIVED = "webhook_received"

    CUSTOM = "custom"


@dataclass
class WorkflowEvent:
    """An event emitted while executing a workflow."""

    type: EventType
    workflow_id: str
    run_id: str | None = None
    node: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "node": self.node,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_workflow: str | None = None
    filter_node: str | None = None
    filter_run: str | None = None


class EventBus:
    """
    Async pub/sub bus with history.

    Handlers run concurrently and a failing handler never affects the
    publisher or other handlers.

    Example:
        bus = EventBus()

        async def on_failed(event: WorkflowEvent):
            print(f"Run {event.run_id} failed at {event.node}")

        bus.subscribe(event_types=[EventType.RUN_FAILED], handler=on_failed)
        executor = WorkflowExecutor(registry, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[WorkflowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_node: str | None = None,
        filter_run: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_workflow=filter_workflow,
            filter_node=filter_node,
            filter_run=filter_run,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: WorkflowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: WorkflowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_workflow and subscription.filter_workflow != event.workflow_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: WorkflowEvent,
        handlers: list[EventHandler],
    ) -> None:
        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self,
        workflow_id: str,
        run_id: str,
        item_count: int = 0,
        parent_run_id: str | None = None,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_STARTED,
                workflow_id=workflow_id,
                run_id=run_id,
                data={"item_count": item_count, "parent_run_id": parent_run_id},
            )
        )

    async def emit_run_completed(
        self,
        workflow_id: str,
        run_id: str,
        path: list[str] | None = None,
        execution_quality: str = "clean",
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_COMPLETED,
                workflow_id=workflow_id,
                run_id=run_id,
                data={"path": path or [], "execution_quality": execution_quality},
            )
        )

    async def emit_run_failed(
        self,
        workflow_id: str,
        run_id: str,
        node: str | None,
        kind: str,
        error: str,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_FAILED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"kind": kind, "error": error},
            )
        )

    async def emit_run_waiting(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        token_id: str,
        reason: str = "wait",
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_WAITING,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"token_id": token_id, "reason": reason},
            )
        )

    async def emit_run_resumed(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        token_id: str,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.RUN_RESUMED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"token_id": token_id},
            )
        )

    async def emit_run_canceled(self, workflow_id: str, run_id: str) -> None:
        await self.publish(
            WorkflowEvent(type=EventType.RUN_CANCELED, workflow_id=workflow_id, run_id=run_id)
        )

    async def emit_node_started(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        run_index: int,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.NODE_STARTED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"run_index": run_index},
            )
        )

    async def emit_node_completed(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        run_index: int,
        item_count: int = 0,
        error: bool = False,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.NODE_COMPLETED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"run_index": run_index, "item_count": item_count, "error": error},
            )
        )

    async def emit_node_failed(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        run_index: int,
        kind: str,
        error: str,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.NODE_FAILED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"run_index": run_index, "kind": kind, "error": error},
            )
        )

    async def emit_node_retry(
        self,
        workflow_id: str,
        run_id: str,
        node: str,
        retry_count: int,
        max_tries: int,
        error: str = "",
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.NODE_RETRY,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
                data={"retry_count": retry_count, "max_tries": max_tries, "error": error},
            )
        )

    async def emit_node_skipped(self, workflow_id: str, run_id: str, node: str) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.NODE_SKIPPED,
                workflow_id=workflow_id,
                run_id=run_id,
                node=node,
            )
        )

    async def emit_webhook_received(
        self,
        token_id: str,
        path: str,
        method: str,
        headers: dict[str, str],
        payload: Any,
        query_params: dict[str, str] | None = None,
    ) -> None:
        await self.publish(
            WorkflowEvent(
                type=EventType.WEBHOOK_RECEIVED,
                workflow_id="",
                correlation_id=token_id,
                data={
                    "token_id": token_id,
                    "path": path,
                    "method": method,
                    "headers": headers,
                    "payload": payload,
                    "query_params": query_params or {},
                },
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        workflow_id: str | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Event history, most recent first."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if workflow_id:
            events = [e for e in events if e.workflow_id == workflow_id]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: EventType,
        workflow_id: str | None = None,
        node: str | None = None,
        run_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """Wait for a matching event; None on timeout."""
        result: WorkflowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WorkflowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_workflow=workflow_id,
            filter_node=node,
            filter_run=run_id,
        )
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
