"""Runtime services around the executor: lifecycle events and webhook resumption."""

from nodeflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from nodeflow.runtime.webhook_server import (
    WebhookResumer,
    WebhookServer,
    WebhookServerConfig,
)

__all__ = [
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "WebhookResumer",
    "WebhookServer",
    "WebhookServerConfig",
]
