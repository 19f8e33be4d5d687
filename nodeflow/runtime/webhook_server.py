"""
Webhook HTTP Server - Resumes waiting runs from HTTP requests.

``POST /webhook/{token_id}`` publishes a WEBHOOK_RECEIVED event carrying the
request body. The server's only job is: receive HTTP -> publish event.
WebhookResumer subscribes to those events, claims the token from the token
store and resumes the run with the body as payload.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiohttp import web

from nodeflow.config import get_webhook_settings
from nodeflow.errors import SuspensionTokenError
from nodeflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from nodeflow.storage.token_store import FileTokenStore

if TYPE_CHECKING:
    from nodeflow.graph.executor import RunOutcome, WorkflowExecutor

logger = logging.getLogger(__name__)


@dataclass
class WebhookServerConfig:
    """Configuration for the webhook HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    secret: str | None = None  # For HMAC-SHA256 signature verification
    path_prefix: str = "/webhook"

    @classmethod
    def from_settings(cls) -> "WebhookServerConfig":
        """Values from ~/.nodeflow/configuration.json."""
        settings = get_webhook_settings()
        return cls(host=settings["host"], port=settings["port"], secret=settings["secret"])


class WebhookServer:
    """
    Embedded HTTP server that turns resume requests into
    WEBHOOK_RECEIVED events on the EventBus.

    Lifecycle:
        server = WebhookServer(event_bus, config, token_store=store)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: WebhookServerConfig | None = None,
        token_store: FileTokenStore | None = None,
    ):
        self._event_bus = event_bus
        self._config = config or WebhookServerConfig()
        self._token_store = token_store
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = web.Application()
        self._app.router.add_post(
            f"{self._config.path_prefix}/{{token_id}}", self._handle_request
        )

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(
            self._runner,
            self._config.host,
            self._config.port,
        )
        await self._site.start()
        logger.info(f"Webhook server started on {self._config.host}:{self._config.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Webhook server stopped")

    async def _handle_request(self, request: web.Request) -> web.Response:
        """Handle an incoming resume request."""
        token_id = request.match_info["token_id"]

        try:
            body = await request.read()
        except Exception:
            return web.json_response(
                {"error": "Failed to read request body"},
                status=400,
            )

        if self._config.secret:
            if not self._verify_signature(request, body, self._config.secret):
                return web.json_response({"error": "Invalid signature"}, status=401)

        if self._token_store is not None:
            try:
                found = await self._token_store.exists(token_id)
            except SuspensionTokenError:
                return web.json_response({"error": "Invalid token id"}, status=400)
            if not found:
                return web.json_response({"error": "Token not found"}, status=404)

        # Parse body as JSON (fall back to raw text for non-JSON)
        try:
            payload = json.loads(body) if body else None
        except (json.JSONDecodeError, ValueError):
            payload = {"raw_body": body.decode("utf-8", errors="replace")}

        await self._event_bus.emit_webhook_received(
            token_id=token_id,
            path=request.path,
            method=request.method,
            headers=dict(request.headers),
            payload=payload,
            query_params=dict(request.query),
        )

        return web.json_response({"status": "accepted", "token_id": token_id}, status=202)

    def _verify_signature(
        self,
        request: web.Request,
        body: bytes,
        secret: str,
    ) -> bool:
        """Verify HMAC-SHA256 signature from X-Hub-Signature-256 header."""
        signature_header = request.headers.get("X-Hub-Signature-256", "")
        if not signature_header.startswith("sha256="):
            return False

        expected_sig = signature_header[7:]  # strip "sha256="
        computed_sig = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected_sig, computed_sig)

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None


class WebhookResumer:
    """
    Resumes runs for WEBHOOK_RECEIVED events.

    Each resume runs as its own task so the HTTP response does not wait for
    the rest of the run. Claiming the token first means two requests for
    the same token resume the run at most once.

    Example:
        resumer = WebhookResumer(executor, token_store, event_bus)
        resumer.start()
        ...
        await resumer.drain()
    """

    def __init__(
        self,
        executor: "WorkflowExecutor",
        token_store: FileTokenStore,
        event_bus: EventBus,
        on_outcome: Callable[["RunOutcome"], Awaitable[None]] | None = None,
        max_history: int = 100,
    ):
        self._executor = executor
        self._token_store = token_store
        self._event_bus = event_bus
        self._on_outcome = on_outcome
        self._subscription: str | None = None
        self._tasks: set[asyncio.Task] = set()
        self._max_history = max_history
        # Most recent resumes only; older entries are evicted first
        self.outcomes: OrderedDict[str, "RunOutcome"] = OrderedDict()
        self.errors: OrderedDict[str, Exception] = OrderedDict()

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self._event_bus.subscribe(
                [EventType.WEBHOOK_RECEIVED], self._on_webhook
            )

    def stop(self) -> None:
        if self._subscription is not None:
            self._event_bus.unsubscribe(self._subscription)
            self._subscription = None

    async def drain(self) -> None:
        """Wait for in-flight resumes to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_webhook(self, event: WorkflowEvent) -> None:
        task = asyncio.create_task(self._resume(event.data["token_id"], event.data["payload"]))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resume(self, token_id: str, payload) -> None:
        try:
            token = await self._token_store.claim(token_id)
        except SuspensionTokenError as e:
            logger.warning(f"Ignoring webhook for token {token_id}: {e}")
            return

        logger.info(f"🔔 Webhook resuming run {token.run_id} at {token.node}")
        try:
            outcome = await self._executor.resume_run(token, payload)
        except Exception as e:
            logger.exception(f"Resume for token {token_id} failed")
            self._remember(self.errors, token_id, e)
            return

        self._remember(self.outcomes, token_id, outcome)
        logger.info(f"   Run {outcome.run_id}: {outcome.status}")
        if self._on_outcome is not None:
            await self._on_outcome(outcome)

    def _remember(self, history: OrderedDict, token_id: str, value) -> None:
        history[token_id] = value
        while len(history) > self._max_history:
            history.popitem(last=False)
