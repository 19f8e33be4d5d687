"""
Tests for WebhookServer and webhook-driven resume.
"""

import hashlib
import hmac as hmac_mod
import json

import aiohttp
import pytest
from conftest import make_graph

from nodeflow.graph.executor import WorkflowExecutor
from nodeflow.runtime.event_bus import EventBus, EventType
from nodeflow.runtime.webhook_server import WebhookResumer, WebhookServer, WebhookServerConfig
from nodeflow.schemas.run import RunStatus
from nodeflow.storage.token_store import FileTokenStore


def _make_server(event_bus: EventBus, token_store=None, secret=None):
    """Helper to create a WebhookServer with port=0 for OS-assigned port."""
    config = WebhookServerConfig(host="127.0.0.1", port=0, secret=secret)
    return WebhookServer(event_bus, config, token_store=token_store)


def _base_url(server: WebhookServer) -> str:
    """Get the base URL for a running server."""
    return f"http://127.0.0.1:{server.port}"


def _approval_graph():
    return make_graph(
        [
            ("Start", "trigger"),
            ("Approve", "wait", {"reason": "manager", "webhook": True}),
            ("Record", "set", {"values": {"approved_by": "={{ json.user }}"}}),
        ],
        [("Start", "Approve"), ("Approve", "Record")],
        graph_id="wf-approval",
    )


class TestWebhookServerLifecycle:
    """Tests for server start/stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = _make_server(EventBus())

        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        server = _make_server(EventBus())

        await server.stop()
        assert not server.is_running


class TestWebhookEventPublishing:
    """Tests for HTTP request -> EventBus event publishing."""

    @pytest.mark.asyncio
    async def test_post_publishes_webhook_received(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe([EventType.WEBHOOK_RECEIVED], handler)
        server = _make_server(bus)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/webhook/tok_abc?source=crm",
                    json={"approved": True},
                ) as resp:
                    assert resp.status == 202
                    body = await resp.json()
                    assert body == {"status": "accepted", "token_id": "tok_abc"}
        finally:
            await server.stop()

        assert len(received) == 1
        event = received[0]
        assert event.data["token_id"] == "tok_abc"
        assert event.data["payload"] == {"approved": True}
        assert event.data["method"] == "POST"
        assert event.data["query_params"] == {"source": "crm"}

    @pytest.mark.asyncio
    async def test_non_json_and_empty_bodies(self):
        bus = EventBus()
        server = _make_server(bus)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{_base_url(server)}/webhook/tok_a", data=b"hello"):
                    pass
                async with session.post(f"{_base_url(server)}/webhook/tok_b"):
                    pass
        finally:
            await server.stop()

        payloads = {
            e.data["token_id"]: e.data["payload"]
            for e in bus.get_history(event_type=EventType.WEBHOOK_RECEIVED)
        }
        assert payloads == {"tok_a": {"raw_body": "hello"}, "tok_b": None}

    @pytest.mark.asyncio
    async def test_unknown_token_is_404(self, tmp_path):
        bus = EventBus()
        server = _make_server(bus, token_store=FileTokenStore(tmp_path))
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{_base_url(server)}/webhook/tok_nope", json={}) as resp:
                    assert resp.status == 404
                async with session.post(f"{_base_url(server)}/webhook/.hidden", json={}) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()

        assert bus.get_history(event_type=EventType.WEBHOOK_RECEIVED) == []


class TestWebhookSignature:
    """Tests for HMAC-SHA256 signature verification."""

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(self):
        bus = EventBus()
        secret = "test-secret"
        server = _make_server(bus, secret=secret)
        await server.start()

        body = json.dumps({"approved": True}).encode()
        good = "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()
        try:
            async with aiohttp.ClientSession() as session:
                url = f"{_base_url(server)}/webhook/tok_signed"
                async with session.post(url, data=body) as resp:
                    assert resp.status == 401
                async with session.post(
                    url, data=body, headers={"X-Hub-Signature-256": "sha256=deadbeef"}
                ) as resp:
                    assert resp.status == 401
                async with session.post(
                    url, data=body, headers={"X-Hub-Signature-256": good}
                ) as resp:
                    assert resp.status == 202
        finally:
            await server.stop()

        assert len(bus.get_history(event_type=EventType.WEBHOOK_RECEIVED)) == 1

    @pytest.mark.asyncio
    async def test_signature_checked_before_token_lookup(self, tmp_path):
        bus = EventBus()
        secret = "test-secret"
        server = _make_server(bus, token_store=FileTokenStore(tmp_path), secret=secret)
        await server.start()

        body = b"{}"
        good = "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()
        try:
            async with aiohttp.ClientSession() as session:
                url = f"{_base_url(server)}/webhook/tok_missing"
                async with session.post(url, data=body) as resp:
                    assert resp.status == 401
                async with session.post(
                    url, data=body, headers={"X-Hub-Signature-256": good}
                ) as resp:
                    assert resp.status == 404
        finally:
            await server.stop()


class TestWebhookResume:
    """End to end: waiting run -> HTTP request -> resumed run."""

    @pytest.mark.asyncio
    async def test_webhook_resumes_waiting_run(self, registry, config, tmp_path):
        bus = EventBus()
        store = FileTokenStore(tmp_path / "tokens")
        executor = WorkflowExecutor(registry, config=config, token_store=store, event_bus=bus)
        finished = []

        async def on_outcome(outcome):
            finished.append(outcome.run_id)

        resumer = WebhookResumer(executor, store, bus, on_outcome=on_outcome)
        resumer.start()
        server = _make_server(bus, token_store=store)
        await server.start()

        waiting = await executor.start_run(_approval_graph(), items=[{"doc": 1}])
        token_id = waiting.token.token_id
        try:
            async with aiohttp.ClientSession() as session:
                url = f"{_base_url(server)}/webhook/{token_id}"
                async with session.post(url, json=[{"user": "ada"}]) as resp:
                    assert resp.status == 202
                await resumer.drain()
                async with session.post(url, json=[{"user": "eve"}]) as resp:
                    assert resp.status == 404
        finally:
            await server.stop()
            resumer.stop()

        outcome = resumer.outcomes[token_id]
        assert outcome.status == RunStatus.SUCCESS
        assert outcome.output("Record") == [{"user": "ada", "approved_by": "ada"}]
        assert finished == [waiting.run_id]
        assert resumer.errors == {}

    @pytest.mark.asyncio
    async def test_resumer_ignores_claimed_tokens(self, registry, config, tmp_path):
        bus = EventBus()
        store = FileTokenStore(tmp_path / "tokens")
        executor = WorkflowExecutor(registry, config=config, token_store=store)
        resumer = WebhookResumer(executor, store, bus)
        resumer.start()

        waiting = await executor.start_run(_approval_graph())
        await store.claim(waiting.token.token_id)

        await bus.emit_webhook_received(
            token_id=waiting.token.token_id,
            path="/webhook",
            method="POST",
            headers={},
            payload=None,
        )
        await resumer.drain()
        resumer.stop()

        assert resumer.outcomes == {}
        assert resumer.errors == {}

    @pytest.mark.asyncio
    async def test_resumer_keeps_only_recent_outcomes(self, registry, config, tmp_path):
        bus = EventBus()
        store = FileTokenStore(tmp_path / "tokens")
        executor = WorkflowExecutor(registry, config=config, token_store=store)
        resumer = WebhookResumer(executor, store, bus, max_history=2)
        resumer.start()

        token_ids = []
        for _ in range(3):
            waiting = await executor.start_run(_approval_graph())
            token_ids.append(waiting.token.token_id)
            await bus.emit_webhook_received(
                token_id=waiting.token.token_id,
                path="/webhook",
                method="POST",
                headers={},
                payload=[{"user": "ada"}],
            )
            await resumer.drain()
        resumer.stop()

        assert list(resumer.outcomes) == token_ids[1:]
        assert all(o.status == RunStatus.SUCCESS for o in resumer.outcomes.values())
