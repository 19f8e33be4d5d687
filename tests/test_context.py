"""
Tests for what node code sees: credentials, binary data, parameters and
input isolation.
"""

import pytest
from conftest import make_graph

from nodeflow.credentials import EnvVarCredentialProvider, InMemoryCredentialProvider
from nodeflow.errors import CredentialNotFoundError, ErrorKind, InputError
from nodeflow.graph.executor import WorkflowExecutor
from nodeflow.graph.model import Node
from nodeflow.schemas.item import BinaryRef, Item
from nodeflow.schemas.run import RunStatus
from nodeflow.storage.binary import FilesystemBinaryProvider, InMemoryBinaryProvider


def with_api_node(node_type, credentials=None):
    return make_graph(
        [
            ("Start", "trigger"),
            Node(name="Call", type=node_type, credentials=credentials or {}),
        ],
        [("Start", "Call")],
    )


@pytest.mark.asyncio
async def test_credentials_are_resolved_by_slot(registry, config):
    seen = {}

    async def call_api(ctx):
        seen.update(ctx.get_credential("api"))
        return [{"ok": True}]

    registry.register_function("call_api", call_api)
    provider = InMemoryCredentialProvider({"crm_prod": {"api_key": "k-123"}})
    executor = WorkflowExecutor(registry, config=config, credentials=provider)

    outcome = await executor.start_run(with_api_node("call_api", {"api": "crm_prod"}))

    assert outcome.status == RunStatus.SUCCESS
    assert seen == {"api_key": "k-123"}


@pytest.mark.asyncio
async def test_missing_credential_is_input_error(registry, config):
    async def call_api(ctx):
        return [ctx.get_credential("api")]

    registry.register_function("call_api", call_api)
    executor = WorkflowExecutor(
        registry, config=config, credentials=InMemoryCredentialProvider()
    )

    unconfigured = await executor.start_run(with_api_node("call_api"))
    unknown = await executor.start_run(with_api_node("call_api", {"api": "nope"}))

    assert unconfigured.error.kind == ErrorKind.INPUT_ERROR
    assert "no credential configured for slot 'api'" in unconfigured.error.message
    assert unknown.error.message == "Credential 'nope' not found"


def test_env_var_credentials(monkeypatch):
    monkeypatch.setenv("NODEFLOW_CRED_CRM_PROD_API_KEY", "from-env")
    monkeypatch.setenv("NODEFLOW_CRED_CRM_PROD_REGION", "eu")
    provider = EnvVarCredentialProvider()

    credential = provider.get("crm-prod")

    assert credential.as_dict() == {"api_key": "from-env", "region": "eu"}
    assert provider.get("other") is None
    with pytest.raises(CredentialNotFoundError):
        credential.get_key("password")


@pytest.mark.asyncio
@pytest.mark.parametrize("provider_kind", ["memory", "filesystem"])
async def test_binary_data_flows_by_reference(registry, config, tmp_path, provider_kind):
    if provider_kind == "memory":
        provider = InMemoryBinaryProvider()
    else:
        provider = FilesystemBinaryProvider(tmp_path / "binary")

    async def produce(ctx):
        ref = await ctx.store_binary(b"%PDF-1.7", mime_type="application/pdf", file_name="a.pdf")
        return [Item(data={"name": "a.pdf"}, binary={"document": ref})]

    async def consume(ctx):
        payload = await ctx.get_binary("document")
        return [{"size": len(payload), "head": payload[:4].decode()}]

    registry.register_function("produce", produce)
    registry.register_function("consume", consume)
    graph = make_graph(
        [("Start", "trigger"), ("Produce", "produce"), ("Consume", "consume")],
        [("Start", "Produce"), ("Produce", "Consume")],
    )
    executor = WorkflowExecutor(registry, config=config, binary=provider)

    outcome = await executor.start_run(graph)

    assert outcome.status == RunStatus.SUCCESS
    ref = outcome.output_items("Produce")[0].binary["document"]
    assert ref.mime_type == "application/pdf"
    assert ref.size == 8
    assert outcome.output("Consume") == [{"size": 8, "head": "%PDF"}]


@pytest.mark.asyncio
async def test_binary_without_provider_is_input_error(registry, config):
    async def produce(ctx):
        await ctx.store_binary(b"x")

    registry.register_function("produce", produce)
    executor = WorkflowExecutor(registry, config=config)

    outcome = await executor.start_run(with_api_node("produce"))

    assert outcome.error.kind == ErrorKind.INPUT_ERROR
    assert "No binary data provider configured" in outcome.error.message


@pytest.mark.asyncio
async def test_filesystem_binary_rejects_unsafe_ids(tmp_path):
    provider = FilesystemBinaryProvider(tmp_path)

    with pytest.raises(InputError, match="Invalid binary id"):
        await provider.fetch(BinaryRef(id="../etc/passwd"))
    with pytest.raises(InputError, match="not found"):
        await provider.fetch(BinaryRef(id="bin_missing"))


@pytest.mark.asyncio
async def test_node_mutations_do_not_touch_recorded_data(registry, config):
    async def vandal(ctx):
        for item in ctx.items:
            item.data["value"] = "changed"
        return [{"done": True}]

    registry.register_function("vandal", vandal)
    graph = make_graph(
        [("Start", "trigger"), ("Vandal", "vandal")],
        [("Start", "Vandal")],
    )

    outcome = await WorkflowExecutor(registry, config=config).start_run(
        graph, items=[{"value": 1}]
    )

    assert outcome.output("Start") == [{"value": 1}]


@pytest.mark.asyncio
async def test_get_parameter_resolves_per_item(registry, config):
    seen = []

    async def inspect_label(ctx):
        seen.append(ctx.parameters["label"])
        seen.extend(ctx.get_parameter("label", i) for i in range(len(ctx.items)))
        seen.append(ctx.get_parameter("absent", 0, default="fallback"))
        return []

    registry.register_function("inspect_label", inspect_label)
    graph = make_graph(
        [("Start", "trigger"), ("Inspect", "inspect_label", {"label": "=#{{ json.value }}"})],
        [("Start", "Inspect")],
    )

    await WorkflowExecutor(registry, config=config).start_run(
        graph, items=[{"value": 1}, {"value": 2}]
    )

    assert seen == ["#1", "#1", "#2", "fallback"]


@pytest.mark.asyncio
async def test_sync_function_nodes_run_in_a_thread(registry, config):
    def blocking(ctx):
        return {"count": len(ctx.items)}

    registry.register_function("blocking", blocking)

    outcome = await WorkflowExecutor(registry, config=config).start_run(
        with_api_node("blocking"), items=[{}, {}]
    )

    assert outcome.output("Call") == [{"count": 2}]
