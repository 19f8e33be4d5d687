"""
Tests for the built-in node types running inside the executor.
"""

import pytest
from conftest import make_graph

from nodeflow.errors import ErrorKind, GraphValidationError
from nodeflow.graph.executor import WorkflowExecutor
from nodeflow.graph.model import Node, NodeSettings
from nodeflow.nodes import CORE_NODE_TYPES, default_registry
from nodeflow.schemas.item import PairedItem
from nodeflow.schemas.run import RunStatus


def numbers(*values):
    return [{"value": v} for v in values]


def values(outcome, node, port=0):
    return [d["value"] for d in outcome.output(node, port)]


def test_default_registry_has_every_core_type():
    registry = default_registry()

    for node_class in CORE_NODE_TYPES:
        assert isinstance(registry.get(node_class.description.name), node_class)


# ---- split_in_batches ----


@pytest.mark.asyncio
async def test_split_in_batches_loops_until_done(executor, call_log):
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Batches", "split_in_batches", {"batch_size": 2}),
            ("Process", "record"),
            ("Done", "record"),
        ],
        [("Start", "Batches"), ("Batches", "Process", 1), ("Batches", "Done", 0)],
    )

    outcome = await executor.start_run(graph, items=numbers(1, 2, 3, 4, 5))

    assert outcome.status == RunStatus.SUCCESS
    batches = [data for name, data in call_log.calls if name == "Process"]
    assert batches == [numbers(1, 2), numbers(3, 4), numbers(5)]
    assert call_log.count("Done") == 1
    assert values(outcome, "Done") == [1, 2, 3, 4, 5]
    assert len(outcome.run_data.data["Batches"]) == 4


@pytest.mark.asyncio
async def test_split_in_batches_rejects_bad_size(executor):
    graph = make_graph(
        [("Start", "trigger"), ("Batches", "split_in_batches", {"batch_size": 0})],
        [("Start", "Batches")],
    )

    with pytest.raises(GraphValidationError, match="batch_size"):
        await executor.start_run(graph)


# ---- merge ----


def merge_graph(mode="append", **parameters):
    return make_graph(
        [
            ("Start", "trigger"),
            ("Evens", "filter", {"condition": "={{ json.value % 2 == 0 }}"}),
            ("Odds", "filter", {"condition": "={{ json.value % 2 == 1 }}"}),
            ("Merge", "merge", {"mode": mode, **parameters}),
        ],
        [
            ("Start", "Evens"),
            ("Start", "Odds"),
            ("Evens", "Merge", 0, 0),
            ("Odds", "Merge", 0, 1),
        ],
    )


@pytest.mark.asyncio
async def test_merge_append_keeps_input_order(executor):
    outcome = await executor.start_run(merge_graph(), items=numbers(1, 2, 3, 4))

    assert values(outcome, "Merge") == [2, 4, 1, 3]
    pairing = [item.paired_item for item in outcome.output_items("Merge")]
    assert pairing[0] == [PairedItem(item=0, input=0)]
    assert pairing[2] == [PairedItem(item=0, input=1)]


@pytest.mark.asyncio
async def test_merge_runs_with_one_empty_input(executor):
    outcome = await executor.start_run(merge_graph(), items=numbers(2, 4))

    assert outcome.status == RunStatus.SUCCESS
    assert values(outcome, "Merge") == [2, 4]
    assert "Odds" in outcome.path


@pytest.mark.asyncio
async def test_merge_combine_by_position(executor):
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Names", "set", {"values": {"name": "={{ 'n' + str(json.value) }}"}}),
            ("Scores", "set", {"values": {"score": "={{ json.value * 10 }}"}}),
            ("Merge", "merge", {"mode": "combine_by_position"}),
        ],
        [
            ("Start", "Names"),
            ("Start", "Scores"),
            ("Names", "Merge", 0, 0),
            ("Scores", "Merge", 0, 1),
        ],
    )

    outcome = await executor.start_run(graph, items=numbers(1, 2))

    assert outcome.output("Merge") == [
        {"value": 1, "name": "n1", "score": 10},
        {"value": 2, "name": "n2", "score": 20},
    ]


@pytest.mark.asyncio
async def test_merge_combine_by_field(registry, config):
    async def users(ctx):
        return [{"id": 1, "name": "ada"}, {"id": 2, "name": "bob"}]

    async def orders(ctx):
        return [{"id": 2, "total": 5}, {"id": 1, "total": 7}, {"id": 3, "total": 9}]

    registry.register_function("users", users)
    registry.register_function("orders", orders)
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Users", "users"),
            ("Orders", "orders"),
            ("Merge", "merge", {"mode": "combine_by_field", "join_field": "id"}),
        ],
        [
            ("Start", "Users"),
            ("Start", "Orders"),
            ("Users", "Merge", 0, 0),
            ("Orders", "Merge", 0, 1),
        ],
    )

    outcome = await WorkflowExecutor(registry, config=config).start_run(graph)

    assert outcome.output("Merge") == [
        {"id": 1, "name": "ada", "total": 7},
        {"id": 2, "name": "bob", "total": 5},
    ]


@pytest.mark.asyncio
async def test_merge_by_field_requires_join_field(executor):
    with pytest.raises(GraphValidationError, match="join_field"):
        await executor.start_run(merge_graph("combine_by_field"))


# ---- switch / if ----


@pytest.mark.asyncio
async def test_switch_with_fallback_output(executor):
    graph = make_graph(
        [
            ("Start", "trigger"),
            (
                "Route",
                "switch",
                {
                    "rules": ["={{ json.value < 0 }}", "={{ json.value == 0 }}"],
                    "fallback_output": True,
                },
            ),
            ("Negative", "noop"),
            ("Zero", "noop"),
            ("Positive", "noop"),
        ],
        [
            ("Start", "Route"),
            ("Route", "Negative", 0),
            ("Route", "Zero", 1),
            ("Route", "Positive", 2),
        ],
    )

    outcome = await executor.start_run(graph, items=numbers(-1, 0, 5, 7))

    assert values(outcome, "Negative") == [-1]
    assert values(outcome, "Zero") == [0]
    assert values(outcome, "Positive") == [5, 7]


@pytest.mark.asyncio
async def test_switch_first_match_vs_all_matches(executor):
    def graph(all_matches):
        return make_graph(
            [
                ("Start", "trigger"),
                (
                    "Route",
                    "switch",
                    {
                        "rules": ["={{ json.value > 1 }}", "={{ json.value > 2 }}"],
                        "all_matches": all_matches,
                    },
                ),
            ],
            [("Start", "Route")],
        )

    first = await executor.start_run(graph(False), items=numbers(3))
    every = await executor.start_run(graph(True), items=numbers(3))

    assert values(first, "Route", 0) == [3]
    assert values(first, "Route", 1) == []
    assert values(every, "Route", 0) == [3]
    assert values(every, "Route", 1) == [3]


@pytest.mark.asyncio
async def test_switch_connection_to_missing_output_is_rejected(executor):
    graph = make_graph(
        [
            ("Start", "trigger"),
            ("Route", "switch", {"rules": ["={{ True }}"]}),
            ("Nowhere", "noop"),
        ],
        [("Start", "Route"), ("Route", "Nowhere", 1)],
    )

    with pytest.raises(GraphValidationError, match="uses output 1"):
        await executor.start_run(graph)


# ---- set / aggregate ----


@pytest.mark.asyncio
async def test_set_keep_only_set(executor):
    graph = make_graph(
        [
            ("Start", "trigger"),
            (
                "Shape",
                "set",
                {"values": {"label": "={{ 'item ' + str(item_index) }}"}, "keep_only_set": True},
            ),
        ],
        [("Start", "Shape")],
    )

    outcome = await executor.start_run(graph, items=numbers(10, 20))

    assert outcome.output("Shape") == [{"label": "item 0"}, {"label": "item 1"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operation,expected",
    [("sum", 6), ("min", 1), ("max", 3), ("avg", 2.0), ("list", [1, 2, 3]), ("count", 3)],
)
async def test_aggregate_operations(executor, operation, expected):
    graph = make_graph(
        [
            ("Start", "trigger"),
            (
                "Total",
                "aggregate",
                {"field": "value", "operation": operation, "output_field": "result"},
            ),
        ],
        [("Start", "Total")],
    )

    outcome = await executor.start_run(graph, items=numbers(1, 2, 3))

    assert outcome.output("Total") == [{"result": expected}]
    assert outcome.output_items("Total")[0].paired_item == [
        PairedItem(item=0),
        PairedItem(item=1),
        PairedItem(item=2),
    ]


@pytest.mark.asyncio
async def test_aggregate_rejects_non_numeric_values(executor):
    graph = make_graph(
        [("Start", "trigger"), ("Total", "aggregate", {"field": "value"})],
        [("Start", "Total")],
    )

    outcome = await executor.start_run(graph, items=[{"value": 1}, {"value": "two"}])

    assert outcome.status == RunStatus.FAILED
    assert outcome.error.kind == ErrorKind.INPUT_ERROR
    assert "non-numeric" in outcome.error.message


# ---- stop_and_error ----


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kind,expected",
    [
        ("input_error", ErrorKind.INPUT_ERROR),
        ("operational", ErrorKind.RETRIABLE),
        ("fatal", ErrorKind.FATAL),
    ],
)
async def test_stop_and_error_kinds(executor, kind, expected):
    graph = make_graph(
        [
            ("Start", "trigger"),
            (
                "Stop",
                "stop_and_error",
                {"message": "={{ 'stopped at ' + str(json.value) }}", "kind": kind},
            ),
        ],
        [("Start", "Stop")],
    )

    outcome = await executor.start_run(graph, items=numbers(9))

    assert outcome.status == RunStatus.FAILED
    assert outcome.error.node == "Stop"
    assert outcome.error.kind == expected
    assert outcome.error.message == "stopped at 9"


@pytest.mark.asyncio
async def test_stop_and_error_retries_operational(executor, fast_sleep):
    graph = make_graph(
        [
            ("Start", "trigger"),
            Node(
                name="Stop",
                type="stop_and_error",
                parameters={"kind": "operational"},
                settings=NodeSettings(retry_on_fail=True, max_tries=2, wait_between_tries_ms=0),
            ),
        ],
        [("Start", "Stop")],
    )

    outcome = await executor.start_run(graph)

    assert outcome.status == RunStatus.FAILED
    assert outcome.retry_details == {"Stop": 1}


@pytest.mark.asyncio
async def test_stop_and_error_unknown_kind_is_rejected(executor):
    graph = make_graph(
        [("Start", "trigger"), ("Stop", "stop_and_error", {"kind": "weird"})],
        [("Start", "Stop")],
    )

    with pytest.raises(GraphValidationError, match="'kind' must be one of"):
        await executor.start_run(graph)


@pytest.mark.asyncio
async def test_filter_requires_condition(executor):
    graph = make_graph([("Start", "trigger"), ("Keep", "filter")], [("Start", "Keep")])

    with pytest.raises(GraphValidationError, match="'condition' is required"):
        await executor.start_run(graph)
